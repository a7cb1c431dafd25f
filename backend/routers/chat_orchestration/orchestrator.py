"""
Parley Stream Orchestrator - one user turn from validation to persistence

Every send, REST or SSE, durable or anonymous, walks the same states:

    VALIDATING -> AUTHORIZING -> PERSISTING_USER_MSG -> GENERATING
        -> PERSISTING_ASSISTANT_MSG -> COMPLETED

ERRORED is reachable from any state. The user message is never rolled back
once persisted, and an empty assistant message is never written.

Generation:
- REST sends run the tool loop when a tool provider is available for the
  caller, falling back to a plain completion if the loop gives up
- SSE sends stream straight from the gateway; a client disconnect stops the
  stream and keeps whatever text was produced, marked partial

Collaborators are injected (gateway, store, registry, tool provider factory);
only the default tool provider factory comes from services.mcp_client.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple

from config import runtime_config
from errors import (
    BadRequestError,
    NotFoundError,
    ParleyError,
    ToolExecutionError,
    UpstreamError,
    GENERIC_ERROR_MESSAGE,
    log_error,
    public_message,
)
from logging_config import log_message_in, log_message_out, log_stream
from services.mcp_client import make_tool_provider
from .session import Message, MessageRole, StreamingSession
from .tool_dispatch import ToolInvocationLoop

logger = logging.getLogger(__name__)

CREATE_UNAVAILABLE_MESSAGE = (
    "The AI service is temporarily unavailable. The chat was created but the AI could not respond."
)
SEND_UNAVAILABLE_MESSAGE = "The AI service is temporarily unavailable. Please try again in a few moments."
SEND_RETRY_AFTER = 60
EMPTY_RESPONSE_DETAIL = "model returned an empty response"

IsDisconnected = Callable[[], Awaitable[bool]]


class OrchestratorState(str, Enum):
    VALIDATING = "validating"
    AUTHORIZING = "authorizing"
    PERSISTING_USER_MSG = "persisting_user_msg"
    GENERATING = "generating"
    PERSISTING_ASSISTANT_MSG = "persisting_assistant_msg"
    COMPLETED = "completed"
    ERRORED = "errored"


def _transition(chat_id: Optional[str], state: OrchestratorState) -> None:
    logger.debug(f"chat={chat_id or '-'} state={state.value}")


def _require_content(content: Optional[str], parameter: str = "content") -> str:
    if not isinstance(content, str) or not content.strip():
        raise BadRequestError("Message content is required", parameter=parameter, received=content)
    return content


def _error_event(error: Exception, chat_id: Optional[str] = None) -> Dict[str, Any]:
    event = {"type": "error", "error": public_message(error)}
    chat = getattr(error, "chat_id", None) or chat_id
    if chat:
        event["chatId"] = chat
    return event


class _ChatTarget:
    """Hides whether a chat lives in the durable store or the ephemeral registry."""

    def __init__(self, chat_id: str, store=None, registry=None):
        self.chat_id = chat_id
        self._store = store
        self._registry = registry

    async def append(self, role: MessageRole, content: str, metadata: Optional[Dict[str, Any]] = None) -> Message:
        if self._registry is not None:
            return await self._registry.append(self.chat_id, role, content, metadata)
        return await self._store.add_message(self.chat_id, role, content, metadata)

    async def history(self, upto: Optional[str] = None) -> List[Message]:
        """Messages in order, cut after message id `upto` when given.

        A concurrent turn on the same chat may have appended its reply after
        our user message; cutting there keeps the prompt ending on our turn.
        """
        if self._registry is not None:
            chat = self._registry.get(self.chat_id)
            if chat is None:
                raise NotFoundError("Anonymous chat not found", resource_type="anonymous_chat", resource_id=self.chat_id)
            messages = chat.messages
        else:
            messages = await self._store.get_messages(self.chat_id)

        if upto is not None:
            for index, message in enumerate(messages):
                if message.id == upto:
                    return messages[: index + 1]
        return messages


class ChatOrchestrator:
    """Runs chat turns against the store, the registry and the LLM gateway."""

    def __init__(
        self,
        gateway,
        store,
        registry,
        tool_provider_factory: Optional[Callable[[Optional[str]], Any]] = None,
        config=None,
    ):
        """
        Args:
            gateway: LLMGateway
            store: ConversationStore for identified callers
            registry: EphemeralChatRegistry for anonymous chats
            tool_provider_factory: token -> tool provider or None (tools off)
            config: RuntimeConfig (defaults to the process singleton)
        """
        self.gateway = gateway
        self.store = store
        self.registry = registry
        self.config = config or runtime_config
        self._tool_provider_factory = tool_provider_factory or (
            lambda token: make_tool_provider(token, self.config)
        )

    # ------------------------------------------------------------------
    # Targets
    # ------------------------------------------------------------------

    async def _durable_target(self, caller, chat_id: str) -> _ChatTarget:
        _transition(chat_id, OrchestratorState.AUTHORIZING)
        chat = await self.store.get_chat(chat_id, owner_id=caller.user_id, limit=1)
        if chat is None:
            raise NotFoundError("Chat not found", resource_type="chat", resource_id=chat_id)
        return _ChatTarget(chat_id, store=self.store)

    def _anonymous_target(self, chat_id: str) -> _ChatTarget:
        _transition(chat_id, OrchestratorState.AUTHORIZING)
        if self.registry.get(chat_id) is None:
            raise NotFoundError("Anonymous chat not found", resource_type="anonymous_chat", resource_id=chat_id)
        return _ChatTarget(chat_id, registry=self.registry)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def _generate(
        self, content: str, history: List[Message], model: str, token: Optional[str]
    ) -> Tuple[str, List[str]]:
        """Assistant text for a REST turn, using tools when available."""
        provider = self._tool_provider_factory(token)
        if provider is not None:
            loop = ToolInvocationLoop(self.gateway, provider, self.config.mcp_max_corrections)
            try:
                result = await loop.run(content, history, model)
                if result.content.strip():
                    return result.content, result.tools_used
                logger.warning("Tool loop produced an empty answer, falling back to plain completion")
            except ToolExecutionError as e:
                log_error(logger, e, "Tool loop failed, falling back to plain completion", include_traceback=False)
            finally:
                await provider.aclose()

        response = await self.gateway.complete(history, model)
        if not response.content.strip():
            raise UpstreamError("The AI service returned an empty response.", details=EMPTY_RESPONSE_DETAIL, model=model)
        return response.content, []

    async def _respond(
        self,
        target: _ChatTarget,
        content: str,
        model: str,
        token: Optional[str],
        unavailable_message: str,
        retry_after: Optional[int],
    ) -> Tuple[Message, Message]:
        """Persist the user message, generate, persist the answer."""
        _transition(target.chat_id, OrchestratorState.PERSISTING_USER_MSG)
        user_message = await target.append(MessageRole.USER, content)

        # From here on every failure refers to the existing chat
        try:
            _transition(target.chat_id, OrchestratorState.GENERATING)
            history = await target.history(upto=user_message.id)
            text, tools_used = await self._generate(content, history, model, token)

            _transition(target.chat_id, OrchestratorState.PERSISTING_ASSISTANT_MSG)
            assistant_message = await target.append(MessageRole.ASSISTANT, text)
        except UpstreamError as e:
            _transition(target.chat_id, OrchestratorState.ERRORED)
            log_error(logger, e, f"LLM unavailable for chat {target.chat_id}", include_traceback=False)
            raise e.for_chat(target.chat_id, unavailable_message, retry_after=retry_after)
        except ParleyError as e:
            _transition(target.chat_id, OrchestratorState.ERRORED)
            e.chat_id = target.chat_id
            raise
        except Exception as e:
            _transition(target.chat_id, OrchestratorState.ERRORED)
            log_error(logger, e, f"Turn failed for chat {target.chat_id}")
            raise ParleyError(GENERIC_ERROR_MESSAGE, chat_id=target.chat_id) from e

        log_message_out(logger, target.chat_id, chars=len(text), tools_used=tools_used)
        _transition(target.chat_id, OrchestratorState.COMPLETED)
        return user_message, assistant_message

    # ------------------------------------------------------------------
    # REST entry points
    # ------------------------------------------------------------------

    async def create_chat(
        self,
        caller,
        title: Optional[str] = None,
        initial_message: Optional[str] = None,
        model: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a durable chat, optionally answering a first message.

        Raises:
            InvalidModelError: before anything is created
            UpstreamError: chat exists (chatId set) but the model did not answer
        """
        _transition(None, OrchestratorState.VALIDATING)
        model = self.gateway.resolve_model(model)
        chat = await self.store.create_chat(caller.user_id, title)
        logger.info(f"Chat created: {chat.id} user={caller.user_id}")

        if initial_message and initial_message.strip():
            log_message_in(logger, initial_message, chat_id=chat.id, model=model)
            await self._respond(
                _ChatTarget(chat.id, store=self.store),
                initial_message,
                model,
                caller.oauth_token,
                CREATE_UNAVAILABLE_MESSAGE,
                retry_after=None,
            )

        created = await self.store.get_chat(chat.id, owner_id=caller.user_id)
        return created.to_dict()

    async def create_anonymous_chat(
        self,
        title: Optional[str] = None,
        initial_message: Optional[str] = None,
        model: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create an ephemeral chat, optionally answering a first message."""
        _transition(None, OrchestratorState.VALIDATING)
        model = self.gateway.resolve_model(model)
        chat = await self.registry.create(title)
        logger.info(f"Anonymous chat created: {chat.id}")

        if initial_message and initial_message.strip():
            log_message_in(logger, initial_message, chat_id=chat.id, anonymous=True, model=model)
            await self._respond(
                _ChatTarget(chat.id, registry=self.registry),
                initial_message,
                model,
                None,
                CREATE_UNAVAILABLE_MESSAGE,
                retry_after=None,
            )

        created = self.registry.get(chat.id)
        if created is None:
            raise NotFoundError("Anonymous chat not found", resource_type="anonymous_chat", resource_id=chat.id)
        return created.to_dict()

    async def send_message(
        self, caller, chat_id: str, content: str, model: Optional[str] = None
    ) -> Dict[str, Any]:
        """REST send to a durable chat owned by the caller."""
        _transition(chat_id, OrchestratorState.VALIDATING)
        _require_content(content)
        model = self.gateway.resolve_model(model)
        target = await self._durable_target(caller, chat_id)
        log_message_in(logger, content, chat_id=chat_id, model=model)
        user_message, assistant_message = await self._respond(
            target, content, model, caller.oauth_token, SEND_UNAVAILABLE_MESSAGE, SEND_RETRY_AFTER
        )
        return {"userMessage": user_message.to_dict(), "assistantMessage": assistant_message.to_dict()}

    async def send_anonymous_message(self, chat_id: str, content: str, model: Optional[str] = None) -> Dict[str, Any]:
        """REST send to an ephemeral chat."""
        _transition(chat_id, OrchestratorState.VALIDATING)
        _require_content(content)
        model = self.gateway.resolve_model(model)
        target = self._anonymous_target(chat_id)
        log_message_in(logger, content, chat_id=chat_id, anonymous=True, model=model)
        user_message, assistant_message = await self._respond(
            target, content, model, None, SEND_UNAVAILABLE_MESSAGE, SEND_RETRY_AFTER
        )
        return {"userMessage": user_message.to_dict(), "assistantMessage": assistant_message.to_dict()}

    # ------------------------------------------------------------------
    # Streaming entry points
    # ------------------------------------------------------------------

    async def stream_message(
        self,
        caller,
        chat_id: str,
        content: str,
        model: Optional[str] = None,
        is_disconnected: Optional[IsDisconnected] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """SSE send to a durable chat. Yields chunk events, then done or error."""

        async def resolve() -> _ChatTarget:
            return await self._durable_target(caller, chat_id)

        events = self._stream(resolve, chat_id, content, model, is_disconnected, anonymous=False)
        try:
            async for event in events:
                yield event
        finally:
            await events.aclose()

    async def stream_anonymous_message(
        self,
        chat_id: str,
        content: str,
        model: Optional[str] = None,
        is_disconnected: Optional[IsDisconnected] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """SSE send to an ephemeral chat."""

        async def resolve() -> _ChatTarget:
            return self._anonymous_target(chat_id)

        events = self._stream(resolve, chat_id, content, model, is_disconnected, anonymous=True)
        try:
            async for event in events:
                yield event
        finally:
            await events.aclose()

    async def _stream(
        self,
        resolve: Callable[[], Awaitable[_ChatTarget]],
        chat_id: str,
        content: str,
        model: Optional[str],
        is_disconnected: Optional[IsDisconnected],
        anonymous: bool,
    ) -> AsyncIterator[Dict[str, Any]]:
        persisted_user = False
        try:
            _transition(chat_id, OrchestratorState.VALIDATING)
            _require_content(content)
            model = self.gateway.resolve_model(model)
            target = await resolve()
            log_message_in(logger, content, chat_id=chat_id, anonymous=anonymous, stream=True, model=model)

            _transition(chat_id, OrchestratorState.PERSISTING_USER_MSG)
            user_message = await target.append(MessageRole.USER, content)
            persisted_user = True
            history = await target.history(upto=user_message.id)
        except ParleyError as e:
            _transition(chat_id, OrchestratorState.ERRORED)
            log_error(logger, e, f"Stream rejected for chat {chat_id}", include_traceback=False)
            yield _error_event(e, chat_id if persisted_user else None)
            return
        except Exception as e:
            _transition(chat_id, OrchestratorState.ERRORED)
            log_error(logger, e, f"Stream setup failed for chat {chat_id}")
            yield _error_event(e, chat_id if persisted_user else None)
            return

        _transition(chat_id, OrchestratorState.GENERATING)
        session = StreamingSession(chat_id)
        fragments = self.gateway.stream_complete(history, model)
        disconnected = False
        try:
            async for fragment in fragments:
                session.add(fragment)
                if is_disconnected is not None and await is_disconnected():
                    disconnected = True
                    break
                yield {"type": "chunk", "content": fragment}
        except UpstreamError as e:
            _transition(chat_id, OrchestratorState.ERRORED)
            log_error(logger, e, f"Stream failed for chat {chat_id}", include_traceback=False)
            yield _error_event(e, chat_id)
            return
        except (asyncio.CancelledError, GeneratorExit):
            logger.info(f"Stream cancelled for chat {chat_id} after {session.fragments} fragments")
            await self._persist_partial_shielded(target, session)
            raise
        except Exception as e:
            _transition(chat_id, OrchestratorState.ERRORED)
            log_error(logger, e, f"Stream failed for chat {chat_id}")
            yield _error_event(e, chat_id)
            return
        finally:
            await fragments.aclose()

        if disconnected:
            logger.info(f"Client disconnected from chat {chat_id} after {session.fragments} fragments")
            await self._persist_partial(target, session)
            return

        log_stream(logger, chat_id, session.fragments, len(session.text), session.elapsed)
        if not session.text.strip():
            _transition(chat_id, OrchestratorState.ERRORED)
            logger.warning(f"Empty stream for chat {chat_id}, nothing persisted")
            yield _error_event(UpstreamError(SEND_UNAVAILABLE_MESSAGE, details=EMPTY_RESPONSE_DETAIL), chat_id)
            return

        _transition(chat_id, OrchestratorState.PERSISTING_ASSISTANT_MSG)
        try:
            assistant_message = await target.append(MessageRole.ASSISTANT, session.text)
        except Exception as e:
            _transition(chat_id, OrchestratorState.ERRORED)
            log_error(logger, e, f"Could not persist streamed answer for chat {chat_id}")
            yield _error_event(e, chat_id)
            return

        log_message_out(logger, chat_id, chars=len(session.text))
        _transition(chat_id, OrchestratorState.COMPLETED)
        yield {"type": "done", "message": assistant_message.to_dict()}

    async def _persist_partial(self, target: _ChatTarget, session: StreamingSession) -> Optional[Message]:
        """Keep the text produced so far, marked partial. Best effort."""
        if not session.text.strip():
            return None
        try:
            message = await target.append(MessageRole.ASSISTANT, session.text, {"partial": True})
        except Exception as e:
            logger.warning(f"Could not persist partial response for chat {target.chat_id}: {e}")
            return None
        logger.info(f"Persisted partial response for chat {target.chat_id} ({len(session.text)} chars)")
        return message

    async def _persist_partial_shielded(self, target: _ChatTarget, session: StreamingSession) -> None:
        # Runs while the request task is being cancelled
        try:
            await asyncio.shield(self._persist_partial(target, session))
        except asyncio.CancelledError:
            logger.debug(f"Partial persist for chat {target.chat_id} continues in background")

    # ------------------------------------------------------------------
    # Migration
    # ------------------------------------------------------------------

    async def migrate_chats(self, caller, chats: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Adopt anonymous chats into the caller's durable store.

        Messages come from the registry when the chat is still live there,
        otherwise from the caller-supplied payload. Each migrated id is removed
        from the registry. One bad chat does not stop the others.

        Raises:
            BadRequestError: nothing to migrate
            ParleyError: every chat failed
        """
        if not chats:
            raise BadRequestError("No chats provided for migration", parameter="chats", received=chats)

        migrated: List[Dict[str, Any]] = []
        for data in chats:
            anonymous_id = data.get("id")
            try:
                live = self.registry.get(anonymous_id) if anonymous_id else None
                if live is not None:
                    title = live.title
                    messages = [(m.role, m.content, m.metadata) for m in live.messages]
                else:
                    title = data.get("title")
                    messages = [
                        (MessageRole(m.get("role", "user")), m["content"], m.get("metadata"))
                        for m in data.get("messages") or []
                    ]

                chat = await self.store.create_chat(caller.user_id, title)
                for role, text, metadata in messages:
                    await self.store.add_message(chat.id, role, text, metadata)
                if anonymous_id:
                    self.registry.remove(anonymous_id)

                adopted = await self.store.get_chat(chat.id, owner_id=caller.user_id)
                migrated.append(adopted.to_dict())
                logger.info(f"Migrated anonymous chat {anonymous_id} -> {chat.id} ({len(messages)} messages)")
            except Exception as e:
                log_error(logger, e, f"Failed to migrate chat {anonymous_id}")
                continue

        if not migrated:
            raise ParleyError("Failed to migrate any chats")
        return {"migratedChats": migrated}
