"""
Tests for the chat orchestrator: REST turns, streaming, tools, migration.
"""

import asyncio

import pytest

from conftest import FakeCaller, FakeGateway, FakeToolProvider, make_config
from errors import (
    GENERIC_ERROR_MESSAGE,
    BadRequestError,
    InvalidHistoryStateError,
    InvalidModelError,
    NotFoundError,
    ParleyError,
    UpstreamError,
)
from routers.chat_orchestration.orchestrator import (
    CREATE_UNAVAILABLE_MESSAGE,
    SEND_RETRY_AFTER,
    SEND_UNAVAILABLE_MESSAGE,
    ChatOrchestrator,
)
from routers.chat_orchestration.session import MessageRole
from services.chat_store import InMemoryConversationStore
from services.ephemeral_chats import EphemeralChatRegistry


def _orchestrator(gateway, provider=None, store=None, registry=None):
    return ChatOrchestrator(
        gateway,
        store if store is not None else InMemoryConversationStore(),
        registry if registry is not None else EphemeralChatRegistry(),
        tool_provider_factory=lambda token: provider,
        config=make_config(),
    )


def _collect(stream):
    async def run():
        return [event async for event in stream]

    return asyncio.run(run())


class _StrictGateway(FakeGateway):
    """Rejects a history that does not end on a user message, as LLMGateway does."""

    @staticmethod
    def _check(history):
        if not history or history[-1].role != MessageRole.USER:
            raise InvalidHistoryStateError("Last message must be from user")

    async def complete(self, history, model=None):
        self._check(history)
        return await super().complete(history, model)

    async def stream_complete(self, history, model=None):
        self._check(history)
        async for fragment in super().stream_complete(history, model):
            yield fragment


class _FailingStore(InMemoryConversationStore):
    """Driver-level failure when writing a message with the given role."""

    def __init__(self, fail_role):
        super().__init__()
        self.fail_role = fail_role

    async def add_message(self, chat_id, role, content, metadata=None):
        if role == self.fail_role:
            raise RuntimeError("connection reset by database")
        return await super().add_message(chat_id, role, content, metadata)


class _RacingStore(InMemoryConversationStore):
    """Another turn's reply lands between our user message and the history read."""

    raced = False

    async def get_messages(self, chat_id, limit=None):
        if not self.raced:
            self.raced = True
            await super().add_message(chat_id, MessageRole.ASSISTANT, "reply to another turn")
        return await super().get_messages(chat_id, limit)


class TestCreateChat:
    """Chat creation with and without an initial message."""

    def test_anonymous_create_with_initial_message(self):
        """'2+2?' answered with '4' leaves exactly user + assistant, retrievable by id."""
        registry = EphemeralChatRegistry()
        orchestrator = _orchestrator(FakeGateway(replies=["4"]), registry=registry)
        chat = asyncio.run(orchestrator.create_anonymous_chat("Math", "2+2?"))

        assert chat["id"].startswith("anonymous_")
        assert [(m["role"], m["content"]) for m in chat["messages"]] == [("user", "2+2?"), ("assistant", "4")]
        stored = registry.get(chat["id"])
        assert [m.content for m in stored.messages] == ["2+2?", "4"]

    def test_durable_create_without_message(self):
        gateway = FakeGateway()
        orchestrator = _orchestrator(gateway)
        chat = asyncio.run(orchestrator.create_chat(FakeCaller(), "  Plans  "))
        assert chat["title"] == "Plans"
        assert chat["messages"] == []
        assert chat["userId"] == "user-1"
        assert gateway.calls == []

    def test_blank_initial_message_is_ignored(self):
        gateway = FakeGateway()
        chat = asyncio.run(_orchestrator(gateway).create_chat(FakeCaller(), None, "   "))
        assert chat["messages"] == []
        assert gateway.calls == []

    def test_invalid_model_creates_nothing(self):
        store = InMemoryConversationStore()
        orchestrator = _orchestrator(FakeGateway(replies=["x"]), store=store)
        with pytest.raises(InvalidModelError):
            asyncio.run(orchestrator.create_chat(FakeCaller(), "t", "hi", model="gpt-4"))
        assert asyncio.run(store.list_chats("user-1")) == []

    def test_upstream_failure_keeps_chat_and_user_message(self):
        """The chat exists, chatId is reported, no retryAfter on create."""
        store = InMemoryConversationStore()
        orchestrator = _orchestrator(FakeGateway(replies=[UpstreamError("down")]), store=store)
        with pytest.raises(UpstreamError) as exc_info:
            asyncio.run(orchestrator.create_chat(FakeCaller(), "t", "hello"))

        err = exc_info.value
        assert err.message == CREATE_UNAVAILABLE_MESSAGE
        assert err.retry_after is None
        chat = asyncio.run(store.get_chat(err.chat_id, owner_id="user-1"))
        assert [(m.role, m.content) for m in chat.messages] == [(MessageRole.USER, "hello")]


class TestSendMessage:
    """REST sends to durable and anonymous chats."""

    def _durable_chat(self, store):
        return asyncio.run(store.create_chat("user-1", "t"))

    def test_send_returns_both_messages(self):
        store = InMemoryConversationStore()
        chat = self._durable_chat(store)
        gateway = FakeGateway(replies=["Paris."])
        result = asyncio.run(_orchestrator(gateway, store=store).send_message(FakeCaller(), chat.id, "Capital of France?"))

        assert result["userMessage"]["content"] == "Capital of France?"
        assert result["assistantMessage"]["content"] == "Paris."
        stored = asyncio.run(store.get_messages(chat.id))
        assert [m.id for m in stored] == [result["userMessage"]["id"], result["assistantMessage"]["id"]]
        assert stored[0].created_at < stored[1].created_at
        assert gateway.calls[0]["history"][-1].content == "Capital of France?"
        assert gateway.calls[0]["model"] == "gemini-2.5-flash"

    @pytest.mark.parametrize("content", ["", "   ", None])
    def test_empty_content_rejected_without_persisting(self, content):
        store = InMemoryConversationStore()
        chat = self._durable_chat(store)
        gateway = FakeGateway(replies=["never"])
        with pytest.raises(BadRequestError) as exc_info:
            asyncio.run(_orchestrator(gateway, store=store).send_message(FakeCaller(), chat.id, content))
        assert exc_info.value.message == "Message content is required"
        assert asyncio.run(store.get_messages(chat.id)) == []
        assert gateway.calls == []

    def test_other_users_chat_is_not_found(self):
        store = InMemoryConversationStore()
        chat = self._durable_chat(store)
        with pytest.raises(NotFoundError):
            asyncio.run(
                _orchestrator(FakeGateway(replies=["x"]), store=store).send_message(FakeCaller("intruder"), chat.id, "hi")
            )
        assert asyncio.run(store.get_messages(chat.id)) == []

    def test_upstream_failure_keeps_user_message(self):
        store = InMemoryConversationStore()
        chat = self._durable_chat(store)
        orchestrator = _orchestrator(FakeGateway(replies=[UpstreamError("down")]), store=store)
        with pytest.raises(UpstreamError) as exc_info:
            asyncio.run(orchestrator.send_message(FakeCaller(), chat.id, "hello"))

        err = exc_info.value
        assert err.chat_id == chat.id
        assert err.retry_after == SEND_RETRY_AFTER == 60
        assert err.message == SEND_UNAVAILABLE_MESSAGE
        messages = asyncio.run(store.get_messages(chat.id))
        assert [m.role for m in messages] == [MessageRole.USER]

    def test_empty_completion_is_an_error(self):
        """An empty answer is never persisted."""
        store = InMemoryConversationStore()
        chat = self._durable_chat(store)
        with pytest.raises(UpstreamError):
            asyncio.run(_orchestrator(FakeGateway(replies=["   "]), store=store).send_message(FakeCaller(), chat.id, "hi"))
        assert len(asyncio.run(store.get_messages(chat.id))) == 1

    def test_anonymous_send(self):
        registry = EphemeralChatRegistry()
        chat = asyncio.run(registry.create("t"))
        result = asyncio.run(
            _orchestrator(FakeGateway(replies=["hey"]), registry=registry).send_anonymous_message(chat.id, "hi")
        )
        assert result["assistantMessage"]["chatId"] == chat.id
        assert len(registry.get(chat.id).messages) == 2

    def test_anonymous_unknown_chat(self):
        with pytest.raises(NotFoundError) as exc_info:
            asyncio.run(_orchestrator(FakeGateway()).send_anonymous_message("anonymous_1_dead", "hi"))
        assert exc_info.value.message == "Anonymous chat not found"

    def test_history_includes_earlier_turns(self):
        store = InMemoryConversationStore()
        chat = self._durable_chat(store)
        gateway = FakeGateway(replies=["one", "two"])
        orchestrator = _orchestrator(gateway, store=store)
        asyncio.run(orchestrator.send_message(FakeCaller(), chat.id, "first"))
        asyncio.run(orchestrator.send_message(FakeCaller(), chat.id, "second"))
        assert [m.content for m in gateway.calls[1]["history"]] == ["first", "one", "second"]


class TestTurnFailures:
    """Failures after the user message is stored refer to the existing chat."""

    def test_concurrent_reply_is_cut_from_history(self):
        store = _RacingStore()
        chat = asyncio.run(store.create_chat("user-1"))
        gateway = _StrictGateway(replies=["mine"])
        result = asyncio.run(_orchestrator(gateway, store=store).send_message(FakeCaller(), chat.id, "my question"))

        assert result["assistantMessage"]["content"] == "mine"
        assert [m.content for m in gateway.calls[0]["history"]] == ["my question"]

    def test_history_state_error_carries_chat_id(self):
        store = InMemoryConversationStore()
        chat = asyncio.run(store.create_chat("user-1"))
        gateway = FakeGateway(replies=[InvalidHistoryStateError("Last message must be from user")])
        with pytest.raises(InvalidHistoryStateError) as exc_info:
            asyncio.run(_orchestrator(gateway, store=store).send_message(FakeCaller(), chat.id, "hi"))
        assert exc_info.value.chat_id == chat.id

    def test_answer_write_failure_is_generic_with_chat_id(self):
        store = _FailingStore(MessageRole.ASSISTANT)
        chat = asyncio.run(store.create_chat("user-1"))
        with pytest.raises(ParleyError) as exc_info:
            asyncio.run(_orchestrator(FakeGateway(replies=["ok"]), store=store).send_message(FakeCaller(), chat.id, "hi"))

        err = exc_info.value
        assert err.chat_id == chat.id
        assert err.message == GENERIC_ERROR_MESSAGE
        assert isinstance(err.__cause__, RuntimeError)
        assert [m.role for m in asyncio.run(store.get_messages(chat.id))] == [MessageRole.USER]


class TestToolFallback:
    """Tool loop use and fallback to a plain completion."""

    def test_tool_answer_used(self):
        store = InMemoryConversationStore()
        chat = asyncio.run(store.create_chat("user-1"))
        provider = FakeToolProvider(results={"search": ["3 hits"]})
        gateway = FakeGateway(replies=['TOOL_CALL:search:{"q":"x"}', "Found 3 hits."])
        result = asyncio.run(
            _orchestrator(gateway, provider=provider, store=store).send_message(FakeCaller(oauth_token="tok"), chat.id, "look")
        )
        assert result["assistantMessage"]["content"] == "Found 3 hits."
        assert provider.closed

    def test_tool_failure_falls_back(self):
        """When the loop gives up the turn still gets a plain answer."""
        store = InMemoryConversationStore()
        chat = asyncio.run(store.create_chat("user-1"))
        provider = FakeToolProvider(list_error=RuntimeError("MCP down"))
        gateway = FakeGateway(replies=["Plain answer."])
        result = asyncio.run(
            _orchestrator(gateway, provider=provider, store=store).send_message(FakeCaller(), chat.id, "look")
        )
        assert result["assistantMessage"]["content"] == "Plain answer."
        assert provider.closed
        # Plain completion sees the real history, not a tool prompt
        assert [m.content for m in gateway.calls[-1]["history"]] == ["look"]


class TestStreaming:
    """SSE event sequences."""

    def _anonymous(self, gateway, registry=None):
        registry = registry or EphemeralChatRegistry()
        chat = asyncio.run(registry.create("t"))
        return _orchestrator(gateway, registry=registry), registry, chat.id

    def test_chunks_concatenate_to_done(self):
        gateway = FakeGateway(fragments=["The ", "answer ", "is 4."])
        orchestrator, registry, chat_id = self._anonymous(gateway)
        events = _collect(orchestrator.stream_anonymous_message(chat_id, "2+2?"))

        chunks = [e["content"] for e in events if e["type"] == "chunk"]
        done = events[-1]
        assert done["type"] == "done"
        assert "".join(chunks) == done["message"]["content"] == "The answer is 4."
        assert [m.content for m in registry.get(chat_id).messages] == ["2+2?", "The answer is 4."]
        assert gateway.stream_closed

    def test_durable_stream(self):
        store = InMemoryConversationStore()
        chat = asyncio.run(store.create_chat("user-1"))
        orchestrator = _orchestrator(FakeGateway(fragments=["ok"]), store=store)
        events = _collect(orchestrator.stream_message(FakeCaller(), chat.id, "hi"))
        assert [e["type"] for e in events] == ["chunk", "done"]
        assert events[-1]["message"]["chatId"] == chat.id

    def test_midstream_failure_yields_error_with_chat_id(self):
        gateway = FakeGateway(fragments=["Half ", UpstreamError("connection reset")])
        orchestrator, registry, chat_id = self._anonymous(gateway)
        events = _collect(orchestrator.stream_anonymous_message(chat_id, "go"))

        assert [e["type"] for e in events] == ["chunk", "error"]
        assert events[-1]["chatId"] == chat_id
        assert "done" not in [e["type"] for e in events]
        # Only the user message was kept
        assert [m.role for m in registry.get(chat_id).messages] == [MessageRole.USER]

    def test_empty_content_single_error_event(self):
        gateway = FakeGateway(fragments=["never"])
        orchestrator, registry, chat_id = self._anonymous(gateway)
        events = _collect(orchestrator.stream_anonymous_message(chat_id, "  "))
        assert events == [{"type": "error", "error": "Message content is required"}]
        assert registry.get(chat_id).messages == []
        assert gateway.calls == []

    def test_unknown_chat_error_event(self):
        events = _collect(_orchestrator(FakeGateway()).stream_message(FakeCaller(), "missing", "hi"))
        assert events == [{"type": "error", "error": "Chat not found"}]

    def test_invalid_model_error_event(self):
        orchestrator, _, chat_id = self._anonymous(FakeGateway(fragments=["x"]))
        events = _collect(orchestrator.stream_anonymous_message(chat_id, "hi", model="gpt-4"))
        assert len(events) == 1
        assert "gpt-4" in events[0]["error"]

    def test_empty_stream_is_error(self):
        orchestrator, registry, chat_id = self._anonymous(FakeGateway(fragments=[]))
        events = _collect(orchestrator.stream_anonymous_message(chat_id, "hi"))
        assert events[-1]["type"] == "error"
        assert events[-1]["chatId"] == chat_id
        assert len(registry.get(chat_id).messages) == 1

    def test_disconnect_persists_partial(self):
        """Text received up to the disconnect is kept with partial metadata."""
        gateway = FakeGateway(fragments=["Once ", "upon ", "a ", "time"])
        orchestrator, registry, chat_id = self._anonymous(gateway)
        polls = []

        async def is_disconnected():
            polls.append(1)
            return len(polls) > 2

        events = _collect(orchestrator.stream_anonymous_message(chat_id, "story", is_disconnected=is_disconnected))

        assert [e["type"] for e in events] == ["chunk", "chunk"]
        messages = registry.get(chat_id).messages
        assert messages[-1].content == "Once upon a "
        assert messages[-1].metadata == {"partial": True}
        assert gateway.stream_closed

    def test_user_write_failure_yields_error_event(self):
        store = _FailingStore(MessageRole.USER)
        chat = asyncio.run(store.create_chat("user-1"))
        gateway = FakeGateway(fragments=["never"])
        events = _collect(_orchestrator(gateway, store=store).stream_message(FakeCaller(), chat.id, "hi"))

        assert events == [{"type": "error", "error": GENERIC_ERROR_MESSAGE}]
        assert gateway.calls == []

    def test_history_state_error_yields_error_event(self):
        gateway = FakeGateway(fragments=[InvalidHistoryStateError("Last message must be from user")])
        orchestrator, registry, chat_id = self._anonymous(gateway)
        events = _collect(orchestrator.stream_anonymous_message(chat_id, "go"))
        assert events == [{"type": "error", "error": GENERIC_ERROR_MESSAGE, "chatId": chat_id}]

    def test_concurrent_reply_does_not_break_stream(self):
        store = _RacingStore()
        chat = asyncio.run(store.create_chat("user-1"))
        gateway = _StrictGateway(fragments=["fine"])
        events = _collect(_orchestrator(gateway, store=store).stream_message(FakeCaller(), chat.id, "mine"))
        assert [e["type"] for e in events] == ["chunk", "done"]

    def test_answer_write_failure_yields_error_event(self):
        store = _FailingStore(MessageRole.ASSISTANT)
        chat = asyncio.run(store.create_chat("user-1"))
        events = _collect(_orchestrator(FakeGateway(fragments=["ok"]), store=store).stream_message(FakeCaller(), chat.id, "hi"))

        assert [e["type"] for e in events] == ["chunk", "error"]
        assert events[-1] == {"type": "error", "error": GENERIC_ERROR_MESSAGE, "chatId": chat.id}

    def test_consumer_close_persists_partial(self):
        """Closing the event generator mid-stream keeps the partial text."""
        gateway = FakeGateway(fragments=["alpha ", "beta ", "gamma"])
        orchestrator, registry, chat_id = self._anonymous(gateway)

        async def run():
            stream = orchestrator.stream_anonymous_message(chat_id, "go")
            first = await stream.__anext__()
            await stream.aclose()
            return first

        first = asyncio.run(run())
        assert first == {"type": "chunk", "content": "alpha "}
        messages = registry.get(chat_id).messages
        assert messages[-1].content == "alpha "
        assert messages[-1].metadata == {"partial": True}


class TestMigration:
    """Adopting anonymous chats into durable storage."""

    def test_migrates_live_registry_chat(self):
        """Live registry contents win over the payload, and the entry is removed."""
        registry = EphemeralChatRegistry()
        store = InMemoryConversationStore()

        async def seed():
            chat = await registry.create("Anon")
            await registry.append(chat.id, MessageRole.USER, "q")
            await registry.append(chat.id, MessageRole.ASSISTANT, "a")
            return chat.id

        anon_id = asyncio.run(seed())
        orchestrator = _orchestrator(FakeGateway(), store=store, registry=registry)
        result = asyncio.run(
            orchestrator.migrate_chats(FakeCaller(), [{"id": anon_id, "title": "stale", "messages": []}])
        )

        migrated = result["migratedChats"]
        assert len(migrated) == 1
        assert migrated[0]["title"] == "Anon"
        assert [m["content"] for m in migrated[0]["messages"]] == ["q", "a"]
        assert migrated[0]["id"] != anon_id
        assert registry.get(anon_id) is None
        assert len(asyncio.run(store.list_chats("user-1"))) == 1

    def test_migrates_payload_when_expired(self):
        store = InMemoryConversationStore()
        payload = {
            "id": "anonymous_1_gone",
            "title": "From client",
            "messages": [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}],
        }
        result = asyncio.run(_orchestrator(FakeGateway(), store=store).migrate_chats(FakeCaller(), [payload]))
        chat = result["migratedChats"][0]
        assert chat["title"] == "From client"
        assert [m["role"] for m in chat["messages"]] == ["user", "assistant"]

    def test_bad_chat_skipped(self):
        chats = [
            {"id": "anonymous_1_a", "messages": [{"role": "wizard", "content": "x"}]},
            {"id": "anonymous_1_b", "title": "ok", "messages": [{"role": "user", "content": "y"}]},
        ]
        result = asyncio.run(_orchestrator(FakeGateway()).migrate_chats(FakeCaller(), chats))
        assert [c["title"] for c in result["migratedChats"]] == ["ok"]

    def test_empty_list_rejected(self):
        with pytest.raises(BadRequestError):
            asyncio.run(_orchestrator(FakeGateway()).migrate_chats(FakeCaller(), []))

    def test_all_failing(self):
        with pytest.raises(ParleyError) as exc_info:
            asyncio.run(
                _orchestrator(FakeGateway()).migrate_chats(FakeCaller(), [{"messages": [{"role": "user"}]}])
            )
        assert exc_info.value.message == "Failed to migrate any chats"
