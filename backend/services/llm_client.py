"""
LLM Gateway - wraps the async OpenAI SDK pointed at any OpenAI-compatible endpoint.

Responsibilities:
- History construction: synthetic system exchange first, system-role messages
  dropped, last message must be user-authored
- complete(): single-shot call with classified retry and exponential backoff
- stream_complete(): lazy async sequence of text fragments (no retry)
- Model allow-list: per-request resolve_model() plus a deployment default
  that switch_model() swaps atomically
- test_connectivity(): one best-effort round trip

Fragments are produced by iterating the SDK's async stream, so every fragment
boundary is a suspension point and a slow model never blocks the event loop.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from openai import AsyncOpenAI

from config import runtime_config
from errors import InvalidHistoryStateError, InvalidModelError, UpstreamError
from logging_config import log_llm
from routers.chat_orchestration.session import Message, MessageRole, utcnow
from services.retry import ErrorClassifier, RetryExhausted, retry_async

logger = logging.getLogger(__name__)

UNAVAILABLE_MESSAGE = "The AI service is temporarily unavailable."

CONNECTIVITY_PROBE = "Hello, this is a test message."


@dataclass
class LLMResponse:
    """Result of a single-shot completion."""

    content: str
    model: str
    usage: Dict[str, int] = field(default_factory=dict)


def _usage_from_openai(usage: Any) -> Dict[str, int]:
    if usage is None:
        return {"promptTokens": 0, "responseTokens": 0, "totalTokens": 0}
    return {
        "promptTokens": getattr(usage, "prompt_tokens", 0) or 0,
        "responseTokens": getattr(usage, "completion_tokens", 0) or 0,
        "totalTokens": getattr(usage, "total_tokens", 0) or 0,
    }


class LLMGateway:
    """Single entry point to the text-generation model."""

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        config=None,
        system_instruction: str = "",
        acknowledgement: str = "",
        classifier: Optional[ErrorClassifier] = None,
        sleep=None,
    ):
        """
        Args:
            client: AsyncOpenAI instance (built from config when omitted)
            config: RuntimeConfig (defaults to the process singleton)
            system_instruction: Fixed instruction sent as the first user turn
            acknowledgement: Model reply to the instruction, sent as the second turn
            classifier: Transient/Fatal classifier for retries
            sleep: Awaitable sleep used between retries (injectable for tests)
        """
        self.config = config or runtime_config
        self._client = client or AsyncOpenAI(
            base_url=self.config.llm_base_url,
            api_key=self.config.llm_api_key or "not-needed",
            timeout=self.config.llm_timeout,
            max_retries=0,  # retries are ours, with classification
        )
        self.system_instruction = system_instruction
        self.acknowledgement = acknowledgement
        self.classifier = classifier or ErrorClassifier.from_config(self.config)
        self._sleep = sleep

        self._available = list(self.config.models_available)
        self._model_lock = threading.Lock()
        default = self.config.model_default
        if default not in self._available:
            logger.warning(f"Default model {default} not in allow-list, using {self._available[0]}")
            default = self._available[0]
        self._model = default

    # ------------------------------------------------------------------
    # Model selection
    # ------------------------------------------------------------------

    @property
    def available_models(self) -> List[str]:
        return list(self._available)

    @property
    def current_model(self) -> str:
        return self._model

    def resolve_model(self, name: Optional[str] = None) -> str:
        """Validate a per-request model choice, or fall back to the default.

        Raises:
            InvalidModelError: name is not on the allow-list
        """
        if not name:
            return self._model
        if name not in self._available:
            raise InvalidModelError(name, self._available)
        return name

    def switch_model(self, name: str) -> str:
        """Swap the deployment default model.

        The previous model stays active when validation fails.

        Raises:
            InvalidModelError: name is not on the allow-list
        """
        model = self.resolve_model(name)
        with self._model_lock:
            previous, self._model = self._model, model
        if previous != model:
            logger.info(f"Default model switched: {previous} -> {model}")
        return model

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def build_messages(self, history: Sequence[Message]) -> List[Dict[str, str]]:
        """Convert chat history to the upstream message list.

        The upstream conversation has no system slot, so the instruction is sent
        as a user/assistant exchange ahead of the real history.

        Raises:
            InvalidHistoryStateError: history is empty or does not end with a user message
        """
        if not history or history[-1].role != MessageRole.USER:
            raise InvalidHistoryStateError("Last message must be from user")

        messages: List[Dict[str, str]] = []
        if self.system_instruction:
            messages.append({"role": "user", "content": self.system_instruction})
            messages.append({"role": "assistant", "content": self.acknowledgement})

        for msg in history:
            if msg.role == MessageRole.SYSTEM:
                continue
            role = "user" if msg.role == MessageRole.USER else "assistant"
            messages.append({"role": role, "content": msg.content})
        return messages

    def _request_kwargs(self, model: str, messages: List[Dict[str, str]]) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"model": model, "messages": messages}
        kwargs.update(self.config.get_llm_params())
        # top_k is not part of the OpenAI schema
        if self.config.top_k:
            kwargs["extra_body"] = {"top_k": self.config.top_k}
        return kwargs

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def complete(self, history: Sequence[Message], model: Optional[str] = None) -> LLMResponse:
        """Single-shot completion with retry and backoff.

        Args:
            history: Ordered messages, last one user-authored
            model: Model for this call (default model when None)

        Returns:
            LLMResponse with content and token usage

        Raises:
            InvalidModelError: model not on the allow-list
            InvalidHistoryStateError: history precondition violated
            UpstreamError: retries exhausted or a fatal upstream error
        """
        model = self.resolve_model(model)
        kwargs = self._request_kwargs(model, self.build_messages(history))

        async def _call():
            return await self._client.chat.completions.create(stream=False, **kwargs)

        retry_kwargs = {}
        if self._sleep is not None:
            retry_kwargs["sleep"] = self._sleep

        log_llm(logger, "start", model=model)
        start = time.time()
        try:
            response = await retry_async(
                _call,
                classifier=self.classifier,
                max_retries=self.config.llm_retry_attempts,
                base_delay=self.config.llm_retry_delay_ms / 1000.0,
                max_delay=self.config.llm_retry_max_delay_ms / 1000.0,
                label=f"LLM {model}",
                **retry_kwargs,
            )
        except RetryExhausted as e:
            raise UpstreamError(
                UNAVAILABLE_MESSAGE,
                details=str(e.last_error),
                model=model,
                attempts=e.attempts,
            ) from e.last_error
        log_llm(logger, "end", model=model, duration=time.time() - start)

        content = ""
        if response.choices:
            content = response.choices[0].message.content or ""
        return LLMResponse(content=content, model=model, usage=_usage_from_openai(response.usage))

    async def stream_complete(
        self, history: Sequence[Message], model: Optional[str] = None
    ) -> AsyncIterator[str]:
        """Stream a completion as text fragments.

        Finite and not restartable. The natural end of iteration means the model
        finished; an upstream failure raises UpstreamError mid-iteration and no
        terminator is produced. Closing the iterator early closes the upstream
        stream.
        """
        model = self.resolve_model(model)
        kwargs = self._request_kwargs(model, self.build_messages(history))

        log_llm(logger, "start", model=f"{model} (stream)")
        start = time.time()
        try:
            stream = await self._client.chat.completions.create(stream=True, **kwargs)
        except Exception as e:
            logger.error(f"LLM stream could not start ({model}): {e}")
            raise UpstreamError(UNAVAILABLE_MESSAGE, details=str(e), model=model) from e

        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                text = chunk.choices[0].delta.content
                if text:
                    yield text
        except UpstreamError:
            raise
        except Exception as e:
            logger.error(f"LLM stream failed ({model}): {e}")
            raise UpstreamError(UNAVAILABLE_MESSAGE, details=str(e), model=model) from e
        finally:
            await stream.close()
        log_llm(logger, "end", model=f"{model} (stream)", duration=time.time() - start)

    async def test_connectivity(self) -> bool:
        """Best-effort round trip. Never raises."""
        probe = Message(
            id="test_message",
            chat_id="test_chat",
            role=MessageRole.USER,
            content=CONNECTIVITY_PROBE,
            created_at=utcnow(),
        )
        try:
            await self.complete([probe])
            return True
        except Exception as e:
            logger.warning(f"LLM connectivity test failed: {e}")
            return False

    async def close(self) -> None:
        await self._client.close()
