"""
Tests for the LLM gateway: history construction, retry, streaming, models.

The AsyncOpenAI client is replaced by a small fake exposing
chat.completions.create() so no network is touched.
"""

import asyncio
from types import SimpleNamespace

import httpx
import openai
import pytest

from conftest import make_config
from errors import InvalidHistoryStateError, InvalidModelError, UpstreamError
from routers.chat_orchestration.session import Message, MessageRole, utcnow
from services.llm_client import CONNECTIVITY_PROBE, LLMGateway

_REQUEST = httpx.Request("POST", "http://llm.test/v1/chat/completions")


def _msg(role: MessageRole, content: str) -> Message:
    return Message(id=f"m-{content}", chat_id="c1", role=role, content=content, created_at=utcnow())


def _completion(text: str):
    usage = SimpleNamespace(prompt_tokens=5, completion_tokens=2, total_tokens=7)
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=text))], usage=usage)


def _chunk(text):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=text))])


class _FakeStream:
    def __init__(self, pieces, error=None):
        self.pieces = pieces
        self.error = error
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for piece in self.pieces:
            yield _chunk(piece)
        if self.error:
            raise self.error

    async def close(self):
        self.closed = True


class _FakeCompletions:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class _FakeClient:
    def __init__(self, outcomes):
        self.completions = _FakeCompletions(outcomes)
        self.chat = SimpleNamespace(completions=self.completions)
        self.closed = False

    async def close(self):
        self.closed = True


async def _no_sleep(delay):
    return None


def _gateway(outcomes, **config):
    client = _FakeClient(outcomes)
    gateway = LLMGateway(
        client=client,
        config=make_config(**config),
        system_instruction="SYSTEM RULES",
        acknowledgement="Understood!",
        sleep=_no_sleep,
    )
    return gateway, client


class TestBuildMessages:
    """History construction rules."""

    def test_prepends_instruction_exchange(self):
        gateway, _ = _gateway([])
        messages = gateway.build_messages([_msg(MessageRole.USER, "hi")])
        assert messages == [
            {"role": "user", "content": "SYSTEM RULES"},
            {"role": "assistant", "content": "Understood!"},
            {"role": "user", "content": "hi"},
        ]

    def test_drops_system_messages_and_maps_roles(self):
        gateway, _ = _gateway([])
        history = [
            _msg(MessageRole.SYSTEM, "internal note"),
            _msg(MessageRole.USER, "q1"),
            _msg(MessageRole.ASSISTANT, "a1"),
            _msg(MessageRole.USER, "q2"),
        ]
        messages = gateway.build_messages(history)[2:]
        assert [m["role"] for m in messages] == ["user", "assistant", "user"]
        assert "internal note" not in [m["content"] for m in messages]

    def test_last_message_must_be_user(self):
        gateway, _ = _gateway([])
        with pytest.raises(InvalidHistoryStateError):
            gateway.build_messages([_msg(MessageRole.USER, "q"), _msg(MessageRole.ASSISTANT, "a")])

    def test_empty_history_rejected(self):
        gateway, _ = _gateway([])
        with pytest.raises(InvalidHistoryStateError):
            gateway.build_messages([])


class TestComplete:
    """Single-shot completion with retry."""

    def test_returns_content_and_usage(self):
        gateway, client = _gateway([_completion("4")])
        response = asyncio.run(gateway.complete([_msg(MessageRole.USER, "2+2?")]))
        assert response.content == "4"
        assert response.model == "gemini-2.5-flash"
        assert response.usage == {"promptTokens": 5, "responseTokens": 2, "totalTokens": 7}

        kwargs = client.completions.calls[0]
        assert kwargs["stream"] is False
        assert kwargs["model"] == "gemini-2.5-flash"
        assert kwargs["temperature"] == 0.7
        assert kwargs["top_p"] == 0.8
        assert kwargs["max_tokens"] == 2048
        assert kwargs["extra_body"] == {"top_k": 40}

    def test_per_request_model(self):
        """A request-scoped model never changes the default."""
        gateway, client = _gateway([_completion("ok")])
        asyncio.run(gateway.complete([_msg(MessageRole.USER, "q")], model="gemini-2.5-pro"))
        assert client.completions.calls[0]["model"] == "gemini-2.5-pro"
        assert gateway.current_model == "gemini-2.5-flash"

    def test_unknown_model_rejected_before_call(self):
        gateway, client = _gateway([_completion("ok")])
        with pytest.raises(InvalidModelError):
            asyncio.run(gateway.complete([_msg(MessageRole.USER, "q")], model="gpt-4"))
        assert client.completions.calls == []

    def test_transient_failures_then_success(self):
        """Two transient failures then success: three invocations."""
        gateway, client = _gateway(
            [
                openai.APIConnectionError(request=_REQUEST),
                RuntimeError("The model is overloaded. Please try again later."),
                _completion("finally"),
            ]
        )
        response = asyncio.run(gateway.complete([_msg(MessageRole.USER, "q")]))
        assert response.content == "finally"
        assert len(client.completions.calls) == 3

    def test_fatal_error_single_invocation(self):
        """A fatal error surfaces as UpstreamError after one invocation."""
        fatal = openai.APIStatusError(
            "invalid api key", response=httpx.Response(401, request=_REQUEST), body=None
        )
        gateway, client = _gateway([fatal, _completion("never")])
        with pytest.raises(UpstreamError) as exc_info:
            asyncio.run(gateway.complete([_msg(MessageRole.USER, "q")]))
        assert len(client.completions.calls) == 1
        assert exc_info.value.context["attempts"] == 1

    def test_retries_exhausted(self):
        gateway, client = _gateway(
            [openai.APIConnectionError(request=_REQUEST)] * 3, llm_retry_attempts=2
        )
        with pytest.raises(UpstreamError):
            asyncio.run(gateway.complete([_msg(MessageRole.USER, "q")]))
        assert len(client.completions.calls) == 3

    def test_history_error_not_retried(self):
        gateway, client = _gateway([_completion("never")])
        with pytest.raises(InvalidHistoryStateError):
            asyncio.run(gateway.complete([_msg(MessageRole.ASSISTANT, "a")]))
        assert client.completions.calls == []


class TestStreamComplete:
    """Streaming fragments."""

    def _collect(self, gateway, history):
        async def run():
            return [fragment async for fragment in gateway.stream_complete(history)]

        return asyncio.run(run())

    def test_yields_fragments_and_skips_empty(self):
        stream = _FakeStream(["Hel", "", None, "lo"])
        gateway, client = _gateway([stream])
        fragments = self._collect(gateway, [_msg(MessageRole.USER, "hi")])
        assert fragments == ["Hel", "lo"]
        assert client.completions.calls[0]["stream"] is True
        assert stream.closed

    def test_midstream_failure_raises_upstream_error(self):
        stream = _FakeStream(["partial"], error=RuntimeError("connection reset"))
        gateway, _ = _gateway([stream])
        received = []

        async def run():
            async for fragment in gateway.stream_complete([_msg(MessageRole.USER, "hi")]):
                received.append(fragment)

        with pytest.raises(UpstreamError):
            asyncio.run(run())
        assert received == ["partial"]
        assert stream.closed

    def test_start_failure_raises_upstream_error(self):
        gateway, _ = _gateway([openai.APIConnectionError(request=_REQUEST)])
        with pytest.raises(UpstreamError):
            self._collect(gateway, [_msg(MessageRole.USER, "hi")])

    def test_early_close_closes_upstream(self):
        stream = _FakeStream(["a", "b", "c"])
        gateway, _ = _gateway([stream])

        async def run():
            fragments = gateway.stream_complete([_msg(MessageRole.USER, "hi")])
            first = await fragments.__anext__()
            await fragments.aclose()
            return first

        assert asyncio.run(run()) == "a"
        assert stream.closed


class TestModelSelection:
    """Allow-list and default model swaps."""

    def test_switch_model_invalid_keeps_default(self):
        gateway, _ = _gateway([])
        with pytest.raises(InvalidModelError):
            gateway.switch_model("not-a-model")
        assert gateway.current_model == "gemini-2.5-flash"

    def test_switch_model_valid(self):
        gateway, _ = _gateway([])
        assert gateway.switch_model("gemini-2.5-pro") == "gemini-2.5-pro"
        assert gateway.current_model == "gemini-2.5-pro"
        assert gateway.resolve_model(None) == "gemini-2.5-pro"

    def test_default_outside_allow_list_falls_back(self):
        gateway, _ = _gateway([], model_default="retired-model")
        assert gateway.current_model == "gemini-2.5-flash"

    def test_available_models(self):
        gateway, _ = _gateway([])
        assert gateway.available_models == ["gemini-2.5-flash", "gemini-2.5-pro"]


class TestConnectivity:
    """test_connectivity never raises."""

    def test_success(self):
        gateway, client = _gateway([_completion("Hi!")])
        assert asyncio.run(gateway.test_connectivity()) is True
        sent = client.completions.calls[0]["messages"][-1]
        assert sent == {"role": "user", "content": CONNECTIVITY_PROBE}

    def test_failure_is_false(self):
        fatal = openai.APIStatusError("forbidden", response=httpx.Response(403, request=_REQUEST), body=None)
        gateway, _ = _gateway([fatal])
        assert asyncio.run(gateway.test_connectivity()) is False

    def test_close(self):
        gateway, client = _gateway([])
        asyncio.run(gateway.close())
        assert client.closed
