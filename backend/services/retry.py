"""
Retry policy for LLM calls - error classification and exponential backoff.

Failures are classified into a tagged result (Transient | Fatal) by a
configurable ErrorClassifier; retry_async consumes that result and either
sleeps and retries or propagates.

Classification order:
1. openai connection/timeout errors        -> Transient
2. openai status errors in retry_statuses  -> Transient (429, 5xx by default)
3. other openai status errors              -> Fatal (auth, bad request, not found)
4. message matches a configured pattern    -> Transient
5. anything else                           -> Fatal

Usage:
    classifier = ErrorClassifier.from_config(runtime_config)
    result = await retry_async(lambda: client.call(), classifier=classifier, max_retries=3)
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Optional, TypeVar, Union

import openai

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_JITTER_S = 1.0


@dataclass(frozen=True)
class Transient:
    """Failure worth retrying."""

    reason: str


@dataclass(frozen=True)
class Fatal:
    """Failure that retrying cannot fix."""

    reason: str


Classification = Union[Transient, Fatal]


class ErrorClassifier:
    """Maps an exception to Transient or Fatal."""

    def __init__(self, patterns: Iterable[str] = (), retry_statuses: Iterable[int] = (429, 500, 502, 503, 504)):
        self.patterns = [p.lower() for p in patterns if p]
        self.retry_statuses = set(retry_statuses)

    @classmethod
    def from_config(cls, config) -> "ErrorClassifier":
        return cls(patterns=config.llm_retry_patterns, retry_statuses=config.llm_retry_statuses)

    def __call__(self, error: BaseException) -> Classification:
        return self.classify(error)

    def classify(self, error: BaseException) -> Classification:
        if isinstance(error, (openai.APIConnectionError, openai.APITimeoutError)):
            return Transient(f"connection: {error.__class__.__name__}")

        if isinstance(error, openai.APIStatusError):
            if error.status_code in self.retry_statuses:
                return Transient(f"status {error.status_code}")
            return Fatal(f"status {error.status_code}")

        text = str(error).lower()
        for pattern in self.patterns:
            if pattern in text:
                return Transient(f"matched '{pattern}'")

        return Fatal(error.__class__.__name__)


def backoff_delay(attempt: int, base: float, cap: float = 30.0, jitter: Optional[float] = None) -> float:
    """Delay in seconds before retry number `attempt` (0-based).

    base * 2**attempt plus up to one second of jitter, capped.
    """
    if jitter is None:
        jitter = random.uniform(0, MAX_JITTER_S)
    return min(base * (2 ** attempt) + jitter, cap)


class RetryExhausted(Exception):
    """Raised by retry_async with the last underlying error as __cause__."""

    def __init__(self, attempts: int, last_error: BaseException, classification: Classification):
        self.attempts = attempts
        self.last_error = last_error
        self.classification = classification
        super().__init__(f"Gave up after {attempts} attempt(s): {last_error}")


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    classifier: Callable[[BaseException], Classification],
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "call",
) -> T:
    """Call fn until it succeeds, a Fatal error occurs, or retries run out.

    Args:
        fn: Zero-argument coroutine factory, invoked once per attempt
        classifier: Returns Transient or Fatal for a failure
        max_retries: Retries after the first attempt
        base_delay: Backoff base in seconds
        max_delay: Upper bound for one delay in seconds
        sleep: Awaitable sleep (injectable for tests)
        label: Name used in log lines

    Returns:
        The first successful result

    Raises:
        RetryExhausted: wrapping the last error (fatal, or transient with no budget left)
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            verdict = classifier(e)
            if isinstance(verdict, Fatal):
                logger.error(f"{label} failed with non-retryable error ({verdict.reason}): {e}")
                raise RetryExhausted(attempt + 1, e, verdict) from e

            if attempt >= max_retries:
                logger.error(f"{label} failed after {attempt + 1} attempts: {e}")
                raise RetryExhausted(attempt + 1, e, verdict) from e

            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                f"{label} transient error (attempt {attempt + 1}/{max_retries + 1}, {verdict.reason}): "
                f"{e}. Retrying in {delay:.1f}s..."
            )
            await sleep(delay)
            attempt += 1
