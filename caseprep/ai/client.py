"""
Resilient wrapper around the OpenAI chat completion API.

Each attempt runs under a hard timeout; failed attempts (timeout,
provider/network error, structurally invalid response) are retried
after a fixed delay up to a bounded number of attempts.  When the
attempts are exhausted the last failure is re-raised unchanged.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, TypeVar

from caseprep.exceptions import (
    ConfigurationError,
    MalformedResponseError,
    ProviderTimeoutError,
    ValidationError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]
CompletionFn = Callable[..., Awaitable[Any]]

# Caller input and setup errors never succeed on a second try
_NON_RETRYABLE = (ValidationError, ConfigurationError)

_ALLOWED_OPTIONS = frozenset({
    "messages",
    "temperature",
    "max_tokens",
    "presence_penalty",
    "frequency_penalty",
    "response_format",
})


@dataclass(frozen=True)
class RetryPolicy:
    """Retry behaviour for one client, fixed for its lifetime.

    Attributes:
        max_attempts: Total attempts including the first (>= 1).
        inter_attempt_delay: Seconds to wait between attempts (>= 0).
        per_attempt_timeout: Wall-clock seconds allowed per attempt (> 0).
    """

    max_attempts: int = 3
    inter_attempt_delay: float = 1.0
    per_attempt_timeout: float = 10.0

    def __post_init__(self) -> None:
        if isinstance(self.max_attempts, bool) or not isinstance(self.max_attempts, int) or self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be an integer >= 1")
        if self.inter_attempt_delay < 0:
            raise ConfigurationError("inter_attempt_delay must be >= 0")
        if self.per_attempt_timeout <= 0:
            raise ConfigurationError("per_attempt_timeout must be > 0")


@dataclass(frozen=True)
class AIClientSettings:
    """Provider configuration.

    Attributes:
        api_key: Provider API key.
        model: Chat model name.
        max_tokens: Completion token limit.
        temperature: Sampling temperature (0.0-2.0).
    """

    api_key: str
    model: str = "gpt-4"
    max_tokens: int = 2048
    temperature: float = 0.7

    def __post_init__(self) -> None:
        if not self.api_key:
            raise ConfigurationError("AI provider API key is required")
        if not self.model:
            raise ConfigurationError("AI model name is required")
        if self.max_tokens <= 0:
            raise ConfigurationError("max_tokens must be positive")
        if not 0.0 <= self.temperature <= 2.0:
            raise ConfigurationError("temperature must be between 0 and 2")


def with_retry(
    operation: Operation[T],
    policy: RetryPolicy,
    *,
    label: str = "operation",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Operation[T]:
    """Wrap *operation* with a per-attempt timeout and fixed-delay retries.

    Args:
        operation: Zero-argument coroutine function to run.
        policy: Attempt count, delay and timeout.
        label: Name used in log records.
        sleep: Awaitable delay function (tests pass a no-op).

    Returns:
        A coroutine function with the same result type.  It re-raises
        the last observed exception once ``policy.max_attempts`` is
        exhausted.
    """

    async def wrapped() -> T:
        last_error: Optional[BaseException] = None
        for attempt in range(1, policy.max_attempts + 1):
            try:
                return await asyncio.wait_for(operation(), timeout=policy.per_attempt_timeout)
            except _NON_RETRYABLE:
                raise
            except asyncio.TimeoutError as exc:
                last_error = ProviderTimeoutError(
                    f"{label} timed out after {policy.per_attempt_timeout}s",
                    details={"attempt": attempt, "timeout_seconds": policy.per_attempt_timeout},
                )
                last_error.__cause__ = exc
            except Exception as exc:
                last_error = exc

            logger.warning(
                "Attempt failed",
                extra={
                    "operation": label,
                    "attempt": attempt,
                    "max_attempts": policy.max_attempts,
                    "error": str(last_error),
                    "error_type": type(last_error).__name__,
                },
            )
            if attempt < policy.max_attempts:
                await sleep(policy.inter_attempt_delay)

        logger.error(
            "Attempts exhausted",
            extra={"operation": label, "max_attempts": policy.max_attempts},
        )
        raise last_error

    return wrapped


def _field(obj: Any, name: str) -> Any:
    """Read *name* from an SDK object or a plain mapping."""
    if isinstance(obj, Mapping):
        return obj.get(name)
    return getattr(obj, name, None)


def extract_content(response: Any) -> str:
    """Return ``choices[0].message.content`` after structural validation.

    Raises:
        MalformedResponseError: If the completion fields are missing or
            the content is not non-empty text.
    """
    choices = _field(response, "choices")
    if not choices:
        raise MalformedResponseError("Invalid API response format: no choices")
    try:
        first = choices[0]
    except (TypeError, IndexError, KeyError) as exc:
        raise MalformedResponseError("Invalid API response format: choices not a list") from exc
    message = _field(first, "message")
    if message is None:
        raise MalformedResponseError("Invalid API response format: no message")
    content = _field(message, "content")
    if not isinstance(content, str) or not content.strip():
        raise MalformedResponseError("Invalid response content")
    return content


class ResilientClient:
    """Chat completion client with timeout and bounded retry.

    Args:
        settings: Provider key, model and sampling defaults.
        policy: Retry policy applied to every :meth:`send`.
        completion: Async callable with the signature of
            ``AsyncOpenAI().chat.completions.create``.  Defaults to the
            OpenAI SDK with its built-in retries disabled.
        sleep: Delay function used between attempts.
    """

    def __init__(
        self,
        settings: AIClientSettings,
        policy: Optional[RetryPolicy] = None,
        *,
        completion: Optional[CompletionFn] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._policy = policy or RetryPolicy()
        if completion is None:
            from openai import AsyncOpenAI

            sdk = AsyncOpenAI(api_key=settings.api_key, max_retries=0)
            completion = sdk.chat.completions.create
        self._completion = completion
        self._sleep = sleep
        self._attempts = 0

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    @property
    def attempts(self) -> int:
        """Total provider attempts made by this client."""
        return self._attempts

    def _build_request(self, prompt: str, options: Dict[str, Any]) -> Dict[str, Any]:
        unknown = set(options) - _ALLOWED_OPTIONS
        if unknown:
            raise ValidationError(
                "Unsupported completion options",
                details={"options": sorted(unknown)},
            )
        messages: List[Dict[str, str]] = options.get("messages") or [
            {"role": "system", "content": prompt}
        ]
        request: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": messages,
            "max_tokens": self._settings.max_tokens,
            "temperature": self._settings.temperature,
        }
        request.update({k: v for k, v in options.items() if k != "messages"})
        return request

    async def send(
        self,
        prompt: str,
        options: Optional[Dict[str, Any]] = None,
        *,
        parse: Optional[Callable[[str], T]] = None,
        label: str = "completion",
    ) -> Any:
        """Send one completion request with timeout and retries.

        Args:
            prompt: System prompt, used when ``options`` has no ``messages``.
            options: Overrides for messages and sampling parameters.
            parse: Optional parser applied to the content inside each
                attempt; a parse failure counts as a failed attempt.
            label: Name used in log records.

        Returns:
            The validated content string, or ``parse(content)``.

        Raises:
            ValidationError: If ``options`` contains unsupported keys.
            Exception: The last attempt's failure once retries are exhausted.
        """
        request = self._build_request(prompt, dict(options or {}))

        async def attempt() -> Any:
            self._attempts += 1
            response = await self._completion(**request)
            content = extract_content(response)
            return parse(content) if parse is not None else content

        return await with_retry(attempt, self._policy, label=label, sleep=self._sleep)()
