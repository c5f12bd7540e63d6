"""
Retry policy and provider cooldowns.

RetryPolicy wraps one provider call in tenacity's exponential backoff with
jitter, retrying only transient failures. A rate limit that survives the
retries puts its provider into a cooldown window; turns aimed at a cooling
provider are refused before any request is sent.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from config.settings import RetryConfig
from providers.errors import ErrorKind, ProviderError

logger = structlog.get_logger()


class CooldownRegistry:
    """provider → epoch-seconds until which no request may be sent."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._until: dict[str, float] = {}

    def record(self, provider: str, seconds: float) -> float:
        until = self._clock() + max(0.0, seconds)
        # never shorten an existing window
        self._until[provider] = max(until, self._until.get(provider, 0.0))
        logger.warning("provider_cooldown_started", provider=provider, seconds=round(seconds, 1))
        return self._until[provider]

    def remaining(self, provider: str) -> float:
        until = self._until.get(provider)
        if until is None:
            return 0.0
        left = until - self._clock()
        if left <= 0:
            del self._until[provider]
            return 0.0
        return left

    def is_cooling(self, provider: str) -> bool:
        return self.remaining(provider) > 0

    def until_ms(self, provider: str) -> Optional[int]:
        if not self.is_cooling(provider):
            return None
        return int(self._until[provider] * 1000)

    def clear(self, provider: str = None):
        if provider is None:
            self._until.clear()
        else:
            self._until.pop(provider, None)


class RetryPolicy:
    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 0.5,
        backoff_factor: float = 2.0,
        max_delay: float = 8.0,
        jitter: float = 0.25,
        default_cooldown: float = 60.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.backoff_factor = backoff_factor
        self.max_delay = max_delay
        self.jitter = jitter
        self.default_cooldown = default_cooldown
        self._sleep = sleep
        self.cooldowns = CooldownRegistry(clock)

    @classmethod
    def from_config(cls, config: RetryConfig, **overrides) -> RetryPolicy:
        return cls(
            max_attempts=config.max_attempts,
            initial_delay=config.initial_delay_s,
            backoff_factor=config.backoff_factor,
            max_delay=config.max_delay_s,
            jitter=config.jitter_s,
            default_cooldown=config.default_cooldown_s,
            **overrides,
        )

    def is_retryable(self, exc: BaseException) -> bool:
        if not isinstance(exc, ProviderError) or not exc.is_transient:
            return False
        # a server asking for a longer pause than we are willing to wait
        if exc.kind == ErrorKind.RATE_LIMITED and exc.retry_after is not None:
            return exc.retry_after <= self.max_delay
        return True

    def _wait(self, initial_delay: float, backoff_factor: float):
        backoff = wait_exponential(
            multiplier=initial_delay, max=self.max_delay, exp_base=backoff_factor,
        ) + wait_random(0, self.jitter)

        def wait(retry_state: RetryCallState) -> float:
            delay = backoff(retry_state)
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            hinted = getattr(exc, "retry_after", None)
            if hinted:
                delay = max(delay, hinted)
            return min(delay, self.max_delay)

        return wait

    @staticmethod
    def _log_retry(retry_state: RetryCallState):
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.info(
            "provider_call_retry",
            attempt=retry_state.attempt_number,
            delay=round(retry_state.next_action.sleep, 3) if retry_state.next_action else None,
            provider=getattr(exc, "provider", None),
            kind=getattr(getattr(exc, "kind", None), "value", None),
        )

    async def execute(
        self,
        action: Callable[[], Awaitable[Any]],
        *,
        max_attempts: int = None,
        initial_delay: float = None,
        backoff_factor: float = None,
    ) -> Any:
        """Run action, retrying transient provider failures with backoff."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max_attempts or self.max_attempts),
            wait=self._wait(
                self.initial_delay if initial_delay is None else initial_delay,
                self.backoff_factor if backoff_factor is None else backoff_factor,
            ),
            retry=retry_if_exception(self.is_retryable),
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await action()
        except ProviderError as e:
            self.record_failure(e)
            raise

    def record_failure(self, exc: BaseException):
        """A rate limit that reached the caller starts its provider's cooldown."""
        if isinstance(exc, ProviderError) and exc.kind == ErrorKind.RATE_LIMITED:
            self.cooldowns.record(exc.provider, exc.retry_after or self.default_cooldown)
