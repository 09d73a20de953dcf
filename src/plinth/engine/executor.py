# src/plinth/engine/executor.py
"""ResilientCallExecutor: timeout, retry and admission around one call site.

Provides the only path by which provider clients reach the network:
- Per-attempt timeout (the caller stops waiting; the operation is not killed)
- Retry of retryable errors with the fixed-schedule BackoffPolicy
- Admission through a per-provider AdmissionLimiter
- One request id per outer call, threaded through every attempt
- Optional CallStats accumulation for run telemetry

Uses tenacity's AsyncRetrying for the retry loop. Exactly one attempt is
in flight per execute() call; retries are sequential, never speculative.
After the last permitted attempt the final error is re-raised unchanged.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)

from plinth.contracts import (
    CallTimeoutError,
    ErrorClassification,
    classify_exception,
    is_retryable,
)
from plinth.engine.backoff import BackoffPolicy

if TYPE_CHECKING:
    from plinth.core.admission import AdmissionLimiter
    from plinth.core.config import RetrySettings

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class CallAttemptContext:
    """Ephemeral per-attempt context, visible to the operation being run.

    Attributes:
        request_id: Id of the outer execute() call (same for every attempt)
        attempt: 0-based attempt index
        delay_ms: Backoff waited before this attempt (None for the first)
        classification: Set when the attempt fails
    """

    request_id: str
    attempt: int
    delay_ms: float | None = None
    classification: ErrorClassification | None = None


_current_attempt: ContextVar[CallAttemptContext | None] = ContextVar("plinth_call_attempt", default=None)


def current_attempt() -> CallAttemptContext | None:
    """Attempt context of the executor call running in this task, if any."""
    return _current_attempt.get()


@dataclass
class CallStats:
    """Counters for outbound calls, accumulated by the caller.

    Pass one instance to several execute() calls to aggregate a step's
    upstream activity, then persist it with Orchestrator.record_telemetry().
    """

    requests: int = 0
    retries: int = 0
    timeouts: int = 0
    rate_limits: int = 0
    failures: int = 0
    input_tokens: int = 0
    output_tokens: int = 0

    def record_usage(self, usage: Any) -> None:
        """Add token usage from a normalized response (None is ignored)."""
        if usage is None:
            return
        self.input_tokens += usage.input_tokens
        self.output_tokens += usage.output_tokens

    def to_dict(self) -> dict[str, int]:
        return {
            "requests": self.requests,
            "retries": self.retries,
            "timeouts": self.timeouts,
            "rate_limits": self.rate_limits,
            "failures": self.failures,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
        }


@dataclass
class _CallState:
    request_id: str
    provider: str
    stats: CallStats | None
    last_delay_ms: float | None = None
    attempts: list[CallAttemptContext] = field(default_factory=list)


def _consume_outcome(task: asyncio.Future[Any]) -> None:
    # Abandoned (timed-out) attempts may fail later; mark the exception retrieved
    if not task.cancelled():
        task.exception()


class ResilientCallExecutor:
    """Runs single-attempt async operations with timeout and retry.

    Example:
        executor = ResilientCallExecutor(BackoffPolicy(), default_timeout=30.0)

        response = await executor.execute(
            lambda: client.generate(request),
            provider="generation",
            limiter=registry.get_limiter("generation"),
        )
    """

    def __init__(
        self,
        backoff: BackoffPolicy | None = None,
        *,
        default_timeout: float = 30.0,
        default_max_retries: int = 3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize executor.

        Args:
            backoff: Delay policy between attempts (default schedule if None)
            default_timeout: Per-attempt timeout in seconds
            default_max_retries: Retries after the first attempt
            sleep: Async sleep used between attempts (injectable for tests)
        """
        if default_timeout <= 0:
            raise ValueError(f"default_timeout must be positive, got {default_timeout}")
        if default_max_retries < 0:
            raise ValueError(f"default_max_retries must be >= 0, got {default_max_retries}")
        self._backoff = backoff or BackoffPolicy()
        self._default_timeout = default_timeout
        self._default_max_retries = default_max_retries
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> ResilientCallExecutor:
        """Factory from RetrySettings config model."""
        return cls(
            BackoffPolicy.from_settings(settings),
            default_timeout=settings.timeout_seconds,
            default_max_retries=settings.max_retries,
        )

    @property
    def backoff(self) -> BackoffPolicy:
        return self._backoff

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        timeout: float | None = None,
        max_retries: int | None = None,
        provider: str = "external",
        limiter: AdmissionLimiter | None = None,
        request_id: str | None = None,
        stats: CallStats | None = None,
    ) -> T:
        """Execute operation with timeout, retry and admission control.

        Args:
            operation: Zero-argument callable returning a fresh awaitable per attempt
            timeout: Per-attempt timeout in seconds (default_timeout if None)
            max_retries: Retries after the first attempt (default_max_retries if None)
            provider: Provider name for logs and timeout errors
            limiter: Optional admission limiter; a slot is held while the
                underlying operation runs
            request_id: Reuse an existing request id instead of generating one
            stats: Optional counters to update

        Returns:
            Result of the first successful attempt

        Raises:
            Exception: The last attempt's error, unchanged, when it is not
                retryable or no retries remain
        """
        budget = self._default_timeout if timeout is None else timeout
        retries = self._default_max_retries if max_retries is None else max_retries
        if budget <= 0:
            raise ValueError(f"timeout must be positive, got {budget}")
        if retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {retries}")

        state = _CallState(
            request_id=request_id or uuid.uuid4().hex,
            provider=provider,
            stats=stats,
        )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(retries + 1),
            wait=self._wait,
            retry=retry_if_exception(is_retryable),
            before_sleep=lambda retry_state: self._before_sleep(state, retry_state),
            sleep=self._sleep,
            reraise=True,
        )

        with structlog.contextvars.bound_contextvars(request_id=state.request_id, provider=provider):
            async for attempt_state in retrying:
                with attempt_state:
                    context = CallAttemptContext(
                        request_id=state.request_id,
                        attempt=attempt_state.retry_state.attempt_number - 1,
                        delay_ms=state.last_delay_ms,
                    )
                    state.attempts.append(context)
                    token = _current_attempt.set(context)
                    try:
                        with structlog.contextvars.bound_contextvars(attempt=context.attempt):
                            return await self._run_attempt(operation, budget, state, limiter)
                    except Exception as e:
                        context.classification = classify_exception(e)
                        self._record_failure(state, context, e, final=context.attempt >= retries)
                        raise
                    finally:
                        _current_attempt.reset(token)

        # AsyncRetrying either returns through the loop body or re-raises
        raise RuntimeError("Unexpected state in retry loop")  # pragma: no cover

    def _wait(self, retry_state: RetryCallState) -> float:
        # attempt_number counts attempts made so far; retry index is 0-based
        return self._backoff.delay(retry_state.attempt_number - 1)

    def _before_sleep(self, state: _CallState, retry_state: RetryCallState) -> None:
        delay_seconds = retry_state.next_action.sleep if retry_state.next_action is not None else 0.0
        state.last_delay_ms = delay_seconds * 1000.0
        if state.stats is not None:
            state.stats.retries += 1
        error = retry_state.outcome.exception() if retry_state.outcome is not None else None
        logger.warning(
            "Retrying external call",
            attempt=retry_state.attempt_number - 1,
            delay_ms=round(state.last_delay_ms, 1),
            classification=classify_exception(error).value if error is not None else None,
            error=str(error) if error is not None else None,
        )

    async def _run_attempt(
        self,
        operation: Callable[[], Awaitable[T]],
        budget: float,
        state: _CallState,
        limiter: AdmissionLimiter | None,
    ) -> T:
        if limiter is not None:
            await limiter.acquire()
        if state.stats is not None:
            state.stats.requests += 1

        try:
            task: asyncio.Future[T] = asyncio.ensure_future(operation())
        except BaseException:
            if limiter is not None:
                limiter.release()
            raise
        if limiter is not None:
            # Slot is held until the operation itself settles, even if we stop waiting
            task.add_done_callback(lambda _t: limiter.release())
        task.add_done_callback(_consume_outcome)

        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=budget)
        except TimeoutError:
            raise CallTimeoutError(
                f"{state.provider} call timed out after {budget:g}s",
                provider=state.provider,
                request_id=state.request_id,
            ) from None

    def _record_failure(
        self,
        state: _CallState,
        context: CallAttemptContext,
        error: Exception,
        *,
        final: bool,
    ) -> None:
        classification = context.classification or ErrorClassification.UNEXPECTED
        if state.stats is not None:
            if classification is ErrorClassification.TIMEOUT:
                state.stats.timeouts += 1
            elif classification is ErrorClassification.RATE_LIMITED:
                state.stats.rate_limits += 1

        if classification.retryable and not final:
            return  # logged by _before_sleep

        if state.stats is not None:
            state.stats.failures += 1

        if classification is ErrorClassification.UNEXPECTED:
            logger.error(
                "External call raised an unexpected error",
                attempt=context.attempt,
                error_type=type(error).__name__,
                error=str(error),
                exc_info=error,
            )
        elif classification.retryable:
            logger.error(
                "External call failed after exhausting retries",
                attempts=context.attempt + 1,
                classification=classification.value,
                error=str(error),
            )
        else:
            logger.warning(
                "External call failed with non-retryable error",
                attempt=context.attempt,
                classification=classification.value,
                error=str(error),
            )
