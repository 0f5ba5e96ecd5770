"""
RetryManager - synchronous, bounded retries for fallible operations.

"Synchronous" here means with respect to the owning instance: `run()` does not
return until the operation succeeded or was abandoned, and the retry delay
parks the calling task (asyncio.sleep) instead of scheduling a continuation.
Mutating operation classes additionally hold a per-instance lock, so two
mutating calls for the same instance can never interleave.

Classification:
- RetryableTransportError: verified pre-submission failure, retried
- NonRetryableExecutionError: raised immediately
- ConsistencyError / AmbiguousSubmissionError: the write may have landed.
  The caller's `reconcile` hook is consulted before anything is resubmitted;
  without a hook the error is raised.
- anything else: retried only if its message matches one of the operation
  class's retryable patterns (case-insensitive substring)

Events (best-effort, never affect the outcome):
    retry.started  once per run
    retry.attempt  before each retry, so k failures then success -> k events
    retry.success  / retry.failed  once per run
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar, Union

from lpbot.core.errors import (
    ConsistencyError,
    NonRetryableExecutionError,
    RetryableTransportError,
    RetryExhaustedError,
)
from lpbot.core.event_bus import EventType, publish_safely

log = logging.getLogger("lpbot")

T = TypeVar("T")


class OperationClass(str, Enum):
    POSITION_CREATE = "position-create"
    POSITION_CLOSE = "position-close"
    TOKEN_SWAP = "token-swap"
    READ_QUERY = "read-query"


MUTATING_CLASSES = frozenset({
    OperationClass.POSITION_CREATE,
    OperationClass.POSITION_CLOSE,
    OperationClass.TOKEN_SWAP,
})

_TRANSPORT_PATTERNS = (
    "timeout",
    "timed out",
    "rpc error",
    "429",
    "503",
    "connection reset",
    "network error",
    "blockhash not found",
    "simulation failed",
)


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int
    delay_ms: int
    backoff_factor: float = 2.0
    max_delay_ms: int = 30_000
    retryable_patterns: Tuple[str, ...] = ()

    def delay_for(self, attempt: int) -> int:
        """Delay after the given failed attempt (1-based)."""
        delay = self.delay_ms * (self.backoff_factor ** (attempt - 1))
        return int(min(delay, self.max_delay_ms))

    def merged(self, overrides: Optional[Dict[str, Any]]) -> "RetryConfig":
        if not overrides:
            return self
        changes = {k: v for k, v in overrides.items() if k in self.__dataclass_fields__}
        if "retryable_patterns" in changes:
            changes["retryable_patterns"] = tuple(changes["retryable_patterns"])
        return replace(self, **changes)


DEFAULT_RETRY_CONFIGS: Dict[OperationClass, RetryConfig] = {
    OperationClass.POSITION_CREATE: RetryConfig(
        max_attempts=3,
        delay_ms=2000,
        retryable_patterns=_TRANSPORT_PATTERNS + ("transaction expired", "insufficient compute"),
    ),
    OperationClass.POSITION_CLOSE: RetryConfig(
        max_attempts=3,
        delay_ms=1500,
        retryable_patterns=_TRANSPORT_PATTERNS + ("transaction expired",),
    ),
    OperationClass.TOKEN_SWAP: RetryConfig(
        max_attempts=5,
        delay_ms=1000,
        retryable_patterns=_TRANSPORT_PATTERNS + ("slippage", "quote expired", "route not found"),
    ),
    OperationClass.READ_QUERY: RetryConfig(
        max_attempts=2,
        delay_ms=500,
        retryable_patterns=_TRANSPORT_PATTERNS,
    ),
}

# Anything not listed gets a single attempt.
FALLBACK_RETRY_CONFIG = RetryConfig(max_attempts=1, delay_ms=0)


@dataclass
class RetryContext:
    """Scoped to one run() call."""
    operation_class: str
    instance_id: str
    max_attempts: int
    delay_ms: int
    retryable_patterns: Tuple[str, ...]
    attempt: int = 0
    operation_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at_ms: int = field(default_factory=lambda: int(time.time() * 1000))

    def payload(self, **extra: Any) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "operation_class": self.operation_class,
            "instance_id": self.instance_id,
            "attempt": self.attempt,
            "max_attempts": self.max_attempts,
            **extra,
        }


Reconcile = Callable[[BaseException, RetryContext], Awaitable[Optional[Any]]]
OpClassLike = Union[OperationClass, str]


class RetryManager:
    """
    Wraps every state-mutating call of the engine.

    Usage:
        position = await retry.run(
            lambda: service.open(pool, rng, shape, amount),
            OperationClass.POSITION_CREATE,
            instance_id,
        )
    """

    def __init__(
        self,
        event_sink: Optional[Any] = None,
        defaults: Optional[Dict[OperationClass, RetryConfig]] = None,
        backoff_factor: Optional[float] = None,
        max_delay_ms: Optional[int] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        metrics: Optional[Any] = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        base = dict(defaults or DEFAULT_RETRY_CONFIGS)
        if backoff_factor is not None or max_delay_ms is not None:
            base = {
                k: replace(
                    v,
                    backoff_factor=v.backoff_factor if backoff_factor is None else backoff_factor,
                    max_delay_ms=v.max_delay_ms if max_delay_ms is None else max_delay_ms,
                )
                for k, v in base.items()
            }
        self._defaults: Dict[str, RetryConfig] = {self._key(k): v for k, v in base.items()}
        self._sink = event_sink
        self._sleep = sleep
        self._metrics = metrics
        self._log_event = log_event or self._default_log
        self._instance_locks: Dict[str, asyncio.Lock] = {}
        self._stats = {"runs": 0, "successes": 0, "failures": 0, "retries": 0, "reconciled": 0}

    def _default_log(self, event: str, **kwargs: Any) -> None:
        level = logging.WARNING if event in ("retry_attempt", "retry_failed", "event_publish_failed") else logging.INFO
        log.log(level, json.dumps({"event": event, **kwargs}, default=str))

    @staticmethod
    def _key(operation_class: OpClassLike) -> str:
        return operation_class.value if isinstance(operation_class, OperationClass) else str(operation_class)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def get_default_config(self, operation_class: OpClassLike) -> RetryConfig:
        return self._defaults.get(self._key(operation_class), FALLBACK_RETRY_CONFIG)

    def update_default_config(self, operation_class: OpClassLike, **changes: Any) -> RetryConfig:
        updated = self.get_default_config(operation_class).merged(changes)
        self._defaults[self._key(operation_class)] = updated
        self._log_event("retry_config_updated", operation_class=self._key(operation_class), **changes)
        return updated

    def resolve_config(self, operation_class: OpClassLike, override: Optional[Dict[str, Any]] = None) -> RetryConfig:
        config = self.get_default_config(operation_class).merged(override)
        if config.max_attempts < 1:
            config = replace(config, max_attempts=1)
        return config

    @staticmethod
    def is_retryable(error: BaseException, config: RetryConfig) -> bool:
        if isinstance(error, NonRetryableExecutionError):
            return False
        if isinstance(error, RetryableTransportError):
            return True
        message = str(error).lower()
        return any(p.lower() in message for p in config.retryable_patterns)

    def _lock_for(self, instance_id: str) -> asyncio.Lock:
        lock = self._instance_locks.get(instance_id)
        if lock is None:
            lock = asyncio.Lock()
            self._instance_locks[instance_id] = lock
        return lock

    def release_instance(self, instance_id: str) -> None:
        """Forget the instance's lock (after delete)."""
        lock = self._instance_locks.get(instance_id)
        if lock is not None and not lock.locked():
            del self._instance_locks[instance_id]

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_class: OpClassLike,
        instance_id: str,
        override: Optional[Dict[str, Any]] = None,
        *,
        validate: Optional[Callable[[T], bool]] = None,
        reconcile: Optional[Reconcile] = None,
    ) -> T:
        """
        Execute `operation` until it succeeds or retries are exhausted.

        Args:
            operation: zero-arg coroutine factory; called once per attempt
            operation_class: selects retry defaults and retryable patterns
            instance_id: owning instance (events, per-instance serialization)
            override: partial RetryConfig fields merged over the defaults
            validate: result check; False raises NonRetryableExecutionError
            reconcile: consulted on ConsistencyError. Return the landed result
                to finish successfully, or None if nothing landed (retry allowed).

        Raises:
            NonRetryableExecutionError, ConsistencyError (no reconcile hook),
            RetryExhaustedError, or the original error when not retryable.
        """
        key = self._key(operation_class)
        config = self.resolve_config(operation_class, override)
        ctx = RetryContext(
            operation_class=key,
            instance_id=instance_id,
            max_attempts=config.max_attempts,
            delay_ms=config.delay_ms,
            retryable_patterns=config.retryable_patterns,
        )
        self._stats["runs"] += 1
        self._publish(EventType.RETRY_STARTED, ctx.payload())

        is_mutating = key in {c.value for c in MUTATING_CLASSES}
        guard = self._lock_for(instance_id) if is_mutating else contextlib.nullcontext()
        async with guard:
            return await self._attempt_loop(operation, config, ctx, validate, reconcile)

    async def _attempt_loop(
        self,
        operation: Callable[[], Awaitable[T]],
        config: RetryConfig,
        ctx: RetryContext,
        validate: Optional[Callable[[T], bool]],
        reconcile: Optional[Reconcile],
    ) -> T:
        while True:
            ctx.attempt += 1
            try:
                result = await operation()
                if validate is not None and not validate(result):
                    raise NonRetryableExecutionError("operation result validation failed")
            except NonRetryableExecutionError as exc:
                self._fail(ctx, exc)
                raise
            except ConsistencyError as exc:
                if reconcile is None:
                    self._fail(ctx, exc)
                    raise
                try:
                    landed = await reconcile(exc, ctx)
                except Exception as rec_exc:
                    self._fail(ctx, rec_exc)
                    raise
                if landed is not None:
                    self._stats["reconciled"] += 1
                    self._log_event("retry_reconciled", **ctx.payload(error=str(exc)))
                    self._succeed(ctx)
                    return landed
                error: BaseException = exc
            except Exception as exc:
                if not self.is_retryable(exc, config):
                    self._fail(ctx, exc)
                    raise
                error = exc
            else:
                self._succeed(ctx)
                return result

            if ctx.attempt >= config.max_attempts:
                exhausted = RetryExhaustedError(ctx.operation_class, ctx.attempt, error)
                self._fail(ctx, error)
                raise exhausted from error

            delay_ms = config.delay_for(ctx.attempt)
            self._stats["retries"] += 1
            self._count(ctx, "retry")
            self._publish(
                EventType.RETRY_ATTEMPT,
                ctx.payload(error=str(error), error_type=type(error).__name__, next_delay_ms=delay_ms),
            )
            self._log_event(
                "retry_attempt",
                **ctx.payload(error=str(error), next_delay_ms=delay_ms),
            )
            await self._sleep(delay_ms / 1000.0)

    def _succeed(self, ctx: RetryContext) -> None:
        self._stats["successes"] += 1
        self._count(ctx, "success")
        self._publish(
            EventType.RETRY_SUCCESS,
            ctx.payload(duration_ms=int(time.time() * 1000) - ctx.started_at_ms),
        )

    def _fail(self, ctx: RetryContext, error: BaseException) -> None:
        self._stats["failures"] += 1
        self._count(ctx, "failed")
        payload = ctx.payload(error=str(error), error_type=type(error).__name__)
        self._publish(EventType.RETRY_FAILED, payload)
        self._log_event("retry_failed", **payload)

    def _count(self, ctx: RetryContext, outcome: str) -> None:
        if self._metrics is not None:
            self._metrics.retry_events.labels(operation_class=ctx.operation_class, outcome=outcome).inc()

    def _publish(self, event_type: EventType, payload: Dict[str, Any]) -> None:
        publish_safely(
            self._sink,
            event_type.value,
            payload,
            on_error=lambda name, exc: self._log_event("event_publish_failed", event_name=name, error=str(exc)),
        )

    def get_stats(self) -> Dict[str, Any]:
        return dict(self._stats)
