"""
Error taxonomy for the position engine.

Pure components (range calculation, stop-loss, recreation) only ever raise
ValidationError subclasses. Transport and execution errors are raised by
collaborators and classified by the RetryManager:

- RetryableTransportError: verified pre-submission failure, safe to resubmit
- NonRetryableExecutionError: surfaced immediately, instance goes to ERROR
- ConsistencyError: local record disagrees with chain state; reconcile first
"""

from __future__ import annotations

from typing import Any, List, Optional


class LpBotError(Exception):
    """Base class for all engine errors."""


class ValidationError(LpBotError):
    """Bad configuration or input. Fatal, raised before anything is submitted."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class InvalidRangeError(ValidationError):
    """Bin count outside [1, 69] or non-integral active bin."""


class RetryableTransportError(LpBotError):
    """Timeout, RPC error, simulation failure or transient slippage."""


class NonRetryableExecutionError(LpBotError):
    """Insufficient funds, invalid signature, rejected result."""


class ConsistencyError(LpBotError):
    """On-chain state disagrees with the local record."""


class AmbiguousSubmissionError(ConsistencyError):
    """A write may have been broadcast; its outcome is unknown until reconciled."""

    def __init__(self, message: str, tx_ref: Optional[str] = None) -> None:
        super().__init__(message)
        self.tx_ref = tx_ref


class PositionNotFoundError(ConsistencyError):
    """A position the record references no longer exists on chain."""

    def __init__(self, address: str) -> None:
        super().__init__(f"position not found: {address}")
        self.address = address


class RetryExhaustedError(RetryableTransportError):
    """All attempts of a retryable operation failed."""

    def __init__(self, operation_class: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"{operation_class} failed after {attempts} attempts: {last_error}")
        self.operation_class = operation_class
        self.attempts = attempts
        self.last_error = last_error


class InstanceNotFoundError(LpBotError):
    def __init__(self, instance_id: str) -> None:
        super().__init__(f"instance not found: {instance_id}")
        self.instance_id = instance_id


class InvalidStateError(LpBotError):
    """Lifecycle action not permitted in the instance's current state."""

    def __init__(self, instance_id: str, state: str, action: str) -> None:
        super().__init__(f"cannot {action} instance {instance_id} in state {state}")
        self.instance_id = instance_id
        self.state = state
        self.action = action


class ConcurrencyLimitError(LpBotError):
    def __init__(self, limit: int) -> None:
        super().__init__(f"running instance limit reached ({limit})")
        self.limit = limit


class DuplicateInstanceError(LpBotError):
    def __init__(self, name: str) -> None:
        super().__init__(f"instance named {name!r} already exists")
        self.name = name


class PartialExecutionError(LpBotError):
    """
    A multi-step sequence stopped part way. `completed` holds what did land
    (positions opened, addresses closed), `remaining` what did not, so the
    caller can keep its record consistent with chain state.
    """

    def __init__(
        self,
        message: str,
        completed: Optional[List[Any]] = None,
        remaining: Optional[List[Any]] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.completed = list(completed or [])
        self.remaining = list(remaining or [])
        self.cause = cause
