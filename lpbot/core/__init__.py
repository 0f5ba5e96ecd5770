"""
Core package.

Value types, the error taxonomy, collaborator contracts and the event bus.
"""

from lpbot.core.errors import (
    AmbiguousSubmissionError,
    ConcurrencyLimitError,
    ConsistencyError,
    DuplicateInstanceError,
    InstanceNotFoundError,
    InvalidRangeError,
    InvalidStateError,
    LpBotError,
    NonRetryableExecutionError,
    PartialExecutionError,
    PositionNotFoundError,
    RetryableTransportError,
    RetryExhaustedError,
    ValidationError,
)
from lpbot.core.event_bus import BusEventSink, Event, EventBus, EventType, Subscription, publish_safely
from lpbot.core.types import (
    BinRange,
    CloseResult,
    MarketSnapshot,
    OutOfRangeDirection,
    Position,
    Quote,
    RangeSide,
    StrategyKind,
    SwapResult,
    now_ms,
)

__all__ = [
    "AmbiguousSubmissionError",
    "ConcurrencyLimitError",
    "ConsistencyError",
    "DuplicateInstanceError",
    "InstanceNotFoundError",
    "InvalidRangeError",
    "InvalidStateError",
    "LpBotError",
    "NonRetryableExecutionError",
    "PartialExecutionError",
    "PositionNotFoundError",
    "RetryableTransportError",
    "RetryExhaustedError",
    "ValidationError",
    "BusEventSink",
    "Event",
    "EventBus",
    "EventType",
    "Subscription",
    "publish_safely",
    "BinRange",
    "CloseResult",
    "MarketSnapshot",
    "OutOfRangeDirection",
    "Position",
    "Quote",
    "RangeSide",
    "StrategyKind",
    "SwapResult",
    "now_ms",
]
