"""
Execution package: retry policy and position sequences.
"""

from lpbot.execution.position_executor import (
    CloseOutcome,
    OpenResult,
    PositionExecutor,
    PositionExecutorConfig,
    SwapOutcome,
)
from lpbot.execution.retry_manager import (
    DEFAULT_RETRY_CONFIGS,
    MUTATING_CLASSES,
    OperationClass,
    RetryConfig,
    RetryContext,
    RetryManager,
)

__all__ = [
    "CloseOutcome",
    "OpenResult",
    "PositionExecutor",
    "PositionExecutorConfig",
    "SwapOutcome",
    "DEFAULT_RETRY_CONFIGS",
    "MUTATING_CLASSES",
    "OperationClass",
    "RetryConfig",
    "RetryContext",
    "RetryManager",
]
