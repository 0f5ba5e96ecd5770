"""
Orchestrator package - instance lifecycle.

The state machine drives one instance's tick loop; the registry owns the set
of instances and the concurrency ceiling.
"""

from lpbot.orchestrator.instance_state_machine import (
    RUNNING_STATES,
    STATUS_BY_STATE,
    VALID_TRANSITIONS,
    InstanceRecord,
    InstanceState,
    InstanceStateMachine,
    InstanceStatus,
    OutOfRangeTracker,
    StateTransition,
    TickAction,
    TickResult,
)
from lpbot.orchestrator.registry import InstanceRegistry

__all__ = [
    "InstanceRecord",
    "InstanceRegistry",
    "InstanceState",
    "InstanceStateMachine",
    "InstanceStatus",
    "OutOfRangeTracker",
    "RUNNING_STATES",
    "STATUS_BY_STATE",
    "StateTransition",
    "TickAction",
    "TickResult",
    "VALID_TRANSITIONS",
]
