"""
State package: instance record persistence.
"""

from lpbot.state.instance_store import InstanceFileStore, InstanceStore

__all__ = ["InstanceFileStore", "InstanceStore"]
