"""Persistent per-node provisioning state."""

from .models import NodeState, SystemState
from .store import StateStore

__all__ = ["NodeState", "StateStore", "SystemState"]
