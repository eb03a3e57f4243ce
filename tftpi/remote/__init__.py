"""SSH endpoints for the BMC and the compute nodes."""

from .bmc import BMCEndpoint, BMCInfo, PowerState
from .expect import InteractionStep
from .node import NodeEndpoint
from .retry import RetryPolicy
from .ssh import CommandResult, SSHEndpoint

__all__ = [
    "BMCEndpoint",
    "BMCInfo",
    "CommandResult",
    "InteractionStep",
    "NodeEndpoint",
    "PowerState",
    "RetryPolicy",
    "SSHEndpoint",
]
