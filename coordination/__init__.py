"""
Coordination Lab

Two classical coordination protocols on a shared HTTP node skeleton.

Runtime:
- NodeRuntime: inbound endpoint, mailbox dispatcher, single state lock, send pool
- HttpTransport / LocalTransport: point-to-point delivery
- EventLogger: shared timestamped event log

Protocols:
- ByzantineNode: one-round Oral Messages agreement, one faulty node tolerated
- LamportNode: Lamport clock total-order mutual exclusion
"""

from .byzantine import ByzantineNode
from .config import ClusterConfig, ConfigError, NodeAddress
from .event_log import EventLogger
from .lamport import LamportClock, LamportNode, RequestQueue
from .node import NodeRuntime
from .transport import HttpTransport, LocalTransport, TransportError

__all__ = [
    # Runtime
    "NodeRuntime",
    "HttpTransport",
    "LocalTransport",
    "TransportError",
    "EventLogger",
    "ClusterConfig",
    "ConfigError",
    "NodeAddress",
    # Protocols
    "ByzantineNode",
    "LamportNode",
    "LamportClock",
    "RequestQueue",
]
