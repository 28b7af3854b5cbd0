"""Expose the endpoint-side building blocks."""
from .client import RelayClient
from .connectivity import ConnectivityMonitor, ConnectivityState, HealthProbe
from .errors import MediaCapabilityError, NegotiationError
from .media import FileMediaSource, RecorderSink
from .session import PublisherSession, ReceiverSession, SessionState
from .supervisor import PublisherSupervisor, ReceiverSupervisor
from .transport import PeerTransport

__all__ = [
    "ConnectivityMonitor",
    "ConnectivityState",
    "FileMediaSource",
    "HealthProbe",
    "MediaCapabilityError",
    "NegotiationError",
    "PeerTransport",
    "PublisherSession",
    "PublisherSupervisor",
    "ReceiverSession",
    "ReceiverSupervisor",
    "RecorderSink",
    "RelayClient",
    "SessionState",
]
