"""Device-to-device replica sync."""

from .coordinator import SyncCoordinator, SyncState
from .payloads import PayloadKind, SyncPayload, decode_payload, encode_payload
from .transport import (
    DeliveryChannel,
    LoopbackTransport,
    Transport,
    TransportEvent,
    TransportEventType,
)

__all__ = [
    "DeliveryChannel",
    "LoopbackTransport",
    "PayloadKind",
    "SyncCoordinator",
    "SyncPayload",
    "SyncState",
    "Transport",
    "TransportEvent",
    "TransportEventType",
    "decode_payload",
    "encode_payload",
]
