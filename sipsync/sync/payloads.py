"""Wire format for messages exchanged between the two devices.

A payload is an opaque byte blob to the transport. Inside it is a small
JSON envelope carrying one of: a single new entry, a full replica
snapshot, a request for the peer's snapshot, or a capability declaration.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..errors import PayloadDecodeError
from ..replica import DrinkEntry, Replica

WIRE_VERSION = 1


class PayloadKind(Enum):
    ENTRY = "entry"
    SNAPSHOT = "snapshot"
    SNAPSHOT_REQUEST = "snapshot_request"
    CAPABILITIES = "capabilities"


@dataclass(frozen=True)
class SyncPayload:
    """A decoded sync message."""

    kind: PayloadKind
    sender: str
    entries: tuple[DrinkEntry, ...] = field(default_factory=tuple)
    is_premium: bool | None = None

    @classmethod
    def entry(cls, sender: str, entry: DrinkEntry) -> "SyncPayload":
        return cls(kind=PayloadKind.ENTRY, sender=sender, entries=(entry,))

    @classmethod
    def snapshot(cls, sender: str, replica: Replica) -> "SyncPayload":
        return cls(kind=PayloadKind.SNAPSHOT, sender=sender, entries=tuple(replica.entries()))

    @classmethod
    def snapshot_request(cls, sender: str) -> "SyncPayload":
        return cls(kind=PayloadKind.SNAPSHOT_REQUEST, sender=sender)

    @classmethod
    def capabilities(cls, sender: str, is_premium: bool) -> "SyncPayload":
        return cls(kind=PayloadKind.CAPABILITIES, sender=sender, is_premium=is_premium)


def encode_payload(payload: SyncPayload) -> bytes:
    """Serialize a payload for the transport."""
    body: dict[str, Any] = {
        "v": WIRE_VERSION,
        "kind": payload.kind.value,
        "sender": payload.sender,
    }

    if payload.kind == PayloadKind.ENTRY:
        body["entry"] = payload.entries[0].to_dict()
    elif payload.kind == PayloadKind.SNAPSHOT:
        body["entries"] = [e.to_dict() for e in payload.entries]
    elif payload.kind == PayloadKind.CAPABILITIES:
        body["isPremium"] = bool(payload.is_premium)

    return json.dumps(body, separators=(",", ":")).encode("utf-8")


def decode_payload(data: bytes) -> SyncPayload:
    """Parse bytes received from the peer.

    Raises:
        PayloadDecodeError: If the bytes are not a well-formed payload.
    """
    try:
        body = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError, RecursionError) as e:
        raise PayloadDecodeError(f"Payload is not valid JSON: {e}") from e

    if not isinstance(body, dict):
        raise PayloadDecodeError(f"Payload must be an object, got {type(body).__name__}")

    version = body.get("v")
    if version != WIRE_VERSION:
        raise PayloadDecodeError(f"Unsupported payload version: {version!r}")

    try:
        kind = PayloadKind(body.get("kind"))
    except ValueError as e:
        raise PayloadDecodeError(f"Unknown payload kind: {body.get('kind')!r}") from e

    sender = body.get("sender")
    if not isinstance(sender, str) or not sender:
        raise PayloadDecodeError("Payload has no sender")

    try:
        if kind == PayloadKind.ENTRY:
            return SyncPayload(
                kind=kind,
                sender=sender,
                entries=(DrinkEntry.from_dict(body["entry"]),),
            )

        if kind == PayloadKind.SNAPSHOT:
            items = body["entries"]
            if not isinstance(items, list):
                raise PayloadDecodeError("Snapshot entries must be a list")
            return SyncPayload(
                kind=kind,
                sender=sender,
                entries=tuple(DrinkEntry.from_dict(item) for item in items),
            )

        if kind == PayloadKind.CAPABILITIES:
            is_premium = body["isPremium"]
            if not isinstance(is_premium, bool):
                raise PayloadDecodeError(f"isPremium must be a boolean, got {is_premium!r}")
            return SyncPayload(kind=kind, sender=sender, is_premium=is_premium)

    except (KeyError, ValueError, TypeError, AttributeError, OverflowError) as e:
        raise PayloadDecodeError(f"Malformed {kind.value} payload: {e!r}") from e

    return SyncPayload(kind=kind, sender=sender)
