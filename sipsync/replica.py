"""Drink entries and the replicated entry collection.

Entries are immutable and carry a random UUID, so two replicas converge by
taking the union of their entries keyed by id. No clocks or versions are
needed: the same id always means the same content.
"""

import json
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Any, Iterable, Iterator

from .drinks import DrinkType
from .errors import StorageDecodeError


def local_now(zone: tzinfo | None = None) -> datetime:
    """Current time on the device clock, timezone-aware.

    Without a zone the result carries the system's current UTC offset.
    """
    if zone is not None:
        return datetime.now(zone)
    return datetime.now().astimezone()


def as_local(ts: datetime) -> datetime:
    """Attach the device timezone to a naive timestamp."""
    return ts if ts.tzinfo is not None else ts.astimezone()


@dataclass(frozen=True)
class DrinkEntry:
    """One logged drink. Never mutated after creation."""

    id: str
    drink_type: DrinkType
    timestamp: datetime
    custom_ounces: float | None = None
    note: str | None = None

    @classmethod
    def create(
        cls,
        drink_type: DrinkType | str,
        now: datetime | None = None,
        custom_ounces: float | None = None,
        note: str | None = None,
    ) -> "DrinkEntry":
        """Create a new entry with a fresh id and the current local time.

        Args:
            drink_type: DrinkType or any name DrinkType.parse accepts.
            now: Creation time, defaults to the device clock.
            custom_ounces: Volume overriding the drink type's default.
            note: Optional free text.

        Returns:
            The new DrinkEntry.
        """
        if isinstance(drink_type, str):
            drink_type = DrinkType.parse(drink_type)
        if custom_ounces is not None and custom_ounces <= 0:
            raise ValueError(f"custom_ounces must be positive, got {custom_ounces}")

        return cls(
            id=str(uuid.uuid4()),
            drink_type=drink_type,
            timestamp=as_local(now) if now else local_now(),
            custom_ounces=custom_ounces,
            note=note,
        )

    @property
    def ounces(self) -> float:
        if self.custom_ounces is not None:
            return self.custom_ounces
        return self.drink_type.ounces

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "type": self.drink_type.value,
            "timestamp": self.timestamp.isoformat(),
            "customOunces": self.custom_ounces,
            "note": self.note,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DrinkEntry":
        """Create from dictionary.

        Raises:
            KeyError: If a required field is missing.
            ValueError: If a field has an invalid value.
            OverflowError: If customOunces does not fit a float.
        """
        custom_ounces = data.get("customOunces")
        if custom_ounces is not None:
            custom_ounces = float(custom_ounces)
            if not math.isfinite(custom_ounces):
                raise ValueError(f"customOunces must be finite, got {custom_ounces}")

        return cls(
            id=str(data["id"]),
            drink_type=DrinkType(data["type"]),
            timestamp=as_local(datetime.fromisoformat(data["timestamp"])),
            custom_ounces=custom_ounces,
            note=data.get("note"),
        )


def _sort_key(entry: DrinkEntry) -> tuple[datetime, str]:
    return (entry.timestamp, entry.id)


class Replica:
    """One device's full copy of the entry log.

    Iteration yields entries newest first. Equality compares the id to
    entry mapping, so two replicas holding the same entries are equal no
    matter how they were built.
    """

    def __init__(self, entries: Iterable[DrinkEntry] = ()):
        self._entries: dict[str, DrinkEntry] = {}
        for entry in entries:
            # First copy wins; content under one id never differs
            self._entries.setdefault(entry.id, entry)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, entry_id: object) -> bool:
        if isinstance(entry_id, DrinkEntry):
            entry_id = entry_id.id
        return entry_id in self._entries

    def __iter__(self) -> Iterator[DrinkEntry]:
        return iter(self.entries())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Replica):
            return NotImplemented
        return self._entries == other._entries

    def __repr__(self) -> str:
        return f"Replica({len(self._entries)} entries)"

    def get(self, entry_id: str) -> DrinkEntry | None:
        return self._entries.get(entry_id)

    def ids(self) -> set[str]:
        return set(self._entries)

    def entries(self) -> list[DrinkEntry]:
        """Entries ordered newest first."""
        return sorted(self._entries.values(), key=_sort_key, reverse=True)

    def merge(self, incoming: "Replica | Iterable[DrinkEntry]") -> "Replica":
        """Union with incoming entries by id.

        Returns a new replica; self is left untouched. Entries already
        present are kept as they are.
        """
        merged = Replica()
        merged._entries = dict(self._entries)
        for entry in incoming:
            merged._entries.setdefault(entry.id, entry)
        return merged

    def missing_from(self, incoming: "Replica | Iterable[DrinkEntry]") -> list[DrinkEntry]:
        """Entries in incoming that this replica does not hold yet."""
        seen: set[str] = set()
        missing = []
        for entry in incoming:
            if entry.id not in self._entries and entry.id not in seen:
                seen.add(entry.id)
                missing.append(entry)
        return missing

    def to_list(self) -> list[dict[str, Any]]:
        return [entry.to_dict() for entry in self.entries()]

    @classmethod
    def from_list(cls, data: list[dict[str, Any]]) -> "Replica":
        return cls(DrinkEntry.from_dict(item) for item in data)


def encode_replica(replica: Replica) -> bytes:
    """Serialize a replica to canonical JSON bytes.

    The output depends only on the replica's contents, so encoding a
    decoded replica reproduces the same bytes.
    """
    return json.dumps(
        replica.to_list(),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def decode_replica(data: bytes) -> Replica:
    """Parse bytes produced by encode_replica.

    Raises:
        StorageDecodeError: If the bytes are not a valid encoded replica.
    """
    try:
        items = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError, RecursionError) as e:
        # RecursionError: nesting too deep for the decoder
        raise StorageDecodeError(f"Invalid replica encoding: {e}") from e

    if not isinstance(items, list):
        raise StorageDecodeError(
            f"Expected a list of entries, got {type(items).__name__}"
        )

    try:
        return Replica.from_list(items)
    except (KeyError, ValueError, TypeError, AttributeError, OverflowError) as e:
        raise StorageDecodeError(f"Invalid entry in replica: {e!r}") from e
