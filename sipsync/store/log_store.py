"""Per-device persistence of the drink entry replica."""

import logging
from typing import Any, Iterable

from ..errors import StorageDecodeError
from ..replica import DrinkEntry, Replica, decode_replica, encode_replica
from .kv_store import KeyValueStore

logger = logging.getLogger(__name__)

DEFAULT_ENTRIES_KEY = "drink_entries"


class LocalLogStore:
    """Loads and saves the whole replica as one value.

    This is not an incremental log: every save writes the complete
    replica. All mutations are load, change, save with no await in
    between, so callers on one event loop never interleave.
    """

    def __init__(self, kv: KeyValueStore, key: str = DEFAULT_ENTRIES_KEY):
        """Initialize the log store.

        Args:
            kv: Key-value store holding the replica.
            key: Key the encoded replica is stored under.
        """
        self._kv = kv
        self._key = key
        self.last_decode_error: str | None = None

    def load(self) -> Replica:
        """Read the replica from storage.

        Missing data gives an empty replica. Corrupt data also gives an
        empty replica; the reason is logged and kept in last_decode_error.
        """
        raw = self._kv.get_bytes(self._key)
        if raw is None:
            return Replica()

        try:
            replica = decode_replica(raw)
        except StorageDecodeError as e:
            self.last_decode_error = str(e)
            logger.warning(f"Stored entries could not be decoded, starting empty: {e}")
            return Replica()

        self.last_decode_error = None
        return replica

    def save(self, replica: Replica) -> None:
        """Write the full replica."""
        self._kv.set_bytes(self._key, encode_replica(replica))
        logger.debug(f"Saved {len(replica)} entries")

    def append(self, entry: DrinkEntry) -> Replica:
        """Add a locally created entry.

        Returns:
            The replica as saved.
        """
        replica = self.load().merge([entry])
        self.save(replica)
        logger.info(
            f"Logged {entry.drink_type.display_name} ({entry.ounces:g} oz) as {entry.id}"
        )
        return replica

    def merge(self, entries: Iterable[DrinkEntry]) -> int:
        """Union inbound entries into the stored replica.

        Args:
            entries: Entries received from the peer, duplicates allowed.

        Returns:
            Number of entries that were new to this replica.
        """
        current = self.load()
        added = current.missing_from(entries)
        if added:
            self.save(current.merge(added))
        logger.info(f"Merged {len(added)} new entries ({len(current) + len(added)} total)")
        return len(added)

    def clear(self) -> int:
        """Delete every entry on this device.

        Returns:
            Number of entries removed.
        """
        count = len(self.load())
        self.save(Replica())
        logger.info(f"Cleared {count} entries")
        return count

    def get_stats(self) -> dict[str, Any]:
        """Get replica statistics.

        Returns:
            Dictionary with entry count, time range and encoded size.
        """
        replica = self.load()
        entries = replica.entries()
        raw = self._kv.get_bytes(self._key)

        return {
            "total_entries": len(replica),
            "newest": entries[0].timestamp.isoformat() if entries else None,
            "oldest": entries[-1].timestamp.isoformat() if entries else None,
            "stored_bytes": len(raw) if raw is not None else 0,
            "decode_error": self.last_decode_error,
        }
