"""Last-write-wins cache of the peer's capability flags."""

import logging
from datetime import datetime
from typing import Any

from ..replica import local_now
from .kv_store import KeyValueStore

logger = logging.getLogger(__name__)

PEER_PREMIUM_KEY = "peer_is_premium"
PEER_UPDATED_KEY = "peer_capabilities_updated_at"


class CapabilityCache:
    """Remembers the last capability declaration received from the peer.

    Every declaration overwrites the cached one. There is no versioning:
    these are coarse feature flags, and the latest received value is the
    one that counts.
    """

    def __init__(self, kv: KeyValueStore):
        self._kv = kv

    @property
    def is_premium(self) -> bool:
        return self._kv.get_bool(PEER_PREMIUM_KEY, default=False)

    @property
    def updated_at(self) -> datetime | None:
        return self._kv.get_datetime(PEER_UPDATED_KEY)

    def update(self, is_premium: bool, received_at: datetime | None = None) -> None:
        previous = self.is_premium
        self._kv.set_bool(PEER_PREMIUM_KEY, is_premium)
        self._kv.set_datetime(PEER_UPDATED_KEY, received_at or local_now())

        if previous != is_premium:
            logger.info(f"Peer premium status changed: {previous} -> {is_premium}")
        else:
            logger.debug(f"Peer premium status confirmed: {is_premium}")

    def to_dict(self) -> dict[str, Any]:
        updated = self.updated_at
        return {
            "is_premium": self.is_premium,
            "updated_at": updated.isoformat() if updated else None,
        }
