"""One device: storage, rate limiter, stats and the sync coordinator wired together."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from .config import Config
from .drinks import DrinkType
from .replica import DrinkEntry, Replica, as_local, local_now
from .stats import DerivedStats, compute_stats, entries_on_day, local_day
from .store import CapabilityCache, KeyValueStore, LocalLogStore, RateLimiter
from .sync import SyncCoordinator, Transport
from .validation import check_daily_ounces, check_ounces, check_timestamp

logger = logging.getLogger(__name__)

# LogResult.reason values
RATE_LIMITED = "rate_limited"
INVALID_OUNCES = "invalid_ounces"
INVALID_TIME = "invalid_time"
DAILY_LIMIT = "daily_limit"


@dataclass(frozen=True)
class LogResult:
    """Outcome of a user's attempt to log a drink."""

    allowed: bool
    message: str | None = None
    entry: DrinkEntry | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "message": self.message,
            "reason": self.reason,
            "entry": self.entry.to_dict() if self.entry else None,
        }


def build_transport(config: Config) -> Transport | None:
    """Create the transport named in the config, or None when sync is off."""
    if not config.sync.enabled or config.sync.transport == "none":
        return None

    # Imported here so paho is only needed when MQTT sync is used
    from .sync.mqtt_transport import MQTTTransport

    return MQTTTransport(config.mqtt, config.device.name, config.device.peer)


class Device:
    """Composition root for one replica.

    Owns the key-value store and everything built on it. When a transport
    is given, it also owns the single SyncCoordinator for this device.
    """

    def __init__(
        self,
        config: Config,
        kv: KeyValueStore | None = None,
        transport: Transport | None = None,
    ):
        """Initialize the device.

        Args:
            config: Application configuration.
            kv: Key-value store to use instead of the configured database.
            transport: Link to the peer. None keeps the device local-only.
        """
        self.config = config
        self.name = config.device.name
        self.zone = config.device.zone()

        self.kv = kv or KeyValueStore(config.storage.db_path, config.storage.namespace)
        self.store = LocalLogStore(self.kv, config.storage.entries_key)
        self.rate_limiter = RateLimiter(
            self.kv,
            minimum_interval=timedelta(seconds=config.rate_limit.minimum_interval_seconds),
        )
        self.capabilities = CapabilityCache(self.kv)

        self.coordinator: SyncCoordinator | None = None
        if transport is not None:
            self.coordinator = SyncCoordinator(
                device_name=self.name,
                store=self.store,
                transport=transport,
                capabilities=self.capabilities,
                local_premium=lambda: self.config.device.premium,
                request_timeout=config.sync.request_timeout_seconds,
            )

        self._stop_event = asyncio.Event()

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """Start syncing with the peer, if a transport is configured."""
        logger.info(f"Starting device {self.name} (peer: {self.config.device.peer})")
        self._stop_event.clear()
        if self.coordinator:
            await self.coordinator.start()

    async def stop(self) -> None:
        """Stop syncing and close storage."""
        self._stop_event.set()
        if self.coordinator:
            await self.coordinator.stop()
        self.kv.close()
        logger.info(f"Device {self.name} stopped")

    def now(self) -> datetime:
        """Current time in the configured timezone, or the system offset."""
        return local_now(self.zone)

    def request_stop(self) -> None:
        self._stop_event.set()

    async def run(self) -> None:
        """Log a stats summary whenever merged data arrives, until stopped."""
        if self.coordinator is None:
            await self._stop_event.wait()
            return

        while not self._stop_event.is_set():
            changed = asyncio.create_task(self.coordinator.changed.wait())
            stopped = asyncio.create_task(self._stop_event.wait())
            done, pending = await asyncio.wait(
                {changed, stopped}, return_when=asyncio.FIRST_COMPLETED
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

            if changed in done:
                self.coordinator.acknowledge_data_changed()
                stats = self.stats()
                logger.info(
                    f"Replica updated: {stats.total_count} entries, "
                    f"today {stats.today_count} ({stats.today_ounces:g} oz), "
                    f"streak {stats.streak}"
                )

    # ==================== Operations ====================

    async def log_drink(
        self,
        drink_type: DrinkType | str,
        custom_ounces: float | None = None,
        note: str | None = None,
        timestamp: datetime | None = None,
        now: datetime | None = None,
    ) -> LogResult:
        """Log a drink on this device if the cooldown and bounds allow it.

        The entry is persisted before the admission is recorded, so a
        failed write never starts a cooldown. The peer is then notified
        without waiting for any acknowledgement.

        Args:
            drink_type: DrinkType or a name DrinkType.parse accepts.
            custom_ounces: Volume overriding the type's default.
            note: Optional free text.
            timestamp: When the drink was had, defaults to now. May be
                backdated up to 24 hours.
            now: Time of the action, defaults to the device clock.

        Returns:
            LogResult with the new entry, or the rejection message.

        Raises:
            ValueError: If drink_type is unknown.
            TypeError: If drink_type is neither a DrinkType nor a string.
        """
        now = as_local(now) if now else self.now()
        if isinstance(drink_type, str):
            drink_type = DrinkType.parse(drink_type)
        if not isinstance(drink_type, DrinkType):
            raise TypeError(
                f"drink_type must be a DrinkType or str, got {type(drink_type).__name__}"
            )

        timestamp = as_local(timestamp) if timestamp else now
        ounces = custom_ounces if custom_ounces is not None else drink_type.ounces

        if message := check_timestamp(timestamp, now):
            return self._reject(message, INVALID_TIME)
        if message := check_ounces(ounces):
            return self._reject(message, INVALID_OUNCES)

        decision = self.rate_limiter.can_admit(now)
        if not decision.allowed:
            return self._reject(decision.message, RATE_LIMITED)

        day = local_day(timestamp, now.tzinfo)
        logged = sum(e.ounces for e in entries_on_day(self.store.load(), day, now))
        if message := check_daily_ounces(logged, ounces):
            return self._reject(message, DAILY_LIMIT)

        entry = DrinkEntry.create(drink_type, now=timestamp, custom_ounces=custom_ounces, note=note)
        self.store.append(entry)
        self.rate_limiter.record_admission(now)

        if self.coordinator:
            await self.coordinator.publish_entry(entry)

        return LogResult(allowed=True, entry=entry)

    def _reject(self, message: str | None, reason: str) -> LogResult:
        logger.info(f"Drink rejected on {self.name}: {message}")
        return LogResult(allowed=False, message=message, reason=reason)

    def entries(self, limit: int | None = None) -> list[DrinkEntry]:
        """Entries newest first."""
        entries = self.store.load().entries()
        return entries[:limit] if limit is not None else entries

    def replica(self) -> Replica:
        return self.store.load()

    def stats(self, now: datetime | None = None) -> DerivedStats:
        """Recompute statistics from the current replica."""
        return compute_stats(self.store.load(), now or self.now())

    def reset(self) -> int:
        """Delete every entry on this device. The peer keeps its copy."""
        return self.store.clear()

    def get_status(self, now: datetime | None = None) -> dict[str, Any]:
        """Get device status.

        Returns:
            Dictionary with storage, rate limiter, peer and sync details.
        """
        now = now or self.now()
        last = self.rate_limiter.last_admitted

        return {
            "device": self.name,
            "peer": self.config.device.peer,
            "premium": self.config.device.premium,
            "storage": {
                **self.kv.get_stats(),
                **self.store.get_stats(),
            },
            "rate_limit": {
                "minimum_interval_seconds": self.rate_limiter.minimum_interval.total_seconds(),
                "last_admitted": last.isoformat() if last else None,
                "seconds_remaining": self.rate_limiter.seconds_remaining(now),
            },
            "peer_capabilities": self.capabilities.to_dict(),
            "sync": self.coordinator.get_sync_status() if self.coordinator else None,
        }


async def wait_until_settled(
    *devices: Device, timeout: float = 5.0, poll_interval: float = 0.01
) -> bool:
    """Wait until every device's coordinator has nothing left to process.

    Returns:
        False if the devices were still busy when timeout ran out.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    quiet_polls = 0

    while loop.time() < deadline:
        await asyncio.sleep(poll_interval)
        if all(d.coordinator is None or d.coordinator.idle for d in devices):
            # Two quiet polls in a row, so a reply that just landed is handled
            quiet_polls += 1
            if quiet_polls >= 2:
                return True
        else:
            quiet_polls = 0

    return False


async def run_device(config: Config) -> None:
    """Run one device until interrupted.

    Args:
        config: Configuration for the device.
    """
    device = Device(config, transport=build_transport(config))

    try:
        await device.start()
        await device.run()
    except KeyboardInterrupt:
        pass
    finally:
        await device.stop()
