"""Sync coordinator: keeps this device's replica converging with the peer's.

The protocol is deliberately weak. New entries go out twice (reliable
queue, plus an immediate send when the peer is reachable), snapshots are
requested whenever the link comes up, and every inbound entry is merged
by id. Duplicates and reordering are harmless because merge is an
idempotent, commutative union. There are no acknowledgements and no
retries beyond what the transport does itself; a lost message only
delays convergence until the next snapshot exchange.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from ..errors import PayloadDecodeError, TransportUnavailableError
from ..replica import DrinkEntry, local_now
from ..store import CapabilityCache, LocalLogStore
from .payloads import PayloadKind, SyncPayload, decode_payload, encode_payload
from .transport import (
    DeliveryChannel,
    ReplyHandler,
    Transport,
    TransportEvent,
    TransportEventType,
)

logger = logging.getLogger(__name__)


class SyncState(Enum):
    """Coordinator state as seen from outside."""

    IDLE = "idle"
    AWAITING_REACHABILITY = "awaiting_reachability"
    SYNCING = "syncing"


class SyncCoordinator:
    """Owns the merge protocol for one device.

    Construct one per device process and pass it to whatever needs it.
    Transport events are consumed by a single background task, so inbound
    merges never interleave with each other.
    """

    def __init__(
        self,
        device_name: str,
        store: LocalLogStore,
        transport: Transport,
        capabilities: CapabilityCache,
        local_premium: Callable[[], bool] | None = None,
        request_timeout: float = 10.0,
    ):
        """Initialize the coordinator.

        Args:
            device_name: This device's name, stamped on outbound payloads.
            store: Local replica storage.
            transport: Link to the peer device.
            capabilities: Cache for the peer's capability flags.
            local_premium: Reads this device's entitlement; None means the
                device has nothing to declare.
            request_timeout: Seconds to wait for a snapshot reply.
        """
        self.device_name = device_name
        self._store = store
        self._transport = transport
        self._capabilities = capabilities
        self._local_premium = local_premium
        self._request_timeout = request_timeout

        self._task: asyncio.Task | None = None
        self._requests: set[asyncio.Task] = set()
        self._running = False
        self._activated = False
        self._in_flight = 0
        self._busy = False
        self._ready = asyncio.Event()

        self._data_changed = False
        self.changed = asyncio.Event()

        self._last_snapshot: datetime | None = None
        self._merged_entries = 0
        self._dropped_payloads = 0
        self._failed_sends = 0

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """Start consuming transport events and activate the transport."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        await self._transport.activate()
        logger.info(f"Sync coordinator started for {self.device_name}")

    async def stop(self) -> None:
        """Stop the consumer loop and any outstanding snapshot requests."""
        self._running = False
        tasks = list(self._requests)
        if self._task:
            tasks.append(self._task)

        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._task = None
        self._requests.clear()
        await self._transport.close()
        logger.info("Sync coordinator stopped")

    async def _run_loop(self) -> None:
        while self._running:
            event = await self._transport.events.get()
            self._busy = True
            try:
                await self.handle_event(event)
            except Exception as e:
                logger.error(f"Failed to handle {event.type.value} event: {e}", exc_info=True)
            finally:
                self._busy = False

    # ==================== State ====================

    @property
    def state(self) -> SyncState:
        if self._in_flight > 0:
            return SyncState.SYNCING
        if not self._activated or not self._transport.is_reachable():
            return SyncState.AWAITING_REACHABILITY
        return SyncState.IDLE

    @property
    def activated(self) -> bool:
        return self._activated

    async def wait_activated(self, timeout: float | None = None) -> bool:
        """Wait for the transport to finish activating.

        Returns:
            False if activation did not complete within timeout.
        """
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    @property
    def idle(self) -> bool:
        """True when no event is queued or being handled and no request is out."""
        return (
            self._transport.events.empty()
            and not self._busy
            and not self._requests
            and self._in_flight == 0
        )

    @property
    def data_changed(self) -> bool:
        """True when merged data arrived that the display has not picked up."""
        return self._data_changed

    def acknowledge_data_changed(self) -> bool:
        """Clear the data-changed signal.

        Returns:
            Whether it was set.
        """
        was_set = self._data_changed
        self._data_changed = False
        self.changed.clear()
        return was_set

    def _mark_changed(self) -> None:
        self._data_changed = True
        self.changed.set()

    # ==================== Outbound ====================

    async def publish_entry(self, entry: DrinkEntry) -> None:
        """Send a newly admitted local entry to the peer.

        The reliable channel always gets a copy. If the peer is reachable
        the entry is also sent immediately, so it may arrive twice.
        """
        payload = encode_payload(SyncPayload.entry(self.device_name, entry))

        try:
            await self._transport.send_reliable(payload)
        except Exception as e:
            self._failed_sends += 1
            logger.warning(f"Reliable send of entry {entry.id} failed: {e}")

        if not self._transport.is_reachable():
            logger.debug(f"Peer unreachable, entry {entry.id} left on reliable queue")
            return

        try:
            await self._transport.send_immediate(payload)
            logger.debug(f"Sent entry {entry.id} immediately")
        except TransportUnavailableError as e:
            logger.debug(f"Immediate send skipped: {e}")
        except Exception as e:
            self._failed_sends += 1
            logger.warning(f"Immediate send of entry {entry.id} failed: {e}")

    async def push_capabilities(self) -> None:
        """Declare this device's capability flags over the context channel."""
        if self._local_premium is None:
            return

        is_premium = bool(self._local_premium())
        payload = encode_payload(SyncPayload.capabilities(self.device_name, is_premium))
        try:
            await self._transport.update_context(payload)
            logger.debug(f"Declared premium={is_premium} to peer")
        except Exception as e:
            self._failed_sends += 1
            logger.warning(f"Capability update failed: {e}")

    async def request_snapshot(self) -> bool:
        """Ask the peer for its full replica and merge the reply.

        Returns:
            True if a reply arrived and was merged.
        """
        if not self._transport.is_reachable():
            logger.debug("Peer unreachable, skipping snapshot request")
            return False

        self._in_flight += 1
        try:
            request = encode_payload(SyncPayload.snapshot_request(self.device_name))
            try:
                reply = await self._transport.send_immediate(
                    request,
                    expect_reply=True,
                    timeout=self._request_timeout,
                )
            except TransportUnavailableError as e:
                logger.info(f"Snapshot request not sent: {e}")
                return False
            except Exception as e:
                self._failed_sends += 1
                logger.warning(f"Snapshot request failed: {e}")
                return False

            if reply is None:
                logger.warning("No snapshot reply from peer, keeping local data")
                return False

            merged = await self.handle_payload(reply)
            if merged:
                self._last_snapshot = local_now()
            return merged
        finally:
            self._in_flight -= 1

    def _spawn_snapshot_request(self) -> None:
        # Run apart from the event loop task so events keep draining while
        # the reply is outstanding. Overlapping requests are allowed.
        task = asyncio.create_task(self.request_snapshot())
        self._requests.add(task)
        task.add_done_callback(self._requests.discard)

    async def _on_link_up(self) -> None:
        self._spawn_snapshot_request()
        await self.push_capabilities()

    # ==================== Inbound ====================

    async def handle_event(self, event: TransportEvent) -> None:
        """Process one transport event."""
        if event.type == TransportEventType.ACTIVATION_COMPLETE:
            if event.error:
                logger.error(f"Transport activation failed: {event.error}")
                return
            self._activated = True
            self._ready.set()
            logger.info(f"Transport activated, peer reachable={self._transport.is_reachable()}")
            if self._transport.is_reachable():
                await self._on_link_up()

        elif event.type == TransportEventType.REACHABILITY_CHANGED:
            logger.info(f"Peer reachability changed: {event.reachable}")
            if event.reachable:
                await self._on_link_up()

        elif event.type == TransportEventType.RECEIVED:
            if event.payload is None:
                logger.warning("Received event without payload, ignoring")
                return
            await self.handle_payload(event.payload, reply=event.reply, channel=event.channel)

    async def handle_payload(
        self,
        data: bytes,
        reply: ReplyHandler | None = None,
        channel: DeliveryChannel | None = None,
    ) -> bool:
        """Decode and apply one inbound payload.

        Args:
            data: Raw payload bytes from the peer.
            reply: Handle to answer a request on the same exchange.
            channel: Channel the payload arrived on, for logging.

        Returns:
            True if the payload was decoded and applied.
        """
        try:
            payload = decode_payload(data)
        except PayloadDecodeError as e:
            self._dropped_payloads += 1
            logger.warning(f"Dropping undecodable payload ({len(data)} bytes): {e}")
            return False

        via = f" via {channel.value}" if channel else ""
        logger.debug(f"Received {payload.kind.value} from {payload.sender}{via}")

        if payload.kind in (PayloadKind.ENTRY, PayloadKind.SNAPSHOT):
            added = self._store.merge(payload.entries)
            self._merged_entries += added
            self._mark_changed()

        elif payload.kind == PayloadKind.SNAPSHOT_REQUEST:
            await self._answer_snapshot_request(reply)

        elif payload.kind == PayloadKind.CAPABILITIES:
            self._capabilities.update(bool(payload.is_premium))

        return True

    async def _answer_snapshot_request(self, reply: ReplyHandler | None) -> None:
        snapshot = encode_payload(SyncPayload.snapshot(self.device_name, self._store.load()))
        try:
            if reply is not None:
                await reply(snapshot)
            else:
                await self._transport.send_reliable(snapshot)
            logger.debug("Answered snapshot request")
        except Exception as e:
            self._failed_sends += 1
            logger.warning(f"Failed to answer snapshot request: {e}")

    # ==================== Status ====================

    def get_sync_status(self) -> dict[str, Any]:
        """Get current sync status.

        Returns:
            Dictionary with state, counters and cached peer flags.
        """
        return {
            "device": self.device_name,
            "state": self.state.value,
            "reachable": self._transport.is_reachable(),
            "data_changed": self._data_changed,
            "last_snapshot": self._last_snapshot.isoformat() if self._last_snapshot else None,
            "merged_entries": self._merged_entries,
            "dropped_payloads": self._dropped_payloads,
            "failed_sends": self._failed_sends,
            "pending_requests": len(self._requests),
            "peer_capabilities": self._capabilities.to_dict(),
        }
