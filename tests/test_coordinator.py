"""Tests for the sync coordinator."""

import asyncio
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, patch

from sipsync.device import wait_until_settled
from sipsync.replica import Replica
from sipsync.store import CapabilityCache, KeyValueStore, LocalLogStore
from sipsync.sync import (
    DeliveryChannel,
    LoopbackTransport,
    SyncCoordinator,
    SyncPayload,
    SyncState,
    TransportEvent,
    TransportEventType,
    decode_payload,
    encode_payload,
)

from conftest import NOW, make_entry, running


def make_coordinator(kv, transport, request_timeout=1.0) -> SyncCoordinator:
    """Create a coordinator over an existing key-value store."""
    return SyncCoordinator(
        device_name=transport.name,
        store=LocalLogStore(kv),
        transport=transport,
        capabilities=CapabilityCache(kv),
        local_premium=lambda: False,
        request_timeout=request_timeout,
    )


def drain(transport: LoopbackTransport) -> list:
    """Take every queued event without waiting."""
    events = []
    while not transport.events.empty():
        events.append(transport.events.get_nowait())
    return events


class TestConvergence:
    """Tests for two devices converging over the loopback link."""

    @pytest.mark.asyncio
    async def test_entries_from_both_sides(self, devices):
        """Test that X logged on phone and Y on watch end up on both."""
        phone, watch = devices

        async with running(phone, watch):
            assert await wait_until_settled(phone, watch)

            x = (await phone.log_drink("Regular Can", now=NOW)).entry
            y = (await watch.log_drink("Tall Can", now=NOW)).entry
            assert await wait_until_settled(phone, watch)

            assert phone.replica().ids() == {x.id, y.id}
            assert watch.replica() == phone.replica()

    @pytest.mark.asyncio
    async def test_converge_after_outage(self, devices, links):
        """Test that entries logged while unreachable converge once the link returns."""
        phone, watch = devices
        phone_link, _ = links

        async with running(phone, watch):
            assert await wait_until_settled(phone, watch)
            phone_link.set_reachable(False)

            x = (await phone.log_drink("Regular Can", now=NOW)).entry
            y = (await watch.log_drink("Mini Can", now=NOW)).entry
            assert await wait_until_settled(phone, watch)

            assert y.id not in phone.replica()
            assert x.id not in watch.replica()

            phone_link.set_reachable(True)
            assert await wait_until_settled(phone, watch)

            assert phone.replica().ids() == {x.id, y.id}
            assert watch.replica() == phone.replica()

    @pytest.mark.asyncio
    async def test_existing_data_exchanged_on_start(self, devices):
        """Test that replicas built before the link existed are exchanged by snapshot."""
        phone, watch = devices
        x, y = make_entry("Regular Can"), make_entry("2 Liter")
        phone.store.append(x)
        watch.store.append(y)

        async with running(phone, watch):
            assert await wait_until_settled(phone, watch)

            assert phone.replica().ids() == {x.id, y.id}
            assert watch.replica() == phone.replica()
            assert phone.coordinator.get_sync_status()["last_snapshot"] is not None

    @pytest.mark.asyncio
    async def test_duplicate_delivery_yields_one_entry(self, devices):
        """Test that the reliable and immediate copies merge into one entry."""
        phone, watch = devices

        async with running(phone, watch):
            assert await wait_until_settled(phone, watch)
            await phone.log_drink("Regular Can", now=NOW)
            assert await wait_until_settled(phone, watch)

            assert len(watch.replica()) == 1
            assert watch.coordinator.get_sync_status()["merged_entries"] == 1

    @pytest.mark.asyncio
    async def test_rate_limiter_is_per_device(self, devices):
        """Test that both devices may log within one cooldown window."""
        phone, watch = devices

        async with running(phone, watch):
            assert await wait_until_settled(phone, watch)

            first = await phone.log_drink("Regular Can", now=NOW)
            assert await wait_until_settled(phone, watch)
            second = await watch.log_drink("Regular Can", now=NOW + timedelta(seconds=5))
            third = await phone.log_drink("Regular Can", now=NOW + timedelta(seconds=10))

            assert first.allowed is True
            assert second.allowed is True
            assert third.allowed is False
            assert watch.rate_limiter.last_admitted == NOW + timedelta(seconds=5)


class TestMergeOrder:
    """Tests for order independence of inbound payloads."""

    @pytest.mark.asyncio
    async def test_any_delivery_order(self, kv):
        """Test that the final replica does not depend on delivery order."""
        other_kv = KeyValueStore(":memory:", "test-group")
        other_kv.connect()

        x, y, z = make_entry(), make_entry("Tall Can"), make_entry("Mini Can")
        p1 = encode_payload(SyncPayload.entry("watch", x))
        p2 = encode_payload(SyncPayload.entry("watch", y))
        p3 = encode_payload(SyncPayload.snapshot("watch", Replica([x, z])))

        a = make_coordinator(kv, LoopbackTransport("a"))
        b = make_coordinator(other_kv, LoopbackTransport("b"))

        for payload in (p1, p2, p3):
            await a.handle_payload(payload)
        for payload in (p3, p2, p1, p1):
            await b.handle_payload(payload)

        assert LocalLogStore(kv).load() == LocalLogStore(other_kv).load()
        assert LocalLogStore(kv).load().ids() == {x.id, y.id, z.id}
        other_kv.close()


class TestInbound:
    """Tests for inbound payload handling."""

    @pytest.mark.asyncio
    async def test_corrupt_payload_dropped(self, kv):
        """Test that an undecodable payload leaves the replica unchanged."""
        coordinator = make_coordinator(kv, LoopbackTransport("phone"))
        entry = make_entry()
        LocalLogStore(kv).append(entry)

        applied = await coordinator.handle_payload(b"\x00garbage")

        assert applied is False
        assert LocalLogStore(kv).load().ids() == {entry.id}
        assert coordinator.get_sync_status()["dropped_payloads"] == 1
        assert coordinator.data_changed is False

    @pytest.mark.asyncio
    async def test_deeply_nested_payload_dropped(self, kv):
        """Test that JSON nested past the decoder's limit is counted as dropped."""
        coordinator = make_coordinator(kv, LoopbackTransport("phone"))

        applied = await coordinator.handle_payload(b"[" * 200000)

        assert applied is False
        assert coordinator.get_sync_status()["dropped_payloads"] == 1

    @pytest.mark.asyncio
    async def test_undecodable_snapshot_reply(self, kv):
        """Test that a bad snapshot reply is dropped without raising."""
        transport = LoopbackTransport("phone")
        coordinator = make_coordinator(kv, transport)
        entry = make_entry()
        LocalLogStore(kv).append(entry)
        bad_reply = (
            b'{"v": 1, "kind": "snapshot", "sender": "watch", '
            b'"entries": [{"id": "x", "type": "Tall Can", "timestamp": "2026-03-10T08:00:00-05:00", '
            b'"customOunces": 1' + b"0" * 400 + b"}]}"
        )

        with patch.object(transport, "is_reachable", return_value=True), \
                patch.object(transport, "send_immediate", new_callable=AsyncMock, return_value=bad_reply):
            merged = await coordinator.request_snapshot()

        assert merged is False
        assert LocalLogStore(kv).load().ids() == {entry.id}
        assert coordinator.get_sync_status()["dropped_payloads"] == 1
        assert coordinator.state == SyncState.AWAITING_REACHABILITY

    @pytest.mark.asyncio
    async def test_merge_raises_data_changed(self, kv):
        """Test that a merged entry sets the data-changed signal."""
        coordinator = make_coordinator(kv, LoopbackTransport("phone"))

        await coordinator.handle_payload(encode_payload(SyncPayload.entry("watch", make_entry())))

        assert coordinator.data_changed is True
        assert coordinator.changed.is_set()
        assert coordinator.acknowledge_data_changed() is True
        assert coordinator.data_changed is False
        assert coordinator.acknowledge_data_changed() is False

    @pytest.mark.asyncio
    async def test_capabilities_last_write_wins(self, kv):
        """Test that each declaration overwrites the cache."""
        coordinator = make_coordinator(kv, LoopbackTransport("phone"))
        cache = CapabilityCache(kv)

        await coordinator.handle_payload(encode_payload(SyncPayload.capabilities("watch", True)))
        assert cache.is_premium is True

        await coordinator.handle_payload(encode_payload(SyncPayload.capabilities("watch", False)))
        assert cache.is_premium is False
        assert coordinator.data_changed is False

    @pytest.mark.asyncio
    async def test_snapshot_request_answered_by_reply(self, kv):
        """Test that a request with a reply handle is answered through it."""
        coordinator = make_coordinator(kv, LoopbackTransport("phone"))
        entry = make_entry()
        LocalLogStore(kv).append(entry)
        replies = []

        async def reply(data: bytes) -> None:
            replies.append(data)

        await coordinator.handle_payload(
            encode_payload(SyncPayload.snapshot_request("watch")), reply=reply
        )

        (snapshot,) = [decode_payload(r) for r in replies]
        assert snapshot.sender == "phone"
        assert [e.id for e in snapshot.entries] == [entry.id]

    @pytest.mark.asyncio
    async def test_snapshot_request_without_reply_uses_reliable(self, kv):
        """Test the reliable fallback when no reply handle came with the request."""
        phone_link, watch_link = LoopbackTransport.pair()
        coordinator = make_coordinator(kv, phone_link)

        await coordinator.handle_payload(encode_payload(SyncPayload.snapshot_request("watch")))

        (event,) = drain(watch_link)
        assert event.channel == DeliveryChannel.RELIABLE
        assert decode_payload(event.payload).kind.value == "snapshot"


class TestOutbound:
    """Tests for publishing and requesting."""

    @pytest.mark.asyncio
    async def test_publish_reachable_sends_both_channels(self, kv):
        """Test that a reachable peer gets reliable and immediate copies."""
        phone_link, watch_link = LoopbackTransport.pair()
        coordinator = make_coordinator(kv, phone_link)

        await coordinator.publish_entry(make_entry())

        channels = [e.channel for e in drain(watch_link)]
        assert channels == [DeliveryChannel.RELIABLE, DeliveryChannel.IMMEDIATE]

    @pytest.mark.asyncio
    async def test_publish_unreachable_queues_reliable(self, kv):
        """Test that an unreachable peer only gets the reliable copy, later."""
        phone_link, watch_link = LoopbackTransport.pair(reachable=False)
        coordinator = make_coordinator(kv, phone_link)

        await coordinator.publish_entry(make_entry())

        assert drain(watch_link) == []
        assert phone_link.pending_reliable == 1
        assert coordinator.get_sync_status()["failed_sends"] == 0

    @pytest.mark.asyncio
    async def test_publish_survives_send_errors(self, kv):
        """Test that send failures are counted and swallowed."""
        phone_link, _ = LoopbackTransport.pair()
        coordinator = make_coordinator(kv, phone_link)

        with patch.object(phone_link, "send_reliable", side_effect=OSError("broken")):
            await coordinator.publish_entry(make_entry())

        assert coordinator.get_sync_status()["failed_sends"] == 1

    @pytest.mark.asyncio
    async def test_snapshot_request_timeout_keeps_local_data(self, kv):
        """Test that a silent peer leaves local data untouched."""
        phone_link, _ = LoopbackTransport.pair()
        coordinator = make_coordinator(kv, phone_link, request_timeout=0.05)
        entry = make_entry()
        LocalLogStore(kv).append(entry)

        merged = await coordinator.request_snapshot()

        assert merged is False
        assert LocalLogStore(kv).load().ids() == {entry.id}
        assert coordinator.get_sync_status()["last_snapshot"] is None

    @pytest.mark.asyncio
    async def test_snapshot_request_skipped_when_unreachable(self, kv):
        """Test that no request is made while the peer is unreachable."""
        phone_link, watch_link = LoopbackTransport.pair(reachable=False)
        coordinator = make_coordinator(kv, phone_link)

        assert await coordinator.request_snapshot() is False
        assert drain(watch_link) == []


class TestState:
    """Tests for the coordinator state machine."""

    @pytest.mark.asyncio
    async def test_state_transitions(self, devices, links):
        """Test awaiting, idle and back to awaiting when the link drops."""
        phone, watch = devices
        phone_link, _ = links

        assert phone.coordinator.state == SyncState.AWAITING_REACHABILITY

        async with running(phone, watch):
            assert await wait_until_settled(phone, watch)
            assert phone.coordinator.state == SyncState.IDLE

            phone_link.set_reachable(False)
            assert await wait_until_settled(phone, watch)
            assert phone.coordinator.state == SyncState.AWAITING_REACHABILITY

    @pytest.mark.asyncio
    async def test_syncing_while_request_in_flight(self, kv):
        """Test that an outstanding snapshot request shows as syncing."""
        phone_link, _ = LoopbackTransport.pair()
        coordinator = make_coordinator(kv, phone_link, request_timeout=0.2)

        task = asyncio.create_task(coordinator.request_snapshot())
        await asyncio.sleep(0.01)

        assert coordinator.state == SyncState.SYNCING
        await task
        assert coordinator.state != SyncState.SYNCING

    @pytest.mark.asyncio
    async def test_activation_error_keeps_awaiting(self, kv):
        """Test that a failed activation does not mark the coordinator ready."""
        phone_link, _ = LoopbackTransport.pair()
        coordinator = make_coordinator(kv, phone_link)

        await coordinator.handle_event(
            TransportEvent(type=TransportEventType.ACTIVATION_COMPLETE, error="no broker")
        )

        assert coordinator.activated is False
        assert coordinator.state == SyncState.AWAITING_REACHABILITY

    @pytest.mark.asyncio
    async def test_run_loop_survives_handler_errors(self, kv):
        """Test that one failing event does not stop the consumer loop."""
        phone_link, _ = LoopbackTransport.pair()
        coordinator = make_coordinator(kv, phone_link)
        coordinator._running = True
        loop_task = asyncio.create_task(coordinator._run_loop())

        with patch.object(
            coordinator, "handle_payload", side_effect=[RuntimeError("boom"), True]
        ) as handler:
            for _ in range(2):
                phone_link.events.put_nowait(
                    TransportEvent(type=TransportEventType.RECEIVED, payload=b"{}")
                )
            for _ in range(20):
                await asyncio.sleep(0.01)
                if handler.call_count == 2:
                    break

        loop_task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await loop_task

        assert handler.call_count == 2


class TestCapabilitiesOverLink:
    """Tests for capability declarations between running devices."""

    @pytest.mark.asyncio
    async def test_premium_declared_to_peer(self, devices):
        """Test that the phone's entitlement reaches the watch and updates win."""
        phone, watch = devices

        async with running(phone, watch):
            assert await wait_until_settled(phone, watch)
            assert watch.capabilities.is_premium is True
            assert phone.capabilities.is_premium is False
            assert phone.capabilities.updated_at is not None

            watch.coordinator.acknowledge_data_changed()
            phone.config.device.premium = False
            await phone.coordinator.push_capabilities()
            assert await wait_until_settled(phone, watch)

            assert watch.capabilities.is_premium is False
            assert watch.coordinator.data_changed is False
