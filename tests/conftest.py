"""Shared fixtures for SipSync tests."""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import pytest

from sipsync.config import Config, DeviceConfig
from sipsync.device import Device
from sipsync.replica import DrinkEntry
from sipsync.store import KeyValueStore
from sipsync.sync import LoopbackTransport

# Fixed zone so day boundaries do not depend on the machine running the tests
EST = timezone(timedelta(hours=-5))
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=EST)


def make_entry(drink_type="Regular Can", ts=None, custom_ounces=None, note=None) -> DrinkEntry:
    """Create an entry at a fixed time unless one is given."""
    return DrinkEntry.create(drink_type, now=ts or NOW, custom_ounces=custom_ounces, note=note)


def make_device(name: str, peer: str, transport=None, premium: bool = False) -> Device:
    """Create a device backed by an in-memory store."""
    config = Config(device=DeviceConfig(name=name, peer=peer, premium=premium))
    kv = KeyValueStore(":memory:", "test-group")
    kv.connect()
    return Device(config, kv=kv, transport=transport)


@pytest.fixture
def kv():
    """Create an in-memory key-value store."""
    store = KeyValueStore(":memory:", "test-group")
    store.connect()
    yield store
    store.close()


@pytest.fixture
def links():
    """Create a linked phone/watch loopback pair, initially reachable."""
    return LoopbackTransport.pair("phone", "watch")


@pytest.fixture
def devices(links):
    """Create a phone and a watch wired to the loopback pair (not started)."""
    phone_link, watch_link = links
    phone = make_device("phone", "watch", transport=phone_link, premium=True)
    watch = make_device("watch", "phone", transport=watch_link)
    return phone, watch


@asynccontextmanager
async def running(*devices: Device):
    """Start devices for the duration of a block."""
    for device in devices:
        await device.start()
    try:
        yield devices
    finally:
        for device in devices:
            await device.stop()
