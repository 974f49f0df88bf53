"""Tests for the sync wire format."""

import json
import pytest

from sipsync.errors import PayloadDecodeError
from sipsync.replica import Replica
from sipsync.sync import PayloadKind, SyncPayload, decode_payload, encode_payload

from conftest import make_entry


class TestEncodePayload:
    """Tests for payload encoding."""

    def test_entry_envelope(self):
        """Test the JSON envelope for a single entry."""
        entry = make_entry()
        body = json.loads(encode_payload(SyncPayload.entry("phone", entry)))

        assert body["v"] == 1
        assert body["kind"] == "entry"
        assert body["sender"] == "phone"
        assert body["entry"] == entry.to_dict()

    def test_snapshot_envelope(self):
        """Test the JSON envelope for a full replica."""
        replica = Replica([make_entry(), make_entry("Tall Can")])
        body = json.loads(encode_payload(SyncPayload.snapshot("watch", replica)))

        assert body["kind"] == "snapshot"
        assert {e["id"] for e in body["entries"]} == replica.ids()

    def test_capabilities_envelope(self):
        """Test the JSON envelope for capability flags."""
        body = json.loads(encode_payload(SyncPayload.capabilities("phone", True)))
        assert body == {"v": 1, "kind": "capabilities", "sender": "phone", "isPremium": True}


class TestDecodePayload:
    """Tests for payload decoding."""

    def test_entry(self):
        """Test decoding an entry payload."""
        entry = make_entry(note="hi")
        payload = decode_payload(encode_payload(SyncPayload.entry("phone", entry)))

        assert payload.kind == PayloadKind.ENTRY
        assert payload.sender == "phone"
        assert payload.entries == (entry,)

    def test_empty_snapshot(self):
        """Test that an empty replica is a valid snapshot."""
        payload = decode_payload(encode_payload(SyncPayload.snapshot("watch", Replica())))

        assert payload.kind == PayloadKind.SNAPSHOT
        assert payload.entries == ()

    def test_snapshot_request(self):
        """Test decoding a snapshot request."""
        payload = decode_payload(encode_payload(SyncPayload.snapshot_request("watch")))
        assert payload.kind == PayloadKind.SNAPSHOT_REQUEST

    def test_capabilities(self):
        """Test decoding capability flags."""
        payload = decode_payload(encode_payload(SyncPayload.capabilities("phone", False)))

        assert payload.kind == PayloadKind.CAPABILITIES
        assert payload.is_premium is False

    @pytest.mark.parametrize("data", [
        b"",
        b"\xff",
        b"[1, 2]",
        b'{"kind": "entry", "sender": "phone"}',
        b'{"v": 2, "kind": "entry", "sender": "phone"}',
        b'{"v": 1, "kind": "gossip", "sender": "phone"}',
        b'{"v": 1, "kind": "snapshot_request"}',
        b'{"v": 1, "kind": "entry", "sender": "phone"}',
        b'{"v": 1, "kind": "entry", "sender": "phone", "entry": {"id": "x"}}',
        b'{"v": 1, "kind": "snapshot", "sender": "phone", "entries": {}}',
        b'{"v": 1, "kind": "capabilities", "sender": "phone", "isPremium": "yes"}',
        b"[" * 200000,
        b'{"v": 1, "kind": "entry", "sender": "phone", "entry": ' + b"{\"a\": " * 100000,
        b'{"v": 1, "kind": "entry", "sender": "phone", "entry": {"id": "x", "type": "Tall Can", '
        b'"timestamp": "2026-03-10T08:00:00-05:00", "customOunces": 1' + b"0" * 400 + b"}}",
    ])
    def test_malformed(self, data):
        """Test that malformed payloads raise PayloadDecodeError."""
        with pytest.raises(PayloadDecodeError):
            decode_payload(data)
