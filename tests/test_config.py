"""Tests for configuration loading."""

import pytest
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sipsync.config import load_config


class TestConfig:
    """Tests for configuration loading."""

    def test_default_config(self):
        """Test default configuration values."""
        config = load_config()

        assert config.device.name == "phone"
        assert config.device.peer == "watch"
        assert config.device.premium is False
        assert config.storage.namespace == "group.sipsync.shared"
        assert config.rate_limit.minimum_interval_seconds == 120
        assert config.sync.transport == "mqtt"
        assert config.sync.request_timeout_seconds == 10.0
        assert config.mqtt.broker == "localhost"
        assert config.mqtt.port == 1883

    def test_yaml_file(self, tmp_path):
        """Test loading values from YAML."""
        path = tmp_path / "config.yaml"
        path.write_text(
            "device:\n"
            "  name: watch\n"
            "  peer: phone\n"
            "  premium: true\n"
            "rate_limit:\n"
            "  minimum_interval_seconds: 30\n"
            "sync:\n"
            "  transport: none\n"
            "mqtt:\n"
            "  broker: broker.local\n"
            "  topic_prefix: drinks\n"
        )

        config = load_config(path)

        assert config.device.name == "watch"
        assert config.device.premium is True
        assert config.rate_limit.minimum_interval_seconds == 30
        assert config.sync.transport == "none"
        assert config.sync.enabled is True
        assert config.mqtt.broker == "broker.local"
        assert config.mqtt.topic_prefix == "drinks"
        assert config.mqtt.port == 1883

    def test_missing_file_uses_defaults(self, tmp_path):
        """Test that a missing file is not an error."""
        config = load_config(tmp_path / "nope.yaml")
        assert config.device.name == "phone"

    def test_empty_file(self, tmp_path):
        """Test that an empty YAML file gives defaults."""
        path = tmp_path / "config.yaml"
        path.write_text("")

        assert load_config(path).storage.entries_key == "drink_entries"

    def test_env_override(self, monkeypatch):
        """Test environment variable overrides."""
        monkeypatch.setenv("SIPSYNC_DEVICE_NAME", "watch")
        monkeypatch.setenv("SIPSYNC_DEVICE_PEER", "phone")
        monkeypatch.setenv("SIPSYNC_DEVICE_PREMIUM", "yes")
        monkeypatch.setenv("SIPSYNC_RATE_LIMIT_SECONDS", "45")
        monkeypatch.setenv("SIPSYNC_SYNC_TRANSPORT", "NONE")
        monkeypatch.setenv("SIPSYNC_MQTT_PORT", "8883")
        monkeypatch.setenv("SIPSYNC_DB_PATH", "/tmp/sipsync-test.db")

        config = load_config()

        assert config.device.name == "watch"
        assert config.device.premium is True
        assert config.rate_limit.minimum_interval_seconds == 45.0
        assert config.sync.transport == "none"
        assert config.mqtt.port == 8883
        assert config.storage.db_path == "/tmp/sipsync-test.db"

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        """Test that environment wins over YAML."""
        path = tmp_path / "config.yaml"
        path.write_text("mqtt:\n  broker: from-file\n")
        monkeypatch.setenv("SIPSYNC_MQTT_BROKER", "from-env")

        assert load_config(path).mqtt.broker == "from-env"

    def test_sync_disabled_by_env(self, monkeypatch):
        """Test disabling sync."""
        monkeypatch.setenv("SIPSYNC_SYNC_ENABLED", "false")
        assert load_config().sync.enabled is False

    def test_unknown_transport(self, monkeypatch):
        """Test that an unknown transport is rejected."""
        monkeypatch.setenv("SIPSYNC_SYNC_TRANSPORT", "bluetooth")

        with pytest.raises(ValueError, match="Unknown sync transport"):
            load_config()

    def test_device_and_peer_must_differ(self, monkeypatch):
        """Test that a device cannot be its own peer."""
        monkeypatch.setenv("SIPSYNC_DEVICE_PEER", "phone")

        with pytest.raises(ValueError, match="must differ"):
            load_config()

    def test_negative_interval(self, monkeypatch):
        """Test that a negative cooldown is rejected."""
        monkeypatch.setenv("SIPSYNC_RATE_LIMIT_SECONDS", "-1")

        with pytest.raises(ValueError):
            load_config()

    def test_timezone(self, tmp_path, monkeypatch):
        """Test the optional device timezone from YAML and environment."""
        try:
            ZoneInfo("UTC")
        except ZoneInfoNotFoundError:
            pytest.skip("tz database not available")

        path = tmp_path / "config.yaml"
        path.write_text("device:\n  timezone: UTC\n")

        config = load_config(path)
        assert config.device.timezone == "UTC"
        assert config.device.zone().key == "UTC"

        monkeypatch.setenv("SIPSYNC_DEVICE_TIMEZONE", "Not/AZone")
        with pytest.raises(ValueError, match="Unknown timezone"):
            load_config(path)

    def test_no_timezone_by_default(self):
        """Test that the system offset is used unless a zone is configured."""
        assert load_config().device.zone() is None
