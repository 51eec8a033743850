"""Tests for persisted settings and environment configuration."""

import json

import pytest

from clawlink.config import (
    ClawlinkSettings,
    StreamingMode,
    ensure_device_identity,
    get_config_value,
    load_config,
)
from clawlink.identity import DeviceAuthToken, PairingStatus, generate_device_identity


@pytest.fixture
def config_path(tmp_path):
    return tmp_path / "clawlink" / "config.json"


class TestSettingsFile:
    """Load/save of the JSON settings file."""

    def test_missing_file_gives_defaults(self, config_path):
        settings = ClawlinkSettings.load(config_path)

        assert settings.gateway_url == "http://localhost:18789"
        assert settings.agent_id == "main"
        assert settings.streaming_mode == StreamingMode.WEBSOCKET
        assert settings.share_active_file is True
        assert settings.device_identity is None
        assert settings.device_pairing_status == PairingStatus.UNPAIRED
        assert not config_path.exists()

    def test_save_and_load(self, config_path):
        identity = generate_device_identity()
        settings = ClawlinkSettings(
            gateway_url="https://gw.example.com",
            gateway_token="secret",
            agent_id="coder",
            streaming_mode=StreamingMode.HTTP_SSE,
            device_identity=identity,
            device_auth_token=DeviceAuthToken("dt", "operator", ["operator.read"], 5),
            device_pairing_status=PairingStatus.PAIRED,
            current_session_key="coder:1:x",
        )

        settings.save(config_path)
        loaded = ClawlinkSettings.load(config_path)

        assert loaded == settings
        stored = json.loads(config_path.read_text())
        assert stored["streaming_mode"] == "http-sse"
        assert stored["device_pairing_status"] == "paired"

    def test_partial_file_keeps_defaults(self, config_path):
        config_path.parent.mkdir(parents=True)
        config_path.write_text(json.dumps({"gateway_token": "t", "streaming_mode": "off"}))

        settings = ClawlinkSettings.load(config_path)

        assert settings.gateway_token == "t"
        assert settings.streaming_mode == StreamingMode.OFF
        assert settings.gateway_url == "http://localhost:18789"

    def test_unknown_values_fall_back(self, config_path):
        config_path.parent.mkdir(parents=True)
        config_path.write_text(json.dumps({
            "streaming_mode": "carrier-pigeon",
            "device_pairing_status": "maybe",
        }))

        settings = ClawlinkSettings.load(config_path)

        assert settings.streaming_mode == StreamingMode.WEBSOCKET
        assert settings.device_pairing_status == PairingStatus.UNPAIRED

    def test_corrupt_file_gives_defaults(self, config_path, caplog):
        config_path.parent.mkdir(parents=True)
        config_path.write_text("{not json")

        settings = ClawlinkSettings.load(config_path)

        assert settings == ClawlinkSettings()
        assert "Could not read settings" in caplog.text

    def test_non_object_file_gives_defaults(self, config_path):
        config_path.parent.mkdir(parents=True)
        config_path.write_text("[1, 2]")

        assert ClawlinkSettings.load(config_path) == ClawlinkSettings()


class TestLegacyMigration:
    """Files written with the boolean enable_streaming flag."""

    @pytest.mark.parametrize("legacy, expected", [
        (True, StreamingMode.WEBSOCKET),
        (False, StreamingMode.OFF),
    ])
    def test_flag_is_migrated_and_saved(self, config_path, legacy, expected):
        config_path.parent.mkdir(parents=True)
        config_path.write_text(json.dumps({"gateway_token": "t", "enable_streaming": legacy}))

        settings = ClawlinkSettings.load(config_path)

        assert settings.streaming_mode == expected
        stored = json.loads(config_path.read_text())
        assert stored["streaming_mode"] == expected.value
        assert "enable_streaming" not in stored

    def test_missing_flag_means_websocket(self, config_path):
        config_path.parent.mkdir(parents=True)
        config_path.write_text(json.dumps({"gateway_token": "t"}))

        assert ClawlinkSettings.load(config_path).streaming_mode == StreamingMode.WEBSOCKET

    def test_current_files_are_not_rewritten(self, config_path):
        config_path.parent.mkdir(parents=True)
        original = json.dumps({"streaming_mode": "off", "enable_streaming": True})
        config_path.write_text(original)

        settings = ClawlinkSettings.load(config_path)

        assert settings.streaming_mode == StreamingMode.OFF
        assert config_path.read_text() == original


class TestEnsureDeviceIdentity:
    """First-run creation and later repair."""

    def test_creates_identity(self):
        settings = ClawlinkSettings()

        assert ensure_device_identity(settings)
        assert settings.device_identity is not None

    def test_valid_identity_is_untouched(self):
        identity = generate_device_identity()
        settings = ClawlinkSettings(device_identity=identity)

        assert not ensure_device_identity(settings)
        assert settings.device_identity is identity

    def test_tampered_identity_is_repaired(self):
        identity = generate_device_identity()
        settings = ClawlinkSettings(device_identity=identity)
        settings.device_identity.device_id = "not-the-hash"

        assert ensure_device_identity(settings)
        assert settings.device_identity.device_id != "not-the-hash"
        assert settings.device_identity.public_key == identity.public_key


class TestStreamingMode:
    """Mode parsing."""

    def test_parse_known(self):
        assert StreamingMode.parse("http-sse") == StreamingMode.HTTP_SSE
        assert StreamingMode.parse("off") == StreamingMode.OFF

    def test_parse_unknown_uses_default(self):
        assert StreamingMode.parse(None) == StreamingMode.WEBSOCKET
        assert StreamingMode.parse("bogus", StreamingMode.OFF) == StreamingMode.OFF


class TestEnvironmentConfig:
    """CLAWLINK_* environment variables."""

    @pytest.fixture(autouse=True)
    def _fresh_cache(self):
        load_config.cache_clear()
        yield
        load_config.cache_clear()

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("CLAWLINK_GATEWAY_URL", "http://10.0.0.5:18789")
        monkeypatch.setenv("CLAWLINK_TOKEN", "env-token")
        monkeypatch.setenv("CLAWLINK_STREAMING_MODE", "off")
        monkeypatch.delenv("CLAWLINK_AGENT_ID", raising=False)

        config = load_config()

        assert config["GATEWAY_URL"] == "http://10.0.0.5:18789"
        assert config["TOKEN"] == "env-token"
        assert config["STREAMING_MODE"] == "off"
        assert config["AGENT_ID"] == ""

    def test_get_config_value_default(self, monkeypatch):
        monkeypatch.delenv("CLAWLINK_AGENT_ID", raising=False)
        assert get_config_value("AGENT_ID", "main") == "main"
        assert get_config_value("MISSING") is None
