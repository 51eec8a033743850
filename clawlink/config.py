"""Configuration for clawlink.

Persistent settings live in one JSON file under the per-platform data
directory. Environment variables (and a .env file) provide defaults for
the CLI flags.
"""

import json
import logging
import os
import platform
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Optional

from .identity import (
    DeviceAuthToken,
    DeviceIdentity,
    PairingStatus,
    generate_device_identity,
    validate_device_identity,
)

logger = logging.getLogger(__name__)

DEFAULT_GATEWAY_URL = "http://localhost:18789"
DEFAULT_AGENT_ID = "main"


@lru_cache(maxsize=1)
def get_version() -> str:
    """Get the installed package version."""
    from importlib.metadata import PackageNotFoundError, version

    try:
        return version("clawlink-cli")
    except PackageNotFoundError:
        return "0.1.0"


class StreamingMode(str, Enum):
    """How chat replies are delivered."""
    WEBSOCKET = "websocket"
    HTTP_SSE = "http-sse"
    OFF = "off"

    @classmethod
    def parse(cls, value: Optional[str], default: Optional["StreamingMode"] = None) -> "StreamingMode":
        try:
            return cls(value)
        except ValueError:
            return default or cls.WEBSOCKET


# =============================================================================
# Persistent Configuration (File-based)
# =============================================================================

def get_data_dir() -> Path:
    """Get the data directory for clawlink."""
    if platform.system() == "Windows":
        base = Path(os.environ.get("APPDATA", Path.home() / "AppData" / "Roaming"))
    elif platform.system() == "Darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))

    data_dir = base / "clawlink"
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def get_config_path() -> Path:
    """Get the path to the config file."""
    return get_data_dir() / "config.json"


@dataclass
class ClawlinkSettings:
    """clawlink persistent settings."""
    gateway_url: str = DEFAULT_GATEWAY_URL
    gateway_token: str = ""
    agent_id: str = DEFAULT_AGENT_ID
    share_active_file: bool = True
    share_selection: bool = True
    streaming_mode: StreamingMode = StreamingMode.WEBSOCKET
    device_identity: Optional[DeviceIdentity] = None
    device_auth_token: Optional[DeviceAuthToken] = None
    device_pairing_status: PairingStatus = PairingStatus.UNPAIRED
    current_session_key: str = ""

    def to_dict(self) -> dict:
        return {
            "gateway_url": self.gateway_url,
            "gateway_token": self.gateway_token,
            "agent_id": self.agent_id,
            "share_active_file": self.share_active_file,
            "share_selection": self.share_selection,
            "streaming_mode": self.streaming_mode.value,
            "device_identity": self.device_identity.to_dict() if self.device_identity else None,
            "device_auth_token": self.device_auth_token.to_dict() if self.device_auth_token else None,
            "device_pairing_status": self.device_pairing_status.value,
            "current_session_key": self.current_session_key,
        }

    def save(self, path: Optional[Path] = None) -> None:
        """Save settings to disk."""
        config_path = path or get_config_path()
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def from_dict(cls, data: dict) -> "ClawlinkSettings":
        """Merge stored values over the defaults."""
        defaults = cls()
        identity = data.get("device_identity")
        token = data.get("device_auth_token")
        try:
            status = PairingStatus(data.get("device_pairing_status", defaults.device_pairing_status))
        except ValueError:
            status = defaults.device_pairing_status

        return cls(
            gateway_url=data.get("gateway_url") or defaults.gateway_url,
            gateway_token=data.get("gateway_token", defaults.gateway_token),
            agent_id=data.get("agent_id") or defaults.agent_id,
            share_active_file=bool(data.get("share_active_file", defaults.share_active_file)),
            share_selection=bool(data.get("share_selection", defaults.share_selection)),
            streaming_mode=StreamingMode.parse(data.get("streaming_mode")),
            device_identity=DeviceIdentity.from_dict(identity) if isinstance(identity, dict) else None,
            device_auth_token=DeviceAuthToken.from_dict(token) if isinstance(token, dict) else None,
            device_pairing_status=status,
            current_session_key=data.get("current_session_key", "") or "",
        )

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "ClawlinkSettings":
        """Load settings from disk, falling back to defaults.

        Files written before streaming modes existed carry a boolean
        `enable_streaming`; it is migrated and the file rewritten.
        """
        config_path = path or get_config_path()
        if not config_path.exists():
            return cls()

        try:
            with open(config_path, "r") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("settings file is not a JSON object")

            migrated = "streaming_mode" not in data
            if migrated:
                legacy = data.pop("enable_streaming", True)
                data["streaming_mode"] = (StreamingMode.WEBSOCKET if legacy else StreamingMode.OFF).value

            settings = cls.from_dict(data)
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Could not read settings from %s: %s", config_path, e)
            return cls()

        if migrated:
            logger.info("Migrated legacy enable_streaming setting to %s", settings.streaming_mode.value)
            settings.save(config_path)
        return settings


def ensure_device_identity(settings: ClawlinkSettings) -> bool:
    """Create the device identity on first run, repair it on later runs.

    Returns:
        True if the settings changed and should be saved
    """
    if settings.device_identity is None:
        settings.device_identity = generate_device_identity()
        logger.info("Generated device identity %s...", settings.device_identity.device_id[:12])
        return True

    validated = validate_device_identity(settings.device_identity)
    if validated is not settings.device_identity:
        settings.device_identity = validated
        return True
    return False


# =============================================================================
# Environment Variable Configuration
# =============================================================================


@lru_cache(maxsize=1)
def load_config() -> dict:
    """
    Load application configuration from environment variables.

    Empty values mean "use the persisted setting".

    Returns:
        dict with configuration values
    """
    return {
        "GATEWAY_URL": os.getenv("CLAWLINK_GATEWAY_URL", ""),
        "TOKEN": os.getenv("CLAWLINK_TOKEN", ""),
        "AGENT_ID": os.getenv("CLAWLINK_AGENT_ID", ""),
        "STREAMING_MODE": os.getenv("CLAWLINK_STREAMING_MODE", ""),
    }


def get_config_value(key: str, default: Optional[str] = None) -> Optional[str]:
    """Get a single configuration value."""
    return load_config().get(key) or default
