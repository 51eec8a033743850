"""Device identity for gateway device pairing.

Each installation owns one Ed25519 keypair. The device id is the
lowercase hex SHA-256 fingerprint of the raw 32-byte public key; the
gateway tracks paired devices by that id and issues device tokens to it.

Keys are stored as unpadded base64url strings of the raw key bytes.
"""

import base64
import hashlib
import logging
import time
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

logger = logging.getLogger(__name__)

IDENTITY_VERSION = 1
AUTH_PAYLOAD_VERSION = "v2"


class PairingStatus(str, Enum):
    """Pairing state of this device with the gateway."""
    UNPAIRED = "unpaired"
    PENDING = "pending"
    PAIRED = "paired"


def base64url_encode(data: bytes) -> str:
    """Base64url encode bytes without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def base64url_decode(value: str) -> bytes:
    """Decode an (optionally unpadded) base64url string."""
    padded = value + "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def fingerprint(public_key_raw: bytes) -> str:
    """Device id for a raw public key."""
    return hashlib.sha256(public_key_raw).hexdigest()


@dataclass
class DeviceIdentity:
    """Persistent Ed25519 device identity."""
    device_id: str
    public_key: str  # base64url raw 32-byte public key
    private_key: str  # base64url raw 32-byte seed
    created_at_ms: int
    version: int = IDENTITY_VERSION

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "DeviceIdentity":
        return cls(
            device_id=data.get("device_id", ""),
            public_key=data["public_key"],
            private_key=data["private_key"],
            created_at_ms=int(data.get("created_at_ms", 0)),
            version=int(data.get("version", IDENTITY_VERSION)),
        )


@dataclass
class DeviceAuthToken:
    """Device token issued by the gateway after a signed handshake."""
    token: str
    role: str
    scopes: list[str] = field(default_factory=list)
    updated_at_ms: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "DeviceAuthToken":
        return cls(
            token=data["token"],
            role=data.get("role", ""),
            scopes=list(data.get("scopes") or []),
            updated_at_ms=int(data.get("updated_at_ms", 0)),
        )


def generate_device_identity() -> DeviceIdentity:
    """Generate a fresh Ed25519 device identity.

    Key material comes from the operating system's CSPRNG; there is no
    fallback if it is unavailable.
    """
    private_key = ed25519.Ed25519PrivateKey.generate()
    seed = private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_raw = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return DeviceIdentity(
        device_id=fingerprint(public_raw),
        public_key=base64url_encode(public_raw),
        private_key=base64url_encode(seed),
        created_at_ms=int(time.time() * 1000),
    )


def validate_device_identity(identity: DeviceIdentity) -> DeviceIdentity:
    """Re-derive the device id from the stored public key.

    Returns the identity unchanged when consistent, otherwise a copy with
    the corrected device id. Keys and creation time are never touched.
    """
    derived = fingerprint(base64url_decode(identity.public_key))
    if derived == identity.device_id:
        return identity

    logger.warning(
        "Device ID mismatch (%s...), re-derived from public key as %s...",
        identity.device_id[:8], derived[:8],
    )
    return replace(identity, device_id=derived)


def build_device_auth_payload(
    device_id: str,
    client_id: str,
    client_mode: str,
    role: str,
    scopes: list[str],
    signed_at_ms: int,
    token: Optional[str],
    nonce: str,
) -> str:
    """Build the string signed during the connect handshake.

    Format: v2|deviceId|clientId|clientMode|role|scopes|signedAtMs|token|nonce

    Scopes are joined in the order given. The gateway rebuilds the same
    string to verify the signature, so callers must pass them in the
    agreed order.
    """
    return "|".join([
        AUTH_PAYLOAD_VERSION,
        device_id,
        client_id,
        client_mode,
        role,
        ",".join(scopes),
        str(signed_at_ms),
        token or "",
        nonce,
    ])


def sign_payload(private_key: str, payload: str) -> str:
    """Sign a payload with the device's Ed25519 seed.

    Args:
        private_key: base64url raw 32-byte seed
        payload: string to sign (UTF-8 encoded before signing)

    Returns:
        base64url-encoded 64-byte signature (deterministic for a given key
        and payload)
    """
    key = ed25519.Ed25519PrivateKey.from_private_bytes(base64url_decode(private_key))
    return base64url_encode(key.sign(payload.encode("utf-8")))


def verify_signature(public_key: str, payload: str, signature: str) -> bool:
    """Check a base64url signature against a base64url public key."""
    key = ed25519.Ed25519PublicKey.from_public_bytes(base64url_decode(public_key))
    try:
        key.verify(base64url_decode(signature), payload.encode("utf-8"))
    except InvalidSignature:
        return False
    return True
