"""clawlink - client for the OpenClaw gateway protocol."""

from .client import GatewayClient, build_context_prefix
from .config import ClawlinkSettings, StreamingMode
from .connection import ConnectionOptions, ConnectionState, GatewayConnection
from .identity import DeviceAuthToken, DeviceIdentity, PairingStatus
from .router import ChatRouter, ChatSendOptions
from .rpc import (
    ConnectionClosedError,
    GatewayError,
    GatewayRequestError,
    NotConnectedError,
    RpcTimeoutError,
)

__all__ = [
    "ChatRouter",
    "ChatSendOptions",
    "ClawlinkSettings",
    "ConnectionClosedError",
    "ConnectionOptions",
    "ConnectionState",
    "DeviceAuthToken",
    "DeviceIdentity",
    "GatewayClient",
    "GatewayConnection",
    "GatewayError",
    "GatewayRequestError",
    "NotConnectedError",
    "PairingStatus",
    "RpcTimeoutError",
    "StreamingMode",
    "build_context_prefix",
]
