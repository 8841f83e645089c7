"""rcon-lite: asyncio client for the Source RCON protocol.

protocol.py is the wire codec (pure functions plus a frame buffer),
client.py the session state machine that authenticates and correlates
command replies, config.py the connection settings.
"""
from rcon_lite.client import RconClient, SessionState, open_client
from rcon_lite.config import RconConfig
from rcon_lite.errors import (
    ConnectionClosedError,
    PacketDecodeError,
    RconAuthenticationError,
    RconConnectionError,
    RconError,
    RconNotAuthenticatedError,
    RconStateError,
    RconTimeoutError,
)
from rcon_lite.protocol import (
    DEFAULT_REQUEST_ID,
    FrameBuffer,
    Packet,
    PacketType,
    decode_packet,
    encode_packet,
)

__all__ = [
    "RconClient",
    "SessionState",
    "open_client",
    "RconConfig",
    "ConnectionClosedError",
    "PacketDecodeError",
    "RconAuthenticationError",
    "RconConnectionError",
    "RconError",
    "RconNotAuthenticatedError",
    "RconStateError",
    "RconTimeoutError",
    "DEFAULT_REQUEST_ID",
    "FrameBuffer",
    "Packet",
    "PacketType",
    "decode_packet",
    "encode_packet",
]
