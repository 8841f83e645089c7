"""Source RCON wire format.

Packet layout (all integers little-endian int32):
    bytes [0,4):   size  -- byte length of everything after itself
    bytes [4,8):   request id
    bytes [8,12):  packet type
    bytes [12,..): payload, followed by two null bytes

So size == 4 + 4 + len(payload) + 2, and the smallest legal packet
(empty payload) has size 10.

The functions here are pure: no sockets, no state. FrameBuffer is the
one stateful piece, and only because TCP delivers a byte stream, not
packets. It sits between the transport and decode_packet() and hands
out exactly one complete frame at a time.
"""
from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum

from rcon_lite.errors import PacketDecodeError

HEADER_SIZE = 4             # the size field itself
MIN_PACKET_SIZE = 10        # id + type + two trailing nulls
MAX_PACKET_SIZE = 1024 * 1024  # 1 MB safety limit on inbound frames
DEFAULT_REQUEST_ID = 1337
PAYLOAD_ENCODING = "ascii"

_HEAD = struct.Struct("<iii")
_SIZE = struct.Struct("<i")
_TRAILER = b"\x00\x00"


class PacketType(IntEnum):
    """RCON packet types.

    AUTH_RESPONSE and EXEC_COMMAND share the value 2, which makes
    EXEC_COMMAND an alias of AUTH_RESPONSE. A reply's meaning depends on
    what the session was waiting for, never on this field.
    """
    RESPONSE_VALUE = 0
    AUTH_RESPONSE = 2
    EXEC_COMMAND = 2
    AUTH = 3


@dataclass(frozen=True, slots=True)
class Packet:
    """A decoded RCON packet.

    packet_type is kept as a plain int so values outside PacketType
    survive decoding.
    """
    request_id: int
    packet_type: int
    payload: str

    def size(self, encoding: str = PAYLOAD_ENCODING) -> int:
        """Value of the size field this packet encodes to."""
        return MIN_PACKET_SIZE + len(self.payload.encode(encoding, errors="replace"))

    def encode(self, encoding: str = PAYLOAD_ENCODING) -> bytes:
        return encode_packet(
            self.packet_type, self.payload, self.request_id, encoding
        )


def encode_packet(
    packet_type: int,
    payload: str,
    request_id: int = DEFAULT_REQUEST_ID,
    encoding: str = PAYLOAD_ENCODING,
) -> bytes:
    """Serialize one packet, size prefix included.

    Characters the encoding cannot represent are replaced with "?"
    rather than rejected, so non-ASCII commands go out mangled.
    """
    body = payload.encode(encoding, errors="replace")
    size = MIN_PACKET_SIZE + len(body)
    return _HEAD.pack(size, request_id, int(packet_type)) + body + _TRAILER


def decode_packet(buffer: bytes, encoding: str = PAYLOAD_ENCODING) -> Packet:
    """Parse one complete frame (size prefix included) into a Packet.

    Bytes past the end of the frame are ignored.

    Raises:
        PacketDecodeError: if the buffer is shorter than the header,
            the size field is below MIN_PACKET_SIZE, or the buffer
            holds fewer than size + 4 bytes.
    """
    if len(buffer) < _HEAD.size:
        raise PacketDecodeError(
            f"Packet too short: {len(buffer)} bytes, header needs {_HEAD.size}"
        )
    size, request_id, packet_type = _HEAD.unpack_from(buffer, 0)
    if size < MIN_PACKET_SIZE:
        raise PacketDecodeError(
            f"Packet size {size} below minimum {MIN_PACKET_SIZE}"
        )
    if len(buffer) < HEADER_SIZE + size:
        raise PacketDecodeError(
            f"Truncated packet: size field says {size}, "
            f"got {len(buffer) - HEADER_SIZE} bytes"
        )
    start = _HEAD.size
    payload = bytes(buffer[start:start + size - MIN_PACKET_SIZE])
    return Packet(
        request_id=request_id,
        packet_type=packet_type,
        payload=payload.decode(encoding, errors="replace"),
    )


class FrameBuffer:
    """Reassemble a TCP byte stream into complete RCON frames.

    feed() accepts whatever the transport delivered -- half a packet,
    exactly one, or several glued together -- and returns the frames
    that are now complete. Leftover bytes wait for the next feed().
    """

    __slots__ = ("_buf",)

    def __init__(self) -> None:
        self._buf = bytearray()

    @property
    def pending(self) -> int:
        """Bytes received but not yet part of a complete frame."""
        return len(self._buf)

    def feed(self, data: bytes) -> list[bytes]:
        """Append data and return every frame it completes.

        Raises:
            PacketDecodeError: if a size field is below MIN_PACKET_SIZE
                or above MAX_PACKET_SIZE. The buffer is left untouched
                so the caller can decide to drop the connection.
        """
        self._buf += data
        frames: list[bytes] = []
        while len(self._buf) >= HEADER_SIZE:
            (size,) = _SIZE.unpack_from(self._buf, 0)
            if size < MIN_PACKET_SIZE or size > MAX_PACKET_SIZE:
                raise PacketDecodeError(
                    f"Invalid packet size {size} "
                    f"(expected {MIN_PACKET_SIZE}..{MAX_PACKET_SIZE})"
                )
            end = HEADER_SIZE + size
            if len(self._buf) < end:
                break
            frames.append(bytes(self._buf[:end]))
            del self._buf[:end]
        return frames

    def clear(self) -> None:
        self._buf.clear()
