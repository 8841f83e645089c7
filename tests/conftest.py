"""Shared fixtures and a mock RCON server for the client tests.

MockRconServer speaks just enough Source RCON to drive RconClient:
it answers AUTH with the request id (or -1 on a wrong password) and
answers EXEC_COMMAND with whatever `handler` returns. The `misbehave`
switch makes it break the protocol in one specific way per test.

Requires: pip install pytest-asyncio
"""
from __future__ import annotations

import asyncio
import socket
import struct
from collections.abc import Callable

import pytest

from rcon_lite.protocol import (
    HEADER_SIZE,
    Packet,
    PacketType,
    decode_packet,
    encode_packet,
)


def echo_handler(command: str) -> str:
    return f"{command}-response"


class MockRconServer:
    """Asyncio RCON server on 127.0.0.1 with an OS-assigned port.

    Args:
        password: the password AUTH must carry.
        handler: command text -> reply text.
        auth_reply_id: force this id on the auth reply instead of
            echoing the request id (or -1 for a wrong password).
        empty_response_first: send an empty RESPONSE_VALUE before the
            auth reply, as Source servers do. Both go out in one write
            unless auth_reply_delay is set.
        auth_reply_type: packet type of the auth reply.
        auth_reply_delay: seconds to wait between the empty
            RESPONSE_VALUE and the auth reply.
        split_writes: write every reply in two halves with a pause in
            between, so the client sees partial frames.
        misbehave: what to do with EXEC_COMMAND instead of replying:
            "silent"  -- never reply
            "close"   -- close the connection
            "garbage" -- send a frame with an invalid size field
            "reverse" -- hold replies until two commands arrived,
                         then answer them in reverse order
            "unknown" -- reply with a request id nobody asked for,
                         then with the real one
            "reset"   -- abort the connection with a TCP RST
    """

    def __init__(
        self,
        password: str = "secret",
        handler: Callable[[str], str] = echo_handler,
        auth_reply_id: int | None = None,
        empty_response_first: bool = False,
        auth_reply_type: int = PacketType.AUTH_RESPONSE,
        auth_reply_delay: float = 0.0,
        split_writes: bool = False,
        misbehave: str | None = None,
    ) -> None:
        self.password = password
        self.handler = handler
        self.auth_reply_id = auth_reply_id
        self.empty_response_first = empty_response_first
        self.auth_reply_type = auth_reply_type
        self.auth_reply_delay = auth_reply_delay
        self.split_writes = split_writes
        self.misbehave = misbehave
        self.received: list[Packet] = []
        self.connections = 0
        self._held: list[Packet] = []
        self._server: asyncio.AbstractServer | None = None
        self._writers: list[asyncio.StreamWriter] = []
        self._port = 0

    @property
    def address(self) -> tuple[str, int]:
        return ("127.0.0.1", self._port)

    async def start(self) -> MockRconServer:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self._port = self._server.sockets[0].getsockname()[1]
        return self

    async def stop(self) -> None:
        for writer in self._writers:
            writer.close()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def _handle(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        self.connections += 1
        self._writers.append(writer)
        try:
            while True:
                header = await reader.readexactly(HEADER_SIZE)
                (size,) = struct.unpack("<i", header)
                body = await reader.readexactly(size)
                packet = decode_packet(header + body)
                self.received.append(packet)
                if packet.packet_type == PacketType.AUTH:
                    await self._answer_auth(writer, packet)
                elif not await self._answer_command(writer, packet):
                    return
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()

    async def _answer_auth(self, writer: asyncio.StreamWriter, packet: Packet) -> None:
        if self.auth_reply_id is not None:
            reply_id = self.auth_reply_id
        elif packet.payload == self.password:
            reply_id = packet.request_id
        else:
            reply_id = -1
        reply = encode_packet(self.auth_reply_type, "", reply_id)
        if not self.empty_response_first:
            await self._write(writer, reply)
            return
        value = encode_packet(PacketType.RESPONSE_VALUE, "", packet.request_id)
        if self.auth_reply_delay:
            await self._write(writer, value)
            await asyncio.sleep(self.auth_reply_delay)
            await self._write(writer, reply)
        else:
            await self._write(writer, value + reply)

    async def _answer_command(self, writer: asyncio.StreamWriter, packet: Packet) -> bool:
        """Reply to one command. Returns False once the connection should end."""
        if self.misbehave == "silent":
            return True
        if self.misbehave == "close":
            return False
        if self.misbehave == "reset":
            sock = writer.get_extra_info("socket")
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
            writer.transport.abort()
            return False
        if self.misbehave == "garbage":
            await self._write(writer, struct.pack("<iii", 3, packet.request_id, 0))
            return True
        if self.misbehave == "reverse":
            self._held.append(packet)
            if len(self._held) < 2:
                return True
            for held in reversed(self._held):
                await self._reply(writer, held)
            self._held.clear()
            return True
        if self.misbehave == "unknown":
            await self._write(
                writer,
                encode_packet(PacketType.RESPONSE_VALUE, "stray", packet.request_id + 1000),
            )
        await self._reply(writer, packet)
        return True

    async def _reply(self, writer: asyncio.StreamWriter, packet: Packet) -> None:
        reply = self.handler(packet.payload)
        await self._write(
            writer, encode_packet(PacketType.RESPONSE_VALUE, reply, packet.request_id)
        )

    async def _write(self, writer: asyncio.StreamWriter, data: bytes) -> None:
        if self.split_writes:
            half = len(data) // 2
            writer.write(data[:half])
            await writer.drain()
            await asyncio.sleep(0.01)
            data = data[half:]
        writer.write(data)
        await writer.drain()


async def start_mock_server(**kwargs) -> MockRconServer:
    """Create and start a MockRconServer."""
    return await MockRconServer(**kwargs).start()


@pytest.fixture()
def free_port() -> int:
    """A localhost port with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]
