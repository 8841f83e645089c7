"""Asyncio RCON client -- one TCP connection, one authenticated session.

Architecture:
    loop.create_connection() opens the socket and drives _RconProtocol.
    _RconProtocol turns transport callbacks into session events:
        connection_made  -> send AUTH
        data_received    -> FrameBuffer -> decode_packet -> dispatch
        connection_lost  -> reject whatever is still waiting
    RconClient holds the state machine and the futures callers await.

State machine:
    IDLE -> CONNECTING -> AUTHENTICATING -> READY
    Any failure, and disconnect(), go back to IDLE.

A reply's meaning comes from the state, not the packet type: the
protocol uses type 2 both for AUTH_RESPONSE and EXEC_COMMAND. While
AUTHENTICATING every packet answers the handshake; once READY every
packet answers a command and is matched to it by request id. Each send
gets a fresh id, so several commands can be in flight at once.

Everything runs on the event loop thread, so callbacks and coroutines
share the session fields without locks.
"""
from __future__ import annotations

import asyncio
import errno
import logging
import socket
from collections.abc import Callable
from enum import Enum, auto

from rcon_lite.config import DEFAULT_TIMEOUT, RconConfig
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
    PAYLOAD_ENCODING,
    FrameBuffer,
    Packet,
    PacketType,
    decode_packet,
    encode_packet,
)

log = logging.getLogger(__name__)

_INT32_MAX = 2**31 - 1
_UNREACHABLE = {errno.EHOSTUNREACH, errno.ENETUNREACH}

# Distinguishes "use the client default" from timeout=None (wait forever)
_DEFAULT = object()


class SessionState(Enum):
    IDLE = auto()
    CONNECTING = auto()
    AUTHENTICATING = auto()
    READY = auto()


def _connect_error(exc: OSError) -> RconConnectionError:
    """Map a socket-level connect failure to a readable error."""
    if isinstance(exc, ConnectionRefusedError) or exc.errno == errno.ECONNREFUSED:
        message = "Remote host refused connection"
    elif isinstance(exc, TimeoutError) or exc.errno == errno.ETIMEDOUT:
        message = "Connection to remote host timed out"
    elif isinstance(exc, socket.gaierror) or exc.errno in _UNREACHABLE:
        message = "Unable to connect to remote host"
    else:
        message = f"Unable to connect to remote host: {exc}"
    return RconConnectionError(message)


class _RconProtocol(asyncio.Protocol):
    """Transport callbacks for one connection, forwarded to the client."""

    def __init__(self, client: RconClient) -> None:
        self._client = client
        self._frames = FrameBuffer()
        self._closed: asyncio.Future[None] = (
            asyncio.get_running_loop().create_future()
        )

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self._client._on_connected(self, transport)

    def data_received(self, data: bytes) -> None:
        try:
            frames = self._frames.feed(data)
        except PacketDecodeError as exc:
            self._client._on_protocol_error(self, exc)
            return
        for frame in frames:
            self._client._on_packet(self, decode_packet(frame, self._client.encoding))
        self._client._on_read_done(self)

    def connection_lost(self, exc: Exception | None) -> None:
        self._frames.clear()
        if not self._closed.done():
            self._closed.set_result(None)
        self._client._on_close(self, exc)

    async def wait_closed(self) -> None:
        await self._closed


class RconClient:
    """Client side of an RCON session.

    Args:
        connect_timeout: default deadline in seconds for connect(),
            covering both the TCP connect and the AUTH handshake.
            None waits forever.
        command_timeout: default deadline in seconds for send().
        encoding: payload text encoding (the protocol specifies ASCII).

    Usage:
        async with RconClient() as rcon:
            await rcon.connect("127.0.0.1", 27015, "secret")
            print(await rcon.send("status"))
    """

    def __init__(
        self,
        connect_timeout: float | None = DEFAULT_TIMEOUT,
        command_timeout: float | None = DEFAULT_TIMEOUT,
        encoding: str = PAYLOAD_ENCODING,
    ) -> None:
        self._connect_timeout = connect_timeout
        self._command_timeout = command_timeout
        self._encoding = encoding
        self._state = SessionState.IDLE
        self._protocol: _RconProtocol | None = None
        self._transport: asyncio.Transport | None = None
        self._address: tuple[str, int] | None = None
        self._password: str | None = None
        self._auth_waiter: asyncio.Future[None] | None = None
        self._auth_request_id: int | None = None
        # RESPONSE_VALUE echoing the auth id arrived; settle at end of read
        self._auth_value_seen = False
        # READY on a RESPONSE_VALUE; a late -1 AUTH_RESPONSE may still revoke
        self._auth_unconfirmed = False
        self._pending: dict[int, asyncio.Future[str]] = {}
        self._last_request_id = 0

    @classmethod
    def from_config(cls, config: RconConfig) -> RconClient:
        return cls(
            connect_timeout=config.connect_timeout,
            command_timeout=config.command_timeout,
            encoding=config.encoding,
        )

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def authenticated(self) -> bool:
        return self._state is SessionState.READY

    @property
    def authenticating(self) -> bool:
        return self._state is SessionState.AUTHENTICATING

    @property
    def encoding(self) -> str:
        return self._encoding

    @property
    def address(self) -> tuple[str, int] | None:
        """(host, port) of the current or last connection attempt."""
        return self._address

    @property
    def pending_requests(self) -> int:
        """Number of sends still waiting for a reply."""
        return len(self._pending)

    async def __aenter__(self) -> RconClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.disconnect()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def connect(
        self,
        host: str,
        port: int,
        password: str,
        timeout: float | None | object = _DEFAULT,
    ) -> None:
        """Open the connection and authenticate.

        Returns once the server accepted the password.

        Raises:
            RconStateError: if the session is not IDLE.
            RconConnectionError: if the TCP connection fails or closes
                during the handshake.
            RconAuthenticationError: if the server rejects the password.
            RconTimeoutError: if the deadline passes first.
        """
        if self._state is not SessionState.IDLE:
            raise RconStateError(f"Cannot connect while {self._state.name}")
        if timeout is _DEFAULT:
            timeout = self._connect_timeout

        loop = asyncio.get_running_loop()
        self._address = (host, port)
        self._password = password
        self._auth_waiter = loop.create_future()
        self._set_state(SessionState.CONNECTING)
        log.debug("Connecting to %s:%d", host, port)
        try:
            await asyncio.wait_for(
                self._open(loop, host, port, self._auth_waiter), timeout
            )
        except asyncio.TimeoutError:
            self._reset()
            raise RconTimeoutError("Connection to remote host timed out") from None
        except BaseException:
            self._reset()
            raise
        log.debug("Authenticated with %s:%d", host, port)

    async def send(
        self,
        command: str,
        timeout: float | None | object = _DEFAULT,
    ) -> str:
        """Run a command on the server and return its reply text.

        Nothing is written unless the session is READY.

        Raises:
            RconNotAuthenticatedError: if connect() has not succeeded.
            RconConnectionError: if the connection drops first.
            RconTimeoutError: if no reply arrives before the deadline.
        """
        if self._state is not SessionState.READY or self._transport is None:
            raise RconNotAuthenticatedError("RCON client not authenticated")
        if timeout is _DEFAULT:
            timeout = self._command_timeout

        request_id = self._next_request_id()
        waiter: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = waiter
        self._transport.write(
            encode_packet(PacketType.EXEC_COMMAND, command, request_id, self._encoding)
        )
        try:
            return await asyncio.wait_for(waiter, timeout)
        except asyncio.TimeoutError:
            raise RconTimeoutError(
                f"No reply to request {request_id} within {timeout}s"
            ) from None
        finally:
            self._pending.pop(request_id, None)

    async def disconnect(self) -> None:
        """Close the connection. Never raises; safe to call repeatedly.

        Sends still waiting fail with ConnectionClosedError.
        """
        protocol = self._protocol
        self._fail_waiters(lambda: ConnectionClosedError("Client disconnected"))
        self._reset()
        if protocol is not None:
            await protocol.wait_closed()
            log.debug("Disconnected")

    # ------------------------------------------------------------------
    # Transport events
    # ------------------------------------------------------------------

    async def _open(
        self,
        loop: asyncio.AbstractEventLoop,
        host: str,
        port: int,
        auth_waiter: asyncio.Future[None],
    ) -> None:
        try:
            await loop.create_connection(lambda: _RconProtocol(self), host, port)
        except OSError as exc:
            raise _connect_error(exc) from exc
        await auth_waiter

    def _on_connected(
        self, protocol: _RconProtocol, transport: asyncio.BaseTransport
    ) -> None:
        if self._state is SessionState.READY:
            return
        if self._state is not SessionState.CONNECTING:
            # connect() gave up before the socket came up
            transport.close()
            return
        self._protocol = protocol
        self._transport = transport
        self._auth_request_id = self._next_request_id()
        self._set_state(SessionState.AUTHENTICATING)
        transport.write(
            encode_packet(
                PacketType.AUTH, self._password, self._auth_request_id, self._encoding
            )
        )

    def _on_packet(self, protocol: _RconProtocol, packet: Packet) -> None:
        if protocol is not self._protocol:
            return
        if self._state is SessionState.AUTHENTICATING:
            self._handle_auth_response(packet)
        elif self._state is SessionState.READY:
            self._handle_command_response(packet)
        else:
            log.debug("Dropping packet received while %s", self._state.name)

    def _handle_auth_response(self, packet: Packet) -> None:
        if packet.request_id != self._auth_request_id:
            log.debug(
                "Authentication rejected (reply id %d, expected %d)",
                packet.request_id, self._auth_request_id,
            )
            self._reject_auth()
            return
        if packet.packet_type == PacketType.RESPONSE_VALUE:
            # Source servers send an empty RESPONSE_VALUE ahead of
            # AUTH_RESPONSE, usually in the same read. Wait for the end of
            # this read before accepting it as the answer.
            self._auth_value_seen = True
            return
        self._accept_auth(confirmed=True)

    def _on_read_done(self, protocol: _RconProtocol) -> None:
        if (
            protocol is self._protocol
            and self._state is SessionState.AUTHENTICATING
            and self._auth_value_seen
        ):
            self._accept_auth(confirmed=False)

    def _accept_auth(self, confirmed: bool) -> None:
        self._auth_value_seen = False
        self._auth_unconfirmed = not confirmed
        self._set_state(SessionState.READY)
        waiter = self._auth_waiter
        if waiter is not None and not waiter.done():
            waiter.set_result(None)

    def _reject_auth(self) -> None:
        self._fail_waiters(lambda: RconAuthenticationError("RCON authentication failed"))
        self._reset()

    def _handle_command_response(self, packet: Packet) -> None:
        if self._auth_unconfirmed:
            self._auth_unconfirmed = False
            if packet.request_id == -1:
                log.debug("Authentication revoked by late auth response")
                self._reject_auth()
                return
            if packet.request_id == self._auth_request_id:
                log.debug("Late auth response confirms session")
                return
        waiter = self._pending.pop(packet.request_id, None)
        if waiter is None:
            log.warning("Dropping reply for unknown request id %d", packet.request_id)
            return
        if not waiter.done():
            waiter.set_result(packet.payload)

    def _on_protocol_error(self, protocol: _RconProtocol, exc: PacketDecodeError) -> None:
        if protocol is not self._protocol:
            return
        log.warning("Malformed data from server, closing connection: %s", exc)
        self._fail_waiters(lambda: PacketDecodeError(str(exc)))
        self._reset()

    def _on_close(self, protocol: _RconProtocol, exc: Exception | None) -> None:
        if protocol is not self._protocol:
            return
        if exc is not None:
            log.debug("Connection lost: %s", exc)

            def make_error() -> RconError:
                error = RconConnectionError("Unable to connect to remote host")
                error.__cause__ = exc
                return error
        else:
            log.debug("Connection closed by remote host")

            def make_error() -> RconError:
                return ConnectionClosedError("Connection closed by remote host")

        self._transport = None
        self._fail_waiters(make_error)
        self._reset()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _next_request_id(self) -> int:
        """1, 2, ... 2**31 - 1, then back to 1. Never -1."""
        self._last_request_id = self._last_request_id % _INT32_MAX + 1
        return self._last_request_id

    def _fail_waiters(self, make_error: Callable[[], RconError]) -> None:
        """Reject the handshake and every pending send, each with its own error."""
        waiters = list(self._pending.values())
        self._pending.clear()
        if self._auth_waiter is not None:
            waiters.append(self._auth_waiter)
        for waiter in waiters:
            if not waiter.done():
                waiter.set_exception(make_error())

    def _reset(self) -> None:
        """Drop the connection and return to IDLE."""
        transport = self._transport
        self._transport = None
        self._protocol = None
        if transport is not None:
            transport.close()
        waiter = self._auth_waiter
        self._auth_waiter = None
        if waiter is not None:
            if not waiter.done():
                waiter.cancel()
            elif not waiter.cancelled():
                # connect() may never await it if create_connection failed
                waiter.exception()
        self._auth_request_id = None
        self._auth_value_seen = False
        self._auth_unconfirmed = False
        self._set_state(SessionState.IDLE)

    def _set_state(self, state: SessionState) -> None:
        if state is not self._state:
            log.debug("Session %s -> %s", self._state.name, state.name)
            self._state = state


async def open_client(config: RconConfig) -> RconClient:
    """Build a client from config, connect and authenticate it."""
    client = RconClient.from_config(config)
    await client.connect(config.host, config.port, config.password)
    return client
