"""Exceptions raised by the RCON client.

Every error a caller can see derives from RconError, so one except
clause is enough to catch them all. The builtin bases (ConnectionError,
TimeoutError, ValueError) are kept so code that already handles those
keeps working.
"""
from __future__ import annotations


class RconError(Exception):
    """Base class for all RCON client errors."""


class RconConnectionError(RconError, ConnectionError):
    """The TCP connection could not be opened or was lost."""


class ConnectionClosedError(RconConnectionError):
    """The connection closed while an operation was still waiting."""


class RconAuthenticationError(RconError):
    """The server rejected the password."""


class RconNotAuthenticatedError(RconError):
    """A command was sent before the handshake completed."""


class RconStateError(RconError):
    """The operation is not valid in the session's current state."""


class RconTimeoutError(RconError, TimeoutError):
    """An operation did not complete before its deadline."""


class PacketDecodeError(RconError, ValueError):
    """Bytes received from the server are not a valid RCON packet."""
