"""Connection settings for an RCON client.

RconConfig can be built directly or read from the environment:

    RCON_HOST             default "127.0.0.1"
    RCON_PORT             default 27015
    RCON_PASSWORD         default ""
    RCON_CONNECT_TIMEOUT  seconds, "none" or 0 disables, default 10
    RCON_COMMAND_TIMEOUT  seconds, "none" or 0 disables, default 10
    RCON_ENCODING         default "ascii"
"""
from __future__ import annotations

import codecs
import os
from collections.abc import Mapping
from dataclasses import dataclass

from rcon_lite.protocol import PAYLOAD_ENCODING

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 27015
DEFAULT_TIMEOUT = 10.0

_NO_TIMEOUT = {"", "none", "off", "0"}


def _parse_timeout(name: str, raw: str) -> float | None:
    if raw.strip().lower() in _NO_TIMEOUT:
        return None
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number of seconds, got {raw!r}") from None


@dataclass(frozen=True, slots=True)
class RconConfig:
    """Where to connect, how to log in, and how long to wait."""
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    password: str = ""
    connect_timeout: float | None = DEFAULT_TIMEOUT
    command_timeout: float | None = DEFAULT_TIMEOUT
    encoding: str = PAYLOAD_ENCODING

    def __post_init__(self) -> None:
        """Validate port range, timeouts and encoding name."""
        if not self.host:
            raise ValueError("host must not be empty")
        if not (0 < self.port < 65536):
            raise ValueError(f"port must be between 1 and 65535, got {self.port}")
        for name in ("connect_timeout", "command_timeout"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ValueError(f"{name} must be positive or None, got {value}")
        try:
            codecs.lookup(self.encoding)
        except LookupError:
            raise ValueError(f"Unknown encoding: {self.encoding!r}") from None

    def __repr__(self) -> str:
        # keep the password out of logs and tracebacks
        return (
            f"RconConfig(host={self.host!r}, port={self.port}, password='***', "
            f"connect_timeout={self.connect_timeout}, "
            f"command_timeout={self.command_timeout}, encoding={self.encoding!r})"
        )

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        prefix: str = "RCON_",
    ) -> RconConfig:
        """Build a config from environment variables.

        Unset variables fall back to the defaults. Values that don't
        parse raise ValueError naming the variable.
        """
        env = os.environ if environ is None else environ

        def get(key: str) -> str | None:
            return env.get(prefix + key)

        kwargs: dict = {}
        if (host := get("HOST")) is not None:
            kwargs["host"] = host
        if (port := get("PORT")) is not None:
            try:
                kwargs["port"] = int(port)
            except ValueError:
                raise ValueError(
                    f"{prefix}PORT must be an integer, got {port!r}"
                ) from None
        if (password := get("PASSWORD")) is not None:
            kwargs["password"] = password
        for key, field_name in (
            ("CONNECT_TIMEOUT", "connect_timeout"),
            ("COMMAND_TIMEOUT", "command_timeout"),
        ):
            if (raw := get(key)) is not None:
                kwargs[field_name] = _parse_timeout(prefix + key, raw)
        if (encoding := get("ENCODING")) is not None:
            kwargs["encoding"] = encoding
        return cls(**kwargs)
