"""
Error types raised by the session broker.

Everything a caller can recover from derives from BrokerError.
StorageUnavailableError deliberately does not: it signals a broken
installation and is left to terminate the process.
"""

from __future__ import annotations

from typing import Any


class BrokerError(Exception):
    """Base class for errors reported to callers of a Session."""


class ConfigurationError(BrokerError):
    """A required launch context key is missing."""

    def __init__(self, missing: list[str]) -> None:
        super().__init__(f"missing launch context keys: {', '.join(missing)}")
        self.missing = missing


class ProtocolError(BrokerError):
    """The analysis server answered a request with an error response."""

    def __init__(self, code: int | None, message: str, data: Any = None) -> None:
        super().__init__(f"server error {code}: {message}")
        self.code = code
        self.message = message
        self.data = data


class SessionNotStartedError(BrokerError):
    """The session has no transport yet; initialize it first."""


class SessionTerminatedError(BrokerError):
    """The server process is gone; the request cannot be answered."""


class ServerLaunchError(BrokerError):
    """The server executable could not be started."""


class RequestTimeoutError(BrokerError):
    """No response arrived within the session's request timeout."""


class StorageUnavailableError(RuntimeError):
    """The shared storage location for workspaces cannot be resolved."""
