"""
SourceKit Broker

Per-workspace sourcekit-lsp sessions: one lazily launched language
server process for each hosting resource and project slug.
"""

__version__ = "0.1.0"

from sourcekit_broker.errors import (  # noqa: E402
    BrokerError,
    ConfigurationError,
    ProtocolError,
    RequestTimeoutError,
    ServerLaunchError,
    SessionNotStartedError,
    SessionTerminatedError,
    StorageUnavailableError,
)
from sourcekit_broker.registry import SessionRegistry  # noqa: E402
from sourcekit_broker.session import Session, SessionState  # noqa: E402

__all__ = [
    "BrokerError",
    "ConfigurationError",
    "ProtocolError",
    "RequestTimeoutError",
    "ServerLaunchError",
    "Session",
    "SessionNotStartedError",
    "SessionRegistry",
    "SessionState",
    "SessionTerminatedError",
    "StorageUnavailableError",
    "__version__",
]
