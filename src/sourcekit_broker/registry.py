"""
Registry of live workspace sessions.

The hosting application constructs one SessionRegistry and hands it to
whatever decides when sessions are needed. Sessions are created on first
lookup and stay until removed; removal never stops the server, so callers
send shutdown and exit first (or use drain()).
"""

from __future__ import annotations

import logging
import os
import threading

from sourcekit_broker.errors import BrokerError
from sourcekit_broker.session import Session, SessionState
from sourcekit_broker.workspace import WorkspaceKey, workspace_key

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Maps workspace keys to their Session, creating sessions lazily."""

    def __init__(
        self,
        storage_root: str | os.PathLike[str] | None = None,
        request_timeout: float | None = None,
    ) -> None:
        self._storage_root = storage_root
        self._request_timeout = request_timeout
        self._sessions: dict[WorkspaceKey, Session] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._sessions

    def get_or_create(self, install_group: str, resource: str, slug: str) -> Session:
        """Return the workspace's session, creating an uninitialized one if needed."""
        key = workspace_key(resource, slug)
        with self._lock:
            session = self._sessions.get(key)
            if session is None:
                logger.info(f"creating session for {key}")
                session = Session(
                    install_group,
                    resource,
                    slug,
                    storage_root=self._storage_root,
                    request_timeout=self._request_timeout,
                )
                self._sessions[key] = session
            return session

    def get(self, resource: str, slug: str) -> Session | None:
        with self._lock:
            return self._sessions.get(workspace_key(resource, slug))

    def remove(self, resource: str, slug: str) -> Session | None:
        """Forget a workspace's session without stopping its server."""
        key = workspace_key(resource, slug)
        with self._lock:
            session = self._sessions.pop(key, None)

        if session is not None and session.state is SessionState.INITIALIZED:
            logger.warning(
                f"removed session {key} while its server is running; "
                "send shutdown and exit before removing it"
            )
        return session

    async def drain(self) -> None:
        """Shut down, exit and forget every session."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()

        for session in sessions:
            if session.state is SessionState.INITIALIZED:
                try:
                    await session.shutdown({})
                except BrokerError as e:
                    logger.warning(f"shutdown of {session.key} failed: {e}")
            session.exit()
            await session.wait_closed()
        logger.info(f"drained {len(sessions)} session(s)")
