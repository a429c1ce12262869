"""Session registry — tracks live relay sessions for broadcast and shutdown.

Handles the bookkeeping shared by all client connections:
- register / unregister: called by the WebSocket endpoint per connection
- broadcast: push one device command to every session with an open socket
- close_all: bulk teardown for graceful shutdown

Mutations take a threading.Lock and never await, so an unregister issued
from a cancelled connection handler always completes.
"""

import logging
import threading

from voice_gateway.services.realtime_relay.models import Command
from voice_gateway.services.realtime_relay.session import RelaySession

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Maps session_id → RelaySession for the lifetime of the server.

    Usage::

        registry = SessionRegistry()
        registry.register(session)
        delivered = await registry.broadcast(PlayCommand())
        registry.unregister(session.session_id)
    """

    def __init__(self) -> None:
        self._sessions: dict[str, RelaySession] = {}
        self._lock = threading.Lock()

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def register(self, session: RelaySession) -> None:
        """Track a new session.

        Raises:
            ValueError: If a session with the same id is already registered.
        """
        with self._lock:
            if session.session_id in self._sessions:
                raise ValueError(f"Session {session.session_id} is already registered")
            self._sessions[session.session_id] = session
            total = len(self._sessions)
        logger.info("Registered session %s (%d active)", session.session_id, total)

    def unregister(self, session_id: str) -> RelaySession | None:
        """Stop tracking a session. Safe to call multiple times."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
            total = len(self._sessions)

        if session is None:
            logger.warning("unregister: session %s not found (already removed?)", session_id)
            return None

        logger.info("Unregistered session %s (%d active)", session_id, total)
        return session

    def get(self, session_id: str) -> RelaySession | None:
        with self._lock:
            return self._sessions.get(session_id)

    def sessions(self) -> list[RelaySession]:
        """Snapshot of the registered sessions."""
        with self._lock:
            return list(self._sessions.values())

    async def broadcast(self, command: Command) -> int:
        """Send ``command`` to every session whose client socket is open.

        Sessions that are not open, or whose send fails, are skipped and
        logged. Returns the number of sessions the command reached.
        """
        delivered = 0
        for session in self.sessions():
            if not session.is_open:
                logger.info("broadcast: skipping session %s (not open)", session.session_id)
                continue
            if await session.send_command(command):
                delivered += 1
            else:
                logger.warning("broadcast: failed to deliver %s to session %s", command.type, session.session_id)

        logger.info("Broadcast %s to %d session(s)", command.type, delivered)
        return delivered

    async def close_all(self) -> None:
        """Close every registered session and its client socket. Used during shutdown."""
        sessions = self.sessions()
        if not sessions:
            logger.info("SessionRegistry teardown: no active sessions")
            return

        logger.info("SessionRegistry teardown: closing %d active sessions", len(sessions))
        for session in sessions:
            try:
                await session.close(disconnect=True)
            except Exception as exc:
                logger.error("Error closing session %s: %s", session.session_id, exc)
            self.unregister(session.session_id)
        logger.info("SessionRegistry teardown complete")
