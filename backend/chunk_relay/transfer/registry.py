"""In-memory registries for transfer sessions and live connections.

Both registries are owned by the TransferEngine; nothing else mutates them.
They are plain containers: every protocol rule (who may join, what status a
session may move to) lives in the engine.

Thread Safety:
    Designed for a single asyncio event loop. Per-session ``asyncio.Lock``
    objects are handed out by ``SessionRegistry.lock_for`` so the engine can
    serialise mutations of one session across ``await`` points.
"""
import asyncio
import logging
from typing import Dict, Iterator, List, Optional, Set

from .schemas import ConnectionRecord, PeerRole, TransferSession

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Mapping from transferId to TransferSession."""

    def __init__(self) -> None:
        # transfer_id -> session
        self._sessions: Dict[str, TransferSession] = {}

        # transfer_id -> lock guarding that session's fields
        self._locks: Dict[str, asyncio.Lock] = {}

        # IDs of removed sessions; never handed out again
        self._retired: Set[str] = set()

    def __contains__(self, transfer_id: str) -> bool:
        return transfer_id in self._sessions

    def is_retired(self, transfer_id: str) -> bool:
        return transfer_id in self._retired

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._sessions))

    def get(self, transfer_id: str) -> Optional[TransferSession]:
        return self._sessions.get(transfer_id)

    def add(self, session: TransferSession) -> TransferSession:
        """Insert a new session.

        Raises:
            KeyError: If the transferId is registered or was retired.
        """
        if session.transferId in self._sessions or session.transferId in self._retired:
            raise KeyError(session.transferId)
        self._sessions[session.transferId] = session
        self._locks[session.transferId] = asyncio.Lock()
        return session

    def remove(self, transfer_id: str) -> Optional[TransferSession]:
        """Remove and return a session (None if absent), retiring its ID."""
        self._locks.pop(transfer_id, None)
        session = self._sessions.pop(transfer_id, None)
        if session is not None:
            self._retired.add(transfer_id)
        return session

    def lock_for(self, transfer_id: str) -> asyncio.Lock:
        """Get the lock guarding a registered session.

        Raises:
            KeyError: If the session is not registered.
        """
        return self._locks[transfer_id]

    def ids(self) -> List[str]:
        return list(self._sessions)


class ConnectionRegistry:
    """Mapping from connection identity to what it is bound to.

    A record exists only while the transport connection is open.
    """

    def __init__(self) -> None:
        self._connections: Dict[str, ConnectionRecord] = {}

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    def get(self, connection_id: str) -> Optional[ConnectionRecord]:
        return self._connections.get(connection_id)

    def add(self, connection_id: str) -> ConnectionRecord:
        """Register a freshly opened connection with no role yet."""
        record = ConnectionRecord(connectionId=connection_id)
        self._connections[connection_id] = record
        return record

    def bind(self, connection_id: str, role: PeerRole, transfer_id: str) -> ConnectionRecord:
        """Bind a connection to a transfer in the given role.

        Connections that were never announced through ``add`` are registered
        on the fly.
        """
        record = self._connections.get(connection_id)
        if record is None:
            record = self.add(connection_id)
        if record.transferId and record.transferId != transfer_id:
            logger.info(
                "Connection %s rebound from %s to %s",
                connection_id, record.transferId, transfer_id,
            )
        record.role = role
        record.transferId = transfer_id
        return record

    def remove(self, connection_id: str) -> Optional[ConnectionRecord]:
        return self._connections.pop(connection_id, None)
