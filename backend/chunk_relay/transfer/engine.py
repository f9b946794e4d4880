"""Transfer session protocol engine.

The engine is the state machine behind the WebSocket endpoint. Each inbound
event is turned into a ``HandlerResult``: an ordered list of deliveries
(connection ID + outbound event) plus the error code, if the operation was
rejected. The engine never touches a socket, so the whole protocol can be
exercised without a transport.

Session lifecycle:
    create-transfer  -> status "waiting", caller bound as sender
    join-transfer    -> status "connected", caller bound as receiver
    upload-chunk     -> chunk persisted, relayed to the receiver if present;
                        index 0 records fileInfo and moves to "uploading"
    upload-complete  -> status "completed", cleanup timer armed
    disconnect       -> other peer notified; session left as-is
    cleanup          -> blobs deleted, session removed from the registry

Status never moves backwards.

Concurrency:
    Mutations of one session happen under that session's ``asyncio.Lock``.
    The chunk store write runs outside the lock; only the metadata commit
    that follows it is locked. After every ``await`` the engine re-checks
    that the session it started with is still the registered one.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..activity import ActivityAction, ActivityLog
from ..cleanup import CleanupScheduler
from ..storage import ChunkStore, ChunkStoreError
from .registry import ConnectionRegistry, SessionRegistry
from .schemas import (
    ERROR_MESSAGES,
    ChunkRecord,
    ChunkUploaded,
    ConnectionRecord,
    CreateTransfer,
    ErrorCode,
    ErrorEvent,
    FileInfo,
    GetStatus,
    InboundEvent,
    JoinedTransfer,
    JoinTransfer,
    OutboundEvent,
    PeerDisconnected,
    PeerRole,
    ReceiveChunk,
    ReceiverConnected,
    StatusNotFound,
    StatusResponse,
    TransferComplete,
    TransferCreated,
    TransferSession,
    TransferSnapshot,
    TransferStatus,
    UploadChunk,
    UploadComplete,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Results
# =============================================================================


@dataclass
class Delivery:
    """An outbound event addressed to one connection."""
    connection_id: str
    event: OutboundEvent


@dataclass
class HandlerResult:
    """Outcome of one engine operation.

    Attributes:
        deliveries: Events to send, in order.
        error: The error code if the operation was rejected, else None.
    """
    deliveries: List[Delivery] = field(default_factory=list)
    error: Optional[ErrorCode] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def send(self, connection_id: str, event: OutboundEvent) -> "HandlerResult":
        self.deliveries.append(Delivery(connection_id, event))
        return self

    def events_for(self, connection_id: str) -> List[OutboundEvent]:
        """Events addressed to *connection_id*, in delivery order."""
        return [d.event for d in self.deliveries if d.connection_id == connection_id]

    @classmethod
    def failure(cls, connection_id: str, code: ErrorCode, **extra: Any) -> "HandlerResult":
        """Build a result that reports *code* to the originating connection only."""
        event = ErrorEvent(message=ERROR_MESSAGES[code], code=code, **extra)
        return cls(deliveries=[Delivery(connection_id, event)], error=code)


# =============================================================================
# Engine
# =============================================================================


class TransferEngine:
    """Owns the session and connection registries and implements the protocol.

    One instance lives on ``app.state.transfer_engine``. All registry
    mutations go through its methods.
    """

    def __init__(
        self,
        chunk_store: ChunkStore,
        activity: Optional[ActivityLog] = None,
        cleanup_delay_seconds: float = 3600.0,
        max_file_size: Optional[int] = None,
    ) -> None:
        self.sessions = SessionRegistry()
        self.connections = ConnectionRegistry()
        self.chunk_store = chunk_store
        self.activity = activity
        self.max_file_size = max_file_size
        self.scheduler = CleanupScheduler(self.cleanup, cleanup_delay_seconds)

        self._handlers: Dict[type, Callable[..., Any]] = {
            CreateTransfer: self._on_create,
            JoinTransfer: self._on_join,
            UploadChunk: self._on_upload_chunk,
            UploadComplete: self._on_upload_complete,
            GetStatus: self._on_get_status,
        }

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def handle(self, connection_id: str, event: InboundEvent) -> HandlerResult:
        """Route a parsed inbound event to its operation."""
        handler = self._handlers[type(event)]
        return await handler(connection_id, event)

    async def _on_create(self, connection_id: str, event: CreateTransfer) -> HandlerResult:
        return await self.create(connection_id, event.transferId)

    async def _on_join(self, connection_id: str, event: JoinTransfer) -> HandlerResult:
        return await self.join(connection_id, event.transferId)

    async def _on_upload_chunk(self, connection_id: str, event: UploadChunk) -> HandlerResult:
        return await self.upload_chunk(
            connection_id,
            event.transferId,
            chunk_index=event.chunkIndex,
            total_chunks=event.totalChunks,
            chunk=event.chunk,
            file_name=event.fileName,
            file_size=event.fileSize,
            file_type=event.fileType,
        )

    async def _on_upload_complete(self, connection_id: str, event: UploadComplete) -> HandlerResult:
        return await self.upload_complete(connection_id, event.transferId)

    async def _on_get_status(self, connection_id: str, event: GetStatus) -> HandlerResult:
        return self.get_status(connection_id, event.transferId)

    # =========================================================================
    # Transport Lifecycle
    # =========================================================================

    def connect(self, connection_id: str) -> ConnectionRecord:
        """Register a newly opened transport connection."""
        record = self.connections.add(connection_id)
        logger.info(f"[Engine] Client connected: {connection_id}")
        return record

    async def on_disconnect(self, connection_id: str) -> HandlerResult:
        """Handle a closed transport connection.

        The other bound peer (if any) is told which role left. The session is
        left exactly as it was; only cleanup removes it. The connection record
        is always dropped.
        """
        result = HandlerResult()
        record = self.connections.remove(connection_id)
        logger.info(f"[Engine] Client disconnected: {connection_id}")

        if record is None or record.transferId is None:
            return result

        session = self.sessions.get(record.transferId)
        if session is None:
            return result

        other = session.receiver if session.sender == connection_id else session.sender
        if other and other != connection_id:
            role = record.role or PeerRole.SENDER
            result.send(other, PeerDisconnected(
                transferId=record.transferId,
                role=role,
                message=f"{role.value} disconnected",
            ))

        await self._record_activity(ActivityAction.DISCONNECT, record.transferId, connection_id)
        return result

    # =========================================================================
    # Protocol Operations
    # =========================================================================

    async def create(self, connection_id: str, transfer_id: str) -> HandlerResult:
        """Create a session with the caller as sender.

        A transferId that is still registered, or that belonged to a session
        already cleaned up, is rejected with SESSION_EXISTS; the existing
        session (and its stored chunks) is left untouched.
        """
        if transfer_id in self.sessions or self.sessions.is_retired(transfer_id):
            logger.warning(f"[Engine] Duplicate create for {transfer_id} by {connection_id}")
            return HandlerResult.failure(connection_id, ErrorCode.SESSION_EXISTS)

        self.sessions.add(TransferSession(transferId=transfer_id, sender=connection_id))
        self.connections.bind(connection_id, PeerRole.SENDER, transfer_id)
        logger.info(f"[Engine] Transfer created: {transfer_id} by {connection_id}")

        await self._record_activity(ActivityAction.CREATE, transfer_id, connection_id)
        return HandlerResult().send(connection_id, TransferCreated(transferId=transfer_id))

    async def join(self, connection_id: str, transfer_id: str) -> HandlerResult:
        """Bind the caller as the session's one and only receiver."""
        session = self.sessions.get(transfer_id)
        if session is None:
            return HandlerResult.failure(connection_id, ErrorCode.SESSION_NOT_FOUND)

        async with self.sessions.lock_for(transfer_id):
            if self.sessions.get(transfer_id) is not session:
                return HandlerResult.failure(connection_id, ErrorCode.SESSION_NOT_FOUND)
            if session.receiver is not None:
                logger.warning(f"[Engine] {connection_id} tried to join {transfer_id}, receiver exists")
                return HandlerResult.failure(connection_id, ErrorCode.RECEIVER_EXISTS)
            session.receiver = connection_id
            self._advance(session, TransferStatus.CONNECTED)

        self.connections.bind(connection_id, PeerRole.RECEIVER, transfer_id)
        logger.info(f"[Engine] Receiver {connection_id} joined transfer {transfer_id}")

        await self._record_activity(ActivityAction.JOIN, transfer_id, connection_id)
        result = HandlerResult()
        result.send(session.sender, ReceiverConnected(transferId=transfer_id, receiverId=connection_id))
        result.send(connection_id, JoinedTransfer(transferId=transfer_id))
        return result

    async def upload_chunk(
        self,
        connection_id: str,
        transfer_id: str,
        chunk_index: int,
        total_chunks: int,
        chunk: bytes,
        file_name: str,
        file_size: int,
        file_type: str = "",
    ) -> HandlerResult:
        """Persist one chunk and relay it to the receiver.

        The chunk is relayed only if a receiver is bound at this moment;
        chunks stored before a receiver joins are never replayed. On a store
        failure the session is left unchanged and only the sender hears about
        it (CHUNK_SAVE_ERROR with the chunk index); the sender must resend.

        Returns:
            Result whose deliveries are the relay to the receiver (if any)
            followed by the acknowledgement to the sender.
        """
        session = self.sessions.get(transfer_id)
        if session is None:
            return HandlerResult.failure(connection_id, ErrorCode.SESSION_NOT_FOUND)

        if session.sender != connection_id:
            logger.warning(f"[Engine] Unauthorized upload to {transfer_id} from {connection_id}")
            return HandlerResult.failure(connection_id, ErrorCode.UNAUTHORIZED)

        if chunk_index == 0 and self.max_file_size is not None and file_size > self.max_file_size:
            logger.warning(
                f"[Engine] Rejected {file_name} for {transfer_id}: "
                f"{file_size} bytes exceeds {self.max_file_size}"
            )
            return HandlerResult.failure(connection_id, ErrorCode.FILE_TOO_LARGE)

        logger.debug("Chunk %d/%d for %s", chunk_index + 1, total_chunks, file_name)

        try:
            storage_ref = await self.chunk_store.put(transfer_id, chunk_index, chunk)
        except ChunkStoreError:
            return HandlerResult.failure(
                connection_id, ErrorCode.CHUNK_SAVE_ERROR, chunkIndex=chunk_index
            )

        if self.sessions.get(transfer_id) is not session:
            return await self._discard_orphan(connection_id, transfer_id, storage_ref)

        async with self.sessions.lock_for(transfer_id):
            if self.sessions.get(transfer_id) is not session:
                return await self._discard_orphan(connection_id, transfer_id, storage_ref)

            if chunk_index == 0:
                if session.fileInfo is None:
                    session.fileInfo = FileInfo(
                        fileName=file_name,
                        fileSize=file_size,
                        fileType=file_type,
                        totalChunks=total_chunks,
                    )
                    logger.info(
                        f"[Engine] File info stored for {transfer_id}: "
                        f"{file_name} ({format_bytes(file_size)})"
                    )
                self._advance(session, TransferStatus.UPLOADING)

            self._store_chunk_record(session, ChunkRecord(
                index=chunk_index,
                storageRef=storage_ref,
                size=len(chunk),
            ))
            receiver = session.receiver

        result = HandlerResult()
        if receiver:
            result.send(receiver, ReceiveChunk(
                chunk=chunk,
                chunkIndex=chunk_index,
                totalChunks=total_chunks,
                fileName=file_name,
                fileSize=file_size,
                fileType=file_type,
            ))
        result.send(connection_id, ChunkUploaded(
            chunkIndex=chunk_index,
            message=f"Chunk {chunk_index + 1}/{total_chunks} uploaded successfully",
        ))
        return result

    async def upload_complete(self, connection_id: str, transfer_id: str) -> HandlerResult:
        """Mark the transfer completed and arm its cleanup timer.

        The timer is armed whether or not a receiver ever joined.
        """
        session = self.sessions.get(transfer_id)
        if session is None:
            return HandlerResult.failure(connection_id, ErrorCode.SESSION_NOT_FOUND)

        async with self.sessions.lock_for(transfer_id):
            if self.sessions.get(transfer_id) is not session:
                return HandlerResult.failure(connection_id, ErrorCode.SESSION_NOT_FOUND)
            self._advance(session, TransferStatus.COMPLETED)
            if session.completedAt is None:
                session.completedAt = time.time()
            receiver = session.receiver
            file_info = session.fileInfo.model_copy() if session.fileInfo else None

        logger.info(f"[Engine] Upload complete for: {transfer_id}")

        result = HandlerResult()
        if receiver:
            result.send(receiver, TransferComplete(transferId=transfer_id, fileInfo=file_info))

        await self._record_activity(ActivityAction.COMPLETE, transfer_id, connection_id)
        self.scheduler.schedule(transfer_id)
        return result

    def get_status(self, connection_id: str, transfer_id: str) -> HandlerResult:
        """Report a session's progress to the caller. Read-only."""
        session = self.sessions.get(transfer_id)
        if session is None:
            return HandlerResult().send(connection_id, StatusNotFound())

        return HandlerResult().send(connection_id, StatusResponse(
            status=session.status,
            fileInfo=session.fileInfo,
            chunksReceived=len(session.chunks),
            totalChunks=session.total_chunks,
        ))

    def snapshot(self, transfer_id: str) -> Optional[TransferSnapshot]:
        """Read-only view of a session for the HTTP API (None if absent)."""
        session = self.sessions.get(transfer_id)
        if session is None:
            return None
        return TransferSnapshot(
            transferId=session.transferId,
            status=session.status,
            fileInfo=session.fileInfo,
            chunksReceived=len(session.chunks),
            totalChunks=session.total_chunks,
            hasReceiver=session.receiver is not None,
        )

    # =========================================================================
    # Cleanup
    # =========================================================================

    async def cleanup(self, transfer_id: str) -> bool:
        """Delete a session's chunk blobs and remove it from the registry.

        Blob deletions run concurrently and fail independently; the session is
        removed regardless. Safe to call at any time and any number of times.

        Returns:
            True if a session was removed, False if it was already gone.
        """
        session = self.sessions.get(transfer_id)
        if session is None:
            return False

        self.scheduler.cancel(transfer_id)
        logger.info(f"[Engine] Cleaning up transfer: {transfer_id}")

        async with self.sessions.lock_for(transfer_id):
            if self.sessions.get(transfer_id) is not session:
                return False
            refs = [chunk.storageRef for chunk in session.chunks]
            results = await asyncio.gather(
                *[self.chunk_store.delete(ref) for ref in refs],
                return_exceptions=True,
            )
            self.sessions.remove(transfer_id)

        failed = sum(1 for r in results if r is not True)
        if failed:
            logger.warning(f"[Engine] {failed}/{len(refs)} chunks not deleted for {transfer_id}")
        logger.info(f"[Engine] Transfer cleanup completed: {transfer_id}")
        return True

    async def shutdown(self) -> None:
        """Tear down every session immediately (process shutdown)."""
        ids = self.sessions.ids()
        logger.info(f"[Engine] Shutting down, cleaning up {len(ids)} transfers")
        await self.scheduler.shutdown(ids)

    # =========================================================================
    # Stats
    # =========================================================================

    @property
    def active_sessions(self) -> int:
        return len(self.sessions)

    @property
    def active_connections(self) -> int:
        return len(self.connections)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _advance(self, session: TransferSession, target: TransferStatus) -> bool:
        """Move a session forward to *target*; earlier or equal targets are ignored."""
        if target.rank <= session.status.rank:
            return False
        logger.debug("Transfer %s: %s -> %s", session.transferId, session.status.value, target.value)
        session.status = target
        return True

    @staticmethod
    def _store_chunk_record(session: TransferSession, record: ChunkRecord) -> None:
        """Keep at most one record per index; a resent index replaces its record."""
        for i, existing in enumerate(session.chunks):
            if existing.index == record.index:
                session.chunks[i] = record
                return
        session.chunks.append(record)

    async def _discard_orphan(self, connection_id: str, transfer_id: str, storage_ref: str) -> HandlerResult:
        """Drop a blob whose session was cleaned up while it was being written."""
        logger.info(f"[Engine] Transfer {transfer_id} cleaned up during chunk write")
        await self.chunk_store.delete(storage_ref)
        return HandlerResult.failure(connection_id, ErrorCode.SESSION_NOT_FOUND)

    async def _record_activity(self, action: ActivityAction, transfer_id: str, connection_id: str) -> None:
        if self.activity is not None:
            await self.activity.record(action, transfer_id, connection_id)


def format_bytes(size: int) -> str:
    """Human-readable byte count ("0 Bytes", "1.50 KB", "2.00 GB")."""
    if size <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    value = float(size)
    i = 0
    while value >= 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    return f"{value:.2f} {units[i]}"
