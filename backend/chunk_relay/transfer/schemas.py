"""Pydantic schemas for the chunk transfer protocol.

This module defines:
- Session state: TransferStatus, FileInfo, ChunkRecord, TransferSession
- Connection state: PeerRole, ConnectionRecord
- Inbound events: a discriminated union keyed on ``type``
  (create-transfer, join-transfer, upload-chunk, upload-complete, get-status)
- Outbound events: one model per server-to-client message
- HTTP payloads: TransferSnapshot, HealthResponse

Wire field names are camelCase to match what browser clients send. Chunk
bytes travel as standard base64 text in both directions.
"""
import base64
import time
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_serializer, field_validator


# =============================================================================
# Enums
# =============================================================================


class TransferStatus(str, Enum):
    """Lifecycle status of a transfer session.

    Transitions only move forward:
    waiting -> connected -> uploading -> completed. ``uploading`` may be
    reached straight from ``waiting`` when chunks arrive before a receiver.
    """
    WAITING = "waiting"
    CONNECTED = "connected"
    UPLOADING = "uploading"
    COMPLETED = "completed"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)


_STATUS_ORDER = [
    TransferStatus.WAITING,
    TransferStatus.CONNECTED,
    TransferStatus.UPLOADING,
    TransferStatus.COMPLETED,
]


class PeerRole(str, Enum):
    """Role a connection plays in a transfer."""
    SENDER = "sender"
    RECEIVER = "receiver"


class ErrorCode(str, Enum):
    """Error codes reported to the originating connection.

    Attributes:
        SESSION_NOT_FOUND: Unknown or already cleaned-up transferId.
        SESSION_EXISTS: create-transfer for a transferId that is active or was cleaned up.
        RECEIVER_EXISTS: join-transfer on a session that already has a receiver.
        UNAUTHORIZED: upload-chunk from a connection that is not the sender.
        CHUNK_SAVE_ERROR: The chunk could not be written to temporary storage.
        FILE_TOO_LARGE: Announced file size exceeds the configured maximum.
        INVALID_MESSAGE: Frame could not be parsed as a protocol event.
    """
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    SESSION_EXISTS = "SESSION_EXISTS"
    RECEIVER_EXISTS = "RECEIVER_EXISTS"
    UNAUTHORIZED = "UNAUTHORIZED"
    CHUNK_SAVE_ERROR = "CHUNK_SAVE_ERROR"
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    INVALID_MESSAGE = "INVALID_MESSAGE"


ERROR_MESSAGES: Dict[ErrorCode, str] = {
    ErrorCode.SESSION_NOT_FOUND: "Transfer session not found",
    ErrorCode.SESSION_EXISTS: "Transfer session already exists",
    ErrorCode.RECEIVER_EXISTS: "Transfer already has a receiver",
    ErrorCode.UNAUTHORIZED: "Unauthorized sender",
    ErrorCode.CHUNK_SAVE_ERROR: "Failed to save chunk",
    ErrorCode.FILE_TOO_LARGE: "File exceeds maximum allowed size",
    ErrorCode.INVALID_MESSAGE: "Invalid message format",
}


# =============================================================================
# Session State
# =============================================================================


class FileInfo(BaseModel):
    """File description captured from the first chunk (index 0)."""
    fileName: str = Field(..., description="Original file name")
    fileSize: int = Field(..., description="Total file size in bytes")
    fileType: str = Field(default="", description="MIME type")
    totalChunks: int = Field(..., description="Number of chunks in the file")
    uploadStartTime: float = Field(
        default_factory=time.time,
        description="When the first chunk arrived (seconds since epoch)"
    )


class ChunkRecord(BaseModel):
    """Metadata for one stored chunk.

    ``storageRef`` is the chunk store's key for the blob; the bytes themselves
    are never kept on the session.
    """
    index: int
    storageRef: str
    size: int
    timestamp: float = Field(default_factory=time.time)


class TransferSession(BaseModel):
    """Server-side record pairing a sender and (optionally) a receiver."""
    transferId: str
    sender: str = Field(..., description="Connection ID of the sender")
    receiver: Optional[str] = Field(default=None, description="Connection ID of the receiver")
    status: TransferStatus = TransferStatus.WAITING
    fileInfo: Optional[FileInfo] = None
    chunks: List[ChunkRecord] = Field(default_factory=list)
    startTime: float = Field(default_factory=time.time)
    completedAt: Optional[float] = None

    @property
    def total_chunks(self) -> int:
        return self.fileInfo.totalChunks if self.fileInfo else 0


class ConnectionRecord(BaseModel):
    """What a live transport connection is bound to."""
    connectionId: str
    connectedAt: float = Field(default_factory=time.time)
    role: Optional[PeerRole] = None
    transferId: Optional[str] = None


# =============================================================================
# Inbound Events
# =============================================================================


class CreateTransfer(BaseModel):
    type: Literal["create-transfer"]
    transferId: str = Field(..., min_length=1)


class JoinTransfer(BaseModel):
    type: Literal["join-transfer"]
    transferId: str = Field(..., min_length=1)


class UploadChunk(BaseModel):
    """One chunk of the file, sent by the sender.

    ``chunk`` arrives as base64 text and is decoded to bytes on validation.
    """
    type: Literal["upload-chunk"]
    transferId: str = Field(..., min_length=1)
    chunk: bytes
    chunkIndex: int = Field(..., ge=0)
    totalChunks: int = Field(..., ge=1)
    fileName: str
    fileSize: int = Field(..., ge=0)
    fileType: str = ""

    @field_validator("chunk", mode="before")
    @classmethod
    def _decode_chunk(cls, value: Any) -> Any:
        if isinstance(value, str):
            try:
                return base64.b64decode(value, validate=True)
            except ValueError as e:
                raise ValueError(f"chunk is not valid base64: {e}")
        return value


class UploadComplete(BaseModel):
    type: Literal["upload-complete"]
    transferId: str = Field(..., min_length=1)


class GetStatus(BaseModel):
    type: Literal["get-status"]
    transferId: str = Field(..., min_length=1)


InboundEvent = Annotated[
    Union[CreateTransfer, JoinTransfer, UploadChunk, UploadComplete, GetStatus],
    Field(discriminator="type"),
]

_inbound_adapter: TypeAdapter = TypeAdapter(InboundEvent)


def parse_inbound(data: Any) -> InboundEvent:
    """Validate a decoded JSON frame into one of the inbound event models.

    Raises:
        pydantic.ValidationError: If the frame is not a valid protocol event.
    """
    return _inbound_adapter.validate_python(data)


# =============================================================================
# Outbound Events
# =============================================================================


class OutboundEvent(BaseModel):
    """Base class for server-to-client messages."""
    type: str

    def to_wire(self) -> Dict[str, Any]:
        """JSON-ready representation sent over the transport."""
        return self.model_dump(mode="json")


class Connected(OutboundEvent):
    type: Literal["connected"] = "connected"
    connectionId: str


class TransferCreated(OutboundEvent):
    type: Literal["transfer-created"] = "transfer-created"
    transferId: str
    message: str = "Transfer session created successfully"


class ErrorEvent(OutboundEvent):
    type: Literal["error"] = "error"
    message: str
    code: ErrorCode
    chunkIndex: Optional[int] = None

    def to_wire(self) -> Dict[str, Any]:
        data = super().to_wire()
        if self.chunkIndex is None:
            data.pop("chunkIndex")
        return data


class ReceiverConnected(OutboundEvent):
    type: Literal["receiver-connected"] = "receiver-connected"
    transferId: str
    receiverId: str
    message: str = "Receiver connected successfully"


class JoinedTransfer(OutboundEvent):
    type: Literal["joined-transfer"] = "joined-transfer"
    transferId: str
    message: str = "Connected to transfer session"


class ReceiveChunk(OutboundEvent):
    type: Literal["receive-chunk"] = "receive-chunk"
    chunk: bytes
    chunkIndex: int
    totalChunks: int
    fileName: str
    fileSize: int
    fileType: str

    @field_serializer("chunk")
    def _encode_chunk(self, value: bytes) -> str:
        return base64.b64encode(value).decode("ascii")


class ChunkUploaded(OutboundEvent):
    type: Literal["chunk-uploaded"] = "chunk-uploaded"
    chunkIndex: int
    message: str


class TransferComplete(OutboundEvent):
    type: Literal["transfer-complete"] = "transfer-complete"
    transferId: str
    fileInfo: Optional[FileInfo]
    message: str = "File transfer completed successfully"


class StatusResponse(OutboundEvent):
    type: Literal["status-response"] = "status-response"
    found: Literal[True] = True
    status: TransferStatus
    fileInfo: Optional[FileInfo]
    chunksReceived: int
    totalChunks: int


class StatusNotFound(OutboundEvent):
    type: Literal["status-response"] = "status-response"
    found: Literal[False] = False
    message: str = "Transfer not found"


class PeerDisconnected(OutboundEvent):
    type: Literal["peer-disconnected"] = "peer-disconnected"
    transferId: str
    role: PeerRole
    message: str


# =============================================================================
# HTTP Payloads
# =============================================================================


class TransferSnapshot(BaseModel):
    """Read-only view of a session for GET /api/transfer/{transferId}."""
    transferId: str
    status: TransferStatus
    fileInfo: Optional[FileInfo]
    chunksReceived: int
    totalChunks: int
    hasReceiver: bool


class HealthResponse(BaseModel):
    status: str = "OK"
    uptime: float
    activeSessions: int
    activeConnections: int
    timestamp: str
