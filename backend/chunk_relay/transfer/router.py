"""Transfer router providing WebSocket and HTTP endpoints.

This module provides:
    - WebSocket /ws/transfer: Real-time chunk relay between a sender and a receiver
    - GET /api/transfer/{transfer_id}: Snapshot of a transfer session

Protocol Flow:
    1. Client connects -> Server assigns a connection ID
       -> Server sends: {type: "connected", connectionId: "xxx"}
    2. Sender sends: {type: "create-transfer", transferId}
       -> Sender receives: {type: "transfer-created", ...}
    3. Receiver sends: {type: "join-transfer", transferId}
       -> Sender receives: {type: "receiver-connected", ...}
       -> Receiver receives: {type: "joined-transfer", ...}
    4. Sender sends: {type: "upload-chunk", transferId, chunk (base64), chunkIndex,
       totalChunks, fileName, fileSize, fileType}
       -> Receiver receives: {type: "receive-chunk", ...}
       -> Sender receives: {type: "chunk-uploaded", chunkIndex, message}
    5. Sender sends: {type: "upload-complete", transferId}
       -> Receiver receives: {type: "transfer-complete", transferId, fileInfo}
    6. Anyone sends: {type: "get-status", transferId}
       -> Caller receives: {type: "status-response", found, ...}
    7. On disconnect -> Other peer receives: {type: "peer-disconnected", role}

Errors are sent to the originating connection only as
{type: "error", message, code}; they never close the connection.
"""
import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.requests import HTTPConnection

from .engine import HandlerResult, TransferEngine
from .manager import ConnectionManager
from .schemas import Connected, ErrorCode, parse_inbound

logger = logging.getLogger(__name__)

router = APIRouter(tags=["transfer"])

# Engine and connection manager are created once at startup (see main.py)
# and stored in app.state.


def get_engine(conn: HTTPConnection) -> TransferEngine:
    return conn.app.state.transfer_engine


def get_connection_manager(conn: HTTPConnection) -> ConnectionManager:
    return conn.app.state.connection_manager


async def _receive_frame(websocket: WebSocket) -> Any:
    """Receive one frame and decode it as JSON (text or UTF-8 binary).

    Raises:
        WebSocketDisconnect: If the client went away.
        ValueError: If the frame is not valid JSON.
    """
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", 1000))
    raw = message.get("text")
    if raw is None:
        raw = (message.get("bytes") or b"").decode("utf-8", errors="replace")
    return json.loads(raw)


@router.get("/api/transfer/{transfer_id}")
async def get_transfer(
    transfer_id: str,
    engine: TransferEngine = Depends(get_engine),
) -> JSONResponse:
    """Get a snapshot of a transfer session.

    Returns:
        JSON with transferId, status, fileInfo, chunksReceived, totalChunks
        and hasReceiver, or 404 with code SESSION_NOT_FOUND.
    """
    snapshot = engine.snapshot(transfer_id)
    if snapshot is None:
        return JSONResponse(
            {"error": "Transfer not found", "code": ErrorCode.SESSION_NOT_FOUND.value},
            status_code=404,
        )
    return JSONResponse(snapshot.model_dump(mode="json"))


@router.websocket("/ws/transfer")
async def transfer_websocket_endpoint(
    websocket: WebSocket,
    engine: TransferEngine = Depends(get_engine),
    connections: ConnectionManager = Depends(get_connection_manager),
) -> None:
    """WebSocket endpoint for one transfer peer (sender or receiver).

    Each frame is handled to completion (including the chunk store write)
    before the next frame from the same connection is read, so chunks are
    relayed in exactly the order the sender uploaded them.

    Args:
        websocket: The WebSocket connection.
    """
    # SECURITY: Backend assigns the connection ID
    connection_id = await connections.connect(websocket)
    engine.connect(connection_id)
    logger.info(
        f"[WS] Connection accepted: {connection_id}. "
        f"{connections.get_connection_count()} connections open"
    )

    try:
        await connections.send(connection_id, Connected(connectionId=connection_id))

        # Main message loop
        while True:
            try:
                data = await _receive_frame(websocket)
            except ValueError:
                logger.info(f"[WS] Non-JSON frame from {connection_id}")
                await connections.deliver(
                    HandlerResult.failure(connection_id, ErrorCode.INVALID_MESSAGE).deliveries
                )
                continue

            try:
                event = parse_inbound(data)
            except ValidationError as e:
                logger.info(f"[WS] Invalid event from {connection_id}: {e.error_count()} errors")
                await connections.deliver(
                    HandlerResult.failure(connection_id, ErrorCode.INVALID_MESSAGE).deliveries
                )
                continue

            logger.debug("[WS] %s received: type=%s", connection_id, event.type)
            result = await engine.handle(connection_id, event)
            await connections.deliver(result.deliveries)

    except WebSocketDisconnect:
        logger.info(f"[WS] Client disconnected: {connection_id}")

    finally:
        connections.disconnect(connection_id)
        result = await engine.on_disconnect(connection_id)
        await connections.deliver(result.deliveries)
