"""WebSocket client for the chunk relay.

Usage:
    python -m chunk_relay.client send ws://localhost:3000/ws/transfer ./report.pdf
    python -m chunk_relay.client receive ws://localhost:3000/ws/transfer <transfer-id> ./downloads

The pure helpers (``iter_chunk_messages`` and ``ChunkAssembler``) do the
splitting and reassembly; ``send_file`` and ``receive_file`` drive the
protocol over a live connection.
"""
import asyncio
import base64
import json
import logging
import math
import uuid
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Union

import aiofiles
import click
import websockets

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 10 * 1024 * 1024


class TransferError(Exception):
    """Raised when the server rejects an operation or a peer goes away."""

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code


# =============================================================================
# Chunking Helpers
# =============================================================================


def iter_chunk_messages(
    data: bytes,
    transfer_id: str,
    file_name: str,
    file_type: str = "",
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> Iterator[Dict[str, Any]]:
    """Split file contents into upload-chunk messages.

    An empty file still produces one (empty) chunk so the receiver learns
    the file name.

    Args:
        data: The whole file contents.
        transfer_id: Session the chunks belong to.
        file_name: Name announced to the receiver.
        file_type: MIME type announced to the receiver.
        chunk_size: Maximum bytes per chunk.

    Yields:
        JSON-ready upload-chunk messages in index order.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be greater than zero")

    total_chunks = max(1, math.ceil(len(data) / chunk_size))
    for index in range(total_chunks):
        piece = data[index * chunk_size:(index + 1) * chunk_size]
        yield {
            "type": "upload-chunk",
            "transferId": transfer_id,
            "chunk": base64.b64encode(piece).decode("ascii"),
            "chunkIndex": index,
            "totalChunks": total_chunks,
            "fileName": file_name,
            "fileSize": len(data),
            "fileType": file_type,
        }


class ChunkAssembler:
    """Collects receive-chunk messages and rebuilds the file.

    Chunks may arrive in any order; a repeated index replaces the earlier one.
    """

    def __init__(self) -> None:
        self._chunks: Dict[int, bytes] = {}
        self.total_chunks: Optional[int] = None
        self.file_name: Optional[str] = None
        self.file_size: Optional[int] = None
        self.file_type: str = ""

    def add(self, message: Dict[str, Any]) -> None:
        """Record one receive-chunk message."""
        index = int(message["chunkIndex"])
        self._chunks[index] = base64.b64decode(message["chunk"])
        self.total_chunks = int(message["totalChunks"])
        self.file_name = message.get("fileName", self.file_name)
        self.file_size = message.get("fileSize", self.file_size)
        self.file_type = message.get("fileType", self.file_type) or ""

    @property
    def received(self) -> int:
        return len(self._chunks)

    def missing(self) -> list:
        if self.total_chunks is None:
            return []
        return [i for i in range(self.total_chunks) if i not in self._chunks]

    def is_complete(self) -> bool:
        return self.total_chunks is not None and not self.missing()

    def assemble(self) -> bytes:
        """Concatenate the chunks in index order.

        Raises:
            ValueError: If no chunk arrived or some indices are missing.
        """
        if self.total_chunks is None:
            raise ValueError("No chunks received")
        missing = self.missing()
        if missing:
            raise ValueError(f"Missing chunks: {missing}")
        return b"".join(self._chunks[i] for i in range(self.total_chunks))


# =============================================================================
# Protocol Drivers
# =============================================================================


async def _recv_json(ws) -> Dict[str, Any]:
    return json.loads(await ws.recv())


async def _expect(ws, expected_type: str) -> Dict[str, Any]:
    """Read frames until one of *expected_type* arrives; raise on error frames."""
    while True:
        message = await _recv_json(ws)
        msg_type = message.get("type")
        if msg_type == expected_type:
            return message
        if msg_type == "error":
            raise TransferError(message.get("message", "Transfer error"), message.get("code"))
        logger.info("Ignoring %s while waiting for %s", msg_type, expected_type)


async def send_file(
    url: str,
    path: Union[str, Path],
    transfer_id: Optional[str] = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    file_type: str = "",
    wait_for_receiver: bool = True,
) -> str:
    """Create a transfer and upload a file to it chunk by chunk.

    Chunks are only relayed to a receiver that has already joined, so by
    default the upload starts once receiver-connected arrives. Each chunk is
    acknowledged (chunk-uploaded) before the next is sent.

    Returns:
        The transfer ID the file was sent under.

    Raises:
        TransferError: If the server rejects the session or a chunk.
    """
    path = Path(path)
    transfer_id = transfer_id or str(uuid.uuid4())
    async with aiofiles.open(path, "rb") as f:
        data = await f.read()

    async with websockets.connect(url, max_size=None) as ws:
        connected = await _expect(ws, "connected")
        logger.info(f"[Client] Connected as {connected['connectionId']}")

        await ws.send(json.dumps({"type": "create-transfer", "transferId": transfer_id}))
        await _expect(ws, "transfer-created")
        logger.info(f"[Client] Transfer created: {transfer_id}")

        if wait_for_receiver:
            logger.info("[Client] Waiting for a receiver to join %s", transfer_id)
            await _expect(ws, "receiver-connected")

        for message in iter_chunk_messages(data, transfer_id, path.name, file_type, chunk_size):
            await ws.send(json.dumps(message))
            ack = await _expect(ws, "chunk-uploaded")
            logger.info("[Client] %s", ack.get("message"))

        await ws.send(json.dumps({"type": "upload-complete", "transferId": transfer_id}))
        logger.info(f"[Client] Upload complete: {path.name} ({len(data)} bytes)")

    return transfer_id


async def receive_file(
    url: str,
    transfer_id: str,
    out_dir: Union[str, Path],
) -> Path:
    """Join a transfer and write the relayed file into *out_dir*.

    Only chunks uploaded after joining are relayed, so the receiver should
    join before the sender starts uploading.

    Returns:
        Path of the written file.

    Raises:
        TransferError: If the join is rejected, the sender disconnects
            before completing, or chunks are missing at completion.
    """
    assembler = ChunkAssembler()

    async with websockets.connect(url, max_size=None) as ws:
        await _expect(ws, "connected")
        await ws.send(json.dumps({"type": "join-transfer", "transferId": transfer_id}))
        await _expect(ws, "joined-transfer")
        logger.info(f"[Client] Joined transfer {transfer_id}")

        while True:
            message = await _recv_json(ws)
            msg_type = message.get("type")
            if msg_type == "receive-chunk":
                assembler.add(message)
            elif msg_type == "transfer-complete":
                file_info = message.get("fileInfo") or {}
                assembler.file_name = file_info.get("fileName", assembler.file_name)
                break
            elif msg_type == "peer-disconnected":
                raise TransferError("Sender disconnected before completing", "PEER_DISCONNECTED")
            elif msg_type == "error":
                raise TransferError(message.get("message", "Transfer error"), message.get("code"))

    try:
        data = assembler.assemble()
    except ValueError as e:
        raise TransferError(str(e)) from e

    out_path = Path(out_dir) / Path(assembler.file_name or transfer_id).name
    out_path.parent.mkdir(parents=True, exist_ok=True)
    async with aiofiles.open(out_path, "wb") as f:
        await f.write(data)
    logger.info(f"[Client] Saved {out_path} ({len(data)} bytes)")
    return out_path


# =============================================================================
# CLI
# =============================================================================


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
def cli(verbose):
    """Chunk relay client - send or receive one file over the relay."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@cli.command()
@click.argument("url")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--transfer-id", default=None, help="Transfer ID (random UUID if omitted)")
@click.option("--chunk-size", default=DEFAULT_CHUNK_SIZE, show_default=True, help="Bytes per chunk")
@click.option("--no-wait", is_flag=True, help="Upload without waiting for a receiver")
def send(url, path, transfer_id, chunk_size, no_wait):
    """Upload PATH through the relay at URL."""
    try:
        transfer_id = asyncio.run(send_file(
            url, path, transfer_id, chunk_size,
            wait_for_receiver=not no_wait,
        ))
    except TransferError as e:
        raise click.ClickException(f"{e} ({e.code})" if e.code else str(e))
    click.echo(transfer_id)


@cli.command()
@click.argument("url")
@click.argument("transfer_id")
@click.argument("out_dir", default=".", type=click.Path(file_okay=False))
def receive(url, transfer_id, out_dir):
    """Join TRANSFER_ID and save the file into OUT_DIR."""
    try:
        out_path = asyncio.run(receive_file(url, transfer_id, out_dir))
    except TransferError as e:
        raise click.ClickException(f"{e} ({e.code})" if e.code else str(e))
    click.echo(str(out_path))


if __name__ == "__main__":
    cli()
