"""Temporary chunk blob storage.

Each uploaded chunk is written to its own file under the temp directory:
``{temp_dir}/{transfer_id}_chunk_{index}``. The protocol never reads a blob
back (chunks are relayed from memory at upload time); blobs exist only so
that cleanup has something concrete to remove.

Writes go to a ``.tmp`` sibling first and are renamed into place, so a
half-written blob is never visible under its final name.
"""
import logging
import string
from pathlib import Path
from typing import Union
from urllib.parse import quote

import aiofiles
import aiofiles.os

logger = logging.getLogger(__name__)

# Characters allowed verbatim in the transfer-id part of a blob name
_SAFE_CHARS = string.ascii_letters + string.digits + "._-"


class ChunkStoreError(Exception):
    """Raised when a chunk blob cannot be written."""

    def __init__(self, transfer_id: str, chunk_index: int, reason: str) -> None:
        super().__init__(f"Failed to store chunk {chunk_index} of {transfer_id}: {reason}")
        self.transfer_id = transfer_id
        self.chunk_index = chunk_index


class ChunkStore:
    """Writes and deletes per-chunk blobs keyed by (transfer_id, chunk_index)."""

    def __init__(self, temp_dir: Union[str, Path]) -> None:
        self.temp_dir = Path(temp_dir)

    def chunk_path(self, transfer_id: str, chunk_index: int) -> Path:
        """Get the blob path for a chunk.

        Transfer IDs are caller-supplied, so anything outside ``[A-Za-z0-9._~-]``
        is percent-encoded. ``%`` itself is encoded too, which keeps the
        mapping injective: distinct (transfer_id, index) pairs never share a path.
        """
        safe_id = quote(transfer_id, safe=_SAFE_CHARS)
        return self.temp_dir / f"{safe_id}_chunk_{chunk_index}"

    async def put(self, transfer_id: str, chunk_index: int, data: bytes) -> str:
        """Persist a chunk, overwriting any earlier blob for the same index.

        Args:
            transfer_id: Transfer the chunk belongs to.
            chunk_index: Zero-based chunk index.
            data: Raw chunk bytes.

        Returns:
            Storage reference (the blob path as a string).

        Raises:
            ChunkStoreError: If the blob could not be written.
        """
        path = self.chunk_path(transfer_id, chunk_index)
        temp_path = path.with_name(path.name + ".tmp")
        try:
            await aiofiles.os.makedirs(self.temp_dir, exist_ok=True)
            async with aiofiles.open(temp_path, "wb") as f:
                await f.write(data)
            await aiofiles.os.replace(temp_path, path)
        except OSError as e:
            logger.error(f"Error saving chunk {chunk_index} for {transfer_id}: {e}")
            raise ChunkStoreError(transfer_id, chunk_index, str(e)) from e

        logger.debug("Stored chunk %s of %s (%d bytes)", chunk_index, transfer_id, len(data))
        return str(path)

    async def delete(self, storage_ref: str) -> bool:
        """Delete a blob.

        Failures are logged and reported through the return value; they are
        never raised, so one bad blob cannot stop a cleanup pass.

        Returns:
            True if the blob was removed, False otherwise.
        """
        try:
            await aiofiles.os.remove(storage_ref)
            return True
        except FileNotFoundError:
            logger.debug("Chunk already gone: %s", storage_ref)
            return False
        except OSError as e:
            logger.error(f"Error deleting chunk {storage_ref}: {e}")
            return False
