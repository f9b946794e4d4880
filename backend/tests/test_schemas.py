"""Tests for protocol event parsing and wire serialisation."""
import base64

import pytest
from pydantic import ValidationError

from chunk_relay.transfer.schemas import (
    CreateTransfer,
    ErrorCode,
    ErrorEvent,
    ReceiveChunk,
    TransferStatus,
    UploadChunk,
    parse_inbound,
)


def _upload(**overrides) -> dict:
    data = {
        "type": "upload-chunk",
        "transferId": "t1",
        "chunk": base64.b64encode(b"\x00\x01binary").decode("ascii"),
        "chunkIndex": 0,
        "totalChunks": 1,
        "fileName": "a.bin",
        "fileSize": 8,
    }
    data.update(overrides)
    return data


class TestParseInbound:
    def test_dispatches_on_type(self):
        event = parse_inbound({"type": "create-transfer", "transferId": "t1"})
        assert isinstance(event, CreateTransfer)

    def test_upload_chunk_decodes_base64(self):
        event = parse_inbound(_upload())

        assert isinstance(event, UploadChunk)
        assert event.chunk == b"\x00\x01binary"
        assert event.fileType == ""

    @pytest.mark.parametrize("data", [
        {"type": "create-transfer"},
        {"type": "create-transfer", "transferId": ""},
        {"type": "unknown", "transferId": "t1"},
        {"transferId": "t1"},
        ["create-transfer", "t1"],
        "create-transfer",
    ])
    def test_rejects_malformed_frames(self, data):
        with pytest.raises(ValidationError):
            parse_inbound(data)

    @pytest.mark.parametrize("overrides", [
        {"chunk": "not base64!"},
        {"chunkIndex": -1},
        {"totalChunks": 0},
        {"fileSize": -5},
    ])
    def test_rejects_bad_upload_fields(self, overrides):
        with pytest.raises(ValidationError):
            parse_inbound(_upload(**overrides))


class TestOutbound:
    def test_receive_chunk_encodes_base64(self):
        event = ReceiveChunk(
            chunk=b"hello",
            chunkIndex=0,
            totalChunks=1,
            fileName="h.txt",
            fileSize=5,
            fileType="text/plain",
        )
        wire = event.to_wire()

        assert wire["type"] == "receive-chunk"
        assert wire["chunk"] == "aGVsbG8="

    def test_error_omits_absent_chunk_index(self):
        wire = ErrorEvent(message="Transfer session not found", code=ErrorCode.SESSION_NOT_FOUND).to_wire()
        assert wire == {"type": "error", "message": "Transfer session not found", "code": "SESSION_NOT_FOUND"}

    def test_error_includes_chunk_index(self):
        wire = ErrorEvent(message="Failed to save chunk", code=ErrorCode.CHUNK_SAVE_ERROR, chunkIndex=4).to_wire()
        assert wire["chunkIndex"] == 4


class TestStatusOrder:
    def test_status_ranks_increase(self):
        ranks = [s.rank for s in (
            TransferStatus.WAITING,
            TransferStatus.CONNECTED,
            TransferStatus.UPLOADING,
            TransferStatus.COMPLETED,
        )]
        assert ranks == sorted(ranks)
        assert len(set(ranks)) == 4
