"""End-to-end tests for the /ws/transfer WebSocket and the HTTP endpoints.

Protocol recap:
1. On connect, backend sends {type: "connected", connectionId: "<uuid>"}
2. Sender creates a transfer, receiver joins it
3. Each upload-chunk is relayed to the receiver before the sender's ack
4. upload-complete notifies the receiver with the file info
"""
import base64
from pathlib import Path

from fastapi.testclient import TestClient

from chunk_relay.main import create_app
from chunk_relay.transfer.schemas import TransferStatus

TID = "ws-transfer-1"


def receive_connected(ws) -> str:
    """Helper to receive the backend-assigned connection ID."""
    connected = ws.receive_json()
    assert connected["type"] == "connected"
    assert connected["connectionId"]
    return connected["connectionId"]


def upload_message(index: int, data: bytes, total: int = 2, transfer_id: str = TID) -> dict:
    return {
        "type": "upload-chunk",
        "transferId": transfer_id,
        "chunk": base64.b64encode(data).decode("ascii"),
        "chunkIndex": index,
        "totalChunks": total,
        "fileName": "notes.txt",
        "fileSize": 10,
        "fileType": "text/plain",
    }


def create_and_join(sender, receiver, transfer_id: str = TID):
    sender_id = receive_connected(sender)
    receiver_id = receive_connected(receiver)

    sender.send_json({"type": "create-transfer", "transferId": transfer_id})
    created = sender.receive_json()
    assert created["type"] == "transfer-created"
    assert created["transferId"] == transfer_id

    receiver.send_json({"type": "join-transfer", "transferId": transfer_id})
    notice = sender.receive_json()
    assert notice["type"] == "receiver-connected"
    assert notice["receiverId"] == receiver_id
    joined = receiver.receive_json()
    assert joined["type"] == "joined-transfer"
    return sender_id, receiver_id


class TestTransferWebSocket:
    def test_connection_ids_are_unique(self, api_client):
        with api_client.websocket_connect("/ws/transfer") as ws1, \
             api_client.websocket_connect("/ws/transfer") as ws2:
            assert receive_connected(ws1) != receive_connected(ws2)

    def test_full_transfer(self, api_client):
        with api_client.websocket_connect("/ws/transfer") as sender, \
             api_client.websocket_connect("/ws/transfer") as receiver:
            create_and_join(sender, receiver)

            for index, data in enumerate([b"hello", b"world"]):
                sender.send_json(upload_message(index, data))

                relayed = receiver.receive_json()
                assert relayed["type"] == "receive-chunk"
                assert relayed["chunkIndex"] == index
                assert base64.b64decode(relayed["chunk"]) == data
                assert relayed["fileName"] == "notes.txt"
                assert relayed["fileType"] == "text/plain"

                ack = sender.receive_json()
                assert ack == {
                    "type": "chunk-uploaded",
                    "chunkIndex": index,
                    "message": f"Chunk {index + 1}/2 uploaded successfully",
                }

            sender.send_json({"type": "upload-complete", "transferId": TID})
            complete = receiver.receive_json()
            assert complete["type"] == "transfer-complete"
            assert complete["fileInfo"]["fileName"] == "notes.txt"
            assert complete["fileInfo"]["totalChunks"] == 2

            sender.send_json({"type": "get-status", "transferId": TID})
            status = sender.receive_json()
            assert status["found"] is True
            assert status["status"] == TransferStatus.COMPLETED.value
            assert status["chunksReceived"] == 2

    def test_join_unknown_transfer(self, api_client):
        with api_client.websocket_connect("/ws/transfer") as ws:
            receive_connected(ws)
            ws.send_json({"type": "join-transfer", "transferId": "missing"})
            error = ws.receive_json()
            assert error == {
                "type": "error",
                "message": "Transfer session not found",
                "code": "SESSION_NOT_FOUND",
            }

    def test_second_receiver_rejected(self, api_client):
        with api_client.websocket_connect("/ws/transfer") as sender, \
             api_client.websocket_connect("/ws/transfer") as receiver, \
             api_client.websocket_connect("/ws/transfer") as intruder:
            create_and_join(sender, receiver)
            receive_connected(intruder)

            intruder.send_json({"type": "join-transfer", "transferId": TID})
            assert intruder.receive_json()["code"] == "RECEIVER_EXISTS"

    def test_receiver_cannot_upload(self, api_client):
        with api_client.websocket_connect("/ws/transfer") as sender, \
             api_client.websocket_connect("/ws/transfer") as receiver:
            create_and_join(sender, receiver)

            receiver.send_json(upload_message(0, b"nope"))
            error = receiver.receive_json()
            assert error["code"] == "UNAUTHORIZED"

            # Connection stays usable after an error
            receiver.send_json({"type": "get-status", "transferId": TID})
            status = receiver.receive_json()
            assert status["chunksReceived"] == 0

    def test_duplicate_create_rejected(self, api_client):
        with api_client.websocket_connect("/ws/transfer") as ws1, \
             api_client.websocket_connect("/ws/transfer") as ws2:
            receive_connected(ws1)
            receive_connected(ws2)
            ws1.send_json({"type": "create-transfer", "transferId": TID})
            ws1.receive_json()

            ws2.send_json({"type": "create-transfer", "transferId": TID})
            assert ws2.receive_json()["code"] == "SESSION_EXISTS"

    def test_status_of_unknown_transfer(self, api_client):
        with api_client.websocket_connect("/ws/transfer") as ws:
            receive_connected(ws)
            ws.send_json({"type": "get-status", "transferId": "missing"})
            assert ws.receive_json() == {
                "type": "status-response",
                "found": False,
                "message": "Transfer not found",
            }

    def test_invalid_json_frame(self, api_client):
        with api_client.websocket_connect("/ws/transfer") as ws:
            receive_connected(ws)
            ws.send_text("not json")
            error = ws.receive_json()
            assert error["code"] == "INVALID_MESSAGE"
            assert error["message"] == "Invalid message format"

    def test_unknown_event_type(self, api_client):
        with api_client.websocket_connect("/ws/transfer") as ws:
            receive_connected(ws)
            ws.send_json({"type": "delete-everything", "transferId": TID})
            assert ws.receive_json()["code"] == "INVALID_MESSAGE"

    def test_bad_base64_chunk(self, api_client):
        with api_client.websocket_connect("/ws/transfer") as ws:
            receive_connected(ws)
            ws.send_json({"type": "create-transfer", "transferId": TID})
            ws.receive_json()

            message = upload_message(0, b"x")
            message["chunk"] = "***"
            ws.send_json(message)
            assert ws.receive_json()["code"] == "INVALID_MESSAGE"

    def test_upload_before_receiver_is_acknowledged(self, api_client):
        with api_client.websocket_connect("/ws/transfer") as sender:
            receive_connected(sender)
            sender.send_json({"type": "create-transfer", "transferId": TID})
            sender.receive_json()

            sender.send_json(upload_message(0, b"early"))
            ack = sender.receive_json()
            assert ack["type"] == "chunk-uploaded"

            snapshot = api_client.get(f"/api/transfer/{TID}").json()
            assert snapshot["status"] == "uploading"
            assert snapshot["hasReceiver"] is False


class TestHttpEndpoints:
    def test_health(self, api_client):
        response = api_client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "OK"
        assert data["uptime"] >= 0
        assert data["activeSessions"] == 0
        assert data["activeConnections"] == 0
        assert "timestamp" in data

    def test_health_counts_live_sessions(self, api_client):
        with api_client.websocket_connect("/ws/transfer") as ws:
            receive_connected(ws)
            ws.send_json({"type": "create-transfer", "transferId": TID})
            ws.receive_json()

            data = api_client.get("/health").json()
            assert data["activeSessions"] == 1
            assert data["activeConnections"] == 1

    def test_unknown_transfer_snapshot(self, api_client):
        response = api_client.get("/api/transfer/missing")

        assert response.status_code == 404
        assert response.json() == {"error": "Transfer not found", "code": "SESSION_NOT_FOUND"}

    def test_transfer_snapshot(self, api_client):
        with api_client.websocket_connect("/ws/transfer") as sender, \
             api_client.websocket_connect("/ws/transfer") as receiver:
            create_and_join(sender, receiver)
            sender.send_json(upload_message(0, b"hello"))
            receiver.receive_json()
            sender.receive_json()

            response = api_client.get(f"/api/transfer/{TID}")

        assert response.status_code == 200
        data = response.json()
        assert data["transferId"] == TID
        assert data["status"] == "uploading"
        assert data["chunksReceived"] == 1
        assert data["totalChunks"] == 2
        assert data["hasReceiver"] is True
        assert data["fileInfo"]["fileName"] == "notes.txt"

    def test_chunk_written_under_temp_dir(self, api_client, settings):
        with api_client.websocket_connect("/ws/transfer") as sender:
            receive_connected(sender)
            sender.send_json({"type": "create-transfer", "transferId": TID})
            sender.receive_json()
            sender.send_json(upload_message(0, b"on disk"))
            sender.receive_json()

        blob = Path(settings.storage.temp_dir) / f"{TID}_chunk_0"
        assert blob.read_bytes() == b"on disk"

    def test_static_files_served(self, settings):
        static_dir = Path(settings.server.static_dir)
        static_dir.mkdir(parents=True)
        (static_dir / "index.html").write_text("<h1>relay</h1>", encoding="utf-8")

        with TestClient(create_app(settings)) as client:
            assert "relay" in client.get("/").text
            assert client.get("/health").json()["status"] == "OK"
