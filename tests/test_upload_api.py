"""Tests for the Transfer API upload endpoints."""

import hashlib

from sqlalchemy import select

from booster.models import UploadSession


def sha(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def init_session(test_client, total_size=300, chunk_size=100, user="alice", filename="mix.wav"):
    response = test_client.post(
        "/upload/init",
        json={"filename": filename, "totalSize": total_size, "chunkSize": chunk_size},
        headers={"X-User-Id": user},
    )
    assert response.status_code == 201, response.text
    return response.json()


def send_chunk(test_client, session_id, index, data, chunk_hash=None, user="alice"):
    return test_client.post(
        f"/upload/{session_id}/chunk",
        files={"chunk": ("blob", data, "application/octet-stream")},
        data={"chunkIndex": str(index), "chunkHash": chunk_hash or sha(data)},
        headers={"X-User-Id": user},
    )


class TestHealthCheck:
    """Tests for health check endpoint."""

    def test_health_check(self, client):
        """Health check should return ok."""
        test_client, _ = client
        response = test_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestUploadInit:
    """Tests for POST /upload/init."""

    def test_init_returns_camel_case(self, client):
        test_client, SessionFactory = client

        data = init_session(test_client)

        assert data["status"] == "initializing"
        assert data["totalChunks"] == 3
        assert data["chunkSize"] == 100
        assert "expiresAt" in data

        session = SessionFactory()
        try:
            row = session.execute(
                select(UploadSession).where(UploadSession.session_id == data["sessionId"])
            ).scalar_one()
            assert row.user_id == "alice"
        finally:
            session.close()

    def test_missing_user_header_defaults_to_anonymous(self, client):
        test_client, SessionFactory = client

        response = test_client.post("/upload/init", json={"filename": "a.wav", "totalSize": 10})

        assert response.status_code == 201
        session = SessionFactory()
        try:
            row = session.execute(
                select(UploadSession).where(
                    UploadSession.session_id == response.json()["sessionId"]
                )
            ).scalar_one()
            assert row.user_id == "anonymous"
        finally:
            session.close()

    def test_too_large_is_413(self, client):
        test_client, _ = client

        response = test_client.post(
            "/upload/init",
            json={"filename": "huge.wav", "totalSize": 6 * 1024**3, "chunkSize": 100 * 1024**2},
        )

        assert response.status_code == 413
        body = response.json()
        assert body["status"] == "error"
        assert body["error_code"] == "UPLOAD_TOO_LARGE"

    def test_zero_size_is_400(self, client):
        test_client, _ = client
        response = test_client.post("/upload/init", json={"filename": "a.wav", "totalSize": 0})
        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_REQUEST"

    def test_malformed_body_is_400(self, client):
        test_client, _ = client
        response = test_client.post("/upload/init", json={"filename": "a.wav"})
        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_REQUEST"

    def test_unknown_field_rejected(self, client):
        test_client, _ = client
        response = test_client.post(
            "/upload/init", json={"filename": "a.wav", "totalSize": 5, "bogus": True}
        )
        assert response.status_code == 400


class TestChunkUpload:
    """Tests for POST /upload/{sessionId}/chunk."""

    def test_ack_counts_chunks(self, client):
        test_client, _ = client
        session_id = init_session(test_client)["sessionId"]

        response = send_chunk(test_client, session_id, 0, b"a" * 100)

        assert response.status_code == 200
        body = response.json()
        assert body["received"] is True
        assert body["duplicate"] is False
        assert body["receivedChunks"] == 1
        assert body["totalChunks"] == 3
        assert body["status"] == "uploading"

    def test_duplicate_flagged(self, client):
        test_client, _ = client
        session_id = init_session(test_client)["sessionId"]

        send_chunk(test_client, session_id, 0, b"a" * 100)
        response = send_chunk(test_client, session_id, 0, b"a" * 100)

        assert response.json()["duplicate"] is True
        assert response.json()["receivedChunks"] == 1

    def test_checksum_mismatch_is_400(self, client):
        test_client, _ = client
        session_id = init_session(test_client)["sessionId"]

        response = send_chunk(test_client, session_id, 0, b"a" * 100, chunk_hash=sha(b"b"))

        assert response.status_code == 400
        assert response.json()["error_code"] == "CHECKSUM_MISMATCH"
        status = test_client.get(
            f"/upload/{session_id}/status", headers={"X-User-Id": "alice"}
        ).json()
        assert status["receivedChunks"] == 0

    def test_out_of_range_is_400(self, client):
        test_client, _ = client
        session_id = init_session(test_client)["sessionId"]
        response = send_chunk(test_client, session_id, 5, b"a" * 100)
        assert response.status_code == 400
        assert response.json()["error_code"] == "CHUNK_OUT_OF_RANGE"

    def test_unknown_session_is_404(self, client):
        test_client, _ = client
        response = send_chunk(test_client, "0" * 32, 0, b"a" * 100)
        assert response.status_code == 404
        assert response.json()["error_code"] == "SESSION_NOT_FOUND"

    def test_other_user_gets_404(self, client):
        test_client, _ = client
        session_id = init_session(test_client, user="alice")["sessionId"]
        response = send_chunk(test_client, session_id, 0, b"a" * 100, user="mallory")
        assert response.status_code == 404

    def test_missing_form_field_is_400(self, client):
        test_client, _ = client
        session_id = init_session(test_client)["sessionId"]
        response = test_client.post(
            f"/upload/{session_id}/chunk",
            files={"chunk": ("blob", b"a" * 100, "application/octet-stream")},
            data={"chunkIndex": "0"},
            headers={"X-User-Id": "alice"},
        )
        assert response.status_code == 400


class TestStatusAndList:
    """Tests for GET /upload/{sessionId}/status and GET /upload/sessions."""

    def test_status_reports_missing(self, client):
        test_client, _ = client
        session_id = init_session(test_client)["sessionId"]
        send_chunk(test_client, session_id, 1, b"b" * 100)

        response = test_client.get(f"/upload/{session_id}/status", headers={"X-User-Id": "alice"})

        assert response.status_code == 200
        body = response.json()
        assert body["missingChunks"] == [0, 2]
        assert body["progress"] == 33
        assert body["bytesReceived"] == 100

    def test_list_sessions_filtered(self, client):
        test_client, _ = client
        first = init_session(test_client)["sessionId"]
        second = init_session(test_client)["sessionId"]
        init_session(test_client, user="bob")
        test_client.delete(f"/upload/{first}", headers={"X-User-Id": "alice"})

        everything = test_client.get("/upload/sessions", headers={"X-User-Id": "alice"}).json()
        aborted = test_client.get(
            "/upload/sessions", params={"status": "aborted"}, headers={"X-User-Id": "alice"}
        ).json()

        assert everything["total"] == 2
        assert {s["sessionId"] for s in everything["sessions"]} == {first, second}
        assert [s["sessionId"] for s in aborted["sessions"]] == [first]

    def test_list_rejects_unknown_status(self, client):
        test_client, _ = client
        response = test_client.get("/upload/sessions", params={"status": "weird"})
        assert response.status_code == 400


class TestFinalizeAndAbort:
    """Tests for POST /upload/{sessionId}/finalize and DELETE /upload/{sessionId}."""

    def test_full_upload_flow(self, client):
        test_client, _ = client
        payload = bytes(range(256)) + bytes(range(44))
        session_id = init_session(test_client)["sessionId"]
        for index in range(3):
            part = payload[index * 100 : (index + 1) * 100]
            assert send_chunk(test_client, session_id, index, part).status_code == 200

        response = test_client.post(
            f"/upload/{session_id}/finalize",
            json={"fileHash": sha(payload)},
            headers={"X-User-Id": "alice"},
        )

        assert response.status_code == 200, response.text
        body = response.json()
        assert body["status"] == "complete"
        assert body["size"] == 300
        assert body["sha256"] == sha(payload)
        assert body["formatGuess"] == "wav"
        with open(body["path"], "rb") as f:
            assert f.read() == payload

    def test_finalize_without_body(self, client):
        test_client, _ = client
        session_id = init_session(test_client, total_size=100)["sessionId"]
        send_chunk(test_client, session_id, 0, b"z" * 100)

        response = test_client.post(
            f"/upload/{session_id}/finalize", headers={"X-User-Id": "alice"}
        )

        assert response.status_code == 200
        assert response.json()["size"] == 100

    def test_finalize_missing_chunks_is_400(self, client):
        test_client, _ = client
        session_id = init_session(test_client)["sessionId"]
        send_chunk(test_client, session_id, 0, b"a" * 100)

        response = test_client.post(
            f"/upload/{session_id}/finalize", json={}, headers={"X-User-Id": "alice"}
        )

        assert response.status_code == 400
        body = response.json()
        assert body["error_code"] == "MISSING_CHUNKS"
        assert "1, 2" in body["error_message"]

    def test_abort_then_upload_is_409(self, client):
        test_client, _ = client
        session_id = init_session(test_client)["sessionId"]

        response = test_client.delete(f"/upload/{session_id}", headers={"X-User-Id": "alice"})
        assert response.status_code == 200
        assert response.json() == {"sessionId": session_id, "status": "aborted"}

        response = send_chunk(test_client, session_id, 0, b"a" * 100)
        assert response.status_code == 409
        assert response.json()["error_code"] == "SESSION_CLOSED"
