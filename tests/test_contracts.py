"""Transfer API responses validated against the JSON contracts in specs/.

Cross-field invariants that JSON Schema 2020-12 cannot express are checked
alongside the schema validation.
"""

import hashlib
import io
import json
import wave
from pathlib import Path

import jsonschema
import pytest

SPECS_DIR = Path(__file__).parent.parent / "specs"
HEADERS = {"X-User-Id": "alice"}


def load_schema(name: str) -> dict:
    """Load a JSON schema from the specs directory."""
    with open(SPECS_DIR / f"{name}.schema.json") as f:
        return json.load(f)


def validate(instance: dict, name: str) -> None:
    jsonschema.validate(instance, load_schema(name))


def sha(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def start_upload(test_client, total_size=250, chunk_size=100):
    response = test_client.post(
        "/upload/init",
        json={"filename": "take.wav", "totalSize": total_size, "chunkSize": chunk_size},
        headers=HEADERS,
    )
    return response.json()


def send_chunk(test_client, session_id, index, data):
    return test_client.post(
        f"/upload/{session_id}/chunk",
        files={"chunk": ("blob", data, "application/octet-stream")},
        data={"chunkIndex": str(index), "chunkHash": sha(data)},
        headers=HEADERS,
    )


class TestUploadContracts:
    """Upload responses against their schemas."""

    def test_init_response(self, client):
        test_client, _ = client
        validate(start_upload(test_client), "upload_init_response")

    def test_status_invariants(self, client):
        test_client, _ = client
        session_id = start_upload(test_client)["sessionId"]
        send_chunk(test_client, session_id, 2, b"c" * 50)

        body = test_client.get(f"/upload/{session_id}/status", headers=HEADERS).json()

        validate(body, "upload_status")
        assert body["receivedChunks"] + len(body["missingChunks"]) == body["totalChunks"]
        assert body["missingChunks"] == sorted(body["missingChunks"])
        assert body["bytesReceived"] <= body["totalSize"]

    def test_finalize_response(self, client):
        test_client, _ = client
        session_id = start_upload(test_client)["sessionId"]
        parts = [b"a" * 100, b"b" * 100, b"c" * 50]
        for index, part in enumerate(parts):
            send_chunk(test_client, session_id, index, part)

        body = test_client.post(f"/upload/{session_id}/finalize", headers=HEADERS).json()

        validate(body, "upload_finalize_response")
        assert body["sha256"] == sha(b"".join(parts))
        assert body["size"] == 250

    def test_listed_sessions_match_status_schema(self, client):
        test_client, _ = client
        start_upload(test_client)
        start_upload(test_client)

        body = test_client.get("/upload/sessions", headers=HEADERS).json()

        assert body["total"] == len(body["sessions"]) == 2
        for item in body["sessions"]:
            validate(item, "upload_status")


class TestExportContracts:
    """Export status responses against their schema."""

    def test_status_through_lifecycle(self, client):
        test_client, _ = client
        job_id = test_client.post("/export", json={"projectId": "p1"}, headers=HEADERS).json()[
            "jobId"
        ]

        pending = test_client.get(f"/export/{job_id}/status", headers=HEADERS).json()
        validate(pending, "export_status")
        assert pending["artifactName"] is None

        buffer = io.BytesIO()
        with wave.open(buffer, "wb") as wf:
            wf.setnchannels(1)
            wf.setsampwidth(2)
            wf.setframerate(44100)
            wf.writeframes(b"\x00\x00" * 100)
        test_client.post(
            f"/export/{job_id}/upload",
            files=[("files", ("mix.wav", buffer.getvalue(), "audio/wav"))],
            headers=HEADERS,
        )

        done = test_client.get(f"/export/{job_id}/status", headers=HEADERS).json()
        validate(done, "export_status")
        assert done["status"] == "completed"
        assert done["artifactName"]
        assert done["completedAt"] is not None


class TestErrorContract:
    """Every error body has the same shape."""

    @pytest.mark.parametrize(
        "method,url,kwargs",
        [
            ("get", "/upload/missing/status", {}),
            ("post", "/upload/init", {"json": {"filename": "a.wav"}}),
            ("post", "/upload/init", {"json": {"filename": "a.wav", "totalSize": 10**13}}),
            ("get", "/export/missing/status", {}),
            ("delete", "/export/missing", {}),
        ],
    )
    def test_error_bodies(self, client, method, url, kwargs):
        test_client, _ = client
        response = getattr(test_client, method)(url, headers=HEADERS, **kwargs)

        assert response.status_code >= 400
        validate(response.json(), "error_response")

    def test_invalid_error_code_rejected(self):
        with pytest.raises(jsonschema.ValidationError):
            validate(
                {"status": "error", "error_code": "NOPE", "error_message": "x"},
                "error_response",
            )
