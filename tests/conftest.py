"""Shared pytest fixtures for Booster Transfer tests.

This module contains common fixtures used across multiple test files,
reducing duplication and improving test maintainability.
"""

import tempfile
import wave
from pathlib import Path
from unittest import mock

import pytest
from fastapi.testclient import TestClient

from booster.db import init_db
from services.transfer_api.exports import export_jobs
from services.transfer_api.main import app, get_db_session, override_session_factory
from services.transfer_api.uploads import session_locks


def write_test_wav(
    path: Path,
    duration_sec: float = 1.0,
    sample_rate: int = 22050,
    sampwidth: int = 2,
    channels: int = 1,
    frames: bytes | None = None,
) -> Path:
    """Write a small PCM WAV file (silence unless frames are given)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    num_frames = int(sample_rate * duration_sec)
    with wave.open(str(path), "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(sampwidth)
        wf.setframerate(sample_rate)
        if frames is None:
            frames = b"\x00" * num_frames * sampwidth * channels
        wf.writeframes(frames)
    return path


@pytest.fixture
def temp_db():
    """Create a temporary database for testing.

    Creates an isolated SQLite database in a temporary directory.
    The database is cleaned up after the test completes.

    Yields:
        tuple: (db_path, engine, SessionFactory)
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        engine, SessionFactory = init_db(db_path)
        override_session_factory(SessionFactory)
        yield db_path, engine, SessionFactory
        override_session_factory(None)
        engine.dispose()


@pytest.fixture
def db_session(temp_db):
    """A single database session on the temporary database."""
    _, _, SessionFactory = temp_db
    session = SessionFactory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def data_dirs(monkeypatch):
    """Point upload and export storage at a temporary directory.

    Yields:
        tuple: (uploads_dir, exports_dir)
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        uploads_dir = Path(tmpdir) / "uploads"
        exports_dir = Path(tmpdir) / "exports"
        monkeypatch.setattr("booster.config.UPLOADS_DIR", uploads_dir)
        monkeypatch.setattr("booster.config.EXPORTS_DIR", exports_dir)
        monkeypatch.setattr("booster.utils.paths.UPLOADS_DIR", uploads_dir)
        monkeypatch.setattr("booster.utils.paths.EXPORTS_DIR", exports_dir)
        yield uploads_dir, exports_dir


@pytest.fixture(autouse=True)
def reset_in_memory_state():
    """Clear the process-wide export job table and session locks."""
    yield
    export_jobs.clear()
    session_locks._locks.clear()


@pytest.fixture
def client(temp_db, data_dirs):
    """Create a FastAPI test client with temp database and data directories.

    Overrides the database dependency to use the temporary test database,
    and stubs out the startup purge enqueue so no Huey queue is touched.

    Yields:
        tuple: (test_client, SessionFactory)
    """
    db_path, engine, SessionFactory = temp_db

    def get_test_session():
        session = SessionFactory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db_session] = get_test_session

    with mock.patch("booster.huey_app.enqueue_session_purge"):
        with TestClient(app) as client:
            yield client, SessionFactory

    app.dependency_overrides.clear()


@pytest.fixture
def sample_audio_file():
    """Create a sample WAV audio file for testing.

    Creates a minimal valid WAV file (1 second of silence, mono, 22050 Hz).
    The file is automatically cleaned up after the test completes.

    Yields:
        Path: Path to the temporary WAV file.
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        yield write_test_wav(Path(tmpdir) / "sample.wav")
