"""Tests for booster.db and the upload session models."""

from datetime import timedelta

import pytest
from sqlalchemy import inspect, select
from sqlalchemy.exc import IntegrityError

from booster.db import (
    find_expired_upload_sessions,
    get_database_url,
    get_upload_session,
    init_db,
    list_upload_sessions,
)
from booster.models import UploadChunk, UploadSession, UploadSessionStatus, utc_now


def add_session(session, session_id, user_id="u1", status=UploadSessionStatus.UPLOADING, **kw):
    now = utc_now()
    row = UploadSession(
        session_id=session_id,
        user_id=user_id,
        filename="mix.wav",
        total_size=kw.pop("total_size", 250),
        chunk_size=kw.pop("chunk_size", 100),
        total_chunks=kw.pop("total_chunks", 3),
        status=status,
        created_at=kw.pop("created_at", now),
        updated_at=now,
        expires_at=kw.pop("expires_at", now + timedelta(hours=1)),
    )
    session.add(row)
    session.commit()
    return row


class TestInitDb:
    """Tests for database initialization."""

    def test_creates_database_file(self, temp_db):
        db_path, _, _ = temp_db
        assert db_path.exists()

    def test_creates_all_tables(self, temp_db):
        _, engine, _ = temp_db
        tables = inspect(engine).get_table_names()
        assert "upload_sessions" in tables
        assert "upload_chunks" in tables

    def test_idempotent(self, temp_db):
        db_path, _, _ = temp_db

        engine2, _ = init_db(db_path)

        assert "upload_sessions" in inspect(engine2).get_table_names()
        engine2.dispose()

    def test_database_url(self):
        assert get_database_url("/tmp/x.db") == "sqlite:////tmp/x.db"


class TestModels:
    """Constraints and helpers on the ORM models."""

    def test_expected_chunk_size(self):
        row = UploadSession(total_size=250, chunk_size=100, total_chunks=3)
        assert row.expected_chunk_size(0) == 100
        assert row.expected_chunk_size(1) == 100
        assert row.expected_chunk_size(2) == 50

    def test_expected_chunk_size_exact_multiple(self):
        row = UploadSession(total_size=300, chunk_size=100, total_chunks=3)
        assert row.expected_chunk_size(2) == 100

    def test_chunk_index_unique_per_session(self, db_session):
        add_session(db_session, "s1")
        db_session.add(
            UploadChunk(session_id="s1", chunk_index=0, chunk_hash="a" * 64, offset=0, size=100)
        )
        db_session.commit()

        db_session.add(
            UploadChunk(session_id="s1", chunk_index=0, chunk_hash="b" * 64, offset=0, size=100)
        )
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_deleting_session_deletes_chunks(self, db_session):
        row = add_session(db_session, "s1")
        row.chunks.append(UploadChunk(chunk_index=0, chunk_hash="a" * 64, offset=0, size=100))
        db_session.commit()

        db_session.delete(row)
        db_session.commit()

        assert db_session.execute(select(UploadChunk)).scalars().all() == []


class TestQueries:
    """Tests for the upload session query helpers."""

    def test_get_scoped_to_owner(self, db_session):
        add_session(db_session, "s1", user_id="alice")

        assert get_upload_session(db_session, "s1").user_id == "alice"
        assert get_upload_session(db_session, "s1", user_id="alice") is not None
        assert get_upload_session(db_session, "s1", user_id="bob") is None
        assert get_upload_session(db_session, "nope") is None

    def test_list_newest_first_with_filter(self, db_session):
        base = utc_now()
        add_session(db_session, "old", created_at=base - timedelta(minutes=5))
        add_session(db_session, "new", created_at=base)
        add_session(db_session, "done", status=UploadSessionStatus.COMPLETE, created_at=base)
        add_session(db_session, "other", user_id="bob")

        all_rows = list_upload_sessions(db_session, "u1")
        complete = list_upload_sessions(db_session, "u1", status=UploadSessionStatus.COMPLETE)

        assert [r.session_id for r in all_rows] == ["done", "new", "old"]
        assert [r.session_id for r in complete] == ["done"]

    def test_find_expired_skips_complete(self, db_session):
        past = utc_now() - timedelta(minutes=1)
        add_session(db_session, "stale", expires_at=past)
        add_session(db_session, "finished", status=UploadSessionStatus.COMPLETE, expires_at=past)
        add_session(db_session, "live")

        expired = find_expired_upload_sessions(db_session)

        assert [r.session_id for r in expired] == ["stale"]

    def test_find_expired_with_reference_time(self, db_session):
        add_session(db_session, "live")

        later = utc_now() + timedelta(hours=2)

        assert [r.session_id for r in find_expired_upload_sessions(db_session, later)] == ["live"]
