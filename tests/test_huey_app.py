"""Tests for the Huey maintenance tasks in booster.huey_app."""

import hashlib
from datetime import timedelta
from unittest import mock

from booster import huey_app
from booster.db import get_upload_session
from booster.models import utc_now
from booster.utils.paths import upload_session_dir
from services.transfer_api.uploads import initialize_session, upload_chunk


class TestPurgeTask:
    """Tests for purge_expired_sessions_task."""

    def test_purges_expired_sessions(self, temp_db, data_dirs):
        db_path, _, SessionFactory = temp_db
        session = SessionFactory()
        try:
            stale = initialize_session(
                session, "u1", "old.wav", 10, now=utc_now() - timedelta(days=2)
            ).session_id
            data = b"0123456789"
            upload_chunk(session, stale, 0, data, hashlib.sha256(data).hexdigest())
            fresh = initialize_session(session, "u1", "new.wav", 10).session_id
        finally:
            session.close()

        result = huey_app.purge_expired_sessions_task.call_local(db_path=str(db_path))

        assert result == {"purged": [stale]}
        assert not upload_session_dir(stale).exists()
        session = SessionFactory()
        try:
            assert get_upload_session(session, stale) is None
            assert get_upload_session(session, fresh) is not None
        finally:
            session.close()

    def test_nothing_to_purge(self, temp_db, data_dirs):
        db_path, _, _ = temp_db
        result = huey_app.purge_expired_sessions_task.call_local(db_path=str(db_path))
        assert result == {"purged": []}

    def test_periodic_task_delegates(self):
        with mock.patch.object(
            huey_app.purge_expired_sessions_task, "call_local", return_value={"purged": []}
        ) as call_local:
            assert huey_app.periodic_session_purge.call_local() == {"purged": []}
        call_local.assert_called_once_with()


class TestEnqueue:
    """Tests for enqueue_session_purge."""

    def test_enqueue_immediately(self):
        with mock.patch.object(huey_app.huey, "enqueue") as enqueue:
            huey_app.enqueue_session_purge()

        enqueue.assert_called_once()
        task = enqueue.call_args.args[0]
        assert isinstance(task, huey_app.purge_expired_sessions_task.task_class)
        assert task.eta is None

    def test_enqueue_with_delay(self):
        with mock.patch.object(huey_app.huey, "enqueue") as enqueue:
            huey_app.enqueue_session_purge(delay_seconds=60)

        task = enqueue.call_args.args[0]
        assert task.eta is not None
