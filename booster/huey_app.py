"""Booster Transfer - Huey task queue configuration.

Huey setup with SQLite backend for background maintenance. The consumer
periodically purges expired upload sessions (rows and chunk files).

How to run:
1. Start the transfer API:
   uvicorn services.transfer_api.main:app --reload

2. Start the Huey consumer (runs queued and periodic tasks):
   huey_consumer.py booster.huey_app.huey

Export jobs are not queued here: they live in the API process's memory and
are converted by FastAPI background tasks.
"""

from __future__ import annotations

import logging
from pathlib import Path

from huey import SqliteHuey, crontab

from booster.config import HUEY_DB_PATH, QUEUE_DIR, SESSION_PURGE_INTERVAL_MINUTES

logger = logging.getLogger(__name__)


def _ensure_queue_dir() -> None:
    """Ensure the queue directory exists."""
    Path(QUEUE_DIR).mkdir(parents=True, exist_ok=True)


_ensure_queue_dir()

huey = SqliteHuey(
    name="booster_transfer",
    filename=str(HUEY_DB_PATH),
    immediate=False,
)


@huey.task()
def purge_expired_sessions_task(db_path: str | None = None) -> dict:
    """Delete expired, incomplete upload sessions and their chunk files.

    Args:
        db_path: Database path override (defaults to config.DB_PATH).

    Returns:
        Dict with the purged session ids (for logging/debugging).
    """
    # Import here to avoid circular imports
    from booster.db import init_db
    from services.transfer_api.uploads import purge_expired_sessions

    engine, SessionFactory = init_db(db_path)
    session = SessionFactory()
    try:
        purged = purge_expired_sessions(session)
    finally:
        session.close()
        engine.dispose()

    logger.info("Session purge task completed: purged=%d", len(purged))
    return {"purged": purged}


@huey.periodic_task(crontab(minute=f"*/{SESSION_PURGE_INTERVAL_MINUTES}"))
def periodic_session_purge() -> dict:
    """Periodic entry point for the session purge."""
    return purge_expired_sessions_task.call_local()


def enqueue_session_purge(delay_seconds: int = 0) -> None:
    """Enqueue a one-off session purge.

    Non-blocking: the task is persisted in SQLite and runs when a consumer
    picks it up.
    """
    logger.info("Enqueueing session purge (delay=%ds)", delay_seconds)
    if delay_seconds > 0:
        purge_expired_sessions_task.schedule(delay=delay_seconds)
    else:
        purge_expired_sessions_task()
