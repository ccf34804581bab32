"""Booster Transfer - Database engine and session management.

SQLAlchemy sync engine/session factory for SQLite, plus the small query
primitives the upload session service builds on.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Engine, create_engine, event, select
from sqlalchemy.orm import Session, sessionmaker

from booster.config import DB_PATH
from booster.models import Base, UploadSession, UploadSessionStatus, utc_now


def get_database_url(db_path: str | None = None) -> str:
    """Get SQLite database URL.

    Args:
        db_path: Optional path override. Defaults to config.DB_PATH.

    Returns:
        SQLite connection URL string.
    """
    path = db_path if db_path is not None else DB_PATH
    return f"sqlite:///{path}"


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(db_path: str | None = None, echo: bool = False) -> Engine:
    """Create SQLAlchemy engine.

    Args:
        db_path: Optional path override for the database file.
        echo: If True, log all SQL statements.

    Returns:
        SQLAlchemy Engine instance.
    """
    url = get_database_url(db_path)
    engine = create_engine(
        url,
        echo=echo,
        # FastAPI runs sync endpoints in a threadpool; each request gets its
        # own session, sessions are never shared across threads.
        connect_args={"check_same_thread": False},
    )
    event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    """Create a session factory bound to the given engine.

    Args:
        engine: SQLAlchemy Engine instance.

    Returns:
        Configured sessionmaker.
    """
    # - autoflush=False: explicit flush control
    # - expire_on_commit=False: rows stay readable after commit for responses
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(db_path: str | None = None, echo: bool = False) -> tuple[Engine, sessionmaker]:
    """Initialize the database: create engine, session factory, and all tables.

    This is idempotent - safe to call multiple times.

    Args:
        db_path: Optional path override for the database file.
        echo: If True, log all SQL statements.

    Returns:
        Tuple of (engine, SessionFactory).
    """
    engine = create_db_engine(db_path, echo=echo)
    SessionFactory = create_session_factory(engine)

    Base.metadata.create_all(engine)

    return engine, SessionFactory


# --- Upload session queries ---


def get_upload_session(
    session: Session,
    session_id: str,
    user_id: str | None = None,
) -> UploadSession | None:
    """Fetch an upload session by id, optionally scoped to its owner.

    Args:
        session: Active database session.
        session_id: Upload session identifier.
        user_id: If given, sessions owned by another user are not returned.

    Returns:
        UploadSession if found (and owned), None otherwise.
    """
    stmt = select(UploadSession).where(UploadSession.session_id == session_id)
    if user_id is not None:
        stmt = stmt.where(UploadSession.user_id == user_id)
    return session.execute(stmt).scalar_one_or_none()


def list_upload_sessions(
    session: Session,
    user_id: str,
    status: str | None = None,
) -> list[UploadSession]:
    """List a user's upload sessions, newest first.

    Args:
        session: Active database session.
        user_id: Owner of the sessions.
        status: Optional status filter.

    Returns:
        List of UploadSession rows.
    """
    stmt = select(UploadSession).where(UploadSession.user_id == user_id)
    if status is not None:
        stmt = stmt.where(UploadSession.status == status)
    stmt = stmt.order_by(UploadSession.created_at.desc(), UploadSession.id.desc())
    return list(session.execute(stmt).scalars().all())


def find_expired_upload_sessions(
    session: Session,
    now: datetime | None = None,
) -> list[UploadSession]:
    """Find sessions past their expiry that never completed.

    Args:
        session: Active database session.
        now: Reference time (defaults to current UTC time).

    Returns:
        List of expired, non-complete UploadSession rows.
    """
    now = now or utc_now()
    stmt = select(UploadSession).where(
        UploadSession.expires_at < now,
        UploadSession.status != UploadSessionStatus.COMPLETE,
    )
    return list(session.execute(stmt).scalars().all())
