"""Booster Transfer - SQLAlchemy ORM models.

Database tables:
1. upload_sessions
2. upload_chunks

Export jobs are deliberately not persisted; they live in the in-memory
job table of the transfer API process.
"""

from datetime import UTC, datetime

from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


class UploadSessionStatus:
    """Upload session lifecycle states."""

    INITIALIZING = "initializing"
    UPLOADING = "uploading"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    ABORTED = "aborted"

    # States in which chunks may still be accepted
    OPEN = frozenset({INITIALIZING, UPLOADING})
    TERMINAL = frozenset({COMPLETE, ABORTED})


class UploadSession(Base):
    """A large file being uploaded in independently hashed chunks."""

    __tablename__ = "upload_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    session_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    filename: Mapped[str] = mapped_column(String(512), nullable=False)
    total_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    chunk_size: Mapped[int] = mapped_column(Integer, nullable=False)
    total_chunks: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=UploadSessionStatus.INITIALIZING, index=True
    )

    # Set on successful finalize
    file_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    final_path: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Last assembly error, cleared on success
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Incomplete sessions past this point are eligible for purge
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    chunks: Mapped[list["UploadChunk"]] = relationship(
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="UploadChunk.chunk_index",
    )

    __table_args__ = (
        Index("ix_upload_sessions_user_status", "user_id", "status"),
        Index("ix_upload_sessions_expires_at", "expires_at"),
    )

    def expected_chunk_size(self, chunk_index: int) -> int:
        """Byte length the chunk at `chunk_index` must have.

        Every chunk is `chunk_size` bytes except the last, which carries
        the remainder of `total_size`.
        """
        if chunk_index == self.total_chunks - 1:
            return self.total_size - chunk_index * self.chunk_size
        return self.chunk_size


class UploadChunk(Base):
    """A received, hash-verified chunk of an upload session."""

    __tablename__ = "upload_chunks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    session_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("upload_sessions.session_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)

    # SHA256 hex digest supplied by the client and verified on receipt
    chunk_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    # Byte offset within the assembled file
    offset: Mapped[int] = mapped_column(BigInteger, nullable=False)
    size: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    session: Mapped[UploadSession] = relationship(back_populates="chunks")

    # One row per index: re-uploads update in place, never duplicate
    __table_args__ = (
        UniqueConstraint("session_id", "chunk_index", name="uq_upload_chunk_index"),
    )
