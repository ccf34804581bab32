"""Booster Transfer - Upload session service.

Chunked, resumable uploads for large files:
- initialize: declare filename + size, get a session id and chunk count
- upload_chunk: store one chunk after verifying its SHA256
- status: received/missing chunks and progress
- finalize: re-verify and concatenate chunks in index order (atomic publish)
- abort: discard all partial data

Session metadata is persisted through SQLAlchemy (upload_sessions,
upload_chunks); chunk bytes live on disk under data/uploads/{session_id}/.

Concurrency: all mutations of one session are serialized in-process by a
per-session lock. Across processes the (session_id, chunk_index) unique
constraint rejects the losing insert, and finalize re-hashes every chunk
file before assembly.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from booster.config import (
    DEFAULT_CHUNK_SIZE_BYTES,
    MAX_CHUNK_SIZE_BYTES,
    MAX_CHUNKS_PER_SESSION,
    MAX_UPLOAD_SIZE_BYTES,
    UPLOAD_SESSION_TTL_SECONDS,
)
from booster.db import find_expired_upload_sessions, get_upload_session, list_upload_sessions
from booster.models import UploadChunk, UploadSession, UploadSessionStatus, utc_now
from booster.utils.atomic_io import atomic_concat_files, atomic_write_bytes, remove_quietly
from booster.utils.audio_meta import extract_audio_metadata
from booster.utils.failpoints import maybe_fail
from booster.utils.hashing import normalize_hex_digest, sha256_bytes, sha256_file
from booster.utils.paths import upload_chunk_path, upload_final_path, upload_session_dir
from services.transfer_api.errors import (
    ChecksumMismatchError,
    ChunkOutOfRangeError,
    ChunkSizeMismatchError,
    FileHashMismatchError,
    InvalidRequestError,
    MissingChunksError,
    SessionClosedError,
    SessionNotFoundError,
    StorageFailedError,
    TransferError,
    UploadTooLargeError,
)

logger = logging.getLogger(__name__)


# --- Per-session locking ---


class SessionLocks:
    """Registry of per-session locks.

    Chunk writes, finalize and abort on the same session run one at a time;
    different sessions never contend. An entry lives only while some caller
    holds or waits on it, so unknown or abandoned session ids leave nothing
    behind.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, tuple[threading.Lock, int]] = {}

    def _acquire_entry(self, session_id: str) -> threading.Lock:
        with self._guard:
            lock, users = self._locks.get(session_id, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[session_id] = (lock, users + 1)
            return lock

    def _release_entry(self, session_id: str) -> None:
        with self._guard:
            lock, users = self._locks[session_id]
            if users <= 1:
                del self._locks[session_id]
            else:
                self._locks[session_id] = (lock, users - 1)

    @contextmanager
    def hold(self, session_id: str) -> Iterator[None]:
        lock = self._acquire_entry(session_id)
        try:
            with lock:
                yield
        finally:
            self._release_entry(session_id)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


session_locks = SessionLocks()


# --- Result Types ---


@dataclass
class InitResult:
    """Result of initializing an upload session."""

    session_id: str
    status: str
    chunk_size: int
    total_chunks: int
    expires_at: datetime


@dataclass
class ChunkResult:
    """Result of storing one chunk."""

    session_id: str
    chunk_index: int
    duplicate: bool
    received_chunks: int
    total_chunks: int
    status: str


@dataclass
class SessionProgress:
    """Snapshot of an upload session's progress."""

    session_id: str
    filename: str
    status: str
    total_size: int
    chunk_size: int
    total_chunks: int
    received_chunks: int
    missing_chunks: list[int] = field(default_factory=list)
    bytes_received: int = 0
    progress: int = 0
    error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class FinalizedUpload:
    """Descriptor of an assembled upload."""

    session_id: str
    status: str
    filename: str
    path: str
    size: int
    sha256: str
    format_guess: str | None = None
    duration_sec: float | None = None
    sample_rate: int | None = None
    channels: int | None = None
    bit_depth: int | None = None
    completed_at: datetime | None = None


# --- Upload Session Service ---


def generate_session_id() -> str:
    """Generate a unique session ID (uuid4 hex, 32 chars)."""
    return uuid.uuid4().hex


def count_chunks(total_size: int, chunk_size: int) -> int:
    """Number of chunks needed to carry `total_size` bytes."""
    return -(-total_size // chunk_size)


def initialize_session(
    session: Session,
    user_id: str,
    filename: str,
    total_size: int,
    chunk_size: int | None = None,
    now: datetime | None = None,
) -> InitResult:
    """Create a new upload session.

    Oversized declarations are rejected here, before any chunk is accepted.

    Args:
        session: Active database session.
        user_id: Owner of the upload.
        filename: Original filename of the complete file.
        total_size: Declared size of the complete file in bytes.
        chunk_size: Chunk size in bytes (defaults to DEFAULT_CHUNK_SIZE_BYTES).
        now: Creation time override (for expiry calculations in tests).

    Returns:
        InitResult with the session id and expected chunk count.

    Raises:
        InvalidRequestError: Empty filename, non-positive size, bad chunk size.
        UploadTooLargeError: total_size exceeds MAX_UPLOAD_SIZE_BYTES.
        StorageFailedError: If the session row cannot be persisted.
    """
    filename = filename.strip()
    if not filename:
        raise InvalidRequestError("filename must not be empty")
    if total_size <= 0:
        raise InvalidRequestError("totalSize must be greater than zero")
    if total_size > MAX_UPLOAD_SIZE_BYTES:
        raise UploadTooLargeError(total_size, MAX_UPLOAD_SIZE_BYTES)

    if chunk_size is None:
        chunk_size = DEFAULT_CHUNK_SIZE_BYTES
    if chunk_size < 1 or chunk_size > MAX_CHUNK_SIZE_BYTES:
        raise InvalidRequestError(f"chunkSize must be between 1 and {MAX_CHUNK_SIZE_BYTES} bytes")

    total_chunks = count_chunks(total_size, chunk_size)
    if total_chunks > MAX_CHUNKS_PER_SESSION:
        raise InvalidRequestError(
            f"chunkSize {chunk_size} yields {total_chunks} chunks "
            f"(maximum {MAX_CHUNKS_PER_SESSION})"
        )

    now = now or utc_now()
    row = UploadSession(
        session_id=generate_session_id(),
        user_id=user_id,
        filename=filename,
        total_size=total_size,
        chunk_size=chunk_size,
        total_chunks=total_chunks,
        status=UploadSessionStatus.INITIALIZING,
        created_at=now,
        updated_at=now,
        expires_at=now + timedelta(seconds=UPLOAD_SESSION_TTL_SECONDS),
    )
    session.add(row)
    _commit(session, "create upload session")

    logger.info(
        "Upload session created: session_id=%s user_id=%s size=%d chunks=%d",
        row.session_id, user_id, total_size, total_chunks,
    )
    return InitResult(
        session_id=row.session_id,
        status=row.status,
        chunk_size=chunk_size,
        total_chunks=total_chunks,
        expires_at=row.expires_at,
    )


def upload_chunk(
    session: Session,
    session_id: str,
    chunk_index: int,
    data: bytes,
    chunk_hash: str,
    user_id: str | None = None,
) -> ChunkResult:
    """Verify and store one chunk.

    A rejected chunk leaves the session untouched. Uploading the same index
    again with the same hash is a no-op; a different valid hash replaces
    the stored chunk.

    Args:
        session: Active database session.
        session_id: Upload session identifier.
        chunk_index: Zero-based chunk index.
        data: Chunk bytes.
        chunk_hash: SHA256 hex digest of `data` computed by the client.
        user_id: If given, the session must be owned by this user.

    Returns:
        ChunkResult with the updated received count.

    Raises:
        InvalidRequestError: chunk_hash is not a SHA256 hex digest.
        SessionNotFoundError: Unknown session.
        SessionClosedError: Session is finalizing, complete or aborted.
        ChunkOutOfRangeError: chunk_index outside [0, total_chunks).
        ChunkSizeMismatchError: Chunk length differs from what the index requires.
        ChecksumMismatchError: data does not hash to chunk_hash.
        StorageFailedError: Chunk file or row could not be written.
    """
    expected_hash = normalize_hex_digest(chunk_hash)
    if expected_hash is None:
        raise InvalidRequestError("chunkHash must be a SHA256 hex digest")

    with session_locks.hold(session_id):
        row = _get_owned_session(session, session_id, user_id)
        if row.status not in UploadSessionStatus.OPEN:
            raise SessionClosedError(session_id, row.status)

        if chunk_index < 0 or chunk_index >= row.total_chunks:
            raise ChunkOutOfRangeError(chunk_index, row.total_chunks)

        expected_size = row.expected_chunk_size(chunk_index)
        if len(data) != expected_size:
            raise ChunkSizeMismatchError(chunk_index, expected_size, len(data))

        actual_hash = sha256_bytes(data)
        if actual_hash != expected_hash:
            logger.warning(
                "Chunk checksum mismatch: session_id=%s chunk=%d", session_id, chunk_index
            )
            raise ChecksumMismatchError(chunk_index, expected_hash, actual_hash)

        chunk_path = upload_chunk_path(session_id, chunk_index)
        existing = _find_chunk(row, chunk_index)

        if existing is not None and existing.chunk_hash == actual_hash and chunk_path.exists():
            return ChunkResult(
                session_id=session_id,
                chunk_index=chunk_index,
                duplicate=True,
                received_chunks=len(row.chunks),
                total_chunks=row.total_chunks,
                status=row.status,
            )

        try:
            atomic_write_bytes(chunk_path, data)
        except OSError as e:
            raise StorageFailedError(f"could not write chunk {chunk_index}: {e}") from e

        if existing is not None:
            logger.info(
                "Replacing chunk with new content: session_id=%s chunk=%d",
                session_id, chunk_index,
            )
            existing.chunk_hash = actual_hash
        else:
            row.chunks.append(
                UploadChunk(
                    chunk_index=chunk_index,
                    chunk_hash=actual_hash,
                    offset=chunk_index * row.chunk_size,
                    size=len(data),
                )
            )

        if row.status == UploadSessionStatus.INITIALIZING:
            row.status = UploadSessionStatus.UPLOADING
        row.updated_at = utc_now()

        try:
            session.commit()
        except IntegrityError as e:
            # Another process inserted this index first
            session.rollback()
            raise StorageFailedError(
                f"concurrent write to chunk {chunk_index}, retry the chunk"
            ) from e
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageFailedError(f"could not record chunk {chunk_index}: {e}") from e

        logger.debug(
            "Chunk stored: session_id=%s chunk=%d (%d/%d)",
            session_id, chunk_index, len(row.chunks), row.total_chunks,
        )
        return ChunkResult(
            session_id=session_id,
            chunk_index=chunk_index,
            duplicate=False,
            received_chunks=len(row.chunks),
            total_chunks=row.total_chunks,
            status=row.status,
        )


def get_session_status(
    session: Session,
    session_id: str,
    user_id: str | None = None,
) -> SessionProgress:
    """Report received/total chunk counts and overall state.

    Raises:
        SessionNotFoundError: Unknown session.
    """
    return _progress(_get_owned_session(session, session_id, user_id))


def list_user_sessions(
    session: Session,
    user_id: str,
    status: str | None = None,
) -> list[SessionProgress]:
    """List a user's sessions, newest first, optionally filtered by status."""
    return [_progress(row) for row in list_upload_sessions(session, user_id, status)]


def finalize_upload(
    session: Session,
    session_id: str,
    expected_file_hash: str | None = None,
    user_id: str | None = None,
) -> FinalizedUpload:
    """Assemble all chunks, in index order, into the final file.

    Every chunk index in [0, total_chunks) must be present, and each chunk
    file must still hash to the digest accepted at upload time. Finalizing
    an already complete session returns its descriptor again.

    Args:
        session: Active database session.
        session_id: Upload session identifier.
        expected_file_hash: Optional SHA256 of the complete file.
        user_id: If given, the session must be owned by this user.

    Returns:
        FinalizedUpload descriptor of the assembled file.

    Raises:
        InvalidRequestError: expected_file_hash is not a SHA256 hex digest.
        SessionNotFoundError: Unknown session.
        SessionClosedError: Session is aborted.
        MissingChunksError: Some chunks were never received (status unchanged).
        ChecksumMismatchError: A stored chunk no longer matches its hash; the
            chunk is dropped so that the client can upload it again.
        FileHashMismatchError: Assembled file does not match expected_file_hash.
        StorageFailedError: Assembly failed on disk.
    """
    expected_digest = None
    if expected_file_hash is not None:
        expected_digest = normalize_hex_digest(expected_file_hash)
        if expected_digest is None:
            raise InvalidRequestError("fileHash must be a SHA256 hex digest")

    with session_locks.hold(session_id):
        row = _get_owned_session(session, session_id, user_id)
        if row.status == UploadSessionStatus.COMPLETE:
            return _describe(row)
        if row.status == UploadSessionStatus.FINALIZING:
            # Only a crashed finalize leaves this state behind the lock
            logger.warning("Resuming interrupted finalize: session_id=%s", session_id)
        elif row.status not in UploadSessionStatus.OPEN:
            raise SessionClosedError(session_id, row.status)

        missing = _missing_indices(row)
        if missing:
            raise MissingChunksError(missing)

        row.status = UploadSessionStatus.FINALIZING
        _commit(session, "mark session finalizing")

        final_path = upload_final_path(session_id, row.filename)
        try:
            chunk_paths = _verify_stored_chunks(session, row)
            total_bytes, digest = atomic_concat_files(chunk_paths, final_path)

            if total_bytes != row.total_size:
                remove_quietly(final_path)
                raise StorageFailedError(
                    f"assembled {total_bytes} bytes, expected {row.total_size}"
                )
            if expected_digest is not None and digest != expected_digest:
                remove_quietly(final_path)
                raise FileHashMismatchError(expected_digest, digest)
        except TransferError as e:
            _reopen_after_failure(session, row, e.message)
            raise
        except OSError as e:
            _reopen_after_failure(session, row, f"assembly failed: {e}")
            raise StorageFailedError(f"assembly failed: {e}") from e

        maybe_fail("FINALIZE_BEFORE_COMMIT")

        row.status = UploadSessionStatus.COMPLETE
        row.file_hash = digest
        row.final_path = str(final_path)
        row.error = None
        row.completed_at = utc_now()
        _commit(session, "mark session complete")

        # Chunk rows stay as the session's record; chunk bytes are no longer needed
        remove_quietly(upload_session_dir(session_id) / "chunks")

    logger.info(
        "Upload finalized: session_id=%s size=%d sha256=%s", session_id, total_bytes, digest
    )
    return _describe(row)


def abort_upload(
    session: Session,
    session_id: str,
    user_id: str | None = None,
) -> SessionProgress:
    """Discard all partial chunk data for a session.

    Aborting an aborted session is a no-op.

    Raises:
        SessionNotFoundError: Unknown session.
        SessionClosedError: Session already completed.
    """
    with session_locks.hold(session_id):
        row = _get_owned_session(session, session_id, user_id)
        if row.status == UploadSessionStatus.ABORTED:
            return _progress(row)
        if row.status == UploadSessionStatus.COMPLETE:
            raise SessionClosedError(session_id, row.status)

        remove_quietly(upload_session_dir(session_id))
        row.chunks.clear()
        row.status = UploadSessionStatus.ABORTED
        row.error = None
        _commit(session, "abort upload session")

    logger.info("Upload aborted: session_id=%s", session_id)
    return _progress(row)


def purge_expired_sessions(session: Session, now: datetime | None = None) -> list[str]:
    """Delete incomplete sessions past their expiry, with their chunk data.

    Args:
        session: Active database session.
        now: Reference time (defaults to current UTC time).

    Returns:
        Session ids that were purged.
    """
    purged: list[str] = []
    for row in find_expired_upload_sessions(session, now):
        remove_quietly(upload_session_dir(row.session_id))
        session.delete(row)
        purged.append(row.session_id)

    if purged:
        _commit(session, "purge expired sessions")
        logger.info("Purged %d expired upload session(s)", len(purged))
    return purged


# --- Internal Helpers ---


def _commit(session: Session, what: str) -> None:
    try:
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        raise StorageFailedError(f"could not {what}: {e}") from e


def _get_owned_session(session: Session, session_id: str, user_id: str | None) -> UploadSession:
    row = get_upload_session(session, session_id, user_id)
    if row is None:
        raise SessionNotFoundError(session_id)
    return row


def _find_chunk(row: UploadSession, chunk_index: int) -> UploadChunk | None:
    for chunk in row.chunks:
        if chunk.chunk_index == chunk_index:
            return chunk
    return None


def _missing_indices(row: UploadSession) -> list[int]:
    received = {chunk.chunk_index for chunk in row.chunks}
    return [i for i in range(row.total_chunks) if i not in received]


def _verify_stored_chunks(session: Session, row: UploadSession) -> list[Path]:
    """Re-hash every chunk file against its recorded digest.

    Returns:
        Chunk paths in index order.

    Raises:
        ChecksumMismatchError: A chunk file is missing or altered. The chunk
            row is removed so the index reports as missing again.
    """
    paths = []
    for chunk in sorted(row.chunks, key=lambda c: c.chunk_index):
        path = upload_chunk_path(row.session_id, chunk.chunk_index)
        try:
            actual = sha256_file(path)
        except FileNotFoundError:
            actual = "missing"
        if actual != chunk.chunk_hash:
            logger.warning(
                "Stored chunk failed verification: session_id=%s chunk=%d",
                row.session_id, chunk.chunk_index,
            )
            expected = chunk.chunk_hash
            row.chunks.remove(chunk)
            remove_quietly(path)
            raise ChecksumMismatchError(chunk.chunk_index, expected, actual)
        paths.append(path)
    return paths


def _reopen_after_failure(session: Session, row: UploadSession, message: str) -> None:
    row.status = UploadSessionStatus.UPLOADING
    row.error = message
    _commit(session, "reopen session after failed finalize")


def _progress(row: UploadSession) -> SessionProgress:
    received = len(row.chunks)
    return SessionProgress(
        session_id=row.session_id,
        filename=row.filename,
        status=row.status,
        total_size=row.total_size,
        chunk_size=row.chunk_size,
        total_chunks=row.total_chunks,
        received_chunks=received,
        missing_chunks=_missing_indices(row),
        bytes_received=sum(chunk.size for chunk in row.chunks),
        progress=received * 100 // row.total_chunks if row.total_chunks else 0,
        error=row.error,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _describe(row: UploadSession) -> FinalizedUpload:
    meta = extract_audio_metadata(row.final_path)
    return FinalizedUpload(
        session_id=row.session_id,
        status=row.status,
        filename=row.filename,
        path=row.final_path,
        size=row.total_size,
        sha256=row.file_hash,
        format_guess=meta.format_guess,
        duration_sec=meta.duration_sec,
        sample_rate=meta.sample_rate,
        channels=meta.channels,
        bit_depth=meta.bit_depth,
        completed_at=row.completed_at,
    )
