"""Booster Transfer - Transfer API error taxonomy.

Every failure surfaced to a client carries one of the codes below. The HTTP
layer maps codes to status codes; the services only raise.
"""

from __future__ import annotations

from collections.abc import Iterable
from enum import StrEnum


class TransferErrorCode(StrEnum):
    """Error codes for upload sessions and export jobs."""

    INVALID_REQUEST = "INVALID_REQUEST"
    UPLOAD_TOO_LARGE = "UPLOAD_TOO_LARGE"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    SESSION_CLOSED = "SESSION_CLOSED"
    CHUNK_OUT_OF_RANGE = "CHUNK_OUT_OF_RANGE"
    CHUNK_SIZE_MISMATCH = "CHUNK_SIZE_MISMATCH"
    CHECKSUM_MISMATCH = "CHECKSUM_MISMATCH"
    MISSING_CHUNKS = "MISSING_CHUNKS"
    FILE_HASH_MISMATCH = "FILE_HASH_MISMATCH"
    STORAGE_FAILED = "STORAGE_FAILED"
    JOB_NOT_FOUND = "JOB_NOT_FOUND"
    INVALID_JOB_STATE = "INVALID_JOB_STATE"
    UNSUPPORTED_MEDIA = "UNSUPPORTED_MEDIA"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class TransferError(Exception):
    """Base exception for transfer errors."""

    def __init__(self, error_code: str, message: str):
        self.error_code = error_code
        self.message = message
        super().__init__(f"{error_code}: {message}")


class InvalidRequestError(TransferError):
    """Request is well-formed JSON but semantically invalid."""

    def __init__(self, reason: str):
        super().__init__(TransferErrorCode.INVALID_REQUEST, reason)


class UploadTooLargeError(TransferError):
    """Declared upload exceeds the configured maximum."""

    def __init__(self, total_size: int, limit: int):
        super().__init__(
            TransferErrorCode.UPLOAD_TOO_LARGE,
            f"Declared size {total_size} exceeds the maximum of {limit} bytes",
        )


class SessionNotFoundError(TransferError):
    """Unknown session id (or session owned by someone else)."""

    def __init__(self, session_id: str):
        super().__init__(
            TransferErrorCode.SESSION_NOT_FOUND, f"Upload session not found: {session_id}"
        )


class SessionClosedError(TransferError):
    """Session no longer accepts the requested operation."""

    def __init__(self, session_id: str, status: str):
        super().__init__(
            TransferErrorCode.SESSION_CLOSED,
            f"Upload session {session_id} is {status}",
        )


class ChunkOutOfRangeError(TransferError):
    """Chunk index outside [0, total_chunks)."""

    def __init__(self, chunk_index: int, total_chunks: int):
        super().__init__(
            TransferErrorCode.CHUNK_OUT_OF_RANGE,
            f"Chunk index {chunk_index} outside [0, {total_chunks})",
        )


class ChunkSizeMismatchError(TransferError):
    """Chunk length differs from the length its index requires."""

    def __init__(self, chunk_index: int, expected: int, actual: int):
        super().__init__(
            TransferErrorCode.CHUNK_SIZE_MISMATCH,
            f"Chunk {chunk_index} must be {expected} bytes, got {actual}",
        )


class ChecksumMismatchError(TransferError):
    """Received bytes do not hash to the supplied digest."""

    def __init__(self, chunk_index: int, expected: str, actual: str):
        self.chunk_index = chunk_index
        super().__init__(
            TransferErrorCode.CHECKSUM_MISMATCH,
            f"Chunk {chunk_index} checksum mismatch: expected {expected}, got {actual}",
        )


class MissingChunksError(TransferError):
    """Finalize requested before every chunk arrived."""

    def __init__(self, missing: Iterable[int]):
        self.missing = list(missing)
        preview = ", ".join(str(i) for i in self.missing[:20])
        if len(self.missing) > 20:
            preview += ", ..."
        super().__init__(
            TransferErrorCode.MISSING_CHUNKS,
            f"{len(self.missing)} chunk(s) missing: {preview}",
        )


class FileHashMismatchError(TransferError):
    """Assembled file does not hash to the digest supplied at finalize."""

    def __init__(self, expected: str, actual: str):
        super().__init__(
            TransferErrorCode.FILE_HASH_MISMATCH,
            f"Assembled file checksum mismatch: expected {expected}, got {actual}",
        )


class StorageFailedError(TransferError):
    """Filesystem or database write failed."""

    def __init__(self, reason: str):
        super().__init__(TransferErrorCode.STORAGE_FAILED, f"Storage failed: {reason}")


class JobNotFoundError(TransferError):
    """Unknown export job, or a job with no downloadable artifact."""

    def __init__(self, job_id: str, reason: str = "not found"):
        super().__init__(TransferErrorCode.JOB_NOT_FOUND, f"Export job {job_id} {reason}")


class InvalidJobStateError(TransferError):
    """Operation not valid in the export job's current state."""

    def __init__(self, job_id: str, status: str, operation: str):
        super().__init__(
            TransferErrorCode.INVALID_JOB_STATE,
            f"Cannot {operation} export job {job_id} in state {status}",
        )


class UnsupportedMediaError(TransferError):
    """Uploaded file is not a recognised audio file."""

    def __init__(self, filename: str):
        super().__init__(
            TransferErrorCode.UNSUPPORTED_MEDIA, f"Unsupported audio file: {filename}"
        )


# HTTP status per error code; anything unlisted is a 500
ERROR_STATUS_CODES: dict[str, int] = {
    TransferErrorCode.INVALID_REQUEST: 400,
    TransferErrorCode.CHUNK_OUT_OF_RANGE: 400,
    TransferErrorCode.CHUNK_SIZE_MISMATCH: 400,
    TransferErrorCode.CHECKSUM_MISMATCH: 400,
    TransferErrorCode.MISSING_CHUNKS: 400,
    TransferErrorCode.FILE_HASH_MISMATCH: 400,
    TransferErrorCode.SESSION_NOT_FOUND: 404,
    TransferErrorCode.JOB_NOT_FOUND: 404,
    TransferErrorCode.SESSION_CLOSED: 409,
    TransferErrorCode.INVALID_JOB_STATE: 409,
    TransferErrorCode.UPLOAD_TOO_LARGE: 413,
    TransferErrorCode.UNSUPPORTED_MEDIA: 415,
}


def error_code_to_status(error_code: str) -> int:
    """Map an error code to its HTTP status code."""
    return ERROR_STATUS_CODES.get(error_code, 500)
