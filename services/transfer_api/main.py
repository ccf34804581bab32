"""Booster Transfer - Transfer API FastAPI application.

Chunked uploads of large audio files and project export jobs.

Upload sessions are persisted in SQLite; export jobs live in this process's
memory and are converted by FastAPI background tasks. Expired upload
sessions are purged by the Huey consumer (booster.huey_app).

Callers identify themselves with the X-User-Id header; sessions and jobs
are only visible to their owner.

Run with:
    uvicorn services.transfer_api.main:app --reload  # dev server only
"""

from __future__ import annotations

import logging
import mimetypes
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, Header, Query, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, JSONResponse
from sqlalchemy.orm import Session
from starlette.background import BackgroundTask

from booster import config
from booster.config import MAX_CHUNK_SIZE_BYTES
from booster.db import init_db
from booster.schemas import (
    AbortResponse,
    ChunkAckResponse,
    ErrorResponse,
    ExportCancelResponse,
    ExportCreateRequest,
    ExportCreateResponse,
    ExportStatusResponse,
    ExportUploadResponse,
    FinalizeRequest,
    FinalizeResponse,
    UploadInitRequest,
    UploadInitResponse,
    UploadSessionListResponse,
    UploadStatus,
    UploadStatusResponse,
)
from booster.utils.atomic_io import remove_quietly
from booster.utils.paths import export_job_dir
from services.transfer_api.errors import TransferError, TransferErrorCode, error_code_to_status
from services.transfer_api.exports import (
    ExportJob,
    ExportJobTable,
    cancel_export_job,
    create_export_job,
    download_job_artifact,
    export_jobs,
    get_job_status,
    process_export_job,
    upload_job_audio,
)
from services.transfer_api.uploads import (
    SessionProgress,
    abort_upload,
    finalize_upload,
    get_session_status,
    initialize_session,
    list_user_sessions,
    upload_chunk,
)

logger = logging.getLogger(__name__)

DEFAULT_USER_ID = "anonymous"

# --- Database Setup ---

# Module-level session factory (initialized on startup)
_session_factory = None


def get_session_factory():
    """Get the session factory.

    Raises:
        RuntimeError: If session factory not initialized (app lifespan not invoked).
    """
    if _session_factory is None:
        raise RuntimeError("Session factory not initialized. App lifespan not invoked?")
    return _session_factory


def get_db_session():
    """Dependency that provides a database session."""
    SessionFactory = get_session_factory()
    session = SessionFactory()
    try:
        yield session
    finally:
        session.close()


def get_export_jobs() -> ExportJobTable:
    """Dependency that provides the process-wide export job table."""
    return export_jobs


def get_user_id(x_user_id: Annotated[str | None, Header()] = None) -> str:
    """Dependency that resolves the caller from the X-User-Id header."""
    if x_user_id and x_user_id.strip():
        return x_user_id.strip()
    return DEFAULT_USER_ID


DbSession = Annotated[Session, Depends(get_db_session)]
Jobs = Annotated[ExportJobTable, Depends(get_export_jobs)]
UserId = Annotated[str, Depends(get_user_id)]


# --- Lifespan ---


def _cleanup_orphan_files_safe() -> None:
    """Clean up leftovers of a previous run (best-effort).

    - Temp files from interrupted atomic writes under data/uploads/
    - Export job directories: the job table is in memory, so any directory
      left under data/exports/ belongs to a job that no longer exists
    """
    from booster.utils.atomic_io import cleanup_orphan_temp_files

    try:
        removed = cleanup_orphan_temp_files(config.UPLOADS_DIR, recursive=True)
        if removed > 0:
            logger.info("Startup cleanup: removed %d orphan temp files", removed)

        if config.EXPORTS_DIR.exists():
            stale = [p for p in config.EXPORTS_DIR.iterdir() if p.is_dir()]
            for job_dir in stale:
                remove_quietly(job_dir)
            if stale:
                logger.info("Startup cleanup: removed %d stale export directories", len(stale))
    except Exception:
        # Best-effort: never crash startup
        logger.warning("Startup cleanup failed (non-fatal)", exc_info=True)


def _enqueue_session_purge_safe() -> None:
    """Queue a purge of sessions that expired while the API was down."""
    try:
        from booster.huey_app import enqueue_session_purge

        enqueue_session_purge()
    except Exception:
        logger.warning("Failed to enqueue session purge (non-fatal)", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler.

    Initializes the database (unless a factory was injected), cleans up
    orphan files and queues a session purge.
    """
    global _session_factory
    if _session_factory is None:
        _, _session_factory = init_db()

    _cleanup_orphan_files_safe()
    _enqueue_session_purge_safe()

    yield


# --- FastAPI App ---


app = FastAPI(
    title="Booster Transfer API",
    description="Chunked audio uploads and project export jobs.",
    version="0.1.0",
    lifespan=lifespan,
)


# --- Error Handling ---


def make_error_response(error_code: str, error_message: str) -> JSONResponse:
    """Create a JSON error response."""
    return JSONResponse(
        status_code=error_code_to_status(error_code),
        content=ErrorResponse(
            error_code=error_code,
            error_message=error_message,
        ).model_dump(),
    )


@app.exception_handler(TransferError)
async def transfer_error_handler(request, exc: TransferError) -> JSONResponse:
    return make_error_response(exc.error_code, exc.message)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request, exc: RequestValidationError) -> JSONResponse:
    details = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg', 'invalid')}"
        for err in exc.errors()
    )
    return make_error_response(TransferErrorCode.INVALID_REQUEST, details or "Invalid request")


@app.exception_handler(Exception)
async def unexpected_error_handler(request, exc: Exception) -> JSONResponse:
    # Log full exception server-side, return generic message to client
    logger.exception("Unexpected error handling %s %s", request.method, request.url.path)
    return make_error_response(
        TransferErrorCode.INTERNAL_ERROR, "An unexpected error occurred"
    )


ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid request"},
    404: {"model": ErrorResponse, "description": "Not found"},
    409: {"model": ErrorResponse, "description": "Invalid state"},
}


def _status_response(progress: SessionProgress) -> UploadStatusResponse:
    return UploadStatusResponse(
        session_id=progress.session_id,
        filename=progress.filename,
        status=progress.status,
        total_size=progress.total_size,
        chunk_size=progress.chunk_size,
        total_chunks=progress.total_chunks,
        received_chunks=progress.received_chunks,
        missing_chunks=progress.missing_chunks,
        bytes_received=progress.bytes_received,
        progress=progress.progress,
        error=progress.error,
        created_at=progress.created_at,
        updated_at=progress.updated_at,
    )


def _job_response(job: ExportJob) -> ExportStatusResponse:
    return ExportStatusResponse(
        job_id=job.job_id,
        project_id=job.project_id,
        export_type=job.export_type,
        format=job.format,
        sample_rate=job.sample_rate,
        bit_depth=job.bit_depth,
        status=job.status,
        progress=job.progress,
        error=job.error,
        artifact_name=job.artifact_name,
        created_at=job.created_at,
        completed_at=job.completed_at,
    )


# --- Upload Endpoints ---


@app.post(
    "/upload/init",
    response_model=UploadInitResponse,
    status_code=201,
    responses={
        400: ERROR_RESPONSES[400],
        413: {"model": ErrorResponse, "description": "Declared size too large"},
    },
    summary="Start a chunked upload",
)
def init_upload(request: UploadInitRequest, session: DbSession, user_id: UserId):
    result = initialize_session(
        session=session,
        user_id=user_id,
        filename=request.filename,
        total_size=request.total_size,
        chunk_size=request.chunk_size,
    )
    return UploadInitResponse(
        session_id=result.session_id,
        status=result.status,
        chunk_size=result.chunk_size,
        total_chunks=result.total_chunks,
        expires_at=result.expires_at,
    )


@app.get(
    "/upload/sessions",
    response_model=UploadSessionListResponse,
    summary="List the caller's upload sessions",
)
def list_sessions(
    session: DbSession,
    user_id: UserId,
    status: Annotated[UploadStatus | None, Query(description="Filter by status")] = None,
):
    sessions = [_status_response(p) for p in list_user_sessions(session, user_id, status)]
    return UploadSessionListResponse(sessions=sessions, total=len(sessions))


@app.post(
    "/upload/{session_id}/chunk",
    response_model=ChunkAckResponse,
    responses=ERROR_RESPONSES,
    summary="Upload one chunk",
    description="Multipart form with the chunk bytes, its index and its SHA256.",
)
def put_chunk(
    session_id: str,
    session: DbSession,
    user_id: UserId,
    chunk: Annotated[UploadFile, File(description="Chunk bytes")],
    chunk_index: Annotated[int, Form(alias="chunkIndex")],
    chunk_hash: Annotated[str, Form(alias="chunkHash")],
):
    # One byte over the limit is enough for the size check to reject it
    data = chunk.file.read(MAX_CHUNK_SIZE_BYTES + 1)
    result = upload_chunk(
        session=session,
        session_id=session_id,
        chunk_index=chunk_index,
        data=data,
        chunk_hash=chunk_hash,
        user_id=user_id,
    )
    return ChunkAckResponse(
        session_id=result.session_id,
        chunk_index=result.chunk_index,
        duplicate=result.duplicate,
        received_chunks=result.received_chunks,
        total_chunks=result.total_chunks,
        status=result.status,
    )


@app.get(
    "/upload/{session_id}/status",
    response_model=UploadStatusResponse,
    responses={404: ERROR_RESPONSES[404]},
    summary="Upload progress",
)
def upload_status(session_id: str, session: DbSession, user_id: UserId):
    return _status_response(get_session_status(session, session_id, user_id))


@app.post(
    "/upload/{session_id}/finalize",
    response_model=FinalizeResponse,
    responses=ERROR_RESPONSES,
    summary="Assemble the uploaded chunks",
)
def finalize(
    session_id: str,
    session: DbSession,
    user_id: UserId,
    request: FinalizeRequest | None = None,
):
    result = finalize_upload(
        session=session,
        session_id=session_id,
        expected_file_hash=request.file_hash if request else None,
        user_id=user_id,
    )
    return FinalizeResponse(
        session_id=result.session_id,
        status=result.status,
        filename=result.filename,
        path=result.path,
        size=result.size,
        sha256=result.sha256,
        format_guess=result.format_guess,
        duration_sec=result.duration_sec,
        sample_rate=result.sample_rate,
        channels=result.channels,
        bit_depth=result.bit_depth,
        completed_at=result.completed_at,
    )


@app.delete(
    "/upload/{session_id}",
    response_model=AbortResponse,
    responses={404: ERROR_RESPONSES[404], 409: ERROR_RESPONSES[409]},
    summary="Abort an upload",
)
def abort(session_id: str, session: DbSession, user_id: UserId):
    progress = abort_upload(session, session_id, user_id)
    return AbortResponse(session_id=progress.session_id, status=progress.status)


# --- Export Endpoints ---


@app.post(
    "/export",
    response_model=ExportCreateResponse,
    status_code=201,
    responses={400: ERROR_RESPONSES[400]},
    summary="Create an export job",
)
def create_export(request: ExportCreateRequest, jobs: Jobs, user_id: UserId):
    job = create_export_job(
        jobs,
        user_id=user_id,
        project_id=request.project_id,
        fmt=request.format,
        export_type=request.export_type,
        sample_rate=request.sample_rate,
        bit_depth=request.bit_depth,
        quality=request.quality,
        options=request.options,
    )
    return ExportCreateResponse(job_id=job.job_id, status=job.status)


@app.post(
    "/export/{job_id}/upload",
    response_model=ExportUploadResponse,
    status_code=202,
    responses={
        **ERROR_RESPONSES,
        415: {"model": ErrorResponse, "description": "Not an audio file"},
    },
    summary="Upload the audio to export",
    description="Multipart form with one or more `files`; processing starts in the background.",
)
def upload_export_audio(
    job_id: str,
    jobs: Jobs,
    user_id: UserId,
    background_tasks: BackgroundTasks,
    files: Annotated[list[UploadFile], File(description="Audio renders")],
):
    job = upload_job_audio(
        jobs,
        job_id,
        [(f.filename or "", f.file) for f in files],
        user_id=user_id,
    )
    background_tasks.add_task(process_export_job, jobs, job_id)
    return ExportUploadResponse(job_id=job.job_id, status=job.status, files_received=len(job.files))


@app.get(
    "/export/{job_id}/status",
    response_model=ExportStatusResponse,
    responses={404: ERROR_RESPONSES[404]},
    summary="Export job status",
)
def export_status(job_id: str, jobs: Jobs, user_id: UserId):
    return _job_response(get_job_status(jobs, job_id, user_id))


@app.get(
    "/export/{job_id}/download",
    response_class=FileResponse,
    responses={404: ERROR_RESPONSES[404]},
    summary="Download an export artifact (once)",
)
def download_export(job_id: str, jobs: Jobs, user_id: UserId):
    job = download_job_artifact(jobs, job_id, user_id)
    if job.file_path.suffix == ".zip":
        media_type = "application/zip"
    else:
        media_type = mimetypes.guess_type(job.file_path.name)[0] or "application/octet-stream"
    return FileResponse(
        job.file_path,
        media_type=media_type,
        filename=job.artifact_name,
        background=BackgroundTask(remove_quietly, export_job_dir(job_id)),
    )


@app.delete(
    "/export/{job_id}",
    response_model=ExportCancelResponse,
    responses={404: ERROR_RESPONSES[404], 409: ERROR_RESPONSES[409]},
    summary="Cancel an export job",
)
def cancel_export(job_id: str, jobs: Jobs, user_id: UserId):
    job, removed = cancel_export_job(jobs, job_id, user_id)
    return ExportCancelResponse(
        job_id=job.job_id,
        status=job.status,
        cancel_requested=not removed,
        removed=removed,
    )


@app.get("/health", summary="Health check")
def health_check():
    """Simple health check endpoint."""
    return {"status": "ok"}


# --- For testing: allow overriding session factory ---


def override_session_factory(factory):
    """Override the session factory for testing (None resets it)."""
    global _session_factory
    _session_factory = factory
