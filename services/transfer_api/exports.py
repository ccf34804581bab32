"""Booster Transfer - Export job service.

An export job renders a project's uploaded audio into a downloadable
artifact:

    awaiting_upload -> processing -> completed | failed

Jobs live in an in-memory table (ExportJobTable) owned by the API process.
Terminal jobs are evicted after EXPORT_JOB_TTL_SECONDS. Downloading a
completed job removes it from the table and deletes its files, so an
artifact is served at most once.

Files for a job live under data/exports/{job_id}/:
- raw_{i}.{ext}            uploaded renders (deleted after conversion)
- {stem}.{format}          converted outputs
- {project_id}_stems.zip   bundle when more than one output or stems export
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, BinaryIO

from booster.config import EXPORT_JOB_TTL_SECONDS
from booster.models import utc_now
from booster.utils.atomic_io import atomic_stream_to_file, remove_quietly
from booster.utils.audio_meta import guess_format_from_extension, is_audio_filename
from booster.utils.paths import (
    export_job_dir,
    export_output_path,
    export_raw_path,
    export_zip_path,
)
from services.transfer_api.errors import (
    InvalidJobStateError,
    InvalidRequestError,
    JobNotFoundError,
    StorageFailedError,
    UnsupportedMediaError,
)
from services.worker_export.run import ConversionError, convert_audio, zip_outputs

logger = logging.getLogger(__name__)

CANCELLED_ERROR = "cancelled"


class ExportJobStatus:
    """Export job status values."""

    AWAITING_UPLOAD = "awaiting_upload"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    TERMINAL = frozenset({COMPLETED, FAILED})


ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    ExportJobStatus.AWAITING_UPLOAD: frozenset({ExportJobStatus.PROCESSING}),
    ExportJobStatus.PROCESSING: frozenset({ExportJobStatus.COMPLETED, ExportJobStatus.FAILED}),
    ExportJobStatus.COMPLETED: frozenset(),
    ExportJobStatus.FAILED: frozenset(),
}


class InvalidTransitionError(InvalidJobStateError):
    """Requested status change is not an edge of the job state machine."""

    def __init__(self, job_id: str, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(job_id, current, f"move to {target}")


@dataclass
class ExportJob:
    """One export job and its working files."""

    job_id: str
    user_id: str
    project_id: str
    export_type: str = "mixdown"
    format: str = "wav"
    sample_rate: int = 44100
    bit_depth: int = 24
    quality: str | None = None
    options: dict[str, Any] = field(default_factory=dict)
    status: str = ExportJobStatus.AWAITING_UPLOAD
    progress: int = 0
    error: str | None = None
    files: list[Path] = field(default_factory=list)
    file_names: list[str] = field(default_factory=list)
    outputs: list[Path] = field(default_factory=list)
    file_path: Path | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    completed_at: datetime | None = None
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def artifact_name(self) -> str | None:
        return self.file_path.name if self.file_path is not None else None

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event.is_set()


# --- Job table ---


class ExportJobTable:
    """Thread-safe in-memory store of export jobs.

    Readers get shallow copies so a background conversion never hands a
    half-updated job to a status request.
    """

    def __init__(self, ttl_seconds: int = EXPORT_JOB_TTL_SECONDS) -> None:
        self.ttl_seconds = ttl_seconds
        self._lock = threading.Lock()
        self._jobs: dict[str, ExportJob] = {}

    def add(self, job: ExportJob) -> ExportJob:
        with self._lock:
            self._jobs[job.job_id] = job
            return copy.copy(job)

    def get(self, job_id: str, user_id: str | None = None) -> ExportJob:
        """Return a snapshot of a job.

        Raises:
            JobNotFoundError: Unknown job, or owned by another user.
        """
        with self._lock:
            return copy.copy(self._require(job_id, user_id))

    def update(self, job_id: str, **changes: Any) -> ExportJob:
        """Apply field changes to a job without changing its status."""
        with self._lock:
            job = self._require(job_id)
            for name, value in changes.items():
                setattr(job, name, value)
            job.updated_at = utc_now()
            return copy.copy(job)

    def transition(self, job_id: str, status: str, **changes: Any) -> ExportJob:
        """Move a job along one edge of the state machine.

        Raises:
            JobNotFoundError: Unknown job.
            InvalidTransitionError: `status` is not reachable from the current state.
        """
        with self._lock:
            job = self._require(job_id)
            if status not in ALLOWED_TRANSITIONS[job.status]:
                raise InvalidTransitionError(job_id, job.status, status)
            job.status = status
            for name, value in changes.items():
                setattr(job, name, value)
            job.updated_at = utc_now()
            return copy.copy(job)

    def pop_completed(self, job_id: str, user_id: str | None = None) -> ExportJob:
        """Remove and return a completed job.

        Exactly one caller can win the pop for a given job.

        Raises:
            JobNotFoundError: Unknown job, or not completed yet.
        """
        with self._lock:
            job = self._require(job_id, user_id)
            if job.status != ExportJobStatus.COMPLETED:
                raise JobNotFoundError(job_id, f"has no artifact (status {job.status})")
            return self._jobs.pop(job_id)

    def cancel(self, job_id: str, user_id: str | None = None) -> tuple[ExportJob, bool]:
        """Drop a job awaiting upload, or flag a processing job for cancellation.

        The status check and its effect happen under one lock hold, so an
        upload claiming the job cannot slip in between.

        Returns:
            (job snapshot, removed).

        Raises:
            JobNotFoundError: Unknown job.
            InvalidJobStateError: Job already completed or failed.
        """
        with self._lock:
            job = self._require(job_id, user_id)
            if job.status in ExportJobStatus.TERMINAL:
                raise InvalidJobStateError(job_id, job.status, "cancel")
            if job.status == ExportJobStatus.AWAITING_UPLOAD:
                return self._jobs.pop(job_id), True
            job.cancel_event.set()
            return copy.copy(job), False

    def evict_expired(self, now: datetime | None = None) -> list[ExportJob]:
        """Drop terminal jobs idle for longer than the TTL.

        Returns:
            The evicted jobs, so the caller can remove their files.
        """
        cutoff = (now or utc_now()) - timedelta(seconds=self.ttl_seconds)
        with self._lock:
            expired = [
                job_id
                for job_id, job in self._jobs.items()
                if job.status in ExportJobStatus.TERMINAL and job.updated_at < cutoff
            ]
            return [self._jobs.pop(job_id) for job_id in expired]

    def clear(self) -> None:
        with self._lock:
            self._jobs.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._jobs

    def _require(self, job_id: str, user_id: str | None = None) -> ExportJob:
        job = self._jobs.get(job_id)
        if job is None or (user_id is not None and job.user_id != user_id):
            raise JobNotFoundError(job_id)
        return job


export_jobs = ExportJobTable()


# --- Export Job Service ---


def generate_job_id() -> str:
    """Generate a unique export job ID (uuid4 hex, 32 chars)."""
    return uuid.uuid4().hex


def create_export_job(
    jobs: ExportJobTable,
    user_id: str,
    project_id: str,
    fmt: str = "wav",
    export_type: str = "mixdown",
    sample_rate: int = 44100,
    bit_depth: int = 24,
    quality: str | None = None,
    options: dict[str, Any] | None = None,
) -> ExportJob:
    """Register a new job in awaiting_upload.

    Expired terminal jobs are evicted (and their files removed) first.

    Returns:
        Snapshot of the new job.
    """
    purge_expired_jobs(jobs)

    job = ExportJob(
        job_id=generate_job_id(),
        user_id=user_id,
        project_id=project_id,
        export_type=export_type,
        format=fmt,
        sample_rate=sample_rate,
        bit_depth=bit_depth,
        quality=quality,
        options=dict(options or {}),
    )
    snapshot = jobs.add(job)
    logger.info(
        "Export job created: job_id=%s project_id=%s format=%s type=%s",
        job.job_id, project_id, fmt, export_type,
    )
    return snapshot


def upload_job_audio(
    jobs: ExportJobTable,
    job_id: str,
    files: Iterable[tuple[str, BinaryIO]],
    user_id: str | None = None,
) -> ExportJob:
    """Save the job's audio and move it to processing.

    Processing itself is started by the caller (process_export_job).

    Args:
        jobs: Job table.
        job_id: Export job identifier.
        files: (original filename, readable stream) pairs.
        user_id: If given, the job must be owned by this user.

    Returns:
        Snapshot of the job in processing.

    Raises:
        JobNotFoundError: Unknown job.
        InvalidJobStateError: Job is not awaiting upload.
        InvalidRequestError: No files supplied.
        UnsupportedMediaError: A file does not carry an audio extension.
        StorageFailedError: A file could not be written; the job is failed.
    """
    files = list(files)
    job = jobs.get(job_id, user_id)
    if job.status != ExportJobStatus.AWAITING_UPLOAD:
        raise InvalidJobStateError(job_id, job.status, "upload audio for")
    if not files:
        raise InvalidRequestError("at least one audio file is required")
    for filename, _ in files:
        if not filename or not is_audio_filename(filename):
            raise UnsupportedMediaError(filename or "<unnamed>")

    # Claiming the job first means a second concurrent upload gets a 409
    try:
        jobs.transition(job_id, ExportJobStatus.PROCESSING)
    except InvalidTransitionError as e:
        raise InvalidJobStateError(job_id, e.current, "upload audio for") from e

    saved: list[Path] = []
    names: list[str] = []
    try:
        for index, (filename, stream) in enumerate(files):
            raw_path = export_raw_path(job_id, index, guess_format_from_extension(filename) or "")
            atomic_stream_to_file(stream, raw_path)
            saved.append(raw_path)
            names.append(filename)
    except OSError as e:
        _fail_job(jobs, job_id, f"could not store uploaded audio: {e}", saved)
        raise StorageFailedError(f"could not store uploaded audio: {e}") from e

    snapshot = jobs.update(job_id, files=saved, file_names=names)
    logger.info("Export audio received: job_id=%s files=%d", job_id, len(saved))
    return snapshot


def process_export_job(jobs: ExportJobTable, job_id: str) -> None:
    """Convert a processing job's audio and publish its artifact.

    Runs as a background task. Never raises: every failure ends the job in
    failed with an error message, and its intermediate files are removed.
    """
    try:
        job = jobs.get(job_id)
    except JobNotFoundError:
        logger.warning("Export job vanished before processing: job_id=%s", job_id)
        return
    if job.status != ExportJobStatus.PROCESSING:
        logger.warning("Export job not processing: job_id=%s status=%s", job_id, job.status)
        return

    outputs: list[Path] = []
    zip_path: Path | None = None
    try:
        total = len(job.files)
        for index, raw_path in enumerate(job.files):
            _raise_if_cancelled(job)
            output_path = export_output_path(job_id, _output_stem(job, index), job.format)
            convert_audio(
                raw_path,
                output_path,
                job.format,
                job.sample_rate,
                job.bit_depth,
                job.quality,
            )
            outputs.append(output_path)
            jobs.update(job_id, outputs=list(outputs), progress=(index + 1) * 90 // total)

        _raise_if_cancelled(job)
        if len(outputs) > 1 or job.export_type == "stems":
            zip_path = zip_outputs(outputs, export_zip_path(job_id, job.project_id))
            artifact = zip_path
            intermediates = [*job.files, *outputs]
        else:
            artifact = outputs[0]
            intermediates = list(job.files)

        _raise_if_cancelled(job)
        for path in intermediates:
            remove_quietly(path)

        jobs.transition(
            job_id,
            ExportJobStatus.COMPLETED,
            file_path=artifact,
            progress=100,
            completed_at=utc_now(),
        )
    except _Cancelled:
        logger.info("Export job cancelled: job_id=%s", job_id)
        _fail_job(jobs, job_id, CANCELLED_ERROR, [*job.files, *outputs, zip_path])
        return
    except ConversionError as e:
        logger.warning("Export conversion failed: job_id=%s %s", job_id, e)
        _fail_job(jobs, job_id, e.message, [*job.files, *outputs, zip_path])
        return
    except Exception as e:
        logger.exception("Export job crashed: job_id=%s", job_id)
        _fail_job(jobs, job_id, f"{type(e).__name__}: {e}", [*job.files, *outputs, zip_path])
        return

    logger.info("Export job completed: job_id=%s artifact=%s", job_id, artifact.name)


def get_job_status(jobs: ExportJobTable, job_id: str, user_id: str | None = None) -> ExportJob:
    """Return a snapshot of a job.

    Raises:
        JobNotFoundError: Unknown job.
    """
    return jobs.get(job_id, user_id)


def download_job_artifact(
    jobs: ExportJobTable,
    job_id: str,
    user_id: str | None = None,
) -> ExportJob:
    """Claim a completed job's artifact for download.

    The job is removed from the table before the caller streams the file;
    the caller deletes the job directory once the response is sent.

    Raises:
        JobNotFoundError: Unknown job, not completed, or artifact missing on disk.
    """
    job = jobs.pop_completed(job_id, user_id)
    if job.file_path is None or not job.file_path.exists():
        remove_quietly(export_job_dir(job_id))
        raise JobNotFoundError(job_id, "artifact is missing")
    logger.info("Export artifact claimed: job_id=%s artifact=%s", job_id, job.artifact_name)
    return job


def cancel_export_job(
    jobs: ExportJobTable,
    job_id: str,
    user_id: str | None = None,
) -> tuple[ExportJob, bool]:
    """Cancel a job that has not finished.

    A job still awaiting upload is removed outright. A processing job is
    flagged; the worker stops at its next checkpoint and fails the job with
    error "cancelled".

    Returns:
        (job snapshot, removed) where removed is True if the job was dropped.

    Raises:
        JobNotFoundError: Unknown job.
        InvalidJobStateError: Job already completed or failed.
    """
    job, removed = jobs.cancel(job_id, user_id)
    if removed:
        remove_quietly(export_job_dir(job_id))
        logger.info("Export job discarded before upload: job_id=%s", job_id)
    else:
        logger.info("Export job cancellation requested: job_id=%s", job_id)
    return job, removed


def purge_expired_jobs(jobs: ExportJobTable, now: datetime | None = None) -> list[str]:
    """Evict expired terminal jobs and delete their directories."""
    evicted = jobs.evict_expired(now)
    for job in evicted:
        remove_quietly(export_job_dir(job.job_id))
    if evicted:
        logger.info("Evicted %d expired export job(s)", len(evicted))
    return [job.job_id for job in evicted]


# --- Internal Helpers ---


class _Cancelled(Exception):
    pass


def _raise_if_cancelled(job: ExportJob) -> None:
    if job.cancel_event.is_set():
        raise _Cancelled()


def _output_stem(job: ExportJob, index: int) -> str:
    if len(job.files) == 1 and job.export_type == "mixdown":
        return f"{job.project_id}_mixdown"
    original = job.file_names[index] if index < len(job.file_names) else f"track_{index}"
    return f"{index + 1:02d}_{Path(original).stem}"


def _fail_job(
    jobs: ExportJobTable,
    job_id: str,
    message: str,
    paths: Iterable[Path | None],
) -> None:
    """Mark a job failed and remove its intermediate files (best-effort)."""
    for path in paths:
        if path is not None:
            remove_quietly(path)
    try:
        jobs.transition(job_id, ExportJobStatus.FAILED, error=message)
    except (JobNotFoundError, InvalidTransitionError):
        logger.warning("Could not mark export job failed: job_id=%s", job_id)
