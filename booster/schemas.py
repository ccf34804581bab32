"""Booster Transfer - Pydantic models for API validation.

Request/response models for the transfer API, corresponding to the JSON
schemas in /specs. Wire field names are camelCase (via alias generator);
Python attribute names stay snake_case.
"""

from datetime import datetime  # noqa: I001
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from booster.config import (
    DEFAULT_EXPORT_BIT_DEPTH,
    DEFAULT_EXPORT_SAMPLE_RATE,
    EXPORT_SAMPLE_RATES,
    LOSSY_EXPORT_FORMATS,
    LOSSY_MAX_SAMPLE_RATE,
)

ExportFormat = Literal["wav", "mp3", "flac", "ogg", "aac"]
ExportType = Literal["mixdown", "stems"]
ExportQuality = Literal["low", "medium", "high"]
ExportStatus = Literal["awaiting_upload", "processing", "completed", "failed"]
UploadStatus = Literal["initializing", "uploading", "finalizing", "complete", "aborted"]


class CamelModel(BaseModel):
    """Base model with camelCase wire names and strict extra-field handling."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )


# --- Upload Session Models ---


class UploadInitRequest(CamelModel):
    """Request payload for POST /upload/init.

    Size limits are enforced by the upload service so that oversized
    declarations map to UPLOAD_TOO_LARGE rather than a validation error.
    """

    filename: str = Field(..., min_length=1, max_length=512, description="Original filename")
    total_size: int = Field(..., description="Declared size of the complete file in bytes")
    chunk_size: int | None = Field(
        default=None,
        description="Chunk size in bytes (defaults to the server's 5 MiB)",
    )


class UploadInitResponse(CamelModel):
    """Response for a newly initialized upload session."""

    session_id: str
    status: UploadStatus
    chunk_size: int
    total_chunks: int
    expires_at: datetime


class ChunkAckResponse(CamelModel):
    """Per-chunk acknowledgement."""

    session_id: str
    chunk_index: int
    received: bool = True
    duplicate: bool = Field(
        default=False,
        description="True if the chunk was already stored with the same hash",
    )
    received_chunks: int
    total_chunks: int
    status: UploadStatus


class UploadStatusResponse(CamelModel):
    """Progress report for an upload session."""

    session_id: str
    filename: str
    status: UploadStatus
    total_size: int
    chunk_size: int
    total_chunks: int
    received_chunks: int
    missing_chunks: list[int]
    bytes_received: int
    progress: int = Field(..., ge=0, le=100, description="Percent of chunks received")
    error: str | None = None
    created_at: datetime
    updated_at: datetime


class UploadSessionListResponse(CamelModel):
    """A user's upload sessions."""

    sessions: list[UploadStatusResponse]
    total: int


class FinalizeRequest(CamelModel):
    """Optional body for POST /upload/{sessionId}/finalize."""

    file_hash: str | None = Field(
        default=None,
        description="Expected SHA256 of the complete file, verified after assembly",
    )


class FinalizeResponse(CamelModel):
    """Descriptor of an assembled upload."""

    session_id: str
    status: UploadStatus
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


class AbortResponse(CamelModel):
    """Response for an aborted upload session."""

    session_id: str
    status: UploadStatus


# --- Export Job Models ---


class ExportCreateRequest(CamelModel):
    """Request payload for POST /export."""

    project_id: str = Field(..., min_length=1, max_length=128)
    format: ExportFormat = "wav"
    export_type: ExportType = "mixdown"
    sample_rate: int = DEFAULT_EXPORT_SAMPLE_RATE
    bit_depth: Literal[16, 24, 32] = DEFAULT_EXPORT_BIT_DEPTH
    quality: ExportQuality | None = None
    options: dict[str, Any] | None = None

    @field_validator("sample_rate")
    @classmethod
    def _supported_sample_rate(cls, value: int) -> int:
        if value not in EXPORT_SAMPLE_RATES:
            raise ValueError(f"sample rate must be one of {list(EXPORT_SAMPLE_RATES)}")
        return value

    @model_validator(mode="after")
    def _lossy_sample_rate(self) -> "ExportCreateRequest":
        if self.format in LOSSY_EXPORT_FORMATS and self.sample_rate > LOSSY_MAX_SAMPLE_RATE:
            raise ValueError(
                f"{self.format} export supports sample rates up to {LOSSY_MAX_SAMPLE_RATE}"
            )
        return self


class ExportCreateResponse(CamelModel):
    """Response for a newly created export job."""

    job_id: str
    status: ExportStatus


class ExportUploadResponse(CamelModel):
    """Response once job audio has been received and processing scheduled."""

    job_id: str
    status: ExportStatus
    files_received: int


class ExportStatusResponse(CamelModel):
    """Current state of an export job."""

    job_id: str
    project_id: str
    export_type: ExportType
    format: ExportFormat
    sample_rate: int
    bit_depth: int
    status: ExportStatus
    progress: int = Field(..., ge=0, le=100)
    error: str | None = None
    artifact_name: str | None = None
    created_at: datetime
    completed_at: datetime | None = None


class ExportCancelResponse(CamelModel):
    """Response for DELETE /export/{jobId}.

    A job still awaiting upload is removed immediately; a processing job is
    flagged and ends in failed with error "cancelled".
    """

    job_id: str
    status: ExportStatus
    cancel_requested: bool
    removed: bool


# --- Errors ---


class ErrorResponse(BaseModel):
    """Response for failed transfer operations."""

    model_config = ConfigDict(extra="forbid")

    status: str = Field(default="error", description="Operation status")
    error_code: str = Field(..., description="Error taxonomy code")
    error_message: str = Field(..., description="Human-readable error description")
