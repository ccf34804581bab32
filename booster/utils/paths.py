"""Booster Transfer - Canonical path utilities.

Returns canonical Paths for upload and export storage. Does NOT create
directories. Directory creation is the responsibility of the calling code.
"""

import re
from pathlib import Path

from booster.config import EXPORTS_DIR, UPLOADS_DIR

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def sanitize_filename(filename: str) -> str:
    """Reduce a client filename to a safe basename.

    Directory components are dropped and characters outside [A-Za-z0-9._-]
    are replaced with "_". Leading dots are stripped so the result can never
    be a hidden file or a relative path.

    Args:
        filename: Filename as supplied by the client.

    Returns:
        Safe filename, "upload.bin" if nothing usable remains.
    """
    name = Path(filename.replace("\\", "/")).name
    name = _UNSAFE_FILENAME_CHARS.sub("_", name).lstrip(".")
    return name or "upload.bin"


def upload_session_dir(session_id: str) -> Path:
    """Get the working directory for an upload session.

    Returns:
        Path: data/uploads/{session_id}
    """
    return UPLOADS_DIR / session_id


def upload_chunk_path(session_id: str, chunk_index: int) -> Path:
    """Get canonical path for a stored chunk.

    Args:
        session_id: Upload session identifier.
        chunk_index: Zero-based chunk index.

    Returns:
        Path: data/uploads/{session_id}/chunks/{chunk_index:06d}.part
    """
    return upload_session_dir(session_id) / "chunks" / f"{chunk_index:06d}.part"


def upload_final_path(session_id: str, filename: str) -> Path:
    """Get canonical path for the assembled upload.

    Args:
        session_id: Upload session identifier.
        filename: Original filename (sanitized here).

    Returns:
        Path: data/uploads/{session_id}/{sanitized filename}
    """
    return upload_session_dir(session_id) / sanitize_filename(filename)


def export_job_dir(job_id: str) -> Path:
    """Get the working directory for an export job.

    Returns:
        Path: data/exports/{job_id}
    """
    return EXPORTS_DIR / job_id


def export_raw_path(job_id: str, index: int, ext: str) -> Path:
    """Get path for an uploaded raw render.

    Args:
        job_id: Export job identifier.
        index: Position of the file in the upload.
        ext: File extension (with or without leading dot).

    Returns:
        Path: data/exports/{job_id}/raw_{index}.{ext}
    """
    ext = ext.lstrip(".") or "bin"
    return export_job_dir(job_id) / f"raw_{index}.{ext}"


def export_output_path(job_id: str, stem_name: str, fmt: str) -> Path:
    """Get path for a converted export file.

    Args:
        job_id: Export job identifier.
        stem_name: Base name of the output (sanitized here).
        fmt: Target format extension.

    Returns:
        Path: data/exports/{job_id}/{stem_name}.{fmt}
    """
    return export_job_dir(job_id) / f"{sanitize_filename(stem_name)}.{fmt.lstrip('.')}"


def export_zip_path(job_id: str, project_id: str) -> Path:
    """Get path for a zipped stems export.

    Returns:
        Path: data/exports/{job_id}/{project_id}_stems.zip
    """
    return export_job_dir(job_id) / f"{sanitize_filename(project_id)}_stems.zip"
