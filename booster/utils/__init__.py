"""Booster Transfer - Utility modules."""

from booster.utils.atomic_io import (
    atomic_concat_files,
    atomic_stream_to_file,
    atomic_write_bytes,
    cleanup_orphan_temp_files,
    remove_quietly,
)
from booster.utils.hashing import normalize_hex_digest, sha256_bytes, sha256_file
from booster.utils.paths import (
    export_job_dir,
    export_output_path,
    export_raw_path,
    export_zip_path,
    sanitize_filename,
    upload_chunk_path,
    upload_final_path,
    upload_session_dir,
)

__all__ = [
    # atomic_io
    "atomic_write_bytes",
    "atomic_stream_to_file",
    "atomic_concat_files",
    "cleanup_orphan_temp_files",
    "remove_quietly",
    # hashing
    "sha256_file",
    "sha256_bytes",
    "normalize_hex_digest",
    # paths
    "sanitize_filename",
    "upload_session_dir",
    "upload_chunk_path",
    "upload_final_path",
    "export_job_dir",
    "export_raw_path",
    "export_output_path",
    "export_zip_path",
]
