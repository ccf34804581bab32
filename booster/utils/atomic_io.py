"""Booster Transfer - Atomic I/O utilities.

Implements the atomic publish rule:
1. Write to temp path in same directory
2. Flush + best-effort fsync
3. Rename temp -> final (the publish boundary)

This ensures that the final path either contains complete valid data
or does not exist. Partial writes only affect the temp file.

Failpoints (resilience harness):
- ATOMIC_WRITE_AFTER_TMP_WRITE: After writing to temp file, before fsync
- ATOMIC_WRITE_AFTER_FSYNC_BEFORE_RENAME: After fsync, before atomic rename
- ATOMIC_WRITE_AFTER_RENAME: After atomic rename completes
- ATOMIC_CONCAT_BEFORE_RENAME: After all sources are concatenated, before rename
"""

import hashlib
import logging
import os
import shutil
from collections.abc import Iterable
from pathlib import Path

from booster.utils.failpoints import maybe_fail

logger = logging.getLogger(__name__)


def _write_all(fd: int, data: bytes) -> None:
    """Write all bytes to a file descriptor, handling partial writes.

    Loops until all bytes are written, handling short writes and EINTR.

    Args:
        fd: File descriptor to write to.
        data: Bytes to write.

    Raises:
        OSError: If write fails or returns 0 bytes unexpectedly.
    """
    total_written = 0
    data_len = len(data)

    while total_written < data_len:
        try:
            written = os.write(fd, data[total_written:])
            if written == 0:
                # os.write() should never return 0 for non-empty data
                raise OSError("os.write() returned 0 bytes unexpectedly")
            total_written += written
        except InterruptedError:
            # EINTR: interrupted system call, retry the write
            continue


def _temp_path_for(final_path: Path, temp_suffix: str) -> Path:
    return final_path.with_suffix(final_path.suffix + temp_suffix)


def _discard_temp(fd: int, temp_path: Path) -> None:
    """Close fd and remove an orphan temp file after a failed write."""
    os.close(fd)
    try:
        os.remove(temp_path)
    except OSError:
        pass  # Best-effort cleanup


def atomic_write_bytes(
    final_path: str | Path,
    data: bytes,
    temp_suffix: str = ".tmp",
) -> None:
    """Atomically write bytes to a file.

    Idempotent: safe to call even if temp file exists (overwrites temp).
    Never corrupts final path - atomic rename ensures all-or-nothing.

    Args:
        final_path: The target path for the final file.
        data: Bytes to write.
        temp_suffix: Suffix for the temporary file (default: ".tmp").

    Raises:
        OSError: If directory creation, write, or rename fails.
    """
    final_path = Path(final_path)
    temp_path = _temp_path_for(final_path, temp_suffix)

    final_path.parent.mkdir(parents=True, exist_ok=True)

    fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
    try:
        _write_all(fd, data)

        maybe_fail("ATOMIC_WRITE_AFTER_TMP_WRITE")

        os.fsync(fd)
    except OSError:
        _discard_temp(fd, temp_path)
        raise
    else:
        os.close(fd)

    _fsync_directory(final_path.parent)

    maybe_fail("ATOMIC_WRITE_AFTER_FSYNC_BEFORE_RENAME")

    # Atomic rename (POSIX guarantees atomicity)
    os.replace(temp_path, final_path)

    maybe_fail("ATOMIC_WRITE_AFTER_RENAME")


def _fsync_directory(dir_path: Path) -> None:
    """Best-effort fsync on a directory.

    Silently ignores errors as this is best-effort.

    Args:
        dir_path: Directory path to sync.
    """
    try:
        fd = os.open(dir_path, os.O_RDONLY | os.O_DIRECTORY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
    except (OSError, AttributeError):
        # O_DIRECTORY may not be available on all platforms
        pass


def atomic_stream_to_file(
    stream,
    final_path: str | Path,
    temp_suffix: str = ".tmp",
    chunk_size: int = 65536,
) -> int:
    """Atomically write a stream to a file.

    Used for multipart uploads where data comes from a file-like object.

    Args:
        stream: File-like object with read() method.
        final_path: Target path for the output file.
        temp_suffix: Suffix for the temporary file (default: ".tmp").
        chunk_size: Buffer size for reading (default: 64KB).

    Returns:
        Total bytes written.

    Raises:
        OSError: If write or rename fails.
    """
    final_path = Path(final_path)
    temp_path = _temp_path_for(final_path, temp_suffix)

    final_path.parent.mkdir(parents=True, exist_ok=True)

    total_bytes = 0
    fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
    try:
        while True:
            chunk = stream.read(chunk_size)
            if not chunk:
                break
            if isinstance(chunk, str):
                chunk = chunk.encode("utf-8")
            _write_all(fd, chunk)
            total_bytes += len(chunk)

        os.fsync(fd)
    except OSError:
        _discard_temp(fd, temp_path)
        raise
    else:
        os.close(fd)

    os.replace(temp_path, final_path)

    _fsync_directory(final_path.parent)

    return total_bytes


def atomic_concat_files(
    sources: Iterable[str | Path],
    final_path: str | Path,
    temp_suffix: str = ".tmp",
    chunk_size: int = 65536,
) -> tuple[int, str]:
    """Atomically concatenate files, in the given order, into one file.

    The SHA256 of the output is computed in the same pass, so callers get
    the assembled file's digest without re-reading it.

    Args:
        sources: Source files, concatenated in iteration order.
        final_path: Target path for the assembled file.
        temp_suffix: Suffix for the temporary file (default: ".tmp").
        chunk_size: Buffer size for copying (default: 64KB).

    Returns:
        Tuple of (total bytes written, SHA256 hex digest of the output).

    Raises:
        FileNotFoundError: If a source file does not exist.
        OSError: If read, write, or rename fails.
    """
    final_path = Path(final_path)
    temp_path = _temp_path_for(final_path, temp_suffix)

    final_path.parent.mkdir(parents=True, exist_ok=True)

    hasher = hashlib.sha256()
    total_bytes = 0
    fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
    try:
        for source in sources:
            with open(source, "rb") as src:
                while block := src.read(chunk_size):
                    _write_all(fd, block)
                    hasher.update(block)
                    total_bytes += len(block)

        os.fsync(fd)
    except OSError:
        _discard_temp(fd, temp_path)
        raise
    else:
        os.close(fd)

    maybe_fail("ATOMIC_CONCAT_BEFORE_RENAME")

    os.replace(temp_path, final_path)

    _fsync_directory(final_path.parent)

    return total_bytes, hasher.hexdigest()


def remove_quietly(path: str | Path) -> bool:
    """Remove a file or directory tree, never raising.

    Args:
        path: File or directory to remove.

    Returns:
        True if something was removed, False if nothing existed or removal failed.
    """
    path = Path(path)
    try:
        if path.is_dir():
            shutil.rmtree(path)
        elif path.exists():
            path.unlink()
        else:
            return False
    except OSError:
        logger.warning("Failed to remove %s (non-fatal)", path, exc_info=True)
        return False
    return True


def cleanup_orphan_temp_files(
    directory: str | Path,
    temp_suffix: str = ".tmp",
    recursive: bool = False,
) -> int:
    """Clean up orphan temp files in a directory.

    Called during startup or error recovery to remove incomplete writes.

    Args:
        directory: Directory to scan for temp files.
        temp_suffix: Suffix pattern to match (default: ".tmp").
        recursive: Also scan subdirectories.

    Returns:
        Number of files removed.
    """
    directory = Path(directory)
    removed = 0

    if not directory.exists():
        return 0

    pattern = f"**/*{temp_suffix}" if recursive else f"*{temp_suffix}"
    for temp_file in directory.glob(pattern):
        if not temp_file.is_file():
            continue
        try:
            temp_file.unlink()
            removed += 1
        except OSError:
            pass  # Best-effort cleanup

    return removed
