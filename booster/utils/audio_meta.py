"""Booster Transfer - Audio metadata extraction utilities.

Best-effort metadata extraction for WAV files using the stdlib wave module.
Used to describe finalized uploads and to pick the export conversion path.
Extraction failures never block an upload or an export.
"""

import logging
import wave
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

AUDIO_EXTENSIONS = frozenset({"wav", "mp3", "flac", "ogg", "aac", "m4a", "mp4", "webm", "aiff"})


@dataclass
class RawAudioMetadata:
    """Audio metadata extracted from a file (best-effort).

    All fields may be None if extraction fails or is not supported.
    """

    duration_sec: float | None = None
    sample_rate: int | None = None
    channels: int | None = None
    bit_depth: int | None = None
    format_guess: str | None = None


def extract_audio_metadata(path: str | Path) -> RawAudioMetadata:
    """Extract metadata from an audio file.

    - For WAV files: reads the header with the stdlib wave module
    - For other files: returns format_guess from the extension only

    This function NEVER raises.

    Args:
        path: Path to the audio file.

    Returns:
        RawAudioMetadata with available fields filled in.
    """
    path = Path(path)
    format_guess = guess_format_from_extension(str(path))

    if format_guess == "wav":
        try:
            return read_wav_metadata(path)
        except (wave.Error, EOFError, OSError):
            logger.debug("WAV header unreadable for %s", path, exc_info=True)

    return RawAudioMetadata(format_guess=format_guess)


def read_wav_metadata(path: str | Path) -> RawAudioMetadata:
    """Read WAV header fields.

    Args:
        path: Path to the WAV file.

    Returns:
        RawAudioMetadata with WAV-specific fields.

    Raises:
        wave.Error: If the file is not a PCM WAV file.
        OSError: If the file cannot be read.
    """
    with wave.open(str(path), "rb") as wf:
        sample_rate = wf.getframerate()
        n_frames = wf.getnframes()

        return RawAudioMetadata(
            duration_sec=n_frames / sample_rate if sample_rate > 0 else None,
            sample_rate=sample_rate,
            channels=wf.getnchannels(),
            bit_depth=wf.getsampwidth() * 8,
            format_guess="wav",
        )


def guess_format_from_extension(filename: str) -> str | None:
    """Guess audio format from filename extension.

    Args:
        filename: Filename or path string.

    Returns:
        Lowercase extension without dot, or None if no extension.
    """
    ext = Path(filename).suffix.lower().lstrip(".")
    return ext if ext else None


def is_audio_filename(filename: str) -> bool:
    """Return True if the filename carries a known audio extension."""
    return guess_format_from_extension(filename) in AUDIO_EXTENSIONS


__all__ = [
    "AUDIO_EXTENSIONS",
    "RawAudioMetadata",
    "extract_audio_metadata",
    "guess_format_from_extension",
    "is_audio_filename",
    "read_wav_metadata",
]
