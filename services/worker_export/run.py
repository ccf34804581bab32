"""Booster Transfer - Export Worker.

Renders uploaded project audio into the requested export format.

Input: raw renders uploaded to data/exports/{job_id}/raw_{i}.{ext}
Output: data/exports/{job_id}/{stem}.{format}, optionally zipped into
        data/exports/{job_id}/{project_id}_stems.zip

Conversion paths:
- WAV -> WAV at the source sample rate: requantized in-process with numpy
  (8/16/24/32-bit PCM in, 16/24/32-bit PCM out). No ffmpeg needed.
- Everything else: ffmpeg subprocess (resampling, FLAC, lossy codecs).

Dependencies:
- Requires ffmpeg installed and in PATH for non-native conversions

Error codes:
- CODEC_UNSUPPORTED: ffmpeg cannot decode or encode the format
- FILE_CORRUPT: source file is corrupt or unreadable
- INPUT_NOT_FOUND: source file does not exist
- WORKER_ERROR: ffmpeg missing, timed out, or failed to start

Failpoints:
- EXPORT_BEFORE_PUBLISH: After the converted file is written, before rename
"""

from __future__ import annotations

import io
import logging
import os
import subprocess
import wave
import zipfile
from collections.abc import Sequence
from pathlib import Path

import numpy as np

from booster.config import FFMPEG_TIMEOUT_SECONDS, LOSSY_BITRATES
from booster.utils.atomic_io import atomic_write_bytes
from booster.utils.audio_meta import extract_audio_metadata
from booster.utils.failpoints import maybe_fail

logger = logging.getLogger(__name__)

# --- Constants ---

# ffmpeg muxer per export format (output goes to a .tmp path, so the
# container cannot be inferred from the extension)
FFMPEG_MUXERS = {
    "wav": "wav",
    "flac": "flac",
    "mp3": "mp3",
    "ogg": "ogg",
    "aac": "adts",
}

LOSSY_CODECS = {
    "mp3": "libmp3lame",
    "ogg": "libvorbis",
    "aac": "aac",
}

DEFAULT_QUALITY = "high"

# Bytes per sample for each supported output bit depth
OUTPUT_SAMPWIDTHS = {16: 2, 24: 3, 32: 4}


# --- Error Codes ---


class ExportErrorCode:
    """Error codes for the export conversion stage."""

    CODEC_UNSUPPORTED = "CODEC_UNSUPPORTED"
    FILE_CORRUPT = "FILE_CORRUPT"
    INPUT_NOT_FOUND = "INPUT_NOT_FOUND"
    WORKER_ERROR = "WORKER_ERROR"


class ConversionError(Exception):
    """Raised when a render cannot be converted to the export format."""

    def __init__(self, error_code: str, message: str):
        self.error_code = error_code
        self.message = message
        super().__init__(f"{error_code}: {message}")


# --- PCM helpers ---


def pcm_to_int32(raw: bytes, sampwidth: int) -> np.ndarray:
    """Decode little-endian PCM into left-justified int32 samples.

    8-bit WAV is unsigned; wider formats are signed two's complement.
    The result uses the full int32 range regardless of source width, so
    requantizing is a right shift.

    Args:
        raw: Interleaved PCM frames.
        sampwidth: Bytes per sample (1-4).

    Returns:
        1-D int32 array of samples.

    Raises:
        ConversionError: If the sample width is not supported.
    """
    if sampwidth == 1:
        return (np.frombuffer(raw, dtype=np.uint8).astype(np.int32) - 128) << 24
    if sampwidth == 2:
        return np.frombuffer(raw, dtype="<i2").astype(np.int32) << 16
    if sampwidth == 3:
        triples = np.frombuffer(raw, dtype=np.uint8).reshape(-1, 3)
        padded = np.zeros((triples.shape[0], 4), dtype=np.uint8)
        padded[:, 1:] = triples
        return padded.view("<i4").reshape(-1)
    if sampwidth == 4:
        return np.frombuffer(raw, dtype="<i4").astype(np.int32)
    raise ConversionError(
        ExportErrorCode.CODEC_UNSUPPORTED, f"unsupported sample width {sampwidth}"
    )


def int32_to_pcm(samples: np.ndarray, sampwidth: int) -> bytes:
    """Encode left-justified int32 samples as little-endian PCM.

    Lower bits are truncated when narrowing (no dither).

    Args:
        samples: 1-D int32 array from pcm_to_int32.
        sampwidth: Target bytes per sample (2-4).

    Returns:
        PCM bytes.
    """
    if sampwidth == 2:
        return (samples >> 16).astype("<i2").tobytes()
    if sampwidth == 3:
        shifted = (samples >> 8).astype("<i4")
        return shifted.view(np.uint8).reshape(-1, 4)[:, :3].tobytes()
    if sampwidth == 4:
        return samples.astype("<i4").tobytes()
    raise ConversionError(
        ExportErrorCode.CODEC_UNSUPPORTED, f"unsupported sample width {sampwidth}"
    )


# --- Native WAV path ---


def requantize_wav(input_path: Path, output_path: Path, bit_depth: int) -> None:
    """Rewrite a PCM WAV at a new bit depth, keeping rate and channels.

    Note: reads the whole render into memory. Acceptable for studio
    bounce lengths; a streaming variant can frame-block the same helpers.

    Args:
        input_path: Source WAV.
        output_path: Destination WAV (published atomically).
        bit_depth: 16, 24 or 32.

    Raises:
        ConversionError: If the source cannot be read as PCM WAV.
    """
    try:
        with wave.open(str(input_path), "rb") as src:
            channels = src.getnchannels()
            framerate = src.getframerate()
            sampwidth = src.getsampwidth()
            raw = src.readframes(src.getnframes())
    except (wave.Error, EOFError) as e:
        raise ConversionError(ExportErrorCode.FILE_CORRUPT, f"unreadable WAV: {e}") from e

    out_width = OUTPUT_SAMPWIDTHS[bit_depth]
    pcm = raw if sampwidth == out_width else int32_to_pcm(pcm_to_int32(raw, sampwidth), out_width)

    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as dst:
        dst.setnchannels(channels)
        dst.setsampwidth(out_width)
        dst.setframerate(framerate)
        dst.writeframes(pcm)

    maybe_fail("EXPORT_BEFORE_PUBLISH")
    atomic_write_bytes(output_path, buffer.getvalue())


# --- ffmpeg path ---


def build_ffmpeg_command(
    input_path: Path,
    output_path: Path,
    fmt: str,
    sample_rate: int,
    bit_depth: int,
    quality: str | None = None,
) -> list[str]:
    """Build the ffmpeg argument list for one conversion.

    Args:
        input_path: Source audio.
        output_path: Destination (usually a temp path).
        fmt: Export format (wav, flac, mp3, ogg, aac).
        sample_rate: Target sample rate in Hz.
        bit_depth: Target bit depth (lossless formats only).
        quality: low/medium/high (lossy formats only).

    Returns:
        Command list for subprocess.run.
    """
    cmd = ["ffmpeg", "-v", "error", "-y", "-i", str(input_path), "-vn", "-ar", str(sample_rate)]

    if fmt == "wav":
        cmd += ["-c:a", f"pcm_s{bit_depth}le"]
    elif fmt == "flac":
        # FLAC tops out at 24-bit; s32 carries 24-bit precision
        cmd += ["-c:a", "flac", "-sample_fmt", "s16" if bit_depth == 16 else "s32"]
        if bit_depth != 16:
            cmd += ["-bits_per_raw_sample", "24"]
    else:
        bitrate = LOSSY_BITRATES[quality or DEFAULT_QUALITY]
        cmd += ["-c:a", LOSSY_CODECS[fmt], "-b:a", bitrate]

    cmd += ["-f", FFMPEG_MUXERS[fmt], str(output_path)]
    return cmd


def _run_ffmpeg(cmd: list[str]) -> None:
    """Run ffmpeg, translating failures into ConversionError."""
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            check=False,
            timeout=FFMPEG_TIMEOUT_SECONDS,
        )
    except subprocess.TimeoutExpired as e:
        logger.error("ffmpeg timed out after %d seconds", FFMPEG_TIMEOUT_SECONDS)
        raise ConversionError(
            ExportErrorCode.WORKER_ERROR, f"ffmpeg timed out after {FFMPEG_TIMEOUT_SECONDS}s"
        ) from e
    except FileNotFoundError as e:
        logger.error("ffmpeg not found in PATH")
        raise ConversionError(ExportErrorCode.WORKER_ERROR, "ffmpeg not found in PATH") from e
    except OSError as e:
        logger.error("ffmpeg execution failed: %s", e)
        raise ConversionError(ExportErrorCode.WORKER_ERROR, f"ffmpeg execution failed: {e}") from e

    if result.returncode != 0:
        stderr = result.stderr.decode("utf-8", errors="replace")
        lowered = stderr.lower()
        if any(
            x in lowered
            for x in ["decoder", "codec", "unsupported", "unknown encoder", "unknown format"]
        ):
            code = ExportErrorCode.CODEC_UNSUPPORTED
        else:
            code = ExportErrorCode.FILE_CORRUPT
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else f"exit {result.returncode}"
        raise ConversionError(code, f"ffmpeg failed: {detail}")


def transcode_with_ffmpeg(
    input_path: Path,
    output_path: Path,
    fmt: str,
    sample_rate: int,
    bit_depth: int,
    quality: str | None = None,
) -> None:
    """Convert via ffmpeg into a temp file, then publish atomically."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = output_path.with_suffix(output_path.suffix + ".tmp")
    cmd = build_ffmpeg_command(input_path, temp_path, fmt, sample_rate, bit_depth, quality)
    try:
        _run_ffmpeg(cmd)
        if not temp_path.exists():
            raise ConversionError(ExportErrorCode.WORKER_ERROR, "ffmpeg produced no output")
        maybe_fail("EXPORT_BEFORE_PUBLISH")
        os.replace(temp_path, output_path)
    finally:
        if temp_path.exists():
            try:
                temp_path.unlink()
            except OSError:
                pass


# --- Main entry points ---


def convert_audio(
    input_path: str | Path,
    output_path: str | Path,
    fmt: str,
    sample_rate: int,
    bit_depth: int,
    quality: str | None = None,
) -> Path:
    """Convert one render to the target format/sample rate/bit depth.

    Args:
        input_path: Uploaded render.
        output_path: Destination path (published atomically).
        fmt: Export format.
        sample_rate: Target sample rate in Hz.
        bit_depth: Target bit depth for lossless formats.
        quality: Lossy quality level.

    Returns:
        The output path.

    Raises:
        ConversionError: If the input is missing or cannot be converted.
    """
    input_path = Path(input_path)
    output_path = Path(output_path)

    if not input_path.exists():
        raise ConversionError(ExportErrorCode.INPUT_NOT_FOUND, f"input not found: {input_path}")

    meta = extract_audio_metadata(input_path)
    if fmt == "wav" and meta.sample_rate == sample_rate:
        logger.debug("Native WAV requantize: %s -> %d-bit", input_path.name, bit_depth)
        requantize_wav(input_path, output_path, bit_depth)
    else:
        logger.debug(
            "ffmpeg convert: %s -> %s @ %d Hz", input_path.name, fmt, sample_rate
        )
        transcode_with_ffmpeg(input_path, output_path, fmt, sample_rate, bit_depth, quality)

    return output_path


def zip_outputs(paths: Sequence[str | Path], zip_path: str | Path) -> Path:
    """Bundle converted stems into one deflated zip, published atomically.

    Args:
        paths: Files to include; each is stored under its basename.
        zip_path: Destination zip path.

    Returns:
        The zip path.
    """
    zip_path = Path(zip_path)
    zip_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = zip_path.with_suffix(zip_path.suffix + ".tmp")

    try:
        with zipfile.ZipFile(temp_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for path in paths:
                path = Path(path)
                zf.write(path, arcname=path.name)
        os.replace(temp_path, zip_path)
    finally:
        if temp_path.exists():
            try:
                temp_path.unlink()
            except OSError:
                pass

    return zip_path
