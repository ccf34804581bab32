"""Booster Transfer - Configuration constants.

Module-level constants only. No external config libraries.
All paths are relative to the repository root by default.
Integer limits can be overridden with BOOSTER_* environment variables.
"""

import os
from pathlib import Path

# Repository root (parent of booster/)
REPO_ROOT = Path(__file__).parent.parent.resolve()

# Data directories
DATA_DIR = REPO_ROOT / "data"
UPLOADS_DIR = DATA_DIR / "uploads"
EXPORTS_DIR = DATA_DIR / "exports"

# Logs directory
LOGS_DIR = REPO_ROOT / "logs"

# Database path (upload session storage)
DB_PATH = DATA_DIR / "booster.db"

# Queue directory and Huey database path
QUEUE_DIR = DATA_DIR / "queue"
HUEY_DB_PATH = QUEUE_DIR / "huey.db"


def _get_env_int(name: str, default: int) -> int:
    """Get a positive integer from the environment or use the default.

    Args:
        name: Environment variable name.
        default: Value used when the variable is unset, non-numeric or <= 0.

    Returns:
        The configured integer.
    """
    env_val = os.environ.get(name)
    if env_val:
        try:
            value = int(env_val)
            if value > 0:
                return value
        except ValueError:
            pass
    return default


# --- Upload sessions ---

# Largest declared upload accepted by initialize (5 GiB)
MAX_UPLOAD_SIZE_BYTES = _get_env_int("BOOSTER_MAX_UPLOAD_SIZE", 5 * 1024 * 1024 * 1024)

# Default chunk size (5 MiB) and the largest chunk a client may declare (100 MiB)
DEFAULT_CHUNK_SIZE_BYTES = _get_env_int("BOOSTER_DEFAULT_CHUNK_SIZE", 5 * 1024 * 1024)
MAX_CHUNK_SIZE_BYTES = _get_env_int("BOOSTER_MAX_CHUNK_SIZE", 100 * 1024 * 1024)

# Upper bound on chunks per session (5 GiB at the default chunk size is 1024)
MAX_CHUNKS_PER_SESSION = _get_env_int("BOOSTER_MAX_CHUNKS_PER_SESSION", 10000)

# Incomplete sessions older than this are purged (24 hours)
UPLOAD_SESSION_TTL_SECONDS = _get_env_int("BOOSTER_UPLOAD_SESSION_TTL_SEC", 24 * 60 * 60)

# How often the Huey consumer sweeps expired sessions, in minutes
SESSION_PURGE_INTERVAL_MINUTES = _get_env_int("BOOSTER_SESSION_PURGE_INTERVAL_MIN", 15)

# --- Export jobs ---

# Terminal export jobs are evicted from the in-memory table after this (1 hour)
EXPORT_JOB_TTL_SECONDS = _get_env_int("BOOSTER_EXPORT_JOB_TTL_SEC", 60 * 60)

# Supported export targets
EXPORT_FORMATS = ("wav", "mp3", "flac", "ogg", "aac")
EXPORT_BIT_DEPTHS = (16, 24, 32)
EXPORT_SAMPLE_RATES = (22050, 44100, 48000, 88200, 96000)
DEFAULT_EXPORT_SAMPLE_RATE = 44100
DEFAULT_EXPORT_BIT_DEPTH = 24

# Codec bitrate per quality level for lossy formats
LOSSY_BITRATES = {"low": "128k", "medium": "192k", "high": "320k"}

# Lossy encoders (libmp3lame, libvorbis, aac) stop at 48 kHz
LOSSY_EXPORT_FORMATS = ("mp3", "ogg", "aac")
LOSSY_MAX_SAMPLE_RATE = 48000

# ffmpeg subprocess timeout in seconds
FFMPEG_TIMEOUT_SECONDS = _get_env_int("BOOSTER_FFMPEG_TIMEOUT_SEC", 300)
