"""Booster Transfer - Core application modules.

Provides:
- Configuration constants and path layout
- SQLite models and DB primitives for upload sessions
- Pydantic request/response models for the transfer API
- Core utilities: atomic_io, hashing, paths, audio_meta, failpoints
"""

__version__ = "0.1.0"
