"""Booster Transfer - Transfer API service.

FastAPI service for chunked uploads (SQLite-backed sessions) and
in-memory export jobs.
"""

__all__: list[str] = []
