"""Error taxonomy of the standings core.

Every error is an ``HTTPException`` so FastAPI renders it as ``{"detail": ...}``
with the status that belongs to its kind.
"""

from __future__ import annotations

from fastapi import HTTPException


class StandingsError(HTTPException):
    status_code = 500

    def __init__(self, detail: str) -> None:
        super().__init__(status_code=self.status_code, detail=detail)

    def __str__(self) -> str:
        return str(self.detail)


class ValidationError(StandingsError):
    """Missing or malformed identifier supplied by the caller."""

    status_code = 400


class NotFoundError(StandingsError):
    status_code = 404


class ConfigurationError(StandingsError):
    """A battery cannot be scored because its scoring configuration is broken."""

    status_code = 500


class CacheUnavailableError(StandingsError):
    status_code = 500


class RecomputeTimeoutError(StandingsError):
    """The caller stopped waiting; the recompute itself keeps running."""

    status_code = 503
