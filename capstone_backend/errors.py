"""
Error kinds raised by the gateway and media adapters.

Each error carries the HTTP status the app boundary responds with.
"""

from __future__ import annotations


class ApiError(Exception):
    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ApiError):
    status_code = 400


class ConflictError(ApiError):
    status_code = 400


class NotFoundError(ApiError):
    status_code = 404


class UpstreamError(ApiError):
    """Speech synthesis or object storage failure."""

    status_code = 500


class InternalError(ApiError):
    status_code = 500
