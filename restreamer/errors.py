"""Error types raised by the republishing engine."""

from __future__ import annotations


class RestreamerError(Exception):
    """Base class for engine errors."""


class NotFoundError(RestreamerError):
    def __init__(self, kind: str, identifier: object):
        super().__init__(f"{kind} {identifier} not found")
        self.kind = kind
        self.identifier = identifier


class AccessDeniedError(RestreamerError):
    pass


class ValidationError(RestreamerError):
    pass


class MediaServerError(RestreamerError):
    """The media server rejected a request or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
