from __future__ import annotations


class TrackerError(Exception):
    pass


class NotFoundError(TrackerError):
    pass


class UnauthorizedError(TrackerError):
    pass


class ValidationError(TrackerError):
    pass


class ConflictError(TrackerError):
    pass
