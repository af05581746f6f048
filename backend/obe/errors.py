from __future__ import annotations

from typing import Any


class ObeError(Exception):
    status_code = 500

    def __init__(self, message: str, **detail: Any):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def as_dict(self) -> dict:
        return {"detail": self.message, **self.detail}


class NotFoundError(ObeError):
    status_code = 404


class InvalidReferenceError(ObeError):
    status_code = 400


class ValidationError(ObeError):
    status_code = 400

    def __init__(self, message: str, field: str | None = None, **detail: Any):
        super().__init__(message, field=field, **detail)
        self.field = field


class DuplicateLevelError(ValidationError):
    status_code = 409


class OverlapError(ObeError):
    status_code = 409

    def __init__(self, message: str, conflicts: list):
        super().__init__(message, conflicts=[c.as_record() for c in conflicts])
        self.conflicts = list(conflicts)


class ConcurrentUpdateError(ObeError):
    status_code = 409


class StorageTimeoutError(ObeError):
    status_code = 503


class EmptyInputError(ObeError):
    """Zero records to aggregate. Aggregators return ``None`` instead of raising this."""
