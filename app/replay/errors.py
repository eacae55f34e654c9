"""
Typed errors raised by the campaign core.

Validation, not-found and compliance errors carry user-facing messages.
Desync and storage errors are internal; HTTP handlers log them and return an
opaque 500.
"""
from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str

    def to_dict(self) -> dict:
        return {"field": self.field, "message": self.message}


class CampaignError(Exception):
    status_code = 500
    public = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.message, "error_type": type(self).__name__}


class ValidationError(CampaignError):
    status_code = 400
    public = True

    def __init__(self, message: str, errors: list[FieldError] | None = None):
        super().__init__(message)
        self.errors = list(errors or [])

    def to_dict(self) -> dict:
        d = super().to_dict()
        if self.errors:
            d["details"] = [e.to_dict() for e in self.errors]
        return d


class NotFoundError(CampaignError):
    status_code = 404
    public = True


class ComplianceDeniedError(CampaignError):
    status_code = 403
    public = True

    def __init__(self, message: str, *, event_type: str | None = None, campaign_id: str | None = None):
        super().__init__(message)
        self.event_type = event_type
        self.campaign_id = campaign_id


class ProjectionDesyncError(CampaignError):
    """Event store and projection table have drifted apart."""


class StorageError(CampaignError):
    """Underlying persistence failure. Safe to retry."""


class PartialApplyError(CampaignError):
    def __init__(self, message: str, errors: list[dict]):
        super().__init__(message)
        self.errors = list(errors)
