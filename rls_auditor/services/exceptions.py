"""Audit error taxonomy.

Ingestion-stage failures (bad input, catalog fetch, credential decoding,
discovery) raise one of these and abort the audit. Probe-level failures are
never raised; they are recorded on the affected entity's result instead.
"""

from typing import Any


class AuditError(Exception):
    """Base class for errors that abort an audit with a user-facing message."""

    category = "audit_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"category": self.category, "message": self.message}


class InputValidationError(AuditError):
    """Malformed endpoint URL, origin URL or credential literal."""

    category = "input_validation"


class NetworkError(AuditError):
    """The backend or origin was unreachable or timed out."""

    category = "network"


class AuthError(AuditError):
    """The backend answered with an unauthorized/forbidden status."""

    category = "auth"


class NotFoundError(AuditError):
    """The API description (or another required resource) is absent."""

    category = "not_found"


class DecodeError(AuditError):
    """A credential segment could not be base64/JSON decoded."""

    category = "decode"

    def __init__(self, message: str, segment: str | None = None):
        super().__init__(message)
        self.segment = segment

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["segment"] = self.segment
        return data


class InvalidCredential(DecodeError):
    """The credential is not made of exactly three dot-separated segments."""


class PartialDiscoveryError(AuditError):
    """Discovery recovered only one of endpoint and credential."""

    category = "partial_discovery"

    def __init__(self, message: str, result: Any):
        super().__init__(message)
        self.result = result

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["discovery"] = self.result.model_dump(mode="json", by_alias=True)
        return data
