"""Pydantic schemas for API request validation."""

from pydantic import BaseModel, Field, model_validator


# ============================================================================
# Audit Schemas
# ============================================================================


class AuditRequest(BaseModel):
    """Schema for starting an audit.

    Either ``project_url`` and ``api_key`` (manual mode) or ``frontend_url``
    (discovery mode) must be supplied.
    """

    project_url: str | None = Field(None, pattern=r"^https://")
    api_key: str | None = Field(None, pattern=r"^(eyJ|sb_publishable_)")
    frontend_url: str | None = None

    @model_validator(mode="after")
    def check_mode(self) -> "AuditRequest":
        manual = self.project_url is not None or self.api_key is not None
        if manual and (self.project_url is None or self.api_key is None):
            raise ValueError("project_url and api_key must be provided together")
        if not manual and not self.frontend_url:
            raise ValueError("Provide project_url and api_key, or frontend_url")
        return self


# ============================================================================
# Discovery Schemas
# ============================================================================


class DiscoveryRequest(BaseModel):
    """Schema for discovering credentials from a front-end origin."""

    frontend_url: str = Field(..., min_length=1)


# ============================================================================
# Credential Schemas
# ============================================================================


class DecodeRequest(BaseModel):
    """Schema for decoding a public credential."""

    api_key: str = Field(..., min_length=1)
