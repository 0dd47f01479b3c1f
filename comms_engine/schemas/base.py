"""Base schemas and common types for the Comms Engine API."""

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# BASE SCHEMAS
# =============================================================================


class CommsBaseModel(BaseModel):
    """Base model with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,  # Enable ORM mode
        populate_by_name=True,
        use_enum_values=True,
    )


# =============================================================================
# PAGINATION
# =============================================================================


class PageInfo(CommsBaseModel):
    """Limit/offset window of a list response."""

    total: int
    limit: int
    offset: int
    has_more: bool

    @classmethod
    def create(cls, total: int, limit: int, offset: int) -> "PageInfo":
        return cls(total=total, limit=limit, offset=offset, has_more=offset + limit < total)


# =============================================================================
# ERROR RESPONSES
# =============================================================================


class ErrorDetail(CommsBaseModel):
    """Detailed error information."""

    field: str | None = None
    message: str
    code: str


class ErrorResponse(CommsBaseModel):
    """Standard error response format."""

    error: str
    message: str
    details: list[ErrorDetail] = []
    request_id: str | None = None


# =============================================================================
# COMMON RESPONSES
# =============================================================================


class CountResponse(CommsBaseModel):
    """Number of rows an administrative operation touched."""

    count: int = Field(..., ge=0)
    message: str | None = None


class SendResultResponse(CommsBaseModel):
    """Outcome of a single provider send."""

    success: bool
    provider_message_id: str | None = None
    error: str | None = None
