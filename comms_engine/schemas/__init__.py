"""Comms Engine API Schemas.

Shared response shapes live here; request and response bodies specific to
one router are declared next to it.
"""

from .base import (
    CommsBaseModel,
    CountResponse,
    ErrorDetail,
    ErrorResponse,
    PageInfo,
    SendResultResponse,
)

__all__ = [
    "CommsBaseModel",
    "CountResponse",
    "ErrorDetail",
    "ErrorResponse",
    "PageInfo",
    "SendResultResponse",
]
