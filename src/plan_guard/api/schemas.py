"""Pydantic request/response schemas for the HTTP surface."""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    version: str
    tiers: int
    operations: int


class ValidateRequest(BaseModel):
    """Body of ``POST /api/operations/validate``.

    ``context`` is passed through untouched so that malformed context
    becomes an ``INVALID_CONTEXT`` verdict rather than a 422.
    """

    user_id: str = Field(..., min_length=1)
    subscription_level: str = "free"
    operation: str
    context: dict[str, Any] | None = None


class RecordUsageRequest(BaseModel):
    """Body of ``POST /api/usage/record``."""

    user_id: str = Field(..., min_length=1)
    operation: str
    actual_cost: Decimal | None = Field(None, ge=0)


class ErrorResponse(BaseModel):
    detail: str
