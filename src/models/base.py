"""Shared Pydantic base models and utilities."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict


class WellpulseBase(BaseModel):
    """Base model with shared config for all Wellpulse schemas."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


# ---------- Generic response wrappers ----------


class SuccessResponse(BaseModel):
    success: bool = True
    data: Any = None


class ErrorResponse(BaseModel):
    error: str
    code: str


def ok(data: Any) -> dict[str, Any]:
    """Wrap a payload in the ``{success, data}`` envelope."""
    return SuccessResponse(data=data).model_dump()
