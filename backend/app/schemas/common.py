"""Shared response envelope and base model for the commerce API."""

from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

T = TypeVar("T")


class CamelModel(BaseModel):
    """Serialises field names as camelCase; accepts either case on input."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class Envelope(BaseModel, Generic[T]):
    """Success envelope ``{success: true, data: ...}``."""

    success: bool = True
    data: T | None = None


class SuccessResponse(BaseModel):
    success: bool = True


class ErrorBody(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class ErrorResponse(BaseModel):
    """Error envelope ``{success: false, error: {code, message, details?}}``."""

    success: bool = False
    error: ErrorBody
