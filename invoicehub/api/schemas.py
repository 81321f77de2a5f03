"""Request and response bodies of the HTTP API."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from invoicehub.extraction.schema import FieldSpec


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    service: str


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    ready: bool
    database: bool
    storage: bool


class ErrorResponse(BaseModel):
    detail: str
    error: str
    missing: list[str] | None = None


class ValidateRequest(BaseModel):
    """Confirmed field values for an invoice."""

    fields: dict[str, str]
    template_id: str | None = None


class DocumentUrlResponse(BaseModel):
    url: str


class TemplateCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1, max_length=255)
    field_schema: dict[str, FieldSpec] = Field(alias="schema")
    is_public: bool = False


class TemplateUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str | None = Field(None, min_length=1, max_length=255)
    field_schema: dict[str, FieldSpec] | None = Field(None, alias="schema")
    is_public: bool | None = None


class TemplateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str | None
    name: str
    user_id: str | None = None
    is_public: bool
    field_schema: dict[str, FieldSpec] = Field(alias="schema")
    created_at: datetime | None = None
    updated_at: datetime | None = None
