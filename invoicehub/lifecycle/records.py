"""Read models returned by the lifecycle manager."""

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field

from invoicehub.repository.invoices import FieldWriteResult


class InvoiceRecord(BaseModel):
    """Invoice as exposed to callers."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str
    user_id: str
    title: str
    supplier: str | None = None
    invoice_number: str | None = None
    invoice_date: date | None = None
    due_date: date | None = None
    total_amount: Decimal | None = None
    tax_amount: Decimal | None = None
    status: str
    file_path: str | None = None
    file_type: str | None = None
    metadata: dict[str, Any] | None = Field(
        default=None, validation_alias="extra_metadata"
    )
    version: int
    exported_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class InvoiceFieldRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    field_name: str
    field_value: str | None = None
    confidence: float | None = None
    position_data: dict[str, Any] | None = None
    updated_at: datetime


class InvoiceDetails(BaseModel):
    """An invoice together with its fields."""

    invoice: InvoiceRecord
    fields: list[InvoiceFieldRecord]

    def field_values(self) -> dict[str, str | None]:
        return {field.field_name: field.field_value for field in self.fields}


class AnalysisOutcome(BaseModel):
    """Result of running extraction on an invoice.

    A successful analysis can still have failed field writes; they are listed
    in failed_fields and do not roll back the others.
    """

    invoice_id: str
    success: bool
    status: str
    provider: str | None = None
    error: str | None = None
    field_results: list[FieldWriteResult] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def failed_fields(self) -> list[str]:
        return [result.field_name for result in self.field_results if not result.success]


class UploadOutcome(BaseModel):
    """Stored invoice plus the analysis run right after upload, if requested."""

    invoice: InvoiceRecord
    analysis: AnalysisOutcome | None = None
