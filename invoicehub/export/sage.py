"""Sage purchase invoice payload.

``build_sage_payload`` is a pure mapping from a validated invoice and its
fields to the document Sage expects; the adapters only transport it.
"""

from collections.abc import Iterable
from datetime import date
from decimal import Decimal
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from invoicehub.extraction.schema import FieldKey
from invoicehub.shared.config import Settings

ZERO = Decimal("0.00")


class InvoiceLike(Protocol):
    invoice_number: str | None
    invoice_date: date | None
    due_date: date | None
    supplier: str | None
    total_amount: Decimal | None
    tax_amount: Decimal | None


class FieldLike(Protocol):
    field_name: str
    field_value: str | None


class SagePayload(BaseModel):
    """Purchase invoice document in Sage's wire format."""

    model_config = ConfigDict(populate_by_name=True)

    invoice_number: str = Field("", alias="NumFacture")
    invoice_date: str = Field("", alias="DateFacture")
    due_date: str = Field("", alias="DateEcheance")
    supplier: str = Field("", alias="Fournisseur")
    amount_excl_tax: Decimal = Field(ZERO, alias="MontantHT")
    tax_amount: Decimal = Field(ZERO, alias="MontantTVA")
    amount_incl_tax: Decimal = Field(ZERO, alias="MontantTTC")
    reference: str = Field("", alias="Reference")
    description: str = Field("", alias="Description")
    document_type: str = Field("FACTURE", alias="TypeDocument")
    journal_code: str = Field("ACH", alias="CodeJournal")
    currency_code: str = Field("EUR", alias="DeviseCode")

    @field_serializer("amount_excl_tax", "tax_amount", "amount_incl_tax")
    def serialize_amount(self, value: Decimal) -> float:
        return float(value)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


def _field_value(fields: Iterable[FieldLike], key: FieldKey) -> str:
    for field in fields:
        if field.field_name == key.value:
            return field.field_value or ""
    return ""


def build_sage_payload(
    invoice: InvoiceLike,
    fields: Iterable[FieldLike],
    settings: Settings,
) -> SagePayload:
    """Map an invoice and its fields to a Sage payload.

    MontantHT is total minus tax only when both amounts are known, else 0.

    Args:
        invoice: Validated invoice
        fields: Its stored fields (reference and description come from here)
        settings: Provides document type, journal and currency codes

    Returns:
        SagePayload ready for submission
    """
    fields = list(fields)
    total = invoice.total_amount
    tax = invoice.tax_amount

    if total is not None and tax is not None:
        amount_excl_tax = Decimal(total) - Decimal(tax)
    else:
        amount_excl_tax = ZERO

    return SagePayload(
        invoice_number=invoice.invoice_number or "",
        invoice_date=invoice.invoice_date.isoformat() if invoice.invoice_date else "",
        due_date=invoice.due_date.isoformat() if invoice.due_date else "",
        supplier=invoice.supplier or "",
        amount_excl_tax=amount_excl_tax,
        tax_amount=Decimal(tax) if tax is not None else ZERO,
        amount_incl_tax=Decimal(total) if total is not None else ZERO,
        reference=_field_value(fields, FieldKey.REFERENCE),
        description=_field_value(fields, FieldKey.DESCRIPTION),
        document_type=settings.export_document_type,
        journal_code=settings.export_journal_code,
        currency_code=settings.export_currency_code,
    )
