"""Invoice field models for structured extraction.

An extraction schema maps field keys to a label and a required flag. The
default schema covers the fields the accounting export needs; templates can
add custom keys, which are stored like any other field.
"""

import re
from enum import Enum

from pydantic import BaseModel, Field, ValidationError, field_validator

from invoicehub.shared.errors import InvalidSchemaError

FIELD_KEY_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")


class FieldKey(str, Enum):
    """Keys of the default extraction schema."""

    INVOICE_NUMBER = "invoice_number"
    DATE = "date"
    DUE_DATE = "due_date"
    SUPPLIER = "supplier"
    TOTAL_AMOUNT = "total_amount"
    TAX_AMOUNT = "tax_amount"
    REFERENCE = "reference"
    DESCRIPTION = "description"

    @classmethod
    def parse(cls, key: str) -> "FieldKey | None":
        """Return the matching key, or None for custom fields."""
        try:
            return cls(key)
        except ValueError:
            return None


class FieldPosition(BaseModel):
    """Bounding box of a field on the source document (advisory)."""

    page: int = Field(1, ge=1)
    x: float
    y: float
    width: float = Field(ge=0)
    height: float = Field(ge=0)


class ExtractedField(BaseModel):
    """One field returned by an extraction provider."""

    value: str | None = None
    confidence: float | None = Field(None, ge=0, le=1)
    position: FieldPosition | None = None


class FieldSpec(BaseModel):
    """Schema entry for a single field."""

    label: str = Field(min_length=1)
    required: bool = False


class ExtractionSchema(BaseModel):
    """Mapping of field key to its label and required flag."""

    fields: dict[str, FieldSpec]

    @field_validator("fields")
    @classmethod
    def validate_keys(cls, v: dict[str, FieldSpec]) -> dict[str, FieldSpec]:
        if not v:
            raise ValueError("schema must define at least one field")
        invalid = [key for key in v if not FIELD_KEY_PATTERN.match(key)]
        if invalid:
            raise ValueError(f"invalid field keys: {', '.join(sorted(invalid))}")
        return v

    @classmethod
    def from_mapping(cls, data: object) -> "ExtractionSchema":
        """Build a schema from its stored JSON form.

        Args:
            data: Mapping of key -> {label, required}

        Returns:
            Validated ExtractionSchema

        Raises:
            InvalidSchemaError: If the mapping is malformed
        """
        try:
            return cls(fields=data)  # type: ignore[arg-type]
        except ValidationError as e:
            raise InvalidSchemaError(f"Invalid extraction schema: {e}") from e

    def to_mapping(self) -> dict[str, dict[str, object]]:
        return {key: spec.model_dump() for key, spec in self.fields.items()}

    def required_keys(self) -> list[str]:
        return [key for key, spec in self.fields.items() if spec.required]

    def labels(self) -> dict[str, str]:
        return {key: spec.label for key, spec in self.fields.items()}


DEFAULT_EXTRACTION_SCHEMA = ExtractionSchema(
    fields={
        FieldKey.INVOICE_NUMBER.value: FieldSpec(label="Invoice number", required=True),
        FieldKey.DATE.value: FieldSpec(label="Invoice date", required=True),
        FieldKey.DUE_DATE.value: FieldSpec(label="Due date"),
        FieldKey.SUPPLIER.value: FieldSpec(label="Supplier", required=True),
        FieldKey.TOTAL_AMOUNT.value: FieldSpec(label="Total amount", required=True),
        FieldKey.TAX_AMOUNT.value: FieldSpec(label="Tax amount"),
        FieldKey.REFERENCE.value: FieldSpec(label="Reference"),
        FieldKey.DESCRIPTION.value: FieldSpec(label="Description"),
    }
)
