"""ORM models for invoices, their extracted fields and extraction templates."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    pass


class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processed', 'error', 'validated')",
            name="ck_invoices_status",
        ),
        CheckConstraint(
            "total_amount IS NULL OR total_amount >= 0",
            name="ck_invoices_total_amount_non_negative",
        ),
        CheckConstraint(
            "tax_amount IS NULL OR tax_amount >= 0",
            name="ck_invoices_tax_amount_non_negative",
        ),
    )

    id = Column(String(32), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    title = Column(String(255), nullable=False)

    supplier = Column(String(255), nullable=True)
    invoice_number = Column(String(100), nullable=True)
    invoice_date = Column(Date, nullable=True)
    due_date = Column(Date, nullable=True)
    total_amount = Column(Numeric(12, 2), nullable=True)
    tax_amount = Column(Numeric(12, 2), nullable=True)

    status = Column(String(20), nullable=False, default="pending")
    file_path = Column(String(512), nullable=True)
    file_type = Column(String(100), nullable=True)
    # "metadata" is reserved on declarative classes
    extra_metadata = Column("metadata", JSON, nullable=True)

    version = Column(Integer, nullable=False, default=1)
    exported_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<Invoice {self.id} status={self.status} v{self.version}>"


class InvoiceField(Base):
    __tablename__ = "invoice_fields"
    __table_args__ = (
        UniqueConstraint("invoice_id", "field_name", name="uq_invoice_fields_invoice_field"),
        CheckConstraint(
            "confidence IS NULL OR (confidence >= 0 AND confidence <= 1)",
            name="ck_invoice_fields_confidence_range",
        ),
    )

    id = Column(String(32), primary_key=True, default=new_id)
    invoice_id = Column(
        String(32),
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    field_name = Column(String(64), nullable=False)
    field_value = Column(Text, nullable=True)
    confidence = Column(Float, nullable=True)
    position_data = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class ExtractionTemplate(Base):
    __tablename__ = "extraction_templates"

    id = Column(String(32), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    # NULL owner means a shared template
    user_id = Column(String(64), nullable=True, index=True)
    is_public = Column(Boolean, nullable=False, default=False)
    field_schema = Column("schema", JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
