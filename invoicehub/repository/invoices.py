"""Invoice and invoice field persistence.

Every public method opens its own session and commits before returning, so
callers never share a transaction. Returned ORM objects are detached but keep
their loaded attributes (expire_on_commit=False).
"""

import asyncio
import logging
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field
from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from invoicehub.repository.database import Database
from invoicehub.repository.models import Invoice, InvoiceField, utcnow
from invoicehub.shared.errors import InvalidAmountError, InvoiceNotFoundError

logger = logging.getLogger(__name__)

UPDATABLE_COLUMNS = frozenset(
    {
        "title",
        "supplier",
        "invoice_number",
        "invoice_date",
        "due_date",
        "total_amount",
        "tax_amount",
        "status",
        "file_path",
        "file_type",
        "extra_metadata",
        "exported_at",
    }
)


class FieldWrite(BaseModel):
    """One field to create or overwrite."""

    field_name: str
    value: str | None = None
    confidence: float | None = Field(None, ge=0, le=1)
    position: dict[str, Any] | None = None


class FieldWriteResult(BaseModel):
    """Outcome of a single field write in a batch."""

    field_name: str
    success: bool
    error: str | None = None


def _check_values(values: dict[str, Any]) -> None:
    unknown = set(values) - UPDATABLE_COLUMNS
    if unknown:
        raise ValueError(f"Unknown invoice columns: {', '.join(sorted(unknown))}")
    for name in ("total_amount", "tax_amount"):
        amount = values.get(name)
        if amount is not None and Decimal(amount) < 0:
            raise InvalidAmountError(name, amount)


class InvoiceRepository:
    """CRUD over invoices and their extracted fields."""

    def __init__(self, database: Database, field_write_concurrency: int = 4) -> None:
        """Initialize repository.

        Args:
            database: Database providing sessions
            field_write_concurrency: Maximum field writes in flight in upsert_fields
        """
        self.database = database
        self.field_write_concurrency = field_write_concurrency

    async def _load(self, session: AsyncSession, invoice_id: str, user_id: str) -> Invoice:
        invoice = await session.scalar(
            select(Invoice).where(Invoice.id == invoice_id, Invoice.user_id == user_id)
        )
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)
        return invoice

    async def save(self, user_id: str, values: dict[str, Any]) -> Invoice:
        """Create or update an invoice.

        An ``id`` key selects an update of that invoice; without it a new
        invoice is created.

        Args:
            user_id: Owner of the invoice
            values: Column values, optionally including ``id``

        Returns:
            The stored invoice
        """
        values = dict(values)
        invoice_id = values.pop("id", None)
        if invoice_id:
            return await self.update(invoice_id, user_id, values)
        title = values.pop("title", None) or "Untitled invoice"
        return await self.create(user_id, title, **values)

    async def create(self, user_id: str, title: str, **values: Any) -> Invoice:
        _check_values(values)
        invoice = Invoice(user_id=user_id, title=title, **values)
        async with self.database.session() as session:
            session.add(invoice)
            await session.commit()
        logger.info(f"Created invoice {invoice.id} for user {user_id}")
        return invoice

    async def get(self, invoice_id: str, user_id: str) -> Invoice:
        """Fetch an invoice owned by the user.

        Raises:
            InvoiceNotFoundError: Unknown id or invoice owned by someone else
        """
        async with self.database.session() as session:
            return await self._load(session, invoice_id, user_id)

    async def list_for_user(
        self,
        user_id: str,
        status: str | None = None,
        skip: int = 0,
        limit: int = 50,
    ) -> list[Invoice]:
        query = select(Invoice).where(Invoice.user_id == user_id)
        if status is not None:
            query = query.where(Invoice.status == status)
        query = query.order_by(Invoice.created_at.desc(), Invoice.id).offset(skip).limit(limit)
        async with self.database.session() as session:
            return list(await session.scalars(query))

    async def update(self, invoice_id: str, user_id: str, values: dict[str, Any]) -> Invoice:
        """Apply column values and bump the version.

        Raises:
            InvoiceNotFoundError: Unknown id or foreign invoice
            InvalidAmountError: Negative total or tax amount
        """
        _check_values(values)
        async with self.database.session() as session:
            invoice = await self._load(session, invoice_id, user_id)
            for name, value in values.items():
                setattr(invoice, name, value)
            invoice.version = invoice.version + 1
            invoice.updated_at = utcnow()
            await session.commit()
        return invoice

    async def update_if_version(
        self,
        invoice_id: str,
        user_id: str,
        expected_version: int,
        values: dict[str, Any],
    ) -> Invoice | None:
        """Apply column values only if the invoice is still at expected_version.

        Returns:
            The updated invoice, or None when another write got there first
        """
        _check_values(values)
        assignments = {getattr(Invoice, name): value for name, value in values.items()}
        assignments[Invoice.version] = expected_version + 1
        assignments[Invoice.updated_at] = utcnow()
        async with self.database.session() as session:
            result = await session.execute(
                update(Invoice)
                .where(
                    Invoice.id == invoice_id,
                    Invoice.user_id == user_id,
                    Invoice.version == expected_version,
                )
                .values(assignments)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await session.rollback()
                return None
            invoice = await self._load(session, invoice_id, user_id)
            await session.commit()
        return invoice

    async def delete(self, invoice_id: str, user_id: str) -> Invoice:
        """Delete an invoice and its fields in one transaction.

        Returns:
            The deleted invoice (detached), so callers can clean up its file
        """
        async with self.database.session() as session:
            invoice = await self._load(session, invoice_id, user_id)
            await session.execute(delete(InvoiceField).where(InvoiceField.invoice_id == invoice_id))
            await session.delete(invoice)
            await session.commit()
        logger.info(f"Deleted invoice {invoice_id}")
        return invoice

    async def list_fields(self, invoice_id: str) -> list[InvoiceField]:
        query = (
            select(InvoiceField)
            .where(InvoiceField.invoice_id == invoice_id)
            .order_by(InvoiceField.created_at, InvoiceField.field_name)
        )
        async with self.database.session() as session:
            return list(await session.scalars(query))

    @staticmethod
    async def _upsert(
        session: AsyncSession,
        invoice_id: str,
        write: FieldWrite,
        keep_position: bool = False,
    ) -> InvoiceField:
        field = await session.scalar(
            select(InvoiceField).where(
                InvoiceField.invoice_id == invoice_id,
                InvoiceField.field_name == write.field_name,
            )
        )
        if field is None:
            field = InvoiceField(invoice_id=invoice_id, field_name=write.field_name)
            session.add(field)
        field.field_value = write.value
        field.confidence = write.confidence
        if not keep_position:
            field.position_data = write.position
        field.updated_at = utcnow()
        return field

    async def upsert_field(self, invoice_id: str, write: FieldWrite) -> InvoiceField:
        async with self.database.session() as session:
            field = await self._upsert(session, invoice_id, write)
            await session.commit()
        return field

    async def upsert_fields(
        self, invoice_id: str, writes: list[FieldWrite]
    ) -> list[FieldWriteResult]:
        """Write a batch of fields concurrently, each in its own transaction.

        A failed write does not undo the others; it is logged and reported in
        its FieldWriteResult.

        Args:
            invoice_id: Invoice owning the fields
            writes: Fields to create or overwrite

        Returns:
            One result per write, in input order
        """
        semaphore = asyncio.Semaphore(self.field_write_concurrency)

        async def write_one(write: FieldWrite) -> FieldWriteResult:
            async with semaphore:
                try:
                    await self.upsert_field(invoice_id, write)
                except SQLAlchemyError as e:
                    logger.warning(
                        f"Failed to write field {write.field_name} of invoice {invoice_id}: {e}"
                    )
                    return FieldWriteResult(field_name=write.field_name, success=False, error=str(e))
            return FieldWriteResult(field_name=write.field_name, success=True)

        return list(await asyncio.gather(*(write_one(w) for w in writes)))

    async def apply_validation(
        self,
        invoice_id: str,
        user_id: str,
        fields: dict[str, str],
        values: dict[str, Any] | None = None,
    ) -> Invoice:
        """Freeze the given field values and mark the invoice validated.

        The field writes, the column values and the status change share one
        transaction.

        Args:
            invoice_id: Invoice to validate
            user_id: Owner of the invoice
            fields: Field name -> confirmed value, stored with confidence 1.0
            values: Invoice column values derived from the confirmed fields
        """
        values = values or {}
        _check_values(values)
        async with self.database.session() as session:
            invoice = await self._load(session, invoice_id, user_id)
            for name, value in values.items():
                setattr(invoice, name, value)
            for name, value in fields.items():
                await self._upsert(
                    session,
                    invoice_id,
                    FieldWrite(field_name=name, value=value, confidence=1.0),
                    keep_position=True,
                )
            invoice.status = "validated"
            invoice.version = invoice.version + 1
            invoice.updated_at = utcnow()
            await session.commit()
        return invoice
