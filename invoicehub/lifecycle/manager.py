"""Invoice lifecycle orchestration.

Drives an invoice from upload through extraction, user validation and export,
coordinating the storage gateway, the extraction provider, the repositories
and the export adapter. Every operation takes an explicit UserSession.

Blocking MinIO calls run in worker threads so the event loop stays free.
"""

import asyncio
import logging
import time
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from invoicehub.export.base import ExportAdapter, ExportResult
from invoicehub.export.sage import build_sage_payload
from invoicehub.extraction.base import ExtractionProvider, ExtractionResult
from invoicehub.extraction.schema import (
    DEFAULT_EXTRACTION_SCHEMA,
    ExtractionSchema,
    FieldKey,
)
from invoicehub.lifecycle.parsing import parse_date, parse_decimal
from invoicehub.lifecycle.records import (
    AnalysisOutcome,
    InvoiceDetails,
    InvoiceFieldRecord,
    InvoiceRecord,
    UploadOutcome,
)
from invoicehub.lifecycle.states import (
    InvoiceStatus,
    LifecycleEvent,
    ensure_can,
    next_status,
)
from invoicehub.repository.invoices import FieldWrite, InvoiceRepository
from invoicehub.repository.models import Invoice
from invoicehub.repository.templates import TemplateRepository
from invoicehub.shared import metrics
from invoicehub.shared.config import Settings
from invoicehub.shared.errors import (
    ConcurrentModificationError,
    DocumentNotFoundError,
    InvalidRequestError,
    InvalidSchemaError,
    InvalidTransitionError,
    InvoiceHubError,
    MissingRequiredFieldsError,
    StorageError,
)
from invoicehub.shared.progress import ProgressCallback
from invoicehub.shared.session import UserSession, require_session
from invoicehub.storage.service import StorageService, build_object_name, validate_document

logger = logging.getLogger(__name__)

TEXT_COLUMNS = {
    FieldKey.INVOICE_NUMBER: "invoice_number",
    FieldKey.SUPPLIER: "supplier",
}
DATE_COLUMNS = {
    FieldKey.DATE: "invoice_date",
    FieldKey.DUE_DATE: "due_date",
}
AMOUNT_COLUMNS = {
    FieldKey.TOTAL_AMOUNT: "total_amount",
    FieldKey.TAX_AMOUNT: "tax_amount",
}


def known_values(field_values: Mapping[str, str | None]) -> dict[FieldKey, str | None]:
    """Keep the default-schema keys of a field name -> value map."""
    known: dict[FieldKey, str | None] = {}
    for name, raw in field_values.items():
        key = FieldKey.parse(name)
        if key is not None:
            known[key] = raw
    return known


def scalar_values(known: Mapping[FieldKey, str | None]) -> dict[str, Any]:
    """Map known field values onto invoice columns.

    Values that are empty, unparseable or negative amounts are skipped so the
    column keeps its previous value.

    Args:
        known: Default-schema key -> text value

    Returns:
        Column name -> typed value
    """
    values: dict[str, Any] = {}
    for key, raw in known.items():
        if raw is None or not raw.strip():
            continue
        if key in TEXT_COLUMNS:
            values[TEXT_COLUMNS[key]] = raw.strip()
        elif key in DATE_COLUMNS:
            parsed_date = parse_date(raw)
            if parsed_date is not None:
                values[DATE_COLUMNS[key]] = parsed_date
        elif key in AMOUNT_COLUMNS:
            amount = parse_decimal(raw)
            if amount is not None and amount >= 0:
                values[AMOUNT_COLUMNS[key]] = amount
    return values


class InvoiceLifecycleManager:
    """Orchestrates upload, analysis, validation, export and deletion."""

    def __init__(
        self,
        settings: Settings,
        storage: StorageService,
        extraction: ExtractionProvider,
        invoices: InvoiceRepository,
        templates: TemplateRepository,
        exporter: ExportAdapter,
    ) -> None:
        self.settings = settings
        self.storage = storage
        self.extraction = extraction
        self.invoices = invoices
        self.templates = templates
        self.exporter = exporter

    # Queries

    async def get_invoice(self, session: UserSession | None, invoice_id: str) -> InvoiceDetails:
        user = require_session(session)
        invoice = await self.invoices.get(invoice_id, user.user_id)
        return await self._details(invoice)

    async def list_invoices(
        self,
        session: UserSession | None,
        status: InvoiceStatus | None = None,
        skip: int = 0,
        limit: int = 50,
    ) -> list[InvoiceRecord]:
        user = require_session(session)
        invoices = await self.invoices.list_for_user(
            user.user_id,
            status=status.value if status is not None else None,
            skip=skip,
            limit=limit,
        )
        return [InvoiceRecord.model_validate(invoice) for invoice in invoices]

    async def get_document_url(self, session: UserSession | None, invoice_id: str) -> str:
        """Return a readable URL for the invoice document.

        Raises:
            DocumentNotFoundError: No file attached or no URL could be produced
        """
        user = require_session(session)
        invoice = await self.invoices.get(invoice_id, user.user_id)
        if not invoice.file_path:
            raise DocumentNotFoundError(None)
        url = await asyncio.to_thread(self.storage.get_public_url, invoice.file_path)
        if url is None:
            raise DocumentNotFoundError(invoice.file_path)
        return url

    async def resolve_schema(
        self, session: UserSession | None, template_id: str | None
    ) -> ExtractionSchema:
        """Return the extraction schema of a template, or the default one.

        Raises:
            TemplateNotFoundError: Unknown template or private template of another user
            InvalidSchemaError: The stored schema is malformed
        """
        user = require_session(session)
        if template_id is None:
            return DEFAULT_EXTRACTION_SCHEMA
        template = await self.templates.get(template_id, user.user_id)
        return ExtractionSchema.from_mapping(template.field_schema)

    # Upload

    async def upload_invoice(
        self,
        session: UserSession | None,
        data: bytes,
        content_type: str | None,
        title: str | None = None,
        analyze: bool = False,
        template_id: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> UploadOutcome:
        """Store a new invoice document and create its pending record.

        The document is validated before anything is written. If the storage
        upload fails the pending record is removed again. When analyze is set,
        extraction runs right away; its failure does not fail the upload.

        Args:
            session: Signed-in user
            data: Document bytes
            content_type: MIME type (PDF, JPEG or PNG)
            title: Display title (defaults to a generic one)
            analyze: Run extraction after a successful upload
            template_id: Extraction template for the immediate analysis
            on_progress: Optional callback receiving upload progress (0-100)

        Returns:
            UploadOutcome with the stored invoice and optional analysis

        Raises:
            InvalidRequestError: Unsupported type, empty or oversized document
            StorageError: Upload to object storage failed
        """
        user = require_session(session)
        try:
            validate_document(len(data), content_type)
        except InvalidRequestError:
            metrics.invoices_uploaded_total.labels(status="rejected").inc()
            raise
        metrics.invoice_upload_size_bytes.observe(len(data))

        invoice = await self.invoices.create(
            user.user_id,
            title or "Untitled invoice",
            status=InvoiceStatus.PENDING.value,
            file_type=content_type,
        )
        object_name = build_object_name(user.user_id, invoice.id, content_type)

        result = await asyncio.to_thread(
            self.storage.upload_document, data, object_name, content_type, on_progress
        )
        if not result.success:
            metrics.invoices_uploaded_total.labels(status="failed").inc()
            logger.error(f"Upload of invoice {invoice.id} failed: {result.error}")
            await self.invoices.delete(invoice.id, user.user_id)
            raise StorageError(f"Document upload failed: {result.error}")

        invoice = await self.invoices.update(invoice.id, user.user_id, {"file_path": object_name})
        metrics.invoices_uploaded_total.labels(status="success").inc()
        logger.info(f"Uploaded invoice {invoice.id} ({len(data)} bytes) to {object_name}")

        analysis = None
        if analyze:
            try:
                analysis = await self._analyze(
                    user, invoice, template_id, on_progress=None, check_exists=False
                )
            except InvoiceHubError as e:
                logger.warning(f"Analysis after upload of invoice {invoice.id} failed: {e}")
                analysis = AnalysisOutcome(
                    invoice_id=invoice.id,
                    success=False,
                    status=invoice.status,
                    error=str(e),
                )
            invoice = await self.invoices.get(invoice.id, user.user_id)

        return UploadOutcome(invoice=InvoiceRecord.model_validate(invoice), analysis=analysis)

    # Analysis

    async def analyze(
        self,
        session: UserSession | None,
        invoice_id: str,
        template_id: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> AnalysisOutcome:
        """Run extraction on an invoice and store the fields.

        Args:
            session: Signed-in user
            invoice_id: Invoice to analyze
            template_id: Extraction template (default schema when None)
            on_progress: Optional callback receiving advisory progress (0-100)

        Returns:
            AnalysisOutcome; extraction failures are reported here with the
            invoice moved to 'error'

        Raises:
            InvalidTransitionError: Invoice is already validated
            DocumentNotFoundError: No file, missing object or no readable URL
            ConcurrentModificationError: Stale analysis under reject_stale policy
        """
        user = require_session(session)
        invoice = await self.invoices.get(invoice_id, user.user_id)
        return await self._analyze(user, invoice, template_id, on_progress, check_exists=True)

    async def _analyze(
        self,
        user: UserSession,
        invoice: Invoice,
        template_id: str | None,
        on_progress: ProgressCallback | None,
        check_exists: bool,
    ) -> AnalysisOutcome:
        ensure_can(invoice.status, "analyze")
        schema = await self.resolve_schema(user, template_id)

        path = invoice.file_path
        if not path:
            raise DocumentNotFoundError(None)
        # Freshly uploaded objects may not be listed yet
        if check_exists and not await asyncio.to_thread(self.storage.exists, path):
            raise DocumentNotFoundError(path)
        document_url = await asyncio.to_thread(self.storage.get_public_url, path)
        if document_url is None:
            raise DocumentNotFoundError(path)

        expected_version = invoice.version
        provider = self.extraction.provider_name
        logger.info(f"Analyzing invoice {invoice.id} with provider '{provider}'")

        started = time.monotonic()
        try:
            result = await self.extraction.analyze_document(document_url, schema, on_progress)
        except Exception as e:
            logger.exception(f"Extraction provider '{provider}' raised for invoice {invoice.id}")
            result = ExtractionResult(success=False, error=str(e), provider=provider)
        metrics.extraction_duration_seconds.labels(provider=provider).observe(
            time.monotonic() - started
        )

        metadata = dict(invoice.extra_metadata or {})
        metadata.update(
            provider=result.provider,
            template_id=template_id,
            extraction_schema=schema.to_mapping(),
            analyzed_at=datetime.now(UTC).isoformat(),
        )

        if not result.is_well_formed:
            error = result.error or "Extraction returned no fields"
            metrics.extraction_requests_total.labels(provider=provider, status="failed").inc()
            logger.warning(f"Extraction failed for invoice {invoice.id}: {error}")
            metadata["error"] = error
            status = next_status(invoice.status, LifecycleEvent.ANALYZE_FAILED)
            await self._write_analysis(
                invoice, user, expected_version, {"status": status.value, "extra_metadata": metadata}
            )
            self._record_transition(invoice.status, status)
            return AnalysisOutcome(
                invoice_id=invoice.id,
                success=False,
                status=status.value,
                provider=provider,
                error=error,
            )

        metrics.extraction_requests_total.labels(provider=provider, status="success").inc()
        metadata["raw_text"] = result.raw_text
        metadata.pop("error", None)
        status = next_status(invoice.status, LifecycleEvent.ANALYZE_SUCCEEDED)

        values = scalar_values({key: field.value for key, field in result.known_fields().items()})
        custom = result.custom_fields()
        if custom:
            logger.info(f"Invoice {invoice.id} has {len(custom)} template-specific fields")
        values.update(status=status.value, extra_metadata=metadata)
        await self._write_analysis(invoice, user, expected_version, values)

        writes = [
            FieldWrite(
                field_name=key,
                value=field.value,
                confidence=field.confidence,
                position=field.position.model_dump() if field.position else None,
            )
            for key, field in result.fields.items()
        ]
        field_results = await self.invoices.upsert_fields(invoice.id, writes)
        failed = [r.field_name for r in field_results if not r.success]
        if failed:
            metrics.field_write_failures_total.inc(len(failed))
            logger.warning(
                f"{len(failed)} of {len(writes)} fields of invoice {invoice.id} "
                f"could not be stored: {', '.join(failed)}"
            )

        self._record_transition(invoice.status, status)
        if on_progress is not None:
            on_progress(100)

        return AnalysisOutcome(
            invoice_id=invoice.id,
            success=True,
            status=status.value,
            provider=provider,
            field_results=field_results,
        )

    async def _write_analysis(
        self,
        invoice: Invoice,
        user: UserSession,
        expected_version: int,
        values: dict[str, Any],
    ) -> Invoice:
        if self.settings.analysis_conflict_policy == "reject_stale":
            updated = await self.invoices.update_if_version(
                invoice.id, user.user_id, expected_version, values
            )
            if updated is None:
                raise ConcurrentModificationError(invoice.id)
            return updated
        return await self.invoices.update(invoice.id, user.user_id, values)

    # Validation

    async def validate(
        self,
        session: UserSession | None,
        invoice_id: str,
        fields: dict[str, str],
        template_id: str | None = None,
    ) -> InvoiceDetails:
        """Confirm field values and mark the invoice validated.

        Only the submitted fields are written, each with confidence 1.0.
        Submitting the same values again to a validated invoice is a no-op.

        Args:
            session: Signed-in user
            invoice_id: Invoice to validate
            fields: Field name -> confirmed value
            template_id: Schema whose required keys are enforced (defaults to
                the schema used for the last analysis, even if its template
                was deleted since)

        Returns:
            The validated invoice with its fields

        Raises:
            InvalidTransitionError: Invoice not processed, has no fields, or
                is validated with different values
            MissingRequiredFieldsError: Required keys empty after the merge
        """
        user = require_session(session)
        invoice = await self.invoices.get(invoice_id, user.user_id)
        existing = await self.invoices.list_fields(invoice.id)

        if invoice.status == InvoiceStatus.VALIDATED.value:
            if self._already_applied(existing, fields):
                logger.info(f"Invoice {invoice.id} already validated with these values")
                return self._to_details(invoice, existing)
            raise InvalidTransitionError(
                invoice.status, "validate", "invoice is already validated"
            )

        ensure_can(invoice.status, "validate")
        if not existing:
            raise InvalidTransitionError(invoice.status, "validate", "invoice has no fields")

        if template_id is not None:
            schema = await self.resolve_schema(user, template_id)
        else:
            schema = self._analysis_schema(invoice)

        merged = {field.field_name: field.field_value for field in existing}
        merged.update(fields)
        missing = [key for key in schema.required_keys() if not (merged.get(key) or "").strip()]
        if missing:
            raise MissingRequiredFieldsError(missing)

        status = next_status(invoice.status, LifecycleEvent.VALIDATE)
        updated = await self.invoices.apply_validation(
            invoice.id, user.user_id, fields, scalar_values(known_values(fields))
        )
        self._record_transition(invoice.status, status)
        logger.info(f"Validated invoice {invoice.id} ({len(fields)} fields confirmed)")
        return await self._details(updated)

    @staticmethod
    def _analysis_schema(invoice: Invoice) -> ExtractionSchema:
        """Schema the invoice was last analyzed with, or the default one."""
        stored = (invoice.extra_metadata or {}).get("extraction_schema")
        if not stored:
            return DEFAULT_EXTRACTION_SCHEMA
        try:
            return ExtractionSchema.from_mapping(stored)
        except InvalidSchemaError as e:
            logger.warning(f"Stored schema of invoice {invoice.id} is unusable: {e}")
            return DEFAULT_EXTRACTION_SCHEMA

    @staticmethod
    def _already_applied(existing: list[Any], fields: dict[str, str]) -> bool:
        current = {field.field_name: field for field in existing}
        for name, value in fields.items():
            field = current.get(name)
            if field is None or field.field_value != value or field.confidence != 1.0:
                return False
        return True

    # Export

    async def export_invoice(self, session: UserSession | None, invoice_id: str) -> ExportResult:
        """Submit a validated invoice to the accounting system.

        The invoice status never changes; a successful export records
        exported_at.

        Raises:
            InvalidTransitionError: Invoice not validated, or already exported
                while resubmission is disabled
        """
        user = require_session(session)
        invoice = await self.invoices.get(invoice_id, user.user_id)
        ensure_can(invoice.status, "export")

        if invoice.exported_at is not None:
            if not self.settings.export_allow_resubmit:
                raise InvalidTransitionError(
                    invoice.status, "export", "invoice was already exported"
                )
            logger.info(f"Resubmitting invoice {invoice.id}, first exported {invoice.exported_at}")

        fields = await self.invoices.list_fields(invoice.id)
        payload = build_sage_payload(invoice, fields, self.settings)
        result = await self.exporter.submit(payload)

        provider = self.exporter.provider_name
        if result.success:
            metrics.exports_total.labels(provider=provider, status="success").inc()
            await self.invoices.update(
                invoice.id, user.user_id, {"exported_at": datetime.now(UTC)}
            )
            logger.info(f"Exported invoice {invoice.id} via '{provider}'")
        else:
            metrics.exports_total.labels(provider=provider, status="failed").inc()
            logger.warning(f"Export of invoice {invoice.id} failed: {result.message}")
        return result

    # Deletion

    async def delete_invoice(self, session: UserSession | None, invoice_id: str) -> None:
        """Delete an invoice, its fields and (best-effort) its document."""
        user = require_session(session)
        invoice = await self.invoices.delete(invoice_id, user.user_id)
        if invoice.file_path:
            result = await asyncio.to_thread(self.storage.delete_object, invoice.file_path)
            if not result.success:
                logger.warning(
                    f"Invoice {invoice_id} deleted but its document was not: {result.error}"
                )

    # Helpers

    async def _details(self, invoice: Invoice) -> InvoiceDetails:
        fields = await self.invoices.list_fields(invoice.id)
        return self._to_details(invoice, fields)

    @staticmethod
    def _to_details(invoice: Invoice, fields: list[Any]) -> InvoiceDetails:
        return InvoiceDetails(
            invoice=InvoiceRecord.model_validate(invoice),
            fields=[InvoiceFieldRecord.model_validate(field) for field in fields],
        )

    @staticmethod
    def _record_transition(from_status: str, to_status: InvoiceStatus) -> None:
        metrics.invoice_transitions_total.labels(
            from_status=from_status, to_status=to_status.value
        ).inc()
