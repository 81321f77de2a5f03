"""Tests for the invoice lifecycle manager."""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from invoicehub.extraction.base import ExtractionProvider, ExtractionResult
from invoicehub.extraction.schema import (
    ExtractedField,
    ExtractionSchema,
    FieldKey,
    FieldPosition,
    FieldSpec,
)
from invoicehub.lifecycle.manager import InvoiceLifecycleManager, known_values, scalar_values
from invoicehub.lifecycle.states import InvoiceStatus
from invoicehub.shared.errors import (
    ConcurrentModificationError,
    DocumentNotFoundError,
    EmptyFileError,
    FileTooLargeError,
    InvalidTransitionError,
    InvoiceNotFoundError,
    MissingRequiredFieldsError,
    MissingSessionError,
    StorageError,
    UnsupportedFileTypeError,
)
from invoicehub.storage.service import StorageResult

from fakes import PDF_BYTES, RecordingExporter, StaticExtractionProvider


def edf_result() -> ExtractionResult:
    """Extraction of a French electricity bill with European amounts."""
    return ExtractionResult(
        success=True,
        provider="static",
        raw_text="EDF Facture 10098765432 du 15/03/2024 Total TTC 294,00 EUR",
        fields={
            "invoice_number": ExtractedField(
                value="10098765432",
                confidence=0.97,
                position=FieldPosition(page=1, x=0.62, y=0.08, width=0.2, height=0.03),
            ),
            "date": ExtractedField(value="15/03/2024", confidence=0.95),
            "supplier": ExtractedField(value="EDF", confidence=0.99),
            "total_amount": ExtractedField(value="294,00", confidence=0.93),
            "tax_amount": ExtractedField(value="49,00", confidence=0.9),
            "reference": ExtractedField(value="Contrat 4004", confidence=0.8),
        },
    )


async def upload(manager: InvoiceLifecycleManager, user, **kwargs):  # type: ignore[no-untyped-def]
    outcome = await manager.upload_invoice(user, PDF_BYTES, "application/pdf", **kwargs)
    return outcome.invoice


async def processed_invoice(manager: InvoiceLifecycleManager, user):  # type: ignore[no-untyped-def]
    manager.extraction = StaticExtractionProvider(manager.settings, edf_result())
    invoice = await upload(manager, user, title="EDF March")
    await manager.analyze(user, invoice.id)
    return invoice


class TestScalarValues:
    def test_maps_known_fields_to_columns(self):
        values = scalar_values(
            known_values(
                {
                    "invoice_number": " FA-001 ",
                    "date": "15/03/2024",
                    "due_date": "2024-04-14",
                    "supplier": "EDF",
                    "total_amount": "1.234,56",
                    "tax_amount": "205.76",
                    "reference": "ignored",
                }
            )
        )

        assert values == {
            "invoice_number": "FA-001",
            "invoice_date": date(2024, 3, 15),
            "due_date": date(2024, 4, 14),
            "supplier": "EDF",
            "total_amount": Decimal("1234.56"),
            "tax_amount": Decimal("205.76"),
        }

    def test_custom_keys_are_not_known(self):
        assert known_values({"meter_number": "X1", "supplier": "EDF"}) == {
            FieldKey.SUPPLIER: "EDF"
        }

    def test_skips_empty_unparseable_and_negative_values(self):
        values = scalar_values(
            {
                FieldKey.SUPPLIER: "   ",
                FieldKey.DATE: "soon",
                FieldKey.TOTAL_AMOUNT: "-5.00",
                FieldKey.TAX_AMOUNT: None,
            }
        )

        assert values == {}

    @pytest.mark.parametrize("amount", ["1e30", "1" + "0" * 30, "12345678901.00"])
    def test_skips_amounts_too_large_for_the_column(self, amount):
        values = scalar_values({FieldKey.TOTAL_AMOUNT: amount, FieldKey.SUPPLIER: "EDF"})

        assert values == {"supplier": "EDF"}

    def test_dot_grouped_thousands(self):
        values = scalar_values({FieldKey.TOTAL_AMOUNT: "1.234", FieldKey.TAX_AMOUNT: "205.67"})

        assert values == {
            "total_amount": Decimal("1234.00"),
            "tax_amount": Decimal("205.67"),
        }


class TestUpload:
    @pytest.mark.asyncio
    async def test_upload_creates_pending_invoice(self, manager, user, fake_storage):
        outcome = await manager.upload_invoice(
            user, PDF_BYTES, "application/pdf", title="EDF March"
        )

        invoice = outcome.invoice
        assert invoice.status == InvoiceStatus.PENDING.value
        assert invoice.title == "EDF March"
        assert invoice.file_type == "application/pdf"
        assert invoice.file_path.startswith(f"{user.user_id}/{invoice.id}/")
        assert invoice.file_path.endswith(".pdf")
        assert outcome.analysis is None
        fake_storage.upload_document.assert_called_once()

    @pytest.mark.asyncio
    async def test_upload_defaults_title(self, manager, user):
        invoice = await upload(manager, user)

        assert invoice.title == "Untitled invoice"

    @pytest.mark.asyncio
    async def test_unsupported_type_is_rejected_before_storage(self, manager, user, fake_storage):
        with pytest.raises(UnsupportedFileTypeError):
            await manager.upload_invoice(user, b"GIF89a", "image/gif")

        fake_storage.upload_document.assert_not_called()
        assert await manager.list_invoices(user) == []

    @pytest.mark.asyncio
    async def test_oversized_document_is_rejected(self, manager, user, fake_storage):
        data = b"0" * (15 * 1024 * 1024)

        with pytest.raises(FileTooLargeError):
            await manager.upload_invoice(user, data, "application/pdf")

        fake_storage.upload_document.assert_not_called()
        assert await manager.list_invoices(user) == []

    @pytest.mark.asyncio
    async def test_empty_document_is_rejected(self, manager, user):
        with pytest.raises(EmptyFileError):
            await manager.upload_invoice(user, b"", "application/pdf")

    @pytest.mark.asyncio
    async def test_upload_requires_session(self, manager):
        with pytest.raises(MissingSessionError):
            await manager.upload_invoice(None, PDF_BYTES, "application/pdf")

    @pytest.mark.asyncio
    async def test_storage_failure_removes_the_record(self, manager, user, fake_storage):
        fake_storage.upload_document.side_effect = None
        fake_storage.upload_document.return_value = StorageResult(
            success=False, error="S3 error: AccessDenied - denied"
        )

        with pytest.raises(StorageError, match="AccessDenied"):
            await manager.upload_invoice(user, PDF_BYTES, "application/pdf")

        assert await manager.list_invoices(user) == []

    @pytest.mark.asyncio
    async def test_upload_with_analysis(self, manager, user):
        outcome = await manager.upload_invoice(
            user, PDF_BYTES, "application/pdf", analyze=True
        )

        assert outcome.analysis is not None
        assert outcome.analysis.success is True
        assert outcome.invoice.status == InvoiceStatus.PROCESSED.value
        assert outcome.invoice.supplier == "Demo Supplier"

    @pytest.mark.asyncio
    async def test_failed_analysis_does_not_fail_upload(self, manager, user):
        manager.extraction = StaticExtractionProvider(
            manager.settings,
            ExtractionResult(success=False, error="service unavailable", provider="static"),
        )

        outcome = await manager.upload_invoice(
            user, PDF_BYTES, "application/pdf", analyze=True
        )

        assert outcome.analysis.success is False
        assert outcome.invoice.status == InvoiceStatus.ERROR.value


class TestQueries:
    @pytest.mark.asyncio
    async def test_invoices_are_private_to_their_owner(self, manager, user, other_user):
        invoice = await upload(manager, user)

        with pytest.raises(InvoiceNotFoundError):
            await manager.get_invoice(other_user, invoice.id)
        assert await manager.list_invoices(other_user) == []

    @pytest.mark.asyncio
    async def test_list_filters_by_status(self, manager, user):
        await upload(manager, user, title="pending one")
        processed = await processed_invoice(manager, user)

        listed = await manager.list_invoices(user, status=InvoiceStatus.PROCESSED)

        assert [invoice.id for invoice in listed] == [processed.id]
        assert len(await manager.list_invoices(user)) == 2

    @pytest.mark.asyncio
    async def test_document_url(self, manager, user):
        invoice = await upload(manager, user)

        url = await manager.get_document_url(user, invoice.id)

        assert url == f"https://storage.example.com/invoices/{invoice.file_path}"

    @pytest.mark.asyncio
    async def test_document_url_unavailable(self, manager, user, fake_storage):
        invoice = await upload(manager, user)
        fake_storage.get_public_url.side_effect = None
        fake_storage.get_public_url.return_value = None

        with pytest.raises(DocumentNotFoundError):
            await manager.get_document_url(user, invoice.id)


class TestAnalyze:
    @pytest.mark.asyncio
    async def test_successful_analysis_stores_fields(self, manager, user):
        invoice = await upload(manager, user)
        progress: list[int] = []

        outcome = await manager.analyze(user, invoice.id, on_progress=progress.append)

        assert outcome.success is True
        assert outcome.status == InvoiceStatus.PROCESSED.value
        assert outcome.provider == "simulated"
        assert outcome.failed_fields == []
        details = await manager.get_invoice(user, invoice.id)
        assert len(details.fields) == 8
        assert details.invoice.supplier == "Demo Supplier"
        assert details.invoice.metadata["provider"] == "simulated"
        assert details.invoice.metadata["raw_text"] == "Simulated document text"
        assert progress[-1] == 100
        assert progress == sorted(progress)

    @pytest.mark.asyncio
    async def test_european_amounts_and_dates_fill_columns(self, manager, user):
        invoice = await processed_invoice(manager, user)

        details = await manager.get_invoice(user, invoice.id)

        assert details.invoice.total_amount == Decimal("294.00")
        assert details.invoice.tax_amount == Decimal("49.00")
        assert details.invoice.invoice_date == date(2024, 3, 15)
        assert details.field_values()["total_amount"] == "294,00"
        number = next(f for f in details.fields if f.field_name == "invoice_number")
        assert number.position_data["page"] == 1

    @pytest.mark.asyncio
    async def test_extraction_failure_moves_to_error(self, manager, user):
        invoice = await upload(manager, user)
        manager.extraction = StaticExtractionProvider(
            manager.settings,
            ExtractionResult(success=False, error="quota exceeded", provider="static"),
        )

        outcome = await manager.analyze(user, invoice.id)

        assert outcome.success is False
        assert outcome.status == InvoiceStatus.ERROR.value
        assert outcome.error == "quota exceeded"
        details = await manager.get_invoice(user, invoice.id)
        assert details.invoice.status == InvoiceStatus.ERROR.value
        assert details.invoice.metadata["error"] == "quota exceeded"
        assert details.fields == []

    @pytest.mark.asyncio
    async def test_empty_result_counts_as_failure(self, manager, user):
        invoice = await upload(manager, user)
        manager.extraction = StaticExtractionProvider(
            manager.settings, ExtractionResult(success=True, provider="static")
        )

        outcome = await manager.analyze(user, invoice.id)

        assert outcome.success is False
        assert outcome.error == "Extraction returned no fields"

    @pytest.mark.asyncio
    async def test_provider_exception_moves_to_error(self, manager, user):
        class ExplodingProvider(StaticExtractionProvider):
            async def analyze_document(self, document_url, schema, on_progress=None):  # type: ignore[no-untyped-def]
                raise RuntimeError("boom")

        invoice = await upload(manager, user)
        manager.extraction = ExplodingProvider(manager.settings, edf_result())

        outcome = await manager.analyze(user, invoice.id)

        assert outcome.success is False
        assert outcome.error == "boom"

    @pytest.mark.asyncio
    async def test_reanalysis_recovers_from_error(self, manager, user):
        invoice = await upload(manager, user)
        manager.extraction = StaticExtractionProvider(
            manager.settings,
            ExtractionResult(success=False, error="timeout", provider="static"),
        )
        await manager.analyze(user, invoice.id)

        manager.extraction = StaticExtractionProvider(manager.settings, edf_result())
        outcome = await manager.analyze(user, invoice.id)

        assert outcome.status == InvoiceStatus.PROCESSED.value
        details = await manager.get_invoice(user, invoice.id)
        assert "error" not in details.invoice.metadata

    @pytest.mark.asyncio
    async def test_missing_document_keeps_status(self, manager, user, fake_storage):
        invoice = await upload(manager, user)
        fake_storage.exists.return_value = False

        with pytest.raises(DocumentNotFoundError):
            await manager.analyze(user, invoice.id)

        details = await manager.get_invoice(user, invoice.id)
        assert details.invoice.status == InvoiceStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_oversized_amount_is_kept_as_text_only(self, manager, user):
        result = edf_result()
        result.fields["total_amount"] = ExtractedField(value="1" + "0" * 30, confidence=0.4)
        manager.extraction = StaticExtractionProvider(manager.settings, result)
        invoice = await upload(manager, user)

        outcome = await manager.analyze(user, invoice.id)

        assert outcome.success is True
        assert outcome.status == InvoiceStatus.PROCESSED.value
        details = await manager.get_invoice(user, invoice.id)
        assert details.invoice.total_amount is None
        assert details.invoice.tax_amount == Decimal("49.00")
        assert details.field_values()["total_amount"] == "1" + "0" * 30

    @pytest.mark.asyncio
    async def test_validated_invoice_cannot_be_reanalyzed(self, manager, user):
        invoice = await processed_invoice(manager, user)
        await manager.validate(user, invoice.id, {})

        with pytest.raises(InvalidTransitionError):
            await manager.analyze(user, invoice.id)

    @pytest.mark.asyncio
    async def test_template_keys_are_requested(self, manager, user, template_repo):
        schema = ExtractionSchema(
            fields={
                "supplier": FieldSpec(label="Supplier", required=True),
                "meter_number": FieldSpec(label="Meter number"),
            }
        )
        template = await template_repo.create("Utilities", schema, user_id=user.user_id)
        invoice = await upload(manager, user)

        await manager.analyze(user, invoice.id, template_id=template.id)

        details = await manager.get_invoice(user, invoice.id)
        assert details.field_values()["meter_number"] == "Sample Meter number"
        assert details.invoice.metadata["template_id"] == template.id

    @pytest.mark.asyncio
    async def test_partial_field_failure_is_reported(self, manager, user, invoice_repo, monkeypatch):
        original = invoice_repo.upsert_field

        async def flaky_upsert(invoice_id, write):  # type: ignore[no-untyped-def]
            if write.field_name == "reference":
                raise OperationalError("INSERT", {}, Exception("database is locked"))
            return await original(invoice_id, write)

        monkeypatch.setattr(invoice_repo, "upsert_field", flaky_upsert)
        invoice = await upload(manager, user)

        outcome = await manager.analyze(user, invoice.id)

        assert outcome.success is True
        assert outcome.failed_fields == ["reference"]
        details = await manager.get_invoice(user, invoice.id)
        assert details.invoice.status == InvoiceStatus.PROCESSED.value
        assert len(details.fields) == 7


class ConcurrentEditProvider(ExtractionProvider):
    """Edits the invoice while the extraction is in flight."""

    def __init__(self, settings, invoice_repo, invoice_id, user_id):  # type: ignore[no-untyped-def]
        super().__init__(settings)
        self.invoice_repo = invoice_repo
        self.invoice_id = invoice_id
        self.user_id = user_id

    @property
    def provider_name(self) -> str:
        return "concurrent"

    def is_available(self) -> bool:
        return True

    async def analyze_document(self, document_url, schema, on_progress=None):  # type: ignore[no-untyped-def]
        await self.invoice_repo.update(self.invoice_id, self.user_id, {"title": "Renamed"})
        return edf_result()


class TestConflictPolicy:
    @pytest.mark.asyncio
    async def test_last_write_wins(self, manager, user, invoice_repo):
        invoice = await upload(manager, user)
        manager.extraction = ConcurrentEditProvider(
            manager.settings, invoice_repo, invoice.id, user.user_id
        )

        outcome = await manager.analyze(user, invoice.id)

        assert outcome.success is True

    @pytest.mark.asyncio
    async def test_reject_stale(self, manager, user, invoice_repo):
        manager.settings = manager.settings.model_copy(
            update={"analysis_conflict_policy": "reject_stale"}
        )
        invoice = await upload(manager, user)
        manager.extraction = ConcurrentEditProvider(
            manager.settings, invoice_repo, invoice.id, user.user_id
        )

        with pytest.raises(ConcurrentModificationError):
            await manager.analyze(user, invoice.id)

        details = await manager.get_invoice(user, invoice.id)
        assert details.invoice.status == InvoiceStatus.PENDING.value
        assert details.invoice.title == "Renamed"
        assert details.fields == []


class TestValidate:
    @pytest.mark.asyncio
    async def test_validate_freezes_submitted_fields(self, manager, user):
        invoice = await processed_invoice(manager, user)

        details = await manager.validate(
            user, invoice.id, {"total_amount": "294.00", "invoice_number": "10098765432"}
        )

        assert details.invoice.status == InvoiceStatus.VALIDATED.value
        by_name = {field.field_name: field for field in details.fields}
        assert by_name["total_amount"].field_value == "294.00"
        assert by_name["total_amount"].confidence == 1.0
        assert by_name["supplier"].confidence == 0.99
        # Positions survive validation
        assert by_name["invoice_number"].position_data["x"] == pytest.approx(0.62)

    @pytest.mark.asyncio
    async def test_corrections_update_columns(self, manager, user):
        invoice = await processed_invoice(manager, user)

        details = await manager.validate(
            user, invoice.id, {"supplier": "EDF Entreprises", "due_date": "14/04/2024"}
        )

        assert details.invoice.supplier == "EDF Entreprises"
        assert details.invoice.due_date == date(2024, 4, 14)

    @pytest.mark.asyncio
    async def test_missing_required_fields(self, manager, user):
        invoice = await processed_invoice(manager, user)

        with pytest.raises(MissingRequiredFieldsError) as exc_info:
            await manager.validate(user, invoice.id, {"supplier": "", "total_amount": " "})

        assert exc_info.value.missing == ["supplier", "total_amount"]
        details = await manager.get_invoice(user, invoice.id)
        assert details.invoice.status == InvoiceStatus.PROCESSED.value

    @pytest.mark.asyncio
    async def test_pending_invoice_cannot_be_validated(self, manager, user):
        invoice = await upload(manager, user)

        with pytest.raises(InvalidTransitionError):
            await manager.validate(user, invoice.id, {"supplier": "EDF"})

    @pytest.mark.asyncio
    async def test_same_values_again_is_a_no_op(self, manager, user):
        invoice = await processed_invoice(manager, user)
        fields = {"total_amount": "294.00", "tax_amount": "49.00"}
        first = await manager.validate(user, invoice.id, fields)

        second = await manager.validate(user, invoice.id, fields)

        assert second.invoice.version == first.invoice.version
        assert second.invoice.status == InvoiceStatus.VALIDATED.value

    @pytest.mark.asyncio
    async def test_different_values_on_validated_invoice(self, manager, user):
        invoice = await processed_invoice(manager, user)
        await manager.validate(user, invoice.id, {"total_amount": "294.00"})

        with pytest.raises(InvalidTransitionError, match="already validated"):
            await manager.validate(user, invoice.id, {"total_amount": "300.00"})

    @pytest.mark.asyncio
    async def test_oversized_correction_leaves_column_unchanged(self, manager, user):
        invoice = await processed_invoice(manager, user)

        details = await manager.validate(user, invoice.id, {"total_amount": "1e30"})

        assert details.invoice.status == InvoiceStatus.VALIDATED.value
        assert details.invoice.total_amount == Decimal("294.00")
        assert details.field_values()["total_amount"] == "1e30"

    @pytest.mark.asyncio
    async def test_deleted_template_still_governs_validation(self, manager, user, template_repo):
        schema = ExtractionSchema(
            fields={
                "supplier": FieldSpec(label="Supplier", required=True),
                "meter_number": FieldSpec(label="Meter number", required=True),
            }
        )
        template = await template_repo.create("Utilities", schema, user_id=user.user_id)
        invoice = await upload(manager, user)
        await manager.analyze(user, invoice.id, template_id=template.id)
        await template_repo.delete(template.id, user.user_id)

        with pytest.raises(MissingRequiredFieldsError) as exc_info:
            await manager.validate(user, invoice.id, {"meter_number": ""})
        details = await manager.validate(user, invoice.id, {"supplier": "EDF"})

        assert exc_info.value.missing == ["meter_number"]
        assert details.invoice.status == InvoiceStatus.VALIDATED.value

    @pytest.mark.asyncio
    async def test_explicit_template_overrides_analysis_schema(
        self, manager, user, template_repo
    ):
        invoice = await processed_invoice(manager, user)
        schema = ExtractionSchema(
            fields={"meter_number": FieldSpec(label="Meter number", required=True)}
        )
        template = await template_repo.create("Meters", schema, user_id=user.user_id)

        with pytest.raises(MissingRequiredFieldsError) as exc_info:
            await manager.validate(user, invoice.id, {}, template_id=template.id)

        assert exc_info.value.missing == ["meter_number"]


class TestExport:
    @pytest.mark.asyncio
    async def test_edf_invoice_end_to_end(self, manager, user, exporter: RecordingExporter):
        invoice = await processed_invoice(manager, user)
        await manager.validate(
            user,
            invoice.id,
            {"total_amount": "294.00", "tax_amount": "49.00", "due_date": "2024-04-14"},
        )

        result = await manager.export_invoice(user, invoice.id)

        assert result.success is True
        wire = exporter.payloads[0].to_wire()
        assert wire["NumFacture"] == "10098765432"
        assert wire["DateFacture"] == "2024-03-15"
        assert wire["DateEcheance"] == "2024-04-14"
        assert wire["Fournisseur"] == "EDF"
        assert wire["MontantTTC"] == 294.0
        assert wire["MontantTVA"] == 49.0
        assert wire["MontantHT"] == 245.0
        assert wire["Reference"] == "Contrat 4004"
        details = await manager.get_invoice(user, invoice.id)
        assert details.invoice.status == InvoiceStatus.VALIDATED.value
        assert details.invoice.exported_at is not None

    @pytest.mark.asyncio
    async def test_only_validated_invoices_are_exported(self, manager, user, exporter):
        invoice = await processed_invoice(manager, user)

        with pytest.raises(InvalidTransitionError):
            await manager.export_invoice(user, invoice.id)

        assert exporter.payloads == []

    @pytest.mark.asyncio
    async def test_pending_invoice_is_not_exported(self, manager, user, exporter):
        invoice = await upload(manager, user)

        with pytest.raises(InvalidTransitionError, match="status 'pending'"):
            await manager.export_invoice(user, invoice.id)

        assert exporter.payloads == []
        details = await manager.get_invoice(user, invoice.id)
        assert details.invoice.exported_at is None

    @pytest.mark.asyncio
    async def test_failed_export_leaves_invoice_unexported(self, manager, user, exporter):
        exporter.success = False
        invoice = await processed_invoice(manager, user)
        await manager.validate(user, invoice.id, {})

        result = await manager.export_invoice(user, invoice.id)

        assert result.success is False
        details = await manager.get_invoice(user, invoice.id)
        assert details.invoice.exported_at is None

    @pytest.mark.asyncio
    async def test_resubmission_can_be_disabled(self, manager, user, exporter):
        manager.settings = manager.settings.model_copy(update={"export_allow_resubmit": False})
        invoice = await processed_invoice(manager, user)
        await manager.validate(user, invoice.id, {})
        await manager.export_invoice(user, invoice.id)

        with pytest.raises(InvalidTransitionError, match="already exported"):
            await manager.export_invoice(user, invoice.id)

        assert len(exporter.payloads) == 1


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_removes_record_fields_and_document(
        self, manager, user, invoice_repo, fake_storage
    ):
        invoice = await processed_invoice(manager, user)

        await manager.delete_invoice(user, invoice.id)

        with pytest.raises(InvoiceNotFoundError):
            await manager.get_invoice(user, invoice.id)
        assert await invoice_repo.list_fields(invoice.id) == []
        fake_storage.delete_object.assert_called_once_with(invoice.file_path)

    @pytest.mark.asyncio
    async def test_storage_failure_does_not_block_delete(self, manager, user, fake_storage):
        invoice = await upload(manager, user)
        fake_storage.delete_object.side_effect = None
        fake_storage.delete_object.return_value = StorageResult(success=False, error="offline")

        await manager.delete_invoice(user, invoice.id)

        assert await manager.list_invoices(user) == []

    @pytest.mark.asyncio
    async def test_cannot_delete_foreign_invoice(self, manager, user, other_user):
        invoice = await upload(manager, user)

        with pytest.raises(InvoiceNotFoundError):
            await manager.delete_invoice(other_user, invoice.id)
