"""Azure Document Intelligence extraction provider.

Uses the prebuilt invoice model over the REST API: the analysis is submitted
with the document URL, then the returned operation is polled until it
completes.

See: https://learn.microsoft.com/azure/ai-services/document-intelligence/prebuilt/invoice
"""

import asyncio
import logging
import re
import time
from typing import Any

import httpx
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from invoicehub.extraction.base import ExtractionProvider, ExtractionResult
from invoicehub.extraction.schema import (
    ExtractedField,
    ExtractionSchema,
    FieldKey,
    FieldPosition,
)
from invoicehub.shared.config import Settings
from invoicehub.shared.progress import PercentReporter, ProgressCallback

logger = logging.getLogger(__name__)

# Prebuilt invoice model field for each default schema key
AZURE_FIELD_NAMES: dict[FieldKey, str] = {
    FieldKey.INVOICE_NUMBER: "InvoiceId",
    FieldKey.DATE: "InvoiceDate",
    FieldKey.DUE_DATE: "DueDate",
    FieldKey.SUPPLIER: "VendorName",
    FieldKey.TOTAL_AMOUNT: "InvoiceTotal",
    FieldKey.TAX_AMOUNT: "TotalTax",
    FieldKey.REFERENCE: "PurchaseOrder",
}

# Polling never reports completion; the caller does once fields are stored
MAX_POLL_PROGRESS = 90


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code == 429 or exc.response.status_code >= 500
    return False


def _snake_case(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def _field_value(field: dict[str, Any]) -> str | None:
    """Render a Document Intelligence field value as text."""
    field_type = field.get("type")
    if field_type == "currency" and field.get("valueCurrency"):
        amount = field["valueCurrency"].get("amount")
        if amount is not None:
            return f"{float(amount):.2f}"
    if field_type == "number" and field.get("valueNumber") is not None:
        return f"{float(field['valueNumber']):.2f}"
    if field_type == "date" and field.get("valueDate"):
        return str(field["valueDate"])
    if field_type == "string" and field.get("valueString") is not None:
        return str(field["valueString"])
    content = field.get("content")
    return str(content) if content is not None else None


def _field_position(field: dict[str, Any]) -> FieldPosition | None:
    regions = field.get("boundingRegions") or []
    if not regions:
        return None
    region = regions[0]
    polygon = region.get("polygon") or []
    if len(polygon) < 4:
        return None
    xs = polygon[0::2]
    ys = polygon[1::2]
    return FieldPosition(
        page=region.get("pageNumber", 1),
        x=min(xs),
        y=min(ys),
        width=max(xs) - min(xs),
        height=max(ys) - min(ys),
    )


def _description(fields: dict[str, Any]) -> ExtractedField | None:
    """Use the first line item's description as the invoice description."""
    items = (fields.get("Items") or {}).get("valueArray") or []
    for item in items:
        description = (item.get("valueObject") or {}).get("Description")
        if description:
            return ExtractedField(
                value=_field_value(description),
                confidence=description.get("confidence"),
                position=_field_position(description),
            )
    return None


def map_analyze_result(
    analyze_result: dict[str, Any], schema: ExtractionSchema
) -> dict[str, ExtractedField]:
    """Map a prebuilt-invoice analyzeResult onto schema keys.

    Default keys use the known model fields. Custom schema keys are matched
    against the snake_case form of the model field names (CustomerName ->
    customer_name).

    Args:
        analyze_result: The ``analyzeResult`` object of a succeeded operation
        schema: Active extraction schema

    Returns:
        Extracted fields keyed by schema key
    """
    documents = analyze_result.get("documents") or []
    if not documents:
        return {}
    azure_fields: dict[str, Any] = documents[0].get("fields") or {}

    def to_extracted(field: dict[str, Any]) -> ExtractedField | None:
        value = _field_value(field)
        if value is None:
            return None
        return ExtractedField(
            value=value,
            confidence=field.get("confidence"),
            position=_field_position(field),
        )

    result: dict[str, ExtractedField] = {}
    for key, azure_name in AZURE_FIELD_NAMES.items():
        if azure_name in azure_fields:
            extracted = to_extracted(azure_fields[azure_name])
            if extracted is not None:
                result[key.value] = extracted

    description = _description(azure_fields)
    if description is not None and description.value is not None:
        result[FieldKey.DESCRIPTION.value] = description

    by_snake_name = {_snake_case(name): field for name, field in azure_fields.items()}
    for key in schema.fields:
        if key in result or FieldKey.parse(key) is not None:
            continue
        if key in by_snake_name:
            extracted = to_extracted(by_snake_name[key])
            if extracted is not None:
                result[key] = extracted

    return result


class AzureExtractionProvider(ExtractionProvider):
    """Azure Document Intelligence prebuilt invoice provider."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        """Initialize Azure extraction provider.

        Args:
            settings: Application settings
            client: Optional HTTP client (tests inject a mock transport)
        """
        super().__init__(settings)
        self._endpoint = settings.azure_docintel_endpoint.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=30.0)

    @property
    def provider_name(self) -> str:
        return "azure"

    def is_available(self) -> bool:
        return bool(self.settings.azure_docintel_endpoint and self.settings.azure_docintel_key)

    @property
    def _headers(self) -> dict[str, str]:
        return {"Ocp-Apim-Subscription-Key": self.settings.azure_docintel_key}

    async def analyze_document(
        self,
        document_url: str,
        schema: ExtractionSchema,
        on_progress: ProgressCallback | None = None,
    ) -> ExtractionResult:
        """Analyze a document with the prebuilt invoice model.

        Args:
            document_url: URL Azure can download the document from
            schema: Active extraction schema
            on_progress: Optional callback receiving estimated progress

        Returns:
            ExtractionResult with fields, raw text and provider 'azure'
        """
        if not self.is_available():
            return self.failure("Azure Document Intelligence endpoint or key not configured")

        reporter = PercentReporter(on_progress)
        try:
            operation_url = await self._submit_with_retry(document_url)
            reporter.report(10)
            analyze_result = await self._poll(operation_url, reporter)
        except httpx.HTTPError as e:
            logger.error(f"Azure extraction request failed: {e}")
            return self.failure(f"Extraction request failed: {e}")
        except (TimeoutError, ValueError) as e:
            logger.error(f"Azure extraction failed: {e}")
            return self.failure(str(e))

        fields = map_analyze_result(analyze_result, schema)
        return ExtractionResult(
            fields=fields,
            raw_text=analyze_result.get("content"),
            success=True,
            provider=self.provider_name,
        )

    @retry(
        retry=retry_if_exception(_is_transient),
        wait=wait_exponential_jitter(initial=1, max=30),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def _submit_with_retry(self, document_url: str) -> str:
        """Submit the analysis and return the operation URL to poll."""
        url = (
            f"{self._endpoint}/documentintelligence/documentModels/"
            f"{self.settings.azure_docintel_model}:analyze"
        )
        response = await self._client.post(
            url,
            params={"api-version": self.settings.azure_docintel_api_version},
            headers=self._headers,
            json={"urlSource": document_url},
        )
        response.raise_for_status()
        operation_url = response.headers.get("Operation-Location")
        if not operation_url:
            raise ValueError("Analyze response did not include an Operation-Location header")
        return operation_url

    @retry(
        retry=retry_if_exception(_is_transient),
        wait=wait_exponential_jitter(initial=1, max=30),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def _get_operation_with_retry(self, operation_url: str) -> dict[str, Any]:
        response = await self._client.get(operation_url, headers=self._headers)
        response.raise_for_status()
        result: dict[str, Any] = response.json()
        return result

    async def _poll(self, operation_url: str, reporter: PercentReporter) -> dict[str, Any]:
        interval = self.settings.azure_poll_interval_seconds
        timeout = self.settings.azure_poll_timeout_seconds
        started = time.monotonic()

        while True:
            operation = await self._get_operation_with_retry(operation_url)
            status = operation.get("status")

            if status == "succeeded":
                analyze_result: dict[str, Any] = operation.get("analyzeResult") or {}
                return analyze_result
            if status in ("failed", "canceled"):
                error = operation.get("error") or {}
                raise ValueError(
                    f"Analysis {status}: {error.get('code', 'unknown')} - "
                    f"{error.get('message', 'no details')}"
                )

            elapsed = time.monotonic() - started
            if elapsed >= timeout:
                raise TimeoutError(f"Analysis did not complete within {timeout:.0f}s")
            reporter.report(10 + (MAX_POLL_PROGRESS - 10) * elapsed / timeout)
            await asyncio.sleep(interval)
