"""Unit tests for AzureExtractionProvider.

Tests the Document Intelligence REST flow against httpx.MockTransport.
"""

import json
from collections.abc import Callable, Generator
from unittest.mock import patch

import httpx
import pytest

from invoicehub.extraction.azure_provider import AzureExtractionProvider, map_analyze_result
from invoicehub.extraction.schema import DEFAULT_EXTRACTION_SCHEMA, ExtractionSchema, FieldSpec
from invoicehub.shared.config import Settings

ENDPOINT = "https://docintel.example.com"
OPERATION_URL = f"{ENDPOINT}/documentintelligence/documentModels/prebuilt-invoice/analyzeResults/op-1"
DOCUMENT_URL = "https://storage.example.com/invoices/user-1/inv-1/1718000000000.pdf"

ANALYZE_RESULT = {
    "content": "EDF Facture 10098765432 Total TTC 294,00 €",
    "documents": [
        {
            "docType": "invoice",
            "fields": {
                "InvoiceId": {
                    "type": "string",
                    "valueString": "10098765432",
                    "content": "10098765432",
                    "confidence": 0.97,
                    "boundingRegions": [
                        {"pageNumber": 1, "polygon": [1.0, 0.5, 2.5, 0.5, 2.5, 0.8, 1.0, 0.8]}
                    ],
                },
                "InvoiceDate": {
                    "type": "date",
                    "valueDate": "2024-03-15",
                    "content": "15/03/2024",
                    "confidence": 0.95,
                },
                "VendorName": {"type": "string", "valueString": "EDF", "confidence": 0.99},
                "InvoiceTotal": {
                    "type": "currency",
                    "valueCurrency": {"amount": 294.0, "currencyCode": "EUR"},
                    "content": "294,00 €",
                    "confidence": 0.93,
                },
                "TotalTax": {
                    "type": "currency",
                    "valueCurrency": {"amount": 49},
                    "confidence": 0.9,
                },
                "CustomerName": {
                    "type": "string",
                    "valueString": "ACME SARL",
                    "confidence": 0.81,
                },
                "Items": {
                    "type": "array",
                    "valueArray": [
                        {
                            "type": "object",
                            "valueObject": {
                                "Description": {
                                    "type": "string",
                                    "valueString": "Electricity March",
                                    "confidence": 0.7,
                                }
                            },
                        }
                    ],
                },
            },
        }
    ],
}


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        extraction_provider="azure",
        azure_docintel_endpoint=f"{ENDPOINT}/",
        azure_docintel_key="test-key",
        azure_poll_interval_seconds=0.01,
        azure_poll_timeout_seconds=5,
    )


@pytest.fixture
def no_retry_wait() -> Generator[None, None, None]:
    """Skip the backoff between retried requests."""

    async def no_sleep(seconds: float) -> None:
        return None

    with (
        patch.object(AzureExtractionProvider._submit_with_retry.retry, "sleep", no_sleep),
        patch.object(AzureExtractionProvider._get_operation_with_retry.retry, "sleep", no_sleep),
    ):
        yield


def make_provider(
    settings: Settings, handler: Callable[[httpx.Request], httpx.Response]
) -> AzureExtractionProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AzureExtractionProvider(settings, client=client)


def accepted() -> httpx.Response:
    return httpx.Response(202, headers={"Operation-Location": OPERATION_URL})


class TestMapAnalyzeResult:
    def test_maps_default_fields(self) -> None:
        fields = map_analyze_result(ANALYZE_RESULT, DEFAULT_EXTRACTION_SCHEMA)

        assert fields["invoice_number"].value == "10098765432"
        assert fields["date"].value == "2024-03-15"
        assert fields["supplier"].value == "EDF"
        assert fields["total_amount"].value == "294.00"
        assert fields["tax_amount"].value == "49.00"
        assert fields["description"].value == "Electricity March"
        assert "due_date" not in fields
        assert "customer_name" not in fields

    def test_bounding_box(self) -> None:
        position = map_analyze_result(ANALYZE_RESULT, DEFAULT_EXTRACTION_SCHEMA)[
            "invoice_number"
        ].position

        assert position is not None
        assert position.page == 1
        assert position.x == 1.0
        assert position.y == 0.5
        assert position.width == pytest.approx(1.5)
        assert position.height == pytest.approx(0.3)

    def test_custom_keys_match_snake_case_names(self) -> None:
        schema = ExtractionSchema(
            fields={
                "supplier": FieldSpec(label="Supplier"),
                "customer_name": FieldSpec(label="Customer"),
            }
        )

        fields = map_analyze_result(ANALYZE_RESULT, schema)

        assert fields["customer_name"].value == "ACME SARL"
        assert fields["customer_name"].confidence == 0.81

    def test_no_documents(self) -> None:
        assert map_analyze_result({"content": ""}, DEFAULT_EXTRACTION_SCHEMA) == {}


class TestAzureExtraction:
    @pytest.mark.asyncio
    async def test_submit_and_poll(self, settings: Settings) -> None:
        requests: list[httpx.Request] = []
        statuses = iter(["notStarted", "running", "succeeded"])

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if request.method == "POST":
                return accepted()
            status = next(statuses)
            body = {"status": status}
            if status == "succeeded":
                body["analyzeResult"] = ANALYZE_RESULT
            return httpx.Response(200, json=body)

        provider = make_provider(settings, handler)
        progress: list[int] = []

        result = await provider.analyze_document(
            DOCUMENT_URL, DEFAULT_EXTRACTION_SCHEMA, on_progress=progress.append
        )

        assert result.success is True
        assert result.provider == "azure"
        assert result.raw_text == ANALYZE_RESULT["content"]
        assert result.fields["supplier"].value == "EDF"

        submit = requests[0]
        assert submit.url.path == "/documentintelligence/documentModels/prebuilt-invoice:analyze"
        assert submit.url.params["api-version"] == "2024-11-30"
        assert submit.headers["Ocp-Apim-Subscription-Key"] == "test-key"
        assert json.loads(submit.content) == {"urlSource": DOCUMENT_URL}
        assert [str(r.url) for r in requests[1:]] == [OPERATION_URL] * 3
        assert progress[0] == 10
        assert all(value < 100 for value in progress)

    @pytest.mark.asyncio
    async def test_failed_operation(self, settings: Settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return accepted()
            return httpx.Response(
                200,
                json={
                    "status": "failed",
                    "error": {"code": "InvalidContent", "message": "The file is corrupted"},
                },
            )

        result = await make_provider(settings, handler).analyze_document(
            DOCUMENT_URL, DEFAULT_EXTRACTION_SCHEMA
        )

        assert result.success is False
        assert result.error == "Analysis failed: InvalidContent - The file is corrupted"

    @pytest.mark.asyncio
    async def test_missing_operation_location(self, settings: Settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(202)

        result = await make_provider(settings, handler).analyze_document(
            DOCUMENT_URL, DEFAULT_EXTRACTION_SCHEMA
        )

        assert result.success is False
        assert "Operation-Location" in str(result.error)

    @pytest.mark.asyncio
    async def test_poll_timeout(self, settings: Settings) -> None:
        settings = settings.model_copy(update={"azure_poll_timeout_seconds": 0.05})

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return accepted()
            return httpx.Response(200, json={"status": "running"})

        result = await make_provider(settings, handler).analyze_document(
            DOCUMENT_URL, DEFAULT_EXTRACTION_SCHEMA
        )

        assert result.success is False
        assert "did not complete" in str(result.error)

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self, settings: Settings) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(401, json={"error": {"code": "Unauthorized"}})

        result = await make_provider(settings, handler).analyze_document(
            DOCUMENT_URL, DEFAULT_EXTRACTION_SCHEMA
        )

        assert result.success is False
        assert result.error.startswith("Extraction request failed")
        assert calls == 1

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(
        self, settings: Settings, no_retry_wait: None
    ) -> None:
        responses = iter(
            [
                httpx.Response(503),
                accepted(),
                httpx.Response(429),
                httpx.Response(200, json={"status": "succeeded", "analyzeResult": ANALYZE_RESULT}),
            ]
        )

        def handler(request: httpx.Request) -> httpx.Response:
            return next(responses)

        result = await make_provider(settings, handler).analyze_document(
            DOCUMENT_URL, DEFAULT_EXTRACTION_SCHEMA
        )

        assert result.success is True
        assert result.fields["invoice_number"].value == "10098765432"

    @pytest.mark.asyncio
    async def test_unconfigured_provider(self) -> None:
        provider = AzureExtractionProvider(Settings(_env_file=None, azure_docintel_key=""))

        result = await provider.analyze_document(DOCUMENT_URL, DEFAULT_EXTRACTION_SCHEMA)

        assert result.success is False
        assert "not configured" in str(result.error)
