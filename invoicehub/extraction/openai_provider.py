"""OpenAI-based extraction provider for invoice field extraction.

Downloads the document, sends it to a vision-capable model and reads the
fields back through function calling. The function parameters are generated
from the active extraction schema, so template-specific keys are requested
alongside the default ones.

Includes retry logic with exponential backoff for transient API errors.
"""

import base64
import json
import logging
import mimetypes
import os
from typing import Any
from urllib.parse import urlparse

import httpx
from openai import AsyncOpenAI
from pydantic import ValidationError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from invoicehub.extraction.base import ExtractionProvider, ExtractionResult
from invoicehub.extraction.schema import ExtractedField, ExtractionSchema
from invoicehub.shared.config import Settings
from invoicehub.shared.progress import PercentReporter, ProgressCallback

logger = logging.getLogger(__name__)

FUNCTION_NAME = "extract_invoice_fields"


class OpenAIExtractionProvider(ExtractionProvider):
    """OpenAI vision extraction provider.

    Requires OPENAI_API_KEY environment variable.
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize OpenAI extraction provider.

        Args:
            settings: Application settings
        """
        super().__init__(settings)
        self._client: AsyncOpenAI | None = None
        self._http = httpx.AsyncClient(timeout=60.0, follow_redirects=True)

    @property
    def provider_name(self) -> str:
        return "openai"

    def is_available(self) -> bool:
        """Check if OpenAI API key is configured.

        Returns:
            True if OPENAI_API_KEY environment variable is set
        """
        return os.getenv("OPENAI_API_KEY") is not None

    async def analyze_document(
        self,
        document_url: str,
        schema: ExtractionSchema,
        on_progress: ProgressCallback | None = None,
    ) -> ExtractionResult:
        """Extract schema fields from a document using OpenAI.

        Args:
            document_url: URL the document can be downloaded from
            schema: Active extraction schema
            on_progress: Optional callback receiving coarse progress

        Returns:
            ExtractionResult with fields or error, provider='openai'
        """
        if not self.is_available():
            return self.failure("OPENAI_API_KEY environment variable not set")

        reporter = PercentReporter(on_progress)
        try:
            api_key = os.getenv("OPENAI_API_KEY")
            if self._client is None or self._client.api_key != api_key:
                self._client = AsyncOpenAI(api_key=api_key)

            data, content_type = await self._download_with_retry(document_url)
            reporter.report(30)

            response = await self._call_openai_with_retry(
                self._build_document_part(data, content_type, document_url),
                schema,
            )
            reporter.report(90)

            message = response.choices[0].message
            if message.function_call is None:
                return self.failure("No function call in API response")

            arguments = json.loads(message.function_call.arguments)
            return ExtractionResult(
                fields=self._parse_fields(arguments, schema),
                raw_text=arguments.get("raw_text"),
                success=True,
                provider=self.provider_name,
            )

        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Failed to parse OpenAI function arguments: {e}")
            return self.failure(f"Response parsing failed: {e}")
        except Exception as e:
            logger.error(f"OpenAI extraction failed: {e}")
            return self.failure(f"Extraction failed: {e}")

    @retry(
        retry=retry_if_exception_type((httpx.TransportError,)),
        wait=wait_exponential_jitter(initial=1, max=30),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def _download_with_retry(self, document_url: str) -> tuple[bytes, str]:
        response = await self._http.get(document_url)
        response.raise_for_status()
        content_type = response.headers.get("content-type", "").split(";")[0].strip()
        if not content_type or content_type == "application/octet-stream":
            guessed, _ = mimetypes.guess_type(urlparse(document_url).path)
            content_type = guessed or "application/octet-stream"
        return response.content, content_type

    @retry(
        retry=retry_if_exception_type((Exception,)),
        wait=wait_exponential_jitter(initial=1, max=60),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def _call_openai_with_retry(
        self, document_part: dict[str, Any], schema: ExtractionSchema
    ) -> Any:
        """Call OpenAI API with retry logic for transient errors.

        Args:
            document_part: Message content part carrying the document
            schema: Active extraction schema

        Returns:
            OpenAI API response

        Raises:
            Exception: After all retry attempts are exhausted
        """
        if self._client is None:
            raise RuntimeError("OpenAI client not initialized")

        return await self._client.chat.completions.create(  # type: ignore[call-overload]
            model=self.settings.openai_model,
            messages=[
                {
                    "role": "system",
                    "content": "You are an invoice data extraction assistant.",
                },
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": self._build_extraction_prompt(schema)},
                        document_part,
                    ],
                },
            ],
            functions=[self._get_function_schema(schema)],
            function_call={"name": FUNCTION_NAME},
            temperature=0,
        )

    @staticmethod
    def _build_document_part(data: bytes, content_type: str, document_url: str) -> dict[str, Any]:
        encoded = base64.b64encode(data).decode("ascii")
        data_url = f"data:{content_type};base64,{encoded}"
        if content_type == "application/pdf":
            filename = os.path.basename(urlparse(document_url).path) or "invoice.pdf"
            return {"type": "file", "file": {"filename": filename, "file_data": data_url}}
        return {"type": "image_url", "image_url": {"url": data_url}}

    @staticmethod
    def _build_extraction_prompt(schema: ExtractionSchema) -> str:
        lines = "\n".join(f"- {key}: {label}" for key, label in schema.labels().items())
        return f"""Extract the following fields from the attached invoice.

FIELDS:
{lines}

INSTRUCTIONS:
- Dates as YYYY-MM-DD
- Amounts as plain numbers with a dot decimal separator, no currency symbol
- European decimals: "211,77" -> 211.77
- Give each field a confidence between 0 and 1
- Use null for any field not clearly present
- Put the full document text in raw_text"""

    @staticmethod
    def _get_function_schema(schema: ExtractionSchema) -> dict[str, Any]:
        field_property = {
            "type": "object",
            "properties": {
                "value": {"type": ["string", "null"]},
                "confidence": {"type": "number", "minimum": 0, "maximum": 1},
            },
            "required": ["value", "confidence"],
        }
        properties: dict[str, Any] = {
            key: {**field_property, "description": label}
            for key, label in schema.labels().items()
        }
        properties["raw_text"] = {"type": ["string", "null"]}
        return {
            "name": FUNCTION_NAME,
            "description": "Return invoice fields extracted from the document",
            "parameters": {"type": "object", "properties": properties},
        }

    @staticmethod
    def _parse_fields(
        arguments: dict[str, Any], schema: ExtractionSchema
    ) -> dict[str, ExtractedField]:
        fields = {}
        for key in schema.fields:
            raw = arguments.get(key)
            if not isinstance(raw, dict) or raw.get("value") in (None, ""):
                continue
            fields[key] = ExtractedField(
                value=str(raw["value"]),
                confidence=raw.get("confidence"),
            )
        return fields
