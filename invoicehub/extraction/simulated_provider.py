"""Simulated extraction provider.

Returns plausible placeholder values after a configurable delay. Used as the
default provider in development and in tests, where no OCR service is
reachable.
"""

import asyncio
import logging
import random
from datetime import date, timedelta

from invoicehub.extraction.base import ExtractionProvider, ExtractionResult
from invoicehub.extraction.schema import ExtractedField, ExtractionSchema, FieldKey
from invoicehub.shared.config import Settings
from invoicehub.shared.progress import PercentReporter, ProgressCallback

logger = logging.getLogger(__name__)

PROGRESS_STEPS = 10
CUSTOM_FIELD_CONFIDENCE = 0.5


class SimulatedExtractionProvider(ExtractionProvider):
    """Extraction provider producing placeholder values."""

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self._delay = settings.extraction_simulated_delay_seconds
        self._random = random.Random(settings.extraction_simulated_seed)

    @property
    def provider_name(self) -> str:
        return "simulated"

    def is_available(self) -> bool:
        return True

    async def analyze_document(
        self,
        document_url: str,
        schema: ExtractionSchema,
        on_progress: ProgressCallback | None = None,
    ) -> ExtractionResult:
        logger.info(f"Simulating extraction for {len(schema.fields)} schema fields")
        reporter = PercentReporter(on_progress)

        step = self._delay / PROGRESS_STEPS
        for i in range(PROGRESS_STEPS):
            if step:
                await asyncio.sleep(step)
            # 100 is reserved for the caller once results are stored
            reporter.report_fraction(i + 1, PROGRESS_STEPS + 1)

        fields = self._default_fields()
        for key, spec in schema.fields.items():
            if key not in fields:
                fields[key] = ExtractedField(
                    value=f"Sample {spec.label}",
                    confidence=CUSTOM_FIELD_CONFIDENCE,
                )

        return ExtractionResult(
            fields=fields,
            raw_text="Simulated document text",
            success=True,
            provider=self.provider_name,
        )

    def _default_fields(self) -> dict[str, ExtractedField]:
        rng = self._random
        today = date.today()
        total = rng.uniform(0, 1000)
        tax = rng.uniform(0, min(200.0, total))
        values = {
            FieldKey.INVOICE_NUMBER: (f"INV-{rng.randint(10000, 99999)}", 0.94),
            FieldKey.DATE: (today.isoformat(), 0.96),
            FieldKey.DUE_DATE: ((today + timedelta(days=30)).isoformat(), 0.91),
            FieldKey.SUPPLIER: ("Demo Supplier", 0.98),
            FieldKey.TOTAL_AMOUNT: (f"{total:.2f}", 0.95),
            FieldKey.TAX_AMOUNT: (f"{tax:.2f}", 0.92),
            FieldKey.REFERENCE: (f"REF-{rng.randint(1000, 9999)}", 0.88),
            FieldKey.DESCRIPTION: ("Office supplies purchase", 0.76),
        }
        return {
            key.value: ExtractedField(value=value, confidence=confidence)
            for key, (value, confidence) in values.items()
        }
