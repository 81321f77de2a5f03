"""Export adapters: simulated (no-op) and Sage over HTTP."""

import asyncio
import logging

import httpx

from invoicehub.export.base import ExportAdapter, ExportResult
from invoicehub.export.sage import SagePayload
from invoicehub.shared.config import Settings

logger = logging.getLogger(__name__)


class SimulatedExportAdapter(ExportAdapter):
    """Accepts every payload after a delay without contacting Sage."""

    @property
    def provider_name(self) -> str:
        return "simulated"

    def is_available(self) -> bool:
        return True

    async def submit(self, payload: SagePayload) -> ExportResult:
        logger.info(f"Simulating Sage export of invoice {payload.invoice_number or '<unnumbered>'}")
        if self.settings.export_simulated_delay_seconds:
            await asyncio.sleep(self.settings.export_simulated_delay_seconds)
        return ExportResult(
            success=True,
            message="Invoice exported to Sage (simulated)",
            provider=self.provider_name,
        )


class SageExportAdapter(ExportAdapter):
    """Posts payloads to a Sage purchase invoice endpoint.

    Submissions are not retried: a timeout may hide an accepted invoice, and
    a blind retry would book it twice.
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        """Initialize Sage adapter.

        Args:
            settings: Application settings with sage_* configuration
            client: Optional HTTP client (tests inject a mock transport)
        """
        super().__init__(settings)
        self._client = client or httpx.AsyncClient(timeout=settings.sage_timeout_seconds)

    @property
    def provider_name(self) -> str:
        return "sage"

    def is_available(self) -> bool:
        return bool(self.settings.sage_api_url)

    async def submit(self, payload: SagePayload) -> ExportResult:
        if not self.is_available():
            return ExportResult(
                success=False,
                message="Sage API URL not configured",
                provider=self.provider_name,
            )

        headers = {"Accept": "application/json"}
        if self.settings.sage_api_token:
            headers["Authorization"] = f"Bearer {self.settings.sage_api_token}"

        try:
            response = await self._client.post(
                self.settings.sage_api_url,
                json=payload.to_wire(),
                headers=headers,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"Sage rejected invoice {payload.invoice_number}: {e.response.status_code}")
            return ExportResult(
                success=False,
                message=f"Sage returned HTTP {e.response.status_code}",
                provider=self.provider_name,
            )
        except httpx.HTTPError as e:
            logger.error(f"Sage export request failed: {e}")
            return ExportResult(
                success=False,
                message=f"Sage request failed: {e}",
                provider=self.provider_name,
            )

        external_id = None
        if response.content:
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict) and body.get("id") is not None:
                external_id = str(body["id"])

        return ExportResult(
            success=True,
            message="Invoice exported to Sage",
            provider=self.provider_name,
            external_id=external_id,
        )
