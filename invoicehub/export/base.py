"""Abstract base class for accounting export adapters."""

from abc import ABC, abstractmethod

from pydantic import BaseModel

from invoicehub.export.sage import SagePayload
from invoicehub.shared.config import Settings


class ExportResult(BaseModel):
    """Result of an export submission.

    Attributes:
        success: Whether the accounting system accepted the invoice
        message: Human-readable outcome
        provider: Adapter that performed the export
        external_id: Identifier returned by the accounting system, if any
    """

    success: bool
    message: str
    provider: str | None = None
    external_id: str | None = None


class ExportAdapter(ABC):
    """Submits Sage payloads to an accounting system."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    @abstractmethod
    async def submit(self, payload: SagePayload) -> ExportResult:
        """Submit one invoice.

        Adapters report upstream failures as an unsuccessful ExportResult
        rather than raising.
        """

    @abstractmethod
    def is_available(self) -> bool:
        """Check if the adapter is configured."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Get adapter name for logging/metrics."""
