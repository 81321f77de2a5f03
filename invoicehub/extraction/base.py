"""Abstract base class for extraction providers.

Enables switching between extraction providers (simulated, Azure Document
Intelligence, OpenAI vision) behind one async interface.

Based on Strategy Pattern:
https://refactoring.guru/design-patterns/strategy/python
"""

from abc import ABC, abstractmethod

from pydantic import BaseModel, Field

from invoicehub.extraction.schema import ExtractedField, ExtractionSchema, FieldKey
from invoicehub.shared.config import Settings
from invoicehub.shared.progress import ProgressCallback


class ExtractionResult(BaseModel):
    """Result of extraction operation.

    Attributes:
        fields: Extracted fields keyed by schema key
        raw_text: Full document text when the provider returns it
        success: Whether operation succeeded
        error: Error message if operation failed
        provider: Name of provider that performed extraction
    """

    fields: dict[str, ExtractedField] = Field(default_factory=dict)
    raw_text: str | None = None
    success: bool
    error: str | None = None
    provider: str

    @property
    def is_well_formed(self) -> bool:
        """A successful result with at least one field."""
        return self.success and bool(self.fields)

    def known_fields(self) -> dict[FieldKey, ExtractedField]:
        """Fields whose keys belong to the default schema."""
        known = {}
        for key, field in self.fields.items():
            field_key = FieldKey.parse(key)
            if field_key is not None:
                known[field_key] = field
        return known

    def custom_fields(self) -> dict[str, ExtractedField]:
        """Fields outside the default schema (template-specific keys)."""
        return {key: field for key, field in self.fields.items() if FieldKey.parse(key) is None}


class ExtractionProvider(ABC):
    """Abstract base class for invoice extraction providers.

    Implementations:
    - SimulatedExtractionProvider: placeholder values after a delay
    - AzureExtractionProvider: Azure Document Intelligence prebuilt invoice model
    - OpenAIExtractionProvider: vision model with function calling
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize provider with settings.

        Args:
            settings: Application settings
        """
        self.settings = settings

    @abstractmethod
    async def analyze_document(
        self,
        document_url: str,
        schema: ExtractionSchema,
        on_progress: ProgressCallback | None = None,
    ) -> ExtractionResult:
        """Extract fields from the document behind a URL.

        Providers never raise for extraction failures; they return an
        unsuccessful ExtractionResult instead.

        Args:
            document_url: URL the provider can download the document from
            schema: Active extraction schema (keys and labels to look for)
            on_progress: Optional callback receiving advisory 0-100 values

        Returns:
            ExtractionResult with fields or error
        """

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this provider is available/configured.

        Returns:
            True if provider can be used, False otherwise
        """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Get provider name for logging/metrics."""

    def failure(self, error: str) -> ExtractionResult:
        return ExtractionResult(success=False, error=error, provider=self.provider_name)
