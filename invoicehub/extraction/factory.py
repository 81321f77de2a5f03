"""Extraction provider selection.

``APP_EXTRACTION_PROVIDER`` picks one of the registered providers. A provider
missing its credentials is still created: the service starts, and every
analysis then ends with an unsuccessful result explaining what is missing.
"""

import logging

from invoicehub.extraction.azure_provider import AzureExtractionProvider
from invoicehub.extraction.base import ExtractionProvider
from invoicehub.extraction.openai_provider import OpenAIExtractionProvider
from invoicehub.extraction.simulated_provider import SimulatedExtractionProvider
from invoicehub.shared.config import Settings
from invoicehub.shared.registry import Registry

logger = logging.getLogger(__name__)

EXTRACTION_PROVIDERS: Registry[ExtractionProvider] = Registry(
    "extraction provider",
    {
        "simulated": SimulatedExtractionProvider,
        "azure": AzureExtractionProvider,
        "openai": OpenAIExtractionProvider,
    },
)


def create_extraction_provider(settings: Settings) -> ExtractionProvider:
    """Instantiate the provider named by settings.extraction_provider.

    Args:
        settings: Application settings

    Returns:
        Extraction provider, possibly unavailable (a warning is logged)

    Raises:
        ValueError: If no provider is registered under that name
    """
    name = settings.extraction_provider
    provider = EXTRACTION_PROVIDERS.get(name)(settings)

    if not provider.is_available():
        logger.warning(
            f"Extraction provider '{name}' is not fully available; "
            f"analyses will fail until its endpoint and credentials are set"
        )

    logger.info(f"Created extraction provider: {name}")
    return provider
