"""Export adapter selection based on ``APP_EXPORT_PROVIDER``."""

import logging

from invoicehub.export.adapters import SageExportAdapter, SimulatedExportAdapter
from invoicehub.export.base import ExportAdapter
from invoicehub.shared.config import Settings
from invoicehub.shared.registry import Registry

logger = logging.getLogger(__name__)

EXPORT_ADAPTERS: Registry[ExportAdapter] = Registry(
    "export provider",
    {
        "simulated": SimulatedExportAdapter,
        "sage": SageExportAdapter,
    },
)


def create_export_adapter(settings: Settings) -> ExportAdapter:
    """Create the export adapter selected by settings.export_provider.

    Raises:
        ValueError: If the configured adapter is unknown
    """
    name = settings.export_provider
    adapter = EXPORT_ADAPTERS.get(name)(settings)
    if not adapter.is_available():
        logger.warning(f"Export provider '{name}' is not fully configured")
    logger.info(f"Created export adapter: {name}")
    return adapter
