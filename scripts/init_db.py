"""Create the database tables and seed the shared default template.

Usage:
    python scripts/init_db.py
    python scripts/init_db.py --database-url sqlite+aiosqlite:///./dev.db --no-seed
    python scripts/init_db.py --reset
"""

import asyncio
import logging

from sqlalchemy import select

from invoicehub.extraction.schema import DEFAULT_EXTRACTION_SCHEMA
from invoicehub.repository.database import Database
from invoicehub.repository.models import ExtractionTemplate
from invoicehub.repository.templates import TemplateRepository
from invoicehub.shared.config import Settings, get_settings
from invoicehub.shared.log import configure_logging

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE_NAME = "Default invoice"


async def init_db(settings: Settings, seed: bool = True, reset: bool = False) -> None:
    """Create tables and, unless disabled, the shared default template.

    With reset, existing tables are dropped first (development only).

    Seeding is idempotent: an existing shared template with the default name
    is left alone.
    """
    database = Database(settings)
    try:
        if reset:
            await database.drop_all()
            logger.warning("Dropped all tables")
        await database.create_all()
        if not seed:
            return

        async with database.session() as session:
            existing = await session.scalar(
                select(ExtractionTemplate).where(
                    ExtractionTemplate.name == DEFAULT_TEMPLATE_NAME,
                    ExtractionTemplate.user_id.is_(None),
                )
            )
        if existing is not None:
            logger.info(f"Default template already present ({existing.id})")
            return

        template = await TemplateRepository(database).create(
            DEFAULT_TEMPLATE_NAME,
            DEFAULT_EXTRACTION_SCHEMA,
            user_id=None,
            is_public=True,
        )
        logger.info(f"Seeded default template {template.id}")
    finally:
        await database.dispose()


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Initialize the invoice database")
    parser.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy async URL (defaults to APP_DATABASE_URL)",
    )
    parser.add_argument(
        "--no-seed",
        action="store_true",
        help="Only create tables, skip the default template",
    )
    parser.add_argument(
        "--reset",
        action="store_true",
        help="Drop existing tables before creating them",
    )
    args = parser.parse_args()

    settings = get_settings()
    if args.database_url:
        settings = settings.model_copy(update={"database_url": args.database_url})
    configure_logging(settings)
    asyncio.run(init_db(settings, seed=not args.no_seed, reset=args.reset))
