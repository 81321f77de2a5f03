"""Extraction template persistence.

Templates owned by nobody, or flagged public, are visible to every user;
only the owner can change or delete a template.
"""

import logging

from sqlalchemy import or_, select

from invoicehub.extraction.schema import ExtractionSchema
from invoicehub.repository.database import Database
from invoicehub.repository.models import ExtractionTemplate, utcnow
from invoicehub.shared.errors import TemplateNotFoundError

logger = logging.getLogger(__name__)


class TemplateRepository:
    """CRUD over extraction templates."""

    def __init__(self, database: Database) -> None:
        self.database = database

    @staticmethod
    def _visible_to(user_id: str):  # type: ignore[no-untyped-def]
        return or_(
            ExtractionTemplate.user_id.is_(None),
            ExtractionTemplate.is_public.is_(True),
            ExtractionTemplate.user_id == user_id,
        )

    async def list_visible(self, user_id: str) -> list[ExtractionTemplate]:
        """List public, shared and owned templates, newest first."""
        query = (
            select(ExtractionTemplate)
            .where(self._visible_to(user_id))
            .order_by(ExtractionTemplate.created_at.desc(), ExtractionTemplate.id)
        )
        async with self.database.session() as session:
            return list(await session.scalars(query))

    async def get(self, template_id: str, user_id: str) -> ExtractionTemplate:
        """Fetch a template the user can see.

        Raises:
            TemplateNotFoundError: Unknown id or private template of another user
        """
        async with self.database.session() as session:
            template = await session.scalar(
                select(ExtractionTemplate).where(
                    ExtractionTemplate.id == template_id,
                    self._visible_to(user_id),
                )
            )
        if template is None:
            raise TemplateNotFoundError(template_id)
        return template

    async def create(
        self,
        name: str,
        schema: ExtractionSchema,
        user_id: str | None,
        is_public: bool = False,
    ) -> ExtractionTemplate:
        template = ExtractionTemplate(
            name=name,
            user_id=user_id,
            is_public=is_public,
            field_schema=schema.to_mapping(),
        )
        async with self.database.session() as session:
            session.add(template)
            await session.commit()
        logger.info(f"Created extraction template {template.id} ({name})")
        return template

    async def _get_owned(self, session, template_id: str, user_id: str) -> ExtractionTemplate:  # type: ignore[no-untyped-def]
        template = await session.scalar(
            select(ExtractionTemplate).where(
                ExtractionTemplate.id == template_id,
                ExtractionTemplate.user_id == user_id,
            )
        )
        if template is None:
            raise TemplateNotFoundError(template_id)
        return template

    async def update(
        self,
        template_id: str,
        user_id: str,
        name: str | None = None,
        schema: ExtractionSchema | None = None,
        is_public: bool | None = None,
    ) -> ExtractionTemplate:
        """Update an owned template; None arguments leave the value unchanged."""
        async with self.database.session() as session:
            template = await self._get_owned(session, template_id, user_id)
            if name is not None:
                template.name = name
            if schema is not None:
                template.field_schema = schema.to_mapping()
            if is_public is not None:
                template.is_public = is_public
            template.updated_at = utcnow()
            await session.commit()
        return template

    async def delete(self, template_id: str, user_id: str) -> None:
        async with self.database.session() as session:
            template = await self._get_owned(session, template_id, user_id)
            await session.delete(template)
            await session.commit()
        logger.info(f"Deleted extraction template {template_id}")
