"""Read-only access to document version facts."""

from typing import Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from peerflow.models import PaperVersion


class DocumentVersions(Protocol):
    async def current_version(self, paper_id: UUID) -> int | None: ...


class SqlDocumentVersions:
    """Reads ``paper_versions``; the document store owns the writes."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def current_version(self, paper_id: UUID) -> int | None:
        return await self.session.scalar(
            select(PaperVersion.current_version).where(PaperVersion.paper_id == paper_id)
        )
