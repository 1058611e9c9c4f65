"""Shared pytest fixtures for the progression engine.

Integration tests run against a temporary SQLite file through aiosqlite, so
they exercise the real transactional code path (one unit of work per call,
separate connections for concurrent callers).
"""

from collections.abc import AsyncGenerator
from typing import Any, Sequence
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from peerflow.config import get_settings
from peerflow.database import build_engine, build_session_factory, create_schema, unit_of_work
from peerflow.models import Activity, PaperVersion
from peerflow.registry import TemplateRegistry
from peerflow.schemas import ActionResult, ActivityState, MembershipResult, TransitionLogEntry
from peerflow.services.activity_service import ActivityService
from peerflow.services.handlers import ActionHandlers
from peerflow.services.ledger import SqlLedger, user_account
from peerflow.template_loader import load_template, load_template_dir
from tests.factories import TEST_TEMPLATES, make_review_content


class EngineHarness:
    """Runs each engine call in its own unit of work, like a request handler would."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: TemplateRegistry,
    ):
        self.session_factory = session_factory
        self.registry = registry

    def handlers(self, session: AsyncSession, **kwargs: Any) -> ActionHandlers:
        return ActionHandlers(session, self.registry, **kwargs)

    def service(self, session: AsyncSession, **kwargs: Any) -> ActivityService:
        return ActivityService(session, self.registry, **kwargs)

    async def seed_paper(self, paper_id: UUID | None = None, version: int = 1) -> UUID:
        paper_id = paper_id or uuid4()
        async with unit_of_work(self.session_factory) as session:
            session.add(PaperVersion(paper_id=paper_id, current_version=version))
        return paper_id

    async def set_paper_version(self, paper_id: UUID, version: int) -> None:
        async with unit_of_work(self.session_factory) as session:
            row = await session.get(PaperVersion, paper_id)
            row.current_version = version

    async def fund(self, user_id: UUID, amount: int) -> None:
        async with unit_of_work(self.session_factory) as session:
            await SqlLedger(session).credit(user_account(user_id), amount, "test_funding")

    async def balance(self, account: str) -> int:
        async with self.session_factory() as session:
            return await SqlLedger(session).balance(account)

    async def create_activity(
        self,
        template_id: str,
        creator_id: UUID | None = None,
        funds: int = 100,
    ) -> Activity:
        creator_id = creator_id or uuid4()
        paper_id = await self.seed_paper()
        if funds:
            await self.fund(creator_id, funds)
        async with unit_of_work(self.session_factory) as session:
            return await self.service(session).create_activity(creator_id, template_id, paper_id)

    async def invite(self, activity_id: UUID, inviter_id: UUID, user_id: UUID) -> MembershipResult:
        async with unit_of_work(self.session_factory) as session:
            return await self.service(session).invite(activity_id, inviter_id, user_id)

    async def join(self, activity_id: UUID, user_id: UUID) -> MembershipResult:
        async with unit_of_work(self.session_factory) as session:
            return await self.service(session).join(activity_id, user_id)

    async def join_team(self, activity_id: UUID, count: int) -> list[UUID]:
        reviewers = [uuid4() for _ in range(count)]
        for reviewer in reviewers:
            await self.join(activity_id, reviewer)
        return reviewers

    async def withdraw(self, activity_id: UUID, user_id: UUID) -> MembershipResult:
        async with unit_of_work(self.session_factory) as session:
            return await self.service(session).withdraw(activity_id, user_id)

    async def review(self, activity_id: UUID, reviewer_id: UUID, content: str | None = None) -> ActionResult:
        async with unit_of_work(self.session_factory) as session:
            return await self.handlers(session).submit_review(
                activity_id, reviewer_id, content or make_review_content()
            )

    async def respond(self, activity_id: UUID, author_id: UUID) -> ActionResult:
        async with unit_of_work(self.session_factory) as session:
            return await self.handlers(session).submit_author_response(
                activity_id, author_id, "Addressed all comments; added a power analysis."
            )

    async def finalize(self, activity_id: UUID, user_id: UUID) -> ActionResult:
        async with unit_of_work(self.session_factory) as session:
            return await self.handlers(session).cast_finalization_vote(activity_id, user_id)

    async def award(
        self,
        activity_id: UUID,
        giver_id: UUID,
        allocations: Sequence[dict] = (),
        **handler_kwargs: Any,
    ) -> ActionResult:
        async with unit_of_work(self.session_factory) as session:
            return await self.handlers(session, **handler_kwargs).submit_award_allocation(
                activity_id, giver_id, list(allocations)
            )

    async def cancel(self, activity_id: UUID, actor: UUID):
        async with unit_of_work(self.session_factory) as session:
            return await self.service(session).cancel_activity(activity_id, actor)

    async def advance(self, activity_id: UUID, from_stage: str, to_stage: str, actor: UUID):
        async with unit_of_work(self.session_factory) as session:
            return await self.service(session).advance_manually(activity_id, from_stage, to_stage, actor)

    async def state(self, activity_id: UUID) -> ActivityState:
        async with self.session_factory() as session:
            return await self.service(session).get_activity_state(activity_id)

    async def log(self, activity_id: UUID) -> list[TransitionLogEntry]:
        async with self.session_factory() as session:
            return await self.service(session).get_transition_log(activity_id)

    async def stage(self, activity_id: UUID) -> str:
        async with self.session_factory() as session:
            return await session.scalar(
                select(Activity.current_stage).where(Activity.id == activity_id)
            )

    async def run_to_awarding(self, template_id: str = "three_reviewer_v1"):
        """Create an activity and drive it to ``award_distribution``.

        Returns ``(activity, reviewers)``.
        """
        activity = await self.create_activity(template_id)
        reviewers = await self.join_team(activity.id, 3)
        for reviewer in reviewers:
            await self.review(activity.id, reviewer)
        await self.respond(activity.id, activity.creator_id)
        for reviewer in reviewers:
            await self.finalize(activity.id, reviewer)
        return activity, reviewers


# ===========================================
# DATABASE FIXTURES
# ===========================================


@pytest_asyncio.fixture
async def db_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """A fresh SQLite database file per test."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'peerflow.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(db_engine)


@pytest_asyncio.fixture
async def registry(session_factory) -> TemplateRegistry:
    """Registry loaded with the shipped templates plus the test templates."""
    registry = TemplateRegistry()
    async with unit_of_work(session_factory) as session:
        await load_template_dir(session, get_settings().template_dir)
        for data in TEST_TEMPLATES:
            await load_template(session, data)
        await registry.load(session)
    return registry


@pytest.fixture
def harness(session_factory, registry) -> EngineHarness:
    return EngineHarness(session_factory, registry)
