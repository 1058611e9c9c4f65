"""HTTP surface: activity state, transition log and action endpoints.

Callers are assumed to be authorized already; the acting user is named in
the request body.
"""

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from peerflow.database import get_session_factory, unit_of_work
from peerflow.exceptions import EngineError, raise_http_exception
from peerflow.logging_config import get_logger
from peerflow.registry import TemplateRegistry, as_dict, get_registry
from peerflow.schemas import (
    ActionResult,
    ActivityState,
    ActorRequest,
    AdvanceRequest,
    AuthorResponseRequest,
    AwardAllocationRequest,
    CreateActivityRequest,
    InviteRequest,
    MembershipResult,
    ProgressReport,
    ReviewRequest,
    TransitionLogEntry,
    TransitionResult,
)
from peerflow.services.activity_service import ActivityService
from peerflow.services.handlers import ActionHandlers

logger = get_logger(__name__)
router = APIRouter(prefix="/api", tags=["activities"])

SessionFactory = async_sessionmaker[AsyncSession]


@router.get("/templates/{template_id}")
async def get_template(
    template_id: str,
    factory: SessionFactory = Depends(get_session_factory),
    registry: TemplateRegistry = Depends(get_registry),
):
    try:
        async with factory() as session:
            template = await registry.fetch(session, template_id)
    except EngineError as e:
        raise_http_exception(e)
    return as_dict(template)


@router.post("/activities", response_model=ActivityState, status_code=201)
async def create_activity(
    body: CreateActivityRequest,
    factory: SessionFactory = Depends(get_session_factory),
    registry: TemplateRegistry = Depends(get_registry),
):
    """Create and fund an activity for a paper."""
    try:
        async with unit_of_work(factory) as session:
            service = ActivityService(session, registry)
            activity = await service.create_activity(body.creator_id, body.template_id, body.paper_id)
            state = await service.get_activity_state(activity.id)
    except EngineError as e:
        raise_http_exception(e)
    return state


@router.get("/activities/{activity_id}", response_model=ActivityState)
async def get_activity(
    activity_id: UUID,
    factory: SessionFactory = Depends(get_session_factory),
    registry: TemplateRegistry = Depends(get_registry),
):
    try:
        async with factory() as session:
            return await ActivityService(session, registry).get_activity_state(activity_id)
    except EngineError as e:
        raise_http_exception(e)


@router.get("/activities/{activity_id}/progress", response_model=ProgressReport)
async def get_progress(
    activity_id: UUID,
    factory: SessionFactory = Depends(get_session_factory),
    registry: TemplateRegistry = Depends(get_registry),
):
    try:
        async with factory() as session:
            return await ActivityService(session, registry).get_progress(activity_id)
    except EngineError as e:
        raise_http_exception(e)


@router.get("/activities/{activity_id}/transitions", response_model=list[TransitionLogEntry])
async def get_transition_log(
    activity_id: UUID,
    factory: SessionFactory = Depends(get_session_factory),
    registry: TemplateRegistry = Depends(get_registry),
):
    """Append-only transition log, oldest first."""
    try:
        async with factory() as session:
            return await ActivityService(session, registry).get_transition_log(activity_id)
    except EngineError as e:
        raise_http_exception(e)


# ---------------------------------------------------------------------------
# Membership
# ---------------------------------------------------------------------------


@router.post("/activities/{activity_id}/invite", response_model=MembershipResult, status_code=201)
async def invite(
    activity_id: UUID,
    body: InviteRequest,
    factory: SessionFactory = Depends(get_session_factory),
    registry: TemplateRegistry = Depends(get_registry),
):
    try:
        async with unit_of_work(factory) as session:
            return await ActivityService(session, registry).invite(
                activity_id, body.inviter_id, body.user_id, body.role
            )
    except EngineError as e:
        raise_http_exception(e)


@router.post("/activities/{activity_id}/join", response_model=MembershipResult)
async def join(
    activity_id: UUID,
    body: ActorRequest,
    factory: SessionFactory = Depends(get_session_factory),
    registry: TemplateRegistry = Depends(get_registry),
):
    try:
        async with unit_of_work(factory) as session:
            return await ActivityService(session, registry).join(activity_id, body.actor_id)
    except EngineError as e:
        raise_http_exception(e)


@router.post("/activities/{activity_id}/withdraw", response_model=MembershipResult)
async def withdraw(
    activity_id: UUID,
    body: ActorRequest,
    factory: SessionFactory = Depends(get_session_factory),
    registry: TemplateRegistry = Depends(get_registry),
):
    try:
        async with unit_of_work(factory) as session:
            return await ActivityService(session, registry).withdraw(activity_id, body.actor_id)
    except EngineError as e:
        raise_http_exception(e)


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


@router.post("/activities/{activity_id}/reviews", response_model=ActionResult, status_code=201)
async def submit_review(
    activity_id: UUID,
    body: ReviewRequest,
    factory: SessionFactory = Depends(get_session_factory),
    registry: TemplateRegistry = Depends(get_registry),
):
    """Submit a review for the current round. One per reviewer per round."""
    try:
        async with unit_of_work(factory) as session:
            return await ActionHandlers(session, registry).submit_review(
                activity_id, body.reviewer_id, body.content
            )
    except EngineError as e:
        raise_http_exception(e)


@router.post("/activities/{activity_id}/responses", response_model=ActionResult, status_code=201)
async def submit_author_response(
    activity_id: UUID,
    body: AuthorResponseRequest,
    factory: SessionFactory = Depends(get_session_factory),
    registry: TemplateRegistry = Depends(get_registry),
):
    try:
        async with unit_of_work(factory) as session:
            return await ActionHandlers(session, registry).submit_author_response(
                activity_id, body.author_id, body.content
            )
    except EngineError as e:
        raise_http_exception(e)


@router.post("/activities/{activity_id}/finalize", response_model=ActionResult, status_code=201)
async def cast_finalization_vote(
    activity_id: UUID,
    body: ActorRequest,
    factory: SessionFactory = Depends(get_session_factory),
    registry: TemplateRegistry = Depends(get_registry),
):
    try:
        async with unit_of_work(factory) as session:
            return await ActionHandlers(session, registry).cast_finalization_vote(
                activity_id, body.actor_id
            )
    except EngineError as e:
        raise_http_exception(e)


@router.post("/activities/{activity_id}/awards", response_model=ActionResult, status_code=201)
async def submit_award_allocation(
    activity_id: UUID,
    body: AwardAllocationRequest,
    factory: SessionFactory = Depends(get_session_factory),
    registry: TemplateRegistry = Depends(get_registry),
):
    try:
        async with unit_of_work(factory) as session:
            return await ActionHandlers(session, registry).submit_award_allocation(
                activity_id,
                body.giver_id,
                [item.model_dump() for item in body.allocations],
            )
    except EngineError as e:
        raise_http_exception(e)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


@router.post("/activities/{activity_id}/advance", response_model=TransitionResult)
async def advance(
    activity_id: UUID,
    body: AdvanceRequest,
    factory: SessionFactory = Depends(get_session_factory),
    registry: TemplateRegistry = Depends(get_registry),
):
    """Manually advance a journal-club activity along a declared edge."""
    try:
        async with unit_of_work(factory) as session:
            return await ActivityService(session, registry).advance_manually(
                activity_id, body.expected_from_stage, body.to_stage, body.actor_id
            )
    except EngineError as e:
        raise_http_exception(e)


@router.post("/activities/{activity_id}/cancel", response_model=TransitionResult)
async def cancel(
    activity_id: UUID,
    body: ActorRequest,
    factory: SessionFactory = Depends(get_session_factory),
    registry: TemplateRegistry = Depends(get_registry),
):
    try:
        async with unit_of_work(factory) as session:
            return await ActivityService(session, registry).cancel_activity(activity_id, body.actor_id)
    except EngineError as e:
        raise_http_exception(e)
