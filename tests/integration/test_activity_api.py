"""Integration tests for the activity HTTP endpoints."""

from uuid import uuid4

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI

from peerflow.api import router
from peerflow.database import get_session_factory
from peerflow.registry import get_registry


@pytest_asyncio.fixture
async def client(session_factory, registry):
    app = FastAPI()
    app.include_router(router)
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_registry] = lambda: registry

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def _create(client, harness, template_id: str = "quick_review_v1", funds: int = 100):
    creator_id = uuid4()
    paper_id = await harness.seed_paper()
    if funds:
        await harness.fund(creator_id, funds)
    return await client.post(
        "/api/activities",
        json={
            "creator_id": str(creator_id),
            "template_id": template_id,
            "paper_id": str(paper_id),
        },
    )


class TestActivityEndpoints:
    @pytest.mark.asyncio
    async def test_create_activity(self, client, harness):
        resp = await _create(client, harness)

        assert resp.status_code == 201
        data = resp.json()
        assert data["template_id"] == "quick_review_v1"
        assert data["current_stage"] == "posted"
        assert data["escrow_balance"] == 10
        assert [p["role"] for p in data["participants"]] == ["author"]

    @pytest.mark.asyncio
    async def test_team_formation_and_review(self, client, harness):
        activity_id = (await _create(client, harness)).json()["id"]
        reviewers = [str(uuid4()) for _ in range(3)]

        for reviewer in reviewers[:2]:
            resp = await client.post(f"/api/activities/{activity_id}/join", json={"actor_id": reviewer})
            assert resp.status_code == 200
            assert resp.json()["transitions"] == []

        resp = await client.post(f"/api/activities/{activity_id}/join", json={"actor_id": reviewers[2]})
        assert resp.status_code == 200
        assert [t["to_stage"] for t in resp.json()["transitions"]] == ["review_round_1"]

        resp = await client.post(
            f"/api/activities/{activity_id}/reviews",
            json={"reviewer_id": reviewers[0], "content": "Solid methods; weak discussion."},
        )
        assert resp.status_code == 201
        assert resp.json()["progress"]["summary"] == "1 of 3 reviewers submitted"

        resp = await client.get(f"/api/activities/{activity_id}/progress")
        assert resp.status_code == 200
        assert resp.json()["completed"] == 1

        resp = await client.get(f"/api/activities/{activity_id}/transitions")
        assert [e["new_stage"] for e in resp.json()] == ["posted", "review_round_1"]

    @pytest.mark.asyncio
    async def test_get_template(self, client):
        resp = await client.get("/api/templates/quick_review_v1")
        assert resp.status_code == 200
        assert resp.json()["id"] == "quick_review_v1"


class TestErrorMapping:
    @pytest.mark.asyncio
    async def test_unknown_activity_is_404(self, client):
        resp = await client.get(f"/api/activities/{uuid4()}")
        assert resp.status_code == 404
        assert resp.json()["detail"]["type"] == "activity_not_found"

    @pytest.mark.asyncio
    async def test_unknown_template_is_404(self, client, harness):
        resp = await _create(client, harness, template_id="missing_v1")
        assert resp.status_code == 404
        assert resp.json()["detail"]["type"] == "unknown_template"

    @pytest.mark.asyncio
    async def test_insufficient_funds_is_402(self, client, harness):
        resp = await _create(client, harness, funds=0)
        assert resp.status_code == 402
        assert resp.json()["detail"]["type"] == "insufficient_funds"

    @pytest.mark.asyncio
    async def test_action_in_wrong_stage_is_400(self, client, harness):
        activity_id = (await _create(client, harness)).json()["id"]
        reviewer = str(uuid4())
        await client.post(f"/api/activities/{activity_id}/join", json={"actor_id": reviewer})

        resp = await client.post(f"/api/activities/{activity_id}/finalize", json={"actor_id": reviewer})
        assert resp.status_code == 400
        assert resp.json()["detail"]["type"] == "stage_closed"

    @pytest.mark.asyncio
    async def test_author_joining_is_403(self, client, harness):
        data = (await _create(client, harness)).json()
        resp = await client.post(
            f"/api/activities/{data['id']}/join", json={"actor_id": data["creator_id"]}
        )
        assert resp.status_code == 403
        assert resp.json()["detail"]["type"] == "not_eligible"

    @pytest.mark.asyncio
    async def test_duplicate_review_is_409(self, client, harness):
        activity_id = (await _create(client, harness)).json()["id"]
        reviewers = [str(uuid4()) for _ in range(3)]
        for reviewer in reviewers:
            await client.post(f"/api/activities/{activity_id}/join", json={"actor_id": reviewer})

        body = {"reviewer_id": reviewers[0], "content": "First pass."}
        assert (await client.post(f"/api/activities/{activity_id}/reviews", json=body)).status_code == 201
        resp = await client.post(f"/api/activities/{activity_id}/reviews", json=body)
        assert resp.status_code == 409
        assert resp.json()["detail"]["type"] == "already_submitted"

    @pytest.mark.asyncio
    async def test_stale_advance_is_409(self, client, harness):
        data = (await _create(client, harness, template_id="journal_club_standard_v1")).json()
        resp = await client.post(
            f"/api/activities/{data['id']}/advance",
            json={
                "actor_id": data["creator_id"],
                "expected_from_stage": "jc_review",
                "to_stage": "jc_assessment",
            },
        )
        assert resp.status_code == 409
        assert resp.json()["detail"]["type"] == "stale_state"
