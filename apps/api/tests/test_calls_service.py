"""Tests for call initiation and transcript listing."""
from __future__ import annotations

import json
from types import SimpleNamespace

import httpx
import pytest
from fastapi import HTTPException

from app.repositories import projects as projects_repo
from app.repositories import transcripts as transcripts_repo
from app.schemas import vapi as schemas
from app.services import calls as calls_service
from app.services import vapi as vapi_service


class DummySession:
    def begin(self):  # noqa: D401 - mimic SQLAlchemy's async begin
        session = self

        class _Tx:
            async def __aenter__(self_inner):
                return session

            async def __aexit__(self_inner, exc_type, exc, tb):
                return False

        return _Tx()


@pytest.fixture
def owned_project(monkeypatch):
    project = SimpleNamespace(id="project-1", name="Coaching Funnel", user_id="user-1")

    async def get_owned_stub(session, project_id, user_id):
        if project_id == project.id and user_id == project.user_id:
            return project
        return None

    monkeypatch.setattr(projects_repo, "get_owned", get_owned_stub)
    return project


@pytest.fixture
def inserted(monkeypatch) -> list[dict]:
    rows: list[dict] = []

    async def insert_stub(session, **kwargs):
        rows.append(kwargs)
        return True

    monkeypatch.setattr(transcripts_repo, "insert_in_progress", insert_stub)
    return rows


def _use_vendor(monkeypatch, handler) -> None:
    monkeypatch.setattr(calls_service.settings, "vapi_assistant_id", "assistant-1")
    monkeypatch.setattr(
        vapi_service,
        "client_from_settings",
        lambda transport=None: vapi_service.VapiClient("test-key", transport=httpx.MockTransport(handler)),
    )


@pytest.mark.asyncio
async def test_initiate_call_tags_metadata_and_records_row(owned_project, inserted, monkeypatch):
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(201, json={"id": "call-99", "status": "queued"})

    _use_vendor(monkeypatch, handler)

    response = await calls_service.initiate_call(
        schemas.InitiateCallRequest(projectId="project-1"), "user-1", DummySession()
    )

    assert response.call_id == "call-99"
    assert seen[0]["assistantId"] == "assistant-1"
    assert seen[0]["metadata"] == {
        "userId": "user-1",
        "funnelProjectId": "project-1",
        "projectName": "Coaching Funnel",
    }
    assert inserted[0]["call_id"] == "call-99"
    assert inserted[0]["user_id"] == "user-1"


@pytest.mark.asyncio
async def test_initiate_call_for_foreign_project_is_not_found(owned_project, inserted, monkeypatch):
    _use_vendor(monkeypatch, lambda request: httpx.Response(500))

    with pytest.raises(HTTPException) as exc:
        await calls_service.initiate_call(schemas.InitiateCallRequest(projectId="project-1"), "user-2", DummySession())

    assert exc.value.status_code == 404
    assert inserted == []


@pytest.mark.asyncio
async def test_initiate_call_without_assistant_is_a_server_error(owned_project, inserted, monkeypatch):
    monkeypatch.setattr(calls_service.settings, "vapi_assistant_id", "")

    with pytest.raises(HTTPException) as exc:
        await calls_service.initiate_call(schemas.InitiateCallRequest(projectId="project-1"), "user-1", DummySession())

    assert exc.value.status_code == 500


@pytest.mark.asyncio
async def test_initiate_call_vendor_failure_is_a_bad_gateway(owned_project, inserted, monkeypatch):
    _use_vendor(monkeypatch, lambda request: httpx.Response(503, text="unavailable"))

    with pytest.raises(HTTPException) as exc:
        await calls_service.initiate_call(schemas.InitiateCallRequest(projectId="project-1"), "user-1", DummySession())

    assert exc.value.status_code == 502
    assert inserted == []


@pytest.mark.asyncio
async def test_list_transcripts_for_foreign_project_is_not_found(owned_project, monkeypatch):
    with pytest.raises(HTTPException) as exc:
        await calls_service.list_transcripts("project-1", "user-2", DummySession())

    assert exc.value.status_code == 404
