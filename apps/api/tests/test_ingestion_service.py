"""Service-level tests for transcript ingestion from webhooks and client requests."""
from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import pytest
from fastapi import HTTPException

from app.repositories import transcripts as transcripts_repo
from app.schemas import vapi as schemas
from app.services import business_profile
from app.services import ingestion
from app.services import vapi as vapi_service

CALL_START = datetime(2025, 10, 10, 10, 0, tzinfo=timezone.utc)


class DummySession:
    """Minimal session stub supporting async transaction context."""

    def __init__(self) -> None:
        self.added: list[object] = []
        self.transactions = 0

    def add(self, obj: object) -> None:
        self.added.append(obj)

    def begin(self):  # noqa: D401 - mimic SQLAlchemy's async begin
        session = self

        class _Tx:
            async def __aenter__(self_inner):
                session.transactions += 1
                return session

            async def __aexit__(self_inner, exc_type, exc, tb):
                return False

        return _Tx()


class RecordingObserver:
    def __init__(self) -> None:
        self.errors: list[tuple[str, BaseException]] = []
        self.events: list[tuple[str, dict]] = []

    def record_error(self, context, error) -> None:
        self.errors.append((context, error))

    def record_event(self, name, attrs=None) -> None:
        self.events.append((name, dict(attrs or {})))


class TranscriptStore:
    """In-memory stand-in for the vapi_transcripts table keyed by call id."""

    def __init__(self) -> None:
        self.rows: dict[str, SimpleNamespace] = {}

    async def get_by_call_id(self, session, call_id):
        return self.rows.get(call_id)

    async def insert_in_progress(self, session, *, call_id, user_id, project_id, phone_number=None, metadata=None):
        if call_id in self.rows:
            return False
        self.rows[call_id] = SimpleNamespace(
            call_id=call_id,
            user_id=user_id,
            funnel_project_id=project_id,
            phone_number=phone_number,
            transcript_text="",
            extracted_data={},
            call_duration=0,
            call_status="in_progress",
            call_metadata=dict(metadata or {}),
        )
        return True

    async def upsert_completed(
        self,
        session,
        *,
        call_id,
        user_id,
        project_id,
        transcript_text,
        extracted_data,
        duration_seconds,
        metadata,
        phone_number=None,
    ):
        row = self.rows.get(call_id)
        if row is None:
            await self.insert_in_progress(session, call_id=call_id, user_id=user_id, project_id=project_id)
            row = self.rows[call_id]
        row.call_status = "completed"
        row.call_duration = duration_seconds
        if transcript_text:
            row.transcript_text = transcript_text
        row.extracted_data = {**row.extracted_data, **extracted_data}
        row.call_metadata = {**row.call_metadata, **metadata}
        row.funnel_project_id = row.funnel_project_id or project_id
        row.phone_number = phone_number or row.phone_number
        return row


class FakeVapi:
    """Serve canned VAPI responses through httpx.MockTransport."""

    def __init__(self) -> None:
        self.calls: dict[str, dict] = {}
        self.listing: list[dict] = []
        self.requests: list[httpx.Request] = []
        self.fail_status: int | None = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_status is not None:
            return httpx.Response(self.fail_status, text="vendor failure")
        path = request.url.path
        if path == "/call":
            return httpx.Response(200, json=self.listing)
        call_id = path.rsplit("/", 1)[-1]
        if call_id in self.calls:
            return httpx.Response(200, json=self.calls[call_id])
        return httpx.Response(404, json={"message": "Not Found"})


def _artifact(call_id: str, transcript: str = "AI: Hi!\nUser: I coach founders.", **extra) -> dict:
    payload = {
        "id": call_id,
        "startedAt": "2025-10-10T10:00:00Z",
        "endedAt": "2025-10-10T10:03:15Z",
        "transcript": transcript,
        "recordingUrl": f"https://recordings.example/{call_id}.wav",
        "endedReason": "customer-ended-call",
        "cost": 0.42,
        "analysis": {
            "summary": "Founder coach intake.",
            "structuredData": {"targetAudience": "founders", "offerName": "Scale Sprint"},
        },
    }
    payload.update(extra)
    return payload


@pytest.fixture
def store(monkeypatch) -> TranscriptStore:
    store = TranscriptStore()
    monkeypatch.setattr(transcripts_repo, "get_by_call_id", store.get_by_call_id)
    monkeypatch.setattr(transcripts_repo, "insert_in_progress", store.insert_in_progress)
    monkeypatch.setattr(transcripts_repo, "upsert_completed", store.upsert_completed)
    return store


@pytest.fixture
def vendor(monkeypatch) -> FakeVapi:
    fake = FakeVapi()
    monkeypatch.setattr(
        vapi_service,
        "client_from_settings",
        lambda transport=None: vapi_service.VapiClient("test-key", transport=httpx.MockTransport(fake.handler)),
    )
    monkeypatch.setattr(ingestion.settings, "artifact_fetch_attempts", 1)
    monkeypatch.setattr(ingestion.settings, "artifact_fetch_backoff_seconds", 0.0)
    monkeypatch.setattr(ingestion.settings, "call_match_window_seconds", 180)
    return fake


@pytest.fixture
def populator(monkeypatch) -> SimpleNamespace:
    get_or_create = AsyncMock(return_value=SimpleNamespace(id="profile-1"))
    populate = AsyncMock()
    monkeypatch.setattr(business_profile, "get_or_create_profile", get_or_create)
    monkeypatch.setattr(business_profile, "populate_from_intake", populate)
    return SimpleNamespace(get_or_create=get_or_create, populate=populate)


def _client_request(**overrides) -> schemas.ClientSaveRequest:
    payload = {"projectId": "project-1", "userId": "user-1"}
    payload.update(overrides)
    return schemas.ClientSaveRequest.model_validate(payload)


@pytest.mark.asyncio
async def test_client_request_with_call_id_saves_transcript(store, vendor, populator):
    vendor.calls["call-1"] = _artifact("call-1")
    observer = RecordingObserver()

    response = await ingestion.save_from_client(_client_request(callId="call-1"), DummySession(), observer)

    assert response.success is True
    assert response.call_id == "call-1"
    assert response.duration == 195
    assert response.transcript.startswith("AI: Hi!")

    row = store.rows["call-1"]
    assert row.call_status == "completed"
    assert row.user_id == "user-1"
    assert row.funnel_project_id == "project-1"
    assert row.extracted_data["offerName"] == "Scale Sprint"
    assert row.call_metadata["recordingUrl"].endswith("call-1.wav")
    assert row.call_metadata["endedReason"] == "customer-ended-call"

    populator.get_or_create.assert_awaited_once()
    args = populator.populate.await_args
    assert args.args[1] == "profile-1"
    assert args.args[2]["transcriptText"] == row.transcript_text
    assert args.args[2]["extractedData"]["targetAudience"] == "founders"
    assert args.kwargs["source"] == "voice"
    assert observer.errors == []


@pytest.mark.asyncio
async def test_client_request_matches_call_by_start_time(store, vendor, populator):
    target = datetime(2025, 10, 10, 12, 0, tzinfo=timezone.utc)
    vendor.listing = [
        {"id": "call-early", "startedAt": (target - timedelta(seconds=200)).isoformat()},
        {"id": "call-close", "startedAt": (target - timedelta(seconds=90)).isoformat()},
    ]
    vendor.calls["call-close"] = _artifact("call-close")

    response = await ingestion.save_from_client(
        _client_request(callStartTimestamp=target.isoformat()), DummySession(), RecordingObserver()
    )

    assert response.call_id == "call-close"
    assert list(store.rows) == ["call-close"]
    assert vendor.requests[0].url.path == "/call"


@pytest.mark.asyncio
async def test_client_request_without_match_in_window_is_not_found(store, vendor, populator):
    target = datetime(2025, 10, 10, 12, 0, tzinfo=timezone.utc)
    vendor.listing = [{"id": "call-old", "startedAt": (target - timedelta(seconds=400)).isoformat()}]

    with pytest.raises(HTTPException) as exc:
        await ingestion.save_from_client(
            _client_request(callStartTimestamp=target.isoformat()), DummySession(), RecordingObserver()
        )

    assert exc.value.status_code == 404
    assert store.rows == {}
    populator.populate.assert_not_awaited()


@pytest.mark.asyncio
async def test_client_request_requires_identity_or_timestamp(store, vendor, populator):
    with pytest.raises(HTTPException) as exc:
        await ingestion.save_from_client(_client_request(), DummySession(), RecordingObserver())

    assert exc.value.status_code == 400
    assert vendor.requests == []


@pytest.mark.asyncio
async def test_webhook_and_client_request_converge_on_one_row(store, vendor, populator):
    vendor.calls["call-7"] = _artifact("call-7")
    session = DummySession()
    observer = RecordingObserver()
    metadata = {"userId": "user-1", "funnelProjectId": "project-1"}

    started = schemas.WebhookEvent(type="call.started", call={"id": "call-7", "metadata": metadata})
    ended = schemas.WebhookEvent(type="call.ended", call={"id": "call-7", "metadata": metadata})

    await ingestion.handle_event(started, session, observer)
    assert store.rows["call-7"].call_status == "in_progress"

    await ingestion.handle_event(ended, session, observer)
    await ingestion.save_from_client(_client_request(callId="call-7"), session, observer)

    assert list(store.rows) == ["call-7"]
    row = store.rows["call-7"]
    assert row.call_status == "completed"
    assert row.call_duration == 195
    assert row.transcript_text.startswith("AI: Hi!")


@pytest.mark.asyncio
async def test_profile_population_failure_does_not_fail_ingestion(store, vendor, monkeypatch):
    vendor.calls["call-1"] = _artifact("call-1")
    observer = RecordingObserver()
    monkeypatch.setattr(
        business_profile, "get_or_create_profile", AsyncMock(side_effect=RuntimeError("profiles table locked"))
    )

    response = await ingestion.save_from_client(_client_request(callId="call-1"), DummySession(), observer)

    assert response.success is True
    assert store.rows["call-1"].call_status == "completed"
    assert observer.errors
    assert observer.errors[0][0] == "business_profile.populate_from_intake"
    assert isinstance(observer.errors[0][1], RuntimeError)


@pytest.mark.asyncio
async def test_call_started_without_owner_is_a_noop(store, vendor, populator):
    event = schemas.WebhookEvent(type="call.started", call={"id": "call-3", "metadata": {"userId": "user-1"}})

    ack = await ingestion.handle_event(event, DummySession(), RecordingObserver())

    assert ack.handled is False
    assert store.rows == {}


@pytest.mark.asyncio
async def test_call_started_does_not_downgrade_completed_row(store, vendor, populator):
    vendor.calls["call-4"] = _artifact("call-4")
    metadata = {"userId": "user-1", "projectId": "project-1"}
    session = DummySession()

    await ingestion.handle_event(
        schemas.WebhookEvent(type="call.ended", call={"id": "call-4", "metadata": metadata}), session, RecordingObserver()
    )
    await ingestion.handle_event(
        schemas.WebhookEvent(type="call.started", call={"id": "call-4", "metadata": metadata}), session, RecordingObserver()
    )

    assert store.rows["call-4"].call_status == "completed"


@pytest.mark.asyncio
async def test_call_ended_resolves_owner_from_existing_row(store, vendor, populator):
    await store.insert_in_progress(None, call_id="call-5", user_id="user-9", project_id="project-9")
    vendor.calls["call-5"] = _artifact("call-5")

    ack = await ingestion.handle_event(
        schemas.WebhookEvent(type="call.ended", call={"id": "call-5"}), DummySession(), RecordingObserver()
    )

    assert ack.handled is True
    assert store.rows["call-5"].user_id == "user-9"
    assert store.rows["call-5"].call_status == "completed"
    assert populator.get_or_create.await_args.args[1:] == ("user-9", "project-9")


@pytest.mark.asyncio
async def test_call_ended_without_any_owner_is_skipped(store, vendor, populator):
    vendor.calls["call-6"] = _artifact("call-6")

    ack = await ingestion.handle_event(
        schemas.WebhookEvent(type="call.ended", call={"id": "call-6"}), DummySession(), RecordingObserver()
    )

    assert ack.handled is False
    assert store.rows == {}


@pytest.mark.asyncio
async def test_call_ended_falls_back_to_local_text_when_artifact_has_none(store, vendor, populator):
    vendor.calls["call-8"] = _artifact("call-8", transcript="", metadata={"userId": "user-1", "projectId": "p-1"})
    event = schemas.WebhookEvent(type="end-of-call-report", call={"id": "call-8"}, transcript="Locally summarized")

    ack = await ingestion.handle_event(event, DummySession(), RecordingObserver())

    assert ack.handled is True
    assert store.rows["call-8"].transcript_text == "Locally summarized"
    assert store.rows["call-8"].funnel_project_id == "p-1"


@pytest.mark.asyncio
async def test_transcript_and_unknown_events_are_acknowledged(store, vendor, populator):
    session = DummySession()

    partial = await ingestion.handle_event(
        schemas.WebhookEvent(type="transcript", call={"id": "call-1"}), session, RecordingObserver()
    )
    other = await ingestion.handle_event(
        schemas.WebhookEvent(type="speech-update", call={"id": "call-1"}), session, RecordingObserver()
    )

    assert partial.handled is True
    assert other.handled is False
    assert store.rows == {}
    assert vendor.requests == []
    assert session.transactions == 0


@pytest.mark.asyncio
async def test_missing_api_key_is_a_server_error(store, populator, monkeypatch):
    monkeypatch.setattr(vapi_service.settings, "vapi_api_key", "")

    with pytest.raises(HTTPException) as exc:
        await ingestion.save_from_client(_client_request(callId="call-1"), DummySession(), RecordingObserver())

    assert exc.value.status_code == 500
    assert "VAPI_API_KEY" in exc.value.detail
    assert store.rows == {}


@pytest.mark.asyncio
async def test_vendor_failure_is_a_bad_gateway(store, vendor, populator):
    vendor.fail_status = 503

    with pytest.raises(HTTPException) as exc:
        await ingestion.save_from_client(_client_request(callId="call-1"), DummySession(), RecordingObserver())

    assert exc.value.status_code == 502
    assert store.rows == {}


def test_parse_body_unwraps_vendor_envelope_and_rejects_bad_json():
    wrapped = json.dumps({"message": {"type": "call.ended", "call": {"id": "c"}}}).encode()
    client = json.dumps({"callId": "c", "projectId": "p", "userId": "u"}).encode()

    assert ingestion.parse_body(wrapped)["type"] == "call.ended"
    assert ingestion.parse_body(client)["callId"] == "c"

    for raw in (b"not json", b"[1, 2]"):
        with pytest.raises(HTTPException) as exc:
            ingestion.parse_body(raw)
        assert exc.value.status_code == 400


def test_parse_artifact_reads_nested_artifact_fields():
    artifact = ingestion.parse_artifact(
        {
            "artifact": {"transcript": "nested text", "recordingUrl": "https://rec"},
            "customer": {"number": "+15550001"},
            "startedAt": "2025-10-10T10:00:00Z",
        }
    )

    assert artifact.transcript_text == "nested text"
    assert artifact.metadata["recordingUrl"] == "https://rec"
    assert artifact.phone_number == "+15550001"
    assert artifact.duration_seconds == 0
    assert artifact.extracted_data == {}
