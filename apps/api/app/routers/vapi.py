"""Voice intake endpoints: vendor webhook, call initiation, transcript listing."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.auth import get_current_user_id
from ..core.config import settings
from ..core.observer import Observer, get_observer
from ..db.session import get_session
from ..schemas import vapi as schemas
from ..services import calls as calls_service
from ..services import ingestion
from ..services.signatures import SIGNATURE_HEADER, check_webhook_signature

router = APIRouter()


@router.post("/webhook", response_model=None)
async def vapi_webhook(
    request: Request,
    session: AsyncSession = Depends(get_session),
    observer: Observer = Depends(get_observer),
) -> schemas.WebhookAck | schemas.SaveTranscriptResponse:
    """Accept a signed vendor event or a client request to save a finished call."""

    body = await request.body()
    check_webhook_signature(settings.vapi_webhook_secret, body, request.headers.get(SIGNATURE_HEADER))
    payload = ingestion.parse_body(body)
    return await ingestion.handle_payload(payload, session, observer)


@router.post("/initiate-call", response_model=schemas.InitiateCallResponse)
async def initiate_call(
    payload: schemas.InitiateCallRequest,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> schemas.InitiateCallResponse:
    """Start a voice intake call for one of the user's projects."""

    return await calls_service.initiate_call(payload, user_id, session)


@router.get("/transcripts", response_model=schemas.TranscriptListResponse)
async def list_transcripts(
    project_id: str = Query(alias="projectId", min_length=1),
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> schemas.TranscriptListResponse:
    """Return the project's call transcripts, newest first."""

    return await calls_service.list_transcripts(project_id, user_id, session)
