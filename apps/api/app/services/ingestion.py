"""Single write path for voice call transcripts.

Both the vendor webhook and the browser's "fetch and save this call" request
land here and converge on one ``vapi_transcripts`` row per call id.
"""
from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from fastapi import HTTPException, status
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.observer import Observer
from ..repositories import transcripts as transcripts_repo
from ..schemas import vapi as schemas
from . import business_profile
from . import correlation
from . import vapi

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CallArtifact:
    """Fields of a finished vendor call that end up in the transcript row."""

    transcript_text: str
    summary: str
    extracted_data: dict[str, Any]
    duration_seconds: int
    metadata: dict[str, Any]
    phone_number: str | None
    owner_metadata: dict[str, Any]


@dataclass(slots=True)
class CompletedCall:
    call_id: str
    transcript_text: str
    duration_seconds: int


def parse_body(raw: bytes) -> dict[str, Any]:
    """Decode the webhook body, unwrapping the vendor ``message`` envelope."""

    try:
        payload = json.loads(raw or b"{}")
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body must be JSON") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body must be a JSON object")

    message = payload.get("message")
    if isinstance(message, dict) and "type" in message:
        return message
    return payload


async def handle_payload(
    payload: Mapping[str, Any],
    session: AsyncSession,
    observer: Observer,
) -> schemas.WebhookAck | schemas.SaveTranscriptResponse:
    """Dispatch on the presence of ``type``: vendor event or client request."""

    try:
        if "type" in payload:
            event = schemas.WebhookEvent.model_validate(payload)
            return await handle_event(event, session, observer)
        request = schemas.ClientSaveRequest.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.errors(include_url=False, include_context=False),
        ) from exc
    return await save_from_client(request, session, observer)


async def handle_event(
    event: schemas.WebhookEvent,
    session: AsyncSession,
    observer: Observer,
) -> schemas.WebhookAck:
    """Apply a vendor webhook event."""

    event_type = event.event_type
    call_id = correlation.extract_call_id(event.model_dump())
    observer.record_event("vapi.webhook", {"type": event.type, "call_id": call_id})

    if event_type is schemas.VapiEventType.CALL_STARTED:
        handled = await _record_call_started(event, call_id, session)
    elif event_type is schemas.VapiEventType.CALL_ENDED:
        if not call_id:
            logger.warning("call.ended event without a call id; ignoring")
            handled = False
        else:
            completed = await complete_call(
                session,
                observer,
                call_id=call_id,
                user_id=_owner_user(event.call_metadata),
                project_id=_owner_project(event.call_metadata),
                local_text=event.transcript or _str(event.call.get("summary")),
            )
            handled = completed is not None
    elif event_type is schemas.VapiEventType.TRANSCRIPT:
        # Partial transcripts are not persisted yet.
        handled = True
    else:
        logger.debug("Ignoring VAPI event type %s", event.type)
        handled = False

    return schemas.WebhookAck(type=event.type, handled=handled)


async def save_from_client(
    payload: schemas.ClientSaveRequest,
    session: AsyncSession,
    observer: Observer,
) -> schemas.SaveTranscriptResponse:
    """Resolve the call the browser just finished and persist its transcript."""

    if not payload.call_id and payload.call_start_timestamp is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="callId or callStartTimestamp is required",
        )

    call_id = payload.call_id or await _match_call_id(payload)
    completed = await complete_call(
        session,
        observer,
        call_id=call_id,
        user_id=payload.user_id,
        project_id=payload.project_id,
    )
    if completed is None:  # pragma: no cover - ownership is always supplied here
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Transcript not saved")

    return schemas.SaveTranscriptResponse(
        call_id=completed.call_id,
        transcript=completed.transcript_text,
        duration=completed.duration_seconds,
    )


async def complete_call(
    session: AsyncSession,
    observer: Observer,
    *,
    call_id: str,
    user_id: str | None,
    project_id: str | None,
    local_text: str | None = None,
) -> CompletedCall | None:
    """Fetch the finished call and upsert it as completed.

    Returns ``None`` when no owner can be resolved for a call that has no
    stored row yet.
    """

    async with _vendor_client() as client:
        raw = await vapi.fetch_call_artifact(
            client,
            call_id,
            attempts=settings.artifact_fetch_attempts,
            backoff_seconds=settings.artifact_fetch_backoff_seconds,
        )
    artifact = parse_artifact(raw)

    user_id = user_id or _owner_user(artifact.owner_metadata)
    project_id = project_id or _owner_project(artifact.owner_metadata)
    transcript_text = artifact.transcript_text or (local_text or "").strip() or artifact.summary

    async with session.begin():
        if not user_id:
            existing = await transcripts_repo.get_by_call_id(session, call_id)
            if existing is None:
                logger.warning("No owner known for call %s; transcript not stored", call_id)
                return None
            user_id = existing.user_id
            project_id = project_id or existing.funnel_project_id

        record = await transcripts_repo.upsert_completed(
            session,
            call_id=call_id,
            user_id=user_id,
            project_id=project_id,
            transcript_text=transcript_text,
            extracted_data=artifact.extracted_data,
            duration_seconds=artifact.duration_seconds,
            metadata=artifact.metadata,
            phone_number=artifact.phone_number,
        )
        stored_text = record.transcript_text or transcript_text
        project_id = record.funnel_project_id or project_id

    logger.info("Stored completed transcript for call %s (%ds)", call_id, artifact.duration_seconds)

    if project_id:
        await _populate_business_profile(
            session,
            observer,
            user_id=user_id,
            project_id=project_id,
            transcript_text=stored_text,
            extracted_data=artifact.extracted_data,
        )

    return CompletedCall(
        call_id=call_id,
        transcript_text=stored_text,
        duration_seconds=artifact.duration_seconds,
    )


def parse_artifact(call: Mapping[str, Any]) -> CallArtifact:
    """Pull transcript, analysis, and metadata out of a vendor call record."""

    nested = call.get("artifact") if isinstance(call.get("artifact"), Mapping) else {}
    analysis = call.get("analysis") if isinstance(call.get("analysis"), Mapping) else {}
    structured = analysis.get("structuredData")
    owner = call.get("metadata")

    metadata = {
        "recordingUrl": call.get("recordingUrl") or nested.get("recordingUrl"),
        "endedReason": call.get("endedReason"),
        "cost": call.get("cost"),
        "summary": analysis.get("summary") or call.get("summary"),
        "startedAt": call.get("startedAt"),
        "endedAt": call.get("endedAt"),
    }

    return CallArtifact(
        transcript_text=_str(call.get("transcript")) or _str(nested.get("transcript")),
        summary=_str(analysis.get("summary")) or _str(call.get("summary")),
        extracted_data=dict(structured) if isinstance(structured, Mapping) else {},
        duration_seconds=correlation.compute_duration_seconds(call.get("startedAt"), call.get("endedAt")),
        metadata={key: value for key, value in metadata.items() if value is not None},
        phone_number=_customer_number(call),
        owner_metadata=dict(owner) if isinstance(owner, Mapping) else {},
    )


async def _record_call_started(
    event: schemas.WebhookEvent,
    call_id: str | None,
    session: AsyncSession,
) -> bool:
    metadata = event.call_metadata
    user_id = _owner_user(metadata)
    project_id = _owner_project(metadata)
    if not call_id or not user_id or not project_id:
        logger.warning(
            "call.started missing identity (call=%s user=%s project=%s); row will be created at call end",
            call_id,
            user_id,
            project_id,
        )
        return False

    async with session.begin():
        created = await transcripts_repo.insert_in_progress(
            session,
            call_id=call_id,
            user_id=user_id,
            project_id=project_id,
            phone_number=_customer_number(event.call),
        )
    logger.info("call.started for %s (new row: %s)", call_id, created)
    return True


async def _match_call_id(payload: schemas.ClientSaveRequest) -> str:
    target = correlation.ensure_tz(payload.call_start_timestamp)  # type: ignore[arg-type]
    window = timedelta(seconds=settings.call_match_window_seconds)

    async with _vendor_client() as client:
        calls = await client.list_calls(limit=settings.vapi_list_calls_limit)

    match = correlation.match_call_by_start_time(calls, target, window)
    call_id = correlation.extract_call_id(match) if match is not None else None
    if not call_id:
        logger.warning("No VAPI call started within %s of %s", window, target.isoformat())
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No matching call found near the given start time",
        )
    logger.info("Matched call %s by start time %s", call_id, target.isoformat())
    return call_id


async def _populate_business_profile(
    session: AsyncSession,
    observer: Observer,
    *,
    user_id: str,
    project_id: str,
    transcript_text: str,
    extracted_data: dict[str, Any],
) -> None:
    try:
        async with session.begin():
            profile = await business_profile.get_or_create_profile(session, user_id, project_id)
            await business_profile.populate_from_intake(
                session,
                profile.id,
                {"transcriptText": transcript_text, "extractedData": extracted_data},
                source="voice",
            )
    except Exception as exc:  # noqa: BLE001 - profile population must not block intake
        logger.exception("Business profile population failed for project %s", project_id)
        observer.record_error("business_profile.populate_from_intake", exc)


@asynccontextmanager
async def _vendor_client() -> AsyncIterator[vapi.VapiClient]:
    """Open a vendor client and map its failures onto HTTP errors."""

    try:
        async with vapi.client_from_settings() as client:
            yield client
    except vapi.VapiConfigurationError as exc:
        logger.error("VAPI configuration error: %s", exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    except vapi.VapiRequestError as exc:
        logger.error("VAPI request failed: %s", exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc


def _customer_number(call: Mapping[str, Any]) -> str | None:
    customer = call.get("customer")
    if isinstance(customer, Mapping):
        return _str(customer.get("number")) or None
    return None


def _owner_user(metadata: Mapping[str, Any]) -> str | None:
    return _str(metadata.get("userId")) or None


def _owner_project(metadata: Mapping[str, Any]) -> str | None:
    return _str(metadata.get("funnelProjectId")) or _str(metadata.get("projectId")) or None


def _str(value: object) -> str:
    return value.strip() if isinstance(value, str) else ""
