"""Call initiation and transcript listing for funnel projects."""
from __future__ import annotations

import logging

from fastapi import HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..repositories import projects as projects_repo
from ..repositories import transcripts as transcripts_repo
from ..schemas import vapi as schemas
from . import correlation
from . import vapi

logger = logging.getLogger(__name__)


async def initiate_call(
    payload: schemas.InitiateCallRequest,
    user_id: str,
    session: AsyncSession,
) -> schemas.InitiateCallResponse:
    """Start a vendor call for an owned project and record it as in progress."""

    async with session.begin():
        project = await projects_repo.get_owned(session, payload.project_id, user_id)
    if project is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found")

    assistant_id = settings.vapi_assistant_id.strip()
    if not assistant_id:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="VAPI_ASSISTANT_ID is not configured",
        )

    metadata = {"userId": user_id, "funnelProjectId": project.id, "projectName": project.name}
    try:
        async with vapi.client_from_settings() as client:
            created = await client.create_call(assistant_id, metadata)
    except vapi.VapiConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    except vapi.VapiRequestError as exc:
        logger.error("Failed to create VAPI call for project %s: %s", project.id, exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

    call_id = correlation.extract_call_id(created)
    if not call_id:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="VAPI response did not include a call id")

    async with session.begin():
        await transcripts_repo.insert_in_progress(
            session,
            call_id=call_id,
            user_id=user_id,
            project_id=project.id,
            metadata={"projectName": project.name},
        )

    logger.info("Initiated call %s for project %s", call_id, project.id)
    return schemas.InitiateCallResponse(call_id=call_id)


async def list_transcripts(
    project_id: str,
    user_id: str,
    session: AsyncSession,
) -> schemas.TranscriptListResponse:
    """Return the user's transcripts for an owned project, newest first."""

    async with session.begin():
        project = await projects_repo.get_owned(session, project_id, user_id)
        if project is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found")
        rows = await transcripts_repo.list_for_project(session, project_id=project_id, user_id=user_id)

    return schemas.TranscriptListResponse(
        items=[
            schemas.TranscriptSummary(
                call_id=row.call_id,
                status=row.call_status,
                duration=row.call_duration or 0,
                transcript=row.transcript_text or "",
                extracted_data=row.extracted_data or {},
                created_at=row.created_at,
            )
            for row in rows
        ]
    )
