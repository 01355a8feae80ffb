"""Business profile population from intake sessions."""
from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from ..models.business_profile import BusinessProfile, ProfileSource
from ..repositories import profiles as profiles_repo

logger = logging.getLogger(__name__)

# extracted-data key -> profile attribute
INTAKE_FIELD_MAP: dict[str, str] = {
    "targetAudience": "ideal_customer",
    "desiredOutcome": "transformation",
    "mainProblem": "perceived_problem",
    "offerName": "offer_name",
}


async def get_or_create_profile(session: AsyncSession, user_id: str, project_id: str) -> BusinessProfile:
    """Return the project's profile, creating an empty one on first use."""

    profile = await profiles_repo.get_by_project(session, project_id)
    if profile is not None:
        logger.info("Found existing business profile %s for project %s", profile.id, project_id)
        return profile

    profile = await profiles_repo.create(session, user_id=user_id, project_id=project_id)
    logger.info("Created business profile %s for project %s", profile.id, project_id)
    return profile


async def populate_from_intake(
    session: AsyncSession,
    profile_id: str,
    intake: Mapping[str, Any],
    source: str = ProfileSource.VOICE.value,
) -> BusinessProfile:
    """Merge intake transcript and extracted facts into the profile.

    Only non-empty incoming values overwrite stored fields.
    """

    profile = await profiles_repo.get_by_id(session, profile_id)
    if profile is None:
        raise LookupError(f"Business profile {profile_id} not found")

    extracted = intake.get("extractedData") or {}
    if not isinstance(extracted, Mapping):
        extracted = {}

    for key, attr in INTAKE_FIELD_MAP.items():
        value = extracted.get(key)
        if isinstance(value, str) and value.strip():
            setattr(profile, attr, value.strip())

    transcript_text = intake.get("transcriptText")
    if isinstance(transcript_text, str) and transcript_text.strip():
        profile.section1_context = transcript_text

    profile.source = source
    session.add(profile)
    logger.info("Populated business profile %s from %s intake", profile_id, source)
    return profile
