"""Business profile repository helpers."""
from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.business_profile import BusinessProfile, ProfileSource


async def get_by_id(session: AsyncSession, profile_id: str) -> BusinessProfile | None:
    return await session.get(BusinessProfile, profile_id)


async def get_by_project(session: AsyncSession, project_id: str) -> BusinessProfile | None:
    """Return the profile attached to a funnel project."""

    stmt = select(BusinessProfile).where(BusinessProfile.funnel_project_id == project_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def create(session: AsyncSession, *, user_id: str, project_id: str) -> BusinessProfile:
    """Create an empty wizard-sourced profile for the project."""

    profile = BusinessProfile(
        user_id=user_id,
        funnel_project_id=project_id,
        source=ProfileSource.WIZARD.value,
    )
    session.add(profile)
    await session.flush()
    return profile
