"""Funnel project lookups."""
from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.project import FunnelProject


async def get_owned(session: AsyncSession, project_id: str, user_id: str) -> FunnelProject | None:
    """Return the project only if ``user_id`` owns it."""

    stmt = select(FunnelProject).where(FunnelProject.id == project_id, FunnelProject.user_id == user_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()
