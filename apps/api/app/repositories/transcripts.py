"""Transcript repository helpers keyed by vendor call id."""
from __future__ import annotations

from typing import Any
from uuid import uuid4

from sqlalchemy import Select, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.transcript import CallStatus, VapiTranscript

_table = VapiTranscript.__table__
_metadata_col = _table.c["metadata"]


async def get_by_call_id(session: AsyncSession, call_id: str) -> VapiTranscript | None:
    """Return the transcript row for a vendor call, if any."""

    stmt: Select[tuple[VapiTranscript]] = select(VapiTranscript).where(VapiTranscript.call_id == call_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_for_project(
    session: AsyncSession,
    *,
    project_id: str,
    user_id: str,
    limit: int = 50,
) -> list[VapiTranscript]:
    """Return the newest transcripts for a project owned by ``user_id``."""

    stmt = (
        select(VapiTranscript)
        .where(VapiTranscript.funnel_project_id == project_id, VapiTranscript.user_id == user_id)
        .order_by(VapiTranscript.created_at.desc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def insert_in_progress(
    session: AsyncSession,
    *,
    call_id: str,
    user_id: str,
    project_id: str | None,
    phone_number: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> bool:
    """Insert an optimistic in-progress row unless one already exists.

    Returns ``True`` when a row was created. An existing row (possibly already
    completed) is left untouched.
    """

    stmt = (
        pg_insert(VapiTranscript)
        .values(
            {
                _table.c.id: str(uuid4()),
                _table.c.call_id: call_id,
                _table.c.user_id: user_id,
                _table.c.funnel_project_id: project_id,
                _table.c.phone_number: phone_number,
                _table.c.transcript_text: "",
                _table.c.extracted_data: {},
                _table.c.call_duration: 0,
                _table.c.call_status: CallStatus.IN_PROGRESS.value,
                _metadata_col: metadata or {},
            }
        )
        .on_conflict_do_nothing(index_elements=[_table.c.call_id])
        .returning(_table.c.id)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none() is not None


async def upsert_completed(
    session: AsyncSession,
    *,
    call_id: str,
    user_id: str,
    project_id: str | None,
    transcript_text: str,
    extracted_data: dict[str, Any],
    duration_seconds: int,
    metadata: dict[str, Any],
    phone_number: str | None = None,
) -> VapiTranscript:
    """Insert or update the completed transcript for ``call_id``.

    Structured maps are merged with whatever is stored, newer keys winning.
    An empty incoming transcript keeps the stored text.
    """

    stmt = pg_insert(VapiTranscript).values(
        {
            _table.c.id: str(uuid4()),
            _table.c.call_id: call_id,
            _table.c.user_id: user_id,
            _table.c.funnel_project_id: project_id,
            _table.c.phone_number: phone_number,
            _table.c.transcript_text: transcript_text,
            _table.c.extracted_data: extracted_data,
            _table.c.call_duration: duration_seconds,
            _table.c.call_status: CallStatus.COMPLETED.value,
            _metadata_col: metadata,
        }
    )
    excluded = stmt.excluded
    stmt = stmt.on_conflict_do_update(
        index_elements=[_table.c.call_id],
        set_={
            _table.c.call_status: CallStatus.COMPLETED.value,
            _table.c.call_duration: excluded.call_duration,
            _table.c.transcript_text: func.coalesce(
                func.nullif(excluded.transcript_text, ""), _table.c.transcript_text
            ),
            _table.c.extracted_data: _table.c.extracted_data.op("||")(excluded.extracted_data),
            _metadata_col: _metadata_col.op("||")(excluded["metadata"]),
            _table.c.funnel_project_id: func.coalesce(_table.c.funnel_project_id, excluded.funnel_project_id),
            _table.c.phone_number: func.coalesce(excluded.phone_number, _table.c.phone_number),
            _table.c.updated_at: func.now(),
        },
    )
    result = await session.scalars(
        stmt.returning(VapiTranscript),
        execution_options={"populate_existing": True},
    )
    return result.one()
