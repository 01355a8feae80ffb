"""Voice call transcript model."""
from __future__ import annotations

from datetime import datetime, timezone
import enum
from uuid import uuid4

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CallStatus(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class VapiTranscript(Base):
    """One row per vendor call, keyed uniquely by ``call_id``."""

    __tablename__ = "vapi_transcripts"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    funnel_project_id: Mapped[str | None] = mapped_column(String, index=True)
    user_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    call_id: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    phone_number: Mapped[str | None] = mapped_column(String)
    transcript_text: Mapped[str] = mapped_column(Text, default="", nullable=False)
    extracted_data: Mapped[dict] = mapped_column(JSONB, default=dict, nullable=False)
    call_duration: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    call_status: Mapped[str] = mapped_column(String, default=CallStatus.IN_PROGRESS.value, nullable=False)
    # "metadata" is reserved on declarative classes.
    call_metadata: Mapped[dict] = mapped_column("metadata", JSONB, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )
