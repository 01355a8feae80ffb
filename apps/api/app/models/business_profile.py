"""Business profile model."""
from __future__ import annotations

from datetime import datetime, timezone
import enum
from uuid import uuid4

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProfileSource(str, enum.Enum):
    WIZARD = "wizard"
    VOICE = "voice"
    IMPORT = "import"


class BusinessProfile(Base):
    """Long-lived per-project profile seeded by intake sessions."""

    __tablename__ = "business_profiles"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    funnel_project_id: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    source: Mapped[str] = mapped_column(String, default=ProfileSource.WIZARD.value, nullable=False)

    ideal_customer: Mapped[str | None] = mapped_column(Text)
    transformation: Mapped[str | None] = mapped_column(Text)
    perceived_problem: Mapped[str | None] = mapped_column(Text)
    offer_name: Mapped[str | None] = mapped_column(String)
    section1_context: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )
