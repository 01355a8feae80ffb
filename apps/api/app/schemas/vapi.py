"""Schemas for voice call ingestion, initiation, and listing."""
from __future__ import annotations

from datetime import datetime
import enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class VapiEventType(str, enum.Enum):
    CALL_STARTED = "call.started"
    CALL_ENDED = "call.ended"
    TRANSCRIPT = "transcript"


# Vendor server-message names that map onto the event types above.
EVENT_TYPE_ALIASES: dict[str, VapiEventType] = {
    "end-of-call-report": VapiEventType.CALL_ENDED,
}


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class WebhookEvent(_CamelModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: str
    call: dict[str, Any] = Field(default_factory=dict)
    transcript: str | None = Field(default=None, description="Locally summarized transcript, if any")

    @property
    def event_type(self) -> VapiEventType | None:
        if self.type in EVENT_TYPE_ALIASES:
            return EVENT_TYPE_ALIASES[self.type]
        try:
            return VapiEventType(self.type)
        except ValueError:
            return None

    @property
    def call_metadata(self) -> dict[str, Any]:
        metadata = self.call.get("metadata")
        return metadata if isinstance(metadata, dict) else {}


class WebhookAck(_CamelModel):
    received: bool = True
    type: str
    handled: bool


class ClientSaveRequest(_CamelModel):
    call_id: str | None = Field(default=None, alias="callId")
    call_start_timestamp: datetime | None = Field(default=None, alias="callStartTimestamp")
    project_id: str = Field(alias="projectId", min_length=1)
    user_id: str = Field(alias="userId", min_length=1)


class SaveTranscriptResponse(_CamelModel):
    success: bool = True
    call_id: str = Field(alias="callId")
    transcript: str
    duration: int


class InitiateCallRequest(_CamelModel):
    project_id: str = Field(alias="projectId", min_length=1)


class InitiateCallResponse(_CamelModel):
    success: bool = True
    call_id: str = Field(alias="callId")


class TranscriptSummary(_CamelModel):
    call_id: str = Field(alias="callId")
    status: str
    duration: int
    transcript: str
    extracted_data: dict[str, Any] = Field(default_factory=dict, alias="extractedData")
    created_at: datetime = Field(alias="createdAt")


class TranscriptListResponse(_CamelModel):
    items: list[TranscriptSummary]
