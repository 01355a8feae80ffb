"""Event-driven tracker for a live voice intake call.

Listens to the vendor SDK's events, keeps the call's identity and start time,
maintains a live transcript feed, and makes exactly one attempt to persist
the transcript once the call is over, even when the vendor never reports the
end of the call.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import httpx

from ..core.config import settings
from ..core.observer import LoggingObserver, Observer
from .correlation import extract_call_id

logger = logging.getLogger(__name__)

MSG_CONNECTING = "Connecting to AI assistant..."
MSG_CONNECTED = "Call connected - speak naturally!"
MSG_LISTENING = "Listening..."
MSG_ENDING = "Ending call..."
MSG_ENDED = "Call ended - processing transcript..."
MSG_PROCESSING = "Processing transcript (this takes 10-15 seconds)..."
MSG_SAVED = "Transcript saved!"
MSG_SAVE_FAILED = "Error saving transcript. Please try again or contact support."
MSG_NO_IDENTITY = "Warning: Call ID not captured. Transcript may not save properly."
MSG_MIC_DENIED = "Please allow microphone access in your browser to start the call."
MSG_CONNECT_FAILED = "Failed to connect. Please try again."

ERROR_MIC_DENIED = "Microphone permission denied. Please allow microphone access and try again."
ERROR_START_FAILED = "Failed to start call. Please try again."
ERROR_END_FAILED = "Failed to end call properly"

DEDUPE_LOOKBACK = 3


class CallPhase(str, enum.Enum):
    READY = "ready"
    CONNECTING = "connecting"
    ACTIVE = "active"


@dataclass(slots=True)
class FeedMessage:
    role: str
    content: str
    timestamp: datetime


@dataclass(slots=True)
class CallSession:
    """Identity of the call in flight; discarded once persistence is attempted."""

    call_id: str | None = None
    started_at: datetime | None = None
    is_active: bool = False
    persistence_requested: bool = False


@dataclass(slots=True)
class SaveRequest:
    project_id: str
    user_id: str
    call_id: str | None = None
    call_start_timestamp: datetime | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "callId": self.call_id,
            "callStartTimestamp": self.call_start_timestamp.isoformat() if self.call_start_timestamp else None,
            "projectId": self.project_id,
            "userId": self.user_id,
        }


@dataclass(slots=True)
class SaveResult:
    ok: bool
    transcript: str = ""
    duration: int = 0
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


class VoiceClient(Protocol):
    """The subset of the vendor web SDK the tracker drives."""

    async def start(self, assistant_id: str) -> Any: ...

    async def stop(self) -> None: ...

    def on(self, event: str, handler: Callable[..., Any]) -> None: ...


class TranscriptSaver(Protocol):
    async def save(self, request: SaveRequest) -> SaveResult: ...


class HttpTranscriptSaver:
    """Ask the ingestion endpoint to fetch and store a finished call."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        path: str = "/api/vapi/webhook",
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = (base_url or settings.public_base_url).rstrip("/")
        self._path = path
        self._timeout = timeout
        self._transport = transport

    async def save(self, request: SaveRequest) -> SaveResult:
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url, timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.post(self._path, json=request.to_payload())
        except httpx.HTTPError as exc:
            return SaveResult(ok=False, error=str(exc))

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if response.is_success:
            return SaveResult(
                ok=True,
                transcript=str(data.get("transcript") or ""),
                duration=int(data.get("duration") or 0),
                details=data,
            )
        return SaveResult(ok=False, error=f"HTTP {response.status_code}", details=data)


def format_duration(seconds: int) -> str:
    minutes, secs = divmod(max(0, seconds), 60)
    return f"{minutes}:{secs:02d}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CallSessionTracker:
    """Drive one voice intake widget: connect, track, end, and save."""

    def __init__(
        self,
        client: VoiceClient,
        saver: TranscriptSaver,
        *,
        project_id: str,
        user_id: str,
        assistant_id: str | None = None,
        observer: Observer | None = None,
        processing_delay: float | None = None,
        end_grace: float | None = None,
        on_call_complete: Callable[[SaveResult], Any] | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._client = client
        self._saver = saver
        self._project_id = project_id
        self._user_id = user_id
        self._assistant_id = assistant_id if assistant_id is not None else settings.vapi_assistant_id
        self._observer = observer or LoggingObserver()
        self._processing_delay = (
            settings.transcript_processing_delay_seconds if processing_delay is None else processing_delay
        )
        self._end_grace = settings.call_end_grace_seconds if end_grace is None else end_grace
        self._on_call_complete = on_call_complete
        self._clock = clock

        self._phase = CallPhase.READY
        self._session: CallSession | None = None
        self._messages: list[FeedMessage] = []
        self._duration = 0
        self._error: str | None = None
        self._ai_thinking = False
        self._timer_task: asyncio.Task[None] | None = None
        self._grace_task: asyncio.Task[None] | None = None
        self._pending: set[asyncio.Task[Any]] = set()
        self.last_save: SaveResult | None = None

    @property
    def phase(self) -> CallPhase:
        return self._phase

    @property
    def session(self) -> CallSession | None:
        return self._session

    @property
    def messages(self) -> list[FeedMessage]:
        return list(self._messages)

    @property
    def duration_seconds(self) -> int:
        return self._duration

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def ai_thinking(self) -> bool:
        return self._ai_thinking

    def attach(self) -> None:
        """Subscribe to the vendor SDK's events."""

        self._client.on("call-start", self.handle_call_start)
        self._client.on("call-end", self.handle_call_end)
        self._client.on("speech-start", self.handle_speech_start)
        self._client.on("speech-end", self.handle_speech_end)
        self._client.on("message", self.handle_message)
        self._client.on("error", self.handle_error)

    async def start_call(self) -> None:
        """Begin connecting; the call-start event completes the transition."""

        if self._phase is not CallPhase.READY or not self._assistant_id:
            return

        self._phase = CallPhase.CONNECTING
        self._error = None
        self._session = CallSession()
        self._append("system", MSG_CONNECTING)

        try:
            await self._client.start(self._assistant_id)
            logger.info("Call start initiated")
        except Exception as exc:  # noqa: BLE001 - every failure returns to ready
            logger.error("Failed to start call: %s", exc)
            self._observer.record_error("call_tracker.start_call", exc)
            if "permission" in str(exc).lower():
                self._error = ERROR_MIC_DENIED
                self._append("system", MSG_MIC_DENIED)
            else:
                self._error = ERROR_START_FAILED
                self._append("system", MSG_CONNECT_FAILED)
            if self._phase is CallPhase.CONNECTING:
                self._phase = CallPhase.READY
                self._session = None

    async def end_call(self) -> None:
        """Ask the SDK to hang up; force cleanup if it never confirms."""

        logger.info("User ended call %s", self._session.call_id if self._session else None)
        self._append("system", MSG_ENDING)

        try:
            await self._client.stop()
        except Exception as exc:  # noqa: BLE001 - cleanup must still happen
            logger.error("Failed to end call: %s", exc)
            self._observer.record_error("call_tracker.end_call", exc)
            self._error = ERROR_END_FAILED
            self._finish_call()
            return

        self._cancel_grace()
        self._grace_task = asyncio.get_running_loop().create_task(self._force_end_after_grace())

    async def close(self) -> None:
        """Tear down: stop timers and hang up an active call."""

        self._stop_timer()
        self._cancel_grace()
        if self._phase is CallPhase.READY and not (self._session and self._session.is_active):
            return
        try:
            await self._client.stop()
            logger.info("Stopped active call during cleanup")
        except Exception as exc:  # noqa: BLE001 - teardown must not raise
            logger.error("Error stopping call during cleanup: %s", exc)
            self._observer.record_error("call_tracker.close", exc)
        self._phase = CallPhase.READY

    async def wait_for_pending(self) -> None:
        """Wait until in-flight save and grace tasks have finished."""

        while True:
            tasks = [task for task in (*self._pending, self._grace_task) if task is not None and not task.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    def handle_call_start(self, payload: Any = None) -> None:
        started_at = self._clock()
        session = self._session or CallSession()
        self._session = session
        session.started_at = started_at
        session.is_active = True

        call_id = extract_call_id(payload)
        if call_id:
            session.call_id = call_id
            logger.info("Call started with id %s at %s", call_id, started_at.isoformat())
        else:
            logger.warning("Call started without an id at %s; relying on start time", started_at.isoformat())

        self._phase = CallPhase.ACTIVE
        self._duration = 0
        self._start_timer()
        self._append("system", MSG_CONNECTED)

    def handle_message(self, message: Any) -> None:
        if not isinstance(message, dict):
            return

        call_id = extract_call_id(message)
        if call_id and self._session is not None and not self._session.call_id:
            logger.info("Captured call id %s from %s message", call_id, message.get("type"))
            self._session.call_id = call_id

        if message.get("type") != "transcript" or message.get("transcriptType") != "final":
            return
        content = message.get("transcript")
        if not isinstance(content, str) or not content.strip():
            return
        content = content.strip()
        role = message.get("role") or "user"

        if self._phase is CallPhase.CONNECTING:
            # Transcripts prove the call is live even if call-start never fired.
            logger.info("Call active (detected from transcript)")
            session = self._session or CallSession()
            self._session = session
            session.is_active = True
            if session.started_at is None:
                session.started_at = self._clock()
            self._phase = CallPhase.ACTIVE
            self._start_timer()

        recent = self._messages[-DEDUPE_LOOKBACK:]
        if not any(msg.content == content and msg.role == role for msg in recent):
            self._append(role, content)
        if role == "user":
            self._ai_thinking = False

    def handle_speech_start(self, *_: Any) -> None:
        last = self._messages[-1] if self._messages else None
        if last is not None and last.role == "system" and last.content == MSG_LISTENING:
            return
        self._append("system", MSG_LISTENING)

    def handle_speech_end(self, *_: Any) -> None:
        self._messages = [
            msg for msg in self._messages if not (msg.role == "system" and msg.content == MSG_LISTENING)
        ]
        self._ai_thinking = True

    def handle_call_end(self, *_: Any) -> None:
        logger.info("Call ended")
        self._cancel_grace()
        self._finish_call()

    def handle_error(self, error: Any) -> None:
        exc = error if isinstance(error, BaseException) else RuntimeError(str(error))
        logger.error("Voice SDK error: %s", exc)
        self._observer.record_error("call_tracker.sdk_error", exc)
        self._error = str(exc) if isinstance(error, BaseException) else "Call error occurred"
        self._cancel_grace()
        session = self._session
        if session is not None and (session.call_id or session.started_at):
            self._finish_call()
            return
        self._stop_timer()
        self._phase = CallPhase.READY
        self._session = None

    def _finish_call(self) -> None:
        """Stop the call locally and request persistence once."""

        self._stop_timer()
        self._phase = CallPhase.READY
        session = self._session
        if session is None or session.persistence_requested:
            return

        session.is_active = False
        session.persistence_requested = True
        self._session = None
        self._append("system", MSG_ENDED)

        if session.call_id or session.started_at:
            self._spawn(self._save_transcript(session))
        else:
            logger.error("No call id or start time captured; transcript may not save")
            self._observer.record_event("call_tracker.transcript_unsaved", {"project_id": self._project_id})
            self._append("system", MSG_NO_IDENTITY)

    async def _force_end_after_grace(self) -> None:
        await asyncio.sleep(self._end_grace)
        if self._phase is not CallPhase.READY or (self._session is not None and self._session.is_active):
            logger.warning("call-end event did not fire within %.1fs; forcing cleanup", self._end_grace)
            self._finish_call()

    async def _save_transcript(self, session: CallSession) -> None:
        request = SaveRequest(
            project_id=self._project_id,
            user_id=self._user_id,
            call_id=session.call_id,
            call_start_timestamp=session.started_at,
        )
        self._append("system", MSG_PROCESSING)
        logger.info("Waiting %.1fs for VAPI to process call %s", self._processing_delay, session.call_id)

        try:
            # VAPI publishes the finished call's artifact after a short delay.
            await asyncio.sleep(self._processing_delay)
            result = await self._saver.save(request)
        except Exception as exc:  # noqa: BLE001 - failures are shown in the feed
            logger.error("Error saving transcript: %s", exc)
            self._observer.record_error("call_tracker.save_transcript", exc)
            result = SaveResult(ok=False, error=str(exc))

        self.last_save = result
        if result.ok:
            logger.info("Transcript saved (%d chars)", len(result.transcript))
            self._append("system", MSG_SAVED)
            if self._on_call_complete is not None:
                self._on_call_complete(result)
        else:
            logger.error("Failed to save transcript: %s", result.error)
            self._append("system", MSG_SAVE_FAILED)

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _start_timer(self) -> None:
        if self._timer_task is None or self._timer_task.done():
            self._timer_task = asyncio.get_running_loop().create_task(self._tick())

    def _stop_timer(self) -> None:
        if self._timer_task is not None:
            self._timer_task.cancel()
            self._timer_task = None

    def _cancel_grace(self) -> None:
        if self._grace_task is not None and not self._grace_task.done():
            self._grace_task.cancel()
        self._grace_task = None

    async def _tick(self) -> None:
        while True:
            await asyncio.sleep(1)
            self._duration += 1

    def _append(self, role: str, content: str) -> None:
        self._messages.append(FeedMessage(role=role, content=content, timestamp=self._clock()))
