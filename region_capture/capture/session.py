"""Capture session state, registry and progress reporting."""

import asyncio
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

import structlog

from region_capture.capture.errors import ErrorInfo
from region_capture.capture.models import EncodedOutput, ProgressUpdate, SessionStatus
from region_capture.capture.orchestrator import CancellationToken

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ErrorNotification:
    """Classified failure reported to the progress collaborator."""

    session_id: str
    kind: str
    message: str
    severity: str
    user_action: str | None
    offer_manual_save: bool
    auto_dismiss: bool

    @classmethod
    def from_error_info(cls, session_id: str, info: ErrorInfo) -> "ErrorNotification":
        return cls(
            session_id=session_id,
            kind=info.kind.value,
            message=info.message,
            severity=info.severity.value,
            user_action=info.user_action,
            offer_manual_save=info.should_offer_manual_save,
            auto_dismiss=info.severity.auto_dismiss,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "kind": self.kind,
            "message": self.message,
            "severity": self.severity,
            "user_action": self.user_action,
            "offer_manual_save": self.offer_manual_save,
            "auto_dismiss": self.auto_dismiss,
        }


class ProgressReporter(Protocol):
    """Receives progress and failure notifications."""

    async def report_progress(self, update: ProgressUpdate) -> None:
        ...

    async def report_error(self, notification: ErrorNotification) -> None:
        ...


class LoggingProgressReporter:
    """Progress reporter that only logs."""

    def __init__(self):
        self.log = logger.bind(component="progress")

    async def report_progress(self, update: ProgressUpdate) -> None:
        self.log.info("Capture progress", **update.to_dict())

    async def report_error(self, notification: ErrorNotification) -> None:
        self.log.error("Capture error", **notification.to_dict())


@dataclass
class CaptureSession:
    """In-flight state of one capture request."""

    session_id: str
    selector: str
    status: SessionStatus = SessionStatus.PENDING
    progress: int = 0
    error: ErrorInfo | None = None
    result: EncodedOutput | None = None
    saved_path: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    cancel_token: CancellationToken | None = None

    def __post_init__(self) -> None:
        if self.cancel_token is None:
            self.cancel_token = CancellationToken(self.session_id)

    def update_progress(self, progress: int, status: SessionStatus | None = None) -> bool:
        """
        Advance progress; lower values are ignored.

        Terminal sessions never change again. Returns True when anything
        changed.
        """
        if self.status.is_terminal:
            return False

        changed = False
        progress = max(0, min(100, progress))
        if progress > self.progress:
            self.progress = progress
            changed = True
        if status is not None and status != self.status:
            self.status = status
            changed = True
        if changed:
            self.updated_at = datetime.now(UTC)
        return changed

    def to_update(self, message: str | None = None) -> ProgressUpdate:
        return ProgressUpdate(self.session_id, self.progress, self.status, message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "selector": self.selector,
            "status": self.status.value,
            "progress": self.progress,
            "error": self.error.to_dict() if self.error else None,
            "result": self.result.to_dict() if self.result else None,
            "saved_path": self.saved_path,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


class SessionStore:
    """
    Registry of in-flight sessions keyed by session id.

    Owned by whoever starts sessions and passed explicitly to the
    components that need it. Completed sessions linger for a grace period
    so late duplicate notifications can still find them. Artifacts waiting
    for a manual save are kept separately and survive session removal, but
    expire after ``pending_save_ttl_s``.
    """

    def __init__(
        self,
        grace_period_s: float = 5.0,
        pending_save_ttl_s: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.grace_period_s = grace_period_s
        self.pending_save_ttl_s = pending_save_ttl_s
        self._clock = clock
        self._sessions: dict[str, CaptureSession] = {}
        self._pending_saves: dict[str, tuple[EncodedOutput, float]] = {}
        self._removal_tasks: dict[str, asyncio.Task] = {}
        self.log = logger.bind(component="session_store")

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def create(self, selector: str, session_id: str | None = None) -> CaptureSession:
        """
        Register a new session.

        Raises:
            ValueError: If the session id is already registered
        """
        session_id = session_id or f"capture_{uuid.uuid4().hex[:12]}"
        if session_id in self._sessions:
            raise ValueError(f"Session {session_id} already exists")
        session = CaptureSession(session_id=session_id, selector=selector)
        self._sessions[session_id] = session
        self.log.debug("Session created", session_id=session_id, selector=selector)
        return session

    def get(self, session_id: str) -> CaptureSession | None:
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> CaptureSession | None:
        task = self._removal_tasks.pop(session_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        session = self._sessions.pop(session_id, None)
        if session is not None:
            self.log.debug("Session removed", session_id=session_id)
        return session

    def schedule_removal(self, session_id: str, delay_s: float | None = None) -> asyncio.Task:
        """Remove a session after a delay (the grace period by default)."""
        delay_s = self.grace_period_s if delay_s is None else delay_s

        async def remove_later() -> None:
            await asyncio.sleep(delay_s)
            self.remove(session_id)

        existing = self._removal_tasks.pop(session_id, None)
        if existing is not None:
            existing.cancel()
        task = asyncio.create_task(remove_later())
        self._removal_tasks[session_id] = task
        return task

    def _expire_pending_saves(self) -> None:
        now = self._clock()
        expired = [
            session_id
            for session_id, (_, stored_at) in self._pending_saves.items()
            if now - stored_at >= self.pending_save_ttl_s
        ]
        for session_id in expired:
            output, _ = self._pending_saves.pop(session_id)
            self.log.info("Pending save expired", session_id=session_id, filename=output.filename)

    def store_pending_save(self, session_id: str, output: EncodedOutput) -> None:
        self._expire_pending_saves()
        self._pending_saves[session_id] = (output, self._clock())

    def get_pending_save(self, session_id: str) -> EncodedOutput | None:
        self._expire_pending_saves()
        entry = self._pending_saves.get(session_id)
        return entry[0] if entry else None

    def pop_pending_save(self, session_id: str) -> EncodedOutput | None:
        self._expire_pending_saves()
        entry = self._pending_saves.pop(session_id, None)
        return entry[0] if entry else None

    def pending_save_count(self) -> int:
        self._expire_pending_saves()
        return len(self._pending_saves)

    def active_sessions(self) -> list[CaptureSession]:
        return [s for s in self._sessions.values() if not s.status.is_terminal]

    async def close(self) -> None:
        """Cancel pending removals and drop all sessions and pending saves."""
        tasks = list(self._removal_tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._removal_tasks.clear()
        self._sessions.clear()
        self._pending_saves.clear()
