"""Upload session manager.

Sessions live in an injected ``KeyValueStore`` with a TTL equal to their
declared expiry.  A read after the deadline behaves as not-found.  Sessions
are never deleted explicitly; expiry is the only way out.
"""
import asyncio
import logging
import weakref
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from weaver.errors import SessionExpired, SessionNotFound, ValidationFailed
from weaver.state import KeyValueStore
from weaver.validation.schemas import UploadConfig

from .schemas import (
    FileProcessingStatus,
    FileStatus,
    MemoryDraft,
    SessionFileRecord,
    SessionStatus,
    SessionSummary,
    UploadSession,
    new_session_id,
)

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL_SECONDS = 24 * 60 * 60


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UploadSessionManager:
    """Pure bookkeeping for upload sessions.

    Args:
        store:       Backing key/value store (TTL-aware).
        ttl_seconds: Session lifetime.
        now:         Wall-clock source for timestamps (tests).
    """

    def __init__(
        self,
        store: KeyValueStore,
        ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._ttl = ttl_seconds
        self._now = now
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def session_lock(self, session_id: str) -> asyncio.Lock:
        """Lock that serializes file commits into one session.

        Held for the whole store-commit-record sequence so two uploads cannot
        both create the session's memory or both claim the last free slot.
        """
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    async def create(
        self,
        session_id: Optional[str],
        owner_id: str,
        guild_id: str,
        config: Optional[UploadConfig] = None,
        memory_draft: Optional[MemoryDraft] = None,
    ) -> UploadSession:
        now = self._now()
        session = UploadSession(
            session_id=session_id or new_session_id(),
            owner_id=owner_id,
            guild_id=guild_id,
            config=config or UploadConfig(),
            memory_draft=memory_draft,
            created_at=now,
            expires_at=now + timedelta(seconds=self._ttl),
            last_updated=now,
        )
        await self._store.put(session.session_id, session, ttl_seconds=self._ttl)
        logger.info(
            "Created upload session %s for user %s (max_files=%d)",
            session.session_id, owner_id, session.config.max_files,
        )
        return session

    async def get(self, session_id: str) -> Optional[UploadSession]:
        return await self._store.get(session_id)

    async def require(self, session_id: str) -> UploadSession:
        """Like ``get`` but raises for missing or lapsed sessions."""
        session = await self._store.get(session_id)
        if session is None:
            raise SessionNotFound(f"Upload session {session_id} not found")
        if session.expires_at <= self._now():
            session.status = SessionStatus.EXPIRED
            raise SessionExpired(f"Upload session {session_id} expired at {session.expires_at}")
        return session

    @staticmethod
    def check_capacity(session: UploadSession) -> None:
        """Raise ValidationFailed if the session cannot take another file."""
        if len(session.files) >= session.config.max_files:
            raise ValidationFailed(
                f"Session {session.session_id} already has {len(session.files)} file(s)",
                user_message=f"This upload accepts at most {session.config.max_files} file(s).",
                reasons=[{"code": "too_many_files", "message": "Maximum number of files reached"}],
            )

    async def record_file_complete(
        self, session_id: str, file_record: SessionFileRecord
    ) -> UploadSession:
        """Append *file_record* to the session.

        Does not commit any metadata; that is the caller's job.

        Raises:
            SessionNotFound / SessionExpired: If the session is gone.
            ValidationFailed: If the session already holds ``max_files`` files.
        """
        session = await self.require(session_id)
        self.check_capacity(session)

        session.files.append(file_record)
        session.last_updated = self._now()
        if len(session.files) >= session.config.max_files:
            session.status = SessionStatus.COMPLETED
        else:
            session.status = SessionStatus.IN_PROGRESS
        await self._store.put(session_id, session)
        return session

    async def attach_memory(self, session_id: str, memory_id: str) -> UploadSession:
        session = await self.require(session_id)
        session.memory_id = memory_id
        session.last_updated = self._now()
        await self._store.put(session_id, session)
        return session

    async def detach_memory(self, session_id: str, memory_id: str) -> None:
        """Forget a discarded memory so the next file creates a fresh one."""
        session = await self._store.get(session_id)
        if session is not None and session.memory_id == memory_id:
            session.memory_id = None
            session.last_updated = self._now()
            await self._store.put(session_id, session)

    async def apply_event(
        self,
        session_id: str,
        file_key: str,
        event: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> SessionFileRecord:
        """Apply a processing webhook event to one file of a session."""
        data = data or {}
        session = await self.require(session_id)
        record = session.find_file(file_key)
        if record is None:
            raise SessionNotFound(f"File {file_key} is not part of session {session_id}")

        now = self._now()
        if event == "processing_complete":
            record.processing_status = FileProcessingStatus.COMPLETED
            record.processed_at = now
        elif event == "processing_failed":
            record.processing_status = FileProcessingStatus.FAILED
            record.error = data.get("error") or "Processing failed"
        elif event == "virus_detected":
            record.status = FileStatus.QUARANTINED
            record.processing_status = FileProcessingStatus.FAILED
            record.error = "Virus detected"
            logger.warning("Virus detected in %s (session %s)", file_key, session_id)
        else:
            raise ValueError(f"Unknown upload event: {event}")

        session.last_updated = now
        await self._store.put(session_id, session)
        return record

    @staticmethod
    def summary(session: UploadSession) -> SessionSummary:
        counts = SessionSummary(total_files=len(session.files))
        for record in session.files:
            if record.processing_status is FileProcessingStatus.COMPLETED:
                counts.completed_files += 1
            elif record.processing_status is FileProcessingStatus.FAILED:
                counts.failed_files += 1
            else:
                counts.pending_files += 1
        return counts
