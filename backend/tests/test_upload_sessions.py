"""Tests for the upload session manager."""
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from weaver.errors import SessionExpired, SessionNotFound, ValidationFailed
from weaver.state import InMemoryTTLStore
from weaver.uploads.schemas import (
    FileProcessingStatus,
    FileStatus,
    MemoryDraft,
    SessionFileRecord,
    SessionStatus,
)
from weaver.uploads.service import UploadSessionManager
from weaver.validation.schemas import UploadConfig

BASE = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)
TTL = 3600


def record(key: str, file_id: str = None) -> SessionFileRecord:
    return SessionFileRecord(
        key=key,
        name=key.rsplit("/", 1)[-1],
        size=10,
        content_type="image/png",
        file_id=file_id,
        uploaded_at=BASE,
    )


@pytest.fixture
def store(clock) -> InMemoryTTLStore:
    return InMemoryTTLStore(default_ttl_seconds=TTL, clock=clock, name="test-sessions")


@pytest.fixture
def manager(store, clock) -> UploadSessionManager:
    # Wall clock moves with the store clock
    return UploadSessionManager(
        store,
        ttl_seconds=TTL,
        now=lambda: BASE + timedelta(seconds=clock.now - 1000.0),
    )


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_assigns_id_and_expiry(self, manager):
        session = await manager.create(None, "user-a", "guild-1")

        assert session.session_id.startswith("upload_")
        assert session.status is SessionStatus.INITIALIZED
        assert session.created_at == BASE
        assert session.expires_at == BASE + timedelta(seconds=TTL)
        assert session.config.max_files == 1
        assert await manager.get(session.session_id) is session

    @pytest.mark.asyncio
    async def test_create_with_explicit_id_and_draft(self, manager):
        draft = MemoryDraft(title="Trip", description="Photos")
        session = await manager.create(
            "upload_custom", "user-a", "guild-1",
            config=UploadConfig(max_files=3), memory_draft=draft,
        )
        assert session.session_id == "upload_custom"
        assert session.memory_draft == draft
        assert session.config.max_files == 3

    @pytest.mark.asyncio
    async def test_unknown_session(self, manager):
        assert await manager.get("upload_nope") is None
        with pytest.raises(SessionNotFound):
            await manager.require("upload_nope")


class TestExpiry:
    @pytest.mark.asyncio
    async def test_session_vanishes_after_ttl(self, manager, clock):
        session = await manager.create(None, "user-a", "guild-1")

        clock.advance(TTL - 1)
        assert await manager.get(session.session_id) is not None
        clock.advance(1)
        assert await manager.get(session.session_id) is None
        with pytest.raises(SessionNotFound):
            await manager.require(session.session_id)

    @pytest.mark.asyncio
    async def test_updates_keep_original_deadline(self, manager, clock):
        session = await manager.create(None, "user-a", "guild-1", config=UploadConfig(max_files=5))

        clock.advance(TTL - 10)
        await manager.record_file_complete(session.session_id, record("memories/m/a.png"))
        clock.advance(10)

        assert await manager.get(session.session_id) is None

    @pytest.mark.asyncio
    async def test_lapsed_deadline_is_reported_as_expired(self, store):
        wall = {"now": BASE}
        manager = UploadSessionManager(store, ttl_seconds=TTL, now=lambda: wall["now"])
        session = await manager.create(None, "user-a", "guild-1")

        wall["now"] = BASE + timedelta(seconds=TTL)

        with pytest.raises(SessionExpired):
            await manager.require(session.session_id)
        assert session.status is SessionStatus.EXPIRED


class TestFiles:
    @pytest.mark.asyncio
    async def test_record_until_full(self, manager):
        session = await manager.create(None, "user-a", "guild-1", config=UploadConfig(max_files=2))

        first = await manager.record_file_complete(session.session_id, record("memories/m/a.png"))
        assert first.status is SessionStatus.IN_PROGRESS
        second = await manager.record_file_complete(session.session_id, record("memories/m/b.png"))
        assert second.status is SessionStatus.COMPLETED
        assert len(second.files) == 2

        with pytest.raises(ValidationFailed) as exc_info:
            await manager.record_file_complete(session.session_id, record("memories/m/c.png"))
        assert exc_info.value.reasons[0]["code"] == "too_many_files"
        assert len((await manager.get(session.session_id)).files) == 2

    @pytest.mark.asyncio
    async def test_check_capacity(self, manager):
        session = await manager.create(None, "user-a", "guild-1")
        UploadSessionManager.check_capacity(session)
        session.files.append(record("memories/m/a.png"))
        with pytest.raises(ValidationFailed):
            UploadSessionManager.check_capacity(session)

    @pytest.mark.asyncio
    async def test_attach_memory(self, manager):
        session = await manager.create(None, "user-a", "guild-1")
        updated = await manager.attach_memory(session.session_id, "memory_1")
        assert updated.memory_id == "memory_1"

    def test_session_lock_is_shared_per_session(self, manager):
        lock = manager.session_lock("upload_a")
        assert manager.session_lock("upload_a") is lock
        assert manager.session_lock("upload_b") is not lock


class TestEvents:
    @pytest_asyncio.fixture
    async def session_id(self, manager):
        session = await manager.create(None, "user-a", "guild-1", config=UploadConfig(max_files=3))
        for key, file_id in (("memories/m/a.png", "file_a"), ("memories/m/b.png", "file_b"), ("memories/m/c.png", "file_c")):
            await manager.record_file_complete(session.session_id, record(key, file_id))
        return session.session_id

    @pytest.mark.asyncio
    async def test_processing_complete(self, manager, session_id):
        updated = await manager.apply_event(session_id, "memories/m/a.png", "processing_complete")
        assert updated.processing_status is FileProcessingStatus.COMPLETED
        assert updated.processed_at is not None

    @pytest.mark.asyncio
    async def test_processing_failed_keeps_error(self, manager, session_id):
        updated = await manager.apply_event(
            session_id, "file_b", "processing_failed", {"error": "thumbnail failed"},
        )
        assert updated.processing_status is FileProcessingStatus.FAILED
        assert updated.error == "thumbnail failed"

    @pytest.mark.asyncio
    async def test_virus_detected_quarantines(self, manager, session_id):
        updated = await manager.apply_event(session_id, "memories/m/c.png", "virus_detected")
        assert updated.status is FileStatus.QUARANTINED
        assert updated.processing_status is FileProcessingStatus.FAILED

    @pytest.mark.asyncio
    async def test_unknown_file(self, manager, session_id):
        with pytest.raises(SessionNotFound):
            await manager.apply_event(session_id, "memories/m/zzz.png", "processing_complete")

    @pytest.mark.asyncio
    async def test_unknown_event(self, manager, session_id):
        with pytest.raises(ValueError):
            await manager.apply_event(session_id, "memories/m/a.png", "exploded")

    @pytest.mark.asyncio
    async def test_summary(self, manager, session_id):
        await manager.apply_event(session_id, "memories/m/a.png", "processing_complete")
        await manager.apply_event(session_id, "memories/m/b.png", "processing_failed")

        summary = UploadSessionManager.summary(await manager.get(session_id))

        assert summary.total_files == 3
        assert summary.completed_files == 1
        assert summary.failed_files == 1
        assert summary.pending_files == 1
