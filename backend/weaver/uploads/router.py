"""Upload session router.

Endpoints:
    POST /uploads/initialize   — Open an upload session
    POST /uploads/complete     — Upload one file into a session
    POST /uploads/webhook      — Processing events for uploaded files
    GET  /uploads/{session_id} — Session status and counts
"""
import logging
from typing import Optional

from fastapi import APIRouter, File, Form, HTTPException, UploadFile

from weaver.errors import WeaverError
from weaver.memories.router import require_memory_service, to_http_error
from weaver.memories.schemas import ProcessingStatus
from weaver.validation.schemas import FileCategory, UploadConfig

from .schemas import (
    CompleteUploadResponse,
    InitializeUploadRequest,
    InitializeUploadResponse,
    SessionStatusResponse,
    WebhookEvent,
    WebhookResponse,
)
from .service import UploadSessionManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/uploads", tags=["uploads"])

# ---------------------------------------------------------------------------
# Singleton manager management
# ---------------------------------------------------------------------------

_manager: Optional[UploadSessionManager] = None
_default_max_files: int = 1
_default_categories: list = [FileCategory.MIXED]


def get_upload_manager() -> Optional[UploadSessionManager]:
    return _manager


def set_upload_manager(
    manager: Optional[UploadSessionManager],
    default_max_files: int = 1,
    default_categories: Optional[list] = None,
) -> None:
    """Set (or clear) the global UploadSessionManager and session defaults."""
    global _manager, _default_max_files, _default_categories
    _manager = manager
    _default_max_files = default_max_files
    _default_categories = [FileCategory(c) for c in (default_categories or ["Mixed"])]


def _require_manager() -> UploadSessionManager:
    if _manager is None:
        raise HTTPException(status_code=503, detail="Upload sessions not configured")
    return _manager


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/initialize", response_model=InitializeUploadResponse)
async def initialize_upload(request: InitializeUploadRequest) -> InitializeUploadResponse:
    manager = _require_manager()
    config = UploadConfig(
        allowed_categories=request.allowed_categories or list(_default_categories),
        allowed_extensions=request.allowed_extensions,
        max_files=request.max_files or _default_max_files,
        max_size_bytes=request.max_size_bytes,
        storage_duration_days=request.storage_duration_days,
    )
    session = await manager.create(
        request.session_id,
        request.owner_id,
        request.guild_id,
        config,
        request.memory_draft,
    )
    return InitializeUploadResponse(
        session_id=session.session_id,
        expires_at=session.expires_at,
        config=session.config,
    )


@router.post("/complete", response_model=CompleteUploadResponse)
async def complete_upload(
    session_id: str = Form(...),
    file: UploadFile = File(...),
) -> CompleteUploadResponse:
    """Store one file, commit its metadata, then record it on the session."""
    manager = _require_manager()
    service = require_memory_service()
    data = await file.read()
    try:
        async with manager.session_lock(session_id):
            session = await manager.require(session_id)
            # Reject before any byte is written
            manager.check_capacity(session)
            record, memory_id, file_count, warnings = await service.commit_session_file(
                session,
                file.filename or "unnamed",
                file.content_type or "application/octet-stream",
                data,
            )
            created_memory = session.memory_id is None
            try:
                if created_memory:
                    await manager.attach_memory(session_id, memory_id)
                session = await manager.record_file_complete(session_id, record)
            except WeaverError:
                await service.discard_session_file(session, memory_id, record.file_id, created_memory)
                if created_memory:
                    await manager.detach_memory(session_id, memory_id)
                raise
    except WeaverError as exc:
        raise to_http_error(exc)

    logger.info(
        "[uploads] Session %s received %s (%d/%d)",
        session_id, record.name, len(session.files), session.config.max_files,
    )
    return CompleteUploadResponse(
        session_id=session_id,
        status=session.status,
        file=record,
        memory_id=memory_id,
        file_count=file_count,
        warnings=warnings,
    )


@router.post("/webhook", response_model=WebhookResponse)
async def upload_webhook(event: WebhookEvent) -> WebhookResponse:
    manager = _require_manager()
    try:
        record = await manager.apply_event(event.session_id, event.file_key, event.event, event.data)
    except WeaverError as exc:
        raise to_http_error(exc)

    service = require_memory_service()
    if record.file_id:
        status = (
            ProcessingStatus.COMPLETED
            if event.event == "processing_complete"
            else ProcessingStatus.FAILED
        )
        service.update_file_status(record.file_id, status)
    return WebhookResponse(file=record)


@router.get("/{session_id}", response_model=SessionStatusResponse)
async def get_session(session_id: str) -> SessionStatusResponse:
    manager = _require_manager()
    try:
        session = await manager.require(session_id)
    except WeaverError as exc:
        raise to_http_error(exc)
    return SessionStatusResponse(session=session, summary=manager.summary(session))
