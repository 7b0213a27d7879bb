"""Pydantic schemas for upload sessions."""
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from weaver.validation.schemas import FileCategory, UploadConfig


class SessionStatus(str, Enum):
    INITIALIZED = "initialized"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    EXPIRED = "expired"


class FileStatus(str, Enum):
    UPLOADED = "uploaded"
    QUARANTINED = "quarantined"


class FileProcessingStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


def new_session_id() -> str:
    return f"upload_{uuid.uuid4().hex}"


class MemoryDraft(BaseModel):
    """Memory fields collected before the first file arrives."""
    title:       str
    description: str
    category:    Optional[str] = None
    privacy:     Optional[str] = None
    tags:        List[str] = Field(default_factory=list)


class SessionFileRecord(BaseModel):
    key:               str
    name:              str
    size:              int
    content_type:      str
    file_id:           Optional[str] = None
    status:            FileStatus = FileStatus.UPLOADED
    processing_status: FileProcessingStatus = FileProcessingStatus.PENDING
    error:             Optional[str] = None
    uploaded_at:       datetime
    processed_at:      Optional[datetime] = None


class UploadSession(BaseModel):
    session_id:   str
    owner_id:     str
    guild_id:     str
    config:       UploadConfig
    memory_draft: Optional[MemoryDraft] = None
    memory_id:    Optional[str] = None
    files:        List[SessionFileRecord] = Field(default_factory=list)
    status:       SessionStatus = SessionStatus.INITIALIZED
    created_at:   datetime
    expires_at:   datetime
    last_updated: datetime

    def find_file(self, key: str) -> Optional[SessionFileRecord]:
        for record in self.files:
            if record.key == key or record.file_id == key:
                return record
        return None


class SessionSummary(BaseModel):
    total_files:     int = 0
    completed_files: int = 0
    failed_files:    int = 0
    pending_files:   int = 0


# ---------------------------------------------------------------------------
# API payloads
# ---------------------------------------------------------------------------


class InitializeUploadRequest(BaseModel):
    owner_id:              str
    guild_id:              str
    session_id:            Optional[str] = None
    allowed_categories:    List[FileCategory] = Field(default_factory=list)
    allowed_extensions:    List[str] = Field(default_factory=list)
    max_files:             Optional[int] = Field(None, ge=1, le=10)
    max_size_bytes:        Optional[int] = Field(None, ge=1)
    storage_duration_days: int = Field(0, ge=0, le=365)
    memory_draft:          Optional[MemoryDraft] = None


class InitializeUploadResponse(BaseModel):
    success:    bool = True
    session_id: str
    expires_at: datetime
    config:     UploadConfig
    upload_url: str = "/uploads/complete"


class CompleteUploadResponse(BaseModel):
    success:    bool = True
    session_id: str
    status:     SessionStatus
    file:       SessionFileRecord
    memory_id:  Optional[str] = None
    file_count: int = 0
    warnings:   List[str] = Field(default_factory=list)


class WebhookEvent(BaseModel):
    session_id: str
    file_key:   str
    event:      Literal["processing_complete", "processing_failed", "virus_detected"]
    data:       Dict[str, Any] = Field(default_factory=dict)


class WebhookResponse(BaseModel):
    success: bool = True
    file:    SessionFileRecord


class SessionStatusResponse(BaseModel):
    success: bool = True
    session: UploadSession
    summary: SessionSummary
