"""Pydantic schemas for memories and their files.

- Memory: the logical container (owner, guild, privacy, tags, file count)
- MemoryFile: one stored file; durable-store fields are always set,
  content-address (IPFS) fields are filled in later by enrichment
- MemorySummary: a Memory joined with one representative file, as returned
  by the search endpoints
- Request/response models for the create, search, delete and enrich paths
"""
import time
import uuid
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class Privacy(str, Enum):
    PUBLIC = "public"
    MEMBERS_ONLY = "members_only"
    PRIVATE = "private"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["Privacy"]:
        """Accept canonical values and display labels ("Members Only")."""
        if not value:
            return None
        key = value.strip().lower().replace(" ", "_").replace("-", "_")
        for member in cls:
            if member.value == key:
                return member
        return None


class Category(str, Enum):
    PERSONAL = "personal"
    SERVER_EVENTS = "server_events"
    RESOURCES = "resources"
    GAMING = "gaming"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["Category"]:
        if not value:
            return None
        key = value.strip().lower().replace(" ", "_").replace("-", "_")
        for member in cls:
            if member.value == key:
                return member
        return None


class MemoryStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    DELETED = "deleted"


class ProcessingStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


def new_memory_id() -> str:
    return f"memory_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def new_file_id() -> str:
    return f"file_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class Memory(BaseModel):
    id: str = Field(default_factory=new_memory_id, description="Memory ID")
    owner_id: str = Field(..., description="User ID of the owner")
    guild_id: str = Field(..., description="Guild (collection) ID")
    title: str
    description: str
    category: Category = Category.OTHER
    privacy: Privacy = Privacy.MEMBERS_ONLY
    tags: List[str] = Field(default_factory=list)
    status: MemoryStatus = MemoryStatus.ACTIVE
    file_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class MemoryFile(BaseModel):
    id: str = Field(default_factory=new_file_id, description="File ID")
    memory_id: str = ""
    filename: str = Field(..., description="Sanitized filename used in the storage key")
    original_filename: str = Field(..., description="Filename as uploaded")
    content_type: str
    size_bytes: int
    storage_key: str
    storage_url: str
    ipfs_cid: Optional[str] = None
    ipfs_url: Optional[str] = None
    ipfs_pinned: Optional[bool] = None
    processing_status: ProcessingStatus = ProcessingStatus.COMPLETED
    uploaded_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class MemorySummary(Memory):
    """A memory joined with its representative file (earliest upload)."""
    file_id: Optional[str] = None
    file_name: Optional[str] = None
    content_type: Optional[str] = None
    file_size: Optional[int] = None
    storage_key: Optional[str] = None
    storage_url: Optional[str] = None
    ipfs_cid: Optional[str] = None
    ipfs_url: Optional[str] = None


class MemoryDetail(Memory):
    files: List[MemoryFile] = Field(default_factory=list)


class SearchFilters(BaseModel):
    category: Optional[str] = None
    privacy: Optional[str] = None
    search_term: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    limit: Optional[int] = Field(None, ge=1, le=500)
    offset: Optional[int] = Field(None, ge=0)


# ---------------------------------------------------------------------------
# Service / API payloads
# ---------------------------------------------------------------------------


class CreateMemoryRequest(BaseModel):
    """Everything the intake boundary hands over for one upload."""
    owner_id: str
    guild_id: str
    title: str
    description: str
    category: Optional[str] = None
    privacy: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    filename: str
    content_type: str
    declared_size: Optional[int] = None
    data: bytes = Field(..., repr=False)


class CreateMemoryResponse(BaseModel):
    success: bool = True
    memory_id: str
    file_id: str
    file_count: int
    storage_url: str
    storage_key: str
    warnings: List[str] = Field(default_factory=list)


class SearchRequest(BaseModel):
    owner_id: str
    filters: SearchFilters = Field(default_factory=SearchFilters)


class SharedSearchRequest(BaseModel):
    guild_id: str
    requester_id: Optional[str] = None
    filters: SearchFilters = Field(default_factory=SearchFilters)


class SearchResponse(BaseModel):
    success: bool = True
    memories: List[MemorySummary]
    count: int


class DeleteMemoryResponse(BaseModel):
    success: bool = True
    memory_id: str
    file_keys_to_purge: List[str]
    purged_keys: List[str] = Field(default_factory=list)


class EnrichRequest(BaseModel):
    ipfs_cid: str = Field(..., min_length=1)
    ipfs_url: str = Field(..., min_length=1)
    pinned: Optional[bool] = None
    file_id: Optional[str] = Field(None, description="Limit enrichment to one file")


class EnrichResponse(BaseModel):
    success: bool = True
    memory_id: str
    rows_affected: int


class MemoryStats(BaseModel):
    total_memories: int = 0
    total_files: int = 0
    public_memories: int = 0
    private_memories: int = 0
    members_only_memories: int = 0
    active_users: Optional[int] = None


class StatsResponse(BaseModel):
    success: bool = True
    user: Optional[MemoryStats] = None
    guild: Optional[MemoryStats] = None
