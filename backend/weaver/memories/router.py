"""Memories router.

Endpoints:
    POST   /memories                     — Create a memory with its first file
    POST   /memories/search              — Search the caller's own memories
    POST   /memories/shared              — Search a guild's visible memories
    GET    /memories/stats               — Per-user / per-guild totals
    GET    /memories/{memory_id}         — One memory with all of its files
    DELETE /memories/{memory_id}         — Delete a memory (owner only)
    DELETE /memories/files/{file_id}     — Delete one file (owner only)
    POST   /memories/{memory_id}/ipfs    — Record a content address
"""
import logging
from typing import Optional

from fastapi import APIRouter, File, Form, HTTPException, Query, UploadFile

from weaver.errors import WeaverError

from .schemas import (
    CreateMemoryRequest,
    CreateMemoryResponse,
    DeleteMemoryResponse,
    EnrichRequest,
    EnrichResponse,
    MemoryDetail,
    SearchRequest,
    SearchResponse,
    SharedSearchRequest,
    StatsResponse,
)
from .service import MemoryService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/memories", tags=["memories"])

# ---------------------------------------------------------------------------
# Singleton service management
# ---------------------------------------------------------------------------

_service: Optional[MemoryService] = None


def get_memory_service() -> Optional[MemoryService]:
    """Return the global MemoryService, or None if not configured."""
    return _service


def set_memory_service(service: Optional[MemoryService]) -> None:
    """Set (or clear) the global MemoryService."""
    global _service
    _service = service


def require_memory_service() -> MemoryService:
    service = get_memory_service()
    if service is None:
        logger.warning("[memories] Service not configured — returning 503")
        raise HTTPException(status_code=503, detail="Memory service not configured")
    return service


def to_http_error(exc: WeaverError) -> HTTPException:
    """Translate a pipeline error into an HTTPException (no technical detail)."""
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("", response_model=CreateMemoryResponse)
async def create_memory(
    file: UploadFile = File(...),
    owner_id: str = Form(...),
    guild_id: str = Form(...),
    title: str = Form(...),
    description: str = Form(...),
    category: Optional[str] = Form(None),
    privacy: Optional[str] = Form(None),
    tags: Optional[str] = Form(None, description="Comma-separated tags"),
) -> CreateMemoryResponse:
    """Create a memory with one file.

    The response is sent once the bytes and the metadata are both stored;
    IPFS replication continues in the background.
    """
    service = require_memory_service()
    data = await file.read()
    request = CreateMemoryRequest(
        owner_id=owner_id,
        guild_id=guild_id,
        title=title,
        description=description,
        category=category,
        privacy=privacy,
        tags=[t for t in (tags or "").split(",") if t.strip()],
        filename=file.filename or "unnamed",
        content_type=file.content_type or "application/octet-stream",
        declared_size=file.size,
        data=data,
    )
    try:
        return await service.create_memory_with_file(request)
    except WeaverError as exc:
        raise to_http_error(exc)


@router.post("/search", response_model=SearchResponse)
async def search_memories(request: SearchRequest) -> SearchResponse:
    service = require_memory_service()
    return service.search_memories(request.owner_id, request.filters)


@router.post("/shared", response_model=SearchResponse)
async def search_shared(request: SharedSearchRequest) -> SearchResponse:
    """Search a guild's memories visible to the requester."""
    service = require_memory_service()
    return service.search_shared(request.guild_id, request.requester_id, request.filters)


@router.get("/stats", response_model=StatsResponse)
async def memory_stats(
    owner_id: Optional[str] = Query(None),
    guild_id: Optional[str] = Query(None),
) -> StatsResponse:
    service = require_memory_service()
    return service.stats(owner_id=owner_id, guild_id=guild_id)


@router.get("/{memory_id}", response_model=MemoryDetail)
async def get_memory(memory_id: str, requester_id: Optional[str] = Query(None)) -> MemoryDetail:
    service = require_memory_service()
    try:
        return service.get_memory(memory_id, requester_id)
    except WeaverError as exc:
        raise to_http_error(exc)


@router.delete("/files/{file_id}")
async def delete_file(file_id: str, requester_id: str = Query(...)) -> dict:
    service = require_memory_service()
    try:
        key = await service.delete_file(file_id, requester_id)
    except WeaverError as exc:
        raise to_http_error(exc)
    return {"success": True, "file_id": file_id, "storage_key": key}


@router.delete("/{memory_id}", response_model=DeleteMemoryResponse)
async def delete_memory(memory_id: str, requester_id: str = Query(...)) -> DeleteMemoryResponse:
    """Delete a memory and purge its stored files."""
    service = require_memory_service()
    try:
        return await service.delete_memory(memory_id, requester_id)
    except WeaverError as exc:
        raise to_http_error(exc)


@router.post("/{memory_id}/ipfs", response_model=EnrichResponse)
async def enrich_ipfs(memory_id: str, request: EnrichRequest) -> EnrichResponse:
    """Record a content address for a memory's files (idempotent)."""
    service = require_memory_service()
    response = service.enrich_ipfs(memory_id, request)
    if response.rows_affected == 0:
        logger.info("[memories] Enrich for %s matched no files", memory_id)
    return response
