"""IPFS diagnostics router.

Endpoints:
    GET /ipfs/health — Probe the configured IPFS node
"""
from fastapi import APIRouter

from weaver.memories.router import require_memory_service

router = APIRouter(prefix="/ipfs", tags=["ipfs"])


@router.get("/health")
async def ipfs_health() -> dict:
    """Run the node diagnostics.  Never fails; problems show up in the probes."""
    service = require_memory_service()
    report = await service.content_store_health()
    if report is None:
        return {"enabled": False, "healthy": False}
    return {"enabled": True, **report.model_dump(mode="json")}
