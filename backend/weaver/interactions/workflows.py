"""Command workflows that run behind an interaction guard."""
import logging
from typing import Optional

from weaver.errors import WeaverError
from weaver.memories.schemas import CreateMemoryRequest, CreateMemoryResponse
from weaver.memories.service import MemoryService

from .guard import InteractionGuard

logger = logging.getLogger(__name__)


def format_created(request: CreateMemoryRequest, result: CreateMemoryResponse) -> str:
    lines = [
        f"Memory saved: **{request.title}**",
        f"File: {request.filename}",
        f"Link: {result.storage_url}",
    ]
    if result.warnings:
        lines.append("Notes: " + "; ".join(result.warnings))
    return "\n".join(lines)


async def remember(
    guard: InteractionGuard,
    service: MemoryService,
    request: CreateMemoryRequest,
) -> Optional[CreateMemoryResponse]:
    """Handle the "remember" command: acknowledge, create, report.

    Returns the created memory, or None when creation failed.  Creation
    failures are reported to the user through the guard, not raised; a
    failed defer propagates.
    """
    await guard.defer(ephemeral=True)
    try:
        result = await service.create_memory_with_file(request)
    except WeaverError as exc:
        logger.warning(
            "remember failed for user %s: %s (%s)",
            request.owner_id, exc.code, exc.technical_detail or exc.message,
        )
        await guard.respond({"content": f"Could not save your memory: {exc.user_message}"})
        return None
    except Exception as exc:
        logger.exception("remember crashed for user %s: %s", request.owner_id, exc)
        await guard.respond({"content": f"Could not save your memory: {WeaverError.default_user_message}"})
        return None

    if not await guard.respond({"content": format_created(request, result)}):
        logger.warning("Memory %s saved but the confirmation could not be delivered", result.memory_id)
    return result
