"""Memory service: the create / search / delete / enrich pipeline.

Create ordering
---------------
1. Validate the memory fields and the file (nothing is persisted on reject).
2. Write the bytes to the durable object store.
3. Commit the memory and file rows in one metadata transaction.  If that
   fails, the blob written in step 2 is deleted before the error is raised.
4. Schedule replication to IPFS in the background.  On success the file
   rows are enriched with the CID; on failure the rows keep null
   content-address fields and the failure is logged.

Step 4 never affects the result of the create call.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import List, Optional, Set, Tuple

import duckdb

from weaver.errors import (
    ContentAddressUploadFailed,
    MemoryNotFound,
    MetadataCommitFailed,
    PermissionDenied,
    StorageDeleteFailed,
    StorageWriteFailed,
    ValidationFailed,
    WeaverError,
)
from weaver.ipfs.client import IPFSClient
from weaver.ipfs.schemas import HealthReport
from weaver.storage import ObjectStore, StoredObject, build_storage_key
from weaver.uploads.schemas import SessionFileRecord, UploadSession
from weaver.validation.schemas import UploadConfig, ValidationIssue
from weaver.validation.service import validate_file, validate_memory_fields

from .schemas import (
    Category,
    CreateMemoryRequest,
    CreateMemoryResponse,
    DeleteMemoryResponse,
    EnrichRequest,
    EnrichResponse,
    Memory,
    MemoryDetail,
    MemoryFile,
    Privacy,
    ProcessingStatus,
    SearchFilters,
    SearchResponse,
    StatsResponse,
)
from .store import MetadataStore

logger = logging.getLogger(__name__)


def _rejection(reasons: List[ValidationIssue]) -> ValidationFailed:
    return ValidationFailed(
        "Upload rejected: " + ", ".join(r.code for r in reasons),
        user_message="; ".join(r.message for r in reasons),
        reasons=[r.model_dump() for r in reasons],
    )


class MemoryService:
    """Orchestrates the object store, metadata store and IPFS client.

    Args:
        store:          Metadata store.
        object_store:   Durable object store (system of record for bytes).
        ipfs_client:    Optional IPFS client; ``None`` disables replication.
        upload_config:  Default upload configuration for single-file creates.
        store_timeout:  Deadline for one object-store write, in seconds.
    """

    def __init__(
        self,
        store: MetadataStore,
        object_store: ObjectStore,
        ipfs_client: Optional[IPFSClient] = None,
        upload_config: Optional[UploadConfig] = None,
        store_timeout: Optional[float] = None,
    ) -> None:
        self.store = store
        self.object_store = object_store
        self.ipfs_client = ipfs_client
        self.upload_config = upload_config or UploadConfig()
        self.store_timeout = store_timeout
        self._tasks: Set[asyncio.Task] = set()  # type: ignore[type-arg]

    # ------------------------------------------------------------------
    # Object store helpers
    # ------------------------------------------------------------------

    async def _write_object(
        self, key: str, data: bytes, content_type: str, metadata: dict
    ) -> StoredObject:
        try:
            return await asyncio.wait_for(
                self.object_store.write(key, data, content_type, metadata),
                timeout=self.store_timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.error("Object store write of %s timed out after %ss", key, self.store_timeout)
            await self._purge(key)
            raise StorageWriteFailed(
                f"Object store write of {key} timed out",
                technical_detail=f"timeout after {self.store_timeout}s",
            ) from exc
        except StorageWriteFailed as exc:
            logger.error("Object store write of %s failed: %s", key, exc.technical_detail)
            raise

    async def _purge(self, key: str) -> bool:
        try:
            await self.object_store.delete(key)
            return True
        except StorageDeleteFailed as exc:
            logger.error("Failed to purge %s: %s", key, exc.technical_detail)
            return False

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_memory_with_file(
        self,
        request: CreateMemoryRequest,
        upload_config: Optional[UploadConfig] = None,
    ) -> CreateMemoryResponse:
        """Create a memory together with its first file.

        On return the object store and metadata store agree; the IPFS
        fields may still be null.

        Raises:
            ValidationFailed: Input rejected (nothing persisted).
            StorageWriteFailed: Bytes could not be stored (nothing persisted).
            MetadataCommitFailed: Rows could not be committed (blob purged).
        """
        config = upload_config or self.upload_config
        fields = validate_memory_fields(
            request.title,
            request.description,
            request.category,
            request.privacy,
            request.tags,
        )
        size = len(request.data)
        check = validate_file(
            request.filename, request.content_type, size, request.data[:1024], config,
        )
        if not fields.accepted or not check.accepted:
            raise _rejection(fields.reasons + check.reasons)

        warnings = [w.message for w in fields.warnings + check.warnings]
        if request.declared_size is not None and request.declared_size != size:
            warnings.append(f"Declared size {request.declared_size} differs from received {size} bytes")

        memory = Memory(
            owner_id=request.owner_id,
            guild_id=request.guild_id,
            title=fields.title,
            description=fields.description,
            category=Category(fields.category),
            privacy=Privacy(fields.privacy),
            tags=fields.tags,
        )
        key = build_storage_key(memory.id, check.sanitized_name)
        stored = await self._write_object(
            key,
            request.data,
            request.content_type,
            {
                "original-name": request.filename,
                "memory-id": memory.id,
                "owner-id": request.owner_id,
            },
        )

        file = MemoryFile(
            memory_id=memory.id,
            filename=check.sanitized_name,
            original_filename=request.filename,
            content_type=request.content_type,
            size_bytes=size,
            storage_key=stored.key,
            storage_url=stored.url,
        )
        try:
            memory_id, file_id, file_count = self.store.commit_memory_with_file(memory, file)
        except MetadataCommitFailed as exc:
            logger.error(
                "Metadata commit for memory %s failed, purging %s: %s",
                memory.id, stored.key, exc.technical_detail,
            )
            await self._purge(stored.key)
            raise

        self._schedule_replication(memory_id, file_id, request.data, check.sanitized_name, request.content_type)
        logger.info("Created memory %s for user %s (%d bytes)", memory_id, request.owner_id, size)
        return CreateMemoryResponse(
            memory_id=memory_id,
            file_id=file_id,
            file_count=file_count,
            storage_url=stored.url,
            storage_key=stored.key,
            warnings=warnings,
        )

    async def commit_session_file(
        self,
        session: UploadSession,
        filename: str,
        content_type: str,
        data: bytes,
    ) -> Tuple[SessionFileRecord, str, int, List[str]]:
        """Store one file of an upload session.

        The first file creates the memory from the session's draft; later
        files are attached to it.  Session bookkeeping is the caller's job.

        Returns:
            (file record, memory_id, file_count, warnings)
        """
        if session.memory_id is None:
            if session.memory_draft is None:
                raise ValidationFailed(
                    f"Session {session.session_id} has no memory details",
                    user_message="Add a title and description before uploading files.",
                    reasons=[{"code": "memory_draft_required", "message": "Memory details are required"}],
                )
            draft = session.memory_draft
            created = await self.create_memory_with_file(
                CreateMemoryRequest(
                    owner_id=session.owner_id,
                    guild_id=session.guild_id,
                    title=draft.title,
                    description=draft.description,
                    category=draft.category,
                    privacy=draft.privacy,
                    tags=draft.tags,
                    filename=filename,
                    content_type=content_type,
                    data=data,
                ),
                upload_config=session.config,
            )
            record = SessionFileRecord(
                key=created.storage_key,
                name=filename,
                size=len(data),
                content_type=content_type,
                file_id=created.file_id,
                uploaded_at=datetime.now(timezone.utc),
            )
            return record, created.memory_id, created.file_count, created.warnings

        check = validate_file(filename, content_type, len(data), data[:1024], session.config)
        if not check.accepted:
            raise _rejection(check.reasons)

        memory_id = session.memory_id
        key = build_storage_key(memory_id, check.sanitized_name)
        stored = await self._write_object(
            key,
            data,
            content_type,
            {"original-name": filename, "memory-id": memory_id, "owner-id": session.owner_id},
        )
        file = MemoryFile(
            memory_id=memory_id,
            filename=check.sanitized_name,
            original_filename=filename,
            content_type=content_type,
            size_bytes=len(data),
            storage_key=stored.key,
            storage_url=stored.url,
            processing_status=ProcessingStatus.PENDING,
        )
        try:
            file_id, file_count = self.store.add_file(memory_id, file)
        except (MetadataCommitFailed, MemoryNotFound) as exc:
            logger.error(
                "Attaching %s to memory %s failed, purging: %s",
                stored.key, memory_id, exc.technical_detail or exc.message,
            )
            await self._purge(stored.key)
            raise

        self._schedule_replication(memory_id, file_id, data, check.sanitized_name, content_type)
        record = SessionFileRecord(
            key=stored.key,
            name=filename,
            size=len(data),
            content_type=content_type,
            file_id=file_id,
            uploaded_at=datetime.now(timezone.utc),
        )
        return record, memory_id, file_count, [w.message for w in check.warnings]

    # ------------------------------------------------------------------
    # Background replication
    # ------------------------------------------------------------------

    def _schedule_replication(
        self, memory_id: str, file_id: str, data: bytes, filename: str, content_type: str
    ) -> None:
        if self.ipfs_client is None:
            return
        task = asyncio.create_task(
            self._replicate(memory_id, file_id, data, filename, content_type),
            name=f"ipfs-replicate-{file_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _replicate(
        self, memory_id: str, file_id: str, data: bytes, filename: str, content_type: str
    ) -> None:
        try:
            upload = await self.ipfs_client.upload(data, filename, content_type)
        except ContentAddressUploadFailed as exc:
            logger.warning(
                "IPFS replication of %s (memory %s) failed: %s",
                file_id, memory_id, exc.technical_detail,
            )
            return
        except Exception as exc:
            logger.exception("IPFS replication of %s (memory %s) crashed: %s", file_id, memory_id, exc)
            return

        try:
            rows = self.store.enrich_with_content_address(
                memory_id, upload.cid, upload.url, pinned=upload.pinned, file_id=file_id,
            )
        except duckdb.Error as exc:
            logger.error("Enriching %s with CID %s failed: %s", file_id, upload.cid, exc)
            return
        if rows == 0:
            logger.warning("Memory %s was removed before CID %s could be recorded", memory_id, upload.cid)

    @property
    def pending_replications(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for all in-flight replications to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel in-flight replications; their rows keep null IPFS fields."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Cancelled %d pending IPFS replication(s)", len(tasks))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def search_memories(self, owner_id: str, filters: Optional[SearchFilters] = None) -> SearchResponse:
        memories = self.store.search(owner_id, filters)
        return SearchResponse(memories=memories, count=len(memories))

    def search_shared(
        self,
        guild_id: str,
        requester_id: Optional[str],
        filters: Optional[SearchFilters] = None,
    ) -> SearchResponse:
        memories = self.store.search_shared(guild_id, requester_id, filters)
        return SearchResponse(memories=memories, count=len(memories))

    def get_memory(self, memory_id: str, requester_id: Optional[str] = None) -> MemoryDetail:
        """Get one memory, applying the same visibility rules as shared search."""
        memory = self.store.get_memory(memory_id)
        if memory is None:
            raise MemoryNotFound(f"Memory {memory_id} not found")
        if memory.privacy is Privacy.PUBLIC:
            return memory
        if requester_id is None:
            raise PermissionDenied(
                f"Anonymous access to {memory.privacy.value} memory {memory_id}",
                user_message="This memory is only visible to server members.",
            )
        if memory.privacy is Privacy.PRIVATE and memory.owner_id != requester_id:
            raise PermissionDenied(
                f"User {requester_id} cannot view private memory {memory_id}",
                user_message="This memory is private.",
            )
        return memory

    def stats(self, owner_id: Optional[str] = None, guild_id: Optional[str] = None) -> StatsResponse:
        result = self.store.stats(owner_id=owner_id, guild_id=guild_id)
        return StatsResponse(user=result.get("user"), guild=result.get("guild"))

    # ------------------------------------------------------------------
    # Delete / enrich
    # ------------------------------------------------------------------

    async def delete_memory(self, memory_id: str, requester_id: str) -> DeleteMemoryResponse:
        """Delete the rows, then purge every stored object.

        A failed purge is logged and the key is left out of ``purged_keys``.
        """
        keys = self.store.delete(memory_id, requester_id)
        purged = [key for key in keys if await self._purge(key)]
        if len(purged) != len(keys):
            logger.warning(
                "Memory %s deleted but %d object(s) could not be purged",
                memory_id, len(keys) - len(purged),
            )
        return DeleteMemoryResponse(memory_id=memory_id, file_keys_to_purge=keys, purged_keys=purged)

    async def delete_file(self, file_id: str, requester_id: str) -> str:
        key = self.store.delete_file(file_id, requester_id)
        await self._purge(key)
        return key

    async def discard_session_file(
        self,
        session: UploadSession,
        memory_id: str,
        file_id: Optional[str],
        created_memory: bool,
    ) -> None:
        """Undo a committed session file whose session bookkeeping failed.

        Drops the whole memory when this file created it, otherwise only the
        file.  Errors are logged so the caller's original error propagates.
        """
        try:
            if created_memory:
                await self.delete_memory(memory_id, session.owner_id)
            elif file_id:
                await self.delete_file(file_id, session.owner_id)
        except WeaverError as exc:
            logger.error(
                "Could not discard file %s of memory %s: %s", file_id, memory_id, exc.message,
            )

    def enrich_ipfs(self, memory_id: str, request: EnrichRequest) -> EnrichResponse:
        rows = self.store.enrich_with_content_address(
            memory_id,
            request.ipfs_cid,
            request.ipfs_url,
            pinned=request.pinned,
            file_id=request.file_id,
        )
        return EnrichResponse(memory_id=memory_id, rows_affected=rows)

    def update_file_status(self, file_id: str, status: ProcessingStatus) -> int:
        return self.store.update_file_status(file_id, status)

    async def content_store_health(self) -> Optional[HealthReport]:
        if self.ipfs_client is None:
            return None
        return await self.ipfs_client.health_check()
