"""DuckDB-backed metadata store for memories and their files.

Database Schema:
    memories table:
        - id, owner_id, guild_id, title, description, category, privacy
        - tags: JSON array (normalized)
        - status: active / archived / deleted
        - file_count: maintained only by the file insert and delete paths
        - created_at, updated_at (UTC)

    memory_files table:
        - id, memory_id (must resolve to a memories row)
        - filename, original_filename, content_type, size_bytes
        - storage_key, storage_url: durable object store location (never null)
        - ipfs_cid, ipfs_url, ipfs_pinned: filled in by enrichment (nullable)
        - processing_status, uploaded_at, updated_at

Invariants:
    - A memory_files row is only inserted inside a transaction that has
      verified its memory exists, so no orphan file rows are committed.
    - memories.file_count equals the number of memory_files rows for it.

Thread Safety:
    The DuckDB connection is NOT thread-safe.  All access goes through a
    re-entrant lock so concurrent requests on one event loop (or executor
    threads) are serialized.

Usage:
    store = MetadataStore.get_instance()
    memory_id, file_id, count = store.commit_memory_with_file(memory, file)
    memories = store.search(owner_id="123", filters=SearchFilters())
"""
import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import duckdb

from weaver.errors import MemoryNotFound, MetadataCommitFailed, PermissionDenied

from .schemas import (
    Category,
    Memory,
    MemoryDetail,
    MemoryFile,
    MemoryStats,
    MemoryStatus,
    MemorySummary,
    Privacy,
    ProcessingStatus,
    SearchFilters,
)

logger = logging.getLogger(__name__)

_MEMORY_COLUMNS = (
    "m.id, m.owner_id, m.guild_id, m.title, m.description, m.category, m.privacy, "
    "m.tags, m.status, m.file_count, m.created_at, m.updated_at"
)

_FILE_COLUMNS = (
    "id, memory_id, filename, original_filename, content_type, size_bytes, "
    "storage_key, storage_url, ipfs_cid, ipfs_url, ipfs_pinned, processing_status, "
    "uploaded_at, updated_at"
)

# One representative file per memory: earliest upload, ties broken by id
_SUMMARY_SELECT = f"""
    SELECT {_MEMORY_COLUMNS},
           f.id, f.filename, f.content_type, f.size_bytes,
           f.storage_key, f.storage_url, f.ipfs_cid, f.ipfs_url
    FROM memories m
    LEFT JOIN (
        SELECT id, memory_id, filename, content_type, size_bytes,
               storage_key, storage_url, ipfs_cid, ipfs_url,
               ROW_NUMBER() OVER (
                   PARTITION BY memory_id ORDER BY uploaded_at ASC, id ASC
               ) AS rn
        FROM memory_files
    ) f ON m.id = f.memory_id AND f.rn = 1
"""


def _utcnow() -> datetime:
    """Naive UTC timestamp (DuckDB TIMESTAMP columns carry no zone)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _memory_kwargs(row: Tuple[Any, ...]) -> Dict[str, Any]:
    return {
        "id": row[0],
        "owner_id": row[1],
        "guild_id": row[2],
        "title": row[3],
        "description": row[4],
        "category": Category(row[5]),
        "privacy": Privacy(row[6]),
        "tags": json.loads(row[7] or "[]"),
        "status": MemoryStatus(row[8]),
        "file_count": row[9],
        "created_at": row[10],
        "updated_at": row[11],
    }


def _file_from_row(row: Tuple[Any, ...]) -> MemoryFile:
    return MemoryFile(
        id=row[0],
        memory_id=row[1],
        filename=row[2],
        original_filename=row[3],
        content_type=row[4],
        size_bytes=row[5],
        storage_key=row[6],
        storage_url=row[7],
        ipfs_cid=row[8],
        ipfs_url=row[9],
        ipfs_pinned=row[10],
        processing_status=ProcessingStatus(row[11]),
        uploaded_at=row[12],
        updated_at=row[13],
    )


def _summary_from_row(row: Tuple[Any, ...]) -> MemorySummary:
    return MemorySummary(
        **_memory_kwargs(row),
        file_id=row[12],
        file_name=row[13],
        content_type=row[14],
        file_size=row[15],
        storage_key=row[16],
        storage_url=row[17],
        ipfs_cid=row[18],
        ipfs_url=row[19],
    )


class MetadataStore:
    """Singleton store for memory and file metadata in DuckDB.

    Attributes:
        _instance: Singleton instance of the store.
        _db_path: Path to the DuckDB database file.
    """

    _instance: Optional["MetadataStore"] = None
    _db_path: str = "memory_weaver.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        """Initialize the store, creating the schema if needed.

        Args:
            db_path: Path to DuckDB file (":memory:" for an in-memory store).
        """
        if db_path:
            self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.RLock()
        self._initialize_db()

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "MetadataStore":
        """Get or create the singleton instance."""
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close and clear the singleton (used by tests)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Create tables and indexes if they don't exist (idempotent)."""
        conn = self._get_connection()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS memories (
                id VARCHAR PRIMARY KEY,
                owner_id VARCHAR NOT NULL,
                guild_id VARCHAR NOT NULL,
                title VARCHAR NOT NULL,
                description VARCHAR NOT NULL,
                category VARCHAR NOT NULL,
                privacy VARCHAR NOT NULL,
                tags VARCHAR NOT NULL DEFAULT '[]',
                status VARCHAR NOT NULL DEFAULT 'active',
                file_count INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS memory_files (
                id VARCHAR PRIMARY KEY,
                memory_id VARCHAR NOT NULL,
                filename VARCHAR NOT NULL,
                original_filename VARCHAR NOT NULL,
                content_type VARCHAR NOT NULL,
                size_bytes BIGINT NOT NULL,
                storage_key VARCHAR NOT NULL,
                storage_url VARCHAR NOT NULL,
                ipfs_cid VARCHAR,
                ipfs_url VARCHAR,
                ipfs_pinned BOOLEAN,
                processing_status VARCHAR NOT NULL,
                uploaded_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_memories_owner ON memories(owner_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_memories_guild ON memories(guild_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_files_memory ON memory_files(memory_id)")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _insert_file(self, conn: duckdb.DuckDBPyConnection, file: MemoryFile, now: datetime) -> None:
        exists = conn.execute(
            "SELECT COUNT(*) FROM memories WHERE id = ?", [file.memory_id]
        ).fetchone()[0]
        if not exists:
            raise MemoryNotFound(f"Memory {file.memory_id} does not exist")

        conn.execute(
            f"""
            INSERT INTO memory_files ({_FILE_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                file.id,
                file.memory_id,
                file.filename,
                file.original_filename,
                file.content_type,
                file.size_bytes,
                file.storage_key,
                file.storage_url,
                file.ipfs_cid,
                file.ipfs_url,
                file.ipfs_pinned,
                file.processing_status.value,
                file.uploaded_at or now,
                now,
            ],
        )
        conn.execute(
            "UPDATE memories SET file_count = file_count + 1, updated_at = ? WHERE id = ?",
            [now, file.memory_id],
        )

    def commit_memory_with_file(self, memory: Memory, file: MemoryFile) -> Tuple[str, str, int]:
        """Insert a memory and its first file in a single transaction.

        Order inside the transaction: memory row, file row (after checking
        the memory resolves), file_count increment.  Any failure rolls the
        whole transaction back.

        Returns:
            (memory_id, file_id, file_count)

        Raises:
            MetadataCommitFailed: If the transaction could not be committed.
        """
        now = _utcnow()
        file.memory_id = memory.id
        with self._lock:
            conn = self._get_connection()
            conn.begin()
            try:
                conn.execute(
                    """
                    INSERT INTO memories
                    (id, owner_id, guild_id, title, description, category, privacy,
                     tags, status, file_count, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                    """,
                    [
                        memory.id,
                        memory.owner_id,
                        memory.guild_id,
                        memory.title,
                        memory.description,
                        memory.category.value,
                        memory.privacy.value,
                        json.dumps(memory.tags),
                        memory.status.value,
                        now,
                        now,
                    ],
                )
                self._insert_file(conn, file, now)
                file_count = conn.execute(
                    "SELECT file_count FROM memories WHERE id = ?", [memory.id]
                ).fetchone()[0]
                conn.commit()
            except (duckdb.Error, MemoryNotFound) as exc:
                conn.rollback()
                raise MetadataCommitFailed(
                    f"Failed to commit memory {memory.id}",
                    technical_detail=str(exc),
                ) from exc

        logger.info("Committed memory %s with file %s", memory.id, file.id)
        return memory.id, file.id, file_count

    def add_file(self, memory_id: str, file: MemoryFile) -> Tuple[str, int]:
        """Attach another file to an existing memory.

        Returns:
            (file_id, file_count)

        Raises:
            MemoryNotFound: If the memory does not exist.
            MetadataCommitFailed: On any database error.
        """
        now = _utcnow()
        file.memory_id = memory_id
        with self._lock:
            conn = self._get_connection()
            conn.begin()
            try:
                self._insert_file(conn, file, now)
                file_count = conn.execute(
                    "SELECT file_count FROM memories WHERE id = ?", [memory_id]
                ).fetchone()[0]
                conn.commit()
            except MemoryNotFound:
                conn.rollback()
                raise
            except duckdb.Error as exc:
                conn.rollback()
                raise MetadataCommitFailed(
                    f"Failed to add file to memory {memory_id}",
                    technical_detail=str(exc),
                ) from exc
        return file.id, file_count

    def enrich_with_content_address(
        self,
        memory_id: str,
        ipfs_cid: str,
        ipfs_url: str,
        pinned: Optional[bool] = None,
        file_id: Optional[str] = None,
    ) -> int:
        """Attach content-address data to the files of a memory.

        Targets every file of the memory, or only *file_id* when given.
        Idempotent: repeating a call leaves the rows unchanged, including
        ``updated_at``.  Zero rows affected means the memory (or file) no
        longer exists, which callers report rather than treat as an error.

        Returns:
            Number of file rows matched.
        """
        where = "memory_id = ?"
        params: List[Any] = [memory_id]
        if file_id:
            where += " AND id = ?"
            params.append(file_id)
        with self._lock:
            conn = self._get_connection()
            result = conn.execute(
                f"""
                UPDATE memory_files
                SET updated_at = CASE
                        WHEN ipfs_cid IS DISTINCT FROM ? OR ipfs_url IS DISTINCT FROM ?
                        THEN ? ELSE updated_at END,
                    ipfs_cid = ?,
                    ipfs_url = ?,
                    ipfs_pinned = COALESCE(CAST(? AS BOOLEAN), ipfs_pinned)
                WHERE {where}
                """,
                [ipfs_cid, ipfs_url, _utcnow(), ipfs_cid, ipfs_url, pinned, *params],
            ).fetchone()
        rows = result[0] if result else 0
        logger.info("Enriched %d file row(s) of memory %s with CID %s", rows, memory_id, ipfs_cid)
        return rows

    def update_file_status(self, file_id: str, status: ProcessingStatus) -> int:
        with self._lock:
            result = self._get_connection().execute(
                "UPDATE memory_files SET processing_status = ?, updated_at = ? WHERE id = ?",
                [status.value, _utcnow(), file_id],
            ).fetchone()
        return result[0] if result else 0

    def delete(self, memory_id: str, requester_id: str) -> List[str]:
        """Delete a memory and its files.

        The durable object store is not touched here; the caller purges the
        returned keys.

        Returns:
            Storage keys of the deleted files.

        Raises:
            MemoryNotFound: If the memory does not exist.
            PermissionDenied: If *requester_id* is not the owner.
        """
        with self._lock:
            conn = self._get_connection()
            row = conn.execute(
                "SELECT owner_id FROM memories WHERE id = ?", [memory_id]
            ).fetchone()
            if row is None:
                raise MemoryNotFound(f"Memory {memory_id} not found")
            if row[0] != requester_id:
                raise PermissionDenied(
                    f"User {requester_id} does not own memory {memory_id}"
                )

            keys = [
                r[0]
                for r in conn.execute(
                    "SELECT storage_key FROM memory_files WHERE memory_id = ? ORDER BY uploaded_at",
                    [memory_id],
                ).fetchall()
            ]
            conn.begin()
            try:
                conn.execute("DELETE FROM memory_files WHERE memory_id = ?", [memory_id])
                conn.execute("DELETE FROM memories WHERE id = ?", [memory_id])
                conn.commit()
            except duckdb.Error:
                conn.rollback()
                raise

        logger.info("Deleted memory %s (%d file(s))", memory_id, len(keys))
        return keys

    def delete_file(self, file_id: str, requester_id: str) -> str:
        """Delete a single file row and decrement its memory's file_count.

        Returns:
            The storage key the caller must purge.
        """
        with self._lock:
            conn = self._get_connection()
            row = conn.execute(
                """
                SELECT f.memory_id, f.storage_key, m.owner_id
                FROM memory_files f JOIN memories m ON m.id = f.memory_id
                WHERE f.id = ?
                """,
                [file_id],
            ).fetchone()
            if row is None:
                raise MemoryNotFound(f"File {file_id} not found")
            memory_id, storage_key, owner_id = row
            if owner_id != requester_id:
                raise PermissionDenied(f"User {requester_id} does not own file {file_id}")

            conn.begin()
            try:
                conn.execute("DELETE FROM memory_files WHERE id = ?", [file_id])
                conn.execute(
                    "UPDATE memories SET file_count = file_count - 1, updated_at = ? WHERE id = ?",
                    [_utcnow(), memory_id],
                )
                conn.commit()
            except duckdb.Error:
                conn.rollback()
                raise
        return storage_key

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_memory(self, memory_id: str) -> Optional[MemoryDetail]:
        """Get a memory with all of its files, oldest upload first."""
        with self._lock:
            conn = self._get_connection()
            row = conn.execute(
                f"SELECT {_MEMORY_COLUMNS} FROM memories m WHERE m.id = ?", [memory_id]
            ).fetchone()
            if row is None:
                return None
            files = conn.execute(
                f"""
                SELECT {_FILE_COLUMNS} FROM memory_files
                WHERE memory_id = ?
                ORDER BY uploaded_at ASC, id ASC
                """,
                [memory_id],
            ).fetchall()
        return MemoryDetail(**_memory_kwargs(row), files=[_file_from_row(f) for f in files])

    def count_files(self, memory_id: str) -> int:
        with self._lock:
            return self._get_connection().execute(
                "SELECT COUNT(*) FROM memory_files WHERE memory_id = ?", [memory_id]
            ).fetchone()[0]

    def _apply_filters(
        self, filters: SearchFilters, clauses: List[str], params: List[Any]
    ) -> None:
        if filters.category:
            category = Category.parse(filters.category)
            clauses.append("m.category = ?")
            params.append(category.value if category else filters.category)
        if filters.privacy:
            privacy = Privacy.parse(filters.privacy)
            clauses.append("m.privacy = ?")
            params.append(privacy.value if privacy else filters.privacy)
        if filters.search_term:
            pattern = f"%{filters.search_term}%"
            clauses.append("(m.title ILIKE ? OR m.description ILIKE ? OR m.tags ILIKE ?)")
            params.extend([pattern, pattern, pattern])
        if filters.date_from:
            clauses.append("m.created_at >= ?")
            params.append(filters.date_from)
        if filters.date_to:
            clauses.append("m.created_at <= ?")
            params.append(filters.date_to)

    def _run_summary_query(
        self, clauses: List[str], params: List[Any], filters: SearchFilters
    ) -> List[MemorySummary]:
        query = _SUMMARY_SELECT + " WHERE " + " AND ".join(clauses)
        query += " ORDER BY m.created_at DESC, m.id ASC"
        if filters.limit:
            query += f" LIMIT {int(filters.limit)}"
        if filters.offset:
            query += f" OFFSET {int(filters.offset)}"
        with self._lock:
            rows = self._get_connection().execute(query, params).fetchall()
        return [_summary_from_row(r) for r in rows]

    def search(self, owner_id: str, filters: Optional[SearchFilters] = None) -> List[MemorySummary]:
        """Search a user's own active memories."""
        filters = filters or SearchFilters()
        clauses = ["m.owner_id = ?", "m.status = 'active'"]
        params: List[Any] = [owner_id]
        self._apply_filters(filters, clauses, params)
        return self._run_summary_query(clauses, params, filters)

    def search_shared(
        self,
        guild_id: str,
        requester_id: Optional[str],
        filters: Optional[SearchFilters] = None,
    ) -> List[MemorySummary]:
        """Search a guild's memories visible to *requester_id*.

        Visible when public; or members_only and the requester is known; or
        private and the requester is the owner.
        """
        filters = filters or SearchFilters()
        clauses = ["m.guild_id = ?", "m.status = 'active'"]
        params: List[Any] = [guild_id]
        if requester_id is None:
            clauses.append("m.privacy = 'public'")
        else:
            clauses.append(
                "(m.privacy = 'public' OR m.privacy = 'members_only' "
                "OR (m.privacy = 'private' AND m.owner_id = ?))"
            )
            params.append(requester_id)
        self._apply_filters(filters, clauses, params)
        return self._run_summary_query(clauses, params, filters)

    def stats(
        self, owner_id: Optional[str] = None, guild_id: Optional[str] = None
    ) -> Dict[str, MemoryStats]:
        """Aggregate counts for a user and/or a guild."""
        aggregate = """
            SELECT COUNT(*),
                   COALESCE(SUM(file_count), 0),
                   COUNT(CASE WHEN privacy = 'public' THEN 1 END),
                   COUNT(CASE WHEN privacy = 'private' THEN 1 END),
                   COUNT(CASE WHEN privacy = 'members_only' THEN 1 END),
                   COUNT(DISTINCT owner_id)
            FROM memories
        """
        result: Dict[str, MemoryStats] = {}
        with self._lock:
            conn = self._get_connection()
            if owner_id:
                row = conn.execute(aggregate + " WHERE owner_id = ?", [owner_id]).fetchone()
                result["user"] = MemoryStats(
                    total_memories=row[0],
                    total_files=int(row[1]),
                    public_memories=row[2],
                    private_memories=row[3],
                    members_only_memories=row[4],
                )
            if guild_id:
                row = conn.execute(aggregate + " WHERE guild_id = ?", [guild_id]).fetchone()
                result["guild"] = MemoryStats(
                    total_memories=row[0],
                    total_files=int(row[1]),
                    public_memories=row[2],
                    private_memories=row[3],
                    members_only_memories=row[4],
                    active_users=row[5],
                )
        return result

    def ping(self) -> bool:
        with self._lock:
            return self._get_connection().execute("SELECT 1").fetchone()[0] == 1

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
