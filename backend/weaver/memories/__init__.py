"""Memories: the logical container for uploaded files.

- schemas: Memory, MemoryFile and the API payloads
- store: DuckDB metadata store (transactional memory + file commit)
- service: the create/search/delete/enrich pipeline
- router: HTTP endpoints under /memories
"""
