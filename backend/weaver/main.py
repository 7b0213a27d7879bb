"""Memory Weaver Backend Application.

Upload-and-persistence service for Memory Weaver: files are validated,
written to a durable object store, recorded in a DuckDB metadata store and
replicated to IPFS in the background.

Modules:
    - validation: file and memory-field screening
    - storage: durable object store (S3-compatible or local disk)
    - ipfs: best-effort content-addressed replication
    - memories: metadata store, create/search/delete pipeline
    - uploads: multi-file upload sessions
    - interactions: chat-platform response guard
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from weaver.config import WeaverSettings, get_config
from weaver.interactions.guard import InteractionRegistry
from weaver.ipfs.client import IPFSClient
from weaver.ipfs.router import router as ipfs_router
from weaver.memories.router import get_memory_service, router as memories_router, set_memory_service
from weaver.memories.service import MemoryService
from weaver.memories.store import MetadataStore
from weaver.state import InMemoryTTLStore
from weaver.storage import LocalObjectStore, ObjectStore, S3ObjectStore
from weaver.uploads.router import router as uploads_router, set_upload_manager
from weaver.uploads.service import UploadSessionManager
from weaver.validation.schemas import FileCategory, UploadConfig

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# botocore.auth logs the full SigV4 canonical request, credentials included.
# urllib3/httpx/httpcore log every connection.
for _noisy in (
    "botocore",
    "boto3",
    "urllib3",
    "urllib3.connectionpool",
    "httpx",
    "httpcore",
    "httpcore.http11",
    "httpcore.connection",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def build_object_store(config: WeaverSettings) -> ObjectStore:
    settings = config.object_store
    if settings.backend == "s3":
        secrets = config.secrets.object_store
        return S3ObjectStore(
            bucket=settings.bucket,
            public_base_url=settings.public_base_url,
            endpoint_url=settings.endpoint_url,
            region_name=settings.region,
            aws_access_key_id=secrets.access_key_id,
            aws_secret_access_key=secrets.secret_access_key,
            cache_control=settings.cache_control,
        )
    return LocalObjectStore(root=settings.local_dir)


def build_memory_service(config: WeaverSettings) -> MemoryService:
    ipfs_client = None
    if config.ipfs.enabled:
        ipfs_client = IPFSClient.from_settings(config.ipfs, config.secrets.ipfs)
        logger.info("IPFS replication enabled: node=%s", config.ipfs.node_url)
    else:
        logger.info("IPFS replication disabled in config.")

    upload_config = UploadConfig(
        allowed_categories=[FileCategory(c) for c in config.uploads.default_categories],
    )
    return MemoryService(
        store=MetadataStore.get_instance(config.database.path),
        object_store=build_object_store(config),
        ipfs_client=ipfs_client,
        upload_config=upload_config,
        store_timeout=config.uploads.store_timeout_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in weaver.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    service = build_memory_service(config)
    set_memory_service(service)
    logger.info(
        "Memory service ready: object_store=%s database=%s",
        config.object_store.backend, config.database.path,
    )

    session_store = InMemoryTTLStore(
        default_ttl_seconds=config.uploads.session_ttl_seconds,
        name="upload-sessions",
    )
    await session_store.start()
    set_upload_manager(
        UploadSessionManager(session_store, ttl_seconds=config.uploads.session_ttl_seconds),
        default_max_files=config.uploads.default_max_files,
        default_categories=config.uploads.default_categories,
    )

    interaction_store = InMemoryTTLStore(
        default_ttl_seconds=config.interactions.lifetime_seconds,
        sweep_interval_seconds=config.interactions.sweep_interval_seconds,
        name="interactions",
    )
    await interaction_store.start()
    app.state.interactions = InteractionRegistry(
        interaction_store, lifetime_seconds=config.interactions.lifetime_seconds,
    )

    yield  # Application runs here

    # Shutdown
    await service.shutdown()
    await session_store.stop()
    await interaction_store.stop()
    set_upload_manager(None)
    set_memory_service(None)
    MetadataStore.reset_instance()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Memory Weaver API",
    description="Upload and persistence service for Memory Weaver",
    version="0.1.0",
    lifespan=lifespan,
)

# Register all routers
app.include_router(memories_router)
app.include_router(uploads_router)
app.include_router(ipfs_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object; ``database`` is null when no service is configured.
    """
    service = get_memory_service()
    database = None
    if service is not None:
        database = service.store.ping()
    return {
        "status": "ok",
        "database": database,
        "pending_replications": service.pending_replications if service else 0,
    }
