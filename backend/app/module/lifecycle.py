# Test Case Generator - Lifecycle Management
# Description: startup/shutdown of the vector store client, embedding models and queue connection

import asyncio
from typing import Optional

from qdrant_client import QdrantClient
from qdrant_client.http import models as qmodels

from backend.app import embeddings
from backend.app.config import settings
from backend.app.services.jobs import signup_queue

from .Functions_module import setup_logger

log = setup_logger()


class LifeCycleManager:
    _instance = None
    _qdrant_client: Optional[QdrantClient] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(LifeCycleManager, cls).__new__(cls)
        return cls._instance

    @property
    def qdrant_client(self) -> Optional[QdrantClient]:
        return self._qdrant_client

    async def startup(self):
        """Initialize resources on application startup."""
        log.info("Starting up application resources...")
        await asyncio.to_thread(self._connect_qdrant)
        await embeddings.preload_embedding_models()
        if await asyncio.to_thread(signup_queue.ping):
            log.info(f"Job queue '{settings.signup_queue}' reachable at {settings.redis_url}")
        else:
            log.warning("Job queue not reachable; /signup-agent will answer 503 until Redis is up")

    async def shutdown(self):
        """Cleanup resources on application shutdown."""
        log.info("Shutting down application resources...")
        await embeddings.shutdown_fe_executor()
        await asyncio.to_thread(signup_queue.close)
        if self._qdrant_client is not None:
            self._qdrant_client.close()
            self._qdrant_client = None

    def _connect_qdrant(self):
        """Establish connection to Qdrant (remote URL or local path)."""
        try:
            if settings.qdrant_url:
                self._qdrant_client = QdrantClient(url=settings.qdrant_url, api_key=settings.qdrant_api_key)
                log.info(f"Connected to Qdrant at {settings.qdrant_url}")
            elif settings.qdrant_path:
                self._qdrant_client = QdrantClient(path=settings.qdrant_path)
                log.info(f"Connected to local Qdrant at {settings.qdrant_path}")
        except Exception as e:
            log.error(f"Failed to initialize Qdrant, documents will be kept in memory: {e}")
            self._qdrant_client = None
            return

        if self._qdrant_client is not None:
            self._ensure_collection()

    def _ensure_collection(self):
        """Create the configured collection when it does not exist yet."""
        name = settings.qdrant_collection
        if self._qdrant_client.collection_exists(name):
            count = self._qdrant_client.count(collection_name=name)
            log.info(f"Collection '{name}' contains {count.count} points")
            return
        log.info(f"Collection '{name}' not found. Creating (size={settings.embedding_dim})...")
        self._qdrant_client.create_collection(
            collection_name=name,
            vectors_config=qmodels.VectorParams(
                size=settings.embedding_dim,
                distance=qmodels.Distance.COSINE,
            ),
        )
        self._qdrant_client.create_payload_index(
            collection_name=name,
            field_name="doc_id",
            field_schema=qmodels.PayloadSchemaType.KEYWORD,
        )


lifecycle = LifeCycleManager()
