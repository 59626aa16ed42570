"""
Indexing Coordinator Module

Manages the lifecycle of the configured knowledge stores: persisted
status, progress events, eager restore from cache at startup and
single-flight builds (concurrent requests for the same store share one
build).
"""

import asyncio
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from langchain_core.embeddings import Embeddings
from langchain_core.language_models.chat_models import BaseChatModel
from loguru import logger
from omegaconf import DictConfig

from graph_rag.build_graph_index import GraphRagKnowledgeStore
from graph_rag.config import create_embeddings, create_llm, store_config
from graph_rag.errors import KnowledgeStoreNotFoundError
from graph_rag.graph_store import GraphStore, create_graph_store
from graph_rag.knowledge_metadata import (KnowledgeMetadataManager,
                                          KnowledgeStoreMetadata,
                                          ProgressCallback,
                                          create_default_metadata,
                                          emit_progress)
from graph_rag.neo4j_graph_store import Neo4jDriverPool


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class KnowledgeStoreManager:
    """Owns the configured knowledge stores and coordinates their indexing."""

    def __init__(
        self,
        cfg: DictConfig,
        llm_factory: Callable[[DictConfig], BaseChatModel] = create_llm,
        embeddings_factory: Callable[[DictConfig], Embeddings] = create_embeddings,
        graph_store_factory: Callable[..., GraphStore] = create_graph_store,
        pool: Neo4jDriverPool | None = None,
        show_progress: bool = False,
    ):
        """
        Args:
            cfg: Global configuration
            llm_factory: Builds the chat model of a store config
            embeddings_factory: Builds the embedding model of a store config
            graph_store_factory: Builds the graph store, called as (store_cfg, pool)
            pool: Neo4j driver pool shared by all stores
            show_progress: Whether builds show progress bars
        """
        self.cfg = cfg
        self.project_root = Path(cfg.PATHS.get("project_root", "."))
        self.metadata_manager = KnowledgeMetadataManager(
            self.project_root / cfg.PATHS.get("cache_dir", ".knowledge-cache")
        )
        self.llm_factory = llm_factory
        self.embeddings_factory = embeddings_factory
        self.graph_store_factory = graph_store_factory
        self.pool = pool or Neo4jDriverPool()
        self.show_progress = show_progress

        self._configs: dict[str, DictConfig] = {}
        self._stores: dict[str, GraphRagKnowledgeStore] = {}
        self._active: dict[str, asyncio.Task] = {}

    def register(self, entry: DictConfig | dict) -> DictConfig:
        """Register one store entry (an element of KNOWLEDGE.stores)."""
        config = store_config(self.cfg, entry)
        self._configs[config.name] = config
        logger.debug(f"Registered knowledge store '{config.name}'")
        return config

    async def load_all(self, restore: bool = True) -> None:
        """
        Register every configured store and recover persisted state.

        Stores without metadata get a not_indexed record, stale 'indexing'
        records become 'error', and indexed stores are restored from cache.

        Args:
            restore: Whether to restore previously indexed stores
        """
        for entry in self.cfg.KNOWLEDGE.get("stores") or []:
            self.register(entry)

        names = list(self._configs)
        for name in names:
            if await self.metadata_manager.load(name) is None:
                await self.metadata_manager.save(name, create_default_metadata(name))

        await self.metadata_manager.reset_stale_indexing(names)

        if restore:
            await self._restore_indexed_stores()

    async def _restore_indexed_stores(self) -> None:
        statuses = await self.get_all_statuses()
        for name, metadata in statuses.items():
            if metadata.status != "indexed" or name in self._stores:
                continue
            try:
                logger.info(f"Restoring '{name}' from cache...")
                await self.initialize(name, restore=True)
            except Exception as e:
                logger.warning(f"Failed to restore '{name}': {e}")

    async def initialize(
        self,
        name: str,
        on_progress: ProgressCallback | None = None,
        restore: bool = False,
    ) -> GraphRagKnowledgeStore:
        """
        Build (or return) a knowledge store.

        Concurrent calls for the same name share a single build.

        Args:
            name: Store name
            on_progress: Progress callback of this build
            restore: Accept any existing cache

        Returns:
            The built store

        Raises:
            KnowledgeStoreNotFoundError: If no store has this name
        """
        existing = self._stores.get(name)
        if existing is not None:
            logger.info(f"'{name}' already initialized")
            return existing

        task = self._active.get(name)
        if task is not None:
            logger.info(f"'{name}' is already being indexed, waiting...")
            return await asyncio.shield(task)

        config = self._configs.get(name)
        if config is None:
            raise KnowledgeStoreNotFoundError(f"Knowledge config not found: {name}")

        # No await between the lookup above and this insert
        task = asyncio.ensure_future(self._build(name, config, on_progress, restore))
        self._active[name] = task
        task.add_done_callback(lambda _: self._active.pop(name, None))
        return await asyncio.shield(task)

    async def _build(
        self,
        name: str,
        config: DictConfig,
        on_progress: ProgressCallback | None,
        restore: bool,
    ) -> GraphRagKnowledgeStore:
        logger.info(
            f"Initializing '{name}' (source: {config.source.path}, "
            f"pattern: {config.source.get('pattern', '*')})"
        )

        metadata = await self.metadata_manager.load(name) or create_default_metadata(name)
        metadata.status = "indexing"
        metadata.error_message = None
        metadata.embedding_model = config.EMBEDDING.get("model", "")
        await self.metadata_manager.save(name, metadata)

        started = time.monotonic()
        graph_store = None
        try:
            graph_store = self.graph_store_factory(config, self.pool)
            store = await GraphRagKnowledgeStore.create(
                config,
                self.metadata_manager.get_cache_dir(name),
                self.llm_factory(config),
                self.embeddings_factory(config),
                graph_store,
                project_root=self.project_root,
                on_progress=on_progress,
                restore=restore,
                show_progress=self.show_progress,
            )
        except Exception as e:
            if graph_store is not None:
                await graph_store.close()
            await self._record_failure(name, metadata, e, started, on_progress)
            raise

        self._stores[name] = store
        duration = await self._record_success(name, store, started)
        emit_progress(on_progress, name, "done", 100, "Initialization complete")
        logger.info(f"'{name}' initialized successfully ({duration}ms)")
        return store

    async def _record_success(
        self, name: str, store: GraphRagKnowledgeStore, started: float
    ) -> int:
        metadata = store.get_metadata()
        metadata.status = "indexed"
        metadata.last_indexed_at = _now()
        metadata.last_index_duration_ms = _elapsed_ms(started)
        metadata.error_message = None
        await self.metadata_manager.save(name, metadata)
        return metadata.last_index_duration_ms

    async def _record_failure(
        self,
        name: str,
        metadata: KnowledgeStoreMetadata,
        error: Exception,
        started: float,
        on_progress: ProgressCallback | None,
    ) -> None:
        message = str(error) or type(error).__name__
        metadata.status = "error"
        metadata.error_message = message
        metadata.last_index_duration_ms = _elapsed_ms(started)
        await self.metadata_manager.save(name, metadata)
        emit_progress(on_progress, name, "error", 0, message)
        logger.error(f"Failed to index '{name}': {message}")

    async def refresh(self, name: str, on_progress: ProgressCallback | None = None) -> None:
        """
        Incrementally re-index an initialized store.

        Does nothing (with a warning) for stores that were never initialized.
        """
        store = self._stores.get(name)
        if store is None:
            logger.warning(f"Cannot refresh '{name}': not initialized")
            return

        task = self._active.get(name)
        if task is not None:
            logger.info(f"'{name}' is already being indexed, waiting...")
            await asyncio.shield(task)
            return

        task = asyncio.ensure_future(self._refresh(name, store, on_progress))
        self._active[name] = task
        task.add_done_callback(lambda _: self._active.pop(name, None))
        await asyncio.shield(task)

    async def _refresh(
        self,
        name: str,
        store: GraphRagKnowledgeStore,
        on_progress: ProgressCallback | None,
    ) -> GraphRagKnowledgeStore:
        metadata = await self.metadata_manager.load(name) or store.get_metadata()
        metadata.status = "indexing"
        await self.metadata_manager.save(name, metadata)

        emit_progress(on_progress, name, "loading", 0, "Starting refresh...")
        started = time.monotonic()
        try:
            await store.refresh(on_progress)
        except Exception as e:
            await self._record_failure(name, metadata, e, started, on_progress)
            raise

        await self._record_success(name, store, started)
        emit_progress(on_progress, name, "done", 100, "Refresh complete")
        return store

    def get(self, name: str) -> GraphRagKnowledgeStore | None:
        return self._stores.get(name)

    def get_config(self, name: str) -> DictConfig | None:
        return self._configs.get(name)

    def list_configs(self) -> list[DictConfig]:
        return list(self._configs.values())

    async def get_status(self, name: str) -> KnowledgeStoreMetadata | None:
        return await self.metadata_manager.load(name)

    async def get_all_statuses(self) -> dict[str, KnowledgeStoreMetadata]:
        return await self.metadata_manager.get_all(list(self._configs))

    def is_indexing(self, name: str) -> bool:
        return name in self._active

    async def close(self) -> None:
        """Close every store and the shared driver pool."""
        for store in self._stores.values():
            await store.close()
        self._stores.clear()
        await self.pool.close_all()
