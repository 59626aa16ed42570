"""
Knowledge Store Metadata Module

Persisted lifecycle record of each knowledge store (status, counts,
timings, per-source hashes) and the progress events emitted while a
store is being indexed.
"""

import asyncio
import json
import shutil
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Callable, Literal

from loguru import logger

from graph_rag.utils.graph_utils import load_json, save_json

METADATA_FILE = "metadata.json"

STALE_INDEXING_MESSAGE = "Process was interrupted during indexing"

KnowledgeStoreStatus = Literal["not_indexed", "indexing", "indexed", "error"]

IndexingPhase = Literal[
    "loading", "splitting", "embedding", "extracting", "building", "caching", "done", "error"
]


@dataclass
class KnowledgeStoreMetadata:
    """Lifecycle record persisted as metadata.json in the store's cache directory."""

    name: str
    kind: str = "graph-rag"
    status: KnowledgeStoreStatus = "not_indexed"
    last_indexed_at: str | None = None
    last_index_duration_ms: int | None = None
    document_count: int = 0
    chunk_count: int = 0
    entity_count: int = 0
    edge_count: int = 0
    community_count: int = 0
    error_message: str | None = None
    source_hashes: dict[str, str] = field(default_factory=dict)
    embedding_model: str = ""
    cache_version: str = "1.0"

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "KnowledgeStoreMetadata":
        return cls(**data)


@dataclass
class IndexingProgressEvent:
    name: str
    phase: IndexingPhase
    progress: int
    message: str


ProgressCallback = Callable[[IndexingProgressEvent], None]


def create_default_metadata(name: str, kind: str = "graph-rag") -> KnowledgeStoreMetadata:
    """Metadata for a store that has never been indexed."""
    return KnowledgeStoreMetadata(name=name, kind=kind)


def emit_progress(
    on_progress: ProgressCallback | None,
    name: str,
    phase: IndexingPhase,
    progress: int,
    message: str,
) -> None:
    """Send a progress event to the callback, if any."""
    if on_progress is not None:
        on_progress(IndexingProgressEvent(name=name, phase=phase, progress=progress, message=message))


class KnowledgeMetadataManager:
    """Reads and writes lifecycle metadata under a cache base directory."""

    def __init__(self, cache_base_dir: Path | str):
        self.base_dir = Path(cache_base_dir)

    def get_cache_dir(self, name: str) -> Path:
        return self.base_dir / name

    def _metadata_path(self, name: str) -> Path:
        return self.get_cache_dir(name) / METADATA_FILE

    async def load(self, name: str) -> KnowledgeStoreMetadata | None:
        """Load a store's metadata; None when missing or unreadable."""
        path = self._metadata_path(name)

        def read() -> KnowledgeStoreMetadata | None:
            if not path.exists():
                return None
            try:
                return KnowledgeStoreMetadata.from_dict(load_json(path))
            except (OSError, json.JSONDecodeError, TypeError) as e:
                logger.warning(f"Unreadable metadata for '{name}': {e}")
                return None

        return await asyncio.to_thread(read)

    async def save(self, name: str, metadata: KnowledgeStoreMetadata) -> None:
        await asyncio.to_thread(save_json, metadata.to_dict(), self._metadata_path(name))

    async def get_all(self, names: list[str]) -> dict[str, KnowledgeStoreMetadata]:
        result = {}
        for name in names:
            metadata = await self.load(name)
            if metadata:
                result[name] = metadata
        return result

    async def set_status(
        self, name: str, status: KnowledgeStoreStatus, error_message: str | None = None
    ) -> None:
        metadata = await self.load(name)
        if metadata is None:
            logger.warning(
                f"No metadata found for '{name}' when setting status to '{status}', skipping"
            )
            return
        metadata.status = status
        metadata.error_message = error_message
        await self.save(name, metadata)

    async def delete(self, name: str) -> None:
        """Remove a store's whole cache directory."""
        await asyncio.to_thread(shutil.rmtree, self.get_cache_dir(name), True)

    async def reset_stale_indexing(self, names: list[str]) -> None:
        """Mark stores left in 'indexing' by an interrupted process as failed."""
        for name in names:
            metadata = await self.load(name)
            if metadata and metadata.status == "indexing":
                logger.warning(
                    f"'{name}' has stale 'indexing' status from a previous run, resetting to 'error'"
                )
                metadata.status = "error"
                metadata.error_message = STALE_INDEXING_MESSAGE
                await self.save(name, metadata)
