"""
Extraction Cache Module

File-based JSON cache for graph extraction results, keyed by a SHA-256
hash of the source contents. A separate nodes artifact keeps node
embeddings so they survive a re-extraction.
"""

import asyncio
import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from loguru import logger

from graph_rag.utils.graph_utils import (Community, ExtractedEntity,
                                         ExtractedRelationship, GraphNode,
                                         load_json, save_json)

# Bump to invalidate every existing cache
CONFIG_VERSION = "1.1"

METADATA_FILE = "cache-metadata.json"
ENTITIES_FILE = "entities.json"
RELATIONSHIPS_FILE = "relationships.json"
COMMUNITIES_FILE = "communities.json"
NODES_FILE = "nodes.json"

CACHE_FILES = [METADATA_FILE, ENTITIES_FILE, RELATIONSHIPS_FILE, COMMUNITIES_FILE, NODES_FILE]


@dataclass
class CacheMetadata:
    """Header of a cache: which inputs and which format produced it."""

    source_hash: str
    extracted_at: str
    config_version: str
    source_hashes: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "sourceHash": self.source_hash,
            "extractedAt": self.extracted_at,
            "configVersion": self.config_version,
            "sourceHashes": self.source_hashes,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CacheMetadata":
        return cls(
            source_hash=data["sourceHash"],
            extracted_at=data.get("extractedAt", ""),
            config_version=data.get("configVersion", ""),
            source_hashes=dict(data.get("sourceHashes") or {}),
        )


@dataclass
class CachedGraphData:
    """Everything restored from a cache."""

    metadata: CacheMetadata
    entities: list[ExtractedEntity]
    relationships: list[ExtractedRelationship]
    communities: list[Community]


class ExtractionCache:
    """On-disk cache of extraction results for one knowledge store."""

    def __init__(self, cache_dir: Path | str):
        """
        Args:
            cache_dir: Directory holding this store's cache files
        """
        self.cache_dir = Path(cache_dir)

    @staticmethod
    def compute_source_hash(contents: list[str]) -> str:
        """SHA-256 hex digest of the concatenated contents."""
        digest = hashlib.sha256()
        for content in contents:
            digest.update(content.encode("utf-8"))
        return digest.hexdigest()

    def _path(self, name: str) -> Path:
        return self.cache_dir / name

    def _read_metadata(self) -> CacheMetadata | None:
        path = self._path(METADATA_FILE)
        if not path.exists():
            return None
        try:
            return CacheMetadata.from_dict(load_json(path))
        except (OSError, json.JSONDecodeError, KeyError, TypeError) as e:
            logger.warning(f"Unreadable cache metadata at {path}: {e}")
            return None

    async def is_valid(self, source_hash: str) -> bool:
        """Check the cache was written for this source hash and config version."""
        metadata = await asyncio.to_thread(self._read_metadata)
        if metadata is None:
            logger.debug(f"No cache metadata in {self.cache_dir}")
            return False
        return (
            metadata.source_hash == source_hash
            and metadata.config_version == CONFIG_VERSION
        )

    async def has_cache(self) -> bool:
        """Check that a complete cache exists, whatever it was built from."""

        def check() -> bool:
            required = [METADATA_FILE, ENTITIES_FILE, RELATIONSHIPS_FILE, COMMUNITIES_FILE]
            return all(self._path(name).exists() for name in required)

        return await asyncio.to_thread(check)

    def _load_sync(self) -> CachedGraphData | None:
        metadata = self._read_metadata()
        if metadata is None:
            return None
        try:
            entities = [
                ExtractedEntity.from_dict(e) for e in load_json(self._path(ENTITIES_FILE))
            ]
            relationships = [
                ExtractedRelationship.from_dict(r)
                for r in load_json(self._path(RELATIONSHIPS_FILE))
            ]
            communities = [
                Community.from_dict(c) for c in load_json(self._path(COMMUNITIES_FILE))
            ]
        except (OSError, json.JSONDecodeError, KeyError, TypeError) as e:
            logger.warning(f"Failed to load cache from {self.cache_dir}: {e}")
            return None

        return CachedGraphData(
            metadata=metadata,
            entities=entities,
            relationships=relationships,
            communities=communities,
        )

    async def load(self) -> CachedGraphData | None:
        """
        Load cached graph data.

        Returns:
            CachedGraphData, or None if any file is missing or malformed
        """
        data = await asyncio.to_thread(self._load_sync)
        if data is not None:
            logger.info(
                f"Loaded cache from {self.cache_dir} ({len(data.entities)} entities, "
                f"{len(data.relationships)} relationships, {len(data.communities)} communities)"
            )
        return data

    async def save(
        self,
        source_hash: str,
        entities: list[ExtractedEntity],
        relationships: list[ExtractedRelationship],
        communities: list[Community],
        source_hashes: dict[str, str] | None = None,
    ) -> None:
        """
        Save graph data to cache.

        Args:
            source_hash: Hash of the inputs the data was extracted from
            entities: Deduplicated entities
            relationships: Deduplicated relationships
            communities: Summarized communities
            source_hashes: Per-source content hashes, used by incremental refresh
        """
        metadata = CacheMetadata(
            source_hash=source_hash,
            extracted_at=datetime.now(timezone.utc).isoformat(),
            config_version=CONFIG_VERSION,
            source_hashes=dict(source_hashes or {}),
        )

        def write() -> None:
            save_json([e.to_dict() for e in entities], self._path(ENTITIES_FILE))
            save_json([r.to_dict() for r in relationships], self._path(RELATIONSHIPS_FILE))
            save_json([c.to_dict() for c in communities], self._path(COMMUNITIES_FILE))
            # Metadata last so a partial write never looks valid
            save_json(metadata.to_dict(), self._path(METADATA_FILE))

        await asyncio.to_thread(write)
        logger.info(
            f"Cache saved to {self.cache_dir} ({len(entities)} entities, "
            f"{len(relationships)} relationships, {len(communities)} communities)"
        )

    async def save_nodes(self, nodes: list[GraphNode]) -> None:
        """Save graph nodes, embeddings included."""
        await asyncio.to_thread(
            save_json, [n.to_dict() for n in nodes], self._path(NODES_FILE)
        )
        logger.debug(f"Saved {len(nodes)} nodes to {self._path(NODES_FILE)}")

    async def load_nodes(self) -> list[GraphNode] | None:
        """Load cached graph nodes, or None if absent or malformed."""

        def read() -> list[GraphNode] | None:
            path = self._path(NODES_FILE)
            if not path.exists():
                return None
            try:
                return [GraphNode.from_dict(n) for n in load_json(path)]
            except (OSError, json.JSONDecodeError, KeyError, TypeError) as e:
                logger.warning(f"Failed to load cached nodes from {path}: {e}")
                return None

        return await asyncio.to_thread(read)

    async def clear(self) -> None:
        """Remove this cache's files, leaving anything else in the directory."""

        def remove() -> int:
            removed = 0
            for name in CACHE_FILES:
                path = self._path(name)
                if path.exists():
                    path.unlink()
                    removed += 1
            return removed

        removed = await asyncio.to_thread(remove)
        logger.info(f"Cache cleared: {self.cache_dir} ({removed} files)")
