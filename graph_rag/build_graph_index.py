"""
Graph RAG Indexing Pipeline

Builds a searchable knowledge store from a directory of documents:
1. Load and chunk documents
2. Extract entities and relationships using LLM (or restore them from cache)
3. Embed entity nodes
4. Build the graph, detect and summarize communities
5. Cache extraction results and node embeddings

The resulting store routes queries to local or global search and can be
refreshed incrementally when source documents change.
"""

import asyncio
import hashlib
import sys
import time
from pathlib import Path

import hydra
from langchain_core.embeddings import Embeddings
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_text_splitters import RecursiveCharacterTextSplitter
from loguru import logger
from omegaconf import DictConfig

from graph_rag.community_detection import create_detector
from graph_rag.community_summarizer import create_summarizer
from graph_rag.entity_extraction import create_extractor, deduplicate
from graph_rag.errors import DocumentLoadError
from graph_rag.extraction_cache import CONFIG_VERSION, ExtractionCache
from graph_rag.graph_builder import build_edges, build_nodes
from graph_rag.graph_retriever import (SearchMode, create_global_search,
                                       create_local_search, detect_search_mode)
from graph_rag.graph_store import GraphStore
from graph_rag.knowledge_metadata import (KnowledgeStoreMetadata,
                                          ProgressCallback, emit_progress)
from graph_rag.utils.graph_utils import (Chunk, Community, Document,
                                         ExtractedEntity,
                                         ExtractedRelationship, SearchResult)


def setup_logging(cfg: DictConfig, log_name: str = "graph_rag.log") -> None:
    """Configure logging."""
    log_dir = Path(cfg.PATHS.logs_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    logger.remove()
    logger.add(
        sys.stderr,
        format=cfg.LOGGING.format,
        level=cfg.LOGGING.level,
    )
    logger.add(
        log_dir / log_name,
        format=cfg.LOGGING.format,
        level="DEBUG",
        rotation="10 MB",
    )


class DocumentLoader:
    """Loads plain-text documents (.txt, .md, ...) matching a glob pattern."""

    def __init__(self, path: Path | str, pattern: str = "*"):
        self.path = Path(path)
        self.pattern = pattern

    def _load_sync(self) -> list[Document]:
        if self.path.is_file():
            files = [self.path]
            root = self.path.parent
        elif self.path.is_dir():
            files = sorted(p for p in self.path.glob(self.pattern) if p.is_file())
            root = self.path
        else:
            raise DocumentLoadError(f"Source path not found: {self.path}")

        documents = []
        for file_path in files:
            try:
                text = file_path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                raise DocumentLoadError(f"Failed to read {file_path}: {e}") from e

            if text.strip():
                source = file_path.relative_to(root).as_posix()
                documents.append(Document(source=source, content=text))
                logger.debug(f"Loaded {file_path}: {len(text)} chars")

        return documents

    async def load(self) -> list[Document]:
        """
        Load all matching documents.

        Raises:
            DocumentLoadError: If the source is missing or a file cannot be read
        """
        documents = await asyncio.to_thread(self._load_sync)
        logger.info(f"Loaded {len(documents)} documents from {self.path}")
        return documents


def document_id(source: str) -> str:
    """Short stable id of a document, used as the prefix of its chunk ids."""
    return hashlib.md5(source.encode()).hexdigest()[:12]


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def chunk_documents(
    documents: list[Document],
    chunk_size: int,
    chunk_overlap: int,
) -> list[Chunk]:
    """
    Split documents into chunks.

    Returns:
        Chunks with ids "{doc_id}_chunk_{i}"
    """
    splitter = RecursiveCharacterTextSplitter(
        chunk_size=chunk_size,
        chunk_overlap=chunk_overlap,
        length_function=len,
    )

    chunks = []
    for document in documents:
        doc_id = document_id(document.source)
        for i, text in enumerate(splitter.split_text(document.content)):
            chunks.append(Chunk(id=f"{doc_id}_chunk_{i}", content=text, source=document.source))

    logger.info(f"Created {len(chunks)} chunks from {len(documents)} documents")
    return chunks


def purge_sources(
    entities: list[ExtractedEntity],
    relationships: list[ExtractedRelationship],
    sources: set[str],
) -> tuple[list[ExtractedEntity], list[ExtractedRelationship]]:
    """
    Remove everything extracted from the given sources.

    Chunk ids of those sources are removed; entities and relationships left
    without any chunk id are dropped. Items that never had chunk ids are kept.
    """
    prefixes = tuple(f"{document_id(source)}_chunk_" for source in sources)

    def keep(chunk_ids: list[str]) -> list[str] | None:
        if not chunk_ids:
            return []
        remaining = [c for c in chunk_ids if not c.startswith(prefixes)]
        return remaining or None

    kept_entities = []
    for entity in entities:
        remaining = keep(entity.source_chunk_ids)
        if remaining is not None:
            kept_entities.append(
                ExtractedEntity(
                    name=entity.name,
                    type=entity.type,
                    description=entity.description,
                    properties=dict(entity.properties),
                    source_chunk_ids=remaining,
                )
            )

    kept_relationships = []
    for rel in relationships:
        remaining = keep(rel.source_chunk_ids)
        if remaining is not None:
            kept_relationships.append(
                ExtractedRelationship(
                    source_name=rel.source_name,
                    source_type=rel.source_type,
                    target_name=rel.target_name,
                    target_type=rel.target_type,
                    type=rel.type,
                    description=rel.description,
                    weight=rel.weight,
                    source_chunk_ids=remaining,
                )
            )

    logger.info(
        f"Purged {len(sources)} sources: {len(entities) - len(kept_entities)} entities, "
        f"{len(relationships) - len(kept_relationships)} relationships removed"
    )
    return kept_entities, kept_relationships


class GraphRagKnowledgeStore:
    """
    A built Graph RAG knowledge store: the graph, its communities and the
    search strategies over them.
    """

    def __init__(
        self,
        config: DictConfig,
        cache_dir: Path | str,
        llm: BaseChatModel,
        embeddings: Embeddings,
        graph_store: GraphStore,
        project_root: Path | str = ".",
        show_progress: bool = False,
    ):
        """
        Args:
            config: Effective store configuration (see config.store_config)
            cache_dir: Directory for this store's cache files
            llm: Chat model for extraction, summaries and global search
            embeddings: Embedding model for nodes and queries
            graph_store: Backend the graph is written to
            project_root: Base for relative source paths
            show_progress: Whether to show progress bars
        """
        self.config = config
        self.name = config.name
        self.llm = llm
        self.embeddings = embeddings
        self.graph_store = graph_store
        self.show_progress = show_progress

        self.loader = DocumentLoader(
            Path(project_root) / config.source.path, config.source.get("pattern", "*")
        )
        self.cache = ExtractionCache(cache_dir)
        self.cache_enabled = config.GRAPH.CACHE.get("enabled", True)

        self.extractor = create_extractor(config, llm)
        self.detector = create_detector(config)
        self.summarizer = create_summarizer(config, llm)
        self.local_search = create_local_search(config, graph_store, embeddings)
        self.global_search = create_global_search(config, graph_store, llm)

        self.document_count = 0
        self.chunk_count = 0
        self.entities: list[ExtractedEntity] = []
        self.relationships: list[ExtractedRelationship] = []
        self.communities: list[Community] = []
        self.edge_count = 0
        self.source_hashes: dict[str, str] = {}

    @classmethod
    async def create(
        cls,
        config: DictConfig,
        cache_dir: Path | str,
        llm: BaseChatModel,
        embeddings: Embeddings,
        graph_store: GraphStore,
        project_root: Path | str = ".",
        on_progress: ProgressCallback | None = None,
        restore: bool = False,
        show_progress: bool = False,
    ) -> "GraphRagKnowledgeStore":
        """
        Build a knowledge store.

        Args:
            restore: Accept any existing cache, even one built from other inputs

        Returns:
            Built GraphRagKnowledgeStore
        """
        store = cls(
            config,
            cache_dir,
            llm,
            embeddings,
            graph_store,
            project_root=project_root,
            show_progress=show_progress,
        )
        await store.build(on_progress=on_progress, restore=restore)
        return store

    def _progress(
        self, on_progress: ProgressCallback | None, phase, progress: int, message: str
    ) -> None:
        logger.info(f"[{self.name}] {phase}: {message}")
        emit_progress(on_progress, self.name, phase, progress, message)

    async def _load_chunks(
        self, on_progress: ProgressCallback | None
    ) -> tuple[list[Document], list[Chunk]]:
        self._progress(on_progress, "loading", 0, "Loading documents...")
        documents = await self.loader.load()

        self._progress(on_progress, "splitting", 10, f"Splitting {len(documents)} documents...")
        chunks = chunk_documents(
            documents,
            self.config.DOCUMENT.chunk_size,
            self.config.DOCUMENT.chunk_overlap,
        )
        return documents, chunks

    async def build(
        self, on_progress: ProgressCallback | None = None, restore: bool = False
    ) -> None:
        """Run the full pipeline, restoring from cache when possible."""
        documents, chunks = await self._load_chunks(on_progress)
        source_hash = ExtractionCache.compute_source_hash([c.content for c in chunks])
        source_hashes = {d.source: content_hash(d.content) for d in documents}

        cached = None
        if self.cache_enabled:
            if await self.cache.is_valid(source_hash):
                cached = await self.cache.load()
            elif restore and await self.cache.has_cache():
                logger.info(f"[{self.name}] Restoring from existing cache")
                cached = await self.cache.load()

        if cached is not None:
            logger.info(f"[{self.name}] Cache HIT - loading from cache")
            self._progress(on_progress, "extracting", 20, "Loaded extraction results from cache")
            entities, relationships = cached.entities, cached.relationships
            communities = cached.communities
            # A restored cache describes the sources it was built from
            if cached.metadata.source_hash != source_hash and cached.metadata.source_hashes:
                source_hashes = cached.metadata.source_hashes
        else:
            if self.cache_enabled:
                logger.info(f"[{self.name}] Cache MISS - running extraction pipeline")
            self._progress(
                on_progress, "extracting", 20, f"Extracting entities from {len(chunks)} chunks..."
            )
            extraction = await self.extractor.extract_from_chunks(
                chunks, show_progress=self.show_progress
            )
            entities, relationships = extraction.entities, extraction.relationships
            communities = None

        await self._build_graph(entities, relationships, communities, on_progress)

        self.document_count = len(documents)
        self.chunk_count = len(chunks)
        self.source_hashes = source_hashes

        if self.cache_enabled and cached is None:
            self._progress(on_progress, "caching", 90, "Saving extraction cache...")
            await self.cache.save(
                source_hash, self.entities, self.relationships, self.communities, source_hashes
            )

        logger.info(
            f"GraphRAG '{self.name}' ready: {len(self.entities)} entities, "
            f"{len(self.relationships)} relationships, {len(self.communities)} communities"
        )

    async def _build_graph(
        self,
        entities: list[ExtractedEntity],
        relationships: list[ExtractedRelationship],
        communities: list[Community] | None,
        on_progress: ProgressCallback | None,
    ) -> None:
        """
        Write nodes and edges to the graph store and set communities.

        Communities are detected and summarized when none are given.
        """
        self._progress(on_progress, "embedding", 60, f"Embedding {len(entities)} entities...")
        cached_nodes = await self.cache.load_nodes() if self.cache_enabled else None
        nodes = await build_nodes(entities, self.embeddings, cached_nodes)
        edges = build_edges(relationships, nodes)

        self._progress(
            on_progress, "building", 75, f"Building graph: {len(nodes)} nodes, {len(edges)} edges"
        )
        await self.graph_store.clear()
        await self.graph_store.add_nodes(nodes)
        await self.graph_store.add_edges(edges)

        if communities is None:
            communities = await self.detector.detect(self.graph_store)
            if communities:
                communities = await self.summarizer.summarize(communities, self.graph_store)
        await self.graph_store.set_communities(communities)

        if self.cache_enabled:
            await self.cache.save_nodes(nodes)

        self.entities = entities
        self.relationships = relationships
        self.communities = communities
        self.edge_count = len(edges)

    async def refresh(self, on_progress: ProgressCallback | None = None) -> bool:
        """
        Re-index only the sources that changed since the last build.

        Changed and removed sources are purged, changed sources re-extracted,
        and communities re-detected over the merged result.

        Returns:
            True if anything changed, False for a no-op
        """
        documents, chunks = await self._load_chunks(on_progress)
        new_hashes = {d.source: content_hash(d.content) for d in documents}

        changed = {s for s, h in new_hashes.items() if self.source_hashes.get(s) != h}
        removed = set(self.source_hashes) - set(new_hashes)

        if not changed and not removed:
            logger.info(f"[{self.name}] No source changes, refresh skipped")
            return False

        logger.info(
            f"[{self.name}] Refreshing: {len(changed)} changed, {len(removed)} removed sources"
        )
        entities, relationships = purge_sources(
            self.entities, self.relationships, changed | removed
        )

        changed_chunks = [c for c in chunks if c.source in changed]
        self._progress(
            on_progress,
            "extracting",
            20,
            f"Extracting entities from {len(changed_chunks)} changed chunks...",
        )
        extraction = await self.extractor.extract_from_chunks(
            changed_chunks, show_progress=self.show_progress
        )
        merged = deduplicate(
            entities + extraction.entities, relationships + extraction.relationships
        )

        await self._build_graph(merged.entities, merged.relationships, None, on_progress)

        self.document_count = len(documents)
        self.chunk_count = len(chunks)
        self.source_hashes = new_hashes

        if self.cache_enabled:
            self._progress(on_progress, "caching", 90, "Saving extraction cache...")
            source_hash = ExtractionCache.compute_source_hash([c.content for c in chunks])
            await self.cache.save(
                source_hash, self.entities, self.relationships, self.communities, new_hashes
            )
        return True

    async def search(
        self, query: str, k: int | None = None, mode: SearchMode | None = None
    ) -> list[SearchResult]:
        """
        Search the knowledge store.

        Args:
            query: User query
            k: Number of results (defaults to SEARCH.default_k)
            mode: Force "local" or "global"; detected from the query when None

        Returns:
            Search results, [] when nothing is relevant
        """
        k = k or self.config.SEARCH.get("default_k", 10)
        mode = mode or detect_search_mode(query)
        logger.info(f"Search mode: {mode} for query: '{query[:50]}'")

        if mode == "global":
            return await self.global_search.search(query, k)
        return await self.local_search.search(query, k)

    def get_metadata(self) -> KnowledgeStoreMetadata:
        """Current counts and hashes of this store (status is set by the caller)."""
        return KnowledgeStoreMetadata(
            name=self.name,
            document_count=self.document_count,
            chunk_count=self.chunk_count,
            entity_count=len(self.entities),
            edge_count=self.edge_count,
            community_count=len(self.communities),
            source_hashes=dict(self.source_hashes),
            embedding_model=self.config.EMBEDDING.get("model", ""),
            cache_version=CONFIG_VERSION,
        )

    async def close(self) -> None:
        await self.graph_store.close()


def log_progress(event) -> None:
    logger.info(f"[{event.name}] {event.progress:3d}% {event.phase}: {event.message}")


async def build_all(cfg: DictConfig, names: list[str] | None = None) -> None:
    """Build every configured knowledge store (or the named ones)."""
    from graph_rag.indexing_coordinator import KnowledgeStoreManager

    manager = KnowledgeStoreManager(cfg, show_progress=True)
    try:
        await manager.load_all(restore=False)
        for config in manager.list_configs():
            if names and config.name not in names:
                continue
            store = await manager.initialize(config.name, on_progress=log_progress)
            metadata = await manager.get_status(config.name)
            logger.info("=" * 50)
            logger.info(f"Knowledge store '{store.name}' indexed")
            logger.info(f"  Documents: {metadata.document_count}")
            logger.info(f"  Chunks: {metadata.chunk_count}")
            logger.info(f"  Entities: {metadata.entity_count}")
            logger.info(f"  Edges: {metadata.edge_count}")
            logger.info(f"  Communities: {metadata.community_count}")
            logger.info(f"  Duration: {metadata.last_index_duration_ms} ms")
            logger.info("=" * 50)
    finally:
        await manager.close()


@hydra.main(version_base=None, config_path="../conf", config_name="config")
def main(cfg: DictConfig) -> None:
    """Main indexing pipeline."""
    setup_logging(cfg, "build_graph_index.log")
    logger.info("Starting Graph RAG indexing pipeline")
    started = time.monotonic()
    asyncio.run(build_all(cfg))
    logger.info(f"Graph RAG indexing complete in {time.monotonic() - started:.1f}s")


if __name__ == "__main__":
    main()
