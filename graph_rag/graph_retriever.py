"""
Graph Retriever Module

Implements local and global search strategies for Graph RAG:
- Local Search: Entity-based traversal for specific queries
- Global Search: Community-based map-reduce for broad/summary queries
"""

import asyncio
import re
from typing import Literal

from langchain_core.embeddings import Embeddings
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage
from loguru import logger
from omegaconf import DictConfig

from graph_rag.graph_store import GraphStore
from graph_rag.utils.graph_utils import (GraphEdge, GraphNode, SearchResult,
                                         cosine_similarity, message_text,
                                         strip_think_tags)

SearchMode = Literal["local", "global"]

MAP_SYSTEM_PROMPT = """You are a helpful analyst. Given a community summary from a knowledge graph, answer the user's question based on the information available. If the community summary is not relevant to the question, respond with an empty string "".
Be concise and factual."""

MAP_USER_PROMPT = "Community: {title}\n\nSummary:\n{summary}\n\nQuestion: {query}"

REDUCE_SYSTEM_PROMPT = """You are a synthesis expert. Given multiple partial answers from different knowledge graph communities, synthesize them into a single comprehensive answer. Remove redundancies, reconcile any conflicts, and present a coherent response."""

REDUCE_USER_PROMPT = """Question: {query}

Partial answers from different communities:

{answers}

Provide a synthesized comprehensive answer:"""

GLOBAL_INDICATORS = [
    "overall", "common", "themes", "patterns", "summarize", "summary",
    "across", "trends", "general", "most frequent", "overview", "main topics",
    "all", "broadly", "generally", "what are the", "how do", "what do",
    "in general", "typically", "aggregate", "big picture",
]

LOCAL_INDICATORS = [
    "who", "which", "tell me about", "what is", "what does",
    "describe", "find", "specific", "details about", "information on",
]

PROPER_NOUN_PATTERN = re.compile(r"^[A-Z][a-z]")

# Relevance of a seed entity that has no embedding
DEFAULT_SCORE = 0.5


def detect_search_mode(query: str) -> SearchMode:
    """
    Heuristically decide between local and global search.

    Indicator phrases score each mode; capitalized words after the first
    and quoted text count towards local. Ties go to local.

    Args:
        query: User query

    Returns:
        "global" or "local"
    """
    lower = query.lower().strip()

    global_score = sum(1 for indicator in GLOBAL_INDICATORS if indicator in lower)
    local_score = sum(1 for indicator in LOCAL_INDICATORS if indicator in lower)

    words = query.strip().split()
    # First word is skipped, it is capitalized anyway
    has_proper_nouns = any(PROPER_NOUN_PATTERN.match(word) for word in words[1:])
    if has_proper_nouns:
        local_score += 2

    if '"' in query or "'" in query:
        local_score += 2

    return "global" if global_score > local_score else "local"


def format_neighborhood(
    center: GraphNode, nodes: list[GraphNode], edges: list[GraphEdge]
) -> str:
    """Format an entity neighborhood as a text block for the LLM context."""
    lines = [f"Entity: {center.name} ({center.type})", f"Description: {center.description}"]

    if edges:
        labels = {n.id: f"{n.name} ({n.type})" for n in nodes}
        lines.append("")
        lines.append("Relationships:")
        for edge in edges:
            source = labels.get(edge.source_id, edge.source_id)
            target = labels.get(edge.target_id, edge.target_id)
            lines.append(f"  {source} -[{edge.type}]-> {target}: {edge.description}")

    others = [n for n in nodes if n.id != center.id]
    if others:
        lines.append("")
        lines.append("Connected Entities:")
        for node in others:
            lines.append(f"  - {node.name} ({node.type}): {node.description}")

    return "\n".join(lines)


class LocalSearch:
    """
    Entity-neighborhood search.

    Embeds the query, finds the most similar entity nodes, expands each
    node's neighborhood and returns the formatted neighborhoods.
    """

    def __init__(self, store: GraphStore, embeddings: Embeddings, max_depth: int = 2):
        self.store = store
        self.embeddings = embeddings
        self.max_depth = max_depth

    async def search(self, query: str, k: int) -> list[SearchResult]:
        """
        Search for entities related to the query.

        Args:
            query: User query
            k: Number of seed entities and maximum number of results

        Returns:
            Results sorted by relevance, at most k
        """
        logger.info(f"Local search: '{query[:50]}' (k={k}, depth={self.max_depth})")

        query_embedding = await self.embeddings.aembed_query(query)
        seeds = await self.store.find_nodes_by_embedding(query_embedding, k)
        if not seeds:
            logger.warning("No matching entities found")
            return []

        logger.info(f"Found {len(seeds)} matching entities")

        results = []
        visited: set[str] = set()

        for node in seeds:
            # Seeds already covered by an earlier neighborhood are skipped
            if node.id in visited:
                continue

            nodes, edges = await self.store.get_neighbors(node.id, self.max_depth)
            visited.update(n.id for n in nodes)

            if node.embedding:
                score = cosine_similarity(query_embedding, node.embedding)
            else:
                score = DEFAULT_SCORE

            results.append(
                SearchResult(
                    content=format_neighborhood(node, nodes, edges),
                    score=score,
                    metadata={
                        "type": "graph-local",
                        "entity_id": node.id,
                        "entity_name": node.name,
                        "entity_type": node.type,
                        "neighbor_count": len(nodes),
                        "edge_count": len(edges),
                    },
                )
            )

        results.sort(key=lambda r: r.score, reverse=True)
        return results[:k]


class GlobalSearch:
    """
    Community-summary map-reduce search.

    Each of the largest communities answers the query from its summary
    (map); the partial answers are synthesized into one answer (reduce).
    """

    def __init__(
        self,
        store: GraphStore,
        llm: BaseChatModel,
        top_communities: int = 5,
        max_concurrency: int = 1,
    ):
        self.store = store
        self.llm = llm
        self.top_communities = top_communities
        self.max_concurrency = max(1, max_concurrency)

    async def _ask(self, system: str, user: str) -> str:
        response = await self.llm.ainvoke(
            [SystemMessage(content=system), HumanMessage(content=user)]
        )
        return strip_think_tags(message_text(response.content)).strip()

    async def map_query(self, query: str, title: str, summary: str) -> str:
        """Answer the query from one community summary ("" when irrelevant)."""
        answer = await self._ask(
            MAP_SYSTEM_PROMPT,
            MAP_USER_PROMPT.format(title=title, summary=summary, query=query),
        )
        # Models often echo the requested empty string literally
        if answer in ('""', "''"):
            return ""
        return answer

    async def reduce_answers(self, query: str, partials: list[dict]) -> str:
        """Synthesize partial answers into one."""
        answers = "\n\n".join(
            f'[{i + 1}] Community "{p["title"]}":\n{p["answer"]}'
            for i, p in enumerate(partials)
        )
        return await self._ask(
            REDUCE_SYSTEM_PROMPT,
            REDUCE_USER_PROMPT.format(query=query, answers=answers),
        )

    async def search(self, query: str, k: int | None = None) -> list[SearchResult]:
        """
        Answer a broad query from community summaries.

        Args:
            query: User query
            k: Unused; global search returns a single synthesized result

        Returns:
            One synthesized result, or [] when no community is relevant
        """
        logger.info(f"Global search: '{query[:50]}' (top_communities={self.top_communities})")

        communities = await self.store.get_communities()
        if not communities:
            logger.warning("No communities found")
            return []

        top = sorted(communities, key=lambda c: len(c.node_ids), reverse=True)
        top = top[: self.top_communities]
        logger.info(f"Using {len(top)} communities for map-reduce")

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def map_one(community) -> dict | None:
            if not community.summary:
                return None
            title = community.title or community.id
            async with semaphore:
                try:
                    answer = await self.map_query(query, title, community.summary)
                except Exception as e:
                    logger.warning(f"Map failed for community {community.id}: {e}")
                    return None
            if not answer:
                return None
            return {"community_id": community.id, "title": title, "answer": answer}

        mapped = await asyncio.gather(*(map_one(c) for c in top))
        partials = [p for p in mapped if p is not None]

        if not partials:
            logger.warning("No partial answers generated")
            return []

        synthesized = await self.reduce_answers(query, partials)

        return [
            SearchResult(
                content=synthesized,
                score=1.0,
                metadata={
                    "type": "graph-global",
                    "communities_used": len(partials),
                    "community_ids": [p["community_id"] for p in partials],
                },
            )
        ]


def create_local_search(cfg: DictConfig, store: GraphStore, embeddings: Embeddings) -> LocalSearch:
    """Create a LocalSearch from config."""
    return LocalSearch(
        store=store,
        embeddings=embeddings,
        max_depth=cfg.SEARCH.LOCAL.get("max_depth", 2),
    )


def create_global_search(cfg: DictConfig, store: GraphStore, llm: BaseChatModel) -> GlobalSearch:
    """Create a GlobalSearch from config."""
    return GlobalSearch(
        store=store,
        llm=llm,
        top_communities=cfg.SEARCH.GLOBAL.get("top_communities", 5),
        max_concurrency=cfg.SEARCH.GLOBAL.get("max_concurrency", 1),
    )
