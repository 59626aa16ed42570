"""
Community Summarization Module

Uses LLM to generate a title and summary for each detected community.
These summaries enable global search by providing high-level overviews
of related entity clusters.
"""

import asyncio

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage
from loguru import logger
from omegaconf import DictConfig

from graph_rag.graph_store import GraphStore
from graph_rag.utils.graph_utils import (Community, GraphEdge, GraphNode,
                                         message_text, parse_json_response)

COMMUNITY_SUMMARY_PROMPT = """You are a knowledge graph analyst. Given a set of entities and relationships from a community in a knowledge graph, provide:
1. A short title (5-10 words) that captures the main theme
2. A comprehensive summary (2-4 sentences) that describes the key entities, their relationships, and the overall theme

Respond ONLY with valid JSON:
{
  "title": "Short descriptive title",
  "summary": "Comprehensive summary of the community..."
}"""

MAX_RAW_SUMMARY_CHARS = 500


def build_community_context(nodes: list[GraphNode], edges: list[GraphEdge]) -> str:
    """Build the context string describing a community's entities and relationships."""
    names = {node.id: node.name for node in nodes}

    entity_lines = [f"- {n.name} ({n.type}): {n.description}" for n in nodes]
    relationship_lines = [
        f"- {names.get(e.source_id, e.source_id)} -[{e.type}]-> "
        f"{names.get(e.target_id, e.target_id)}: {e.description}"
        for e in edges
    ]

    return (
        "Entities:\n" + "\n".join(entity_lines)
        + "\n\nRelationships:\n" + "\n".join(relationship_lines)
    )


class CommunitySummarizer:
    """
    Generates summaries for communities using LLM.
    """

    def __init__(self, llm: BaseChatModel, max_concurrency: int = 1):
        """
        Initialize community summarizer.

        Args:
            llm: Chat model used for summaries
            max_concurrency: Maximum number of communities summarized at once
        """
        self.llm = llm
        self.max_concurrency = max(1, max_concurrency)

    async def summarize_community(
        self, community: Community, store: GraphStore
    ) -> tuple[str, str]:
        """
        Generate a title and summary for a community.

        Args:
            community: Community to summarize
            store: Graph store holding the community's nodes

        Returns:
            Tuple of (title, summary)
        """
        nodes = []
        for node_id in community.node_ids:
            node = await store.get_node(node_id)
            if node:
                nodes.append(node)

        members = set(community.node_ids)
        internal_edges = [
            edge
            for edge in await store.get_all_edges()
            if edge.source_id in members and edge.target_id in members
        ]

        context = build_community_context(nodes, internal_edges)

        response = await self.llm.ainvoke(
            [
                SystemMessage(content=COMMUNITY_SUMMARY_PROMPT),
                HumanMessage(content=f"Analyze this community:\n\n{context}"),
            ]
        )
        text = message_text(response.content)

        try:
            parsed = parse_json_response(text)
            if not isinstance(parsed, dict):
                raise ValueError("Summary response is not a JSON object")
        except ValueError:
            logger.warning(f"Failed to parse summary for {community.id}, using raw response")
            return f"Community {community.id}", text[:MAX_RAW_SUMMARY_CHARS]

        title = parsed.get("title") or f"Community {community.id}"
        summary = parsed.get("summary") or ""
        return str(title), str(summary)

    async def summarize(
        self, communities: list[Community], store: GraphStore
    ) -> list[Community]:
        """
        Generate summaries for all communities.

        Failures are isolated per community; output order equals input order.

        Args:
            communities: Communities to summarize
            store: Graph store holding the nodes

        Returns:
            Copies of the communities with title and summary set
        """
        semaphore = asyncio.Semaphore(self.max_concurrency)
        total = len(communities)

        async def summarize_one(index: int, community: Community) -> Community:
            async with semaphore:
                logger.info(
                    f"Summarizing community {index + 1}/{total} "
                    f"({len(community.node_ids)} nodes)"
                )
                try:
                    title, summary = await self.summarize_community(community, store)
                except Exception as e:
                    logger.error(f"Failed to summarize community {community.id}: {e}")
                    title = f"Community {community.id}"
                    summary = f"Community with {len(community.node_ids)} entities."

            return Community(
                id=community.id,
                node_ids=list(community.node_ids),
                title=title,
                summary=summary,
            )

        summarized = await asyncio.gather(
            *(summarize_one(i, c) for i, c in enumerate(communities))
        )
        logger.info(f"Summarized {len(summarized)} communities")
        return list(summarized)


def create_summarizer(cfg: DictConfig, llm: BaseChatModel) -> CommunitySummarizer:
    """Create a CommunitySummarizer from config."""
    return CommunitySummarizer(
        llm=llm,
        max_concurrency=cfg.GRAPH.COMMUNITIES.get("max_concurrency", 1),
    )
