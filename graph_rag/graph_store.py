"""
Graph Store Module

Persistence and query abstraction over the knowledge graph: nodes, edges
and communities. The in-memory backend keeps everything in a NetworkX
MultiDiGraph; the Neo4j backend lives in neo4j_graph_store.
"""

import math
from abc import ABC, abstractmethod

import networkx as nx
from loguru import logger
from omegaconf import DictConfig

from graph_rag.utils.graph_utils import (Community, GraphEdge, GraphNode,
                                         cosine_similarity)


class GraphStore(ABC):
    """Async interface shared by all graph backends."""

    @abstractmethod
    async def add_nodes(self, nodes: list[GraphNode]) -> None:
        """Insert nodes, merging into existing ones with the same id."""

    @abstractmethod
    async def add_edges(self, edges: list[GraphEdge]) -> None:
        """Insert edges, replacing existing ones with the same id."""

    @abstractmethod
    async def get_node(self, node_id: str) -> GraphNode | None:
        """Return a node by id, or None."""

    @abstractmethod
    async def get_neighbors(
        self, node_id: str, depth: int = 1
    ) -> tuple[list[GraphNode], list[GraphEdge]]:
        """
        Return the neighborhood of a node.

        Args:
            node_id: Start node id
            depth: Maximum number of hops, following edges in either direction

        Returns:
            Tuple of (nodes, edges); nodes include the start node
        """

    @abstractmethod
    async def find_nodes_by_embedding(
        self, embedding: list[float], k: int
    ) -> list[GraphNode]:
        """Return the k nodes most similar to the embedding."""

    @abstractmethod
    async def get_communities(self) -> list[Community]:
        """Return stored communities."""

    @abstractmethod
    async def set_communities(self, communities: list[Community]) -> None:
        """Replace stored communities."""

    @abstractmethod
    async def get_all_nodes(self) -> list[GraphNode]:
        """Return every node."""

    @abstractmethod
    async def get_all_edges(self) -> list[GraphEdge]:
        """Return every edge."""

    @abstractmethod
    async def clear(self) -> None:
        """Remove all nodes, edges and communities."""

    async def close(self) -> None:
        """Release backend resources."""


def rank_by_embedding(
    nodes: list[GraphNode], embedding: list[float], k: int
) -> list[GraphNode]:
    """
    Score nodes by cosine similarity and return the top k.

    Nodes without an embedding and non-finite scores are skipped.
    """
    scored = []
    for node in nodes:
        if not node.embedding:
            continue
        score = cosine_similarity(embedding, node.embedding)
        if math.isfinite(score):
            scored.append((score, node))

    scored.sort(key=lambda x: x[0], reverse=True)
    return [node for _, node in scored[:k]]


class MemoryGraphStore(GraphStore):
    """
    In-memory graph store backed by a NetworkX MultiDiGraph.

    Node attributes hold the GraphNode fields; edges are keyed by edge id.
    """

    def __init__(self):
        self.graph = nx.MultiDiGraph()
        self._edge_index: dict[str, tuple[str, str]] = {}
        self._communities: list[Community] = []

    @property
    def num_nodes(self) -> int:
        return self.graph.number_of_nodes()

    @property
    def num_edges(self) -> int:
        return self.graph.number_of_edges()

    def _to_node(self, node_id: str) -> GraphNode:
        data = self.graph.nodes[node_id]
        return GraphNode(
            id=node_id,
            type=data.get("type", "Unknown"),
            name=data.get("name", node_id),
            description=data.get("description", ""),
            properties=dict(data.get("properties", {})),
            source_chunk_ids=list(data.get("source_chunk_ids", [])),
            embedding=list(data["embedding"]) if data.get("embedding") else None,
        )

    @staticmethod
    def _to_edge(source: str, target: str, key: str, data: dict) -> GraphEdge:
        return GraphEdge(
            id=key,
            type=data.get("type", "RELATES_TO"),
            source_id=source,
            target_id=target,
            description=data.get("description", ""),
            weight=data.get("weight", 1.0),
            properties=dict(data.get("properties", {})),
        )

    async def add_nodes(self, nodes: list[GraphNode]) -> None:
        for node in nodes:
            attrs = node.to_dict()
            attrs.pop("id")
            # Re-adding updates the attribute dict in place
            self.graph.add_node(node.id, **attrs)

    async def add_edges(self, edges: list[GraphEdge]) -> None:
        added = 0
        for edge in edges:
            if edge.source_id not in self.graph or edge.target_id not in self.graph:
                logger.warning(
                    f"Skipping edge {edge.id}: {edge.source_id} -> {edge.target_id} "
                    f"(missing nodes: source={edge.source_id in self.graph}, "
                    f"target={edge.target_id in self.graph})"
                )
                continue

            # An edge id lives between exactly one pair of nodes
            previous = self._edge_index.get(edge.id)
            if previous and self.graph.has_edge(*previous, key=edge.id):
                self.graph.remove_edge(*previous, key=edge.id)

            attrs = edge.to_dict()
            for field_name in ("id", "source_id", "target_id"):
                attrs.pop(field_name)
            self.graph.add_edge(edge.source_id, edge.target_id, key=edge.id, **attrs)
            self._edge_index[edge.id] = (edge.source_id, edge.target_id)
            added += 1

        logger.debug(f"Added {added}/{len(edges)} edges, graph now has {self.num_edges} edges")

    async def get_node(self, node_id: str) -> GraphNode | None:
        if node_id not in self.graph:
            return None
        return self._to_node(node_id)

    async def get_neighbors(
        self, node_id: str, depth: int = 1
    ) -> tuple[list[GraphNode], list[GraphEdge]]:
        if node_id not in self.graph:
            return [], []

        visited = {node_id}
        order = [node_id]
        edges: dict[str, GraphEdge] = {}
        current_level = [node_id]

        for _ in range(depth):
            next_level = []
            for current in current_level:
                incident = list(self.graph.out_edges(current, keys=True, data=True))
                incident += list(self.graph.in_edges(current, keys=True, data=True))
                for source, target, key, data in incident:
                    edges.setdefault(key, self._to_edge(source, target, key, data))
                    other = target if source == current else source
                    if other not in visited:
                        visited.add(other)
                        order.append(other)
                        next_level.append(other)
            current_level = next_level

        return [self._to_node(n) for n in order], list(edges.values())

    async def find_nodes_by_embedding(
        self, embedding: list[float], k: int
    ) -> list[GraphNode]:
        return rank_by_embedding(await self.get_all_nodes(), embedding, k)

    async def get_communities(self) -> list[Community]:
        return list(self._communities)

    async def set_communities(self, communities: list[Community]) -> None:
        self._communities = list(communities)

    async def get_all_nodes(self) -> list[GraphNode]:
        return [self._to_node(node_id) for node_id in self.graph.nodes]

    async def get_all_edges(self) -> list[GraphEdge]:
        return [
            self._to_edge(source, target, key, data)
            for source, target, key, data in self.graph.edges(keys=True, data=True)
        ]

    async def clear(self) -> None:
        self.graph.clear()
        self._edge_index.clear()
        self._communities = []


def create_graph_store(cfg: DictConfig, pool=None) -> GraphStore:
    """
    Create the graph store selected by GRAPH.STORE.type.

    Args:
        cfg: Store configuration
        pool: Neo4jDriverPool shared by networked stores

    Returns:
        GraphStore instance
    """
    store_cfg = cfg.GRAPH.STORE
    store_type = store_cfg.get("type", "memory")

    if store_type == "memory":
        return MemoryGraphStore()
    if store_type == "neo4j":
        from graph_rag.neo4j_graph_store import Neo4jDriverPool, Neo4jGraphStore

        return Neo4jGraphStore(
            uri=store_cfg.uri,
            username=store_cfg.username,
            password=store_cfg.password,
            database=store_cfg.get("database"),
            pool=pool or Neo4jDriverPool(),
        )

    raise ValueError(f"Unknown graph store type: {store_type}")
