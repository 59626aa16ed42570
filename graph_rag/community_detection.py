"""
Community Detection Module

Uses the Louvain algorithm to group the knowledge graph into communities.
Communities are groups of densely connected entities that can be summarized together.
"""

import networkx as nx
from loguru import logger
from omegaconf import DictConfig

from graph_rag.graph_store import GraphStore
from graph_rag.utils.graph_utils import Community


class CommunityDetector:
    """
    Detects communities in a graph store using Louvain modularity optimization.
    """

    def __init__(
        self,
        resolution: float = 1.0,
        min_size: int = 2,
        random_seed: int = 42,
    ):
        """
        Initialize community detector.

        Args:
            resolution: Resolution parameter for Louvain (higher = more, smaller communities)
            min_size: Minimum nodes in a community
            random_seed: Random seed for reproducibility
        """
        self.resolution = resolution
        self.min_size = min_size
        self.random_seed = random_seed

    async def build_undirected_graph(self, store: GraphStore) -> nx.Graph:
        """
        Build a weighted undirected graph from the store contents.

        Self loops and edges to unknown nodes are dropped; parallel edges
        (in either direction) are merged by summing their weights.
        """
        graph = nx.Graph()
        nodes = await store.get_all_nodes()
        graph.add_nodes_from(sorted(node.id for node in nodes))

        for edge in await store.get_all_edges():
            source, target = edge.source_id, edge.target_id
            if source == target or source not in graph or target not in graph:
                continue
            if graph.has_edge(source, target):
                graph[source][target]["weight"] += edge.weight
            else:
                graph.add_edge(source, target, weight=edge.weight)

        return graph

    async def detect(self, store: GraphStore) -> list[Community]:
        """
        Detect communities in the graph store.

        Args:
            store: Graph store to analyze

        Returns:
            Communities with at least min_size members
        """
        graph = await self.build_undirected_graph(store)

        if graph.number_of_nodes() == 0:
            logger.warning("Graph is empty, no communities to detect")
            return []

        # Louvain normalizes by total edge weight
        if graph.size(weight="weight") == 0:
            logger.warning("No weighted edges in graph, each node becomes its own community")
            communities = [
                Community(id=f"community-{i}", node_ids=[node_id])
                for i, node_id in enumerate(graph.nodes)
            ]
            return [c for c in communities if len(c.node_ids) >= self.min_size]

        logger.info(
            f"Running Louvain on {graph.number_of_nodes()} nodes, "
            f"{graph.number_of_edges()} edges (resolution: {self.resolution})"
        )

        partition = nx.community.louvain_communities(
            graph,
            weight="weight",
            resolution=self.resolution,
            seed=self.random_seed,
        )

        communities = []
        for i, members in enumerate(partition):
            if len(members) >= self.min_size:
                communities.append(
                    Community(id=f"community-{i}", node_ids=sorted(members))
                )

        logger.info(f"Detected {len(communities)} communities (min size: {self.min_size})")
        return communities


def create_detector(cfg: DictConfig) -> CommunityDetector:
    """Create a CommunityDetector from config."""
    communities_cfg = cfg.GRAPH.COMMUNITIES
    return CommunityDetector(
        resolution=communities_cfg.get("resolution", 1.0),
        min_size=communities_cfg.get("min_size", 2),
        random_seed=communities_cfg.get("random_seed", 42),
    )
