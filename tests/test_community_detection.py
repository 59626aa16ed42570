"""Tests for Louvain community detection."""

import asyncio
from itertools import combinations

from conftest import make_cfg, make_edge, make_node

from graph_rag.community_detection import CommunityDetector, create_detector
from graph_rag.graph_store import MemoryGraphStore


def build_store(node_ids, edges) -> MemoryGraphStore:
    store = MemoryGraphStore()
    asyncio.run(store.add_nodes([make_node(n, n.upper()) for n in node_ids]))
    asyncio.run(
        store.add_edges(
            [make_edge(f"e{i}", s, t, weight=w) for i, (s, t, w) in enumerate(edges)]
        )
    )
    return store


class StubStore:
    """Minimal store exposing only the scans the detector needs."""

    def __init__(self, nodes, edges):
        self.nodes = nodes
        self.edges = edges

    async def get_all_nodes(self):
        return self.nodes

    async def get_all_edges(self):
        return self.edges


def two_clusters_and_a_pair() -> MemoryGraphStore:
    cluster_a = [f"a{i}" for i in range(5)]
    cluster_b = [f"b{i}" for i in range(5)]
    edges = [(s, t, 1.0) for s, t in combinations(cluster_a, 2)]
    edges += [(s, t, 1.0) for s, t in combinations(cluster_b, 2)]
    edges.append(("p0", "p1", 1.0))
    return build_store(cluster_a + cluster_b + ["p0", "p1"], edges)


def test_min_size_filters_small_communities():
    store = two_clusters_and_a_pair()
    detector = CommunityDetector(min_size=3)

    communities = asyncio.run(detector.detect(store))

    assert len(communities) == 2
    members = sorted(sorted(c.node_ids) for c in communities)
    assert members == [[f"a{i}" for i in range(5)], [f"b{i}" for i in range(5)]]
    assert sum(len(c.node_ids) for c in communities) == 10


def test_pair_is_kept_with_default_min_size():
    store = two_clusters_and_a_pair()

    communities = asyncio.run(CommunityDetector().detect(store))

    assert len(communities) == 3
    assert ["p0", "p1"] in [c.node_ids for c in communities]


def test_ids_and_member_order_are_deterministic():
    store = two_clusters_and_a_pair()

    first = asyncio.run(CommunityDetector(random_seed=7).detect(store))
    second = asyncio.run(CommunityDetector(random_seed=7).detect(store))

    assert [c.to_dict() for c in first] == [c.to_dict() for c in second]
    for community in first:
        assert community.id.startswith("community-")
        assert community.node_ids == sorted(community.node_ids)


def test_empty_graph_has_no_communities():
    assert asyncio.run(CommunityDetector().detect(MemoryGraphStore())) == []


def test_edgeless_graph_singletons():
    store = build_store(["x", "y", "z"], [])

    singletons = asyncio.run(CommunityDetector(min_size=1).detect(store))
    filtered = asyncio.run(CommunityDetector(min_size=2).detect(store))

    assert [c.id for c in singletons] == ["community-0", "community-1", "community-2"]
    assert [c.node_ids for c in singletons] == [["x"], ["y"], ["z"]]
    assert filtered == []


def test_zero_weight_edges_fall_back_to_singletons():
    store = build_store(["a", "b", "c", "d"], [("a", "b", 0.0), ("c", "d", 0.0)])

    singletons = asyncio.run(CommunityDetector(min_size=1).detect(store))
    filtered = asyncio.run(CommunityDetector().detect(store))

    assert [c.node_ids for c in singletons] == [["a"], ["b"], ["c"], ["d"]]
    assert filtered == []


def test_zero_weight_edges_do_not_affect_louvain():
    store = build_store(["a", "b", "c"], [("a", "b", 1.0), ("b", "c", 0.0)])

    communities = asyncio.run(CommunityDetector(min_size=1).detect(store))

    assert sum(len(c.node_ids) for c in communities) == 3


def test_self_loops_and_dangling_edges_are_ignored():
    nodes = [make_node("x", "X"), make_node("y", "Y")]
    edges = [make_edge("loop", "x", "x"), make_edge("dangling", "x", "ghost")]

    communities = asyncio.run(CommunityDetector(min_size=1).detect(StubStore(nodes, edges)))

    # No usable edge remains, so every node is its own community
    assert [c.node_ids for c in communities] == [["x"], ["y"]]


def test_parallel_edges_are_merged_by_weight():
    nodes = [make_node("x", "X"), make_node("y", "Y")]
    edges = [
        make_edge("e1", "x", "y", weight=0.5),
        make_edge("e2", "y", "x", weight=0.25),
    ]
    detector = CommunityDetector()

    graph = asyncio.run(detector.build_undirected_graph(StubStore(nodes, edges)))

    assert graph.number_of_edges() == 1
    assert graph["x"]["y"]["weight"] == 0.75


def test_create_detector_reads_config():
    cfg = make_cfg({"GRAPH": {"COMMUNITIES": {"resolution": 0.5, "min_size": 4, "random_seed": 1}}})

    detector = create_detector(cfg)

    assert detector.resolution == 0.5
    assert detector.min_size == 4
    assert detector.random_seed == 1
