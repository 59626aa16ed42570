"""
Neo4j Graph Store Module

Graph store backed by a Neo4j database through the async driver.
Entities are stored as (:Entity {id}) nodes and relationships as
[:RELATES {id}] edges, upserted with batched UNWIND ... MERGE queries.
Drivers are shared between stores through a reference-counted pool.
"""

import asyncio
import json
from typing import Any, Callable

from loguru import logger
from neo4j import AsyncGraphDatabase

from graph_rag.errors import GraphStoreConnectionError
from graph_rag.graph_store import GraphStore, rank_by_embedding
from graph_rag.utils.graph_utils import Community, GraphEdge, GraphNode

UPSERT_NODES_QUERY = """
UNWIND $batch AS row
MERGE (n:Entity {id: row.id})
SET n.type = row.type,
    n.name = row.name,
    n.description = row.description,
    n.properties = row.properties,
    n.sourceChunkIds = row.source_chunk_ids,
    n.embedding = row.embedding
"""

UPSERT_EDGES_QUERY = """
UNWIND $batch AS row
MATCH (s:Entity {id: row.source_id}), (t:Entity {id: row.target_id})
MERGE (s)-[r:RELATES {id: row.id}]->(t)
SET r.type = row.type,
    r.description = row.description,
    r.weight = row.weight,
    r.properties = row.properties
"""

SET_COMMUNITIES_QUERY = """
UNWIND $batch AS row
MATCH (n:Entity {id: row.node_id})
SET n.communityId = row.community_id
"""

GET_NODE_QUERY = "MATCH (n:Entity {id: $id}) RETURN n"

ALL_NODES_QUERY = "MATCH (n:Entity) RETURN n"

ALL_EDGES_QUERY = (
    "MATCH (s:Entity)-[r:RELATES]->(t:Entity) "
    "RETURN r, s.id AS source_id, t.id AS target_id"
)

NEIGHBOR_NODES_QUERY = """
MATCH (start:Entity {{id: $id}})-[*1..{depth}]-(n:Entity)
RETURN DISTINCT n
"""

NEIGHBORHOOD_EDGES_QUERY = """
MATCH (s:Entity)-[r:RELATES]->(t:Entity)
WHERE s.id IN $ids AND t.id IN $ids
RETURN r, s.id AS source_id, t.id AS target_id
"""

CLEAR_QUERY = "MATCH (n:Entity) DETACH DELETE n"

BATCH_SIZE = 500


class Neo4jDriverPool:
    """
    Reference-counted pool of Neo4j drivers.

    Drivers are keyed by (uri, username, database). The first acquire
    creates the driver and verifies connectivity; the last release
    closes it. Connection setup runs once per key, so a slow host only
    delays the stores that use it.
    """

    def __init__(self, driver_factory: Callable[..., Any] | None = None):
        """
        Args:
            driver_factory: Callable (uri, auth=...) -> async driver;
                defaults to AsyncGraphDatabase.driver
        """
        self.driver_factory = driver_factory or AsyncGraphDatabase.driver
        self._drivers: dict[tuple, Any] = {}
        self._refcounts: dict[tuple, int] = {}
        self._connecting: dict[tuple, asyncio.Task] = {}

    @staticmethod
    def make_key(uri: str, username: str, database: str) -> tuple[str, str, str]:
        return (uri, username, database)

    async def _connect(self, key: tuple, uri: str, username: str, password: str) -> None:
        try:
            driver = self.driver_factory(uri, auth=(username, password))
            try:
                await driver.verify_connectivity()
            except Exception as e:
                await driver.close()
                raise GraphStoreConnectionError(
                    f"Failed to connect to Neo4j at {uri}: {e}"
                ) from e
            logger.info(f"Connected to Neo4j at {uri} (database: {key[2]})")
            self._drivers[key] = driver
            self._refcounts[key] = 0
        finally:
            self._connecting.pop(key, None)

    async def acquire(self, uri: str, username: str, password: str, database: str) -> Any:
        """
        Get a connected driver, creating it on first use.

        Concurrent callers for the same key share one connection attempt.

        Raises:
            GraphStoreConnectionError: If the database cannot be reached
        """
        key = self.make_key(uri, username, database)
        while True:
            driver = self._drivers.get(key)
            if driver is not None:
                self._refcounts[key] += 1
                return driver
            task = self._connecting.get(key)
            if task is None:
                task = asyncio.ensure_future(self._connect(key, uri, username, password))
                self._connecting[key] = task
            await asyncio.shield(task)

    async def release(self, uri: str, username: str, database: str) -> None:
        """Drop one reference; the driver is closed when none remain."""
        key = self.make_key(uri, username, database)
        if key not in self._drivers:
            return
        self._refcounts[key] -= 1
        if self._refcounts[key] <= 0:
            driver = self._drivers.pop(key)
            del self._refcounts[key]
            await driver.close()
            logger.info(f"Neo4j connection closed: {uri}")

    async def close_all(self) -> None:
        drivers = list(self._drivers.values())
        self._drivers.clear()
        self._refcounts.clear()
        for driver in drivers:
            await driver.close()
        if drivers:
            logger.info(f"Closed {len(drivers)} Neo4j driver(s)")

    def __len__(self) -> int:
        return len(self._drivers)


def _node_row(node: GraphNode) -> dict:
    return {
        "id": node.id,
        "type": node.type,
        "name": node.name,
        "description": node.description,
        "properties": json.dumps(node.properties),
        "source_chunk_ids": list(node.source_chunk_ids),
        "embedding": list(node.embedding or []),
    }


def _edge_row(edge: GraphEdge) -> dict:
    return {
        "id": edge.id,
        "type": edge.type,
        "source_id": edge.source_id,
        "target_id": edge.target_id,
        "description": edge.description,
        "weight": edge.weight,
        "properties": json.dumps(edge.properties),
    }


def _load_properties(raw: Any) -> dict:
    if not raw:
        return {}
    if isinstance(raw, dict):
        return raw
    return json.loads(raw)


def record_to_node(entity: Any) -> GraphNode:
    """Convert a Neo4j node (or its property mapping) to a GraphNode."""
    props = dict(entity)
    embedding = props.get("embedding")
    return GraphNode(
        id=props["id"],
        type=props.get("type") or "Unknown",
        name=props.get("name") or props["id"],
        description=props.get("description") or "",
        properties=_load_properties(props.get("properties")),
        source_chunk_ids=list(props.get("sourceChunkIds") or []),
        embedding=list(embedding) if embedding else None,
    )


def record_to_edge(entity: Any, source_id: str, target_id: str) -> GraphEdge:
    """Convert a Neo4j relationship (or its property mapping) to a GraphEdge."""
    props = dict(entity)
    weight = props.get("weight")
    return GraphEdge(
        id=props["id"],
        type=props.get("type") or "RELATES_TO",
        source_id=source_id,
        target_id=target_id,
        description=props.get("description") or "",
        weight=float(weight) if isinstance(weight, (int, float)) else 1.0,
        properties=_load_properties(props.get("properties")),
    )


class Neo4jGraphStore(GraphStore):
    """Graph store persisted in Neo4j."""

    def __init__(
        self,
        uri: str,
        username: str,
        password: str,
        database: str | None = None,
        pool: Neo4jDriverPool | None = None,
        batch_size: int = BATCH_SIZE,
    ):
        self.uri = uri
        self.username = username
        self.password = password
        self.database = database or "neo4j"
        self.pool = pool or Neo4jDriverPool()
        self.batch_size = batch_size
        self._driver = None
        self._communities: list[Community] = []

    async def _get_driver(self):
        if self._driver is None:
            self._driver = await self.pool.acquire(
                self.uri, self.username, self.password, self.database
            )
        return self._driver

    async def _run(self, query: str, **params) -> list:
        driver = await self._get_driver()
        result = await driver.execute_query(query, params, database_=self.database)
        return list(result.records)

    async def _run_batched(self, query: str, rows: list[dict]) -> None:
        for i in range(0, len(rows), self.batch_size):
            await self._run(query, batch=rows[i : i + self.batch_size])

    async def add_nodes(self, nodes: list[GraphNode]) -> None:
        await self._run_batched(UPSERT_NODES_QUERY, [_node_row(n) for n in nodes])
        logger.info(f"Added {len(nodes)} nodes to Neo4j")

    async def add_edges(self, edges: list[GraphEdge]) -> None:
        await self._run_batched(UPSERT_EDGES_QUERY, [_edge_row(e) for e in edges])
        logger.info(f"Added {len(edges)} edges to Neo4j")

    async def get_node(self, node_id: str) -> GraphNode | None:
        records = await self._run(GET_NODE_QUERY, id=node_id)
        if not records:
            return None
        return record_to_node(records[0]["n"])

    async def get_neighbors(
        self, node_id: str, depth: int = 1
    ) -> tuple[list[GraphNode], list[GraphEdge]]:
        start = await self.get_node(node_id)
        if start is None:
            return [], []

        nodes = {start.id: start}
        if depth >= 1:
            query = NEIGHBOR_NODES_QUERY.format(depth=int(depth))
            for record in await self._run(query, id=node_id):
                node = record_to_node(record["n"])
                nodes.setdefault(node.id, node)

        edges: dict[str, GraphEdge] = {}
        if len(nodes) > 1:
            records = await self._run(NEIGHBORHOOD_EDGES_QUERY, ids=list(nodes))
            for record in records:
                edge = record_to_edge(record["r"], record["source_id"], record["target_id"])
                edges[edge.id] = edge

        return list(nodes.values()), list(edges.values())

    async def find_nodes_by_embedding(
        self, embedding: list[float], k: int
    ) -> list[GraphNode]:
        # No vector index: every node is fetched and scored client-side
        return rank_by_embedding(await self.get_all_nodes(), embedding, k)

    async def get_communities(self) -> list[Community]:
        return list(self._communities)

    async def set_communities(self, communities: list[Community]) -> None:
        self._communities = list(communities)
        rows = [
            {"node_id": node_id, "community_id": community.id}
            for community in communities
            for node_id in community.node_ids
        ]
        await self._run_batched(SET_COMMUNITIES_QUERY, rows)

    async def get_all_nodes(self) -> list[GraphNode]:
        return [record_to_node(r["n"]) for r in await self._run(ALL_NODES_QUERY)]

    async def get_all_edges(self) -> list[GraphEdge]:
        return [
            record_to_edge(r["r"], r["source_id"], r["target_id"])
            for r in await self._run(ALL_EDGES_QUERY)
        ]

    async def clear(self) -> None:
        await self._run(CLEAR_QUERY)
        self._communities = []
        logger.info("Cleared all Neo4j graph data")

    async def close(self) -> None:
        if self._driver is not None:
            self._driver = None
            await self.pool.release(self.uri, self.username, self.database)
