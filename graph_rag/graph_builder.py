"""
Knowledge Graph Builder Module

Turns deduplicated entities and relationships into graph nodes and edges,
embedding each node's name and description. DirectMapper is a library-level
helper for callers holding structured rows (e.g. query results): its output
feeds build_nodes/build_edges directly, without an LLM. The document
indexing pipeline does not use it.
"""

import hashlib
import re
from dataclasses import dataclass, field
from typing import Any

from langchain_core.embeddings import Embeddings
from loguru import logger

from graph_rag.utils.graph_utils import (ExtractedEntity,
                                         ExtractedRelationship,
                                         ExtractionResult, GraphEdge,
                                         GraphNode, entity_key)


def node_id(name: str, entity_type: str) -> str:
    """
    Create a deterministic node ID from entity name and type.

    Args:
        name: Entity name
        entity_type: Entity type

    Returns:
        Lowercase "type::name" with runs of non-word characters collapsed
        to "-". Names with no word characters get a hash of their dedup key.
    """
    normalized = f"{entity_type}::{name}".lower()
    normalized = re.sub(r"[^\w:]+", "-", normalized).strip("-")
    if normalized.endswith("::"):
        normalized = with_key_hash(normalized, name, entity_type)
    return normalized


def with_key_hash(base: str, name: str, entity_type: str) -> str:
    digest = hashlib.md5(entity_key(name, entity_type).encode("utf-8")).hexdigest()[:8]
    return f"{base}-{digest}"


def embedding_text(name: str, description: str) -> str:
    return f"{name}: {description}"


async def build_nodes(
    entities: list[ExtractedEntity],
    embeddings: Embeddings,
    cached_nodes: list[GraphNode] | None = None,
) -> list[GraphNode]:
    """
    Build graph nodes from extracted entities, with embeddings.

    Vectors of cached nodes are reused when the node's name and description
    are unchanged; the rest are embedded in one batch. If the embedding
    provider fails, those nodes are left without embeddings.

    Args:
        entities: Deduplicated entities
        embeddings: Embedding model
        cached_nodes: Nodes from a previous build, embeddings included

    Returns:
        One GraphNode per entity
    """
    reusable = {
        node.id: node
        for node in cached_nodes or []
        if node.embedding
    }

    nodes = []
    to_embed: list[int] = []
    taken: dict[str, str] = {}

    for entity in entities:
        key = entity_key(entity.name, entity.type)
        nid = node_id(entity.name, entity.type)
        if taken.get(nid, key) != key:
            # Distinct entities whose names normalize to the same slug
            nid = with_key_hash(nid, entity.name, entity.type)
        taken[nid] = key
        node = GraphNode(
            id=nid,
            type=entity.type,
            name=entity.name,
            description=entity.description,
            properties=dict(entity.properties),
            source_chunk_ids=list(entity.source_chunk_ids),
        )
        cached = reusable.get(nid)
        if cached and cached.name == entity.name and cached.description == entity.description:
            node.embedding = list(cached.embedding)
        else:
            to_embed.append(len(nodes))
        nodes.append(node)

    if to_embed:
        texts = [embedding_text(nodes[i].name, nodes[i].description) for i in to_embed]
        try:
            vectors = await embeddings.aembed_documents(texts)
        except Exception as e:
            logger.error(f"Failed to embed entity descriptions: {e}")
            vectors = []
        for i, vector in zip(to_embed, vectors):
            nodes[i].embedding = list(vector) if vector else None

    logger.info(
        f"Built {len(nodes)} nodes ({len(nodes) - len(to_embed)} embeddings reused, "
        f"{len(to_embed)} embedded)"
    )
    return nodes


def build_edges(
    relationships: list[ExtractedRelationship], nodes: list[GraphNode]
) -> list[GraphEdge]:
    """
    Build graph edges, resolving relationship endpoints to node ids.

    Relationships whose endpoints match no node are skipped.
    """
    node_ids = {entity_key(node.name, node.type): node.id for node in nodes}

    edges = []
    for i, rel in enumerate(relationships):
        source_id = node_ids.get(rel.source_key)
        target_id = node_ids.get(rel.target_key)

        if not source_id or not target_id:
            logger.debug(
                f"Skipping relationship: missing node for {rel.source_name} -> {rel.target_name}"
            )
            continue

        edges.append(
            GraphEdge(
                id=f"edge-{i}-{rel.type}",
                type=rel.type,
                source_id=source_id,
                target_id=target_id,
                description=rel.description,
                weight=rel.weight,
            )
        )

    logger.info(f"Built {len(edges)}/{len(relationships)} edges")
    return edges


@dataclass
class EntityMapping:
    """How one row produces one entity."""

    type: str
    id_column: str
    name_column: str | None = None
    # Column names, or {output_name: column} mappings
    properties: list[str | dict[str, str]] = field(default_factory=list)


@dataclass
class RelationshipMapping:
    """How one row links two mapped entities."""

    type: str
    source: str
    source_id_column: str
    target: str
    target_id_column: str


@dataclass
class DirectMappingConfig:
    entities: list[EntityMapping] = field(default_factory=list)
    relationships: list[RelationshipMapping] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "DirectMappingConfig":
        return cls(
            entities=[EntityMapping(**e) for e in data.get("entities") or []],
            relationships=[RelationshipMapping(**r) for r in data.get("relationships") or []],
        )


class DirectMapper:
    """
    Maps structured rows (e.g. query results) to graph entities and
    relationships without LLM extraction. Every row contributes.
    """

    @staticmethod
    def _properties(row: dict[str, Any], mapping: EntityMapping) -> dict[str, Any]:
        properties = {}
        for prop in mapping.properties:
            if isinstance(prop, str):
                properties[prop] = row.get(prop)
            elif prop:
                output_name, column = next(iter(prop.items()))
                properties[output_name] = row.get(column)
        return properties

    def map_rows(
        self, rows: list[dict[str, Any]], mapping: DirectMappingConfig
    ) -> ExtractionResult:
        """
        Map rows to entities and relationships.

        Entities are deduplicated on "type::id"; relationships are only
        created between entities that were mapped.

        Args:
            rows: Structured rows
            mapping: Which columns make entities and relationships

        Returns:
            ExtractionResult
        """
        logger.info(
            f"Mapping {len(rows)} rows to graph with {len(mapping.entities)} entity types"
        )

        entities: list[ExtractedEntity] = []
        relationships: list[ExtractedRelationship] = []
        seen: dict[str, ExtractedEntity] = {}

        for row in rows:
            if not isinstance(row, dict):
                logger.warning("Skipping row without valid data")
                continue

            for entity_mapping in mapping.entities:
                entity_id = row.get(entity_mapping.id_column)
                if entity_id is None or entity_id == "":
                    continue

                cache_key = f"{entity_mapping.type}::{entity_id}"
                if cache_key in seen:
                    continue

                if entity_mapping.name_column and row.get(entity_mapping.name_column):
                    name = str(row[entity_mapping.name_column])
                else:
                    name = f"{entity_mapping.type}-{entity_id}"

                entity = ExtractedEntity(
                    name=name,
                    type=entity_mapping.type,
                    description=f"{entity_mapping.type} entity from structured data",
                    properties=self._properties(row, entity_mapping),
                )
                entities.append(entity)
                seen[cache_key] = entity

            for rel_mapping in mapping.relationships:
                source_id = row.get(rel_mapping.source_id_column)
                target_id = row.get(rel_mapping.target_id_column)
                if source_id is None or target_id is None:
                    continue

                source = seen.get(f"{rel_mapping.source}::{source_id}")
                target = seen.get(f"{rel_mapping.target}::{target_id}")
                if not source or not target:
                    logger.debug(
                        f"Skipping relationship {rel_mapping.type}: entity not found "
                        f"({rel_mapping.source}::{source_id} -> {rel_mapping.target}::{target_id})"
                    )
                    continue

                relationships.append(
                    ExtractedRelationship(
                        source_name=source.name,
                        source_type=source.type,
                        target_name=target.name,
                        target_type=target.type,
                        type=rel_mapping.type,
                        description=f"{rel_mapping.source} {rel_mapping.type} {rel_mapping.target}",
                        weight=1.0,
                    )
                )

        logger.info(
            f"Direct mapping complete: {len(entities)} entities, {len(relationships)} relationships"
        )
        return ExtractionResult(entities=entities, relationships=relationships)
