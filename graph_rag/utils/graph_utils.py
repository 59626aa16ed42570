"""Graph utility functions and data records for Graph RAG"""

import json
import re
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import numpy as np
from loguru import logger


def strip_think_tags(text: str) -> str:
    """
    Remove <think>...</think> tags from LLM output.

    Many LLMs (especially reasoning models) wrap their chain-of-thought
    in <think> tags. This function removes them to get the final answer.

    Args:
        text: LLM output text potentially containing think tags

    Returns:
        Text with think tags and their content removed
    """
    pattern = r"<think>.*?</think>"
    cleaned = re.sub(pattern, "", text, flags=re.DOTALL)
    return cleaned.strip()


def message_text(content: Any) -> str:
    """
    Flatten the content of a chat model response into plain text.

    Chat models return either a string or a list of content blocks
    (strings or dicts carrying a "text" key).
    """
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict):
                parts.append(str(block.get("text", "")))
        return "".join(parts)
    return ""


def parse_json_response(response: str) -> Any:
    """
    Parse a JSON payload out of an LLM response.

    Handles markdown code fences and leading/trailing prose around the
    outermost JSON object.

    Raises:
        ValueError: If no strategy yields valid JSON
    """
    response = strip_think_tags(response)

    candidates = []
    fence_match = re.search(r"```(?:json)?\s*([\s\S]*?)```", response)
    if fence_match:
        candidates.append(fence_match.group(1).strip())
    candidates.append(response.strip())

    start = response.find("{")
    end = response.rfind("}")
    if start != -1 and end > start:
        candidates.append(response[start : end + 1])

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue

    raise ValueError(f"No valid JSON found in response (length: {len(response)})")


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """
    Cosine similarity between two vectors.

    Returns 0.0 for empty vectors, mismatched dimensions, or a zero norm.
    """
    if len(a) == 0 or len(b) == 0 or len(a) != len(b):
        return 0.0
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def entity_key(name: str, entity_type: str) -> str:
    """Case-insensitive dedup key for an entity."""
    return f"{name.lower()}::{entity_type.lower()}"


@dataclass
class Document:
    """A loaded source document."""

    source: str
    content: str


@dataclass
class Chunk:
    """A bounded span of source text sent to the extractor as one request."""

    id: str
    content: str
    source: str = ""


@dataclass
class ExtractedEntity:
    """Entity extracted from a chunk, before it becomes a graph node."""

    name: str
    type: str
    description: str = ""
    properties: dict[str, Any] = field(default_factory=dict)
    source_chunk_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ExtractedEntity":
        return cls(**data)


@dataclass
class ExtractedRelationship:
    """Relationship extracted from a chunk, before it becomes a graph edge."""

    source_name: str
    source_type: str
    target_name: str
    target_type: str
    type: str
    description: str = ""
    weight: float = 1.0
    source_chunk_ids: list[str] = field(default_factory=list)

    @property
    def source_key(self) -> str:
        return entity_key(self.source_name, self.source_type)

    @property
    def target_key(self) -> str:
        return entity_key(self.target_name, self.target_type)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ExtractedRelationship":
        return cls(**data)


@dataclass
class ExtractionResult:
    """Entities and relationships extracted from one or more chunks."""

    entities: list[ExtractedEntity] = field(default_factory=list)
    relationships: list[ExtractedRelationship] = field(default_factory=list)


@dataclass
class GraphNode:
    """Represents an entity node in the knowledge graph."""

    id: str
    type: str
    name: str
    description: str = ""
    properties: dict[str, Any] = field(default_factory=dict)
    source_chunk_ids: list[str] = field(default_factory=list)
    embedding: list[float] | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "GraphNode":
        return cls(**data)


@dataclass
class GraphEdge:
    """Represents a relationship edge in the knowledge graph."""

    id: str
    type: str
    source_id: str
    target_id: str
    description: str = ""
    weight: float = 1.0
    properties: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "GraphEdge":
        return cls(**data)


@dataclass
class Community:
    """Represents a community of related entities."""

    id: str
    node_ids: list[str]
    title: str | None = None
    summary: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Community":
        return cls(**data)


@dataclass
class SearchResult:
    """A single retrieval result returned by local or global search."""

    content: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


def save_json(data: Any, path: Path) -> None:
    """Save data to JSON file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    logger.debug(f"Saved JSON to {path}")


def load_json(path: Path) -> Any:
    """Load data from JSON file."""
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)
