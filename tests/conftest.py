"""Shared fixtures: fake chat model, fake embeddings and config helpers."""

import json
from pathlib import Path
from typing import Any, Callable

import pytest
from langchain_core.embeddings import Embeddings
from langchain_core.messages import AIMessage
from omegaconf import DictConfig, OmegaConf

from graph_rag.config import CONFIG_PATH
from graph_rag.utils.graph_utils import GraphEdge, GraphNode


class FakeChatModel:
    """
    Chat model double.

    Answers with scripted responses (consumed in order) or with a handler
    called on the message list. A response that is an exception is raised.
    """

    def __init__(
        self,
        responses: list[Any] | None = None,
        handler: Callable[[list], Any] | None = None,
    ):
        self.responses = list(responses or [])
        self.handler = handler
        self.calls: list[list] = []

    async def ainvoke(self, messages, **kwargs) -> AIMessage:
        self.calls.append(messages)
        if self.handler is not None:
            result = self.handler(messages)
        elif self.responses:
            result = self.responses.pop(0)
        else:
            result = ""
        if isinstance(result, Exception):
            raise result
        return AIMessage(content=result)

    def calls_matching(self, system_fragment: str) -> list[list]:
        """Calls whose system message contains the fragment."""
        return [c for c in self.calls if system_fragment in c[0].content]


class FakeEmbeddings(Embeddings):
    """
    Embeddings from a lookup table.

    A text maps to the vector of an exact key, else of the first key it
    starts with, else to the default vector.
    """

    def __init__(
        self,
        table: dict[str, list[float]] | None = None,
        default: list[float] | None = None,
        fail: bool = False,
    ):
        self.table = table or {}
        self.default = default or [0.1, 0.1, 0.1]
        self.fail = fail
        self.document_calls: list[list[str]] = []
        self.query_calls: list[str] = []

    def _lookup(self, text: str) -> list[float]:
        if text in self.table:
            return list(self.table[text])
        for key, vector in self.table.items():
            if text.startswith(key):
                return list(vector)
        return list(self.default)

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        self.document_calls.append(list(texts))
        if self.fail:
            raise RuntimeError("embedding service unavailable")
        return [self._lookup(t) for t in texts]

    def embed_query(self, text: str) -> list[float]:
        self.query_calls.append(text)
        if self.fail:
            raise RuntimeError("embedding service unavailable")
        return self._lookup(text)


# Facts known to the scripted "LLM" used in pipeline tests
PEOPLE = {"Alice": "Engineer", "Bob": "Designer", "Carol": "Manager"}


def graph_llm_handler(messages) -> str:
    """Route a request by its system prompt and answer deterministically."""
    system = messages[0].content
    user = messages[-1].content

    if "extraction system" in system:
        entities, relationships = [], []
        for name, role in PEOPLE.items():
            if name in user:
                entities.append(
                    {"name": name, "type": "Person", "description": f"{role} at Acme"}
                )
        if "Acme" in user:
            entities.append(
                {"name": "Acme", "type": "Organization", "description": "A company"}
            )
            for person in [e for e in entities if e["type"] == "Person"]:
                relationships.append(
                    {
                        "sourceName": person["name"],
                        "sourceType": "Person",
                        "targetName": "Acme",
                        "targetType": "Organization",
                        "type": "WORKS_FOR",
                        "description": f"{person['name']} works at Acme",
                        "weight": 0.9,
                    }
                )
        return json.dumps({"entities": entities, "relationships": relationships})

    if "knowledge graph analyst" in system:
        return json.dumps({"title": "Acme staff", "summary": "People who work at Acme."})

    if "helpful analyst" in system:
        return "Acme employs engineers and designers."

    if "synthesis expert" in system:
        return "Acme is a company with several employees."

    return ""


EXTRACTION = "extraction system"


def make_cfg(overrides: dict | None = None) -> DictConfig:
    """Load the default configuration with overrides merged on top."""
    cfg = OmegaConf.load(CONFIG_PATH)
    return OmegaConf.merge(cfg, overrides or {})


def make_node(node_id: str, name: str, node_type: str = "Person", **kwargs) -> GraphNode:
    return GraphNode(id=node_id, type=node_type, name=name, **kwargs)


def make_edge(edge_id: str, source: str, target: str, edge_type: str = "KNOWS", **kwargs) -> GraphEdge:
    return GraphEdge(id=edge_id, type=edge_type, source_id=source, target_id=target, **kwargs)


@pytest.fixture
def graph_llm() -> FakeChatModel:
    return FakeChatModel(handler=graph_llm_handler)


@pytest.fixture
def docs_dir(tmp_path: Path) -> Path:
    """Two small markdown documents about Acme employees."""
    docs = tmp_path / "docs"
    docs.mkdir()
    (docs / "a.md").write_text("Alice works at Acme.", encoding="utf-8")
    (docs / "b.md").write_text("Bob works at Acme.", encoding="utf-8")
    return docs
