"""Tests for LLM community summaries."""

import asyncio
import json

from conftest import FakeChatModel, make_edge, make_node

from graph_rag.community_summarizer import CommunitySummarizer
from graph_rag.graph_store import MemoryGraphStore
from graph_rag.utils.graph_utils import Community


def people_store() -> MemoryGraphStore:
    store = MemoryGraphStore()
    asyncio.run(
        store.add_nodes(
            [
                make_node("alice", "Alice", description="Engineer"),
                make_node("bob", "Bob", description="Designer"),
                make_node("carol", "Carol", description="Manager"),
            ]
        )
    )
    asyncio.run(
        store.add_edges(
            [
                make_edge("e1", "alice", "bob", description="colleagues"),
                make_edge("e2", "bob", "carol", edge_type="REPORTS_TO", description="reports"),
            ]
        )
    )
    return store


def test_summary_from_json_response():
    llm = FakeChatModel(
        responses=['```json\n{"title": "Engineering team", "summary": "Alice and Bob work together."}\n```']
    )
    community = Community(id="community-0", node_ids=["alice", "bob"])

    result = asyncio.run(CommunitySummarizer(llm).summarize([community], people_store()))

    assert result[0].title == "Engineering team"
    assert result[0].summary == "Alice and Bob work together."
    assert result[0].node_ids == ["alice", "bob"]
    # Input is left untouched
    assert community.title is None


def test_context_contains_only_internal_edges():
    llm = FakeChatModel(responses=[json.dumps({"title": "t", "summary": "s"})])
    community = Community(id="community-0", node_ids=["alice", "bob"])

    asyncio.run(CommunitySummarizer(llm).summarize([community], people_store()))

    context = llm.calls[0][1].content
    assert "- Alice (Person): Engineer" in context
    assert "- Alice -[KNOWS]-> Bob: colleagues" in context
    assert "Carol" not in context
    assert "REPORTS_TO" not in context


def test_unparseable_response_falls_back_to_raw_text():
    raw = "This community is about " + "x" * 600
    llm = FakeChatModel(responses=[raw])
    community = Community(id="community-3", node_ids=["alice", "bob"])

    result = asyncio.run(CommunitySummarizer(llm).summarize([community], people_store()))

    assert result[0].title == "Community community-3"
    assert result[0].summary == raw[:500]


def test_llm_failure_falls_back_to_entity_count():
    llm = FakeChatModel(responses=[RuntimeError("rate limited")])
    community = Community(id="community-1", node_ids=["alice", "bob", "carol"])

    result = asyncio.run(CommunitySummarizer(llm).summarize([community], people_store()))

    assert result[0].title == "Community community-1"
    assert result[0].summary == "Community with 3 entities."


def test_failures_are_isolated_and_order_is_preserved():
    def handler(messages):
        context = messages[-1].content
        if "Carol" in context:
            raise RuntimeError("boom")
        first_entity = context.split("\n")[3]
        return json.dumps({"title": first_entity, "summary": "ok"})

    llm = FakeChatModel(handler=handler)
    communities = [
        Community(id="community-0", node_ids=["alice"]),
        Community(id="community-1", node_ids=["carol"]),
        Community(id="community-2", node_ids=["bob"]),
    ]

    result = asyncio.run(
        CommunitySummarizer(llm, max_concurrency=3).summarize(communities, people_store())
    )

    assert [c.id for c in result] == ["community-0", "community-1", "community-2"]
    assert result[0].title == "- Alice (Person): Engineer"
    assert result[1].summary == "Community with 1 entities."
    assert result[2].title == "- Bob (Person): Designer"
