"""Tests for LLM entity extraction, response parsing and deduplication."""

import asyncio
import json

import pytest
from conftest import FakeChatModel

from graph_rag.entity_extraction import (EntityExtractor, deduplicate,
                                         parse_extraction_response)
from graph_rag.utils.graph_utils import (Chunk, ExtractedEntity,
                                         ExtractedRelationship)


def extraction_json(entities=None, relationships=None) -> str:
    return json.dumps({"entities": entities or [], "relationships": relationships or []})


def rel(source, target, rel_type="KNOWS", weight=1.0, description="", chunks=None,
        source_type="Person", target_type="Person"):
    return ExtractedRelationship(
        source_name=source,
        source_type=source_type,
        target_name=target,
        target_type=target_type,
        type=rel_type,
        description=description,
        weight=weight,
        source_chunk_ids=chunks or [],
    )


# ============================================================================
# RESPONSE PARSING
# ============================================================================

class TestParseExtractionResponse:

    def test_code_fenced_json(self):
        payload = extraction_json(
            entities=[{"name": "Alice", "type": "Person", "description": "An engineer"}]
        )
        result = parse_extraction_response(f"Here you go:\n```json\n{payload}\n```", "c1")

        assert len(result.entities) == 1
        entity = result.entities[0]
        assert entity.name == "Alice"
        assert entity.type == "Person"
        assert entity.source_chunk_ids == ["c1"]

    def test_think_tags_are_stripped(self):
        payload = extraction_json(entities=[{"name": "Acme", "type": "Organization"}])
        result = parse_extraction_response(f"<think>{{not json}}</think>{payload}", "c1")

        assert [e.name for e in result.entities] == ["Acme"]

    def test_invalid_json_yields_empty_result(self):
        result = parse_extraction_response("I could not find any entities.", "c1")

        assert result.entities == []
        assert result.relationships == []

    def test_defaults_and_dropped_items(self):
        payload = extraction_json(
            entities=[
                {"name": "Alice"},
                {"name": "   ", "type": "Person"},
                {"type": "Person", "description": "nameless"},
            ],
            relationships=[
                {"sourceName": "Alice", "targetName": "Bob"},
                {"sourceName": "Alice", "targetName": ""},
            ],
        )
        result = parse_extraction_response(payload, "c1")

        assert len(result.entities) == 1
        assert result.entities[0].type == "Unknown"
        assert len(result.relationships) == 1
        relationship = result.relationships[0]
        assert relationship.type == "RELATES_TO"
        assert relationship.source_type == "Unknown"
        assert relationship.weight == 1.0

    @pytest.mark.parametrize(
        "weight, expected",
        [(0.4, 0.4), (3, 1.0), (-2, 0.0), ("high", 1.0), (None, 1.0)],
    )
    def test_weight_is_clamped(self, weight, expected):
        payload = extraction_json(
            relationships=[
                {"sourceName": "A", "targetName": "B", "type": "KNOWS", "weight": weight}
            ]
        )
        result = parse_extraction_response(payload, "c1")

        assert result.relationships[0].weight == pytest.approx(expected)


# ============================================================================
# DEDUPLICATION
# ============================================================================

class TestDeduplicate:

    def test_entities_merge_case_insensitively(self):
        entities = [
            ExtractedEntity("Alice", "Person", "Short", source_chunk_ids=["c1"]),
            ExtractedEntity("alice", "person", "A much longer description", source_chunk_ids=["c2", "c1"]),
            ExtractedEntity("Alice", "Company", "Different type", source_chunk_ids=["c3"]),
        ]

        result = deduplicate(entities, [])

        assert len(result.entities) == 2
        alice = result.entities[0]
        assert alice.name == "Alice"
        assert alice.type == "Person"
        assert alice.description == "A much longer description"
        assert alice.source_chunk_ids == ["c1", "c2"]

    def test_relationship_endpoints_use_canonical_names(self):
        entities = [ExtractedEntity("Alice", "Person"), ExtractedEntity("Bob", "Person")]
        relationships = [rel("alice", "BOB")]

        result = deduplicate(entities, relationships)

        assert result.relationships[0].source_name == "Alice"
        assert result.relationships[0].target_name == "Bob"

    def test_relationship_merge_averages_weight(self):
        relationships = [
            rel("Alice", "Bob", weight=0.4, description="met", chunks=["c1"]),
            rel("alice", "bob", rel_type="knows", weight=0.8, description="met at work", chunks=["c2"]),
        ]

        result = deduplicate([], relationships)

        assert len(result.relationships) == 1
        merged = result.relationships[0]
        assert merged.weight == pytest.approx(0.6)
        assert merged.description == "met at work"
        assert merged.source_chunk_ids == ["c1", "c2"]

    def test_is_idempotent(self):
        entities = [
            ExtractedEntity("Alice", "Person", "A", source_chunk_ids=["c1"]),
            ExtractedEntity("ALICE", "Person", "Longer", source_chunk_ids=["c2"]),
            ExtractedEntity("Bob", "Person", "B", source_chunk_ids=["c1"]),
        ]
        relationships = [
            rel("alice", "bob", weight=0.2, chunks=["c1"]),
            rel("Alice", "Bob", weight=0.6, chunks=["c2"]),
        ]

        once = deduplicate(entities, relationships)
        twice = deduplicate(once.entities, once.relationships)

        assert [e.to_dict() for e in twice.entities] == [e.to_dict() for e in once.entities]
        assert [r.to_dict() for r in twice.relationships] == [r.to_dict() for r in once.relationships]

    def test_inputs_are_not_mutated(self):
        first = ExtractedEntity("Alice", "Person", "A", source_chunk_ids=["c1"])
        second = ExtractedEntity("Alice", "Person", "Longer", source_chunk_ids=["c2"])

        deduplicate([first, second], [])

        assert first.description == "A"
        assert first.source_chunk_ids == ["c1"]


# ============================================================================
# EXTRACTOR
# ============================================================================

class TestEntityExtractor:

    def test_system_prompt_lists_configured_types(self):
        extractor = EntityExtractor(
            llm=FakeChatModel(),
            entity_types=[{"name": "Person", "description": "A named individual"}],
            relationship_types=[{"name": "WORKS_FOR", "description": "Employment"}],
        )

        prompt = extractor.build_system_prompt()

        assert "- Person: A named individual" in prompt
        assert "- WORKS_FOR: Employment" in prompt
        assert "Extract all notable entities" not in prompt

    def test_system_prompt_generic_fallback(self):
        prompt = EntityExtractor(llm=FakeChatModel()).build_system_prompt()

        assert "Extract all notable entities" in prompt
        assert "Extract all meaningful relationships between entities." in prompt

    def test_failed_chunk_is_skipped(self):
        def handler(messages):
            if "boom" in messages[-1].content:
                raise RuntimeError("provider error")
            return extraction_json(entities=[{"name": "Acme", "type": "Organization"}])

        llm = FakeChatModel(handler=handler)
        extractor = EntityExtractor(llm=llm)
        chunks = [Chunk(id="c1", content="boom"), Chunk(id="c2", content="Acme is a company")]

        result = asyncio.run(extractor.extract_from_chunks(chunks))

        assert len(llm.calls) == 2
        assert [e.name for e in result.entities] == ["Acme"]
        assert result.entities[0].source_chunk_ids == ["c2"]

    def test_chunks_are_merged_across_calls(self):
        llm = FakeChatModel(
            responses=[
                extraction_json(entities=[{"name": "Acme", "type": "Organization", "description": "Co"}]),
                extraction_json(entities=[{"name": "acme", "type": "organization", "description": "A company"}]),
            ]
        )
        extractor = EntityExtractor(llm=llm)
        chunks = [Chunk(id="c1", content="one"), Chunk(id="c2", content="two")]

        result = asyncio.run(extractor.extract_from_chunks(chunks))

        assert len(result.entities) == 1
        assert result.entities[0].name == "Acme"
        assert result.entities[0].description == "A company"
        assert result.entities[0].source_chunk_ids == ["c1", "c2"]

    def test_content_blocks_are_flattened(self):
        payload = extraction_json(entities=[{"name": "Bob", "type": "Person"}])
        llm = FakeChatModel(responses=[[{"type": "text", "text": payload}]])
        extractor = EntityExtractor(llm=llm)

        result = asyncio.run(extractor.extract_from_chunk(Chunk(id="c1", content="Bob")))

        assert [e.name for e in result.entities] == ["Bob"]

    def test_user_prompt_wraps_chunk_text(self):
        llm = FakeChatModel(responses=[extraction_json()])
        extractor = EntityExtractor(llm=llm)

        asyncio.run(extractor.extract_from_chunk(Chunk(id="c1", content="Some text")))

        user_message = llm.calls[0][1].content
        assert user_message == (
            "Extract entities and relationships from the following text:\n\n---\nSome text\n---"
        )
