"""Tests for document loading, chunking, source purging and store config merging."""

import asyncio

import pytest
from conftest import make_cfg

from graph_rag.build_graph_index import (DocumentLoader, chunk_documents,
                                         document_id, purge_sources)
from graph_rag.config import store_config
from graph_rag.errors import DocumentLoadError
from graph_rag.utils.graph_utils import (Document, ExtractedEntity,
                                         ExtractedRelationship)


class TestDocumentLoader:

    def test_loads_matching_files_in_order(self, tmp_path):
        (tmp_path / "b.md").write_text("Second", encoding="utf-8")
        (tmp_path / "a.md").write_text("First", encoding="utf-8")
        (tmp_path / "notes.txt").write_text("Ignored", encoding="utf-8")
        (tmp_path / "empty.md").write_text("   \n", encoding="utf-8")
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "c.md").write_text("Nested", encoding="utf-8")

        flat = asyncio.run(DocumentLoader(tmp_path, "*.md").load())
        recursive = asyncio.run(DocumentLoader(tmp_path, "**/*.md").load())

        assert [d.source for d in flat] == ["a.md", "b.md"]
        assert [d.content for d in flat] == ["First", "Second"]
        assert "sub/c.md" in [d.source for d in recursive]

    def test_single_file(self, tmp_path):
        path = tmp_path / "only.txt"
        path.write_text("Just this", encoding="utf-8")

        documents = asyncio.run(DocumentLoader(path).load())

        assert [(d.source, d.content) for d in documents] == [("only.txt", "Just this")]

    def test_missing_path(self, tmp_path):
        with pytest.raises(DocumentLoadError):
            asyncio.run(DocumentLoader(tmp_path / "missing").load())


def test_chunk_ids_are_prefixed_by_document():
    long_text = "\n\n".join(f"Paragraph {i} " + "word " * 30 for i in range(6))
    documents = [Document("a.md", long_text), Document("b.md", "Short.")]

    chunks = chunk_documents(documents, chunk_size=200, chunk_overlap=0)

    a_chunks = [c for c in chunks if c.source == "a.md"]
    assert len(a_chunks) > 1
    assert [c.id for c in a_chunks] == [
        f"{document_id('a.md')}_chunk_{i}" for i in range(len(a_chunks))
    ]
    assert chunks[-1].id == f"{document_id('b.md')}_chunk_0"
    assert len(document_id("a.md")) == 12


def test_purge_sources():
    a = f"{document_id('a.md')}_chunk_0"
    b = f"{document_id('b.md')}_chunk_0"
    entities = [
        ExtractedEntity("Alice", "Person", source_chunk_ids=[a]),
        ExtractedEntity("Bob", "Person", source_chunk_ids=[b]),
        ExtractedEntity("Acme", "Organization", source_chunk_ids=[a, b]),
        ExtractedEntity("Manual", "Note"),
    ]
    relationships = [
        ExtractedRelationship("Alice", "Person", "Acme", "Organization", "WORKS_FOR", source_chunk_ids=[a]),
        ExtractedRelationship("Bob", "Person", "Acme", "Organization", "WORKS_FOR", source_chunk_ids=[b]),
    ]

    kept_entities, kept_relationships = purge_sources(entities, relationships, {"b.md"})

    assert [e.name for e in kept_entities] == ["Alice", "Acme", "Manual"]
    assert kept_entities[1].source_chunk_ids == [a]
    assert [r.source_name for r in kept_relationships] == ["Alice"]
    # Originals are untouched
    assert entities[2].source_chunk_ids == [a, b]


def test_store_config_merges_overrides():
    cfg = make_cfg()
    entry = {
        "name": "kb2",
        "source": {"path": "data/kb2"},
        "DOCUMENT": {"chunk_size": 300},
        "SEARCH": {"GLOBAL": {"top_communities": 2}},
    }

    config = store_config(cfg, entry)

    assert config.name == "kb2"
    assert config.source.path == "data/kb2"
    assert config.source.pattern == "*"
    assert config.DOCUMENT.chunk_size == 300
    assert config.DOCUMENT.chunk_overlap == cfg.DOCUMENT.chunk_overlap
    assert config.SEARCH.GLOBAL.top_communities == 2
    assert config.SEARCH.default_k == cfg.SEARCH.default_k
    assert "KNOWLEDGE" not in config
