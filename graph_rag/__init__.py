"""Graph RAG - Knowledge Graph based Retrieval Augmented Generation"""

__version__ = "0.1.0"

__all__ = [
    # Pipeline
    "entity_extraction",
    "graph_builder",
    "community_detection",
    "community_summarizer",
    "extraction_cache",
    "build_graph_index",
    # Storage
    "graph_store",
    "neo4j_graph_store",
    # Retrieval
    "graph_retriever",
    # Lifecycle
    "knowledge_metadata",
    "indexing_coordinator",
    # Support
    "config",
    "errors",
    "utils",
]
