"""Exception types raised by the Graph RAG pipeline."""


class GraphRagError(Exception):
    """Base class for all pipeline errors."""


class GraphStoreConnectionError(GraphRagError):
    """The graph database could not be reached. Fatal for the current build."""


class KnowledgeStoreNotFoundError(GraphRagError):
    """No knowledge store is registered under the requested name."""


class DocumentLoadError(GraphRagError):
    """Source documents could not be read."""
