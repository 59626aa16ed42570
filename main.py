"""
Graph RAG - Knowledge Graph based Retrieval Augmented Generation

Usage:
    python main.py build [NAME ...]          # Build the graph index (all stores or the named ones)
    python main.py status                    # Show indexing status of every store
    python main.py search NAME QUERY [MODE]  # Query a store (MODE: local | global)
"""

import asyncio
import subprocess
import sys
from pathlib import Path

from loguru import logger

from graph_rag.build_graph_index import build_all, setup_logging
from graph_rag.config import load_config
from graph_rag.indexing_coordinator import KnowledgeStoreManager

# Configure logging
logger.remove()
logger.add(sys.stderr, format="{time:HH:mm:ss} | {level: <8} | {message}", level="INFO")


def run_build(names: list[str]) -> int:
    """Run the graph indexing pipeline.

    Without names the hydra entry point builds every store, so command
    line overrides (e.g. LLM.model=...) work; with names the selected
    stores are built in-process.

    Returns:
        Exit code (0 = success)
    """
    logger.info("Building Graph RAG index...")
    if not names:
        result = subprocess.run(
            [sys.executable, "-m", "graph_rag.build_graph_index"],
            cwd=Path(__file__).parent,
        )
        if result.returncode != 0:
            logger.error(f"Build failed with exit code {result.returncode}")
        return result.returncode

    cfg = load_config()
    setup_logging(cfg)
    try:
        asyncio.run(build_all(cfg, names))
    except Exception as e:
        logger.error(f"Build failed: {e}")
        return 1
    return 0


async def show_status() -> int:
    cfg = load_config()
    manager = KnowledgeStoreManager(cfg)
    try:
        await manager.load_all(restore=False)
        statuses = await manager.get_all_statuses()
    finally:
        await manager.close()

    for name, metadata in statuses.items():
        line = (
            f"{name}: {metadata.status} | documents={metadata.document_count} "
            f"chunks={metadata.chunk_count} entities={metadata.entity_count} "
            f"edges={metadata.edge_count} communities={metadata.community_count}"
        )
        if metadata.last_indexed_at:
            line += f" | last indexed {metadata.last_indexed_at}"
        if metadata.error_message:
            line += f" | error: {metadata.error_message}"
        print(line)
    return 0


async def run_search(name: str, query: str, mode: str | None) -> int:
    cfg = load_config()
    setup_logging(cfg)
    manager = KnowledgeStoreManager(cfg)
    try:
        await manager.load_all()
        store = manager.get(name) or await manager.initialize(name)
        results = await store.search(query, mode=mode)
    finally:
        await manager.close()

    if not results:
        print("No results.")
    for i, result in enumerate(results, 1):
        print(f"--- [{i}] score={result.score:.3f} ({result.metadata.get('type')})")
        print(result.content)
    return 0


def main() -> int:
    """Main entry point.

    Returns:
        Exit code (0 = success, 1 = error)
    """
    if len(sys.argv) < 2:
        print(__doc__)
        return 0

    command = sys.argv[1].lower()

    if command == "build":
        return run_build(sys.argv[2:])
    elif command == "status":
        return asyncio.run(show_status())
    elif command == "search":
        if len(sys.argv) < 4:
            print(__doc__)
            return 1
        mode = sys.argv[4].lower() if len(sys.argv) > 4 else None
        if mode not in (None, "local", "global"):
            logger.error(f"Unknown search mode: {mode}")
            return 1
        return asyncio.run(run_search(sys.argv[2], sys.argv[3], mode))
    else:
        logger.error(f"Unknown command: {command}")
        print(__doc__)
        return 1


if __name__ == "__main__":
    sys.exit(main())
