"""
Configuration Module

Loads the YAML configuration with OmegaConf and builds the LLM and
embedding providers it describes.
"""

from pathlib import Path

from dotenv import load_dotenv
from langchain_core.embeddings import Embeddings
from langchain_core.language_models.chat_models import BaseChatModel
from loguru import logger
from omegaconf import DictConfig, OmegaConf

CONFIG_PATH = Path(__file__).parent.parent / "conf" / "config.yaml"

# Sections a knowledge store entry may override
STORE_SECTIONS = ["LLM", "EMBEDDING", "DOCUMENT", "GRAPH", "SEARCH"]


def load_config(path: Path | None = None) -> DictConfig:
    """Load configuration from YAML file (and provider secrets from .env)."""
    load_dotenv()
    return OmegaConf.load(path or CONFIG_PATH)


def store_config(cfg: DictConfig, entry: DictConfig | dict) -> DictConfig:
    """
    Build the effective configuration of one knowledge store.

    The entry's own sections (same names as the global ones) are merged
    over the global defaults.

    Args:
        cfg: Global configuration
        entry: One element of KNOWLEDGE.stores

    Returns:
        Config with `name`, `source` and the merged store sections
    """
    entry = OmegaConf.create(entry) if isinstance(entry, dict) else entry
    overrides = {
        key: value
        for key, value in OmegaConf.to_container(entry).items()
        if key not in ("name", "source")
    }
    base = OmegaConf.masked_copy(cfg, STORE_SECTIONS)
    source = OmegaConf.merge({"path": ".", "pattern": "*"}, entry.get("source") or {})
    return OmegaConf.merge(base, overrides, {"name": entry.name, "source": source})


def create_llm(cfg: DictConfig) -> BaseChatModel:
    """Create the chat model described by the LLM section."""
    provider = cfg.LLM.get("provider", "ollama")

    if provider == "anthropic":
        from langchain_anthropic import ChatAnthropic

        llm = ChatAnthropic(
            model=cfg.LLM.model,
            temperature=cfg.LLM.temperature,
            max_tokens=cfg.LLM.max_tokens,
        )
    elif provider == "ollama":
        from langchain_ollama import ChatOllama

        llm = ChatOllama(
            model=cfg.LLM.model,
            temperature=cfg.LLM.temperature,
            num_predict=cfg.LLM.max_tokens,
        )
    else:
        raise ValueError(f"Unknown LLM provider: {provider}")

    logger.info(f"Initialized {provider} chat model: {cfg.LLM.model}")
    return llm


def create_embeddings(cfg: DictConfig) -> Embeddings:
    """Create the embedding model described by the EMBEDDING section."""
    from langchain_ollama import OllamaEmbeddings

    return OllamaEmbeddings(model=cfg.EMBEDDING.model)
