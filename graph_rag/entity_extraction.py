"""
Entity and Relationship Extraction Module

Uses LLM to extract entities and relationships from text chunks.
This is the core component of Graph RAG that transforms unstructured
text into structured knowledge graph elements.
"""

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage
from loguru import logger
from omegaconf import DictConfig
from tqdm import tqdm

from graph_rag.utils.graph_utils import (Chunk, ExtractedEntity,
                                         ExtractedRelationship,
                                         ExtractionResult, entity_key,
                                         message_text, parse_json_response)

ENTITY_EXTRACTION_PROMPT = """You are an entity and relationship extraction system. Given a text document, extract structured entities and relationships.
{entity_types}
{relationship_types}

Respond ONLY with valid JSON in this exact format:
{{
  "entities": [
    {{
      "name": "Entity Name",
      "type": "EntityType",
      "description": "Brief description of this entity based on the text"
    }}
  ],
  "relationships": [
    {{
      "sourceName": "Source Entity Name",
      "sourceType": "SourceEntityType",
      "targetName": "Target Entity Name",
      "targetType": "TargetEntityType",
      "type": "RELATIONSHIP_TYPE",
      "description": "Brief description of this relationship",
      "weight": 1.0
    }}
  ]
}}

Rules:
- Entity names should be normalized (proper case, no extra whitespace)
- Use consistent naming for the same entity across extractions
- Relationship weight should be 0.0 to 1.0 (1.0 = very strong relationship)
- Every entity in a relationship must also appear in the entities array
- Be thorough but precise - extract real entities, not generic concepts"""

GENERIC_ENTITY_INSTRUCTION = (
    "\nExtract all notable entities (people, organizations, concepts, "
    "locations, events, objects, etc.)."
)
GENERIC_RELATIONSHIP_INSTRUCTION = "\nExtract all meaningful relationships between entities."

USER_PROMPT = "Extract entities and relationships from the following text:\n\n---\n{text}\n---"


def _clamp_weight(value) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 1.0
    return max(0.0, min(1.0, float(value)))


def parse_extraction_response(response: str, chunk_id: str) -> ExtractionResult:
    """
    Parse the LLM response for one chunk.

    Returns an empty result when the response holds no valid JSON.
    """
    try:
        parsed = parse_json_response(response)
    except ValueError as e:
        logger.warning(f"Failed to parse extraction response for chunk {chunk_id}: {e}")
        logger.debug(f"Response was: {response[:200]}...")
        return ExtractionResult()

    if not isinstance(parsed, dict):
        logger.warning(f"Extraction response for chunk {chunk_id} is not a JSON object")
        return ExtractionResult()

    entities = []
    for ent_data in parsed.get("entities") or []:
        if not isinstance(ent_data, dict):
            continue
        name = str(ent_data.get("name") or "").strip()
        if not name:
            continue
        entities.append(
            ExtractedEntity(
                name=name,
                type=str(ent_data.get("type") or "Unknown").strip(),
                description=str(ent_data.get("description") or "").strip(),
                source_chunk_ids=[chunk_id] if chunk_id else [],
            )
        )

    relationships = []
    for rel_data in parsed.get("relationships") or []:
        if not isinstance(rel_data, dict):
            continue
        source = str(rel_data.get("sourceName") or "").strip()
        target = str(rel_data.get("targetName") or "").strip()
        if not source or not target:
            continue
        relationships.append(
            ExtractedRelationship(
                source_name=source,
                source_type=str(rel_data.get("sourceType") or "Unknown").strip(),
                target_name=target,
                target_type=str(rel_data.get("targetType") or "Unknown").strip(),
                type=str(rel_data.get("type") or "RELATES_TO").strip(),
                description=str(rel_data.get("description") or "").strip(),
                weight=_clamp_weight(rel_data.get("weight")),
                source_chunk_ids=[chunk_id] if chunk_id else [],
            )
        )

    return ExtractionResult(entities=entities, relationships=relationships)


def deduplicate(
    entities: list[ExtractedEntity],
    relationships: list[ExtractedRelationship],
) -> ExtractionResult:
    """
    Merge duplicate entities and relationships.

    Entities are keyed by lowercase name and type; the first occurrence is
    canonical, merges keep the longer description and collect source chunk
    ids. Relationships are keyed by (source key, lowercase type, target key);
    merges average the weights and keep the longer description. Relationship
    endpoints are rewritten to the canonical entity names.

    Args:
        entities: Raw entities, in extraction order
        relationships: Raw relationships, in extraction order

    Returns:
        ExtractionResult with merged copies (inputs are not mutated)
    """
    entity_map: dict[str, ExtractedEntity] = {}

    for entity in entities:
        key = entity_key(entity.name, entity.type)

        if key in entity_map:
            existing = entity_map[key]
            if len(entity.description) > len(existing.description):
                existing.description = entity.description
            for chunk_id in entity.source_chunk_ids:
                if chunk_id not in existing.source_chunk_ids:
                    existing.source_chunk_ids.append(chunk_id)
        else:
            entity_map[key] = ExtractedEntity(
                name=entity.name,
                type=entity.type,
                description=entity.description,
                properties=dict(entity.properties),
                source_chunk_ids=list(dict.fromkeys(entity.source_chunk_ids)),
            )

    rel_map: dict[str, ExtractedRelationship] = {}

    for rel in relationships:
        source_key = rel.source_key
        target_key = rel.target_key
        rel_key = f"{source_key}->{rel.type.lower()}->{target_key}"

        if rel_key in rel_map:
            existing = rel_map[rel_key]
            existing.weight = (existing.weight + rel.weight) / 2
            if len(rel.description) > len(existing.description):
                existing.description = rel.description
            for chunk_id in rel.source_chunk_ids:
                if chunk_id not in existing.source_chunk_ids:
                    existing.source_chunk_ids.append(chunk_id)
        else:
            source = entity_map.get(source_key)
            target = entity_map.get(target_key)
            rel_map[rel_key] = ExtractedRelationship(
                source_name=source.name if source else rel.source_name,
                source_type=rel.source_type,
                target_name=target.name if target else rel.target_name,
                target_type=rel.target_type,
                type=rel.type,
                description=rel.description,
                weight=rel.weight,
                source_chunk_ids=list(dict.fromkeys(rel.source_chunk_ids)),
            )

    return ExtractionResult(
        entities=list(entity_map.values()),
        relationships=list(rel_map.values()),
    )


class EntityExtractor:
    """Extracts entities and relationships from text using LLM."""

    def __init__(
        self,
        llm: BaseChatModel,
        entity_types: list[dict] | None = None,
        relationship_types: list[dict] | None = None,
    ):
        """
        Initialize the entity extractor.

        Args:
            llm: Chat model used for extraction
            entity_types: Entity type vocabulary, items with "name" and "description"
            relationship_types: Relationship type vocabulary, same shape
        """
        self.llm = llm
        self.entity_types = entity_types or []
        self.relationship_types = relationship_types or []

    def build_system_prompt(self) -> str:
        """Build the system prompt from the configured type vocabularies."""
        if self.entity_types:
            lines = "\n".join(
                f"- {t['name']}: {t.get('description', '')}" for t in self.entity_types
            )
            entity_section = f"\nEntity types to extract:\n{lines}"
        else:
            entity_section = GENERIC_ENTITY_INSTRUCTION

        if self.relationship_types:
            lines = "\n".join(
                f"- {t['name']}: {t.get('description', '')}"
                for t in self.relationship_types
            )
            relationship_section = f"\nRelationship types to extract:\n{lines}"
        else:
            relationship_section = GENERIC_RELATIONSHIP_INSTRUCTION

        return ENTITY_EXTRACTION_PROMPT.format(
            entity_types=entity_section,
            relationship_types=relationship_section,
        )

    async def extract_from_chunk(self, chunk: Chunk) -> ExtractionResult:
        """
        Extract entities and relationships from a single text chunk.

        Raises whatever the LLM call raises; parse failures yield an empty result.
        """
        response = await self.llm.ainvoke(
            [
                SystemMessage(content=self.build_system_prompt()),
                HumanMessage(content=USER_PROMPT.format(text=chunk.content)),
            ]
        )
        result = parse_extraction_response(message_text(response.content), chunk.id)

        logger.debug(
            f"Extracted {len(result.entities)} entities, "
            f"{len(result.relationships)} relationships from chunk {chunk.id}"
        )
        return result

    async def extract_from_chunks(
        self,
        chunks: list[Chunk],
        show_progress: bool = False,
    ) -> ExtractionResult:
        """
        Extract from multiple chunks and deduplicate the combined output.

        Chunks are processed one at a time to stay within provider rate
        limits. A failing chunk is logged and skipped.

        Args:
            chunks: Chunks to process
            show_progress: Whether to show progress bar

        Returns:
            Deduplicated ExtractionResult
        """
        all_entities: list[ExtractedEntity] = []
        all_relationships: list[ExtractedRelationship] = []

        iterator = tqdm(chunks, desc="Extracting entities") if show_progress else chunks

        for i, chunk in enumerate(iterator):
            logger.info(
                f"Extracting from chunk {i + 1}/{len(chunks)} ({len(chunk.content)} chars)"
            )
            try:
                result = await self.extract_from_chunk(chunk)
            except Exception as e:
                logger.error(f"LLM extraction failed for chunk {chunk.id}: {e}")
                continue
            all_entities.extend(result.entities)
            all_relationships.extend(result.relationships)

        logger.info(
            f"Raw extraction: {len(all_entities)} entities, "
            f"{len(all_relationships)} relationships from {len(chunks)} chunks"
        )

        merged = deduplicate(all_entities, all_relationships)
        logger.info(
            f"Merged to {len(merged.entities)} unique entities, "
            f"{len(merged.relationships)} unique relationships"
        )
        return merged


def create_extractor(cfg: DictConfig, llm: BaseChatModel) -> EntityExtractor:
    """Create an EntityExtractor from config."""
    extraction = cfg.GRAPH.EXTRACTION
    return EntityExtractor(
        llm=llm,
        entity_types=[dict(t) for t in extraction.get("entity_types") or []],
        relationship_types=[dict(t) for t in extraction.get("relationship_types") or []],
    )
