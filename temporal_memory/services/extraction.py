"""
Extraction capability: task dispatch, response validation and the Bedrock-backed implementation.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple

from pydantic import ValidationError

from ..models.tasks import (TASK_SCHEMAS, DedupeNodesRequest, EvaluateSearchRequest, ExtractEntitiesRequest,
                            ExtractionTask, ExtractTemporalRequest, RefineCommunitiesRequest, ResolveFactsRequest,
                            SummarizeNodeRequest, TaskRequest)
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError, build_messages
from ..utils.json_utils import parse_json_response
from ..utils.logging_config import get_logger

logger = get_logger(__name__)


class ExtractionError(Exception):
    """Custom exception for extraction capability errors."""
    pass


class MalformedResponseError(ExtractionError):
    """The capability answered with something other than the task's schema."""
    pass


class ExtractionCapability(ABC):
    """An external service that performs extraction tasks on structured payloads."""

    @abstractmethod
    async def process(self, task: ExtractionTask, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Perform one task.

        Args:
            task: Task tag
            payload: JSON-compatible request matching the task's request schema

        Returns:
            JSON-compatible response matching the task's response schema
        """
        ...


class ExtractionClient:
    """Typed front end to an ExtractionCapability.

    Requests are serialized from their pydantic model, responses are validated
    into the task's response model as soon as they come back.
    """

    def __init__(self, capability: ExtractionCapability):
        self.capability = capability

    async def run(self, request: TaskRequest) -> Any:
        """
        Run a task request through the capability.

        Args:
            request: One of the task request models

        Returns:
            Instance of the request's response model

        Raises:
            MalformedResponseError: If the response does not match the schema
            ExtractionError: If the capability call fails
        """
        task = request.task
        payload = request.model_dump(mode='json')
        logger.debug(f'Running {task.value}')

        try:
            raw = await self.capability.process(task, payload)
        except ExtractionError:
            raise
        except Exception as e:
            logger.error(f'Extraction capability failed on {task.value}: {e}')
            raise ExtractionError(f'{task.value} failed: {e}')

        try:
            return request.response_model.model_validate(raw)
        except ValidationError as e:
            logger.error(f'Malformed {task.value} response: {e}')
            raise MalformedResponseError(f'{task.value} returned a malformed response: {e}')


def _format_context(context) -> str:
    return '\n'.join(context) if context else '(none)'


def _prompt_extract_entities(request: ExtractEntitiesRequest) -> Tuple[str, str]:
    system_prompt = """
You are an expert entity extraction system. Extract entities from the conversation.

Extract entities that are:
- People (names, roles, relationships)
- Locations (places, addresses, venues)
- Organizations (companies, institutions, groups)
- Concepts (ideas, topics, subjects)
- Events (meetings, activities, occasions)
- Objects (items, products, orders, things)

Use the prior context only to resolve references; extract entities mentioned in the current messages.

Return a JSON object with this exact format:
```json
{
  "entities": [
    {
      "name": "entity name",
      "type": "person|location|organization|concept|event|object",
      "summary": "one sentence describing the entity from the conversation"
    }
  ]
}
```

Only extract entities that are explicitly mentioned. Do not infer or assume entities.
Return {"entities": []} if no entities found."""

    user_message = f"""Prior context:
{_format_context(request.context)}

Current messages:
{request.text}"""
    return system_prompt, user_message


def _prompt_dedupe_nodes(request: DedupeNodesRequest) -> Tuple[str, str]:
    system_prompt = """You are an entity deduplication expert. For each new entity, decide whether it refers to the same real-world thing as one of its similar existing entities.

Consider:
- Semantic similarity of names (aliases, abbreviations, spelling variants)
- Entity types compatibility
- Avoid over-merging distinct entities

Respond with JSON, one resolution per new entity:
```json
{
  "resolutions": [
    {"index": 0, "duplicate_of": "existing entity id or null"}
  ]
}
```
"""  # noqa: E501

    blocks = []
    for candidate in request.candidates:
        similar = '\n'.join(f'  - ID: {entity.id} | Name: {entity.name} | Type: {entity.type} | Summary: {entity.summary}'
                            for entity in candidate.similar) or '  (none)'
        blocks.append(f'[{candidate.index}] {candidate.name} ({candidate.type}): {candidate.summary}\n'
                      f'Similar existing entities:\n{similar}')

    user_message = f"""Context:
{_format_context(request.context)}

New entities:
{chr(10).join(blocks)}"""
    return system_prompt, user_message


def _prompt_extract_temporal(request: ExtractTemporalRequest) -> Tuple[str, str]:
    entities = '\n'.join(f'- ID: {entity.id} | Name: {entity.name} | Type: {entity.type}' for entity in request.entities)
    system_prompt = f"""
You are an expert relationship extraction system. Extract facts that connect the given entities.

Entities (use these IDs only):
{entities}

For every fact give the relationship type in UPPER_SNAKE_CASE, a short name, and a natural language description.
Resolve relative dates against the reference time {request.reference_time} and give ISO-8601 timestamps.
Use valid_at for when the fact became true and invalid_at for when it stopped being true; use null when unknown.

Return a JSON object with this exact format:
```json
{{
  "relationships": [
    {{
      "source_id": "entity id",
      "target_id": "entity id",
      "type": "RELATIONSHIP_TYPE",
      "name": "short name",
      "description": "natural language statement of the fact",
      "valid_at": "ISO-8601 timestamp or null",
      "invalid_at": "ISO-8601 timestamp or null"
    }}
  ]
}}
```

Only extract relationships that are explicitly stated or strongly implied.
Return {{"relationships": []}} if no relationships found."""

    user_message = f"""Prior context:
{_format_context(request.context)}

Current messages:
{request.text}"""
    return system_prompt, user_message


def _prompt_resolve_facts(request: ResolveFactsRequest) -> Tuple[str, str]:
    system_prompt = """You are a knowledge graph curator. Decide how a new fact relates to existing facts between the same entities.

- An existing fact is invalidated when the new fact contradicts or supersedes it.
- The new fact is a duplicate when an existing fact states the same thing.
- Facts that can both be true at once are neither.

Respond with JSON:
```json
{
  "invalidated_ids": ["ids of existing facts the new fact invalidates"],
  "duplicate_of": "id of an existing fact stating the same thing, or null",
  "reason": "explanation"
}
```
"""  # noqa: E501

    def describe(fact):
        window = f'valid {fact.valid_at or "?"} to {fact.invalid_at or "now"}'
        return f'{fact.source_id} -[{fact.type}]-> {fact.target_id}: {fact.description} ({window})'

    existing = '\n'.join(f'- ID: {fact.id} | {describe(fact)}' for fact in request.existing_facts)
    user_message = f"""New fact:
{describe(request.new_fact)}

Existing facts:
{existing}"""
    return system_prompt, user_message


def _prompt_summarize_node(request: SummarizeNodeRequest) -> Tuple[str, str]:
    system_prompt = """You maintain concise entity summaries. Merge the previous and new information about an entity into one summary.
Keep it under three sentences; when the two disagree prefer the new information.

Respond with JSON:
```json
{
  "summary": "merged summary",
  "key_points": ["short fact", "short fact"]
}
```
"""  # noqa: E501

    user_message = f"""Entity: {request.name}

Previous summary:
{request.previous_summary}

New information:
{request.new_summary}

Context:
{_format_context(request.context)}"""
    return system_prompt, user_message


def _prompt_refine_communities(request: RefineCommunitiesRequest) -> Tuple[str, str]:
    system_prompt = """You organize entities of a knowledge graph into communities of closely related entities.
Start from the seed clusters; move, split or merge them where the relations suggest it. Every entity belongs to at most one community.
Keep the id of a seed cluster when the community is essentially the same cluster.

Respond with JSON:
```json
{
  "communities": [
    {"id": "seed cluster id or null", "summary": "what the community is about", "member_ids": ["entity id"]}
  ]
}
```
"""  # noqa: E501

    entities = '\n'.join(f'- ID: {entity.id} | {entity.name} ({entity.type}): {entity.summary}' for entity in request.entities)
    relations = '\n'.join(f'- {fact.source_id} -[{fact.type}]-> {fact.target_id}: {fact.description}'
                          for fact in request.relations) or '(none)'
    seeds = '\n'.join(f'- {cluster.id}: {", ".join(cluster.member_ids)}' for cluster in request.seed_clusters) or '(none)'
    user_message = f"""Scope: {request.scope}

Entities:
{entities}

Relations:
{relations}

Seed clusters:
{seeds}"""
    return system_prompt, user_message


def _prompt_evaluate_search(request: EvaluateSearchRequest) -> Tuple[str, str]:
    system_prompt = """You judge search results. Rate how relevant the text is to the query, from 0.0 (unrelated) to 1.0 (answers it directly).

Respond with JSON:
```json
{"relevance": 0.0, "confidence": 0.0, "reason": "short explanation"}
```
"""
    user_message = f"""Query: {request.query}

Text:
{request.text}"""
    return system_prompt, user_message


PROMPT_BUILDERS: Dict[ExtractionTask, Callable[[Any], Tuple[str, str]]] = {
    ExtractionTask.EXTRACT_ENTITIES: _prompt_extract_entities,
    ExtractionTask.DEDUPE_NODES: _prompt_dedupe_nodes,
    ExtractionTask.EXTRACT_TEMPORAL: _prompt_extract_temporal,
    ExtractionTask.RESOLVE_FACTS: _prompt_resolve_facts,
    ExtractionTask.SUMMARIZE_NODE: _prompt_summarize_node,
    ExtractionTask.REFINE_COMMUNITIES: _prompt_refine_communities,
    ExtractionTask.EVALUATE_SEARCH: _prompt_evaluate_search,
}


class BedrockExtractionService(ExtractionCapability):
    """Extraction capability backed by an Amazon Bedrock LLM."""

    def __init__(self, llm: BedrockLLM, max_tokens: Optional[int] = None):
        """
        Initialize the extraction service.

        Args:
            llm: Bedrock LLM client
            max_tokens: Override of the client's default completion length
        """
        self.llm = llm
        self.max_tokens = max_tokens
        logger.info('Initialized BedrockExtractionService')

    async def process(self, task: ExtractionTask, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Prompt the LLM for one task and decode its JSON answer.

        Raises:
            MalformedResponseError: If the payload or the answer is not valid for the task
            ExtractionError: If the Bedrock call fails
        """
        request_model, _ = TASK_SCHEMAS[task]
        try:
            request = request_model.model_validate(payload)
        except ValidationError as e:
            raise MalformedResponseError(f'Invalid {task.value} payload: {e}')

        system_prompt, user_message = PROMPT_BUILDERS[task](request)
        messages = build_messages(user_message, prefill='```json')

        try:
            response, _ = await asyncio.to_thread(self.llm.generate_response,
                                                  messages=messages,
                                                  system_prompt=system_prompt,
                                                  max_tokens=self.max_tokens,
                                                  stop_sequences=['```'])
        except BedrockLLMError as e:
            logger.error(f'LLM error during {task.value}: {e}')
            raise ExtractionError(f'{task.value} failed: {e}')

        try:
            data = parse_json_response(response)
        except json.JSONDecodeError as e:
            logger.error(f'Failed to parse {task.value} JSON: {e}')
            raise MalformedResponseError(f'{task.value} returned invalid JSON: {e}')

        if not isinstance(data, dict):
            raise MalformedResponseError(f'{task.value} returned {type(data).__name__}, expected an object')

        logger.debug(f'{task.value} response decoded ({len(response)} chars)')
        return data

