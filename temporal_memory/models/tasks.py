"""
Request/response schemas for each extraction capability task.
"""

from enum import Enum
from typing import ClassVar, Dict, List, Optional, Tuple, Type

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class ExtractionTask(str, Enum):
    """Tasks the extraction capability can perform."""
    EXTRACT_ENTITIES = 'EXTRACT_ENTITIES'
    DEDUPE_NODES = 'DEDUPE_NODES'
    EXTRACT_TEMPORAL = 'EXTRACT_TEMPORAL'
    RESOLVE_FACTS = 'RESOLVE_FACTS'
    SUMMARIZE_NODE = 'SUMMARIZE_NODE'
    REFINE_COMMUNITIES = 'REFINE_COMMUNITIES'
    EVALUATE_SEARCH = 'EVALUATE_SEARCH'


class TaskModel(BaseModel):
    model_config = ConfigDict(extra='ignore', populate_by_name=True)


def _clamp_unit(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


# Shared payload shapes


class EntityDescriptor(TaskModel):
    """An entity as shown to the capability."""
    id: str
    name: str
    type: str
    summary: str = ''


class FactDescriptor(TaskModel):
    """A relationship as shown to the capability."""
    id: Optional[str] = None
    source_id: str
    target_id: str
    type: str
    description: str = ''
    valid_at: Optional[str] = None
    invalid_at: Optional[str] = None


# Responses


class ExtractedEntity(TaskModel):
    name: str
    type: str = 'concept'
    summary: str = ''

    @field_validator('name', 'summary', mode='before')
    @classmethod
    def _strip(cls, value):
        if value is None:
            return ''
        return value.strip() if isinstance(value, str) else value

    @field_validator('type', mode='before')
    @classmethod
    def _default_type(cls, value):
        return value or 'concept'


class ExtractEntitiesResponse(TaskModel):
    entities: List[ExtractedEntity] = Field(default_factory=list)


class DedupeResolution(TaskModel):
    index: int
    duplicate_of: Optional[str] = Field(default=None, validation_alias=AliasChoices('duplicate_of', 'duplicateOf', 'uuid'))


class DedupeNodesResponse(TaskModel):
    resolutions: List[DedupeResolution] = Field(default_factory=list)


class ExtractedRelationship(TaskModel):
    source_id: str = Field(validation_alias=AliasChoices('source_id', 'sourceId'))
    target_id: str = Field(validation_alias=AliasChoices('target_id', 'targetId'))
    type: str
    name: str = ''
    description: str = ''
    valid_at: Optional[str] = Field(default=None, validation_alias=AliasChoices('valid_at', 'validAt'))
    invalid_at: Optional[str] = Field(default=None, validation_alias=AliasChoices('invalid_at', 'invalidAt'))


class ExtractTemporalResponse(TaskModel):
    relationships: List[ExtractedRelationship] = Field(default_factory=list)


class ResolveFactsResponse(TaskModel):
    invalidated_ids: List[str] = Field(default_factory=list,
                                       validation_alias=AliasChoices('invalidated_ids', 'invalidatedIds', 'invalidatedEdges'))
    duplicate_of: Optional[str] = Field(default=None, validation_alias=AliasChoices('duplicate_of', 'duplicateOf'))
    reason: Optional[str] = None


class SummarizeNodeResponse(TaskModel):
    summary: str
    key_points: List[str] = Field(default_factory=list, validation_alias=AliasChoices('key_points', 'keyPoints'))


class CommunityCluster(TaskModel):
    id: Optional[str] = None
    summary: str = ''
    member_ids: List[str] = Field(default_factory=list, validation_alias=AliasChoices('member_ids', 'memberIds'))


class RefineCommunitiesResponse(TaskModel):
    communities: List[CommunityCluster] = Field(default_factory=list)


class EvaluateSearchResponse(TaskModel):
    relevance: float
    confidence: Optional[float] = None
    reason: Optional[str] = None

    @field_validator('relevance', 'confidence')
    @classmethod
    def _clamp(cls, value: Optional[float]) -> Optional[float]:
        return None if value is None else _clamp_unit(value)


# Requests


class TaskRequest(TaskModel):
    task: ClassVar[ExtractionTask]
    response_model: ClassVar[Type[TaskModel]]


class ExtractEntitiesRequest(TaskRequest):
    task: ClassVar[ExtractionTask] = ExtractionTask.EXTRACT_ENTITIES
    response_model: ClassVar[Type[TaskModel]] = ExtractEntitiesResponse

    text: str
    context: List[str] = Field(default_factory=list)


class DedupeCandidate(TaskModel):
    index: int
    name: str
    type: str
    summary: str = ''
    similar: List[EntityDescriptor] = Field(default_factory=list)


class DedupeNodesRequest(TaskRequest):
    task: ClassVar[ExtractionTask] = ExtractionTask.DEDUPE_NODES
    response_model: ClassVar[Type[TaskModel]] = DedupeNodesResponse

    candidates: List[DedupeCandidate]
    context: List[str] = Field(default_factory=list)


class ExtractTemporalRequest(TaskRequest):
    task: ClassVar[ExtractionTask] = ExtractionTask.EXTRACT_TEMPORAL
    response_model: ClassVar[Type[TaskModel]] = ExtractTemporalResponse

    text: str
    context: List[str] = Field(default_factory=list)
    entities: List[EntityDescriptor]
    reference_time: str


class ResolveFactsRequest(TaskRequest):
    task: ClassVar[ExtractionTask] = ExtractionTask.RESOLVE_FACTS
    response_model: ClassVar[Type[TaskModel]] = ResolveFactsResponse

    new_fact: FactDescriptor
    existing_facts: List[FactDescriptor]


class SummarizeNodeRequest(TaskRequest):
    task: ClassVar[ExtractionTask] = ExtractionTask.SUMMARIZE_NODE
    response_model: ClassVar[Type[TaskModel]] = SummarizeNodeResponse

    name: str
    previous_summary: str
    new_summary: str
    context: List[str] = Field(default_factory=list)


class RefineCommunitiesRequest(TaskRequest):
    task: ClassVar[ExtractionTask] = ExtractionTask.REFINE_COMMUNITIES
    response_model: ClassVar[Type[TaskModel]] = RefineCommunitiesResponse

    scope: str
    entities: List[EntityDescriptor]
    relations: List[FactDescriptor] = Field(default_factory=list)
    seed_clusters: List[CommunityCluster] = Field(default_factory=list)


class EvaluateSearchRequest(TaskRequest):
    task: ClassVar[ExtractionTask] = ExtractionTask.EVALUATE_SEARCH
    response_model: ClassVar[Type[TaskModel]] = EvaluateSearchResponse

    query: str
    text: str


TASK_SCHEMAS: Dict[ExtractionTask, Tuple[Type[TaskRequest], Type[TaskModel]]] = {
    request.task: (request, request.response_model)
    for request in (ExtractEntitiesRequest, DedupeNodesRequest, ExtractTemporalRequest, ResolveFactsRequest,
                    SummarizeNodeRequest, RefineCommunitiesRequest, EvaluateSearchRequest)
}
