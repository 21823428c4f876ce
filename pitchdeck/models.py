"""Pydantic models for classification, synthesis and deck structures."""
from __future__ import annotations

import json
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class SlideType(str, Enum):
    TITLE = "title"
    PURPOSE = "purpose"
    PROBLEM = "problem"
    SOLUTION = "solution"
    WHY_NOW = "why_now"
    MARKET_SIZE = "market_size"
    COMPETITION = "competition"
    PRODUCT = "product"
    BUSINESS_MODEL = "business_model"
    TRACTION = "traction"
    TEAM = "team"
    ASK = "ask"


SLIDE_TYPES = tuple(t.value for t in SlideType)


def _text_or_empty(v: Any) -> str:
    if v is None:
        return ""
    if isinstance(v, (dict, list)):
        return json.dumps(v, ensure_ascii=False)
    return str(v)


def _optional_text(v: Any) -> Optional[str]:
    return None if v is None else _text_or_empty(v)


def _as_float(v: Any, default: float) -> float:
    try:
        return float(v)
    except (TypeError, ValueError):
        return default


def _as_list(v: Any) -> List[Any]:
    if v is None:
        return []
    return v if isinstance(v, list) else [v]


class ContentItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str = "fact"
    content: str = ""
    location: Optional[str] = None
    confidence: float = 0.5
    synthetic: bool = False

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v: Any) -> float:
        return min(1.0, max(0.0, _as_float(v, 0.5)))

    @field_validator("type", mode="before")
    @classmethod
    def _default_type(cls, v: Any) -> str:
        return _text_or_empty(v) or "fact"

    @field_validator("content", mode="before")
    @classmethod
    def _coerce_content(cls, v: Any) -> str:
        return _text_or_empty(v)

    @field_validator("location", mode="before")
    @classmethod
    def _coerce_location(cls, v: Any) -> Optional[str]:
        return _optional_text(v)


class SlideRelevance(BaseModel):
    score: float = 0.0
    items: List[ContentItem] = Field(
        default_factory=list,
        validation_alias=AliasChoices("items", "extracted_content", "extractedContent"),
    )

    @field_validator("score", mode="before")
    @classmethod
    def _coerce_score(cls, v: Any) -> float:
        return _as_float(v, 0.0)

    @field_validator("items", mode="before")
    @classmethod
    def _drop_non_objects(cls, v: Any) -> List[Any]:
        return [i for i in _as_list(v) if isinstance(i, dict)]


class DocumentClassification(BaseModel):
    filename: str
    document_type: str = "unknown"
    slide_relevance: Dict[str, SlideRelevance] = Field(default_factory=dict)
    conflicts: List[Any] = Field(default_factory=list)
    missing_critical: List[str] = Field(default_factory=list)
    synthetic: bool = False

    @field_validator("document_type", mode="before")
    @classmethod
    def _coerce_document_type(cls, v: Any) -> str:
        return _text_or_empty(v) or "unknown"

    @field_validator("conflicts", mode="before")
    @classmethod
    def _conflict_list(cls, v: Any) -> List[Any]:
        return [c for c in _as_list(v) if c is not None]

    @field_validator("missing_critical", mode="before")
    @classmethod
    def _missing_as_text(cls, v: Any) -> List[str]:
        return [_text_or_empty(m) for m in _as_list(v) if m is not None]


class SourceRelevance(BaseModel):
    filename: str
    relevance_score: float
    facts: List[ContentItem] = Field(default_factory=list)
    quotes: List[ContentItem] = Field(default_factory=list)
    metrics: List[ContentItem] = Field(default_factory=list)


class DataQuality(BaseModel):
    source_count: int = 0
    completeness: float = 0.0
    avg_confidence: float = 0.0


class SlideContext(BaseModel):
    relevant_sources: List[SourceRelevance] = Field(default_factory=list)
    all_content: List[ContentItem] = Field(default_factory=list)
    conflicts: List[Any] = Field(default_factory=list)
    data_quality: DataQuality = Field(default_factory=DataQuality)


class ClassificationResult(BaseModel):
    slides: Dict[str, SlideContext] = Field(default_factory=dict)
    missing_critical_info: List[str] = Field(default_factory=list)
    conflicts: List[Any] = Field(default_factory=list)
    documents_processed: int = 0
    classified_at: str = ""
    synthetic: bool = False


class Citation(BaseModel):
    model_config = ConfigDict(extra="allow")

    fact: str = ""
    source: str = ""
    location: Optional[str] = None
    confidence: float = 1.0

    @field_validator("fact", "source", mode="before")
    @classmethod
    def _coerce_text(cls, v: Any) -> str:
        return _text_or_empty(v)

    @field_validator("location", mode="before")
    @classmethod
    def _coerce_location(cls, v: Any) -> Optional[str]:
        return _optional_text(v)

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v: Any) -> float:
        return min(1.0, max(0.0, _as_float(v, 1.0)))


class SlideContent(BaseModel):
    """One slide's copy. Field set varies per slide type, so extras are kept."""

    model_config = ConfigDict(extra="allow")

    type: str
    citations: List[Citation] = Field(default_factory=list)
    reasoning_trace: Optional[str] = None
    image: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def _coerce_type(cls, v: Any) -> str:
        return _text_or_empty(v)

    @field_validator("citations", mode="before")
    @classmethod
    def _citation_objects(cls, v: Any) -> List[Any]:
        return [c if isinstance(c, dict) else {"fact": c} for c in _as_list(v) if c is not None]

    @field_validator("reasoning_trace", mode="before")
    @classmethod
    def _coerce_trace(cls, v: Any) -> Optional[str]:
        return _optional_text(v)


class DeckConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    company: Dict[str, Any] = Field(default_factory=dict)
    design: Dict[str, Any] = Field(default_factory=dict)
    slides: List[SlideContent] = Field(default_factory=list)
    image_prompts: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("company", "design", "metadata", mode="before")
    @classmethod
    def _null_as_empty(cls, v: Any) -> Any:
        return {} if v is None else v


class CostRecord(BaseModel):
    timestamp: str
    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    cost: float


class ValidationReport(BaseModel):
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


class AgentSettings(BaseModel):
    model: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    retry_attempts: int = 3
    retry_delay: float = 1.0


class ReasoningMode(BaseModel):
    description: str = ""
    system_suffix: str = ""


class LoggingSettings(BaseModel):
    prompts: bool = False


class AgentsSettings(BaseModel):
    classifier: AgentSettings = Field(default_factory=AgentSettings)
    synthesizer: AgentSettings = Field(default_factory=AgentSettings)
    generator: AgentSettings = Field(default_factory=AgentSettings)
    image_generator: AgentSettings = Field(default_factory=AgentSettings)


class PipelineSettings(BaseModel):
    """Contents of ``pipeline-config.json``."""

    company: Dict[str, Any] = Field(default_factory=dict)
    design: Dict[str, Any] = Field(default_factory=dict)
    agents: AgentsSettings = Field(default_factory=AgentsSettings)
    reasoning_modes: Dict[str, ReasoningMode] = Field(default_factory=dict)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    max_cost: float = 50.0
