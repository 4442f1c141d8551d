"""
Pydantic schemas for the exposed operations.

These are the payload shapes a surrounding transport serializes; the core
itself works on the dataclasses in `shared.models`.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class Verbosity(str, Enum):
    CONCISE = "concise"
    STANDARD = "standard"
    DETAILED = "detailed"


class ConfidenceLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @classmethod
    def from_score(cls, score: float) -> "ConfidenceLevel":
        if score >= 0.75:
            return cls.HIGH
        if score >= 0.45:
            return cls.MEDIUM
        return cls.LOW


class PromptOptions(BaseModel):
    """Per-request options for prompt construction."""

    max_tables: int = Field(default=5, ge=1, le=20, description="Maximum tables to retrieve")
    max_tokens: int = Field(
        default=4000, ge=256, le=200000, description="Maximum prompt tokens for the generation model"
    )
    reserved_response_tokens: int = Field(
        default=500, ge=0, description="Tokens reserved for the model response"
    )
    verbosity: Verbosity = Field(default=Verbosity.STANDARD, description="Level of schema detail")
    include_rules: bool = Field(default=True, description="Include business rules")
    include_examples: bool = Field(default=True, description="Include worked examples")
    max_examples: int = Field(default=3, ge=0, le=10, description="Maximum worked examples")
    timeout_seconds: Optional[float] = Field(
        default=None, gt=0, description="Request deadline; defaults to settings"
    )


class ConstructPromptRequest(BaseModel):
    """Request model for prompt construction."""

    question: str = Field(..., min_length=1, description="The user's business question")
    user_id: Optional[str] = Field(default=None, description="Requesting user")
    options: PromptOptions = Field(default_factory=PromptOptions)


class FailureInfo(BaseModel):
    kind: str
    stage: str
    message: str


class StepSummary(BaseModel):
    name: str
    status: str
    success: bool
    duration_ms: float
    confidence: float
    error: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class TraceSummary(BaseModel):
    trace_id: str
    overall_confidence: float
    efficiency_score: float
    total_duration_ms: float
    outcome: str
    steps: List[StepSummary]


class TableSummary(BaseModel):
    id: str
    name: str
    relevance: float
    columns: List[str] = Field(default_factory=list)


class ConstructPromptResponse(BaseModel):
    """Response model for prompt construction."""

    success: bool
    trace_id: str
    prompt_text: Optional[str] = None
    token_count: int = 0
    confidence: ConfidenceLevel = ConfidenceLevel.MEDIUM
    degraded: bool = False
    degradations: List[str] = Field(default_factory=list)
    failure: Optional[FailureInfo] = None
    tables: List[TableSummary] = Field(default_factory=list)
    trace: TraceSummary


class SectionRationale(BaseModel):
    id: str
    kind: str
    tokens: int
    relevance: float
    importance: float
    efficiency: float
    essential: bool = False
    compressed: bool = False


class TemplateFactor(BaseModel):
    name: str
    score: float
    weight: float


class TemplateRationale(BaseModel):
    template_key: Optional[str] = None
    dynamic: bool = False
    score: float = 0.0
    factors: List[TemplateFactor] = Field(default_factory=list)
    alternatives: List[Dict[str, Any]] = Field(default_factory=list)


class ConstructionExplanation(BaseModel):
    """Rationale breakdown for one recorded construction."""

    trace_id: str
    question: str
    summary: str
    outcome: str
    intent: Optional[str] = None
    domain: Optional[str] = None
    steps: List[StepSummary]
    selected_sections: List[SectionRationale] = Field(default_factory=list)
    rejected_sections: List[SectionRationale] = Field(default_factory=list)
    budget: Optional[int] = None
    utilization: Optional[float] = None
    template: Optional[TemplateRationale] = None
    suggestions: List[str] = Field(default_factory=list)
