"""Typed stage inputs and results.

Every stage result carries a literal ``stage`` tag so the union of all results
can be discriminated without inspecting the payload. The field sets mirror the
JSON documents each stage asks the reasoning service for; unknown fields are
kept (``extra="allow"``) because the service is free to add detail.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from .enums import StageId, TargetAudience

Score = Annotated[float, Field(ge=0, le=100)]


class VisionInput(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    vision: str = Field(min_length=1, description="High-level systemic vision to translate.")


class ClarificationInput(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    content: str = Field(min_length=1, description="Complex strategic content to rewrite.")
    target_audience: TargetAudience = TargetAudience.OPERATIONS


class BufferInput(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    situation: str = Field(min_length=1)
    stakeholders: str | None = None


class CoherenceInput(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    vision_statement: str = Field(min_length=1)
    current_execution: str = Field(min_length=1)


class IntegrationInput(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    focus: str | None = Field(default=None, description="Optional emphasis for the synthesis.")


class _StageResult(BaseModel):
    model_config = ConfigDict(extra="allow")


class VectorialTranslationResult(_StageResult):
    stage: Literal[StageId.VECTORIAL_TRANSLATION] = StageId.VECTORIAL_TRANSLATION
    translation_quality_score: Score
    vectors: list[dict[str, Any]] = Field(default_factory=list)
    directives: list[dict[str, Any]] = Field(default_factory=list)
    tasks: list[dict[str, Any]] = Field(default_factory=list)
    translation_notes: dict[str, Any] = Field(default_factory=dict)


class CognitiveClarificationResult(_StageResult):
    stage: Literal[StageId.COGNITIVE_CLARIFICATION] = StageId.COGNITIVE_CLARIFICATION
    clarification_score: Score
    original_complexity: str | None = None
    target_complexity: str | None = None
    clarified_content: dict[str, Any] = Field(default_factory=dict)
    cognitive_adaptations: list[dict[str, Any]] = Field(default_factory=list)
    vocabulary_translation: list[dict[str, Any]] = Field(default_factory=list)
    visual_suggestions: list[dict[str, Any]] = Field(default_factory=list)
    communication_format: dict[str, Any] = Field(default_factory=dict)
    comprehension_checkpoints: list[dict[str, Any]] = Field(default_factory=list)
    execution_readiness: dict[str, Any] = Field(default_factory=dict)


class EmotionalBufferResult(_StageResult):
    stage: Literal[StageId.EMOTIONAL_BUFFER] = StageId.EMOTIONAL_BUFFER
    friction_risk_score: Score
    emotional_landscape: dict[str, Any] = Field(default_factory=dict)
    stakeholder_emotional_map: list[dict[str, Any]] = Field(default_factory=list)
    friction_points: list[dict[str, Any]] = Field(default_factory=list)
    political_risks: list[dict[str, Any]] = Field(default_factory=list)
    communication_shields: list[dict[str, Any]] = Field(default_factory=list)
    de_escalation_protocols: list[dict[str, Any]] = Field(default_factory=list)
    relationship_preservation: dict[str, Any] = Field(default_factory=dict)
    recommended_tone: dict[str, Any] = Field(default_factory=dict)
    buffer_synthesis: dict[str, Any] = Field(default_factory=dict)


class CoherenceAuditResult(_StageResult):
    stage: Literal[StageId.COHERENCE_AUDIT] = StageId.COHERENCE_AUDIT
    coherence_score: Score
    alignment_status: str | None = None
    vision_preservation: dict[str, Any] = Field(default_factory=dict)
    execution_deviations: list[dict[str, Any]] = Field(default_factory=list)
    drift_indicators: list[dict[str, Any]] = Field(default_factory=list)
    checkpoints: list[dict[str, Any]] = Field(default_factory=list)
    course_corrections: list[dict[str, Any]] = Field(default_factory=list)
    governance_recommendations: list[dict[str, Any]] = Field(default_factory=list)
    audit_synthesis: dict[str, Any] = Field(default_factory=dict)


class AggregationBasis(BaseModel):
    """Which store entries an integration result was computed from."""

    model_config = ConfigDict(frozen=True)

    store_version: int = Field(ge=0)
    source_versions: dict[StageId, int] = Field(default_factory=dict)
    omitted_stages: tuple[StageId, ...] = ()
    missing_stages: tuple[StageId, ...] = ()
    assembled_at: datetime

    @property
    def complete(self) -> bool:
        return not self.missing_stages and not self.omitted_stages


class IntegrationResult(_StageResult):
    stage: Literal[StageId.INTEGRATION] = StageId.INTEGRATION
    integration_score: Score
    cognitive_load_assessment: dict[str, Any] = Field(default_factory=dict)
    vectorial_translation: dict[str, Any] = Field(default_factory=dict)
    cognitive_clarification: dict[str, Any] = Field(default_factory=dict)
    emotional_buffer: dict[str, Any] = Field(default_factory=dict)
    coherence_audit: dict[str, Any] = Field(default_factory=dict)
    hermes_synthesis: dict[str, Any] = Field(default_factory=dict)
    basis: AggregationBasis | None = None

    @property
    def grade(self) -> str:
        if self.integration_score >= 80:
            return "strong"
        if self.integration_score >= 60:
            return "moderate"
        return "weak"


StageResult = Annotated[
    Union[
        VectorialTranslationResult,
        CognitiveClarificationResult,
        EmotionalBufferResult,
        CoherenceAuditResult,
        IntegrationResult,
    ],
    Field(discriminator="stage"),
]

stage_result_adapter: TypeAdapter[StageResult] = TypeAdapter(StageResult)


def parse_stage_result(stage_id: StageId, raw: dict[str, Any], *, keep_basis: bool = False) -> StageResult:
    """Validate a raw reasoning-service document as the result of ``stage_id``.

    The ``stage`` tag is always forced to ``stage_id``; a service echoing some
    other tag must not be able to land its payload in another stage's slot.
    A ``basis`` is only ever written by the aggregation engine, so it is
    discarded unless ``keep_basis`` is set for documents read back from storage.
    """
    document = dict(raw)
    document["stage"] = stage_id
    if not keep_basis:
        document.pop("basis", None)
    return stage_result_adapter.validate_python(document)


def result_to_context(result: BaseModel) -> dict[str, Any]:
    """Payload view handed to other stages: no tag, no bookkeeping fields."""
    return result.model_dump(mode="json", exclude={"stage", "basis"}, exclude_none=True)
