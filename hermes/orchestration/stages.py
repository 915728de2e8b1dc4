from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Sequence

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .enums import StageId, TargetAudience
from .errors import ValidationError
from .results import (
    BufferInput,
    ClarificationInput,
    CoherenceInput,
    IntegrationInput,
    VisionInput,
)

InstructionBuilder = Callable[[Any, str], str]

AUDIENCE_BANDS: dict[TargetAudience, tuple[str, str]] = {
    TargetAudience.BOARD: ("Board", "high abstraction, fiduciary view"),
    TargetAudience.C_SUITE: ("C-Suite", "strategic-tactical"),
    TargetAudience.MANAGEMENT: ("Management", "tactical-operational"),
    TargetAudience.OPERATIONS: ("Operations teams", "direct execution"),
    TargetAudience.EXTERNAL: ("External stakeholders", "institutional communication"),
}


def _response_schema(
    score_field: str,
    *,
    objects: Sequence[str] = (),
    arrays: Sequence[str] = (),
    strings: Sequence[str] = (),
) -> dict[str, Any]:
    properties: dict[str, Any] = {score_field: {"type": "number", "minimum": 0, "maximum": 100}}
    properties.update({name: {"type": "string"} for name in strings})
    properties.update({name: {"type": "array", "items": {"type": "object"}} for name in arrays})
    properties.update({name: {"type": "object"} for name in objects})
    return {"type": "object", "properties": properties, "required": [score_field]}


def _context_block(label: str, context: str) -> str:
    if not context:
        return ""
    return f"\n\n{label}:\n{context}"


def _vectorial_instruction(data: VisionInput, context: str) -> str:
    return (
        "You are H1 (Vectorial Translation), a HERMES sub-module.\n"
        "Turn the systemic vision below into vectors, then directives, then concrete tasks.\n\n"
        f"INPUT VISION:\n{data.vision}"
        f"{_context_block('Context from active modules', context)}\n\n"
        "Respond with JSON containing: translation_quality_score (0-100); vectors (id, name, direction "
        "in expansion|defense|survival|repositioning|attack|consolidation|retreat, force 0-100, rhythm in "
        "immediate|short_term|medium_term|long_term, description, constraints, threats, hypotheses, "
        "decision_limits); directives (vector_id, directive, priority, owner_profile, success_criteria); "
        "tasks (directive_id, task, estimated_effort, dependencies, checkpoint); translation_notes "
        "(complexity_reduced_from, key_simplifications, preserved_intent, potential_misinterpretations).\n"
        "Preserve strategic intent while making execution clear."
    )


def _clarification_instruction(data: ClarificationInput, context: str) -> str:
    label, band = AUDIENCE_BANDS[data.target_audience]
    return (
        "You are H2 (Cognitive Clarification), a HERMES sub-module.\n"
        "Rewrite complex strategic content for a specific cognitive band without losing intent.\n\n"
        f"ORIGINAL CONTENT:\n{data.content}\n\n"
        f"TARGET AUDIENCE: {label} ({band})"
        f"{_context_block('Additional module context', context)}\n\n"
        "Respond with JSON containing: clarification_score (0-100); original_complexity; target_complexity; "
        "clarified_content (executive_summary, key_points, action_implications, context_they_need); "
        "cognitive_adaptations; vocabulary_translation; visual_suggestions; communication_format; "
        "comprehension_checkpoints; execution_readiness (score, gaps, prerequisites).\n"
        "Prioritize clarity without patronizing."
    )


def _buffer_instruction(data: BufferInput, context: str) -> str:
    stakeholders = data.stakeholders or "Not specified; infer them from the situation and context."
    return (
        "You are H3 (Emotional Buffer), a HERMES sub-module.\n"
        "Absorb noise, prevent conflict and protect relationships between organisational levels.\n\n"
        f"SITUATION:\n{data.situation}\n\n"
        f"KEY STAKEHOLDERS:\n{stakeholders}"
        f"{_context_block('Strategic context', context)}\n\n"
        "Respond with JSON containing: friction_risk_score (0-100); emotional_landscape; "
        "stakeholder_emotional_map; friction_points; political_risks; communication_shields; "
        "de_escalation_protocols; relationship_preservation; recommended_tone; buffer_synthesis "
        "(key_message, critical_action, watch_for).\n"
        "Be empathetic but strategic."
    )


def _coherence_instruction(data: CoherenceInput, context: str) -> str:
    return (
        "You are H4 (Coherence Audit), a HERMES sub-module.\n"
        "Verify that execution has not drifted away from the strategic vision.\n\n"
        f"ORIGINAL VISION/INTENT:\n{data.vision_statement}\n\n"
        f"CURRENT EXECUTION/REALITY:\n{data.current_execution}"
        f"{_context_block('Previous HERMES analyses', context)}\n\n"
        "Respond with JSON containing: coherence_score (0-100); alignment_status in "
        "aligned|drifting|misaligned|critical_deviation; vision_preservation; execution_deviations; "
        "drift_indicators; checkpoints; course_corrections; governance_recommendations; audit_synthesis "
        "(overall_health, key_finding, immediate_action, next_audit_focus).\n"
        "Identify issues and always provide corrective actions."
    )


def _integration_instruction(data: IntegrationInput, context: str) -> str:
    focus = f"\n\nFOCUS REQUESTED BY THE USER:\n{data.focus}" if data.focus else ""
    return (
        "You are HERMES, the cognitive intermediation and strategic translation framework.\n"
        "You bridge high-level systemic vision and operational teams. Synthesize the stage "
        "outputs below into one integration analysis."
        f"{_context_block('Stage outputs', context)}"
        f"{focus}\n\n"
        "Respond with JSON containing: integration_score (0-100); cognitive_load_assessment "
        "(complexity_level, translation_difficulty, recommended_simplifications); vectorial_translation "
        "(primary_vectors, vector_coherence_score); cognitive_clarification (key_concepts_simplified, "
        "execution_readiness_score); emotional_buffer (potential_friction_points, political_risks, "
        "recommended_communication_tone); coherence_audit (vision_alignment_score, "
        "execution_deviation_risks, checkpoints_recommended); hermes_synthesis (key_message, "
        "immediate_actions, watch_points, success_criteria).\n"
        "Be precise and actionable without distorting the strategic vision."
    )


@dataclass(frozen=True, slots=True)
class StageDefinition:
    stage_id: StageId
    title: str
    description: str
    input_model: type[BaseModel]
    build_instruction: InstructionBuilder
    response_schema: Mapping[str, Any]
    primary_field: str | None = None
    required_fields: tuple[str, ...] = field(default=())

    def parse_input(self, user_input: Any) -> BaseModel:
        """Coerce raw user input into the stage's input model.

        Plain strings are accepted for stages with a single primary field.
        Missing or blank required fields raise ``ValidationError``.
        """
        if isinstance(user_input, self.input_model):
            data: Any = user_input.model_dump()
        elif user_input is None:
            data = {}
        elif isinstance(user_input, str):
            if self.primary_field is None:
                raise ValidationError(
                    f"Stage '{self.stage_id.value}' requires structured input: {', '.join(self.required_fields)}",
                    stage_id=self.stage_id.value,
                    detail={"required": list(self.required_fields)},
                )
            data = {self.primary_field: user_input}
        elif isinstance(user_input, Mapping):
            data = dict(user_input)
        else:
            raise ValidationError(
                f"Unsupported input type for stage '{self.stage_id.value}': {type(user_input).__name__}",
                stage_id=self.stage_id.value,
            )
        try:
            return self.input_model.model_validate(data)
        except PydanticValidationError as exc:
            fields = sorted({".".join(str(part) for part in error["loc"]) for error in exc.errors()})
            raise ValidationError(
                f"Invalid input for stage '{self.stage_id.value}': {', '.join(fields) or 'input'}",
                stage_id=self.stage_id.value,
                detail={"fields": fields},
            ) from exc

    def describe(self) -> dict[str, Any]:
        return {
            "stage_id": self.stage_id.value,
            "title": self.title,
            "description": self.description,
            "input_schema": self.input_model.model_json_schema(),
            "response_schema": dict(self.response_schema),
        }


STAGE_DEFINITIONS: dict[StageId, StageDefinition] = {
    StageId.VECTORIAL_TRANSLATION: StageDefinition(
        stage_id=StageId.VECTORIAL_TRANSLATION,
        title="H1 Vectorial Translation",
        description="Vision -> vectors -> directives -> tasks",
        input_model=VisionInput,
        build_instruction=_vectorial_instruction,
        response_schema=_response_schema(
            "translation_quality_score",
            arrays=("vectors", "directives", "tasks"),
            objects=("translation_notes",),
        ),
        primary_field="vision",
        required_fields=("vision",),
    ),
    StageId.COGNITIVE_CLARIFICATION: StageDefinition(
        stage_id=StageId.COGNITIVE_CLARIFICATION,
        title="H2 Cognitive Clarification",
        description="Rewrites context for execution by a target audience",
        input_model=ClarificationInput,
        build_instruction=_clarification_instruction,
        response_schema=_response_schema(
            "clarification_score",
            strings=("original_complexity", "target_complexity"),
            arrays=(
                "cognitive_adaptations",
                "vocabulary_translation",
                "visual_suggestions",
                "comprehension_checkpoints",
            ),
            objects=("clarified_content", "communication_format", "execution_readiness"),
        ),
        primary_field="content",
        required_fields=("content",),
    ),
    StageId.EMOTIONAL_BUFFER: StageDefinition(
        stage_id=StageId.EMOTIONAL_BUFFER,
        title="H3 Emotional Buffer",
        description="Absorbs noise and protects relationships",
        input_model=BufferInput,
        build_instruction=_buffer_instruction,
        response_schema=_response_schema(
            "friction_risk_score",
            arrays=(
                "stakeholder_emotional_map",
                "friction_points",
                "political_risks",
                "communication_shields",
                "de_escalation_protocols",
            ),
            objects=("emotional_landscape", "relationship_preservation", "recommended_tone", "buffer_synthesis"),
        ),
        primary_field="situation",
        required_fields=("situation",),
    ),
    StageId.COHERENCE_AUDIT: StageDefinition(
        stage_id=StageId.COHERENCE_AUDIT,
        title="H4 Coherence Audit",
        description="Keeps execution aligned with the vision",
        input_model=CoherenceInput,
        build_instruction=_coherence_instruction,
        response_schema=_response_schema(
            "coherence_score",
            strings=("alignment_status",),
            arrays=(
                "execution_deviations",
                "drift_indicators",
                "checkpoints",
                "course_corrections",
                "governance_recommendations",
            ),
            objects=("vision_preservation", "audit_synthesis"),
        ),
        required_fields=("vision_statement", "current_execution"),
    ),
    StageId.INTEGRATION: StageDefinition(
        stage_id=StageId.INTEGRATION,
        title="HERMES Integrated Analysis",
        description="Cross-stage synthesis with a single integration score",
        input_model=IntegrationInput,
        build_instruction=_integration_instruction,
        response_schema=_response_schema(
            "integration_score",
            objects=(
                "cognitive_load_assessment",
                "vectorial_translation",
                "cognitive_clarification",
                "emotional_buffer",
                "coherence_audit",
                "hermes_synthesis",
            ),
        ),
        primary_field="focus",
    ),
}


def get_stage_definition(stage_id: StageId | str) -> StageDefinition:
    try:
        return STAGE_DEFINITIONS[StageId(stage_id)]
    except ValueError as exc:
        raise ValidationError(f"Unknown stage '{stage_id}'", stage_id=str(stage_id)) from exc


__all__ = ["AUDIENCE_BANDS", "StageDefinition", "STAGE_DEFINITIONS", "get_stage_definition"]
