from __future__ import annotations

from enum import Enum


class StageId(str, Enum):
    VECTORIAL_TRANSLATION = "h1"
    COGNITIVE_CLARIFICATION = "h2"
    EMOTIONAL_BUFFER = "h3"
    COHERENCE_AUDIT = "h4"
    INTEGRATION = "full_analysis"


CONSTITUENT_STAGES: tuple[StageId, ...] = (
    StageId.VECTORIAL_TRANSLATION,
    StageId.COGNITIVE_CLARIFICATION,
    StageId.EMOTIONAL_BUFFER,
    StageId.COHERENCE_AUDIT,
)


class InvocationState(str, Enum):
    IDLE = "idle"
    ASSEMBLING = "assembling"
    INVOKING = "invoking"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class TargetAudience(str, Enum):
    BOARD = "board"
    C_SUITE = "c_suite"
    MANAGEMENT = "management"
    OPERATIONS = "operations"
    EXTERNAL = "external"


__all__ = ["StageId", "CONSTITUENT_STAGES", "InvocationState", "TargetAudience"]
