from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from ..orchestration.aggregation import Freshness
from ..orchestration.runner import StageStatus
from ..orchestration.stages import StageDefinition
from ..orchestration.store import StageOutput


class StageOutputModel(BaseModel):
    stage_id: str
    payload: dict[str, Any]
    recorded_at: datetime
    version: int = Field(ge=1)

    @classmethod
    def from_output(cls, output: StageOutput) -> "StageOutputModel":
        return cls(
            stage_id=output.stage_id.value,
            payload=output.payload.model_dump(mode="json"),
            recorded_at=output.recorded_at,
            version=output.version,
        )


class FreshnessModel(BaseModel):
    available: bool
    stale: bool
    complete: bool
    changed: list[str] = Field(default_factory=list)
    unreflected: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)
    reasons: list[str] = Field(default_factory=list)

    @classmethod
    def from_freshness(cls, freshness: Freshness) -> "FreshnessModel":
        return cls(**freshness.as_dict())


class AggregationResponse(BaseModel):
    output: StageOutputModel
    grade: str
    freshness: FreshnessModel


class StageStatusModel(BaseModel):
    stage_id: str
    state: str
    in_flight: int = Field(ge=0)
    last_error: dict[str, Any] | None = None
    last_succeeded_at: datetime | None = None
    last_failed_at: datetime | None = None

    @classmethod
    def from_status(cls, status: StageStatus) -> "StageStatusModel":
        return cls(**status.as_dict())


class SessionStatusResponse(BaseModel):
    store_version: int = Field(ge=0)
    stages: list[StageStatusModel]
    aggregation: FreshnessModel


class SnapshotResponse(BaseModel):
    store_version: int = Field(ge=0)
    outputs: dict[str, StageOutputModel]


class StageDescriptor(BaseModel):
    stage_id: str
    title: str
    description: str
    input_schema: dict[str, Any]
    response_schema: dict[str, Any]

    @classmethod
    def from_definition(cls, definition: StageDefinition) -> "StageDescriptor":
        return cls(**definition.describe())


class CancelResponse(BaseModel):
    stage_id: str
    cancelled: int = Field(ge=0)
