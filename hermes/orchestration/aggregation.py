from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from ..core.logging import get_logger
from ..core.metrics import record_stage_outcome
from .context import AssembledContext
from .enums import CONSTITUENT_STAGES, StageId
from .errors import InsufficientDataError, ValidationError
from .results import AggregationBasis, IntegrationResult, StageResult
from .runner import StageRunner
from .store import StageOutput

logger = get_logger(name=__name__)


@dataclass(frozen=True, slots=True)
class Freshness:
    available: bool
    stale: bool = False
    complete: bool = False
    changed: tuple[StageId, ...] = ()
    unreflected: tuple[StageId, ...] = ()
    removed: tuple[StageId, ...] = ()
    reasons: tuple[str, ...] = field(default=())

    def as_dict(self) -> dict[str, Any]:
        return {
            "available": self.available,
            "stale": self.stale,
            "complete": self.complete,
            "changed": [stage.value for stage in self.changed],
            "unreflected": [stage.value for stage in self.unreflected],
            "removed": [stage.value for stage in self.removed],
            "reasons": list(self.reasons),
        }


class AggregationEngine(StageRunner):
    """Runs the integration stage over the full current snapshot.

    The result is stamped with the versions of the entries it was built from,
    so callers can tell when constituent stages have moved on since.
    """

    async def run_stage(self, stage_id: StageId | str, user_input: Any = None) -> StageOutput:
        definition = self._definition(stage_id)
        if definition.stage_id is not StageId.INTEGRATION:
            raise ValidationError(
                "Constituent stages are run through the stage runner",
                stage_id=definition.stage_id.value,
            )
        return await self.run_aggregation(user_input)

    async def run_aggregation(self, user_input: Any = None) -> StageOutput:
        definition = self._definition(StageId.INTEGRATION)
        data = self._parse_input(definition, user_input)
        if self._store.is_empty():
            record_stage_outcome(stage=StageId.INTEGRATION.value, outcome="insufficient_data")
            logger.info("aggregation_rejected", reason="empty_store")
            raise InsufficientDataError(
                "No stage outputs recorded yet; run at least one HERMES stage before aggregating",
                stage_id=StageId.INTEGRATION.value,
            )
        present = self._store.constituents()
        if len(present) < len(CONSTITUENT_STAGES):
            logger.info(
                "aggregation_partial_inputs",
                present=[stage.value for stage in present],
                missing=[stage.value for stage in CONSTITUENT_STAGES if stage not in present],
            )
        return await self._invoke(definition, data, exclude_stage_id=None)

    def _finalize(self, result: StageResult, context: AssembledContext) -> StageResult:
        if not isinstance(result, IntegrationResult):
            return result
        omitted = list(context.omitted)
        if context.partial is not None:
            omitted.append(context.partial)
        reflected = set(context.included) | set(context.omitted)
        basis = AggregationBasis(
            store_version=context.store_version,
            source_versions=dict(context.included),
            omitted_stages=tuple(omitted),
            missing_stages=tuple(stage for stage in CONSTITUENT_STAGES if stage not in reflected),
            assembled_at=datetime.now(timezone.utc),
        )
        return result.model_copy(update={"basis": basis})

    def freshness(self, output: StageOutput | None = None) -> Freshness:
        """Compare an integration output's basis with the store as it is now."""
        output = output or self._store.get_output(StageId.INTEGRATION)
        if output is None or not isinstance(output.payload, IntegrationResult) or output.payload.basis is None:
            return Freshness(available=False)

        basis = output.payload.basis
        current = {stage: entry.version for stage, entry in self._store.constituents().items()}
        sources = {stage: version for stage, version in basis.source_versions.items() if stage in CONSTITUENT_STAGES}
        partial = set(basis.omitted_stages)

        changed = tuple(
            stage
            for stage in CONSTITUENT_STAGES
            if stage in sources and stage in current and sources[stage] != current[stage]
        )
        unreflected = tuple(
            stage for stage in CONSTITUENT_STAGES if stage in current and (stage not in sources or stage in partial)
        )
        removed = tuple(stage for stage in CONSTITUENT_STAGES if stage in sources and stage not in current)

        reasons: list[str] = []
        if changed:
            reasons.append("constituent outputs were replaced after aggregation")
        if unreflected:
            reasons.append("constituent outputs are not reflected in the aggregation inputs")
        if removed:
            reasons.append("constituent outputs were cleared after aggregation")

        complete = all(stage in sources and stage not in partial for stage in CONSTITUENT_STAGES)
        return Freshness(
            available=True,
            stale=bool(changed or unreflected or removed),
            complete=complete,
            changed=changed,
            unreflected=unreflected,
            removed=removed,
            reasons=tuple(reasons),
        )


__all__ = ["AggregationEngine", "Freshness"]
