"""Context assembly for stage invocations.

The context handed to a stage is the JSON object ``{stage_id: payload}`` built
from a store snapshot, ordered by recording version (earliest first), with
keys sorted inside each payload.

Truncation is tail-first at a fixed character budget: whole entries are
dropped starting with the most recently recorded one until the document fits.
Only when the earliest entry alone exceeds the budget is its text cut at the
budget, which is the single case that yields a partial fragment.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Mapping

from ..core.config import ContextSettings
from ..core.logging import get_logger
from ..core.metrics import increment_context_truncation
from .enums import StageId
from .results import result_to_context
from .store import ModuleOutputStore, StageOutput

logger = get_logger(name=__name__)


@dataclass(frozen=True, slots=True)
class AssembledContext:
    text: str
    budget: int
    store_version: int
    included: Mapping[StageId, int] = field(default_factory=dict)
    omitted: tuple[StageId, ...] = ()
    partial: StageId | None = None

    @property
    def is_empty(self) -> bool:
        return not self.included

    @property
    def truncated(self) -> bool:
        return bool(self.omitted) or self.partial is not None


def _sorted(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _sorted(value[key]) for key in sorted(value)}
    if isinstance(value, list):
        return [_sorted(item) for item in value]
    return value


def _serialize(entries: list[StageOutput]) -> str:
    document: dict[str, Any] = {entry.stage_id.value: _sorted(result_to_context(entry.payload)) for entry in entries}
    return json.dumps(document, indent=2, ensure_ascii=False)


class ContextAssembler:
    def __init__(self, store: ModuleOutputStore, *, settings: ContextSettings | None = None) -> None:
        self._store = store
        self._settings = settings or ContextSettings()

    def budget_for(self, stage_id: StageId) -> int:
        return self._settings.budget_for(StageId(stage_id).value)

    def build_context(
        self,
        exclude_stage_id: StageId | None = None,
        *,
        budget: int | None = None,
        stage_id: StageId | None = None,
    ) -> AssembledContext:
        """Serialize the current snapshot, minus ``exclude_stage_id``, within ``budget`` characters.

        ``stage_id`` names the invoking stage for budget lookup and metrics; it
        defaults to ``exclude_stage_id``.
        """
        store_version = self._store.version
        snapshot = self._store.get_all()
        label_stage = stage_id or exclude_stage_id
        if label_stage is not None:
            label_stage = StageId(label_stage)
        if budget is None:
            budget = self.budget_for(label_stage) if label_stage is not None else self._settings.default_max_chars
        if budget <= 0:
            raise ValueError("context budget must be positive")

        entries = sorted(
            (output for key, output in snapshot.items() if exclude_stage_id is None or key != StageId(exclude_stage_id)),
            key=lambda output: output.version,
        )
        if not entries:
            return AssembledContext(text="", budget=budget, store_version=store_version)

        kept = list(entries)
        text = _serialize(kept)
        while len(text) > budget and len(kept) > 1:
            kept.pop()
            text = _serialize(kept)

        omitted = tuple(entry.stage_id for entry in entries[len(kept) :])
        partial: StageId | None = None
        if len(text) > budget:
            partial = kept[0].stage_id
            text = text[:budget]

        label = label_stage.value if label_stage is not None else "none"
        if omitted:
            increment_context_truncation(stage=label, mode="dropped_entries")
        if partial is not None:
            increment_context_truncation(stage=label, mode="hard_cut")
        if omitted or partial is not None:
            logger.info(
                "context_truncated",
                stage=label,
                budget=budget,
                omitted=[stage.value for stage in omitted],
                partial=partial.value if partial else None,
            )

        return AssembledContext(
            text=text,
            budget=budget,
            store_version=store_version,
            included={entry.stage_id: entry.version for entry in kept},
            omitted=omitted,
            partial=partial,
        )


__all__ = ["AssembledContext", "ContextAssembler"]
