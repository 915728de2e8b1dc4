from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping

from ..core.logging import get_logger
from .enums import CONSTITUENT_STAGES, StageId
from .results import StageResult

logger = get_logger(name=__name__)

TimestampFactory = Callable[[], datetime]
OutputObserver = Callable[[StageId, "StageOutput | None"], None]


@dataclass(frozen=True, slots=True)
class StageOutput:
    stage_id: StageId
    payload: StageResult
    recorded_at: datetime
    version: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "stage_id": self.stage_id.value,
            "payload": self.payload.model_dump(mode="json"),
            "recorded_at": self.recorded_at.isoformat(),
            "version": self.version,
        }


class ModuleOutputStore:
    """Single-slot-per-stage holder of the latest successful stage results.

    Writes swap in a new immutable mapping under a lock, so a reader always
    sees either the mapping before a write or the one after it.
    """

    def __init__(self, *, now: TimestampFactory | None = None) -> None:
        self._entries: Mapping[StageId, StageOutput] = MappingProxyType({})
        self._version = 0
        self._lock = threading.Lock()
        self._observers: list[OutputObserver] = []
        self._now: TimestampFactory = now or (lambda: datetime.now(timezone.utc))

    @property
    def version(self) -> int:
        return self._version

    def record_output(self, stage_id: StageId, payload: StageResult) -> StageOutput:
        stage_id = StageId(stage_id)
        with self._lock:
            self._version += 1
            output = StageOutput(
                stage_id=stage_id,
                payload=payload,
                recorded_at=self._now(),
                version=self._version,
            )
            updated = dict(self._entries)
            updated[stage_id] = output
            self._entries = MappingProxyType(updated)
        logger.debug("stage_output_recorded", stage=stage_id.value, version=output.version)
        self._notify(stage_id, output)
        return output

    def get_output(self, stage_id: StageId) -> StageOutput | None:
        return self._entries.get(StageId(stage_id))

    def get_all(self) -> dict[StageId, StageOutput]:
        return dict(self._entries)

    def versions(self) -> dict[StageId, int]:
        return {stage_id: output.version for stage_id, output in self._entries.items()}

    def constituents(self) -> dict[StageId, StageOutput]:
        entries = self._entries
        return {stage_id: entries[stage_id] for stage_id in CONSTITUENT_STAGES if stage_id in entries}

    def is_empty(self) -> bool:
        return not self._entries

    def clear(self) -> None:
        with self._lock:
            cleared = list(self._entries)
            self._entries = MappingProxyType({})
        logger.info("stage_outputs_cleared", stages=[stage.value for stage in cleared])
        for stage_id in cleared:
            self._notify(stage_id, None)

    def hydrate(self, outputs: Iterable[StageOutput]) -> None:
        """Load previously persisted outputs, keeping the newest per stage."""
        with self._lock:
            updated = dict(self._entries)
            for output in outputs:
                current = updated.get(output.stage_id)
                if current is None or output.version > current.version:
                    updated[output.stage_id] = output
                self._version = max(self._version, output.version)
            self._entries = MappingProxyType(updated)

    def subscribe(self, observer: OutputObserver) -> Callable[[], None]:
        self._observers.append(observer)

        def _unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _unsubscribe

    def _notify(self, stage_id: StageId, output: StageOutput | None) -> None:
        for observer in list(self._observers):
            try:
                observer(stage_id, output)
            except Exception as exc:  # pragma: no cover - observer errors must not undo a write
                logger.exception("stage_output_observer_failed", stage=stage_id.value, error=str(exc))


__all__ = ["StageOutput", "ModuleOutputStore", "OutputObserver"]
