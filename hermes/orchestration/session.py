from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable

from ..core.config import Settings
from ..core.logging import get_logger
from ..services.reasoning import ReasoningService, build_reasoning_service
from .aggregation import AggregationEngine, Freshness
from .context import ContextAssembler
from .enums import StageId
from .persistence import OutputPersistence, build_persistence
from .runner import StageRunner, StageStatus
from .store import ModuleOutputStore, OutputObserver, StageOutput

logger = get_logger(name=__name__)


class HermesSession:
    """Owns one output store and the runners that write into it."""

    def __init__(
        self,
        *,
        service: ReasoningService,
        settings: Settings,
        store: ModuleOutputStore | None = None,
        persistence: OutputPersistence | None = None,
    ) -> None:
        self.settings = settings
        self.store = store or ModuleOutputStore()
        self._service = service
        self._persistence = persistence
        self.assembler = ContextAssembler(self.store, settings=settings.context)
        timeout = settings.reasoning.timeout_seconds
        self.stages = StageRunner(
            self.store,
            self.assembler,
            service,
            timeout_seconds=timeout,
            persistence=persistence,
        )
        self.aggregation = AggregationEngine(
            self.store,
            self.assembler,
            service,
            timeout_seconds=timeout,
            persistence=persistence,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        service: ReasoningService | None = None,
        persistence: OutputPersistence | None = None,
    ) -> "HermesSession":
        return cls(
            service=service or build_reasoning_service(settings),
            settings=settings,
            persistence=persistence or build_persistence(settings.persistence),
        )

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["HermesSession"]:
        try:
            await self.restore()
            yield self
        finally:
            await self.close()

    async def restore(self) -> int:
        if self._persistence is None:
            return 0
        outputs = await self._persistence.load_all()
        self.store.hydrate(outputs)
        if outputs:
            logger.info("session_restored", stages=[output.stage_id.value for output in outputs])
        return len(outputs)

    async def close(self) -> None:
        for stage_id in StageId:
            self._runner_for(stage_id).cancel(stage_id, reason="session closed")
        await self._service.aclose()
        if self._persistence is not None:
            await self._persistence.close()

    async def run_stage(self, stage_id: StageId | str, user_input: Any = None) -> StageOutput:
        return await self._runner_for(stage_id).run_stage(stage_id, user_input)

    async def run_aggregation(self, user_input: Any = None) -> StageOutput:
        return await self.aggregation.run_aggregation(user_input)

    def cancel(self, stage_id: StageId | str) -> int:
        return self._runner_for(stage_id).cancel(StageId(stage_id))

    async def reset(self) -> None:
        """Drop every recorded output, here and in the persisted mirror."""
        for stage_id in StageId:
            self._runner_for(stage_id).cancel(stage_id, reason="session reset")
        self.store.clear()
        if self._persistence is not None:
            async with self.stages.persistence_paused(), self.aggregation.persistence_paused():
                await self._persistence.clear()

    def snapshot(self) -> dict[StageId, StageOutput]:
        return self.store.get_all()

    def status(self) -> dict[StageId, StageStatus]:
        return {stage_id: self._runner_for(stage_id).status(stage_id) for stage_id in StageId}

    def freshness(self) -> Freshness:
        return self.aggregation.freshness()

    def subscribe(self, observer: OutputObserver) -> Callable[[], None]:
        return self.store.subscribe(observer)

    def _runner_for(self, stage_id: StageId | str) -> StageRunner:
        if stage_id == StageId.INTEGRATION or stage_id == StageId.INTEGRATION.value:
            return self.aggregation
        return self.stages


__all__ = ["HermesSession"]
