from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from time import perf_counter
from typing import Any, AsyncIterator, Mapping

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ..core.logging import get_logger
from ..core.metrics import (
    increment_persistence_failure,
    increment_superseded,
    observe_stage_latency,
    record_stage_outcome,
)
from ..services.reasoning import ReasoningRequest, ReasoningService
from .context import AssembledContext, ContextAssembler
from .enums import InvocationState, StageId
from .errors import (
    HermesError,
    SchemaConformanceError,
    StageSupersededError,
    TransportError,
    ValidationError,
)
from .persistence import OutputPersistence
from .results import StageResult, parse_stage_result
from .stages import STAGE_DEFINITIONS, StageDefinition, get_stage_definition
from .store import ModuleOutputStore, StageOutput

logger = get_logger(name=__name__)


class CancellationToken:
    """One-shot signal that an in-flight invocation must not write its result."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(slots=True)
class StageStatus:
    stage_id: StageId
    state: InvocationState = InvocationState.IDLE
    in_flight: int = 0
    last_error: dict[str, Any] | None = None
    last_succeeded_at: datetime | None = None
    last_failed_at: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "stage_id": self.stage_id.value,
            "state": self.state.value,
            "in_flight": self.in_flight,
            "last_error": self.last_error,
            "last_succeeded_at": self.last_succeeded_at.isoformat() if self.last_succeeded_at else None,
            "last_failed_at": self.last_failed_at.isoformat() if self.last_failed_at else None,
        }


def _consume_result(task: asyncio.Future[Any]) -> None:
    if not task.cancelled():
        task.exception()


@dataclass
class _StageSlot:
    issued: int = 0
    committed: int = 0
    in_flight: dict[int, CancellationToken] = field(default_factory=dict)
    persist_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class StageRunner:
    """Drives constituent stage invocations against the shared output store.

    Overlapping invocations of one stage are allowed. Each gets a ticket and a
    cancellation token; a result is written only if no newer invocation of the
    same stage has already been written, and a write cancels every older
    invocation still in flight. The stored value is therefore always that of
    the most recently completed invocation.
    """

    def __init__(
        self,
        store: ModuleOutputStore,
        assembler: ContextAssembler,
        service: ReasoningService,
        *,
        timeout_seconds: float = 60.0,
        persistence: OutputPersistence | None = None,
        definitions: Mapping[StageId, StageDefinition] | None = None,
    ) -> None:
        self._store = store
        self._assembler = assembler
        self._service = service
        self._timeout = timeout_seconds
        self._persistence = persistence
        self._definitions = dict(definitions or STAGE_DEFINITIONS)
        self._slots: dict[StageId, _StageSlot] = defaultdict(_StageSlot)
        self._status: dict[StageId, StageStatus] = {}

    @property
    def store(self) -> ModuleOutputStore:
        return self._store

    def status(self, stage_id: StageId) -> StageStatus:
        stage_id = StageId(stage_id)
        status = self._status.setdefault(stage_id, StageStatus(stage_id=stage_id))
        status.in_flight = len(self._slots[stage_id].in_flight)
        return status

    def cancel(self, stage_id: StageId, *, reason: str = "cancelled") -> int:
        """Cancel every in-flight invocation of ``stage_id``; returns how many were signalled."""
        slot = self._slots[StageId(stage_id)]
        tokens = [token for token in slot.in_flight.values() if not token.cancelled]
        for token in tokens:
            token.cancel(reason)
        if tokens:
            logger.info("stage_cancelled", stage=StageId(stage_id).value, count=len(tokens), reason=reason)
        return len(tokens)

    @asynccontextmanager
    async def persistence_paused(self) -> AsyncIterator[None]:
        """Hold every stage's mirror lock so no pending write lands while the mirror is changed."""
        async with AsyncExitStack() as stack:
            for stage_id in StageId:
                await stack.enter_async_context(self._slots[stage_id].persist_lock)
            yield

    async def run_stage(self, stage_id: StageId | str, user_input: Any = None) -> StageOutput:
        definition = self._definition(stage_id)
        if definition.stage_id is StageId.INTEGRATION:
            raise ValidationError(
                "The integration stage is run through the aggregation engine",
                stage_id=definition.stage_id.value,
            )
        data = self._parse_input(definition, user_input)
        return await self._invoke(definition, data, exclude_stage_id=definition.stage_id)

    def _definition(self, stage_id: StageId | str) -> StageDefinition:
        definition = get_stage_definition(stage_id)
        return self._definitions.get(definition.stage_id, definition)

    def _parse_input(self, definition: StageDefinition, user_input: Any) -> BaseModel:
        try:
            return definition.parse_input(user_input)
        except ValidationError as exc:
            record_stage_outcome(stage=definition.stage_id.value, outcome="invalid_input")
            logger.info("stage_input_rejected", stage=definition.stage_id.value, error=str(exc))
            raise

    async def _invoke(
        self,
        definition: StageDefinition,
        data: BaseModel,
        *,
        exclude_stage_id: StageId | None,
    ) -> StageOutput:
        stage_id = definition.stage_id
        slot = self._slots[stage_id]
        slot.issued += 1
        ticket = slot.issued
        token = CancellationToken()
        slot.in_flight[ticket] = token
        log = logger.bind(stage=stage_id.value, ticket=ticket)

        try:
            try:
                self._set_state(stage_id, InvocationState.ASSEMBLING)
                context = self._assembler.build_context(exclude_stage_id, stage_id=stage_id)
                request = ReasoningRequest(
                    instruction_text=definition.build_instruction(data, context.text),
                    response_schema=definition.response_schema,
                    stage_id=stage_id.value,
                )
                self._set_state(stage_id, InvocationState.INVOKING)
                log.info(
                    "stage_invoking",
                    context_chars=len(context.text),
                    included=[included.value for included in context.included],
                )
                started = perf_counter()
                raw = await self._call(request, token)
                observe_stage_latency(stage=stage_id.value, latency=perf_counter() - started)
                result = self._finalize(self._conform(stage_id, raw), context)
                output = self._commit(stage_id, ticket, token, result)
            finally:
                slot.in_flight.pop(ticket, None)
        except StageSupersededError as exc:
            increment_superseded(stage=stage_id.value)
            record_stage_outcome(stage=stage_id.value, outcome="superseded")
            self._settle_state(stage_id)
            log.info("stage_superseded", reason=str(exc))
            raise
        except HermesError as exc:
            self._record_failure(stage_id, exc)
            log.warning("stage_failed", error_type=type(exc).__name__, error=str(exc))
            raise
        except asyncio.CancelledError:
            self._settle_state(stage_id)
            raise
        except Exception as exc:
            self._settle_state(stage_id)
            log.exception("stage_errored", error_type=type(exc).__name__)
            raise

        self._record_success(stage_id)
        log.info("stage_succeeded", version=output.version)
        await self._persist(output)
        return output

    async def _call(self, request: ReasoningRequest, token: CancellationToken) -> dict[str, Any]:
        call = asyncio.ensure_future(self._service.invoke(request))
        cancelled = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait(
                {call, cancelled},
                timeout=self._timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            call.cancel()
            call.add_done_callback(_consume_result)
            raise
        finally:
            cancelled.cancel()

        if call not in done:
            call.cancel()
            call.add_done_callback(_consume_result)
            if token.cancelled:
                raise StageSupersededError(token.reason or "cancelled", stage_id=request.stage_id)
            raise TransportError(
                f"Reasoning service did not answer within {self._timeout:g}s",
                stage_id=request.stage_id,
                detail={"timeout_seconds": self._timeout},
            )

        try:
            return call.result()
        except HermesError:
            raise
        except Exception as exc:
            raise TransportError(
                f"Reasoning service call failed: {exc}", stage_id=request.stage_id, detail=type(exc).__name__
            ) from exc

    def _conform(self, stage_id: StageId, raw: Any) -> StageResult:
        if not isinstance(raw, dict):
            raise SchemaConformanceError("Reasoning response must be a JSON object", stage_id=stage_id.value)
        try:
            return parse_stage_result(stage_id, raw)
        except PydanticValidationError as exc:
            fields = sorted({".".join(str(part) for part in error["loc"][1:]) or "<root>" for error in exc.errors()})
            raise SchemaConformanceError(
                f"Reasoning response does not conform to the '{stage_id.value}' schema",
                stage_id=stage_id.value,
                detail={"fields": fields},
            ) from exc

    def _finalize(self, result: StageResult, context: AssembledContext) -> StageResult:
        return result

    def _commit(self, stage_id: StageId, ticket: int, token: CancellationToken, result: StageResult) -> StageOutput:
        slot = self._slots[stage_id]
        if token.cancelled:
            raise StageSupersededError(token.reason or "cancelled", stage_id=stage_id.value)
        if ticket < slot.committed:
            raise StageSupersededError(
                f"superseded by invocation {slot.committed}", stage_id=stage_id.value
            )
        output = self._store.record_output(stage_id, result)
        slot.committed = ticket
        for other_ticket, other in slot.in_flight.items():
            if other_ticket < ticket:
                other.cancel(f"superseded by invocation {ticket}")
        return output

    async def _persist(self, output: StageOutput) -> None:
        if self._persistence is None:
            return
        slot = self._slots[output.stage_id]
        async with slot.persist_lock:
            if self._store.get_output(output.stage_id) is not output:
                return
            try:
                await self._persistence.save(output)
            except Exception as exc:
                increment_persistence_failure(backend=type(self._persistence).__name__)
                logger.warning(
                    "stage_output_persist_failed",
                    stage=output.stage_id.value,
                    version=output.version,
                    error=str(exc),
                )

    def _set_state(self, stage_id: StageId, state: InvocationState) -> None:
        self.status(stage_id).state = state

    def _settle_state(self, stage_id: StageId) -> None:
        status = self.status(stage_id)
        if status.in_flight:
            status.state = InvocationState.INVOKING
        elif status.state in (InvocationState.ASSEMBLING, InvocationState.INVOKING):
            status.state = self._last_outcome(status)

    @staticmethod
    def _last_outcome(status: StageStatus) -> InvocationState:
        succeeded, failed = status.last_succeeded_at, status.last_failed_at
        if succeeded is not None and (failed is None or succeeded >= failed):
            return InvocationState.SUCCEEDED
        if failed is not None:
            return InvocationState.FAILED
        return InvocationState.IDLE

    def _record_success(self, stage_id: StageId) -> None:
        record_stage_outcome(stage=stage_id.value, outcome="succeeded")
        status = self.status(stage_id)
        status.last_succeeded_at = datetime.now(timezone.utc)
        status.last_error = None
        status.state = InvocationState.INVOKING if status.in_flight else InvocationState.SUCCEEDED

    def _record_failure(self, stage_id: StageId, exc: HermesError) -> None:
        record_stage_outcome(stage=stage_id.value, outcome=type(exc).__name__)
        status = self.status(stage_id)
        status.last_failed_at = datetime.now(timezone.utc)
        status.last_error = exc.as_dict()
        status.state = InvocationState.INVOKING if status.in_flight else InvocationState.FAILED


__all__ = ["CancellationToken", "StageRunner", "StageStatus"]
