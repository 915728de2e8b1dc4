from __future__ import annotations

import json
from typing import Any, NoReturn, cast

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ..core.logging import get_logger
from ..dependencies import get_hermes_session
from ..orchestration.enums import StageId
from ..orchestration.errors import (
    HermesError,
    InsufficientDataError,
    SchemaConformanceError,
    StageSupersededError,
    TransportError,
    ValidationError,
)
from ..orchestration.results import IntegrationResult
from ..orchestration.session import HermesSession
from ..orchestration.stages import STAGE_DEFINITIONS
from ..schemas.outputs import (
    AggregationResponse,
    CancelResponse,
    FreshnessModel,
    SessionStatusResponse,
    SnapshotResponse,
    StageDescriptor,
    StageOutputModel,
    StageStatusModel,
)

logger = get_logger(name=__name__)

router = APIRouter(prefix="/hermes", tags=["hermes"])

_ERROR_STATUS: dict[type[HermesError], int] = {
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InsufficientDataError: status.HTTP_409_CONFLICT,
    StageSupersededError: status.HTTP_409_CONFLICT,
    TransportError: status.HTTP_502_BAD_GATEWAY,
    SchemaConformanceError: status.HTTP_502_BAD_GATEWAY,
}


def _raise_http(exc: HermesError) -> NoReturn:
    status_code = next(
        (code for error_type, code in _ERROR_STATUS.items() if isinstance(exc, error_type)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    raise HTTPException(status_code=status_code, detail=exc.as_dict()) from exc


async def _extract_stage_input(request: Request) -> Any:
    body = await request.body()
    if not body.strip():
        return None
    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Request body must be UTF-8 JSON") from exc
    if isinstance(payload, dict) and len(payload) == 1 and "input" in payload:
        return payload["input"]
    if not isinstance(payload, (dict, str)):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Request body must be a JSON object or string",
        )
    return payload


@router.get("/stages", response_model=list[StageDescriptor])
async def list_stages() -> list[StageDescriptor]:
    return [StageDescriptor.from_definition(definition) for definition in STAGE_DEFINITIONS.values()]


@router.post("/stages/{stage_id}/run", response_model=StageOutputModel)
async def run_stage(
    stage_id: StageId,
    request: Request,
    session: HermesSession = Depends(get_hermes_session),
) -> StageOutputModel:
    if stage_id is StageId.INTEGRATION:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Use /hermes/aggregation/run for the integration stage",
        )
    user_input = await _extract_stage_input(request)
    try:
        output = await session.run_stage(stage_id, user_input)
    except HermesError as exc:
        _raise_http(exc)
    return StageOutputModel.from_output(output)


@router.post("/stages/{stage_id}/cancel", response_model=CancelResponse)
async def cancel_stage(
    stage_id: StageId,
    session: HermesSession = Depends(get_hermes_session),
) -> CancelResponse:
    return CancelResponse(stage_id=stage_id.value, cancelled=session.cancel(stage_id))


@router.post("/aggregation/run", response_model=AggregationResponse)
async def run_aggregation(
    request: Request,
    session: HermesSession = Depends(get_hermes_session),
) -> AggregationResponse:
    user_input = await _extract_stage_input(request)
    try:
        output = await session.run_aggregation(user_input)
    except HermesError as exc:
        _raise_http(exc)
    result = cast(IntegrationResult, output.payload)
    return AggregationResponse(
        output=StageOutputModel.from_output(output),
        grade=result.grade,
        freshness=FreshnessModel.from_freshness(session.aggregation.freshness(output)),
    )


@router.get("/outputs", response_model=SnapshotResponse)
async def list_outputs(session: HermesSession = Depends(get_hermes_session)) -> SnapshotResponse:
    snapshot = session.snapshot()
    return SnapshotResponse(
        store_version=session.store.version,
        outputs={stage_id.value: StageOutputModel.from_output(output) for stage_id, output in snapshot.items()},
    )


@router.get("/outputs/{stage_id}", response_model=StageOutputModel)
async def get_output(
    stage_id: StageId,
    session: HermesSession = Depends(get_hermes_session),
) -> StageOutputModel:
    output = session.store.get_output(stage_id)
    if output is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No output recorded for '{stage_id.value}'")
    return StageOutputModel.from_output(output)


@router.delete("/outputs", status_code=status.HTTP_204_NO_CONTENT)
async def reset_outputs(session: HermesSession = Depends(get_hermes_session)) -> None:
    await session.reset()
    logger.info("session_reset_via_api")


@router.get("/status", response_model=SessionStatusResponse)
async def session_status(session: HermesSession = Depends(get_hermes_session)) -> SessionStatusResponse:
    return SessionStatusResponse(
        store_version=session.store.version,
        stages=[StageStatusModel.from_status(item) for item in session.status().values()],
        aggregation=FreshnessModel.from_freshness(session.freshness()),
    )
