from __future__ import annotations

import asyncio
import json

import pytest

from hermes.core.config import PersistenceSettings, Settings
from hermes.orchestration.enums import InvocationState, StageId
from hermes.orchestration.persistence import (
    InMemoryOutputPersistence,
    RedisOutputPersistence,
    build_persistence,
    decode_output,
)
from hermes.orchestration.session import HermesSession
from tests.helpers.stubs import STAGE_INPUTS, RecordingObserver, ScriptedReasoningService


class FakeRedis:
    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.expiries: dict[str, int | None] = {}
        self.closed = False

    async def set(self, key, value, ex=None):
        self.values[key] = value
        self.expiries[key] = ex

    async def get(self, key):
        value = self.values.get(key)
        return value.encode("utf-8") if value is not None else None

    async def delete(self, *keys):
        for key in keys:
            self.values.pop(key, None)

    async def aclose(self):
        self.closed = True


def _session(service=None, persistence=None) -> HermesSession:
    return HermesSession(
        service=service or ScriptedReasoningService(),
        settings=Settings(environment="test"),
        persistence=persistence if persistence is not None else InMemoryOutputPersistence(),
    )


@pytest.mark.asyncio
async def test_session_runs_stages_and_aggregation_over_one_store():
    session = _session()

    await session.run_stage("h1", STAGE_INPUTS[StageId.VECTORIAL_TRANSLATION])
    await session.run_stage(StageId.COHERENCE_AUDIT, STAGE_INPUTS[StageId.COHERENCE_AUDIT])
    aggregated = await session.run_stage("full_analysis")

    assert set(session.snapshot()) == {StageId.VECTORIAL_TRANSLATION, StageId.COHERENCE_AUDIT, StageId.INTEGRATION}
    assert aggregated.payload.basis.source_versions == {
        StageId.VECTORIAL_TRANSLATION: 1,
        StageId.COHERENCE_AUDIT: 2,
    }
    status = session.status()
    assert status[StageId.INTEGRATION].state is InvocationState.SUCCEEDED
    assert status[StageId.EMOTIONAL_BUFFER].state is InvocationState.IDLE


@pytest.mark.asyncio
async def test_restore_hydrates_store_from_persistence():
    persistence = InMemoryOutputPersistence()
    first = _session(persistence=persistence)
    await first.run_stage(StageId.EMOTIONAL_BUFFER, STAGE_INPUTS[StageId.EMOTIONAL_BUFFER])
    await first.run_aggregation()

    second = _session(persistence=persistence)
    restored = await second.restore()

    assert restored == 2
    assert second.store.version == 2
    assert second.store.get_output(StageId.EMOTIONAL_BUFFER).payload.friction_risk_score == 41
    assert second.freshness().available
    assert not second.freshness().stale


@pytest.mark.asyncio
async def test_reset_clears_store_and_persisted_copy():
    persistence = InMemoryOutputPersistence()
    session = _session(persistence=persistence)
    observer = RecordingObserver()
    session.subscribe(observer)
    await session.run_stage(StageId.VECTORIAL_TRANSLATION, "Vision")

    await session.reset()

    assert session.snapshot() == {}
    assert persistence.records == {}
    assert observer.events[-1] == (StageId.VECTORIAL_TRANSLATION, None)


@pytest.mark.asyncio
async def test_lifecycle_closes_service_and_persistence():
    service = ScriptedReasoningService()
    redis = FakeRedis()
    persistence = RedisOutputPersistence(redis, namespace="hermes:test", session_id="s1")

    async with _session(service, persistence).lifecycle() as session:
        await session.run_stage(StageId.VECTORIAL_TRANSLATION, "Vision")

    assert service.closed
    assert redis.closed


@pytest.mark.asyncio
async def test_redis_persistence_round_trip_keeps_basis():
    redis = FakeRedis()
    persistence = RedisOutputPersistence(redis, namespace="hermes:test", session_id="s1", ttl_seconds=60)
    session = _session(persistence=persistence)
    await session.run_stage(StageId.VECTORIAL_TRANSLATION, "Vision")
    aggregated = await session.run_aggregation("risk")

    assert set(redis.values) == {"hermes:test:s1:h1", "hermes:test:s1:full_analysis"}
    assert set(redis.expiries.values()) == {60}

    outputs = {output.stage_id: output for output in await persistence.load_all()}
    restored = outputs[StageId.INTEGRATION]
    assert restored.version == aggregated.version
    assert restored.payload.basis == aggregated.payload.basis


@pytest.mark.asyncio
async def test_redis_persistence_skips_corrupt_entries():
    redis = FakeRedis()
    redis.values["hermes:test:s1:h2"] = json.dumps({"stage_id": "h2", "payload": {}, "recorded_at": "x", "version": 1})
    redis.values["hermes:test:s1:h3"] = "not json"
    persistence = RedisOutputPersistence(redis, namespace="hermes:test", session_id="s1")

    assert await persistence.load_all() == []


@pytest.mark.asyncio
async def test_redis_clear_deletes_every_stage_key():
    redis = FakeRedis()
    persistence = RedisOutputPersistence(redis, namespace="hermes:test", session_id="s1")
    session = _session(persistence=persistence)
    await session.run_stage(StageId.COHERENCE_AUDIT, STAGE_INPUTS[StageId.COHERENCE_AUDIT])

    await persistence.clear()

    assert redis.values == {}


def test_decode_output_accepts_bytes_and_mappings():
    document = {
        "stage_id": "h4",
        "payload": {"coherence_score": 12},
        "recorded_at": "2024-05-01T00:00:00+00:00",
        "version": 3,
    }

    from_bytes = decode_output(json.dumps(document).encode("utf-8"))
    from_mapping = decode_output(document)

    assert from_bytes.stage_id is StageId.COHERENCE_AUDIT
    assert from_mapping.payload.coherence_score == 12
    assert from_bytes.version == 3


def test_build_persistence_follows_backend_setting():
    assert isinstance(build_persistence(PersistenceSettings()), InMemoryOutputPersistence)
    redis_backend = build_persistence(PersistenceSettings(backend="redis", redis_url="redis://localhost:6399/0"))
    assert isinstance(redis_backend, RedisOutputPersistence)


class GatedPersistence(InMemoryOutputPersistence):
    def __init__(self) -> None:
        super().__init__()
        self.save_started = asyncio.Event()
        self.gate = asyncio.Event()

    async def save(self, output):
        self.save_started.set()
        await self.gate.wait()
        await super().save(output)


@pytest.mark.asyncio
async def test_reset_waits_for_pending_mirror_writes():
    persistence = GatedPersistence()
    session = _session(persistence=persistence)
    run = asyncio.create_task(session.run_stage(StageId.VECTORIAL_TRANSLATION, "Vision"))
    await persistence.save_started.wait()

    reset = asyncio.create_task(session.reset())
    await asyncio.sleep(0)
    persistence.gate.set()
    await run
    await reset

    assert session.snapshot() == {}
    assert persistence.records == {}
    assert await _session(persistence=persistence).restore() == 0
