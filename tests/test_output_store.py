from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

from hermes.orchestration.enums import StageId
from hermes.orchestration.results import VectorialTranslationResult, parse_stage_result
from hermes.orchestration.store import ModuleOutputStore, StageOutput
from tests.helpers.stubs import RecordingObserver, sample_result


def _payload(stage_id: StageId, **overrides):
    return parse_stage_result(stage_id, sample_result(stage_id, **overrides))


def _clock():
    base = datetime(2024, 5, 1, tzinfo=timezone.utc)
    ticks = iter(range(1000))
    return lambda: base + timedelta(seconds=next(ticks))


def test_record_output_replaces_previous_entry_and_bumps_version():
    store = ModuleOutputStore(now=_clock())

    first = store.record_output(StageId.VECTORIAL_TRANSLATION, _payload(StageId.VECTORIAL_TRANSLATION))
    second = store.record_output(
        StageId.VECTORIAL_TRANSLATION,
        _payload(StageId.VECTORIAL_TRANSLATION, translation_quality_score=40),
    )

    assert first.version == 1
    assert second.version == 2
    assert second.recorded_at > first.recorded_at
    assert store.get_output(StageId.VECTORIAL_TRANSLATION) is second
    assert store.get_output(StageId.VECTORIAL_TRANSLATION).payload.translation_quality_score == 40
    assert len(store.get_all()) == 1
    assert store.version == 2


def test_get_all_returns_snapshot_not_live_view():
    store = ModuleOutputStore()
    store.record_output(StageId.VECTORIAL_TRANSLATION, _payload(StageId.VECTORIAL_TRANSLATION))

    snapshot = store.get_all()
    snapshot.pop(StageId.VECTORIAL_TRANSLATION)
    store.record_output(StageId.EMOTIONAL_BUFFER, _payload(StageId.EMOTIONAL_BUFFER))

    assert snapshot == {}
    assert set(store.get_all()) == {StageId.VECTORIAL_TRANSLATION, StageId.EMOTIONAL_BUFFER}


def test_get_output_for_unknown_stage_is_none():
    store = ModuleOutputStore()
    assert store.get_output(StageId.COHERENCE_AUDIT) is None
    assert store.get_output("h4") is None


def test_observers_receive_writes_and_clear_events():
    store = ModuleOutputStore()
    observer = RecordingObserver()
    unsubscribe = store.subscribe(observer)

    output = store.record_output(StageId.COGNITIVE_CLARIFICATION, _payload(StageId.COGNITIVE_CLARIFICATION))
    store.clear()
    unsubscribe()
    store.record_output(StageId.EMOTIONAL_BUFFER, _payload(StageId.EMOTIONAL_BUFFER))

    assert observer.events == [
        (StageId.COGNITIVE_CLARIFICATION, output),
        (StageId.COGNITIVE_CLARIFICATION, None),
    ]
    assert store.is_empty() is False


def test_clear_removes_entries_but_keeps_version_monotonic():
    store = ModuleOutputStore()
    store.record_output(StageId.VECTORIAL_TRANSLATION, _payload(StageId.VECTORIAL_TRANSLATION))
    store.clear()

    assert store.is_empty()
    assert store.get_all() == {}
    again = store.record_output(StageId.VECTORIAL_TRANSLATION, _payload(StageId.VECTORIAL_TRANSLATION))
    assert again.version == 2


def test_hydrate_keeps_newest_per_stage_and_advances_counter():
    store = ModuleOutputStore()
    now = datetime.now(timezone.utc)
    older = StageOutput(StageId.VECTORIAL_TRANSLATION, _payload(StageId.VECTORIAL_TRANSLATION), now, 3)
    newer = StageOutput(
        StageId.VECTORIAL_TRANSLATION,
        _payload(StageId.VECTORIAL_TRANSLATION, translation_quality_score=12),
        now,
        7,
    )

    store.hydrate([newer, older])

    assert store.get_output(StageId.VECTORIAL_TRANSLATION) is newer
    assert store.version == 7
    assert store.record_output(StageId.EMOTIONAL_BUFFER, _payload(StageId.EMOTIONAL_BUFFER)).version == 8


def test_versions_and_constituents_skip_integration():
    store = ModuleOutputStore()
    store.record_output(StageId.EMOTIONAL_BUFFER, _payload(StageId.EMOTIONAL_BUFFER))
    store.record_output(StageId.INTEGRATION, _payload(StageId.INTEGRATION))

    assert store.versions() == {StageId.EMOTIONAL_BUFFER: 1, StageId.INTEGRATION: 2}
    assert set(store.constituents()) == {StageId.EMOTIONAL_BUFFER}


def test_concurrent_reads_never_observe_partial_entries():
    store = ModuleOutputStore()
    payloads = [
        _payload(StageId.VECTORIAL_TRANSLATION, translation_quality_score=score % 100) for score in range(200)
    ]
    failures: list[str] = []
    done = threading.Event()

    def writer() -> None:
        for payload in payloads:
            store.record_output(StageId.VECTORIAL_TRANSLATION, payload)
        done.set()

    def reader() -> None:
        while not done.is_set():
            for stage_id, output in store.get_all().items():
                if output.stage_id != stage_id:
                    failures.append("stage mismatch")
                if not isinstance(output.payload, VectorialTranslationResult):
                    failures.append("payload type")
                if output.version < 1 or output.recorded_at is None:
                    failures.append("incomplete entry")

    threads = [threading.Thread(target=reader) for _ in range(3)] + [threading.Thread(target=writer)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert not failures
    assert store.get_output(StageId.VECTORIAL_TRANSLATION).payload is payloads[-1]
