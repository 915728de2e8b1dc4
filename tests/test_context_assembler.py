from __future__ import annotations

import json

import pytest

from hermes.core.config import ContextSettings
from hermes.orchestration.context import ContextAssembler
from hermes.orchestration.enums import StageId
from hermes.orchestration.results import parse_stage_result
from hermes.orchestration.store import ModuleOutputStore
from tests.helpers.stubs import sample_result

LARGE = 1_000_000


def _record(store: ModuleOutputStore, stage_id: StageId, **overrides):
    return store.record_output(stage_id, parse_stage_result(stage_id, sample_result(stage_id, **overrides)))


@pytest.fixture
def populated_store() -> ModuleOutputStore:
    store = ModuleOutputStore()
    _record(store, StageId.VECTORIAL_TRANSLATION)
    _record(store, StageId.COGNITIVE_CLARIFICATION)
    _record(store, StageId.EMOTIONAL_BUFFER)
    return store


def test_empty_store_produces_empty_context():
    assembler = ContextAssembler(ModuleOutputStore())

    context = assembler.build_context(StageId.VECTORIAL_TRANSLATION)

    assert context.text == ""
    assert context.is_empty
    assert not context.truncated


def test_context_excludes_the_invoking_stage(populated_store):
    assembler = ContextAssembler(populated_store)

    context = assembler.build_context(StageId.COGNITIVE_CLARIFICATION, budget=LARGE)
    document = json.loads(context.text)

    assert list(document) == ["h1", "h3"]
    assert StageId.COGNITIVE_CLARIFICATION not in context.included
    assert "stage" not in document["h1"]


def test_context_without_exclusion_orders_entries_by_recording(populated_store):
    _record(populated_store, StageId.VECTORIAL_TRANSLATION, translation_quality_score=55)
    assembler = ContextAssembler(populated_store)

    context = assembler.build_context(budget=LARGE)

    assert list(json.loads(context.text)) == ["h2", "h3", "h1"]
    assert context.included == {
        StageId.COGNITIVE_CLARIFICATION: 2,
        StageId.EMOTIONAL_BUFFER: 3,
        StageId.VECTORIAL_TRANSLATION: 4,
    }
    assert context.store_version == 4


def test_context_is_deterministic_for_identical_snapshots(populated_store):
    assembler = ContextAssembler(populated_store)

    first = assembler.build_context(budget=300)
    second = assembler.build_context(budget=300)

    assert first.text.encode("utf-8") == second.text.encode("utf-8")
    assert first == second


def test_tail_truncation_drops_most_recent_entries_whole(populated_store):
    assembler = ContextAssembler(populated_store)
    two_entries = assembler.build_context(StageId.EMOTIONAL_BUFFER, budget=LARGE).text

    context = assembler.build_context(budget=len(two_entries), stage_id=StageId.INTEGRATION)

    assert context.text == two_entries
    assert context.omitted == (StageId.EMOTIONAL_BUFFER,)
    assert context.partial is None
    assert context.truncated
    assert json.loads(context.text)  # still a valid JSON document


def test_single_oversized_entry_is_cut_at_budget():
    store = ModuleOutputStore()
    _record(store, StageId.VECTORIAL_TRANSLATION)
    _record(store, StageId.EMOTIONAL_BUFFER)
    assembler = ContextAssembler(store)
    full_first = assembler.build_context(StageId.EMOTIONAL_BUFFER, budget=LARGE).text

    context = assembler.build_context(budget=50)

    assert len(context.text) == 50
    assert context.text == full_first[:50]
    assert context.partial is StageId.VECTORIAL_TRANSLATION
    assert context.omitted == (StageId.EMOTIONAL_BUFFER,)


def test_budget_defaults_follow_stage_settings(populated_store):
    settings = ContextSettings(default_max_chars=900, stage_max_chars={"h4": 250})
    assembler = ContextAssembler(populated_store, settings=settings)

    assert assembler.build_context(StageId.COHERENCE_AUDIT).budget == 250
    assert assembler.build_context(StageId.VECTORIAL_TRANSLATION).budget == 900
    assert assembler.build_context().budget == 900


def test_non_positive_budget_is_rejected(populated_store):
    with pytest.raises(ValueError):
        ContextAssembler(populated_store).build_context(budget=0)


def test_payload_keys_are_sorted_regardless_of_arrival_order():
    forward = ModuleOutputStore()
    _record(forward, StageId.COHERENCE_AUDIT, zeta=1, alpha={"y": 2, "b": 3})
    backward = ModuleOutputStore()
    backward.record_output(
        StageId.COHERENCE_AUDIT,
        parse_stage_result(
            StageId.COHERENCE_AUDIT,
            {"alpha": {"b": 3, "y": 2}, "zeta": 1, **sample_result(StageId.COHERENCE_AUDIT)},
        ),
    )

    first = ContextAssembler(forward).build_context(budget=LARGE).text
    second = ContextAssembler(backward).build_context(budget=LARGE).text

    assert first == second
    assert first.index('"alpha"') < first.index('"zeta"')
    assert first.index('"b": 3') < first.index('"y": 2')
