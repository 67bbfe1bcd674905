"""Per-asset generate, validate, repair-once, persist and mirror behavior."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from case_forge.domain.events import EventType, PipelineEvent
from case_forge.domain.models import Blueprint, CaseFileDraft, GenerationRequest
from case_forge.observability.events import EventBus
from case_forge.orchestration.asset_pipeline import AssetContext, AssetMode, AssetPipeline
from case_forge.orchestration.orchestrator import (
    CaseGenerationOrchestrator,
    PipelineSettings,
    worst_case_latency_seconds,
)
from case_forge.persistence.case_store import CaseStore
from case_forge.persistence.state_db import StateDB
from tests.builders import (
    CASE_FILES,
    FailingMirror,
    RecordingSleep,
    ScriptedGenerator,
    case_json,
    make_csv,
    make_profiles,
    make_prose,
    make_request,
)

if TYPE_CHECKING:
    from pathlib import Path

CASE_ID = "cs_bp_demo_1"
SHORT_CSV = make_csv(11)
SHORT_CSV_VIOLATION = "Insufficient rows: expected at least 17 (1 header + 16 data rows), got 11"


@pytest.fixture
def store(tmp_path: Path) -> CaseStore:
    return CaseStore(StateDB(tmp_path / "state.sqlite"))


async def _run(
    store: CaseStore,
    asset_responses: list[str | Exception],
    *,
    mode: AssetMode = AssetMode.WARN,
    **kwargs: object,
):
    generator = ScriptedGenerator(["outline", case_json(), *asset_responses])
    orchestrator = CaseGenerationOrchestrator(
        generator=generator,
        store=store,
        settings=PipelineSettings(asset_mode=mode),
        sleep=RecordingSleep(),
        **kwargs,  # type: ignore[arg-type]
    )
    request = GenerationRequest.from_dict(make_request(case_id=CASE_ID))
    return generator, await orchestrator.run(request)


@pytest.mark.asyncio
async def test_invalid_asset_is_repaired_once_then_persisted(store: CaseStore) -> None:
    generator, result = await _run(store, [SHORT_CSV, make_csv(17), make_prose(900), make_profiles(5)])

    csv_result = result.assets[0]
    assert csv_result.success and csv_result.repaired
    assert csv_result.violations == ()
    assert f"- {SHORT_CSV_VIOLATION}" in generator.prompts[3]
    assert 'Regenerate FINANCIAL_DATA "quarterly_financials.csv" with errors fixed.' in generator.prompts[3]
    stored = store.get_case_file(CASE_ID, "quarterly_financials")
    assert stored is not None and stored.content == make_csv(17)


@pytest.mark.asyncio
async def test_warn_mode_persists_still_invalid_asset_with_violations(store: CaseStore) -> None:
    _, result = await _run(store, [SHORT_CSV, SHORT_CSV, make_prose(900), make_profiles(5)])

    csv_result = result.assets[0]
    assert csv_result.success is True
    assert csv_result.violations == (SHORT_CSV_VIOLATION,)
    assert result.asset_warnings == 1
    stored = store.get_case_file(CASE_ID, "quarterly_financials")
    assert stored is not None
    assert stored.content == SHORT_CSV
    assert stored.violations == (SHORT_CSV_VIOLATION,)


@pytest.mark.asyncio
async def test_strict_mode_leaves_invalid_asset_unpersisted(store: CaseStore) -> None:
    _, result = await _run(
        store, [SHORT_CSV, SHORT_CSV, make_prose(900), make_profiles(5)], mode=AssetMode.STRICT
    )

    csv_result = result.assets[0]
    assert csv_result.success is False
    assert csv_result.error == "asset failed validation in strict mode"
    assert result.failed_assets == ("quarterly_financials",)
    assert [item.success for item in result.assets[1:]] == [True, True]
    stored = store.get_case_file(CASE_ID, "quarterly_financials")
    assert stored is not None and stored.content == ""
    assert store.get_case(CASE_ID) is not None


@pytest.mark.asyncio
async def test_failing_asset_does_not_stop_the_rest(store: CaseStore) -> None:
    bus = EventBus()
    failures: list[PipelineEvent] = []
    bus.subscribe(EventType.ASSET_FAILED, failures.append)

    _, result = await _run(
        store, [RuntimeError("provider down"), make_prose(900), make_profiles(5)], events=bus
    )

    assert result.assets[0].success is False
    assert result.assets[0].error == "provider down"
    assert [item.success for item in result.assets[1:]] == [True, True]
    assert failures[0].payload["file_id"] == "quarterly_financials"


@pytest.mark.asyncio
async def test_failed_repair_call_keeps_first_content(store: CaseStore) -> None:
    _, result = await _run(
        store, [SHORT_CSV, RuntimeError("repair call failed"), make_prose(900), make_profiles(5)]
    )

    csv_result = result.assets[0]
    assert csv_result.success is True
    assert csv_result.repaired is False
    assert csv_result.violations == (SHORT_CSV_VIOLATION,)


@pytest.mark.asyncio
async def test_mirror_failure_is_not_fatal(store: CaseStore) -> None:
    mirror = FailingMirror()
    bus = EventBus()
    mirror_failures: list[PipelineEvent] = []
    bus.subscribe(EventType.ASSET_MIRROR_FAILED, mirror_failures.append)

    _, result = await _run(
        store, [make_csv(17), make_prose(900), make_profiles(5)], mirror=mirror, events=bus
    )

    assert all(item.success and not item.mirrored for item in result.assets)
    assert mirror.attempts == 3
    assert len(mirror_failures) == 3
    stored = store.get_case_file(CASE_ID, "board_memo")
    assert stored is not None and stored.content == make_prose(900)


@pytest.mark.asyncio
async def test_populated_files_are_skipped_unless_forced(store: CaseStore) -> None:
    generator = ScriptedGenerator([make_prose(900)])
    pipeline = AssetPipeline(generator=generator, store=store)
    memo = CaseFileDraft(file_id="board_memo", file_name="board_memo.md", file_type="MEMO", content="# Done")
    context = AssetContext(
        case_title="Margin Pressure",
        blueprint=Blueprint(id="bp_demo", title="Margin Pressure"),
        competency_name="Strategic Thinking",
    )

    (skipped,) = await pipeline.run(CASE_ID, [memo], context)

    assert skipped.skipped and skipped.success
    assert generator.calls == 0
    assert pipeline.mode is AssetMode.WARN

    (forced,) = await pipeline.run(CASE_ID, [memo], context, force=True)
    assert generator.calls == 1
    assert forced.skipped is False


@pytest.mark.asyncio
async def test_pre_populated_case_files_skip_generation(store: CaseStore) -> None:
    files = [dict(item) for item in CASE_FILES]
    files[1]["source"] = {"type": "STATIC", "content": "# Memo written by hand"}
    generator = ScriptedGenerator(["outline", case_json(caseFiles=files), make_csv(17), make_profiles(5)])
    orchestrator = CaseGenerationOrchestrator(generator=generator, store=store, sleep=RecordingSleep())

    result = await orchestrator.run(GenerationRequest.from_dict(make_request(case_id=CASE_ID)))

    assert [item.skipped for item in result.assets] == [False, True, False]
    assert generator.calls == 4
    stored = store.get_case_file(CASE_ID, "board_memo")
    assert stored is not None and stored.content == "# Memo written by hand"


def test_worst_case_latency_bound() -> None:
    assert worst_case_latency_seconds(PipelineSettings(), 3) == 13 * 120.0 + 6 * 8.0
    assert (
        worst_case_latency_seconds(
            {
                "generation": {
                    "max_document_attempts": 1,
                    "call_timeout_seconds": 10.0,
                    "backoff_base_seconds": 1.0,
                    "backoff_cap_seconds": 2.0,
                }
            },
            0,
        )
        == 34.0
    )
    with pytest.raises(ValueError):
        worst_case_latency_seconds(PipelineSettings(), -1)


def test_settings_from_config_and_document_backoff() -> None:
    settings = PipelineSettings.from_config(
        {
            "generation": {"max_document_attempts": 4, "backoff_base_seconds": 20.0, "backoff_cap_seconds": 8.0},
            "validation": {"asset_mode": "strict"},
        }
    )

    assert settings.asset_mode is AssetMode.STRICT
    backoff = settings.document_backoff
    assert backoff.max_retries == 3
    assert backoff.initial_delay_seconds == 8.0
    assert backoff.max_delay_seconds == 8.0
    with pytest.raises(ValueError):
        PipelineSettings(max_document_attempts=0)
