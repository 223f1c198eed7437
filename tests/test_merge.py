"""多设备账本合并"""

import threading

import pytest

from ai_usage_cost.analyzer import UsageAnalyzer
from ai_usage_cost.errors import MergeConsistencyViolation
from ai_usage_cost.merge import (
    Ledger,
    MergeCoordinator,
    build_model_breakdown,
    ledger_to_export,
    merge_source_breakdowns,
    merge_submission,
    submission_from_export,
    verify_source,
)
from ai_usage_cost.models import (
    LEGACY_DEVICE_ID,
    DeviceSourceData,
    DeviceSubmission,
    ModelBreakdownData,
    SourceBreakdownData,
)

from conftest import make_message

DATE = "2025-01-15"


def device_data(model_id="claude-sonnet-4", input=0, output=0, cost=0.0, messages=1):
    return DeviceSourceData.from_models({model_id: ModelBreakdownData(input=input, output=output, cost=cost, messages=messages)})


def submission(device_id, days, sources=None):
    sources = set(sources) if sources is not None else {s for day in days.values() for s in day}
    return DeviceSubmission(device_id=device_id, days=days, sources=sources)


class TestMergeSourceBreakdowns:
    def test_two_devices_are_summed(self):
        merged = merge_source_breakdowns(None, {"claude": device_data(input=100, cost=1.0)}, ["claude"], "laptop")
        merged = merge_source_breakdowns(merged, {"claude": device_data(input=50, cost=0.5)}, ["claude"], "desktop")

        claude = merged["claude"]
        assert claude.tokens == 150
        assert claude.cost == pytest.approx(1.5)
        assert claude.messages == 2
        assert set(claude.devices) == {"laptop", "desktop"}
        assert claude.models["claude-sonnet-4"].input == 150

    def test_resubmission_replaces_device_entry(self):
        first = merge_source_breakdowns(None, {"claude": device_data(input=100, cost=1.0)}, ["claude"], "laptop")
        second = merge_source_breakdowns(first, {"claude": device_data(input=120, cost=1.2)}, ["claude"], "laptop")
        assert second["claude"].tokens == 120
        assert second["claude"].cost == pytest.approx(1.2)

    def test_existing_is_not_mutated(self):
        first = merge_source_breakdowns(None, {"claude": device_data(input=100)}, ["claude"], "laptop")
        merge_source_breakdowns(first, {"claude": device_data(input=1)}, ["claude"], "desktop")
        assert set(first["claude"].devices) == {"laptop"}

    def test_legacy_entry_captured(self):
        legacy = SourceBreakdownData(
            input=500, cost=5.0, messages=3, models={"old-model": ModelBreakdownData(input=500, cost=5.0, messages=3)}
        )
        merged = merge_source_breakdowns({"claude": legacy}, {"claude": device_data(input=100, cost=1.0)}, ["claude"], "laptop")

        claude = merged["claude"]
        assert set(claude.devices) == {LEGACY_DEVICE_ID, "laptop"}
        assert claude.tokens == 600
        assert claude.cost == pytest.approx(6.0)
        assert set(claude.models) == {"old-model", "claude-sonnet-4"}

    def test_missing_source_deletes_device_entry(self):
        merged = merge_source_breakdowns(None, {"claude": device_data(input=100)}, ["claude"], "laptop")
        merged = merge_source_breakdowns(merged, {"claude": device_data(input=50)}, ["claude"], "desktop")
        merged = merge_source_breakdowns(merged, {}, ["claude"], "laptop")

        assert set(merged["claude"].devices) == {"desktop"}
        assert merged["claude"].tokens == 50

    def test_last_device_removal_deletes_source(self):
        merged = merge_source_breakdowns(None, {"claude": device_data(input=100)}, ["claude"], "laptop")
        assert merge_source_breakdowns(merged, {}, ["claude"], "laptop") == {}

    def test_unsubmitted_sources_untouched(self):
        merged = merge_source_breakdowns(None, {"codex": device_data(input=100)}, ["codex"], "laptop")
        merged = merge_source_breakdowns(merged, {"claude": device_data(input=5)}, ["claude"], "laptop")
        assert set(merged) == {"claude", "codex"}
        assert merged["codex"].tokens == 100

    def test_reserved_device_id_rejected(self):
        with pytest.raises(MergeConsistencyViolation):
            merge_source_breakdowns(None, {"claude": device_data(input=1)}, ["claude"], LEGACY_DEVICE_ID)

    def test_inconsistent_device_rejected(self):
        broken = DeviceSourceData(input=999, messages=1, models={"m": ModelBreakdownData(input=1, messages=1)})
        with pytest.raises(MergeConsistencyViolation):
            merge_source_breakdowns(None, {"claude": broken}, ["claude"], "laptop")

    def test_verify_source_detects_drift(self):
        merged = merge_source_breakdowns(None, {"claude": device_data(input=100)}, ["claude"], "laptop")
        drifted = SourceBreakdownData(
            input=1, messages=1, models=merged["claude"].models, devices=merged["claude"].devices
        )
        with pytest.raises(MergeConsistencyViolation):
            verify_source(drifted, "claude")


class TestMergeSubmission:
    def test_two_device_example(self):
        ledger = merge_submission(Ledger(), submission("A", {DATE: {"claude": device_data(input=100, cost=1.0)}}))
        ledger = merge_submission(ledger, submission("B", {DATE: {"claude": device_data(input=50, cost=0.5)}}))

        totals = ledger.day_totals(DATE)
        assert totals.tokens == 150
        assert totals.cost == pytest.approx(1.5)
        assert ledger.devices == {"A", "B"}

    def test_idempotent(self):
        sub = submission("A", {DATE: {"claude": device_data(input=100, cost=1.0)}})
        once = merge_submission(Ledger(), sub)
        twice = merge_submission(once, sub)
        assert once.to_dict() == twice.to_dict()

    def test_only_submitted_dates_processed(self):
        ledger = merge_submission(Ledger(), submission("A", {"2025-01-14": {"claude": device_data(input=7)}}))
        ledger = merge_submission(ledger, submission("A", {DATE: {"claude": device_data(input=9)}}))
        assert set(ledger.days) == {"2025-01-14", DATE}

    def test_empty_day_dropped(self):
        ledger = merge_submission(Ledger(), submission("A", {DATE: {"claude": device_data(input=7)}}))
        ledger = merge_submission(ledger, submission("A", {DATE: {}}, sources=["claude"]))
        assert ledger.days == {}

    def test_ledger_dict_round_trip_keeps_devices(self):
        ledger = merge_submission(Ledger(), submission("A", {DATE: {"claude": device_data(input=7)}}))
        restored = Ledger.from_dict(ledger.to_dict())
        assert restored.to_dict() == ledger.to_dict()
        again = merge_submission(restored, submission("A", {DATE: {"claude": device_data(input=7)}}))
        assert LEGACY_DEVICE_ID not in again.days[DATE]["claude"].devices

    def test_legacy_entry_with_unbalanced_tokens_rejected(self):
        with pytest.raises(MergeConsistencyViolation) as exc_info:
            Ledger.from_dict({"days": {DATE: {"claude": {"tokens": 50, "cost": 0.5, "modelId": "old-model"}}}})
        assert exc_info.value.key == f"{DATE}/claude"

    def test_model_breakdown(self):
        ledger = merge_submission(
            Ledger(),
            submission(
                "A",
                {DATE: {"claude": device_data("m1", input=10), "codex": device_data("m1", output=5)}},
            ),
        )
        assert build_model_breakdown(ledger.days[DATE]) == {"m1": 15}


class TestExportRoundTrip:
    def test_submission_from_export_and_back(self):
        export = (
            UsageAnalyzer()
            .fold([make_message(cost=1.0, input=100), make_message(source="codex", model_id="gpt-5", cost=0.5, output=10)])
            .build_export(generated_at="now")
        )
        sub = submission_from_export(export, "laptop")
        assert sub.sources == {"claude", "codex"}

        ledger = merge_submission(Ledger(), sub)
        merged = ledger_to_export(ledger, generated_at="now")
        assert merged.summary.total_cost == pytest.approx(1.5)
        assert merged.summary.total_tokens == export.summary.total_tokens
        assert [c.intensity for c in merged.contributions] == [4]


class TestMergeCoordinator:
    def test_concurrent_merge_on_same_target_fails(self):
        coordinator = MergeCoordinator()
        entered = threading.Event()
        release = threading.Event()

        def hold():
            with coordinator.acquire("ledger.json"):
                entered.set()
                release.wait(5)

        worker = threading.Thread(target=hold)
        worker.start()
        try:
            assert entered.wait(5)
            with pytest.raises(MergeConsistencyViolation):
                coordinator.merge("ledger.json", Ledger(), submission("A", {}))
            # 不同目标互不影响
            coordinator.merge("other.json", Ledger(), submission("A", {}))
        finally:
            release.set()
            worker.join()

    def test_lock_released_after_merge(self):
        coordinator = MergeCoordinator()
        coordinator.merge("ledger.json", Ledger(), submission("A", {DATE: {"claude": device_data(input=1)}}))
        coordinator.merge("ledger.json", Ledger(), submission("A", {DATE: {"claude": device_data(input=1)}}))

    def test_finished_targets_are_forgotten(self):
        coordinator = MergeCoordinator()
        for index in range(3):
            coordinator.merge(f"ledger-{index}.json", Ledger(), submission("A", {}))
        assert coordinator.active_targets == set()
