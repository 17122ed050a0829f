"""Tests for the monitor tick and the reeval plan/execute state machine."""

import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import pytest

from models.batch import BatchRequest
from models.monitor import (
    MonitorState,
    ReevalJob,
    ReevalStatus,
    ReevalThresholds,
    TriggerState,
)
from models.scan import ScanRequest
from services.errors import ValidationError
from services.reeval import trigger_reason

MINUTE_MS = 60 * 1000


def _track(radar, opp_id, baseline, last, **kwargs):
    record = MonitorState(baseline_prob=baseline, last_prob=last, last_seen_ts=0, **kwargs)
    radar.state.monitor[opp_id] = record
    return record


# ==================== TICK ====================


@pytest.mark.asyncio
async def test_first_tick_initializes_records_from_baseline(radar, base_now):
    scan = await radar.run_scan(ScanRequest(n_opps=3), now_ms=base_now)

    result = await radar.tick("all", now_ms=base_now + 1)

    assert result.updated_count == 3
    assert result.changed_count == 0
    assert result.top_moves == []
    for opp in scan.opportunities:
        record = radar.state.monitor[opp.opp_id]
        assert record.baseline_prob == opp.score_baseline
        assert record.last_prob == opp.score_baseline
        assert record.trigger_state == TriggerState.ARMED
        assert record.last_seen_ts == base_now + 1
        assert record.last_reeval_ts == 0


@pytest.mark.asyncio
async def test_tick_without_move_keeps_existing_record(radar, base_now):
    scan = await radar.run_scan(ScanRequest(n_opps=1), now_ms=base_now)
    opp_id = scan.opportunities[0].opp_id
    await radar.tick(now_ms=base_now)
    radar.state.monitor[opp_id].baseline_prob = 12.5

    await radar.tick(now_ms=base_now + 5)

    record = radar.state.monitor[opp_id]
    assert record.baseline_prob == 12.5
    assert record.last_seen_ts == base_now + 5


@pytest.mark.asyncio
async def test_universe_selection(radar, base_now):
    first = await radar.run_scan(ScanRequest(n_opps=3), now_ms=base_now)
    await radar.run_scan(ScanRequest(n_opps=8), now_ms=base_now + 1)

    assert (await radar.tick(f"scan:{first.scan.scan_id}")).updated_count == 3
    assert (await radar.tick("top:2")).updated_count == 2
    assert (await radar.tick("top:abc")).updated_count == 5
    assert (await radar.tick("top:0")).updated_count == 5
    assert (await radar.tick("scan:sc_missing")).updated_count == 0
    assert (await radar.tick("all")).updated_count == 11


@pytest.mark.asyncio
async def test_unknown_universe_rejected(radar):
    with pytest.raises(ValidationError):
        await radar.tick("everything")


@pytest.mark.asyncio
async def test_simulated_moves_are_bounded_sorted_and_persisted(radar, base_now):
    await radar.run_scan(ScanRequest(n_opps=15), now_ms=base_now)
    before = {oid: opp.score_baseline for oid, opp in radar.state.opportunities.items()}

    result = await radar.tick("all", simulate_price_move=True, now_ms=base_now + 1)

    assert result.updated_count == 15
    assert len(result.top_moves) == min(10, result.changed_count)
    deltas = [abs(move.delta) for move in result.top_moves]
    assert deltas == sorted(deltas, reverse=True)
    for move in result.top_moves:
        record = radar.state.monitor[move.opp_id]
        assert record.last_prob == move.new_prob
        assert 0 <= move.new_prob <= 100
        assert abs(move.new_prob - before[move.opp_id]) <= 5.01
        # Baseline only moves on reeval.
        assert record.baseline_prob == before[move.opp_id]

    tick_calls = [
        call for call in radar.repository.append_monitor_snapshot.await_args_list
        if call.args[3] == "monitor_tick"
    ]
    assert len(tick_calls) == result.changed_count
    assert result.stage_logs[0].stage_id == "monitor_tick"


# ==================== TRIGGERS ====================


def test_trigger_reason_order():
    thresholds = ReevalThresholds()
    now = 10 * 60 * MINUTE_MS

    abs_record = MonitorState(baseline_prob=50, last_prob=61, last_seen_ts=0)
    rel_record = MonitorState(baseline_prob=20, last_prob=25, last_seen_ts=0)
    stale_record = MonitorState(
        baseline_prob=50, last_prob=50, last_seen_ts=0, last_reeval_ts=now - 61 * MINUTE_MS
    )
    never_reevaluated = MonitorState(baseline_prob=50, last_prob=50, last_seen_ts=0)
    zero_baseline = MonitorState(baseline_prob=0, last_prob=3, last_seen_ts=0)

    assert trigger_reason(abs_record, thresholds, now) == "ABS_DIFF >= 10"
    assert trigger_reason(rel_record, thresholds, now) == "REL_DIFF >= 0.2"
    assert trigger_reason(stale_record, thresholds, now) == "STALENESS >= 60m"
    assert trigger_reason(never_reevaluated, thresholds, now) is None
    assert trigger_reason(zero_baseline, thresholds, now) is None


@pytest.mark.asyncio
async def test_abs_trigger_then_already_triggered(radar, base_now):
    record = _track(radar, "op_a", baseline=50, last=65)

    first = await radar.plan(now_ms=base_now)

    assert len(first.jobs) == 1
    job = first.jobs[0]
    assert job.option_id == "op_a"
    assert job.reason == "ABS_DIFF >= 10"
    assert job.from_prob == 50
    assert job.to_prob == 65
    assert record.trigger_state == TriggerState.TRIGGERED
    assert record.last_trigger_reason == "ABS_DIFF >= 10"

    second = await radar.plan(now_ms=base_now)
    assert second.jobs == []
    assert [(s.opp_id, s.reason) for s in second.skipped] == [("op_a", "ALREADY_TRIGGERED")]


@pytest.mark.asyncio
async def test_rel_trigger(radar, base_now):
    _track(radar, "op_rel", baseline=20, last=25)

    plan = await radar.plan(now_ms=base_now)

    assert [job.reason for job in plan.jobs] == ["REL_DIFF >= 0.2"]


@pytest.mark.asyncio
async def test_execute_moves_to_cooldown(radar, base_now):
    record = _track(radar, "op_a", baseline=50, last=65)
    plan = await radar.plan(now_ms=base_now)

    run = await radar.execute(plan.jobs, now_ms=base_now + 10)

    assert run.reevaluated_count == 1
    outcome = run.results[0]
    assert outcome.status == ReevalStatus.COMPLETED
    assert outcome.new_baseline == 65
    assert outcome.llm_summary == "Re-evaluated due to ABS_DIFF >= 10. New probability 65."
    assert outcome.linked_batch_id is None
    assert record.baseline_prob == 65
    assert record.last_reeval_ts == base_now + 10
    assert record.trigger_state == TriggerState.COOLDOWN

    radar.repository.append_reeval_event.assert_awaited_once()
    event = radar.repository.append_reeval_event.await_args.kwargs
    assert event["event_id"] == f"rev_{base_now + 10}_op_a"
    assert event["before"] == {"prob": 50}
    assert event["after"] == {"prob": 65}

    rows = [row for row in radar.state.dataset_rows if row["row_type"] == "reeval_row"]
    assert len(rows) == 1
    assert rows[0]["ids"]["reeval_job_id"] == f"job_{base_now + 10}_op_a"
    assert rows[0]["trigger"]["trigger_reason"] == "ABS_DIFF >= 10"
    assert rows[0]["provider"]["model"] == "mock-reeval"


@pytest.mark.asyncio
async def test_cooldown_hysteresis(radar, base_now):
    record = _track(radar, "op_a", baseline=50, last=65)
    plan = await radar.plan(now_ms=base_now)
    await radar.execute(plan.jobs, now_ms=base_now)

    record.last_prob = 68
    held = await radar.plan(now_ms=base_now + 1)
    assert held.jobs == []
    assert [(s.opp_id, s.reason) for s in held.skipped] == [("op_a", "COOLDOWN")]
    assert record.trigger_state == TriggerState.COOLDOWN

    record.last_prob = 66
    reset = await radar.plan(now_ms=base_now + 2)
    assert reset.jobs == []
    assert reset.skipped == []
    assert record.trigger_state == TriggerState.ARMED


@pytest.mark.asyncio
async def test_cooldown_reset_falls_through_to_staleness(radar, base_now):
    record = _track(radar, "op_a", baseline=50, last=65)
    plan = await radar.plan(now_ms=base_now)
    await radar.execute(plan.jobs, now_ms=base_now)

    later = await radar.plan(now_ms=base_now + 61 * MINUTE_MS)

    assert [job.reason for job in later.jobs] == ["STALENESS >= 60m"]
    assert record.trigger_state == TriggerState.TRIGGERED


@pytest.mark.asyncio
async def test_max_jobs_leaves_extras_armed(radar, base_now):
    for name in ("op_1", "op_2", "op_3"):
        _track(radar, name, baseline=10, last=40)

    plan = await radar.plan(ReevalThresholds(max_jobs=2), now_ms=base_now)

    assert [job.option_id for job in plan.jobs] == ["op_1", "op_2"]
    assert [(s.opp_id, s.reason) for s in plan.skipped] == [("op_3", "MAX_JOBS")]
    assert radar.state.monitor["op_3"].trigger_state == TriggerState.ARMED


@pytest.mark.asyncio
async def test_skipped_report_is_capped(radar, base_now):
    for i in range(12):
        _track(radar, f"op_{i}", baseline=10, last=10, trigger_state=TriggerState.TRIGGERED)

    plan = await radar.plan(now_ms=base_now)

    assert len(plan.skipped) == 10
    assert plan.stage_logs[0].stage_id == "reeval_plan"
    assert plan.stage_logs[0].output_summary["skipped_count"] == 12


@pytest.mark.asyncio
async def test_dry_run_and_unknown_jobs_change_nothing(radar, base_now):
    record = _track(radar, "op_a", baseline=50, last=65)
    plan = await radar.plan(now_ms=base_now)
    ghost = ReevalJob(option_id="op_ghost", reason="ABS_DIFF >= 10", from_prob=1, to_prob=20)

    dry = await radar.execute(plan.jobs, dry_run=True, now_ms=base_now)
    unknown = await radar.execute([ghost], now_ms=base_now)

    assert [r.status for r in dry.results] == [ReevalStatus.SKIPPED_OR_DRY_RUN]
    assert [r.status for r in unknown.results] == [ReevalStatus.SKIPPED_OR_DRY_RUN]
    assert dry.reevaluated_count == 1
    assert record.trigger_state == TriggerState.TRIGGERED
    assert record.baseline_prob == 50
    radar.repository.append_reeval_event.assert_not_awaited()


@pytest.mark.asyncio
async def test_reeval_links_to_originating_batch(radar, base_now):
    batch = await radar.run_batch(BatchRequest(topics=["rates"], n_opps=1), now_ms=base_now)
    await radar.tick("all", now_ms=base_now)
    opp_id = next(iter(radar.state.monitor))
    record = radar.state.monitor[opp_id]
    record.last_prob = min(100.0, record.baseline_prob + 20) if record.baseline_prob < 80 else 0.0

    plan = await radar.plan(now_ms=base_now)
    run = await radar.execute(plan.jobs, now_ms=base_now + 1)

    assert run.results[0].linked_batch_id == batch.batch_id
    event = radar.repository.append_reeval_event.await_args.kwargs
    assert event["batch_id"] == batch.batch_id
    assert event["topic_key"] == "rates"
    reeval_rows = [r for r in radar.state.dataset_rows_for(batch.batch_id) if r["row_type"] == "reeval_row"]
    assert len(reeval_rows) == 1


@pytest.mark.asyncio
async def test_execute_ignores_armed_records(radar, base_now):
    record = _track(radar, "op_a", baseline=50, last=50.5)
    job = ReevalJob(option_id="op_a", reason="ABS_DIFF >= 10", from_prob=50, to_prob=50.5)

    run = await radar.execute([job], now_ms=base_now)

    assert [r.status for r in run.results] == [ReevalStatus.SKIPPED_OR_DRY_RUN]
    assert record.trigger_state == TriggerState.ARMED
    assert record.baseline_prob == 50
    assert record.last_reeval_ts == 0
    radar.repository.append_reeval_event.assert_not_awaited()
    assert radar.state.dataset_rows == []


@pytest.mark.asyncio
async def test_repeated_job_list_is_applied_once(radar, base_now):
    record = _track(radar, "op_a", baseline=50, last=65)
    plan = await radar.plan(now_ms=base_now)
    await radar.execute(plan.jobs, now_ms=base_now + 1)

    record.last_prob = 80
    again = await radar.execute(plan.jobs, now_ms=base_now + 5)

    assert [r.status for r in again.results] == [ReevalStatus.SKIPPED_OR_DRY_RUN]
    assert record.baseline_prob == 65
    assert record.last_reeval_ts == base_now + 1
    assert record.trigger_state == TriggerState.COOLDOWN
    assert radar.repository.append_reeval_event.await_count == 1
    reeval_rows = [row for row in radar.state.dataset_rows if row["row_type"] == "reeval_row"]
    assert len(reeval_rows) == 1


@pytest.mark.asyncio
async def test_simulated_drift_triggers_one_abs_job(radar, base_now):
    scan = await radar.run_scan(ScanRequest(n_opps=1), now_ms=base_now)
    opp_id = scan.opportunities[0].opp_id

    await radar.tick("all", now_ms=base_now)
    record = radar.state.monitor[opp_id]
    for step in range(1, 500):
        await radar.tick("all", simulate_price_move=True, now_ms=base_now + step)
        if record.diff >= 10:
            break
    assert record.diff >= 10

    first = await radar.plan(now_ms=base_now + 1000)
    assert [job.option_id for job in first.jobs] == [opp_id]
    assert first.jobs[0].reason.startswith("ABS_DIFF")

    second = await radar.plan(now_ms=base_now + 1001)
    assert second.jobs == []
    assert [(s.opp_id, s.reason) for s in second.skipped] == [(opp_id, "ALREADY_TRIGGERED")]
