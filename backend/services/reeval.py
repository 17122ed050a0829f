"""
Re-evaluation planner and executor.

Trigger state machine per tracked opportunity::

    ARMED --plan--> TRIGGERED --execute--> COOLDOWN --plan (diff <= reset)--> ARMED

The planner is the only place ARMED becomes TRIGGERED; the executor is the
only place TRIGGERED becomes COOLDOWN, and it ignores jobs for records in
any other state.
"""

from __future__ import annotations

from typing import Callable, Optional

from config import settings
from models.monitor import (
    MonitorState,
    PlanResult,
    ReevalJob,
    ReevalOutcome,
    ReevalStatus,
    ReevalThresholds,
    RunResult,
    SkipReason,
    SkippedCandidate,
    TriggerState,
)
from models.opportunity import Opportunity
from models.scan import StageLog
from services.dataset import ROW_TYPE_REEVAL, build_dataset_row, find_linked_batch_id
from services.errors import PersistenceError
from services.persistence import RadarRepository
from services.radar_state import RadarState
from utils.logger import monitor_logger
from utils.utcnow import now_ms as wall_clock_ms

SKIPPED_REPORT_LIMIT = 10
REEVAL_MODEL = "mock-reeval"
REEVAL_TAGS = ["reeval", "mock"]
REEVAL_CONFIDENCE = 1.0
NEWS_REFS_LIMIT = 3


def trigger_reason(
    record: MonitorState, thresholds: ReevalThresholds, now_ms: int
) -> Optional[str]:
    """First matching trigger for an ARMED record, checked abs -> rel -> staleness."""
    diff = record.diff
    baseline = record.baseline_prob
    if diff >= thresholds.abs_threshold:
        return f"ABS_DIFF >= {thresholds.abs_threshold:g}"
    if baseline > 0 and diff / baseline >= thresholds.rel_threshold:
        return f"REL_DIFF >= {thresholds.rel_threshold:g}"
    staleness_ms = thresholds.staleness_min * 60 * 1000
    if record.last_reeval_ts > 0 and now_ms - record.last_reeval_ts > staleness_ms:
        return f"STALENESS >= {thresholds.staleness_min:g}m"
    return None


class ReevalPlanner:
    def __init__(self, state: RadarState, clock: Callable[[], int] = wall_clock_ms):
        self.state = state
        self.clock = clock

    async def plan(
        self, thresholds: Optional[ReevalThresholds] = None, now_ms: Optional[int] = None
    ) -> PlanResult:
        thresholds = thresholds or ReevalThresholds()
        now = now_ms if now_ms is not None else self.clock()

        async with self.state.monitor_lock:
            start = self.clock()
            jobs: list[ReevalJob] = []
            skipped: list[SkippedCandidate] = []

            for opp_id, record in self.state.monitor.items():
                if record.trigger_state == TriggerState.COOLDOWN:
                    if record.diff <= thresholds.hysteresis_reset:
                        record.trigger_state = TriggerState.ARMED
                    else:
                        skipped.append(SkippedCandidate(opp_id=opp_id, reason=SkipReason.COOLDOWN.value))
                        continue

                if record.trigger_state == TriggerState.TRIGGERED:
                    skipped.append(
                        SkippedCandidate(opp_id=opp_id, reason=SkipReason.ALREADY_TRIGGERED.value)
                    )
                    continue

                reason = trigger_reason(record, thresholds, now)
                if reason is None:
                    continue
                if len(jobs) >= thresholds.max_jobs:
                    # Dropped, not queued: stays ARMED for a later plan.
                    skipped.append(SkippedCandidate(opp_id=opp_id, reason=SkipReason.MAX_JOBS.value))
                    continue

                record.trigger_state = TriggerState.TRIGGERED
                record.last_trigger_reason = reason
                jobs.append(
                    ReevalJob(
                        option_id=opp_id,
                        reason=reason,
                        from_prob=record.baseline_prob,
                        to_prob=record.last_prob,
                    )
                )

            end = self.clock()
            stage = StageLog(
                stage_id="reeval_plan",
                start_ts=start,
                end_ts=end,
                dur_ms=max(0, end - start),
                input_summary=thresholds.model_dump(),
                output_summary={"jobs_count": len(jobs), "skipped_count": len(skipped)},
            )

        monitor_logger.info("Reeval plan", jobs=len(jobs), skipped=len(skipped))
        return PlanResult(
            jobs=jobs,
            skipped=skipped[:SKIPPED_REPORT_LIMIT],
            stage_logs=[stage],
        )


class ReevalExecutor:
    def __init__(
        self,
        state: RadarState,
        repository: Optional[RadarRepository] = None,
        clock: Callable[[], int] = wall_clock_ms,
    ):
        self.state = state
        self.repository = repository or RadarRepository()
        self.clock = clock

    async def _news_refs(self, topic_key: str) -> list:
        try:
            return [item["id"] for item in await self.repository.get_recent_news(topic_key, NEWS_REFS_LIMIT)]
        except PersistenceError as exc:
            monitor_logger.warning("Recent news lookup failed", topic_key=topic_key, error=str(exc))
            return []

    async def _apply(
        self,
        job: ReevalJob,
        record: MonitorState,
        provider: str,
        now: int,
        warnings: list[str],
    ) -> ReevalOutcome:
        opp_id = job.option_id
        previous_prob = record.last_prob
        record.baseline_prob = record.last_prob
        record.last_reeval_ts = now
        record.trigger_state = TriggerState.COOLDOWN

        summary = f"Re-evaluated due to {job.reason}. New probability {record.baseline_prob:g}."
        opp = self.state.get_opportunity(opp_id)
        topic_key = opp.topic_key if opp else settings.SCAN_DEFAULT_TOPIC
        news_refs = await self._news_refs(topic_key)
        linked_batch_id = find_linked_batch_id(self.state.dataset_rows, opp_id)

        try:
            await self.repository.append_reeval_event(
                event_id=f"rev_{now}_{opp_id}",
                opp_id=opp_id,
                topic_key=topic_key,
                trigger={"reason": job.reason, "from": job.from_prob, "to": job.to_prob},
                before={"prob": job.from_prob},
                after={"prob": record.baseline_prob},
                batch_id=linked_batch_id,
                scan_id=opp.scan_id if opp else None,
                news_refs=news_refs,
                ts_ms=now,
            )
        except PersistenceError as exc:
            monitor_logger.warning("Reeval event write failed", opp_id=opp_id, error=str(exc))
            warnings.append(f"reeval_event {opp_id}: {exc}")

        source = opp or Opportunity(
            opp_id=opp_id,
            topic_key=topic_key,
            scan_id="unknown",
            strategy_id="unknown",
            snapshot_id="unknown",
        )
        self.state.add_dataset_row(
            build_dataset_row(
                source,
                row_type=ROW_TYPE_REEVAL,
                scan_id="unknown",
                batch_id=linked_batch_id,
                reeval_job_id=f"job_{now}_{opp_id}",
                trigger_reason=job.reason,
                news_refs=news_refs,
                provider=provider,
                model=REEVAL_MODEL,
                summary=summary,
                confidence=REEVAL_CONFIDENCE,
                tags=REEVAL_TAGS,
                market_prob=record.baseline_prob,
            )
        )
        monitor_logger.info(
            "Reevaluated opportunity",
            opp_id=opp_id,
            reason=job.reason,
            previous_prob=previous_prob,
            linked_batch_id=linked_batch_id,
        )
        return ReevalOutcome(
            option_id=opp_id,
            status=ReevalStatus.COMPLETED,
            new_baseline=record.baseline_prob,
            llm_summary=summary,
            linked_batch_id=linked_batch_id,
        )

    async def run(
        self,
        jobs: list[ReevalJob],
        provider: str = "mock",
        dry_run: bool = False,
        now_ms: Optional[int] = None,
    ) -> RunResult:
        now = now_ms if now_ms is not None else self.clock()

        async with self.state.monitor_lock:
            start = self.clock()
            results: list[ReevalOutcome] = []
            warnings: list[str] = []
            for job in jobs:
                record = self.state.monitor.get(job.option_id)
                # Only the planner arms a job; anything else is a replay or a stale list.
                if record is None or dry_run or record.trigger_state != TriggerState.TRIGGERED:
                    results.append(
                        ReevalOutcome(
                            option_id=job.option_id,
                            status=ReevalStatus.SKIPPED_OR_DRY_RUN,
                        )
                    )
                    continue
                results.append(await self._apply(job, record, provider, now, warnings))

            end = self.clock()
            stage = StageLog(
                stage_id="reeval_run",
                start_ts=start,
                end_ts=end,
                dur_ms=max(0, end - start),
                input_summary={"jobs_count": len(jobs), "provider": provider, "dry_run": dry_run},
                output_summary={"processed": len(results)},
                warnings=warnings,
            )

        return RunResult(reevaluated_count=len(results), results=results, stage_logs=[stage])
