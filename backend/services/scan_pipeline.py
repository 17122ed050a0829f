"""
Deterministic scan pipeline.

One run goes through dedup_check -> load_context -> news_pull (optional)
-> gen_opps -> score_baseline -> llm_analyze -> persist_store. Every stage
is timed into ``metrics.stage_ms`` and logged as a ``StageLog``. Only input
validation raises; provider and persistence failures become stage warnings
or errors.
"""

from __future__ import annotations

import hashlib
from typing import Any, Callable, Optional

from config import settings
from models.opportunity import LLMSummary, Opportunity, TradeableState
from models.scan import Scan, ScanMetrics, ScanRequest, ScanResult, ScanStatus, StageLog
from services.ai.llm_provider import LLMClient, get_llm_client
from services.dataset import ROW_TYPE_SCAN, build_dataset_row
from services.dedup import DedupWindow
from services.errors import PersistenceError, ValidationError
from services.fixtures import FixtureSet
from services.llm_cache import LLMResultCache, prompt_hash
from services.news.provider import NewsProvider, get_news_provider
from services.persistence import RadarRepository
from services.radar_state import RadarState
from services.rng import SeededRandom
from utils.logger import scan_logger
from utils.utcnow import now_ms as wall_clock_ms

SNAPSHOT_SOURCE_SCAN = "mock_run"
LLM_ERROR_SUMMARY = "Error generating summary"
NEWS_REFS_LIMIT = 3


def _short_hash(text: str, length: int = 12) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:length]


class _StageClock:
    """Collects stage logs and stage timings for one run."""

    def __init__(self, metrics: ScanMetrics, clock: Callable[[], int]):
        self.metrics = metrics
        self.clock = clock
        self.logs: list[StageLog] = []

    def start(self) -> int:
        return self.clock()

    def finish(
        self,
        stage_id: str,
        start: int,
        input_summary: Optional[dict[str, Any]] = None,
        output_summary: Optional[dict[str, Any]] = None,
        warnings: Optional[list[str]] = None,
        errors: Optional[list[str]] = None,
    ) -> StageLog:
        end = self.clock()
        log = StageLog(
            stage_id=stage_id,
            start_ts=start,
            end_ts=end,
            dur_ms=max(0, end - start),
            input_summary=input_summary or {},
            output_summary=output_summary or {},
            warnings=list(warnings or []),
            errors=list(errors or []),
        )
        self.metrics.stage_ms[stage_id] = log.dur_ms
        self.logs.append(log)
        return log


class ScanPipeline:
    def __init__(
        self,
        state: RadarState,
        fixtures: FixtureSet,
        repository: Optional[RadarRepository] = None,
        llm_client_factory: Callable[[Optional[str]], LLMClient] = get_llm_client,
        news_provider_factory: Callable[[Optional[str]], NewsProvider] = get_news_provider,
        clock: Callable[[], int] = wall_clock_ms,
    ):
        self.state = state
        self.fixtures = fixtures
        self.repository = repository or RadarRepository()
        self.llm_client_factory = llm_client_factory
        self.news_provider_factory = news_provider_factory
        self.clock = clock

    # ------------------------------------------------------------------
    # Input resolution
    # ------------------------------------------------------------------

    @staticmethod
    def _resolve(request: ScanRequest) -> dict[str, Any]:
        n_opps = request.n_opps if request.n_opps is not None else settings.SCAN_DEFAULT_N_OPPS
        if n_opps < 1:
            raise ValidationError("Invalid n_opps. Must be >= 1.", field="n_opps")

        max_n_opps = request.max_n_opps if request.max_n_opps is not None else settings.SCAN_MAX_N_OPPS
        if max_n_opps < 1:
            raise ValidationError("Invalid max_n_opps. Must be >= 1.", field="max_n_opps")
        max_n_opps = min(max_n_opps, settings.SCAN_MAX_N_OPPS)

        cache_ttl_sec = (
            request.cache_ttl_sec if request.cache_ttl_sec is not None else settings.LLM_CACHE_TTL_SEC
        )
        if cache_ttl_sec < 1:
            raise ValidationError("Invalid cache_ttl_sec. Must be >= 1.", field="cache_ttl_sec")

        return {
            "seed": request.seed if request.seed is not None else settings.SCAN_DEFAULT_SEED,
            "n_opps": n_opps,
            "n_opps_actual": min(n_opps, max_n_opps),
            "truncated": n_opps > max_n_opps,
            "mode": request.mode or settings.SCAN_DEFAULT_MODE,
            "topic_key": request.topic_key or settings.SCAN_DEFAULT_TOPIC,
            "dedup_window_sec": max(0, request.dedup_window_sec or 0),
            "dedup_mode": request.dedup_mode or "run",
            "cache_ttl_sec": cache_ttl_sec,
        }

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self, request: ScanRequest, now_ms: Optional[int] = None) -> ScanResult:
        params = self._resolve(request)
        now = now_ms if now_ms is not None else self.clock()
        t0 = self.clock()
        seed = params["seed"]
        topic_key = params["topic_key"]
        sequence = self.state.next_sequence()
        log = scan_logger.with_context(topic_key=topic_key, seed=seed, batch_id=request.batch_id)

        metrics = ScanMetrics(
            persist_enabled=request.persist,
            truncated=params["truncated"],
            n_opps_requested=params["n_opps"],
            n_opps_actual=params["n_opps_actual"],
            seed=seed,
            mode=params["mode"],
            topic_key=topic_key,
        )
        stages = _StageClock(metrics, self.clock)

        # dedup_check
        if params["dedup_window_sec"] > 0:
            original = DedupWindow.should_skip(
                self.state.scans,
                topic_key,
                params["dedup_window_sec"],
                params["dedup_mode"],
                now,
            )
            if original is not None:
                return self._skipped_result(params, metrics, stages, original, now, sequence, t0)

        rng = SeededRandom(seed)
        scan_id = "sc_" + _short_hash(f"{seed}:{now}:{sequence}")

        # load_context
        start = stages.start()
        latest = self.state.latest_scan()
        from_scan_id = latest.scan_id if latest else None
        warnings: list[str] = []
        try:
            await self.repository.append_topic(topic_key)
        except PersistenceError as exc:
            log.warning("Topic registration failed", error=str(exc))
            warnings.append(f"append_topic failed: {exc}")
        stages.finish("load_context", start, {}, {"from_scan_id": from_scan_id}, warnings)

        if request.with_news:
            await self._news_pull(topic_key, stages, log)

        opportunities = self._gen_opps(rng, scan_id, params, stages)
        await self._score_baseline(rng, opportunities, topic_key, now, stages, log)

        client = self.llm_client_factory(request.llm_provider)
        await self._llm_analyze(
            client, opportunities, params, now, scan_id, request.batch_id, metrics, stages, log
        )

        scan = Scan(
            scan_id=scan_id,
            timestamp=now,
            seed=seed,
            mode=params["mode"],
            topic_key=topic_key,
            status=ScanStatus.OK,
            batch_id=request.batch_id,
            n_opps_requested=params["n_opps"],
            n_opps_actual=params["n_opps_actual"],
            duration_ms=self.clock() - t0,
            opp_ids=[opp.opp_id for opp in opportunities],
            metrics=metrics,
            stage_logs=list(stages.logs),
        )
        self.state.record_scan(scan, opportunities)

        if request.persist:
            await self._persist_store(scan, opportunities, stages, log)

        metrics.total_ms = self.clock() - t0
        scan.duration_ms = metrics.total_ms
        scan.stage_logs = list(stages.logs)
        log.info(
            "Scan completed",
            scan_id=scan_id,
            opps=len(opportunities),
            cache_hits=metrics.cache_hit_count,
            cache_misses=metrics.cache_miss_count,
            total_ms=metrics.total_ms,
        )
        return ScanResult(
            scan=scan,
            opportunities=opportunities,
            from_scan_id=from_scan_id,
            to_scan_id=scan_id,
            metrics=metrics,
            stage_logs=list(stages.logs),
        )

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _skipped_result(
        self,
        params: dict[str, Any],
        metrics: ScanMetrics,
        stages: _StageClock,
        original: Scan,
        now: int,
        sequence: int,
        t0: int,
    ) -> ScanResult:
        metrics.dedup_skipped_count = 1
        start = stages.start()
        stages.finish(
            "dedup_check",
            start,
            {"topic_key": params["topic_key"], "dedup_window_sec": params["dedup_window_sec"]},
            {"skipped": True, "reason": "dedup_hit", "original_scan_id": original.scan_id},
            [f"Skipped due to dedup (window: {params['dedup_window_sec']}s)"],
        )
        metrics.total_ms = self.clock() - t0
        scan = Scan(
            scan_id="skipped_" + _short_hash(f"{params['seed']}:{now}:{sequence}"),
            timestamp=now,
            seed=params["seed"],
            mode=params["mode"],
            topic_key=params["topic_key"],
            status=ScanStatus.SKIPPED,
            n_opps_requested=params["n_opps"],
            n_opps_actual=0,
            duration_ms=metrics.total_ms,
            metrics=metrics,
            stage_logs=list(stages.logs),
        )
        scan_logger.info(
            "Scan skipped by dedup window",
            topic_key=params["topic_key"],
            original_scan_id=original.scan_id,
        )
        return ScanResult(
            scan=scan,
            metrics=metrics,
            stage_logs=list(stages.logs),
            skipped=True,
            original_scan_id=original.scan_id,
        )

    async def _news_pull(self, topic_key: str, stages: _StageClock, log) -> None:
        start = stages.start()
        try:
            provider = self.news_provider_factory(None)
            items = await provider.fetch_news(topic_key, settings.SCAN_NEWS_LIMIT)
            written = 0
            deduped = 0
            for item in items:
                if await self.repository.append_news(topic_key, item):
                    written += 1
                else:
                    deduped += 1
        except Exception as exc:
            log.warning("News pull failed", error=str(exc))
            stages.finish("news_pull", start, {"topic_key": topic_key}, {}, errors=[str(exc)])
            return
        stages.finish(
            "news_pull",
            start,
            {"topic_key": topic_key},
            {"fetched": len(items), "written": written, "deduped": deduped},
        )

    def _gen_opps(
        self,
        rng: SeededRandom,
        scan_id: str,
        params: dict[str, Any],
        stages: _StageClock,
    ) -> list[Opportunity]:
        start = stages.start()
        strategies = self.fixtures.strategies
        snapshots = self.fixtures.snapshots
        opportunities: list[Opportunity] = []
        if strategies and snapshots:
            for i in range(params["n_opps_actual"]):
                strategy = strategies[rng.randint_below(len(strategies))]
                snapshot = snapshots[rng.randint_below(len(snapshots))]
                tradeable = rng.next() > 0.5
                opportunities.append(
                    Opportunity(
                        opp_id="op_" + _short_hash(f"{scan_id}:{i}:v1"),
                        topic_key=params["topic_key"],
                        scan_id=scan_id,
                        strategy_id=strategy.strategy_id,
                        snapshot_id=snapshot.snapshot_id,
                        tradeable_state=(
                            TradeableState.TRADEABLE if tradeable else TradeableState.NOT_TRADEABLE
                        ),
                        tradeable_reason=(
                            f"Generated by RunScan (Seed: {params['seed']}, Mode: {params['mode']})"
                        ),
                    )
                )
        warnings = [] if strategies and snapshots else ["No strategy or snapshot fixtures loaded"]
        stages.finish(
            "gen_opps",
            start,
            {"n_opps": params["n_opps_actual"], "seed": params["seed"]},
            {"generated": len(opportunities)},
            warnings,
        )
        return opportunities

    async def _score_baseline(
        self,
        rng: SeededRandom,
        opportunities: list[Opportunity],
        topic_key: str,
        now: int,
        stages: _StageClock,
        log,
    ) -> None:
        start = stages.start()
        for opp in opportunities:
            baseline = round(rng.next() * 100, 2)
            opp.score_components.spread_edge = round(rng.next() * 30, 2)
            opp.score_components.liquidity = round(rng.next() * 20, 2)
            opp.score_components.volatility = round(rng.next() * 20, 2)
            opp.score_components.risk_reward = round(rng.next() * 30, 2)
            opp.score = baseline
            opp.score_baseline = baseline

        warnings: list[str] = []
        for opp in opportunities:
            try:
                await self.repository.append_monitor_snapshot(
                    opp.opp_id, topic_key, opp.score_baseline, SNAPSHOT_SOURCE_SCAN, now
                )
            except PersistenceError as exc:
                log.warning("Snapshot write failed", opp_id=opp.opp_id, error=str(exc))
                warnings.append(f"snapshot {opp.opp_id}: {exc}")
        stages.finish("score_baseline", start, {}, {"scored": len(opportunities)}, warnings)

    async def _llm_analyze(
        self,
        client: LLMClient,
        opportunities: list[Opportunity],
        params: dict[str, Any],
        now: int,
        scan_id: str,
        batch_id: Optional[str],
        metrics: ScanMetrics,
        stages: _StageClock,
        log,
    ) -> None:
        start = stages.start()
        provider = client.provider.value
        model = client.model
        cache: LLMResultCache = self.state.cache
        warnings: list[str] = []
        analyzed = 0
        fallbacks = 0
        errors_count = 0

        news_refs: list[Any] = []
        if opportunities:
            try:
                news_refs = [
                    item["id"]
                    for item in await self.repository.get_recent_news(
                        params["topic_key"], NEWS_REFS_LIMIT
                    )
                ]
            except PersistenceError as exc:
                log.warning("Recent news lookup failed", error=str(exc))

        for opp in opportunities:
            digest = prompt_hash(opp.strategy_id, opp.snapshot_id, opp.score_baseline)
            key = cache.make_key(
                provider, model, digest, params["topic_key"], now, params["cache_ttl_sec"]
            )
            try:
                result: Optional[LLMSummary] = cache.get(key)
                if result is not None:
                    metrics.cache_hit_count += 1
                else:
                    result = await client.summarize(
                        opp, {"topic_key": params["topic_key"], "scan_id": scan_id}
                    )
                    metrics.cache_miss_count += 1
                    cache.put(key, result)
            except Exception as exc:
                log.warning("LLM summarize failed", opp_id=opp.opp_id, error=str(exc))
                opp.llm_summary = LLM_ERROR_SUMMARY
                opp.llm_tags = ["error"]
                opp.llm_error = str(exc)
                errors_count += 1
                warnings.append(str(exc))
                continue

            opp.apply_llm(result)
            analyzed += 1
            if result.is_fallback:
                fallbacks += 1
                warnings.append(f"Fallback for {opp.opp_id}: {result.error}")

            self.state.add_dataset_row(
                build_dataset_row(
                    opp,
                    row_type=ROW_TYPE_SCAN,
                    scan_id=scan_id,
                    batch_id=batch_id,
                    trigger_reason="initial",
                    news_refs=news_refs,
                )
            )
            try:
                await self.repository.append_llm_row(opp, result, digest, news_refs)
            except PersistenceError as exc:
                log.warning("LLM row write failed", opp_id=opp.opp_id, error=str(exc))
                warnings.append(f"llm_row {opp.opp_id}: {exc}")

        stages.finish(
            "llm_analyze",
            start,
            {"provider": provider},
            {
                "processed": len(opportunities),
                "analyzed_count": analyzed,
                "fallback_count": fallbacks,
                "errors": errors_count,
                "provider": provider,
                "model": model or "unknown",
            },
            warnings,
        )

    async def _persist_store(
        self,
        scan: Scan,
        opportunities: list[Opportunity],
        stages: _StageClock,
        log,
    ) -> None:
        start = stages.start()
        warnings: list[str] = []
        written = 0
        try:
            await self.repository.append_scan(scan)
            written += 1
            for opp in opportunities:
                await self.repository.append_opportunity(opp)
                written += 1
        except PersistenceError as exc:
            log.warning("Persist store failed", scan_id=scan.scan_id, error=str(exc))
            warnings.append(f"Persist failed: {exc}")
        stages.finish(
            "persist_store",
            start,
            {"scan_id": scan.scan_id, "opps": len(opportunities)},
            {"written": written},
            warnings,
        )
