"""Facade wiring one ``RadarState`` into every radar component."""

from __future__ import annotations

import random
from typing import Any, Optional

from models.batch import BatchRequest, BatchResult
from models.monitor import PlanResult, ReevalJob, ReevalThresholds, RunResult, TickResult
from models.scan import ScanRequest, ScanResult
from services.batch_runner import BatchRunner
from services.fixtures import FixtureSet, load_fixtures
from services.monitor import MonitorEngine
from services.persistence import RadarRepository
from services.radar_state import RadarState
from services.reeval import ReevalExecutor, ReevalPlanner
from services.scan_pipeline import ScanPipeline


class RadarService:
    def __init__(
        self,
        fixtures: Optional[FixtureSet] = None,
        repository: Optional[RadarRepository] = None,
        state: Optional[RadarState] = None,
        monitor_rng: Optional[random.Random] = None,
        **pipeline_kwargs: Any,
    ):
        self.state = state or RadarState()
        self.fixtures = fixtures if fixtures is not None else load_fixtures()
        self.repository = repository or RadarRepository()
        self.pipeline = ScanPipeline(self.state, self.fixtures, self.repository, **pipeline_kwargs)
        self.batch_runner = BatchRunner(self.state, self.pipeline)
        self.monitor = MonitorEngine(self.state, self.repository, rng=monitor_rng)
        self.planner = ReevalPlanner(self.state)
        self.executor = ReevalExecutor(self.state, self.repository)

    async def run_scan(self, request: ScanRequest, now_ms: Optional[int] = None) -> ScanResult:
        return await self.pipeline.run(request, now_ms=now_ms)

    async def run_batch(self, request: BatchRequest, now_ms: Optional[int] = None) -> BatchResult:
        return await self.batch_runner.run(request, now_ms=now_ms)

    async def tick(
        self, universe: str = "all", simulate_price_move: bool = False, now_ms: Optional[int] = None
    ) -> TickResult:
        return await self.monitor.tick(universe, simulate_price_move, now_ms=now_ms)

    async def plan(
        self, thresholds: Optional[ReevalThresholds] = None, now_ms: Optional[int] = None
    ) -> PlanResult:
        return await self.planner.plan(thresholds, now_ms=now_ms)

    async def execute(
        self,
        jobs: list[ReevalJob],
        provider: str = "mock",
        dry_run: bool = False,
        now_ms: Optional[int] = None,
    ) -> RunResult:
        return await self.executor.run(jobs, provider=provider, dry_run=dry_run, now_ms=now_ms)

    def monitor_snapshot(self) -> dict[str, dict[str, Any]]:
        return {
            opp_id: record.model_dump(mode="json")
            for opp_id, record in self.state.monitor.items()
        }
