"""
Monitor engine: lazily tracks a probability per opportunity and, on demand,
applies a simulated random-walk move to each tracked opportunity.
"""

from __future__ import annotations

import random
from typing import Callable, Optional

from config import settings
from models.monitor import MonitorState, PriceMove, TickResult
from models.opportunity import Opportunity
from models.scan import StageLog
from services.errors import PersistenceError, ValidationError
from services.persistence import RadarRepository
from services.radar_state import RadarState
from utils.logger import monitor_logger
from utils.utcnow import now_ms as wall_clock_ms

DEFAULT_PROB = 50.0
DEFAULT_TOP_N = 5
CHANGE_EPSILON = 0.01
SNAPSHOT_SOURCE_MONITOR = "monitor_tick"


def _initial_prob(opp: Opportunity) -> float:
    if opp.score_baseline is not None:
        return opp.score_baseline
    if opp.score is not None:
        return opp.score
    return DEFAULT_PROB


class MonitorEngine:
    def __init__(
        self,
        state: RadarState,
        repository: Optional[RadarRepository] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], int] = wall_clock_ms,
    ):
        self.state = state
        self.repository = repository or RadarRepository()
        self.rng = rng or random.Random()
        self.clock = clock

    def select_universe(self, universe: str) -> list[Opportunity]:
        """Resolve ``all``, ``scan:<scan_id>`` or ``top:<n>`` to opportunities."""
        universe = (universe or "all").strip()
        if universe == "all":
            return list(self.state.opportunities.values())
        if universe.startswith("scan:"):
            return self.state.opportunities_for_scan(universe[len("scan:") :])
        if universe.startswith("top:"):
            try:
                n = int(universe[len("top:") :])
            except ValueError:
                n = DEFAULT_TOP_N
            if n < 1:
                n = DEFAULT_TOP_N
            return list(self.state.opportunities.values())[:n]
        raise ValidationError(
            f"Unknown universe '{universe}'. Use all, scan:<id> or top:<n>.", field="universe"
        )

    async def tick(
        self,
        universe: str = "all",
        simulate_price_move: bool = False,
        now_ms: Optional[int] = None,
    ) -> TickResult:
        targets = self.select_universe(universe)
        ts = now_ms if now_ms is not None else self.clock()
        max_step = settings.MONITOR_MAX_STEP

        async with self.state.monitor_lock:
            start = self.clock()
            updated = 0
            moves: list[PriceMove] = []
            for opp in targets:
                record = self.state.monitor.get(opp.opp_id)
                if record is None:
                    prob = _initial_prob(opp)
                    record = MonitorState(baseline_prob=prob, last_prob=prob, last_seen_ts=ts)
                    self.state.monitor[opp.opp_id] = record

                previous = record.last_prob
                if simulate_price_move:
                    delta = (self.rng.random() - 0.5) * 2 * max_step
                    new_prob = min(100.0, max(0.0, previous + delta))
                    record.last_prob = round(new_prob, 2)
                    if abs(record.last_prob - previous) > CHANGE_EPSILON:
                        moves.append(
                            PriceMove(
                                opp_id=opp.opp_id,
                                delta=round(delta, 2),
                                new_prob=record.last_prob,
                            )
                        )
                record.last_seen_ts = ts
                updated += 1

            warnings: list[str] = []
            topic_by_opp = {opp.opp_id: opp.topic_key for opp in targets}
            for move in moves:
                try:
                    await self.repository.append_monitor_snapshot(
                        move.opp_id,
                        topic_by_opp.get(move.opp_id),
                        move.new_prob,
                        SNAPSHOT_SOURCE_MONITOR,
                        ts,
                    )
                except PersistenceError as exc:
                    monitor_logger.warning(
                        "Monitor snapshot write failed", opp_id=move.opp_id, error=str(exc)
                    )
                    warnings.append(f"snapshot {move.opp_id}: {exc}")

            moves.sort(key=lambda move: abs(move.delta), reverse=True)
            end = self.clock()
            stage = StageLog(
                stage_id="monitor_tick",
                start_ts=start,
                end_ts=end,
                dur_ms=max(0, end - start),
                input_summary={"universe": universe, "simulate_price_move": simulate_price_move},
                output_summary={"updated": updated, "changed": len(moves)},
                warnings=warnings,
            )

        monitor_logger.info(
            "Monitor tick",
            universe=universe,
            updated=updated,
            changed=len(moves),
        )
        return TickResult(
            updated_count=updated,
            changed_count=len(moves),
            top_moves=moves[: settings.MONITOR_TOP_MOVES_LIMIT],
            stage_logs=[stage],
        )
