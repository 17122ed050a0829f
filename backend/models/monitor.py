from pydantic import BaseModel, Field
from typing import Optional
from enum import Enum

from models.scan import StageLog


class TriggerState(str, Enum):
    ARMED = "ARMED"
    TRIGGERED = "TRIGGERED"
    COOLDOWN = "COOLDOWN"


class SkipReason(str, Enum):
    COOLDOWN = "COOLDOWN"
    ALREADY_TRIGGERED = "ALREADY_TRIGGERED"
    MAX_JOBS = "MAX_JOBS"


class ReevalStatus(str, Enum):
    COMPLETED = "COMPLETED"
    SKIPPED_OR_DRY_RUN = "SKIPPED_OR_DRY_RUN"


class MonitorState(BaseModel):
    """Per-opportunity monitor record, created on first tick."""

    baseline_prob: float
    last_prob: float
    last_seen_ts: int
    last_reeval_ts: int = 0
    trigger_state: TriggerState = TriggerState.ARMED
    last_trigger_reason: Optional[str] = None

    @property
    def diff(self) -> float:
        return abs(self.last_prob - self.baseline_prob)


class PriceMove(BaseModel):
    opp_id: str
    delta: float
    new_prob: float


class TickRequest(BaseModel):
    universe: str = "all"
    simulate_price_move: bool = False


class TickResult(BaseModel):
    updated_count: int = 0
    changed_count: int = 0
    top_moves: list[PriceMove] = []
    stage_logs: list[StageLog] = []


class ReevalThresholds(BaseModel):
    abs_threshold: float = Field(default=10.0, ge=0)
    rel_threshold: float = Field(default=0.2, ge=0)
    staleness_min: float = Field(default=60.0, ge=0)
    hysteresis_reset: float = Field(default=2.0, ge=0)
    max_jobs: int = Field(default=10, ge=0)


class ReevalJob(BaseModel):
    option_id: str
    reason: str
    from_prob: float
    to_prob: float


class SkippedCandidate(BaseModel):
    opp_id: str
    reason: str


class PlanResult(BaseModel):
    jobs: list[ReevalJob] = []
    skipped: list[SkippedCandidate] = []
    stage_logs: list[StageLog] = []


class RunRequest(BaseModel):
    jobs: list[ReevalJob] = []
    provider: str = "mock"
    dry_run: bool = False


class ReevalOutcome(BaseModel):
    option_id: str
    status: ReevalStatus
    new_baseline: Optional[float] = None
    llm_summary: Optional[str] = None
    linked_batch_id: Optional[str] = None


class RunResult(BaseModel):
    reevaluated_count: int = 0
    results: list[ReevalOutcome] = []
    stage_logs: list[StageLog] = []
