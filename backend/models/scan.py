from pydantic import BaseModel, Field, field_validator
from typing import Any, Optional
from enum import Enum

from models.opportunity import Opportunity


class ScanStatus(str, Enum):
    OK = "ok"
    SKIPPED = "skipped"


class ScanMode(str, Enum):
    FAST = "fast"
    NORMAL = "normal"


class DedupMode(str, Enum):
    RUN = "run"
    SKIP = "skip"


class StageLog(BaseModel):
    """Timing and summary record for one pipeline stage."""

    stage_id: str
    start_ts: int
    end_ts: int
    dur_ms: int
    input_summary: dict[str, Any] = {}
    output_summary: dict[str, Any] = {}
    warnings: list[str] = []
    errors: list[str] = []


class ScanMetrics(BaseModel):
    stage_ms: dict[str, int] = {}
    persist_enabled: bool = True
    truncated: bool = False
    n_opps_requested: int = 0
    n_opps_actual: int = 0
    seed: int = 0
    mode: str = ScanMode.FAST.value
    topic_key: str = ""
    dedup_skipped_count: int = 0
    cache_hit_count: int = 0
    cache_miss_count: int = 0
    total_ms: int = 0


class Scan(BaseModel):
    scan_id: str
    timestamp: int  # epoch ms
    seed: int
    mode: str
    topic_key: str
    status: ScanStatus = ScanStatus.OK
    batch_id: Optional[str] = None
    n_opps_requested: int = 0
    n_opps_actual: int = 0
    duration_ms: int = 0
    opp_ids: list[str] = []
    metrics: ScanMetrics = Field(default_factory=ScanMetrics)
    stage_logs: list[StageLog] = []


class ScanRequest(BaseModel):
    """Inputs to one scan; ``None`` fields fall back to configured defaults."""

    seed: Optional[int] = None
    n_opps: Optional[int] = None
    max_n_opps: Optional[int] = None
    mode: Optional[str] = None
    topic_key: Optional[str] = None
    dedup_window_sec: int = 0
    dedup_mode: str = DedupMode.RUN.value
    cache_ttl_sec: Optional[int] = None
    llm_provider: Optional[str] = None
    persist: bool = True
    with_news: bool = False
    batch_id: Optional[str] = None

    @field_validator("topic_key", mode="before")
    @classmethod
    def blank_topic_is_default(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


class ScanResult(BaseModel):
    scan: Scan
    opportunities: list[Opportunity] = []
    from_scan_id: Optional[str] = None
    to_scan_id: Optional[str] = None
    metrics: ScanMetrics
    stage_logs: list[StageLog] = []
    skipped: bool = False
    original_scan_id: Optional[str] = None


class ScanReplay(BaseModel):
    scan: Scan
    opportunities: list[Opportunity] = []
    missing_opp_ids: list[str] = []


class ScanDiff(BaseModel):
    from_scan_id: str
    to_scan_id: str
    added_opp_ids: list[str] = []
    removed_opp_ids: list[str] = []
