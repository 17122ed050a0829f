from .opportunity import (
    LLMSummary,
    MarketSnapshot,
    Opportunity,
    ScoreComponents,
    Strategy,
    TradeableState,
)
from .scan import (
    Scan,
    ScanDiff,
    ScanMetrics,
    ScanReplay,
    ScanRequest,
    ScanResult,
    ScanStatus,
    StageLog,
)
from .batch import BatchRequest, BatchResult, TopicOverride, TopicResult, TopicStatus
from .monitor import (
    MonitorState,
    PlanResult,
    ReevalJob,
    ReevalThresholds,
    RunResult,
    TickResult,
    TriggerState,
)

__all__ = [
    "LLMSummary",
    "MarketSnapshot",
    "Opportunity",
    "ScoreComponents",
    "Strategy",
    "TradeableState",
    "Scan",
    "ScanDiff",
    "ScanMetrics",
    "ScanReplay",
    "ScanRequest",
    "ScanResult",
    "ScanStatus",
    "StageLog",
    "BatchRequest",
    "BatchResult",
    "TopicOverride",
    "TopicResult",
    "TopicStatus",
    "MonitorState",
    "PlanResult",
    "ReevalJob",
    "ReevalThresholds",
    "RunResult",
    "TickResult",
    "TriggerState",
]
