from pydantic import BaseModel
from typing import Any, Optional, Union
from enum import Enum

from models.scan import ScanMetrics, StageLog


FAIL_SOURCE_SENTINEL = "__FAIL__"


class TopicStatus(str, Enum):
    OK = "OK"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class BatchErrorCode(str, Enum):
    MOCK_INJECTED_FAILURE = "MOCK_INJECTED_FAILURE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class TopicOverride(BaseModel):
    """Per-topic settings; any field left ``None`` inherits the batch value."""

    topic_key: str
    n_opps: Optional[int] = None
    seed: Optional[int] = None
    mode: Optional[str] = None
    dedup_window_sec: Optional[int] = None
    dedup_mode: Optional[str] = None
    cache_ttl_sec: Optional[int] = None
    llm_provider: Optional[str] = None
    with_news: Optional[bool] = None
    persist: Optional[bool] = None
    simulate_error: bool = False
    source: Optional[str] = None

    @property
    def injects_failure(self) -> bool:
        return self.simulate_error is True or self.source == FAIL_SOURCE_SENTINEL


class BatchRequest(BaseModel):
    topics: list[Union[str, TopicOverride]] = []
    concurrency: Optional[int] = None
    n_opps: Optional[int] = None
    seed: Optional[int] = None
    mode: Optional[str] = None
    dedup_window_sec: Optional[int] = None
    dedup_mode: Optional[str] = None
    cache_ttl_sec: Optional[int] = None
    llm_provider: Optional[str] = None
    with_news: Optional[bool] = None
    persist: Optional[bool] = None


class TopicResult(BaseModel):
    topic_key: str
    topic_status: TopicStatus
    scan_id: Optional[str] = None
    opps_count: int = 0
    duration_ms: int = 0
    metrics: Optional[ScanMetrics] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    stage_logs: list[StageLog] = []


class BatchSummary(BaseModel):
    batch_id: str
    total_topics: int
    success_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    total_duration_ms: int = 0
    start_ts: int
    end_ts: int


class BatchResult(BaseModel):
    batch_id: str
    started_at: int
    finished_at: int
    duration_ms: int
    concurrency_used: int
    results: list[TopicResult] = []
    summary_metrics: BatchSummary

    def result_for(self, topic_key: str) -> Optional[TopicResult]:
        for result in self.results:
            if result.topic_key == topic_key:
                return result
        return None

    def as_export(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
