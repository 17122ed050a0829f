"""
Batch fan-out of scans across topics.

Topics are split into chunks of ``concurrency``; the pipelines of one chunk
run concurrently and the next chunk starts only once the whole chunk has
resolved. A failing topic is reported in its own result and never affects
its siblings or the batch.
"""

from __future__ import annotations

import asyncio
import hashlib
from typing import Callable, Optional, Union

from config import settings
from models.batch import (
    BatchErrorCode,
    BatchRequest,
    BatchResult,
    BatchSummary,
    TopicOverride,
    TopicResult,
    TopicStatus,
)
from models.scan import ScanRequest
from services.errors import ValidationError
from services.radar_state import RadarState
from services.scan_pipeline import ScanPipeline
from utils.logger import batch_logger
from utils.utcnow import now_ms as wall_clock_ms

INJECTED_FAILURE_MESSAGE = "Simulated failure for testing"

# Fields a topic override or the batch can set on the underlying scan.
_MERGED_FIELDS = (
    "n_opps",
    "seed",
    "mode",
    "dedup_window_sec",
    "dedup_mode",
    "cache_ttl_sec",
    "llm_provider",
    "with_news",
    "persist",
)


def clamp_concurrency(value: Optional[int]) -> int:
    if value is None:
        return settings.BATCH_DEFAULT_CONCURRENCY
    return max(1, min(int(value), settings.BATCH_MAX_CONCURRENCY))


def _normalize_topic(topic: Union[str, TopicOverride]) -> TopicOverride:
    if isinstance(topic, TopicOverride):
        if not topic.topic_key.strip():
            raise ValidationError("Topic entries need a non-empty topic_key", field="topics")
        return topic
    if isinstance(topic, str) and topic.strip():
        return TopicOverride(topic_key=topic.strip())
    raise ValidationError("Topic entries must be non-empty strings or objects", field="topics")


def merge_scan_request(
    topic: TopicOverride, request: BatchRequest, batch_id: str
) -> ScanRequest:
    """Per-topic value, else batch value, else the pipeline default."""
    values: dict = {"topic_key": topic.topic_key, "batch_id": batch_id}
    for name in _MERGED_FIELDS:
        value = getattr(topic, name)
        if value is None:
            value = getattr(request, name)
        if value is not None:
            values[name] = value
    return ScanRequest(**values)


class BatchRunner:
    def __init__(
        self,
        state: RadarState,
        pipeline: ScanPipeline,
        clock: Callable[[], int] = wall_clock_ms,
    ):
        self.state = state
        self.pipeline = pipeline
        self.clock = clock

    async def _run_topic(
        self,
        topic: TopicOverride,
        request: BatchRequest,
        batch_id: str,
        now_ms: Optional[int],
    ) -> TopicResult:
        start = self.clock()
        log = batch_logger.with_context(batch_id=batch_id, topic_key=topic.topic_key)

        if topic.injects_failure:
            log.info("Injected topic failure")
            return TopicResult(
                topic_key=topic.topic_key,
                topic_status=TopicStatus.FAILED,
                duration_ms=self.clock() - start,
                error=INJECTED_FAILURE_MESSAGE,
                error_code=BatchErrorCode.MOCK_INJECTED_FAILURE.value,
            )

        try:
            scan_request = merge_scan_request(topic, request, batch_id)
            result = await self.pipeline.run(scan_request, now_ms=now_ms)
        except Exception as exc:
            log.warning("Topic scan failed", error=str(exc))
            return TopicResult(
                topic_key=topic.topic_key,
                topic_status=TopicStatus.FAILED,
                duration_ms=self.clock() - start,
                error=str(exc),
                error_code=BatchErrorCode.INTERNAL_ERROR.value,
            )

        return TopicResult(
            topic_key=topic.topic_key,
            topic_status=TopicStatus.SKIPPED if result.skipped else TopicStatus.OK,
            scan_id=result.scan.scan_id,
            opps_count=len(result.opportunities),
            duration_ms=self.clock() - start,
            metrics=result.metrics,
            stage_logs=result.stage_logs,
        )

    async def run(self, request: BatchRequest, now_ms: Optional[int] = None) -> BatchResult:
        if not request.topics:
            raise ValidationError("topics must be a non-empty list", field="topics")
        topics = [_normalize_topic(topic) for topic in request.topics]
        concurrency = clamp_concurrency(request.concurrency)

        started_at = self.clock()
        batch_id = "batch_" + hashlib.sha256(
            f"{started_at}:{self.state.next_sequence()}".encode("utf-8")
        ).hexdigest()[:12]
        batch_logger.info(
            "Batch started",
            batch_id=batch_id,
            topics=len(topics),
            concurrency=concurrency,
        )

        results: list[TopicResult] = []
        for offset in range(0, len(topics), concurrency):
            chunk = topics[offset : offset + concurrency]
            chunk_results = await asyncio.gather(
                *(self._run_topic(topic, request, batch_id, now_ms) for topic in chunk)
            )
            results.extend(chunk_results)

        finished_at = self.clock()
        summary = BatchSummary(
            batch_id=batch_id,
            total_topics=len(topics),
            success_count=sum(1 for r in results if r.topic_status == TopicStatus.OK),
            failed_count=sum(1 for r in results if r.topic_status == TopicStatus.FAILED),
            skipped_count=sum(1 for r in results if r.topic_status == TopicStatus.SKIPPED),
            total_duration_ms=finished_at - started_at,
            start_ts=started_at,
            end_ts=finished_at,
        )
        batch = BatchResult(
            batch_id=batch_id,
            started_at=started_at,
            finished_at=finished_at,
            duration_ms=finished_at - started_at,
            concurrency_used=concurrency,
            results=results,
            summary_metrics=summary,
        )
        self.state.batches[batch_id] = batch
        batch_logger.info(
            "Batch finished",
            batch_id=batch_id,
            success=summary.success_count,
            failed=summary.failed_count,
            skipped=summary.skipped_count,
            duration_ms=summary.total_duration_ms,
        )
        return batch
