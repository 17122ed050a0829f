"""Tests for batch fan-out across topics."""

import asyncio
import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import pytest

from models.batch import BatchRequest, TopicOverride, TopicStatus
from models.scan import ScanMetrics, ScanRequest, ScanResult, Scan
from services.batch_runner import BatchRunner, clamp_concurrency, merge_scan_request
from services.errors import ValidationError
from services.radar_state import RadarState


class _TrackingPipeline:
    """Pipeline double that records peak parallelism."""

    def __init__(self, fail_topics=()):
        self.active = 0
        self.peak = 0
        self.requests = []
        self.fail_topics = set(fail_topics)

    async def run(self, request, now_ms=None):
        self.requests.append(request)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(0.01)
            if request.topic_key in self.fail_topics:
                raise RuntimeError(f"boom {request.topic_key}")
            scan = Scan(
                scan_id=f"sc_{request.topic_key}",
                timestamp=0,
                seed=request.seed or 0,
                mode="fast",
                topic_key=request.topic_key,
            )
            return ScanResult(scan=scan, metrics=ScanMetrics())
        finally:
            self.active -= 1


def test_clamp_concurrency():
    assert clamp_concurrency(None) == 4
    assert clamp_concurrency(0) == 1
    assert clamp_concurrency(-2) == 1
    assert clamp_concurrency(3) == 3
    assert clamp_concurrency(100) == 16


def test_merge_prefers_topic_then_batch():
    request = BatchRequest(topics=["x"], n_opps=7, seed=3, persist=False)
    topic = TopicOverride(topic_key="x", n_opps=2)

    merged = merge_scan_request(topic, request, "batch_abc")

    assert merged.topic_key == "x"
    assert merged.batch_id == "batch_abc"
    assert merged.n_opps == 2
    assert merged.seed == 3
    assert merged.persist is False
    # Untouched fields keep the scan defaults.
    assert merged.mode is None
    assert merged.with_news is False


@pytest.mark.asyncio
async def test_failure_injection_is_isolated(radar):
    request = BatchRequest(
        topics=[
            "rates",
            TopicOverride(topic_key="broken", simulate_error=True),
            TopicOverride(topic_key="sentinel", source="__FAIL__"),
            "fx",
        ],
        n_opps=2,
    )

    result = await radar.run_batch(request)

    assert [r.topic_key for r in result.results] == ["rates", "broken", "sentinel", "fx"]
    broken = result.result_for("broken")
    assert broken.topic_status == TopicStatus.FAILED
    assert broken.error == "Simulated failure for testing"
    assert broken.error_code == "MOCK_INJECTED_FAILURE"
    assert result.result_for("sentinel").error_code == "MOCK_INJECTED_FAILURE"
    for key in ("rates", "fx"):
        ok = result.result_for(key)
        assert ok.topic_status == TopicStatus.OK
        assert ok.opps_count == 2
        assert ok.scan_id.startswith("sc_")

    summary = result.summary_metrics
    assert summary.total_topics == 4
    assert summary.success_count == 2
    assert summary.failed_count == 2
    assert summary.skipped_count == 0
    assert summary.batch_id == result.batch_id
    assert result.batch_id.startswith("batch_")


@pytest.mark.asyncio
async def test_pipeline_exception_maps_to_internal_error():
    pipeline = _TrackingPipeline(fail_topics={"b"})
    runner = BatchRunner(RadarState(), pipeline)

    result = await runner.run(BatchRequest(topics=["a", "b", "c"]))

    failed = result.result_for("b")
    assert failed.topic_status == TopicStatus.FAILED
    assert failed.error_code == "INTERNAL_ERROR"
    assert failed.error == "boom b"
    assert result.summary_metrics.success_count == 2


@pytest.mark.asyncio
async def test_bounded_parallelism():
    pipeline = _TrackingPipeline()
    runner = BatchRunner(RadarState(), pipeline)

    result = await runner.run(BatchRequest(topics=[f"t{i}" for i in range(7)], concurrency=3))

    assert result.concurrency_used == 3
    assert pipeline.peak == 3
    assert len(pipeline.requests) == 7
    assert [r.topic_key for r in result.results] == [f"t{i}" for i in range(7)]


@pytest.mark.asyncio
async def test_concurrency_one_runs_sequentially():
    pipeline = _TrackingPipeline()
    runner = BatchRunner(RadarState(), pipeline)

    await runner.run(BatchRequest(topics=["a", "b", "c"], concurrency=0))

    assert pipeline.peak == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("topics", [[], ["  "], [""]])
async def test_invalid_topics_raise(radar, topics):
    with pytest.raises(ValidationError):
        await radar.run_batch(BatchRequest(topics=topics))
    assert radar.state.batches == {}


@pytest.mark.asyncio
async def test_dedup_skip_reported_as_skipped(radar):
    await radar.run_scan(ScanRequest(topic_key="rates", n_opps=1))

    result = await radar.run_batch(
        BatchRequest(topics=["rates", "fx"], dedup_window_sec=600, dedup_mode="skip", n_opps=1)
    )

    assert result.result_for("rates").topic_status == TopicStatus.SKIPPED
    assert result.result_for("fx").topic_status == TopicStatus.OK
    assert result.summary_metrics.skipped_count == 1


@pytest.mark.asyncio
async def test_batch_id_flows_to_scans_and_dataset(radar):
    result = await radar.run_batch(BatchRequest(topics=["rates", "fx"], n_opps=2))

    batch_scans = [scan for scan in radar.state.scans if scan.batch_id == result.batch_id]
    assert len(batch_scans) == 2
    rows = radar.state.dataset_rows_for(result.batch_id)
    assert len(rows) == 4
    assert radar.state.batches[result.batch_id] is result
    exported = result.as_export()
    assert exported["batch_id"] == result.batch_id
    assert len(exported["results"]) == 2


@pytest.mark.asyncio
async def test_failure_isolated_across_chunk_boundary(radar):
    request = BatchRequest(
        topics=["alpha", TopicOverride(topic_key="beta", simulate_error=True), "gamma"],
        concurrency=2,
        n_opps=2,
    )

    result = await radar.run_batch(request)

    assert result.concurrency_used == 2
    assert [r.topic_status for r in result.results] == [
        TopicStatus.OK,
        TopicStatus.FAILED,
        TopicStatus.OK,
    ]
    assert result.result_for("gamma").opps_count == 2
    assert result.summary_metrics.success_count == 2
    assert result.summary_metrics.failed_count == 1
