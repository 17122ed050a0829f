import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import pytest

from models.scan import Scan, ScanRequest, ScanStatus
from services.dedup import DedupWindow


def _scan(scan_id: str, topic: str, ts: int) -> Scan:
    return Scan(scan_id=scan_id, timestamp=ts, seed=1, mode="fast", topic_key=topic)


def test_find_recent_returns_newest_matching_topic():
    scans = [_scan("old", "t", 1_000), _scan("other", "u", 5_000), _scan("new", "t", 4_000)]
    found = DedupWindow.find_recent(scans, "t", window_sec=10, now_ms=6_000)
    assert found is not None
    assert found.scan_id == "new"


def test_find_recent_ignores_scans_outside_window():
    scans = [_scan("old", "t", 1_000)]
    assert DedupWindow.find_recent(scans, "t", window_sec=1, now_ms=2_000) is None
    assert DedupWindow.find_recent(scans, "t", window_sec=0, now_ms=1_500) is None


def test_only_skip_mode_suppresses():
    scans = [_scan("a", "t", 1_000)]
    assert DedupWindow.should_skip(scans, "t", 60, "skip", 2_000).scan_id == "a"
    assert DedupWindow.should_skip(scans, "t", 60, "run", 2_000) is None
    assert DedupWindow.should_skip(scans, "t", 60, "anything", 2_000) is None


@pytest.mark.asyncio
async def test_second_scan_in_window_is_skipped(radar, base_now):
    request = ScanRequest(topic_key="fx", n_opps=3, dedup_window_sec=60, dedup_mode="skip")

    first = await radar.run_scan(request, now_ms=base_now)
    second = await radar.run_scan(request, now_ms=base_now + 5_000)

    assert first.skipped is False
    assert second.skipped is True
    assert second.scan.status == ScanStatus.SKIPPED
    assert second.scan.scan_id.startswith("skipped_")
    assert second.opportunities == []
    assert second.metrics.dedup_skipped_count == 1
    assert second.original_scan_id == first.scan.scan_id

    assert [log.stage_id for log in second.stage_logs] == ["dedup_check"]
    dedup_log = second.stage_logs[0]
    assert dedup_log.output_summary == {
        "skipped": True,
        "reason": "dedup_hit",
        "original_scan_id": first.scan.scan_id,
    }
    assert dedup_log.warnings == ["Skipped due to dedup (window: 60s)"]

    # Skipped scans never enter history.
    assert [scan.scan_id for scan in radar.state.scans] == [first.scan.scan_id]


@pytest.mark.asyncio
async def test_scan_after_window_runs(radar, base_now):
    request = ScanRequest(topic_key="fx", n_opps=1, dedup_window_sec=10, dedup_mode="skip")

    await radar.run_scan(request, now_ms=base_now)
    later = await radar.run_scan(request, now_ms=base_now + 10_001)

    assert later.skipped is False
    assert len(radar.state.scans) == 2


@pytest.mark.asyncio
async def test_run_mode_ignores_recent_scan(radar, base_now):
    request = ScanRequest(topic_key="fx", n_opps=1, dedup_window_sec=600, dedup_mode="run")

    await radar.run_scan(request, now_ms=base_now)
    again = await radar.run_scan(request, now_ms=base_now + 1_000)

    assert again.skipped is False
    assert again.metrics.dedup_skipped_count == 0
