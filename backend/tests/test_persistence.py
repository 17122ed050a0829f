"""Tests for the SQLite-backed radar repository."""

import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from models.database import Base, LLMRowRecord, OpportunityRecord, ScanRecord, TopicRecord
from models.opportunity import LLMSummary, Opportunity
from models.scan import Scan, ScanMetrics
from services.errors import PersistenceError
from services.news.provider import NewsItem
from services.persistence import RadarRepository


async def _build_session_factory(tmp_path: Path, create_tables: bool = True):
    db_path = tmp_path / "radar_test.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    if create_tables:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    session_factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    return engine, session_factory


def _news(title, published_at="2026-03-01T10:00:00Z"):
    return NewsItem(
        title=title,
        url=f"https://news.example/{title}",
        published_at=published_at,
        fetched_at="2026-03-01T10:05:00Z",
        source="wire",
        snippet="...",
    )


def _opp():
    return Opportunity(
        opp_id="op_aaa",
        topic_key="rates",
        scan_id="sc_aaa",
        strategy_id="s_alpha",
        snapshot_id="snap_1",
        score=61.25,
        score_baseline=61.25,
        llm_provider="mock",
        llm_model="mock-v1",
        llm_summary="[Mock] ok",
        llm_tags=["mock"],
    )


@pytest.mark.asyncio
async def test_append_topic_counts_scans(tmp_path):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        repo = RadarRepository(session_factory)
        await repo.append_topic("rates")
        await repo.append_topic("rates")
        await repo.append_topic("fx")

        async with session_factory() as session:
            rows = {
                row.topic_key: row.scan_count
                for row in (await session.execute(select(TopicRecord))).scalars().all()
            }
        assert rows == {"rates": 2, "fx": 1}
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_append_scan_and_opportunity(tmp_path):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        repo = RadarRepository(session_factory)
        scan = Scan(
            scan_id="sc_aaa",
            timestamp=1_800_000_000_000,
            seed=111,
            mode="fast",
            topic_key="rates",
            batch_id="batch_1",
            n_opps_requested=1,
            n_opps_actual=1,
            opp_ids=["op_aaa"],
            metrics=ScanMetrics(cache_miss_count=1),
        )
        await repo.append_scan(scan)
        await repo.append_opportunity(_opp())

        async with session_factory() as session:
            stored_scan = await session.get(ScanRecord, "sc_aaa")
            stored_opp = await session.get(OpportunityRecord, "op_aaa")
        assert stored_scan.batch_id == "batch_1"
        assert stored_scan.metrics["cache_miss_count"] == 1
        assert stored_opp.score_baseline == 61.25
        assert stored_opp.llm_tags == ["mock"]

        with pytest.raises(PersistenceError):
            await repo.append_scan(scan)
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_news_dedup_by_content_hash(tmp_path):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        repo = RadarRepository(session_factory)
        assert await repo.append_news("rates", _news("Fed holds")) is True
        assert await repo.append_news("rates", _news("Fed holds")) is False
        # Same title, different publish time is a different article.
        assert await repo.append_news("rates", _news("Fed holds", "2026-03-02T10:00:00Z")) is True
        assert await repo.append_news("fx", _news("Yen slides")) is True

        recent = await repo.get_recent_news("rates", limit=3)
        assert len(recent) == 2
        assert recent[0]["id"] > recent[1]["id"]
        assert {item["title"] for item in recent} == {"Fed holds"}
        assert recent[0]["credibility"] == 0.8
        assert await repo.get_recent_news("unknown") == []
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_llm_row_keeps_prompt_hash_and_news_refs(tmp_path):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        repo = RadarRepository(session_factory)
        result = LLMSummary(provider="mock", model="mock-v1", summary="s", confidence=0.7, tags=["mock"])
        await repo.append_llm_row(_opp(), result, "abcd1234", [3, 2])

        async with session_factory() as session:
            row = (await session.execute(select(LLMRowRecord))).scalars().one()
        assert row.prompt_hash == "abcd1234"
        assert row.news_refs == [3, 2]
        assert row.topic_key == "rates"
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_timeline_merges_sources_newest_first(tmp_path):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        repo = RadarRepository(session_factory)
        await repo.append_monitor_snapshot("op_aaa", "rates", 61.25, "mock_run", 1_000_000)
        await repo.append_monitor_snapshot("op_aaa", "other", 10.0, "mock_run", 1_000_000)
        await repo.append_llm_row(
            _opp(), LLMSummary(provider="mock", model="mock-v1", summary="s"), "abcd1234"
        )
        await repo.append_reeval_event(
            event_id="rev_1_op_aaa",
            opp_id="op_aaa",
            topic_key="rates",
            trigger={"reason": "ABS_DIFF >= 10"},
            before={"prob": 61.25},
            after={"prob": 75.0},
            ts_ms=4_000_000_000_000,
        )

        timeline = await repo.get_timeline("rates")

        assert [entry["type"] for entry in timeline] == ["reeval", "llm", "snapshot"]
        assert timeline[0]["after"] == {"prob": 75.0}
        assert timeline[2]["prob"] == 61.25
        assert len(await repo.get_timeline("rates", limit=1)) == 1
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_missing_tables_raise_persistence_error(tmp_path):
    engine, session_factory = await _build_session_factory(tmp_path, create_tables=False)
    try:
        repo = RadarRepository(session_factory)
        with pytest.raises(PersistenceError) as excinfo:
            await repo.append_topic("rates")
        assert excinfo.value.operation == "append_topic"

        with pytest.raises(PersistenceError):
            await repo.append_monitor_snapshot("op_aaa", "rates", 1.0, "monitor_tick", 0)
        with pytest.raises(PersistenceError):
            await repo.get_timeline("rates")
    finally:
        await engine.dispose()
