"""
Durable append-only log of topics, scans, opportunities, monitor snapshots,
LLM rows, reeval events and news items.

Every write raises ``PersistenceError`` on failure; callers in the scan,
monitor and reeval paths log and discard it, so persistence never fails an
in-memory operation.
"""

from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError

from models.database import (
    AsyncSessionLocal,
    LLMRowRecord,
    NewsItemRecord,
    OpportunityRecord,
    OptionSnapshotRecord,
    ReevalEventRecord,
    ScanRecord,
    TopicRecord,
)
from models.opportunity import LLMSummary, Opportunity
from models.scan import Scan
from services.errors import PersistenceError
from services.news.provider import NewsItem
from utils.logger import get_logger
from utils.utcnow import ms_to_datetime, utcnow

logger = get_logger("persistence")

NEWS_DEFAULT_CREDIBILITY = 0.8
TIMELINE_DEFAULT_LIMIT = 50


class RadarRepository:
    def __init__(self, session_factory=None):
        self._session_factory = session_factory or AsyncSessionLocal

    async def _add(self, operation: str, *records) -> None:
        try:
            async with self._session_factory() as session:
                session.add_all(records)
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(operation, exc) from exc

    # ==================== WRITES ====================

    async def append_topic(self, topic_key: str) -> None:
        now = utcnow()
        stmt = (
            sqlite_insert(TopicRecord)
            .values(topic_key=topic_key, first_seen_at=now, last_seen_at=now, scan_count=1)
            .on_conflict_do_update(
                index_elements=["topic_key"],
                set_={
                    "last_seen_at": now,
                    "scan_count": TopicRecord.scan_count + 1,
                },
            )
        )
        try:
            async with self._session_factory() as session:
                await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError("append_topic", exc) from exc

    async def append_scan(self, scan: Scan) -> None:
        await self._add(
            "append_scan",
            ScanRecord(
                scan_id=scan.scan_id,
                topic_key=scan.topic_key,
                batch_id=scan.batch_id,
                seed=scan.seed,
                mode=scan.mode,
                status=scan.status.value,
                n_opps_requested=scan.n_opps_requested,
                n_opps_actual=scan.n_opps_actual,
                duration_ms=scan.duration_ms,
                metrics=scan.metrics.model_dump(mode="json"),
                stage_logs=[log.model_dump(mode="json") for log in scan.stage_logs],
                created_at=ms_to_datetime(scan.timestamp),
            ),
        )

    async def append_opportunity(self, opp: Opportunity) -> None:
        await self._add(
            "append_opportunity",
            OpportunityRecord(
                opp_id=opp.opp_id,
                scan_id=opp.scan_id,
                topic_key=opp.topic_key,
                strategy_id=opp.strategy_id,
                snapshot_id=opp.snapshot_id,
                score=opp.score,
                score_baseline=opp.score_baseline,
                score_components=opp.score_components.model_dump(),
                tradeable_state=opp.tradeable_state.value,
                tradeable_reason=opp.tradeable_reason,
                llm_provider=opp.llm_provider,
                llm_model=opp.llm_model,
                llm_summary=opp.llm_summary,
                llm_confidence=opp.llm_confidence,
                llm_tags=list(opp.llm_tags),
                llm_error=opp.llm_error,
                created_at=opp.created_at,
            ),
        )

    async def append_monitor_snapshot(
        self,
        opp_id: str,
        topic_key: Optional[str],
        prob: Optional[float],
        source: str,
        ts_ms: Optional[int] = None,
    ) -> None:
        await self._add(
            "append_monitor_snapshot",
            OptionSnapshotRecord(
                opp_id=opp_id,
                topic_key=topic_key,
                prob=prob,
                source=source,
                ts=ms_to_datetime(ts_ms) if ts_ms is not None else utcnow(),
            ),
        )

    async def append_llm_row(
        self,
        opp: Opportunity,
        result: LLMSummary,
        prompt_digest: Optional[str] = None,
        news_refs: Optional[list[Any]] = None,
    ) -> None:
        await self._add(
            "append_llm_row",
            LLMRowRecord(
                opp_id=opp.opp_id,
                scan_id=opp.scan_id,
                topic_key=opp.topic_key,
                provider=result.provider,
                model=result.model,
                prompt_hash=prompt_digest,
                summary=result.summary,
                confidence=result.confidence,
                tags=list(result.tags),
                latency_ms=result.latency_ms,
                error=result.error,
                news_refs=list(news_refs or []),
                ts=utcnow(),
            ),
        )

    async def append_reeval_event(
        self,
        event_id: str,
        opp_id: str,
        topic_key: Optional[str],
        trigger: dict[str, Any],
        before: dict[str, Any],
        after: dict[str, Any],
        batch_id: Optional[str] = None,
        scan_id: Optional[str] = None,
        news_refs: Optional[list[Any]] = None,
        ts_ms: Optional[int] = None,
    ) -> None:
        await self._add(
            "append_reeval_event",
            ReevalEventRecord(
                id=event_id,
                opp_id=opp_id,
                topic_key=topic_key,
                trigger=trigger,
                before=before,
                after=after,
                batch_id=batch_id,
                scan_id=scan_id,
                news_refs=list(news_refs or []),
                ts=ms_to_datetime(ts_ms) if ts_ms is not None else utcnow(),
            ),
        )

    async def append_news(
        self,
        topic_key: str,
        item: NewsItem,
        credibility: float = NEWS_DEFAULT_CREDIBILITY,
    ) -> bool:
        """Insert a news item; returns False when its content hash already exists."""
        stmt = (
            sqlite_insert(NewsItemRecord)
            .values(
                topic_key=topic_key,
                title=item.title,
                url=item.url,
                source=item.source,
                snippet=item.snippet,
                published_at=item.published_at,
                credibility=credibility,
                content_hash=item.content_hash,
                is_stub=False,
                ts=utcnow(),
            )
            .on_conflict_do_nothing(index_elements=["content_hash"])
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError("append_news", exc) from exc
        return bool(result.rowcount)

    # ==================== READS ====================

    async def get_recent_news(self, topic_key: str, limit: int = 3) -> list[dict[str, Any]]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(NewsItemRecord)
                    .where(NewsItemRecord.topic_key == topic_key)
                    .order_by(NewsItemRecord.ts.desc(), NewsItemRecord.id.desc())
                    .limit(limit)
                )
                rows = result.scalars().all()
        except SQLAlchemyError as exc:
            raise PersistenceError("get_recent_news", exc) from exc
        return [
            {
                "id": row.id,
                "title": row.title,
                "url": row.url,
                "source": row.source,
                "published_at": row.published_at,
                "credibility": row.credibility,
            }
            for row in rows
        ]

    async def get_timeline(
        self, topic_key: str, limit: int = TIMELINE_DEFAULT_LIMIT
    ) -> list[dict[str, Any]]:
        """Snapshots, LLM rows and reeval events of a topic, newest first."""
        try:
            async with self._session_factory() as session:
                snapshots = (
                    await session.execute(
                        select(OptionSnapshotRecord)
                        .where(OptionSnapshotRecord.topic_key == topic_key)
                        .order_by(OptionSnapshotRecord.ts.desc())
                        .limit(limit)
                    )
                ).scalars().all()
                llm_rows = (
                    await session.execute(
                        select(LLMRowRecord)
                        .where(LLMRowRecord.topic_key == topic_key)
                        .order_by(LLMRowRecord.ts.desc())
                        .limit(limit)
                    )
                ).scalars().all()
                reevals = (
                    await session.execute(
                        select(ReevalEventRecord)
                        .where(ReevalEventRecord.topic_key == topic_key)
                        .order_by(ReevalEventRecord.ts.desc())
                        .limit(limit)
                    )
                ).scalars().all()
        except SQLAlchemyError as exc:
            raise PersistenceError("get_timeline", exc) from exc

        entries: list[dict[str, Any]] = []
        for row in snapshots:
            entries.append(
                {
                    "type": "snapshot",
                    "opp_id": row.opp_id,
                    "prob": row.prob,
                    "source": row.source,
                    "ts": row.ts,
                }
            )
        for row in llm_rows:
            entries.append(
                {
                    "type": "llm",
                    "opp_id": row.opp_id,
                    "provider": row.provider,
                    "model": row.model,
                    "summary": row.summary,
                    "tags": row.tags or [],
                    "ts": row.ts,
                }
            )
        for row in reevals:
            entries.append(
                {
                    "type": "reeval",
                    "opp_id": row.opp_id,
                    "trigger": row.trigger,
                    "before": row.before,
                    "after": row.after,
                    "ts": row.ts,
                }
            )
        entries.sort(key=lambda entry: entry["ts"], reverse=True)
        return entries[:limit]
