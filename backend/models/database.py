from sqlalchemy import (
    Column,
    String,
    Integer,
    Boolean,
    DateTime,
    Text,
    JSON,
    Index,
    UniqueConstraint,
    event,
)
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import declarative_base, sessionmaker
from utils.utcnow import utcnow
from pathlib import Path
import logging

from config import settings
from models.types import PreciseFloat as Float

logger = logging.getLogger(__name__)

Base = declarative_base()


# ==================== TOPICS & SCANS ====================


class TopicRecord(Base):
    """A topic key seen by at least one scan."""

    __tablename__ = "topics"

    topic_key = Column(String, primary_key=True)
    first_seen_at = Column(DateTime, default=utcnow)
    last_seen_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    scan_count = Column(Integer, nullable=False, default=0)


class ScanRecord(Base):
    __tablename__ = "scans"

    scan_id = Column(String, primary_key=True)
    topic_key = Column(String, nullable=False)
    batch_id = Column(String, nullable=True)
    seed = Column(Integer, nullable=False)
    mode = Column(String, nullable=False)
    status = Column(String, nullable=False, default="ok")
    n_opps_requested = Column(Integer, nullable=False, default=0)
    n_opps_actual = Column(Integer, nullable=False, default=0)
    duration_ms = Column(Integer, nullable=False, default=0)
    metrics = Column(JSON, nullable=True)
    stage_logs = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_scan_topic", "topic_key"),
        Index("idx_scan_batch", "batch_id"),
    )


class OpportunityRecord(Base):
    __tablename__ = "opportunities"

    opp_id = Column(String, primary_key=True)
    scan_id = Column(String, nullable=False)
    topic_key = Column(String, nullable=False)
    strategy_id = Column(String, nullable=False)
    snapshot_id = Column(String, nullable=False)
    score = Column(Float, nullable=True)
    score_baseline = Column(Float, nullable=True)
    score_components = Column(JSON, nullable=True)
    tradeable_state = Column(String, nullable=False)
    tradeable_reason = Column(Text, nullable=True)
    llm_provider = Column(String, nullable=True)
    llm_model = Column(String, nullable=True)
    llm_summary = Column(Text, nullable=True)
    llm_confidence = Column(Float, nullable=True)
    llm_tags = Column(JSON, nullable=True)
    llm_error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_opp_scan", "scan_id"),
        Index("idx_opp_topic", "topic_key"),
    )


# ==================== MONITOR & REEVAL ====================


class OptionSnapshotRecord(Base):
    """Point-in-time probability observed for an opportunity."""

    __tablename__ = "option_snapshots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    opp_id = Column(String, nullable=False)
    topic_key = Column(String, nullable=True)
    prob = Column(Float, nullable=True)
    source = Column(String, nullable=False)
    ts = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_snapshot_opp_ts", "opp_id", "ts"),
        Index("idx_snapshot_topic_ts", "topic_key", "ts"),
    )


class LLMRowRecord(Base):
    """One LLM summary attached to an opportunity during a scan."""

    __tablename__ = "llm_rows"

    id = Column(Integer, primary_key=True, autoincrement=True)
    opp_id = Column(String, nullable=False)
    scan_id = Column(String, nullable=True)
    topic_key = Column(String, nullable=True)
    provider = Column(String, nullable=False)
    model = Column(String, nullable=True)
    prompt_hash = Column(String, nullable=True)
    summary = Column(Text, nullable=True)
    confidence = Column(Float, nullable=True)
    tags = Column(JSON, nullable=True)
    latency_ms = Column(Integer, nullable=True)
    error = Column(Text, nullable=True)
    news_refs = Column(JSON, nullable=True)
    ts = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_llm_row_opp", "opp_id"),
        Index("idx_llm_row_topic_ts", "topic_key", "ts"),
    )


class ReevalEventRecord(Base):
    __tablename__ = "reeval_events"

    id = Column(String, primary_key=True)
    opp_id = Column(String, nullable=False)
    topic_key = Column(String, nullable=True)
    trigger = Column(JSON, nullable=True)
    before = Column(JSON, nullable=True)
    after = Column(JSON, nullable=True)
    batch_id = Column(String, nullable=True)
    scan_id = Column(String, nullable=True)
    news_refs = Column(JSON, nullable=True)
    ts = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_reeval_opp", "opp_id"),
        Index("idx_reeval_topic_ts", "topic_key", "ts"),
    )


# ==================== NEWS ====================


class NewsItemRecord(Base):
    __tablename__ = "news_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    topic_key = Column(String, nullable=False)
    title = Column(Text, nullable=False)
    url = Column(String, nullable=True)
    source = Column(String, nullable=True)
    snippet = Column(Text, nullable=True)
    published_at = Column(String, nullable=True)
    credibility = Column(Float, nullable=True)
    content_hash = Column(String, nullable=False)
    is_stub = Column(Boolean, nullable=False, default=False)
    ts = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("content_hash", name="uq_news_content_hash"),
        Index("idx_news_topic_ts", "topic_key", "ts"),
    )


# ==================== DATABASE SETUP ====================

_engine_kw: dict = {"echo": False}
if "sqlite" in settings.DATABASE_URL:
    _engine_kw["connect_args"] = {"timeout": 30}

async_engine = create_async_engine(settings.DATABASE_URL, **_engine_kw)


def _set_sqlite_pragma(dbapi_connection, connection_record):
    """WAL mode and a busy timeout so concurrent batch topics do not lock out."""
    if "sqlite" not in settings.DATABASE_URL:
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.close()


event.listens_for(async_engine.sync_engine, "connect")(_set_sqlite_pragma)

AsyncSessionLocal = sessionmaker(
    async_engine, class_=AsyncSession, expire_on_commit=False
)


def _ensure_sqlite_parent_dir() -> None:
    url = settings.DATABASE_URL
    prefix = "sqlite+aiosqlite:///"
    if not url.startswith(prefix):
        return
    path_part = url[len(prefix) :]
    if not path_part or path_part == ":memory:":
        return
    Path(path_part).parent.mkdir(parents=True, exist_ok=True)


def _run_alembic_upgrade(connection) -> None:
    from alembic import command
    from alembic.config import Config

    backend_root = Path(__file__).resolve().parents[1]
    alembic_cfg = Config(str(backend_root / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(backend_root / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", str(connection.engine.url))
    alembic_cfg.attributes["connection"] = connection
    command.upgrade(alembic_cfg, "head")


async def init_database():
    """Initialize database and apply Alembic migrations."""
    _ensure_sqlite_parent_dir()
    async with async_engine.begin() as conn:
        await conn.run_sync(_run_alembic_upgrade)
    logger.info("Database ready at %s", settings.DATABASE_URL)

