"""
News providers feeding the scan pipeline's optional news_pull stage.

``local`` reads a JSONL feed (one article per line, optional ``topic_key``)
from ``settings.NEWS_FEED_PATH``; ``web`` is disabled and returns nothing.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Protocol

from config import settings
from utils.utcnow import utcnow

logger = logging.getLogger(__name__)


@dataclass
class NewsItem:
    """A single normalized news article."""

    title: str
    url: Optional[str]
    published_at: str
    fetched_at: str
    source: str
    snippet: str = ""
    raw_hash: str = ""
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def content_hash(self) -> str:
        """Dedup key used by persistence: sha256(title + published_at)."""
        return hashlib.sha256((self.title + self.published_at).encode("utf-8")).hexdigest()


class NewsProviderKind(str, Enum):
    LOCAL = "local"
    WEB = "web"


class NewsProvider(Protocol):
    async def fetch_news(self, topic_key: str, limit: int = 5) -> list[NewsItem]:
        ...


def _published_sort_key(item: NewsItem) -> float:
    try:
        return datetime.fromisoformat(item.published_at.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return 0.0


class LocalFileNewsProvider:
    def __init__(self, feed_path: Optional[str] = None):
        self.feed_path = Path(feed_path or settings.NEWS_FEED_PATH)

    @staticmethod
    def normalize(item: dict[str, Any]) -> NewsItem:
        now_iso = utcnow().isoformat() + "Z"
        raw_string = json.dumps(item, sort_keys=True)
        return NewsItem(
            title=item.get("title") or "Untitled",
            url=item.get("url"),
            published_at=str(item.get("published_at") or item.get("ts") or now_iso),
            fetched_at=now_iso,
            source=item.get("source") or item.get("publisher") or "local_file",
            snippet=item.get("snippet") or item.get("summary") or item.get("content") or "",
            raw_hash=hashlib.md5(raw_string.encode("utf-8")).hexdigest(),
            raw=item,
        )

    def _read(self, topic_key: str) -> list[NewsItem]:
        if not self.feed_path.exists():
            logger.warning("News feed not found: %s", self.feed_path)
            return []

        items: list[NewsItem] = []
        for line_no, line in enumerate(self.feed_path.read_text(encoding="utf-8").splitlines(), 1):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError as exc:
                logger.warning("Skipping unparsable news line %d: %s", line_no, exc)
                continue
            if not isinstance(record, dict):
                continue
            # Items without a topic apply to every topic.
            if record.get("topic_key") in (None, "", topic_key):
                items.append(self.normalize(record))
        return items

    async def fetch_news(self, topic_key: str, limit: int = 5) -> list[NewsItem]:
        items = await asyncio.to_thread(self._read, topic_key)
        items.sort(key=_published_sort_key, reverse=True)
        return items[:limit]


class WebNewsProvider:
    async def fetch_news(self, topic_key: str, limit: int = 5) -> list[NewsItem]:
        logger.warning("Web news fetch is disabled; returning no items")
        return []


def get_news_provider(name: Optional[str] = None) -> NewsProvider:
    raw = (name or settings.NEWS_PROVIDER or "local").strip().lower()
    if raw == NewsProviderKind.WEB.value:
        return WebNewsProvider()
    return LocalFileNewsProvider()
