"""
News feed layer for the radar.

Provides:
- Local JSONL feed ingestion (LocalFileNewsProvider)
- A disabled web provider placeholder (WebNewsProvider)
"""

from services.news.provider import (
    LocalFileNewsProvider,
    NewsItem,
    NewsProvider,
    NewsProviderKind,
    WebNewsProvider,
    get_news_provider,
)

__all__ = [
    "LocalFileNewsProvider",
    "NewsItem",
    "NewsProvider",
    "NewsProviderKind",
    "WebNewsProvider",
    "get_news_provider",
]
