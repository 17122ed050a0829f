"""Time-bucketed cache of LLM summaries.

Entries are never evicted; they age out because the bucket component of
the key changes every ``ttl`` seconds (aligned to the epoch, not to the
moment an entry was written).
"""

import hashlib
import json
from typing import Any, Optional

from models.opportunity import LLMSummary


def prompt_hash(strategy: Any, snapshot: Any, score: Optional[float]) -> str:
    """First 8 hex chars of sha256 over the canonical prompt inputs."""
    payload = json.dumps(
        {"strategy": strategy, "snapshot": snapshot, "score": score},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:8]


class LLMResultCache:
    def __init__(self):
        self._entries: dict[str, LLMSummary] = {}

    @staticmethod
    def bucket(now_ms: int, ttl_sec: int) -> int:
        if ttl_sec < 1:
            raise ValueError("ttl_sec must be >= 1")
        return now_ms // (ttl_sec * 1000)

    @classmethod
    def make_key(
        cls,
        provider: str,
        model: Optional[str],
        prompt_digest: str,
        topic_key: str,
        now_ms: int,
        ttl_sec: int,
    ) -> str:
        return "_".join(
            [
                provider,
                model or "default",
                prompt_digest,
                topic_key,
                str(cls.bucket(now_ms, ttl_sec)),
            ]
        )

    def get(self, key: str) -> Optional[LLMSummary]:
        return self._entries.get(key)

    def put(self, key: str, value: LLMSummary) -> None:
        self._entries[key] = value

    def __len__(self) -> int:
        return len(self._entries)
