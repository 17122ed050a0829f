from typing import Optional, Sequence

from models.scan import DedupMode, Scan


class DedupWindow:
    """Finds a recent scan of the same topic inside a time window."""

    @staticmethod
    def find_recent(
        scans: Sequence[Scan], topic_key: str, window_sec: int, now_ms: int
    ) -> Optional[Scan]:
        if window_sec <= 0:
            return None
        cutoff = now_ms - window_sec * 1000
        for scan in reversed(scans):
            if scan.topic_key == topic_key and scan.timestamp > cutoff:
                return scan
        return None

    @classmethod
    def should_skip(
        cls,
        scans: Sequence[Scan],
        topic_key: str,
        window_sec: int,
        dedup_mode: str,
        now_ms: int,
    ) -> Optional[Scan]:
        """Return the scan that suppresses this run, if any.

        Only ``dedup_mode == "skip"`` suppresses; other modes run even when a
        recent scan exists.
        """
        if dedup_mode != DedupMode.SKIP.value:
            return None
        return cls.find_recent(scans, topic_key, window_sec, now_ms)
