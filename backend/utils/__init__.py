from .logger import (
    setup_logging,
    get_logger,
    scan_logger,
    batch_logger,
    monitor_logger,
    api_logger,
)
from .utcnow import utcnow, now_ms, ms_to_datetime, ms_to_iso

__all__ = [
    # Logger
    "setup_logging",
    "get_logger",
    "scan_logger",
    "batch_logger",
    "monitor_logger",
    "api_logger",

    # Clock
    "utcnow",
    "now_ms",
    "ms_to_datetime",
    "ms_to_iso",
]
