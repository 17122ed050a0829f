"""In-process state shared by the scan, batch, monitor and reeval components.

One ``RadarState`` is owned by the ``RadarService`` and handed to every
component by reference. Nothing in here is module-level.
"""

import asyncio
import itertools
from typing import Any, Optional

from models.batch import BatchResult
from models.monitor import MonitorState
from models.opportunity import Opportunity
from models.scan import Scan, ScanDiff, ScanReplay
from services.llm_cache import LLMResultCache


class RadarState:
    def __init__(self):
        self.scans: list[Scan] = []
        self.opportunities: dict[str, Opportunity] = {}
        self.monitor: dict[str, MonitorState] = {}
        self.cache = LLMResultCache()
        self.dataset_rows: list[dict[str, Any]] = []
        self.batches: dict[str, BatchResult] = {}
        # Serializes monitor tick / plan / execute across their awaits.
        self.monitor_lock = asyncio.Lock()
        self._sequence = itertools.count(1)

    def next_sequence(self) -> int:
        return next(self._sequence)

    # ---- scans & opportunities ----

    def record_scan(self, scan: Scan, opportunities: list[Opportunity]) -> None:
        for opp in opportunities:
            self.opportunities[opp.opp_id] = opp
        self.scans.append(scan)

    def latest_scan(self) -> Optional[Scan]:
        return self.scans[-1] if self.scans else None

    def get_scan(self, scan_id: str) -> Optional[Scan]:
        for scan in reversed(self.scans):
            if scan.scan_id == scan_id:
                return scan
        return None

    def opportunities_for_scan(self, scan_id: str) -> list[Opportunity]:
        scan = self.get_scan(scan_id)
        if scan is None:
            return []
        return [self.opportunities[oid] for oid in scan.opp_ids if oid in self.opportunities]

    def get_opportunity(self, opp_id: str) -> Optional[Opportunity]:
        return self.opportunities.get(opp_id)

    # ---- lineage ----

    def replay(self, scan_id: str) -> Optional[ScanReplay]:
        """A stored scan with its opportunities; ids no longer held are reported."""
        scan = self.get_scan(scan_id)
        if scan is None:
            return None
        found: list[Opportunity] = []
        missing: list[str] = []
        for opp_id in scan.opp_ids:
            opp = self.opportunities.get(opp_id)
            if opp is None:
                missing.append(opp_id)
            else:
                found.append(opp)
        return ScanReplay(scan=scan, opportunities=found, missing_opp_ids=missing)

    def diff(self, from_scan_id: str, to_scan_id: str) -> Optional[ScanDiff]:
        from_scan = self.get_scan(from_scan_id)
        to_scan = self.get_scan(to_scan_id)
        if from_scan is None or to_scan is None:
            return None
        before = set(from_scan.opp_ids)
        after = set(to_scan.opp_ids)
        return ScanDiff(
            from_scan_id=from_scan_id,
            to_scan_id=to_scan_id,
            added_opp_ids=[oid for oid in to_scan.opp_ids if oid not in before],
            removed_opp_ids=[oid for oid in from_scan.opp_ids if oid not in after],
        )

    # ---- dataset rows ----

    def add_dataset_row(self, row: dict[str, Any]) -> None:
        self.dataset_rows.append(row)

    def dataset_rows_for(self, batch_id: Optional[str] = None) -> list[dict[str, Any]]:
        if batch_id is None:
            return list(self.dataset_rows)
        return [row for row in self.dataset_rows if row["ids"].get("batch_id") == batch_id]
