"""Strategy and market-snapshot fixtures the scan generator draws from."""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from config import settings
from models.opportunity import MarketSnapshot, Strategy
from utils.logger import get_logger

logger = get_logger("fixtures")


@dataclass
class FixtureSet:
    strategies: list[Strategy] = field(default_factory=list)
    snapshots: list[MarketSnapshot] = field(default_factory=list)


def _read_list(path: Path) -> list[dict]:
    if not path.exists():
        logger.warning("Fixture file missing", path=str(path))
        return []
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Fixture file unreadable", path=str(path), error=str(exc))
        return []
    if not isinstance(data, list):
        logger.warning("Fixture file is not a list", path=str(path))
        return []
    return [item for item in data if isinstance(item, dict)]


def _parse(items: list[dict], model, id_field: str) -> list:
    parsed = []
    for item in items:
        if id_field not in item and "id" in item:
            item = {**item, id_field: str(item["id"])}
        try:
            parsed.append(model.model_validate(item))
        except PydanticValidationError as exc:
            logger.warning("Skipping malformed fixture", id_field=id_field, error=str(exc))
    return parsed


def load_fixtures(fixtures_dir: Optional[str] = None) -> FixtureSet:
    """Load ``strategies.json`` and ``snapshots.json`` from ``fixtures_dir``.

    Missing or malformed files yield empty lists; the scan pipeline then
    generates no opportunities rather than failing.
    """
    base = Path(fixtures_dir or settings.FIXTURES_DIR)
    fixtures = FixtureSet(
        strategies=_parse(_read_list(base / "strategies.json"), Strategy, "strategy_id"),
        snapshots=_parse(_read_list(base / "snapshots.json"), MarketSnapshot, "snapshot_id"),
    )
    logger.info(
        "Fixtures loaded",
        fixtures_dir=str(base),
        strategies=len(fixtures.strategies),
        snapshots=len(fixtures.snapshots),
    )
    return fixtures
