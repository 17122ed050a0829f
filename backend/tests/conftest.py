"""Shared fixtures for radar tests."""

import random
import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import pytest
from unittest.mock import AsyncMock

from models.opportunity import MarketSnapshot, Strategy
from services.fixtures import FixtureSet
from services.persistence import RadarRepository
from services.radar import RadarService
from services.radar_state import RadarState


# Middle of a 900s cache bucket, so "+1s" stays in the same bucket.
BASE_NOW_MS = 1_800_000_000_000 - (1_800_000_000_000 % 900_000) + 450_000


@pytest.fixture
def fixture_set():
    """Small, fixed strategy/snapshot fixtures."""
    return FixtureSet(
        strategies=[
            Strategy(strategy_id="s_alpha", name="Alpha"),
            Strategy(strategy_id="s_beta", name="Beta"),
            Strategy(strategy_id="s_gamma", name="Gamma"),
        ],
        snapshots=[
            MarketSnapshot(snapshot_id="snap_1", market_id="m1", price=0.4),
            MarketSnapshot(snapshot_id="snap_2", market_id="m2", price=0.6),
        ],
    )


@pytest.fixture
def repository():
    """Persistence double: every write succeeds, no news stored."""
    repo = AsyncMock(spec=RadarRepository)
    repo.get_recent_news.return_value = []
    repo.append_news.return_value = True
    repo.get_timeline.return_value = []
    return repo


@pytest.fixture
def radar_state():
    return RadarState()


@pytest.fixture
def radar(fixture_set, repository, radar_state):
    return RadarService(
        fixtures=fixture_set,
        repository=repository,
        state=radar_state,
        monitor_rng=random.Random(7),
    )


@pytest.fixture
def base_now():
    return BASE_NOW_MS
