"""
Shared pytest fixtures for the StakeFlow test suite.
"""

import pytest

from stakeflow_core.config import StakeFlowConfig
from stakeflow_core.engine import StakingEngine
from stakeflow_core.precision import SECONDS_PER_DAY
from stakeflow_core.storage import StakingStore
from stakeflow_core.tiers import Tier

# 2024-01-01T00:00:00Z; tests pass explicit timestamps from here on.
T0 = 1_704_067_200
DAY = SECONDS_PER_DAY
WEEK = 7 * DAY

ONE_TOKEN = 1_000_000_000
WIDE_TIER_ID = 9


@pytest.fixture
def store(tmp_path):
    """Fresh StakingStore in a temp directory."""
    s = StakingStore(str(tmp_path / "stakeflow.db"))
    yield s
    s.close()


@pytest.fixture
def config():
    return StakeFlowConfig()


@pytest.fixture
def engine(config, store):
    """Initialized engine with the default tier catalog, epoch started at T0."""
    eng = StakingEngine(config, store=store)
    eng.initialize(now=T0)
    return eng


@pytest.fixture
def wide_tier(engine):
    """Tier allowing 1..60 months at a 5 % penalty."""
    return engine.catalog.upsert(Tier(WIDE_TIER_ID, 500, 1, 60))


@pytest.fixture
def opened(engine, wide_tier):
    """Alice's 1-token, 6-month position opened at T0 (seed 1)."""
    return engine.open_position("alice", ONE_TOKEN, 6, WIDE_TIER_ID, seed=1, now=T0)
