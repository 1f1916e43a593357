import os
import sys

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from listkeeper.config import EngineConfig  # noqa: E402
from listkeeper.ledger import MembershipLedger  # noqa: E402
from listkeeper.retry import RetryPolicy  # noqa: E402
from listkeeper.state_cache import StateCache  # noqa: E402

from fakes import FakeClock, FakeListStore, no_sleep  # noqa: E402


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return FakeListStore()


@pytest.fixture
def engine_config():
    return EngineConfig(show_progress=False)


@pytest.fixture
def ledger(clock):
    return MembershipLedger(clock=clock)


@pytest.fixture
def cache(clock):
    return StateCache(freshness_seconds=3600, clock=clock)


@pytest.fixture
def retry_policy():
    return RetryPolicy(sleep=no_sleep)
