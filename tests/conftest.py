import os
import sys

import pytest


TESTS_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(TESTS_DIR, ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from market_fusion.continuous.data_types import InstrumentTick, OrderbookTop  # noqa: E402
from market_fusion.continuous.orchestrator import FusionEngine  # noqa: E402
from market_fusion.continuous.persistence import MemoryStore  # noqa: E402
from market_fusion.continuous.scheduler import ManualClock  # noqa: E402
from market_fusion.engines.fusion_config import FusionConfig  # noqa: E402

T0 = 1_700_000_000_000
MINUTE = 60_000


@pytest.fixture
def clock():
    """Manual clock pinned to a fixed epoch."""
    return ManualClock(T0)


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def config():
    """Two instruments, everything else at defaults."""
    return FusionConfig(instruments=["BTC", "ETH"])


@pytest.fixture
def engine(config, clock, memory_store):
    return FusionEngine(config, clock=clock, store=memory_store)


@pytest.fixture
def make_tick(clock):
    """Build a normalized primary-exchange tick stamped at the current clock."""

    def _make(price, oi=1e9, instrument="BTC", exchange="hyperliquid", funding=None, bids=None, asks=None):
        orderbook = None
        if bids is not None or asks is not None:
            orderbook = OrderbookTop(bid_depth=bids or 0.0, ask_depth=asks or 0.0)
        return InstrumentTick(
            exchange=exchange,
            instrument=instrument,
            timestamp_ms=clock.now(),
            price=price,
            open_interest=oi,
            funding_rate=funding,
            orderbook=orderbook,
        )

    return _make
