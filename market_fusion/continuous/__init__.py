"""
Continuous Fusion Pipeline

"Ingest continuously, decide discretely."

```
PRODUCERS (per exchange, own cadence)
        ↓
INGEST QUEUE (coalescing, overdue discard)
        ↓
NORMALIZER → ROLLING HISTORY (price, oi, orderbook, funding)
           → CVD LEDGER (trade batches)
        ↓
DERIVED METRICS (session / 5m / 15m / 30m / 1h)
        ↓
CLASSIFIERS → COMPOSITE BIAS
        ↓
SIGNAL LOG → EVALUATION (15m + 2m grace) → WIN RATES
```

Usage:
    from market_fusion.continuous import FusionEngine, Channel

    async def main():
        engine = FusionEngine()
        engine.bus.subscribe(Channel.SIGNAL, print)
        async with engine:
            await asyncio.sleep(3600)

    asyncio.run(main())
"""

from .cvd import CvdAccumulator, CvdState
from .data_types import (
    EXCHANGES,
    ExchangeInfo,
    ExchangeStatus,
    InstrumentTick,
    OrderbookTop,
    Side,
    SourceStatus,
    TradeEvent,
    WhaleConsensus,
    WhalePosition,
    WhaleTrade,
)
from .event_bus import Channel, EventBus
from .history_registry import FamilyBounds, HistoryFamily, HistoryRegistry
from .ingestion import FetchResult, IngestQueue, PollingProducer, http_json_fetch
from .metrics import MetricsCollector
from .normalizer import SnapshotNormalizer
from .orchestrator import FusionEngine, FusionSnapshot
from .persistence import JsonFileStore, MemoryStore, StateStore
from .rolling_series import RollingSeries
from .scheduler import ManualClock, Scheduler, SystemClock
from .signal_tracker import SignalLogEntry, SignalOutcomeTracker, WinRates

__all__ = [
    "EXCHANGES",
    "Channel",
    "CvdAccumulator",
    "CvdState",
    "EventBus",
    "ExchangeInfo",
    "ExchangeStatus",
    "FamilyBounds",
    "FetchResult",
    "FusionEngine",
    "FusionSnapshot",
    "HistoryFamily",
    "HistoryRegistry",
    "IngestQueue",
    "InstrumentTick",
    "JsonFileStore",
    "ManualClock",
    "MemoryStore",
    "MetricsCollector",
    "OrderbookTop",
    "PollingProducer",
    "RollingSeries",
    "Scheduler",
    "SignalLogEntry",
    "SignalOutcomeTracker",
    "SnapshotNormalizer",
    "Side",
    "SourceStatus",
    "StateStore",
    "SystemClock",
    "TradeEvent",
    "WhaleConsensus",
    "WhalePosition",
    "WhaleTrade",
    "WinRates",
    "http_json_fetch",
]
