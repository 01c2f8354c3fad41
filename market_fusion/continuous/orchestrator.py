"""
Fusion Engine Orchestrator

Wires together:
- Ingestion (coalescing queue fed by producers)
- Normalizer, rolling history registry and CVD accumulator
- Derived metrics, classifiers and the composite bias aggregator
- Signal outcome tracker and bias history
- Persistence, scheduler and the outbound event bus

All mutation happens on the engine's single task runner: the scheduler loop
drains the queue before every pass, then runs whatever jobs are due.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from ..engines.composite_bias import CompositeBias, calculate_composite_bias
from ..engines.derived_metrics import SeriesView, TimeframeProjection, build_projection
from ..engines.flow_confluence import (
    AbsorptionResult,
    DivergenceResult,
    EdgeSignal,
    OIPricePattern,
    detect_edge_signals,
)
from ..engines.fusion_config import FusionConfig, parse_timeframe
from ..engines.signals import FlowType
from ..errors import ConfigError, PersistenceError
from ..logging_config import log_exception
from .cvd import CvdAccumulator
from .data_types import (
    EXCHANGES,
    ExchangeInfo,
    InstrumentTick,
    SourceStatus,
    TradeEvent,
    WhaleConsensus,
    WhaleTrade,
)
from .event_bus import Channel, EventBus
from .history_registry import FamilyBounds, HistoryFamily, HistoryRegistry
from .ingestion import FetchFn, IngestMessage, IngestQueue, MessageKind, PollingProducer
from .metrics import MetricsCollector
from .normalizer import SnapshotNormalizer
from .persistence import BlobStore, JsonFileStore, StateStore
from .rolling_series import RollingSeries
from .scheduler import Scheduler, SystemClock
from .signal_tracker import SignalLogEntry, SignalOutcomeTracker, WinRates

logger = logging.getLogger(__name__)

JOB_RECOMPUTE = "composite.recompute"
JOB_BIAS_SAMPLE = "biasHistory.sample"
JOB_EVALUATE = "signal.evaluate"
JOB_FLUSH = "persist.flush"
JOB_STATUS = "status.publish"


@dataclass
class SessionBaseline:
    """Pinned on the first accepted tick; kept until the process restarts."""
    price: float
    oi: float
    timestamp_ms: int


@dataclass
class FusionSnapshot:
    """Everything the presentation layer shows for one instrument and timeframe."""
    instrument: str
    exchange: str
    projection: TimeframeProjection
    composite: CompositeBias
    divergence: Optional[DivergenceResult] = None
    absorption: Optional[AbsorptionResult] = None
    oi_pattern: Optional[OIPricePattern] = None
    priority_signal: Optional[EdgeSignal] = None
    win_rates: Optional[WinRates] = None

    @property
    def timeframe(self) -> Optional[int]:
        return self.projection.timeframe

    @property
    def flow(self) -> FlowType:
        return self.composite.flow.flow_type

    def to_dict(self) -> Dict[str, Any]:
        p = self.projection

        def edge(signal: Optional[EdgeSignal]) -> Optional[Dict[str, Any]]:
            if signal is None:
                return None
            return {
                "type": signal.type,
                "name": signal.name,
                "description": signal.description,
                "strength": signal.strength,
                "isStrong": signal.is_strong,
            }

        return {
            "instrument": self.instrument,
            "exchange": self.exchange,
            "timeframe": p.label,
            "price": {"current": p.price.current, "change": p.price_change, "hasTimeframeData": p.price.has_timeframe_data},
            "oi": {"current": p.oi.current, "change": p.oi_change, "hasTimeframeData": p.oi.has_timeframe_data},
            "orderbook": {"imbalance": p.orderbook.imbalance, "avgImbalance": p.orderbook.avg_imbalance},
            "cvd": {"delta": p.cvd_delta, "sessionDelta": p.cvd.session_delta, "trend": p.cvd.trend},
            "funding": {"rate": p.funding.rate, "trend": p.funding.trend.label},
            "composite": self.composite.to_dict(),
            "flow": self.flow.value,
            "divergence": edge(self.divergence),
            "absorption": edge(self.absorption),
            "oiPattern": edge(self.oi_pattern),
            "winRates": self.win_rates.to_dict() if self.win_rates else None,
        }


@dataclass
class EngineStatus:
    """Health fields surfaced by get_status()."""
    persistence: SourceStatus = field(default_factory=lambda: SourceStatus(name="persistence"))
    last_error: Optional[str] = None
    state_loaded: bool = False
    migrated_legacy: bool = False


class FusionEngine:
    """
    Market signal fusion engine.

    Usage:
        engine = FusionEngine(FusionConfig())
        engine.add_producer("tick.binance", 5000, fetch_binance)

        async with engine:
            ...

        # or, driven step by step (tests, replays):
        engine.load_state()
        engine.schedule_jobs()
        engine.queue.put_tick("hyperliquid", "BTC", raw)
        await engine.step()
    """

    def __init__(
        self,
        config: Optional[FusionConfig] = None,
        clock=None,
        store: Optional[BlobStore] = None,
        exchanges: Optional[Dict[str, ExchangeInfo]] = None,
    ):
        self.config = config or FusionConfig()
        self.clock = clock or SystemClock()
        self._exchanges = exchanges if exchanges is not None else EXCHANGES

        primary = self._exchanges.get(self.config.primary_exchange)
        if primary is None or not primary.is_active:
            raise ConfigError(f"Primary exchange {self.config.primary_exchange!r} is not an active exchange")
        self.primary_exchange = primary.id
        self.active_exchanges = [e.id for e in self._exchanges.values() if e.is_active]

        cfg = self.config
        self.registry = HistoryRegistry({
            HistoryFamily.PRICE: FamilyBounds(cfg.rolling_ttl_ms, cfg.rolling_max_entries),
            HistoryFamily.OI: FamilyBounds(cfg.rolling_ttl_ms, cfg.rolling_max_entries),
            HistoryFamily.ORDERBOOK: FamilyBounds(cfg.rolling_ttl_ms, cfg.rolling_max_entries),
            HistoryFamily.FUNDING: FamilyBounds(cfg.rolling_ttl_ms, cfg.rolling_max_entries),
            HistoryFamily.CVD: FamilyBounds(cfg.rolling_ttl_ms, cfg.cvd_max_entries),
        })
        self.cvd = CvdAccumulator(self.registry)
        self.normalizer = SnapshotNormalizer(self._exchanges, self.clock)
        self.tracker = SignalOutcomeTracker(
            self.clock,
            evaluation_window_ms=cfg.evaluation_window_ms,
            grace_ms=cfg.evaluation_grace_ms,
            min_gap_ms=cfg.min_signal_gap_ms,
            win_threshold_pct=cfg.win_threshold_pct,
            max_entries=cfg.signal_log_max_entries,
            max_age_ms=cfg.signal_log_ttl_ms,
        )
        self.queue = IngestQueue(self.clock)
        self.metrics = MetricsCollector()
        self.bus = EventBus(on_error=lambda _channel, _error: self.metrics.increment("errors"))
        self.scheduler = Scheduler(self.clock)
        self.scheduler.on_error(self._on_job_error)

        self.state_store = StateStore(
            store if store is not None else JsonFileStore(cfg.state_dir),
            self.primary_exchange,
            self.active_exchanges,
            cfg.instruments,
        )

        self._bias_history: Dict[str, RollingSeries[float]] = {}
        self._bias_dirty = False
        self._baselines: Dict[Tuple[str, str], SessionBaseline] = {}
        self._latest_ticks: Dict[Tuple[str, str], InstrumentTick] = {}
        self._whales: Dict[str, WhaleConsensus] = {}
        self._composites: Dict[str, CompositeBias] = {}
        self._last_flow: Dict[str, FlowType] = {}
        self._first_sampled: Set[str] = set()
        self._producers: List[PollingProducer] = []
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._jobs_scheduled = False
        self.status = EngineStatus()

    # === Properties ===

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def instruments(self) -> List[str]:
        return list(self.config.instruments)

    def latest_tick(self, instrument: str, exchange: Optional[str] = None) -> Optional[InstrumentTick]:
        return self._latest_ticks.get((exchange or self.primary_exchange, instrument.upper()))

    def latest_composite(self, instrument: str) -> Optional[CompositeBias]:
        return self._composites.get(instrument.upper())

    def session_baseline(self, instrument: str, exchange: Optional[str] = None) -> Optional[SessionBaseline]:
        return self._baselines.get((exchange or self.primary_exchange, instrument.upper()))

    # === Ingestion ===

    def _accepts(self, exchange: str, instrument: str, what: str) -> bool:
        info = self._exchanges.get(exchange)
        if info is None or not info.is_active:
            logger.warning(f"Dropped {what} from inactive exchange {exchange}")
            return False
        if instrument not in self.config.instruments:
            logger.warning(f"Dropped {what} for untracked instrument {instrument}")
            return False
        return True

    async def ingest_tick(self, tick: InstrumentTick) -> bool:
        """Append a normalized tick to the rolling histories. Returns False if dropped."""
        if not self._accepts(tick.exchange, tick.instrument, "tick"):
            self.metrics.increment("ticks_dropped")
            return False

        now = self.clock.now()
        key = (tick.exchange, tick.instrument)
        if not self.registry.append(tick.exchange, tick.instrument, HistoryFamily.PRICE, tick.timestamp_ms, tick.price, now):
            logger.debug(f"Rejected stale or non-monotonic tick {tick.exchange}/{tick.instrument} @ {tick.timestamp_ms}")
            self.metrics.increment("ticks_dropped")
            return False

        self.registry.append(tick.exchange, tick.instrument, HistoryFamily.OI, tick.timestamp_ms, tick.open_interest, now)
        if tick.orderbook is not None:
            self.registry.append(
                tick.exchange, tick.instrument, HistoryFamily.ORDERBOOK, tick.timestamp_ms, tick.orderbook.imbalance, now
            )
        if tick.funding_rate is not None:
            self.registry.append(
                tick.exchange, tick.instrument, HistoryFamily.FUNDING, tick.timestamp_ms, tick.funding_rate, now
            )

        if key not in self._baselines:
            self._baselines[key] = SessionBaseline(tick.price, tick.open_interest, tick.timestamp_ms)
            logger.info(f"Session baseline {tick.exchange}/{tick.instrument}: price={tick.price} oi={tick.open_interest:.0f}")

        self._latest_ticks[key] = tick
        self.metrics.increment("ticks_accepted")
        await self.bus.publish(Channel.TICK, tick)
        return True

    async def ingest_raw_tick(self, exchange: str, instrument: str, raw: Dict[str, Any]) -> bool:
        tick = self.normalizer.normalize_tick(exchange, instrument, raw)
        if tick is None:
            self.metrics.increment("ticks_dropped")
            return False
        return await self.ingest_tick(tick)

    async def ingest_trades(self, exchange: str, instrument: str, trades: List[TradeEvent]) -> int:
        """Apply a normalized trade batch to CVD. Returns the number of new trades."""
        instrument = instrument.upper()
        if not trades or not self._accepts(exchange, instrument, "trades"):
            return 0
        update = self.cvd.apply_trades(exchange, instrument, trades, self.clock.now())
        if update is None:
            return 0

        self.metrics.increment("trades_ingested", update.trades)
        threshold = self.config.whale_threshold_quote
        for trade in update.fresh_trades:
            if trade.notional >= threshold:
                logger.info(
                    f"Whale trade {exchange}/{instrument} {trade.side.value} ${trade.notional:,.0f}"
                )
                await self.bus.publish(Channel.WHALE_TRADE, WhaleTrade(trade=trade, threshold=threshold))
        return update.trades

    async def ingest_raw_trades(self, exchange: str, instrument: str, raw_trades: List[Dict[str, Any]]) -> int:
        trades = self.normalizer.normalize_trades(exchange, instrument, raw_trades)
        return await self.ingest_trades(exchange, instrument, trades)

    def ingest_whale_consensus(self, consensus: WhaleConsensus, exchange: Optional[str] = None) -> bool:
        """Store top-trader consensus; only the primary exchange carries it."""
        exchange = exchange or self.primary_exchange
        instrument = consensus.instrument.upper()
        if exchange != self.primary_exchange:
            logger.warning(f"Ignored whale consensus from non-primary exchange {exchange}")
            return False
        if instrument not in self.config.instruments:
            logger.warning(f"Ignored whale consensus for untracked instrument {instrument}")
            return False
        self._whales[instrument] = consensus
        return True

    async def _dispatch(self, message: IngestMessage) -> None:
        if message.kind is MessageKind.TICK:
            await self.ingest_raw_tick(message.exchange, message.instrument, message.payload)
        elif message.kind is MessageKind.TRADES:
            await self.ingest_raw_trades(message.exchange, message.instrument, message.payload)
        else:
            self.ingest_whale_consensus(message.payload, message.exchange)

    async def process_queue(self) -> int:
        """Drain the ingest queue in arrival order. Returns messages handled."""
        handled = 0
        for message in self.queue.drain():
            try:
                await self._dispatch(message)
                handled += 1
            except Exception as e:
                self._record_error(f"ingest {message.kind.value}", e)
        return handled

    # === Projections & snapshots ===

    def _series_view(self, exchange: str, instrument: str) -> SeriesView:
        baseline = self._baselines.get((exchange, instrument))
        tick = self._latest_ticks.get((exchange, instrument))
        cvd = self.cvd.state(exchange, instrument) if self.cvd.has_state(exchange, instrument) else None
        return SeriesView(
            price=self.registry.snapshot(exchange, instrument, HistoryFamily.PRICE),
            oi=self.registry.snapshot(exchange, instrument, HistoryFamily.OI),
            orderbook=self.registry.snapshot(exchange, instrument, HistoryFamily.ORDERBOOK),
            funding=self.registry.snapshot(exchange, instrument, HistoryFamily.FUNDING),
            cvd_ledger=self.cvd.ledger(exchange, instrument),
            price_session_start=baseline.price if baseline else None,
            oi_session_start=baseline.oi if baseline else None,
            bid_depth=tick.orderbook.bid_depth if tick and tick.orderbook else 0.0,
            ask_depth=tick.orderbook.ask_depth if tick and tick.orderbook else 0.0,
            cvd_session_delta=cvd.session_delta if cvd else 0.0,
            cvd_recent_delta=cvd.recent_delta if cvd else 0.0,
            cvd_trend=cvd.trend if cvd else 0.0,
            cvd_total_buy=cvd.total_buy if cvd else 0.0,
            cvd_total_sell=cvd.total_sell if cvd else 0.0,
        )

    def projection(self, instrument: str, timeframe=None, exchange: Optional[str] = None) -> TimeframeProjection:
        exchange = exchange or self.primary_exchange
        instrument = instrument.upper()
        minutes = parse_timeframe(timeframe) if timeframe is not None else None
        return build_projection(
            instrument,
            self._series_view(exchange, instrument),
            self.clock.now(),
            minutes,
            self.config.classifiers,
        )

    def _composite(self, projection: TimeframeProjection, exchange: str) -> CompositeBias:
        whales = self._whales.get(projection.instrument) if exchange == self.primary_exchange else None
        with self.metrics.time("classifier"):
            return calculate_composite_bias(projection, whales, self.config.weights, self.config.classifiers)

    def snapshot(self, instrument: str, timeframe=None, exchange: Optional[str] = None) -> Optional[FusionSnapshot]:
        """
        Full view for one instrument. `timeframe=None` is session based.

        Returns None until the instrument has received a tick.
        """
        exchange = exchange or self.primary_exchange
        instrument = instrument.upper()
        if (exchange, instrument) not in self._latest_ticks:
            return None
        projection = self.projection(instrument, timeframe, exchange)
        edges = detect_edge_signals(projection, self.config.classifiers)
        return FusionSnapshot(
            instrument=instrument,
            exchange=exchange,
            projection=projection,
            composite=self._composite(projection, exchange),
            divergence=edges.divergence,
            absorption=edges.absorption,
            oi_pattern=edges.oi_pattern,
            priority_signal=edges.priority,
            win_rates=self.tracker.get_win_rates(instrument),
        )

    def bias_history(self, instrument: str) -> List[Dict[str, Any]]:
        series = self._bias_history.get(instrument.upper())
        if series is None:
            return []
        series.evict(self.clock.now())
        return [{"score": score, "timestamp": ts} for ts, score in series.snapshot()]

    def signal_log(self, instrument: str) -> List[SignalLogEntry]:
        return self.tracker.signal_log(instrument.upper())

    def win_rates(self, instrument: str) -> WinRates:
        return self.tracker.get_win_rates(instrument.upper())

    # === Jobs ===

    async def recompute(self) -> List[CompositeBias]:
        """Emit a composite per instrument and log flow transitions."""
        emitted = []
        with self.metrics.time("recompute"):
            self.evict_expired()
            for instrument in self.config.instruments:
                tick = self._latest_ticks.get((self.primary_exchange, instrument))
                if tick is None:
                    continue
                projection = self.projection(instrument, self.config.emission_timeframe)
                composite = self._composite(projection, self.primary_exchange)
                first_valid = instrument not in self._first_sampled and composite.normalized_score != 0
                self._composites[instrument] = composite
                emitted.append(composite)
                await self.bus.publish(Channel.COMPOSITE, composite)

                if first_valid:
                    self._first_sampled.add(instrument)
                    await self._sample_bias(instrument, composite)
                await self._on_flow(instrument, composite.flow.flow_type, tick.price)
        return emitted

    async def _on_flow(self, instrument: str, flow_type: FlowType, price: float) -> None:
        if self._last_flow.get(instrument) is flow_type:
            return
        self._last_flow[instrument] = flow_type
        entry = self.tracker.log_signal(instrument, flow_type, price)
        if entry is not None:
            self.metrics.increment("signals_logged")
            await self.bus.publish(Channel.SIGNAL, entry)

    def _bias_series(self, instrument: str) -> RollingSeries[float]:
        series = self._bias_history.get(instrument)
        if series is None:
            series = RollingSeries(
                name=f"bias/{instrument}",
                ttl_ms=self.config.bias_history_ttl_ms,
                max_entries=self.config.bias_history_max_entries,
                on_dirty=self._mark_bias_dirty,
            )
            self._bias_history[instrument] = series
        return series

    def _mark_bias_dirty(self, _name: str) -> None:
        self._bias_dirty = True

    async def _sample_bias(self, instrument: str, composite: CompositeBias) -> bool:
        score = composite.normalized_score
        if score == 0:
            return False
        now = self.clock.now()
        series = self._bias_series(instrument)
        newest = series.newest()
        if newest is not None and now - newest.timestamp_ms < self.config.bias_history_min_gap_ms:
            return False
        if not series.append(now, score, now):
            return False
        await self.bus.publish(Channel.BIAS_HISTORY, {"instrument": instrument, "history": self.bias_history(instrument)})
        return True

    async def sample_bias_history(self) -> int:
        """Append the latest non-zero normalized score per instrument."""
        sampled = 0
        now = self.clock.now()
        for series in self._bias_history.values():
            series.evict(now)
        for instrument, composite in self._composites.items():
            if await self._sample_bias(instrument, composite):
                sampled += 1
        return sampled

    async def evaluate_signals(self) -> int:
        """Grade pending signal log entries against current primary prices."""
        prices = {
            inst: tick.price
            for (exchange, inst), tick in self._latest_ticks.items()
            if exchange == self.primary_exchange
        }
        self.tracker.prune()
        results = self.tracker.evaluate_signals(prices)
        for result in results:
            self.metrics.increment("signals_evaluated")
            await self.bus.publish(Channel.EVALUATION, result)
        return len(results)

    def evict_expired(self, now: Optional[int] = None) -> int:
        """Age-trim every rolling series, including ones no longer appended to."""
        now = self.clock.now() if now is None else now
        dropped = self.registry.evict_all(now)
        for series in self._bias_history.values():
            dropped += series.evict(now)
        if dropped:
            logger.debug(f"Evicted {dropped} expired entries")
        return dropped

    def flush(self) -> bool:
        """
        Write dirty state to the store.

        Failures are logged and recorded; dirty flags stay set so the next
        flush retries.
        """
        now = self.clock.now()
        self.evict_expired(now)
        try:
            with self.metrics.time("persistence_flush"):
                for exchange in sorted(self.registry.dirty_exchanges()):
                    self.state_store.save_exchange(exchange, self._exchange_series(exchange))
                    self.registry.clear_dirty(exchange)
                if self._bias_dirty:
                    self.state_store.save_bias_history(
                        {inst: series.snapshot() for inst, series in self._bias_history.items()}
                    )
                    self._bias_dirty = False
                if self.tracker.is_dirty:
                    self.state_store.save_signal_history(self.tracker.snapshot())
                    self.tracker.mark_clean()
        except PersistenceError as e:
            self.status.persistence.record_error(str(e), now)
            self.status.last_error = f"persistence: {e}"
            log_exception(logger, e, "Persistence flush failed, keeping in-memory state", logging.WARNING)
            return False
        self.status.persistence.record_success(now)
        return True

    def _exchange_series(self, exchange: str) -> Dict[str, Dict[str, List[Tuple[int, float]]]]:
        series: Dict[str, Dict[str, List[Tuple[int, float]]]] = {f.value: {} for f in HistoryFamily}
        for instrument in self.registry.instruments(exchange):
            for family in HistoryFamily:
                series[family.value][instrument] = self.registry.snapshot(exchange, instrument, family)
        return series

    async def publish_status(self) -> None:
        await self.bus.publish(Channel.STATUS, self.get_status())

    # === State persistence ===

    def load_state(self) -> bool:
        """
        Load persisted histories, bias history and signal log.

        Runs the legacy migration first. Failures leave the engine with
        empty in-memory state.
        """
        now = self.clock.now()
        try:
            self.status.migrated_legacy = self.state_store.migrate_legacy()
            loaded = 0
            for exchange in self.active_exchanges:
                data = self.state_store.load_exchange(exchange)
                for family in HistoryFamily:
                    for instrument, entries in data.get(family.value, {}).items():
                        if instrument not in self.config.instruments or not entries:
                            continue
                        loaded += self.registry.series(exchange, instrument, family).load(entries, now)
            self.registry.clear_dirty()

            for instrument, entries in self.state_store.load_bias_history().items():
                if instrument in self.config.instruments and entries:
                    self._bias_series(instrument).load(entries, now)
            self._bias_dirty = False

            kept = self.tracker.restore(self.state_store.load_signal_history())
            self.tracker.mark_clean()
        except PersistenceError as e:
            self.status.persistence.record_error(str(e), now)
            self.status.last_error = f"persistence: {e}"
            log_exception(logger, e, "Failed to load state, starting empty", logging.WARNING)
            return False

        self.status.state_loaded = True
        logger.info(f"Loaded state: {loaded} series entries, {kept} logged signals")
        return True

    # === Lifecycle ===

    def add_producer(self, name: str, interval_ms: int, fetch: FetchFn, session=None) -> PollingProducer:
        producer = PollingProducer(name, interval_ms, fetch, self.queue, self.clock, session)
        self._producers.append(producer)
        return producer

    def schedule_jobs(self) -> None:
        if self._jobs_scheduled:
            return
        cfg = self.config
        self.scheduler.schedule(JOB_RECOMPUTE, cfg.recompute_interval_ms, self.recompute, run_immediately=True)
        self.scheduler.schedule(JOB_BIAS_SAMPLE, cfg.bias_sample_interval_ms, self.sample_bias_history)
        self.scheduler.schedule(JOB_EVALUATE, cfg.evaluate_interval_ms, self.evaluate_signals, run_immediately=True)
        self.scheduler.schedule(JOB_FLUSH, cfg.flush_interval_ms, self.flush)
        self.scheduler.schedule(JOB_STATUS, cfg.evaluate_interval_ms, self.publish_status)
        self._jobs_scheduled = True

    async def step(self) -> List[str]:
        """One runner pass: drain the queue, then run due jobs."""
        await self.process_queue()
        return await self.scheduler.run_pending()

    def _on_job_error(self, name: str, error: Exception) -> None:
        self.metrics.increment("errors")
        self.status.last_error = f"{name}: {error}"

    def _record_error(self, where: str, error: Exception) -> None:
        self.metrics.increment("errors")
        self.status.last_error = f"{where}: {error}"
        log_exception(logger, error, f"Error in {where}")

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        logger.info(
            f"Starting fusion engine for {', '.join(self.config.instruments)} "
            f"(primary: {self.primary_exchange})"
        )
        self.load_state()
        self.schedule_jobs()
        for producer in self._producers:
            await producer.start()
        self._task = asyncio.create_task(self.scheduler.run_forever(before_pass=self.process_queue))

    async def stop(self) -> None:
        self._running = False
        logger.info("Stopping fusion engine")
        self.scheduler.stop()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        for producer in self._producers:
            await producer.stop()
        self.flush()

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    # === Status ===

    def get_status(self) -> Dict[str, Any]:
        composites = {
            inst: {
                "normalizedScore": c.normalized_score,
                "grade": c.grade.value,
                "label": c.label.value,
                "flow": c.flow.flow_type.value,
            }
            for inst, c in self._composites.items()
        }
        return {
            "running": self._running,
            "primary_exchange": self.primary_exchange,
            "instruments": self.instruments,
            "timestamp_ms": self.clock.now(),
            "composites": composites,
            "queue": {
                "pending": len(self.queue),
                "enqueued": self.queue.stats.enqueued,
                "coalesced": self.queue.stats.coalesced,
                "discarded": self.queue.stats.discarded,
            },
            "sources": {name: s.to_dict() for name, s in self.normalizer.all_status().items()},
            "producers": {p.name: p.status.to_dict() for p in self._producers},
            "persistence": self.status.persistence.to_dict(),
            "state_loaded": self.status.state_loaded,
            "last_error": self.status.last_error,
            "jobs": self.scheduler.get_status(),
            "series": len(self.registry.keys()),
            "published": dict(self.bus.published),
            "metrics": self.metrics.get_summary(),
        }

