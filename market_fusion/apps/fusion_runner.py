#!/usr/bin/env python3
"""
Market Signal Fusion Runner

Runs the fusion engine live (producers are registered by embedding
applications) or replays a recorded JSON-lines file on a manual clock.

Replay records, one JSON object per line:

    {"ts": 1700000000000, "type": "tick", "exchange": "hyperliquid",
     "instrument": "BTC", "data": {"price": 43000, "open_interest": 1000, ...}}
    {"ts": 1700000001000, "type": "trades", "exchange": "hyperliquid",
     "instrument": "BTC", "data": [{"px": 43000, "sz": 0.5, "side": "B", "tid": 1}]}
    {"ts": 1700000002000, "type": "whales", "instrument": "BTC",
     "longs": [{"address": "0x1", "size": 10}], "shorts": []}

Usage:
    python -m market_fusion.apps.fusion_runner
    python -m market_fusion.apps.fusion_runner --timeframe 15 --quiet
    python -m market_fusion.apps.fusion_runner --replay session.jsonl
"""

import argparse
import asyncio
import json
import logging
from typing import Any, Dict, Iterator, Optional

from ..continuous.data_types import WhaleConsensus, WhalePosition
from ..continuous.event_bus import Channel
from ..continuous.orchestrator import FusionEngine
from ..continuous.persistence import JsonFileStore, MemoryStore
from ..continuous.scheduler import ManualClock
from ..display import Colors, format_composite, format_evaluation, format_signal
from ..engines.fusion_config import FusionConfig
from ..errors import ConfigError
from ..logging_config import configure_default_logging

logger = logging.getLogger(__name__)


def _whale_positions(items) -> list:
    return [
        WhalePosition(
            address=str(item.get("address", "")),
            size=float(item.get("size", 0)),
            notional=float(item.get("notional", 0)),
            entry_price=item.get("entry_price"),
            is_consistent=bool(item.get("is_consistent", False)),
        )
        for item in items or []
    ]


def read_replay(path: str) -> Iterator[Dict[str, Any]]:
    """Yield replay records; malformed lines are logged and skipped."""
    with open(path, "r", encoding="utf-8") as handle:
        for line_no, line in enumerate(handle, 1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            try:
                record = json.loads(line)
            except ValueError as e:
                logger.warning(f"{path}:{line_no}: skipping malformed line ({e})")
                continue
            if not isinstance(record, dict) or "ts" not in record or "type" not in record:
                logger.warning(f"{path}:{line_no}: record needs 'ts' and 'type'")
                continue
            yield record


def enqueue_record(engine: FusionEngine, record: Dict[str, Any]) -> None:
    kind = record["type"]
    exchange = record.get("exchange", engine.primary_exchange)
    instrument = str(record.get("instrument", "")).upper()
    if kind == "tick":
        engine.queue.put_tick(exchange, instrument, record.get("data") or {})
    elif kind == "trades":
        engine.queue.put_trades(exchange, instrument, record.get("data") or [])
    elif kind == "whales":
        consensus = WhaleConsensus(
            instrument=instrument,
            longs=_whale_positions(record.get("longs")),
            shorts=_whale_positions(record.get("shorts")),
            total_notional=float(record.get("total_notional", 0)),
            timestamp_ms=int(record["ts"]),
        )
        engine.queue.put_whale_consensus(consensus, exchange)
    else:
        logger.warning(f"Unknown replay record type: {kind!r}")


def attach_printers(engine: FusionEngine, quiet: bool) -> None:
    if not quiet:
        engine.bus.subscribe(Channel.COMPOSITE, lambda composite: print(format_composite(composite)))
    engine.bus.subscribe(Channel.SIGNAL, lambda entry: print(format_signal(entry)))
    engine.bus.subscribe(Channel.EVALUATION, lambda result: print(format_evaluation(result)))


def print_win_rates(engine: FusionEngine) -> None:
    print(f"\n{Colors.BOLD}Win rates{Colors.RESET}")
    for instrument in engine.instruments:
        rates = engine.win_rates(instrument)
        overall = rates.overall
        rate = f"{overall.win_rate:.1f}%" if overall.win_rate is not None else "n/a"
        print(
            f"  {instrument:<5} {overall.wins}W/{overall.losses}L ({rate}) "
            f"pending={rates.pending} expired={rates.expired} logged={rates.total_logged}"
        )


async def run_replay(config: FusionConfig, path: str, state_dir: Optional[str], quiet: bool) -> Optional[FusionEngine]:
    records = list(read_replay(path))
    if not records:
        print(f"{Colors.YELLOW}Nothing to replay in {path}{Colors.RESET}")
        return None
    clock = ManualClock(int(records[0]["ts"]))
    store = JsonFileStore(state_dir) if state_dir else MemoryStore()
    engine = FusionEngine(config, clock=clock, store=store)
    attach_printers(engine, quiet)

    engine.load_state()
    engine.schedule_jobs()
    for record in records:
        ts = int(record["ts"])
        if ts > clock.now():
            clock.set(ts)
        enqueue_record(engine, record)
        await engine.step()

    # Let the last pending evaluations resolve.
    horizon = clock.now() + config.evaluation_window_ms + config.evaluation_grace_ms
    while clock.now() < horizon:
        clock.advance(config.evaluate_interval_ms)
        await engine.step()

    engine.flush()
    print_win_rates(engine)
    return engine


async def run_live(config: FusionConfig, quiet: bool) -> None:
    engine = FusionEngine(config)
    attach_printers(engine, quiet)
    print(f"{Colors.DIM}Starting fusion engine (state: {config.state_dir})...{Colors.RESET}")
    async with engine:
        print(f"{Colors.GREEN}Running. Ctrl+C to stop.{Colors.RESET}\n")
        while True:
            await asyncio.sleep(60)
            status = engine.get_status()
            if status["last_error"]:
                print(f"{Colors.YELLOW}Last error: {status['last_error']}{Colors.RESET}")


def main():
    parser = argparse.ArgumentParser(description="Market signal fusion engine")
    parser.add_argument(
        "--timeframe", "-t", default=None, help="Emission timeframe: 5, 15, 30, 60 or 5m/1h (default: session)"
    )
    parser.add_argument("--state-dir", default=None, help="Persistence directory")
    parser.add_argument("--replay", default=None, help="Replay a JSON-lines recording on a manual clock")
    parser.add_argument("--quiet", "-q", action="store_true", help="Only print signals and evaluations")
    args = parser.parse_args()

    configure_default_logging(quiet=args.quiet)

    overrides: Dict[str, Any] = {}
    if args.timeframe:
        overrides["emission_timeframe"] = args.timeframe
    if args.state_dir:
        overrides["state_dir"] = args.state_dir
    try:
        config = FusionConfig.from_env(**overrides)
    except ConfigError as e:
        parser.error(str(e))

    try:
        if args.replay:
            asyncio.run(run_replay(config, args.replay, args.state_dir, args.quiet))
        else:
            asyncio.run(run_live(config, args.quiet))
    except KeyboardInterrupt:
        print(f"\n{Colors.YELLOW}Shutting down...{Colors.RESET}")


if __name__ == "__main__":
    main()
