"""
Persistence Store.

Namespaced key -> string blob storage plus the engine's persisted layout:

    historicalData/{exchange}   {oi, price, orderbook, cvd, funding}
                                 each instrument -> [{timestamp, value|imbalance}]
                                 cvd entries are {delta, time}
    biasHistory/all             instrument -> [{timestamp, score}]
    signalHistory/all           instrument -> [SignalLogEntry dict]

A legacy monolithic `historicalData/all` blob (no exchange keys) is migrated
on load: it is wrapped under the primary exchange and the other active
exchanges get empty shapes.

Stores raise PersistenceError; callers decide how loud to be about it.
"""

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..errors import PersistenceError

logger = logging.getLogger(__name__)

NS_HISTORICAL = "historicalData"
NS_BIAS_HISTORY = "biasHistory"
NS_SIGNAL_HISTORY = "signalHistory"
LEGACY_KEY = "all"

SERIES_FAMILIES = ("oi", "price", "orderbook", "cvd", "funding")


# =============================================================================
# STORES
# =============================================================================


class BlobStore(ABC):
    """
    Namespaced blob store.

    Writes are idempotent; a write identical to the last stored blob is
    elided and reported as False.
    """

    def __init__(self):
        self._last_written: Dict[Tuple[str, str], str] = {}
        self.writes = 0
        self.elided = 0

    @abstractmethod
    def _read(self, ns: str, key: str) -> Optional[str]:
        pass

    @abstractmethod
    def _write(self, ns: str, key: str, blob: str) -> None:
        pass

    @abstractmethod
    def _remove(self, ns: str, key: str) -> None:
        pass

    @abstractmethod
    def keys(self, ns: str) -> List[str]:
        pass

    def get(self, ns: str, key: str) -> Optional[str]:
        blob = self._read(ns, key)
        if blob is not None:
            self._last_written[(ns, key)] = blob
        return blob

    def put(self, ns: str, key: str, blob: str) -> bool:
        """Store a blob. Returns False when the write was elided."""
        if self._last_written.get((ns, key)) == blob:
            self.elided += 1
            return False
        self._write(ns, key, blob)
        self._last_written[(ns, key)] = blob
        self.writes += 1
        return True

    def delete(self, ns: str, key: str) -> None:
        self._remove(ns, key)
        self._last_written.pop((ns, key), None)


class MemoryStore(BlobStore):
    """In-process store; used by tests and ephemeral runs."""

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, str]] = {}

    def _read(self, ns: str, key: str) -> Optional[str]:
        return self._data.get(ns, {}).get(key)

    def _write(self, ns: str, key: str, blob: str) -> None:
        self._data.setdefault(ns, {})[key] = blob

    def _remove(self, ns: str, key: str) -> None:
        self._data.get(ns, {}).pop(key, None)

    def keys(self, ns: str) -> List[str]:
        return sorted(self._data.get(ns, {}).keys())


class JsonFileStore(BlobStore):
    """
    One file per (namespace, key) under a state directory:

        {root}/{namespace}/{key}.json
    """

    def __init__(self, root: str):
        super().__init__()
        self.root = os.path.expanduser(root)

    def _path(self, ns: str, key: str) -> str:
        safe_key = key.replace(os.sep, "_")
        return os.path.join(self.root, ns, f"{safe_key}.json")

    def _read(self, ns: str, key: str) -> Optional[str]:
        path = self._path(ns, key)
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as handle:
                return handle.read()
        except OSError as exc:
            raise PersistenceError(f"Failed to read {path}: {exc}") from exc

    def _write(self, ns: str, key: str, blob: str) -> None:
        path = self._path(ns, key)
        directory = os.path.dirname(path)
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(blob)
                os.replace(tmp_path, path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as exc:
            raise PersistenceError(f"Failed to write {path}: {exc}") from exc

    def _remove(self, ns: str, key: str) -> None:
        path = self._path(ns, key)
        try:
            if os.path.exists(path):
                os.remove(path)
        except OSError as exc:
            raise PersistenceError(f"Failed to delete {path}: {exc}") from exc

    def keys(self, ns: str) -> List[str]:
        directory = os.path.join(self.root, ns)
        if not os.path.isdir(directory):
            return []
        return sorted(name[:-5] for name in os.listdir(directory) if name.endswith(".json"))


# =============================================================================
# LAYOUT
# =============================================================================


def dumps(payload: Any) -> str:
    """Canonical JSON so equal state serializes to equal bytes."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"))


def loads(blob: Optional[str], what: str) -> Optional[Any]:
    if blob is None:
        return None
    try:
        return json.loads(blob)
    except ValueError as exc:
        raise PersistenceError(f"Corrupt {what} blob: {exc}") from exc


def empty_exchange_data(instruments: Iterable[str]) -> Dict[str, Dict[str, list]]:
    return {family: {inst: [] for inst in instruments} for family in SERIES_FAMILIES}


def encode_series(family: str, entries: Iterable[Tuple[int, float]]) -> List[Dict[str, Any]]:
    if family == "cvd":
        return [{"delta": float(value), "time": int(ts)} for ts, value in entries]
    if family == "orderbook":
        return [{"timestamp": int(ts), "imbalance": float(value)} for ts, value in entries]
    return [{"timestamp": int(ts), "value": float(value)} for ts, value in entries]


def decode_series(family: str, items: Any) -> List[Tuple[int, float]]:
    """Decode persisted entries; malformed items are skipped."""
    if not isinstance(items, list):
        return []
    if family == "cvd":
        ts_key, value_key = "time", "delta"
    elif family == "orderbook":
        ts_key, value_key = "timestamp", "imbalance"
    else:
        ts_key, value_key = "timestamp", "value"

    entries = []
    for item in items:
        if not isinstance(item, dict):
            continue
        try:
            entries.append((int(item[ts_key]), float(item[value_key])))
        except (KeyError, TypeError, ValueError):
            continue
    return entries


def is_legacy_historical(payload: Any) -> bool:
    """Old format: family keys at the top level instead of exchange keys."""
    return isinstance(payload, dict) and "oi" in payload and not any(
        isinstance(v, dict) and "oi" in v for v in payload.values()
    )


class StateStore:
    """
    Reads and writes the engine's persisted layout on top of a BlobStore.

    Every method raises PersistenceError on store failure.
    """

    def __init__(self, store: BlobStore, primary_exchange: str, exchanges: Iterable[str], instruments: Iterable[str]):
        self.store = store
        self.primary_exchange = primary_exchange
        self.exchanges = list(exchanges)
        self.instruments = list(instruments)

    # === Historical series ===

    def migrate_legacy(self) -> bool:
        """Split a legacy monolithic blob into per-exchange blobs."""
        payload = loads(self.store.get(NS_HISTORICAL, LEGACY_KEY), "historicalData")
        if payload is None:
            return False
        if is_legacy_historical(payload):
            logger.info(f"Migrating legacy historical data under {self.primary_exchange}")
            per_exchange = {self.primary_exchange: payload}
        elif isinstance(payload, dict):
            per_exchange = {k: v for k, v in payload.items() if isinstance(v, dict)}
        else:
            raise PersistenceError("Unrecognized historicalData blob")

        for exchange in self.exchanges:
            data = per_exchange.get(exchange) or empty_exchange_data(self.instruments)
            if self.store.get(NS_HISTORICAL, exchange) is None:
                self.store.put(NS_HISTORICAL, exchange, dumps(self._complete(data)))
        self.store.delete(NS_HISTORICAL, LEGACY_KEY)
        return True

    def _complete(self, data: Dict[str, Any]) -> Dict[str, Any]:
        complete = empty_exchange_data(self.instruments)
        for family in SERIES_FAMILIES:
            by_inst = data.get(family)
            if isinstance(by_inst, dict):
                complete[family].update({k: v for k, v in by_inst.items() if isinstance(v, list)})
        return complete

    def load_exchange(self, exchange: str) -> Dict[str, Dict[str, List[Tuple[int, float]]]]:
        """family -> instrument -> [(ts, value)] (untrimmed)."""
        payload = loads(self.store.get(NS_HISTORICAL, exchange), f"historicalData/{exchange}")
        result: Dict[str, Dict[str, List[Tuple[int, float]]]] = {f: {} for f in SERIES_FAMILIES}
        if not isinstance(payload, dict):
            return result
        for family in SERIES_FAMILIES:
            by_inst = payload.get(family)
            if not isinstance(by_inst, dict):
                continue
            for instrument, items in by_inst.items():
                result[family][instrument] = decode_series(family, items)
        return result

    def save_exchange(self, exchange: str, series: Dict[str, Dict[str, Iterable[Tuple[int, float]]]]) -> bool:
        data = empty_exchange_data(self.instruments)
        for family, by_inst in series.items():
            for instrument, entries in by_inst.items():
                data.setdefault(family, {})[instrument] = encode_series(family, entries)
        return self.store.put(NS_HISTORICAL, exchange, dumps(data))

    # === Bias history ===

    def load_bias_history(self) -> Dict[str, List[Tuple[int, float]]]:
        payload = loads(self.store.get(NS_BIAS_HISTORY, LEGACY_KEY), "biasHistory")
        result: Dict[str, List[Tuple[int, float]]] = {}
        if not isinstance(payload, dict):
            return result
        for instrument, items in payload.items():
            entries = []
            for item in items if isinstance(items, list) else []:
                try:
                    entries.append((int(item["timestamp"]), float(item["score"])))
                except (KeyError, TypeError, ValueError):
                    continue
            result[instrument] = entries
        return result

    def save_bias_history(self, history: Dict[str, Iterable[Tuple[int, float]]]) -> bool:
        payload = {
            inst: [{"timestamp": int(ts), "score": float(score)} for ts, score in entries]
            for inst, entries in history.items()
        }
        return self.store.put(NS_BIAS_HISTORY, LEGACY_KEY, dumps(payload))

    # === Signal history ===

    def load_signal_history(self) -> Dict[str, List[Dict[str, Any]]]:
        payload = loads(self.store.get(NS_SIGNAL_HISTORY, LEGACY_KEY), "signalHistory")
        if not isinstance(payload, dict):
            return {}
        return {inst: items for inst, items in payload.items() if isinstance(items, list)}

    def save_signal_history(self, history: Dict[str, List[Dict[str, Any]]]) -> bool:
        return self.store.put(NS_SIGNAL_HISTORY, LEGACY_KEY, dumps(history))
