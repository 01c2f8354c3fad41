"""
Tests for blob stores and the persisted state layout.
"""

import json
import os

import pytest

from market_fusion.continuous.persistence import (
    LEGACY_KEY,
    NS_BIAS_HISTORY,
    NS_HISTORICAL,
    JsonFileStore,
    MemoryStore,
    StateStore,
    decode_series,
    dumps,
    encode_series,
    is_legacy_historical,
)
from market_fusion.errors import PersistenceError

T0 = 1_700_000_000_000
EXCHANGES = ["hyperliquid", "binance", "bybit"]


def _state_store(store=None):
    return StateStore(store or MemoryStore(), "hyperliquid", EXCHANGES, ["BTC", "ETH"])


class TestBlobStores:
    def test_identical_write_is_elided(self):
        store = MemoryStore()
        assert store.put("ns", "k", "a") is True
        assert store.put("ns", "k", "a") is False
        assert store.put("ns", "k", "b") is True
        assert (store.writes, store.elided) == (2, 1)

    def test_json_file_store(self, tmp_path):
        store = JsonFileStore(str(tmp_path))
        store.put("historicalData", "binance", '{"x":1}')
        assert os.path.exists(tmp_path / "historicalData" / "binance.json")
        assert JsonFileStore(str(tmp_path)).get("historicalData", "binance") == '{"x":1}'
        assert store.keys("historicalData") == ["binance"]
        store.delete("historicalData", "binance")
        assert store.get("historicalData", "binance") is None

    def test_json_file_store_write_failure(self, tmp_path):
        blocker = tmp_path / "blocked"
        blocker.write_text("not a directory")
        store = JsonFileStore(str(blocker))
        with pytest.raises(PersistenceError):
            store.put("ns", "key", "{}")

    def test_failed_replace_leaves_no_temp_file(self, tmp_path, monkeypatch):
        def failing_replace(src, dst):
            raise OSError("read-only file system")

        monkeypatch.setattr(os, "replace", failing_replace)
        store = JsonFileStore(str(tmp_path))
        with pytest.raises(PersistenceError):
            store.put("historicalData", "binance", '{"x":1}')
        assert os.listdir(tmp_path / "historicalData") == []


class TestSeriesEncoding:
    def test_family_shapes(self):
        assert encode_series("cvd", [(T0, 5.0)]) == [{"delta": 5.0, "time": T0}]
        assert encode_series("orderbook", [(T0, 1.5)]) == [{"timestamp": T0, "imbalance": 1.5}]
        assert encode_series("price", [(T0, 100.0)]) == [{"timestamp": T0, "value": 100.0}]

    def test_decode_skips_malformed(self):
        items = [{"timestamp": T0, "value": 1.0}, {"timestamp": "x"}, "junk", {"value": 2.0}]
        assert decode_series("price", items) == [(T0, 1.0)]
        assert decode_series("price", None) == []


class TestStateStore:
    def test_exchange_round_trip_is_byte_stable(self):
        state = _state_store()
        series = {"price": {"BTC": [(T0, 100.0), (T0 + 1, 101.0)]}, "cvd": {"BTC": [(T0, -5.0)]}}
        assert state.save_exchange("binance", series) is True
        first = state.store.get(NS_HISTORICAL, "binance")

        loaded = state.load_exchange("binance")
        assert loaded["price"]["BTC"] == [(T0, 100.0), (T0 + 1, 101.0)]
        assert loaded["cvd"]["BTC"] == [(T0, -5.0)]
        assert loaded["oi"]["ETH"] == []

        assert state.save_exchange("binance", loaded) is False
        assert state.store.get(NS_HISTORICAL, "binance") == first

    def test_bias_and_signal_history(self):
        state = _state_store()
        state.save_bias_history({"BTC": [(T0, 0.5)]})
        assert state.load_bias_history() == {"BTC": [(T0, 0.5)]}
        assert json.loads(state.store.get(NS_BIAS_HISTORY, LEGACY_KEY)) == {"BTC": [{"score": 0.5, "timestamp": T0}]}

        state.save_signal_history({"BTC": [{"type": "BULLISH"}]})
        assert state.load_signal_history() == {"BTC": [{"type": "BULLISH"}]}

    def test_corrupt_blob_raises(self):
        store = MemoryStore()
        store.put(NS_HISTORICAL, "binance", "{not json")
        with pytest.raises(PersistenceError):
            _state_store(store).load_exchange("binance")

    def test_empty_store_loads_empty(self):
        state = _state_store()
        assert state.load_bias_history() == {}
        assert state.load_signal_history() == {}
        assert state.migrate_legacy() is False


class TestLegacyMigration:
    def test_legacy_blob_moves_under_primary(self):
        store = MemoryStore()
        legacy = {"oi": {"BTC": [{"timestamp": T0, "value": 1e9}]}, "price": {"BTC": [{"timestamp": T0, "value": 1.0}]}}
        store.put(NS_HISTORICAL, LEGACY_KEY, dumps(legacy))
        assert is_legacy_historical(legacy)

        state = _state_store(store)
        assert state.migrate_legacy() is True
        assert store.get(NS_HISTORICAL, LEGACY_KEY) is None
        assert state.load_exchange("hyperliquid")["oi"]["BTC"] == [(T0, 1e9)]
        binance = json.loads(store.get(NS_HISTORICAL, "binance"))
        assert binance["price"] == {"BTC": [], "ETH": []}
        assert set(store.keys(NS_HISTORICAL)) == set(EXCHANGES)

    def test_existing_exchange_blob_not_overwritten(self):
        store = MemoryStore()
        store.put(NS_HISTORICAL, "hyperliquid", dumps({"price": {"BTC": [{"timestamp": T0 + 5, "value": 2.0}]}}))
        store.put(NS_HISTORICAL, LEGACY_KEY, dumps({"oi": {}, "price": {"BTC": [{"timestamp": T0, "value": 1.0}]}}))
        state = _state_store(store)
        state.migrate_legacy()
        assert state.load_exchange("hyperliquid")["price"]["BTC"] == [(T0 + 5, 2.0)]

    def test_unrecognized_legacy_blob(self):
        store = MemoryStore()
        store.put(NS_HISTORICAL, LEGACY_KEY, dumps([1, 2, 3]))
        with pytest.raises(PersistenceError):
            _state_store(store).migrate_legacy()
