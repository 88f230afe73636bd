"""
Unit tests for ledger snapshot persistence.
"""

import json
import os
from decimal import Decimal
from pathlib import Path

import pytest

from optivest.exceptions import PersistenceFailure, StateLocked
from optivest.models.trading import (
    LedgerSnapshot,
    Order,
    OrderKind,
    OrderSide,
    OrderStatus,
    TradeRecord,
)
from optivest.paper_trading.ledger import PositionLedger
from optivest.paper_trading.persistence import SnapshotStore, StateLock, convert_legacy_snapshot


LEGACY_DOCUMENT = {
    "virtualBalance": {"USDT": 9550.0, "BTC": 0.01},
    "tradeHistory": [
        {
            "id": "1700000000000",
            "symbol": "BTC/USDT",
            "side": "buy",
            "amount": 0.01,
            "price": 45000,
            "timestamp": "2024-01-01T00:00:00Z",
        },
        {"symbol": "BTC/USDT", "side": "sell", "amount": 0, "price": 45000},
    ],
    "tradingRunning": True,
    "stopLossOrders": [
        {
            "id": "sl_1700000000000",
            "symbol": "BTC/USDT",
            "triggerPrice": 44000,
            "amount": 0.01,
            "status": "ACTIVE",
            "createdAt": "2024-01-01T00:00:00Z",
        }
    ],
    "takeProfitOrders": [],
    "lastUpdate": "2024-01-01T00:00:00Z",
}


class TestSnapshotStore:
    """Atomic JSON snapshots."""

    def test_missing_file_loads_none(self, temp_dir: Path):
        store = SnapshotStore(temp_dir / "missing.json")

        assert not store.exists()
        assert store.load() is None

    def test_round_trip(self, temp_dir: Path):
        store = SnapshotStore(temp_dir / "nested" / "state.json")
        trade = TradeRecord(symbol="BTC/USDT", side=OrderSide.BUY, amount=Decimal("0.01"), price=Decimal("45000"))
        order = Order(symbol="BTC/USDT", kind=OrderKind.STOP_LOSS, trigger_price=Decimal("44000"), amount=Decimal("0.01"))
        snapshot = LedgerSnapshot(
            balances={"USDT": Decimal("9550"), "BTC": Decimal("0.01")},
            trades=[trade],
            orders=[order],
            trading_enabled=True,
        )

        store.save(snapshot)
        loaded = store.load()

        assert loaded.balances == snapshot.balances
        assert loaded.trades[0].trade_id == trade.trade_id
        assert loaded.trades[0].price == Decimal("45000")
        assert loaded.orders[0].order_id == order.order_id
        assert loaded.orders[0].order_id.startswith("sl_")
        assert loaded.trading_enabled is True
        assert not list(store.path.parent.glob("*.tmp"))

    def test_corrupt_file_raises(self, temp_dir: Path):
        path = temp_dir / "state.json"
        path.write_text("{not json", encoding="utf-8")

        with pytest.raises(PersistenceFailure):
            SnapshotStore(path).load()

    def test_negative_balance_rejected(self, temp_dir: Path):
        path = temp_dir / "state.json"
        path.write_text(json.dumps({"schema_version": 1, "balances": {"USDT": "-5"}}), encoding="utf-8")

        with pytest.raises(PersistenceFailure):
            SnapshotStore(path).load()

    def test_newer_schema_rejected(self, temp_dir: Path):
        path = temp_dir / "state.json"
        path.write_text(json.dumps({"schema_version": 99}), encoding="utf-8")

        with pytest.raises(PersistenceFailure):
            SnapshotStore(path).load()

    def test_quarantine_moves_file(self, temp_dir: Path):
        path = temp_dir / "state.json"
        path.write_text("garbage", encoding="utf-8")

        target = SnapshotStore(path).quarantine()

        assert not path.exists()
        assert target.exists()
        assert ".corrupt-" in target.name


class TestLegacyLayout:
    """Documents in the earlier camelCase layout."""

    def test_convert_legacy_snapshot(self):
        data = convert_legacy_snapshot(LEGACY_DOCUMENT)

        assert data["schema_version"] == 1
        assert data["balances"] == {"USDT": "9550.0", "BTC": "0.01"}
        assert len(data["trades"]) == 1
        assert data["trades"][0]["side"] == "BUY"
        assert data["orders"][0]["kind"] == "STOP_LOSS"
        assert data["trading_enabled"] is True

    def test_legacy_file_loads(self, temp_dir: Path):
        path = temp_dir / "paper_trading_data.json"
        path.write_text(json.dumps(LEGACY_DOCUMENT), encoding="utf-8")

        snapshot = SnapshotStore(path).load()

        assert snapshot.balances["USDT"] == Decimal("9550.0")
        assert snapshot.trades[0].trade_id == "1700000000000"
        assert snapshot.orders[0].order_id == "sl_1700000000000"
        assert snapshot.orders[0].status is OrderStatus.ACTIVE

    def test_null_legacy_balance_rejected(self, temp_dir: Path):
        path = temp_dir / "paper_trading_data.json"
        path.write_text(json.dumps({"virtualBalance": {"USDT": 9000, "BTC": None}}), encoding="utf-8")

        with pytest.raises(PersistenceFailure):
            SnapshotStore(path).load()

    def test_legacy_order_without_trigger_rejected(self, temp_dir: Path):
        document = dict(LEGACY_DOCUMENT)
        document["stopLossOrders"] = [{"id": "sl_1", "symbol": "BTC/USDT", "amount": 0.01}]
        path = temp_dir / "paper_trading_data.json"
        path.write_text(json.dumps(document), encoding="utf-8")

        with pytest.raises(PersistenceFailure):
            SnapshotStore(path).load()

    @pytest.mark.parametrize("version", ["1", 1.5, True, [1]])
    def test_non_integer_schema_version_rejected(self, temp_dir: Path, version):
        path = temp_dir / "state.json"
        path.write_text(json.dumps({"schema_version": version}), encoding="utf-8")

        with pytest.raises(PersistenceFailure):
            SnapshotStore(path).load()


class TestLedgerPersistence:
    """The ledger writes after every change and restores on load."""

    @pytest.mark.asyncio
    async def test_state_survives_restart(self, store: SnapshotStore, clock):
        ledger = PositionLedger(store=store, clock=clock)
        await ledger.execute_trade("BTC/USDT", "BUY", "0.01", "45000")
        await ledger.set_trading_enabled(True)

        restored = PositionLedger(store=store, clock=clock)
        assert restored.load() is True

        assert restored.balance_of("USDT") == Decimal("9550")
        assert restored.balance_of("BTC") == Decimal("0.01")
        assert restored.trading_enabled is True
        assert len(restored.get_trade_history()) == 1

    def test_corrupt_snapshot_is_quarantined(self, store: SnapshotStore, clock):
        store.path.write_text("{broken", encoding="utf-8")
        ledger = PositionLedger(store=store, clock=clock)

        assert ledger.load() is False
        assert ledger.balance_of("USDT") == Decimal("10000")
        assert not store.path.exists()
        assert list(store.path.parent.glob("*.corrupt-*"))

    @pytest.mark.asyncio
    async def test_write_failure_is_counted(self, temp_dir: Path, clock):
        blocker = temp_dir / "blocker"
        blocker.write_text("a file, not a directory", encoding="utf-8")
        ledger = PositionLedger(store=SnapshotStore(blocker / "state.json"), clock=clock)

        await ledger.execute_trade("BTC/USDT", "BUY", "0.01", "45000")

        assert ledger.persistence_failures == 1
        assert ledger.balance_of("BTC") == Decimal("0.01")

    def test_malformed_legacy_snapshot_is_quarantined(self, store: SnapshotStore, clock):
        store.path.write_text(json.dumps({"virtualBalance": {"USDT": 9000, "BTC": None}}), encoding="utf-8")
        ledger = PositionLedger(store=store, clock=clock)

        assert ledger.load() is False
        assert ledger.get_balance() == {"USDT": Decimal("10000")}
        assert list(store.path.parent.glob("*.corrupt-*"))


class TestStateLock:
    """Pid lock file next to the state file."""

    def test_acquire_and_release(self, store: SnapshotStore):
        lock = StateLock(store.path)

        lock.acquire()
        lock.acquire()

        assert lock.path.name == "paper_trading_data.json.lock"
        assert lock.owner() == os.getpid()
        lock.release()
        assert not lock.path.exists()
        assert lock.owner() is None

    def test_live_owner_refuses(self, store: SnapshotStore):
        holder = StateLock(store.path)
        holder.acquire()

        with pytest.raises(StateLocked) as exc_info:
            StateLock(store.path).acquire()

        assert exc_info.value.pid == os.getpid()
        assert holder.path.exists()
        holder.release()

    @pytest.mark.parametrize("content", ["not a pid", "", "999999999", "-4"])
    def test_stale_lock_taken_over(self, store: SnapshotStore, content):
        lock = StateLock(store.path)
        lock.path.write_text(content, encoding="utf-8")

        lock.acquire()

        assert lock.held
        assert lock.owner() == os.getpid()
        lock.release()

    def test_release_leaves_foreign_lock(self, store: SnapshotStore):
        lock = StateLock(store.path)
        lock.acquire()
        lock.path.write_text("999999999", encoding="utf-8")

        lock.release()

        assert lock.path.read_text(encoding="utf-8") == "999999999"
