"""
Ledger snapshot persistence.

Snapshots are JSON documents written atomically: the new content goes to
a temporary file in the target directory, is fsynced, and then replaces
the old file with ``os.replace``. A crash mid-write leaves the previous
snapshot intact.

One process at a time writes a state file; ``StateLock`` enforces it
with a pid file next to the snapshot.

Documents without a ``schema_version`` key use the earlier camelCase
layout (``virtualBalance``, ``tradeHistory``, ``stopLossOrders`` ...) and
are converted on load.
"""

import json
import os
import tempfile
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from ..exceptions import PersistenceFailure, StateLocked
from ..logger import get_logger
from ..models.trading import SNAPSHOT_SCHEMA_VERSION, LedgerSnapshot


logger = get_logger(__name__)


class SnapshotStore:
    """Reads and writes ``LedgerSnapshot`` documents at one path."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def save(self, snapshot: LedgerSnapshot) -> None:
        """Atomically replace the snapshot file."""
        payload = snapshot.model_dump_json(indent=2)
        tmp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                dir=self.path.parent,
                prefix=f".{self.path.name}.",
                suffix=".tmp",
                delete=False,
            ) as tmp:
                tmp_name = tmp.name
                tmp.write(payload)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_name, self.path)
            tmp_name = None
        except OSError as e:
            raise PersistenceFailure(f"Failed to write snapshot {self.path}: {e}") from e
        finally:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)

    def load(self) -> Optional[LedgerSnapshot]:
        """Read the snapshot; None when no file exists yet."""
        if not self.path.exists():
            return None

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceFailure(f"Failed to read snapshot {self.path}: {e}") from e

        if not isinstance(data, dict):
            raise PersistenceFailure(f"Snapshot {self.path} is not a JSON object")

        version = data.get("schema_version")
        if version is None:
            logger.info(f"Converting legacy snapshot layout in {self.path}")
            try:
                data = convert_legacy_snapshot(data)
            except (KeyError, TypeError, ValueError, AttributeError, ArithmeticError) as e:
                raise PersistenceFailure(f"Legacy snapshot {self.path} is malformed: {e!r}") from e
        elif not isinstance(version, int) or isinstance(version, bool):
            raise PersistenceFailure(f"Snapshot {self.path} has invalid schema version {version!r}")
        elif version > SNAPSHOT_SCHEMA_VERSION:
            raise PersistenceFailure(
                f"Snapshot {self.path} has schema version {version}, "
                f"newest supported is {SNAPSHOT_SCHEMA_VERSION}"
            )

        try:
            return LedgerSnapshot.model_validate(data)
        except ValidationError as e:
            raise PersistenceFailure(f"Snapshot {self.path} is invalid: {e}") from e

    def quarantine(self) -> Optional[Path]:
        """Move an unreadable snapshot aside so a fresh one can be written."""
        if not self.path.exists():
            return None
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        target = self.path.with_name(f"{self.path.name}.corrupt-{stamp}")
        try:
            os.replace(self.path, target)
        except OSError as e:
            raise PersistenceFailure(f"Failed to move snapshot {self.path} aside: {e}") from e
        logger.warning(f"Unreadable snapshot moved to {target}")
        return target


class StateLock:
    """
    Single-writer guard for one state file.

    The holder writes its pid into ``<state file>.lock``, created
    exclusively. A lock whose pid no longer runs, or whose content is
    unreadable, is stale and gets taken over.
    """

    def __init__(self, state_path: Union[str, Path]):
        state_path = Path(state_path)
        self.path = state_path.with_name(f"{state_path.name}.lock")
        self.held = False

    def acquire(self) -> None:
        """
        Take the lock.

        Raises:
            StateLocked: a live process holds it
        """
        if self.held:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                owner = self.owner()
                if owner is not None and _pid_alive(owner):
                    raise StateLocked(str(self.path), owner) from None
                logger.warning(f"Removing stale state lock {self.path} (pid {owner})")
                try:
                    os.unlink(self.path)
                except FileNotFoundError:
                    pass
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(str(os.getpid()))
            self.held = True
            return
        raise StateLocked(str(self.path), self.owner() or -1)

    def release(self) -> None:
        if not self.held:
            return
        self.held = False
        if self.owner() == os.getpid():
            try:
                os.unlink(self.path)
            except FileNotFoundError:
                pass

    def owner(self) -> Optional[int]:
        """Pid recorded in the lock file, None when missing or unreadable."""
        try:
            return int(self.path.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except (OSError, OverflowError):
        return False
    return True


def _convert_order(order: Dict[str, Any], default_kind: str) -> Dict[str, Any]:
    return {
        "order_id": order.get("id", ""),
        "symbol": order["symbol"],
        "kind": order.get("type", default_kind),
        "trigger_price": str(order["triggerPrice"]),
        "amount": str(order["amount"]),
        "status": order.get("status", "ACTIVE"),
        "created_at": order.get("createdAt") or datetime.now(timezone.utc).isoformat(),
        "executed_at": order.get("executedAt"),
        "executed_price": str(order["executedPrice"]) if order.get("executedPrice") is not None else None,
        "cancelled_at": order.get("cancelledAt"),
        "cancel_reason": order.get("cancelReason"),
    }


def convert_legacy_snapshot(data: Dict[str, Any]) -> Dict[str, Any]:
    """Map the camelCase layout onto the current snapshot fields."""
    balances = {
        currency: str(max(Decimal(str(amount)), Decimal("0")))
        for currency, amount in (data.get("virtualBalance") or {}).items()
    }

    trades: List[Dict[str, Any]] = []
    for trade in data.get("tradeHistory") or []:
        if float(trade.get("amount", 0)) <= 0 or float(trade.get("price", 0)) <= 0:
            continue
        converted = {
            "symbol": trade["symbol"],
            "side": str(trade["side"]).upper(),
            "amount": str(trade["amount"]),
            "price": str(trade["price"]),
            "timestamp": trade.get("timestamp") or datetime.now(timezone.utc).isoformat(),
        }
        if trade.get("id"):
            converted["trade_id"] = str(trade["id"])
        trades.append(converted)

    orders = [_convert_order(o, "STOP_LOSS") for o in data.get("stopLossOrders") or []]
    orders += [_convert_order(o, "TAKE_PROFIT") for o in data.get("takeProfitOrders") or []]

    return {
        "schema_version": SNAPSHOT_SCHEMA_VERSION,
        "balances": balances,
        "trades": trades,
        "orders": orders,
        "trading_enabled": bool(data.get("tradingRunning", False)),
        "last_update": data.get("lastUpdate") or datetime.now(timezone.utc).isoformat(),
    }
