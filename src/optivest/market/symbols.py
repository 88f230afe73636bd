"""
Tracked symbol selection.

The engine trades a subset of the supported pairs. The subset is drawn
once, stored as a JSON list and reused on later starts until it is
regenerated explicitly.
"""

import json
import os
import random
import tempfile
from pathlib import Path
from typing import List, Optional, Sequence, Union

from ..logger import get_logger
from ..models.market_data import normalize_symbol


logger = get_logger(__name__)

SUPPORTED_PAIRS: List[str] = [
    "BTC/USDT", "ETH/USDT", "BNB/USDT", "ADA/USDT", "SOL/USDT",
    "DOT/USDT", "DOGE/USDT", "AVAX/USDT", "LINK/USDT", "POL/USDT",
    "XRP/USDT", "LTC/USDT", "UNI/USDT", "ATOM/USDT", "FTM/USDT",
    "NEAR/USDT", "ALGO/USDT", "VET/USDT", "ICP/USDT", "FIL/USDT",
]


class SymbolSelector:
    """Persisted random selection of tracked symbols."""

    def __init__(
        self,
        path: Optional[Union[str, Path]] = None,
        count: int = 10,
        universe: Sequence[str] = SUPPORTED_PAIRS,
        rng: Optional[random.Random] = None,
    ):
        if not universe:
            raise ValueError("Symbol universe must not be empty")
        self.path = Path(path) if path else None
        self.universe = [normalize_symbol(s) for s in universe]
        self.count = min(count, len(self.universe))
        self.rng = rng or random.Random()
        self._symbols: List[str] = []

    @property
    def symbols(self) -> List[str]:
        return list(self._symbols)

    def load_or_create(self) -> List[str]:
        """Stored selection when readable, otherwise a fresh one."""
        stored = self._read()
        if stored:
            self._symbols = stored
            logger.info(f"Loaded {len(stored)} tracked symbols: {', '.join(stored)}")
            return self.symbols
        return self.regenerate()

    def regenerate(self) -> List[str]:
        """Draw a new selection and store it."""
        self._symbols = self.rng.sample(self.universe, self.count)
        self._write(self._symbols)
        logger.info(f"Selected {len(self._symbols)} tracked symbols: {', '.join(self._symbols)}")
        return self.symbols

    def _read(self) -> Optional[List[str]]:
        if self.path is None or not self.path.exists():
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            symbols = [normalize_symbol(s) for s in data]
        except (OSError, json.JSONDecodeError, TypeError, ValueError, AttributeError) as e:
            logger.error(f"Ignoring unreadable symbol list {self.path}: {e}")
            return None
        return symbols or None

    def _write(self, symbols: List[str]) -> None:
        if self.path is None:
            return
        tmp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                mode="w", encoding="utf-8", dir=self.path.parent, suffix=".tmp", delete=False
            ) as tmp:
                tmp_name = tmp.name
                json.dump(symbols, tmp, indent=2)
            os.replace(tmp_name, self.path)
            tmp_name = None
        except OSError as e:
            logger.error(f"Could not store symbol list {self.path}: {e}")
        finally:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)
