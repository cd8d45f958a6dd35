import os
import sys
import tempfile
import threading

# Point the app at a throwaway database before anything under app/ is imported
_TEST_DIR = tempfile.mkdtemp(prefix="minefield-tests-")
os.environ["DB_PATH"] = os.path.join(_TEST_DIR, "test_minefield.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ["RATE_LIMIT_ENABLED"] = "false"

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from app.config import MinesConfig
from app.core.database import Database
from app.core.exceptions import InsufficientFunds, LedgerError
from app.core.games.mines import MinesGame
from app.core.odds import OddsPolicy
from app.core.rng import TrueRNG


class FakeLedger:
    """In-memory ledger with the same contract as EconomySystem."""

    def __init__(self, balances=None):
        self.balances = dict(balances or {})
        self.debits = []
        self.credits = []
        self.fail_credit = False
        self.fail_debit = False
        self._lock = threading.Lock()

    def get_balance(self, user_id):
        return self.balances.get(user_id, 0.0)

    def debit(self, user_id, amount, game="mines", details=None):
        with self._lock:
            if self.fail_debit:
                raise LedgerError("debit unavailable")
            if self.balances.get(user_id, 0.0) < amount:
                raise InsufficientFunds(user_id=user_id, amount=amount)
            self.balances[user_id] -= amount
            self.debits.append((user_id, amount))
            return self.balances[user_id]

    def credit(self, user_id, amount, game="mines", details=None):
        with self._lock:
            if self.fail_credit:
                raise LedgerError("credit unavailable")
            self.balances[user_id] = self.balances.get(user_id, 0.0) + amount
            self.credits.append((user_id, amount))
            return self.balances[user_id]


class FixedLayoutRNG(TrueRNG):
    """Places hazards at known positions so tests can aim at safe tiles."""

    def __init__(self, hazards):
        super().__init__()
        self.hazards = list(hazards)

    def sample_positions(self, population, k):
        assert len(self.hazards) == k, "fixed layout does not match hazard count"
        return sorted(self.hazards)


@pytest.fixture
def history(tmp_path):
    return Database(tmp_path / "history.db")


@pytest.fixture
def ledger():
    return FakeLedger({1: 1000.0, 2: 1000.0})


@pytest.fixture
def make_game(ledger, history):
    """Build a MinesGame with a fixed hazard layout and payout policy."""

    def _make(hazards=(0, 1, 2, 3, 4), policy=None, config=None):
        return MinesGame(
            ledger=ledger,
            policy=policy or OddsPolicy(house_edge=0.03, payout_cap=500.0, payout_floor=1.05),
            config=config or MinesConfig(),
            random_source=FixedLayoutRNG(hazards),
            history=history,
        )

    return _make
