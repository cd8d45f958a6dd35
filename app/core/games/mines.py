"""
Mines - stake a bet, reveal tiles one at a time, cash out before hitting a hazard.

The server owns everything that decides money: hazard layout, reveal
validation, the payout multiplier and every balance change. Clients only
send intents (start, reveal tile N, cash out) and get projections back;
hazard positions leave the server only once a round is over.

Every round is written to the rounds table when it starts and after each
move, so a restarted process picks up rounds that are still in play.
"""

import math
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from app.config import MinesConfig, settings
from app.core.database import Database, db
from app.core.economy import EconomySystem, economy
from app.core.exceptions import (
    InvalidConfiguration,
    LedgerError,
    NothingToCollect,
    NotOwner,
    RoundNotActive,
    RoundNotFound,
    TileAlreadyRevealed,
    TileIndexOutOfRange,
)
from app.core.logger import get_logger
from app.core.odds import OddsPolicy, chance_to_win
from app.core.rng import TrueRNG, rng

logger = get_logger("mines")

# Finished rounds stay cached in memory for this long; storage serves them after
FINISHED_ROUND_TTL = 3600


class RoundState(str, Enum):
    BETTING = "betting"
    PLAYING = "playing"
    TRAPPED = "trapped"
    COLLECTED = "collected"


@dataclass
class Tile:
    index: int
    is_hazard: bool
    revealed: bool = False


@dataclass
class Round:
    id: str
    owner_id: int
    bet_amount: float
    grid_size: int
    hazard_count: int
    tiles: List[Tile]
    state: RoundState = RoundState.PLAYING
    current_winnings: float = 0.0
    multiplier: float = 1.0
    payout: float = 0.0
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())
    ended_at: Optional[str] = None
    finished_monotonic: Optional[float] = None

    @property
    def tiles_revealed(self) -> int:
        return sum(1 for t in self.tiles if t.revealed)

    @property
    def safe_revealed(self) -> int:
        return sum(1 for t in self.tiles if t.revealed and not t.is_hazard)

    @property
    def safe_tiles(self) -> int:
        return self.grid_size - self.hazard_count

    @property
    def is_terminal(self) -> bool:
        return self.state in (RoundState.TRAPPED, RoundState.COLLECTED)

    @property
    def hazard_positions(self) -> List[int]:
        return [t.index for t in self.tiles if t.is_hazard]

    @property
    def revealed_positions(self) -> List[int]:
        return [t.index for t in self.tiles if t.revealed]

    def tiles_view(self) -> List[Dict]:
        """Tiles as the owner may see them: hazards only once revealed or finished."""
        view = []
        for tile in self.tiles:
            item = {"index": tile.index, "revealed": tile.revealed}
            if tile.revealed or self.is_terminal:
                item["is_hazard"] = tile.is_hazard
            view.append(item)
        return view

    def to_record(self) -> Dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "bet": self.bet_amount,
            "grid_size": self.grid_size,
            "hazard_count": self.hazard_count,
            "hazards": self.hazard_positions,
            "revealed": self.revealed_positions,
            "multiplier": self.multiplier,
            "winnings": self.current_winnings,
            "payout": self.payout,
            "state": self.state.value,
            "created_at": self.created_at,
            "ended_at": self.ended_at,
        }


@dataclass(frozen=True)
class RevealResult:
    tile_index: int
    is_hazard: bool
    winnings: float
    multiplier: float
    state: RoundState
    new_balance: Optional[float] = None


@dataclass(frozen=True)
class CashOutResult:
    payout: float
    multiplier: float
    new_balance: float


class MinesGame:
    """
    Round state machine for the mines game.

    betting -> playing -> trapped | collected. A round is created directly in
    `playing` once the stake is debited; `betting` is the player's phase when
    none of their rounds is in play.
    """

    def __init__(
        self,
        ledger: EconomySystem = None,
        policy: OddsPolicy = None,
        config: MinesConfig = None,
        random_source: TrueRNG = None,
        history: Database = None,
    ):
        self.ledger = ledger or economy
        self.policy = policy or OddsPolicy.from_settings()
        self.config = config or settings.mines
        self.rng = random_source or rng
        self.history = history or db
        self._rounds: Dict[str, Round] = {}

    # ==================== Validation ====================

    def _validate_bet(self, bet_amount) -> float:
        if isinstance(bet_amount, bool) or not isinstance(bet_amount, (int, float)):
            raise InvalidConfiguration("Bet must be a number")
        if not math.isfinite(bet_amount) or bet_amount <= 0:
            raise InvalidConfiguration("Bet must be a positive amount")
        if not self.config.min_bet <= bet_amount <= self.config.max_bet:
            raise InvalidConfiguration(
                f"Bet must be between {self.config.min_bet} and {self.config.max_bet}"
            )
        return float(bet_amount)

    def _validate_grid(self, grid_size, hazard_count):
        for value in (grid_size, hazard_count):
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidConfiguration("Grid size and hazard count must be integers")
        if grid_size not in self.config.grid_sizes:
            raise InvalidConfiguration(
                f"Grid size must be one of {sorted(self.config.grid_sizes)}"
            )
        max_hazards = self.config.max_hazards(grid_size)
        if not 0 < hazard_count <= max_hazards:
            raise InvalidConfiguration(
                f"Hazard count must be between 1 and {max_hazards} for a {grid_size}-tile grid"
            )

    def _get_owned(self, round_id: str, owner_id: int) -> Round:
        rnd = self._rounds.get(round_id)
        if rnd is None:
            rnd = self._load(round_id)
        if rnd is None:
            raise RoundNotFound(round_id=round_id)
        if rnd.owner_id != owner_id:
            logger.warning(
                "Possible tampering: round access by non-owner",
                extra={"round_id": round_id, "user_id": owner_id},
            )
            raise NotOwner(round_id=round_id, user_id=owner_id)
        return rnd

    # ==================== Persistence ====================

    def _load(self, round_id: str) -> Optional[Round]:
        """Bring a round back from storage, e.g. after a restart."""
        try:
            row = self.history.load_round(round_id)
        except sqlite3.Error as e:
            logger.error("Round lookup failed", extra={"round_id": round_id, "error": str(e)})
            raise LedgerError("Round is unavailable right now", round_id=round_id) from e
        if row is None:
            return None
        return self._restore(row)

    def _restore(self, row: Dict) -> Round:
        hazards = set(row["hazards"])
        revealed = set(row["revealed"])
        rnd = Round(
            id=row["id"],
            owner_id=row["user_id"],
            bet_amount=row["bet"],
            grid_size=row["grid_size"],
            hazard_count=row["hazard_count"],
            tiles=[
                Tile(index=i, is_hazard=i in hazards, revealed=i in revealed)
                for i in range(row["grid_size"])
            ],
            state=RoundState(row["state"]),
            current_winnings=row["winnings"] or 0.0,
            multiplier=row["multiplier"],
            payout=row["payout"],
            created_at=row["created_at"],
            ended_at=row["ended_at"],
        )
        if rnd.is_terminal:
            rnd.finished_monotonic = time.monotonic()
        else:
            self._reconcile(rnd)
        self._rounds[rnd.id] = rnd
        return rnd

    def _reconcile(self, rnd: Round):
        """Close a stored playing round whose payout was credited but never written back."""
        try:
            paid = self.history.get_round_settlement(rnd.owner_id, rnd.id)
        except sqlite3.Error as e:
            raise LedgerError("Round is unavailable right now", round_id=rnd.id) from e
        if paid is None:
            return

        rnd.payout = paid
        rnd.current_winnings = 0.0
        logger.warning(
            "Settled round found still marked playing; closing it",
            extra={"round_id": rnd.id, "user_id": rnd.owner_id, "payout": paid},
        )
        self._finish(rnd, RoundState.COLLECTED)

    def _save(self, rnd: Round):
        try:
            self.history.save_round(rnd.to_record())
        except sqlite3.Error as e:
            logger.error("Failed to save round", extra={"round_id": rnd.id, "error": str(e)})
            raise LedgerError("Round could not be saved", round_id=rnd.id) from e

    def _require_playing(self, rnd: Round):
        if rnd.state != RoundState.PLAYING:
            raise RoundNotActive(f"Round is already {rnd.state.value}", round_id=rnd.id)

    # ==================== Round Lifecycle ====================

    def start_round(
        self, owner_id: int, bet_amount: float, grid_size: int, hazard_count: int
    ) -> Round:
        """
        Debit the stake and open a new round with a fresh hazard layout.

        Raises:
            InvalidConfiguration: bad bet, grid size or hazard count
            InsufficientFunds: balance does not cover the bet (nothing debited)
            LedgerError: the debit could not be confirmed, or the round could
                not be saved (the stake is refunded)
        """
        self._cleanup_finished()

        bet = self._validate_bet(bet_amount)
        self._validate_grid(grid_size, hazard_count)

        round_id = self.rng.token()
        self.ledger.debit(owner_id, bet, game="mines", details=f"round {round_id}")

        hazards = set(self.rng.sample_positions(grid_size, hazard_count))
        tiles = [Tile(index=i, is_hazard=i in hazards) for i in range(grid_size)]

        rnd = Round(
            id=round_id,
            owner_id=owner_id,
            bet_amount=bet,
            grid_size=grid_size,
            hazard_count=hazard_count,
            tiles=tiles,
        )
        try:
            self._save(rnd)
        except LedgerError:
            self.ledger.credit(owner_id, bet, game="mines", details=f"round {round_id} refund")
            raise
        self._rounds[round_id] = rnd

        logger.info(
            "Round started",
            extra={
                "round_id": round_id,
                "user_id": owner_id,
                "bet": bet,
                "grid_size": grid_size,
                "hazard_count": hazard_count,
            },
        )
        return rnd

    def reveal_tile(self, round_id: str, owner_id: int, tile_index: int) -> RevealResult:
        """
        Reveal one tile.

        A hazard ends the round as trapped and forfeits the stake. A safe tile
        raises the winnings to bet * payout multiplier. Clearing every safe
        tile settles the round automatically; if that payout cannot be
        credited the tile stays hidden and the round stays in play.
        """
        rnd = self._get_owned(round_id, owner_id)
        self._require_playing(rnd)

        if isinstance(tile_index, bool) or not isinstance(tile_index, int):
            raise TileIndexOutOfRange("Tile index must be an integer")
        if not 0 <= tile_index < rnd.grid_size:
            raise TileIndexOutOfRange(
                f"Tile index must be between 0 and {rnd.grid_size - 1}"
            )

        tile = rnd.tiles[tile_index]
        if tile.revealed:
            raise TileAlreadyRevealed(round_id=round_id, tile_index=tile_index)

        if tile.is_hazard:
            winnings_before = rnd.current_winnings
            tile.revealed = True
            rnd.current_winnings = 0.0
            rnd.payout = 0.0
            try:
                self._finish(rnd, RoundState.TRAPPED, required=True)
            except LedgerError:
                tile.revealed = False
                rnd.current_winnings = winnings_before
                raise
            logger.info(
                "Round trapped",
                extra={"round_id": round_id, "user_id": owner_id, "safe_revealed": rnd.safe_revealed},
            )
            return RevealResult(
                tile_index=tile_index,
                is_hazard=True,
                winnings=0.0,
                multiplier=0.0,
                state=rnd.state,
            )

        safe_revealed = rnd.safe_revealed + 1
        multiplier = self.policy.payout(rnd.grid_size, rnd.hazard_count, safe_revealed)
        winnings = round(rnd.bet_amount * multiplier, 2)

        if safe_revealed == rnd.safe_tiles:
            # Board cleared: pay first, then move the round
            new_balance = self.ledger.credit(
                owner_id, winnings, game="mines", details=f"round {round_id} cleared"
            )
            tile.revealed = True
            rnd.multiplier = multiplier
            rnd.payout = winnings
            rnd.current_winnings = 0.0
            self._finish(rnd, RoundState.COLLECTED)
            logger.info(
                "Round cleared",
                extra={"round_id": round_id, "user_id": owner_id, "payout": winnings},
            )
            return RevealResult(
                tile_index=tile_index,
                is_hazard=False,
                winnings=winnings,
                multiplier=multiplier,
                state=rnd.state,
                new_balance=new_balance,
            )

        previous = (rnd.multiplier, rnd.current_winnings)
        tile.revealed = True
        rnd.multiplier = multiplier
        rnd.current_winnings = winnings
        try:
            self._save(rnd)
        except LedgerError:
            tile.revealed = False
            rnd.multiplier, rnd.current_winnings = previous
            raise
        return RevealResult(
            tile_index=tile_index,
            is_hazard=False,
            winnings=winnings,
            multiplier=multiplier,
            state=rnd.state,
        )

    def cash_out(self, round_id: str, owner_id: int) -> CashOutResult:
        """
        Credit the current winnings and close the round.

        The round only moves to collected after the ledger confirms the credit.
        """
        rnd = self._get_owned(round_id, owner_id)
        self._require_playing(rnd)

        if rnd.current_winnings <= 0:
            raise NothingToCollect(round_id=round_id)

        payout = rnd.current_winnings
        new_balance = self.ledger.credit(
            owner_id, payout, game="mines", details=f"round {round_id}"
        )

        rnd.payout = payout
        rnd.current_winnings = 0.0
        self._finish(rnd, RoundState.COLLECTED)

        logger.info(
            "Round collected",
            extra={
                "round_id": round_id,
                "user_id": owner_id,
                "payout": payout,
                "multiplier": round(rnd.multiplier, 4),
            },
        )
        return CashOutResult(payout=payout, multiplier=rnd.multiplier, new_balance=new_balance)

    def _finish(self, rnd: Round, state: RoundState, required: bool = False):
        """
        Move a round to a terminal state and write it to history.

        With `required`, a failed write puts the round back in play and raises
        LedgerError. Otherwise the write failure is only logged: the balance
        change already committed, and a stored round still marked playing is
        closed from the ledger when it is next loaded.
        """
        rnd.state = state
        rnd.ended_at = datetime.now().isoformat()
        rnd.finished_monotonic = time.monotonic()
        try:
            self.history.record_round(rnd.to_record())
        except sqlite3.Error as e:
            logger.error(
                "Failed to record finished round",
                extra={"round_id": rnd.id, "error": str(e)},
            )
            if required:
                rnd.state = RoundState.PLAYING
                rnd.ended_at = None
                rnd.finished_monotonic = None
                raise LedgerError("Round could not be saved", round_id=rnd.id) from e

    def _cleanup_finished(self):
        """Drop finished rounds from memory after FINISHED_ROUND_TTL seconds."""
        now = time.monotonic()
        expired = [
            rid
            for rid, r in self._rounds.items()
            if r.finished_monotonic is not None and now - r.finished_monotonic > FINISHED_ROUND_TTL
        ]
        for rid in expired:
            del self._rounds[rid]

    # ==================== Read Projections ====================

    def get_round(self, round_id: str, owner_id: int) -> Round:
        return self._get_owned(round_id, owner_id)

    def active_rounds(self, owner_id: int) -> List[Round]:
        """Rounds in play for a player, including ones only found in storage."""
        try:
            stored = self.history.get_playing_rounds(owner_id)
        except sqlite3.Error as e:
            logger.error("Round lookup failed", extra={"user_id": owner_id, "error": str(e)})
            raise LedgerError("Rounds are unavailable right now") from e
        for row in stored:
            if row["id"] not in self._rounds:
                self._restore(row)

        return [
            r for r in self._rounds.values()
            if r.owner_id == owner_id and r.state == RoundState.PLAYING
        ]

    def player_state(self, owner_id: int) -> RoundState:
        """betting when the player has nothing in play, else playing."""
        if self.active_rounds(owner_id):
            return RoundState.PLAYING
        return RoundState.BETTING

    def describe(self, rnd: Round) -> Dict:
        """Client projection of a round, including odds for the next pick."""
        safe_revealed = rnd.safe_revealed
        data = {
            "round_id": rnd.id,
            "state": rnd.state.value,
            "bet": rnd.bet_amount,
            "grid_size": rnd.grid_size,
            "hazard_count": rnd.hazard_count,
            "tiles_revealed": rnd.tiles_revealed,
            "safe_revealed": safe_revealed,
            "current_winnings": rnd.current_winnings,
            "current_multiplier": round(rnd.multiplier, 4),
            "payout": rnd.payout,
            "tiles": rnd.tiles_view(),
            "created_at": rnd.created_at,
            "ended_at": rnd.ended_at,
        }

        if rnd.state == RoundState.PLAYING:
            chance = chance_to_win(rnd.grid_size, rnd.hazard_count, safe_revealed)
            next_multiplier = self.policy.payout(rnd.grid_size, rnd.hazard_count, safe_revealed + 1)
            data.update(
                {
                    "chance_to_win": round(chance, 2),
                    "next_multiplier": round(next_multiplier, 4),
                    "potential_payout": round(rnd.bet_amount * next_multiplier, 2),
                    "can_cashout": rnd.current_winnings > 0,
                }
            )
        return data


# Singleton instance
mines_game = MinesGame()
