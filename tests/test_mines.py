import sqlite3
import threading
from collections import Counter
from unittest.mock import patch

import pytest
from scipy.stats import chisquare

from app.config import MinesConfig
from app.core.database import Database
from app.core.economy import EconomySystem
from app.core.exceptions import (
    InsufficientFunds,
    InvalidConfiguration,
    LedgerError,
    NothingToCollect,
    NotOwner,
    RoundNotActive,
    RoundNotFound,
    TileAlreadyRevealed,
    TileIndexOutOfRange,
)
from app.core.games.mines import MinesGame, RoundState
from app.core.odds import OddsPolicy

from tests.conftest import FakeLedger, FixedLayoutRNG


# ==================== Starting Rounds ====================

def test_start_round_debits_and_opens_round(make_game, ledger):
    game = make_game()
    rnd = game.start_round(1, 100, 25, 5)

    assert ledger.balances[1] == 900.0
    assert ledger.debits == [(1, 100.0)]
    assert rnd.state == RoundState.PLAYING
    assert rnd.current_winnings == 0.0
    assert rnd.tiles_revealed == 0
    assert len(rnd.tiles) == 25
    assert sum(t.is_hazard for t in rnd.tiles) == 5
    assert [t.index for t in rnd.tiles] == list(range(25))


@pytest.mark.parametrize(
    "bet,grid,hazards",
    [
        (0, 25, 5),
        (-100, 25, 5),
        (float("nan"), 25, 5),
        (50, 25, 5),         # below min_bet
        (20000, 25, 5),      # above max_bet
        (100, 20, 5),        # grid not offered
        (100, 25, 0),
        (100, 25, 11),       # more than 40% of the grid
        (100, 16, 16),
        (100, 25.0, 5),
        (True, 25, 5),
    ],
)
def test_start_round_rejects_invalid_configuration(make_game, ledger, bet, grid, hazards):
    game = make_game()
    with pytest.raises(InvalidConfiguration):
        game.start_round(1, bet, grid, hazards)
    assert ledger.debits == []
    assert game.player_state(1) == RoundState.BETTING


def test_start_round_accepts_hazard_ceiling(make_game):
    game = make_game(hazards=range(10))
    rnd = game.start_round(1, 100, 25, 10)
    assert rnd.hazard_count == 10


def test_insufficient_funds_leaves_no_round(make_game, ledger):
    ledger.balances[1] = 50.0
    game = make_game()
    with pytest.raises(InsufficientFunds):
        game.start_round(1, 100, 25, 5)

    assert ledger.balances[1] == 50.0
    assert game.active_rounds(1) == []


def test_ledger_failure_on_start_leaves_no_round(make_game, ledger):
    ledger.fail_debit = True
    game = make_game()
    with pytest.raises(LedgerError):
        game.start_round(1, 100, 25, 5)
    assert game.active_rounds(1) == []


# ==================== Reveals ====================

def test_first_safe_reveal_scenario_hits_payout_floor(make_game, ledger):
    # 25 tiles, 5 hazards, 20% edge: 1.25 * 0.80 = 1.00, lifted to 1.05
    game = make_game(policy=OddsPolicy(house_edge=0.20, payout_cap=500.0, payout_floor=1.05))
    rnd = game.start_round(1, 100, 25, 5)

    result = game.reveal_tile(rnd.id, 1, 10)

    assert result.is_hazard is False
    assert result.multiplier == pytest.approx(1.05)
    assert result.winnings == 105.0
    assert result.state == RoundState.PLAYING
    assert rnd.current_winnings == 105.0
    assert rnd.tiles_revealed == 1


def test_winnings_grow_with_each_safe_reveal(make_game):
    game = make_game()
    rnd = game.start_round(1, 100, 25, 5)

    winnings = []
    for index in (5, 6, 7, 8):
        winnings.append(game.reveal_tile(rnd.id, 1, index).winnings)

    assert winnings == sorted(winnings)
    assert len(set(winnings)) == 4
    assert rnd.current_winnings == winnings[-1]


def test_hazard_on_first_click_forfeits_stake(make_game, ledger):
    game = make_game()
    rnd = game.start_round(1, 100, 25, 5)

    result = game.reveal_tile(rnd.id, 1, 0)

    assert result.is_hazard is True
    assert result.state == RoundState.TRAPPED
    assert rnd.current_winnings == 0.0
    assert ledger.balances[1] == 900.0
    assert ledger.credits == []


def test_hazard_after_safe_reveals_discards_winnings(make_game, ledger):
    game = make_game()
    rnd = game.start_round(1, 100, 25, 5)
    game.reveal_tile(rnd.id, 1, 12)
    game.reveal_tile(rnd.id, 1, 13)

    game.reveal_tile(rnd.id, 1, 3)

    assert rnd.state == RoundState.TRAPPED
    assert rnd.current_winnings == 0.0
    assert rnd.payout == 0.0
    assert ledger.credits == []


def test_repeated_reveal_is_rejected_every_time(make_game):
    game = make_game()
    rnd = game.start_round(1, 100, 25, 5)
    game.reveal_tile(rnd.id, 1, 9)
    snapshot = (rnd.state, rnd.current_winnings, rnd.tiles_revealed)

    for _ in range(2):
        with pytest.raises(TileAlreadyRevealed):
            game.reveal_tile(rnd.id, 1, 9)
        assert (rnd.state, rnd.current_winnings, rnd.tiles_revealed) == snapshot


@pytest.mark.parametrize("index", [-1, 25, 100, "3", 2.0, None])
def test_reveal_rejects_bad_tile_index(make_game, index):
    game = make_game()
    rnd = game.start_round(1, 100, 25, 5)
    with pytest.raises(TileIndexOutOfRange):
        game.reveal_tile(rnd.id, 1, index)
    assert rnd.tiles_revealed == 0


def test_reveal_unknown_round(make_game):
    game = make_game()
    with pytest.raises(RoundNotFound):
        game.reveal_tile("missing", 1, 0)


def test_reveal_by_non_owner_is_rejected(make_game):
    game = make_game()
    rnd = game.start_round(1, 100, 25, 5)

    with pytest.raises(NotOwner):
        game.reveal_tile(rnd.id, 2, 10)
    assert rnd.tiles_revealed == 0


def test_terminal_round_accepts_no_reveals(make_game):
    game = make_game()
    rnd = game.start_round(1, 100, 25, 5)
    game.reveal_tile(rnd.id, 1, 0)

    with pytest.raises(RoundNotActive):
        game.reveal_tile(rnd.id, 1, 10)
    with pytest.raises(RoundNotActive):
        game.cash_out(rnd.id, 1)


def test_clearing_the_board_settles_the_round(make_game, ledger):
    game = make_game(hazards=[0])
    rnd = game.start_round(1, 100, 16, 1)

    for index in range(1, 15):
        assert game.reveal_tile(rnd.id, 1, index).state == RoundState.PLAYING

    result = game.reveal_tile(rnd.id, 1, 15)

    assert result.state == RoundState.COLLECTED
    assert rnd.state == RoundState.COLLECTED
    assert result.winnings == rnd.payout
    assert ledger.credits == [(1, result.winnings)]
    assert result.new_balance == ledger.balances[1]
    assert rnd.current_winnings == 0.0


def test_failed_settlement_keeps_last_tile_hidden(make_game, ledger):
    game = make_game(hazards=[0])
    rnd = game.start_round(1, 100, 16, 1)
    for index in range(1, 15):
        game.reveal_tile(rnd.id, 1, index)
    winnings_before = rnd.current_winnings

    ledger.fail_credit = True
    with pytest.raises(LedgerError):
        game.reveal_tile(rnd.id, 1, 15)

    assert rnd.tiles[15].revealed is False
    assert rnd.state == RoundState.PLAYING
    assert rnd.current_winnings == winnings_before

    ledger.fail_credit = False
    assert game.reveal_tile(rnd.id, 1, 15).state == RoundState.COLLECTED


# ==================== Cash Out ====================

def test_cash_out_credits_winnings(make_game, ledger):
    game = make_game()
    rnd = game.start_round(1, 100, 25, 5)
    game.reveal_tile(rnd.id, 1, 20)
    winnings = game.reveal_tile(rnd.id, 1, 21).winnings

    result = game.cash_out(rnd.id, 1)

    assert result.payout == winnings
    assert result.new_balance == pytest.approx(900.0 + winnings)
    assert ledger.credits == [(1, winnings)]
    assert rnd.state == RoundState.COLLECTED
    assert rnd.payout == winnings

    with pytest.raises(RoundNotActive):
        game.cash_out(rnd.id, 1)
    with pytest.raises(RoundNotActive):
        game.reveal_tile(rnd.id, 1, 22)
    assert len(ledger.credits) == 1


def test_cash_out_before_any_reveal_is_rejected(make_game, ledger):
    game = make_game()
    rnd = game.start_round(1, 100, 25, 5)

    with pytest.raises(NothingToCollect):
        game.cash_out(rnd.id, 1)

    assert ledger.credits == []
    assert rnd.state == RoundState.PLAYING


def test_cash_out_by_non_owner_is_rejected(make_game, ledger):
    game = make_game()
    rnd = game.start_round(1, 100, 25, 5)
    game.reveal_tile(rnd.id, 1, 20)

    with pytest.raises(NotOwner):
        game.cash_out(rnd.id, 2)
    assert ledger.credits == []


def test_failed_credit_keeps_round_playing(make_game, ledger):
    game = make_game()
    rnd = game.start_round(1, 100, 25, 5)
    winnings = game.reveal_tile(rnd.id, 1, 20).winnings

    ledger.fail_credit = True
    with pytest.raises(LedgerError):
        game.cash_out(rnd.id, 1)

    assert rnd.state == RoundState.PLAYING
    assert rnd.current_winnings == winnings

    ledger.fail_credit = False
    assert game.cash_out(rnd.id, 1).payout == winnings


# ==================== Winnings & Projections ====================

def test_positive_winnings_only_while_playing(make_game):
    game = make_game()
    rnd = game.start_round(1, 100, 25, 5)
    for index in (5, 6, 7):
        game.reveal_tile(rnd.id, 1, index)
        assert rnd.current_winnings > 0
        assert rnd.state == RoundState.PLAYING
        assert rnd.safe_revealed >= 1

    game.cash_out(rnd.id, 1)
    assert rnd.current_winnings == 0.0


def test_projection_hides_hazards_until_round_ends(make_game):
    game = make_game()
    rnd = game.start_round(1, 100, 25, 5)
    game.reveal_tile(rnd.id, 1, 10)

    view = game.describe(rnd)
    hidden = [t for t in view["tiles"] if not t["revealed"]]
    assert all("is_hazard" not in t for t in hidden)
    assert view["tiles"][10] == {"index": 10, "revealed": True, "is_hazard": False}
    assert view["can_cashout"] is True
    assert view["chance_to_win"] == pytest.approx(round(19 / 24 * 100, 2))
    assert view["next_multiplier"] > view["current_multiplier"]

    game.reveal_tile(rnd.id, 1, 0)
    view = game.describe(rnd)
    assert all("is_hazard" in t for t in view["tiles"])
    assert sorted(t["index"] for t in view["tiles"] if t["is_hazard"]) == [0, 1, 2, 3, 4]
    assert "next_multiplier" not in view


def test_player_state_follows_rounds(make_game):
    game = make_game()
    assert game.player_state(1) == RoundState.BETTING

    rnd = game.start_round(1, 100, 25, 5)
    assert game.player_state(1) == RoundState.PLAYING
    assert game.player_state(2) == RoundState.BETTING

    game.reveal_tile(rnd.id, 1, 0)
    assert game.player_state(1) == RoundState.BETTING


def test_finished_rounds_are_recorded(make_game, history):
    game = make_game()
    user = history.create_user("historian", "secret123")
    owner = user["user_id"]
    game.ledger.balances[owner] = 1000.0

    rnd = game.start_round(owner, 100, 25, 5)
    game.reveal_tile(rnd.id, owner, 15)
    game.cash_out(rnd.id, owner)

    rows = history.get_round_history(owner)
    assert len(rows) == 1
    assert rows[0]["id"] == rnd.id
    assert rows[0]["state"] == "collected"
    assert rows[0]["hazards"] == [0, 1, 2, 3, 4]
    assert rows[0]["revealed"] == [15]
    assert history.get_user_stats(owner)["rounds_played"] == 1


def test_history_write_failure_does_not_undo_settlement(make_game, ledger, history):
    game = make_game()
    rnd = game.start_round(1, 100, 25, 5)
    game.reveal_tile(rnd.id, 1, 15)

    with patch.object(history, "record_round", side_effect=sqlite3.OperationalError("disk I/O error")):
        result = game.cash_out(rnd.id, 1)

    assert rnd.state == RoundState.COLLECTED
    assert ledger.credits == [(1, result.payout)]


# ==================== Randomness ====================

def test_hazard_placement_is_uniform(history):
    ledger = FakeLedger({1: float("inf")})
    game = MinesGame(
        ledger=ledger,
        policy=OddsPolicy(),
        config=MinesConfig(min_bet=1, max_bet=10),
        history=history,
    )
    rounds = 4000
    counts = Counter()
    for _ in range(rounds):
        rnd = game.start_round(1, 1, 25, 5)
        hazards = rnd.hazard_positions
        assert len(hazards) == 5
        assert len(set(hazards)) == 5
        counts.update(hazards)

    observed = [counts[i] for i in range(25)]
    assert sum(observed) == rounds * 5
    _, p_value = chisquare(observed)
    assert p_value > 0.001


def test_round_ids_are_unique(history):
    game = MinesGame(
        ledger=FakeLedger({1: 1e9}),
        policy=OddsPolicy(),
        config=MinesConfig(),
        history=history,
    )
    ids = {game.start_round(1, 100, 16, 3).id for _ in range(200)}
    assert len(ids) == 200


# ==================== Concurrency ====================

def test_concurrent_starts_cannot_overdraw(tmp_path):
    database = Database(tmp_path / "race.db")
    user_id = database.create_user("racer", "secret123")["user_id"]
    conn = database._get_connection()
    conn.execute("UPDATE users SET credits = 100 WHERE id = ?", (user_id,))
    conn.commit()

    game = MinesGame(
        ledger=EconomySystem(database),
        policy=OddsPolicy(),
        config=MinesConfig(),
        history=database,
    )

    barrier = threading.Barrier(2)
    outcomes = []
    lock = threading.Lock()

    def start():
        barrier.wait()
        try:
            game.start_round(user_id, 100, 25, 5)
            result = "ok"
        except InsufficientFunds:
            result = "insufficient"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=start) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ["insufficient", "ok"]
    assert database.get_credits(user_id) == 0
    assert len(game.active_rounds(user_id)) == 1


# ==================== Persistence ====================

def _fresh_game(ledger, history, hazards=(0, 1, 2, 3, 4)):
    """A second engine on the same storage, as after a process restart."""
    return MinesGame(
        ledger=ledger,
        policy=OddsPolicy(house_edge=0.03, payout_cap=500.0, payout_floor=1.05),
        config=MinesConfig(),
        random_source=FixedLayoutRNG(hazards),
        history=history,
    )


def test_round_in_play_survives_restart(make_game, ledger, history):
    game = make_game()
    rnd = game.start_round(1, 100, 25, 5)
    first = game.reveal_tile(rnd.id, 1, 10)

    restarted = _fresh_game(ledger, history)
    assert [r.id for r in restarted.active_rounds(1)] == [rnd.id]
    assert restarted.player_state(1) == RoundState.PLAYING

    resumed = restarted.get_round(rnd.id, 1)
    assert resumed.current_winnings == first.winnings
    assert resumed.revealed_positions == [10]
    assert resumed.hazard_positions == [0, 1, 2, 3, 4]

    with pytest.raises(TileAlreadyRevealed):
        restarted.reveal_tile(rnd.id, 1, 10)
    second = restarted.reveal_tile(rnd.id, 1, 11)
    assert second.winnings > first.winnings

    result = restarted.cash_out(rnd.id, 1)
    assert result.payout == second.winnings
    assert ledger.balances[1] == pytest.approx(900.0 + second.winnings)

    rows = history.get_round_history(1)
    assert [r["id"] for r in rows] == [rnd.id]
    assert rows[0]["state"] == "collected"
    assert rows[0]["revealed"] == [10, 11]


def test_trapped_round_stays_finished_after_restart(make_game, ledger, history):
    game = make_game()
    rnd = game.start_round(1, 100, 25, 5)
    game.reveal_tile(rnd.id, 1, 3)

    restarted = _fresh_game(ledger, history)
    assert restarted.get_round(rnd.id, 1).state == RoundState.TRAPPED
    assert restarted.active_rounds(1) == []
    with pytest.raises(RoundNotActive):
        restarted.reveal_tile(rnd.id, 1, 10)
    with pytest.raises(NotOwner):
        restarted.get_round(rnd.id, 2)


def test_unsaved_round_refunds_the_stake(make_game, ledger, history):
    game = make_game()
    with patch.object(history, "save_round", side_effect=sqlite3.OperationalError("disk full")):
        with pytest.raises(LedgerError):
            game.start_round(1, 100, 25, 5)

    assert ledger.balances[1] == 1000.0
    assert game.active_rounds(1) == []


def test_unsaved_reveal_is_rolled_back(make_game, history):
    game = make_game()
    rnd = game.start_round(1, 100, 25, 5)

    with patch.object(history, "save_round", side_effect=sqlite3.OperationalError("disk full")):
        with pytest.raises(LedgerError):
            game.reveal_tile(rnd.id, 1, 10)
    assert rnd.tiles[10].revealed is False
    assert rnd.current_winnings == 0.0

    with patch.object(history, "record_round", side_effect=sqlite3.OperationalError("disk full")):
        with pytest.raises(LedgerError):
            game.reveal_tile(rnd.id, 1, 0)
    assert rnd.state == RoundState.PLAYING
    assert rnd.tiles[0].revealed is False

    assert game.reveal_tile(rnd.id, 1, 10).state == RoundState.PLAYING


def test_paid_round_is_closed_when_reloaded(tmp_path):
    database = Database(tmp_path / "reload.db")
    user_id = database.create_user("reloader", "secret123")["user_id"]
    ledger = EconomySystem(database)
    game = _fresh_game(ledger, database)

    rnd = game.start_round(user_id, 100, 25, 5)
    game.reveal_tile(rnd.id, user_id, 10)
    with patch.object(database, "record_round", side_effect=sqlite3.OperationalError("disk I/O error")):
        payout = game.cash_out(rnd.id, user_id).payout

    # Storage still has the round as playing, but the ledger shows it was paid
    assert database.load_round(rnd.id)["state"] == "playing"

    restarted = _fresh_game(ledger, database)
    assert restarted.active_rounds(user_id) == []
    reloaded = restarted.get_round(rnd.id, user_id)
    assert reloaded.state == RoundState.COLLECTED
    assert reloaded.payout == payout
    with pytest.raises(RoundNotActive):
        restarted.cash_out(rnd.id, user_id)

    assert database.get_credits(user_id) == pytest.approx(400.0 + payout)
    assert database.load_round(rnd.id)["state"] == "collected"
