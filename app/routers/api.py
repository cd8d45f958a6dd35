from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from app.config import settings
from app.core.database import db
from app.core.economy import economy
from app.core.exceptions import GameDisabled, InvalidConfiguration
from app.core.games.mines import mines_game
from app.core.logger import get_logger
from app.core.odds import odds_table
from app.core.security import api_rate_limit, game_rate_limit, limiter, require_user

logger = get_logger("api")

router = APIRouter()

# ==================== Request Models ====================

class MinesStartRequest(BaseModel):
    bet: float
    grid_size: int = 25
    hazard_count: int = 5

class MinesRevealRequest(BaseModel):
    round_id: str
    tile_index: int

class MinesCashoutRequest(BaseModel):
    round_id: str


# ==================== Helpers ====================

def require_mines_enabled():
    if not settings.mines.enabled:
        raise GameDisabled()


# ==================== Economy Endpoints ====================

@router.get("/economy/balance")
@limiter.limit(api_rate_limit)
async def get_balance(request: Request, user_id: int = Depends(require_user)):
    return {"user_id": user_id, "credits": economy.get_balance(user_id)}

@router.get("/economy/transactions")
@limiter.limit(api_rate_limit)
async def get_transactions(
    request: Request,
    limit: int = Query(50, ge=1, le=200),
    user_id: int = Depends(require_user),
):
    return {"transactions": db.get_transactions(user_id, limit)}


# ==================== Mines Endpoints ====================

@router.get("/games/mines/config")
@limiter.limit(api_rate_limit)
async def mines_config(request: Request):
    """Grid, bet and payout policy a client needs to build its controls."""
    cfg = settings.mines
    return {
        "enabled": cfg.enabled,
        "grid_sizes": sorted(cfg.grid_sizes),
        "max_hazards": {str(size): cfg.max_hazards(size) for size in sorted(cfg.grid_sizes)},
        "min_bet": cfg.min_bet,
        "max_bet": cfg.max_bet,
        **mines_game.policy.to_dict(),
    }

@router.get("/games/mines/odds")
@limiter.limit(api_rate_limit)
async def mines_odds(
    request: Request,
    grid_size: int = Query(25),
    hazard_count: int = Query(5),
):
    """Multiplier ladder for a grid, before staking anything."""
    cfg = settings.mines
    if grid_size not in cfg.grid_sizes or not 0 < hazard_count <= cfg.max_hazards(grid_size):
        raise InvalidConfiguration("Invalid grid size or hazard count")
    return {
        "grid_size": grid_size,
        "hazard_count": hazard_count,
        "steps": odds_table(grid_size, hazard_count, mines_game.policy),
    }

@router.post("/games/mines/start")
@limiter.limit(game_rate_limit)
async def mines_start(
    request: Request,
    data: MinesStartRequest,
    user_id: int = Depends(require_user),
    _: None = Depends(require_mines_enabled),
):
    rnd = mines_game.start_round(user_id, data.bet, data.grid_size, data.hazard_count)
    return {**mines_game.describe(rnd), "balance": economy.get_balance(user_id)}

@router.post("/games/mines/reveal")
@limiter.limit(game_rate_limit)
async def mines_reveal(
    request: Request,
    data: MinesRevealRequest,
    user_id: int = Depends(require_user),
):
    result = mines_game.reveal_tile(data.round_id, user_id, data.tile_index)
    rnd = mines_game.get_round(data.round_id, user_id)

    response = {
        "tile_index": result.tile_index,
        "is_hazard": result.is_hazard,
        "winnings": result.winnings,
        "multiplier": round(result.multiplier, 4),
        "state": result.state.value,
        "round": mines_game.describe(rnd),
    }
    if result.new_balance is not None:
        response["balance"] = result.new_balance
    return response

@router.post("/games/mines/cashout")
@limiter.limit(game_rate_limit)
async def mines_cashout(
    request: Request,
    data: MinesCashoutRequest,
    user_id: int = Depends(require_user),
):
    result = mines_game.cash_out(data.round_id, user_id)
    rnd = mines_game.get_round(data.round_id, user_id)
    return {
        "payout": result.payout,
        "multiplier": round(result.multiplier, 4),
        "balance": result.new_balance,
        "round": mines_game.describe(rnd),
    }

@router.get("/games/mines/round/{round_id}")
@limiter.limit(api_rate_limit)
async def mines_round(request: Request, round_id: str, user_id: int = Depends(require_user)):
    return mines_game.describe(mines_game.get_round(round_id, user_id))

@router.get("/games/mines/state")
@limiter.limit(api_rate_limit)
async def mines_state(request: Request, user_id: int = Depends(require_user)):
    """betting or playing, plus any rounds still in play."""
    return {
        "state": mines_game.player_state(user_id).value,
        "active_rounds": [r.id for r in mines_game.active_rounds(user_id)],
    }

@router.get("/games/mines/history")
@limiter.limit(api_rate_limit)
async def mines_history(request: Request, user_id: int = Depends(require_user)):
    return {
        "rounds": db.get_round_history(user_id, settings.mines.history_limit),
        "stats": db.get_user_stats(user_id),
    }
