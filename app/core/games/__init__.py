"""Game modules for the Minefield platform."""

from .mines import (
    CashOutResult,
    MinesGame,
    RevealResult,
    Round,
    RoundState,
    Tile,
    mines_game,
)

__all__ = [
    "CashOutResult",
    "MinesGame",
    "RevealResult",
    "Round",
    "RoundState",
    "Tile",
    "mines_game",
]
