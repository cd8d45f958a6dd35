"""
Error taxonomy for the mines game.

Every failure a round operation can produce is a MinesError subclass with a
stable `kind` string, so callers (and the JSON API) can tell a stale client
from a replayed request from a ledger outage.
"""


class MinesError(Exception):
    kind = "mines_error"
    status_code = 400

    def __init__(self, message: str = None, **context):
        self.message = message or self.__class__.__doc__ or self.kind
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.kind, "detail": self.message}


# Configuration errors

class InvalidConfiguration(MinesError):
    """Invalid grid, hazard or bet parameters."""
    kind = "invalid_configuration"
    status_code = 400


# Authorization errors

class NotOwner(MinesError):
    """This round belongs to another player."""
    kind = "not_owner"
    status_code = 403


# State errors

class RoundNotFound(MinesError):
    """Round not found."""
    kind = "round_not_found"
    status_code = 404


class RoundNotActive(MinesError):
    """Round is no longer in play."""
    kind = "round_not_active"
    status_code = 409


class TileAlreadyRevealed(MinesError):
    """Tile already revealed."""
    kind = "tile_already_revealed"
    status_code = 409


class TileIndexOutOfRange(MinesError):
    """Tile index is outside the grid."""
    kind = "tile_index_out_of_range"
    status_code = 400


class NothingToCollect(MinesError):
    """Cannot cash out before revealing a safe tile."""
    kind = "nothing_to_collect"
    status_code = 409


# Resource errors

class InsufficientFunds(MinesError):
    """Insufficient credits."""
    kind = "insufficient_funds"
    status_code = 402


class LedgerError(MinesError):
    """Balance update could not be confirmed."""
    kind = "ledger_failure"
    status_code = 503


class GameDisabled(MinesError):
    """Mines is currently disabled."""
    kind = "game_disabled"
    status_code = 503
