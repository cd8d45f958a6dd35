"""
Odds engine for the mines game.

Pure functions over (total tiles T, hazards B, safe tiles revealed m).
The house edge is taken off the fair multiplier; hazard placement itself is
uniform, so no tile is ever safer than another.
"""

from dataclasses import dataclass
from typing import Dict, List

from app.config import settings


def _check_grid(total_tiles: int, hazard_count: int):
    if total_tiles < 2:
        raise ValueError("total_tiles must be at least 2")
    if not 0 < hazard_count < total_tiles:
        raise ValueError("hazard_count must satisfy 0 < hazard_count < total_tiles")


def fair_multiplier(total_tiles: int, hazard_count: int, revealed_safe: int) -> float:
    """
    Break-even multiplier after `revealed_safe` safe picks in a row.

    The chance of m safe picks without replacement is
    prod((T - B - i) / (T - i)); the fair multiplier is its inverse.
    Defined for 0 <= m <= T - B.
    """
    _check_grid(total_tiles, hazard_count)
    safe_tiles = total_tiles - hazard_count
    if not 0 <= revealed_safe <= safe_tiles:
        raise ValueError(f"revealed_safe must be between 0 and {safe_tiles}")

    multiplier = 1.0
    for i in range(revealed_safe):
        multiplier *= (total_tiles - i) / (safe_tiles - i)
    return multiplier


def payout_multiplier(
    total_tiles: int,
    hazard_count: int,
    revealed_safe: int,
    house_edge: float,
    payout_cap: float = 500.0,
    payout_floor: float = 1.05,
) -> float:
    """
    Multiplier actually paid on cash-out.

    fair * (1 - house_edge), lifted to `payout_floor` so a win never pays
    less than the stake, then bounded by the fair multiplier and `payout_cap`.
    Returns exactly 1.0 before any safe reveal.
    """
    if not 0.0 <= house_edge < 1.0:
        raise ValueError("house_edge must be in [0, 1)")
    if payout_floor < 1.0 or payout_cap < payout_floor:
        raise ValueError("payout bounds must satisfy 1 <= payout_floor <= payout_cap")

    fair = fair_multiplier(total_tiles, hazard_count, revealed_safe)
    if revealed_safe == 0:
        return 1.0

    edged = max(fair * (1.0 - house_edge), payout_floor)
    return min(edged, fair, payout_cap)


def chance_to_win(total_tiles: int, hazard_count: int, revealed_safe: int) -> float:
    """Percent chance that pick number m + 1 is safe."""
    _check_grid(total_tiles, hazard_count)
    if revealed_safe < 0:
        raise ValueError("revealed_safe must not be negative")

    safe_left = total_tiles - hazard_count - revealed_safe
    if safe_left <= 0:
        return 0.0
    return safe_left / (total_tiles - revealed_safe) * 100.0


@dataclass(frozen=True)
class OddsPolicy:
    """House payout policy: edge, ceiling and floor."""

    house_edge: float = 0.03
    payout_cap: float = 500.0
    payout_floor: float = 1.05

    @classmethod
    def from_settings(cls) -> "OddsPolicy":
        mines = settings.mines
        return cls(
            house_edge=mines.house_edge,
            payout_cap=mines.payout_cap,
            payout_floor=mines.payout_floor,
        )

    def payout(self, total_tiles: int, hazard_count: int, revealed_safe: int) -> float:
        return payout_multiplier(
            total_tiles,
            hazard_count,
            revealed_safe,
            self.house_edge,
            self.payout_cap,
            self.payout_floor,
        )

    def to_dict(self) -> Dict:
        return {
            "house_edge": self.house_edge,
            "payout_cap": self.payout_cap,
            "payout_floor": self.payout_floor,
        }


def odds_table(total_tiles: int, hazard_count: int, policy: OddsPolicy) -> List[Dict]:
    """
    Full ladder for a grid: one row per number of safe tiles revealed,
    from 0 up to clearing the board.
    """
    rows = []
    for m in range(total_tiles - hazard_count + 1):
        rows.append(
            {
                "revealed": m,
                "chance_to_win": round(chance_to_win(total_tiles, hazard_count, m), 4),
                "fair_multiplier": round(fair_multiplier(total_tiles, hazard_count, m), 4),
                "multiplier": round(policy.payout(total_tiles, hazard_count, m), 4),
            }
        )
    return rows
