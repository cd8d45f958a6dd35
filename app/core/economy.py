"""
Ledger for player credits.

The round engine only ever talks to the ledger through get_balance, debit
and credit. Storage failures surface as LedgerError so a round is never
advanced on a balance change that did not commit.
"""

import sqlite3

from app.core.database import Database, db
from app.core.exceptions import InsufficientFunds, InvalidConfiguration, LedgerError
from app.core.logger import get_logger

logger = get_logger("ledger")


class EconomySystem:
    """Credits ledger backed by the SQLite users table."""

    def __init__(self, database: Database = None):
        self.db = database or db

    def get_balance(self, user_id: int) -> float:
        """Current credits for a player."""
        try:
            balance = self.db.get_credits(user_id)
        except sqlite3.Error as e:
            logger.error("Balance lookup failed", extra={"user_id": user_id, "error": str(e)})
            raise LedgerError("Balance is unavailable right now") from e

        if balance is None:
            raise LedgerError("Unknown ledger account", user_id=user_id)
        return balance

    def debit(self, user_id: int, amount: float, game: str = "mines", details: str = None) -> float:
        """
        Take a stake from the player's credits.

        Returns the new balance. Raises InsufficientFunds when the balance does
        not cover the amount; nothing is written in that case.
        """
        if amount <= 0:
            raise InvalidConfiguration("Debit amount must be positive")

        try:
            new_balance = self.db.debit_credits(user_id, amount, game=game, details=details)
        except sqlite3.Error as e:
            logger.error("Debit failed", extra={"user_id": user_id, "amount": amount, "error": str(e)})
            raise LedgerError("Could not place bet") from e

        if new_balance is None:
            raise InsufficientFunds(user_id=user_id, amount=amount)

        logger.debug("Debited credits", extra={"user_id": user_id, "amount": amount})
        return new_balance

    def credit(self, user_id: int, amount: float, game: str = "mines", details: str = None) -> float:
        """Pay winnings into the player's credits. Returns the new balance."""
        if amount <= 0:
            raise InvalidConfiguration("Credit amount must be positive")

        try:
            new_balance = self.db.credit_credits(user_id, amount, game=game, details=details)
        except sqlite3.Error as e:
            logger.error("Credit failed", extra={"user_id": user_id, "amount": amount, "error": str(e)})
            raise LedgerError("Could not pay out winnings") from e

        if new_balance is None:
            raise LedgerError("Unknown ledger account", user_id=user_id)

        logger.debug("Credited credits", extra={"user_id": user_id, "amount": amount})
        return new_balance


# Singleton
economy = EconomySystem()
