"""
Database module for persistent storage.
Uses SQLite for user balances, the transaction ledger, finished rounds
and per-player statistics.
"""

import json
import re
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import bcrypt

from app.core.logger import get_logger
from app.config import settings

logger = get_logger("database")


class Database:
    """Thread-safe SQLite database wrapper (one connection per thread)."""

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path) if db_path else settings.paths.get_db_path()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        logger.info(f"Initializing database at {self.db_path}")
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        if getattr(self._local, "connection", None) is None:
            self._local.connection = sqlite3.connect(
                str(self.db_path), timeout=30, check_same_thread=False
            )
            self._local.connection.row_factory = sqlite3.Row
        return self._local.connection

    def _init_db(self):
        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                username TEXT UNIQUE NOT NULL,
                password_hash TEXT,
                credits REAL DEFAULT 500.0 CHECK (credits >= 0),
                total_wagered REAL DEFAULT 0,
                total_won REAL DEFAULT 0,
                rounds_played INTEGER DEFAULT 0,
                biggest_win REAL DEFAULT 0,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                last_active TEXT DEFAULT CURRENT_TIMESTAMP
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                type TEXT NOT NULL,
                game TEXT,
                amount REAL NOT NULL,
                balance_after REAL NOT NULL,
                details TEXT,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (user_id) REFERENCES users(id)
            )
        """
        )

        # One row per round, written at start and updated on every move
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS rounds (
                id TEXT PRIMARY KEY,
                user_id INTEGER NOT NULL,
                bet REAL NOT NULL,
                grid_size INTEGER NOT NULL,
                hazard_count INTEGER NOT NULL,
                hazards TEXT NOT NULL,
                revealed TEXT NOT NULL,
                multiplier REAL DEFAULT 1.0,
                winnings REAL DEFAULT 0,
                payout REAL DEFAULT 0,
                state TEXT NOT NULL,
                created_at TEXT,
                ended_at TEXT,
                FOREIGN KEY (user_id) REFERENCES users(id)
            )
        """
        )

        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_rounds_user ON rounds (user_id, ended_at)"
        )
        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_transactions_user ON transactions (user_id, id)"
        )

        conn.commit()

    # ==================== Users ====================

    def create_user(self, username: str, password: str) -> Dict:
        """Create a new user with a bcrypt-hashed password."""
        conn = self._get_connection()
        cursor = conn.cursor()

        username = self._sanitize_username(username)
        if not username:
            return {"success": False, "error": "Invalid username"}

        if not password or len(password) < 6:
            return {"success": False, "error": "Password must be at least 6 characters"}

        cursor.execute("SELECT id FROM users WHERE username = ?", (username,))
        if cursor.fetchone():
            return {"success": False, "error": "Username already taken"}

        password_hash = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")
        starting_credits = settings.economy.starting_credits

        cursor.execute(
            """
            INSERT INTO users (username, password_hash, credits, last_active)
            VALUES (?, ?, ?, ?)
        """,
            (username, password_hash, starting_credits, datetime.now().isoformat()),
        )
        conn.commit()

        logger.info(f"Created new user: {username}")

        return {
            "success": True,
            "user_id": cursor.lastrowid,
            "username": username,
            "credits": starting_credits,
        }

    def _sanitize_username(self, username: str) -> str:
        """Sanitize username - alphanumeric only, 3-20 chars."""
        if not username:
            return ""
        username = username.strip()
        if not re.match(r"^[a-zA-Z0-9_]{3,20}$", username):
            return ""
        return username

    def login_user(self, username: str, password: str) -> Optional[Dict]:
        """Return the user row if the password matches, else None."""
        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute("SELECT * FROM users WHERE username = ?", (username,))
        row = cursor.fetchone()
        if not row or not password:
            return None

        user = dict(row)
        if not user.get("password_hash"):
            return None
        try:
            if not bcrypt.checkpw(password.encode("utf-8"), user["password_hash"].encode("utf-8")):
                return None
        except ValueError:
            # Malformed hash in the row
            return None

        cursor.execute(
            "UPDATE users SET last_active = ? WHERE id = ?",
            (datetime.now().isoformat(), user["id"]),
        )
        conn.commit()

        return user

    def get_user_by_id(self, user_id: int) -> Optional[Dict]:
        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute("SELECT * FROM users WHERE id = ?", (user_id,))
        row = cursor.fetchone()
        return dict(row) if row else None

    # ==================== Balance Operations ====================

    def get_credits(self, user_id: int) -> Optional[float]:
        """Get user's current credits, or None for an unknown user."""
        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute("SELECT credits FROM users WHERE id = ?", (user_id,))
        row = cursor.fetchone()
        return row["credits"] if row else None

    def debit_credits(
        self, user_id: int, amount: float, game: str = None, details: str = None
    ) -> Optional[float]:
        """
        Take `amount` from the user's credits in a single conditional UPDATE.

        Returns the new balance, or None when the balance does not cover the
        amount (or the user does not exist). The balance check and the write
        are the same statement, so concurrent debits cannot overdraw.
        """
        conn = self._get_connection()
        cursor = conn.cursor()

        try:
            cursor.execute(
                """
                UPDATE users
                SET credits = credits - ?, last_active = ?
                WHERE id = ? AND credits >= ?
            """,
                (amount, datetime.now().isoformat(), user_id, amount),
            )
            if cursor.rowcount != 1:
                conn.rollback()
                return None

            new_balance = self._balance_in_txn(cursor, user_id)
            self._insert_transaction(cursor, user_id, "bet", -amount, new_balance, game, details)
            conn.commit()
        except sqlite3.Error:
            conn.rollback()
            raise

        return new_balance

    def credit_credits(
        self, user_id: int, amount: float, game: str = None, details: str = None
    ) -> Optional[float]:
        """Add `amount` to the user's credits. Returns None for an unknown user."""
        conn = self._get_connection()
        cursor = conn.cursor()

        try:
            cursor.execute(
                """
                UPDATE users
                SET credits = credits + ?, last_active = ?
                WHERE id = ?
            """,
                (amount, datetime.now().isoformat(), user_id),
            )
            if cursor.rowcount != 1:
                conn.rollback()
                return None

            new_balance = self._balance_in_txn(cursor, user_id)
            self._insert_transaction(cursor, user_id, "win", amount, new_balance, game, details)
            conn.commit()
        except sqlite3.Error:
            conn.rollback()
            raise

        return new_balance

    def _balance_in_txn(self, cursor: sqlite3.Cursor, user_id: int) -> float:
        cursor.execute("SELECT credits FROM users WHERE id = ?", (user_id,))
        return cursor.fetchone()["credits"]

    def _insert_transaction(
        self,
        cursor: sqlite3.Cursor,
        user_id: int,
        tx_type: str,
        amount: float,
        balance_after: float,
        game: str = None,
        details: str = None,
    ):
        cursor.execute(
            """
            INSERT INTO transactions (user_id, type, game, amount, balance_after, details)
            VALUES (?, ?, ?, ?, ?, ?)
        """,
            (user_id, tx_type, game, amount, balance_after, details),
        )

    def get_transactions(self, user_id: int, limit: int = 50) -> List[Dict]:
        """Get recent transactions, newest first."""
        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute(
            """
            SELECT * FROM transactions WHERE user_id = ?
            ORDER BY id DESC LIMIT ?
        """,
            (user_id, limit),
        )
        return [dict(row) for row in cursor.fetchall()]

    # ==================== Rounds & Stats ====================

    def _upsert_round(self, cursor: sqlite3.Cursor, round_data: Dict):
        cursor.execute(
            """
            INSERT OR REPLACE INTO rounds
                (id, user_id, bet, grid_size, hazard_count, hazards, revealed,
                 multiplier, winnings, payout, state, created_at, ended_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
            (
                round_data["id"],
                round_data["owner_id"],
                round_data["bet"],
                round_data["grid_size"],
                round_data["hazard_count"],
                json.dumps(round_data["hazards"]),
                json.dumps(round_data["revealed"]),
                round_data["multiplier"],
                round_data["winnings"],
                round_data["payout"],
                round_data["state"],
                round_data["created_at"],
                round_data["ended_at"],
            ),
        )

    def save_round(self, round_data: Dict):
        """Write the current state of a round that is still in play."""
        conn = self._get_connection()
        cursor = conn.cursor()

        try:
            self._upsert_round(cursor, round_data)
            conn.commit()
        except sqlite3.Error:
            conn.rollback()
            raise

    def record_round(self, round_data: Dict):
        """Store a finished round and fold it into the player's stats."""
        conn = self._get_connection()
        cursor = conn.cursor()

        user_id = round_data["owner_id"]
        bet = round_data["bet"]
        payout = round_data["payout"]

        try:
            self._upsert_round(cursor, round_data)
            cursor.execute(
                """
                UPDATE users SET
                    total_wagered = total_wagered + ?,
                    total_won = total_won + ?,
                    rounds_played = rounds_played + 1,
                    biggest_win = CASE WHEN ? > biggest_win THEN ? ELSE biggest_win END
                WHERE id = ?
            """,
                (bet, payout, payout, payout, user_id),
            )
            conn.commit()
        except sqlite3.Error:
            conn.rollback()
            raise

    def _decode_round(self, row: sqlite3.Row) -> Dict:
        item = dict(row)
        item["hazards"] = json.loads(item["hazards"])
        item["revealed"] = json.loads(item["revealed"])
        return item

    def load_round(self, round_id: str) -> Optional[Dict]:
        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute("SELECT * FROM rounds WHERE id = ?", (round_id,))
        row = cursor.fetchone()
        return self._decode_round(row) if row else None

    def get_playing_rounds(self, user_id: int) -> List[Dict]:
        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute(
            "SELECT * FROM rounds WHERE user_id = ? AND state = 'playing' ORDER BY created_at",
            (user_id,),
        )
        return [self._decode_round(row) for row in cursor.fetchall()]

    def get_round_settlement(self, user_id: int, round_id: str) -> Optional[float]:
        """
        Amount already paid out for a round, or None if nothing was credited.

        Matches the details written by cash-out and board-clear credits.
        """
        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute(
            """
            SELECT amount FROM transactions
            WHERE user_id = ? AND type = 'win' AND details IN (?, ?)
            ORDER BY id DESC LIMIT 1
        """,
            (user_id, f"round {round_id}", f"round {round_id} cleared"),
        )
        row = cursor.fetchone()
        return row["amount"] if row else None

    def get_round_history(self, user_id: int, limit: int = 20) -> List[Dict]:
        """Finished rounds for a player, newest first."""
        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute(
            """
            SELECT * FROM rounds WHERE user_id = ? AND state != 'playing'
            ORDER BY ended_at DESC LIMIT ?
        """,
            (user_id, limit),
        )
        return [self._decode_round(row) for row in cursor.fetchall()]

    def get_user_stats(self, user_id: int) -> Dict:
        user = self.get_user_by_id(user_id)
        if not user:
            return {}
        return {
            "rounds_played": user["rounds_played"],
            "total_wagered": user["total_wagered"],
            "total_won": user["total_won"],
            "biggest_win": user["biggest_win"],
        }


# Singleton instance
db = Database()
