from __future__ import annotations

import logging
import os
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Tuple

from pydantic import ValidationError

from src.models.schemas import CycleOutcome, MarketSnapshot

logger = logging.getLogger(__name__)


def _ms(ts: datetime) -> int:
    return int(ts.replace(tzinfo=timezone.utc).timestamp() * 1000)


class SQLiteStore:
    """Append-only journal of market snapshots and cycle outcomes."""

    def __init__(self, db_path: str = "data/agent.db") -> None:
        self.db_path = db_path
        Path(os.path.dirname(self.db_path) or ".").mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path)
        self._create_tables()

    def _create_tables(self) -> None:
        cursor = self.conn.cursor()
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS market_snapshots (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                pair TEXT NOT NULL,
                ts INTEGER NOT NULL,
                price REAL NOT NULL,
                change_percent REAL,
                volume REAL,
                best_bid REAL,
                best_ask REAL
            )
            """
        )
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS orders (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                ts INTEGER NOT NULL,
                pair TEXT NOT NULL,
                status TEXT NOT NULL,
                side TEXT,
                order_type TEXT,
                quantity REAL,
                price REAL,
                transaction_id TEXT,
                ordinal_order_id TEXT,
                reason TEXT
            )
            """
        )
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_snapshots_pair_ts ON market_snapshots (pair, ts)")
        self.conn.commit()

    def insert_snapshot(self, snapshot: MarketSnapshot) -> bool:
        try:
            snap = MarketSnapshot.model_validate(snapshot)
        except ValidationError as err:
            logger.warning("Skipping snapshot insert due to validation error: %s", err)
            return False

        best_bid = snap.depth.best_bid
        best_ask = snap.depth.best_ask
        self.conn.execute(
            """
            INSERT INTO market_snapshots (pair, ts, price, change_percent, volume, best_bid, best_ask)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                snap.pair,
                _ms(snap.timestamp),
                snap.price,
                snap.price_change_percent,
                snap.volume,
                best_bid.price if best_bid else None,
                best_ask.price if best_ask else None,
            ),
        )
        self.conn.commit()
        return True

    def fetch_price_history(self, pair: str, limit: int = 24) -> List[Tuple[datetime, float]]:
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT ts, price FROM market_snapshots WHERE pair = ? ORDER BY ts DESC LIMIT ?",
            (pair, limit),
        )
        return [(datetime.fromtimestamp(ts / 1000, tz=timezone.utc).replace(tzinfo=None), price) for ts, price in cursor.fetchall()]

    def record_outcome(self, outcome: CycleOutcome) -> None:
        intent = outcome.intent
        self.conn.execute(
            """
            INSERT INTO orders (ts, pair, status, side, order_type, quantity, price,
                                transaction_id, ordinal_order_id, reason)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                _ms(outcome.ts),
                outcome.pair,
                outcome.status,
                intent.side if intent else None,
                intent.type if intent else None,
                intent.quantity if intent else None,
                intent.price if intent else None,
                outcome.transaction_id,
                outcome.ordinal_order_id,
                outcome.reason,
            ),
        )
        self.conn.commit()

    def fetch_orders(self, pair: str | None = None) -> List[Tuple]:
        cursor = self.conn.cursor()
        query = (
            "SELECT ts, pair, status, side, quantity, price, transaction_id, ordinal_order_id, reason "
            "FROM orders"
        )
        if pair:
            cursor.execute(query + " WHERE pair = ? ORDER BY id DESC", (pair,))
        else:
            cursor.execute(query + " ORDER BY id DESC")
        return cursor.fetchall()

    def close(self) -> None:
        self.conn.close()
