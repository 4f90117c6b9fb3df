"""
Ledger Store - Append-only record of every dollar in and out

Two tables in one local SQLite file:
- transactions: revenue / expense / reinvestment events (never updated, never deleted)
- agent_state:  small key/value table (status, balances), last-write-wins

Amounts are stored as integer micro-USD (6 decimals, USDC precision) so that
SUM() in SQL is exact. Every aggregate is derived from the rows; nothing is
cached.

Designed for: autonomous economic agent (earn → spend → reinvest)
"""

import json
import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger("autonome.ledger")

MICROS_PER_USD = 1_000_000
_MICRO = Decimal("0.000001")
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


class StorageError(RuntimeError):
    """The underlying SQLite medium failed (unavailable, locked, corrupt)."""
    pass


class LedgerValidationError(ValueError):
    """An entry was rejected before touching storage."""
    pass


class EntryKind(Enum):
    """Closed set of ledger event kinds."""
    REVENUE = "revenue"               # A caller paid us
    EXPENSE = "expense"               # We paid for a metered skill call
    REINVESTMENT = "reinvestment"     # Profit rotated back into assets


class StateKey:
    """Known agent_state keys."""
    STATUS = "status"
    STARTED_AT = "started_at"
    STOPPED_AT = "stopped_at"
    ETH_BALANCE = "eth_balance"
    USDC_BALANCE = "usdc_balance"


@dataclass(frozen=True)
class LedgerEntry:
    id: int
    kind: EntryKind
    amount: Decimal
    created_at: str
    skill: Optional[str] = None
    counterparty: Optional[str] = None      # payer address (revenue)
    tx_ref: Optional[str] = None            # on-chain tx hash (reinvestment)
    metadata: Optional[str] = None          # free-form JSON

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.kind.value,
            "skill": self.skill,
            "amount": float(self.amount),
            "address": self.counterparty,
            "txHash": self.tx_ref,
            "metadata": self.metadata,
            "createdAt": self.created_at,
        }


def to_micros(amount) -> int:
    """Decimal/float/str dollars → integer micro-USD (half-up)."""
    value = Decimal(str(amount)).quantize(_MICRO, rounding=ROUND_HALF_UP)
    return int(value * MICROS_PER_USD)


def from_micros(micros: int) -> Decimal:
    return (Decimal(int(micros or 0)) / MICROS_PER_USD).quantize(_MICRO)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS transactions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    type TEXT NOT NULL CHECK(type IN ('revenue', 'expense', 'reinvestment')),
    skill TEXT,
    amount_micros INTEGER NOT NULL CHECK(amount_micros >= 0),
    address TEXT,
    tx_hash TEXT,
    metadata TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS agent_state (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_tx_type ON transactions(type);
CREATE INDEX IF NOT EXISTS idx_tx_created ON transactions(created_at);
"""


class LedgerStore:
    """
    Single-writer SQLite ledger.

    One connection, guarded by a thread lock: FastAPI runs sync endpoints in
    a worker pool, and the profit engine writes from the event loop.
    Every write commits before returning.
    """

    def __init__(self, db_path: str = "autonome.db",
                 clock: Optional[Callable[[], datetime]] = None):
        self.db_path = str(db_path)
        self._clock = clock or utc_now
        self._lock = threading.Lock()
        self._conn: Optional[sqlite3.Connection] = None

    # ============================================================
    # LIFECYCLE
    # ============================================================

    def _connect(self) -> sqlite3.Connection:
        if self._conn is None:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            try:
                conn = sqlite3.connect(self.db_path, check_same_thread=False)
            except sqlite3.Error as e:
                raise StorageError(f"Cannot open ledger at {self.db_path}: {e}") from e
            conn.row_factory = sqlite3.Row
            self._conn = conn
        return self._conn

    def init_schema(self):
        """Create tables + indexes. Failure here is fatal for the agent."""
        with self._lock:
            try:
                conn = self._connect()
                if self.db_path != ":memory:":
                    conn.execute("PRAGMA journal_mode = WAL")
                conn.executescript(_SCHEMA)
                conn.commit()
            except sqlite3.Error as e:
                raise StorageError(f"Schema creation failed: {e}") from e
        logger.info(f"Ledger ready at {self.db_path}")

    def close(self):
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def _execute(self, sql: str, params: tuple = (), commit: bool = False) -> list[sqlite3.Row]:
        with self._lock:
            try:
                conn = self._connect()
                cursor = conn.execute(sql, params)
                rows = cursor.fetchall()
                if commit:
                    conn.commit()
                return rows
            except sqlite3.Error as e:
                raise StorageError(f"Ledger query failed: {e}") from e

    # ============================================================
    # WRITES (append-only)
    # ============================================================

    def append(self, kind: EntryKind, amount, skill: Optional[str] = None,
               counterparty: Optional[str] = None, tx_ref: Optional[str] = None,
               metadata: Optional[dict] = None) -> LedgerEntry:
        """Validate, timestamp and durably insert one entry."""
        if not isinstance(kind, EntryKind):
            try:
                kind = EntryKind(kind)
            except ValueError:
                raise LedgerValidationError(f"Unknown entry kind: {kind!r}")

        try:
            amount = Decimal(str(amount))
        except ArithmeticError:
            raise LedgerValidationError(f"Amount is not a number: {amount!r}")
        if not amount.is_finite() or amount < 0:
            raise LedgerValidationError(f"Amount must be a non-negative number, got {amount}")

        micros = to_micros(amount)
        created_at = format_timestamp(self._clock())
        meta_json = json.dumps(metadata) if metadata is not None else None

        with self._lock:
            try:
                conn = self._connect()
                cursor = conn.execute(
                    "INSERT INTO transactions (type, skill, amount_micros, address, tx_hash, metadata, created_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (kind.value, skill, micros, counterparty, tx_ref, meta_json, created_at),
                )
                conn.commit()
                entry_id = cursor.lastrowid
            except sqlite3.Error as e:
                raise StorageError(f"Ledger append failed: {e}") from e

        logger.debug(f"Ledger +{kind.value} ${from_micros(micros)} (id={entry_id}, skill={skill})")
        return LedgerEntry(
            id=entry_id,
            kind=kind,
            amount=from_micros(micros),
            created_at=created_at,
            skill=skill,
            counterparty=counterparty,
            tx_ref=tx_ref,
            metadata=meta_json,
        )

    def record_revenue(self, amount, address: str) -> LedgerEntry:
        return self.append(EntryKind.REVENUE, amount, counterparty=address)

    def record_expense(self, skill: str, amount) -> LedgerEntry:
        return self.append(EntryKind.EXPENSE, amount, skill=skill)

    def record_reinvestment(self, amount, tx_ref: Optional[str]) -> LedgerEntry:
        return self.append(EntryKind.REINVESTMENT, amount, tx_ref=tx_ref)

    # ============================================================
    # READS
    # ============================================================

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> LedgerEntry:
        return LedgerEntry(
            id=row["id"],
            kind=EntryKind(row["type"]),
            amount=from_micros(row["amount_micros"]),
            created_at=row["created_at"],
            skill=row["skill"],
            counterparty=row["address"],
            tx_ref=row["tx_hash"],
            metadata=row["metadata"],
        )

    def recent_entries(self, n: int = 50) -> list[LedgerEntry]:
        """The n most recent entries, newest first."""
        rows = self._execute(
            "SELECT * FROM transactions ORDER BY created_at DESC, id DESC LIMIT ?",
            (max(0, int(n)),),
        )
        return [self._row_to_entry(r) for r in rows]

    def reinvestment_history(self) -> list[LedgerEntry]:
        rows = self._execute(
            "SELECT * FROM transactions WHERE type = ? ORDER BY created_at DESC, id DESC",
            (EntryKind.REINVESTMENT.value,),
        )
        return [self._row_to_entry(r) for r in rows]

    def entries_since(self, cutoff: datetime) -> list[LedgerEntry]:
        """Entries created strictly after `cutoff`, oldest first."""
        rows = self._execute(
            "SELECT * FROM transactions WHERE created_at > ? ORDER BY created_at ASC, id ASC",
            (format_timestamp(cutoff),),
        )
        return [self._row_to_entry(r) for r in rows]

    def sum_amount(self, kind: EntryKind) -> Decimal:
        rows = self._execute(
            "SELECT COALESCE(SUM(amount_micros), 0) AS total FROM transactions WHERE type = ?",
            (kind.value,),
        )
        return from_micros(rows[0]["total"])

    def count(self, kind: EntryKind) -> int:
        rows = self._execute(
            "SELECT COUNT(*) AS n FROM transactions WHERE type = ?",
            (kind.value,),
        )
        return int(rows[0]["n"])

    def now(self) -> datetime:
        return self._clock()

    # ============================================================
    # AGENT STATE (key/value, last-write-wins)
    # ============================================================

    def set_state(self, key: str, value) -> None:
        self._execute(
            "INSERT OR REPLACE INTO agent_state (key, value, updated_at) VALUES (?, ?, ?)",
            (key, str(value), format_timestamp(self._clock())),
            commit=True,
        )

    def get_state(self, key: str, default: Optional[str] = None) -> Optional[str]:
        rows = self._execute("SELECT value FROM agent_state WHERE key = ?", (key,))
        if not rows:
            return default
        return rows[0]["value"]

    def all_state(self) -> dict[str, dict]:
        rows = self._execute("SELECT key, value, updated_at FROM agent_state ORDER BY key")
        return {r["key"]: {"value": r["value"], "updatedAt": r["updated_at"]} for r in rows}
