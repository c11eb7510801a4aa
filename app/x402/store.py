# app/x402/store.py
"""
Persistence for the facilitator and price lookup.

The store owns four collections:
- replay keys: one per consumed challenge nonce, unique, expiring after a TTL
- transactions: the verified-payment ledger, unique on tx hash
- merchants: the authoritative route tables
- merchant stats: revenue and request counters

Two correctness-critical guards live here and nowhere else: the unique
insert of replay keys and the unique insert of transaction hashes. Both
are single atomic operations in each backend, never a read followed by a
write. Counter updates are atomic increments, and a verified payment
lands in the ledger together with its counters or not at all.
"""
import json
import logging
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional

from app.x402.errors import DuplicateKeyError
from app.x402.models import Merchant, MerchantStats, TransactionRecord

logger = logging.getLogger(__name__)

DEFAULT_REPLAY_TTL_SECONDS = 24 * 60 * 60


class Store(ABC):
    """Storage capability consumed by the gateway."""

    @abstractmethod
    def insert_replay_key(self, key_hash: str, tx_hash: str, ttl_seconds: int = DEFAULT_REPLAY_TTL_SECONDS) -> None:
        """Atomically claim a replay key. Raises DuplicateKeyError if it is live."""

    @abstractmethod
    def release_replay_key(self, key_hash: str, tx_hash: str) -> bool:
        """Delete a replay key only if it is still bound to `tx_hash`."""

    @abstractmethod
    def transaction_exists(self, tx_hash: str) -> bool:
        ...

    @abstractmethod
    def insert_transaction(self, record: TransactionRecord) -> None:
        """Atomically insert a ledger record. Raises DuplicateKeyError on a reused hash."""

    @abstractmethod
    def list_transactions(self, merchant_id: str, offset: int = 0, limit: int = 10) -> List[TransactionRecord]:
        """Ledger records for a merchant, newest first."""

    @abstractmethod
    def count_transactions(self, merchant_id: str) -> int:
        ...

    @abstractmethod
    def get_merchant(self, merchant_id: str) -> Optional[Merchant]:
        ...

    @abstractmethod
    def save_merchant(self, merchant: Merchant) -> None:
        ...

    @abstractmethod
    def increment_stats(self, merchant_id: str, currency: str, amount: Decimal) -> None:
        """Atomically add `amount` to revenue and 1 to the request counter."""

    @abstractmethod
    def record_payment(self, record: TransactionRecord) -> None:
        """
        Insert a ledger record and bump its merchant's counters as one unit.

        Raises DuplicateKeyError on a reused hash. If either write fails,
        neither is kept.
        """

    @abstractmethod
    def get_stats(self, merchant_id: str) -> MerchantStats:
        ...

    def close(self) -> None:
        pass


class MemoryStore(Store):
    """
    In-process store. Every operation runs under one lock, which makes the
    unique inserts and increments atomic within the process.
    """

    def __init__(self, clock=time.time):
        self._clock = clock
        self._lock = threading.RLock()
        self._replay_keys: Dict[str, tuple] = {}
        self._transactions: Dict[str, TransactionRecord] = {}
        self._merchants: Dict[str, Merchant] = {}
        self._stats: Dict[str, MerchantStats] = {}

    def insert_replay_key(self, key_hash, tx_hash, ttl_seconds=DEFAULT_REPLAY_TTL_SECONDS):
        with self._lock:
            now = self._clock()
            existing = self._replay_keys.get(key_hash)
            if existing is not None and existing[1] > now:
                raise DuplicateKeyError(f"replay key already consumed: {key_hash}")
            self._replay_keys[key_hash] = (tx_hash.lower(), now + ttl_seconds)
            self._purge_expired(now)

    def release_replay_key(self, key_hash, tx_hash):
        with self._lock:
            existing = self._replay_keys.get(key_hash)
            if existing is None or existing[0] != tx_hash.lower():
                return False
            del self._replay_keys[key_hash]
            return True

    def transaction_exists(self, tx_hash):
        with self._lock:
            return tx_hash.lower() in self._transactions

    def insert_transaction(self, record):
        with self._lock:
            self._check_unrecorded(record)
            self._transactions[record.tx_hash] = record

    def list_transactions(self, merchant_id, offset=0, limit=10):
        with self._lock:
            records = [r for r in self._transactions.values() if r.merchant_id == merchant_id]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records[offset:offset + limit]

    def count_transactions(self, merchant_id):
        with self._lock:
            return sum(1 for r in self._transactions.values() if r.merchant_id == merchant_id)

    def get_merchant(self, merchant_id):
        with self._lock:
            merchant = self._merchants.get(merchant_id)
            return merchant.model_copy(deep=True) if merchant else None

    def save_merchant(self, merchant):
        with self._lock:
            self._merchants[merchant.merchant_id] = merchant.model_copy(deep=True)

    def increment_stats(self, merchant_id, currency, amount):
        with self._lock:
            self._stats[merchant_id] = self._bumped_stats(merchant_id, currency, amount)

    def record_payment(self, record):
        with self._lock:
            self._check_unrecorded(record)
            stats = self._bumped_stats(record.merchant_id, record.currency.value, Decimal(record.amount))
            self._transactions[record.tx_hash] = record
            self._stats[record.merchant_id] = stats

    def get_stats(self, merchant_id):
        with self._lock:
            stats = self._stats.get(merchant_id)
            return stats.model_copy(deep=True) if stats else MerchantStats(merchant_id=merchant_id)

    def _check_unrecorded(self, record: TransactionRecord) -> None:
        if record.tx_hash in self._transactions:
            raise DuplicateKeyError(f"transaction already recorded: {record.tx_hash}")

    def _bumped_stats(self, merchant_id: str, currency: str, amount: Decimal) -> MerchantStats:
        """Updated copy of a merchant's counters; stored by the caller."""
        current = self._stats.get(merchant_id)
        stats = current.model_copy(deep=True) if current else MerchantStats(merchant_id=merchant_id)
        stats.total_revenue[currency] = stats.total_revenue.get(currency, Decimal(0)) + Decimal(amount)
        stats.total_requests += 1
        stats.last_active = datetime.now(timezone.utc)
        return stats

    def _purge_expired(self, now: float) -> None:
        expired = [k for k, (_, expires_at) in self._replay_keys.items() if expires_at <= now]
        for k in expired:
            del self._replay_keys[k]


class SqliteStore(Store):
    """
    SQLite-backed store.

    Uniqueness is enforced by PRIMARY KEY constraints, so a concurrent second
    insert fails inside the storage engine. Revenue is kept as decimal text
    and updated inside a BEGIN IMMEDIATE transaction (the engine holds the
    write lock for the whole update); request counters use `x = x + 1`.
    """

    def __init__(self, dsn: str, clock=time.time):
        self._clock = clock
        self._lock = threading.RLock()
        path = _path_from_dsn(dsn)
        self._conn = sqlite3.connect(str(path), check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._create_schema()

    def _create_schema(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS replay_keys (
                    key_hash TEXT PRIMARY KEY,
                    tx_hash TEXT NOT NULL,
                    expires_at REAL NOT NULL
                );
                CREATE TABLE IF NOT EXISTS transactions (
                    tx_hash TEXT PRIMARY KEY,
                    merchant_id TEXT NOT NULL,
                    payer TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    currency TEXT NOT NULL,
                    path TEXT NOT NULL,
                    method TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_transactions_merchant
                    ON transactions (merchant_id, created_at DESC);
                CREATE TABLE IF NOT EXISTS merchants (
                    merchant_id TEXT PRIMARY KEY,
                    payload TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS merchant_revenue (
                    merchant_id TEXT NOT NULL,
                    currency TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    PRIMARY KEY (merchant_id, currency)
                );
                CREATE TABLE IF NOT EXISTS merchant_requests (
                    merchant_id TEXT PRIMARY KEY,
                    total_requests INTEGER NOT NULL DEFAULT 0,
                    last_active TEXT
                );
                """
            )

    def insert_replay_key(self, key_hash, tx_hash, ttl_seconds=DEFAULT_REPLAY_TTL_SECONDS):
        now = self._clock()
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
                self._conn.execute(
                    "DELETE FROM replay_keys WHERE expires_at <= ?", (now,)
                )
                self._conn.execute(
                    "INSERT INTO replay_keys (key_hash, tx_hash, expires_at) VALUES (?, ?, ?)",
                    (key_hash, tx_hash.lower(), now + ttl_seconds),
                )
                self._conn.execute("COMMIT")
            except sqlite3.IntegrityError as e:
                self._conn.execute("ROLLBACK")
                raise DuplicateKeyError(f"replay key already consumed: {key_hash}") from e
            except Exception:
                self._rollback()
                raise

    def release_replay_key(self, key_hash, tx_hash):
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM replay_keys WHERE key_hash = ? AND tx_hash = ?",
                (key_hash, tx_hash.lower()),
            )
            return cursor.rowcount > 0

    def transaction_exists(self, tx_hash):
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM transactions WHERE tx_hash = ?", (tx_hash.lower(),)
            ).fetchone()
        return row is not None

    def insert_transaction(self, record):
        with self._lock:
            self._insert_transaction(record)

    def record_payment(self, record):
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
                self._insert_transaction(record)
                self._add_stats(record.merchant_id, record.currency.value, Decimal(record.amount), now)
                self._conn.execute("COMMIT")
            except Exception:
                self._rollback()
                raise

    def list_transactions(self, merchant_id, offset=0, limit=10):
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT * FROM transactions WHERE merchant_id = ?
                ORDER BY created_at DESC LIMIT ? OFFSET ?
                """,
                (merchant_id, limit, offset),
            ).fetchall()
        return [
            TransactionRecord(
                tx_hash=row["tx_hash"],
                merchant_id=row["merchant_id"],
                payer=row["payer"],
                amount=row["amount"],
                currency=row["currency"],
                path=row["path"],
                method=row["method"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    def count_transactions(self, merchant_id):
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) FROM transactions WHERE merchant_id = ?", (merchant_id,)
            ).fetchone()
        return int(row[0])

    def get_merchant(self, merchant_id):
        with self._lock:
            row = self._conn.execute(
                "SELECT payload FROM merchants WHERE merchant_id = ?", (merchant_id,)
            ).fetchone()
        if row is None:
            return None
        return Merchant.model_validate_json(row["payload"])

    def save_merchant(self, merchant):
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO merchants (merchant_id, payload) VALUES (?, ?)",
                (merchant.merchant_id, merchant.model_dump_json(by_alias=True)),
            )

    def increment_stats(self, merchant_id, currency, amount):
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
                self._add_stats(merchant_id, currency, amount, now)
                self._conn.execute("COMMIT")
            except Exception:
                self._rollback()
                raise

    def get_stats(self, merchant_id):
        with self._lock:
            revenue_rows = self._conn.execute(
                "SELECT currency, amount FROM merchant_revenue WHERE merchant_id = ?", (merchant_id,)
            ).fetchall()
            request_row = self._conn.execute(
                "SELECT total_requests, last_active FROM merchant_requests WHERE merchant_id = ?",
                (merchant_id,),
            ).fetchone()
        return MerchantStats(
            merchant_id=merchant_id,
            total_revenue={row["currency"]: Decimal(row["amount"]) for row in revenue_rows},
            total_requests=request_row["total_requests"] if request_row else 0,
            last_active=datetime.fromisoformat(request_row["last_active"]) if request_row and request_row["last_active"] else None,
        )

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _insert_transaction(self, record: TransactionRecord) -> None:
        try:
            self._conn.execute(
                """
                INSERT INTO transactions
                    (tx_hash, merchant_id, payer, amount, currency, path, method, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.tx_hash,
                    record.merchant_id,
                    record.payer,
                    record.amount,
                    record.currency.value,
                    record.path,
                    record.method,
                    record.created_at.isoformat(),
                ),
            )
        except sqlite3.IntegrityError as e:
            raise DuplicateKeyError(f"transaction already recorded: {record.tx_hash}") from e

    def _add_stats(self, merchant_id: str, currency: str, amount: Decimal, now: str) -> None:
        """Counter writes; the caller owns the transaction."""
        row = self._conn.execute(
            "SELECT amount FROM merchant_revenue WHERE merchant_id = ? AND currency = ?",
            (merchant_id, currency),
        ).fetchone()
        total = (Decimal(row["amount"]) if row else Decimal(0)) + Decimal(amount)
        self._conn.execute(
            "INSERT OR REPLACE INTO merchant_revenue (merchant_id, currency, amount) VALUES (?, ?, ?)",
            (merchant_id, currency, str(total)),
        )
        self._conn.execute(
            """
            INSERT INTO merchant_requests (merchant_id, total_requests, last_active)
            VALUES (?, 1, ?)
            ON CONFLICT (merchant_id) DO UPDATE SET
                total_requests = total_requests + 1,
                last_active = excluded.last_active
            """,
            (merchant_id, now),
        )

    def _rollback(self) -> None:
        if self._conn.in_transaction:
            self._conn.execute("ROLLBACK")


def _path_from_dsn(dsn: str) -> Path:
    if not dsn.startswith("sqlite:///"):
        raise ValueError(f"unsupported DSN: {dsn}")
    path = Path(dsn[len("sqlite:///"):])
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def create_store(dsn: Optional[str]) -> Store:
    """Build a store from a DSN; empty means in-memory."""
    if not dsn:
        logger.warning("X402_DATABASE_URL not configured - using in-memory store")
        return MemoryStore()
    return SqliteStore(dsn)


def load_merchants_file(store: Store, path: str) -> int:
    """
    Seed merchants from a JSON file containing a list of merchant objects.

    Returns:
        Number of merchants loaded
    """
    with open(path, "r") as f:
        data = json.load(f)
    if not isinstance(data, list):
        raise ValueError(f"Merchants file must contain a JSON list: {path}")
    for item in data:
        store.save_merchant(Merchant.model_validate(item))
    logger.info(f"Loaded {len(data)} merchants from {path}")
    return len(data)
