# db.py

"""
Scratch Your Card — db.py
Canonical schema + BOTH async (aiosqlite) and sync (sqlite3) helpers.

The HTTP app holds one aiosqlite connection for the life of the process
(opened at startup, handed to routes through a dependency, reopened when a
ping fails). Scripts and the batch worker thread open their own sqlite3
connection with connect_sync().
"""

from __future__ import annotations
from datetime import datetime, timezone
from typing import Optional
import os
import sqlite3
import aiosqlite

# =========================================================
# Canonical Schema
# =========================================================
SCHEMA = """
PRAGMA journal_mode=WAL;

-- One row per logged on-chain event; tx_hash is the identity key
CREATE TABLE IF NOT EXISTS transactions (
  tx_hash          TEXT PRIMARY KEY,
  wallet_address   TEXT NOT NULL,
  action           TEXT NOT NULL CHECK (action IN ('scratch_reward', 'claim')),
  amount_wei       TEXT NOT NULL,          -- decimal string, arbitrary precision
  contract_address TEXT NOT NULL,
  chain_id         INTEGER NOT NULL,
  occurred_at      TEXT NOT NULL,          -- fixed-width ISO-8601 UTC, ms precision
  created_at       TEXT NOT NULL,
  updated_at       TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_tx_wallet      ON transactions(wallet_address);
CREATE INDEX IF NOT EXISTS idx_tx_action      ON transactions(action);
CREATE INDEX IF NOT EXISTS idx_tx_occurred    ON transactions(occurred_at);
CREATE INDEX IF NOT EXISTS idx_tx_chain       ON transactions(chain_id);
CREATE INDEX IF NOT EXISTS idx_tx_contract    ON transactions(contract_address);
CREATE INDEX IF NOT EXISTS idx_tx_wallet_action_time
  ON transactions(wallet_address, action, occurred_at DESC);
""".strip()

PRAGMAS = (
    "PRAGMA foreign_keys=ON",
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA temp_store=MEMORY",
    "PRAGMA wal_autocheckpoint=1000",
    "PRAGMA busy_timeout=5000",
)

# =========================================================
# Timestamps
# =========================================================
def iso_ms(dt: Optional[datetime] = None) -> str:
    """
    Fixed-width UTC timestamp with millisecond precision, e.g.
    2026-01-02T03:04:05.678Z. Naive datetimes are treated as UTC.
    Equal width means string order is time order inside SQLite.
    """
    if dt is None:
        dt = datetime.now(timezone.utc)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def _ensure_parent_dir(db_path: str) -> None:
    parent = os.path.dirname(db_path)
    if parent and db_path != ":memory:":
        os.makedirs(parent, exist_ok=True)

# =========================================================
# Connection (async)
# =========================================================
async def connect(db_path: str) -> aiosqlite.Connection:
    """
    Async connection for FastAPI handlers; ensures schema and sets PRAGMAs.
    """
    _ensure_parent_dir(db_path)
    conn = await aiosqlite.connect(db_path)

    for pragma in PRAGMAS:
        await conn.execute(pragma)

    # Use aiosqlite.Row for dict-like access
    conn.row_factory = aiosqlite.Row

    await conn.executescript(SCHEMA)
    await conn.commit()
    return conn


async def ensure_schema(conn: aiosqlite.Connection) -> None:
    """Apply canonical schema (idempotent)."""
    await conn.executescript(SCHEMA)
    await conn.commit()


async def ping(conn: aiosqlite.Connection) -> bool:
    """True when the connection still answers a trivial query."""
    try:
        async with conn.execute("SELECT 1") as cur:
            await cur.fetchone()
        return True
    except (sqlite3.Error, ValueError):
        # ValueError: aiosqlite raises it once the worker thread is gone
        return False

# =========================================================
# Connection (sync) for scripts / batch worker
# =========================================================
def connect_sync(db_path: str) -> sqlite3.Connection:
    """
    Synchronous connection for scripts / batch code that prefer blocking I/O.
    """
    _ensure_parent_dir(db_path)
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row

    # Per-connection PRAGMAs (mirror async)
    for pragma in PRAGMAS:
        conn.execute(pragma)

    conn.executescript(SCHEMA)
    conn.commit()
    return conn
