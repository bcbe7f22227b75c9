# transaction_log.py
"""
Scratch Your Card — transaction log ingest.

Validates a client- or batch-reported scratch/claim event and upserts it into
the `transactions` table, keyed by tx hash. Re-sending the same hash
overwrites the stored fields (createdAt is kept), so reporting twice is safe.
"""

from __future__ import annotations
import math
import re
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple

import aiosqlite
from pydantic import BaseModel, ConfigDict

from db import iso_ms
from errors import ValidationFailed

VALID_ACTIONS = ("scratch_reward", "claim")
_DIGITS = re.compile(r"^[0-9]+$")
# fromisoformat before 3.11 only takes 3 or 6 fractional digits
_FRACTION = re.compile(r"([T ]\d{2}:\d{2}:\d{2})\.(\d+)")

UPSERT_SQL = """
INSERT INTO transactions (
  tx_hash, wallet_address, action, amount_wei, contract_address,
  chain_id, occurred_at, created_at, updated_at
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(tx_hash) DO UPDATE SET
  wallet_address   = excluded.wallet_address,
  action           = excluded.action,
  amount_wei       = excluded.amount_wei,
  contract_address = excluded.contract_address,
  chain_id         = excluded.chain_id,
  occurred_at      = excluded.occurred_at,
  updated_at       = excluded.updated_at
""".strip()


class TransactionRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    wallet_address: str
    tx_hash: str
    action: Literal["scratch_reward", "claim"]
    amount_wei: str
    contract_address: str
    chain_id: int
    occurred_at: datetime

    def to_params(self, now: Optional[datetime] = None) -> Tuple[Any, ...]:
        stamp = iso_ms(now)
        return (
            self.tx_hash,
            self.wallet_address,
            self.action,
            self.amount_wei,
            self.contract_address,
            self.chain_id,
            iso_ms(self.occurred_at),
            stamp,
            stamp,
        )


# =========================================================
# Parsing / validation
# =========================================================
def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _amount(value: Any, errors: List[str]) -> str:
    # JSON numbers are accepted only when they are exact integers
    if isinstance(value, bool):
        errors.append("amountWei must be a non-negative integer string")
        return ""
    if isinstance(value, int):
        if value < 0:
            errors.append("amountWei must be a non-negative integer string")
            return ""
        return str(value)
    if isinstance(value, float):
        errors.append("amountWei must be sent as a decimal string, not a float")
        return ""
    amount = _text(value)
    if not amount:
        errors.append("amountWei is required")
    elif not _DIGITS.match(amount):
        errors.append("amountWei must be a non-negative integer string")
    return amount


def _chain_id(value: Any, errors: List[str]) -> int:
    if value is None or isinstance(value, bool) or value == "":
        errors.append("chainId must be a finite number")
        return 0
    try:
        n = float(value)
    except (TypeError, ValueError):
        errors.append("chainId must be a finite number")
        return 0
    if not math.isfinite(n):
        errors.append("chainId must be a finite number")
        return 0
    if not n.is_integer() or n <= 0:
        errors.append("chainId must be a positive integer")
        return 0
    return int(n)


def _occurred_at(value: Any, errors: List[str], now: datetime) -> datetime:
    if value is None or value == "":
        return now
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # epoch milliseconds, as browsers send Date.now()
        try:
            return datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            errors.append("occurredAt is not a valid timestamp")
            return now
    s = _text(value)
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    s = _FRACTION.sub(lambda m: f"{m.group(1)}.{(m.group(2) + '000000')[:6]}", s, count=1)
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        errors.append("occurredAt is not a valid timestamp")
        return now
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def parse_transaction(payload: Mapping[str, Any], now: Optional[datetime] = None) -> TransactionRecord:
    """
    Build a TransactionRecord from a camelCase payload.

    Every violated field is collected; a single ValidationFailed lists them all.
    Hex fields are trimmed and lowercased.
    """
    if not isinstance(payload, Mapping):
        raise ValidationFailed("Request body must be a JSON object")

    now = now or datetime.now(timezone.utc)
    errors: List[str] = []

    wallet_address = _text(payload.get("walletAddress")).lower()
    tx_hash = _text(payload.get("txHash")).lower()
    contract_address = _text(payload.get("contractAddress")).lower()
    action = _text(payload.get("action"))

    if not wallet_address:
        errors.append("walletAddress is required")
    if not tx_hash:
        errors.append("txHash is required")
    amount_wei = _amount(payload.get("amountWei"), errors)
    if not contract_address:
        errors.append("contractAddress is required")
    chain_id = _chain_id(payload.get("chainId"), errors)
    if action not in VALID_ACTIONS:
        errors.append("Invalid action. Use scratch_reward or claim.")
    occurred_at = _occurred_at(payload.get("occurredAt"), errors, now)

    if errors:
        raise ValidationFailed("; ".join(errors), errors)

    return TransactionRecord(
        wallet_address=wallet_address,
        tx_hash=tx_hash,
        action=action,
        amount_wei=amount_wei,
        contract_address=contract_address,
        chain_id=chain_id,
        occurred_at=occurred_at,
    )


def serialize_row(row: Mapping[str, Any]) -> Dict[str, Any]:
    """Stored row -> public camelCase record."""
    return {
        "walletAddress": row["wallet_address"],
        "txHash": row["tx_hash"],
        "action": row["action"],
        "amountWei": row["amount_wei"],
        "contractAddress": row["contract_address"],
        "chainId": int(row["chain_id"]),
        "occurredAt": row["occurred_at"],
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }

# =========================================================
# Upsert (async, HTTP app)
# =========================================================
async def upsert_transaction(conn: aiosqlite.Connection, record: TransactionRecord, commit: bool = True) -> None:
    await conn.execute(UPSERT_SQL, record.to_params())
    if commit:
        await conn.commit()


async def record_transaction(conn: aiosqlite.Connection, payload: Mapping[str, Any]) -> TransactionRecord:
    """Validate + upsert one payload. Store errors propagate to the caller."""
    record = parse_transaction(payload)
    await upsert_transaction(conn, record)
    return record

# =========================================================
# Upsert (sync, batch worker / scripts)
# =========================================================
def upsert_transaction_sync(conn: sqlite3.Connection, record: TransactionRecord) -> None:
    conn.execute(UPSERT_SQL, record.to_params())
    conn.commit()


def record_transaction_sync(conn: sqlite3.Connection, payload: Mapping[str, Any]) -> TransactionRecord:
    record = parse_transaction(payload)
    upsert_transaction_sync(conn, record)
    return record


def get_transaction_sync(conn: sqlite3.Connection, tx_hash: str) -> Optional[Dict[str, Any]]:
    cur = conn.execute("SELECT * FROM transactions WHERE tx_hash=?", (tx_hash.strip().lower(),))
    row = cur.fetchone()
    return serialize_row(row) if row else None
