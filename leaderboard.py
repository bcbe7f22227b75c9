# leaderboard.py
"""
Scratch Your Card — leaderboard + profile aggregation over the transaction log.

Counts, last activity and wei sums are grouped in SQL per (wallet, action).
Wei amounts are decimal strings of any length, and SQLite's SUM() would
overflow past 2**63, so each amount is summed in fixed-width decimal chunks
(right-aligned, CHUNK_DIGITS each) and the chunk totals are recombined into
exact Python ints.
"""

from __future__ import annotations
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import aiosqlite

from errors import ValidationFailed
from transaction_log import serialize_row

ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")

DEFAULT_PAGE_SIZE = 5
MAX_PAGE_SIZE = 100
PROFILE_RECENT_LIMIT = 20

# 10**12 per chunk keeps each chunk SUM inside int64 for ~9M rows per group
CHUNK_DIGITS = 12

# (wallet_address, action, count, total_wei, last_occurred_at)
GroupRow = Tuple[str, str, int, int, str]


@dataclass
class WalletTotals:
    wallet_address: str
    total_won_wei: int = 0
    total_claimed_wei: int = 0
    scratch_count: int = 0
    claim_count: int = 0
    tx_count: int = 0
    last_activity: Optional[str] = None

    def add_group(self, action: str, count: int, total_wei: int, last: Optional[str]) -> None:
        if action == "scratch_reward":
            self.total_won_wei += total_wei
            self.scratch_count += count
        elif action == "claim":
            self.total_claimed_wei += total_wei
            self.claim_count += count
        self.tx_count += count
        if last is not None and (self.last_activity is None or last > self.last_activity):
            self.last_activity = last

    def rank_key(self) -> Tuple[int, int, str]:
        return (self.total_won_wei, self.scratch_count, self.last_activity or "")

    def to_dict(self, with_claim_count: bool = False) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "walletAddress": self.wallet_address,
            "totalWonWei": str(self.total_won_wei),
            "totalClaimedWei": str(self.total_claimed_wei),
            "scratchCount": self.scratch_count,
            "txCount": self.tx_count,
            "lastActivity": self.last_activity,
        }
        if with_claim_count:
            out["claimCount"] = self.claim_count
        return out


# =========================================================
# Pure aggregation
# =========================================================
def combine_chunks(chunk_sums: Sequence[Any]) -> int:
    """Chunk totals (least significant first) -> exact integer."""
    return sum(int(c or 0) * 10 ** (CHUNK_DIGITS * k) for k, c in enumerate(chunk_sums))


def aggregate_rows(rows: Iterable[GroupRow]) -> Dict[str, WalletTotals]:
    """rows: one (wallet, action, count, total_wei, last_occurred_at) per group, any order."""
    totals: Dict[str, WalletTotals] = {}
    for wallet, action, count, total_wei, last in rows:
        entry = totals.get(wallet)
        if entry is None:
            entry = totals[wallet] = WalletTotals(wallet_address=wallet)
        entry.add_group(action, count, total_wei, last)
    return totals


def rank_wallets(totals: Iterable[WalletTotals]) -> List[WalletTotals]:
    """Won desc, then scratch count desc, then most recent activity first."""
    return sorted(totals, key=WalletTotals.rank_key, reverse=True)


def platform_stats(totals: Iterable[WalletTotals]) -> Dict[str, Any]:
    users = scratches = txs = claimed = 0
    for t in totals:
        users += 1
        scratches += t.scratch_count
        txs += t.tx_count
        claimed += t.total_claimed_wei
    return {
        "totalUsers": users,
        "totalScratchCards": scratches,
        "totalTransactions": txs,
        "totalClaimedWei": str(claimed),
    }


def _to_int(raw: Any, default: int) -> int:
    if raw is None or raw == "":
        return default
    try:
        n = float(raw)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(n):
        return default
    return math.floor(n)


def parse_page_params(page: Any = None, page_size: Any = None, limit: Any = None) -> Tuple[int, int]:
    """Page is 1-indexed (min 1); page size defaults to 5 and is clamped to [1, 100]."""
    p = max(_to_int(page, 1), 1)
    raw_size = page_size if page_size not in (None, "") else limit
    size = min(max(_to_int(raw_size, DEFAULT_PAGE_SIZE), 1), MAX_PAGE_SIZE)
    return p, size

# =========================================================
# Queries
# =========================================================
def _chunk_columns(chunks: int) -> str:
    # substr() with a negative start counts from the right; chunks past the
    # left edge come back as '' and CAST to 0
    return ", ".join(
        f"SUM(CAST(substr(amount_wei, {-CHUNK_DIGITS * (k + 1)}, {CHUNK_DIGITS}) AS INTEGER))"
        for k in range(chunks)
    )


async def _fetch_groups(conn: aiosqlite.Connection, wallet: Optional[str] = None) -> List[GroupRow]:
    where, params = ("WHERE wallet_address=?", (wallet,)) if wallet is not None else ("", ())

    async with conn.execute(f"SELECT MAX(LENGTH(amount_wei)) FROM transactions {where}", params) as cur:
        row = await cur.fetchone()
    width = int(row[0] or 0) if row else 0
    chunks = max(math.ceil(width / CHUNK_DIGITS), 1)

    sql = (
        f"SELECT wallet_address, action, COUNT(*), MAX(occurred_at), {_chunk_columns(chunks)} "
        f"FROM transactions {where} GROUP BY wallet_address, action"
    )
    async with conn.execute(sql, params) as cur:
        rows = await cur.fetchall()
    out: List[GroupRow] = []
    for r in rows:
        values = tuple(r)
        out.append((values[0], values[1], int(values[2]), combine_chunks(values[4:]), values[3]))
    return out


async def leaderboard(conn: aiosqlite.Connection, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE) -> Dict[str, Any]:
    page, page_size = parse_page_params(page, page_size)
    totals = aggregate_rows(await _fetch_groups(conn))
    ranked = rank_wallets(totals.values())

    skip = (page - 1) * page_size
    total_users = len(ranked)
    return {
        "leaderboard": [t.to_dict() for t in ranked[skip:skip + page_size]],
        "pagination": {
            "page": page,
            "pageSize": page_size,
            "totalUsers": total_users,
            "totalPages": max(math.ceil(total_users / page_size), 1),
        },
        "platformStats": platform_stats(ranked),
    }


def normalize_address(address: Any) -> str:
    wallet = str(address or "").strip().lower()
    if not ADDRESS_RE.match(wallet):
        raise ValidationFailed("Invalid address")
    return wallet


async def profile(conn: aiosqlite.Connection, address: str) -> Dict[str, Any]:
    """Summary for one wallet plus its latest transactions (zeroed when unknown)."""
    wallet = normalize_address(address)

    totals = aggregate_rows(await _fetch_groups(conn, wallet))
    summary = totals.get(wallet) or WalletTotals(wallet_address=wallet)

    async with conn.execute(
        "SELECT * FROM transactions WHERE wallet_address=? ORDER BY occurred_at DESC LIMIT ?",
        (wallet, PROFILE_RECENT_LIMIT),
    ) as cur:
        recent = await cur.fetchall()

    return {
        "summary": summary.to_dict(with_claim_count=True),
        "transactions": [serialize_row(r) for r in recent],
    }
