# main.py
# =========================================================
# Scratch Your Card Backend (FastAPI)
# =========================================================
from __future__ import annotations

import asyncio
import sqlite3
import time
import traceback
from functools import partial
from typing import Optional

import aiosqlite
from eth_account.signers.local import LocalAccount
from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from config import settings
import db as dbmod
import batch as batchmod
import leaderboard as lb
import transaction_log as txlog
from contract import ScratchCardClient, load_account
from errors import (
    ChainError,
    ChainUnavailable,
    ConfigurationError,
    ContractNotDeployed,
    ScratchError,
    StoreUnavailable,
    ValidationFailed,
)

VERSION = "0.1.0"

# =========================================================
# App Init
# =========================================================
app = FastAPI(title="Scratch Your Card Backend", version=VERSION)

# ----------------------------- CORS ---------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

API = (getattr(settings, "API_PREFIX", "/api") or "/api").rstrip("/")

# =========================================================
# Errors
# =========================================================
# Most specific first; non-public errors never echo their own message
_GENERIC_ERRORS = (
    (StoreUnavailable, "Database unavailable"),
    (ContractNotDeployed, "Game contract is not deployed at the configured address"),
    (ChainUnavailable, "Chain provider unavailable"),
    (ChainError, "On-chain call failed"),
)


@app.exception_handler(ScratchError)
async def scratch_error_handler(request: Request, exc: ScratchError):
    if exc.public:
        return JSONResponse(exc.to_body(), status_code=exc.status_code)
    print(f"[error] {request.method} {request.url.path}: {type(exc).__name__}: {exc.message}", flush=True)
    message = next((m for cls, m in _GENERIC_ERRORS if isinstance(exc, cls)), "Internal server error")
    return JSONResponse({"ok": False, "error": message}, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = []
    for err in exc.errors():
        where = ".".join(str(p) for p in err.get("loc", ()) if p != "body") or "body"
        errors.append(f"{where}: {err.get('msg', 'invalid')}")
    print(f"[error] {request.method} {request.url.path}: rejected request {errors}", flush=True)
    body = ValidationFailed("Request body must be a JSON object", errors).to_body()
    return JSONResponse(body, status_code=400)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    print(f"[error] {request.method} {request.url.path}: unhandled {type(exc).__name__}", flush=True)
    traceback.print_exception(type(exc), exc, exc.__traceback__)
    return JSONResponse({"ok": False, "error": "Internal server error"}, status_code=500)

# =========================================================
# Dependencies
# =========================================================
async def get_db(request: Request) -> aiosqlite.Connection:
    """
    Process-wide aiosqlite handle. Pinged on every request; when the ping
    fails the handle is closed and reopened once before giving up.
    """
    conn = getattr(request.app.state, "db", None)
    if conn is not None and await dbmod.ping(conn):
        return conn

    print("[db] connection unavailable, reconnecting", flush=True)
    if conn is not None:
        try:
            await conn.close()
        except (sqlite3.Error, ValueError) as e:
            print("[db] close of stale connection failed:", e, flush=True)
    try:
        conn = await dbmod.connect(settings.DB_PATH)
    except (sqlite3.Error, OSError) as e:
        raise StoreUnavailable(f"reconnect to {settings.DB_PATH} failed: {e}") from e
    request.app.state.db = conn
    return conn


def get_contract(request: Request) -> ScratchCardClient:
    return request.app.state.contract


def load_admin_account() -> Optional[LocalAccount]:
    """Funding signer for batch runs; only called once the requester is authenticated."""
    key = settings.admin_private_key
    if not key:
        return None
    try:
        return load_account(key)
    except ValueError as e:
        raise ConfigurationError("BATCH_ADMIN_PRIVATE_KEY is not a valid private key") from e

# =========================================================
# Lifecycle
# =========================================================
@app.on_event("startup")
async def on_startup():
    # Connect DB + ensure schema
    app.state.db = await dbmod.connect(settings.DB_PATH)
    await dbmod.ensure_schema(app.state.db)

    # No RPC round-trip here; the provider connects lazily on first call
    app.state.contract = ScratchCardClient.from_settings(settings)
    print(f"[startup] db={settings.DB_PATH} contract={app.state.contract.address}", flush=True)


@app.on_event("shutdown")
async def on_shutdown():
    conn = getattr(app.state, "db", None)
    if conn is not None:
        await conn.close()
        app.state.db = None

# =========================================================
# Health
# =========================================================
@app.get(f"{API}/health")
async def health():
    return {"ok": True, "ts": time.time(), "service": "scratch-your-card", "version": VERSION}


@app.get(f"{API}/health/full")
async def health_full(request: Request, client: ScratchCardClient = Depends(get_contract)):
    conn = getattr(request.app.state, "db", None)
    db_ok = conn is not None and await dbmod.ping(conn)
    try:
        block = await asyncio.to_thread(client.block_number)
        rpc_ok = True
    except ChainError as e:
        print("[health] rpc check failed:", type(e).__name__, flush=True)
        block = None
        rpc_ok = False
    return {
        "ok": db_ok and rpc_ok,
        "service": "scratch-your-card",
        "db_ok": db_ok,
        "rpc_ok": rpc_ok,
        "block": block,
        "ts": time.time(),
        "version": VERSION,
    }

# =========================================================
# Endpoints — Transaction log
# =========================================================
@app.post(f"{API}/transactions")
async def post_transaction(payload: dict, conn: aiosqlite.Connection = Depends(get_db)):
    """Upsert one scratch/claim event reported by the client (keyed by tx hash)."""
    try:
        await txlog.record_transaction(conn, payload)
    except ScratchError:
        raise
    except Exception as e:
        print("[transactions] store error:", e, flush=True)
        traceback.print_exc()
        raise StoreUnavailable("Failed to store transaction") from e
    return {"ok": True}

# =========================================================
# Endpoints — Leaderboard / Profile
# =========================================================
@app.get(f"{API}/leaderboard")
async def get_leaderboard(
    page: Optional[str] = Query(None),
    pageSize: Optional[str] = Query(None),
    limit: Optional[str] = Query(None),
    conn: aiosqlite.Connection = Depends(get_db),
):
    p, size = lb.parse_page_params(page, pageSize, limit)
    try:
        data = await lb.leaderboard(conn, p, size)
    except ScratchError:
        raise
    except Exception as e:
        print("[leaderboard] DB error:", e, flush=True)
        traceback.print_exc()
        raise StoreUnavailable("Failed to fetch leaderboard") from e
    return {"ok": True, **data}


@app.get(f"{API}/profile/{{address}}")
async def get_profile(address: str, conn: aiosqlite.Connection = Depends(get_db)):
    try:
        data = await lb.profile(conn, address)
    except ScratchError:
        raise
    except Exception as e:
        print("[profile] DB error for", address, ":", e, flush=True)
        traceback.print_exc()
        raise StoreUnavailable("Failed to fetch profile data") from e
    return {"ok": True, **data}

# =========================================================
# Endpoints — Game (on-chain reads)
# =========================================================
@app.get(f"{API}/game/state")
async def game_state(client: ScratchCardClient = Depends(get_contract)):
    """Price, balances and liability in one call; the independent reads run concurrently."""
    await asyncio.to_thread(client.ensure_deployed)
    price, pending, balance, owner, chain_id = await asyncio.gather(
        asyncio.to_thread(client.scratch_price),
        asyncio.to_thread(client.total_pending),
        asyncio.to_thread(client.contract_balance),
        asyncio.to_thread(client.owner),
        asyncio.to_thread(client.chain_id),
    )
    return {
        "ok": True,
        "contractAddress": client.address,
        "chainId": chain_id,
        "owner": owner,
        "scratchPriceWei": str(price),
        "contractBalanceWei": str(balance),
        "totalPendingWei": str(pending),
        "availableLiquidityWei": str(balance - pending if balance > pending else 0),
    }


@app.get(f"{API}/game/players/{{address}}")
async def game_player(address: str, client: ScratchCardClient = Depends(get_contract)):
    wallet = lb.normalize_address(address)
    status, stats = await asyncio.gather(
        asyncio.to_thread(client.claim_status, wallet),
        asyncio.to_thread(client.player_stats, wallet),
    )
    return {"ok": True, "player": wallet, "claimStatus": status.to_dict(), "stats": stats}

# =========================================================
# Endpoints — Admin batch run
# =========================================================
@app.post(f"{API}/admin/batch")
async def admin_batch(
    payload: dict,
    client: ScratchCardClient = Depends(get_contract),
):
    """
    Owner-signed batch scratch run. Blocks until the whole run finishes;
    runs in a worker thread with its own sqlite3 connection. The admin key
    is loaded only after the requester passes authentication.
    """
    def _run():
        conn = dbmod.connect_sync(settings.DB_PATH)
        try:
            return batchmod.execute_batch(
                payload,
                client=client,
                admin_account=load_admin_account,
                record_transaction=partial(txlog.record_transaction_sync, conn),
            )
        finally:
            conn.close()

    result = await run_in_threadpool(_run)
    return {"ok": True, "result": result}
