# cli.py
"""
Scratch Your Card — operator CLI.

  python cli.py status
  python cli.py claim-status 0xPLAYER
  python cli.py scratch [--value 0.001]     # ETH, defaults to the on-chain price
  python cli.py claim [0.002]               # ETH, defaults to everything claimable
  python cli.py smoke                       # scratch, read claim status, claim if owed
  python cli.py set-price 0.001            # ETH, owner key required
  python cli.py withdraw-profit 0.5        # ETH, owner key required
  python cli.py batch --wallets 3 --rounds 5 [--save-wallets]

Player actions sign with PLAYER_PRIVATE_KEY, falling back to the admin key.
Owner actions sign with BATCH_ADMIN_PRIVATE_KEY (or ADMIN_PRIVATE_KEY).
The batch command signs its own request with that key, so it only passes
authentication when the key belongs to the contract owner.
"""

from __future__ import annotations
import argparse
import json
import sys
from decimal import Decimal, InvalidOperation
from functools import partial
from typing import Any, Dict, List, Optional

from eth_account.signers.local import LocalAccount
from web3 import Web3

from config import settings
import db as dbmod
import batch as batchmod
import leaderboard as lb
import transaction_log as txlog
from contract import ScratchCardClient, load_account
from errors import BatchAborted, ConfigurationError, ScratchError


def _eth_to_wei(raw: str) -> int:
    try:
        amount = Decimal(raw)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"not an ETH amount: {raw!r}") from None
    if amount < 0:
        raise argparse.ArgumentTypeError("ETH amount must be >= 0")
    return int(Web3.to_wei(amount, "ether"))


def _admin() -> LocalAccount:
    key = settings.admin_private_key
    if not key:
        raise ConfigurationError("Server missing BATCH_ADMIN_PRIVATE_KEY or ADMIN_PRIVATE_KEY")
    try:
        return load_account(key)
    except ValueError as e:
        raise ConfigurationError("BATCH_ADMIN_PRIVATE_KEY is not a valid private key") from e


def _player() -> LocalAccount:
    key = settings.player_private_key
    if not key:
        raise ConfigurationError("Missing PLAYER_PRIVATE_KEY (or an admin key to fall back on)")
    try:
        return load_account(key)
    except ValueError as e:
        raise ConfigurationError("PLAYER_PRIVATE_KEY is not a valid private key") from e


def _print(data: Dict[str, Any]) -> None:
    print(json.dumps(data, indent=2, default=str), flush=True)

# =========================================================
# Commands
# =========================================================
def cmd_status(client: ScratchCardClient, args: argparse.Namespace) -> Dict[str, Any]:
    client.ensure_deployed()
    balance = client.contract_balance()
    pending = client.total_pending()
    return {
        "network": client.network_name(),
        "chainId": client.chain_id(),
        "contractAddress": client.address,
        "owner": client.owner(),
        "scratchPriceWei": str(client.scratch_price()),
        "contractBalanceWei": str(balance),
        "totalPendingWei": str(pending),
        "availableLiquidityWei": str(balance - pending if balance > pending else 0),
    }


def cmd_claim_status(client: ScratchCardClient, args: argparse.Namespace) -> Dict[str, Any]:
    player = lb.normalize_address(args.player)
    return {"player": player, **client.claim_status(player).to_dict()}


def _scratch(client: ScratchCardClient, player: LocalAccount, value: Optional[int]) -> Dict[str, Any]:
    tx_hash = client.scratch(player, value)
    receipt = client.wait_for_receipt(tx_hash)
    reward = client.scratch_reward_from_receipt(receipt)
    return {
        "txHash": tx_hash,
        "status": int(receipt["status"]),
        "blockNumber": int(receipt["blockNumber"]),
        "rewardWei": str(reward),
    }


def _claim(client: ScratchCardClient, player: LocalAccount, amount: Optional[int]) -> Dict[str, Any]:
    if amount is None:
        amount = client.claim_status(player.address).claimable
    if amount <= 0:
        raise ValueError("Nothing to claim")
    tx_hash = client.claim(player, amount)
    receipt = client.wait_for_receipt(tx_hash)
    return {"txHash": tx_hash, "status": int(receipt["status"]), "amountWei": str(amount)}


def cmd_scratch(client: ScratchCardClient, args: argparse.Namespace) -> Dict[str, Any]:
    player = _player()
    out = _scratch(client, player, args.value)
    out["claimStatus"] = client.claim_status(player.address).to_dict()
    return out


def cmd_claim(client: ScratchCardClient, args: argparse.Namespace) -> Dict[str, Any]:
    return _claim(client, _player(), args.amount)


def cmd_smoke(client: ScratchCardClient, args: argparse.Namespace) -> Dict[str, Any]:
    """One scratch, then claim whatever the contract reports as claimable."""
    player = _player()
    client.ensure_deployed()
    scratch = _scratch(client, player, None)
    status = client.claim_status(player.address)
    return {
        "player": player.address,
        "scratch": scratch,
        "claimStatus": status.to_dict(),
        "claim": _claim(client, player, status.claimable) if status.claimable > 0 else None,
    }


def cmd_set_price(client: ScratchCardClient, args: argparse.Namespace) -> Dict[str, Any]:
    tx_hash = client.set_price(_admin(), args.price)
    client.wait_for_receipt(tx_hash)
    return {"txHash": tx_hash, "scratchPriceWei": str(args.price)}


def cmd_withdraw_profit(client: ScratchCardClient, args: argparse.Namespace) -> Dict[str, Any]:
    available = client.available_liquidity()
    if args.amount > available:
        raise ValueError(
            f"Withdraw of {args.amount} wei exceeds available liquidity ({available} wei)"
        )
    tx_hash = client.withdraw_profit(_admin(), args.amount)
    client.wait_for_receipt(tx_hash)
    return {"txHash": tx_hash, "amountWei": str(args.amount)}


def cmd_batch(client: ScratchCardClient, args: argparse.Namespace) -> Dict[str, Any]:
    admin = _admin()
    options: Dict[str, Any] = {}
    if args.wallets is not None:
        options["walletCount"] = args.wallets
    if args.rounds is not None:
        options["maxRoundsPerWallet"] = args.rounds
    if args.save_wallets:
        options["saveWallets"] = True

    body = batchmod.sign_batch_request(admin, client.address, options)
    conn = dbmod.connect_sync(args.db or settings.DB_PATH)
    try:
        return batchmod.execute_batch(
            body,
            client=client,
            admin_account=admin,
            record_transaction=partial(txlog.record_transaction_sync, conn),
        )
    finally:
        conn.close()

# =========================================================
# Entry
# =========================================================
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="scratch-card", description="Scratch Your Card operator tools")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("status", help="contract price, balances and owner")
    p.set_defaults(func=cmd_status)

    p = sub.add_parser("claim-status", help="on-chain claim status of one player")
    p.add_argument("player")
    p.set_defaults(func=cmd_claim_status)

    p = sub.add_parser("scratch", help="player: pay for one scratch and print the reward")
    p.add_argument("--value", type=_eth_to_wei, default=None, help="ETH sent (defaults to the price)")
    p.set_defaults(func=cmd_scratch)

    p = sub.add_parser("claim", help="player: claim rewards (ETH, defaults to all claimable)")
    p.add_argument("amount", type=_eth_to_wei, nargs="?", default=None)
    p.set_defaults(func=cmd_claim)

    p = sub.add_parser("smoke", help="player: scratch, read claim status, claim if owed")
    p.set_defaults(func=cmd_smoke)

    p = sub.add_parser("set-price",help="owner: set the scratch price (ETH)")
    p.add_argument("price", type=_eth_to_wei)
    p.set_defaults(func=cmd_set_price)

    p = sub.add_parser("withdraw-profit", help="owner: withdraw surplus above pending rewards (ETH)")
    p.add_argument("amount", type=_eth_to_wei)
    p.set_defaults(func=cmd_withdraw_profit)

    p = sub.add_parser("batch", help="owner: run a signed batch scratch run")
    p.add_argument("--wallets", type=int, default=None)
    p.add_argument("--rounds", type=int, default=None)
    p.add_argument("--save-wallets", action="store_true")
    p.add_argument("--db", default=None, help="SQLite path (defaults to DB_PATH)")
    p.set_defaults(func=cmd_batch)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    client = ScratchCardClient.from_settings(settings)
    try:
        _print(args.func(client, args))
    except BatchAborted as e:
        print(f"error: {e.message}", file=sys.stderr, flush=True)
        _print({"partial": e.partial})
        return 1
    except (ScratchError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr, flush=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
