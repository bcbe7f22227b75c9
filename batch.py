# batch.py
"""
Scratch Your Card — admin batch scratch run.

One run, strictly sequential:
  authenticate -> provision wallets -> fund each (confirmed one by one)
  -> per wallet: scratch / claim rounds until the balance floor or round cap
  -> summary.

Only the contract owner may start a run, proven by an EIP-191 signature over a
canonical message rather than by a session. Every scratch and claim is logged
through the transaction log. Nothing is retried; a failed run is re-invoked
from scratch with fresh wallets.
"""

from __future__ import annotations
import math
import threading
import time
import traceback
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from web3 import Web3

from config import settings
from contract import NATIVE_TRANSFER_GAS, ScratchCardClient
from errors import (
    AuthorizationFailed,
    BatchAborted,
    BatchPreconditionFailed,
    ConfigurationError,
    ScratchError,
    ValidationFailed,
)

MAX_REQUEST_AGE_MS = 5 * 60 * 1000
SIGNATURE_TITLE = "scratch-your-card admin batch run"

RecordFn = Callable[[Mapping[str, Any]], Any]
AdminSource = Union[LocalAccount, Callable[[], Optional[LocalAccount]], None]

# One run per process: every run signs funding transfers with the same admin nonce sequence
_RUN_LOCK = threading.Lock()


@dataclass(frozen=True)
class BatchOptions:
    wallet_count: int
    max_rounds_per_wallet: int
    reactivity_polls: int
    reactivity_poll_ms: int
    save_wallets: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "walletCount": self.wallet_count,
            "maxRoundsPerWallet": self.max_rounds_per_wallet,
            "reactivityPolls": self.reactivity_polls,
            "reactivityPollMs": self.reactivity_poll_ms,
            "saveWallets": self.save_wallets,
        }


@dataclass(frozen=True)
class BatchRunRequest:
    requester: str          # lowercase
    requested_at: float     # epoch milliseconds
    signature: str
    options: BatchOptions


@dataclass
class WalletSummary:
    wallet_address: str
    rounds: int = 0
    spent_wei: int = 0
    claimed_wei: int = 0
    unobserved_claims: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "walletAddress": self.wallet_address,
            "rounds": self.rounds,
            "spentWei": str(self.spent_wei),
            "claimedWei": str(self.claimed_wei),
            "unobservedClaims": self.unobserved_claims,
        }


@dataclass
class _RunState:
    options: BatchOptions
    network: str = ""
    chain_id: int = 0
    admin_wallet: str = ""
    contract_address: str = ""
    fund_per_wallet: int = 0
    gas_reserve: int = 0
    scratch_price: int = 0
    wallets: List[LocalAccount] = field(default_factory=list)
    funded: List[Dict[str, str]] = field(default_factory=list)
    summaries: List[WalletSummary] = field(default_factory=list)

    def summary(self) -> Dict[str, Any]:
        scratches = sum(s.rounds for s in self.summaries)
        spent = sum(s.spent_wei for s in self.summaries)
        claimed = sum(s.claimed_wei for s in self.summaries)
        out: Dict[str, Any] = {
            "network": self.network,
            "chainId": self.chain_id,
            "adminWallet": self.admin_wallet,
            "contractAddress": self.contract_address,
            "options": self.options.to_dict(),
            "walletCount": self.options.wallet_count,
            "maxRoundsPerWallet": self.options.max_rounds_per_wallet,
            "fundPerWalletWei": str(self.fund_per_wallet),
            "gasReserveWei": str(self.gas_reserve),
            "scratchPriceWei": str(self.scratch_price),
            "totalScratches": scratches,
            "totalSpentWei": str(spent),
            "totalClaimsWei": str(claimed),
            "netWei": str(claimed - spent),
            "fundedWallets": list(self.funded),
            "walletSummaries": [s.to_dict() for s in self.summaries],
        }
        if self.options.save_wallets:
            out["generatedWallets"] = [
                {"index": i + 1, "address": w.address, "privateKey": Web3.to_hex(w.key)}
                for i, w in enumerate(self.wallets)
            ]
        return out


# =========================================================
# Request parsing
# =========================================================
def _positive_int(value: Any, fallback: int) -> int:
    if value is None or isinstance(value, bool):
        return fallback
    try:
        n = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(n) or not n.is_integer() or n <= 0:
        return fallback
    return int(n)


def normalize_options(raw: Optional[Mapping[str, Any]], cfg=settings) -> BatchOptions:
    """
    Each option falls back to its configured default when absent or invalid:
    counts must be positive integers, saveWallets must be a JSON boolean.
    """
    raw = raw if isinstance(raw, Mapping) else {}
    save = raw.get("saveWallets")
    return BatchOptions(
        wallet_count=_positive_int(raw.get("walletCount"), _positive_int(cfg.BATCH_WALLET_COUNT, 5)),
        max_rounds_per_wallet=_positive_int(
            raw.get("maxRoundsPerWallet"), _positive_int(cfg.BATCH_MAX_ROUNDS_PER_WALLET, 10)
        ),
        reactivity_polls=_positive_int(raw.get("reactivityPolls"), _positive_int(cfg.BATCH_REACTIVITY_POLLS, 20)),
        reactivity_poll_ms=_positive_int(
            raw.get("reactivityPollMs"), _positive_int(cfg.BATCH_REACTIVITY_POLL_MS, 2000)
        ),
        save_wallets=save if isinstance(save, bool) else bool(cfg.BATCH_SAVE_WALLETS),
    )


def _format_ms(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else repr(float(value))


def build_signature_message(
    requester: str,
    requested_at: float,
    options: BatchOptions,
    contract_address: str,
) -> str:
    return "\n".join([
        SIGNATURE_TITLE,
        f"requester:{requester.lower()}",
        f"requestedAt:{_format_ms(requested_at)}",
        f"walletCount:{options.wallet_count}",
        f"maxRoundsPerWallet:{options.max_rounds_per_wallet}",
        f"reactivityPolls:{options.reactivity_polls}",
        f"reactivityPollMs:{options.reactivity_poll_ms}",
        f"saveWallets:{'true' if options.save_wallets else 'false'}",
        f"contract:{contract_address.lower()}",
    ])


def parse_batch_request(body: Any, cfg=settings) -> BatchRunRequest:
    body = body if isinstance(body, Mapping) else {}
    requester = str(body.get("requester") or "").strip().lower()
    signature = str(body.get("signature") or "").strip()
    try:
        requested_at = float(body.get("requestedAt"))
    except (TypeError, ValueError):
        requested_at = math.nan

    errors = []
    if not requester:
        errors.append("requester is required")
    if not math.isfinite(requested_at):
        errors.append("requestedAt must be a finite epoch-milliseconds number")
    if not signature:
        errors.append("signature is required")
    if errors:
        print("[batch] Invalid request payload", errors, flush=True)
        raise ValidationFailed("Missing requester, requestedAt, or signature", errors)

    return BatchRunRequest(
        requester=requester,
        requested_at=requested_at,
        signature=signature,
        options=normalize_options(body.get("options"), cfg),
    )


def recover_signer(message: str, signature: str) -> str:
    try:
        return Account.recover_message(encode_defunct(text=message), signature=signature).lower()
    except Exception as e:
        raise AuthorizationFailed("Signature verification failed") from e


def sign_batch_request(
    account: LocalAccount,
    contract_address: str,
    options: Optional[Mapping[str, Any]] = None,
    requested_at: Optional[int] = None,
    cfg=settings,
) -> Dict[str, Any]:
    """Build a signed request body the way the admin panel does (used by the CLI)."""
    requested_at = int(time.time() * 1000) if requested_at is None else requested_at
    normalized = normalize_options(options, cfg)
    message = build_signature_message(account.address, requested_at, normalized, contract_address)
    signed = Account.sign_message(encode_defunct(text=message), private_key=account.key)
    return {
        "requester": account.address,
        "requestedAt": requested_at,
        "signature": Web3.to_hex(signed.signature),
        "options": normalized.to_dict(),
    }

# =========================================================
# Stages
# =========================================================
def authenticate(request: BatchRunRequest, client: ScratchCardClient, now_ms: float) -> str:
    """Freshness, signature and on-chain ownership. Returns the owner (lowercase)."""
    if abs(now_ms - request.requested_at) > MAX_REQUEST_AGE_MS:
        print("[batch] Request expired", f"requestedAt={_format_ms(request.requested_at)}",
              f"now={_format_ms(now_ms)}", flush=True)
        raise AuthorizationFailed("Request expired. Please retry from admin panel.")

    message = build_signature_message(
        request.requester, request.requested_at, request.options, client.address
    )
    recovered = recover_signer(message, request.signature)
    if recovered != request.requester:
        print(f"[batch] Signature verification failed requester={request.requester} recovered={recovered}",
              flush=True)
        raise AuthorizationFailed("Signature verification failed")
    print("[batch] Signature verified", flush=True)

    client.ensure_deployed()
    owner = client.owner().lower()
    if owner != request.requester:
        print(f"[batch] Requester is not owner owner={owner} requester={request.requester}", flush=True)
        raise AuthorizationFailed("Admin action blocked: requester is not contract owner")
    print(f"[batch] Owner check passed owner={owner}", flush=True)
    return owner


def _provision(
    state: _RunState,
    client: ScratchCardClient,
    admin: LocalAccount,
    cfg,
    new_wallet: Callable[[], LocalAccount],
) -> None:
    opts = state.options
    state.admin_wallet = admin.address
    state.fund_per_wallet = cfg.fund_per_wallet_wei
    state.gas_reserve = cfg.gas_reserve_wei
    state.scratch_price = client.scratch_price()
    print(
        f"[batch] Config loaded contract={state.contract_address} "
        f"fundPerWallet={Web3.from_wei(state.fund_per_wallet, 'ether')} "
        f"gasReserve={Web3.from_wei(state.gas_reserve, 'ether')} "
        f"scratchPrice={Web3.from_wei(state.scratch_price, 'ether')}",
        flush=True,
    )

    state.wallets = [new_wallet() for _ in range(opts.wallet_count)]

    # funding transfers are plain 21k-gas sends; round gas comes out of each wallet's reserve
    funding_gas = NATIVE_TRANSFER_GAS * client.gas_price() * opts.wallet_count
    required = state.fund_per_wallet * opts.wallet_count + funding_gas
    admin_balance = client.balance_of(admin.address)
    if admin_balance < required:
        print(
            f"[batch] Insufficient admin balance adminWallet={admin.address} "
            f"balance={Web3.from_wei(admin_balance, 'ether')} required={Web3.from_wei(required, 'ether')}",
            flush=True,
        )
        raise BatchPreconditionFailed(
            f"Insufficient admin wallet balance. Need at least {Web3.from_wei(required, 'ether')} ETH "
            f"for funding (transfer gas included)."
        )

    state.chain_id = client.chain_id()
    state.network = client.network_name()
    print(f"[batch] Network ready network={state.network} chainId={state.chain_id} adminWallet={admin.address}",
          flush=True)


def _fund(state: _RunState, client: ScratchCardClient, admin: LocalAccount) -> None:
    total = len(state.wallets)
    print(f"[batch] Funding generated wallets walletCount={total}", flush=True)
    for i, wallet in enumerate(state.wallets):
        tx_hash = client.transfer(admin, wallet.address, state.fund_per_wallet)
        client.wait_for_receipt(tx_hash)
        state.funded.append({"address": wallet.address, "txHash": tx_hash})
        print(f"[batch] Funded {i + 1}/{total} wallet={wallet.address} tx={tx_hash}", flush=True)


def _log(record: RecordFn, state: _RunState, wallet: LocalAccount, tx_hash: str, action: str, amount: int) -> None:
    record({
        "walletAddress": wallet.address,
        "txHash": tx_hash,
        "action": action,
        "amountWei": str(amount),
        "contractAddress": state.contract_address,
        "chainId": state.chain_id,
    })


def _play_wallet(
    state: _RunState,
    summary: WalletSummary,
    wallet: LocalAccount,
    client: ScratchCardClient,
    record: RecordFn,
    sleep: Callable[[float], None],
) -> None:
    opts = state.options
    price = state.scratch_price
    floor = price + state.gas_reserve

    while summary.rounds < opts.max_rounds_per_wallet:
        balance = client.balance_of(wallet.address)
        if balance < floor:
            print(
                f"[batch] Wallet stopped (low balance) wallet={wallet.address} "
                f"balance={Web3.from_wei(balance, 'ether')} minRequired={Web3.from_wei(floor, 'ether')}",
                flush=True,
            )
            break

        scratch_hash = client.scratch(wallet, value=price)
        receipt = client.wait_for_receipt(scratch_hash)
        summary.rounds += 1
        summary.spent_wei += price
        print(f"[batch] Scratch confirmed wallet={wallet.address} round={summary.rounds} tx={scratch_hash}",
              flush=True)

        reward = client.scratch_reward_from_receipt(receipt)
        _log(record, state, wallet, scratch_hash, "scratch_reward", reward)

        claimable = client.claim_status(wallet.address).claimable
        if claimable > 0:
            claim_hash = client.claim(wallet, claimable)
            claim_receipt = client.wait_for_receipt(claim_hash)
            summary.claimed_wei += claimable
            _log(record, state, wallet, claim_hash, "claim", claimable)
            print(f"[batch] Claim logged wallet={wallet.address} tx={claim_hash} amountWei={claimable}", flush=True)

            settled = client.wait_for_rewards_claimed(
                wallet.address,
                int(claim_receipt["blockNumber"]),
                opts.reactivity_polls,
                opts.reactivity_poll_ms,
                sleep=sleep,
            )
            if settled is None:
                summary.unobserved_claims += 1
                print(f"[batch] RewardsClaimed not observed yet wallet={wallet.address} tx={claim_hash}",
                      flush=True)

        print(f"[batch] Round completed wallet={wallet.address} round={summary.rounds} rewardWei={reward}",
              flush=True)


# =========================================================
# Entry point
# =========================================================
def _resolve_admin(admin_account: AdminSource) -> LocalAccount:
    admin = admin_account() if callable(admin_account) else admin_account
    if admin is None:
        raise ConfigurationError("Server missing BATCH_ADMIN_PRIVATE_KEY or ADMIN_PRIVATE_KEY")
    return admin


def _run(
    request: BatchRunRequest,
    client: ScratchCardClient,
    admin: LocalAccount,
    record_transaction: RecordFn,
    cfg,
    new_wallet: Callable[[], LocalAccount],
    sleep: Callable[[float], None],
) -> Dict[str, Any]:
    state = _RunState(options=request.options, contract_address=client.address)
    _provision(state, client, admin, cfg, new_wallet)

    total = len(state.wallets)
    stage = "funding"
    try:
        _fund(state, client, admin)

        print("[batch] Starting scratch/claim loop", flush=True)
        for i, wallet in enumerate(state.wallets):
            stage = f"wallet {i + 1}/{total}"
            summary = WalletSummary(wallet_address=wallet.address)
            state.summaries.append(summary)
            print(f"[batch] Wallet {i + 1}/{total} started wallet={wallet.address}", flush=True)
            _play_wallet(state, summary, wallet, client, record_transaction, sleep)
            print(
                f"[batch] Wallet {i + 1} summary wallet={wallet.address} rounds={summary.rounds} "
                f"spentWei={summary.spent_wei} claimedWei={summary.claimed_wei}",
                flush=True,
            )
    except Exception as e:
        print(f"[batch] Run aborted during {stage}: {type(e).__name__}", flush=True)
        traceback.print_exc()
        if isinstance(e, ScratchError) and e.public:
            reason = e.message
        else:
            reason = f"{type(e).__name__} (see server logs)"
        raise BatchAborted(f"Batch aborted during {stage}: {reason}", partial=state.summary()) from e

    result = state.summary()
    print(
        f"[batch] Batch run complete wallets={total} scratches={result['totalScratches']} "
        f"spentWei={result['totalSpentWei']} claimsWei={result['totalClaimsWei']} netWei={result['netWei']}",
        flush=True,
    )
    return result


def execute_batch(
    body: Any,
    *,
    client: ScratchCardClient,
    admin_account: AdminSource,
    record_transaction: RecordFn,
    cfg=settings,
    now_ms: Optional[float] = None,
    new_wallet: Callable[[], LocalAccount] = Account.create,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, Any]:
    """
    Run one batch end to end. `admin_account` may be the signer itself or a
    zero-argument loader; a loader is only called after authentication.
    Raises BatchPreconditionFailed (409) while another run holds the lock.
    """
    print("[batch] Starting admin batch scratch run", flush=True)
    request = parse_batch_request(body, cfg)
    now_ms = time.time() * 1000 if now_ms is None else now_ms
    print(
        f"[batch] Request validated requester={request.requester} "
        f"walletCount={request.options.wallet_count} maxRoundsPerWallet={request.options.max_rounds_per_wallet}",
        flush=True,
    )

    authenticate(request, client, now_ms)
    admin = _resolve_admin(admin_account)

    if not _RUN_LOCK.acquire(blocking=False):
        print(f"[batch] Rejected: another run is in progress requester={request.requester}", flush=True)
        raise BatchPreconditionFailed("A batch run is already in progress")
    try:
        return _run(request, client, admin, record_transaction, cfg, new_wallet, sleep)
    finally:
        _RUN_LOCK.release()
