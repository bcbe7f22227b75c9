# contract.py
"""
Scratch Your Card — on-chain game contract client.

Thin facade over web3.py for the ScratchCardGameFHE contract: reads (price,
balances, claim status, events) and signed writes (scratch, claim, owner
price/withdraw, plain transfers). Writes return the tx hash as soon as the node
accepts the transaction; wait_for_receipt() is the separate "confirmed" step.
"""

from __future__ import annotations
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import Timeout as RequestsTimeout
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception
from web3.logs import DISCARD

from config import settings
from errors import (
    AuthorizationFailed,
    ChainError,
    ChainUnavailable,
    ContractNotDeployed,
    ScratchError,
    TransactionReverted,
)

# Minimal ABI for ScratchCardGameFHE
SCRATCH_CARD_ABI: List[Dict[str, Any]] = [
    {"type": "error", "name": "ZamaProtocolUnsupported", "inputs": []},
    {
        "type": "event",
        "name": "OwnerWithdraw",
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "owner", "type": "address"},
            {"indexed": False, "name": "amount", "type": "uint256"},
        ],
    },
    {
        "type": "event",
        "name": "RewardsClaimed",
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "player", "type": "address"},
            {"indexed": False, "name": "amount", "type": "uint256"},
        ],
    },
    {
        "type": "event",
        "name": "ScratchPlayed",
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "player", "type": "address"},
            {"indexed": False, "name": "reward", "type": "uint128"},
            {"indexed": False, "name": "claimableAfter", "type": "uint128"},
        ],
    },
    {
        "type": "function",
        "name": "owner",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "address"}],
    },
    {
        "type": "function",
        "name": "scratchPrice",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "totalPendingPlain",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "getClaimStatus",
        "stateMutability": "view",
        "inputs": [{"name": "player", "type": "address"}],
        "outputs": [
            {"name": "claimable", "type": "uint128"},
            {"name": "claimed", "type": "uint128"},
            {"name": "lastReward", "type": "uint128"},
        ],
    },
    {
        "type": "function",
        "name": "scratchCard",
        "stateMutability": "payable",
        "inputs": [],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "claimRewards",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "amount", "type": "uint128"}],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "setScratchPrice",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "newPrice", "type": "uint256"}],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "withdrawProfit",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "amount", "type": "uint256"}],
        "outputs": [],
    },
]

CHAIN_NAMES = {1: "mainnet", 11155111: "sepolia", 31337: "hardhat"}
NATIVE_TRANSFER_GAS = 21_000
MAX_UINT128 = (1 << 128) - 1

# 4-byte custom error selectors the game contract is known to revert with
KNOWN_REVERTS = {
    "0x9de3392c": (
        "This contract rejected the scratch for the current protocol/network setup. "
        "Verify SCRATCH_CARD_CONTRACT points to the latest deployed game contract."
    ),
    "0x73cac13b": "Zama protocol is unsupported on this contract deployment.",
}


@dataclass(frozen=True)
class ClaimStatus:
    claimable: int
    claimed: int
    last_reward: int

    def to_dict(self) -> Dict[str, str]:
        return {
            "claimableWei": str(self.claimable),
            "claimedWei": str(self.claimed),
            "lastRewardWei": str(self.last_reward),
        }


@dataclass(frozen=True)
class GameEvent:
    name: str
    player: str
    amount: int
    tx_hash: str
    block_number: int

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["amount"] = str(self.amount)
        return d


# =========================================================
# Helpers
# =========================================================
def revert_selector(data: Any) -> Optional[str]:
    if not isinstance(data, str) or not data.startswith("0x") or len(data) < 10:
        return None
    return data[:10].lower()


def describe_revert(data: Any, fallback: Optional[str]) -> str:
    """Human guidance for known custom errors, else the node's short message."""
    selector = revert_selector(data)
    if selector in KNOWN_REVERTS:
        return KNOWN_REVERTS[selector]
    return fallback or "On-chain transaction failed"


def load_account(private_key: Optional[str]) -> LocalAccount:
    """Hex private key (with or without 0x) -> signing account. Never echoes the key."""
    key = (private_key or "").strip()
    if not key:
        raise ValueError("Empty private key provided")
    if not key.startswith("0x"):
        key = "0x" + key
    try:
        return Account.from_key(key)
    except Exception as e:
        raise ValueError(f"Could not load private key ({type(e).__name__})") from None


@contextmanager
def _rpc_errors(action: str):
    """Translate web3/requests failures into the chain error taxonomy."""
    try:
        yield
    except ScratchError:
        raise
    except ContractLogicError as e:
        data = getattr(e, "data", None)
        message = getattr(e, "message", None) or str(e)
        raise TransactionReverted(describe_revert(data, message), selector=revert_selector(data)) from e
    except TimeExhausted as e:
        raise ChainError(f"Timed out waiting for {action}") from e
    except (RequestsConnectionError, RequestsTimeout, ConnectionError) as e:
        raise ChainUnavailable(f"RPC unreachable during {action}: {e}") from e
    except Web3Exception as e:
        raise ChainError(f"{action} failed: {e}") from e


# =========================================================
# Client
# =========================================================
class ScratchCardClient:
    def __init__(
        self,
        w3: Web3,
        contract_address: str,
        receipt_timeout: int = 180,
        lookback_blocks: int = 120_000,
    ):
        self.w3 = w3
        self.address = Web3.to_checksum_address(contract_address)
        self.contract = w3.eth.contract(address=self.address, abi=SCRATCH_CARD_ABI)
        self.receipt_timeout = receipt_timeout
        self.lookback_blocks = lookback_blocks
        self._chain_id: Optional[int] = None

    @classmethod
    def from_settings(cls, cfg=settings) -> "ScratchCardClient":
        w3 = Web3(Web3.HTTPProvider(cfg.RPC_URL, request_kwargs={"timeout": 30}))
        return cls(
            w3,
            cfg.SCRATCH_CARD_CONTRACT,
            receipt_timeout=cfg.TX_RECEIPT_TIMEOUT,
            lookback_blocks=cfg.EVENT_LOOKBACK_BLOCKS,
        )

    # ---------------- network ----------------
    def chain_id(self) -> int:
        if self._chain_id is None:
            with _rpc_errors("chain id lookup"):
                self._chain_id = int(self.w3.eth.chain_id)
        return self._chain_id

    def network_name(self) -> str:
        return CHAIN_NAMES.get(self.chain_id(), "unknown")

    def block_number(self) -> int:
        with _rpc_errors("block number lookup"):
            return int(self.w3.eth.block_number)

    def gas_price(self) -> int:
        with _rpc_errors("gas price lookup"):
            return int(self.w3.eth.gas_price)

    def balance_of(self, address: str) -> int:
        with _rpc_errors("balance lookup"):
            return int(self.w3.eth.get_balance(Web3.to_checksum_address(address)))

    def ensure_deployed(self) -> None:
        with _rpc_errors("bytecode lookup"):
            code = self.w3.eth.get_code(self.address)
        if len(code) == 0:
            raise ContractNotDeployed(
                f"No contract found at {self.address}. Set SCRATCH_CARD_CONTRACT."
            )

    # ---------------- reads ----------------
    def scratch_price(self) -> int:
        with _rpc_errors("scratchPrice"):
            return int(self.contract.functions.scratchPrice().call())

    def total_pending(self) -> int:
        """Reward liability owed to all players and not yet claimed."""
        with _rpc_errors("totalPendingPlain"):
            return int(self.contract.functions.totalPendingPlain().call())

    def owner(self) -> str:
        with _rpc_errors("owner"):
            return str(self.contract.functions.owner().call())

    def contract_balance(self) -> int:
        return self.balance_of(self.address)

    def available_liquidity(self) -> int:
        balance = self.contract_balance()
        pending = self.total_pending()
        return balance - pending if balance > pending else 0

    def claim_status(self, player: str) -> ClaimStatus:
        with _rpc_errors("getClaimStatus"):
            claimable, claimed, last_reward = self.contract.functions.getClaimStatus(
                Web3.to_checksum_address(player)
            ).call()
        return ClaimStatus(int(claimable), int(claimed), int(last_reward))

    # ---------------- events ----------------
    def recent_from_block(self, span: Optional[int] = None) -> int:
        span = self.lookback_blocks if span is None else span
        return max(0, self.block_number() - span)

    def _events(self, name: str, amount_arg: str, player: str, from_block: int, to_block: Any) -> List[GameEvent]:
        event = getattr(self.contract.events, name)()
        with _rpc_errors(f"{name} log query"):
            logs = event.get_logs(
                argument_filters={"player": Web3.to_checksum_address(player)},
                from_block=from_block,
                to_block=to_block,
            )
        return [
            GameEvent(
                name=name,
                player=str(log["args"]["player"]).lower(),
                amount=int(log["args"][amount_arg]),
                tx_hash=Web3.to_hex(log["transactionHash"]),
                block_number=int(log["blockNumber"]),
            )
            for log in logs
        ]

    def scratch_events(self, player: str, from_block: int, to_block: Any = "latest") -> List[GameEvent]:
        return self._events("ScratchPlayed", "reward", player, from_block, to_block)

    def claim_events(self, player: str, from_block: int, to_block: Any = "latest") -> List[GameEvent]:
        return self._events("RewardsClaimed", "amount", player, from_block, to_block)

    def player_stats(self, player: str) -> Dict[str, Any]:
        """Event-derived totals over the recent block span."""
        from_block = self.recent_from_block()
        scratches = self.scratch_events(player, from_block)
        claims = self.claim_events(player, from_block)
        return {
            "fromBlock": from_block,
            "totalRewardedWei": str(sum(e.amount for e in scratches)),
            "scratches": len(scratches),
            "totalClaimedWei": str(sum(e.amount for e in claims)),
        }

    def scratch_reward_from_receipt(self, receipt: Any) -> int:
        """Reward from the ScratchPlayed log in a receipt; 0 when the log is absent."""
        for ev in self.contract.events.ScratchPlayed().process_receipt(receipt, errors=DISCARD):
            return int(ev["args"]["reward"])
        return 0

    def wait_for_rewards_claimed(
        self,
        player: str,
        from_block: int,
        polls: int,
        poll_ms: int,
        sleep: Callable[[float], None] = time.sleep,
    ) -> Optional[GameEvent]:
        """
        Poll for a RewardsClaimed log at a fixed interval, at most `polls` times.
        Returns the newest event, or None when nothing was observed yet
        (None means "unknown", not "did not happen").
        """
        for attempt in range(max(polls, 0)):
            latest = self.block_number()
            events = self.claim_events(player, from_block, latest)
            if events:
                return events[-1]
            if attempt < polls - 1:
                sleep(poll_ms / 1000.0)
        return None

    # ---------------- writes ----------------
    def _send(
        self,
        account: LocalAccount,
        call: Any = None,
        *,
        to: Optional[str] = None,
        value: int = 0,
        action: str = "transaction",
    ) -> str:
        with _rpc_errors(action):
            params = {
                "from": account.address,
                "value": int(value),
                "nonce": self.w3.eth.get_transaction_count(account.address, "pending"),
                "chainId": self.chain_id(),
            }
            if call is not None:
                tx = call.build_transaction(params)
            else:
                tx = dict(
                    params,
                    to=Web3.to_checksum_address(to),
                    gas=NATIVE_TRANSFER_GAS,
                    gasPrice=self.w3.eth.gas_price,
                )
            signed = account.sign_transaction(tx)
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        tx_hex = Web3.to_hex(tx_hash)
        print(f"[contract] {action} submitted from={account.address} tx={tx_hex}", flush=True)
        return tx_hex

    def _require_owner(self, account: LocalAccount, action: str) -> None:
        owner = self.owner()
        if owner.lower() != account.address.lower():
            raise AuthorizationFailed(f"{action} is restricted to the contract owner ({owner})")

    def scratch(self, account: LocalAccount, value: Optional[int] = None) -> str:
        """Pay for one scratch; defaults to the current on-chain price."""
        if value is None:
            value = self.scratch_price()
        return self._send(account, self.contract.functions.scratchCard(), value=value, action="scratchCard")

    def claim(self, account: LocalAccount, amount: int) -> str:
        if amount <= 0:
            raise ValueError("claim amount must be > 0")
        if amount > MAX_UINT128:
            raise ValueError("claim amount exceeds uint128")
        return self._send(account, self.contract.functions.claimRewards(int(amount)), action="claimRewards")

    def set_price(self, account: LocalAccount, price: int) -> str:
        if price < 0:
            raise ValueError("price must be >= 0")
        self._require_owner(account, "setScratchPrice")
        return self._send(account, self.contract.functions.setScratchPrice(int(price)), action="setScratchPrice")

    def withdraw_profit(self, account: LocalAccount, amount: int) -> str:
        if amount <= 0:
            raise ValueError("withdraw amount must be > 0")
        self._require_owner(account, "withdrawProfit")
        return self._send(account, self.contract.functions.withdrawProfit(int(amount)), action="withdrawProfit")

    def transfer(self, account: LocalAccount, to: str, value: int) -> str:
        """Plain native-currency transfer (used to fund batch wallets)."""
        return self._send(account, to=to, value=value, action="transfer")

    # ---------------- confirmation ----------------
    def _replay_reason(self, tx_hash: str, block_number: int) -> Optional[str]:
        """Re-run a failed tx as eth_call at its block to recover the revert reason."""
        try:
            sent = self.w3.eth.get_transaction(tx_hash)
            self.w3.eth.call(
                {
                    "from": sent["from"],
                    "to": sent["to"],
                    "data": sent["input"],
                    "value": sent["value"],
                },
                block_identifier=block_number,
            )
        except ContractLogicError as e:
            return describe_revert(getattr(e, "data", None), getattr(e, "message", None) or str(e))
        except Web3Exception as e:
            print(f"[contract] could not replay {tx_hash}: {e}", flush=True)
        return None

    def wait_for_receipt(self, tx_hash: str, timeout: Optional[int] = None) -> Any:
        """Block until the tx is mined; raises TransactionReverted when status != 1."""
        with _rpc_errors(f"receipt of {tx_hash}"):
            receipt = self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=timeout or self.receipt_timeout
            )
        if receipt.get("status") != 1:
            reason = self._replay_reason(tx_hash, int(receipt["blockNumber"]))
            raise TransactionReverted(reason or f"Transaction {tx_hash} reverted on-chain", tx_hash=tx_hash)
        return receipt
