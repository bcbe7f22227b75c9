"""
Pytest fixtures for Scratch Your Card tests. Uses a temporary SQLite DB and an
in-memory stand-in for the on-chain contract client.
"""

from __future__ import annotations

import itertools
from types import SimpleNamespace

import pytest
from eth_account import Account
from web3 import Web3

from contract import ClaimStatus, GameEvent, NATIVE_TRANSFER_GAS
from errors import TransactionReverted

CONTRACT_ADDRESS = "0x91d1c6Aba776e827C0cA34627AE5cA1931855717"
OWNER_KEY = "0x" + "11" * 32
OTHER_KEY = "0x" + "22" * 32
NOW_MS = 1_760_000_000_000


class FakeScratchCard:
    """
    Game contract double: balances per address, a fixed reward per scratch,
    and instant receipts. Gas is charged per transaction at `gas_cost`.
    """

    def __init__(self, owner, price=10**15, reward=0, gas_price=10**9, gas_cost=10**12):
        self.address = Web3.to_checksum_address(CONTRACT_ADDRESS)
        self._owner = Web3.to_checksum_address(owner)
        self.price = price
        self.reward = reward
        self._gas_price = gas_price
        self.gas_cost = gas_cost
        self.balances = {}
        self.claimable = {}
        self.claimed = {}
        self.observe_claims = True
        self.fail_scratch_for = set()
        self.sent = []
        self._ids = itertools.count(1)

    # ---- helpers ----
    def fund(self, address, amount):
        key = address.lower()
        self.balances[key] = self.balances.get(key, 0) + amount

    def _hash(self):
        return "0x" + format(next(self._ids), "064x")

    def _debit(self, address, amount):
        key = address.lower()
        if self.balances.get(key, 0) < amount:
            raise TransactionReverted("insufficient funds for gas * price + value")
        self.balances[key] -= amount

    # ---- network ----
    def chain_id(self):
        return 11155111

    def network_name(self):
        return "sepolia"

    def block_number(self):
        return 100

    def gas_price(self):
        return self._gas_price

    def balance_of(self, address):
        return self.balances.get(address.lower(), 0)

    def ensure_deployed(self):
        return None

    # ---- reads ----
    def owner(self):
        return self._owner

    def scratch_price(self):
        return self.price

    def total_pending(self):
        return sum(self.claimable.values())

    def contract_balance(self):
        return self.balance_of(self.address)

    def available_liquidity(self):
        return max(self.contract_balance() - self.total_pending(), 0)

    def claim_status(self, player):
        key = player.lower()
        return ClaimStatus(self.claimable.get(key, 0), self.claimed.get(key, 0), self.reward)

    def player_stats(self, player):
        return {"fromBlock": 0, "totalRewardedWei": "0", "scratches": 0, "totalClaimedWei": "0"}

    def scratch_reward_from_receipt(self, receipt):
        return receipt.get("reward", 0)

    def wait_for_rewards_claimed(self, player, from_block, polls, poll_ms, sleep=None):
        if not self.observe_claims:
            return None
        return GameEvent("RewardsClaimed", player.lower(), self.claimed.get(player.lower(), 0), "0x", from_block)

    # ---- writes ----
    def transfer(self, account, to, value):
        self._debit(account.address, value + NATIVE_TRANSFER_GAS * self._gas_price)
        self.fund(to, value)
        tx_hash = self._hash()
        self.sent.append(("transfer", to, value, tx_hash))
        return tx_hash

    def scratch(self, account, value=None):
        if account.address in self.fail_scratch_for:
            raise TransactionReverted("Zama protocol is unsupported on this contract deployment.")
        value = self.price if value is None else value
        self._debit(account.address, value + self.gas_cost)
        self.fund(self.address, value)
        key = account.address.lower()
        self.claimable[key] = self.claimable.get(key, 0) + self.reward
        tx_hash = self._hash()
        self.sent.append(("scratch", account.address, value, tx_hash))
        return tx_hash

    def claim(self, account, amount):
        key = account.address.lower()
        self._debit(account.address, self.gas_cost)
        self.claimable[key] -= amount
        self.claimed[key] = self.claimed.get(key, 0) + amount
        pool = self.address.lower()
        self.balances[pool] = self.balances.get(pool, 0) - amount
        self.fund(account.address, amount)
        tx_hash = self._hash()
        self.sent.append(("claim", account.address, amount, tx_hash))
        return tx_hash

    def wait_for_receipt(self, tx_hash, timeout=None):
        kind = next(s[0] for s in self.sent if s[3] == tx_hash)
        receipt = {"status": 1, "blockNumber": 100, "transactionHash": tx_hash}
        if kind == "scratch":
            receipt["reward"] = self.reward
        return receipt


def make_cfg(**overrides):
    """Settings stand-in carrying wei amounts directly."""
    base = dict(
        BATCH_WALLET_COUNT=2,
        BATCH_MAX_ROUNDS_PER_WALLET=3,
        BATCH_REACTIVITY_POLLS=2,
        BATCH_REACTIVITY_POLL_MS=1,
        BATCH_SAVE_WALLETS=False,
        fund_per_wallet_wei=10**16,
        gas_reserve_wei=10**14,
    )
    base.update(overrides)
    return SimpleNamespace(**base)


@pytest.fixture
def owner_account():
    return Account.from_key(OWNER_KEY)


@pytest.fixture
def other_account():
    return Account.from_key(OTHER_KEY)


@pytest.fixture
def fake_contract(owner_account):
    fake = FakeScratchCard(owner=owner_account.address)
    fake.fund(owner_account.address, 10**20)
    return fake


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    """Point the app at a temporary SQLite file."""
    from config import settings

    path = str(tmp_path / "scratch.db")
    monkeypatch.setattr(settings, "DB_PATH", path)
    return path


@pytest.fixture
def client(db_path):
    """FastAPI TestClient with startup/shutdown run against the temp DB."""
    from fastapi.testclient import TestClient

    from main import app

    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
