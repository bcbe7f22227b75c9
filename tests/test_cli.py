"""Operator CLI commands against the in-memory contract."""

from __future__ import annotations

import json

import pytest

import cli
from config import settings

from conftest import OTHER_KEY


@pytest.fixture
def run_cli(monkeypatch, capsys, fake_contract):
    monkeypatch.setattr(cli.ScratchCardClient, "from_settings", lambda *a, **k: fake_contract)
    monkeypatch.setattr(settings, "PLAYER_PRIVATE_KEY", OTHER_KEY)
    monkeypatch.setattr(settings, "BATCH_ADMIN_PRIVATE_KEY", None)
    monkeypatch.setattr(settings, "ADMIN_PRIVATE_KEY", None)

    def run(*argv):
        code = cli.main(list(argv))
        captured = capsys.readouterr()
        out = json.loads(captured.out) if code == 0 else None
        return code, out, captured.err

    return run


def test_scratch_prints_hash_status_and_reward(run_cli, fake_contract, other_account):
    fake_contract.reward = 7
    fake_contract.fund(other_account.address, 10**18)

    code, out, _ = run_cli("scratch")
    assert code == 0
    assert out["txHash"] == fake_contract.sent[-1][3]
    assert out["status"] == 1
    assert out["rewardWei"] == "7"
    assert out["claimStatus"]["claimableWei"] == "7"
    # default value is the on-chain price
    assert fake_contract.sent[-1][:3] == ("scratch", other_account.address, fake_contract.price)


def test_scratch_with_explicit_value(run_cli, fake_contract, other_account):
    fake_contract.fund(other_account.address, 10**18)
    code, _, _ = run_cli("scratch", "--value", "0.002")
    assert code == 0
    assert fake_contract.sent[-1][2] == 2 * 10**15


def test_claim_defaults_to_everything_claimable(run_cli, fake_contract, other_account):
    fake_contract.fund(other_account.address, 10**18)
    fake_contract.claimable[other_account.address.lower()] = 300

    code, out, _ = run_cli("claim")
    assert code == 0
    assert out["amountWei"] == "300"
    assert out["status"] == 1
    assert fake_contract.claimed[other_account.address.lower()] == 300


def test_claim_with_nothing_owed_fails(run_cli, fake_contract, other_account):
    code, _, err = run_cli("claim")
    assert code == 1
    assert "Nothing to claim" in err
    assert fake_contract.sent == []


def test_smoke_scratches_then_claims(run_cli, fake_contract, other_account):
    fake_contract.reward = 5 * 10**14
    fake_contract.fund(fake_contract.address, 10**18)
    fake_contract.fund(other_account.address, 10**18)

    code, out, _ = run_cli("smoke")
    assert code == 0
    assert out["scratch"]["rewardWei"] == str(5 * 10**14)
    assert out["claimStatus"]["claimableWei"] == str(5 * 10**14)
    assert out["claim"]["amountWei"] == str(5 * 10**14)
    assert [s[0] for s in fake_contract.sent] == ["scratch", "claim"]


def test_smoke_without_reward_skips_claim(run_cli, fake_contract, other_account):
    fake_contract.fund(other_account.address, 10**18)
    code, out, _ = run_cli("smoke")
    assert code == 0
    assert out["claim"] is None
    assert [s[0] for s in fake_contract.sent] == ["scratch"]


def test_player_key_falls_back_to_admin_key(monkeypatch, run_cli, fake_contract, owner_account):
    monkeypatch.setattr(settings, "PLAYER_PRIVATE_KEY", None)
    monkeypatch.setattr(settings, "ADMIN_PRIVATE_KEY", "0x" + "11" * 32)
    code, _, _ = run_cli("scratch")
    assert code == 0
    assert fake_contract.sent[-1][1] == owner_account.address


def test_missing_player_key(monkeypatch, run_cli, fake_contract):
    monkeypatch.setattr(settings, "PLAYER_PRIVATE_KEY", None)
    code, _, err = run_cli("scratch")
    assert code == 1
    assert "PLAYER_PRIVATE_KEY" in err
    assert fake_contract.sent == []


def test_withdraw_above_liquidity_is_refused(monkeypatch, run_cli, fake_contract):
    monkeypatch.setattr(settings, "ADMIN_PRIVATE_KEY", "0x" + "11" * 32)
    fake_contract.fund(fake_contract.address, 10**15)
    fake_contract.claimable["0x" + "a" * 40] = 4 * 10**14

    code, _, err = run_cli("withdraw-profit", "0.001")
    assert code == 1
    assert "exceeds available liquidity" in err
    assert fake_contract.sent == []
