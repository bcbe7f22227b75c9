"""HTTP surface: envelopes, status codes and the batch endpoint end to end."""

from __future__ import annotations

import batch as batchmod
import main
from errors import ChainUnavailable


WALLET = "0x" + "1" * 40
CONTRACT = "0x91d1c6aba776e827c0ca34627ae5ca1931855717"


def _tx(n, amount="100", action="scratch_reward", wallet=WALLET):
    return {
        "walletAddress": wallet,
        "txHash": "0x" + format(n, "064x"),
        "action": action,
        "amountWei": amount,
        "contractAddress": CONTRACT,
        "chainId": 11155111,
    }


def test_health(client):
    r = client.get("/api/health")
    assert r.status_code == 200
    assert r.json()["ok"] is True


def test_post_transaction_then_profile(client):
    assert client.post("/api/transactions", json=_tx(1)).json() == {"ok": True}
    # same hash again updates in place
    assert client.post("/api/transactions", json=_tx(1, amount="250")).status_code == 200

    body = client.get(f"/api/profile/{WALLET}").json()
    assert body["ok"] is True
    assert body["summary"]["totalWonWei"] == "250"
    assert body["summary"]["txCount"] == 1
    assert len(body["transactions"]) == 1


def test_invalid_transaction_lists_errors(client):
    r = client.post("/api/transactions", json={"action": "jackpot"})
    assert r.status_code == 400
    body = r.json()
    assert body["ok"] is False
    assert "walletAddress is required" in body["errors"]
    assert "Invalid action. Use scratch_reward or claim." in body["errors"]


def test_leaderboard_query_params(client):
    client.post("/api/transactions", json=_tx(1, "9007199254740993"))
    client.post("/api/transactions", json=_tx(2, "1"))

    body = client.get("/api/leaderboard", params={"page": "0", "pageSize": "1000"}).json()
    assert body["pagination"]["page"] == 1
    assert body["pagination"]["pageSize"] == 100
    assert body["leaderboard"][0]["totalWonWei"] == "9007199254740994"

    legacy = client.get("/api/leaderboard", params={"limit": "1"}).json()
    assert legacy["pagination"]["pageSize"] == 1


def test_profile_rejects_bad_address(client):
    r = client.get("/api/profile/not-an-address")
    assert r.status_code == 400
    assert r.json()["error"] == "Invalid address"


def test_game_state(client, fake_contract):
    fake_contract.fund(fake_contract.address, 1000)
    fake_contract.claimable["0x" + "a" * 40] = 300
    main.app.dependency_overrides[main.get_contract] = lambda: fake_contract

    body = client.get("/api/game/state").json()
    assert body["contractBalanceWei"] == "1000"
    assert body["totalPendingWei"] == "300"
    assert body["availableLiquidityWei"] == "700"
    assert body["chainId"] == 11155111


def test_chain_failures_are_not_leaked(client, fake_contract):
    def boom():
        raise ChainUnavailable("RPC unreachable during scratchPrice: https://rpc.example/secret-key")

    fake_contract.scratch_price = boom
    main.app.dependency_overrides[main.get_contract] = lambda: fake_contract

    r = client.get("/api/game/state")
    assert r.status_code == 500
    assert r.json() == {"ok": False, "error": "Chain provider unavailable"}


def test_admin_batch_non_owner_is_forbidden(monkeypatch, client, fake_contract, owner_account, other_account):
    main.app.dependency_overrides[main.get_contract] = lambda: fake_contract
    monkeypatch.setattr(main, "load_admin_account", lambda: owner_account)

    body = batchmod.sign_batch_request(other_account, fake_contract.address, {"walletCount": 1})
    r = client.post("/api/admin/batch", json=body)
    assert r.status_code == 403
    assert r.json()["error"] == "Admin action blocked: requester is not contract owner"


def test_admin_batch_logs_rounds(monkeypatch, client, fake_contract, owner_account):
    main.app.dependency_overrides[main.get_contract] = lambda: fake_contract
    monkeypatch.setattr(main, "load_admin_account", lambda: owner_account)

    options = {"walletCount": 2, "maxRoundsPerWallet": 2, "reactivityPolls": 1, "reactivityPollMs": 1}
    body = batchmod.sign_batch_request(owner_account, fake_contract.address, options)
    r = client.post("/api/admin/batch", json=body)
    assert r.status_code == 200
    result = r.json()["result"]
    assert result["totalScratches"] == 4
    assert "generatedWallets" not in result

    board = client.get("/api/leaderboard").json()
    assert board["platformStats"]["totalScratchCards"] == 4
    assert board["pagination"]["totalUsers"] == 2


def test_admin_batch_without_key(monkeypatch, client, fake_contract, owner_account):
    main.app.dependency_overrides[main.get_contract] = lambda: fake_contract
    monkeypatch.setattr(main, "load_admin_account", lambda: None)

    body = batchmod.sign_batch_request(owner_account, fake_contract.address)
    r = client.post("/api/admin/batch", json=body)
    assert r.status_code == 500
    assert r.json()["error"] == "Server missing BATCH_ADMIN_PRIVATE_KEY or ADMIN_PRIVATE_KEY"


def test_admin_key_is_not_loaded_for_unauthenticated_callers(monkeypatch, client, fake_contract, other_account):
    main.app.dependency_overrides[main.get_contract] = lambda: fake_contract
    monkeypatch.setattr(main.settings, "BATCH_ADMIN_PRIVATE_KEY", "not-a-key")

    body = batchmod.sign_batch_request(other_account, fake_contract.address)
    r = client.post("/api/admin/batch", json=body)
    assert r.status_code == 403


def test_malformed_admin_key_is_reported_to_the_owner(monkeypatch, client, fake_contract, owner_account):
    main.app.dependency_overrides[main.get_contract] = lambda: fake_contract
    monkeypatch.setattr(main.settings, "BATCH_ADMIN_PRIVATE_KEY", "not-a-key")

    body = batchmod.sign_batch_request(owner_account, fake_contract.address)
    r = client.post("/api/admin/batch", json=body)
    assert r.status_code == 500
    assert r.json() == {"ok": False, "error": "BATCH_ADMIN_PRIVATE_KEY is not a valid private key"}
    assert "not-a-key" not in r.text


def test_non_object_body_gets_error_envelope(client):
    r = client.post("/api/transactions", json=["not", "an", "object"])
    assert r.status_code == 400
    body = r.json()
    assert body["ok"] is False
    assert body["error"] == "Request body must be a JSON object"
    assert body["errors"]


def test_malformed_json_gets_error_envelope(client):
    r = client.post("/api/admin/batch", content=b"{not json", headers={"content-type": "application/json"})
    assert r.status_code == 400
    assert r.json()["ok"] is False


def test_unexpected_failure_gets_error_envelope(db_path, fake_contract):
    from fastapi.testclient import TestClient

    def boom(player):
        raise RuntimeError("node returned garbage")

    fake_contract.claim_status = boom
    main.app.dependency_overrides[main.get_contract] = lambda: fake_contract
    try:
        with TestClient(main.app, raise_server_exceptions=False) as c:
            r = c.get(f"/api/game/players/{WALLET}")
    finally:
        main.app.dependency_overrides.clear()
    assert r.status_code == 500
    assert r.json() == {"ok": False, "error": "Internal server error"}
