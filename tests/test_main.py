import os
import sys
import time
from importlib import reload
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture(scope="function")
def app_module(tmp_path_factory):
    """
    Reload the app with disposable SQLite stores and no background workers.
    """
    data = tmp_path_factory.mktemp("data")
    new_env = {
        "DB_URL": f"sqlite:///{data / 'test.db'}",
        "OFFLINE_DB_URL": f"sqlite:///{data / 'offline.db'}",
        "BEARER_TOKEN": "testtoken",
        "HMAC_SECRET": "test_secret",
        "PAYMENT_GATEWAY_URL": "http://gateway.test",
        "TIMESTAMP_SKEW_SECONDS": "5",
        "RUN_BACKGROUND_WORKERS": "false",
        "SEED_POOLS": "true",
    }
    old_env = {k: os.environ.get(k) for k in new_env}
    os.environ.update(new_env)

    try:
        import poolhub.config as config
        import poolhub.database as database

        reload(config)
        reload(database)

        import poolhub.security as security

        reload(security)

        import poolhub.main as main

        reload(main)

        main.app.dependency_overrides[main.require_bearer_token] = lambda: None
        return main, database
    finally:
        for key, value in old_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value


@pytest.fixture
def client(app_module):
    main, database = app_module
    from poolhub.models import Base

    Base.metadata.drop_all(bind=database.engine)
    Base.metadata.create_all(bind=database.engine)
    with TestClient(main.app) as client:
        yield client


@pytest.fixture
def fund(app_module):
    _, database = app_module
    from poolhub import ledger

    def _fund(user_id, balance_cents):
        with database.SessionLocal() as db:
            ledger.ensure_account(db, user_id, user_id.title())
            if balance_cents:
                ledger.adjust_balance(db, user_id, balance_cents)
        return {"X-User-Id": user_id, "X-Display-Name": user_id.title()}

    return _fund


def _balance(client, headers):
    return client.get("/wallet", headers=headers).json()["balanceCents"]


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_default_pools_are_seeded(client):
    pools = client.get("/pools").json()
    assert len(pools) == 18
    assert all(p["status"] == "waiting" and p["current_players"] == 0 for p in pools)

    jackpots = client.get("/pools", params={"game_type": "jackpot"}).json()
    assert sorted(p["id"] for p in jackpots) == ["jackpot-0", "jackpot-1"]
    assert {p["max_players"] for p in jackpots} == {10000}

    assert client.get("/pools/nowhere").status_code == 404


def test_join_charges_entry_and_seats_player(client, fund):
    alice = fund("alice", 20000)

    resp = client.post("/pools/bluff-2/join", headers=alice)

    assert resp.status_code == 200
    body = resp.json()
    assert body["kind"] == "success" and body["balance_cents"] == 10000
    pool = client.get("/pools/bluff-2").json()
    assert pool["current_players"] == 1
    assert [p["player_id"] for p in pool["players"]] == ["alice"]
    chat = client.get("/pools/bluff-2/chat").json()
    assert chat[-1]["is_system"] and "Alice" in chat[-1]["message"]
    assert _balance(client, alice) == 10000


def test_join_requires_player_identity(client):
    resp = client.post("/pools/bluff-2/join")
    assert resp.status_code == 401
    assert resp.json() == {"detail": "missing user identity"}


def test_join_without_funds_is_payment_required(client, fund):
    bob = fund("bob", 500)

    resp = client.post("/pools/bluff-2/join", headers=bob)

    assert resp.status_code == 402
    assert resp.json()["detail"]["kind"] == "insufficient_funds"
    assert _balance(client, bob) == 500


# Same Idempotency-Key -> one charge, replayed response.
def test_idempotency_reuses_existing_response(client, fund):
    carl = fund("carl", 30000)
    headers = {**carl, "Idempotency-Key": "join-key"}

    first = client.post("/pools/bluff-2/join", headers=headers)
    second = client.post("/pools/bluff-2/join", headers=headers)
    conflict = client.post("/pools/bluff-3/join", headers=headers)

    assert first.status_code == 200
    assert second.status_code == 200
    assert first.json() == second.json()
    assert conflict.status_code == 409
    assert conflict.json() == {"detail": "idempotency conflict"}
    assert _balance(client, carl) == 20000


def test_lock_and_settle_pays_least_picked_numbers(client, fund):
    alice = fund("alice", 20000)
    bob = fund("bob", 20000)
    client.post("/pools/bluff-2/join", headers=alice)
    client.post("/pools/bluff-2/join", headers=bob)

    assert client.post("/pools/bluff-2/lock", json={"number": 7}, headers=alice).status_code == 200
    assert client.post("/pools/bluff-2/lock", json={"number": 9}, headers=bob).status_code == 200
    out_of_range = client.post("/pools/bluff-2/lock", json={"number": 99}, headers=bob)
    assert out_of_range.status_code == 422

    started = client.post("/admin/pools/bluff-2/start", json={"duration_seconds": 60})
    assert started.status_code == 200
    settled = client.post("/admin/pools/bluff-2/settle")

    assert settled.status_code == 200
    winners = settled.json()["data"]["winners"]
    assert [(w["number"], w["share_cents"]) for w in winners] == [(7, 7200), (9, 3600)]
    assert _balance(client, alice) == 17200
    assert _balance(client, bob) == 13600
    assert client.get("/pools/bluff-2").json()["status"] == "completed"

    reopened = client.post("/admin/pools/bluff-2/reopen")
    assert reopened.status_code == 200
    pool = client.get("/pools/bluff-2").json()
    assert (pool["status"], pool["round_number"], pool["current_players"]) == ("open", 2, 0)


def test_leave_refunds_ninety_percent(client, fund):
    dora = fund("dora", 20000)
    client.post("/pools/bluff-2/join", headers=dora)

    resp = client.post("/pools/bluff-2/leave", headers=dora)
    again = client.post("/pools/bluff-2/leave", headers=dora)

    assert resp.status_code == 200
    assert _balance(client, dora) == 19000
    assert again.status_code == 404
    assert again.json()["detail"]["kind"] == "not_member"


def test_chat_message_is_listed(client, fund):
    ed = fund("ed", 0)

    resp = client.post("/pools/topspot-0/chat", json={"message": "good luck"}, headers=ed)

    assert resp.status_code == 200
    messages = client.get("/pools/topspot-0/chat").json()
    assert [(m["sender"], m["message"]) for m in messages] == [("Ed", "good luck")]


def test_pool_stream_pushes_updates(client, fund):
    fay = fund("fay", 20000)

    with client.websocket_connect("/ws/pools/bluff-1") as ws:
        initial = ws.receive_json()
        assert initial["id"] == "bluff-1" and initial["current_players"] == 0

        client.post("/pools/bluff-1/join", headers=fay)
        update = ws.receive_json()

    assert update["current_players"] == 1


# Payment gateway round trip with signed callback.
class FakeGateway:
    def __init__(self):
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(200, json={"externalRef": f"ext-{len(self.requests)}"})


@pytest.fixture
def gateway(app_module):
    main, _ = app_module
    from poolhub.clients.payment_client import PaymentGatewayClient

    fake = FakeGateway()
    main.wallet_service.gateway = PaymentGatewayClient(
        base_url="http://gateway.test", max_retries=0, transport=httpx.MockTransport(fake)
    )
    return fake


def _signed(payload):
    import poolhub.security as security

    timestamp = str(int(time.time()))
    return {"X-Signature": security.compute_signature(payload, timestamp), "X-Timestamp": timestamp}


def test_deposit_credited_after_signed_callback(client, fund, gateway):
    gil = fund("gil", 0)

    started = client.post("/wallet/deposit", json={"amountCents": 5000}, headers=gil)
    assert started.status_code == 200
    tx_id = started.json()["transaction_id"]
    assert _balance(client, gil) == 0

    payload = {"transactionId": tx_id, "externalRef": "ext-1", "success": True}
    resp = client.post("/webhooks/payments", json=payload, headers=_signed(payload))

    assert resp.status_code == 200
    assert resp.json()["balance_cents"] == 5000
    assert _balance(client, gil) == 5000
    txns = client.get("/wallet/transactions", headers=gil).json()
    assert [(t["kind"], t["status"], t["external_ref"]) for t in txns] == [("deposit", "completed", "ext-1")]


def test_webhook_tampered_signature_rejected(client, fund, gateway):
    hal = fund("hal", 0)
    tx_id = client.post("/wallet/deposit", json={"amountCents": 5000}, headers=hal).json()["transaction_id"]
    payload = {"transactionId": tx_id, "externalRef": "ext-1", "success": True}
    headers = {"X-Signature": "invalidsignature", "X-Timestamp": str(int(time.time()))}

    resp = client.post("/webhooks/payments", json=payload, headers=headers)
    unsigned = client.post("/webhooks/payments", json=payload)

    assert resp.status_code == 401
    assert resp.json()["detail"] == "invalid signature"
    assert unsigned.status_code == 401
    assert _balance(client, hal) == 0


def test_withdrawal_holds_funds(client, fund, gateway):
    ida = fund("ida", 8000)

    resp = client.post("/wallet/withdraw", json={"amountCents": 3000}, headers=ida)
    too_much = client.post("/wallet/withdraw", json={"amountCents": 9000}, headers=ida)

    assert resp.status_code == 200
    assert _balance(client, ida) == 5000
    assert too_much.status_code == 402
    assert len(gateway.requests) == 1
    assert gateway.requests[0].url.path == "/v1/payouts"


def test_referral_and_milestones(client, fund):
    fund("rita-0001", 0)
    newcomer = fund("neil-0001", 0)
    code = client.get("/referrals", headers={"X-User-Id": "rita-0001"}).json()["code"]

    applied = client.post("/referrals", json={"referralCode": code}, headers=newcomer)
    invalid = client.post("/referrals", json={"referralCode": "nobody00000"}, headers=newcomer)

    assert applied.status_code == 200
    assert invalid.status_code == 400
    info = client.get("/referrals", headers={"X-User-Id": "rita-0001"}).json()
    assert (info["referrals"], info["totalBonusCents"]) == (1, 1000)
    progress = client.get("/milestones", headers=newcomer).json()
    assert (progress["gamesPlayed"], progress["nextMilestone"]) == (0, 1000)


def test_reconciliation_csv_is_downloadable(client):
    resp = client.get("/reconciliation_data")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/csv")
    assert resp.headers["x-mismatch-count"] == "0"
    assert resp.text.strip() == "kind,txId,userId,poolId,amountCents,detail"


def test_admin_routes_require_bearer_token(client, app_module):
    main, _ = app_module
    main.app.dependency_overrides.clear()
    try:
        assert client.post("/admin/pools/bluff-0/settle").status_code == 401
        authorized = client.get("/sync/status", headers={"Authorization": "Bearer testtoken"})
        assert authorized.status_code == 200
    finally:
        main.app.dependency_overrides[main.require_bearer_token] = lambda: None


def test_offline_join_is_replayed_after_reconnect(client, fund):
    jan = fund("jan", 20000)

    assert client.post("/sync/offline").json()["isOnline"] is False
    queued = client.post("/pools/bluff-2/join", headers=jan)
    assert queued.status_code == 200
    assert queued.json()["kind"] == "queued"
    assert client.get("/sync/status").json()["pending"] == 1
    assert _balance(client, jan) == 20000

    client.post("/sync/online")
    deadline = time.monotonic() + 5
    status = client.get("/sync/status").json()
    while status["pending"] and time.monotonic() < deadline:
        time.sleep(0.05)
        status = client.get("/sync/status").json()

    assert status["pending"] == 0 and status["isOnline"]
    assert _balance(client, jan) == 10000
    assert client.get("/pools/bluff-2").json()["current_players"] == 1


def test_manual_sync_while_offline_is_unavailable(client):
    client.post("/sync/offline")

    resp = client.post("/sync/trigger")

    assert resp.status_code == 503
    assert resp.json()["detail"]["kind"] == "offline"
