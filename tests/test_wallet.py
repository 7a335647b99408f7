import asyncio

import httpx
import pytest

from poolhub import ledger, reconciliation
from poolhub.clients.payment_client import PaymentGatewayClient
from poolhub.errors import ResultKind
from poolhub.milestones import (
    get_milestone_bonus,
    get_milestone_progress,
    milestone_bonus_cents,
    referral_code,
)
from poolhub.schemas import Principal
from poolhub.wallet_service import WalletService


class FakeGateway:
    def __init__(self, status_code=200):
        self.status_code = status_code
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_code != 200:
            return httpx.Response(self.status_code, json={"error": "unavailable"})
        return httpx.Response(200, json={"externalRef": f"ext-{len(self.requests)}"})


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def wallet(session_factory, gateway):
    client = PaymentGatewayClient(
        base_url="http://gateway.test", max_retries=0, transport=httpx.MockTransport(gateway)
    )
    return WalletService(session_factory, client)


def test_apply_transaction_moves_balance(wallet, fund, balance_of):
    alice = fund("alice", 0)

    credit = asyncio.run(wallet.apply_transaction(alice, 2500, "deposit", "Cash top-up"))
    debit = asyncio.run(wallet.apply_transaction(alice, -1000, "hint_purchase"))
    too_much = asyncio.run(wallet.apply_transaction(alice, -5000, "hint_purchase"))

    assert credit.ok and credit.balance_cents == 2500
    assert debit.ok and debit.balance_cents == 1500
    assert too_much.kind == ResultKind.INSUFFICIENT_FUNDS
    assert balance_of("alice") == 1500
    statuses = [(t.amount_cents, t.status) for t in wallet.list_transactions("alice")]
    assert sorted(statuses) == [(-5000, "failed"), (-1000, "completed"), (2500, "completed")]


def test_deposit_is_credited_once_on_confirmation(wallet, gateway, fund, balance_of):
    bob = Principal(user_id="bob", display_name="Bob")

    started = asyncio.run(wallet.initiate_deposit(bob, 5000))
    assert started.ok and started.data == {"externalRef": "ext-1"}
    assert balance_of("bob") == 0
    assert wallet.get_transaction(started.transaction_id).status == "pending"
    assert gateway.requests[0].url.path == "/v1/deposits"

    confirmed = asyncio.run(wallet.handle_gateway_result(started.transaction_id, "ext-1", True))
    repeated = asyncio.run(wallet.handle_gateway_result(started.transaction_id, "ext-1", True))

    assert confirmed.ok and confirmed.balance_cents == 5000
    assert repeated.ok and repeated.kind == ResultKind.ALREADY_FINALIZED
    assert balance_of("bob") == 5000
    assert wallet.get_transaction(started.transaction_id).status == "completed"


def test_declined_deposit_credits_nothing(wallet, balance_of):
    cara = Principal(user_id="cara", display_name="Cara")
    started = asyncio.run(wallet.initiate_deposit(cara, 5000))

    declined = asyncio.run(wallet.handle_gateway_result(started.transaction_id, None, False))

    assert declined.ok
    assert balance_of("cara") == 0
    assert wallet.get_transaction(started.transaction_id).status == "failed"


def test_withdrawal_holds_funds_until_confirmed(wallet, fund, balance_of):
    dan = fund("dan", 8000)

    started = asyncio.run(wallet.initiate_withdrawal(dan, 3000))
    assert started.ok and started.balance_cents == 5000

    confirmed = asyncio.run(wallet.handle_gateway_result(started.transaction_id, "ext-1", True))

    assert confirmed.ok
    assert balance_of("dan") == 5000
    assert wallet.get_transaction(started.transaction_id).status == "completed"


def test_declined_withdrawal_returns_the_hold(wallet, fund, balance_of):
    eve = fund("eve", 8000)
    started = asyncio.run(wallet.initiate_withdrawal(eve, 3000))

    declined = asyncio.run(wallet.handle_gateway_result(started.transaction_id, None, False))
    repeated = asyncio.run(wallet.handle_gateway_result(started.transaction_id, None, False))

    assert declined.ok
    assert repeated.kind == ResultKind.ALREADY_FINALIZED
    assert balance_of("eve") == 8000
    assert wallet.get_transaction(started.transaction_id).status == "failed"


def test_withdrawal_without_funds_never_reaches_gateway(wallet, gateway, fund, balance_of):
    fay = fund("fay", 1000)

    result = asyncio.run(wallet.initiate_withdrawal(fay, 3000))

    assert result.kind == ResultKind.INSUFFICIENT_FUNDS
    assert gateway.requests == []
    assert balance_of("fay") == 1000


def test_gateway_outage_releases_withdrawal_hold(wallet, gateway, fund, balance_of):
    gateway.status_code = 503
    gus = fund("gus", 8000)

    result = asyncio.run(wallet.initiate_withdrawal(gus, 3000))

    assert result.kind == ResultKind.GATEWAY_ERROR
    assert balance_of("gus") == 8000
    [txn] = wallet.list_transactions("gus")
    assert txn.status == "failed"


def test_withdrawal_hold_with_unknown_outcome_never_reaches_gateway(
    monkeypatch, wallet, gateway, fund, balance_of
):
    quinn = fund("quinn", 5000)
    real_adjust = ledger.adjust_balance

    def lost_reply(db, user_id, delta_cents, compensating=False):
        real_adjust(db, user_id, delta_cents, compensating)
        raise RuntimeError("connection reset")

    monkeypatch.setattr(ledger, "adjust_balance", lost_reply)

    result = asyncio.run(wallet.initiate_withdrawal(quinn, 2000))

    assert result.kind == ResultKind.DANGLING
    assert gateway.requests == []
    assert balance_of("quinn") == 3000
    [txn] = wallet.list_transactions("quinn")
    assert txn.status == "pending"
    with wallet.session_factory() as db:
        flags = reconciliation.open_flags(db, reconciliation.FLAG_DANGLING_DEBIT)
    assert [(f.user_id, f.amount_cents, f.transaction_id) for f in flags] == [("quinn", 2000, txn.id)]


def test_unknown_gateway_callback(wallet):
    result = asyncio.run(wallet.handle_gateway_result("missing", None, True))
    assert not result.ok and result.kind == ResultKind.TRANSACTION_NOT_FOUND


# Gateway client retry and throttling.
def test_gateway_client_retries_server_errors(monkeypatch):
    statuses = [500, 502, 200]
    seen = []

    def handler(request):
        seen.append(request)
        status = statuses.pop(0)
        return httpx.Response(status, json={"externalRef": "ext-9"} if status == 200 else {})

    async def fake_sleep(seconds):
        pass

    monkeypatch.setattr("poolhub.clients.payment_client.asyncio.sleep", fake_sleep)
    client = PaymentGatewayClient(
        base_url="http://gateway.test", max_retries=3, retry_backoff_seconds=0.01, transport=httpx.MockTransport(handler)
    )

    loop = asyncio.new_event_loop()
    try:
        ref = loop.run_until_complete(client.create_deposit("tx-1", "hal", 100))
    finally:
        loop.close()

    assert ref == "ext-9"
    assert len(seen) == 3


def test_gateway_client_rate_limit_returns_429():
    client = PaymentGatewayClient(
        base_url="http://gateway.test",
        rate_limit_per_minute=1,
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"externalRef": "x"})),
    )

    loop = asyncio.new_event_loop()
    try:
        first = loop.run_until_complete(client._request_with_retry("POST", "/v1/deposits", json={}))
        second = loop.run_until_complete(client._request_with_retry("POST", "/v1/deposits", json={}))
    finally:
        loop.close()

    assert first.status_code == 200
    assert second.status_code == 429


# Referrals and milestones.
def test_referral_bonus_paid_once_per_referred_user(wallet, fund, balance_of):
    fund("u-ref-0001", 0, display_name="Ref Erin")
    newcomer = fund("u-new-0001", 0, display_name="Newbie")
    code = referral_code("Ref Erin", "u-ref-0001")

    applied = asyncio.run(wallet.apply_referral_code(newcomer, code))
    again = asyncio.run(wallet.apply_referral_code(newcomer, code))

    assert code == "referinu-ref"
    assert applied.ok and applied.kind == ResultKind.SUCCESS
    assert again.ok and again.kind == ResultKind.ALREADY_REFERRED
    assert balance_of("u-ref-0001") == 1000
    assert wallet.referral_info("u-ref-0001") == {"code": code, "referrals": 1, "totalBonusCents": 1000}
    assert wallet.get_wallet("u-new-0001")["referralCode"] == "newbieu-new"


def test_self_and_unknown_referrals_are_rejected(wallet, fund):
    ivy = fund("ivy-12345", 0, display_name="Ivy")

    own = asyncio.run(wallet.apply_referral_code(ivy, referral_code("Ivy", "ivy-12345")))
    unknown = asyncio.run(wallet.apply_referral_code(ivy, "nobody00000"))

    assert own.kind == ResultKind.INVALID_REFERRAL
    assert unknown.kind == ResultKind.INVALID_REFERRAL


@pytest.mark.parametrize(
    "games,bonus",
    [(0, 0), (999, 0), (1000, 5), (4999, 5), (5000, 10), (25000, 15), (100000, 20), (500000, 30), (900000, 30)],
)
def test_milestone_bonus_thresholds(games, bonus):
    assert get_milestone_bonus(games) == bonus


def test_milestone_progress():
    assert get_milestone_progress(0)["progress"] == 0
    halfway = get_milestone_progress(3000)
    assert (halfway["currentMilestone"], halfway["nextMilestone"], halfway["progress"]) == (1000, 5000, 50)
    top = get_milestone_progress(600000)
    assert (top["currentMilestone"], top["nextMilestone"], top["progress"]) == (500000, 500000, 100)
    assert milestone_bonus_cents(18000, 5000) == 1800


def test_process_referral_bonus_by_id(wallet, fund, balance_of):
    fund("kim", 0)
    fund("lee", 0)

    first = asyncio.run(wallet.process_referral_bonus("kim", "lee"))
    second = asyncio.run(wallet.process_referral_bonus("kim", "lee"))
    own = asyncio.run(wallet.process_referral_bonus("kim", "kim"))
    missing = asyncio.run(wallet.process_referral_bonus("nobody", "kim"))

    assert first.kind == ResultKind.SUCCESS
    assert second.kind == ResultKind.ALREADY_REFERRED
    assert own.kind == ResultKind.INVALID_REFERRAL
    assert missing.kind == ResultKind.ACCOUNT_NOT_FOUND
    assert balance_of("kim") == 1000
