import asyncio
import csv
from io import StringIO

from poolhub import reconciliation
from poolhub import transactions as recorder
from poolhub.commands.reconcile import reconcile
from poolhub.config import TransactionKind


def _rows(csv_text):
    return list(csv.DictReader(StringIO(csv_text)))


def test_csv_lists_open_flags_and_stuck_pending_transactions(session_factory):
    with session_factory() as db:
        reconciliation.flag_for_review(
            db, reconciliation.FLAG_DANGLING_DEBIT, "amy", 10000, pool_id="bluff-1", transaction_id="tx-dangling"
        )
        stuck = recorder.begin(db, "ben", -2000, TransactionKind.WITHDRAWAL)
        done = recorder.begin(db, "ben", 500, TransactionKind.DEPOSIT)
        recorder.complete(db, done.id)

        csv_text, count = reconciliation.generate_reconciliation_csv(db, older_than_seconds=0)

    rows = _rows(csv_text)
    assert count == 2
    assert [(r["kind"], r["txId"], r["userId"], r["amountCents"]) for r in rows] == [
        ("dangling_debit", "tx-dangling", "amy", "10000"),
        ("stale_pending", stuck.id, "ben", "-2000"),
    ]


def test_resolved_flags_drop_out(session_factory):
    with session_factory() as db:
        flag = reconciliation.flag_for_review(db, reconciliation.FLAG_PAYOUT_FAILED, "cat", 700, pool_id="bluff-2")
        reconciliation.resolve_flag(db, flag.id, "paid by hand")

        csv_text, count = reconciliation.generate_reconciliation_csv(db)

    assert count == 0
    assert csv_text.strip() == "kind,txId,userId,poolId,amountCents,detail"


def test_reconcile_command_exit_code(tmp_path, session_factory):
    output = tmp_path / "reconciliation.csv"

    clean = asyncio.run(reconcile(str(output), session_factory=session_factory))
    assert clean == 0

    with session_factory() as db:
        reconciliation.flag_for_review(db, reconciliation.FLAG_CREDIT_FAILED, "dee", 1000)
    dirty = asyncio.run(reconcile(str(output), session_factory=session_factory))

    assert dirty == 1
    assert _rows(output.read_text())[0]["kind"] == "credit_failed"


def test_reconcile_command_retries_failed_payouts(tmp_path, session_factory, make_pool, fund, balance_of):
    pool_id = make_pool()
    fund("eli", 0)
    with session_factory() as db:
        reconciliation.flag_for_review(db, reconciliation.FLAG_PAYOUT_FAILED, "eli", 4500, pool_id=pool_id)

    code = asyncio.run(reconcile(str(tmp_path / "out.csv"), retry_payouts=True, session_factory=session_factory))

    assert code == 0
    assert balance_of("eli") == 4500
