import csv
from datetime import timedelta
from io import StringIO
from typing import List, Optional, Sequence, Tuple, Union

from sqlalchemy import update
from sqlalchemy.orm import Session

from poolhub.config import TransactionStatus, settings
from poolhub.database import utcnow
from poolhub.logging_config import get_logger
from poolhub.models import ReconciliationFlag, Transaction


logger = get_logger(__name__)

FLAG_DANGLING_DEBIT = "dangling_debit"
FLAG_PAYOUT_FAILED = "payout_failed"
FLAG_STALE_PENDING = "stale_pending"
FLAG_CREDIT_FAILED = "credit_failed"
# written with the settlement claim, one per prize, resolved once paid
FLAG_PAYOUT_PENDING = "payout_pending"
PAYOUT_FLAGS = (FLAG_PAYOUT_PENDING, FLAG_PAYOUT_FAILED)

STATUS_OPEN = "open"
STATUS_PROCESSING = "processing"
STATUS_RESOLVED = "resolved"


def flag_for_review(
    db: Session,
    kind: str,
    user_id: str,
    amount_cents: int,
    pool_id: Optional[str] = None,
    transaction_id: Optional[str] = None,
    detail: Optional[str] = None,
) -> ReconciliationFlag:
    flag = ReconciliationFlag(
        kind=kind,
        user_id=user_id,
        amount_cents=amount_cents,
        pool_id=pool_id,
        transaction_id=transaction_id,
        detail=detail,
    )
    db.add(flag)
    db.commit()
    db.refresh(flag)
    logger.error(
        "Flagged for manual reconciliation: kind=%s user_id=%s pool_id=%s tx_id=%s amount_cents=%s detail=%s",
        kind,
        user_id,
        pool_id,
        transaction_id,
        amount_cents,
        detail,
    )
    return flag


def open_flags(
    db: Session,
    kind: Union[str, Sequence[str], None] = None,
    pool_id: Optional[str] = None,
    statuses: Sequence[str] = (STATUS_OPEN,),
) -> List[ReconciliationFlag]:
    query = db.query(ReconciliationFlag).filter(ReconciliationFlag.status.in_(statuses))
    if kind:
        kinds = (kind,) if isinstance(kind, str) else tuple(kind)
        query = query.filter(ReconciliationFlag.kind.in_(kinds))
    if pool_id:
        query = query.filter(ReconciliationFlag.pool_id == pool_id)
    return query.order_by(ReconciliationFlag.id).all()


def resolve_flag(db: Session, flag_id: int, detail: Optional[str] = None) -> None:
    flag = db.get(ReconciliationFlag, flag_id)
    if flag is None:
        return
    flag.status = STATUS_RESOLVED
    flag.resolved_at = utcnow()
    if detail:
        flag.detail = detail
    db.add(flag)
    db.commit()


def claim_flag(db: Session, flag_id: int) -> bool:
    """Take an open flag for processing; only one worker gets True."""
    result = db.execute(
        update(ReconciliationFlag)
        .where(ReconciliationFlag.id == flag_id, ReconciliationFlag.status == STATUS_OPEN)
        .values(status=STATUS_PROCESSING)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def release_flag(
    db: Session,
    flag_id: int,
    detail: str,
    kind: Optional[str] = None,
    transaction_id: Optional[str] = None,
) -> None:
    """Hand a claimed flag back to the open queue after a failed attempt."""
    values = {"status": STATUS_OPEN, "detail": detail}
    if kind:
        values["kind"] = kind
    if transaction_id:
        values["transaction_id"] = transaction_id
    db.execute(
        update(ReconciliationFlag)
        .where(ReconciliationFlag.id == flag_id, ReconciliationFlag.status == STATUS_PROCESSING)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def stale_pending_transactions(db: Session, older_than_seconds: Optional[int] = None) -> List[Transaction]:
    seconds = settings.pending_timeout_seconds if older_than_seconds is None else older_than_seconds
    cutoff = utcnow() - timedelta(seconds=seconds)
    return (
        db.query(Transaction)
        .filter(Transaction.status == TransactionStatus.PENDING.value)
        .filter(Transaction.created_at <= cutoff)
        .order_by(Transaction.created_at)
        .all()
    )


def generate_reconciliation_csv(db: Session, older_than_seconds: Optional[int] = None) -> Tuple[str, int]:
    """
    List every money movement that needs a human: open reconciliation flags plus
    transactions stuck in pending. Returns CSV text and the row count.
    """
    rows: List[tuple] = []
    flagged_tx_ids = set()
    for flag in open_flags(db, statuses=(STATUS_OPEN, STATUS_PROCESSING)):
        flagged_tx_ids.add(flag.transaction_id)
        rows.append((flag.kind, flag.transaction_id or "", flag.user_id, flag.pool_id or "", flag.amount_cents, flag.detail or ""))
    for txn in stale_pending_transactions(db, older_than_seconds):
        if txn.id in flagged_tx_ids:
            continue
        rows.append((FLAG_STALE_PENDING, txn.id, txn.user_id, txn.pool_id or "", txn.amount_cents, f"pending since {txn.created_at.isoformat()}"))

    logger.info("Reconciliation complete with %s mismatches", len(rows))
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(["kind", "txId", "userId", "poolId", "amountCents", "detail"])
    for row in rows:
        writer.writerow(row)

    return output.getvalue(), len(rows)
