from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from poolhub.config import TransactionKind, TransactionStatus
from poolhub.database import utcnow
from poolhub.logging_config import get_logger
from poolhub.models import Transaction

logger = get_logger(__name__)


def begin(
    db: Session,
    user_id: str,
    amount_cents: int,
    kind: TransactionKind,
    external_ref: Optional[str] = None,
    pool_id: Optional[str] = None,
    description: Optional[str] = None,
) -> Transaction:
    txn = Transaction(
        user_id=user_id,
        amount_cents=amount_cents,
        kind=TransactionKind(kind).value,
        status=TransactionStatus.PENDING.value,
        external_ref=external_ref,
        pool_id=pool_id,
        description=description,
    )
    db.add(txn)
    db.commit()
    db.refresh(txn)
    logger.info(
        "Started transaction tx_id=%s user_id=%s kind=%s amount_cents=%s pool_id=%s",
        txn.id,
        user_id,
        txn.kind,
        amount_cents,
        pool_id,
    )
    return txn


def _finish(db: Session, tx_id: str, status: TransactionStatus, external_ref: Optional[str], reason: Optional[str]) -> bool:
    values = {"status": status.value, "updated_at": utcnow()}
    if external_ref:
        values["external_ref"] = external_ref
    if reason:
        values["description"] = reason
    # only pending rows move, so a repeated call is a no-op
    result = db.execute(
        update(Transaction)
        .where(Transaction.id == tx_id)
        .where(Transaction.status == TransactionStatus.PENDING.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    changed = result.rowcount == 1
    if changed:
        logger.info("Transaction tx_id=%s status=%s", tx_id, status.value)
    return changed


def complete(db: Session, tx_id: str, external_ref: Optional[str] = None) -> bool:
    return _finish(db, tx_id, TransactionStatus.COMPLETED, external_ref, None)


def fail(db: Session, tx_id: str, reason: Optional[str] = None) -> bool:
    return _finish(db, tx_id, TransactionStatus.FAILED, None, reason)


def get_transaction(db: Session, tx_id: str) -> Optional[Transaction]:
    return db.get(Transaction, tx_id)


def list_user_transactions(db: Session, user_id: str, limit: int = 100) -> List[Transaction]:
    return (
        db.query(Transaction)
        .filter(Transaction.user_id == user_id)
        .order_by(Transaction.created_at.desc())
        .limit(limit)
        .all()
    )


def find_by_external_ref(db: Session, external_ref: str) -> Optional[Transaction]:
    """Latest movement carrying ``external_ref`` that did not fail."""
    return (
        db.query(Transaction)
        .filter(Transaction.external_ref == external_ref)
        .filter(Transaction.status != TransactionStatus.FAILED.value)
        .order_by(Transaction.created_at.desc())
        .first()
    )
