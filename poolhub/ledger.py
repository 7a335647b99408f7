from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from poolhub.config import settings
from poolhub.database import utcnow
from poolhub.errors import AccountNotFound, InsufficientFunds
from poolhub.logging_config import get_logger
from poolhub.milestones import referral_code
from poolhub.models import Account

logger = get_logger(__name__)


def ensure_account(db: Session, user_id: str, display_name: str) -> Account:
    account = db.get(Account, user_id)
    if account:
        return account
    account = Account(
        user_id=user_id,
        display_name=display_name,
        balance_cents=settings.starting_balance_cents,
        referral_code=referral_code(display_name, user_id),
    )
    db.add(account)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = db.get(Account, user_id)
        if existing is not None:
            # another client created it first
            return existing
        # referral code taken by a look-alike name; the account goes without one
        account = Account(user_id=user_id, display_name=display_name, balance_cents=settings.starting_balance_cents)
        db.add(account)
        db.commit()
    logger.info("Created account user_id=%s balance_cents=%s", user_id, account.balance_cents)
    return account


def get_balance(db: Session, user_id: str) -> int:
    balance = db.execute(select(Account.balance_cents).where(Account.user_id == user_id)).scalar_one_or_none()
    if balance is None:
        raise AccountNotFound()
    return balance


def adjust_balance(db: Session, user_id: str, delta_cents: int, compensating: bool = False) -> int:
    """
    Apply ``delta_cents`` to the account in a single conditional UPDATE and
    return the balance it wrote, read back in the same statement.

    Debits that would leave a negative balance raise ``InsufficientFunds``.
    Compensating reversals skip that check since they restore an amount the
    caller already moved.
    """
    stmt = update(Account).where(Account.user_id == user_id)
    if delta_cents < 0 and not compensating:
        stmt = stmt.where(Account.balance_cents + delta_cents >= 0)
    stmt = stmt.values(balance_cents=Account.balance_cents + delta_cents, updated_at=utcnow())
    stmt = stmt.returning(Account.balance_cents).execution_options(synchronize_session=False)
    row = db.execute(stmt).first()
    if row is None:
        db.rollback()
        if db.get(Account, user_id) is None:
            raise AccountNotFound()
        logger.warning("Rejected debit user_id=%s delta_cents=%s", user_id, delta_cents)
        raise InsufficientFunds()
    balance = row[0]
    db.commit()
    logger.info(
        "Adjusted balance user_id=%s delta_cents=%s balance_cents=%s compensating=%s",
        user_id,
        delta_cents,
        balance,
        compensating,
    )
    return balance


def record_games(db: Session, player_ids: list, winner_ids: set) -> None:
    for user_id in player_ids:
        won = 1 if user_id in winner_ids else 0
        db.execute(
            update(Account)
            .where(Account.user_id == user_id)
            .values(
                games_played=Account.games_played + 1,
                games_won=Account.games_won + won,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
    db.commit()
