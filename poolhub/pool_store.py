"""
Authoritative pool state.

Every mutation here is a single statement guarded by its own WHERE clause, so
concurrent clients cannot push ``current_players`` past capacity or below zero
and cannot insert the same member twice.
"""
from typing import Dict, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from poolhub.database import utcnow
from poolhub.errors import AlreadyJoined, PoolFull, PoolNotFound
from poolhub.logging_config import get_logger
from poolhub.models import Pool, PoolMember, ReconciliationFlag
from poolhub.reconciliation import FLAG_PAYOUT_PENDING

logger = get_logger(__name__)


def get_pool(db: Session, pool_id: str) -> Optional[Pool]:
    return db.execute(select(Pool).where(Pool.id == pool_id)).scalar_one_or_none()


def list_pools(db: Session, game_type: Optional[str] = None) -> List[Pool]:
    query = select(Pool).order_by(Pool.game_type, Pool.entry_fee_cents, Pool.id)
    if game_type:
        query = query.where(Pool.game_type == game_type)
    return list(db.execute(query).scalars())


def get_member(db: Session, pool_id: str, player_id: str, round_number: Optional[int] = None) -> Optional[PoolMember]:
    if round_number is None:
        pool = get_pool(db, pool_id)
        if pool is None:
            return None
        round_number = pool.round_number
    return db.execute(
        select(PoolMember).where(
            PoolMember.pool_id == pool_id,
            PoolMember.round_number == round_number,
            PoolMember.player_id == player_id,
        )
    ).scalar_one_or_none()


def list_members(db: Session, pool_id: str, round_number: int) -> List[PoolMember]:
    return list(
        db.execute(
            select(PoolMember)
            .where(PoolMember.pool_id == pool_id, PoolMember.round_number == round_number)
            .order_by(PoolMember.joined_at, PoolMember.id)
        ).scalars()
    )


def increment_players(db: Session, pool_id: str, delta: int) -> int:
    if delta not in (1, -1):
        raise ValueError("delta must be +1 or -1")
    stmt = update(Pool).where(Pool.id == pool_id)
    if delta > 0:
        stmt = stmt.where(Pool.current_players < Pool.max_players)
    else:
        stmt = stmt.where(Pool.current_players > 0)
    stmt = stmt.values(current_players=Pool.current_players + delta, updated_at=utcnow())
    result = db.execute(stmt.execution_options(synchronize_session=False))
    if result.rowcount == 0:
        db.rollback()
        pool = get_pool(db, pool_id)
        if pool is None:
            raise PoolNotFound()
        if delta > 0:
            raise PoolFull()
        # already at zero, the clamp holds
        logger.warning("Player count already zero pool_id=%s", pool_id)
        return 0
    db.commit()
    count = db.execute(select(Pool.current_players).where(Pool.id == pool_id)).scalar_one()
    logger.info("Player count pool_id=%s delta=%s current_players=%s", pool_id, delta, count)
    return count


def insert_member(db: Session, pool_id: str, round_number: int, player_id: str, snapshot: dict) -> PoolMember:
    member = PoolMember(
        pool_id=pool_id,
        round_number=round_number,
        player_id=player_id,
        display_name=snapshot.get("username") or player_id,
        player_data=snapshot,
    )
    db.add(member)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise AlreadyJoined() from exc
    db.refresh(member)
    return member


def upsert_player_in_pool(db: Session, pool_id: str, player_id: str, snapshot: dict) -> PoolMember:
    """Insert the member or overwrite its display snapshot (last writer wins)."""
    pool = get_pool(db, pool_id)
    if pool is None:
        raise PoolNotFound()
    member = get_member(db, pool_id, player_id, pool.round_number)
    if member is None:
        try:
            return insert_member(db, pool_id, pool.round_number, player_id, snapshot)
        except AlreadyJoined:
            member = get_member(db, pool_id, player_id, pool.round_number)
    member.player_data = {**(member.player_data or {}), **snapshot}
    member.display_name = snapshot.get("username") or member.display_name
    db.add(member)
    db.commit()
    return member


def remove_player_from_pool(db: Session, pool_id: str, player_id: str, round_number: int) -> bool:
    # locked members are never removed through this path
    result = db.execute(
        delete(PoolMember).where(
            PoolMember.pool_id == pool_id,
            PoolMember.round_number == round_number,
            PoolMember.player_id == player_id,
            PoolMember.locked.is_(False),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def lock_member(db: Session, member_id: int, expected_version: int, number: int) -> bool:
    """Compare-and-swap on ``version``; False means someone else wrote first."""
    result = db.execute(
        update(PoolMember)
        .where(
            PoolMember.id == member_id,
            PoolMember.version == expected_version,
            PoolMember.locked.is_(False),
        )
        .values(
            selected_number=number,
            locked=True,
            locked_at=utcnow(),
            version=PoolMember.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def set_status(db: Session, pool_id: str, status: str, **values) -> None:
    db.execute(
        update(Pool)
        .where(Pool.id == pool_id)
        .values(status=status, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def claim_settlement(
    db: Session, pool_id: str, round_number: int, results: list, prizes: Dict[str, int]
) -> Optional[Dict[str, int]]:
    """
    Mark the round completed and record every prize still owed, in one commit.

    Only the first caller gets a result: the flag id for each player with a
    prize to pay. Later callers get ``None``. Because the owed prizes land with
    the status change, a crash anywhere after this leaves them on the
    reconciliation queue rather than lost.
    """
    result = db.execute(
        update(Pool)
        .where(Pool.id == pool_id, Pool.round_number == round_number, Pool.status != "completed")
        .values(status="completed", results=results, settled_at=utcnow(), updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        return None
    owed = {
        player_id: ReconciliationFlag(
            kind=FLAG_PAYOUT_PENDING,
            user_id=player_id,
            amount_cents=amount,
            pool_id=pool_id,
            detail=f"prize for round {round_number}",
        )
        for player_id, amount in prizes.items()
        if amount > 0
    }
    db.add_all(owed.values())
    db.flush()
    flag_ids = {player_id: flag.id for player_id, flag in owed.items()}
    db.commit()
    logger.info("Claimed settlement pool_id=%s round=%s prizes_owed=%s", pool_id, round_number, len(flag_ids))
    return flag_ids


def advance_round(db: Session, pool_id: str) -> bool:
    result = db.execute(
        update(Pool)
        .where(Pool.id == pool_id, Pool.status == "completed")
        .values(
            round_number=Pool.round_number + 1,
            current_players=0,
            status="open",
            results=None,
            starts_at=None,
            ends_at=None,
            settled_at=None,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def due_pools(db: Session) -> List[Pool]:
    now = utcnow()
    return list(
        db.execute(
            select(Pool).where(Pool.status != "completed", Pool.ends_at.is_not(None), Pool.ends_at <= now)
        ).scalars()
    )


def archive_round(db: Session, pool_id: str, round_number: int, prizes: dict) -> List[str]:
    """Stamp winners on the finished roster; returns every member's player id."""
    members = list_members(db, pool_id, round_number)
    for member in members:
        won = member.player_id in prizes
        member.is_winner = won
        member.prize_cents = prizes.get(member.player_id, 0)
        member.player_data = {**(member.player_data or {}), "isWinner": won, "prize": member.prize_cents}
        db.add(member)
    db.commit()
    return [member.player_id for member in members]
