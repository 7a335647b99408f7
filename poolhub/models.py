import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)

from poolhub.database import Base, utcnow


def _uuid() -> str:
    return str(uuid.uuid4())


class Account(Base):
    __tablename__ = "accounts"
    user_id = Column(String, primary_key=True)
    display_name = Column(String, nullable=False)
    # no CHECK on balance: compensating reversals may briefly take it below zero
    balance_cents = Column(Integer, nullable=False, default=0)
    games_played = Column(Integer, nullable=False, default=0)
    games_won = Column(Integer, nullable=False, default=0)
    referral_code = Column(String, unique=True, nullable=True)
    referred_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Pool(Base):
    __tablename__ = "pools"
    id = Column(String, primary_key=True)
    game_type = Column(String, nullable=False)
    entry_fee_cents = Column(Integer, nullable=False)
    max_players = Column(Integer, nullable=False)
    current_players = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="waiting")
    number_min = Column(Integer, nullable=False)
    number_max = Column(Integer, nullable=False)
    round_number = Column(Integer, nullable=False, default=1)
    starts_at = Column(DateTime, nullable=True)
    ends_at = Column(DateTime, nullable=True)
    results = Column(JSON, nullable=True)
    settled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    __table_args__ = (
        CheckConstraint("current_players >= 0", name="ck_pool_players_non_negative"),
        CheckConstraint("current_players <= max_players", name="ck_pool_players_capacity"),
        CheckConstraint("entry_fee_cents > 0", name="ck_pool_fee_positive"),
        CheckConstraint("number_min <= number_max", name="ck_pool_number_range"),
    )


class PoolMember(Base):
    __tablename__ = "pool_members"
    id = Column(Integer, primary_key=True)
    pool_id = Column(String, ForeignKey("pools.id"), index=True, nullable=False)
    round_number = Column(Integer, nullable=False)
    player_id = Column(String, index=True, nullable=False)
    display_name = Column(String, nullable=False)
    selected_number = Column(Integer, nullable=True)
    locked = Column(Boolean, nullable=False, default=False)
    version = Column(Integer, nullable=False, default=0)
    player_data = Column(JSON, nullable=False, default=dict)
    is_winner = Column(Boolean, nullable=False, default=False)
    prize_cents = Column(Integer, nullable=False, default=0)
    joined_at = Column(DateTime, default=utcnow)
    locked_at = Column(DateTime, nullable=True)
    __table_args__ = (UniqueConstraint("pool_id", "round_number", "player_id", name="uq_pool_round_player"),)


class Transaction(Base):
    __tablename__ = "transactions"
    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, index=True, nullable=False)
    amount_cents = Column(Integer, nullable=False)  # signed: debits are negative
    kind = Column(String, nullable=False)
    status = Column(String, nullable=False, default="pending")
    pool_id = Column(String, index=True, nullable=True)
    external_ref = Column(String, nullable=True)
    description = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class ChatMessage(Base):
    __tablename__ = "chat_messages"
    id = Column(Integer, primary_key=True)
    pool_id = Column(String, index=True, nullable=False)
    sender = Column(String, nullable=False)
    message = Column(String, nullable=False)
    is_system = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow)


class ReconciliationFlag(Base):
    __tablename__ = "reconciliation_flags"
    id = Column(Integer, primary_key=True)
    kind = Column(String, nullable=False)  # dangling_debit|payout_pending|payout_failed|stale_pending|credit_failed
    user_id = Column(String, index=True, nullable=False)
    pool_id = Column(String, nullable=True)
    transaction_id = Column(String, nullable=True)
    amount_cents = Column(Integer, nullable=False)
    detail = Column(String, nullable=True)
    status = Column(String, nullable=False, default="open")  # open|processing|resolved
    created_at = Column(DateTime, default=utcnow)
    resolved_at = Column(DateTime, nullable=True)


class Referral(Base):
    __tablename__ = "referrals"
    id = Column(Integer, primary_key=True)
    referrer_id = Column(String, index=True, nullable=False)
    referred_id = Column(String, unique=True, nullable=False)
    bonus_cents = Column(Integer, nullable=False)
    transaction_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class IdempotencyKey(Base):
    __tablename__ = "idempotency_keys"
    id = Column(Integer, primary_key=True)
    key = Column(String, unique=True, index=True, nullable=False)
    request_hash = Column(String, nullable=False)
    response_body = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=utcnow)
