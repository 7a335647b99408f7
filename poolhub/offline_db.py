"""
Client-local durable store for offline intents and cached pool snapshots.

Lives in its own database (``offline_db_url``), separate from the shared
backing store the engine talks to.
"""
import uuid
from datetime import datetime, timedelta
from typing import List, Optional, Type

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, delete, func, select, update
from sqlalchemy.orm import declarative_base

from poolhub.config import settings
from poolhub.database import make_engine, make_session_factory, utcnow
from poolhub.logging_config import get_logger

logger = get_logger(__name__)

LocalBase = declarative_base()

STATUS_PENDING = "pending"
STATUS_SYNCING = "syncing"
STATUS_SYNCED = "synced"
STATUS_REJECTED = "rejected"
STATUS_EXHAUSTED = "exhausted"


def _intent_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


class IntentMixin:
    created_at = Column(DateTime, default=utcnow, nullable=False)
    synced = Column(Boolean, default=False, nullable=False)
    status = Column(String, default=STATUS_PENDING, nullable=False)
    attempt_count = Column(Integer, default=0, nullable=False)
    next_attempt_at = Column(DateTime, nullable=True)
    last_error = Column(String, nullable=True)
    warning_dismissed = Column(Boolean, default=False, nullable=False)


class PendingBet(IntentMixin, LocalBase):
    __tablename__ = "pending_bets"
    id = Column(String, primary_key=True, default=lambda: _intent_id("bet"))
    pool_id = Column(String, nullable=False)
    player_id = Column(String, nullable=False)
    display_name = Column(String, nullable=False)
    player_data = Column(JSON, nullable=False, default=dict)


class PendingTransaction(IntentMixin, LocalBase):
    __tablename__ = "pending_transactions"
    id = Column(String, primary_key=True, default=lambda: _intent_id("tx"))
    user_id = Column(String, nullable=False)
    display_name = Column(String, nullable=False)
    amount_cents = Column(Integer, nullable=False)
    kind = Column(String, nullable=False)
    description = Column(String, nullable=True)


class CachedPool(LocalBase):
    __tablename__ = "pool_cache"
    id = Column(String, primary_key=True)
    data = Column(JSON, nullable=False)
    cached_at = Column(DateTime, default=utcnow, nullable=False)


INTENT_MODELS = (PendingBet, PendingTransaction)


class OfflineStore:
    def __init__(self, url: Optional[str] = None):
        self.engine = make_engine(url or settings.offline_db_url)
        LocalBase.metadata.create_all(bind=self.engine)
        self.session_factory = make_session_factory(self.engine)

    # -- basic record access ----------------------------------------------------

    def put(self, intent):
        with self.session_factory() as db:
            db.add(intent)
            db.commit()
            db.refresh(intent)
            logger.info("Stored offline intent id=%s type=%s", intent.id, type(intent).__name__)
            return intent

    def get(self, model: Type, intent_id: str):
        with self.session_factory() as db:
            return db.get(model, intent_id)

    def get_all(self, model: Type) -> List:
        with self.session_factory() as db:
            return list(db.execute(select(model).order_by(model.created_at)).scalars())

    def delete(self, model: Type, intent_id: str) -> bool:
        with self.session_factory() as db:
            result = db.execute(delete(model).where(model.id == intent_id))
            db.commit()
            return result.rowcount == 1

    # -- sync bookkeeping -------------------------------------------------------

    def due(self, model: Type, now: Optional[datetime] = None) -> List:
        now = now or utcnow()
        with self.session_factory() as db:
            query = (
                select(model)
                .where(model.synced.is_(False), model.status == STATUS_PENDING)
                .where((model.next_attempt_at.is_(None)) | (model.next_attempt_at <= now))
                .order_by(model.created_at)
            )
            return list(db.execute(query).scalars())

    def claim(self, model: Type, intent_id: str):
        """Flip a pending, unsynced intent to ``syncing``; None if it is not ours to replay."""
        with self.session_factory() as db:
            result = db.execute(
                update(model)
                .where(model.id == intent_id, model.synced.is_(False), model.status == STATUS_PENDING)
                .values(status=STATUS_SYNCING)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            if result.rowcount != 1:
                return None
            return db.get(model, intent_id)

    def mark_synced(self, model: Type, intent_id: str) -> None:
        self._update(model, intent_id, synced=True, status=STATUS_SYNCED, last_error=None)

    def mark_rejected(self, model: Type, intent_id: str, error: str) -> None:
        self._update(model, intent_id, status=STATUS_REJECTED, last_error=error)

    def record_failure(self, model: Type, intent_id: str, error: str, max_attempts: int, backoff_seconds: float) -> str:
        """Bump the attempt count and either schedule a retry or park the intent as exhausted."""
        with self.session_factory() as db:
            intent = db.get(model, intent_id)
            intent.attempt_count += 1
            intent.last_error = error
            if intent.attempt_count >= max_attempts:
                intent.status = STATUS_EXHAUSTED
                intent.next_attempt_at = None
                intent.warning_dismissed = False
            else:
                intent.status = STATUS_PENDING
                delay = backoff_seconds * 2 ** (intent.attempt_count - 1)
                intent.next_attempt_at = utcnow() + timedelta(seconds=delay)
            db.add(intent)
            db.commit()
            return intent.status

    def reset(self, model: Type, intent_id: Optional[str] = None, statuses=(STATUS_EXHAUSTED,)) -> int:
        """Put parked intents back in line for a manual retry."""
        with self.session_factory() as db:
            stmt = update(model).where(model.synced.is_(False), model.status.in_(statuses))
            if intent_id:
                stmt = stmt.where(model.id == intent_id)
            result = db.execute(
                stmt.values(status=STATUS_PENDING, attempt_count=0, next_attempt_at=None, warning_dismissed=False)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return result.rowcount

    def expedite(self, model: Type) -> int:
        """Pending intents waiting out a backoff become due now."""
        with self.session_factory() as db:
            result = db.execute(
                update(model)
                .where(model.synced.is_(False), model.status == STATUS_PENDING, model.next_attempt_at.is_not(None))
                .values(next_attempt_at=None)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return result.rowcount

    def release_stale_claims(self) -> int:
        """Intents left in ``syncing`` by a crashed run go back to pending."""
        released = 0
        for model in INTENT_MODELS:
            with self.session_factory() as db:
                result = db.execute(
                    update(model)
                    .where(model.status == STATUS_SYNCING)
                    .values(status=STATUS_PENDING)
                    .execution_options(synchronize_session=False)
                )
                db.commit()
                released += result.rowcount
        return released

    def count(self, model: Type, *statuses: str) -> int:
        with self.session_factory() as db:
            query = select(func.count()).select_from(model).where(model.synced.is_(False))
            if statuses:
                query = query.where(model.status.in_(statuses))
            return db.execute(query).scalar_one()

    def has_unsynced(self) -> bool:
        return any(self.count(model, STATUS_PENDING) for model in INTENT_MODELS)

    def next_retry_at(self) -> Optional[datetime]:
        times = []
        with self.session_factory() as db:
            for model in INTENT_MODELS:
                value = db.execute(
                    select(func.min(model.next_attempt_at)).where(
                        model.synced.is_(False), model.status == STATUS_PENDING
                    )
                ).scalar_one()
                if value is not None:
                    times.append(value)
        return min(times) if times else None

    def cleanup_synced(self) -> int:
        purged = 0
        with self.session_factory() as db:
            for model in INTENT_MODELS:
                purged += db.execute(delete(model).where(model.synced.is_(True))).rowcount
            db.commit()
        if purged:
            logger.info("Purged %s synced offline intents", purged)
        return purged

    def warnings(self) -> List:
        with self.session_factory() as db:
            items = []
            for model in INTENT_MODELS:
                items.extend(
                    db.execute(
                        select(model)
                        .where(model.status.in_((STATUS_EXHAUSTED, STATUS_REJECTED)))
                        .where(model.warning_dismissed.is_(False))
                        .order_by(model.created_at)
                    ).scalars()
                )
            return items

    def dismiss_warning(self, intent_id: str) -> bool:
        for model in INTENT_MODELS:
            with self.session_factory() as db:
                result = db.execute(
                    update(model)
                    .where(model.id == intent_id)
                    .values(warning_dismissed=True)
                    .execution_options(synchronize_session=False)
                )
                db.commit()
                if result.rowcount:
                    return True
        return False

    # -- pool snapshot cache ----------------------------------------------------

    def cache_pool(self, pool_id: str, data: dict) -> None:
        with self.session_factory() as db:
            cached = db.get(CachedPool, pool_id) or CachedPool(id=pool_id)
            cached.data = data
            cached.cached_at = utcnow()
            db.add(cached)
            db.commit()

    def get_cached_pool(self, pool_id: str) -> Optional[dict]:
        with self.session_factory() as db:
            cached = db.get(CachedPool, pool_id)
            return cached.data if cached else None

    def _update(self, model: Type, intent_id: str, **values) -> None:
        with self.session_factory() as db:
            db.execute(
                update(model)
                .where(model.id == intent_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            db.commit()