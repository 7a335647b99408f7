import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from poolhub import ledger  # noqa: E402
from poolhub.database import make_engine, make_session_factory  # noqa: E402
from poolhub.engine import PoolEngine  # noqa: E402
from poolhub.models import Base, Pool  # noqa: E402
from poolhub.realtime import Broadcaster  # noqa: E402
from poolhub.schemas import Principal  # noqa: E402


@pytest.fixture
def session_factory(tmp_path):
    """A fresh shared store per test."""
    db_engine = make_engine(f"sqlite:///{tmp_path / 'pools.db'}")
    Base.metadata.create_all(bind=db_engine)
    yield make_session_factory(db_engine)
    db_engine.dispose()


@pytest.fixture
def broadcaster():
    return Broadcaster()


@pytest.fixture
def pool_engine(session_factory, broadcaster):
    return PoolEngine(session_factory, broadcaster)


@pytest.fixture
def make_pool(session_factory):
    def _make_pool(
        pool_id="bluff-test",
        game_type="bluff",
        entry_fee_cents=10000,
        max_players=50,
        status="open",
        number_min=0,
        number_max=15,
        current_players=0,
    ):
        with session_factory() as db:
            pool = Pool(
                id=pool_id,
                game_type=game_type,
                entry_fee_cents=entry_fee_cents,
                max_players=max_players,
                current_players=current_players,
                status=status,
                number_min=number_min,
                number_max=number_max,
            )
            db.add(pool)
            db.commit()
        return pool_id

    return _make_pool


@pytest.fixture
def fund(session_factory):
    """Create (or top up) a player's account and return their principal."""

    def _fund(user_id, balance_cents, display_name=None):
        display_name = display_name or user_id
        with session_factory() as db:
            ledger.ensure_account(db, user_id, display_name)
            if balance_cents:
                ledger.adjust_balance(db, user_id, balance_cents)
        return Principal(user_id=user_id, display_name=display_name)

    return _fund


@pytest.fixture
def balance_of(session_factory):
    def _balance_of(user_id):
        with session_factory() as db:
            return ledger.get_balance(db, user_id)

    return _balance_of
