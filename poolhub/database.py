from datetime import UTC, datetime

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from poolhub.config import settings

Base = declarative_base()


def utcnow() -> datetime:
    # naive UTC, matches what SQLite hands back
    return datetime.now(UTC).replace(tzinfo=None)


def make_engine(url: str):
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args)


def make_session_factory(bind):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


engine = make_engine(settings.db_url)
SessionLocal = make_session_factory(engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
