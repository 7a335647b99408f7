from enum import Enum
from pydantic import AnyHttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    db_url: str = "sqlite:///./pools.db"
    offline_db_url: str = "sqlite:///./offline.db"
    bearer_token: Optional[str] = None
    hmac_secret: str = "change_secret"
    payment_gateway_url: AnyHttpUrl = "http://mock-gateway:8003"
    max_retries: int = 3
    retry_backoff_seconds: float = 1.0
    rate_limit_per_minute: int = 60
    timestamp_skew_seconds: int = 5
    log_level: str = "INFO"

    tax_rate_percent: int = 28
    leave_refund_percent: int = 90
    max_stale_retries: int = 3

    sync_max_attempts: int = 3
    sync_backoff_seconds: float = 5.0
    settlement_poll_seconds: float = 2.0
    pending_timeout_seconds: int = 300

    referral_bonus_cents: int = 1000
    starting_balance_cents: int = 0
    round_duration_seconds: int = 300
    run_background_workers: bool = True
    seed_pools: bool = True

settings = Settings()


class GameType(str, Enum):
    BLUFF = "bluff"
    TOPSPOT = "topspot"
    JACKPOT = "jackpot"


class PoolStatus(str, Enum):
    WAITING = "waiting"
    OPEN = "open"
    ACTIVE = "active"
    COMPLETED = "completed"


class TransactionKind(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    GAME_ENTRY = "game_entry"
    GAME_WINNING = "game_winning"
    GAME_REFUND = "game_refund"
    HINT_PURCHASE = "hint_purchase"
    REFERRAL_BONUS = "referral_bonus"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


# statuses in which a pool still takes new entries (and refunds a leave)
JOINABLE_STATUSES = {PoolStatus.WAITING.value, PoolStatus.OPEN.value}
SELECTABLE_STATUSES = {PoolStatus.WAITING.value, PoolStatus.OPEN.value, PoolStatus.ACTIVE.value}

# percentage of the distributable pool paid to rank 1, 2, 3
prize_tiers_by_game = {
    GameType.TOPSPOT: (90,),
    GameType.BLUFF: (50, 25, 15),
    GameType.JACKPOT: (50, 25, 15),
}
