from typing import List

from sqlalchemy.orm import Session

from poolhub.config import GameType, PoolStatus
from poolhub.logging_config import get_logger
from poolhub.models import Pool

logger = get_logger(__name__)

ENTRY_FEES_CENTS = [2000, 5000, 10000, 25000, 50000, 100000, 150000, 200000]


def default_pools() -> List[Pool]:
    pools = []
    for game_type in (GameType.BLUFF, GameType.TOPSPOT):
        for index, fee in enumerate(ENTRY_FEES_CENTS):
            pools.append(
                Pool(
                    id=f"{game_type.value}-{index}",
                    game_type=game_type.value,
                    entry_fee_cents=fee,
                    max_players=50,
                    number_min=0,
                    number_max=15,
                )
            )
    for index, fee in enumerate(ENTRY_FEES_CENTS[:2]):
        pools.append(
            Pool(
                id=f"{GameType.JACKPOT.value}-{index}",
                game_type=GameType.JACKPOT.value,
                entry_fee_cents=fee,
                max_players=10000,
                number_min=0,
                number_max=200,
            )
        )
    return pools


def seed_pools(db: Session) -> int:
    """Insert the default pools that are missing; existing pools are left alone."""
    created = 0
    for pool in default_pools():
        if db.get(Pool, pool.id) is not None:
            continue
        pool.status = PoolStatus.WAITING.value
        pool.current_players = 0
        db.add(pool)
        created += 1
    db.commit()
    if created:
        logger.info("Seeded %s pools", created)
    return created
