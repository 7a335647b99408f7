from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from poolhub.models import Account, Referral

# (games played, bonus percent), ascending
MILESTONES = (
    (1000, 5),
    (5000, 10),
    (25000, 15),
    (100000, 20),
    (500000, 30),
)


def get_milestone_bonus(games_played: int) -> int:
    for threshold, bonus in reversed(MILESTONES):
        if games_played >= threshold:
            return bonus
    return 0


def get_milestone_progress(games_played: int) -> dict:
    """
    Where a player stands between the milestone they have reached and the next
    one. Progress is a whole percentage, 100 once the last milestone is reached.
    """
    current = 0
    upcoming = MILESTONES[0][0]
    for index, (threshold, _) in enumerate(MILESTONES):
        if games_played >= threshold:
            current = threshold
            upcoming = MILESTONES[index + 1][0] if index < len(MILESTONES) - 1 else threshold
    if current == upcoming:
        progress = 100
    else:
        progress = min(100, round((games_played - current) * 100 / (upcoming - current)))
    return {
        "gamesPlayed": games_played,
        "currentMilestone": current,
        "nextMilestone": upcoming,
        "bonusPercent": get_milestone_bonus(games_played),
        "progress": progress,
    }


def milestone_bonus_cents(amount_cents: int, games_played: int) -> int:
    return amount_cents * get_milestone_bonus(games_played) // 100


def referral_code(display_name: str, user_id: str) -> str:
    return "".join(display_name.lower().split()) + user_id[:5]


def referral_info(db: Session, user_id: str) -> Optional[dict]:
    account = db.get(Account, user_id)
    if account is None:
        return None
    count, total = db.execute(
        select(func.count(Referral.id), func.coalesce(func.sum(Referral.bonus_cents), 0)).where(
            Referral.referrer_id == user_id
        )
    ).one()
    return {
        "code": account.referral_code or referral_code(account.display_name, user_id),
        "referrals": count,
        "totalBonusCents": total,
    }
