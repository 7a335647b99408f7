"""
Winner computation for a finished round.

The least-picked numbers win. Numbers are ranked by how many players chose
them (fewest first), ties go to the lower number, and each rank maps to a share
of the pool left after tax. All amounts are integer minor units; every division
floors, so the sum of prizes never exceeds the distributable pool.
"""
from dataclasses import asdict, dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from poolhub.config import GameType, prize_tiers_by_game, settings


@dataclass(frozen=True)
class Selection:
    player_id: str
    username: str
    number: Optional[int]


@dataclass
class WinnerEntry:
    position: int
    number: int
    count: int
    players: List[str] = field(default_factory=list)
    usernames: List[str] = field(default_factory=list)
    prize_cents: int = 0
    share_cents: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def build_frequency_table(number_min: int, number_max: int, selections: Iterable[Selection]) -> Dict[int, List[Selection]]:
    table: Dict[int, List[Selection]] = {n: [] for n in range(number_min, number_max + 1)}
    for selection in selections:
        # unlocked players and out-of-range picks take no part in the draw
        if selection.number is None or selection.number not in table:
            continue
        table[selection.number].append(selection)
    return table


def rank_numbers(table: Dict[int, List[Selection]]) -> List[Tuple[int, int]]:
    """Return ``(number, count)`` for every picked number, least-picked first."""
    picked = [(number, len(chosen)) for number, chosen in table.items() if chosen]
    return sorted(picked, key=lambda item: (item[1], item[0]))


def distributable_cents(entry_fee_cents: int, current_players: int, tax_rate_percent: Optional[int] = None) -> int:
    tax = settings.tax_rate_percent if tax_rate_percent is None else tax_rate_percent
    total = entry_fee_cents * current_players
    return total * (100 - tax) // 100


def compute_winners(
    game_type: str,
    entry_fee_cents: int,
    current_players: int,
    number_min: int,
    number_max: int,
    selections: Iterable[Selection],
    tax_rate_percent: Optional[int] = None,
) -> List[WinnerEntry]:
    tiers = prize_tiers_by_game[GameType(game_type)]
    prize_pool = distributable_cents(entry_fee_cents, current_players, tax_rate_percent)
    table = build_frequency_table(number_min, number_max, selections)
    ranked = rank_numbers(table)

    winners: List[WinnerEntry] = []
    for position, (percent, (number, count)) in enumerate(zip(tiers, ranked), start=1):
        chosen = sorted(table[number], key=lambda s: s.player_id)
        prize = prize_pool * percent // 100
        winners.append(
            WinnerEntry(
                position=position,
                number=number,
                count=count,
                players=[s.player_id for s in chosen],
                usernames=[s.username for s in chosen],
                prize_cents=prize,
                share_cents=prize // count,
            )
        )
    return winners


def payouts(winners: Iterable[WinnerEntry]) -> Dict[str, int]:
    """Total prize per player across every rank they placed in."""
    totals: Dict[str, int] = {}
    for winner in winners:
        for player_id in winner.players:
            totals[player_id] = totals.get(player_id, 0) + winner.share_cents
    return totals
