import pytest

from poolhub.settlement import (
    Selection,
    build_frequency_table,
    compute_winners,
    distributable_cents,
    payouts,
    rank_numbers,
)


def _picks(*numbers):
    return [Selection(f"p{i}", f"user{i}", n) for i, n in enumerate(numbers)]


def test_distributable_withholds_tax():
    assert distributable_cents(10000, 5) == 36000
    assert distributable_cents(10000, 5, tax_rate_percent=0) == 50000


def test_bluff_ranks_least_picked_first_with_lower_number_on_ties():
    winners = compute_winners("bluff", 10000, 5, 0, 15, _picks(2, 3, 3, 3, 9))

    assert [(w.position, w.number, w.count) for w in winners] == [(1, 2, 1), (2, 9, 1), (3, 3, 3)]
    assert [w.prize_cents for w in winners] == [18000, 9000, 5400]
    assert winners[2].share_cents == 1800
    assert winners[2].players == ["p1", "p2", "p3"]


def test_bluff_three_way_split_at_rank_two():
    winners = compute_winners("bluff", 10000, 9, 0, 15, _picks(2, 3, 3, 3, 9, 9, 9, 9, 9))

    assert [(w.number, w.count) for w in winners] == [(2, 1), (3, 3), (9, 5)]
    # 9 players * 10000 * 72% = 64800
    assert winners[0].prize_cents == 32400
    assert winners[1].prize_cents == 16200
    assert winners[1].share_cents == 5400


def test_topspot_pays_single_winner():
    winners = compute_winners("topspot", 10000, 5, 0, 15, _picks(2, 3, 3, 3, 9))

    assert len(winners) == 1
    assert winners[0].number == 2
    assert winners[0].prize_cents == 32400
    assert payouts(winners) == {"p0": 32400}


def test_unpicked_numbers_never_rank():
    table = build_frequency_table(0, 15, _picks(7, 7))
    assert rank_numbers(table) == [(7, 2)]


def test_unlocked_and_out_of_range_picks_are_ignored():
    selections = _picks(None, 99, 4)
    winners = compute_winners("bluff", 10000, 3, 0, 15, selections)

    assert [w.number for w in winners] == [4]
    assert winners[0].players == ["p2"]


def test_no_selections_no_winners():
    assert compute_winners("jackpot", 2000, 10, 0, 200, []) == []


def test_result_is_independent_of_input_order():
    forward = compute_winners("bluff", 2500, 6, 0, 15, _picks(1, 5, 5, 8, 8, 8))
    backward = compute_winners("bluff", 2500, 6, 0, 15, list(reversed(_picks(1, 5, 5, 8, 8, 8))))
    assert [w.to_dict() for w in forward] == [w.to_dict() for w in backward]


@pytest.mark.parametrize(
    "fee,numbers",
    [
        (333, [1, 2, 2, 3, 3, 3, 4]),
        (2000, [0, 0, 0, 1, 1, 2]),
        (150000, [5, 5, 6, 7, 7, 7, 7]),
    ],
)
def test_payouts_never_exceed_distributable_pool(fee, numbers):
    winners = compute_winners("bluff", fee, len(numbers), 0, 15, _picks(*numbers))
    paid = sum(payouts(winners).values())
    assert paid <= distributable_cents(fee, len(numbers))
    for winner in winners:
        assert winner.share_cents * winner.count <= winner.prize_cents
