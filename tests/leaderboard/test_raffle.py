"""Tests for the weighted raffle."""

import random

import pytest

from gorillionaire_ledger.leaderboard.raffle import RaffleSelector
from gorillionaire_ledger.storage.repos import LeaderboardEntryDTO


def _entry(rank: int, address: str, chances: float, points: int = 100) -> LeaderboardEntryDTO:
    return LeaderboardEntryDTO(
        rank=rank,
        address=address,
        weekly_points=points,
        weekly_activities=1,
        winning_chances=chances,
    )


@pytest.fixture
def entries() -> list[LeaderboardEntryDTO]:
    return [
        _entry(1, "0xaaa", 40.0, 400),
        _entry(2, "0xbbb", 30.0, 300),
        _entry(3, "0xccc", 20.0, 200),
        _entry(4, "0xddd", 10.0, 100),
    ]


class TestRaffleSelector:
    def test_same_seed_same_winner(self) -> None:
        candidates = [_entry(1, "0xaaa", 60.0), _entry(2, "0xbbb", 40.0)]
        first = RaffleSelector(random.Random(1234)).select_winners(candidates, 1)
        second = RaffleSelector(random.Random(1234)).select_winners(candidates, 1)
        assert [w.address for w in first] == [w.address for w in second]
        assert len(first) == 1

    def test_winners_are_distinct(self, entries: list[LeaderboardEntryDTO]) -> None:
        winners = RaffleSelector(random.Random(7)).select_winners(entries, 4)
        assert len(winners) == 4
        assert len({w.address for w in winners}) == 4

    def test_stops_when_pool_exhausted(self, entries: list[LeaderboardEntryDTO]) -> None:
        winners = RaffleSelector(random.Random(7)).select_winners(entries, 10)
        assert len(winners) == len(entries)

    def test_zero_chance_candidates_never_win(self) -> None:
        candidates = [_entry(1, "0xaaa", 100.0), _entry(2, "0xzero", 0.0)]
        winners = RaffleSelector(random.Random(3)).select_winners(candidates, 5)
        assert [w.address for w in winners] == ["0xaaa"]

    def test_winner_keeps_rank_points_and_prize(self, entries: list[LeaderboardEntryDTO]) -> None:
        winners = RaffleSelector(random.Random(99)).select_winners(entries, 2, prize_amount=75)
        by_address = {e.address: e for e in entries}
        for winner in winners:
            source = by_address[winner.address]
            assert winner.rank == source.rank
            assert winner.weekly_points == source.weekly_points
            assert winner.winning_chances == source.winning_chances
            assert winner.prize_amount == 75

    def test_draw_follows_weights(self) -> None:
        # A value of 0.5 * 100 = 50 passes the first candidate (40) and lands on the second.
        class FixedRandom(random.Random):
            def random(self) -> float:
                return 0.5

        candidates = [_entry(1, "0xaaa", 40.0), _entry(2, "0xbbb", 35.0), _entry(3, "0xccc", 25.0)]
        winners = RaffleSelector(FixedRandom()).select_winners(candidates, 1)
        assert winners[0].address == "0xbbb"

    def test_empty_and_zero_requests(self, entries: list[LeaderboardEntryDTO]) -> None:
        selector = RaffleSelector(random.Random(1))
        assert selector.select_winners([], 5) == []
        assert selector.select_winners(entries, 0) == []

    def test_negative_count_rejected(self, entries: list[LeaderboardEntryDTO]) -> None:
        with pytest.raises(ValueError):
            RaffleSelector().select_winners(entries, -1)
