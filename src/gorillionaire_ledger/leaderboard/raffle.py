"""Weighted raffle draw without replacement."""

from __future__ import annotations

import logging
import random
from collections.abc import Sequence

from gorillionaire_ledger.storage.repos import LeaderboardEntryDTO, RaffleWinnerDTO

logger = logging.getLogger(__name__)

DEFAULT_WINNER_COUNT = 5
DEFAULT_PRIZE_AMOUNT = 50


class RaffleSelector:
    """Draws raffle winners weighted by ``winning_chances``.

    Each draw picks a uniform value in ``[0, total)`` over the remaining
    candidates' chances and walks the pool subtracting each chance until
    the running value is no longer positive. The chosen candidate leaves
    the pool. Inject a seeded ``random.Random`` for reproducible draws.

    Example:
        ```python
        selector = RaffleSelector(random.Random(42))
        winners = selector.select_winners(entries, winner_count=5)
        ```
    """

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    def select_winners(
        self,
        entries: Sequence[LeaderboardEntryDTO],
        winner_count: int = DEFAULT_WINNER_COUNT,
        *,
        prize_amount: int = DEFAULT_PRIZE_AMOUNT,
    ) -> list[RaffleWinnerDTO]:
        """Draw up to ``winner_count`` distinct winners.

        Stops early when the pool is empty or no candidate has a positive
        chance left.
        """
        if winner_count < 0:
            raise ValueError("winner_count must be >= 0")

        pool = [e for e in entries if e.winning_chances > 0]
        winners: list[RaffleWinnerDTO] = []

        while pool and len(winners) < winner_count:
            total = sum(e.winning_chances for e in pool)
            if total <= 0:
                break

            remaining = self._rng.random() * total
            chosen_index = len(pool) - 1
            for i, entry in enumerate(pool):
                remaining -= entry.winning_chances
                if remaining <= 0:
                    chosen_index = i
                    break

            chosen = pool.pop(chosen_index)
            winners.append(
                RaffleWinnerDTO(
                    address=chosen.address,
                    rank=chosen.rank,
                    weekly_points=chosen.weekly_points,
                    winning_chances=chosen.winning_chances,
                    prize_amount=prize_amount,
                )
            )

        logger.debug("Drew %d raffle winner(s) from %d entries", len(winners), len(entries))
        return winners
