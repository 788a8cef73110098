"""
Unit tests for user aggregates and the stats accumulator.
"""
from decimal import Decimal

import pytest

from arbiter.domain.outcome import Outcome
from arbiter.domain.stats import StatsEvent, UserStats, compute_win_rate
from arbiter.domain.wager import Position, Side
from arbiter.services.stats import StatsAccumulator
from tests.helpers import ACCEPTOR_ID, CREATOR_ID, crypto_wager, matched


class TestUserStats:
    """Tests for the pure aggregate arithmetic."""

    def test_win_increments_totals_and_streak(self):
        stats = UserStats(streak_count=2).apply(StatsEvent.WIN, Decimal("3"))
        assert stats.total_wagered == Decimal("3")
        assert stats.total_won == Decimal("3")
        assert stats.total_lost == 0
        assert stats.streak_count == 3
        assert stats.win_rate == Decimal("100.00")

    def test_loss_resets_streak(self):
        stats = UserStats(total_won=Decimal("1"), streak_count=4).apply(StatsEvent.LOSS, Decimal("1"))
        assert stats.total_lost == Decimal("1")
        assert stats.streak_count == 0
        assert stats.win_rate == Decimal("50.00")

    @pytest.mark.parametrize("event", [StatsEvent.DRAW, StatsEvent.ACCEPTANCE])
    def test_non_outcome_events_only_touch_wagered(self, event):
        before = UserStats(total_won=Decimal("2"), total_lost=Decimal("1"), streak_count=5)
        after = before.apply(event, Decimal("1"))
        assert after.total_wagered == Decimal("1")
        assert after.total_won == before.total_won
        assert after.total_lost == before.total_lost
        assert after.streak_count == 5

    def test_stake_not_recounted(self):
        stats = UserStats(total_wagered=Decimal("1")).apply(StatsEvent.WIN, Decimal("1"), record_stake=False)
        assert stats.total_wagered == Decimal("1")
        assert stats.total_won == Decimal("1")

    def test_win_rate(self):
        assert compute_win_rate(Decimal("0"), Decimal("0")) == 0
        assert compute_win_rate(Decimal("1"), Decimal("2")) == Decimal("33.33")
        assert compute_win_rate(Decimal("2"), Decimal("1")) == Decimal("66.67")


class TestStatsAccumulator:
    """Tests for applying outcomes through the ledger."""

    @pytest.mark.asyncio
    async def test_acceptance_then_win(self, ledger):
        accumulator = StatsAccumulator(ledger)
        wager = matched(crypto_wager(amount=Decimal("1.5")))

        await accumulator.record_acceptance(wager)
        outcome = Outcome(
            is_draw=False,
            winner=Side.CREATOR,
            winning_position=Position.ABOVE,
            resolution_value="105",
        )
        await accumulator.record_resolution(wager, outcome, record_stake=False)

        winner = await ledger.get_user(CREATOR_ID)
        loser = await ledger.get_user(ACCEPTOR_ID)
        assert winner.stats.total_wagered == Decimal("1.5")
        assert winner.stats.total_won == Decimal("1.5")
        assert winner.stats.streak_count == 1
        assert loser.stats.total_wagered == Decimal("1.5")
        assert loser.stats.total_lost == Decimal("1.5")
        assert loser.stats.streak_count == 0
        assert loser.stats.win_rate == 0

    @pytest.mark.asyncio
    async def test_draw_leaves_streaks(self, ledger):
        accumulator = StatsAccumulator(ledger)
        await ledger.adjust_user_stats(CREATOR_ID, lambda s: s.apply(StatsEvent.WIN, Decimal("1")))

        wager = matched(crypto_wager())
        await accumulator.record_resolution(wager, Outcome.draw("draw"), record_stake=True)

        creator = await ledger.get_user(CREATOR_ID)
        assert creator.stats.streak_count == 1
        assert creator.stats.total_wagered == Decimal("2")
        assert creator.stats.total_won == Decimal("1")

    @pytest.mark.asyncio
    async def test_missing_user_is_skipped(self, ledger):
        accumulator = StatsAccumulator(ledger)
        wager = matched(crypto_wager())
        wager.acceptor_id = "user-unknown"

        await accumulator.record_acceptance(wager)

        assert await ledger.get_user("user-unknown") is None
        creator = await ledger.get_user(CREATOR_ID)
        assert creator.stats.total_wagered == Decimal("1")
