"""Tests for the goal allocator."""

from decimal import Decimal
from types import SimpleNamespace

import pytest

from kidsbank.goals import compute_goal_allocations, goal_progress
from kidsbank.models.ledger import SavingsGoal


def make_goal(name: str, target, **kwargs) -> SavingsGoal:
    return SavingsGoal(account_id="mark", name=name, target_amount=target, **kwargs)


class TestComputeGoalAllocations:
    """Water-filling the balance across goals in priority order."""

    def test_first_goal_filled_before_second(self):
        bike = make_goal("Bike", 100)
        game = make_goal("Game", 50)

        result = compute_goal_allocations([bike, game], Decimal("120"))

        assert result[bike.id].allocated == Decimal("100")
        assert result[bike.id].percent == 100.0
        assert result[bike.id].remaining == Decimal("0")
        assert result[game.id].allocated == Decimal("20")
        assert result[game.id].percent == 40.0
        assert result[game.id].remaining == Decimal("30")

    def test_zero_balance(self):
        goals = [make_goal("Bike", 100), make_goal("Game", 50)]

        result = compute_goal_allocations(goals, 0)

        for goal in goals:
            assert result[goal.id].allocated == Decimal("0")
            assert result[goal.id].percent == 0.0
            assert result[goal.id].remaining == goal.target_amount

    def test_negative_balance_counts_as_zero(self):
        goal = make_goal("Bike", 100)
        result = compute_goal_allocations([goal], Decimal("-5"))
        assert result[goal.id].allocated == Decimal("0")
        assert result[goal.id].remaining == Decimal("100")

    def test_balance_covers_every_goal(self):
        goals = [make_goal("Bike", 100), make_goal("Game", 50), make_goal("Book", "7.99")]

        result = compute_goal_allocations(goals, Decimal("500"))

        for goal in goals:
            assert result[goal.id].allocated == goal.target_amount
            assert result[goal.id].percent == 100.0
            assert result[goal.id].remaining == Decimal("0")

    def test_reordering_changes_which_goal_completes(self):
        bike = make_goal("Bike", 100)
        game = make_goal("Game", 50)

        bike_first = compute_goal_allocations([bike, game], Decimal("60"))
        game_first = compute_goal_allocations([game, bike], Decimal("60"))

        assert bike_first[bike.id].percent == 60.0
        assert bike_first[game.id].percent == 0.0
        assert game_first[game.id].percent == 100.0
        assert game_first[bike.id].allocated == Decimal("10")

    def test_non_positive_target_gets_nothing(self):
        """Goals with broken targets show 0% and do not use up the balance."""
        broken = SimpleNamespace(id="broken", target_amount=Decimal("0"))
        negative = SimpleNamespace(id="negative", target_amount=Decimal("-10"))
        game = SimpleNamespace(id="game", target_amount=Decimal("50"))

        result = compute_goal_allocations([broken, negative, game], Decimal("30"))

        assert result["broken"].allocated == Decimal("0")
        assert result["broken"].percent == 0.0
        assert result["broken"].remaining == Decimal("0")
        assert result["negative"].allocated == Decimal("0")
        assert result["negative"].percent == 0.0
        assert result["game"].allocated == Decimal("30")

    def test_keeps_input_order(self):
        goals = [make_goal(name, 10) for name in ("C", "A", "B")]
        result = compute_goal_allocations(goals, 15)
        assert list(result) == [g.id for g in goals]

    def test_percent_is_not_rounded(self):
        goal = make_goal("Ball", 3)
        result = compute_goal_allocations([goal], 1)
        assert result[goal.id].percent == pytest.approx(33.333333, rel=1e-6)

    def test_no_goals(self):
        assert compute_goal_allocations([], Decimal("10")) == {}


class TestGoalProgress:
    """Tests for goal_progress."""

    def test_completed_goals_are_left_out(self):
        done = make_goal("Done", 100, is_completed=True)
        game = make_goal("Game", 50)

        progress = goal_progress([done, game], Decimal("40"))

        assert [p.goal.id for p in progress] == [game.id]
        assert progress[0].allocation.allocated == Decimal("40")
        assert progress[0].allocation.percent == 80.0
