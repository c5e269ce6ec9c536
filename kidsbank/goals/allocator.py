"""
Goal Allocator

A child has one balance and several savings goals. This module answers
"how much of my money counts towards each goal?".

Goals are filled in priority order, like pouring water into a row of
glasses: the first goal takes as much as it needs (up to its target),
whatever is left flows on to the next one, and so on.

This is a pure function. It never reads or writes storage.
"""

from decimal import Decimal
from typing import Any, Protocol, Sequence

from pydantic import BaseModel, Field

from kidsbank.models.ledger import Money, SavingsGoal, to_money


ZERO = Decimal("0.00")


class AllocatableGoal(Protocol):
    """Anything with an id and a target amount (SavingsGoal qualifies)."""
    id: Any
    target_amount: Any


class GoalAllocation(BaseModel):
    """How far one goal is covered by the shared balance."""

    allocated: Money = Field(..., ge=0, description="Part of the balance assigned to the goal")
    percent: float = Field(..., ge=0, le=100, description="allocated / target x 100")
    remaining: Money = Field(..., ge=0, description="Still needed to reach the target")


class GoalProgress(BaseModel):
    """A goal together with its allocation, for display."""

    goal: SavingsGoal
    allocation: GoalAllocation


def compute_goal_allocations(
    goals: Sequence[AllocatableGoal],
    balance: Any,
) -> dict[Any, GoalAllocation]:
    """
    Distribute a balance across goals in priority order.

    Args:
        goals: Active goals, highest priority first
        balance: Current account balance

    Returns:
        {goal.id: GoalAllocation}, in the same order as `goals`

    The running balance is reduced by each goal's full target, not by
    what it actually received, so a later goal can never reclaim money
    already promised to an earlier one. A goal with a target of zero or
    less gets nothing and shows 0%.
    """
    allocations: dict[Any, GoalAllocation] = {}
    unallocated = max(ZERO, to_money(balance))

    for goal in goals:
        target = to_money(goal.target_amount)
        allocated = max(ZERO, min(unallocated, target))
        if target > 0:
            percent = float(min(Decimal(100), allocated / target * 100))
        else:
            percent = 0.0
        remaining = max(ZERO, target - allocated)

        allocations[goal.id] = GoalAllocation(
            allocated=allocated,
            percent=percent,
            remaining=remaining,
        )

        unallocated = max(ZERO, unallocated - max(ZERO, target))

    return allocations


def goal_progress(goals: Sequence[SavingsGoal], balance: Any) -> list[GoalProgress]:
    """Allocations for the active goals among `goals`, kept in their given order."""
    active = [g for g in goals if not g.is_completed]
    allocations = compute_goal_allocations(active, balance)
    return [GoalProgress(goal=g, allocation=allocations[g.id]) for g in active]
