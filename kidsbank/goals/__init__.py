"""Savings goal allocation package."""

from kidsbank.goals.allocator import (
    GoalAllocation,
    GoalProgress,
    compute_goal_allocations,
    goal_progress,
)

__all__ = [
    "GoalAllocation",
    "GoalProgress",
    "compute_goal_allocations",
    "goal_progress",
]
