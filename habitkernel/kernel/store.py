"""Storage boundary for goals, streaks, completions and nudge cooldowns.

``goal_transaction`` is the only write path for a goal and its streak: the
block sees a private copy, writes become visible only when it exits cleanly,
and concurrent transactions on the same goal run one after another.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Protocol

from habitkernel.kernel.clock import to_utc
from habitkernel.kernel.errors import GoalNotFound
from habitkernel.kernel.models import CompletionEvent, Goal, HabitStreak, NudgeCooldown


class GoalTransaction(Protocol):
    goal: Goal
    streak: HabitStreak | None
    completions: list[CompletionEvent]  # ordered by completed_at, inactive included

    def add_completion(self, event: CompletionEvent) -> None: ...

    def update_completion(self, event: CompletionEvent) -> None: ...


class HabitStore(Protocol):
    def goal_transaction(self, goal_id: str) -> AbstractAsyncContextManager[GoalTransaction]: ...

    async def create_goal(self, goal: Goal, streak: HabitStreak) -> None: ...

    async def get_goal(self, goal_id: str) -> Goal | None: ...

    async def list_goals(self, owner_id: str) -> list[Goal]: ...

    async def get_streak(self, goal_id: str) -> HabitStreak | None: ...

    async def list_completions(self, goal_id: str, include_inactive: bool = False) -> list[CompletionEvent]: ...

    async def get_cooldown(self, sender_id: str, goal_id: str) -> NudgeCooldown | None: ...

    async def set_cooldown(self, cooldown: NudgeCooldown) -> None: ...

    async def acquire_cooldown(
        self, sender_id: str, goal_id: str, now: datetime, until: datetime
    ) -> NudgeCooldown | None: ...

    async def active_cooldowns(self, sender_id: str, now: datetime) -> list[NudgeCooldown]: ...

    async def clear_cooldowns(self, goal_id: str) -> int: ...


class UnitOfWork:
    """Staged view of one goal; the store persists it on commit."""

    def __init__(
        self,
        goal: Goal,
        streak: HabitStreak | None,
        completions: list[CompletionEvent],
    ) -> None:
        self.goal = goal
        self.streak = streak
        self.completions = sorted(completions, key=lambda e: to_utc(e.completed_at))
        self.added: list[CompletionEvent] = []
        self.updated: list[CompletionEvent] = []

    def add_completion(self, event: CompletionEvent) -> None:
        self.completions.append(event)
        self.completions.sort(key=lambda e: to_utc(e.completed_at))
        self.added.append(event)

    def update_completion(self, event: CompletionEvent) -> None:
        if not any(event is e for e in self.added):
            self.updated.append(event)


class InMemoryStore:
    """Process-local store. One instance per app (or per test)."""

    def __init__(self) -> None:
        self._goals: dict[str, Goal] = {}
        self._streaks: dict[str, HabitStreak] = {}
        self._completions: dict[str, dict[str, CompletionEvent]] = defaultdict(dict)
        self._cooldowns: dict[tuple[str, str], NudgeCooldown] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._cooldown_lock = asyncio.Lock()

    def _lock(self, goal_id: str) -> asyncio.Lock:
        if goal_id not in self._goals:
            raise GoalNotFound(goal_id)
        return self._locks.setdefault(goal_id, asyncio.Lock())

    @asynccontextmanager
    async def goal_transaction(self, goal_id: str) -> AsyncIterator[UnitOfWork]:
        async with self._lock(goal_id):
            goal = self._goals[goal_id]
            streak = self._streaks.get(goal_id)
            uow = UnitOfWork(
                goal.model_copy(deep=True),
                streak.model_copy(deep=True) if streak else None,
                [e.model_copy(deep=True) for e in self._completions[goal_id].values()],
            )
            yield uow
            # Reached only when the block raised nothing
            self._goals[goal_id] = uow.goal.model_copy(deep=True)
            if uow.streak is not None:
                self._streaks[goal_id] = uow.streak.model_copy(deep=True)
            for event in uow.added + uow.updated:
                self._completions[goal_id][event.id] = event.model_copy(deep=True)

    async def create_goal(self, goal: Goal, streak: HabitStreak) -> None:
        lock = self._locks.setdefault(goal.id, asyncio.Lock())
        async with lock:
            self._goals[goal.id] = goal.model_copy(deep=True)
            self._streaks[goal.id] = streak.model_copy(deep=True)

    async def get_goal(self, goal_id: str) -> Goal | None:
        goal = self._goals.get(goal_id)
        return goal.model_copy(deep=True) if goal else None

    async def list_goals(self, owner_id: str) -> list[Goal]:
        return [g.model_copy(deep=True) for g in self._goals.values() if g.owner_id == owner_id]

    async def get_streak(self, goal_id: str) -> HabitStreak | None:
        streak = self._streaks.get(goal_id)
        return streak.model_copy(deep=True) if streak else None

    async def list_completions(self, goal_id: str, include_inactive: bool = False) -> list[CompletionEvent]:
        events = [
            e.model_copy(deep=True)
            for e in self._completions.get(goal_id, {}).values()
            if include_inactive or e.is_active
        ]
        return sorted(events, key=lambda e: to_utc(e.completed_at))

    # ------------------------------------------------------------------
    # Nudge cooldowns
    # ------------------------------------------------------------------

    async def get_cooldown(self, sender_id: str, goal_id: str) -> NudgeCooldown | None:
        return self._cooldowns.get((sender_id, goal_id))

    async def set_cooldown(self, cooldown: NudgeCooldown) -> None:
        async with self._cooldown_lock:
            self._cooldowns[(cooldown.sender_id, cooldown.goal_id)] = cooldown

    async def acquire_cooldown(
        self, sender_id: str, goal_id: str, now: datetime, until: datetime
    ) -> NudgeCooldown | None:
        """Write a cooldown only if none is active at ``now``; None when blocked."""
        async with self._cooldown_lock:
            existing = self._cooldowns.get((sender_id, goal_id))
            if existing is not None and not to_utc(existing.cooldown_until) < to_utc(now):
                return None
            cooldown = NudgeCooldown(sender_id=sender_id, goal_id=goal_id, cooldown_until=until)
            self._cooldowns[(sender_id, goal_id)] = cooldown
            return cooldown

    async def active_cooldowns(self, sender_id: str, now: datetime) -> list[NudgeCooldown]:
        return sorted(
            (
                c
                for (sender, _), c in self._cooldowns.items()
                if sender == sender_id and to_utc(c.cooldown_until) >= to_utc(now)
            ),
            key=lambda c: to_utc(c.cooldown_until),
        )

    async def clear_cooldowns(self, goal_id: str) -> int:
        async with self._cooldown_lock:
            keys = [k for k in self._cooldowns if k[1] == goal_id]
            for k in keys:
                del self._cooldowns[k]
            return len(keys)
