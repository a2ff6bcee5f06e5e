"""Postgres-backed HabitStore: async SQLAlchemy sessions, raw SQL.

Tables: habit_goals, habit_streaks, habit_completions, nudge_cooldowns.
A goal transaction is one ``session.begin()`` block that starts with
``SELECT ... FOR UPDATE`` on the goal row, so completions and reverts for the
same goal serialise in the database. A partial unique index on
(goal_id, local_date) for active completions backs the one-per-day rule.
"""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from habitkernel.kernel.errors import GoalNotFound
from habitkernel.kernel.models import CompletionEvent, Goal, HabitStreak, NudgeCooldown
from habitkernel.kernel.store import UnitOfWork

SCHEMA: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS habit_goals (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        frequency TEXT NOT NULL,
        target_days JSONB NOT NULL DEFAULT '[]'::jsonb,
        difficulty TEXT NOT NULL,
        timezone TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        latest_completion_date TIMESTAMPTZ,
        next_deadline TIMESTAMPTZ NOT NULL,
        current_status TEXT,
        red_since TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_habit_goals_owner ON habit_goals (owner_id)",
    """
    CREATE TABLE IF NOT EXISTS habit_streaks (
        goal_id TEXT PRIMARY KEY REFERENCES habit_goals (id) ON DELETE CASCADE,
        owner_id TEXT NOT NULL,
        current_streak INTEGER NOT NULL DEFAULT 0,
        best_streak INTEGER NOT NULL DEFAULT 0,
        last_completion_date DATE,
        streak_start_date DATE,
        break_count INTEGER NOT NULL DEFAULT 0,
        freezes_available INTEGER NOT NULL DEFAULT 0,
        freezes_used INTEGER NOT NULL DEFAULT 0,
        milestones JSONB NOT NULL DEFAULT '[]'::jsonb
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS habit_completions (
        id TEXT PRIMARY KEY,
        goal_id TEXT NOT NULL REFERENCES habit_goals (id) ON DELETE CASCADE,
        owner_id TEXT NOT NULL,
        completed_at TIMESTAMPTZ NOT NULL,
        timezone TEXT NOT NULL,
        local_date DATE NOT NULL,
        difficulty TEXT NOT NULL,
        note TEXT NOT NULL DEFAULT '',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        reverted_at TIMESTAMPTZ,
        protected BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_habit_completions_active_day
        ON habit_completions (goal_id, local_date) WHERE is_active
    """,
    """
    CREATE TABLE IF NOT EXISTS nudge_cooldowns (
        sender_id TEXT NOT NULL,
        goal_id TEXT NOT NULL,
        cooldown_until TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (sender_id, goal_id)
    )
    """,
)

GOAL_COLUMNS = (
    "id, owner_id, description, frequency, target_days, difficulty, timezone, "
    "created_at, latest_completion_date, next_deadline, current_status, red_since"
)
STREAK_COLUMNS = (
    "goal_id, owner_id, current_streak, best_streak, last_completion_date, "
    "streak_start_date, break_count, freezes_available, freezes_used, milestones"
)
COMPLETION_COLUMNS = (
    "id, goal_id, owner_id, completed_at, timezone, local_date, difficulty, "
    "note, is_active, reverted_at, protected"
)


def _rows(result: Any) -> list[dict[str, Any]]:
    columns = result.keys()
    return [dict(zip(columns, r)) for r in result.fetchall()]


def _first(result: Any) -> dict[str, Any] | None:
    rows = _rows(result)
    return rows[0] if rows else None


def _json_value(value: Any) -> Any:
    # asyncpg hands JSONB back as text unless a codec is registered
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


def goal_from_row(row: dict[str, Any]) -> Goal:
    data = dict(row)
    data["target_days"] = _json_value(data.get("target_days")) or []
    return Goal.model_validate(data)


def streak_from_row(row: dict[str, Any]) -> HabitStreak:
    data = dict(row)
    data["milestones"] = _json_value(data.get("milestones")) or []
    return HabitStreak.model_validate(data)


def completion_from_row(row: dict[str, Any]) -> CompletionEvent:
    return CompletionEvent.model_validate(row)


def goal_params(goal: Goal) -> dict[str, Any]:
    params = goal.model_dump()
    params["frequency"] = goal.frequency.value
    params["difficulty"] = goal.difficulty.value
    params["target_days"] = json.dumps(goal.target_days)
    return params


def streak_params(streak: HabitStreak) -> dict[str, Any]:
    params = streak.model_dump()
    params["milestones"] = json.dumps([m.model_dump(mode="json") for m in streak.milestones])
    return params


def completion_params(event: CompletionEvent) -> dict[str, Any]:
    params = event.model_dump()
    params["difficulty"] = event.difficulty.value
    return params


class SqlStore:
    def __init__(self, sessionmaker: async_sessionmaker) -> None:
        self._sessionmaker = sessionmaker

    async def create_tables(self, engine: AsyncEngine) -> None:
        async with engine.begin() as conn:
            for ddl in SCHEMA:
                await conn.execute(text(ddl))

    # ------------------------------------------------------------------
    # Goal transactions
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def goal_transaction(self, goal_id: str) -> AsyncIterator[UnitOfWork]:
        async with self._sessionmaker() as session:
            async with session.begin():
                row = _first(
                    await session.execute(
                        text(f"SELECT {GOAL_COLUMNS} FROM habit_goals WHERE id = :id FOR UPDATE"),
                        {"id": goal_id},
                    )
                )
                if row is None:
                    raise GoalNotFound(goal_id)
                streak_row = _first(
                    await session.execute(
                        text(f"SELECT {STREAK_COLUMNS} FROM habit_streaks WHERE goal_id = :id"),
                        {"id": goal_id},
                    )
                )
                completion_rows = _rows(
                    await session.execute(
                        text(
                            f"SELECT {COMPLETION_COLUMNS} FROM habit_completions "
                            "WHERE goal_id = :id ORDER BY completed_at"
                        ),
                        {"id": goal_id},
                    )
                )
                uow = UnitOfWork(
                    goal_from_row(row),
                    streak_from_row(streak_row) if streak_row else None,
                    [completion_from_row(r) for r in completion_rows],
                )
                yield uow
                await self._flush(session, uow)

    async def _flush(self, session: AsyncSession, uow: UnitOfWork) -> None:
        await session.execute(
            text(
                "UPDATE habit_goals SET frequency = :frequency, target_days = CAST(:target_days AS JSONB), "
                "difficulty = :difficulty, timezone = :timezone, "
                "latest_completion_date = :latest_completion_date, next_deadline = :next_deadline, "
                "current_status = :current_status, red_since = :red_since "
                "WHERE id = :id"
            ),
            goal_params(uow.goal),
        )
        if uow.streak is not None:
            await self._upsert_streak(session, uow.streak)
        for event in uow.added:
            await session.execute(
                text(
                    f"INSERT INTO habit_completions ({COMPLETION_COLUMNS}) VALUES ("
                    ":id, :goal_id, :owner_id, :completed_at, :timezone, :local_date, :difficulty, "
                    ":note, :is_active, :reverted_at, :protected)"
                ),
                completion_params(event),
            )
        for event in uow.updated:
            await session.execute(
                text(
                    "UPDATE habit_completions SET is_active = :is_active, reverted_at = :reverted_at "
                    "WHERE id = :id"
                ),
                {"id": event.id, "is_active": event.is_active, "reverted_at": event.reverted_at},
            )

    async def _upsert_streak(self, session: AsyncSession, streak: HabitStreak) -> None:
        await session.execute(
            text(
                f"INSERT INTO habit_streaks ({STREAK_COLUMNS}) VALUES ("
                ":goal_id, :owner_id, :current_streak, :best_streak, :last_completion_date, "
                ":streak_start_date, :break_count, :freezes_available, :freezes_used, CAST(:milestones AS JSONB)) "
                "ON CONFLICT (goal_id) DO UPDATE SET "
                "current_streak = EXCLUDED.current_streak, best_streak = EXCLUDED.best_streak, "
                "last_completion_date = EXCLUDED.last_completion_date, "
                "streak_start_date = EXCLUDED.streak_start_date, break_count = EXCLUDED.break_count, "
                "freezes_available = EXCLUDED.freezes_available, freezes_used = EXCLUDED.freezes_used, "
                "milestones = EXCLUDED.milestones"
            ),
            streak_params(streak),
        )

    # ------------------------------------------------------------------
    # Reads / creation
    # ------------------------------------------------------------------

    async def create_goal(self, goal: Goal, streak: HabitStreak) -> None:
        async with self._sessionmaker() as session:
            async with session.begin():
                await session.execute(
                    text(
                        f"INSERT INTO habit_goals ({GOAL_COLUMNS}) VALUES ("
                        ":id, :owner_id, :description, :frequency, CAST(:target_days AS JSONB), :difficulty, :timezone, "
                        ":created_at, :latest_completion_date, :next_deadline, :current_status, :red_since)"
                    ),
                    goal_params(goal),
                )
                await self._upsert_streak(session, streak)

    async def get_goal(self, goal_id: str) -> Goal | None:
        async with self._sessionmaker() as session:
            row = _first(
                await session.execute(
                    text(f"SELECT {GOAL_COLUMNS} FROM habit_goals WHERE id = :id"), {"id": goal_id}
                )
            )
        return goal_from_row(row) if row else None

    async def list_goals(self, owner_id: str) -> list[Goal]:
        async with self._sessionmaker() as session:
            rows = _rows(
                await session.execute(
                    text(f"SELECT {GOAL_COLUMNS} FROM habit_goals WHERE owner_id = :owner_id ORDER BY created_at"),
                    {"owner_id": owner_id},
                )
            )
        return [goal_from_row(r) for r in rows]

    async def get_streak(self, goal_id: str) -> HabitStreak | None:
        async with self._sessionmaker() as session:
            row = _first(
                await session.execute(
                    text(f"SELECT {STREAK_COLUMNS} FROM habit_streaks WHERE goal_id = :id"), {"id": goal_id}
                )
            )
        return streak_from_row(row) if row else None

    async def list_completions(self, goal_id: str, include_inactive: bool = False) -> list[CompletionEvent]:
        query = f"SELECT {COMPLETION_COLUMNS} FROM habit_completions WHERE goal_id = :id"
        if not include_inactive:
            query += " AND is_active"
        query += " ORDER BY completed_at"
        async with self._sessionmaker() as session:
            rows = _rows(await session.execute(text(query), {"id": goal_id}))
        return [completion_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Nudge cooldowns
    # ------------------------------------------------------------------

    async def get_cooldown(self, sender_id: str, goal_id: str) -> NudgeCooldown | None:
        async with self._sessionmaker() as session:
            row = _first(
                await session.execute(
                    text(
                        "SELECT sender_id, goal_id, cooldown_until FROM nudge_cooldowns "
                        "WHERE sender_id = :sender_id AND goal_id = :goal_id"
                    ),
                    {"sender_id": sender_id, "goal_id": goal_id},
                )
            )
        return NudgeCooldown.model_validate(row) if row else None

    async def set_cooldown(self, cooldown: NudgeCooldown) -> None:
        async with self._sessionmaker() as session:
            async with session.begin():
                await session.execute(
                    text(
                        "INSERT INTO nudge_cooldowns (sender_id, goal_id, cooldown_until) "
                        "VALUES (:sender_id, :goal_id, :cooldown_until) "
                        "ON CONFLICT (sender_id, goal_id) DO UPDATE SET cooldown_until = EXCLUDED.cooldown_until"
                    ),
                    cooldown.model_dump(),
                )

    async def acquire_cooldown(
        self, sender_id: str, goal_id: str, now: datetime, until: datetime
    ) -> NudgeCooldown | None:
        """Conditional upsert: only replaces a cooldown that expired before ``now``."""
        async with self._sessionmaker() as session:
            async with session.begin():
                row = _first(
                    await session.execute(
                        text(
                            "INSERT INTO nudge_cooldowns (sender_id, goal_id, cooldown_until) "
                            "VALUES (:sender_id, :goal_id, :until) "
                            "ON CONFLICT (sender_id, goal_id) DO UPDATE SET cooldown_until = EXCLUDED.cooldown_until "
                            "WHERE nudge_cooldowns.cooldown_until < :now "
                            "RETURNING sender_id, goal_id, cooldown_until"
                        ),
                        {"sender_id": sender_id, "goal_id": goal_id, "until": until, "now": now},
                    )
                )
        return NudgeCooldown.model_validate(row) if row else None

    async def active_cooldowns(self, sender_id: str, now: datetime) -> list[NudgeCooldown]:
        async with self._sessionmaker() as session:
            rows = _rows(
                await session.execute(
                    text(
                        "SELECT sender_id, goal_id, cooldown_until FROM nudge_cooldowns "
                        "WHERE sender_id = :sender_id AND cooldown_until >= :now "
                        "ORDER BY cooldown_until"
                    ),
                    {"sender_id": sender_id, "now": now},
                )
            )
        return [NudgeCooldown.model_validate(r) for r in rows]

    async def clear_cooldowns(self, goal_id: str) -> int:
        async with self._sessionmaker() as session:
            async with session.begin():
                result = await session.execute(
                    text("DELETE FROM nudge_cooldowns WHERE goal_id = :goal_id"),
                    {"goal_id": goal_id},
                )
        return result.rowcount or 0
