"""Habit engine records (Pydantic v2 models)."""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from enum import Enum

from pydantic import AwareDatetime, BaseModel, Field, field_validator

WEEKDAYS: tuple[str, ...] = (
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
)


class Frequency(str, Enum):
    daily = "daily"
    weekly = "weekly"
    three_per_week = "3x_a_week"


class Difficulty(str, Enum):
    easy = "easy"
    medium = "medium"
    hard = "hard"


class StatusColor(str, Enum):
    green = "green"
    yellow = "yellow"
    red = "red"


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_weekdays(days: list[str]) -> list[str]:
    """Capitalise weekday names, drop duplicates, order Monday-first."""
    lookup = {d.lower(): d for d in WEEKDAYS}
    seen: set[str] = set()
    for raw in days:
        name = lookup.get(str(raw).strip().lower())
        if name is None:
            raise ValueError(f"Unknown weekday: {raw!r}")
        seen.add(name)
    return [d for d in WEEKDAYS if d in seen]


# ---------------------------------------------------------------------------
# Goals & completions
# ---------------------------------------------------------------------------


class Goal(BaseModel):
    id: str = Field(default_factory=_new_id)
    owner_id: str
    description: str = ""
    frequency: Frequency = Frequency.daily
    target_days: list[str] = Field(default_factory=list)
    difficulty: Difficulty = Difficulty.easy
    timezone: str = "UTC"
    created_at: AwareDatetime = Field(default_factory=_utcnow)
    latest_completion_date: AwareDatetime | None = None
    next_deadline: AwareDatetime
    current_status: str | None = None  # display hint only: "green" | "yellow" | "red"
    red_since: AwareDatetime | None = None

    @field_validator("target_days")
    @classmethod
    def _check_days(cls, v: list[str]) -> list[str]:
        return normalize_weekdays(v)


class CompletionEvent(BaseModel):
    id: str = Field(default_factory=_new_id)
    goal_id: str
    owner_id: str
    completed_at: AwareDatetime
    timezone: str
    local_date: date
    difficulty: Difficulty
    note: str = ""
    is_active: bool = True
    reverted_at: AwareDatetime | None = None
    protected: bool = False  # recorded by a streak freeze, not by the user


# ---------------------------------------------------------------------------
# Streaks
# ---------------------------------------------------------------------------


class StreakMilestone(BaseModel):
    days: int
    achieved_at: AwareDatetime
    celebrated: bool = False


class HabitStreak(BaseModel):
    goal_id: str
    owner_id: str
    current_streak: int = 0
    best_streak: int = 0
    last_completion_date: date | None = None
    streak_start_date: date | None = None
    break_count: int = 0
    freezes_available: int = 0
    freezes_used: int = 0
    milestones: list[StreakMilestone] = Field(default_factory=list)

    def milestone_days(self) -> set[int]:
        return {m.days for m in self.milestones}


class StreakUpdateResult(BaseModel):
    completion: CompletionEvent
    streak: HabitStreak
    previous_streak: int
    contiguous: bool
    streak_broken: bool
    new_milestones: list[StreakMilestone] = Field(default_factory=list)
    next_deadline: AwareDatetime


class CalendarDay(BaseModel):
    day: date
    completed: bool
    is_today: bool
    is_in_streak: bool
    protected: bool = False
    completion_time: AwareDatetime | None = None
    note: str | None = None


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


class GoalStatus(BaseModel):
    color: StatusColor
    priority: int  # 1 = most urgent
    text: str
    nudge_eligible: bool


class ClassifiedGoal(BaseModel):
    goal: Goal
    status: GoalStatus


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


class HabitScore(BaseModel):
    goal_id: str
    raw_score: int
    adjusted_score: int
    difficulty: Difficulty
    multiplier: float
    streak_length: int
    best_streak: int = 0
    total_completions: int = 0


class NormalizedScore(BaseModel):
    goal_id: str
    difficulty: Difficulty
    normalized_score: int
    percentile: int
    rank: int
    total_habits: int


class RecognitionLevel(BaseModel):
    level: str  # "bronze" | "silver" | "gold" | "platinum" | "diamond"
    title: str
    description: str
    threshold: float
    is_hard_habit_bonus: bool


class OverallUserScore(BaseModel):
    total_raw_score: int
    total_adjusted_score: int
    average_multiplier: float
    hard_habit_count: int
    total_habits: int
    overall_level: RecognitionLevel


class ScoreProgression(BaseModel):
    raw_score_change: int
    adjusted_score_change: int
    progress_percentage: int
    trend: str  # "improving" | "stable" | "declining"


# ---------------------------------------------------------------------------
# Nudges
# ---------------------------------------------------------------------------


class NudgeCooldown(BaseModel):
    sender_id: str
    goal_id: str
    cooldown_until: AwareDatetime
