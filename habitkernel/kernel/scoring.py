"""Difficulty-weighted habit scores, per-tier normalization and recognition tiers.

Pure functions over streak snapshots; no clock and no store access.

    raw      = current*10 + completions*2 + best*5
    adjusted = round_half_up(raw * multiplier)     easy 1.0, medium 1.5, hard 2.0
"""

from __future__ import annotations

import math

from habitkernel.kernel.models import (
    Difficulty,
    Goal,
    HabitScore,
    HabitStreak,
    NormalizedScore,
    OverallUserScore,
    RecognitionLevel,
    ScoreProgression,
)

DIFFICULTY_MULTIPLIERS: dict[Difficulty, float] = {
    Difficulty.easy: 1.0,
    Difficulty.medium: 1.5,
    Difficulty.hard: 2.0,
}

STREAK_POINTS = 10
COMPLETION_POINTS = 2
BEST_STREAK_POINTS = 5

HARD_THRESHOLD_SCALE = 0.8

# (level, base threshold, hard title, hard description, title, description), highest first
TIERS: tuple[tuple[str, int, str, str, str, str], ...] = (
    (
        "diamond",
        1000,
        "Diamond Warrior",
        "Mastered the most challenging habits with exceptional consistency",
        "Diamond Achiever",
        "Achieved exceptional consistency and dedication",
    ),
    (
        "platinum",
        500,
        "Platinum Champion",
        "Conquered difficult habits with remarkable persistence",
        "Platinum Performer",
        "Demonstrated remarkable consistency and growth",
    ),
    (
        "gold",
        250,
        "Gold Conqueror",
        "Overcame challenging habits with strong determination",
        "Gold Standard",
        "Maintained excellent habit consistency",
    ),
    (
        "silver",
        100,
        "Silver Challenger",
        "Tackled difficult habits with growing confidence",
        "Silver Streak",
        "Built solid habit foundations",
    ),
    (
        "bronze",
        50,
        "Bronze Brave",
        "Courageously started challenging habits",
        "Bronze Builder",
        "Beginning the journey of habit formation",
    ),
)

# (level, threshold, title, description), highest first; the last rung is the floor
OVERALL_LADDER: tuple[tuple[str, int, str, str], ...] = (
    ("diamond", 2000, "Habit Master", "Achieved mastery across multiple challenging habits"),
    ("platinum", 1000, "Habit Expert", "Demonstrated expertise in habit formation and maintenance"),
    ("gold", 500, "Habit Enthusiast", "Built strong foundations across multiple habits"),
    ("silver", 200, "Habit Builder", "Making steady progress in habit development"),
    ("bronze", 50, "Habit Starter", "Beginning the journey of positive change"),
)


def round_half_up(value: float) -> int:
    # Python's round() is banker's rounding; scores round .5 upwards
    return math.floor(value + 0.5)


# ---------------------------------------------------------------------------
# Per-habit scores
# ---------------------------------------------------------------------------


def score_habit(streak: HabitStreak, difficulty: Difficulty | str, total_completions: int = 0) -> HabitScore:
    difficulty = Difficulty(difficulty)
    multiplier = DIFFICULTY_MULTIPLIERS[difficulty]
    raw = (
        streak.current_streak * STREAK_POINTS
        + total_completions * COMPLETION_POINTS
        + streak.best_streak * BEST_STREAK_POINTS
    )
    return HabitScore(
        goal_id=streak.goal_id,
        raw_score=raw,
        adjusted_score=round_half_up(raw * multiplier),
        difficulty=difficulty,
        multiplier=multiplier,
        streak_length=streak.current_streak,
        best_streak=streak.best_streak,
        total_completions=total_completions,
    )


def score_habits(
    streaks: list[HabitStreak],
    goals: list[Goal],
    completion_counts: dict[str, int] | None = None,
) -> list[HabitScore]:
    """Score every streak whose goal is known; streaks without a goal are skipped."""
    by_id = {g.id: g for g in goals}
    counts = completion_counts or {}
    scores = []
    for streak in streaks:
        goal = by_id.get(streak.goal_id)
        if goal is None:
            continue
        scores.append(score_habit(streak, goal.difficulty, counts.get(streak.goal_id, 0)))
    return scores


def normalize(scores: list[HabitScore]) -> list[NormalizedScore]:
    """Rank scores within their own difficulty tier, best raw score first."""
    result: list[NormalizedScore] = []
    for difficulty in Difficulty:
        tier = sorted((s for s in scores if s.difficulty == difficulty), key=lambda s: s.raw_score, reverse=True)
        n = len(tier)
        for index, score in enumerate(tier):
            percentile = 100 if n == 1 else round_half_up((n - 1 - index) / (n - 1) * 100)
            result.append(
                NormalizedScore(
                    goal_id=score.goal_id,
                    difficulty=difficulty,
                    normalized_score=score.adjusted_score,
                    percentile=percentile,
                    rank=index + 1,
                    total_habits=n,
                )
            )
    return result


def percentile_bonus(percentile: int) -> float:
    if percentile >= 90:
        return 1.2
    if percentile >= 75:
        return 1.1
    return 1.0


def recognition_level(score: HabitScore, normalized: NormalizedScore) -> RecognitionLevel:
    is_hard = score.difficulty == Difficulty.hard
    scale = HARD_THRESHOLD_SCALE if is_hard else 1.0
    effective = score.adjusted_score * percentile_bonus(normalized.percentile)

    tier = next((t for t in TIERS if effective >= t[1] * scale), TIERS[-1])
    level, base, hard_title, hard_desc, title, desc = tier
    return RecognitionLevel(
        level=level,
        title=hard_title if is_hard else title,
        description=hard_desc if is_hard else desc,
        threshold=base * scale,
        is_hard_habit_bonus=is_hard,
    )


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------


def overall_user_score(scores: list[HabitScore]) -> OverallUserScore:
    if not scores:
        return OverallUserScore(
            total_raw_score=0,
            total_adjusted_score=0,
            average_multiplier=1.0,
            hard_habit_count=0,
            total_habits=0,
            overall_level=RecognitionLevel(
                level="bronze",
                title="Getting Started",
                description="Ready to begin your habit journey",
                threshold=0,
                is_hard_habit_bonus=False,
            ),
        )

    total_raw = sum(s.raw_score for s in scores)
    total_adjusted = sum(s.adjusted_score for s in scores)
    hard_count = sum(1 for s in scores if s.difficulty == Difficulty.hard)
    bonus = 1 + hard_count * 0.1 if hard_count > 0 else 1.0
    effective = total_adjusted * bonus

    level, threshold, title, description = next(
        (rung for rung in OVERALL_LADDER if effective >= rung[1]), OVERALL_LADDER[-1]
    )

    return OverallUserScore(
        total_raw_score=total_raw,
        total_adjusted_score=total_adjusted,
        average_multiplier=sum(s.multiplier for s in scores) / len(scores),
        hard_habit_count=hard_count,
        total_habits=len(scores),
        overall_level=RecognitionLevel(
            level=level,
            title=title,
            description=description,
            threshold=threshold,
            is_hard_habit_bonus=hard_count > 0,
        ),
    )


def score_progression(current: HabitScore, previous: HabitScore | None = None) -> ScoreProgression:
    if previous is None:
        return ScoreProgression(
            raw_score_change=current.raw_score,
            adjusted_score_change=current.adjusted_score,
            progress_percentage=100,
            trend="improving",
        )

    raw_change = current.raw_score - previous.raw_score
    adjusted_change = current.adjusted_score - previous.adjusted_score
    if previous.adjusted_score > 0:
        percentage = round_half_up(adjusted_change / previous.adjusted_score * 100)
    else:
        percentage = 100

    if adjusted_change > 0:
        trend = "improving"
    elif adjusted_change == 0:
        trend = "stable"
    else:
        trend = "declining"

    return ScoreProgression(
        raw_score_change=raw_change,
        adjusted_score_change=adjusted_change,
        progress_percentage=percentage,
        trend=trend,
    )
