"""Application errors for the streak and scoring engine.

Every rejected operation surfaces as a ``HabitKernelError`` subclass carrying
an error code, an HTTP status for the API layer and structured details (ids,
dates) so callers can pick the user-facing message. Nothing here is retried
or downgraded to a no-op by the engine itself.
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    INTERNAL_ERROR = "INTERNAL_ERROR"
    UNAUTHORIZED = "UNAUTHORIZED"
    VALIDATION_ERROR = "VALIDATION_ERROR"

    ALREADY_COMPLETED_TODAY = "ALREADY_COMPLETED_TODAY"
    FUTURE_COMPLETION_REJECTED = "FUTURE_COMPLETION_REJECTED"
    INVALID_TIMEZONE = "INVALID_TIMEZONE"
    INVALID_GOAL_DEFINITION = "INVALID_GOAL_DEFINITION"

    SELF_NUDGE_REJECTED = "SELF_NUDGE_REJECTED"
    NUDGE_COOLDOWN_ACTIVE = "NUDGE_COOLDOWN_ACTIVE"

    GOAL_NOT_FOUND = "GOAL_NOT_FOUND"
    STREAK_NOT_FOUND = "STREAK_NOT_FOUND"
    COMPLETION_NOT_FOUND = "COMPLETION_NOT_FOUND"
    MILESTONE_NOT_FOUND = "MILESTONE_NOT_FOUND"

    STREAK_INTEGRITY_VIOLATION = "STREAK_INTEGRITY_VIOLATION"
    NO_FREEZE_AVAILABLE = "NO_FREEZE_AVAILABLE"
    INVALID_FREEZE_DATE = "INVALID_FREEZE_DATE"


class HabitKernelError(Exception):
    """Base exception for all engine errors.

    Attributes:
        message: Human-readable error message
        code: Error code from ErrorCode enum
        status_code: HTTP status code for API responses
        details: Dictionary with the ids/values relevant to the failure
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response."""
        result: dict[str, Any] = {
            "error": {
                "code": self.code.value,
                "message": self.message,
            }
        }
        if self.details:
            result["error"]["details"] = self.details
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code.value}, message={self.message!r})"


# ---------------------------------------------------------------------------
# Validation (422)
# ---------------------------------------------------------------------------


class InvalidTimezone(HabitKernelError):
    def __init__(self, tz_name: str | None) -> None:
        super().__init__(
            f"Invalid timezone identifier: {tz_name!r}",
            code=ErrorCode.INVALID_TIMEZONE,
            status_code=422,
            details={"timezone": tz_name},
        )


class InvalidGoalDefinition(HabitKernelError):
    def __init__(self, message: str, field: str | None = None) -> None:
        details = {"field": field} if field else {}
        super().__init__(
            message,
            code=ErrorCode.INVALID_GOAL_DEFINITION,
            status_code=422,
            details=details,
        )


class FutureCompletionRejected(HabitKernelError):
    def __init__(self, goal_id: str, completion_date: date, current_date: date) -> None:
        super().__init__(
            f"Cannot record a completion for future date {completion_date.isoformat()}",
            code=ErrorCode.FUTURE_COMPLETION_REJECTED,
            status_code=422,
            details={
                "goal_id": goal_id,
                "completion_date": completion_date.isoformat(),
                "current_date": current_date.isoformat(),
            },
        )


# ---------------------------------------------------------------------------
# Conflicts (409)
# ---------------------------------------------------------------------------


class AlreadyCompletedToday(HabitKernelError):
    def __init__(self, goal_id: str, local_date: date) -> None:
        super().__init__(
            f"Goal already completed for {local_date.isoformat()}",
            code=ErrorCode.ALREADY_COMPLETED_TODAY,
            status_code=409,
            details={"goal_id": goal_id, "local_date": local_date.isoformat()},
        )


class StreakIntegrityViolation(HabitKernelError):
    """Raised when an incremental revert cannot be reconciled with stored state.

    The tracker catches it internally and falls back to a full replay of the
    completion history; it is only ever propagated when even the replay fails.
    """

    def __init__(self, goal_id: str, reason: str) -> None:
        super().__init__(
            f"Streak state for goal {goal_id} is inconsistent: {reason}",
            code=ErrorCode.STREAK_INTEGRITY_VIOLATION,
            status_code=409,
            details={"goal_id": goal_id, "reason": reason},
        )


class InvalidFreezeDate(HabitKernelError):
    def __init__(self, goal_id: str, missed_date: date) -> None:
        super().__init__(
            "A streak freeze can only cover a past date",
            code=ErrorCode.INVALID_FREEZE_DATE,
            status_code=422,
            details={"goal_id": goal_id, "missed_date": missed_date.isoformat()},
        )


class NoFreezeAvailable(HabitKernelError):
    def __init__(self, goal_id: str) -> None:
        super().__init__(
            "No streak freeze available",
            code=ErrorCode.NO_FREEZE_AVAILABLE,
            status_code=409,
            details={"goal_id": goal_id},
        )


# ---------------------------------------------------------------------------
# Nudges
# ---------------------------------------------------------------------------


class SelfNudgeRejected(HabitKernelError):
    def __init__(self, sender_id: str, goal_id: str) -> None:
        super().__init__(
            "Cannot nudge yourself",
            code=ErrorCode.SELF_NUDGE_REJECTED,
            status_code=403,
            details={"sender_id": sender_id, "goal_id": goal_id},
        )


class NudgeCooldownActive(HabitKernelError):
    def __init__(self, sender_id: str, goal_id: str, cooldown_until: datetime, remaining_minutes: int) -> None:
        super().__init__(
            f"Please wait {remaining_minutes} minutes before nudging again",
            code=ErrorCode.NUDGE_COOLDOWN_ACTIVE,
            status_code=429,
            details={
                "sender_id": sender_id,
                "goal_id": goal_id,
                "cooldown_until": cooldown_until.isoformat(),
                "remaining_minutes": remaining_minutes,
            },
        )
        self.remaining_minutes = remaining_minutes
        self.cooldown_until = cooldown_until


# ---------------------------------------------------------------------------
# Not found (404)
# ---------------------------------------------------------------------------


class NotFoundError(HabitKernelError):
    def __init__(self, resource_type: str, resource_id: str, code: ErrorCode) -> None:
        super().__init__(
            f"{resource_type} with ID '{resource_id}' not found",
            code=code,
            status_code=404,
            details={"resource_type": resource_type, "resource_id": resource_id},
        )


class GoalNotFound(NotFoundError):
    def __init__(self, goal_id: str) -> None:
        super().__init__("Goal", goal_id, ErrorCode.GOAL_NOT_FOUND)


class StreakNotFound(NotFoundError):
    def __init__(self, goal_id: str) -> None:
        super().__init__("Streak", goal_id, ErrorCode.STREAK_NOT_FOUND)


class CompletionNotFound(NotFoundError):
    def __init__(self, goal_id: str, completed_at: datetime) -> None:
        super().__init__("Completion", f"{goal_id}@{completed_at.isoformat()}", ErrorCode.COMPLETION_NOT_FOUND)


class MilestoneNotFound(NotFoundError):
    def __init__(self, goal_id: str, days: int) -> None:
        super().__init__("Milestone", f"{goal_id}@{days}", ErrorCode.MILESTONE_NOT_FOUND)
