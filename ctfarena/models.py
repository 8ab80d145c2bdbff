"""
Domain types shared by the storage layer and the services.
"""

import math
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> str:
    """Current UTC time as an ISO-8601 string (the storage format)."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


class EventStatus(str, Enum):
    NOT_STARTED = "not_started"
    STARTED = "started"
    ENDED = "ended"


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


class Category(str, Enum):
    WEB = "web"
    CRYPTO = "crypto"
    FORENSICS = "forensics"
    REVERSE = "reverse"
    OSINT = "osint"
    MISC = "misc"


class Difficulty(str, Enum):
    EASY = "Easy"
    MEDIUM = "Medium"
    HARD = "Hard"
    EXPERT = "Expert"


class SubmissionOutcome(str, Enum):
    ACCEPTED = "accepted"
    INCORRECT = "incorrect"
    DUPLICATE_SOLVE = "duplicate_solve"
    REJECTED = "rejected"


class RejectReason(str, Enum):
    EVENT_NOT_ACTIVE = "event_not_active"
    INVALID_FLAG_FORMAT = "invalid_flag_format"
    CHALLENGE_NOT_FOUND = "challenge_not_found"
    SUBMISSIONS_CLOSED = "submissions_closed"
    USER_NOT_FOUND = "user_not_found"
    USER_BLOCKED = "user_blocked"
    SUBMISSION_FORBIDDEN = "submission_forbidden"
    RATE_LIMITED = "rate_limited"


@dataclass
class DynamicScoring:
    """CTFd-style decay settings. Zero values fall back to defaults."""

    enabled: bool = False
    initial: int = 0
    minimum: int = 0
    decay: int = 0


@dataclass
class Challenge:
    id: int
    title: str
    description: str
    category: str
    difficulty: str
    points: int
    flag: str = field(repr=False, default="")
    dynamic_scoring: DynamicScoring = field(default_factory=DynamicScoring)
    is_visible: bool = True
    submissions_allowed: bool = True
    solve_count: int = 0
    created_at: Optional[str] = None

    def to_dict(
        self,
        include_flag: bool = False,
        current_value: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Serialize for API responses.

        @param include_flag: Include the secret flag (admin editing only)
        @param current_value: Current point value to expose alongside static points
        @return: JSON-ready dictionary
        """
        data = asdict(self)
        data.pop("flag")
        if include_flag:
            data["flag"] = self.flag
        if current_value is not None:
            data["current_value"] = current_value
        return data


@dataclass
class User:
    id: int
    username: str
    role: str = Role.USER.value
    email: Optional[str] = None
    points: int = 0
    last_solve_time: Optional[str] = None
    can_submit_flags: bool = True
    is_blocked: bool = False
    blocked_reason: Optional[str] = None
    show_in_scoreboard: bool = True
    team_id: Optional[int] = None
    created_at: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Team:
    id: int
    name: str
    description: str = ""
    max_members: Optional[int] = None
    created_by: Optional[int] = None
    created_at: Optional[str] = None
    members: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def points(self) -> int:
        # derived, never stored
        return sum(member.get("points", 0) for member in self.members)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["points"] = self.points
        return data


@dataclass
class Submission:
    id: int
    user_id: int
    challenge_id: int
    submitted_flag: str
    is_correct: bool
    points: int
    submitted_at: str
    ip_address: str = ""
    user_agent: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EventState:
    status: EventStatus = EventStatus.NOT_STARTED
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    started_by: Optional[int] = None
    ended_by: Optional[int] = None
    cycle: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EventState":
        return cls(
            status=EventStatus(data.get("status", EventStatus.NOT_STARTED.value)),
            started_at=data.get("started_at"),
            ended_at=data.get("ended_at"),
            started_by=data.get("started_by"),
            ended_by=data.get("ended_by"),
            cycle=data.get("cycle", 0),
        )


@dataclass
class RateLimitDecision:
    allowed: bool
    remaining_seconds: Optional[int] = None

    @classmethod
    def deny(cls, remaining: float) -> "RateLimitDecision":
        return cls(allowed=False, remaining_seconds=int(math.ceil(remaining)))


@dataclass
class SubmissionResult:
    """What a flag submission came to."""

    outcome: SubmissionOutcome
    reason: Optional[RejectReason] = None
    points_awarded: int = 0
    remaining_seconds: Optional[int] = None
    submitted_at: Optional[str] = None
    challenge_title: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.outcome is SubmissionOutcome.ACCEPTED

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "outcome": self.outcome.value,
            "points_awarded": self.points_awarded,
        }
        if self.reason is not None:
            data["reason"] = self.reason.value
        if self.remaining_seconds is not None:
            data["remaining_seconds"] = self.remaining_seconds
        if self.submitted_at is not None:
            data["submitted_at"] = self.submitted_at
        return data
