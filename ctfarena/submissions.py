"""
Flag submission pipeline.

A submission passes a series of gates (event running, flag shape,
challenge open, user allowed, not solved yet, not throttled) before the
flag is compared. Gates that fail leave no trace in the submission log;
every compared flag does, right or wrong.
"""

import logging
import re
from typing import Any, Optional, Pattern

from . import scoring
from .broadcast import SUBMISSIONS, LiveBroadcaster
from .errors import EventNotActive
from .event_state import EventStateStore
from .models import (
    EventStatus,
    RejectReason,
    SubmissionOutcome,
    SubmissionResult,
)
from .rate_limiter import SubmissionRateLimiter

logger = logging.getLogger(__name__)

# Flags may legitimately contain markup characters; nothing is escaped.
FLAG_BODY_CHARS = r"[A-Za-z0-9_\-\+\*/=!@#\$%\^&\(\)\[\]\{\}:;,\.\?\s]+"


def flag_pattern(prefix: str) -> Pattern[str]:
    """Regular expression a submitted flag has to match, e.g. CTF{...}."""
    return re.compile(rf"^{re.escape(prefix)}\{{{FLAG_BODY_CHARS}\}}\Z")


def _rejected(reason: RejectReason, **extra: Any) -> SubmissionResult:
    return SubmissionResult(outcome=SubmissionOutcome.REJECTED, reason=reason, **extra)


class SubmissionProcessor:
    """Validates, checks and records flag submissions."""

    def __init__(
        self,
        db: Any,
        events: EventStateStore,
        rate_limiter: SubmissionRateLimiter,
        broadcaster: LiveBroadcaster,
        config: Any,
    ) -> None:
        self.db = db
        self.events = events
        self.rate_limiter = rate_limiter
        self.broadcaster = broadcaster
        self.config = config
        self.flag_re = flag_pattern(config.get("flag", "prefix"))

    def validate_flag(
        self,
        flag_text: Any,
    ) -> Optional[str]:
        """
        Check the flag wrapper format.

        @param flag_text: Raw value from the request
        @return: Trimmed flag, None when malformed
        """
        if not flag_text or not isinstance(flag_text, str):
            return None
        if not self.flag_re.fullmatch(flag_text):
            return None
        return flag_text.strip()

    async def submit(
        self,
        user_id: int,
        challenge_id: int,
        flag_text: Any,
        ip_address: str = "",
        user_agent: str = "",
    ) -> SubmissionResult:
        """
        Process one flag submission.

        @param user_id: Submitting user
        @param challenge_id: Target challenge
        @param flag_text: Submitted flag as received
        @param ip_address: Client address, kept in the audit trail
        @param user_agent: Client user agent, kept in the audit trail
        @return: accepted, incorrect, duplicate_solve or rejected with a reason
        """
        state = await self.events.get_state()
        if state.status is not EventStatus.STARTED:
            return _rejected(RejectReason.EVENT_NOT_ACTIVE)

        submitted_flag = self.validate_flag(flag_text)
        if submitted_flag is None:
            return _rejected(RejectReason.INVALID_FLAG_FORMAT)

        try:
            return await self._process(
                user_id, challenge_id, submitted_flag, ip_address, user_agent
            )
        except Exception:
            logger.exception(
                "Flag submission failed for user %s on challenge %s",
                user_id,
                challenge_id,
            )
            raise

    async def _process(
        self,
        user_id: int,
        challenge_id: int,
        submitted_flag: str,
        ip_address: str,
        user_agent: str,
    ) -> SubmissionResult:
        challenge = await self.db.get_challenge(challenge_id)
        if challenge is None:
            return _rejected(RejectReason.CHALLENGE_NOT_FOUND)
        if not challenge.submissions_allowed:
            return _rejected(RejectReason.SUBMISSIONS_CLOSED)

        user = await self.db.get_user(user_id)
        if user is None:
            return _rejected(RejectReason.USER_NOT_FOUND)
        if user.is_blocked:
            return _rejected(RejectReason.USER_BLOCKED)
        if not user.can_submit_flags:
            return _rejected(RejectReason.SUBMISSION_FORBIDDEN)

        if await self.db.has_solved(user_id, challenge_id):
            return SubmissionResult(
                outcome=SubmissionOutcome.DUPLICATE_SOLVE,
                challenge_title=challenge.title,
            )

        limiter_key = self.rate_limiter.key_for(user_id, challenge_id)
        decision = self.rate_limiter.check_allowed(limiter_key)
        if not decision.allowed:
            return _rejected(
                RejectReason.RATE_LIMITED,
                remaining_seconds=decision.remaining_seconds,
            )

        if submitted_flag != challenge.flag.strip():
            submission = await self.db.record_submission(
                user_id, challenge_id, submitted_flag, ip_address, user_agent
            )
            self.rate_limiter.record_failure(limiter_key)
            logger.info("Incorrect flag from user %s on challenge %s", user_id, challenge_id)
            self._announce(user, challenge, submission.points, False, submission.submitted_at)
            return SubmissionResult(
                outcome=SubmissionOutcome.INCORRECT,
                submitted_at=submission.submitted_at,
                challenge_title=challenge.title,
            )

        try:
            submission = await self.db.record_correct_submission(
                user_id,
                challenge_id,
                submitted_flag,
                price=lambda solves: scoring.current_value(
                    challenge,
                    solves,
                    default_decay=self.config.get("scoring", "default_decay"),
                    minimum_ratio=self.config.get("scoring", "minimum_ratio"),
                ),
                ip_address=ip_address,
                user_agent=user_agent,
            )
        except EventNotActive:
            logger.info(
                "Solve by user %s on challenge %s refused, event no longer running",
                user_id,
                challenge_id,
            )
            return _rejected(RejectReason.EVENT_NOT_ACTIVE)
        if submission is None:
            return SubmissionResult(
                outcome=SubmissionOutcome.DUPLICATE_SOLVE,
                challenge_title=challenge.title,
            )

        self.rate_limiter.clear(limiter_key)
        logger.info(
            "User %s solved challenge %s (%s) for %d points",
            user_id,
            challenge_id,
            challenge.title,
            submission.points,
        )
        self._announce(user, challenge, submission.points, True, submission.submitted_at)

        return SubmissionResult(
            outcome=SubmissionOutcome.ACCEPTED,
            points_awarded=submission.points,
            submitted_at=submission.submitted_at,
            challenge_title=challenge.title,
        )

    def _announce(self, user, challenge, points, is_correct, submitted_at) -> None:
        self.broadcaster.publish(
            SUBMISSIONS,
            {
                "type": "submission",
                "user_id": user.id,
                "username": user.username,
                "challenge_id": challenge.id,
                "challenge_title": challenge.title,
                "is_correct": is_correct,
                "points": points,
                "submitted_at": submitted_at,
            },
        )
