import asyncio

import pytest

from ctfarena.broadcast import SUBMISSIONS
from ctfarena.cache import MemoryCache
from ctfarena.models import RejectReason, SubmissionOutcome
from ctfarena.submissions import flag_pattern
from ctfarena.system import CTFPlatform

from .conftest import make_challenge, make_user


@pytest.fixture
async def live(platform, admin):
    await platform.events.start(admin.id)
    return platform


@pytest.mark.parametrize(
    "flag",
    ["CTF{abc}", "CTF{a_b-c+d*e/f=g!h@i#j$k%l^m&n(o)p[q]r{s}t:u;v,w.x?y}", "CTF{with space}"],
)
def test_flag_pattern_accepts(flag):
    assert flag_pattern("CTF").match(flag)


@pytest.mark.parametrize(
    "flag",
    [
        "abc",
        "CTF{}",
        "FLAG{abc}",
        "CTF{abc",
        "CTF{<script>}",
        " CTF{abc}",
        "CTF{abc}x",
        "CTF{abc}\n",
    ],
)
def test_flag_pattern_rejects(flag):
    assert not flag_pattern("CTF").match(flag)


async def test_rejected_before_event_starts(platform):
    user = await make_user(platform, "alice")
    challenge = await make_challenge(platform)

    result = await platform.processor.submit(user.id, challenge.id, "CTF{warmup}")
    assert result.outcome is SubmissionOutcome.REJECTED
    assert result.reason is RejectReason.EVENT_NOT_ACTIVE
    assert await platform.db.list_submissions() == []


async def test_correct_flag_is_accepted(live):
    user = await make_user(live, "alice")
    challenge = await make_challenge(live, points=150)

    result = await live.processor.submit(user.id, challenge.id, "CTF{warmup}", "10.0.0.1", "curl")
    assert result.outcome is SubmissionOutcome.ACCEPTED
    assert result.points_awarded == 150
    assert result.submitted_at

    user = await live.db.get_user(user.id)
    assert user.points == 150
    assert user.last_solve_time == result.submitted_at

    rows = await live.db.list_submissions(user_id=user.id)
    assert len(rows) == 1
    assert rows[0]["is_correct"] is True
    assert rows[0]["ip_address"] == "10.0.0.1"
    assert rows[0]["user_agent"] == "curl"

    challenge = await live.db.get_challenge(challenge.id)
    assert challenge.solve_count == 1


async def test_incorrect_flag_is_logged(live):
    user = await make_user(live, "alice")
    challenge = await make_challenge(live)

    result = await live.processor.submit(user.id, challenge.id, "CTF{nope}")
    assert result.outcome is SubmissionOutcome.INCORRECT

    rows = await live.db.list_submissions()
    assert len(rows) == 1
    assert rows[0]["is_correct"] is False
    assert rows[0]["points"] == 0
    assert (await live.db.get_user(user.id)).points == 0


async def test_invalid_format_leaves_no_audit_row(live):
    user = await make_user(live, "alice")
    challenge = await make_challenge(live)

    for flag in ("warmup", None, 42, "FLAG{warmup}"):
        result = await live.processor.submit(user.id, challenge.id, flag)
        assert result.reason is RejectReason.INVALID_FLAG_FORMAT

    assert await live.db.list_submissions() == []


async def test_missing_challenge_and_user(live):
    user = await make_user(live, "alice")
    challenge = await make_challenge(live)

    result = await live.processor.submit(user.id, 999, "CTF{warmup}")
    assert result.reason is RejectReason.CHALLENGE_NOT_FOUND

    result = await live.processor.submit(999, challenge.id, "CTF{warmup}")
    assert result.reason is RejectReason.USER_NOT_FOUND


async def test_closed_challenge(live):
    user = await make_user(live, "alice")
    challenge = await make_challenge(live, submissions_allowed=False)

    result = await live.processor.submit(user.id, challenge.id, "CTF{warmup}")
    assert result.reason is RejectReason.SUBMISSIONS_CLOSED


async def test_blocked_and_forbidden_users(live):
    blocked = await make_user(live, "mallory", is_blocked=True)
    muted = await make_user(live, "eve", can_submit_flags=False)
    challenge = await make_challenge(live)

    result = await live.processor.submit(blocked.id, challenge.id, "CTF{warmup}")
    assert result.reason is RejectReason.USER_BLOCKED

    result = await live.processor.submit(muted.id, challenge.id, "CTF{warmup}")
    assert result.reason is RejectReason.SUBMISSION_FORBIDDEN

    assert await live.db.list_submissions() == []


async def test_resubmission_is_duplicate_and_awards_nothing(live):
    user = await make_user(live, "alice")
    challenge = await make_challenge(live)

    first = await live.processor.submit(user.id, challenge.id, "CTF{warmup}")
    second = await live.processor.submit(user.id, challenge.id, "CTF{warmup}")

    assert first.outcome is SubmissionOutcome.ACCEPTED
    assert second.outcome is SubmissionOutcome.DUPLICATE_SOLVE
    assert second.points_awarded == 0
    assert (await live.db.get_user(user.id)).points == 100
    assert len(await live.db.list_submissions(correct_only=True)) == 1


async def test_wrong_flag_after_solve_is_duplicate(live):
    user = await make_user(live, "alice")
    challenge = await make_challenge(live)
    await live.processor.submit(user.id, challenge.id, "CTF{warmup}")

    result = await live.processor.submit(user.id, challenge.id, "CTF{other}")
    assert result.outcome is SubmissionOutcome.DUPLICATE_SOLVE


async def test_concurrent_correct_submissions_credit_once(live):
    user = await make_user(live, "alice")
    challenge = await make_challenge(live)

    results = await asyncio.gather(
        *(live.processor.submit(user.id, challenge.id, "CTF{warmup}") for _ in range(5))
    )
    outcomes = [r.outcome for r in results]

    assert outcomes.count(SubmissionOutcome.ACCEPTED) == 1
    assert outcomes.count(SubmissionOutcome.DUPLICATE_SOLVE) == 4
    assert (await live.db.get_user(user.id)).points == 100
    assert (await live.db.get_challenge(challenge.id)).solve_count == 1
    assert len(await live.db.list_submissions(correct_only=True)) == 1


async def test_sixth_wrong_attempt_is_rate_limited(live, clock):
    user = await make_user(live, "alice")
    challenge = await make_challenge(live)

    for _ in range(5):
        result = await live.processor.submit(user.id, challenge.id, "CTF{nope}")
        assert result.outcome is SubmissionOutcome.INCORRECT
        clock.advance(1)

    result = await live.processor.submit(user.id, challenge.id, "CTF{warmup}")
    assert result.reason is RejectReason.RATE_LIMITED
    assert result.remaining_seconds == 30

    # throttled attempts are not logged
    assert len(await live.db.list_submissions()) == 5

    clock.advance(61)
    result = await live.processor.submit(user.id, challenge.id, "CTF{warmup}")
    assert result.outcome is SubmissionOutcome.ACCEPTED


async def test_solve_clears_rate_limiter(live):
    user = await make_user(live, "alice")
    challenge = await make_challenge(live)
    key = live.rate_limiter.key_for(user.id, challenge.id)

    await live.processor.submit(user.id, challenge.id, "CTF{nope}")
    assert key in live.rate_limiter

    await live.processor.submit(user.id, challenge.id, "CTF{warmup}")
    assert key not in live.rate_limiter


async def test_flags_are_compared_after_trimming(live):
    user = await make_user(live, "alice")
    challenge = await make_challenge(live, flag="CTF{spaced} ")

    result = await live.processor.submit(user.id, challenge.id, "CTF{spaced}")
    assert result.outcome is SubmissionOutcome.ACCEPTED


async def test_dynamic_value_is_locked_at_solve_time(live):
    challenge = await make_challenge(
        live,
        points=100,
        dynamic_enabled=True,
        dynamic_initial=500,
        dynamic_minimum=100,
        dynamic_decay=2,
    )
    users = [await make_user(live, f"player{i}") for i in range(3)]

    awarded = []
    for user in users:
        result = await live.processor.submit(user.id, challenge.id, "CTF{warmup}")
        awarded.append(result.points_awarded)

    # 0 solves -> 500, 1 solve -> 400, 2 solves -> minimum
    assert awarded == [500, 400, 100]
    assert (await live.db.get_user(users[0].id)).points == 500


async def test_submission_after_end_is_rejected(live, admin):
    user = await make_user(live, "alice")
    challenge = await make_challenge(live)
    await live.processor.submit(user.id, challenge.id, "CTF{warmup}")
    await live.events.end(admin.id)

    result = await live.processor.submit(user.id, challenge.id, "CTF{warmup}")
    assert result.reason is RejectReason.EVENT_NOT_ACTIVE


async def test_submissions_are_broadcast(live):
    user = await make_user(live, "alice")
    challenge = await make_challenge(live)
    received = []

    async def listener(message):
        received.append(message)

    live.broadcaster.subscribe(SUBMISSIONS, listener)
    await live.processor.submit(user.id, challenge.id, "CTF{nope}")
    await live.processor.submit(user.id, challenge.id, "CTF{warmup}")
    await live.broadcaster.drain()

    assert [m["is_correct"] for m in received] == [False, True]
    assert received[1]["points"] == 100
    assert received[1]["username"] == "alice"


async def test_custom_flag_prefix(tmp_path):
    config_path = tmp_path / "ctf_config.json"
    config_path.write_text('{"flag": {"prefix": "SECE"}}')
    system = CTFPlatform(
        db_path=str(tmp_path / "ctf.db"), config_path=str(config_path), cache=MemoryCache()
    )

    assert system.processor.validate_flag("SECE{ok}") == "SECE{ok}"
    assert system.processor.validate_flag("CTF{ok}") is None


async def test_trailing_newline_is_not_a_valid_flag(live):
    user = await make_user(live, "alice")
    challenge = await make_challenge(live)

    assert live.processor.validate_flag("CTF{warmup}\n") is None
    result = await live.processor.submit(user.id, challenge.id, "CTF{warmup}\n")
    assert result.reason is RejectReason.INVALID_FLAG_FORMAT


async def test_solve_is_refused_when_event_ends_mid_submission(live, admin, monkeypatch):
    user = await make_user(live, "alice")
    challenge = await make_challenge(live)
    has_solved = live.db.has_solved

    async def end_then_check(*args):
        await live.events.end(admin.id)
        return await has_solved(*args)

    monkeypatch.setattr(live.db, "has_solved", end_then_check)
    result = await live.processor.submit(user.id, challenge.id, "CTF{warmup}")

    assert result.outcome is SubmissionOutcome.REJECTED
    assert result.reason is RejectReason.EVENT_NOT_ACTIVE
    assert (await live.db.get_user(user.id)).points == 0
    assert (await live.db.get_challenge(challenge.id)).solve_count == 0
    assert await live.db.list_submissions() == []


async def test_stalled_subscriber_does_not_delay_submissions(live):
    user = await make_user(live, "alice")
    challenge = await make_challenge(live)
    release = asyncio.Event()

    async def stalled(message):
        await release.wait()

    live.broadcaster.subscribe(SUBMISSIONS, stalled)
    result = await asyncio.wait_for(
        live.processor.submit(user.id, challenge.id, "CTF{warmup}"), timeout=1
    )
    assert result.outcome is SubmissionOutcome.ACCEPTED

    release.set()
    await live.broadcaster.drain()
