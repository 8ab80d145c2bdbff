from ctfarena.rate_limiter import SubmissionRateLimiter

from .conftest import FakeClock

KEY = SubmissionRateLimiter.key_for(1, 2)


def fail(limiter, times, clock=None, step=0.0):
    for _ in range(times):
        assert limiter.check_allowed(KEY).allowed
        limiter.record_failure(KEY)
        if clock is not None:
            clock.advance(step)


def test_key_combines_user_and_challenge():
    assert SubmissionRateLimiter.key_for(7, 9) == "7:9"
    assert SubmissionRateLimiter.key_for(7, 9) != SubmissionRateLimiter.key_for(9, 7)


def test_sixth_attempt_is_denied_with_full_cooldown():
    clock = FakeClock()
    limiter = SubmissionRateLimiter(clock=clock)

    fail(limiter, 5, clock, step=1)

    decision = limiter.check_allowed(KEY)
    assert not decision.allowed
    assert decision.remaining_seconds == 30


def test_remaining_seconds_count_down_and_round_up():
    clock = FakeClock()
    limiter = SubmissionRateLimiter(clock=clock)
    fail(limiter, 5)
    assert not limiter.check_allowed(KEY).allowed

    clock.advance(10.5)
    decision = limiter.check_allowed(KEY)
    assert not decision.allowed
    assert decision.remaining_seconds == 20


def test_cooldown_restarts_while_window_still_full():
    clock = FakeClock()
    limiter = SubmissionRateLimiter(clock=clock)
    fail(limiter, 5)
    assert not limiter.check_allowed(KEY).allowed

    # cooldown over, but the five failures are still inside the window
    clock.advance(31)
    decision = limiter.check_allowed(KEY)
    assert not decision.allowed
    assert decision.remaining_seconds == 30


def test_allowed_again_once_window_and_cooldown_pass():
    clock = FakeClock()
    limiter = SubmissionRateLimiter(clock=clock)
    fail(limiter, 5)
    assert not limiter.check_allowed(KEY).allowed

    clock.advance(61)
    assert limiter.check_allowed(KEY).allowed


def test_keys_are_independent():
    limiter = SubmissionRateLimiter(clock=FakeClock())
    fail(limiter, 5)
    assert not limiter.check_allowed(KEY).allowed
    assert limiter.check_allowed(SubmissionRateLimiter.key_for(1, 3)).allowed


def test_clear_forgets_key():
    limiter = SubmissionRateLimiter(clock=FakeClock())
    fail(limiter, 5)
    assert not limiter.check_allowed(KEY).allowed

    limiter.clear(KEY)
    assert KEY not in limiter
    assert limiter.check_allowed(KEY).allowed


def test_old_failures_leave_the_window():
    clock = FakeClock()
    limiter = SubmissionRateLimiter(clock=clock)
    fail(limiter, 4)
    clock.advance(60)
    fail(limiter, 4)
    assert limiter.check_allowed(KEY).allowed


def test_sweep_removes_idle_keys_only():
    clock = FakeClock()
    limiter = SubmissionRateLimiter(clock=clock)
    idle = SubmissionRateLimiter.key_for(5, 5)

    limiter.record_failure(idle)
    clock.advance(120)
    fail(limiter, 1)

    assert limiter.sweep() == 1
    assert idle not in limiter
    assert KEY in limiter
    assert len(limiter) == 1


def test_sweep_keeps_keys_in_cooldown():
    clock = FakeClock()
    limiter = SubmissionRateLimiter(max_attempts=1, window_seconds=5, cooldown_seconds=30, clock=clock)
    fail(limiter, 1)
    assert not limiter.check_allowed(KEY).allowed

    clock.advance(10)
    assert limiter.sweep() == 0
    clock.advance(30)
    assert limiter.sweep() == 1


async def test_from_config(platform):
    platform.config.config["rate_limit"]["max_attempts"] = 2
    limiter = SubmissionRateLimiter.from_config(platform.config, clock=FakeClock())
    assert limiter.max_attempts == 2
    assert limiter.window_seconds == 60
    assert limiter.cooldown_seconds == 30
