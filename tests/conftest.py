import pytest

from ctfarena.cache import MemoryCache
from ctfarena.rate_limiter import SubmissionRateLimiter
from ctfarena.system import CTFPlatform

# Environment variables CTFConfig reads; cleared so the host cannot leak in
CONFIG_ENV_VARS = [
    "CTF_NAME",
    "CTF_ENV",
    "FLAG_PREFIX",
    "FLAG_SUBMIT_MAX_ATTEMPTS",
    "FLAG_SUBMIT_WINDOW",
    "FLAG_SUBMIT_COOLDOWN",
    "DYNAMIC_DEFAULT_DECAY",
    "EVENT_STATE_CACHE_TTL",
    "SCOREBOARD_CACHE_TTL",
    "SCOREBOARD_MAX_TEAMS",
    "SCOREBOARD_MAX_USERS",
    "SCOREBOARD_ENABLED",
    "LIVE_MONITOR",
    "MAX_TEAM_MEMBERS",
    "CACHE_BACKEND",
    "REDIS_URL",
    "DB_BUSY_TIMEOUT",
]


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in CONFIG_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache_clock():
    return FakeClock()


@pytest.fixture
async def platform(tmp_path, clock, cache_clock):
    system = CTFPlatform(
        db_path=str(tmp_path / "ctf.db"),
        config_path=str(tmp_path / "ctf_config.json"),
        cache=MemoryCache(clock=cache_clock),
        rate_limiter=SubmissionRateLimiter(clock=clock),
    )
    await system.init_db()
    yield system
    await system.broadcaster.close()


@pytest.fixture
async def admin(platform):
    user, _ = await platform.create_admin("root")
    return user


async def make_user(platform, username, **flags):
    user = await platform.db.create_user(username, f"token-{username}")
    if flags:
        user = await platform.db.update_user_flags(user.id, **flags)
    return user


async def make_challenge(platform, title="Warmup", flag="CTF{warmup}", points=100, **extra):
    fields = {
        "title": title,
        "description": f"{title} challenge",
        "category": "web",
        "difficulty": "Easy",
        "points": points,
        "flag": flag,
    }
    fields.update(extra)
    return await platform.db.create_challenge(fields)
