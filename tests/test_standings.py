import asyncio

import pytest

from ctfarena.errors import ScoreboardDisabled, ValidationError

from .conftest import make_challenge, make_user


@pytest.fixture
async def live(platform, admin):
    await platform.events.start(admin.id)
    return platform


async def solve(platform, user, challenge):
    result = await platform.processor.submit(user.id, challenge.id, challenge.flag)
    assert result.accepted
    return result


async def test_users_ranked_by_points(live):
    alice = await make_user(live, "alice")
    bob = await make_user(live, "bob")
    small = await make_challenge(live, "Small", "CTF{small}", points=100)
    big = await make_challenge(live, "Big", "CTF{big}", points=300)

    await solve(live, alice, small)
    await solve(live, bob, big)

    standings = await live.standings.get_standings("users")
    assert [(s["rank"], s["username"], s["points"]) for s in standings] == [
        (1, "bob", 300),
        (2, "alice", 100),
    ]


async def test_ties_go_to_the_earlier_solver(live):
    alice = await make_user(live, "alice")
    bob = await make_user(live, "bob")
    first = await make_challenge(live, "First", "CTF{first}")
    second = await make_challenge(live, "Second", "CTF{second}")

    await solve(live, bob, first)
    await asyncio.sleep(0.01)
    await solve(live, alice, second)

    standings = await live.standings.get_standings("users")
    assert [s["username"] for s in standings] == ["bob", "alice"]


async def test_ties_without_solves_sort_by_name(live):
    await make_user(live, "zed")
    await make_user(live, "amy")

    standings = await live.standings.get_standings("users")
    assert [s["username"] for s in standings] == ["amy", "zed"]


async def test_admins_are_not_ranked_as_players(live, admin):
    await make_user(live, "alice")
    standings = await live.standings.get_standings("users", is_admin=True)
    assert [s["username"] for s in standings] == ["alice"]


async def test_hidden_users_only_visible_to_admins(live):
    await make_user(live, "alice")
    await make_user(live, "ghost", show_in_scoreboard=False)

    public = await live.standings.get_standings("users")
    assert [s["username"] for s in public] == ["alice"]

    admin_view = await live.standings.get_standings("users", is_admin=True)
    assert {s["username"] for s in admin_view} == {"alice", "ghost"}


async def test_team_points_are_member_sums(live, admin):
    alice = await make_user(live, "alice")
    bob = await make_user(live, "bob")
    carol = await make_user(live, "carol")
    red = await live.db.create_team("Red", admin.id, [alice.id, bob.id], max_members=2)
    await live.db.create_team("Blue", admin.id, [carol.id], max_members=2)

    easy = await make_challenge(live, "Easy", "CTF{easy}", points=100)
    hard = await make_challenge(live, "Hard", "CTF{hard}", points=250)
    await solve(live, alice, easy)
    await solve(live, bob, hard)
    await solve(live, carol, hard)

    standings = await live.standings.get_standings("teams")
    assert [(s["name"], s["points"]) for s in standings] == [("Red", 350), ("Blue", 250)]
    assert {m["username"] for m in standings[0]["members"]} == {"alice", "bob"}

    team = await live.db.get_team(red.id)
    assert team.points == 350


async def test_team_without_visible_members_is_hidden(live, admin):
    ghost = await make_user(live, "ghost", show_in_scoreboard=False)
    alice = await make_user(live, "alice")
    await live.db.create_team("Phantoms", admin.id, [ghost.id], max_members=2)
    await live.db.create_team("Mixed", admin.id, [alice.id], max_members=2)

    public = await live.standings.get_standings("teams")
    assert [s["name"] for s in public] == ["Mixed"]

    admin_view = await live.standings.get_standings("teams", is_admin=True)
    assert {s["name"] for s in admin_view} == {"Mixed", "Phantoms"}


async def test_standings_limits(live):
    live.config.config["scoreboard"]["max_users"] = 2
    for name in ("a", "b", "c"):
        await make_user(live, name)

    assert len(await live.standings.get_standings("users")) == 2


async def test_standings_are_cached_until_ttl(live, cache_clock):
    alice = await make_user(live, "alice")
    challenge = await make_challenge(live)

    assert (await live.standings.get_standings("users"))[0]["points"] == 0
    await solve(live, alice, challenge)
    assert (await live.standings.get_standings("users"))[0]["points"] == 0

    cache_clock.advance(31)
    assert (await live.standings.get_standings("users"))[0]["points"] == 100


async def test_public_and_admin_views_are_cached_separately(live):
    await make_user(live, "alice")
    await make_user(live, "ghost", show_in_scoreboard=False)

    assert len(await live.standings.get_standings("users")) == 1
    assert len(await live.standings.get_standings("users", is_admin=True)) == 2


async def test_standings_freeze_when_event_ends(live, admin, cache_clock):
    alice = await make_user(live, "alice")
    challenge = await make_challenge(live)
    await solve(live, alice, challenge)
    await live.events.end(admin.id)

    frozen = await live.standings.get_standings("users")
    assert frozen[0]["points"] == 100

    # scores changed behind the scoreboard's back stay invisible after the end
    await live.db.reset_platform()
    cache_clock.advance(10_000)
    assert await live.standings.get_standings("users") == frozen


async def test_restart_unfreezes(live, admin):
    alice = await make_user(live, "alice")
    challenge = await make_challenge(live)
    await live.events.end(admin.id)
    await live.standings.get_standings("users")

    await live.events.start(admin.id)
    await solve(live, alice, challenge)
    assert (await live.standings.get_standings("users"))[0]["points"] == 100


async def test_disabled_scoreboard(live):
    await make_user(live, "alice")
    live.config.set_feature("scoreboard_enabled", False)

    with pytest.raises(ScoreboardDisabled) as exc:
        await live.standings.get_standings("users")
    assert exc.value.message == "This is currently disabled by Admin"
    assert exc.value.status == 403

    assert len(await live.standings.get_standings("users", is_admin=True)) == 1


async def test_unknown_kind(live):
    with pytest.raises(ValidationError):
        await live.standings.get_standings("clans")


async def test_invalidate_drops_cached_entries(live):
    await live.standings.get_standings("users")
    await live.standings.get_standings("teams")
    assert await live.standings.invalidate() == 2


async def test_progression_builds_cumulative_series(live):
    alice = await make_user(live, "alice")
    bob = await make_user(live, "bob")
    one = await make_challenge(live, "One", "CTF{one}", points=100)
    two = await make_challenge(live, "Two", "CTF{two}", points=50)

    await solve(live, alice, one)
    await solve(live, bob, two)
    await solve(live, alice, two)

    progression = await live.standings.get_progression("users", limit=1)
    assert progression["type"] == "users"
    assert len(progression["series"]) == 1

    series = progression["series"][0]
    assert series["name"] == "alice"
    assert [p["score"] for p in series["data"]] == [100, 150]
    assert progression["start_time"] <= progression["end_time"]


async def test_progression_by_team(live, admin):
    alice = await make_user(live, "alice")
    bob = await make_user(live, "bob")
    await live.db.create_team("Red", admin.id, [alice.id, bob.id], max_members=2)
    one = await make_challenge(live, "One", "CTF{one}", points=100)

    await solve(live, alice, one)
    await solve(live, bob, one)

    progression = await live.standings.get_progression("teams")
    assert progression["series"][0]["name"] == "Red"
    assert [p["score"] for p in progression["series"][0]["data"]] == [100, 200]


async def test_empty_progression(live):
    progression = await live.standings.get_progression("teams")
    assert progression["series"] == []
    assert progression["start_time"] is None


async def test_progression_follows_scoreboard_visibility(live, admin):
    alice = await make_user(live, "alice")
    ghost = await make_user(live, "ghost", show_in_scoreboard=False)
    await live.db.create_team("Red", admin.id, [alice.id], max_members=2)
    await live.db.create_team("Phantoms", admin.id, [ghost.id], max_members=2)
    one = await make_challenge(live, "One", "CTF{one}")

    await solve(live, alice, one)
    await solve(live, ghost, one)

    public = await live.standings.get_progression("teams")
    assert [s["name"] for s in public["series"]] == ["Red"]
    admin_view = await live.standings.get_progression("teams", is_admin=True)
    assert {s["name"] for s in admin_view["series"]} == {"Red", "Phantoms"}

    public = await live.standings.get_progression("users")
    assert [s["name"] for s in public["series"]] == ["alice"]
    admin_view = await live.standings.get_progression("users", is_admin=True)
    assert {s["name"] for s in admin_view["series"]} == {"alice", "ghost"}


async def test_frozen_standings_from_an_earlier_cycle_are_not_reused(live, admin):
    alice = await make_user(live, "alice")
    first = await make_challenge(live, "First", "CTF{first}")
    second = await make_challenge(live, "Second", "CTF{second}")

    await solve(live, alice, first)
    await live.events.end(admin.id)
    assert (await live.standings.get_standings("users"))[0]["points"] == 100

    await live.events.start(admin.id)
    await solve(live, alice, second)
    await live.events.end(admin.id)
    assert (await live.standings.get_standings("users"))[0]["points"] == 200
