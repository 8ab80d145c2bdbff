"""
Main CTFPlatform class that orchestrates all components.
"""

import asyncio
import logging
import secrets
from typing import Optional

from aiohttp import web, web_runner
import aiohttp_cors

from .admin_handlers import AdminHandlers
from .broadcast import LiveBroadcaster
from .cache import CacheBackend, create_cache
from .config import CTFConfig
from .database import DatabaseManager
from .event_state import EventStateStore
from .middleware import auth_middleware, error_middleware
from .models import Role, User
from .rate_limiter import SubmissionRateLimiter
from .standings import ScoreboardAggregator
from .submissions import SubmissionProcessor
from .web_handlers import WebHandlers

logger = logging.getLogger(__name__)

DEMO_CHALLENGES = [
    {
        "title": "Warmup",
        "description": "The flag is in the page source.",
        "category": "web",
        "difficulty": "Easy",
        "points": 100,
        "flag": "warmup_flag",
    },
    {
        "title": "Caesar Salad",
        "description": "Rotate your way to the flag.",
        "category": "crypto",
        "difficulty": "Medium",
        "points": 300,
        "flag": "rot_thirteen_is_not_crypto",
        "dynamic_enabled": True,
        "dynamic_initial": 500,
        "dynamic_minimum": 100,
        "dynamic_decay": 20,
    },
    {
        "title": "Packet Trail",
        "description": "Follow the TCP stream.",
        "category": "forensics",
        "difficulty": "Hard",
        "points": 400,
        "flag": "follow_the_stream",
    },
]


class CTFPlatform:
    """CTF platform with JSON API, scoreboard page and live admin feed."""

    def __init__(
        self,
        host: str = "0.0.0.0",
        db_path: str = "ctf.db",
        web_port: int = 8081,
        config_path: str = "ctf_config.json",
        cache: Optional[CacheBackend] = None,
        rate_limiter: Optional[SubmissionRateLimiter] = None,
    ) -> None:
        self.host = host
        self.web_port = web_port
        self.db_path = db_path
        self._sweeper: Optional[asyncio.Task] = None

        # Load configuration
        self.config = CTFConfig(config_path)

        # Initialize components
        self.db = DatabaseManager(db_path, self.config)
        self.cache = cache if cache is not None else create_cache(self.config)
        self.broadcaster = LiveBroadcaster(
            self.cache, relay_retry=self.config.get("live", "relay_retry")
        )
        self.rate_limiter = rate_limiter or SubmissionRateLimiter.from_config(self.config)

        self.events = EventStateStore(
            self.db,
            self.cache,
            self.broadcaster,
            cache_ttl=self.config.get("event", "state_cache_ttl"),
        )
        self.processor = SubmissionProcessor(
            self.db, self.events, self.rate_limiter, self.broadcaster, self.config
        )
        self.standings = ScoreboardAggregator(
            self.db, self.events, self.cache, self.config
        )

        self.web_handlers = WebHandlers(
            self.db, self.config, self.events, self.processor, self.standings
        )
        self.admin_handlers = AdminHandlers(
            self.db,
            self.config,
            self.events,
            self.processor,
            self.standings,
            self.broadcaster,
        )

    async def init_db(self) -> None:
        """
        Initialize the database.

        Creates database tables and performs any necessary setup.
        """
        await self.db.init_db()

    async def _sweep_rate_limiter(self) -> None:
        interval = self.config.get("rate_limit", "sweep_interval")
        while True:
            await asyncio.sleep(interval)
            self.rate_limiter.sweep()

    async def _on_startup(self, _: web.Application) -> None:
        self._sweeper = asyncio.create_task(self._sweep_rate_limiter())
        self.broadcaster.start_relay()

    async def _on_cleanup(self, _: web.Application) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        await self.broadcaster.close()
        await self.cache.close()

    def build_app(self) -> web.Application:
        """
        Build the aiohttp application with every route registered.

        @return: Configured web.Application
        """
        app = web.Application(
            middlewares=[error_middleware(self.config), auth_middleware(self.db)]
        )
        app.on_startup.append(self._on_startup)
        app.on_cleanup.append(self._on_cleanup)

        # Setup CORS
        cors = aiohttp_cors.setup(
            app,
            defaults={
                "*": aiohttp_cors.ResourceOptions(
                    allow_credentials=True,
                    expose_headers="*",
                    allow_headers="*",
                    allow_methods="*",
                )
            },
        )

        player = self.web_handlers
        admin = self.admin_handlers

        # Web routes
        app.router.add_get("/", player.web_index)

        # Event
        app.router.add_get("/api/event/status", player.api_event_status)
        app.router.add_post("/api/event/start", admin.api_event_start)
        app.router.add_post("/api/event/end", admin.api_event_end)
        app.router.add_get("/api/event/history", admin.api_event_history)

        # Challenges
        app.router.add_get("/api/challenges", player.api_challenges)
        app.router.add_post("/api/challenges", admin.api_create_challenge)
        app.router.add_get("/api/challenges/{challenge_id}", player.api_challenge_detail)
        app.router.add_put("/api/challenges/{challenge_id}", admin.api_update_challenge)
        app.router.add_delete("/api/challenges/{challenge_id}", admin.api_delete_challenge)
        app.router.add_post(
            "/api/challenges/{challenge_id}/submit", player.api_submit_flag
        )

        # Scoreboard
        app.router.add_get("/api/scoreboard", player.api_scoreboard)
        app.router.add_get("/api/scoreboard/progression", player.api_progression)

        # Users
        app.router.add_get("/api/me", player.api_me)
        app.router.add_post("/api/admin/users", admin.api_create_user)
        app.router.add_get("/api/admin/users", admin.api_list_users)
        app.router.add_put("/api/admin/users/{user_id}/block", admin.api_block_user)
        app.router.add_put(
            "/api/admin/users/{user_id}/submission-permission",
            admin.api_submission_permission,
        )
        app.router.add_put(
            "/api/admin/users/{user_id}/scoreboard-visibility",
            admin.api_scoreboard_visibility,
        )

        # Teams
        app.router.add_get("/api/teams", player.api_teams)
        app.router.add_post("/api/teams", admin.api_create_team)
        app.router.add_get("/api/teams/{team_id}", player.api_team_detail)
        app.router.add_delete("/api/teams/{team_id}", admin.api_delete_team)
        app.router.add_post(
            "/api/teams/{team_id}/members/{user_id}", admin.api_add_team_member
        )
        app.router.add_delete(
            "/api/teams/{team_id}/members/{user_id}", admin.api_remove_team_member
        )

        # Platform
        app.router.add_put(
            "/api/admin/platform/submissions", admin.api_platform_submissions
        )
        app.router.add_put("/api/admin/platform/scoreboard", admin.api_platform_scoreboard)
        app.router.add_post("/api/admin/platform/reset", admin.api_platform_reset)
        app.router.add_get("/api/admin/submissions", admin.api_submissions)
        app.router.add_get("/api/admin/live", admin.live)

        # Add CORS to all routes
        for route in list(app.router.routes()):
            cors.add(route)

        return app

    async def start_web_server(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
    ) -> web_runner.AppRunner:
        """
        Start the web server.

        @param host: Host address to bind the server to (default uses configured host)
        @param port: Port number to use (default uses configured web_port)
        @return: AppRunner instance for the web server
        """
        if host is None:
            host = self.host
        if port is None:
            port = self.web_port

        app_runner = web_runner.AppRunner(self.build_app())
        await app_runner.setup()

        site = web_runner.TCPSite(app_runner, host, port)
        await site.start()

        logger.info("Web server running on http://%s:%s", host, port)
        return app_runner

    async def run(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
    ) -> None:
        """
        Run the web server until interrupted.

        @param host: Host address (default uses configured host)
        @param port: Port (default uses configured web_port)
        """
        if host is None:
            host = self.host
        if port is None:
            port = self.web_port

        runner = await self.start_web_server(host, port)
        state = await self.events.get_state()

        print(f"\n{self.config.get('ctf_name')} Running!")
        print(f"Web Interface: http://{host}:{port}")
        print(f"Event status: {state.status.value}")
        print("\nPress Ctrl+C to stop...\n")

        try:
            await asyncio.Event().wait()
        finally:
            print("\nShutting down server...")
            await runner.cleanup()

    async def print_full_scoreboard(self) -> None:
        """
        Print the complete scoreboard to console.

        Delegates to the database manager's print method.
        """
        await self.db.print_full_scoreboard()

    async def create_admin(
        self,
        username: str,
        email: Optional[str] = None,
    ) -> tuple:
        """
        Provision an admin account.

        @param username: Admin username
        @param email: Optional contact address
        @return: (user, api token)
        """
        api_token = secrets.token_urlsafe(32)
        user: User = await self.db.create_user(
            username, api_token, role=Role.ADMIN.value, email=email
        )
        return user, api_token

    async def seed_demo(self) -> int:
        """
        Insert demo challenges into an empty database.

        @return: Number of challenges inserted
        """
        if await self.db.count_challenges():
            logger.info("Challenges already present, skipping demo seed")
            return 0

        prefix = self.config.get("flag", "prefix")
        for challenge in DEMO_CHALLENGES:
            fields = dict(challenge)
            fields["flag"] = f"{prefix}{{{fields['flag']}}}"
            await self.db.create_challenge(fields)

        logger.info("Seeded %d demo challenges", len(DEMO_CHALLENGES))
        return len(DEMO_CHALLENGES)
