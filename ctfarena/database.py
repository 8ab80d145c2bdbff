"""
Database operations for the CTF platform.
"""

import logging
import sqlite3
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

import aiosqlite

from .errors import ConflictError, EventNotActive, NotFoundError, ValidationError
from .models import (
    Challenge,
    DynamicScoring,
    EventState,
    EventStatus,
    Submission,
    Team,
    User,
    utcnow,
)

logger = logging.getLogger(__name__)

CHALLENGE_COLUMNS = """
    c.id, c.title, c.description, c.category, c.difficulty, c.points, c.flag,
    c.dynamic_enabled, c.dynamic_initial, c.dynamic_minimum, c.dynamic_decay,
    c.is_visible, c.submissions_allowed, c.created_at,
    (SELECT COUNT(*) FROM solves s WHERE s.challenge_id = c.id) AS solve_count
"""

USER_COLUMNS = """
    id, username, role, email, points, last_solve_time, can_submit_flags,
    is_blocked, blocked_reason, show_in_scoreboard, team_id, created_at
"""

# Writable challenge fields and the column each one maps to
CHALLENGE_FIELDS = {
    "title": "title",
    "description": "description",
    "category": "category",
    "difficulty": "difficulty",
    "points": "points",
    "flag": "flag",
    "is_visible": "is_visible",
    "submissions_allowed": "submissions_allowed",
    "dynamic_enabled": "dynamic_enabled",
    "dynamic_initial": "dynamic_initial",
    "dynamic_minimum": "dynamic_minimum",
    "dynamic_decay": "dynamic_decay",
}

USER_FLAG_FIELDS = ("is_blocked", "blocked_reason", "can_submit_flags", "show_in_scoreboard")


def _challenge_from_row(row: Any) -> Challenge:
    return Challenge(
        id=row["id"],
        title=row["title"],
        description=row["description"],
        category=row["category"],
        difficulty=row["difficulty"],
        points=row["points"],
        flag=row["flag"],
        dynamic_scoring=DynamicScoring(
            enabled=bool(row["dynamic_enabled"]),
            initial=row["dynamic_initial"],
            minimum=row["dynamic_minimum"],
            decay=row["dynamic_decay"],
        ),
        is_visible=bool(row["is_visible"]),
        submissions_allowed=bool(row["submissions_allowed"]),
        solve_count=row["solve_count"],
        created_at=row["created_at"],
    )


def _user_from_row(row: Any) -> User:
    return User(
        id=row["id"],
        username=row["username"],
        role=row["role"],
        email=row["email"],
        points=row["points"],
        last_solve_time=row["last_solve_time"],
        can_submit_flags=bool(row["can_submit_flags"]),
        is_blocked=bool(row["is_blocked"]),
        blocked_reason=row["blocked_reason"],
        show_in_scoreboard=bool(row["show_in_scoreboard"]),
        team_id=row["team_id"],
        created_at=row["created_at"],
    )


def _event_state_from_row(row: Any) -> EventState:
    return EventState(
        status=EventStatus(row["status"]),
        started_at=row["started_at"],
        ended_at=row["ended_at"],
        started_by=row["started_by"],
        ended_by=row["ended_by"],
        cycle=row["cycle"],
    )


def _is_unique_violation(error: sqlite3.IntegrityError) -> bool:
    return "UNIQUE" in str(error)


class DatabaseManager:
    """Manages database operations; one short-lived connection per call."""

    def __init__(
        self,
        db_path: str,
        config: Any,
    ) -> None:
        self.db_path = db_path
        self.config = config
        self.busy_timeout = config.get("database", "busy_timeout") or 30

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        # autocommit; multi-statement writes go through _transaction
        async with aiosqlite.connect(
            self.db_path, timeout=self.busy_timeout, isolation_level=None
        ) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA foreign_keys=ON")
            yield db

    @asynccontextmanager
    async def _transaction(
        self,
        db: aiosqlite.Connection,
    ) -> AsyncIterator[aiosqlite.Connection]:
        """
        Run a block under BEGIN IMMEDIATE.

        Taking the write lock up front serialises writers, so reads made
        inside the block still hold when the block commits.
        """
        await db.execute("BEGIN IMMEDIATE")
        try:
            yield db
        except BaseException:
            await db.execute("ROLLBACK")
            raise
        else:
            await db.execute("COMMIT")

    async def init_db(self) -> None:
        """
        Initialize the SQLite database with schema and indexes.

        Creates tables, indexes, and performs schema migrations if needed.
        """
        async with self._connect() as db:
            # Enable WAL mode for better concurrent access
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute("PRAGMA synchronous=NORMAL")

            await db.executescript("""
                CREATE TABLE IF NOT EXISTS teams (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE,
                    description TEXT NOT NULL DEFAULT '',
                    max_members INTEGER,
                    created_by INTEGER,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    username TEXT NOT NULL UNIQUE,
                    role TEXT NOT NULL DEFAULT 'user',
                    email TEXT,
                    api_token TEXT NOT NULL UNIQUE,
                    points INTEGER NOT NULL DEFAULT 0,
                    last_solve_time TEXT,
                    can_submit_flags INTEGER NOT NULL DEFAULT 1,
                    is_blocked INTEGER NOT NULL DEFAULT 0,
                    show_in_scoreboard INTEGER NOT NULL DEFAULT 1,
                    team_id INTEGER REFERENCES teams(id) ON DELETE SET NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS challenges (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    title TEXT NOT NULL UNIQUE,
                    description TEXT NOT NULL,
                    category TEXT NOT NULL,
                    difficulty TEXT NOT NULL,
                    points INTEGER NOT NULL,
                    flag TEXT NOT NULL,
                    dynamic_enabled INTEGER NOT NULL DEFAULT 0,
                    dynamic_initial INTEGER NOT NULL DEFAULT 0,
                    dynamic_minimum INTEGER NOT NULL DEFAULT 0,
                    dynamic_decay INTEGER NOT NULL DEFAULT 0,
                    is_visible INTEGER NOT NULL DEFAULT 1,
                    submissions_allowed INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS solves (
                    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    challenge_id INTEGER NOT NULL REFERENCES challenges(id) ON DELETE CASCADE,
                    points INTEGER NOT NULL,
                    solved_at TEXT NOT NULL,
                    PRIMARY KEY (user_id, challenge_id)
                );

                CREATE TABLE IF NOT EXISTS submissions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    challenge_id INTEGER NOT NULL REFERENCES challenges(id) ON DELETE CASCADE,
                    submitted_flag TEXT NOT NULL,
                    is_correct INTEGER NOT NULL,
                    points INTEGER NOT NULL DEFAULT 0,
                    submitted_at TEXT NOT NULL,
                    ip_address TEXT,
                    user_agent TEXT
                );

                CREATE TABLE IF NOT EXISTS event_state (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    status TEXT NOT NULL DEFAULT 'not_started',
                    started_at TEXT,
                    ended_at TEXT,
                    started_by INTEGER,
                    ended_by INTEGER,
                    cycle INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT
                );

                CREATE TABLE IF NOT EXISTS event_transitions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    action TEXT NOT NULL,
                    from_status TEXT NOT NULL,
                    to_status TEXT NOT NULL,
                    actor_id INTEGER,
                    cycle INTEGER NOT NULL,
                    at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_submissions_user_time
                ON submissions(user_id, submitted_at DESC);
                CREATE INDEX IF NOT EXISTS idx_submissions_challenge_time
                ON submissions(challenge_id, submitted_at DESC);
                CREATE INDEX IF NOT EXISTS idx_submissions_correct_time
                ON submissions(is_correct, submitted_at);
                CREATE INDEX IF NOT EXISTS idx_solves_challenge
                ON solves(challenge_id);
                CREATE INDEX IF NOT EXISTS idx_users_team
                ON users(team_id);
                CREATE INDEX IF NOT EXISTS idx_users_points
                ON users(points DESC, last_solve_time ASC);
            """)

            # At most one correct submission per (user, challenge)
            await db.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS unique_correct_submission
                ON submissions(user_id, challenge_id)
                WHERE is_correct = 1
            """)

            await self._migrate_schema(db)

    async def _migrate_schema(
        self,
        db: aiosqlite.Connection,
    ) -> None:
        """
        Handle additive schema migrations for older databases.

        @param db: Active database connection
        """
        await self._ensure_column(db, "users", "blocked_reason", "TEXT")
        await self._ensure_column(db, "teams", "max_members", "INTEGER")

    async def _ensure_column(
        self,
        db: aiosqlite.Connection,
        table: str,
        column: str,
        ddl: str,
    ) -> None:
        cursor = await db.execute(f"PRAGMA table_info({table})")
        columns = await cursor.fetchall()
        column_names = [c[1] for c in columns]

        if column not in column_names:
            logger.info("Migrating %s: adding %s column", table, column)
            await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")

    # ------------------------------------------------------------------
    # Challenges
    # ------------------------------------------------------------------

    async def create_challenge(
        self,
        fields: Dict[str, Any],
    ) -> Challenge:
        """
        Insert a challenge.

        @param fields: Column values keyed as in CHALLENGE_FIELDS
        @return: The stored challenge
        """
        columns = [CHALLENGE_FIELDS[k] for k in fields]
        placeholders = ", ".join("?" for _ in columns)

        async with self._connect() as db:
            try:
                cursor = await db.execute(
                    f"INSERT INTO challenges ({', '.join(columns)}, created_at) "
                    f"VALUES ({placeholders}, ?)",
                    (*fields.values(), utcnow()),
                )
            except sqlite3.IntegrityError as e:
                if _is_unique_violation(e):
                    raise ConflictError("A challenge with this title already exists") from e
                raise
            challenge_id = cursor.lastrowid

        logger.info("Created challenge %s (%s)", challenge_id, fields.get("title"))
        return await self.get_challenge(challenge_id)

    async def get_challenge(
        self,
        challenge_id: int,
    ) -> Optional[Challenge]:
        async with self._connect() as db:
            cursor = await db.execute(
                f"SELECT {CHALLENGE_COLUMNS} FROM challenges c WHERE c.id = ?",
                (challenge_id,),
            )
            row = await cursor.fetchone()
        return _challenge_from_row(row) if row else None

    async def list_challenges(
        self,
        visible_only: bool = True,
        limit: int = 10,
        offset: int = 0,
    ) -> Tuple[List[Challenge], int]:
        """
        Page through challenges, newest first.

        @param visible_only: Hide challenges with is_visible = 0
        @param limit: Page size
        @param offset: Rows to skip
        @return: (challenges on this page, total matching)
        """
        where = "WHERE c.is_visible = 1" if visible_only else ""

        async with self._connect() as db:
            cursor = await db.execute(f"SELECT COUNT(*) FROM challenges c {where}")
            total = (await cursor.fetchone())[0]

            cursor = await db.execute(
                f"""
                SELECT {CHALLENGE_COLUMNS}
                FROM challenges c
                {where}
                ORDER BY c.created_at DESC, c.id DESC
                LIMIT ? OFFSET ?
                """,
                (limit, offset),
            )
            rows = await cursor.fetchall()

        return [_challenge_from_row(r) for r in rows], total

    async def update_challenge(
        self,
        challenge_id: int,
        fields: Dict[str, Any],
    ) -> Optional[Challenge]:
        if fields:
            assignments = ", ".join(f"{CHALLENGE_FIELDS[k]} = ?" for k in fields)
            async with self._connect() as db:
                try:
                    cursor = await db.execute(
                        f"UPDATE challenges SET {assignments} WHERE id = ?",
                        (*fields.values(), challenge_id),
                    )
                except sqlite3.IntegrityError as e:
                    if _is_unique_violation(e):
                        raise ConflictError("A challenge with this title already exists") from e
                    raise
                if cursor.rowcount == 0:
                    return None
        return await self.get_challenge(challenge_id)

    async def delete_challenge(
        self,
        challenge_id: int,
    ) -> bool:
        async with self._connect() as db:
            cursor = await db.execute("DELETE FROM challenges WHERE id = ?", (challenge_id,))
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Deleted challenge %s", challenge_id)
        return deleted

    async def set_submissions_allowed_all(
        self,
        allowed: bool,
    ) -> int:
        """Open or close submissions on every challenge at once."""
        async with self._connect() as db:
            cursor = await db.execute(
                "UPDATE challenges SET submissions_allowed = ?", (int(allowed),)
            )
            return cursor.rowcount

    async def challenge_solvers(
        self,
        challenge_id: int,
    ) -> List[Dict[str, Any]]:
        async with self._connect() as db:
            cursor = await db.execute(
                """
                SELECT u.id, u.username, s.solved_at
                FROM solves s JOIN users u ON u.id = s.user_id
                WHERE s.challenge_id = ?
                ORDER BY s.solved_at ASC
                """,
                (challenge_id,),
            )
            rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def create_user(
        self,
        username: str,
        api_token: str,
        role: str = "user",
        email: Optional[str] = None,
    ) -> User:
        async with self._connect() as db:
            try:
                cursor = await db.execute(
                    "INSERT INTO users (username, role, email, api_token, created_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (username, role, email, api_token, utcnow()),
                )
            except sqlite3.IntegrityError as e:
                if _is_unique_violation(e):
                    raise ConflictError(f"User {username} already exists") from e
                raise
            user_id = cursor.lastrowid

        logger.info("Provisioned %s %s (id %s)", role, username, user_id)
        return await self.get_user(user_id)

    async def get_user(
        self,
        user_id: int,
    ) -> Optional[User]:
        async with self._connect() as db:
            cursor = await db.execute(
                f"SELECT {USER_COLUMNS} FROM users WHERE id = ?", (user_id,)
            )
            row = await cursor.fetchone()
        return _user_from_row(row) if row else None

    async def get_user_by_token(
        self,
        api_token: str,
    ) -> Optional[User]:
        async with self._connect() as db:
            cursor = await db.execute(
                f"SELECT {USER_COLUMNS} FROM users WHERE api_token = ?", (api_token,)
            )
            row = await cursor.fetchone()
        return _user_from_row(row) if row else None

    async def list_users(
        self,
        search: Optional[str] = None,
    ) -> List[User]:
        query = f"SELECT {USER_COLUMNS} FROM users"
        params: Tuple[Any, ...] = ()
        if search:
            query += " WHERE username LIKE ? OR email LIKE ?"
            params = (f"%{search}%", f"%{search}%")
        query += " ORDER BY created_at DESC, id DESC"

        async with self._connect() as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
        return [_user_from_row(r) for r in rows]

    async def update_user_flags(
        self,
        user_id: int,
        **flags: Any,
    ) -> Optional[User]:
        """
        Update admin-controlled user switches.

        @param user_id: User to update
        @param flags: Any of USER_FLAG_FIELDS
        @return: Updated user, None if the user does not exist
        """
        unknown = set(flags) - set(USER_FLAG_FIELDS)
        if unknown:
            raise ValueError(f"Unknown user fields: {sorted(unknown)}")

        assignments = ", ".join(f"{k} = ?" for k in flags)
        async with self._connect() as db:
            cursor = await db.execute(
                f"UPDATE users SET {assignments} WHERE id = ?",
                (*flags.values(), user_id),
            )
            if cursor.rowcount == 0:
                return None
        return await self.get_user(user_id)

    async def has_solved(
        self,
        user_id: int,
        challenge_id: int,
    ) -> bool:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT 1 FROM solves WHERE user_id = ? AND challenge_id = ?",
                (user_id, challenge_id),
            )
            return await cursor.fetchone() is not None

    async def solved_challenges(
        self,
        user_id: int,
    ) -> List[Dict[str, Any]]:
        async with self._connect() as db:
            cursor = await db.execute(
                """
                SELECT s.challenge_id, c.title, s.points, s.solved_at
                FROM solves s JOIN challenges c ON c.id = s.challenge_id
                WHERE s.user_id = ?
                ORDER BY s.solved_at ASC
                """,
                (user_id,),
            )
            rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Teams
    # ------------------------------------------------------------------

    async def _check_joinable(
        self,
        db: aiosqlite.Connection,
        user_ids: List[int],
        team_id: Optional[int] = None,
    ) -> None:
        for user_id in user_ids:
            cursor = await db.execute("SELECT team_id FROM users WHERE id = ?", (user_id,))
            row = await cursor.fetchone()
            if row is None:
                raise NotFoundError(f"User {user_id} not found")
            if row["team_id"] is not None and row["team_id"] != team_id:
                raise ConflictError(f"User {user_id} already belongs to a team")

    async def create_team(
        self,
        name: str,
        created_by: int,
        member_ids: List[int],
        max_members: int,
        description: str = "",
        custom_cap: bool = False,
    ) -> Team:
        """
        Create a team and attach its initial members.

        @param name: Unique team name
        @param created_by: Admin creating the team
        @param member_ids: Users to put on the team
        @param max_members: Member cap enforced now and on later adds
        @param description: Free text
        @param custom_cap: Store max_members on the team instead of following the global default
        @return: The stored team with members
        """
        if len(set(member_ids)) > max_members:
            raise ValidationError(f"A team can have maximum {max_members} members")

        async with self._connect() as db:
            async with self._transaction(db):
                await self._check_joinable(db, member_ids)
                try:
                    cursor = await db.execute(
                        "INSERT INTO teams (name, description, max_members, created_by, created_at) "
                        "VALUES (?, ?, ?, ?, ?)",
                        (name, description, max_members if custom_cap else None,
                         created_by, utcnow()),
                    )
                except sqlite3.IntegrityError as e:
                    if _is_unique_violation(e):
                        raise ConflictError(f"Team {name} already exists") from e
                    raise
                team_id = cursor.lastrowid

                for user_id in set(member_ids):
                    await db.execute(
                        "UPDATE users SET team_id = ? WHERE id = ?", (team_id, user_id)
                    )

        return await self.get_team(team_id)

    async def get_team(
        self,
        team_id: int,
    ) -> Optional[Team]:
        async with self._connect() as db:
            cursor = await db.execute("SELECT * FROM teams WHERE id = ?", (team_id,))
            row = await cursor.fetchone()
            if row is None:
                return None

            cursor = await db.execute(
                """
                SELECT id, username, points, last_solve_time, show_in_scoreboard
                FROM users WHERE team_id = ?
                ORDER BY username
                """,
                (team_id,),
            )
            members = [dict(m) for m in await cursor.fetchall()]

        return Team(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            max_members=row["max_members"],
            created_by=row["created_by"],
            created_at=row["created_at"],
            members=members,
        )

    async def list_teams(self) -> List[Dict[str, Any]]:
        async with self._connect() as db:
            cursor = await db.execute(
                """
                SELECT t.id, t.name, t.description, t.max_members, t.created_at,
                       COUNT(u.id) AS member_count,
                       COALESCE(SUM(u.points), 0) AS points
                FROM teams t LEFT JOIN users u ON u.team_id = t.id
                GROUP BY t.id
                ORDER BY t.name
                """
            )
            rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    async def delete_team(
        self,
        team_id: int,
    ) -> bool:
        async with self._connect() as db:
            cursor = await db.execute("DELETE FROM teams WHERE id = ?", (team_id,))
            return cursor.rowcount > 0

    async def add_team_member(
        self,
        team_id: int,
        user_id: int,
        default_cap: int,
    ) -> Team:
        async with self._connect() as db:
            async with self._transaction(db):
                cursor = await db.execute(
                    "SELECT max_members FROM teams WHERE id = ?", (team_id,)
                )
                team_row = await cursor.fetchone()
                if team_row is None:
                    raise NotFoundError("Team not found")

                await self._check_joinable(db, [user_id], team_id)

                cap = team_row["max_members"] or default_cap
                cursor = await db.execute(
                    "SELECT COUNT(*) FROM users WHERE team_id = ? AND id != ?",
                    (team_id, user_id),
                )
                if (await cursor.fetchone())[0] >= cap:
                    raise ValidationError(f"A team can have maximum {cap} members")

                await db.execute(
                    "UPDATE users SET team_id = ? WHERE id = ?", (team_id, user_id)
                )

        return await self.get_team(team_id)

    async def remove_team_member(
        self,
        team_id: int,
        user_id: int,
    ) -> Team:
        async with self._connect() as db:
            cursor = await db.execute(
                "UPDATE users SET team_id = NULL WHERE id = ? AND team_id = ?",
                (user_id, team_id),
            )
            removed = cursor.rowcount > 0

        team = await self.get_team(team_id)
        if team is None:
            raise NotFoundError("Team not found")
        if not removed:
            raise NotFoundError("User is not a member of this team")
        return team

    # ------------------------------------------------------------------
    # Submissions
    # ------------------------------------------------------------------

    async def record_submission(
        self,
        user_id: int,
        challenge_id: int,
        submitted_flag: str,
        ip_address: str = "",
        user_agent: str = "",
    ) -> Submission:
        """
        Log an incorrect attempt.

        @return: The stored submission row
        """
        submitted_at = utcnow()
        async with self._connect() as db:
            cursor = await db.execute(
                "INSERT INTO submissions (user_id, challenge_id, submitted_flag, is_correct, "
                "points, submitted_at, ip_address, user_agent) VALUES (?, ?, ?, 0, 0, ?, ?, ?)",
                (user_id, challenge_id, submitted_flag, submitted_at, ip_address, user_agent),
            )
            submission_id = cursor.lastrowid

        return Submission(
            id=submission_id,
            user_id=user_id,
            challenge_id=challenge_id,
            submitted_flag=submitted_flag,
            is_correct=False,
            points=0,
            submitted_at=submitted_at,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    async def record_correct_submission(
        self,
        user_id: int,
        challenge_id: int,
        submitted_flag: str,
        price: Callable[[int], int],
        ip_address: str = "",
        user_agent: str = "",
    ) -> Optional[Submission]:
        """
        Log a correct flag and credit the solve, all or nothing.

        The insert into submissions is the win marker: the partial unique
        index lets exactly one correct row exist per (user, challenge).
        When another request already holds it, the transaction is rolled
        back and nothing is credited.

        The event status is re-read under the write lock; a solve is only
        credited while the event is started.

        @param user_id: Solving user
        @param challenge_id: Solved challenge
        @param submitted_flag: Flag text as submitted
        @param price: Maps the solve count before this solve to the points awarded
        @param ip_address: Client address for the audit trail
        @param user_agent: Client user agent for the audit trail
        @return: The stored submission, None if this request lost the race
        @raise EventNotActive: The event stopped before the solve committed
        """
        submitted_at = utcnow()

        async with self._connect() as db:
            try:
                async with self._transaction(db):
                    cursor = await db.execute("SELECT status FROM event_state WHERE id = 1")
                    row = await cursor.fetchone()
                    if row is None or row["status"] != EventStatus.STARTED.value:
                        raise EventNotActive()

                    cursor = await db.execute(
                        "SELECT COUNT(*) FROM solves WHERE challenge_id = ?", (challenge_id,)
                    )
                    solves_before = (await cursor.fetchone())[0]
                    points = price(solves_before)

                    cursor = await db.execute(
                        "INSERT INTO submissions (user_id, challenge_id, submitted_flag, "
                        "is_correct, points, submitted_at, ip_address, user_agent) "
                        "VALUES (?, ?, ?, 1, ?, ?, ?, ?)",
                        (user_id, challenge_id, submitted_flag, points, submitted_at,
                         ip_address, user_agent),
                    )
                    submission_id = cursor.lastrowid

                    await db.execute(
                        "INSERT INTO solves (user_id, challenge_id, points, solved_at) "
                        "VALUES (?, ?, ?, ?)",
                        (user_id, challenge_id, points, submitted_at),
                    )
                    await db.execute(
                        "UPDATE users SET points = points + ?, last_solve_time = ? WHERE id = ?",
                        (points, submitted_at, user_id),
                    )
            except sqlite3.IntegrityError as e:
                if not _is_unique_violation(e):
                    raise
                logger.info(
                    "Correct submission for user %s on challenge %s already recorded",
                    user_id,
                    challenge_id,
                )
                return None

        return Submission(
            id=submission_id,
            user_id=user_id,
            challenge_id=challenge_id,
            submitted_flag=submitted_flag,
            is_correct=True,
            points=points,
            submitted_at=submitted_at,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    async def list_submissions(
        self,
        user_id: Optional[int] = None,
        challenge_id: Optional[int] = None,
        correct_only: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """
        Read the submission audit trail, newest first.

        @return: Rows with username and challenge title attached
        """
        conditions = []
        params: List[Any] = []
        if user_id is not None:
            conditions.append("s.user_id = ?")
            params.append(user_id)
        if challenge_id is not None:
            conditions.append("s.challenge_id = ?")
            params.append(challenge_id)
        if correct_only:
            conditions.append("s.is_correct = 1")
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        async with self._connect() as db:
            cursor = await db.execute(
                f"""
                SELECT s.id, s.user_id, u.username, s.challenge_id, c.title AS challenge_title,
                       s.submitted_flag, s.is_correct, s.points, s.submitted_at,
                       s.ip_address, s.user_agent
                FROM submissions s
                JOIN users u ON u.id = s.user_id
                JOIN challenges c ON c.id = s.challenge_id
                {where}
                ORDER BY s.submitted_at DESC, s.id DESC
                LIMIT ? OFFSET ?
                """,
                (*params, limit, offset),
            )
            rows = await cursor.fetchall()

        submissions = []
        for row in rows:
            entry = dict(row)
            entry["is_correct"] = bool(entry["is_correct"])
            submissions.append(entry)
        return submissions

    # ------------------------------------------------------------------
    # Event state
    # ------------------------------------------------------------------

    async def _read_event_state(
        self,
        db: aiosqlite.Connection,
    ) -> EventState:
        await db.execute(
            "INSERT OR IGNORE INTO event_state (id, status, updated_at) VALUES (1, ?, ?)",
            (EventStatus.NOT_STARTED.value, utcnow()),
        )
        cursor = await db.execute("SELECT * FROM event_state WHERE id = 1")
        return _event_state_from_row(await cursor.fetchone())

    async def load_event_state(self) -> EventState:
        """
        Read the event state singleton, creating it on first use.

        @return: Current durable event state
        """
        async with self._connect() as db:
            return await self._read_event_state(db)

    async def transition_event_state(
        self,
        decide: Callable[[EventState], Tuple[str, EventState]],
        actor_id: Optional[int],
    ) -> Tuple[str, EventState]:
        """
        Apply an event transition atomically.

        @param decide: Given the current state, returns (action, new state) or raises
        @param actor_id: Admin performing the transition
        @return: (action tag, stored state)
        """
        async with self._connect() as db:
            async with self._transaction(db):
                current = await self._read_event_state(db)
                action, new_state = decide(current)

                await db.execute(
                    """
                    UPDATE event_state
                    SET status = ?, started_at = ?, ended_at = ?, started_by = ?,
                        ended_by = ?, cycle = ?, updated_at = ?
                    WHERE id = 1
                    """,
                    (
                        new_state.status.value,
                        new_state.started_at,
                        new_state.ended_at,
                        new_state.started_by,
                        new_state.ended_by,
                        new_state.cycle,
                        utcnow(),
                    ),
                )
                await db.execute(
                    "INSERT INTO event_transitions (action, from_status, to_status, actor_id, "
                    "cycle, at) VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        action,
                        current.status.value,
                        new_state.status.value,
                        actor_id,
                        new_state.cycle,
                        utcnow(),
                    ),
                )

        return action, new_state

    async def list_event_transitions(
        self,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        async with self._connect() as db:
            cursor = await db.execute(
                """
                SELECT t.id, t.action, t.from_status, t.to_status, t.actor_id,
                       u.username AS actor, t.cycle, t.at
                FROM event_transitions t LEFT JOIN users u ON u.id = t.actor_id
                ORDER BY t.id DESC
                LIMIT ?
                """,
                (limit,),
            )
            rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Scoreboards
    # ------------------------------------------------------------------

    async def team_standings(
        self,
        include_hidden: bool,
        limit: int,
    ) -> List[Dict[str, Any]]:
        """
        Rank teams by the summed points of their members.

        @param include_hidden: Keep teams without any scoreboard-visible member
        @param limit: Maximum number of teams
        @return: Ordered list of team dictionaries with members
        """
        having = "" if include_hidden else "HAVING visible_members > 0"

        async with self._connect() as db:
            cursor = await db.execute(
                f"""
                SELECT t.id, t.name, t.description,
                       COALESCE(SUM(u.points), 0) AS points,
                       MAX(u.last_solve_time) AS last_solve_time,
                       COALESCE(SUM(u.show_in_scoreboard), 0) AS visible_members
                FROM teams t LEFT JOIN users u ON u.team_id = t.id
                GROUP BY t.id
                {having}
                ORDER BY points DESC, last_solve_time ASC, t.name ASC
                LIMIT ?
                """,
                (limit,),
            )
            teams = [dict(r) for r in await cursor.fetchall()]

            for team in teams:
                del team["visible_members"]
                cursor = await db.execute(
                    """
                    SELECT id, username, points, last_solve_time, show_in_scoreboard
                    FROM users WHERE team_id = ?
                    ORDER BY points DESC, username ASC
                    """,
                    (team["id"],),
                )
                team["members"] = [
                    {**dict(m), "show_in_scoreboard": bool(m["show_in_scoreboard"])}
                    for m in await cursor.fetchall()
                ]

        return teams

    async def user_standings(
        self,
        include_hidden: bool,
        limit: int,
    ) -> List[Dict[str, Any]]:
        """
        Rank players (role 'user') by points.

        @param include_hidden: Keep users with show_in_scoreboard = 0
        @param limit: Maximum number of users
        @return: Ordered list of user dictionaries
        """
        visibility = "" if include_hidden else "AND u.show_in_scoreboard = 1"

        async with self._connect() as db:
            cursor = await db.execute(
                f"""
                SELECT u.id, u.username, u.points, u.last_solve_time,
                       u.show_in_scoreboard, u.team_id, t.name AS team_name,
                       (SELECT COUNT(*) FROM solves s WHERE s.user_id = u.id) AS solves
                FROM users u LEFT JOIN teams t ON t.id = u.team_id
                WHERE u.role = 'user' {visibility}
                ORDER BY u.points DESC, u.last_solve_time ASC, u.username ASC
                LIMIT ?
                """,
                (limit,),
            )
            rows = await cursor.fetchall()

        users = []
        for row in rows:
            entry = dict(row)
            entry["show_in_scoreboard"] = bool(entry["show_in_scoreboard"])
            users.append(entry)
        return users

    async def solve_timeline(
        self,
        kind: str,
        include_hidden: bool = False,
    ) -> List[Dict[str, Any]]:
        """
        Correct submissions in time order, tagged with the scoring entity.

        Visibility follows team_standings and user_standings.

        @param kind: "teams" groups by the solver's current team, "users" by solver
        @param include_hidden: Keep entities hidden from the public scoreboard
        @return: Rows with entity_id, name, points, submitted_at
        """
        if kind == "teams":
            visibility = "" if include_hidden else (
                "AND EXISTS (SELECT 1 FROM users v "
                "WHERE v.team_id = t.id AND v.show_in_scoreboard = 1)"
            )
            query = f"""
                SELECT t.id AS entity_id, t.name AS name, s.points, s.submitted_at
                FROM submissions s
                JOIN users u ON u.id = s.user_id
                JOIN teams t ON t.id = u.team_id
                WHERE s.is_correct = 1 {visibility}
                ORDER BY s.submitted_at ASC, s.id ASC
            """
        else:
            visibility = "" if include_hidden else "AND u.show_in_scoreboard = 1"
            query = f"""
                SELECT u.id AS entity_id, u.username AS name, s.points, s.submitted_at
                FROM submissions s
                JOIN users u ON u.id = s.user_id
                WHERE s.is_correct = 1 AND u.role = 'user' {visibility}
                ORDER BY s.submitted_at ASC, s.id ASC
            """

        async with self._connect() as db:
            cursor = await db.execute(query)
            rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Platform
    # ------------------------------------------------------------------

    async def reset_platform(self) -> Dict[str, int]:
        """
        Zero every score and clear solves and the submission log.

        @return: Counts of affected rows
        """
        async with self._connect() as db:
            async with self._transaction(db):
                cursor = await db.execute(
                    "UPDATE users SET points = 0, last_solve_time = NULL"
                )
                users_reset = cursor.rowcount
                cursor = await db.execute("DELETE FROM solves")
                solves_cleared = cursor.rowcount
                cursor = await db.execute("DELETE FROM submissions")
                submissions_cleared = cursor.rowcount

        logger.warning(
            "Platform reset: %d users, %d solves, %d submissions",
            users_reset,
            solves_cleared,
            submissions_cleared,
        )
        return {
            "users_reset": users_reset,
            "solves_cleared": solves_cleared,
            "submissions_cleared": submissions_cleared,
        }

    async def count_challenges(self) -> int:
        async with self._connect() as db:
            cursor = await db.execute("SELECT COUNT(*) FROM challenges")
            return (await cursor.fetchone())[0]

    async def print_full_scoreboard(self) -> None:
        """
        Print the player standings to console.

        Displays every player with points in a formatted console output.
        """
        print("\n" + "=" * 50)
        print("COMPLETE SCOREBOARD")
        print("=" * 50)

        users = await self.user_standings(include_hidden=True, limit=1000)
        users = [u for u in users if u["points"] > 0]

        if not users:
            print("Scoreboard is empty")
            return

        for position, user in enumerate(users, 1):
            last_solve = user["last_solve_time"][:19] if user["last_solve_time"] else "Unknown"
            team = user["team_name"] or "-"
            print(
                f"{position:2d}. {user['username']:<15} Points: {user['points']:5d} "
                f"Solves: {user['solves']:3d} ({last_solve}) [{team}]"
            )
