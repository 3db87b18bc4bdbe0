import asyncio
import calendar
import logging
import os
import sqlite3
from contextlib import asynccontextmanager
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    NamedTuple,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
)

import aiosqlite

from errors import DatabaseError, TransactionError, parse_sqlite_error
from models import (
    DayFrequency,
    Exercise,
    ExerciseFilter,
    Profile,
    RecentExercise,
    SessionWithStats,
    Tag,
    WorkoutSession,
    WorkoutSet,
    WorkoutStats,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DB_VERSION = 1

# Separator for GROUP_CONCAT columns; never appears in user text.
_SEP = "\x1f"

_NOW = "strftime('%Y-%m-%dT%H:%M:%fZ', 'now')"


class StatementResult(NamedTuple):
    inserted_id: Optional[int]
    rows_affected: int


class Database:
    """Owns the single SQLite connection shared by every repository."""

    _TABLE_DEFINITIONS = {
        "profile": (
            f"""CREATE TABLE profile (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    weight_unit TEXT NOT NULL DEFAULT 'kg' CHECK(weight_unit IN ('kg', 'lbs')),
                    week_starts_on TEXT NOT NULL DEFAULT 'monday' CHECK(week_starts_on IN ('monday', 'sunday')),
                    locale TEXT NOT NULL DEFAULT 'en' CHECK(locale IN ('en', 'ko')),
                    timezone TEXT NOT NULL DEFAULT 'UTC',
                    default_rest_timer INTEGER NOT NULL DEFAULT 90,
                    auto_backup_enabled INTEGER NOT NULL DEFAULT 0 CHECK(auto_backup_enabled IN (0, 1)),
                    created_at TEXT NOT NULL DEFAULT ({_NOW}),
                    updated_at TEXT NOT NULL DEFAULT ({_NOW})
                );""",
            [
                "id",
                "name",
                "weight_unit",
                "week_starts_on",
                "locale",
                "timezone",
                "default_rest_timer",
                "auto_backup_enabled",
                "created_at",
                "updated_at",
            ],
        ),
        "exercises": (
            f"""CREATE TABLE exercises (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE COLLATE NOCASE,
                    notes TEXT,
                    default_weight REAL CHECK(default_weight IS NULL OR default_weight >= 0),
                    default_reps INTEGER CHECK(default_reps IS NULL OR default_reps >= 0),
                    unit TEXT NOT NULL DEFAULT 'kg' CHECK(unit IN ('kg', 'lbs')),
                    is_favorite INTEGER NOT NULL DEFAULT 0 CHECK(is_favorite IN (0, 1)),
                    created_at TEXT NOT NULL DEFAULT ({_NOW}),
                    updated_at TEXT NOT NULL DEFAULT ({_NOW})
                );""",
            [
                "id",
                "name",
                "notes",
                "default_weight",
                "default_reps",
                "unit",
                "is_favorite",
                "created_at",
                "updated_at",
            ],
        ),
        "tags": (
            f"""CREATE TABLE tags (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE COLLATE NOCASE,
                    color TEXT NOT NULL DEFAULT '#007AFF',
                    created_at TEXT NOT NULL DEFAULT ({_NOW})
                );""",
            ["id", "name", "color", "created_at"],
        ),
        "exercise_tags": (
            """CREATE TABLE exercise_tags (
                    exercise_id INTEGER NOT NULL,
                    tag_id INTEGER NOT NULL,
                    PRIMARY KEY (exercise_id, tag_id),
                    FOREIGN KEY(exercise_id) REFERENCES exercises(id) ON DELETE CASCADE,
                    FOREIGN KEY(tag_id) REFERENCES tags(id) ON DELETE CASCADE
                );""",
            ["exercise_id", "tag_id"],
        ),
        "workout_sessions": (
            f"""CREATE TABLE workout_sessions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    date TEXT NOT NULL,
                    time_of_day TEXT CHECK(time_of_day IN ('morning', 'afternoon', 'evening') OR time_of_day IS NULL),
                    duration_minutes INTEGER CHECK(duration_minutes IS NULL OR duration_minutes >= 0),
                    notes TEXT,
                    created_at TEXT NOT NULL DEFAULT ({_NOW}),
                    UNIQUE(date, time_of_day)
                );""",
            ["id", "date", "time_of_day", "duration_minutes", "notes", "created_at"],
        ),
        "sets": (
            f"""CREATE TABLE sets (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id INTEGER NOT NULL,
                    exercise_id INTEGER NOT NULL,
                    weight REAL NOT NULL CHECK(weight >= 0),
                    reps INTEGER NOT NULL CHECK(reps >= 0),
                    is_warmup INTEGER NOT NULL DEFAULT 0 CHECK(is_warmup IN (0, 1)),
                    is_failure INTEGER NOT NULL DEFAULT 0 CHECK(is_failure IN (0, 1)),
                    rest_duration_seconds INTEGER,
                    notes TEXT,
                    set_order INTEGER NOT NULL,
                    created_at TEXT NOT NULL DEFAULT ({_NOW}),
                    UNIQUE(session_id, set_order),
                    FOREIGN KEY(session_id) REFERENCES workout_sessions(id) ON DELETE CASCADE,
                    FOREIGN KEY(exercise_id) REFERENCES exercises(id)
                );""",
            [
                "id",
                "session_id",
                "exercise_id",
                "weight",
                "reps",
                "is_warmup",
                "is_failure",
                "rest_duration_seconds",
                "notes",
                "set_order",
                "created_at",
            ],
        ),
        "recent_exercises": (
            """CREATE TABLE recent_exercises (
                    exercise_id INTEGER PRIMARY KEY,
                    last_used TEXT NOT NULL,
                    use_count INTEGER NOT NULL DEFAULT 1,
                    last_weight REAL,
                    last_reps INTEGER,
                    FOREIGN KEY(exercise_id) REFERENCES exercises(id) ON DELETE CASCADE
                );""",
            ["exercise_id", "last_used", "use_count", "last_weight", "last_reps"],
        ),
        "app_metadata": (
            f"""CREATE TABLE app_metadata (
                    key TEXT PRIMARY KEY,
                    value TEXT,
                    updated_at TEXT NOT NULL DEFAULT ({_NOW})
                );""",
            ["key", "value", "updated_at"],
        ),
    }

    _INDEXES = [
        "CREATE INDEX IF NOT EXISTS idx_sets_session_id ON sets(session_id);",
        "CREATE INDEX IF NOT EXISTS idx_sets_exercise_id ON sets(exercise_id);",
        "CREATE INDEX IF NOT EXISTS idx_sets_created_at ON sets(created_at);",
        "CREATE INDEX IF NOT EXISTS idx_workout_sessions_date ON workout_sessions(date);",
        # UNIQUE(date, time_of_day) treats NULLs as distinct
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_workout_sessions_date_null ON workout_sessions(date) WHERE time_of_day IS NULL;",
        "CREATE INDEX IF NOT EXISTS idx_exercise_tags_tag ON exercise_tags(tag_id);",
        "CREATE INDEX IF NOT EXISTS idx_recent_exercises_last_used ON recent_exercises(last_used DESC);",
        "CREATE INDEX IF NOT EXISTS idx_exercises_favorite ON exercises(is_favorite) WHERE is_favorite = 1;",
    ]

    # version -> statements upgrading the previous version
    MIGRATIONS: Dict[int, List[str]] = {}

    DEFAULT_TAGS = [
        ("Chest", "#FF6B6B"),
        ("Back", "#4ECDC4"),
        ("Legs", "#45B7D1"),
        ("Shoulders", "#96CEB4"),
        ("Arms", "#FFEAA7"),
        ("Core", "#DDA0DD"),
        ("Cardio", "#98D8C8"),
        ("Compound", "#6C5CE7"),
        ("Isolation", "#A29BFE"),
    ]

    DEFAULT_EXERCISES = [
        ("Squat", ["Legs", "Compound"]),
        ("Deadlift", ["Back", "Legs", "Compound"]),
        ("Bench Press", ["Chest", "Compound"]),
        ("Pull-ups", ["Back", "Compound"]),
        ("Overhead Press", ["Shoulders", "Compound"]),
        ("Barbell Row", ["Back", "Compound"]),
        ("Dips", ["Chest", "Arms", "Compound"]),
        ("Lunges", ["Legs", "Compound"]),
    ]

    def __init__(self, db_path: str = "exercise_tracker.db", *, seed_defaults: bool = True) -> None:
        self._db_path = db_path
        self.seed_defaults = seed_defaults
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._owner: Optional[asyncio.Task] = None

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def is_memory(self) -> bool:
        return self._db_path == ":memory:" or self._db_path.startswith("file::memory:")

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    @property
    def in_transaction(self) -> bool:
        return self._owner is not None

    async def __aenter__(self) -> "Database":
        return await self.connect()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def connect(self) -> "Database":
        """Open the connection and bring the schema up to date."""
        if self._conn is not None:
            return self
        if not self.is_memory:
            directory = os.path.dirname(os.path.abspath(self._db_path))
            os.makedirs(directory, exist_ok=True)
        try:
            conn = await aiosqlite.connect(self._db_path, isolation_level=None)
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to open database: {e}", "connect") from e
        conn.row_factory = aiosqlite.Row
        self._conn = conn
        try:
            await conn.execute("PRAGMA foreign_keys = ON;")
            cursor = await conn.execute("PRAGMA foreign_keys;")
            row = await cursor.fetchone()
            if not row or row[0] != 1:
                raise DatabaseError("Failed to enable foreign key constraints", "connect")
            if not self.is_memory:
                await conn.execute("PRAGMA journal_mode = WAL;")
            await self._ensure_schema()
            await self._run_migrations()
            if self.seed_defaults:
                await self._seed_defaults()
        except BaseException:
            await self.close()
            raise
        logger.info("Database ready at %s (version %d)", self._db_path, DB_VERSION)
        return self

    async def close(self) -> None:
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        await conn.close()
        logger.info("Database closed: %s", self._db_path)

    def _require_connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise TransactionError("Database is not connected")
        return self._conn

    async def _ensure_schema(self) -> None:
        conn = self._require_connection()
        await conn.execute("PRAGMA foreign_keys = OFF;")
        # keep REFERENCES clauses in other tables unchanged while a table is renamed
        await conn.execute("PRAGMA legacy_alter_table = ON;")
        try:
            for table, (sql, columns) in self._TABLE_DEFINITIONS.items():
                await self._ensure_table(conn, table, sql, columns)
            for statement in self._INDEXES:
                await conn.execute(statement)
        finally:
            await conn.execute("PRAGMA legacy_alter_table = OFF;")
            await conn.execute("PRAGMA foreign_keys = ON;")

    async def _ensure_table(
        self, conn: aiosqlite.Connection, table: str, sql: str, columns: List[str]
    ) -> None:
        """Create ``table`` or rebuild it when its columns no longer match."""
        cursor = await conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?;", (table,)
        )
        if await cursor.fetchone() is None:
            await conn.execute(sql)
            return

        cursor = await conn.execute(f"PRAGMA table_info({table});")
        existing_cols = [row[1] for row in await cursor.fetchall()]
        if existing_cols == columns:
            return

        logger.info("Rebuilding table %s: %s -> %s", table, existing_cols, columns)
        await conn.execute("BEGIN;")
        try:
            await conn.execute(f"ALTER TABLE {table} RENAME TO {table}_old;")
            await conn.execute(sql)
            common = [c for c in existing_cols if c in columns]
            if common:
                cols = ", ".join(common)
                await conn.execute(
                    f"INSERT INTO {table} ({cols}) SELECT {cols} FROM {table}_old;"
                )
            await conn.execute(f"DROP TABLE {table}_old;")
            await conn.commit()
        except BaseException:
            await conn.rollback()
            raise

    async def get_version(self) -> int:
        row = await self.fetch_one(
            "SELECT value FROM app_metadata WHERE key = 'db_version';"
        )
        return int(row["value"]) if row and row["value"] is not None else 0

    async def _set_version(self, version: int) -> None:
        await self.run_statement(
            f"""INSERT INTO app_metadata (key, value) VALUES ('db_version', ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = {_NOW};""",
            (str(version),),
        )

    async def _run_migrations(self) -> None:
        current = await self.get_version()
        if current >= DB_VERSION:
            return
        for version in range(current + 1, DB_VERSION + 1):
            async with self.transaction():
                for statement in self.MIGRATIONS.get(version, []):
                    await self.run_statement(statement)
                await self._set_version(version)
            logger.info("Migrated database to version %d", version)

    async def _seed_defaults(self) -> None:
        row = await self.fetch_one("SELECT COUNT(*) AS count FROM profile;")
        if row["count"] > 0:
            return
        async with self.transaction():
            await self.run_statement("INSERT INTO profile (name) VALUES (?);", ("User",))
            tag_ids = {}
            for name, color in self.DEFAULT_TAGS:
                result = await self.run_statement(
                    "INSERT OR IGNORE INTO tags (name, color) VALUES (?, ?);", (name, color)
                )
                if result.rows_affected:
                    tag_ids[name] = result.inserted_id
            for name, tags in self.DEFAULT_EXERCISES:
                result = await self.run_statement(
                    "INSERT OR IGNORE INTO exercises (name) VALUES (?);", (name,)
                )
                if not result.rows_affected:
                    continue
                for tag in tags:
                    if tag in tag_ids:
                        await self.run_statement(
                            "INSERT INTO exercise_tags (exercise_id, tag_id) VALUES (?, ?);",
                            (result.inserted_id, tag_ids[tag]),
                        )
        logger.info("Seeded default profile, tags and exercises")

    @asynccontextmanager
    async def _guard(self):
        """Serialize statements against an open unit of another task."""
        if self._owner is not None and self._owner is asyncio.current_task():
            yield
            return
        async with self._lock:
            yield

    def _translate(
        self, error: BaseException, query: str, params: Sequence[Any]
    ) -> Exception:
        operation = query.strip().split(None, 1)[0].upper() if query.strip() else None
        logger.error(
            "Database %s failed: %s | query=%s | params=%s",
            operation,
            error,
            " ".join(query.split()),
            list(params),
        )
        return parse_sqlite_error(error, operation, query, params)

    async def run_query(self, query: str, params: Sequence[Any] = ()) -> List[aiosqlite.Row]:
        conn = self._require_connection()
        async with self._guard():
            try:
                cursor = await conn.execute(query, tuple(params))
                rows = await cursor.fetchall()
                await cursor.close()
                return list(rows)
            except sqlite3.Error as e:
                raise self._translate(e, query, params) from e

    async def fetch_one(self, query: str, params: Sequence[Any] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.run_query(query, params)
        return rows[0] if rows else None

    async def run_statement(self, query: str, params: Sequence[Any] = ()) -> StatementResult:
        conn = self._require_connection()
        async with self._guard():
            try:
                cursor = await conn.execute(query, tuple(params))
                result = StatementResult(cursor.lastrowid, cursor.rowcount)
                await cursor.close()
                return result
            except sqlite3.Error as e:
                raise self._translate(e, query, params) from e

    async def run_batch(self, query: str, param_rows: Iterable[Sequence[Any]]) -> int:
        """Run ``query`` once per parameter row inside a single unit."""
        rows = [tuple(p) for p in param_rows]
        async with self.transaction():
            conn = self._require_connection()
            try:
                cursor = await conn.executemany(query, rows)
                count = cursor.rowcount
                await cursor.close()
                return count
            except sqlite3.Error as e:
                raise self._translate(e, query, rows[0] if rows else ()) from e

    @asynccontextmanager
    async def transaction(self):
        """Open an atomic unit; commit on normal exit, roll back on any error.

        Units do not nest: opening one from the task that already owns the
        open unit raises :class:`TransactionError`. Units and statements from
        other tasks wait until the open unit finishes.
        """
        conn = self._require_connection()
        task = asyncio.current_task()
        if self._owner is not None and self._owner is task:
            raise TransactionError("Nested transactions are not supported")
        async with self._lock:
            self._owner = task
            try:
                try:
                    await conn.execute("BEGIN IMMEDIATE;")
                except sqlite3.Error as e:
                    raise self._translate(e, "BEGIN IMMEDIATE", ()) from e
                try:
                    yield self
                except BaseException:
                    await conn.rollback()
                    logger.debug("Transaction rolled back")
                    raise
                try:
                    await conn.commit()
                except sqlite3.Error as e:
                    await conn.rollback()
                    raise self._translate(e, "COMMIT", ()) from e
            finally:
                self._owner = None

    async def run_atomic(self, unit: Callable[[], Awaitable[T]]) -> T:
        async with self.transaction():
            return await unit()

    async def get_stats(self) -> Dict[str, int]:
        tables = await self.fetch_one(
            "SELECT COUNT(*) AS count FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%';"
        )
        stats = {"version": await self.get_version(), "tables": tables["count"]}
        for key, table in (
            ("exercises", "exercises"),
            ("tags", "tags"),
            ("sessions", "workout_sessions"),
            ("sets", "sets"),
        ):
            row = await self.fetch_one(f"SELECT COUNT(*) AS count FROM {table};")
            stats[key] = row["count"]
        return stats

    async def optimize(self) -> None:
        await self.run_statement("ANALYZE;")
        logger.info("Database optimized")

    async def vacuum(self) -> None:
        """Run SQLite VACUUM to reduce database size."""
        await self.run_statement("VACUUM;")
        logger.info("Database vacuumed")

    async def verify_integrity(self) -> bool:
        row = await self.fetch_one("PRAGMA integrity_check;")
        if row is None or row[0] != "ok":
            logger.error("Integrity check failed: %s", row[0] if row else None)
            return False
        row = await self.fetch_one("PRAGMA foreign_keys;")
        if row is None or row[0] != 1:
            logger.error("Foreign key enforcement is disabled")
            return False
        return True

    async def reset(self) -> None:
        """Delete every stored row by recreating the database from scratch.

        The cache is not touched; use ``Services.reset`` when one is in use.
        """
        await self.close()
        if not self.is_memory:
            for suffix in ("", "-wal", "-shm"):
                path = self._db_path + suffix
                if os.path.exists(path):
                    os.remove(path)
        logger.info("Database reset: %s", self._db_path)
        await self.connect()


class BaseRepository:
    """Base repository providing helper methods."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def execute(self, query: str, params: Tuple = ()) -> int:
        result = await self.db.run_statement(query, params)
        return result.inserted_id

    async def fetch_all(self, query: str, params: Tuple = ()) -> List[aiosqlite.Row]:
        return await self.db.run_query(query, params)

    async def fetch_one(self, query: str, params: Tuple = ()) -> Optional[aiosqlite.Row]:
        return await self.db.fetch_one(query, params)

    async def _delete_all(self, table: str) -> None:
        await self.db.run_statement(f"DELETE FROM {table};")


def _split(value: Optional[str]) -> List[str]:
    return value.split(_SEP) if value else []


def _exercise_from_row(row: aiosqlite.Row) -> Exercise:
    data = dict(row)
    ids = _split(data.pop("tag_ids"))
    names = _split(data.pop("tag_names"))
    colors = _split(data.pop("tag_colors"))
    created = _split(data.pop("tag_created_ats"))
    tags = [
        Tag(id=int(tid), name=name, color=color, created_at=created_at)
        for tid, name, color, created_at in zip(ids, names, colors, created)
    ]
    tags.sort(key=lambda t: t.name.lower())
    return Exercise(tags=tags, **data)


def _session_from_row(row: aiosqlite.Row) -> SessionWithStats:
    data = dict(row)
    names = list(dict.fromkeys(_split(data.pop("exercise_names"))))
    ids = data.pop("exercise_ids")
    exercise_ids = [int(i) for i in ids.split(",")] if ids else []
    return SessionWithStats(exercise_names=names, exercise_ids=exercise_ids, **data)


class ExerciseRepository(BaseRepository):
    """Repository for exercises and their tag links."""

    _SELECT = f"""
        SELECT
            e.id,
            e.name,
            e.notes,
            e.default_weight,
            e.default_reps,
            e.unit,
            e.is_favorite,
            e.created_at,
            e.updated_at,
            GROUP_CONCAT(t.id, char(31)) AS tag_ids,
            GROUP_CONCAT(t.name, char(31)) AS tag_names,
            GROUP_CONCAT(t.color, char(31)) AS tag_colors,
            GROUP_CONCAT(t.created_at, char(31)) AS tag_created_ats
        FROM exercises e
        LEFT JOIN exercise_tags et ON e.id = et.exercise_id
        LEFT JOIN tags t ON et.tag_id = t.id
    """

    @staticmethod
    def _where(filter_data: Optional[ExerciseFilter], alias: str = "e") -> Tuple[str, List[Any]]:
        clauses = ["1=1"]
        params: List[Any] = []
        if filter_data is not None:
            if filter_data.search_query:
                clauses.append(f"{alias}.name LIKE ?")
                params.append(f"%{filter_data.search_query.strip()}%")
            if filter_data.favorites_only:
                clauses.append(f"{alias}.is_favorite = 1")
            if filter_data.tag_ids:
                marks = ", ".join("?" for _ in filter_data.tag_ids)
                clauses.append(
                    f"{alias}.id IN (SELECT exercise_id FROM exercise_tags WHERE tag_id IN ({marks}))"
                )
                params.extend(filter_data.tag_ids)
        return " AND ".join(clauses), params

    async def fetch_all_exercises(
        self,
        filter_data: Optional[ExerciseFilter] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Exercise]:
        where, params = self._where(filter_data)
        query = f"{self._SELECT} WHERE {where} GROUP BY e.id ORDER BY e.name COLLATE NOCASE ASC"
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        rows = await self.fetch_all(query, tuple(params))
        return [_exercise_from_row(r) for r in rows]

    async def count(self, filter_data: Optional[ExerciseFilter] = None) -> int:
        where, params = self._where(filter_data, alias="exercises")
        row = await self.fetch_one(
            f"SELECT COUNT(*) AS count FROM exercises WHERE {where};", tuple(params)
        )
        return row["count"]

    async def fetch_detail(self, exercise_id: int) -> Optional[Exercise]:
        rows = await self.fetch_all(
            f"{self._SELECT} WHERE e.id = ? GROUP BY e.id", (exercise_id,)
        )
        return _exercise_from_row(rows[0]) if rows else None

    async def exists(self, exercise_id: int) -> bool:
        row = await self.fetch_one("SELECT 1 FROM exercises WHERE id = ?;", (exercise_id,))
        return row is not None

    async def add(
        self,
        name: str,
        notes: Optional[str],
        default_weight: Optional[float],
        default_reps: Optional[int],
        unit: str,
    ) -> int:
        return await self.execute(
            "INSERT INTO exercises (name, notes, default_weight, default_reps, unit) VALUES (?, ?, ?, ?, ?);",
            (name, notes, default_weight, default_reps, unit),
        )

    async def update(self, exercise_id: int, fields: Dict[str, Any]) -> int:
        if not fields:
            return 0
        assignments = ", ".join(f"{col} = ?" for col in fields)
        result = await self.db.run_statement(
            f"UPDATE exercises SET {assignments}, updated_at = {_NOW} WHERE id = ?;",
            (*fields.values(), exercise_id),
        )
        return result.rows_affected

    async def set_tags(self, exercise_id: int, tag_ids: Iterable[int]) -> None:
        await self.db.run_statement(
            "DELETE FROM exercise_tags WHERE exercise_id = ?;", (exercise_id,)
        )
        for tag_id in dict.fromkeys(tag_ids):
            await self.db.run_statement(
                "INSERT INTO exercise_tags (exercise_id, tag_id) VALUES (?, ?);",
                (exercise_id, tag_id),
            )

    async def toggle_favorite(self, exercise_id: int) -> int:
        result = await self.db.run_statement(
            f"UPDATE exercises SET is_favorite = 1 - is_favorite, updated_at = {_NOW} WHERE id = ?;",
            (exercise_id,),
        )
        return result.rows_affected

    async def remove(self, exercise_id: int) -> int:
        result = await self.db.run_statement(
            "DELETE FROM exercises WHERE id = ?;", (exercise_id,)
        )
        return result.rows_affected


class TagRepository(BaseRepository):
    """Repository for exercise tags."""

    _SELECT = "SELECT id, name, color, created_at FROM tags"

    async def fetch_all_tags(self) -> List[Tag]:
        rows = await self.fetch_all(f"{self._SELECT} ORDER BY name COLLATE NOCASE ASC;")
        return [Tag.model_validate(dict(r)) for r in rows]

    async def fetch_detail(self, tag_id: int) -> Optional[Tag]:
        row = await self.fetch_one(f"{self._SELECT} WHERE id = ?;", (tag_id,))
        return Tag.model_validate(dict(row)) if row else None

    async def add(self, name: str, color: str) -> int:
        return await self.execute(
            "INSERT INTO tags (name, color) VALUES (?, ?);", (name, color)
        )

    async def update(self, tag_id: int, fields: Dict[str, Any]) -> int:
        if not fields:
            return 0
        assignments = ", ".join(f"{col} = ?" for col in fields)
        result = await self.db.run_statement(
            f"UPDATE tags SET {assignments} WHERE id = ?;", (*fields.values(), tag_id)
        )
        return result.rows_affected

    async def remove(self, tag_id: int) -> int:
        result = await self.db.run_statement("DELETE FROM tags WHERE id = ?;", (tag_id,))
        return result.rows_affected


class SessionRepository(BaseRepository):
    """Repository for workout sessions and their aggregates."""

    _COLUMNS = "ws.id, ws.date, ws.time_of_day, ws.duration_minutes, ws.notes, ws.created_at"

    _SELECT_WITH_STATS = f"""
        SELECT
            {_COLUMNS},
            COUNT(s.id) AS set_count,
            GROUP_CONCAT(e.name, char(31)) AS exercise_names,
            GROUP_CONCAT(DISTINCT s.exercise_id) AS exercise_ids,
            COALESCE(SUM(s.weight * s.reps), 0) AS total_volume
        FROM workout_sessions ws
        LEFT JOIN sets s ON ws.id = s.session_id
        LEFT JOIN exercises e ON s.exercise_id = e.id
    """

    _ORDER = "ORDER BY ws.date DESC, ws.time_of_day, ws.id"

    async def find_by_natural_key(self, date: str, time_of_day: Optional[str]) -> Optional[int]:
        if time_of_day is None:
            row = await self.fetch_one(
                "SELECT id FROM workout_sessions WHERE date = ? AND time_of_day IS NULL;",
                (date,),
            )
        else:
            row = await self.fetch_one(
                "SELECT id FROM workout_sessions WHERE date = ? AND time_of_day = ?;",
                (date, time_of_day),
            )
        return row["id"] if row else None

    async def create(self, date: str, time_of_day: Optional[str]) -> int:
        return await self.execute(
            "INSERT INTO workout_sessions (date, time_of_day) VALUES (?, ?);",
            (date, time_of_day),
        )

    async def fetch_detail(self, session_id: int) -> Optional[WorkoutSession]:
        row = await self.fetch_one(
            f"SELECT {self._COLUMNS} FROM workout_sessions ws WHERE ws.id = ?;", (session_id,)
        )
        return WorkoutSession.model_validate(dict(row)) if row else None

    async def fetch_with_stats(self, session_id: int) -> Optional[SessionWithStats]:
        rows = await self.fetch_all(
            f"{self._SELECT_WITH_STATS} WHERE ws.id = ? GROUP BY ws.id", (session_id,)
        )
        return _session_from_row(rows[0]) if rows else None

    async def fetch_by_date(self, date: str) -> List[WorkoutSession]:
        rows = await self.fetch_all(
            f"SELECT {self._COLUMNS} FROM workout_sessions ws WHERE ws.date = ? ORDER BY ws.time_of_day, ws.id;",
            (date,),
        )
        return [WorkoutSession.model_validate(dict(r)) for r in rows]

    async def fetch_range_with_stats(self, start_date: str, end_date: str) -> List[SessionWithStats]:
        rows = await self.fetch_all(
            f"{self._SELECT_WITH_STATS} WHERE ws.date BETWEEN ? AND ? GROUP BY ws.id {self._ORDER}",
            (start_date, end_date),
        )
        return [_session_from_row(r) for r in rows]

    async def fetch_page_with_stats(self, limit: int, offset: int) -> List[SessionWithStats]:
        rows = await self.fetch_all(
            f"{self._SELECT_WITH_STATS} GROUP BY ws.id {self._ORDER} LIMIT ? OFFSET ?",
            (limit, offset),
        )
        return [_session_from_row(r) for r in rows]

    async def count(self) -> int:
        row = await self.fetch_one("SELECT COUNT(*) AS count FROM workout_sessions;")
        return row["count"]

    async def workout_dates(self, year: int, month: int) -> List[str]:
        last_day = calendar.monthrange(year, month)[1]
        start = f"{year:04d}-{month:02d}-01"
        end = f"{year:04d}-{month:02d}-{last_day:02d}"
        rows = await self.fetch_all(
            "SELECT DISTINCT date FROM workout_sessions WHERE date BETWEEN ? AND ? ORDER BY date;",
            (start, end),
        )
        return [r["date"] for r in rows]

    async def update(self, session_id: int, fields: Dict[str, Any]) -> int:
        if not fields:
            return 0
        assignments = ", ".join(f"{col} = ?" for col in fields)
        result = await self.db.run_statement(
            f"UPDATE workout_sessions SET {assignments} WHERE id = ?;",
            (*fields.values(), session_id),
        )
        return result.rows_affected

    async def exercise_ids(self, session_id: int) -> List[int]:
        rows = await self.fetch_all(
            "SELECT DISTINCT exercise_id FROM sets WHERE session_id = ?;", (session_id,)
        )
        return [r["exercise_id"] for r in rows]

    async def remove(self, session_id: int) -> int:
        result = await self.db.run_statement(
            "DELETE FROM workout_sessions WHERE id = ?;", (session_id,)
        )
        return result.rows_affected

    async def stats(self, start_date: str, end_date: str) -> WorkoutStats:
        sessions = await self.fetch_one(
            """SELECT
                    COUNT(*) AS total_sessions,
                    COALESCE(SUM(duration_minutes), 0) AS total_duration,
                    COALESCE(AVG(duration_minutes), 0) AS average_session_duration,
                    COUNT(DISTINCT date) AS workout_days
               FROM workout_sessions
               WHERE date BETWEEN ? AND ?;""",
            (start_date, end_date),
        )
        sets = await self.fetch_one(
            """SELECT
                    COUNT(s.id) AS total_sets,
                    COALESCE(SUM(s.weight * s.reps), 0) AS total_volume
               FROM sets s
               JOIN workout_sessions ws ON ws.id = s.session_id
               WHERE ws.date BETWEEN ? AND ?;""",
            (start_date, end_date),
        )
        return WorkoutStats(**dict(sessions), **dict(sets))

    async def frequency(self, start_date: str, end_date: str) -> List[DayFrequency]:
        rows = await self.fetch_all(
            """SELECT
                    CAST(strftime('%w', date) AS INTEGER) AS day_of_week,
                    COUNT(*) AS count
               FROM workout_sessions
               WHERE date BETWEEN ? AND ?
               GROUP BY day_of_week
               ORDER BY day_of_week;""",
            (start_date, end_date),
        )
        return [DayFrequency.model_validate(dict(r)) for r in rows]

    async def has_workout_on(self, date: str) -> bool:
        row = await self.fetch_one(
            "SELECT COUNT(*) AS count FROM workout_sessions WHERE date = ?;", (date,)
        )
        return row["count"] > 0


class SetRepository(BaseRepository):
    """Repository for sets; keeps ``recent_exercises`` current on insert."""

    _SELECT = """
        SELECT
            s.id,
            s.session_id,
            s.exercise_id,
            e.name AS exercise_name,
            s.weight,
            s.reps,
            s.is_warmup,
            s.is_failure,
            s.rest_duration_seconds AS rest_duration,
            s.notes,
            s.set_order,
            s.created_at
        FROM sets s
        JOIN exercises e ON e.id = s.exercise_id
    """

    async def next_order(self, session_id: int) -> int:
        row = await self.fetch_one(
            "SELECT COALESCE(MAX(set_order), 0) + 1 AS next_order FROM sets WHERE session_id = ?;",
            (session_id,),
        )
        return row["next_order"]

    async def add(
        self,
        session_id: int,
        exercise_id: int,
        weight: float,
        reps: int,
        is_warmup: bool = False,
        is_failure: bool = False,
        rest_duration: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> int:
        """Insert a set at the end of its session and record the exercise as recent.

        Must run inside an open unit so the order lookup, the insert and the
        upsert commit together.
        """
        set_order = await self.next_order(session_id)
        set_id = await self.execute(
            """INSERT INTO sets
                   (session_id, exercise_id, weight, reps, is_warmup, is_failure,
                    rest_duration_seconds, notes, set_order)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);""",
            (
                session_id,
                exercise_id,
                weight,
                reps,
                int(is_warmup),
                int(is_failure),
                rest_duration,
                notes,
                set_order,
            ),
        )
        await self.db.run_statement(
            f"""INSERT INTO recent_exercises (exercise_id, last_used, use_count, last_weight, last_reps)
                VALUES (?, {_NOW}, 1, ?, ?)
                ON CONFLICT(exercise_id) DO UPDATE SET
                    last_used = excluded.last_used,
                    use_count = recent_exercises.use_count + 1,
                    last_weight = excluded.last_weight,
                    last_reps = excluded.last_reps;""",
            (exercise_id, weight, reps),
        )
        return set_id

    async def fetch_detail(self, set_id: int) -> Optional[WorkoutSet]:
        row = await self.fetch_one(f"{self._SELECT} WHERE s.id = ?;", (set_id,))
        return WorkoutSet.model_validate(dict(row)) if row else None

    async def fetch_for_session(self, session_id: int) -> List[WorkoutSet]:
        rows = await self.fetch_all(
            f"{self._SELECT} WHERE s.session_id = ? ORDER BY s.set_order ASC;", (session_id,)
        )
        return [WorkoutSet.model_validate(dict(r)) for r in rows]

    async def fetch_for_exercise(self, exercise_id: int) -> List[WorkoutSet]:
        rows = await self.fetch_all(
            f"{self._SELECT} WHERE s.exercise_id = ? ORDER BY s.created_at DESC, s.id DESC;",
            (exercise_id,),
        )
        return [WorkoutSet.model_validate(dict(r)) for r in rows]

    async def count(self, session_id: Optional[int] = None) -> int:
        if session_id is None:
            row = await self.fetch_one("SELECT COUNT(*) AS count FROM sets;")
        else:
            row = await self.fetch_one(
                "SELECT COUNT(*) AS count FROM sets WHERE session_id = ?;", (session_id,)
            )
        return row["count"]

    async def update(self, set_id: int, fields: Dict[str, Any]) -> int:
        if not fields:
            return 0
        columns = {
            ("rest_duration_seconds" if k == "rest_duration" else k): (
                int(v) if isinstance(v, bool) else v
            )
            for k, v in fields.items()
        }
        assignments = ", ".join(f"{col} = ?" for col in columns)
        result = await self.db.run_statement(
            f"UPDATE sets SET {assignments} WHERE id = ?;", (*columns.values(), set_id)
        )
        return result.rows_affected

    async def remove(self, set_id: int) -> int:
        result = await self.db.run_statement("DELETE FROM sets WHERE id = ?;", (set_id,))
        return result.rows_affected

    async def export_rows(self) -> List[aiosqlite.Row]:
        return await self.fetch_all(
            """SELECT
                    ws.date,
                    ws.time_of_day,
                    e.name AS exercise,
                    s.weight,
                    s.reps,
                    s.is_warmup,
                    s.is_failure,
                    s.set_order,
                    s.notes
               FROM sets s
               JOIN workout_sessions ws ON s.session_id = ws.id
               JOIN exercises e ON s.exercise_id = e.id
               ORDER BY ws.date DESC, ws.time_of_day, s.set_order ASC;"""
        )


class RecentExerciseRepository(BaseRepository):
    """Read side of the ``recent_exercises`` summary table."""

    async def fetch_recent(self) -> List[RecentExercise]:
        rows = await self.fetch_all(
            """SELECT
                    re.exercise_id,
                    e.name AS exercise_name,
                    re.last_used,
                    re.use_count,
                    re.last_weight,
                    re.last_reps
               FROM recent_exercises re
               JOIN exercises e ON e.id = re.exercise_id
               ORDER BY re.last_used DESC, re.use_count DESC, re.exercise_id DESC;"""
        )
        return [RecentExercise.model_validate(dict(r)) for r in rows]


class ProfileRepository(BaseRepository):
    """Repository for the single profile row."""

    async def fetch(self) -> Optional[Profile]:
        row = await self.fetch_one(
            """SELECT id, name, weight_unit, week_starts_on, locale, timezone,
                      default_rest_timer, auto_backup_enabled, created_at, updated_at
               FROM profile ORDER BY id LIMIT 1;"""
        )
        return Profile.model_validate(dict(row)) if row else None

    async def update(self, profile_id: int, fields: Dict[str, Any]) -> int:
        if not fields:
            return 0
        columns = {k: int(v) if isinstance(v, bool) else v for k, v in fields.items()}
        assignments = ", ".join(f"{col} = ?" for col in columns)
        result = await self.db.run_statement(
            f"UPDATE profile SET {assignments}, updated_at = {_NOW} WHERE id = ?;",
            (*columns.values(), profile_id),
        )
        return result.rows_affected
