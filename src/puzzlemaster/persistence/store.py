"""
SQLite store for the planning domain: schema, migrations and connection lifecycle.

Connections are short-lived and configured on open (foreign keys on, WAL
journal, busy timeout). ``transaction()`` runs ``BEGIN IMMEDIATE`` and nests
through savepoints; while a transaction is open in the current context every
``connection()``, ``query_*`` and nested ``transaction()`` call on the same
store reuses its connection, so a caller can group several gateway
operations into one atomic unit.

Foreign keys are declared ``DEFERRABLE INITIALLY DEFERRED`` without
``ON DELETE`` actions: deletion order is decided by the gateways from the
relationship map, and the store only verifies the end state at commit.
"""

from __future__ import annotations

import hashlib
import sqlite3
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final, NoReturn

from puzzlemaster.constants import STORE_SCHEMA_VERSION
from puzzlemaster.domain.models import JobStatus, TaskStatus

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]
RowValue = str | int | float | bytes | None

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000


def _sql_enum(values: Iterable[str]) -> str:
    return ",".join(f"'{value}'" for value in values)


def _enum_values(values: type[JobStatus] | type[TaskStatus]) -> tuple[str, ...]:
    return tuple(sorted(item.value for item in values))


_JOB_STATUS_VALUES: Final[tuple[str, ...]] = _enum_values(JobStatus)
_TASK_STATUS_VALUES: Final[tuple[str, ...]] = _enum_values(TaskStatus)

# Millisecond precision, always UTC with a trailing Z.
_CREATED_AT_DEFAULT: Final[str] = "(strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))"


def _fk(column: str, table: str) -> str:
    return f"FOREIGN KEY({column}) REFERENCES {table}(id) DEFERRABLE INITIALLY DEFERRED"


_SCHEMA_VERSIONS_TABLE_SQL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
    applied_at TEXT NOT NULL
)
"""

_MIGRATION_0001_STATEMENTS: Final[tuple[str, ...]] = (
    _SCHEMA_VERSIONS_TABLE_SQL,
    f"""
    CREATE TABLE IF NOT EXISTS projects (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT,
        created_at TEXT NOT NULL DEFAULT {_CREATED_AT_DEFAULT}
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS plans (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL UNIQUE,
        description TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT {_CREATED_AT_DEFAULT},
        {_fk("project_id", "projects")}
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS phases (
        id TEXT PRIMARY KEY,
        plan_id TEXT NOT NULL,
        name TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT {_CREATED_AT_DEFAULT},
        {_fk("plan_id", "plans")}
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS jobs (
        id TEXT PRIMARY KEY,
        phase_id TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        description TEXT,
        status TEXT NOT NULL DEFAULT 'PENDING'
            CHECK (status IN ({_sql_enum(_JOB_STATUS_VALUES)})),
        created_at TEXT NOT NULL DEFAULT {_CREATED_AT_DEFAULT},
        {_fk("phase_id", "phases")}
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS teams (
        id TEXT PRIMARY KEY,
        phase_id TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT {_CREATED_AT_DEFAULT},
        {_fk("phase_id", "phases")}
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS roles (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        description TEXT,
        created_at TEXT NOT NULL DEFAULT {_CREATED_AT_DEFAULT}
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS agents (
        id TEXT PRIMARY KEY,
        team_id TEXT NOT NULL,
        role_id TEXT NOT NULL,
        name TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT {_CREATED_AT_DEFAULT},
        {_fk("team_id", "teams")},
        {_fk("role_id", "roles")}
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS validators (
        id TEXT PRIMARY KEY,
        template TEXT NOT NULL,
        resource TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT {_CREATED_AT_DEFAULT}
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        job_id TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT,
        status TEXT NOT NULL DEFAULT 'PENDING'
            CHECK (status IN ({_sql_enum(_TASK_STATUS_VALUES)})),
        agent_id TEXT,
        validator_id TEXT,
        created_at TEXT NOT NULL DEFAULT {_CREATED_AT_DEFAULT},
        {_fk("job_id", "jobs")},
        {_fk("agent_id", "agents")},
        {_fk("validator_id", "validators")}
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS actions (
        id TEXT PRIMARY KEY,
        phase_id TEXT NOT NULL,
        target_phase_id TEXT NOT NULL,
        validator_id TEXT NOT NULL,
        name TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT {_CREATED_AT_DEFAULT},
        {_fk("phase_id", "phases")},
        {_fk("target_phase_id", "phases")},
        {_fk("validator_id", "validators")}
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_phases_plan ON phases(plan_id)",
    "CREATE INDEX IF NOT EXISTS idx_agents_team ON agents(team_id)",
    "CREATE INDEX IF NOT EXISTS idx_agents_role ON agents(role_id)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_job ON tasks(job_id)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_agent ON tasks(agent_id)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_validator ON tasks(validator_id)",
    "CREATE INDEX IF NOT EXISTS idx_actions_phase ON actions(phase_id)",
    "CREATE INDEX IF NOT EXISTS idx_actions_target_phase ON actions(target_phase_id)",
    "CREATE INDEX IF NOT EXISTS idx_actions_validator ON actions(validator_id)",
)

STORE_TABLES: Final[tuple[str, ...]] = (
    "projects",
    "plans",
    "phases",
    "jobs",
    "teams",
    "roles",
    "agents",
    "validators",
    "tasks",
    "actions",
)


@dataclass(frozen=True, slots=True)
class MigrationRecord:
    version: int
    name: str
    checksum: str
    applied_at: str


@dataclass(frozen=True, slots=True)
class _Migration:
    version: int
    name: str
    statements: tuple[str, ...]
    checksum: str


def _migration_checksum(version: int, name: str, statements: Sequence[str]) -> str:
    digest = hashlib.sha256()
    digest.update(f"{version}:{name}\n".encode())
    for statement in statements:
        normalized = "\n".join(line.rstrip() for line in statement.strip().splitlines())
        digest.update(normalized.encode("utf-8"))
        digest.update(b"\n--\n")
    return digest.hexdigest()


_MIGRATIONS: Final[tuple[_Migration, ...]] = (
    _Migration(
        version=1,
        name="initial_planning_schema",
        statements=_MIGRATION_0001_STATEMENTS,
        checksum=_migration_checksum(1, "initial_planning_schema", _MIGRATION_0001_STATEMENTS),
    ),
)

_SQLITE_BUSY_CODES: Final[frozenset[int]] = frozenset(
    code
    for code in (
        getattr(sqlite3, "SQLITE_BUSY", None),
        getattr(sqlite3, "SQLITE_BUSY_RECOVERY", None),
        getattr(sqlite3, "SQLITE_BUSY_SNAPSHOT", None),
        getattr(sqlite3, "SQLITE_LOCKED", None),
        getattr(sqlite3, "SQLITE_LOCKED_SHAREDCACHE", None),
    )
    if isinstance(code, int)
)

_SQLITE_CORRUPTION_CODES: Final[frozenset[int]] = frozenset(
    code
    for code in (
        getattr(sqlite3, "SQLITE_CORRUPT", None),
        getattr(sqlite3, "SQLITE_NOTADB", None),
    )
    if isinstance(code, int)
)

_BUSY_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database is locked",
    "database table is locked",
    "database schema is locked",
)

_CORRUPTION_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database disk image is malformed",
    "malformed database",
    "file is not a database",
)


class StoreError(RuntimeError):
    """Base class for store infrastructure errors."""


class StoreBusyError(StoreError):
    """Raised when SQLite stays locked past the busy timeout."""


class StoreMigrationError(StoreError):
    """Raised when migrations cannot be applied safely."""


class StoreCorruptionError(StoreError):
    """Raised when SQLite reports possible corruption."""


class Store:
    """SQLite-backed planning store with deterministic migrations."""

    def __init__(
        self,
        path: str | Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    ) -> None:
        if not isinstance(path, (str, Path)):
            raise TypeError(f"Store(path) expects str or pathlib.Path; got {type(path).__name__}")
        if busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms must be >= 0")

        self._path = Path(path).expanduser()
        self._busy_timeout_ms = busy_timeout_ms
        self._savepoint_counter = 0
        self._bound: ContextVar[sqlite3.Connection | None] = ContextVar(
            f"puzzlemaster_store_{id(self)}",
            default=None,
        )

    @property
    def path(self) -> Path:
        return self._path

    @property
    def busy_timeout_ms(self) -> int:
        return self._busy_timeout_ms

    @property
    def in_transaction(self) -> bool:
        return self._bound.get() is not None

    def connect(self) -> sqlite3.Connection:
        """Open a configured SQLite connection; the caller owns and closes it."""

        self._path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(
                self._path,
                timeout=self._busy_timeout_ms / 1000.0,
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.Error as exc:
            self._raise_actionable_error(exc, operation="connect")
        conn.row_factory = sqlite3.Row
        try:
            self._configure_connection(conn)
        except sqlite3.Error as exc:
            conn.close()
            self._raise_actionable_error(exc, operation="configure connection")
        except BaseException:
            conn.close()
            raise
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        bound = self._bound.get()
        if bound is not None:
            yield bound
            return
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(
        self,
        *,
        conn: sqlite3.Connection | None = None,
        immediate: bool = True,
    ) -> Iterator[sqlite3.Connection]:
        """Run statements inside an atomic transaction with savepoint support."""

        if conn is None:
            conn = self._bound.get()
        if conn is None:
            with self.connection() as owned_conn:
                token = self._bound.set(owned_conn)
                try:
                    with self.transaction(conn=owned_conn, immediate=immediate) as txn_conn:
                        yield txn_conn
                finally:
                    self._bound.reset(token)
            return

        if conn.in_transaction:
            savepoint = self._next_savepoint_name()
            self._execute(conn, f"SAVEPOINT {savepoint}", (), operation="savepoint")
            try:
                yield conn
            except BaseException:
                self._execute(
                    conn,
                    f"ROLLBACK TO SAVEPOINT {savepoint}",
                    (),
                    operation="rollback to savepoint",
                )
                self._execute(conn, f"RELEASE SAVEPOINT {savepoint}", (), operation="release savepoint")
                raise
            else:
                self._execute(conn, f"RELEASE SAVEPOINT {savepoint}", (), operation="release savepoint")
            return

        begin_sql = "BEGIN IMMEDIATE" if immediate else "BEGIN"
        self._execute(conn, begin_sql, (), operation="begin transaction")
        try:
            yield conn
        except BaseException:
            self._execute(conn, "ROLLBACK", (), operation="rollback transaction")
            raise
        try:
            self._execute(conn, "COMMIT", (), operation="commit transaction")
        except BaseException:
            # A deferred foreign-key violation fails COMMIT and leaves the transaction open.
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise

    def migrate(self) -> int:
        """Apply migrations idempotently and return current schema version."""

        self._validate_migration_chain(STORE_SCHEMA_VERSION)
        with self.connection() as conn:
            self._execute(
                conn,
                _SCHEMA_VERSIONS_TABLE_SQL,
                (),
                operation="create schema_versions table",
            )
            applied = self._load_applied_migrations(conn)
            current_version = max(applied, default=0)
            if current_version > STORE_SCHEMA_VERSION:
                raise StoreMigrationError(
                    "database schema is newer than supported by this release "
                    f"(db={current_version}, code={STORE_SCHEMA_VERSION})"
                )

            for migration in _MIGRATIONS:
                if migration.version > STORE_SCHEMA_VERSION:
                    continue

                record = applied.get(migration.version)
                if record is not None:
                    if record.checksum != migration.checksum:
                        raise StoreMigrationError(
                            "migration checksum mismatch for version "
                            f"{migration.version}: db={record.checksum} code={migration.checksum}"
                        )
                    continue

                applied_at = _utc_now_iso()
                with self.transaction(conn=conn, immediate=True) as tx:
                    for statement in migration.statements:
                        self._execute(
                            tx,
                            statement,
                            (),
                            operation=f"apply migration {migration.version}",
                        )
                    self._execute(
                        tx,
                        """
                        INSERT INTO schema_versions (version, name, checksum, applied_at)
                        VALUES (?, ?, ?, ?)
                        """,
                        (migration.version, migration.name, migration.checksum, applied_at),
                        operation=f"record migration {migration.version}",
                    )

                applied[migration.version] = MigrationRecord(
                    version=migration.version,
                    name=migration.name,
                    checksum=migration.checksum,
                    applied_at=applied_at,
                )

            return self.schema_version(conn=conn)

    def schema_version(self, *, conn: sqlite3.Connection | None = None) -> int:
        row = self.query_one(
            "SELECT COALESCE(MAX(version), 0) AS version FROM schema_versions",
            conn=conn,
        )
        if row is None:
            return 0
        value = row["version"]
        if not isinstance(value, int):
            raise StoreMigrationError("schema_versions.version must be an integer")
        return value

    def schema_history(self) -> list[MigrationRecord]:
        with self.connection() as conn:
            return list(self._load_applied_migrations(conn).values())

    def execute(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        """Execute a parameterized statement and return affected row count."""

        if conn is not None:
            return self._execute(conn, sql, params, operation="execute statement").rowcount

        with self.transaction(immediate=True) as tx:
            return self._execute(tx, sql, params, operation="execute statement").rowcount

    def query_all(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> list[dict[str, RowValue]]:
        """Run a query and return rows as dictionaries."""

        if conn is not None:
            cursor = self._execute(conn, sql, params, operation="query all")
            return [_row_to_dict(row) for row in cursor.fetchall()]

        with self.connection() as owned_conn:
            cursor = self._execute(owned_conn, sql, params, operation="query all")
            return [_row_to_dict(row) for row in cursor.fetchall()]

    def query_one(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> dict[str, RowValue] | None:
        """Run a query and return the first row as a dictionary."""

        if conn is not None:
            row = self._execute(conn, sql, params, operation="query one").fetchone()
            return None if row is None else _row_to_dict(row)

        with self.connection() as owned_conn:
            row = self._execute(owned_conn, sql, params, operation="query one").fetchone()
            return None if row is None else _row_to_dict(row)

    def backup(self, destination: str | Path) -> Path:
        """Create a consistent snapshot using SQLite backup API."""

        destination_path = Path(destination).expanduser()
        destination_path.parent.mkdir(parents=True, exist_ok=True)

        with self.connection() as source:
            target = sqlite3.connect(
                destination_path,
                timeout=self._busy_timeout_ms / 1000.0,
                isolation_level=None,
                check_same_thread=False,
            )
            try:
                source.backup(target)
                target.execute("PRAGMA foreign_keys=ON")
                target.execute("PRAGMA journal_mode=WAL")
            except sqlite3.Error as exc:
                self._raise_actionable_error(exc, operation="backup")
            finally:
                target.close()

        return destination_path

    def integrity_check(self, *, max_errors: int = 100) -> tuple[str, ...]:
        """Return integrity and foreign-key errors; empty tuple means OK."""

        if max_errors <= 0:
            raise ValueError("max_errors must be > 0")
        with self.connection() as conn:
            rows = self.query_all(f"PRAGMA integrity_check({max_errors})", conn=conn)
            messages = [str(row.get("integrity_check", "")) for row in rows]
            if messages == ["ok"]:
                messages = []
            for row in self.query_all("PRAGMA foreign_key_check", conn=conn):
                messages.append(
                    f"foreign key violation: {row.get('table')} rowid={row.get('rowid')} "
                    f"-> {row.get('parent')}"
                )
        return tuple(messages[:max_errors])

    def __enter__(self) -> Store:
        self.migrate()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        del exc_type, exc, tb

    def _configure_connection(self, conn: sqlite3.Connection) -> None:
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
        journal_row = conn.execute("PRAGMA journal_mode=WAL").fetchone()
        if journal_row is None:
            raise StoreError("failed to configure journal_mode")
        journal_mode = str(journal_row[0]).lower()
        if journal_mode != "wal":
            raise StoreError(f"journal_mode must be WAL, got {journal_mode!r}")

    def _load_applied_migrations(self, conn: sqlite3.Connection) -> dict[int, MigrationRecord]:
        cursor = self._execute(
            conn,
            """
            SELECT version, name, checksum, applied_at
            FROM schema_versions
            ORDER BY version ASC
            """,
            (),
            operation="load schema_versions",
        )
        out: dict[int, MigrationRecord] = {}
        for row in cursor.fetchall():
            if not isinstance(row["version"], int):
                raise StoreMigrationError("schema_versions.version must be integer")
            if not isinstance(row["name"], str):
                raise StoreMigrationError("schema_versions.name must be text")
            if not isinstance(row["checksum"], str):
                raise StoreMigrationError("schema_versions.checksum must be text")
            if not isinstance(row["applied_at"], str):
                raise StoreMigrationError("schema_versions.applied_at must be text")
            out[row["version"]] = MigrationRecord(
                version=row["version"],
                name=row["name"],
                checksum=row["checksum"],
                applied_at=row["applied_at"],
            )
        return out

    def _validate_migration_chain(self, target_version: int) -> None:
        if target_version < 0:
            raise StoreMigrationError("target schema version must be >= 0")
        migration_versions = {migration.version for migration in _MIGRATIONS}
        if target_version > max(migration_versions, default=0):
            raise StoreMigrationError(
                "schema target exceeds known migrations "
                f"(target={target_version}, known={max(migration_versions, default=0)})"
            )
        for version in range(1, target_version + 1):
            if version not in migration_versions:
                raise StoreMigrationError(f"missing migration for schema version {version}")

    def _next_savepoint_name(self) -> str:
        self._savepoint_counter += 1
        return f"sp_{self._savepoint_counter}"

    def _execute(
        self,
        conn: sqlite3.Connection,
        sql: str,
        params: SQLParams,
        *,
        operation: str,
    ) -> sqlite3.Cursor:
        try:
            return conn.execute(sql, tuple(params))
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as exc:
            self._raise_actionable_error(exc, operation=operation)

    def _is_busy_error(self, exc: sqlite3.Error) -> bool:
        code = getattr(exc, "sqlite_errorcode", None)
        if isinstance(code, int) and code in _SQLITE_BUSY_CODES:
            return True
        message = str(exc).lower()
        return any(fragment in message for fragment in _BUSY_SUBSTRINGS)

    def _is_corruption_error(self, exc: sqlite3.Error) -> bool:
        code = getattr(exc, "sqlite_errorcode", None)
        if isinstance(code, int) and code in _SQLITE_CORRUPTION_CODES:
            return True
        message = str(exc).lower()
        return any(fragment in message for fragment in _CORRUPTION_SUBSTRINGS)

    def _raise_actionable_error(self, exc: sqlite3.Error, *, operation: str) -> NoReturn:
        if self._is_corruption_error(exc):
            raise StoreCorruptionError(
                f"{operation} failed for {self._path}: {exc}. "
                "Run `puzzlemaster check` and restore from a `puzzlemaster backup` if needed."
            ) from exc
        if self._is_busy_error(exc):
            raise StoreBusyError(
                f"{operation} hit SQLITE_BUSY for {self._path} after "
                f"{self._busy_timeout_ms}ms: {exc}"
            ) from exc
        raise StoreError(f"{operation} failed for {self._path}: {exc}") from exc


def _row_to_dict(row: sqlite3.Row) -> dict[str, RowValue]:
    raw = dict(row)
    return {str(key): raw[key] for key in raw}


def _utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


__all__ = [
    "DEFAULT_BUSY_TIMEOUT_MS",
    "STORE_TABLES",
    "MigrationRecord",
    "RowValue",
    "SQLParams",
    "SQLValue",
    "Store",
    "StoreBusyError",
    "StoreCorruptionError",
    "StoreError",
    "StoreMigrationError",
]
