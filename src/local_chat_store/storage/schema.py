"""Table definitions, schema versioning and drift detection.

The expected layout is declared once as ``TableSpec`` objects. The same specs
produce the ``CREATE`` statements, the stored identity hash, and the structure
that an existing database file is compared against when it is opened.
"""

from __future__ import annotations

import hashlib
import sqlite3
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field

from loguru import logger

from local_chat_store.storage.errors import SchemaMismatchError

SCHEMA_VERSION = 3

METADATA_TABLE = "store_metadata"
_METADATA_ROW_ID = 42


@dataclass(frozen=True)
class ColumnSpec:
    name: str
    type: str
    not_null: bool
    primary_key_position: int = 0

    def ddl(self) -> str:
        text = f"`{self.name}` {self.type}"
        if self.not_null:
            text += " NOT NULL"
        return text


@dataclass(frozen=True)
class ForeignKeySpec:
    table: str
    on_delete: str
    on_update: str
    from_columns: tuple[str, ...]
    to_columns: tuple[str, ...]

    def ddl(self) -> str:
        source = ", ".join(f"`{c}`" for c in self.from_columns)
        target = ", ".join(f"`{c}`" for c in self.to_columns)
        return (
            f"FOREIGN KEY({source}) REFERENCES `{self.table}`({target}) "
            f"ON UPDATE {self.on_update} ON DELETE {self.on_delete}"
        )


@dataclass(frozen=True)
class IndexSpec:
    name: str
    unique: bool
    columns: tuple[str, ...]


@dataclass(frozen=True)
class TableSpec:
    name: str
    columns: tuple[ColumnSpec, ...]
    foreign_keys: frozenset[ForeignKeySpec] = field(default_factory=frozenset)
    indexes: frozenset[IndexSpec] = field(default_factory=frozenset)

    def matches(self, other: TableSpec) -> bool:
        return (
            self.name == other.name
            and frozenset(self.columns) == frozenset(other.columns)
            and self.foreign_keys == other.foreign_keys
            and self.indexes == other.indexes
        )

    def create_statements(self) -> list[str]:
        parts = [column.ddl() for column in self.columns]
        primary_key = sorted(
            (c for c in self.columns if c.primary_key_position > 0),
            key=lambda c: c.primary_key_position,
        )
        if primary_key:
            parts.append("PRIMARY KEY(" + ", ".join(f"`{c.name}`" for c in primary_key) + ")")
        parts.extend(fk.ddl() for fk in sorted(self.foreign_keys, key=lambda fk: fk.from_columns))
        statements = [f"CREATE TABLE IF NOT EXISTS `{self.name}` ({', '.join(parts)})"]
        for index in sorted(self.indexes, key=lambda i: i.name):
            unique = "UNIQUE " if index.unique else ""
            columns = ", ".join(f"`{c}`" for c in index.columns)
            statements.append(f"CREATE {unique}INDEX IF NOT EXISTS `{index.name}` ON `{self.name}` ({columns})")
        return statements

    def describe(self) -> str:
        lines = [f"TableSpec{{name='{self.name}'"]
        for column in sorted(self.columns, key=lambda c: c.name):
            lines.append(
                f"  column {column.name} type={column.type} not_null={column.not_null} "
                f"pk={column.primary_key_position}"
            )
        for fk in sorted(self.foreign_keys, key=lambda fk: fk.from_columns):
            lines.append(
                f"  foreign_key {list(fk.from_columns)} -> {fk.table}{list(fk.to_columns)} "
                f"on_delete={fk.on_delete} on_update={fk.on_update}"
            )
        for index in sorted(self.indexes, key=lambda i: i.name):
            lines.append(f"  index {index.name} unique={index.unique} columns={list(index.columns)}")
        lines.append("}")
        return "\n".join(lines)

    @classmethod
    def read(cls, conn: sqlite3.Connection, name: str) -> TableSpec:
        """Read the structure of ``name`` as it currently exists on disk."""
        columns = tuple(
            ColumnSpec(
                name=str(row[1]),
                type=str(row[2]).upper(),
                not_null=bool(row[3]),
                primary_key_position=int(row[5]),
            )
            for row in conn.execute(f"PRAGMA table_info(\"{name}\")").fetchall()
        )

        grouped: dict[int, list[tuple]] = {}
        for row in conn.execute(f"PRAGMA foreign_key_list(\"{name}\")").fetchall():
            grouped.setdefault(int(row[0]), []).append(tuple(row))
        foreign_keys = set()
        for rows in grouped.values():
            rows.sort(key=lambda r: int(r[1]))
            first = rows[0]
            foreign_keys.add(
                ForeignKeySpec(
                    table=str(first[2]),
                    on_delete=str(first[6]).upper(),
                    on_update=str(first[5]).upper(),
                    from_columns=tuple(str(r[3]) for r in rows),
                    to_columns=tuple(str(r[4]) for r in rows),
                )
            )

        indexes = set()
        for row in conn.execute(f"PRAGMA index_list(\"{name}\")").fetchall():
            index_name = str(row[1])
            # Implicit indexes backing PRIMARY KEY / UNIQUE constraints are not declared.
            if str(row[3]) != "c":
                continue
            info = conn.execute(f"PRAGMA index_info(\"{index_name}\")").fetchall()
            info.sort(key=lambda r: int(r[0]))
            indexes.add(
                IndexSpec(
                    name=index_name,
                    unique=bool(row[2]),
                    columns=tuple(str(r[2]) for r in info),
                )
            )

        return cls(
            name=name,
            columns=columns,
            foreign_keys=frozenset(foreign_keys),
            indexes=frozenset(indexes),
        )


CHAT_SESSIONS = TableSpec(
    name="chat_sessions",
    columns=(
        ColumnSpec("id", "TEXT", True, 1),
        ColumnSpec("user_id", "TEXT", True),
        ColumnSpec("title", "TEXT", True),
        ColumnSpec("is_offline_only", "INTEGER", True),
        ColumnSpec("last_updated", "INTEGER", True),
    ),
)

MESSAGES = TableSpec(
    name="messages",
    columns=(
        ColumnSpec("id", "TEXT", True, 1),
        ColumnSpec("session_id", "TEXT", True),
        ColumnSpec("role", "TEXT", True),
        ColumnSpec("content", "TEXT", True),
        ColumnSpec("timestamp", "INTEGER", True),
        ColumnSpec("image_path", "TEXT", False),
    ),
    foreign_keys=frozenset(
        {
            ForeignKeySpec(
                table="chat_sessions",
                on_delete="CASCADE",
                on_update="NO ACTION",
                from_columns=("session_id",),
                to_columns=("id",),
            )
        }
    ),
    indexes=frozenset({IndexSpec("index_messages_session_id", False, ("session_id",))}),
)

TABLES: tuple[TableSpec, ...] = (CHAT_SESSIONS, MESSAGES)


@dataclass(frozen=True)
class Migration:
    start_version: int
    end_version: int
    migrate: Callable[[sqlite3.Connection], None]


class StoreCallback:
    """Lifecycle hooks. Subclass and override the events you care about."""

    def on_create(self, conn: sqlite3.Connection) -> None:
        pass

    def on_open(self, conn: sqlite3.Connection) -> None:
        pass

    def on_destructive_reset(self, conn: sqlite3.Connection) -> None:
        pass


def compute_identity_hash(tables: Iterable[TableSpec]) -> str:
    statements: list[str] = []
    for table in tables:
        statements.extend(table.create_statements())
    return hashlib.sha256("\n".join(statements).encode("utf-8")).hexdigest()


class SchemaManager:
    """Creates, validates and upgrades the on-disk schema.

    ``open`` must run inside a write transaction: every path it takes (fresh
    create, migration, destructive reset) is applied atomically.

    When ``allow_destructive_migration`` is set and no migration path exists
    between the stored version and ``version``, every table is dropped and
    recreated. That is a full data-loss event; each registered callback is
    told through ``on_destructive_reset``.
    """

    def __init__(
        self,
        *,
        tables: Sequence[TableSpec] = TABLES,
        version: int = SCHEMA_VERSION,
        migrations: Iterable[Migration] = (),
        allow_destructive_migration: bool = False,
        callbacks: Iterable[StoreCallback] = (),
    ):
        self._tables = tuple(tables)
        self._version = version
        self._migrations = list(migrations)
        self._allow_destructive_migration = allow_destructive_migration
        self._callbacks = list(callbacks)
        self._identity_hash = compute_identity_hash(self._tables)

    @property
    def version(self) -> int:
        return self._version

    @property
    def identity_hash(self) -> str:
        return self._identity_hash

    @property
    def table_names(self) -> list[str]:
        return [t.name for t in self._tables]

    def add_callback(self, callback: StoreCallback) -> None:
        self._callbacks.append(callback)

    def open(self, conn: sqlite3.Connection) -> None:
        if self._is_fresh(conn):
            self.create_all_tables(conn)
            logger.info(f"Created chat store schema v{self._version}")
            for callback in self._callbacks:
                callback.on_create(conn)
            return

        stored = self.read_metadata(conn)
        if stored is None:
            # Tables exist but were not written by this store: adopt them only if they match.
            self.validate(conn)
            self._write_metadata(conn)
            return

        stored_version, stored_hash = stored
        if stored_version == self._version:
            if stored_hash != self._identity_hash:
                raise SchemaMismatchError(
                    f"Schema identity hash changed without a version bump (v{self._version}). "
                    f"Expected {self._identity_hash}, found {stored_hash}."
                )
            self.validate(conn)
            return

        path = self.find_migration_path(stored_version, self._version)
        if path is None:
            if not self._allow_destructive_migration:
                raise SchemaMismatchError(
                    f"No migration path from schema v{stored_version} to v{self._version} "
                    "and destructive migration is disabled."
                )
            self._destructive_reset(conn, stored_version)
            return

        for migration in path:
            logger.info(f"Migrating chat store schema v{migration.start_version} -> v{migration.end_version}")
            migration.migrate(conn)
        self.validate(conn)
        self._write_metadata(conn)

    def notify_open(self, conn: sqlite3.Connection) -> None:
        for callback in self._callbacks:
            callback.on_open(conn)

    def validate(self, conn: sqlite3.Connection) -> None:
        for expected in self._tables:
            found = TableSpec.read(conn, expected.name)
            if not expected.matches(found):
                raise SchemaMismatchError(
                    f"Migration didn't properly handle: {expected.name}.\n"
                    f" Expected:\n{expected.describe()}\n"
                    f" Found:\n{found.describe()}"
                )

    def create_all_tables(self, conn: sqlite3.Connection) -> None:
        for table in self._tables:
            for statement in table.create_statements():
                conn.execute(statement)
        self._write_metadata(conn)

    def drop_all_tables(self, conn: sqlite3.Connection) -> None:
        for table in reversed(self._tables):
            conn.execute(f"DROP TABLE IF EXISTS `{table.name}`")

    def find_migration_path(self, start: int, end: int) -> list[Migration] | None:
        if start == end:
            return []
        upgrading = end > start
        path: list[Migration] = []
        current = start
        while current != end:
            if upgrading:
                candidates = [
                    m for m in self._migrations if m.start_version == current and current < m.end_version <= end
                ]
                best = max(candidates, key=lambda m: m.end_version) if candidates else None
            else:
                candidates = [
                    m for m in self._migrations if m.start_version == current and end <= m.end_version < current
                ]
                best = min(candidates, key=lambda m: m.end_version) if candidates else None
            if best is None:
                return None
            path.append(best)
            current = best.end_version
        return path

    def read_metadata(self, conn: sqlite3.Connection) -> tuple[int, str] | None:
        exists = conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ? LIMIT 1",
            (METADATA_TABLE,),
        ).fetchone()
        if exists is None:
            return None
        row = conn.execute(
            f"SELECT version, identity_hash FROM {METADATA_TABLE} WHERE id = ? LIMIT 1",
            (_METADATA_ROW_ID,),
        ).fetchone()
        if row is None:
            return None
        return int(row[0]), str(row[1])

    def _destructive_reset(self, conn: sqlite3.Connection, stored_version: int) -> None:
        logger.warning(
            f"No migration from schema v{stored_version} to v{self._version}; "
            "dropping and recreating all tables. Existing chat data is lost."
        )
        self.drop_all_tables(conn)
        for callback in self._callbacks:
            callback.on_destructive_reset(conn)
        self.create_all_tables(conn)
        for callback in self._callbacks:
            callback.on_create(conn)

    def _write_metadata(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {METADATA_TABLE} (
                id INTEGER PRIMARY KEY,
                version INTEGER NOT NULL,
                identity_hash TEXT NOT NULL
            )
            """
        )
        conn.execute(
            f"INSERT OR REPLACE INTO {METADATA_TABLE} (id, version, identity_hash) VALUES (?, ?, ?)",
            (_METADATA_ROW_ID, self._version, self._identity_hash),
        )

    def _is_fresh(self, conn: sqlite3.Connection) -> bool:
        row = conn.execute(
            "SELECT COUNT(*) FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%'"
        ).fetchone()
        return int(row[0]) == 0
