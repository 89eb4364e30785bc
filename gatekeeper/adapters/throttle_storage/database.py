"""Relational throttle storage (SQLAlchemy).

One row per key in ``throttle_requests`` (``key`` primary key, ``attempts``,
``expires_at``). ``increment()`` is atomic:

- MySQL: ``INSERT ... ON DUPLICATE KEY UPDATE`` with conditional assignments.
- PostgreSQL / SQLite: ``INSERT ... ON CONFLICT DO UPDATE``.
- Anything else: a transaction that re-reads the row ``FOR UPDATE`` before
  choosing between insert, increment and reset.
"""

from __future__ import annotations

import logging

from sqlalchemy import (
    Column,
    Engine,
    Integer,
    MetaData,
    String,
    Table,
    case,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.dialects.mysql import insert as mysql_insert
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection

from gatekeeper.adapters.throttle_storage.base import ThrottleRecord, ThrottleStorage

logger = logging.getLogger(__name__)

DEFAULT_TABLE = "throttle_requests"

_ON_CONFLICT_INSERTS = {
    "postgresql": postgresql_insert,
    "sqlite": sqlite_insert,
}


def build_throttle_table(name: str = DEFAULT_TABLE, metadata: MetaData | None = None) -> Table:
    """Describe the throttle table layout."""

    return Table(
        name,
        metadata if metadata is not None else MetaData(),
        Column("key", String(191), primary_key=True),
        Column("attempts", Integer, nullable=False, default=0, server_default="0"),
        Column("expires_at", Integer, nullable=False, default=0, server_default="0"),
    )


def create_throttle_table(engine: Engine, name: str = DEFAULT_TABLE) -> Table:
    """Create the throttle table if it does not exist and return it."""

    table = build_throttle_table(name)
    table.metadata.create_all(engine, checkfirst=True)
    return table


class DatabaseThrottleStorage(ThrottleStorage):
    """Throttle storage backed by a relational table.

    Every public method runs in its own transaction on ``engine``; connection
    errors propagate to the caller.
    """

    def __init__(self, engine: Engine, table: str = DEFAULT_TABLE) -> None:
        self._engine = engine
        self._table = build_throttle_table(table)

    @property
    def table(self) -> Table:
        return self._table

    def _fetch(self, conn: Connection, key: str, *, for_update: bool = False) -> ThrottleRecord | None:
        stmt = select(self._table.c.attempts, self._table.c.expires_at).where(
            self._table.c.key == key
        )
        if for_update:
            stmt = stmt.with_for_update()
        row = conn.execute(stmt).first()
        if row is None:
            return None
        return ThrottleRecord(attempts=int(row.attempts or 0), expires_at=int(row.expires_at or 0))

    def get(self, key: str) -> ThrottleRecord | None:
        with self._engine.connect() as conn:
            return self._fetch(conn, key)

    def put(self, key: str, record: ThrottleRecord) -> None:
        values = {"attempts": int(record.attempts), "expires_at": int(record.expires_at)}
        with self._engine.begin() as conn:
            if self._fetch(conn, key, for_update=True) is not None:
                conn.execute(update(self._table).where(self._table.c.key == key).values(**values))
            else:
                conn.execute(insert(self._table).values(key=key, **values))

    def forget(self, key: str) -> None:
        with self._engine.begin() as conn:
            conn.execute(delete(self._table).where(self._table.c.key == key))

    def increment(self, key: str, decay_seconds: int, now: int) -> ThrottleRecord:
        expires_at = now + decay_seconds
        dialect = self._engine.dialect.name

        with self._engine.begin() as conn:
            if dialect == "mysql":
                self._upsert_mysql(conn, key, now, expires_at)
            elif dialect in _ON_CONFLICT_INSERTS:
                self._upsert_on_conflict(conn, key, now, expires_at)
            else:
                return self._increment_locked(conn, key, now, expires_at)

            record = self._fetch(conn, key)

        logger.debug("throttle_storage.db_increment", extra={"dialect": dialect})
        return record or ThrottleRecord(attempts=1, expires_at=expires_at)

    def _reset_conditions(self, now: int, expires_at: int) -> tuple:
        c = self._table.c
        # expires_at == 0 never clears by time; it keeps counting and gets a window.
        expired = (c.expires_at != 0) & (c.expires_at <= now)
        return (
            case((expired, 1), else_=c.attempts + 1),
            case((expired, expires_at), (c.expires_at == 0, expires_at), else_=c.expires_at),
        )

    def _upsert_mysql(self, conn: Connection, key: str, now: int, expires_at: int) -> None:
        attempts_expr, expires_expr = self._reset_conditions(now, expires_at)
        stmt = mysql_insert(self._table).values(key=key, attempts=1, expires_at=expires_at)
        # MySQL applies assignments left to right: attempts must read the old expiry.
        stmt = stmt.on_duplicate_key_update(
            [("attempts", attempts_expr), ("expires_at", expires_expr)]
        )
        conn.execute(stmt)

    def _upsert_on_conflict(self, conn: Connection, key: str, now: int, expires_at: int) -> None:
        attempts_expr, expires_expr = self._reset_conditions(now, expires_at)
        dialect_insert = _ON_CONFLICT_INSERTS[self._engine.dialect.name]
        stmt = dialect_insert(self._table).values(key=key, attempts=1, expires_at=expires_at)
        stmt = stmt.on_conflict_do_update(
            index_elements=[self._table.c.key],
            set_={"attempts": attempts_expr, "expires_at": expires_expr},
        )
        conn.execute(stmt)

    def _increment_locked(self, conn: Connection, key: str, now: int, expires_at: int) -> ThrottleRecord:
        current = self._fetch(conn, key, for_update=True)

        if current is None:
            record = ThrottleRecord(attempts=1, expires_at=expires_at)
            conn.execute(insert(self._table).values(key=key, **record.to_dict()))
            return record

        if current.is_expired(now):
            record = ThrottleRecord(attempts=1, expires_at=expires_at)
            conn.execute(
                update(self._table).where(self._table.c.key == key).values(**record.to_dict())
            )
            return record

        record = ThrottleRecord(
            attempts=current.attempts + 1,
            expires_at=current.expires_at or expires_at,
        )
        conn.execute(
            update(self._table).where(self._table.c.key == key).values(**record.to_dict())
        )
        return record
