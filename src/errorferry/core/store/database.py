"""SQLAlchemy-backed state store.

Handles SQLite (single host, several processes) and any other SQLAlchemy
backend. State survives process restarts and is shared by every process
pointing at the same database.
"""

from __future__ import annotations

import json
import threading
from typing import Any, Self

import structlog
from sqlalchemy import Column, Float, MetaData, String, Table, Text, create_engine, delete, event, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlalchemy.sql import Select

from errorferry.contracts.errors import StoreError
from errorferry.core.clock import DEFAULT_CLOCK, Clock
from errorferry.core.store.protocols import JSONValue, Mutator

logger = structlog.get_logger(__name__)

# Two writers can both see a key as missing and both INSERT it. The loser
# retries, and on the retry the row exists and is locked by the read.
_WRITE_ATTEMPTS = 3

metadata = MetaData()

state_entries_table = Table(
    "state_entries",
    metadata,
    Column("key", String(255), primary_key=True),
    Column("value_json", Text, nullable=False),
    Column("expires_at", Float),  # Epoch seconds; NULL = never expires
)


class DatabaseStateStore:
    """StateStore persisted in a single ``state_entries`` table.

    Every ``update`` runs inside one transaction. On SQLite the transaction
    is opened with ``BEGIN IMMEDIATE`` so the write lock is taken before the
    read, which serializes read-modify-write across processes. Other backends
    read with SELECT ... FOR UPDATE. An in-process lock serializes threads
    sharing this instance.
    """

    def __init__(self, engine: Engine, *, clock: Clock | None = None, create_tables: bool = True) -> None:
        self._engine: Engine | None = engine
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._lock = threading.RLock()
        if create_tables:
            metadata.create_all(engine)

    @staticmethod
    def _configure_sqlite(engine: Engine) -> None:
        """Configure SQLite engine for cross-process read-modify-write.

        pysqlite's own transaction handling defers BEGIN until the first
        write, which would let two processes read the same stale value.
        Autocommit is disabled at the driver level and the transaction is
        begun explicitly with BEGIN IMMEDIATE instead.
        """

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection: Any, connection_record: object) -> None:
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            # Wait for a competing writer instead of failing with SQLITE_BUSY
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.close()

        @event.listens_for(engine, "begin")
        def do_begin(conn: Connection) -> None:
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    @classmethod
    def from_url(cls, url: str, *, clock: Clock | None = None, create_tables: bool = True) -> Self:
        """Create a store from a SQLAlchemy connection URL.

        Args:
            url: SQLAlchemy connection URL, e.g. "sqlite:///./state/errorferry.db"
            clock: Clock used to evaluate expiry
            create_tables: Whether to create the table if it doesn't exist
        """
        if url.startswith("sqlite") and ":memory:" in url:
            return cls.in_memory(clock=clock)
        if url.startswith("sqlite"):
            engine = create_engine(url, echo=False, connect_args={"check_same_thread": False})
            cls._configure_sqlite(engine)
        else:
            engine = create_engine(url, echo=False)
        return cls(engine, clock=clock, create_tables=create_tables)

    @classmethod
    def in_memory(cls, *, clock: Clock | None = None) -> Self:
        """Create an in-memory SQLite store for testing.

        A single shared connection keeps the in-memory database alive for
        the lifetime of the engine.
        """
        engine = create_engine(
            "sqlite://",
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        cls._configure_sqlite(engine)
        return cls(engine, clock=clock)

    @property
    def engine(self) -> Engine:
        """Get the SQLAlchemy engine."""
        if self._engine is None:
            raise RuntimeError("State store is closed")
        return self._engine

    def _expiry(self, ttl_seconds: float | None) -> float | None:
        if ttl_seconds is None:
            return None
        return self._clock.time() + ttl_seconds

    @staticmethod
    def entry_query(key: str, *, for_update: bool = False) -> Select[Any]:
        """SELECT for one entry; for_update adds a row lock on backends that support it.

        SQLite renders no FOR UPDATE; its BEGIN IMMEDIATE already holds the
        database write lock.
        """
        query = select(state_entries_table.c.value_json, state_entries_table.c.expires_at).where(
            state_entries_table.c.key == key
        )
        return query.with_for_update() if for_update else query

    def _read(self, conn: Connection, key: str, *, for_update: bool = False) -> tuple[bool, JSONValue | None]:
        """Return (row_exists, live_value) for key."""
        row = conn.execute(self.entry_query(key, for_update=for_update)).first()
        if row is None:
            return False, None
        if row.expires_at is not None and self._clock.time() >= row.expires_at:
            return True, None
        return True, json.loads(row.value_json)

    def _write(self, conn: Connection, key: str, value: JSONValue, ttl_seconds: float | None, *, exists: bool) -> None:
        values = {"value_json": json.dumps(value), "expires_at": self._expiry(ttl_seconds)}
        if exists:
            conn.execute(update(state_entries_table).where(state_entries_table.c.key == key).values(**values))
        else:
            conn.execute(insert(state_entries_table).values(key=key, **values))

    def get(self, key: str) -> JSONValue | None:
        try:
            with self._lock, self.engine.begin() as conn:
                _, value = self._read(conn, key)
                return value
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read state key {key!r}: {e}") from e

    def set(self, key: str, value: JSONValue, ttl_seconds: float | None = None) -> None:
        self.update(key, lambda _current: value, ttl_seconds)

    def delete(self, key: str) -> None:
        try:
            with self._lock, self.engine.begin() as conn:
                conn.execute(delete(state_entries_table).where(state_entries_table.c.key == key))
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to delete state key {key!r}: {e}") from e

    def update(self, key: str, mutate: Mutator, ttl_seconds: float | None = None) -> JSONValue:
        """Read key under a row lock, apply mutate and write the result.

        Losing an insert race for a missing key raises IntegrityError; the
        whole transaction is rerun, so mutate may be called more than once.
        """
        for attempt in range(1, _WRITE_ATTEMPTS + 1):
            try:
                with self._lock, self.engine.begin() as conn:
                    exists, current = self._read(conn, key, for_update=True)
                    new_value = mutate(current)
                    self._write(conn, key, new_value, ttl_seconds, exists=exists)
            except IntegrityError as e:
                if attempt == _WRITE_ATTEMPTS:
                    raise StoreError(f"Failed to update state key {key!r}: {e}") from e
                logger.debug("State key created concurrently, retrying", key=key, attempt=attempt)
                continue
            except SQLAlchemyError as e:
                raise StoreError(f"Failed to update state key {key!r}: {e}") from e
            # Hand back a copy decoupled from whatever the mutator still references
            return json.loads(json.dumps(new_value))
        raise AssertionError("unreachable")

    def purge_expired(self) -> int:
        """Delete expired rows. Returns the number of rows removed."""
        try:
            with self._lock, self.engine.begin() as conn:
                result = conn.execute(
                    delete(state_entries_table).where(
                        state_entries_table.c.expires_at.is_not(None),
                        state_entries_table.c.expires_at <= self._clock.time(),
                    )
                )
                return int(result.rowcount or 0)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to purge expired state: {e}") from e

    def close(self) -> None:
        """Close database connection."""
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.close()
