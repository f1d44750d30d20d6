"""
PostgreSQL implementations of the layer store, dimension store and batch ledger.

Rows are stored as JSONB documents (pydantic ``model_dump(mode="json")``)
next to the columns the pipeline filters on. Every write runs in one
transaction with ``statement_timeout`` set from the caller's timeout, so a
batch's rows in a layer are replaced as a unit or not at all.
"""

from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from typing import Any

import psycopg
from psycopg import errors
from psycopg.types.json import Jsonb
from pydantic import BaseModel, TypeAdapter

from medallion.batch.tracker import BatchLedger
from medallion.core.errors import BatchStateError, KeyResolutionConflict, StorageError, Timeout
from medallion.core.keys import DimensionStore
from medallion.core.models import Batch, DimensionRow, QuarantineRecord
from medallion.observability.logger import get_logger
from medallion.utils.validation import sanitize_sql_identifier

from .connection import DatabaseConnectionPool
from .layer_store import LAYER_MODELS, LayerStore, check_records

logger = get_logger(__name__)

_JSON_VALUES = TypeAdapter(Any)

LAYER_TABLES = {
    "bronze": "bronze_records",
    "silver": "silver_records",
    "gold": "gold_facts",
}

SCHEMA_DDL = [
    "CREATE SCHEMA IF NOT EXISTS {schema}",
    """
    CREATE TABLE IF NOT EXISTS {schema}.bronze_records (
        batch_id TEXT NOT NULL,
        row_number INTEGER NOT NULL,
        record JSONB NOT NULL,
        PRIMARY KEY (batch_id, row_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS {schema}.silver_records (
        batch_id TEXT NOT NULL,
        row_number INTEGER NOT NULL,
        record JSONB NOT NULL,
        PRIMARY KEY (batch_id, row_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS {schema}.gold_facts (
        batch_id TEXT NOT NULL,
        row_number INTEGER NOT NULL,
        record JSONB NOT NULL,
        PRIMARY KEY (batch_id, row_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS {schema}.quarantine_records (
        batch_id TEXT NOT NULL,
        row_number INTEGER NOT NULL,
        record JSONB NOT NULL,
        PRIMARY KEY (batch_id, row_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS {schema}.dimension_rows (
        dimension TEXT NOT NULL,
        surrogate_key BIGINT NOT NULL,
        business_key TEXT NOT NULL,
        attributes JSONB NOT NULL,
        effective_start TIMESTAMPTZ NOT NULL,
        effective_end TIMESTAMPTZ,
        is_current BOOLEAN NOT NULL,
        batch_id TEXT,
        version INTEGER NOT NULL DEFAULT 1,
        PRIMARY KEY (dimension, surrogate_key),
        CHECK (effective_end IS NULL OR effective_end >= effective_start),
        CHECK ((effective_end IS NULL) = is_current)
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS dimension_rows_current_idx
        ON {schema}.dimension_rows (dimension, business_key) WHERE is_current
    """,
    """
    CREATE TABLE IF NOT EXISTS {schema}.dimension_key_sequence (
        dimension TEXT PRIMARY KEY,
        last_key BIGINT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS {schema}.batch_ledger (
        batch_id TEXT PRIMARY KEY,
        status TEXT NOT NULL,
        owner TEXT,
        record JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
]


def create_tables(pool: DatabaseConnectionPool, schema: str = "medallion") -> None:
    """
    Create the pipeline schema and tables if they do not exist.

    Args:
        pool: Open connection pool
        schema: PostgreSQL schema name
    """
    schema = sanitize_sql_identifier(schema, "schema")
    with pool.get_cursor() as cur:
        for statement in SCHEMA_DDL:
            cur.execute(statement.format(schema=schema))
    logger.info(f"Ensured pipeline tables in schema {schema}", extra={"schema": schema})


@contextmanager
def translate_errors(operation: str, timeout: float | None) -> Iterator[None]:
    """Map psycopg failures onto the pipeline's Timeout and StorageError."""
    try:
        yield
    except (errors.QueryCanceled, errors.LockNotAvailable) as e:
        raise Timeout(operation, timeout) from e
    except psycopg.Error as e:
        raise StorageError(f"{operation} failed: {e}") from e


def _set_timeout(cur: psycopg.Cursor, timeout: float | None) -> None:
    if timeout is not None:
        milliseconds = f"{max(int(timeout * 1000), 1)}ms"
        cur.execute("SELECT set_config('statement_timeout', %s, true)", (milliseconds,))
        cur.execute("SELECT set_config('lock_timeout', %s, true)", (milliseconds,))


class _PostgresBase:
    def __init__(self, pool: DatabaseConnectionPool, schema: str = "medallion", timeout: float = 30.0):
        self.pool = pool
        self.schema = sanitize_sql_identifier(schema, "schema")
        self.timeout = timeout

    def _table(self, name: str) -> str:
        return f"{self.schema}.{name}"

    @contextmanager
    def _transaction(self, operation: str, timeout: float | None = None) -> Iterator[psycopg.Cursor]:
        """One transaction: committed on clean exit, rolled back on error."""
        wait = self.timeout if timeout is None else timeout
        with translate_errors(operation, wait):
            with self.pool.get_connection(timeout=wait) as conn:
                with conn.cursor() as cur:
                    _set_timeout(cur, wait)
                    yield cur


class PostgresLayerStore(_PostgresBase, LayerStore):
    """
    Layered tables in PostgreSQL.

    Args:
        pool: Open connection pool
        schema: PostgreSQL schema holding the tables
        timeout: Default statement timeout in seconds
    """

    def _layer_table(self, layer: str) -> str:
        table = LAYER_TABLES.get(layer)
        if table is None:
            raise StorageError(f"Unknown layer: {layer}")
        return self._table(table)

    def read(self, layer: str, batch_id: str, timeout: float | None = None) -> list[BaseModel]:
        table = self._layer_table(layer)
        model = LAYER_MODELS[layer]
        with self._transaction(f"{layer} read", timeout) as cur:
            cur.execute(f"SELECT record FROM {table} WHERE batch_id = %s ORDER BY row_number", (batch_id,))
            rows = cur.fetchall()
        return [model.model_validate(row["record"]) for row in rows]

    def write(self, layer: str, records: Sequence[BaseModel], batch_id: str, timeout: float | None = None) -> int:
        check_records(layer, records, batch_id)
        table = self._layer_table(layer)
        params = [(batch_id, position, Jsonb(r.model_dump(mode="json"))) for position, r in enumerate(records)]

        with self._transaction(f"{layer} write", timeout) as cur:
            if layer == "bronze":
                cur.execute(f"SELECT 1 FROM {table} WHERE batch_id = %s LIMIT 1", (batch_id,))
                if cur.fetchone() is not None:
                    raise StorageError(f"Bronze rows for batch {batch_id} already exist (append-only)")
            else:
                cur.execute(f"DELETE FROM {table} WHERE batch_id = %s", (batch_id,))
            if params:
                cur.executemany(
                    f"INSERT INTO {table} (batch_id, row_number, record) VALUES (%s, %s, %s)",
                    params,
                )

        logger.debug(f"Wrote {len(params)} {layer} rows", extra={"batch_id": batch_id, "layer": layer})
        return len(params)

    def purge(self, layer: str, batch_id: str, timeout: float | None = None) -> int:
        table = self._layer_table(layer)
        with self._transaction(f"{layer} purge", timeout) as cur:
            cur.execute(f"DELETE FROM {table} WHERE batch_id = %s", (batch_id,))
            return cur.rowcount

    def quarantine(self, batch_id: str, records: Sequence[QuarantineRecord], timeout: float | None = None) -> int:
        table = self._table("quarantine_records")
        params = [(batch_id, position, Jsonb(r.model_dump(mode="json"))) for position, r in enumerate(records)]
        with self._transaction("quarantine write", timeout) as cur:
            cur.execute(f"DELETE FROM {table} WHERE batch_id = %s", (batch_id,))
            if params:
                cur.executemany(
                    f"INSERT INTO {table} (batch_id, row_number, record) VALUES (%s, %s, %s)",
                    params,
                )
        return len(params)

    def quarantined(self, batch_id: str) -> list[QuarantineRecord]:
        table = self._table("quarantine_records")
        with self._transaction("quarantine read") as cur:
            cur.execute(f"SELECT record FROM {table} WHERE batch_id = %s ORDER BY row_number", (batch_id,))
            return [QuarantineRecord.model_validate(row["record"]) for row in cur.fetchall()]


class PostgresDimensionStore(_PostgresBase, DimensionStore):
    """
    SCD type-2 dimension rows in PostgreSQL.

    Surrogate keys come from a per-dimension counter row updated in its own
    transaction, so a key is never handed out twice even when the write
    that would have used it rolls back. Writes for one business key take a
    transaction-scoped advisory lock and re-check the current row with
    ``SELECT ... FOR UPDATE`` before changing it.
    """

    COLUMNS = (
        "dimension, surrogate_key, business_key, attributes, "
        "effective_start, effective_end, is_current, batch_id, version"
    )

    @staticmethod
    def _row(record: dict[str, Any]) -> DimensionRow:
        return DimensionRow(**record)

    @staticmethod
    def _params(row: DimensionRow) -> tuple:
        return (
            row.dimension,
            row.surrogate_key,
            row.business_key,
            Jsonb(_JSON_VALUES.dump_python(row.attributes, mode="json")),
            row.effective_start,
            row.effective_end,
            row.is_current,
            row.batch_id,
            row.version,
        )

    def _lock_key(self, cur: psycopg.Cursor, dimension: str, business_key: str) -> None:
        cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (f"{dimension}\x1f{business_key}",))

    def _current_key(self, cur: psycopg.Cursor, dimension: str, business_key: str) -> int | None:
        cur.execute(
            f"SELECT surrogate_key FROM {self._table('dimension_rows')} "
            "WHERE dimension = %s AND business_key = %s AND is_current FOR UPDATE",
            (dimension, business_key),
        )
        found = cur.fetchone()
        return None if found is None else found["surrogate_key"]

    def current(self, dimension: str, business_key: str) -> DimensionRow | None:
        with self._transaction("dimension current") as cur:
            cur.execute(
                f"SELECT {self.COLUMNS} FROM {self._table('dimension_rows')} "
                "WHERE dimension = %s AND business_key = %s AND is_current",
                (dimension, business_key),
            )
            found = cur.fetchone()
        return None if found is None else self._row(found)

    def get(self, dimension: str, surrogate_key: int) -> DimensionRow | None:
        with self._transaction("dimension get") as cur:
            cur.execute(
                f"SELECT {self.COLUMNS} FROM {self._table('dimension_rows')} "
                "WHERE dimension = %s AND surrogate_key = %s",
                (dimension, surrogate_key),
            )
            found = cur.fetchone()
        return None if found is None else self._row(found)

    def exists(self, dimension: str, surrogate_key: int) -> bool:
        with self._transaction("dimension exists") as cur:
            cur.execute(
                f"SELECT 1 FROM {self._table('dimension_rows')} WHERE dimension = %s AND surrogate_key = %s",
                (dimension, surrogate_key),
            )
            return cur.fetchone() is not None

    def next_surrogate_key(self, dimension: str) -> int:
        table = self._table("dimension_key_sequence")
        with self._transaction("surrogate key allocation") as cur:
            cur.execute(
                f"INSERT INTO {table} (dimension, last_key) VALUES (%s, 1) "
                f"ON CONFLICT (dimension) DO UPDATE SET last_key = {table}.last_key + 1 "
                "RETURNING last_key",
                (dimension,),
            )
            return cur.fetchone()["last_key"]

    def insert(self, row: DimensionRow) -> None:
        with self._transaction("dimension insert") as cur:
            self._lock_key(cur, row.dimension, row.business_key)
            if self._current_key(cur, row.dimension, row.business_key) is not None:
                raise KeyResolutionConflict(row.dimension, row.business_key, None)
            cur.execute(
                f"INSERT INTO {self._table('dimension_rows')} ({self.COLUMNS}) "
                "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)",
                self._params(row),
            )

    def replace_current(self, expected_key: int, closed_at: datetime, row: DimensionRow) -> None:
        table = self._table("dimension_rows")
        with self._transaction("dimension replace_current") as cur:
            self._lock_key(cur, row.dimension, row.business_key)
            if self._current_key(cur, row.dimension, row.business_key) != expected_key:
                raise KeyResolutionConflict(row.dimension, row.business_key, expected_key)
            cur.execute(
                f"UPDATE {table} SET effective_end = %s, is_current = FALSE "
                "WHERE dimension = %s AND surrogate_key = %s",
                (closed_at, row.dimension, expected_key),
            )
            cur.execute(
                f"INSERT INTO {table} ({self.COLUMNS}) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)",
                self._params(row),
            )

    def update_attributes(self, dimension: str, surrogate_key: int, attributes: dict[str, Any]) -> None:
        table = self._table("dimension_rows")
        with self._transaction("dimension update_attributes") as cur:
            cur.execute(
                f"SELECT business_key FROM {table} "
                "WHERE dimension = %s AND surrogate_key = %s AND is_current FOR UPDATE",
                (dimension, surrogate_key),
            )
            found = cur.fetchone()
            if found is None:
                raise KeyResolutionConflict(dimension, "?", surrogate_key)
            self._lock_key(cur, dimension, found["business_key"])
            cur.execute(
                f"UPDATE {table} SET attributes = %s WHERE dimension = %s AND surrogate_key = %s",
                (Jsonb(_JSON_VALUES.dump_python(dict(attributes), mode="json")), dimension, surrogate_key),
            )

    def history(self, dimension: str, business_key: str) -> list[DimensionRow]:
        with self._transaction("dimension history") as cur:
            cur.execute(
                f"SELECT {self.COLUMNS} FROM {self._table('dimension_rows')} "
                "WHERE dimension = %s AND business_key = %s ORDER BY effective_start, surrogate_key",
                (dimension, business_key),
            )
            return [self._row(r) for r in cur.fetchall()]

    def rows(self, dimension: str) -> list[DimensionRow]:
        with self._transaction("dimension rows") as cur:
            cur.execute(
                f"SELECT {self.COLUMNS} FROM {self._table('dimension_rows')} "
                "WHERE dimension = %s ORDER BY surrogate_key",
                (dimension,),
            )
            return [self._row(r) for r in cur.fetchall()]

    def created_by(self, dimension: str, batch_id: str) -> list[DimensionRow]:
        with self._transaction("dimension created_by") as cur:
            cur.execute(
                f"SELECT {self.COLUMNS} FROM {self._table('dimension_rows')} "
                "WHERE dimension = %s AND batch_id = %s ORDER BY surrogate_key",
                (dimension, batch_id),
            )
            return [self._row(r) for r in cur.fetchall()]


class PostgresBatchLedger(_PostgresBase, BatchLedger):
    """Batch ledger table with status and owner check-and-set on every save."""

    def load(self, batch_id: str) -> Batch | None:
        with self._transaction("ledger load") as cur:
            cur.execute(f"SELECT record FROM {self._table('batch_ledger')} WHERE batch_id = %s", (batch_id,))
            found = cur.fetchone()
        return None if found is None else Batch.model_validate(found["record"])

    def save(self, batch: Batch, expected_status: str | None, expected_owner: str | None = None) -> None:
        table = self._table("batch_ledger")
        document = Jsonb(batch.model_dump(mode="json"))
        with self._transaction("ledger save") as cur:
            if expected_status is None:
                cur.execute(
                    f"INSERT INTO {table} (batch_id, status, owner, record, created_at) "
                    "VALUES (%s, %s, %s, %s, %s) "
                    "ON CONFLICT (batch_id) DO NOTHING",
                    (batch.batch_id, batch.status, batch.owner, document, batch.created_at),
                )
                if cur.rowcount != 1:
                    raise BatchStateError(f"Batch {batch.batch_id} is already registered")
            else:
                cur.execute(
                    f"UPDATE {table} SET status = %s, owner = %s, record = %s "
                    "WHERE batch_id = %s AND status = %s AND owner IS NOT DISTINCT FROM %s",
                    (batch.status, batch.owner, document, batch.batch_id, expected_status, expected_owner),
                )
                if cur.rowcount != 1:
                    raise BatchStateError(
                        f"Batch {batch.batch_id} changed concurrently "
                        f"(expected {expected_status} owned by {expected_owner})"
                    )

    def entries(self, status: str | None = None) -> list[Batch]:
        table = self._table("batch_ledger")
        with self._transaction("ledger entries") as cur:
            if status is None:
                cur.execute(f"SELECT record FROM {table} ORDER BY created_at, batch_id")
            else:
                cur.execute(
                    f"SELECT record FROM {table} WHERE status = %s ORDER BY created_at, batch_id",
                    (status,),
                )
            return [Batch.model_validate(row["record"]) for row in cur.fetchall()]
