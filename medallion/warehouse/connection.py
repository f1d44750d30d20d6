"""
PostgreSQL connection pool for the warehouse stores (psycopg3)

Layer, dimension and ledger stores share one pool. Settings default to the
DB_* environment variables; waiting for a pooled connection is bounded and
surfaces as the pipeline's Timeout error.
"""
import os
import time
from contextlib import contextmanager

from psycopg import OperationalError
from psycopg.conninfo import conninfo_to_dict, make_conninfo
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from medallion.core.errors import Timeout
from medallion.observability.logger import get_logger

logger = get_logger(__name__)

APPLICATION_NAME = "medallion-etl"


class DatabaseConnectionPool:
    """
    Pool of dict-row psycopg connections for the warehouse stores

    Args:
        host: Database host (DB_HOST, default localhost)
        port: Database port (DB_PORT, default 5432)
        database: Database name (DB_NAME, default datawarehouse)
        user: Database user (DB_USER, default pipeline)
        password: Database password (DB_PASSWORD, required)
        min_size: Connections kept open
        max_size: Upper bound on open connections
        timeout: Seconds allowed to connect and to check out a connection
    """

    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        database: str | None = None,
        user: str | None = None,
        password: str | None = None,
        min_size: int = 2,
        max_size: int = 10,
        timeout: float = 30.0,
    ) -> None:
        self.host = host or os.getenv("DB_HOST", "localhost")
        self.port = port or int(os.getenv("DB_PORT", "5432"))
        self.database = database or os.getenv("DB_NAME", "datawarehouse")
        self.user = user or os.getenv("DB_USER", "pipeline")
        password = password or os.getenv("DB_PASSWORD")
        if not password:
            raise ValueError("Database password must be provided (DB_PASSWORD or the password argument)")

        self.min_size = min_size
        self.max_size = max_size
        self.timeout = timeout

        # make_conninfo quotes values, so passwords may contain spaces or quotes
        self.conninfo = make_conninfo(
            host=self.host,
            port=self.port,
            dbname=self.database,
            user=self.user,
            password=password,
            connect_timeout=max(1, int(timeout)),
            application_name=APPLICATION_NAME,
        )
        self._pool: ConnectionPool | None = None

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "DatabaseConnectionPool":
        """Build a pool from a libpq URL such as postgresql://user:pw@host:5432/db."""
        params = conninfo_to_dict(url)
        return cls(
            host=params.get("host"),
            port=int(params["port"]) if params.get("port") else None,
            database=params.get("dbname"),
            user=params.get("user"),
            password=params.get("password"),
            **kwargs,
        )

    def describe(self) -> dict:
        """Connection target for log fields (never includes the password)."""
        return {"host": self.host, "port": self.port, "database": self.database, "user": self.user}

    @property
    def is_open(self) -> bool:
        return self._pool is not None

    def open(self, max_retries: int = 3, retry_delay: float = 2.0) -> None:
        """
        Open the pool, waiting until min_size connections are ready.

        Raises:
            OperationalError: If the database is unreachable after max_retries attempts
        """
        if self._pool is not None:
            return

        attempt = 1
        while True:
            # A pool whose first wait timed out is closed and cannot be reopened
            pool = self._new_pool()
            try:
                pool.open(wait=True, timeout=self.timeout)
                break
            except (OperationalError, PoolTimeout) as e:
                if attempt >= max_retries:
                    pool.close()
                    raise OperationalError(
                        f"Failed to connect to database after {max_retries} attempts: {e}"
                    ) from e
                logger.warning(
                    f"Database not ready (attempt {attempt}/{max_retries}): {e}",
                    extra={**self.describe(), "attempt": attempt},
                )
                attempt += 1
                time.sleep(retry_delay)

        self._pool = pool
        logger.info("Opened database pool", extra={**self.describe(), "max_size": self.max_size})

    def _new_pool(self) -> ConnectionPool:
        return ConnectionPool(
            conninfo=self.conninfo,
            min_size=self.min_size,
            max_size=self.max_size,
            timeout=self.timeout,
            kwargs={"row_factory": dict_row},
            check=ConnectionPool.check_connection,
            name=APPLICATION_NAME,
            open=False,
        )

    def close(self) -> None:
        if self._pool is not None:
            self._pool.close()
            self._pool = None

    @contextmanager
    def get_connection(self, timeout: float | None = None):
        """
        Check out a connection; it commits on clean exit and rolls back on error.

        Args:
            timeout: Seconds to wait for a free connection (pool timeout if None)

        Raises:
            RuntimeError: If the pool is not open
            Timeout: If no connection became free in time
        """
        if self._pool is None:
            raise RuntimeError("Connection pool is not open. Call open() first.")

        try:
            with self._pool.connection(timeout=timeout) as conn:
                yield conn
        except PoolTimeout as e:
            raise Timeout("database connection checkout", timeout or self.timeout) from e

    @contextmanager
    def get_cursor(self, timeout: float | None = None):
        """Cursor on a checked-out connection, in one transaction."""
        with self.get_connection(timeout) as conn:
            with conn.cursor() as cur:
                yield cur

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
