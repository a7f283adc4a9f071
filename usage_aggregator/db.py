"""PostgreSQL connection handling shared by the usage store and the directory."""

from contextlib import contextmanager
from typing import Dict, Optional, Sequence

import pandas as pd
import psycopg2
import psycopg2.extensions

from .utils import get_logger


class PostgresClient:
    """Own a psycopg2 connection configured from the ``postgresql`` section."""

    logger_name = "db"

    def __init__(self, config: Dict, connection=None):
        """Initialize the client.

        Args:
            config: Configuration dictionary with postgresql section
            connection: Existing psycopg2 connection to reuse (optional)
        """
        self.config = config
        self.logger = get_logger(self.logger_name)

        pg_config = config['postgresql']
        self.host = pg_config['host']
        self.port = pg_config['port']
        self.database = pg_config['database']
        self.user = pg_config['user']
        self.password = pg_config['password']
        self.schema = pg_config.get('schema', 'public')

        self.connection = connection
        self._owns_connection = connection is None

    def connect(self):
        """Establish database connection."""
        if self.connection is not None:
            return
        try:
            self.connection = psycopg2.connect(
                host=self.host,
                port=self.port,
                database=self.database,
                user=self.user,
                password=self.password
            )
            self._owns_connection = True
            self.logger.info("Database connection established", host=self.host, database=self.database)
        except Exception as e:
            self.logger.error("Failed to connect to database", error=str(e))
            raise

    def disconnect(self):
        """Close the connection if this client opened it.

        A pending transaction is committed first; psycopg2 rolls back on close().
        """
        if self.connection is None or not self._owns_connection:
            return
        if self.connection.status == psycopg2.extensions.STATUS_IN_TRANSACTION:
            self.logger.info("Committing pending transaction before disconnect")
            self.connection.commit()
        self.connection.close()
        self.connection = None
        self.logger.info("Database connection closed")

    def __enter__(self):
        """Context manager entry."""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()

    @contextmanager
    def transaction(self):
        """Yield a cursor; commit on success, roll back and re-raise on failure."""
        try:
            with self.connection.cursor() as cursor:
                yield cursor
            self.connection.commit()
        except Exception:
            self.connection.rollback()
            raise

    def table(self, name: str) -> str:
        return f"{self.schema}.{name}"

    def read_frame(self, query: str, params: Optional[Sequence] = None) -> pd.DataFrame:
        """Run a read-only query into a DataFrame."""
        return pd.read_sql(query, self.connection, params=params)

    def test_connectivity(self) -> bool:
        """Test database connectivity.

        Returns:
            True if connection successful
        """
        try:
            with self.connection.cursor() as cursor:
                cursor.execute("SELECT 1")
                result = cursor.fetchone()
                if result and result[0] == 1:
                    self.logger.info("Database connectivity test: SUCCESS")
                    return True
        except psycopg2.Error as e:
            self.logger.error("Database connectivity test: FAILED", error=str(e))
            return False
        return False
