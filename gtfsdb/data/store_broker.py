"""
SQLite store handle.

One FeedStore owns one engine and one connection for a whole build; nothing
else writes to the store while it is open.
"""

import logging
import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Union

from geoalchemy2 import load_spatialite
from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Connection, CursorResult, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from gtfsdb.config.config_main import store_config
from gtfsdb.data.codec import quote_identifier
from gtfsdb.data.records import Record
from gtfsdb.errors import ExtensionUnavailableError, SnapshotError

logger = logging.getLogger(__name__)


class FeedStore:
    """Exclusive handle on the SQLite (optionally SpatiaLite) store for one build."""

    def __init__(self, engine: Engine, spatial: bool = False):
        self.engine = engine
        self.spatial = spatial
        self._connection: Optional[Connection] = None

    @property
    def connection(self) -> Connection:
        if self._connection is None:
            self._connection = self.engine.connect()
        return self._connection

    def execute(self, sql: str, params: Optional[dict] = None) -> CursorResult:
        return self.connection.execute(text(sql), params or {})

    def execute_raw(self, sql: str) -> CursorResult:
        """Run statement text as-is, without bind parameter parsing."""
        return self.connection.exec_driver_sql(sql)

    def scalar(self, sql: str, params: Optional[dict] = None):
        return self.execute(sql, params).scalar()

    def commit(self):
        self.connection.commit()

    def rollback(self):
        self.connection.rollback()

    @contextmanager
    def transaction(self):
        """
        Group statements into one commit unit.

        Usage:
            with store.transaction():
                store.execute("update trips set ...")
        """
        try:
            yield self
            self.connection.commit()
        except Exception:
            self.connection.rollback()
            raise

    def has_table(self, name: str) -> bool:
        return inspect(self.connection).has_table(name)

    def table_names(self) -> List[str]:
        return inspect(self.connection).get_table_names()

    def columns(self, table: str) -> List[str]:
        return [col["name"] for col in inspect(self.connection).get_columns(table)]

    def has_column(self, table: str, column: str) -> bool:
        return self.has_table(table) and column in self.columns(table)

    def count(self, table: str, field: str = "*", where: str = "", params: Optional[dict] = None) -> int:
        """Count field over table, optionally filtered by a where clause."""
        sql = f"SELECT count({field}) FROM {quote_identifier(table)}"
        if where:
            sql += f" WHERE {where}"
        return int(self.scalar(sql, params) or 0)

    def records(self, sql: str, params: Optional[dict] = None) -> Iterator[Record]:
        result = self.execute(sql, params)
        columns = list(result.keys())
        for row in result:
            yield Record.from_row(columns, row)

    def snapshot(self, target: Union[str, Path]):
        """
        Copy the live database into a file with SQLite's online backup.

        Raises:
            SnapshotError: if the backup cannot be written
        """
        self.commit()
        target = Path(target)
        logger.info(f"Saving store snapshot to {target}")
        try:
            source = self.connection.connection.driver_connection
            destination = sqlite3.connect(str(target))
            try:
                source.backup(destination)
            finally:
                destination.close()
        except (sqlite3.Error, SQLAlchemyError, OSError) as e:
            raise SnapshotError(f"failed to save snapshot to {target} [{e}]") from e

    def close(self):
        if self._connection is not None:
            self._connection.close()
            self._connection = None
        self.engine.dispose()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


def open_store(path: Optional[Union[str, Path]] = None, spatial: bool = False) -> FeedStore:
    """
    Open a store on a SQLite file, or in memory when path is None.

    Args:
        path: Database file to open (created if missing)
        spatial: Load SpatiaLite and initialize its metadata tables

    Returns:
        Connected FeedStore

    Raises:
        ExtensionUnavailableError: spatial requested but SpatiaLite will not load
    """
    if path is None:
        engine = create_engine(
            "sqlite://",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_engine(f"sqlite:///{Path(path)}")

    if spatial:
        os.environ.setdefault("SPATIALITE_LIBRARY_PATH", store_config.spatialite_library_path)
        event.listen(engine, "connect", load_spatialite)

    store = FeedStore(engine, spatial=spatial)
    if spatial:
        try:
            version = store.scalar("SELECT spatialite_version();")
        except (SQLAlchemyError, sqlite3.Error, RuntimeError, AttributeError) as e:
            store.close()
            raise ExtensionUnavailableError(f"spatialite not loaded [{e}]") from e
        logger.info(f"✓ SpatiaLite extension verified: {version}")
    return store
