"""
Batch Import Engine

Turns each recognized GTFS resource (csv text) into a store table with one
text column per header field. Rows are committed in batches no wider than
SQLite's compound statement limit, and a table is checkpointed in
gtfs_metadata only after every batch and its indexes are in place.

A table without a checkpoint is always rebuilt from scratch, so a rerun
after a failure never appends to a half-imported table.
"""

import csv
import io
import logging
import zipfile
from dataclasses import dataclass
from typing import BinaryIO, Iterator, List, Optional, Sequence

from sqlalchemy import func, insert, select
from sqlalchemy.exc import SQLAlchemyError
from tqdm import tqdm

from gtfsdb.data.codec import (
    MAX_COMPOUND_ROWS, build_create_table, build_insert, quote_identifier
)
from gtfsdb.data.feed_client import REQUIRED_RESOURCES, is_gtfs
from gtfsdb.data.store_broker import FeedStore
from gtfsdb.errors import ArchiveError, EncodingError, InsertError, SchemaError

from .schema import INDEX_PLANS, ImportCheckpoint, initialize_store

logger = logging.getLogger(__name__)

UTF8_BOM = "\ufeff"


@dataclass(frozen=True)
class ImportResult:
    """Outcome of one resource: imported, resumed (already checkpointed) or ignored."""

    table: str
    status: str
    rows: int = 0


# ============================================================================
# READING
# ============================================================================

def _open_csv(reader: BinaryIO):
    text_stream = io.TextIOWrapper(reader, encoding="utf-8-sig", errors="strict", newline="")
    return csv.reader(text_stream, skipinitialspace=True)


def _iter_rows(rows, resource: str) -> Iterator[List[str]]:
    """Yield csv rows, translating decode/parse failures into build errors."""
    while True:
        try:
            row = next(rows)
        except StopIteration:
            return
        except UnicodeDecodeError as e:
            raise EncodingError(f"encountered invalid utf8 in {resource} near line {rows.line_num + 1} [{e}]") from e
        except csv.Error as e:
            raise SchemaError(f"failed to read {resource} line {rows.line_num} [{e}]") from e
        except (zipfile.BadZipFile, OSError) as e:
            raise ArchiveError(f"failed to read {resource} [{e}]") from e

        if row:  # blank line
            yield row


def clean_header(raw: Optional[Sequence[str]], resource: str) -> List[str]:
    """
    Trim the header fields, dropping a utf8 byte-order-mark from the first one.

    Raises:
        SchemaError: missing, blank or duplicate column names
    """
    if not raw:
        raise SchemaError(f"missing header in {resource}")

    header = []
    for i, value in enumerate(raw):
        if i == 0:
            value = value.lstrip(UTF8_BOM)
        header.append(value.strip())

    if any(h == "" for h in header):
        raise SchemaError(f"blank column name in {resource} header {header}")
    if len(set(header)) != len(header):
        raise SchemaError(f"duplicate column name in {resource} header {header}")
    return header


def normalize_row(row: Sequence[str], width: int, resource: str, line: int) -> List[str]:
    """
    Fit a row to the header width: pad short rows with empty strings, trim
    every field. Surplus trailing fields are accepted only when empty.
    """
    if len(row) > width:
        if any(v.strip() for v in row[width:]):
            raise SchemaError(
                f"row at line {line} of {resource} has {len(row)} fields, header has {width}"
            )
        row = row[:width]

    padded = list(row) + [""] * (width - len(row))
    return [v.strip() for v in padded]


# ============================================================================
# WRITING
# ============================================================================

def is_checkpointed(store: FeedStore, table: str) -> bool:
    stmt = select(func.count()).select_from(ImportCheckpoint).where(
        ImportCheckpoint.tablename == table
    )
    try:
        return (store.connection.execute(stmt).scalar() or 0) > 0
    except SQLAlchemyError as e:
        raise SchemaError(f"failed to read import checkpoint for {table} [{getattr(e, 'orig', None) or e}]") from e


def create_table(store: FeedStore, table: str, header: Sequence[str]):
    """Drop any previous (uncheckpointed) table and create it fresh from the header."""
    try:
        store.execute_raw(f"DROP TABLE IF EXISTS {quote_identifier(table)};")
        store.execute_raw(build_create_table(table, header))
        store.commit()
    except SQLAlchemyError as e:
        store.rollback()
        raise SchemaError(f"failed create table {table} [{getattr(e, 'orig', None) or e}]") from e


def insert_batch(store: FeedStore, table: str, header: Sequence[str], batch: List[List[str]]):
    """Write one batch as a single multi-row insert, committed on its own."""
    statement = build_insert(table, header, batch)
    try:
        store.execute_raw(statement)
        store.commit()
    except SQLAlchemyError as e:
        store.rollback()
        raise InsertError(f"failed to insert {table} [{getattr(e, 'orig', None) or e}]") from e


def apply_index_plan(store: FeedStore, table: str, header: Sequence[str]) -> int:
    """
    Create the fixed indexes for this resource kind.

    Returns:
        Number of indexes created (0 for kinds without a plan)
    """
    created = 0
    for spec in INDEX_PLANS.get(table, ()):
        missing = [c for c in spec.columns if c not in header]
        if missing:
            logger.warning(f"Skipping index {spec.name}: {table} has no column(s) {missing}")
            continue

        columns = ", ".join(quote_identifier(c) for c in spec.columns)
        unique = "UNIQUE " if spec.unique else ""
        try:
            store.execute_raw(
                f"CREATE {unique}INDEX {quote_identifier(spec.name)} "
                f"ON {quote_identifier(table)} ({columns});"
            )
        except SQLAlchemyError as e:
            store.rollback()
            raise SchemaError(f"failed add index {spec.name} to {table} [{getattr(e, 'orig', None) or e}]") from e
        created += 1

    store.commit()
    return created


def write_checkpoint(store: FeedStore, table: str):
    try:
        store.connection.execute(insert(ImportCheckpoint).values(tablename=table))
        store.commit()
    except SQLAlchemyError as e:
        store.rollback()
        raise InsertError(f"failed to note successful import of {table} [{e}]") from e


# ============================================================================
# IMPORT
# ============================================================================

def import_resource(
    store: FeedStore,
    source,
    name: str,
    batch_size: int = MAX_COMPOUND_ROWS,
    show_progress: bool = False,
) -> ImportResult:
    """
    Import one GTFS resource into its own table.

    Args:
        store: Open FeedStore (checkpoint table must exist)
        source: Feed source exposing open(name)
        name: Resource name, e.g. "stops.txt"
        batch_size: Rows per insert statement, capped at MAX_COMPOUND_ROWS
        show_progress: Display a tqdm progress bar

    Returns:
        ImportResult for the resource
    """
    valid, _ = is_gtfs(name)
    if not valid:
        logger.debug(f"Ignoring non-GTFS resource {name}")
        return ImportResult(name, "ignored")

    table = name[:-len(".txt")]
    if is_checkpointed(store, table):
        logger.info(f"Skipping {table}: already imported")
        return ImportResult(table, "resumed")

    batch_size = max(1, min(batch_size, MAX_COMPOUND_ROWS))
    total = 0

    with source.open(name) as reader:
        rows = _open_csv(reader)
        row_iter = _iter_rows(rows, name)
        header = clean_header(next(row_iter, None), name)
        width = len(header)

        create_table(store, table, header)

        batch: List[List[str]] = []
        with tqdm(desc=f"Importing {table}", unit="row", disable=not show_progress, leave=False) as progress:
            for row in row_iter:
                batch.append(normalize_row(row, width, name, rows.line_num))
                if len(batch) == batch_size:
                    insert_batch(store, table, header, batch)
                    total += len(batch)
                    progress.update(len(batch))
                    batch = []

            if batch:
                insert_batch(store, table, header, batch)
                total += len(batch)
                progress.update(len(batch))

    indexes = apply_index_plan(store, table, header)
    write_checkpoint(store, table)

    logger.info(f"✓ Imported {table}: {total} rows, {indexes} indexes")
    return ImportResult(table, "imported", total)


def import_feed(
    store: FeedStore,
    source,
    batch_size: int = MAX_COMPOUND_ROWS,
    show_progress: bool = False,
) -> List[ImportResult]:
    """
    Import every recognized resource of the feed, in archive order.

    Stops at the first failing resource; tables imported before it keep
    their checkpoints so a rerun with keep-db resumes after them.
    """
    initialize_store(store)

    names = source.list_resources()
    for required in REQUIRED_RESOURCES:
        if required not in names:
            logger.warning(f"Required GTFS file {required} is missing from the feed")

    results = []
    for name in names:
        results.append(import_resource(store, source, name, batch_size, show_progress))

    imported = sum(1 for r in results if r.status == "imported")
    resumed = sum(1 for r in results if r.status == "resumed")
    logger.info(f"Import complete: {imported} tables imported, {resumed} already present")
    return results
