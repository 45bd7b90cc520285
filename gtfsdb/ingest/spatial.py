"""
Spatial Derivation Engine

Builds SpatiaLite geometry tables from imported GTFS tables:
    - stops_geo:  POINT per stop
    - shapes_geo: LINESTRING per shape, points ordered by shape_pt_sequence
    - routes_geo: per route/direction MULTILINESTRING of its shapes, MULTIPOINT
                  of its served stops, and the lines cut at those stops

Each derived table must hold exactly one row per distinct key of its base
table(s). A table with the expected count is left untouched; any other count
means it is stale, so it is dropped and rebuilt in full.
"""

import logging
from dataclasses import dataclass
from itertools import groupby
from typing import Callable, Dict, Iterable, List, Tuple

from sqlalchemy import Table, text
from sqlalchemy.exc import SQLAlchemyError

from gtfsdb.data.codec import MAX_COMPOUND_ROWS
from gtfsdb.data.store_broker import FeedStore
from gtfsdb.errors import (
    ConsistencyError, ExtensionUnavailableError, InsertError, SchemaError
)

from .schema import SRID, routes_geo, shapes_geo, stops_geo

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DerivedTable:
    """How to count, and how to fill, one derived geometry table."""

    table: Table
    expected_sql: str
    populate: Callable[[FeedStore], None]

    @property
    def name(self) -> str:
        return self.table.name


def line_wkt(points: Iterable[Tuple[str, str]]) -> str:
    """WKT linestring from (lon, lat) pairs, in the order given."""
    return "LINESTRING(" + ", ".join(f"{lon} {lat}" for lon, lat in points) + ")"


# ============================================================================
# POPULATE STEPS
# ============================================================================

def _populate_stops(store: FeedStore):
    store.execute(f"""
        INSERT INTO stops_geo (stop_id, geom)
        SELECT stop_id, geom FROM (
            SELECT stop_id,
                   GeomFromText('POINT(' || stop_lon || ' ' || stop_lat || ')', {SRID}) AS geom
            FROM stops
            GROUP BY stop_id
        )
        WHERE geom IS NOT NULL;
    """)


def _populate_shapes(store: FeedStore):
    points = store.execute("""
        SELECT shape_id, shape_pt_lon, shape_pt_lat
        FROM shapes
        ORDER BY shape_id, CAST(shape_pt_sequence AS INTEGER);
    """)
    insert_line = text(f"""
        INSERT INTO shapes_geo (shape_id, geom)
        SELECT :shape_id, geom FROM (SELECT GeomFromText(:wkt, {SRID}) AS geom)
        WHERE geom IS NOT NULL;
    """)

    pending: List[dict] = []
    for shape_id, rows in groupby(points, key=lambda r: r[0]):
        pending.append({"shape_id": shape_id, "wkt": line_wkt((lon, lat) for _, lon, lat in rows)})
        if len(pending) == MAX_COMPOUND_ROWS:
            store.connection.execute(insert_line, pending)
            pending = []
    if pending:
        store.connection.execute(insert_line, pending)


def _direction_expr(store: FeedStore, alias: str) -> str:
    if store.has_column("trips", "direction_id"):
        return f"{alias}.direction_id"
    return "''"


def _populate_routes(store: FeedStore):
    store.execute(f"""
        INSERT INTO routes_geo (route_id, direction_id, geom, stopgeom, pathgeom)
        SELECT l.route_id, l.direction_id, l.geom, p.stopgeom,
               CastToMultiLinestring(COALESCE(LinesCutAtNodes(l.geom, p.stopgeom), l.geom))
        FROM (
            SELECT rs.route_id, rs.direction_id,
                   CastToMultiLinestring(ST_Union(g.geom)) AS geom
            FROM (
                SELECT DISTINCT t.route_id, {_direction_expr(store, 't')} AS direction_id, t.shape_id
                FROM trips t
            ) rs
            JOIN shapes_geo g ON g.shape_id = rs.shape_id
            GROUP BY rs.route_id, rs.direction_id
        ) l
        LEFT JOIN (
            SELECT rs.route_id, rs.direction_id,
                   CastToMultiPoint(ST_Union(sg.geom)) AS stopgeom
            FROM (
                SELECT DISTINCT t.route_id, {_direction_expr(store, 't')} AS direction_id, st.stop_id
                FROM trips t
                JOIN stop_times st ON st.trip_id = t.trip_id
            ) rs
            JOIN stops_geo sg ON sg.stop_id = rs.stop_id
            GROUP BY rs.route_id, rs.direction_id
        ) p ON p.route_id = l.route_id AND p.direction_id = l.direction_id;
    """)


# ============================================================================
# BUILD PLAN
# ============================================================================

def derived_tables(store: FeedStore, include_routes: bool = True) -> List[DerivedTable]:
    """
    Derived tables buildable from the imported data, in build order.

    Points come before anything that intersects lines against them.
    """
    plan = [
        DerivedTable(
            stops_geo,
            "SELECT count(DISTINCT stop_id) FROM stops;",
            _populate_stops,
        ),
    ]

    if not store.has_table("shapes"):
        return plan

    plan.append(DerivedTable(
        shapes_geo,
        "SELECT count(DISTINCT shape_id) FROM shapes;",
        _populate_shapes,
    ))

    if (include_routes
            and store.has_column("trips", "shape_id")
            and store.has_table("stop_times")):
        plan.append(DerivedTable(
            routes_geo,
            f"""
            SELECT count(*) FROM (
                SELECT DISTINCT t.route_id, {_direction_expr(store, 't')}
                FROM trips t
                WHERE t.shape_id IN (SELECT shape_id FROM shapes)
            );
            """,
            _populate_routes,
        ))

    return plan


def _count_rows(store: FeedStore, name: str) -> int:
    try:
        return store.count(name)
    except SQLAlchemyError as e:
        raise SchemaError(f"failed to count rows of {name} [{getattr(e, 'orig', None) or e}]") from e


def build_derived(store: FeedStore, derived: DerivedTable) -> str:
    """
    Bring one derived table up to date.

    Returns:
        "fresh" if the table already held the expected rows, "built" otherwise

    Raises:
        ConsistencyError: row count after the rebuild differs from expected
    """
    name = derived.name
    try:
        expected = int(store.scalar(derived.expected_sql) or 0)
    except SQLAlchemyError as e:
        raise SchemaError(f"failed to count base rows for {name} [{getattr(e, 'orig', None) or e}]") from e

    if store.has_table(name):
        actual = _count_rows(store, name)
        if actual == expected:
            logger.info(f"✓ {name} is up to date ({actual} rows)")
            return "fresh"

        logger.info(f"{name} is stale ({actual} rows, {expected} expected), rebuilding")
        try:
            derived.table.drop(store.connection)
            store.commit()
        except SQLAlchemyError as e:
            store.rollback()
            raise SchemaError(f"failed to drop prev {name} table [{getattr(e, 'orig', None) or e}]") from e

    try:
        derived.table.create(store.connection)
        store.commit()
    except SQLAlchemyError as e:
        store.rollback()
        raise SchemaError(f"failed to create table {name} [{getattr(e, 'orig', None) or e}]") from e

    try:
        derived.populate(store)
        store.commit()
    except SQLAlchemyError as e:
        store.rollback()
        raise InsertError(f"failed to insert rows into {name} [{getattr(e, 'orig', None) or e}]") from e

    actual = _count_rows(store, name)
    if actual != expected:
        raise ConsistencyError(
            f"failed to sanity check {name} rows: {expected} expected, {actual} actual "
            f"(check for missing or malformed coordinates)"
        )

    logger.info(f"✓ Built {name}: {actual} rows")
    return "built"


def build_spatial(store: FeedStore, include_routes: bool = True) -> Dict[str, str]:
    """
    Build or refresh every derived geometry table.

    Args:
        store: FeedStore opened with spatial=True, GTFS tables imported
        include_routes: Also build routes_geo when trips/stop_times/shapes exist

    Returns:
        Mapping of derived table name to "fresh" or "built"
    """
    if not store.spatial:
        raise ExtensionUnavailableError("store was opened without the SpatiaLite extension")
    try:
        store.scalar("SELECT spatialite_version();")
    except SQLAlchemyError as e:
        raise ExtensionUnavailableError(f"spatialite not loaded [{e}]") from e

    if not store.has_table("stops"):
        raise SchemaError("cannot build stops_geo: stops table is missing")

    statuses = {}
    for derived in derived_tables(store, include_routes):
        statuses[derived.name] = build_derived(store, derived)
    return statuses
