"""
Test the derived SpatiaLite tables.

Tests that need the extension are skipped when mod_spatialite cannot be loaded.
"""

import pytest

from gtfsdb.errors import ConsistencyError, ExtensionUnavailableError
from gtfsdb.ingest.feed_import import import_feed
from gtfsdb.ingest.spatial import build_spatial, line_wkt

from feed_fixtures import STOPS_TXT, csv_text, make_source

SHAPES_TXT = csv_text(
    ["shape_id", "shape_pt_lat", "shape_pt_lon", "shape_pt_sequence"],
    [
        ["A1", "40.2", "-73.8", "2"],
        ["A1", "40.1", "-73.9", "1"],
        ["A1", "40.3", "-73.7", "10"],
        ["B1", "40.5", "-73.5", "1"],
        ["B1", "40.6", "-73.4", "2"],
    ],
)

TRIPS_TXT = csv_text(
    ["route_id", "service_id", "trip_id", "direction_id", "shape_id"],
    [
        ["R1", "WK", "T1", "0", "A1"],
        ["R1", "WK", "T2", "0", "A1"],
        ["R1", "WK", "T3", "1", "B1"],
    ],
)

STOP_TIMES_TXT = csv_text(
    ["trip_id", "arrival_time", "departure_time", "stop_id", "stop_sequence"],
    [
        ["T1", "08:00:00", "08:00:00", "S1", "1"],
        ["T1", "08:05:00", "08:05:00", "S2", "2"],
        ["T3", "09:00:00", "09:00:00", "S2", "1"],
    ],
)


def geometry_snapshot(store, table, key):
    rows = store.execute(f"SELECT rowid, {key}, hex(geom) FROM {table} ORDER BY rowid;")
    return [tuple(row) for row in rows]


def test_line_wkt_keeps_order():
    assert line_wkt([("-73.9", "40.1"), ("-73.8", "40.2")]) == "LINESTRING(-73.9 40.1, -73.8 40.2)"


def test_requires_spatial_store(store):
    """A plain store cannot build geometry tables."""
    import_feed(store, make_source({"stops.txt": STOPS_TXT}))
    with pytest.raises(ExtensionUnavailableError):
        build_spatial(store)


class TestDerivedTables:
    """Test building stops_geo, shapes_geo and routes_geo."""

    @pytest.fixture
    def feed_store(self, spatial_store):
        """Spatial store with a small feed imported."""
        import_feed(spatial_store, make_source({
            "stops.txt": STOPS_TXT,
            "shapes.txt": SHAPES_TXT,
            "trips.txt": TRIPS_TXT,
            "stop_times.txt": STOP_TIMES_TXT,
        }))
        return spatial_store

    def test_stop_points(self, feed_store):
        """Each stop becomes a point at (lon, lat)."""
        build_spatial(feed_store, include_routes=False)

        rows = feed_store.execute(
            "SELECT stop_id, X(geom), Y(geom), SRID(geom) FROM stops_geo ORDER BY stop_id;"
        ).fetchall()
        assert [r[0] for r in rows] == ["S1", "S2"]
        assert tuple(rows[0][1:]) == pytest.approx((-73.9, 40.1, 4326))
        assert tuple(rows[1][1:]) == pytest.approx((-73.8, 40.2, 4326))

    def test_shape_line_follows_sequence(self, feed_store):
        """Points are ordered numerically by shape_pt_sequence, not by file order."""
        build_spatial(feed_store, include_routes=False)

        assert feed_store.count("shapes_geo") == 2
        points = [
            feed_store.execute(
                "SELECT X(PointN(geom, :n)), Y(PointN(geom, :n)) FROM shapes_geo WHERE shape_id = 'A1';",
                {"n": n},
            ).one()
            for n in (1, 2, 3)
        ]
        assert [tuple(p) for p in points] == [
            pytest.approx((-73.9, 40.1)),
            pytest.approx((-73.8, 40.2)),
            pytest.approx((-73.7, 40.3)),
        ]

    def test_second_build_is_noop(self, feed_store):
        """Up-to-date tables are left untouched."""
        first = build_spatial(feed_store)
        before = geometry_snapshot(feed_store, "stops_geo", "stop_id")

        second = build_spatial(feed_store)

        assert set(first.values()) == {"built"}
        assert set(second.values()) == {"fresh"}
        assert geometry_snapshot(feed_store, "stops_geo", "stop_id") == before

    def test_stale_table_rebuilt(self, feed_store):
        """A derived table with the wrong row count is rebuilt in full."""
        build_spatial(feed_store, include_routes=False)
        feed_store.execute("DELETE FROM stops_geo WHERE stop_id = 'S2';")
        feed_store.commit()

        statuses = build_spatial(feed_store, include_routes=False)

        assert statuses["stops_geo"] == "built"
        assert statuses["shapes_geo"] == "fresh"
        assert feed_store.count("stops_geo") == 2
        registered = feed_store.scalar(
            "SELECT count(*) FROM geometry_columns WHERE lower(f_table_name) = 'stops_geo';"
        )
        assert registered == 1

    def test_bad_coordinates_fail_count_check(self, spatial_store):
        """A stop without usable coordinates leaves stops_geo short."""
        stops = STOPS_TXT + "S3,Nowhere,,not-a-number\n"
        import_feed(spatial_store, make_source({"stops.txt": stops}))

        with pytest.raises(ConsistencyError):
            build_spatial(spatial_store)

    def test_route_geometries(self, feed_store):
        """One row per route and direction with a shape."""
        statuses = build_spatial(feed_store)

        assert statuses["routes_geo"] == "built"
        rows = feed_store.execute(
            "SELECT route_id, direction_id, GeometryType(geom) FROM routes_geo "
            "ORDER BY route_id, direction_id;"
        ).fetchall()
        assert [tuple(r) for r in rows] == [
            ("R1", "0", "MULTILINESTRING"),
            ("R1", "1", "MULTILINESTRING"),
        ]
        assert feed_store.scalar(
            "SELECT NumGeometries(stopgeom) FROM routes_geo WHERE direction_id = '0';"
        ) == 2

    def test_routes_skipped_when_disabled(self, feed_store):
        """include_routes=False builds only points and lines."""
        statuses = build_spatial(feed_store, include_routes=False)

        assert set(statuses) == {"stops_geo", "shapes_geo"}
        assert not feed_store.has_table("routes_geo")
