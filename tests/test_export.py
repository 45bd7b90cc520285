"""
Test the csv, json and geojson extras.
"""

import json

import pytest

from gtfsdb.data.export import export_csv, export_geojson, export_json, imported_tables
from gtfsdb.ingest.feed_import import import_feed

from feed_fixtures import STOPS_TXT, csv_text, make_source

SHAPES_TXT = csv_text(
    ["shape_id", "shape_pt_lat", "shape_pt_lon", "shape_pt_sequence"],
    [["A1", "40.2", "-73.8", "2"], ["A1", "40.1", "-73.9", "1"]],
)

TRANSFERS_TXT = csv_text(
    ["from_stop_id", "to_stop_id", "transfer_type", "min_transfer_time"],
    [["S1", "S2", "2", "180"], ["S1", "S1", "1", ""]],
)


def read_json(path):
    return json.loads(path.read_text(encoding="utf-8"))


class TestExports:
    """Test writing extras from an imported feed."""

    @pytest.fixture
    def files(self):
        """Feed contents, including a stop without coordinates."""
        return {
            "stops.txt": STOPS_TXT + "S9,Depot,,\n",
            "shapes.txt": SHAPES_TXT,
            "transfers.txt": TRANSFERS_TXT,
            "readme.txt": "not gtfs",
        }

    @pytest.fixture
    def feed_store(self, store, files):
        """Store with the feed imported."""
        import_feed(store, make_source(files))
        return store

    def test_csv_copies_every_file(self, tmp_path, files):
        """Every archive member is copied byte for byte."""
        written = export_csv(tmp_path, make_source(files))

        assert written == 4
        assert (tmp_path / "csv" / "readme.txt").read_text() == "not gtfs"
        assert (tmp_path / "csv" / "stops.txt").read_text() == files["stops.txt"]

    def test_json_per_imported_table(self, tmp_path, feed_store):
        """Imported tables are written as lists of string-valued objects."""
        assert imported_tables(feed_store) == ["shapes", "stops", "transfers"]

        written = export_json(tmp_path, feed_store)

        assert written == 3
        stops = read_json(tmp_path / "json" / "stops.json")
        assert stops[0] == {"stop_id": "S1", "stop_name": "Main St", "stop_lat": "40.1", "stop_lon": "-73.9"}
        assert not (tmp_path / "json" / "gtfs_metadata.json").exists()

    def test_geojson_layers(self, tmp_path, feed_store):
        """Stops, shapes and transfers become features with numeric (lon, lat) coordinates."""
        counts = export_geojson(tmp_path, feed_store)

        assert counts == {"stops": 2, "shapes": 1, "transfers": 1}

        stop = read_json(tmp_path / "geojson" / "stops" / "stop.S1.geojson")
        assert stop["geometry"] == {"type": "Point", "coordinates": [-73.9, 40.1]}
        assert stop["properties"] == {"stop_id": "S1", "stop_name": "Main St"}
        assert not (tmp_path / "geojson" / "stops" / "stop.S9.geojson").exists()

        shape = read_json(tmp_path / "geojson" / "shapes" / "shape.A1.geojson")
        assert shape["geometry"]["coordinates"] == [[-73.9, 40.1], [-73.8, 40.2]]

        transfers = read_json(tmp_path / "geojson" / "transfers" / "all-transfers.geojson")
        assert transfers["type"] == "FeatureCollection"
        assert transfers["features"][0]["properties"] == {
            "from_stop_id": "S1", "to_stop_id": "S2", "transfer_type": 2
        }
