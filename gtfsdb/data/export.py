"""
Extra output formats.

Pass-through copies of the imported feed as CSV, JSON and GeoJSON files.
Values stay strings until they are written; only coordinates are converted
to numbers, and only here.
"""

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from sqlalchemy.exc import SQLAlchemyError

from gtfsdb.data.codec import quote_identifier
from gtfsdb.data.records import Record
from gtfsdb.data.store_broker import FeedStore
from gtfsdb.errors import ExportError

logger = logging.getLogger(__name__)

CHECKPOINT_TABLE = "gtfs_metadata"


def _write_json(path: Path, data) -> None:
    try:
        path.write_text(json.dumps(data), encoding="utf-8")
    except (OSError, TypeError, ValueError) as e:
        raise ExportError(f"failed to write json file {path} [{e}]") from e


def _make_dir(path: Path) -> Path:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ExportError(f"could not create dir {path} [{e}]") from e
    return path


def _coordinates(record: Record, lon: str, lat: str) -> Optional[Tuple[float, float]]:
    try:
        return float(record.get(lon)), float(record.get(lat))
    except ValueError:
        return None


def _feature(properties: Dict, geometry_type: str, coordinates) -> Dict:
    return {
        "type": "Feature",
        "properties": properties,
        "geometry": {"type": geometry_type, "coordinates": coordinates},
    }


def _feature_collection(features: List[Dict]) -> Dict:
    return {"type": "FeatureCollection", "features": features}


def imported_tables(store: FeedStore) -> List[str]:
    """Tables with a completed import checkpoint."""
    try:
        present = set(store.table_names())
        if CHECKPOINT_TABLE not in present:
            return []
        rows = store.execute(f"SELECT tablename FROM {CHECKPOINT_TABLE} ORDER BY tablename;").fetchall()
    except SQLAlchemyError as e:
        raise ExportError(f"failed to list imported tables [{getattr(e, 'orig', None) or e}]") from e
    return [name for (name,) in rows if name in present]


# ============================================================================
# CSV / JSON
# ============================================================================

def export_csv(out_dir: Union[str, Path], source) -> int:
    """Copy every feed resource unchanged into <out_dir>/csv/."""
    csv_dir = _make_dir(Path(out_dir) / "csv")
    written = 0
    for name in source.list_resources():
        try:
            (csv_dir / Path(name).name).write_bytes(source.read(name))
        except OSError as e:
            raise ExportError(f"failed to write csv file {name} [{e}]") from e
        written += 1
    logger.info(f"✓ Exported {written} csv files")
    return written


def export_json(out_dir: Union[str, Path], store: FeedStore) -> int:
    """Write each imported table to <out_dir>/json/<table>.json as a list of objects."""
    json_dir = _make_dir(Path(out_dir) / "json")
    tables = imported_tables(store)
    for table in tables:
        try:
            rows = [r.as_dict() for r in store.records(f"SELECT * FROM {quote_identifier(table)};")]
        except SQLAlchemyError as e:
            raise ExportError(f"failed to select {table} [{e}]") from e
        _write_json(json_dir / f"{table}.json", rows)
    logger.info(f"✓ Exported {len(tables)} json files")
    return len(tables)


# ============================================================================
# GEOJSON
# ============================================================================

def export_geojson_stops(out_dir: Path, store: FeedStore) -> int:
    features = []
    for record in store.records("SELECT stop_id, stop_name, stop_lat, stop_lon FROM stops;"):
        point = _coordinates(record, "stop_lon", "stop_lat")
        if point is None:
            logger.warning(f"Skipping stop {record.get('stop_id')}: unusable coordinates")
            continue

        feature = _feature(
            {"stop_id": record.get("stop_id"), "stop_name": record.get("stop_name")},
            "Point",
            list(point),
        )
        _write_json(out_dir / f"stop.{record.get('stop_id')}.geojson", feature)
        features.append(feature)

    _write_json(out_dir / "all-stops.geojson", _feature_collection(features))
    return len(features)


def export_geojson_shapes(out_dir: Path, store: FeedStore) -> int:
    lines: Dict[str, List[List[float]]] = {}
    skipped = set()
    for record in store.records(
        "SELECT shape_id, shape_pt_lat, shape_pt_lon FROM shapes "
        "ORDER BY shape_id, CAST(shape_pt_sequence AS INTEGER);"
    ):
        shape_id = record.get("shape_id")
        point = _coordinates(record, "shape_pt_lon", "shape_pt_lat")
        if point is None:
            skipped.add(shape_id)
            continue
        lines.setdefault(shape_id, []).append(list(point))

    features = []
    for shape_id, line in lines.items():
        if shape_id in skipped:
            logger.warning(f"Skipping shape {shape_id}: unusable coordinates")
            continue
        feature = _feature({"shape_id": shape_id}, "LineString", line)
        _write_json(out_dir / f"shape.{shape_id}.geojson", feature)
        features.append(feature)

    _write_json(out_dir / "all-shapes.geojson", _feature_collection(features))
    return len(features)


def export_geojson_transfers(out_dir: Path, store: FeedStore) -> int:
    transfer_type = "t.transfer_type" if store.has_column("transfers", "transfer_type") else "''"
    features = []
    for record in store.records(f"""
        SELECT t.from_stop_id, t.to_stop_id, {transfer_type} AS transfer_type,
               sf.stop_lat AS from_lat, sf.stop_lon AS from_lon,
               st.stop_lat AS to_lat, st.stop_lon AS to_lon
        FROM transfers t
        LEFT JOIN stops sf ON t.from_stop_id = sf.stop_id
        LEFT JOIN stops st ON t.to_stop_id = st.stop_id
        WHERE t.from_stop_id != t.to_stop_id;
    """):
        start = _coordinates(record, "from_lon", "from_lat")
        end = _coordinates(record, "to_lon", "to_lat")
        from_stop, to_stop = record.get("from_stop_id"), record.get("to_stop_id")
        if start is None or end is None:
            logger.warning(f"Skipping transfer {from_stop}-{to_stop}: unusable coordinates")
            continue

        kind = record.get("transfer_type")
        feature = _feature(
            {
                "from_stop_id": from_stop,
                "to_stop_id": to_stop,
                "transfer_type": int(kind) if kind.isdigit() else kind,
            },
            "LineString",
            [list(start), list(end)],
        )
        _write_json(out_dir / f"transfer.{from_stop}-{to_stop}.geojson", feature)
        features.append(feature)

    _write_json(out_dir / "all-transfers.geojson", _feature_collection(features))
    return len(features)


def export_geojson_routes(out_dir: Path, store: FeedStore) -> int:
    """Write the routes_geo line/stop/path geometries per route and direction."""
    written = 0
    for record in store.records(
        "SELECT route_id, direction_id, AsGeoJSON(geom) AS line, "
        "AsGeoJSON(stopgeom) AS stop, AsGeoJSON(pathgeom) AS path FROM routes_geo;"
    ):
        prefix = f"route-{record.get('route_id')}-dir-{record.get('direction_id')}"
        for part in ("line", "stop", "path"):
            geometry = record.get(part)
            if not geometry:
                continue
            try:
                (out_dir / f"{prefix}-{part}.geojson").write_text(geometry, encoding="utf-8")
            except OSError as e:
                raise ExportError(f"failed to write route {part} geojson file [{e}]") from e
        written += 1
    return written


def export_geojson(out_dir: Union[str, Path], store: FeedStore) -> Dict[str, int]:
    """
    Export GeoJSON for stops, shapes, transfers and (spatial stores) routes.

    Returns:
        Number of features written per layer
    """
    geojson_dir = Path(out_dir) / "geojson"
    counts = {}
    try:
        if store.has_table("stops"):
            counts["stops"] = export_geojson_stops(_make_dir(geojson_dir / "stops"), store)

        if store.has_table("shapes"):
            counts["shapes"] = export_geojson_shapes(_make_dir(geojson_dir / "shapes"), store)

            if store.spatial and store.has_table("routes_geo"):
                counts["routes"] = export_geojson_routes(_make_dir(geojson_dir / "routes"), store)

        if store.has_table("transfers"):
            counts["transfers"] = export_geojson_transfers(_make_dir(geojson_dir / "transfers"), store)
    except SQLAlchemyError as e:
        raise ExportError(f"failed to query store for geojson [{getattr(e, 'orig', None) or e}]") from e

    logger.info(f"✓ Exported geojson: {counts}")
    return counts
