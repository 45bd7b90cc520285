"""
Store Schema Module

Fixed parts of the store layout:
    - gtfs_metadata: one checkpoint row per fully imported GTFS table
    - index plans applied to imported tables, keyed by resource kind
    - derived SpatiaLite tables (stops_geo, shapes_geo, routes_geo)

Imported GTFS tables themselves have no fixed schema; each one mirrors the
header of its resource, all columns text.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Tuple

from geoalchemy2 import Geometry
from sqlalchemy import Column, DateTime, Index, MetaData, Table, Text
from sqlalchemy.orm import declarative_base

logger = logging.getLogger(__name__)

# Base class for persistent models
Base = declarative_base()

# Spatial reference tagged on every derived geometry (WGS 84)
SRID = 4326


# ============================================================================
# IMPORT CHECKPOINTS
# ============================================================================

def _utcnow():
    return datetime.now(timezone.utc)


class ImportCheckpoint(Base):
    """Marker that every row of a GTFS table was committed."""

    __tablename__ = 'gtfs_metadata'

    tablename = Column(Text, primary_key=True)
    imported_at = Column(DateTime, default=_utcnow, nullable=False)
    cleaned = Column(Text, nullable=True)

    def __repr__(self):
        return f"<ImportCheckpoint(table='{self.tablename}', imported_at={self.imported_at}, cleaned={self.cleaned})>"


# ============================================================================
# INDEX PLANS
# ============================================================================

@dataclass(frozen=True)
class IndexSpec:
    name: str
    columns: Tuple[str, ...]
    unique: bool = False


INDEX_PLANS: Dict[str, Tuple[IndexSpec, ...]] = {
    "routes": (
        IndexSpec("route_idx", ("route_id",), unique=True),
    ),
    "shapes": (
        IndexSpec("shape_idx", ("shape_id",)),
    ),
    "stop_times": (
        IndexSpec("st_trip_idx", ("trip_id",)),
        IndexSpec("st_stop_idx", ("stop_id",)),
        IndexSpec("stop_times_idx", ("trip_id", "stop_id")),
    ),
    "stops": (
        IndexSpec("stop_idx", ("stop_id",), unique=True),
    ),
    "transfers": (
        IndexSpec("trans_from_idx", ("from_stop_id",)),
        IndexSpec("trans_to_idx", ("to_stop_id",)),
        IndexSpec("trans_idx", ("from_stop_id", "to_stop_id")),
    ),
    "trips": (
        IndexSpec("trip_idx", ("trip_id",), unique=True),
        IndexSpec("t_shape_idx", ("shape_id",)),
        IndexSpec("route_dir_idx", ("route_id", "direction_id")),
    ),
}


# ============================================================================
# DERIVED SPATIAL TABLES
# ============================================================================

geo_metadata = MetaData()

stops_geo = Table(
    "stops_geo", geo_metadata,
    Column("stop_id", Text),
    Column("geom", Geometry("POINT", srid=SRID, spatial_index=False)),
    Index("stops_geo_idx", "stop_id", unique=True),
)

shapes_geo = Table(
    "shapes_geo", geo_metadata,
    Column("shape_id", Text),
    Column("geom", Geometry("LINESTRING", srid=SRID, spatial_index=False)),
    Index("shapes_geo_idx", "shape_id", unique=True),
)

routes_geo = Table(
    "routes_geo", geo_metadata,
    Column("route_id", Text),
    Column("direction_id", Text),
    Column("geom", Geometry("MULTILINESTRING", srid=SRID, spatial_index=False)),
    Column("stopgeom", Geometry("MULTIPOINT", srid=SRID, spatial_index=False)),
    Column("pathgeom", Geometry("MULTILINESTRING", srid=SRID, spatial_index=False)),
    Index("routes_geo_idx", "route_id", "direction_id", unique=True),
)


# ============================================================================
# STORE INITIALIZATION
# ============================================================================

def initialize_store(store):
    """
    Ensure the checkpoint table exists.

    Args:
        store: Open FeedStore
    """
    Base.metadata.create_all(bind=store.connection)
    store.commit()
    logger.debug("Checkpoint table ready")
