"""
GTFS Store Ingestion Module

Builds a SQLite (optionally SpatiaLite) database from a GTFS feed.

Entry Point:
    python -m gtfsdb.ingest path/to/gtfs.zip

Components:
    - schema: Checkpoint model, index plans, derived geometry tables
    - feed_import: Batch import of GTFS csv resources into text tables
    - cleanup: Agency-specific data repairs
    - spatial: Derived point/line geometry tables
    - orchestrator: Main entry point coordinating all build stages
"""

from .schema import initialize_store, Base
from .orchestrator import run_build, BuildResult

__all__ = ['initialize_store', 'Base', 'run_build', 'BuildResult']
