"""
Build Orchestrator

Single entry point for turning a GTFS zip into a SQLite database.
Runs the stages in order and stops at the first failure:

    prepare -> acquire -> unpack -> setup -> import -> clean -> spatial
            -> snapshot -> export

Usage:
    python -m gtfsdb.ingest path/to/gtfs.zip
    python -m gtfsdb.ingest --spatialite --dir out/ https://example.com/gtfs.zip
    python -m gtfsdb.ingest --keepdb --skip-extras path/to/gtfs.zip
"""

import argparse
import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from gtfsdb.config.config_main import BuildOptions, prepare_options
from gtfsdb.data.export import export_csv, export_geojson, export_json
from gtfsdb.data.feed_client import ZipFeedSource, fetch_feed
from gtfsdb.data.store_broker import open_store
from gtfsdb.errors import GtfsStoreError

from .cleanup import CleanupResult, clean_feed
from .feed_import import ImportResult, import_feed
from .spatial import build_spatial

logger = logging.getLogger(__name__)


@dataclass
class BuildResult:
    """Outcome of a build: ok, or the stage that failed and why."""

    ok: bool = True
    stage: Optional[str] = None
    error: Optional[GtfsStoreError] = None
    imported: List[ImportResult] = field(default_factory=list)
    cleaned: List[CleanupResult] = field(default_factory=list)
    spatial: Dict[str, str] = field(default_factory=dict)
    exports: Dict[str, object] = field(default_factory=dict)

    @property
    def kind(self) -> Optional[str]:
        return type(self.error).__name__ if self.error is not None else None

    def fail(self, stage: str, error: GtfsStoreError) -> "BuildResult":
        self.ok = False
        self.stage = stage
        self.error = error
        return self


def run_build(options: BuildOptions) -> BuildResult:
    """
    Execute the complete build.

    Without keep-db the database is built in memory and saved to
    options.db_path only once every stage has succeeded. With keep-db the
    existing file is opened directly and already-imported tables are skipped.

    Args:
        options: Build options (see BuildOptions)

    Returns:
        BuildResult; on failure it names the stage and carries the error
    """
    result = BuildResult()
    stage = "prepare"
    store = None
    source = None

    try:
        options = prepare_options(options)

        stage = "acquire"
        logger.info("Grabbing GTFS...")
        data = fetch_feed(options.gtfs)

        stage = "unpack"
        source = ZipFeedSource(data)

        stage = "setup"
        logger.info("Setting up SQLite DB...")
        store = open_store(options.db_path if options.keep_db else None, spatial=options.spatialite)

        stage = "import"
        logger.info("Importing GTFS...")
        result.imported = import_feed(store, source, show_progress=options.show_progress)

        if not options.skip_clean:
            stage = "clean"
            logger.info("Cleaning GTFS...")
            result.cleaned = clean_feed(store)

        if options.spatialite:
            stage = "spatial"
            logger.info("Building SpatiaLite tables...")
            result.spatial = build_spatial(store, include_routes=options.routes_geo)

        if not options.keep_db:
            stage = "snapshot"
            store.snapshot(options.db_path)

        if not options.skip_extras:
            stage = "export"
            logger.info("Exporting CSV, JSON and GeoJSON...")
            result.exports["csv"] = export_csv(options.dir, source)
            result.exports["json"] = export_json(options.dir, store)
            result.exports["geojson"] = export_geojson(options.dir, store)

    except GtfsStoreError as e:
        logger.error(f"{stage} failed: {type(e).__name__}: {e}")
        return result.fail(stage, e)

    finally:
        if store is not None:
            store.close()
        if source is not None:
            source.close()

    logger.info("Finished.")
    return result


def main(argv=None):
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description='Convert a GTFS feed into a SQLite database',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Build gtfs-output/gtfs.sqlite plus csv/json/geojson extras
  python -m gtfsdb.ingest gtfs.zip

  # Download, add SpatiaLite tables, database only
  python -m gtfsdb.ingest --spatialite --skip-extras https://example.com/gtfs.zip

  # Resume into an existing database, skipping finished tables
  python -m gtfsdb.ingest --keepdb gtfs.zip
        """
    )

    parser.add_argument('gtfs', help='GTFS zip: URL or path/to/gtfs.zip')
    parser.add_argument('--dir', default=None, help='Output file directory')
    parser.add_argument('--name', default=None, help='Output sqlite filename')
    parser.add_argument(
        '--skip-extras',
        action='store_true',
        default=None,
        help='Skip extra export file formats (csv, json, geojson)'
    )
    parser.add_argument(
        '--spatialite',
        action='store_true',
        default=None,
        help='Include spatialite-enabled tables (needs mod_spatialite on the host)'
    )
    parser.add_argument(
        '--keepdb',
        action='store_true',
        default=None,
        help='Reuse existing sqlite db, if it exists'
    )
    parser.add_argument(
        '--skip-clean',
        action='store_true',
        default=None,
        help='Skip agency-specific GTFS cleanup rules'
    )
    parser.add_argument(
        '--no-routes-geo',
        dest='routes_geo',
        action='store_false',
        default=None,
        help='Do not build the routes_geo table'
    )
    parser.add_argument(
        '--no-progress',
        dest='show_progress',
        action='store_false',
        default=None,
        help='Hide import progress bars'
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    options = BuildOptions.from_config(
        gtfs=args.gtfs,
        dir=args.dir,
        name=args.name,
        skip_extras=args.skip_extras,
        spatialite=args.spatialite,
        keep_db=args.keepdb,
        skip_clean=args.skip_clean,
        routes_geo=args.routes_geo,
        show_progress=args.show_progress,
    )

    print(f"\n{'#'*70}")
    print(f"# GTFS -> SQLITE BUILD")
    print(f"# Started at: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"# This may take a while, please wait...")
    print(f"{'#'*70}\n")

    result = run_build(options)

    if not result.ok:
        print(f"\n{'!'*70}")
        print(f"! BUILD FAILED at stage '{result.stage}'")
        print(f"! {result.kind}: {result.error}")
        print(f"{'!'*70}\n")
        return 1

    imported = sum(1 for r in result.imported if r.status == "imported")
    print(f"\n{'#'*70}")
    print(f"# BUILD COMPLETE: {options.db_path}")
    print(f"#   ✓ {imported} tables imported")
    print(f"#   ✓ {len(result.cleaned)} cleanup rules applied")
    if result.spatial:
        print(f"#   ✓ spatial tables: {', '.join(f'{k} ({v})' for k, v in result.spatial.items())}")
    print(f"# Finished at: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"{'#'*70}\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
