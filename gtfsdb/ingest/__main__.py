"""
GTFS Store Ingestion Module Entry Point

Allows running the build via:
    python -m gtfsdb.ingest [args]
"""

import sys

from .orchestrator import main

if __name__ == "__main__":
    sys.exit(main())
