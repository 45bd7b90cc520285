"""
GTFS Store Error Hierarchy

Every failure in the build is fatal. Each stage raises the kind that names
what went wrong, chained to the low-level cause, and the orchestrator stops
at the first one.
"""


class GtfsStoreError(Exception):
    """Base exception for all build failures."""


class ConfigurationError(GtfsStoreError):
    """Raised for invalid build options."""


class AcquisitionError(GtfsStoreError):
    """Raised when the feed archive cannot be downloaded or read."""


class ArchiveError(GtfsStoreError):
    """Raised when the feed archive cannot be unpacked."""


class EncodingError(GtfsStoreError):
    """Raised for text that is not valid UTF-8."""


class SchemaError(GtfsStoreError):
    """Raised for malformed headers/rows or failed table and index DDL."""


class InsertError(GtfsStoreError):
    """Raised when a bulk insert batch fails to commit."""


class ExtensionUnavailableError(GtfsStoreError):
    """Raised when the SpatiaLite extension cannot be loaded."""


class ConsistencyError(GtfsStoreError):
    """Raised when a derived table does not hold the expected row count."""


class MatchError(GtfsStoreError):
    """Raised when a cleanup rule cannot find a repair candidate."""


class ExportError(GtfsStoreError):
    """Raised when an extra output format cannot be written."""


class SnapshotError(GtfsStoreError):
    """Raised when the in-memory store cannot be saved to its file."""
