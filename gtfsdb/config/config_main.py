from dataclasses import dataclass
from pathlib import Path
from dotenv import load_dotenv
import os

from gtfsdb.errors import ConfigurationError

load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class OutputConfig():
    dir: str = os.getenv("GTFS_OUTPUT_DIR", "gtfs-output/")
    db_name: str = os.getenv("GTFS_DB_NAME", "gtfs.sqlite")
    skip_extras: bool = _env_flag("GTFS_SKIP_EXTRAS", "false")

output_config = OutputConfig()

class StoreConfig():
    spatialite: bool = _env_flag("GTFS_SPATIALITE", "false")
    keep_db: bool = _env_flag("GTFS_KEEP_DB", "false")
    spatialite_library_path: str = os.getenv("SPATIALITE_LIBRARY_PATH", "mod_spatialite")

store_config = StoreConfig()

class BuildConfig():
    """Configuration for the import/cleanup/spatial stages."""
    skip_clean: bool = _env_flag("GTFS_SKIP_CLEAN", "false")
    routes_geo: bool = _env_flag("GTFS_ROUTES_GEO", "true")
    show_progress: bool = _env_flag("GTFS_SHOW_PROGRESS", "true")
    download_timeout: int = int(os.getenv("GTFS_DOWNLOAD_TIMEOUT", "300"))

build_config = BuildConfig()


@dataclass
class BuildOptions:
    """Runtime options for a single build."""

    gtfs: str = ""
    dir: str = output_config.dir
    name: str = output_config.db_name
    skip_extras: bool = output_config.skip_extras
    spatialite: bool = store_config.spatialite
    keep_db: bool = store_config.keep_db
    skip_clean: bool = build_config.skip_clean
    routes_geo: bool = build_config.routes_geo
    show_progress: bool = build_config.show_progress

    @property
    def db_path(self) -> Path:
        return Path(self.dir) / self.name

    @classmethod
    def from_config(cls, **overrides) -> "BuildOptions":
        """Options seeded from the environment, with explicit overrides."""
        return cls(**{k: v for k, v in overrides.items() if v is not None})


def prepare_options(options: BuildOptions) -> BuildOptions:
    """
    Validate options and get the output directory ready.

    Keep-db is switched off when there is no existing db to keep, and an
    existing db is never overwritten unless keep-db is on.

    Raises:
        ConfigurationError: missing feed location, unusable output dir,
            or an existing db that would be overwritten
    """
    if not options.gtfs:
        raise ConfigurationError("missing GTFS feed (URL or path/to/gtfs.zip)")

    try:
        Path(options.dir).mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigurationError(f"could not create output dir {options.dir} [{e}]") from e

    exists = options.db_path.exists()
    if options.keep_db and not exists:
        options.keep_db = False

    if exists and not options.keep_db:
        raise ConfigurationError(f"sqlite db already exists [{options.db_path}]")

    return options
