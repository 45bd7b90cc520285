import io
import logging
import re
import zipfile
from pathlib import Path
from typing import BinaryIO, List, Tuple

import requests

from gtfsdb.config.config_main import build_config
from gtfsdb.errors import AcquisitionError, ArchiveError

logger = logging.getLogger(__name__)

REQUIRED_RESOURCES = (
    "agency.txt",
    "stops.txt",
    "routes.txt",
    "trips.txt",
    "stop_times.txt",
    "calendar.txt",
)

OPTIONAL_RESOURCES = (
    "calendar_dates.txt",
    "fare_attributes.txt",
    "fare_rules.txt",
    "shapes.txt",
    "frequencies.txt",
    "transfers.txt",
    "feed_info.txt",
)

_URL_PATTERN = re.compile(r"^https?://")


def is_gtfs(name: str) -> Tuple[bool, bool]:
    """
    Check a resource name against the GTFS allow-list.

    Returns:
        (valid, required) flags
    """
    if name in REQUIRED_RESOURCES:
        return True, True
    return name in OPTIONAL_RESOURCES, False


def fetch_feed(location: str, timeout: int = None) -> bytes:
    """
    Retrieve the GTFS archive from a URL or a local path.

    Args:
        location: http(s) URL or filesystem path to the zip
        timeout: Download timeout in seconds (default from env)

    Returns:
        Raw archive bytes
    """
    if _URL_PATTERN.match(location):
        timeout = timeout or build_config.download_timeout
        logger.info(f"Downloading GTFS feed from {location}")
        try:
            response = requests.get(location, timeout=timeout)
        except requests.RequestException as e:
            raise AcquisitionError(f"failed to download file [{e}]") from e

        if response.status_code >= 400:
            raise AcquisitionError(f"failed to download file [HTTP {response.status_code}]")
        return response.content

    logger.info(f"Reading GTFS feed from {location}")
    try:
        return Path(location).read_bytes()
    except OSError as e:
        raise AcquisitionError(f"failed to read local file [{e}]") from e


class ZipFeedSource:
    """Named tabular resources of a GTFS zip archive."""

    def __init__(self, data: bytes):
        try:
            self._zip = zipfile.ZipFile(io.BytesIO(data))
        except zipfile.BadZipFile as e:
            raise ArchiveError(f"failed to parse zip file [{e}]") from e

    def list_resources(self) -> List[str]:
        return [info.filename for info in self._zip.infolist() if not info.is_dir()]

    def open(self, name: str) -> BinaryIO:
        try:
            return self._zip.open(name)
        except (KeyError, zipfile.BadZipFile) as e:
            raise ArchiveError(f"failed to open {name} [{e}]") from e

    def read(self, name: str) -> bytes:
        with self.open(name) as reader:
            try:
                return reader.read()
            except (zipfile.BadZipFile, OSError) as e:
                raise ArchiveError(f"failed to read {name} [{e}]") from e

    def close(self):
        self._zip.close()
