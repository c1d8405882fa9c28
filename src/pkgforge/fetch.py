"""Downloads from http(s)/file URLs and copies of local files."""

import os
from pathlib import Path
import shutil
from urllib.error import URLError
from urllib.parse import urlparse
from urllib.request import urlopen

from pyvider.telemetry import logger

from .exceptions import FetchError

CHUNK_SIZE = 1024 * 1024


def is_remote(location: str) -> bool:
    return urlparse(location).scheme in ("http", "https", "file")


class Fetcher:
    """Writes the content of one location to a destination file, atomically."""

    def __init__(self, timeout: float = 300.0):
        self.timeout = timeout

    def fetch(self, location: str, dest: Path) -> Path:
        dest.parent.mkdir(parents=True, exist_ok=True)
        temp_path = dest.with_name(f".{dest.name}.part")
        logger.info("Fetching", location=location, dest=str(dest))
        try:
            if is_remote(location):
                with urlopen(location, timeout=self.timeout) as response, temp_path.open("wb") as out:  # noqa: S310 - callers verify content
                    shutil.copyfileobj(response, out, CHUNK_SIZE)
            else:
                shutil.copyfile(Path(location).expanduser(), temp_path)
        except (URLError, OSError) as e:
            temp_path.unlink(missing_ok=True)
            raise FetchError(f"Failed to fetch '{location}': {e}", stderr=str(e)) from e
        os.replace(temp_path, dest)
        return dest
