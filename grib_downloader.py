from __future__ import annotations

import logging
import os
import threading
import time
from datetime import datetime, timezone
from pathlib import Path

import requests

from forecast_cache import DataSourceError

GRIB_SOURCE_URL = os.getenv("GRIB_SOURCE_URL", "").strip()
GRIB_DOWNLOAD_DIR = Path(os.getenv("GRIB_DOWNLOAD_DIR", "cache/grib"))
GRIB_DOWNLOAD_RETRIES = int(os.getenv("GRIB_DOWNLOAD_RETRIES", "3"))
GRIB_DOWNLOAD_BACKOFF_SECONDS = float(os.getenv("GRIB_DOWNLOAD_BACKOFF_SECONDS", "0.4"))
GRIB_DOWNLOAD_KEEP = int(os.getenv("GRIB_DOWNLOAD_KEEP", "2"))
GRIB_DOWNLOAD_TIMEOUT_SECONDS = 120
DOWNLOAD_CHUNK_BYTES = 1 << 20
LOGGER = logging.getLogger("forecast_cache.downloader")


class GribDownloadError(DataSourceError):
    """Raised when the latest GRIB file cannot be downloaded."""


class GribDownloader:
    """Keeps a local copy of the most recently published GRIB file."""

    def __init__(
        self,
        source_url: str = GRIB_SOURCE_URL,
        download_dir: Path = GRIB_DOWNLOAD_DIR,
        retries: int = GRIB_DOWNLOAD_RETRIES,
        backoff_seconds: float = GRIB_DOWNLOAD_BACKOFF_SECONDS,
        keep: int = GRIB_DOWNLOAD_KEEP,
    ) -> None:
        if not source_url:
            raise ValueError("GRIB source URL is not configured (set GRIB_SOURCE_URL)")
        self._source_url = source_url
        self._download_dir = Path(download_dir)
        self._retries = max(1, int(retries))
        self._backoff_seconds = float(backoff_seconds)
        self._keep = max(1, int(keep))
        self._latest: Path | None = None
        self._latest_guard = threading.Lock()
        self._download_dir.mkdir(parents=True, exist_ok=True)

    @property
    def latest_grib_file(self) -> Path | None:
        with self._latest_guard:
            return self._latest

    def download_latest(self) -> Path:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
        path = self._download_dir / f"forecast_{stamp}.grb2"
        last_exc: Exception | None = None
        for attempt in range(1, self._retries + 1):
            try:
                size = self._fetch_to(path)
                break
            except (requests.RequestException, OSError, GribDownloadError) as exc:
                last_exc = exc
                LOGGER.warning("GRIB download attempt %d/%d failed: %s", attempt, self._retries, exc)
                if attempt < self._retries:
                    time.sleep(self._backoff_seconds * (2 ** (attempt - 1)))
        else:
            raise GribDownloadError(
                f"GRIB download from {self._source_url} failed after {self._retries} attempts: {last_exc}"
            ) from last_exc

        with self._latest_guard:
            self._latest = path
        LOGGER.info("Downloaded GRIB file %s (%d bytes)", path.name, size)
        self._prune_old_downloads()
        return path

    def _fetch_to(self, path: Path) -> int:
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        written = 0
        try:
            with requests.get(self._source_url, stream=True, timeout=GRIB_DOWNLOAD_TIMEOUT_SECONDS) as response:
                response.raise_for_status()
                with tmp_path.open("wb") as tmp_file:
                    for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_BYTES):
                        if chunk:
                            tmp_file.write(chunk)
                            written += len(chunk)
            if written == 0:
                raise GribDownloadError(f"Empty GRIB payload from {self._source_url}")
            os.replace(tmp_path, path)
        finally:
            tmp_path.unlink(missing_ok=True)
        return written

    def _prune_old_downloads(self) -> None:
        latest = self.latest_grib_file
        downloads = sorted(self._download_dir.glob("forecast_*.grb2"))
        for stale in downloads[: -self._keep]:
            if stale == latest:
                continue
            try:
                stale.unlink()
                LOGGER.debug("Removed old GRIB file %s", stale.name)
            except FileNotFoundError:
                continue
