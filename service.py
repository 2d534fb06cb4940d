from __future__ import annotations

import logging
import os
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Callable, List

from forecast_cache import REFRESH_INTERVAL_SECONDS, ForecastCache
from grib_downloader import GribDownloader
from grib_reader import GribToolReader

GRIB_FILE = os.getenv("GRIB_FILE", "").strip()
STATUS_LOG_INTERVAL_SECONDS = 300
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_FILE_MAX_BYTES = 5_000_000
LOGGER = logging.getLogger("forecast_cache.service")


def _configure_logging() -> logging.Logger:
    """Attach console and rotating file handlers to the ``forecast_cache`` logger once."""
    logger = logging.getLogger("forecast_cache")
    logger.setLevel(getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO))
    if logger.handlers:
        return logger

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    log_file = os.getenv("FORECAST_CACHE_LOG_FILE", "logs/forecast_cache.log").strip()
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(log_file, maxBytes=LOG_FILE_MAX_BYTES, backupCount=3))
    for handler in handlers:
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)

    logger.propagate = False
    return logger


def build_cache() -> ForecastCache:
    return ForecastCache(GribToolReader())


def grib_file_provider(grib_file: str = GRIB_FILE) -> Callable[[], Path]:
    """A fixed local file when ``GRIB_FILE`` is set, otherwise the latest download."""
    if grib_file:
        fixed = Path(grib_file)
        return lambda: fixed
    return GribDownloader().download_latest


def main() -> None:
    _configure_logging()
    LOGGER.info("Starting forecast cache service..")
    cache = build_cache()
    cache.start_background_refresh(grib_file_provider(), REFRESH_INTERVAL_SECONDS)
    idle = threading.Event()
    try:
        while not idle.wait(STATUS_LOG_INTERVAL_SECONDS):
            LOGGER.info("Cache status %s", cache.refresh_status())
    except KeyboardInterrupt:
        LOGGER.info("Shutting down forecast cache service")
    finally:
        cache.close()


if __name__ == "__main__":
    main()
