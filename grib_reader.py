from __future__ import annotations

import logging
import math
import os
import subprocess
from datetime import datetime, timezone
from typing import Dict, List, Sequence

from forecast_cache import DataSourceError, ForecastItem

GRIB_GET_BINARY = os.getenv("GRIB_GET_BINARY", "grib_get").strip() or "grib_get"
GRIB_GET_TIMEOUT_SECONDS = float(os.getenv("GRIB_GET_TIMEOUT_SECONDS", "60"))
POINT_KEYS = ("validityDate", "validityTime", "shortName")
GRIB_MISSING_VALUE = 9999.0
LOGGER = logging.getLogger("forecast_cache.grib_reader")


class GribToolReader:
    """Data source backed by the ecCodes ``grib_get`` command line tool."""

    def __init__(self, binary: str = GRIB_GET_BINARY, timeout_seconds: float = GRIB_GET_TIMEOUT_SECONDS) -> None:
        self._binary = binary
        self._timeout_seconds = timeout_seconds

    def metadata(self, grib_file: str, keys: Sequence[str]) -> str:
        return self._run(["-p", ",".join(keys), str(grib_file)])

    def point_forecast(self, grib_file: str, lat: float, lng: float) -> List[ForecastItem]:
        output = self._run(["-l", f"{lat},{lng},1", "-p", ",".join(POINT_KEYS), str(grib_file)])
        return parse_point_output(output)

    def _run(self, args: List[str]) -> str:
        command = [self._binary, *args]
        try:
            completed = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self._timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise DataSourceError(f"{self._binary} timed out after {self._timeout_seconds}s: {args}") from exc
        except OSError as exc:
            raise DataSourceError(f"Failed to run {self._binary}: {exc}") from exc

        if completed.returncode != 0:
            stderr = (completed.stderr or "").strip()
            raise DataSourceError(f"{self._binary} exited with status {completed.returncode}: {stderr}")
        LOGGER.debug("%s %s -> %d bytes", self._binary, " ".join(args), len(completed.stdout or ""))
        return completed.stdout or ""


def _parse_value(token: str) -> float:
    try:
        value = float(token)
    except ValueError:
        return math.nan
    if not math.isfinite(value) or value == GRIB_MISSING_VALUE:
        return math.nan
    return value


def _parse_validity(date_token: str, time_token: str) -> datetime:
    # validityTime is HHMM without leading zeros, e.g. "0" or "600".
    return datetime.strptime(f"{date_token}{time_token.zfill(4)}", "%Y%m%d%H%M").replace(tzinfo=timezone.utc)


def parse_point_output(output: str) -> List[ForecastItem]:
    """Group ``grib_get -l`` nearest-point lines into one item per validity time.

    Each line is ``<validityDate> <validityTime> <shortName> <value>``. When a
    parameter repeats for the same time the last message wins.
    """
    by_time: Dict[datetime, Dict[str, float]] = {}
    for line in output.splitlines():
        tokens = line.split()
        if not tokens:
            continue
        if len(tokens) < 4:
            raise DataSourceError(f"Unexpected grib_get point output line: {line!r}")
        try:
            valid_at = _parse_validity(tokens[0], tokens[1])
        except ValueError as exc:
            raise DataSourceError(f"Unparseable validity time in line: {line!r}") from exc
        by_time.setdefault(valid_at, {})[tokens[2]] = _parse_value(tokens[-1])
    return [ForecastItem(time=valid_at, values=values) for valid_at, values in sorted(by_time.items())]
