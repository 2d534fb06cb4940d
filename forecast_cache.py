from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
import logging
import math
import os
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Mapping, Sequence, Tuple

import numpy as np

LAT_GRID_INCREMENT = 0.2
LNG_GRID_INCREMENT = 0.5
REFRESH_INTERVAL_SECONDS = float(os.getenv("FORECAST_REFRESH_INTERVAL_SECONDS", "3600"))
EXTRACT_WORKERS = max(1, int(os.getenv("FORECAST_EXTRACT_WORKERS", str(os.cpu_count() or 1))))
BOUNDS_KEYS = (
    "latitudeOfFirstGridPointInDegrees",
    "longitudeOfFirstGridPointInDegrees",
    "latitudeOfLastGridPointInDegrees",
    "longitudeOfLastGridPointInDegrees",
)
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
EDGE_TOLERANCE_DEG = 1e-9
LOGGER = logging.getLogger("forecast_cache.cache")


class ForecastCacheError(RuntimeError):
    """Base class for forecast cache failures."""


class DataSourceError(ForecastCacheError):
    """Raised when the external GRIB tooling fails or returns unparseable output."""


class InvalidBoundsError(ForecastCacheError, ValueError):
    """Raised when a bounding box is malformed."""


@dataclass(frozen=True)
class Coordinate:
    lat: float
    lng: float


# Lattice-aligned sample coordinate produced by generate_locations().
GridPoint = Coordinate


@dataclass(frozen=True)
class BoundingBox:
    sw_corner: Coordinate
    ne_corner: Coordinate

    @classmethod
    def from_string(cls, raw: str) -> BoundingBox:
        """Parse ``"swLat,swLng,neLat,neLng"`` as sent by HTTP clients."""
        parts = [p.strip() for p in str(raw or "").strip().split(",")]
        if len(parts) != 4:
            raise InvalidBoundsError(f"Expected 4 comma separated coordinates, got {raw!r}")
        try:
            sw_lat, sw_lng, ne_lat, ne_lng = (float(p) for p in parts)
        except ValueError as exc:
            raise InvalidBoundsError(f"Non-numeric bounds: {raw!r}") from exc
        bounds = cls(Coordinate(sw_lat, sw_lng), Coordinate(ne_lat, ne_lng))
        bounds.validate()
        return bounds

    def validate(self) -> None:
        coords = (self.sw_corner.lat, self.sw_corner.lng, self.ne_corner.lat, self.ne_corner.lng)
        if not all(math.isfinite(v) for v in coords):
            raise InvalidBoundsError(f"Bounds contain non-finite coordinates: {self}")
        if self.sw_corner.lat > self.ne_corner.lat:
            raise InvalidBoundsError(
                f"South-west latitude {self.sw_corner.lat} is north of north-east latitude {self.ne_corner.lat}"
            )
        if self.sw_corner.lng > self.ne_corner.lng:
            # Boxes crossing the antimeridian are not supported.
            raise InvalidBoundsError(
                f"South-west longitude {self.sw_corner.lng} is east of north-east longitude {self.ne_corner.lng}"
            )

    def corners(self) -> Tuple[Coordinate, Coordinate, Coordinate, Coordinate]:
        sw, ne = self.sw_corner, self.ne_corner
        return (
            Coordinate(sw.lat, sw.lng),
            Coordinate(ne.lat, sw.lng),
            Coordinate(ne.lat, ne.lng),
            Coordinate(sw.lat, ne.lng),
        )


@dataclass(frozen=True)
class ForecastItem:
    time: datetime
    values: Mapping[str, float]

    def __post_init__(self) -> None:
        # Items are shared between a snapshot and query results; keep the payload read-only.
        if not isinstance(self.values, MappingProxyType):
            object.__setattr__(self, "values", MappingProxyType(dict(self.values)))


@dataclass(frozen=True)
class ForecastLocation:
    lat: float
    lng: float
    items: Tuple[ForecastItem, ...] = ()


@dataclass(frozen=True)
class ForecastSnapshot:
    """One fully built generation of the cache. Never mutated after publication."""

    locations: Tuple[ForecastLocation, ...] = ()
    grib_file: str | None = None
    bounds: BoundingBox | None = None
    created_at: datetime | None = None
    lats: np.ndarray = field(init=False, repr=False, compare=False)
    lngs: np.ndarray = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "locations", tuple(self.locations))
        lats = np.array([loc.lat for loc in self.locations], dtype=np.float64)
        lngs = np.array([loc.lng for loc in self.locations], dtype=np.float64)
        lats.setflags(write=False)
        lngs.setflags(write=False)
        object.__setattr__(self, "lats", lats)
        object.__setattr__(self, "lngs", lngs)

    def __len__(self) -> int:
        return len(self.locations)


EMPTY_SNAPSHOT = ForecastSnapshot()


def _round_1_decimal(values: np.ndarray) -> np.ndarray:
    # Half away from zero; np.round would round half to even. "+ 0.0" drops negative zeros.
    return np.sign(values) * np.floor(np.abs(values) * 10.0 + 0.5) / 10.0 + 0.0


def _axis(start: float, stop: float, step: float) -> np.ndarray:
    if not (math.isfinite(start) and math.isfinite(stop) and math.isfinite(step)) or step <= 0:
        return np.empty(0, dtype=np.float64)
    return _round_1_decimal(np.arange(start, stop, step, dtype=np.float64))


def generate_locations(bounds: BoundingBox, lat_step: float, lng_step: float) -> List[GridPoint]:
    """Lattice of sample points over ``bounds``, upper edges excluded.

    Latitudes vary slowest: every longitude of the first latitude comes first.
    """
    lats = _axis(bounds.sw_corner.lat, bounds.ne_corner.lat, lat_step)
    lngs = _axis(bounds.sw_corner.lng, bounds.ne_corner.lng, lng_step)
    return [GridPoint(float(lat), float(lng)) for lat in lats for lng in lngs]


def extract_bounds(source, grib_file: str) -> BoundingBox:
    """Read the spatial extent of ``grib_file`` through ``source.metadata()``."""
    try:
        output = source.metadata(grib_file, BOUNDS_KEYS)
    except DataSourceError:
        raise
    except Exception as exc:
        raise DataSourceError(f"Bounds query failed for {grib_file}: {exc}") from exc

    lines = str(output or "").splitlines()
    tokens = lines[0].split() if lines else []
    if len(tokens) < len(BOUNDS_KEYS):
        raise DataSourceError(
            f"Expected {len(BOUNDS_KEYS)} bounds values for {grib_file}, got {len(tokens)}: {lines[:1]}"
        )
    try:
        coords = [float(token) for token in tokens]
    except ValueError as exc:
        raise DataSourceError(f"Unparseable bounds output for {grib_file}: {lines[0]!r}") from exc
    if not all(math.isfinite(v) for v in coords):
        raise DataSourceError(f"Non-finite bounds output for {grib_file}: {lines[0]!r}")

    lat_first, lng_first, lat_last, lng_last = coords[: len(BOUNDS_KEYS)]
    return BoundingBox(Coordinate(lat_first, lng_first), Coordinate(lat_last, lng_last))


def extract_forecasts(
    source,
    locations: Sequence[GridPoint],
    grib_file: str,
    concurrency: int | None = None,
) -> List[ForecastLocation]:
    """Fetch the forecast series of every location, at most ``concurrency`` calls in flight.

    The result is index-aligned with ``locations``. A single failed extraction
    fails the whole call with DataSourceError. Calls already in flight run to
    completion; queued calls that have not started are dropped.
    """
    points = list(locations)
    if not points:
        return []
    workers = max(1, int(concurrency or EXTRACT_WORKERS))

    def _extract(location: GridPoint) -> ForecastLocation:
        try:
            items = source.point_forecast(grib_file, location.lat, location.lng)
        except DataSourceError:
            raise
        except Exception as exc:
            raise DataSourceError(
                f"Point forecast failed for {grib_file} lat={location.lat} lng={location.lng}: {exc}"
            ) from exc
        return ForecastLocation(lat=location.lat, lng=location.lng, items=tuple(items))

    with ThreadPoolExecutor(max_workers=min(workers, len(points)), thread_name_prefix="point-extract") as executor:
        return list(executor.map(_extract, points))


def _as_utc(value) -> datetime:
    if value is None:
        return EPOCH
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    text = str(value).strip()
    if not text:
        return EPOCH
    return _as_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))


def points_in_polygon(lats: np.ndarray, lngs: np.ndarray, polygon: Sequence[Coordinate]) -> np.ndarray:
    """Planar even-odd containment test; points on an edge or vertex count as inside."""
    lats = np.asarray(lats, dtype=np.float64)
    lngs = np.asarray(lngs, dtype=np.float64)
    inside = np.zeros(lats.shape, dtype=bool)
    on_edge = np.zeros(lats.shape, dtype=bool)
    count = len(polygon)
    for i in range(count):
        a = polygon[i]
        b = polygon[(i + 1) % count]
        cross = (b.lng - a.lng) * (lats - a.lat) - (b.lat - a.lat) * (lngs - a.lng)
        in_span = (
            (lngs >= min(a.lng, b.lng) - EDGE_TOLERANCE_DEG)
            & (lngs <= max(a.lng, b.lng) + EDGE_TOLERANCE_DEG)
            & (lats >= min(a.lat, b.lat) - EDGE_TOLERANCE_DEG)
            & (lats <= max(a.lat, b.lat) + EDGE_TOLERANCE_DEG)
        )
        on_edge |= in_span & (np.abs(cross) <= EDGE_TOLERANCE_DEG)

        if a.lat == b.lat:
            continue
        straddles = (a.lat > lats) != (b.lat > lats)
        crossing_lng = a.lng + (lats - a.lat) * (b.lng - a.lng) / (b.lat - a.lat)
        inside ^= straddles & (lngs < crossing_lng)
    return inside | on_edge


def _start_bound(start_time) -> datetime | None:
    """Lower time bound of a query, or None when ``start_time`` cannot be parsed."""
    try:
        return _as_utc(start_time)
    except (ValueError, TypeError, OverflowError, OSError) as exc:
        LOGGER.warning("Unparseable start time %r: %s", start_time, exc)
        return None


def _items_after(items: Iterable[ForecastItem], start: datetime | None) -> Tuple[ForecastItem, ...]:
    # Nothing is "after" an invalid start time.
    if start is None:
        return ()
    return tuple(item for item in items if _as_utc(item.time) > start)


def query_snapshot(snapshot: ForecastSnapshot, query_box: BoundingBox, start_time=None) -> List[ForecastLocation]:
    """Locations of ``snapshot`` inside ``query_box`` with items strictly after ``start_time``.

    Returns new location containers; ``snapshot`` is left untouched. Duplicate
    timestamps are kept as they are. An unparseable ``start_time`` never raises:
    the selected locations come back with no items.
    """
    try:
        query_box.validate()
    except InvalidBoundsError as exc:
        LOGGER.debug("Rejected query bounds: %s", exc)
        return []
    if not snapshot.locations:
        return []

    start = _start_bound(start_time)
    selected = points_in_polygon(snapshot.lats, snapshot.lngs, query_box.corners())
    return [
        ForecastLocation(lat=loc.lat, lng=loc.lng, items=_items_after(loc.items, start))
        for loc, hit in zip(snapshot.locations, selected)
        if hit
    ]


class SnapshotHolder:
    """Single owner of the currently visible snapshot.

    Readers call get() without locking; publish() swaps the whole reference.
    """

    def __init__(self, snapshot: ForecastSnapshot = EMPTY_SNAPSHOT) -> None:
        self._snapshot = snapshot
        self._publish_guard = threading.Lock()

    def get(self) -> ForecastSnapshot:
        return self._snapshot

    def publish(self, snapshot: ForecastSnapshot) -> ForecastSnapshot:
        with self._publish_guard:
            previous = self._snapshot
            self._snapshot = snapshot
        return previous


class ForecastCache:
    """Gridded point-forecast cache rebuilt from GRIB files.

    ``source`` must provide ``metadata(grib_file, keys) -> str`` and
    ``point_forecast(grib_file, lat, lng) -> list[ForecastItem]``; see
    grib_reader.GribToolReader.
    """

    def __init__(
        self,
        source,
        lat_step: float = LAT_GRID_INCREMENT,
        lng_step: float = LNG_GRID_INCREMENT,
        concurrency: int | None = None,
    ) -> None:
        self._source = source
        self._lat_step = float(lat_step)
        self._lng_step = float(lng_step)
        self._concurrency = max(1, int(concurrency or EXTRACT_WORKERS))
        self._holder = SnapshotHolder()

        self._refresh_guard = threading.Lock()
        self._status_guard = threading.Lock()
        self._refreshing = False
        self._last_refreshed_at: datetime | None = None
        self._last_error: str | None = None
        self._refresh_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="cache-refresh")

        self._background_guard = threading.Lock()
        self._background_stop = threading.Event()
        self._background_thread: threading.Thread | None = None

    @property
    def snapshot(self) -> ForecastSnapshot:
        return self._holder.get()

    def refresh(self, grib_file) -> ForecastSnapshot:
        """Rebuild the cache from ``grib_file`` and publish it.

        On failure the previously published snapshot stays live and the error
        propagates to the caller.
        """
        grib_file = str(grib_file)
        with self._refresh_guard:
            started = time.monotonic()
            LOGGER.info("Refreshing forecast cache..")
            with self._status_guard:
                self._refreshing = True
            try:
                bounds = extract_bounds(self._source, grib_file)
                locations = generate_locations(bounds, self._lat_step, self._lng_step)
                LOGGER.debug("Extracting %d grid points from %s with %d workers", len(locations), grib_file, self._concurrency)
                forecasts = extract_forecasts(self._source, locations, grib_file, self._concurrency)
                snapshot = ForecastSnapshot(
                    locations=tuple(forecasts),
                    grib_file=grib_file,
                    bounds=bounds,
                    created_at=datetime.now(timezone.utc),
                )
                self._holder.publish(snapshot)
            except Exception as exc:
                with self._status_guard:
                    self._last_error = f"{type(exc).__name__}: {exc}"
                LOGGER.warning("Forecast cache refresh failed grib_file=%s: %s", grib_file, exc)
                raise
            finally:
                with self._status_guard:
                    self._refreshing = False

            with self._status_guard:
                self._last_refreshed_at = snapshot.created_at
                self._last_error = None
            elapsed_ms = int((time.monotonic() - started) * 1000)
            LOGGER.info("Forecast cache refreshed in %dms. Contains %d points.", elapsed_ms, len(snapshot))
            return snapshot

    def queue_refresh(self, grib_file) -> Future:
        return self._refresh_executor.submit(self.refresh, grib_file)

    def refresh_status(self) -> Dict[str, object]:
        with self._status_guard:
            refreshing = self._refreshing
            last = self._last_refreshed_at
            last_error = self._last_error
        return {
            "refreshing": refreshing,
            "last_refreshed_at": last.isoformat() if last else None,
            "last_error": last_error,
            "points": len(self.snapshot),
        }

    def query(self, query_box: BoundingBox, start_time=None) -> List[ForecastLocation]:
        return query_snapshot(self._holder.get(), query_box, start_time)

    def area_forecast(self, start_time=None) -> List[ForecastLocation]:
        start = _start_bound(start_time)
        return [
            ForecastLocation(lat=loc.lat, lng=loc.lng, items=_items_after(loc.items, start))
            for loc in self._holder.get().locations
        ]

    def point_forecast(self, lat: float, lng: float, start_time=None) -> ForecastLocation:
        grib_file = self._holder.get().grib_file
        if grib_file is None:
            raise DataSourceError("No GRIB file has been refreshed yet")
        try:
            items = self._source.point_forecast(grib_file, float(lat), float(lng))
        except DataSourceError:
            raise
        except Exception as exc:
            raise DataSourceError(f"Point forecast failed for {grib_file} lat={lat} lng={lng}: {exc}") from exc
        return ForecastLocation(lat=float(lat), lng=float(lng), items=_items_after(items, _start_bound(start_time)))

    def start_background_refresh(
        self,
        grib_file_provider: Callable[[], object],
        interval_seconds: float = REFRESH_INTERVAL_SECONDS,
    ) -> None:
        with self._background_guard:
            if self._background_thread is not None:
                return
            # Each loop owns its stop event so a restart cannot revive a stopping loop.
            self._background_stop = threading.Event()
            self._background_thread = threading.Thread(
                target=self._background_loop,
                args=(grib_file_provider, max(1.0, float(interval_seconds)), self._background_stop),
                name="cache-refresh-loop",
                daemon=True,
            )
            self._background_thread.start()
            LOGGER.info("Started background refresh every %.0fs", interval_seconds)

    def stop_background_refresh(self) -> threading.Thread | None:
        """Signal the background loop to exit after its current refresh.

        Returns the stopping thread so callers can join it.
        """
        with self._background_guard:
            thread = self._background_thread
            self._background_stop.set()
            self._background_thread = None
        if thread is not None:
            LOGGER.info("Stopped background refresh")
        return thread

    def close(self) -> None:
        self.stop_background_refresh()
        self._refresh_executor.shutdown(wait=False, cancel_futures=False)

    def _background_loop(
        self,
        grib_file_provider: Callable[[], object],
        interval_seconds: float,
        stop: threading.Event,
    ) -> None:
        while not stop.is_set():
            try:
                self.refresh(grib_file_provider())
            except Exception:
                LOGGER.exception("Background forecast cache refresh failed")
            stop.wait(interval_seconds)
