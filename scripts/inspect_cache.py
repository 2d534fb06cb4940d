#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json

from forecast_cache import BoundingBox, ForecastCache
from grib_reader import GribToolReader


def _summary(locations) -> dict:
    times = sorted(item.time for loc in locations for item in loc.items)
    return {
        "points": len(locations),
        "items": len(times),
        "first_time": times[0].isoformat() if times else None,
        "last_time": times[-1].isoformat() if times else None,
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="Build the forecast cache once from a local GRIB file.")
    parser.add_argument("grib_file")
    parser.add_argument("--bounds", help="swLat,swLng,neLat,neLng query box")
    parser.add_argument("--start-time", help="ISO timestamp, only later items are kept")
    parser.add_argument("--workers", type=int, default=None)
    args = parser.parse_args()

    cache = ForecastCache(GribToolReader(), concurrency=args.workers)
    snapshot = cache.refresh(args.grib_file)
    bounds = snapshot.bounds
    report = {
        "grib_file": snapshot.grib_file,
        "bounds": [bounds.sw_corner.lat, bounds.sw_corner.lng, bounds.ne_corner.lat, bounds.ne_corner.lng],
        "cache": _summary(snapshot.locations),
        "status": cache.refresh_status(),
    }
    if args.bounds:
        report["query"] = _summary(cache.query(BoundingBox.from_string(args.bounds), args.start_time))
    print(json.dumps(report, indent=2))


if __name__ == "__main__":
    main()
