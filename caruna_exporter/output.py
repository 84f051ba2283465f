"""Text and JSON rendering of results."""

import json
from dataclasses import asdict
from datetime import datetime
from typing import Any, Optional, TextIO

from caruna_exporter.models import MeasurementList, MeteringPointList, Result


def _print_text_metering_points(result: MeteringPointList, stream: TextIO) -> None:
    for i, point in enumerate(result.points):
        if i != 0:
            print(file=stream)
        print(f"Metering point {i}:", file=stream)
        print(f"{'Location:':<20}{point.location_str}", file=stream)
        print(f"{'Id:':<20}{point.metering_point_number}", file=stream)
        print(f"{'Type:':<20}{point.metering_point_type}", file=stream)
        print(f"{'Hourly measured:':<20}{str(point.hourly_measured).lower()}", file=stream)
        print(f"{'Contract begin:':<20}{point.created}", file=stream)


def _print_text_measurements(result: MeasurementList, stream: TextIO) -> None:
    rows = [(
        m.timestamp.isoformat(),
        " ".join(m.metering_point_location),
        f"{m.value:f}",
    ) for m in result.measurements]
    total = sum(m.value for m in result.measurements)

    ts_width = max([len("Ts")] + [len(r[0]) for r in rows]) + 2
    loc_width = max([len("Loc")] + [len(r[1]) for r in rows]) + 2

    print(f"{'Ts':<{ts_width}}{'Loc':<{loc_width}}KWh", file=stream)
    for ts, loc, kwh in rows:
        print(f"{ts:<{ts_width}}{loc:<{loc_width}}{kwh}", file=stream)
    print(f"{'':<{ts_width}}{'':<{loc_width}}Sum: {total:f}", file=stream)


def print_text_output(result: Result, stream: Optional[TextIO] = None) -> None:
    """Print a result as human readable text to ``stream`` (default: stdout)."""
    if isinstance(result, MeteringPointList):
        _print_text_metering_points(result, stream)
    elif isinstance(result, MeasurementList):
        _print_text_measurements(result, stream)
    else:
        raise TypeError(f"Unsupported result type: {type(result).__name__}")


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def print_json_output(result: Result, stream: Optional[TextIO] = None) -> None:
    """Print a result as an indented JSON array."""
    if isinstance(result, MeteringPointList):
        payload = [asdict(p) for p in result.points]
    elif isinstance(result, MeasurementList):
        payload = [asdict(m) for m in result.measurements]
    else:
        raise TypeError(f"Unsupported result type: {type(result).__name__}")
    print(json.dumps(payload, indent=4, default=_json_default), file=stream)
