"""Incremental synchronization of measurements into a time-series store.

Measurements are grouped into one series per metering point location. In
incremental mode the store is asked once per series, per run, for the
earliest and latest timestamps it already holds, and measurements falling
inside that range are not written again.

The range is inclusive on both ends: a point stamped exactly at the stored
minimum or maximum is taken to be already written, even if the stored row
was incomplete.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from caruna_exporter.models import HourlyEnergyMeasurement

# Configure module logger
logger = logging.getLogger(__name__)

SeriesPoint = Tuple[datetime, float]


class BoundaryStore(Protocol):
    """What the sync needs from a time-series store."""

    def query_boundary_timestamps(self, series_key: str) -> Optional[Tuple[datetime, datetime]]:
        """Earliest and latest stored timestamps of a series, or None if it has no data."""
        ...

    def write_batch(self, series_key: str, points: List[SeriesPoint]) -> None:
        """Write (timestamp, value) pairs to a series."""
        ...


def series_key(location: Sequence[str]) -> str:
    """Series name for a metering point location, e.g. "Street_1_00100_City"."""
    return "_".join(location).replace(" ", "_")


@dataclass(frozen=True)
class SeriesSyncRange:
    """Timestamps already present in the store for one series."""
    start: datetime
    end: datetime

    def contains(self, timestamp: datetime) -> bool:
        return self.start <= timestamp <= self.end


class IncrementalSync:
    """Writes measurements to a store, skipping ranges it already holds.

    Attributes:
        store: Target store
        incremental: Whether to query and skip existing ranges. When off,
            every measurement is written.
    """

    def __init__(self, store: BoundaryStore, incremental: bool = True):
        self.store = store
        self.incremental = incremental

    def _lookup_range(self, key: str) -> Optional[SeriesSyncRange]:
        boundary = self.store.query_boundary_timestamps(key)
        if boundary is None:
            logger.debug(f"Series {key}: no existing data")
            return None
        sync_range = SeriesSyncRange(*boundary)
        logger.info(f"Series {key}: excluding range {sync_range.start.isoformat()} - {sync_range.end.isoformat()}")
        return sync_range

    def run(self, measurements: Iterable[HourlyEnergyMeasurement]) -> int:
        """Write measurements not already covered by the store.

        Args:
            measurements: Measurements in any order; series are formed from
                their locations

        Returns:
            Number of points written
        """
        logger.info("Starting sync")

        # Both maps live for this run only
        ranges: Dict[str, Optional[SeriesSyncRange]] = {}
        batches: Dict[str, List[SeriesPoint]] = {}
        skipped = 0

        for measurement in measurements:
            key = series_key(measurement.metering_point_location)
            batch = batches.setdefault(key, [])

            if self.incremental:
                if key not in ranges:
                    ranges[key] = self._lookup_range(key)
                sync_range = ranges[key]
                if sync_range is not None and sync_range.contains(measurement.timestamp):
                    skipped += 1
                    continue

            batch.append((measurement.timestamp, measurement.value))

        count = 0
        for key, batch in batches.items():
            if not batch:
                logger.debug(f"Series {key}: nothing new to write")
                continue
            self.store.write_batch(key, batch)
            count += len(batch)

        logger.info(f"Wrote {count} data points, skipped {skipped} already stored")
        return count
