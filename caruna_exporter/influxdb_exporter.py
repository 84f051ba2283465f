"""InfluxDB exporter module.

This module handles:
- Looking up the stored time range of a consumption series
- Writing hourly readings to InfluxDB with their actual timestamps
"""

import logging
from datetime import datetime
from typing import List, Optional, Tuple

from influxdb_client import InfluxDBClient, Point, WritePrecision
from influxdb_client.client.write_api import SYNCHRONOUS

from caruna_exporter.exceptions import StoreError
from caruna_exporter.sync import SeriesPoint

# Configure module logger
logger = logging.getLogger(__name__)


def _flux_string(value: str) -> str:
    """Quote a value as a Flux string literal."""
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


class InfluxDBExporter:
    """InfluxDB store for Caruna consumption data.

    Each series is one metering point location, stored as:
    - measurement: caruna_electricity
    - tag: series (location key, e.g. Street_1_00100_City)
    - field: kwh

    Attributes:
        url: InfluxDB server URL
        token: InfluxDB API token
        org: InfluxDB organization
        bucket: InfluxDB bucket name
    """

    MEASUREMENT = "caruna_electricity"
    SERIES_TAG = "series"
    FIELD = "kwh"

    def __init__(
        self,
        url: str = "http://localhost:8086",
        token: str = "",
        org: str = "caruna",
        bucket: str = "electricity",
    ):
        self.url = url
        self.token = token
        self.org = org
        self.bucket = bucket
        self._client: Optional[InfluxDBClient] = None
        self._write_api = None
        self._query_api = None

    def connect(self) -> bool:
        """Connect to InfluxDB.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            self._client = InfluxDBClient(
                url=self.url,
                token=self.token,
                org=self.org
            )
            self._write_api = self._client.write_api(write_options=SYNCHRONOUS)
            self._query_api = self._client.query_api()

            # Test connection by pinging
            health = self._client.health()
            if health.status == "pass":
                logger.info(f"Connected to InfluxDB at {self.url}")
                return True
            else:
                logger.error(f"InfluxDB health check failed: {health.message}")
                return False
        except Exception as e:
            logger.error(f"Failed to connect to InfluxDB: {e}")
            return False

    def close(self) -> None:
        """Close the InfluxDB connection."""
        if self._client:
            self._client.close()
            self._client = None
            self._write_api = None
            self._query_api = None
            logger.info("InfluxDB connection closed")

    def _require_connection(self) -> None:
        if not self._write_api or not self._query_api:
            raise RuntimeError("Not connected to InfluxDB. Call connect() first.")

    def query_boundary_timestamps(self, series_key: str) -> Optional[Tuple[datetime, datetime]]:
        """Get the earliest and latest stored timestamps of a series.

        Args:
            series_key: Series tag value

        Returns:
            (earliest, latest), or None if the series has no data

        Raises:
            StoreError: If the query fails
        """
        self._require_connection()

        query = f'''
        from(bucket: {_flux_string(self.bucket)})
            |> range(start: 0)
            |> filter(fn: (r) => r["_measurement"] == {_flux_string(self.MEASUREMENT)})
            |> filter(fn: (r) => r[{_flux_string(self.SERIES_TAG)}] == {_flux_string(series_key)})
            |> filter(fn: (r) => r["_field"] == {_flux_string(self.FIELD)})
            |> group()
            |> reduce(
                fn: (r, accumulator) => ({{
                    min_time: if r._time < accumulator.min_time then r._time else accumulator.min_time,
                    max_time: if r._time > accumulator.max_time then r._time else accumulator.max_time
                }}),
                identity: {{min_time: 2100-01-01T00:00:00Z, max_time: 1970-01-01T00:00:00Z}}
            )
        '''

        try:
            tables = self._query_api.query(query, org=self.org)
        except Exception as e:
            logger.error(f"Error querying range of series {series_key}: {e}")
            raise StoreError(f"Cannot query range of series {series_key}: {e}") from e

        for table in tables:
            for record in table.records:
                min_time = record.values.get("min_time")
                max_time = record.values.get("max_time")
                if min_time and max_time:
                    return (min_time, max_time)

        return None

    def write_batch(self, series_key: str, points: List[SeriesPoint]) -> None:
        """Write (timestamp, kWh) pairs to a series in one request.

        Raises:
            StoreError: If the write fails
        """
        self._require_connection()

        if not points:
            return

        records: List[Point] = [
            Point(self.MEASUREMENT)
            .tag(self.SERIES_TAG, series_key)
            .field(self.FIELD, float(value))
            .time(int(timestamp.timestamp()), WritePrecision.S)
            for timestamp, value in points
        ]

        try:
            self._write_api.write(bucket=self.bucket, org=self.org, record=records)
            logger.info(f"Wrote {len(records)} readings to InfluxDB series {series_key}")
        except Exception as e:
            logger.error(f"Failed to write to InfluxDB: {e}")
            raise StoreError(f"Cannot write series {series_key}: {e}") from e
