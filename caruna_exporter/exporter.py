"""Prometheus metrics exporter module.

This module handles:
- Defining Prometheus metrics (gauges) for serve mode
- Exposing metrics HTTP server on configurable port
- Updating metrics with the latest hourly measurements and sync outcome
"""

import logging
import time
from typing import Dict, List, Optional

from prometheus_client import Gauge, start_http_server, REGISTRY, CollectorRegistry

from caruna_exporter.models import HourlyEnergyMeasurement

# Configure module logger
logger = logging.getLogger(__name__)


class CarunaExporter:
    """Prometheus exporter for Caruna sync runs.

    Exposes the following metrics:
    - caruna_hourly_kwh: Latest hourly consumption per metering point
    - caruna_last_measurement_timestamp: Unix timestamp of that hour
    - caruna_points_written: Points written to InfluxDB by the last sync
    - caruna_sync_success: Whether the last sync succeeded (1=success, 0=failure)
    - caruna_sync_timestamp: Unix timestamp of last sync
    - caruna_sync_duration_seconds: Duration of last sync

    Attributes:
        port: HTTP server port (default 9120)
    """

    def __init__(self, port: int = 9120, registry: Optional[CollectorRegistry] = None):
        """Initialize the exporter.

        Args:
            port: Port to run the HTTP server on
            registry: Optional custom registry for testing. If None, uses default REGISTRY.
        """
        self.port = port
        self._registry = registry if registry is not None else REGISTRY
        self._server_started = False

        self._hourly_kwh = Gauge(
            'caruna_hourly_kwh',
            'Electricity consumption in kWh for the latest measured hour',
            ['metering_point', 'location'],
            registry=self._registry
        )

        self._last_measurement_timestamp = Gauge(
            'caruna_last_measurement_timestamp',
            'Unix timestamp of the latest measured hour',
            ['metering_point'],
            registry=self._registry
        )

        # Operational metrics (no labels)
        self._points_written = Gauge(
            'caruna_points_written',
            'Data points written to InfluxDB by the last sync',
            registry=self._registry
        )

        self._sync_success = Gauge(
            'caruna_sync_success',
            'Whether the last sync succeeded (1=success, 0=failure)',
            registry=self._registry
        )

        self._sync_timestamp = Gauge(
            'caruna_sync_timestamp',
            'Unix timestamp of the last sync',
            registry=self._registry
        )

        self._sync_duration = Gauge(
            'caruna_sync_duration_seconds',
            'Duration of the last sync in seconds',
            registry=self._registry
        )

    def update_metrics(self, measurements: List[HourlyEnergyMeasurement]) -> None:
        """Set per metering point gauges from the newest measurement of each."""
        if not measurements:
            logger.warning("No measurements to update metrics with")
            return

        latest: Dict[str, HourlyEnergyMeasurement] = {}
        for m in measurements:
            current = latest.get(m.metering_point_id)
            if current is None or m.timestamp > current.timestamp:
                latest[m.metering_point_id] = m

        for point_id, m in latest.items():
            self._hourly_kwh.labels(
                metering_point=point_id,
                location=" ".join(m.metering_point_location),
            ).set(m.value)
            self._last_measurement_timestamp.labels(metering_point=point_id).set(m.timestamp.timestamp())

        logger.info(f"Metrics updated for {len(latest)} metering points")

    def set_points_written(self, count: int) -> None:
        self._points_written.set(count)

    def set_sync_success(self, success: bool, duration: float) -> None:
        """Update operational metrics after a sync attempt.

        Args:
            success: Whether the sync succeeded
            duration: How long the sync took in seconds
        """
        self._sync_success.set(1 if success else 0)
        self._sync_timestamp.set(time.time())
        self._sync_duration.set(duration)

    def start(self) -> None:
        """Start the HTTP server to expose metrics.

        The server runs in a daemon thread and exposes metrics at:
        http://localhost:{port}/metrics
        """
        if self._server_started:
            logger.warning("Prometheus server already started")
            return

        logger.info(f"Starting Prometheus HTTP server on port {self.port}")
        start_http_server(self.port, registry=self._registry)
        self._server_started = True
