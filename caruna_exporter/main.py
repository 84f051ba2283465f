"""Main entry point for the Caruna exporter.

This module handles:
- Loading configuration from command line flags, environment variables and .env
- One-shot runs: list metering points or fetch a series, render as text/JSON
  or sync it to InfluxDB
- Serve mode: scheduling periodic incremental syncs with APScheduler and
  exposing operational metrics to Prometheus
"""

import argparse
import logging
import os
import sys
import time
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from dotenv import load_dotenv

from caruna_exporter import __version__
from caruna_exporter.exceptions import CarunaError, ConfigError
from caruna_exporter.exporter import CarunaExporter
from caruna_exporter.influxdb_exporter import InfluxDBExporter
from caruna_exporter.models import MeasurementList, MeteringPointList, Result
from caruna_exporter.output import print_json_output, print_text_output
from caruna_exporter.scraper import CarunaScraper
from caruna_exporter.sync import IncrementalSync

# Configure module logger
logger = logging.getLogger(__name__)

# Flags not given on the command line are read from CARUNA_<FLAG>
ENV_PREFIX = "CARUNA_"

MODES = ("location", "series")
OUTPUTS = ("text", "json", "influxdb")

# Global exporter instances (shared across scheduled sync runs)
prometheus_exporter: Optional[CarunaExporter] = None
influxdb_exporter: Optional[InfluxDBExporter] = None

# Configuration, filled by load_config()
config = {
    "mode": "location",
    "output": "text",
    "location": "",
    "start": None,
    "stop": None,
    "rstart": 48,
    "url": CarunaScraper.AUTH_URL,
    "username": "",
    "password": "",
    "all_points": False,
    "debug": False,
    "serve": False,
    "scrape_hour": 4,
    "exporter_port": 9120,
    # InfluxDB config
    "influxdb_url": "http://localhost:8086",
    "influxdb_token": "",
    "influxdb_org": "caruna",
    "influxdb_bucket": "electricity",
    "influxdb_incremental": True,
}

DEFAULTS = dict(config)


def build_parser() -> argparse.ArgumentParser:
    """Command line flags. Every default is None so unset flags can fall back to the environment."""
    parser = argparse.ArgumentParser(
        prog="caruna-exporter",
        description="Fetch hourly electricity consumption from the Caruna portal.",
        epilog=f"Any flag not given falls back to the {ENV_PREFIX}<FLAG> environment variable, "
               f"e.g. --influxdb-token to {ENV_PREFIX}INFLUXDB_TOKEN.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--mode", choices=MODES, help="Mode of operation (default: location)")
    parser.add_argument("--output", choices=OUTPUTS, help="Output mode (default: text)")
    parser.add_argument("--location", help="Metering point id or part of its address, for series mode")
    parser.add_argument("--start", help="Start time in ISO 8601 format")
    parser.add_argument("--stop", help="Stop time in ISO 8601 format (default: now)")
    parser.add_argument("--rstart", type=int, help="Start this many hours before stop when --start is not given (default: 48)")
    parser.add_argument("--url", help="Caruna login entry URL")
    parser.add_argument("--username", help="Caruna username")
    parser.add_argument("--password", help="Caruna password")
    parser.add_argument("--all-points", action="store_true", default=None,
                        help="In location mode, also list points without hourly measurements")
    parser.add_argument("--debug", action="store_true", default=None, help="Enable debug logging")
    parser.add_argument("--serve", action="store_true", default=None,
                        help="Run a daily incremental sync of the last --rstart hours to InfluxDB and "
                             "expose Prometheus metrics; cannot be combined with --mode, --output, "
                             "--start or --stop")
    parser.add_argument("--scrape-hour", type=int, help="Hour of the daily sync in serve mode (default: 4)")
    parser.add_argument("--exporter-port", type=int, help="Prometheus port in serve mode (default: 9120)")
    parser.add_argument("--influxdb-url", help="InfluxDB server URL (default: http://localhost:8086)")
    parser.add_argument("--influxdb-token", help="InfluxDB API token")
    parser.add_argument("--influxdb-org", help="InfluxDB organization (default: caruna)")
    parser.add_argument("--influxdb-bucket", help="InfluxDB bucket (default: electricity)")
    parser.add_argument("--influxdb-incremental", action=argparse.BooleanOptionalAction, default=None,
                        help="Skip time ranges already stored in InfluxDB (default: on)")
    return parser


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {value!r}")


def parse_time(value: str) -> datetime:
    """Parse an ISO 8601 timestamp. Naive values are local time."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return parsed if parsed.tzinfo is not None else parsed.astimezone()


def _merge_env(args: argparse.Namespace, name: str, convert: Callable = str):
    value = getattr(args, name)
    if value is not None:
        return value

    key = ENV_PREFIX + name.upper()
    raw = os.getenv(key, "")
    if raw == "":
        return DEFAULTS[name]
    try:
        return convert(raw)
    except ValueError as e:
        raise ConfigError(f"Invalid {key}: {e}") from e


def load_config(argv: Optional[List[str]] = None) -> bool:
    """Load configuration from flags, falling back to environment variables.

    Required:
        --username / CARUNA_USERNAME: Portal username
        --password / CARUNA_PASSWORD: Portal password
        --influxdb-token / CARUNA_INFLUXDB_TOKEN: With --output influxdb or --serve

    Returns:
        True if all required config loaded, False otherwise
    """
    args = build_parser().parse_args(argv)

    try:
        for name in ("mode", "output", "location", "start", "stop", "url", "username", "password",
                     "influxdb_url", "influxdb_token", "influxdb_org", "influxdb_bucket"):
            config[name] = _merge_env(args, name)
        for name in ("rstart", "scrape_hour", "exporter_port"):
            config[name] = _merge_env(args, name, int)
        for name in ("all_points", "debug", "serve", "influxdb_incremental"):
            config[name] = _merge_env(args, name, _parse_bool)
        validate_config()
    except ConfigError as e:
        logger.error(f"Configuration failed: {e}")
        return False

    logger.info(f"Configuration loaded: mode={config['mode']}, output={config['output']}, "
                f"range={config['start'].isoformat()} - {config['stop'].isoformat()}")
    return True


def validate_config() -> None:
    """Check and normalize the loaded configuration.

    Raises:
        ConfigError: On missing or inconsistent settings
    """
    if config["mode"] not in MODES:
        raise ConfigError(f"Unknown operating mode: {config['mode']}")
    if config["output"] not in OUTPUTS:
        raise ConfigError(f"Unknown output mode: {config['output']}")

    if config["serve"]:
        one_shot = [name for name in ("mode", "output", "start", "stop") if config[name] != DEFAULTS[name]]
        if one_shot:
            flags = ", ".join(f"--{name}" for name in one_shot)
            raise ConfigError(f"{flags} cannot be combined with --serve")

    try:
        stop = parse_time(config["stop"]) if config["stop"] else datetime.now().astimezone()
    except ValueError as e:
        raise ConfigError(f"Cannot parse stop time: {e}") from e
    try:
        start = parse_time(config["start"]) if config["start"] else stop - timedelta(hours=config["rstart"])
    except ValueError as e:
        raise ConfigError(f"Cannot parse start time: {e}") from e
    config["start"], config["stop"] = start, stop

    missing = []
    if not config["username"]:
        missing.append(f"{ENV_PREFIX}USERNAME")
    if not config["password"]:
        missing.append(f"{ENV_PREFIX}PASSWORD")
    if (config["serve"] or config["output"] == "influxdb") and not config["influxdb_token"]:
        missing.append(f"{ENV_PREFIX}INFLUXDB_TOKEN")
    if missing:
        raise ConfigError(f"Missing required settings: {', '.join(missing)}")

    if config["output"] == "influxdb" and config["mode"] != "series":
        raise ConfigError("InfluxDB output requires series mode")


def fetch_result(scraper: CarunaScraper) -> Result:
    """Run the configured operation against a logged-in scraper."""
    if config["mode"] == "location":
        return MeteringPointList(scraper.list_metering_points(hourly_only=not config["all_points"]))
    return MeasurementList(scraper.get_hourly_series(config["location"], config["start"], config["stop"]))


def logout_quietly(scraper: CarunaScraper) -> None:
    """Log out, reporting but not raising failures."""
    if not scraper.authenticated:
        return
    try:
        scraper.logout()
    except CarunaError as e:
        logger.warning(f"Logout failed: {e}")


def connect_influxdb() -> InfluxDBExporter:
    """Connect the global InfluxDB exporter.

    Raises:
        CarunaError: If InfluxDB is unreachable
    """
    global influxdb_exporter

    influxdb_exporter = InfluxDBExporter(
        url=config["influxdb_url"],
        token=config["influxdb_token"],
        org=config["influxdb_org"],
        bucket=config["influxdb_bucket"],
    )
    if not influxdb_exporter.connect():
        raise CarunaError(f"Failed to connect to InfluxDB at {config['influxdb_url']}")
    return influxdb_exporter


def run_once() -> int:
    """Log in, run the configured operation and render or store the result.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    scraper = CarunaScraper(config["username"], config["password"], auth_url=config["url"])
    try:
        scraper.login()
        result = fetch_result(scraper)

        if config["output"] == "text":
            print_text_output(result)
        elif config["output"] == "json":
            print_json_output(result)
        elif isinstance(result, MeasurementList):
            store = connect_influxdb()
            try:
                IncrementalSync(store, incremental=config["influxdb_incremental"]).run(result.measurements)
            finally:
                store.close()
        return 0

    except CarunaError as e:
        logger.error(f"Run failed: {e}")
        return 1

    finally:
        logout_quietly(scraper)


def run_sync() -> bool:
    """Execute one scheduled sync.

    This function:
    1. Creates CarunaScraper and logs in
    2. Downloads hourly series for the last rstart hours
    3. Writes new points to InfluxDB incrementally
    4. Updates Prometheus metrics
    5. Logs out

    Returns:
        True if sync succeeded, False otherwise
    """
    logger.info("Starting scheduled sync")
    start_time = time.time()
    scraper = CarunaScraper(config["username"], config["password"], auth_url=config["url"])

    try:
        scraper.login()

        stop = datetime.now().astimezone()
        start = stop - timedelta(hours=config["rstart"])
        measurements = scraper.get_hourly_series(config["location"], start, stop)
        logger.info(f"Fetched {len(measurements)} hourly measurements")

        count = 0
        if influxdb_exporter:
            sync = IncrementalSync(influxdb_exporter, incremental=config["influxdb_incremental"])
            count = sync.run(measurements)

        if prometheus_exporter:
            prometheus_exporter.update_metrics(measurements)
            prometheus_exporter.set_points_written(count)
            prometheus_exporter.set_sync_success(True, time.time() - start_time)

        logger.info("Sync completed successfully")
        return True

    except CarunaError as e:
        logger.error(f"Sync failed (Caruna error): {e}")
        if prometheus_exporter:
            prometheus_exporter.set_sync_success(False, time.time() - start_time)
        return False

    except Exception as e:
        logger.error(f"Sync failed (unexpected error): {e}")
        if prometheus_exporter:
            prometheus_exporter.set_sync_success(False, time.time() - start_time)
        return False

    finally:
        logout_quietly(scraper)


def serve() -> int:
    """Run scheduled syncs until interrupted.

    1. Connect to InfluxDB
    2. Start Prometheus HTTP server
    3. Schedule the daily sync and run one immediately
    4. Block on the scheduler

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    global prometheus_exporter

    try:
        connect_influxdb()
    except CarunaError as e:
        logger.error(f"{e}, exiting")
        return 1

    prometheus_exporter = CarunaExporter(port=config["exporter_port"])
    prometheus_exporter.start()
    logger.info(f"Prometheus metrics available at http://localhost:{config['exporter_port']}/metrics")

    scheduler = BlockingScheduler()
    trigger = CronTrigger(hour=config["scrape_hour"], minute=0)
    scheduler.add_job(
        run_sync,
        trigger=trigger,
        id="daily_sync",
        name=f"Daily sync at {config['scrape_hour']}:00",
        max_instances=1,
    )
    logger.info(f"Scheduled daily sync at {config['scrape_hour']}:00")

    logger.info("Running initial sync at startup")
    run_sync()

    logger.info("Starting scheduler, press Ctrl+C to exit")
    try:
        scheduler.start()
    except KeyboardInterrupt:
        logger.info("Received interrupt, shutting down")
        scheduler.shutdown()
    finally:
        if influxdb_exporter:
            influxdb_exporter.close()

    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    # Configure logging; stdout carries the results
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)]
    )

    load_dotenv()

    if not load_config(argv):
        return 1

    if config["debug"]:
        logging.getLogger().setLevel(logging.DEBUG)
    elif config["serve"]:
        logging.getLogger().setLevel(logging.INFO)

    if config["serve"]:
        logger.info("Caruna exporter starting")
        return serve()
    return run_once()


if __name__ == "__main__":
    sys.exit(main())
