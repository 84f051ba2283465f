import json
import os
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
import requests
from prometheus_client import CollectorRegistry, generate_latest

from caruna_exporter import main as cli
from caruna_exporter.exporter import CarunaExporter

from conftest import BASE_URL, SSO_URL


CREDENTIALS = ["--username", "user1", "--password", "secret", "--url", f"{BASE_URL}/mobile"]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith(cli.ENV_PREFIX):
            monkeypatch.delenv(key)
    monkeypatch.setattr(cli, "load_dotenv", lambda: None)
    monkeypatch.setattr(cli, "influxdb_exporter", None)
    monkeypatch.setattr(cli, "prometheus_exporter", None)


@pytest.fixture
def http(monkeypatch, portal):
    monkeypatch.setattr(requests.Session, "request",
                        lambda self, method, url, **kwargs: portal(method, url, **kwargs))
    return portal


def test_env_fills_flags_not_given(monkeypatch):
    monkeypatch.setenv("CARUNA_USERNAME", "env-user")
    monkeypatch.setenv("CARUNA_PASSWORD", "env-pass")
    monkeypatch.setenv("CARUNA_MODE", "series")
    monkeypatch.setenv("CARUNA_INFLUXDB_INCREMENTAL", "false")
    monkeypatch.setenv("CARUNA_RSTART", "24")

    assert cli.load_config(["--username", "flag-user"])

    assert cli.config["username"] == "flag-user"
    assert cli.config["password"] == "env-pass"
    assert cli.config["mode"] == "series"
    assert cli.config["influxdb_incremental"] is False
    assert cli.config["stop"] - cli.config["start"] == timedelta(hours=24)


def test_defaults():
    assert cli.load_config(CREDENTIALS)
    assert cli.config["mode"] == "location"
    assert cli.config["output"] == "text"
    assert cli.config["influxdb_incremental"] is True
    assert cli.config["all_points"] is False
    assert cli.config["stop"] - cli.config["start"] == timedelta(hours=48)


def test_explicit_times():
    assert cli.load_config(CREDENTIALS + ["--start", "2024-01-01T00:00:00Z", "--stop", "2024-01-02T00:00:00+02:00"])
    assert cli.config["start"].isoformat() == "2024-01-01T00:00:00+00:00"
    assert cli.config["stop"].isoformat() == "2024-01-02T00:00:00+02:00"


@pytest.mark.parametrize("argv", [
    ["--mode", "series"],
    CREDENTIALS + ["--start", "last tuesday"],
    CREDENTIALS + ["--output", "influxdb", "--influxdb-token", "t"],
    CREDENTIALS + ["--mode", "series", "--output", "influxdb"],
])
def test_invalid_config(argv):
    assert not cli.load_config(argv)


def test_invalid_env_values(monkeypatch):
    monkeypatch.setenv("CARUNA_OUTPUT", "xml")
    assert not cli.load_config(CREDENTIALS)
    monkeypatch.setenv("CARUNA_OUTPUT", "text")
    monkeypatch.setenv("CARUNA_RSTART", "two days")
    assert not cli.load_config(CREDENTIALS)


def test_location_mode_json_lists_hourly_points(http, capsys):
    assert cli.main(CREDENTIALS + ["--output", "json"]) == 0

    payload = json.loads(capsys.readouterr().out)
    assert len(payload) == 1
    assert payload[0]["location"] == ["Street 1", "00100", "City"]
    assert http.urls()[-2:] == [f"{BASE_URL}/api/logout", f"{SSO_URL}/portal/logout"]


def test_location_mode_all_points(http, capsys):
    assert cli.main(CREDENTIALS + ["--output", "json", "--all-points"]) == 0
    assert len(json.loads(capsys.readouterr().out)) == 2


def test_series_mode_text(http, capsys):
    argv = CREDENTIALS + ["--mode", "series", "--location", "643001",
                          "--start", "2024-01-01T00:00:00+02:00", "--stop", "2024-01-02T00:00:00+02:00"]
    assert cli.main(argv) == 0
    out = capsys.readouterr().out
    assert "Sum: 2.250000" in out


def test_series_mode_influxdb(http, monkeypatch):
    store = MagicMock()
    store.connect.return_value = True
    store.query_boundary_timestamps.return_value = None
    monkeypatch.setattr(cli, "InfluxDBExporter", MagicMock(return_value=store))

    argv = CREDENTIALS + ["--mode", "series", "--output", "influxdb", "--influxdb-token", "t",
                          "--start", "2024-01-01T00:00:00+02:00", "--stop", "2024-01-02T00:00:00+02:00"]
    assert cli.main(argv) == 0

    store.write_batch.assert_called_once()
    key, points = store.write_batch.call_args[0]
    assert key == "Street_1_00100_City"
    assert [value for _, value in points] == [1.5, 0.75]
    store.close.assert_called_once()


def test_failed_login_exits_with_error_and_skips_logout(http):
    http.add("GET", f"{BASE_URL}/api/users", "<html>login</html>")
    assert cli.main(CREDENTIALS) == 1
    assert f"{BASE_URL}/api/logout" not in http.urls()


def test_logout_failure_does_not_fail_run(http, capsys):
    http.add("GET", f"{SSO_URL}/portal/logout", "down", status=503)
    assert cli.main(CREDENTIALS) == 0
    assert "Metering point 0:" in capsys.readouterr().out


def test_scheduled_sync_updates_metrics(http, monkeypatch):
    assert cli.load_config(CREDENTIALS + ["--serve", "--influxdb-token", "t"])
    store = MagicMock()
    store.query_boundary_timestamps.return_value = None
    registry = CollectorRegistry()
    monkeypatch.setattr(cli, "influxdb_exporter", store)
    monkeypatch.setattr(cli, "prometheus_exporter", CarunaExporter(registry=registry))

    assert cli.run_sync()

    output = generate_latest(registry).decode("utf-8")
    assert "caruna_sync_success 1.0" in output
    assert "caruna_points_written 2.0" in output
    assert f"{SSO_URL}/portal/logout" in http.urls()


def test_scheduled_sync_failure_is_recorded(http, monkeypatch):
    assert cli.load_config(CREDENTIALS + ["--serve", "--influxdb-token", "t"])
    http.add("GET", f"{BASE_URL}/api/customers/user1/meteringPointInformationWrappers", "oops", status=500)
    registry = CollectorRegistry()
    monkeypatch.setattr(cli, "prometheus_exporter", CarunaExporter(registry=registry))

    assert not cli.run_sync()
    assert "caruna_sync_success 0.0" in generate_latest(registry).decode("utf-8")


@pytest.mark.parametrize("extra", [
    ["--mode", "series"],
    ["--output", "json"],
    ["--start", "2024-01-01T00:00:00+02:00"],
    ["--stop", "2024-01-02T00:00:00+02:00"],
])
def test_serve_rejects_one_shot_flags(extra):
    assert not cli.load_config(CREDENTIALS + ["--serve", "--influxdb-token", "t"] + extra)


def test_serve_rejects_one_shot_env(monkeypatch):
    monkeypatch.setenv("CARUNA_MODE", "series")
    assert not cli.load_config(CREDENTIALS + ["--serve", "--influxdb-token", "t"])
    monkeypatch.delenv("CARUNA_MODE")
    assert cli.load_config(CREDENTIALS + ["--serve", "--influxdb-token", "t"])
