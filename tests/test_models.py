from datetime import datetime, timedelta, timezone

import pytest

from caruna_exporter.exceptions import ParseError
from caruna_exporter.models import (
    CustomerInfo,
    MeteringPoint,
    format_caruna_time,
    parse_caruna_time,
    parse_measurements,
    parse_metering_points,
)

from conftest import METERING_POINTS, SERIES, raw_measurement


EET = timezone(timedelta(hours=2))


def test_time_layout_has_numeric_offset():
    value = datetime(2024, 1, 1, 0, 0, tzinfo=EET)
    assert format_caruna_time(value) == "2024-01-01T00:00:00+0200"
    assert format_caruna_time(datetime(2024, 6, 1, 12, 30, 5, tzinfo=timezone.utc)) == "2024-06-01T12:30:05+0000"


@pytest.mark.parametrize("value", [
    datetime(2024, 1, 1, 0, 0, tzinfo=EET),
    datetime(2023, 10, 29, 3, 0, 0, tzinfo=timezone(timedelta(hours=3))),
    datetime(1999, 12, 31, 23, 59, 59, tzinfo=timezone(timedelta(hours=-5, minutes=-30))),
])
def test_time_layout_round_trip(value):
    assert parse_caruna_time(format_caruna_time(value)) == value


def test_naive_time_is_formatted_as_local_time():
    formatted = format_caruna_time(datetime(2024, 1, 1, 12, 0))
    assert formatted.startswith("2024-01-01T12:00:00")
    assert formatted[-5] in "+-"


def test_parse_time_rejects_garbage():
    with pytest.raises(ParseError):
        parse_caruna_time("yesterday")
    with pytest.raises(ParseError):
        parse_caruna_time(None)


def test_customer_info_keys_are_case_insensitive():
    info = CustomerInfo.from_json({"Username": "user1", "Email": "a@b", "Active": True})
    assert info.username == "user1"
    assert info.email == "a@b"
    assert info.active is True


def test_customer_info_requires_object():
    with pytest.raises(ParseError):
        CustomerInfo.from_json(["user1"])


def test_parse_metering_points():
    points = parse_metering_points(METERING_POINTS)
    assert [p.metering_point_number for p in points] == ["643001", "643002"]
    first = points[0]
    assert first.location == ("Street 1", "00100", "City")
    assert first.location_str == "Street 1 00100 City"
    assert first.hourly_measured is True
    assert first.created == "2015-01-01T00:00:00+0200"
    assert points[1].hourly_measured is False


def test_parse_metering_points_without_entities():
    assert parse_metering_points({}) == []
    with pytest.raises(ParseError):
        parse_metering_points({"entities": "nope"})


def test_parse_measurements_drops_unmeasured_hours():
    point = parse_metering_points(METERING_POINTS)[0]
    measurements = parse_measurements(SERIES, point)
    assert [m.value for m in measurements] == [1.5, 0.75]
    assert measurements[0].timestamp == datetime(2024, 1, 1, 0, 0, tzinfo=EET)
    assert measurements[0].metering_point_id == "643001"
    assert measurements[0].metering_point_location == ("Street 1", "00100", "City")


def test_unmeasured_hour_with_bad_timestamp_is_ignored():
    point = MeteringPoint("1", "CONSUMPTION", True, ("a", "b", "c"))
    raw = raw_measurement("not a time", 1.0, hourly=False)
    assert parse_measurements([raw], point) == []


def test_bad_timestamp_rejects_whole_series():
    point = MeteringPoint("1", "CONSUMPTION", True, ("a", "b", "c"))
    payload = [raw_measurement("2024-01-01T00:00:00+0200", 1.0), raw_measurement("2024-01-01 01:00", 1.0)]
    with pytest.raises(ParseError, match="timestamp"):
        parse_measurements(payload, point)


def test_measured_hour_without_value_is_an_error():
    point = MeteringPoint("1", "CONSUMPTION", True, ("a", "b", "c"))
    raw = {"hourlyMeasured": True, "timestamp": "2024-01-01T00:00:00+0200", "values": {}}
    with pytest.raises(ParseError):
        parse_measurements([raw], point)
