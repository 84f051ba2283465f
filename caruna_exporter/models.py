"""Data model for the Caruna portal.

This module handles:
- Typed shapes for customer info, metering points and hourly measurements
- Mapping the portal's raw JSON payloads into those shapes
- Formatting and parsing the portal's timestamp layout
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Tuple, Union

from caruna_exporter.exceptions import ParseError

# ISO 8601 with a numeric UTC offset. The series endpoint rejects the "Z" form.
CARUNA_TIME_LAYOUT = "%Y-%m-%dT%H:%M:%S%z"

# Product code keying the consumption value inside a raw measurement
ENERGY_CONSUMPTION_KEY = "EL_ENERGY_CONSUMPTION#0"

Location = Tuple[str, str, str]


def format_caruna_time(value: datetime) -> str:
    """Format a datetime in the portal's required layout.

    Naive datetimes are taken to be local time, e.g. midnight 2024-01-01 in
    Helsinki becomes "2024-01-01T00:00:00+0200".
    """
    if value.tzinfo is None:
        value = value.astimezone()
    return value.strftime(CARUNA_TIME_LAYOUT)


def parse_caruna_time(value: str) -> datetime:
    """Parse a timestamp in the portal's layout into an aware datetime.

    Raises:
        ParseError: If the string does not match the layout
    """
    try:
        return datetime.strptime(value, CARUNA_TIME_LAYOUT)
    except (TypeError, ValueError) as e:
        raise ParseError(f"Couldn't parse measurement timestamp {value!r}: {e}") from e


def _get(raw: dict, key: str, default: Any = None) -> Any:
    """Look up a JSON key the way the portal's clients do: case-insensitively."""
    if key in raw:
        return raw[key]
    lowered = key.lower()
    for k, v in raw.items():
        if isinstance(k, str) and k.lower() == lowered:
            return v
    return default


def _require_dict(raw: Any, what: str) -> dict:
    if not isinstance(raw, dict):
        raise ParseError(f"Cannot parse Caruna {what}: expected an object, got {type(raw).__name__}")
    return raw


def _str(raw: dict, key: str) -> str:
    value = _get(raw, key)
    return "" if value is None else str(value)


@dataclass(frozen=True)
class CustomerInfo:
    """Identity of the logged-in portal user.

    Attributes:
        username: Portal username, also the customer id in API paths
        created: Account creation timestamp as sent by the portal
        modified: Last modification timestamp as sent by the portal
        deleted: Deletion timestamp, empty for live accounts
        email: Contact email
        locale: UI locale
        active: Whether the account is active
    """
    username: str
    created: str = ""
    modified: str = ""
    deleted: str = ""
    email: str = ""
    locale: str = ""
    active: bool = False

    @classmethod
    def from_json(cls, raw: Any) -> "CustomerInfo":
        raw = _require_dict(raw, "Customer Info")
        return cls(
            username=_str(raw, "username"),
            created=_str(raw, "created"),
            modified=_str(raw, "modified"),
            deleted=_str(raw, "deleted"),
            email=_str(raw, "email"),
            locale=_str(raw, "locale"),
            active=bool(_get(raw, "active", False)),
        )


@dataclass(frozen=True)
class MeteringPoint:
    """A physical metering location.

    Attributes:
        metering_point_number: Stable identifier, used as the API path parameter
        metering_point_type: Portal's type code for the point
        hourly_measured: Whether the point has hourly measurements
        location: (street, zip code, city)
        created: Contract creation timestamp, kept as the portal's raw string
        modified: Raw modification timestamp
        deleted: Raw deletion timestamp
    """
    metering_point_number: str
    metering_point_type: str
    hourly_measured: bool
    location: Location
    created: str = ""
    modified: str = ""
    deleted: str = ""

    @property
    def location_str(self) -> str:
        return " ".join(self.location)

    @classmethod
    def from_entity(cls, entity: Any) -> "MeteringPoint":
        """Build from one entry of the meteringPointInformationWrappers listing."""
        entity = _require_dict(entity, "Metering Points")
        raw = _require_dict(_get(entity, "meteringPoint"), "Metering Points")
        address = _get(raw, "address") or {}
        address = _require_dict(address, "Metering Point address")
        return cls(
            metering_point_number=_str(raw, "meteringPointNumber"),
            metering_point_type=_str(raw, "meteringPointType"),
            hourly_measured=bool(_get(raw, "hourlyMeasured", False)),
            location=(
                _str(address, "street"),
                _str(address, "zipCode"),
                _str(address, "city"),
            ),
            created=_str(raw, "created"),
            modified=_str(raw, "modified"),
            deleted=_str(raw, "deleted"),
        )


def parse_metering_points(payload: Any) -> List[MeteringPoint]:
    """Map the metering point listing wrapper into MeteringPoints.

    Raises:
        ParseError: If the payload does not have the expected shape
    """
    payload = _require_dict(payload, "Metering Points")
    entities = _get(payload, "entities") or []
    if not isinstance(entities, list):
        raise ParseError("Cannot parse Caruna Metering Points: entities is not a list")
    return [MeteringPoint.from_entity(entity) for entity in entities]


@dataclass(frozen=True)
class HourlyEnergyMeasurement:
    """One hour of consumption for a metering point.

    Attributes:
        metering_point_id: Identifier of the metering point
        metering_point_location: Location of the point, denormalized for output
        timestamp: Start of the hour, timezone-aware
        value: Consumption in kWh
    """
    metering_point_id: str
    metering_point_location: Location
    timestamp: datetime
    value: float


def parse_measurements(payload: Any, point: MeteringPoint) -> List[HourlyEnergyMeasurement]:
    """Map a raw series array into measurements for one metering point.

    Entries not flagged hourly-measured are dropped, never zero-filled.

    Raises:
        ParseError: On a malformed entry or an unparsable timestamp. The whole
            series is rejected.
    """
    if not isinstance(payload, list):
        raise ParseError("Cannot parse Caruna series: expected an array")

    measurements = []
    for raw in payload:
        raw = _require_dict(raw, "measurement")
        if not _get(raw, "hourlyMeasured", False):
            continue

        timestamp = parse_caruna_time(_get(raw, "timestamp"))

        values = _get(raw, "values") or {}
        consumption = _get(values, ENERGY_CONSUMPTION_KEY) if isinstance(values, dict) else None
        if not isinstance(consumption, dict):
            raise ParseError(f"Measurement at {timestamp.isoformat()} has no energy consumption value")
        try:
            value = float(_get(consumption, "valueAsFloat"))
        except (TypeError, ValueError) as e:
            raise ParseError(f"Invalid energy consumption value at {timestamp.isoformat()}: {e}") from e

        measurements.append(HourlyEnergyMeasurement(
            metering_point_id=point.metering_point_number,
            metering_point_location=point.location,
            timestamp=timestamp,
            value=value,
        ))
    return measurements


@dataclass(frozen=True)
class MeteringPointList:
    """Result of location mode."""
    points: List[MeteringPoint] = field(default_factory=list)


@dataclass(frozen=True)
class MeasurementList:
    """Result of series mode."""
    measurements: List[HourlyEnergyMeasurement] = field(default_factory=list)


# Closed set of results the output sinks know how to render
Result = Union[MeteringPointList, MeasurementList]
