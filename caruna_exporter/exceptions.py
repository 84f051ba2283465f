"""Exceptions raised by the Caruna exporter.

Every failure is terminal for the operation that raised it; nothing here is
retried.
"""

from typing import Optional


class CarunaError(Exception):
    """Base exception for Caruna exporter errors.

    Attributes:
        step: Authentication step that was being attempted when the error
            was raised, if it happened during login.
    """

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.step = None

    def __str__(self) -> str:
        message = super().__str__()
        if self.step is not None:
            return f"{message} (during {self.step.value})"
        return message


class NetworkError(CarunaError):
    """Transport-level failure talking to the portal."""
    pass


class HttpStatusError(CarunaError):
    """Portal answered with a non-success HTTP status."""

    def __init__(self, status_code: int, url: str):
        super().__init__(f"Non-ok HTTP status {status_code} from {url}")
        self.status_code = status_code
        self.url = url


class ParseError(CarunaError):
    """Malformed HTML or JSON from the portal."""
    pass


class TooManyRedirectsError(ParseError):
    """Meta-refresh chain longer than the allowed number of hops."""
    pass


class FormNotFoundError(CarunaError):
    """Expected HTML form is absent from the page."""
    pass


class FieldNotFoundError(CarunaError):
    """Expected form field is absent from a scraped form."""

    def __init__(self, field_name: str):
        super().__init__(f"Form has no field named {field_name!r}")
        self.field_name = field_name


class InvalidRangeError(CarunaError):
    """Start of a time range is not strictly before its end."""
    pass


class AuthenticationFailedError(CarunaError):
    """Login sequence completed but the identity could not be fetched."""
    pass


class NotAuthenticatedError(CarunaError):
    """API call attempted before a successful login."""
    pass


class StoreError(CarunaError):
    """Time-series store query or write failed."""
    pass


class ConfigError(CarunaError):
    """Invalid or missing configuration."""
    pass


def with_step(error: CarunaError, step: Optional[object]) -> CarunaError:
    """Attach the failing authentication step to an error and return it."""
    if error.step is None:
        error.step = step
    return error
