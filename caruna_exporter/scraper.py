"""Caruna authentication and data download module.

This module handles:
- Fetching pages over a cookie-backed session and following meta-refresh redirects
- Authentication with the Caruna portal through its SSO login and postback forms
- Listing metering points and downloading hourly consumption series
- Logging out of both the application and the SSO portal
"""

import io
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional, Sequence, Tuple, Union
from urllib.parse import quote, urljoin

import requests

from caruna_exporter.exceptions import (
    AuthenticationFailedError,
    CarunaError,
    HttpStatusError,
    InvalidRangeError,
    NetworkError,
    NotAuthenticatedError,
    ParseError,
    TooManyRedirectsError,
    with_step,
)
from caruna_exporter.html_parser import FormQuery, find_login_form, find_meta_refresh_target
from caruna_exporter.models import (
    CustomerInfo,
    HourlyEnergyMeasurement,
    MeteringPoint,
    format_caruna_time,
    parse_measurements,
    parse_metering_points,
)

# Configure module logger
logger = logging.getLogger(__name__)

FormData = Union[Sequence[Tuple[str, str]], dict]


@dataclass
class Page:
    """A fetched document.

    Attributes:
        data: Raw response body
        url: URL the body was served from, after any HTTP redirects
        response: The underlying response
    """
    data: bytes
    url: str
    response: requests.Response

    @property
    def body(self) -> io.BytesIO:
        """A fresh reader over the body; may be requested any number of times."""
        return io.BytesIO(self.data)

    def json(self) -> Any:
        try:
            return json.loads(self.data)
        except ValueError as e:
            raise ParseError(f"Cannot parse JSON from {self.url}: {e}") from e


class AuthState(Enum):
    """Steps of the login sequence, in order."""
    START = "start"
    FETCHED_LOGIN_PAGE = "fetching login page"
    LOCATED_LOGIN_FORM = "locating login form"
    SUBMITTED_CREDENTIALS = "submitting credentials"
    LOCATED_POSTBACK_FORM = "locating SSO postback form"
    SUBMITTED_POSTBACK = "submitting SSO postback"
    FETCHED_IDENTITY = "fetching customer info"
    AUTHENTICATED = "authenticated"


class CarunaScraper:
    """Scraper for the Caruna energy consumption portal.

    Handles the SSO login flow and the portal's undocumented JSON API.
    The portal redirects between the application and the SSO host with
    <meta http-equiv="refresh"> tags rather than HTTP 3xx responses, so
    every fetch checks the body for one and follows it.

    A scraper owns one session and must be used from a single flow at a
    time: the reference URL is updated as pages are fetched.

    Attributes:
        username: Portal login username
        password: Portal login password
        auth_url: Entry page of the login flow
        state: Progress through the login sequence
        customer_info: Identity of the logged-in user, set by login()
        ref_url: Last URL of the login sequence; API paths resolve against it
    """

    BASE_URL = "https://energiaseuranta.caruna.fi"
    AUTH_URL = f"{BASE_URL}/mobile"

    # Login form components
    LOGIN_FORM_ID = "usernameLogin4"
    LOGIN_FIELD_USERNAME = "ttqusername"
    LOGIN_FIELD_PASSWORD = "password"

    # API paths, relative to the reference URL
    CURRENT_USER_PATH = "/api/users?current"
    METERING_POINTS_PATH = "/api/customers/{username}/meteringPointInformationWrappers"
    SERIES_PATH = "/api/meteringPoints/ELECTRICITY/{metering_point}/series"
    LOGOUT_PATH = "/api/logout"
    # Relative to the SSO portal the application logout lands on
    SSO_LOGOUT_PATH = "/portal/logout"

    # Series query parameters
    SERIES_PRODUCT = "EL_ENERGY_CONSUMPTION"
    SERIES_RESOLUTION = "MONTHS_AS_HOURS"

    MAX_META_REFRESH_HOPS = 10

    def __init__(self, username: str, password: str, auth_url: Optional[str] = None):
        """Initialize the scraper with credentials.

        Args:
            username: Portal login username
            password: Portal login password
            auth_url: Entry page of the login flow (default: AUTH_URL)
        """
        self.username = username
        self.password = password
        self.auth_url = auth_url or self.AUTH_URL
        self.session = requests.Session()
        self.state = AuthState.START
        self.customer_info: Optional[CustomerInfo] = None
        self.ref_url: Optional[str] = None

        # Set common headers
        self.session.headers.update({
            "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,application/json;q=0.9,*/*;q=0.8",
            "Accept-Language": "fi-FI,fi;q=0.9,en-US;q=0.8,en;q=0.7",
        })

    @property
    def authenticated(self) -> bool:
        return self.state is AuthState.AUTHENTICATED

    # ------------------------------------------------------------------
    # Page fetching
    # ------------------------------------------------------------------

    def fetch(self, method: str, url: str, data: Optional[FormData] = None, _hops: int = 0) -> Page:
        """Fetch a page, following meta-refresh redirects.

        Args:
            method: HTTP method (GET, POST)
            url: Absolute URL to fetch
            data: Form fields to POST, as (name, value) pairs or a dict

        Returns:
            The final page after all meta-refresh hops

        Raises:
            NetworkError: On transport failure
            HttpStatusError: If the response status is not 200
            TooManyRedirectsError: If the meta-refresh chain is too long
        """
        logger.debug(f"Start {method} query: {url}")
        try:
            response = self.session.request(method, url, data=data)
        except requests.RequestException as e:
            raise NetworkError(f"{method} {url} failed: {e}") from e

        if response.status_code != 200:
            raise HttpStatusError(response.status_code, response.url or url)

        page = Page(data=response.content, url=response.url or url, response=response)

        target = find_meta_refresh_target(page.data)
        if target is None:
            return page

        if _hops >= self.MAX_META_REFRESH_HOPS:
            raise TooManyRedirectsError(
                f"More than {self.MAX_META_REFRESH_HOPS} meta refresh redirects, last at {page.url}"
            )

        # Chains hop between hosts, so resolve against where this page came from
        next_url = urljoin(page.url, target)
        logger.debug(f"Meta refresh redirect to: {next_url}")
        return self.fetch("GET", next_url, _hops=_hops + 1)

    def get_page(self, url: str) -> Page:
        return self.fetch("GET", url)

    def post_page(self, url: str, data: FormData) -> Page:
        return self.fetch("POST", url, data=data)

    def _api_url(self, path: str) -> str:
        if self.ref_url is None:
            raise NotAuthenticatedError("Not authenticated - call login() first")
        return urljoin(self.ref_url, path)

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def _advance(self, state: AuthState) -> None:
        self.state = state
        logger.debug(f"Authentication state: {state.name}")

    def login(self) -> CustomerInfo:
        """Authenticate with the Caruna portal.

        Performs the login process:
        1. GET the entry page, which meta-refreshes to the SSO login page
        2. Locate the login form and fill in the credentials
        3. POST the form; the response carries the SSO postback form
        4. POST the postback form back to the application
        5. Fetch the current user to verify the session

        Returns:
            Info of the logged-in customer

        Raises:
            AuthenticationFailedError: If the customer info cannot be fetched
                after the login sequence, most likely due to wrong credentials
            CarunaError: Any other failure. ``error.step`` names the step.
        """
        logger.info(f"Authenticating as {self.username}")
        self.state = AuthState.START
        self.customer_info = None
        self.ref_url = None

        step = AuthState.FETCHED_LOGIN_PAGE
        try:
            login_page = self.get_page(self.auth_url)
            self._advance(step)

            step = AuthState.LOCATED_LOGIN_FORM
            login_form = find_login_form(login_page.data, FormQuery(id=self.LOGIN_FORM_ID))
            self._advance(step)

            step = AuthState.SUBMITTED_CREDENTIALS
            login_form.set_field(self.LOGIN_FIELD_USERNAME, self.username)
            login_form.set_field(self.LOGIN_FIELD_PASSWORD, self.password)
            logger.debug("Submitting login form")
            postback_page = self.post_page(login_form.resolve_action(login_page.url), login_form.fields)
            self._advance(step)

            # The SSO portal hands the session back with a self-submitting form
            step = AuthState.LOCATED_POSTBACK_FORM
            postback_form = find_login_form(postback_page.data)
            self._advance(step)

            step = AuthState.SUBMITTED_POSTBACK
            logger.debug("Submitting SSO postback form")
            final_page = self.post_page(postback_form.resolve_action(postback_page.url), postback_form.fields)
            self.ref_url = final_page.url
            self._advance(step)

            step = AuthState.FETCHED_IDENTITY
            try:
                customer_info = self.get_customer_info()
            except CarunaError as e:
                raise AuthenticationFailedError("Could not get Customer Info. Wrong credentials?") from e
            if not customer_info.username:
                raise AuthenticationFailedError("Could not get Customer Info. Wrong credentials?")
            self.customer_info = customer_info
            self._advance(step)

        except CarunaError as e:
            logger.error(f"Login failed while {step.value}: {e}")
            with_step(e, step)
            raise

        self._advance(AuthState.AUTHENTICATED)
        logger.info("Authentication successful")
        return self.customer_info

    def logout(self) -> None:
        """Log out of the application and then the SSO portal.

        Raises:
            CarunaError: If either logout request fails
        """
        logger.info("Logging out")
        base = self.ref_url or self.BASE_URL
        try:
            page = self.get_page(urljoin(base, self.LOGOUT_PATH))
            # Application logout lands on the SSO host
            self.get_page(urljoin(page.url, self.SSO_LOGOUT_PATH))
        finally:
            self.state = AuthState.START
            self.customer_info = None
            self.ref_url = None
        logger.info("Logged out")

    # ------------------------------------------------------------------
    # Metering API
    # ------------------------------------------------------------------

    def get_customer_info(self) -> CustomerInfo:
        """Fetch the logged-in user's identity.

        Raises:
            ParseError: If the response is not a customer info object
        """
        page = self.get_page(self._api_url(self.CURRENT_USER_PATH))
        return CustomerInfo.from_json(page.json())

    def _require_login(self) -> CustomerInfo:
        if not self.authenticated or self.customer_info is None:
            raise NotAuthenticatedError("Not authenticated - call login() first")
        return self.customer_info

    def list_metering_points(self, hourly_only: bool = False) -> List[MeteringPoint]:
        """List the customer's metering points.

        Args:
            hourly_only: Only return points with hourly measurements

        Returns:
            Metering points in the order the portal lists them
        """
        customer = self._require_login()
        path = self.METERING_POINTS_PATH.format(username=quote(customer.username, safe=""))
        page = self.get_page(self._api_url(path))

        points = parse_metering_points(page.json())
        logger.info(f"Found {len(points)} metering points")
        if hourly_only:
            points = [p for p in points if p.hourly_measured]
        return points

    def _series_url(self, point: MeteringPoint, start: datetime, end: datetime) -> str:
        path = self.SERIES_PATH.format(metering_point=quote(point.metering_point_number, safe=""))
        request = requests.Request("GET", self._api_url(path), params={
            "products": self.SERIES_PRODUCT,
            "resolution": self.SERIES_RESOLUTION,
            "startDate": format_caruna_time(start),
            "endDate": format_caruna_time(end),
        }).prepare()
        return request.url

    def get_hourly_series(
        self,
        location_filter: str,
        start: datetime,
        end: datetime,
    ) -> List[HourlyEnergyMeasurement]:
        """Download hourly consumption for the customer's metering points.

        Args:
            location_filter: Metering point id, or part of its address. Empty
                selects every metering point.
            start: Start of the range
            end: End of the range

        Returns:
            Hourly measurements, grouped by metering point

        Raises:
            InvalidRangeError: If start is not before end
            ParseError: If a series cannot be parsed. Nothing is returned for
                any metering point in that case.
        """
        if _as_aware(start) >= _as_aware(end):
            raise InvalidRangeError(f"Start {start.isoformat()} is not before end {end.isoformat()}")
        self._require_login()

        measurements: List[HourlyEnergyMeasurement] = []
        for point in self.list_metering_points():
            if location_filter and not (
                location_filter == point.metering_point_number
                or location_filter in point.location_str
            ):
                logger.debug(f"Skipping metering point: {point.metering_point_number}")
                continue

            logger.info(f"Downloading hourly series for metering point {point.metering_point_number}")
            page = self.get_page(self._series_url(point, start, end))
            series = parse_measurements(page.json(), point)
            logger.debug(f"Parsed {len(series)} hourly measurements for {point.metering_point_number}")
            measurements.extend(series)

        return measurements


def _as_aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.astimezone()
