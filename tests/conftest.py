import json
from copy import deepcopy

import pytest
import requests

from caruna_exporter.scraper import CarunaScraper


BASE_URL = "https://energiaseuranta.caruna.fi"
SSO_URL = "https://authentication.caruna.fi"

ENTRY_PAGE = """<html><head>
<meta http-equiv="refresh" content="0;URL=/portal/login">
</head><body>Redirecting...</body></html>"""

LOGIN_PAGE = """<html><body>
<form id="search" action="/search"><input name="q" value=""></form>
<div class="login">
  <form id="usernameLogin4" action="login?execution=e1s1" method="post">
    <input type="hidden" name="lt" value="LT-1234">
    <input type="hidden" name="token" value="first">
    <input type="hidden" name="token" value="second">
    <input type="text" name="ttqusername" value="placeholder">
    <input type="password" name="password" value="">
    <input type="submit" value="Log in">
  </form>
</div>
</body></html>"""

POSTBACK_PAGE = """<html><body onload="document.forms[0].submit()">
<form action="https://energiaseuranta.caruna.fi/api/sso/postback" method="post">
  <input type="hidden" name="SAMLResponse" value="PHNhbWw+">
  <input type="hidden" name="RelayState" value="/portal">
</form>
</body></html>"""

CUSTOMER_INFO = {
    "username": "user1",
    "created": "2015-01-01T00:00:00+0200",
    "modified": "",
    "deleted": "",
    "email": "user1@example.com",
    "locale": "fi",
    "active": True,
}

METERING_POINTS = {
    "entities": [
        {
            "meteringPoint": {
                "created": "2015-01-01T00:00:00+0200",
                "modified": "",
                "deleted": "",
                "meteringPointNumber": "643001",
                "meteringPointType": "CONSUMPTION",
                "hourlyMeasured": True,
                "address": {"street": "Street 1", "zipCode": "00100", "city": "City"},
            }
        },
        {
            "meteringPoint": {
                "created": "2018-05-01T00:00:00+0300",
                "modified": "",
                "deleted": "",
                "meteringPointNumber": "643002",
                "meteringPointType": "CONSUMPTION",
                "hourlyMeasured": False,
                "address": {"street": "Summer Road 5", "zipCode": "40100", "city": "Lake"},
            }
        },
    ]
}


def raw_measurement(timestamp, value, hourly=True):
    return {
        "hourlyMeasured": hourly,
        "utcOffset": 2,
        "timestamp": timestamp,
        "values": {
            "EL_ENERGY_CONSUMPTION#0": {"valueAsFloat": value, "statusAsSeriesStatus": "OK"},
        },
    }


SERIES = [
    raw_measurement("2024-01-01T00:00:00+0200", 1.5),
    raw_measurement("2024-01-01T01:00:00+0200", 0.75),
    raw_measurement("2024-01-01T02:00:00+0200", 0.0, hourly=False),
]


def make_response(url, body, status=200):
    """Build a real requests.Response served from ``url``."""
    response = requests.Response()
    response.status_code = status
    response.url = url
    if isinstance(body, (dict, list)):
        response._content = json.dumps(body).encode("utf-8")
        response.headers["Content-Type"] = "application/json"
    else:
        response._content = body.encode("utf-8")
        response.headers["Content-Type"] = "text/html; charset=utf-8"
    response.encoding = "utf-8"
    return response


class FakePortal:
    """Stands in for Session.request, routing on method and URL without query."""

    def __init__(self):
        self.routes = {}
        self.calls = []

    def add(self, method, url, body, status=200, final_url=None):
        self.routes[(method, url)] = (body, status, final_url or url)

    def __call__(self, method, url, data=None, **kwargs):
        self.calls.append((method, url, data))
        key = (method, url.split("?")[0])
        assert key in self.routes, f"Unexpected request {method} {url}"
        body, status, final_url = self.routes[key]
        if isinstance(body, Exception):
            raise body
        return make_response(final_url, body, status)

    def urls(self, method=None):
        return [url for m, url, _ in self.calls if method is None or m == method]


@pytest.fixture
def portal():
    """Portal serving the whole login flow and the JSON API."""
    p = FakePortal()
    # The entry page is served from the SSO host after an HTTP redirect
    p.add("GET", f"{BASE_URL}/mobile", ENTRY_PAGE, final_url=f"{SSO_URL}/portal/entry")
    p.add("GET", f"{SSO_URL}/portal/login", LOGIN_PAGE)
    p.add("POST", f"{SSO_URL}/portal/login", POSTBACK_PAGE)
    p.add("POST", f"{BASE_URL}/api/sso/postback", "<html><body>Welcome</body></html>",
          final_url=f"{BASE_URL}/portal/")
    p.add("GET", f"{BASE_URL}/api/users", deepcopy(CUSTOMER_INFO))
    p.add("GET", f"{BASE_URL}/api/customers/user1/meteringPointInformationWrappers",
          deepcopy(METERING_POINTS))
    p.add("GET", f"{BASE_URL}/api/meteringPoints/ELECTRICITY/643001/series", deepcopy(SERIES))
    p.add("GET", f"{BASE_URL}/api/meteringPoints/ELECTRICITY/643002/series", [])
    p.add("GET", f"{BASE_URL}/api/logout", "<html>Logged out</html>",
          final_url=f"{SSO_URL}/portal/goodbye")
    p.add("GET", f"{SSO_URL}/portal/logout", "<html>Bye</html>")
    return p


@pytest.fixture
def scraper(portal):
    s = CarunaScraper("user1", "secret", auth_url=f"{BASE_URL}/mobile")
    s.session.request = portal
    return s


@pytest.fixture
def logged_in(scraper):
    scraper.login()
    return scraper
