"""Caruna energy exporter package.

Authenticates with the Caruna consumer portal through its SSO login flow,
fetches hourly electricity consumption per metering point, and renders it
as text/JSON or writes it incrementally to InfluxDB.
"""

__version__ = "0.1.0"
