"""
Shared fixtures for Edge Abuse Monitor tests.
"""

import asyncio
import builtins
import contextlib
import os
import tempfile
from unittest.mock import Mock

import pytest

from abuse_monitor.blocklist_service import BlockListService, parse_block_ranges
from abuse_monitor.geo_catalog import AsnInfo, CountryInfo, GeoAsnCatalog
from abuse_monitor.range_table import Range, RangeTable, ip_to_int


class FakeResponse:
    """Stands in for aiohttp.ClientResponse inside `async with session.get(...)`."""

    def __init__(self, status=200, payload=None, body='', json_error=None):
        self.status = status
        self.payload = payload
        self.body = body
        self.json_error = json_error

    async def json(self, content_type=None):
        if self.json_error is not None:
            raise self.json_error
        return self.payload

    async def text(self, errors='strict'):
        return self.body

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class _RaisingContext:
    def __init__(self, exc):
        self.exc = exc

    async def __aenter__(self):
        raise self.exc

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """
    Minimal aiohttp.ClientSession replacement.

    routes maps a URL to a FakeResponse or to an exception raised on entry.
    Unknown URLs answer 404.
    """

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []
        self.timeouts = []
        self.closed = False

    def get(self, url, timeout=None):
        self.calls.append(url)
        self.timeouts.append(timeout)
        route = self.routes.get(url)
        if route is None:
            return FakeResponse(status=404)
        if isinstance(route, BaseException):
            return _RaisingContext(route)
        return route

    async def close(self):
        self.closed = True


@pytest.fixture
def temp_db(monkeypatch):
    """Create temporary test database with full schema."""
    import abuse_monitor.config as config
    import abuse_monitor.database as database

    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)

    monkeypatch.setattr(config, "DATABASE_FILE", path)
    monkeypatch.setattr(database, "DATABASE_FILE", path)

    try:
        database.init_db(path)
        yield path
    finally:
        for suffix in ("", "-wal", "-shm"):
            with contextlib.suppress(builtins.BaseException):
                os.unlink(path + suffix)


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def make_response():
    return FakeResponse


@pytest.fixture
def sample_block_payload():
    """Block list as served upstream: numeric bounds, isBlocked flag, country."""
    return [
        {"startip": ip_to_int("203.0.113.0"), "endip": ip_to_int("203.0.113.255"), "isBlocked": 1,
         "countryCode": "US"},
        {"startip": ip_to_int("198.51.100.0"), "endip": ip_to_int("198.51.100.255"), "isBlocked": 0,
         "countryCode": "DE"},
        {"startip": ip_to_int("192.0.2.0"), "endip": ip_to_int("192.0.2.255"), "isBlocked": 1,
         "countryCode": None},
        {"startip": ip_to_int("100.64.0.0"), "endip": ip_to_int("100.64.0.255"), "isBlocked": 1,
         "countryCode": "WW"},
    ]


@pytest.fixture
def loaded_block_list(sample_block_payload):
    """A BlockListService with a snapshot already in place and no network access."""
    service = BlockListService(FakeSession(), url="http://blocklist.test/all", ttl=3600)
    service._table = RangeTable(parse_block_ranges(sample_block_payload))
    service._loaded = True
    service._last_success = service._clock()
    return service


@pytest.fixture
def geo_catalog():
    asn_table = RangeTable([
        Range(ip_to_int("203.0.113.0"), ip_to_int("203.0.113.127"), AsnInfo("AS64500", "Example Net", "example.net")),
        Range(ip_to_int("192.0.2.0"), ip_to_int("192.0.2.255"), AsnInfo("AS64501", "Doc Net", "doc.test")),
    ])
    country_table = RangeTable([
        Range(ip_to_int("192.0.2.0"), ip_to_int("192.0.2.255"), CountryInfo("FR", "France", "EU", "Europe")),
        Range(ip_to_int("203.0.113.0"), ip_to_int("203.0.113.255"), CountryInfo("US", "United States", "NA",
                                                                                "North America")),
    ])
    return GeoAsnCatalog(asn_table, country_table)


@pytest.fixture
def mock_geoip_reader():
    """Mock geoip2 Reader whose city() answers 'NL' for every address."""
    reader = Mock()
    reader.city.return_value = Mock(country=Mock(iso_code="NL"))
    return reader


def make_line(ip="203.0.113.7", ts="10/Jan/2024:03:00:00 +0200", domain="cdn.example.com",
              request="GET /index.html", status="200", seconds="0.123", ua="Mozilla/5.0"):
    parts = [ip, f"[{ts}]", domain, request, status, seconds]
    if ua is not None:
        parts.append(ua)
    return "**".join(parts)


@pytest.fixture
def sample_log_body():
    return "\n".join([
        make_line("203.0.113.7", "10/Jan/2024:03:00:00 +0200"),
        make_line("203.0.113.7", "10/Jan/2024:03:00:05 +0200"),
        make_line("198.51.100.9", "10/Jan/2024:03:00:06 +0200"),
        "garbage**line**only",
        make_line("192.0.2.44", "10/Jan/2024:03:00:07 +0200", request="POST /api/upload"),
    ]) + "\n"


@pytest.fixture
def db_lock():
    return asyncio.Lock()
