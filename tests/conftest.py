"""Shared fakes: tests never touch the network."""

import httpx
import pytest

from domain_email_check import dns_utils, http_utils
from domain_email_check.cache import TtlCache
from domain_email_check.config import Settings


class FakeDns:
    """Answers TXT/MX/A queries from dictionaries; an Exception value is raised."""

    def __init__(self):
        self.txt = {}
        self.mx = {}
        self.a = {}
        self.queries = []

    def _answer(self, rdtype, table, name):
        self.queries.append((rdtype, name))
        value = table.get(name, [])
        if isinstance(value, Exception):
            raise value
        return list(value)

    async def query_txt(self, name, settings=None):
        return self._answer("TXT", self.txt, name)

    async def query_mx(self, name, settings=None):
        return self._answer("MX", self.mx, name)

    async def query_a(self, name, settings=None, retries=None):
        return self._answer("A", self.a, name)


class FakeHttp:
    """Serves canned ``httpx.Response`` objects by URL; unknown URLs get a 404."""

    def __init__(self):
        self.responses = {}
        self.calls = []

    async def get(self, url, timeout, settings=None):
        self.calls.append(url)
        value = self.responses.get(url, httpx.Response(404))
        if isinstance(value, Exception):
            raise value
        return value


@pytest.fixture
def fake_dns(monkeypatch):
    fake = FakeDns()
    monkeypatch.setattr(dns_utils, "query_txt", fake.query_txt)
    monkeypatch.setattr(dns_utils, "query_mx", fake.query_mx)
    monkeypatch.setattr(dns_utils, "query_a", fake.query_a)
    return fake


@pytest.fixture
def fake_http(monkeypatch):
    fake = FakeHttp()
    monkeypatch.setattr(http_utils, "http_get", fake.get)
    return fake


@pytest.fixture
def settings():
    """Settings without retry back-off so failure paths stay fast."""
    return Settings(dns_retries=0, fetch_retries=0, geo_retries=0)


@pytest.fixture
def cache():
    return TtlCache()
