"""Tests for MX resolution, geolocation and DNSBL checks."""

import asyncio

import httpx

from domain_email_check import blacklists
from domain_email_check.blacklists import resolve_blacklists, resolve_mx_with_geo, reverse_ip
from domain_email_check.dns_utils import DnsLookupError
from domain_email_check.models import MxRecordInfo

GEO = {
    "ip": "192.0.2.10",
    "country_name": "Netherlands",
    "country": "NL",
    "region": "North Holland",
    "city": "Amsterdam",
    "org": "Example Hosting",
    "asn": "AS64500",
    "latitude": 52.37,
    "longitude": "4.89",
}


def geo_url(ip):
    return f"https://ipapi.co/{ip}/json/"


class TestResolveMxWithGeo:
    def test_sorted_with_addresses_and_geo(self, fake_dns, fake_http, settings, cache):
        fake_dns.mx["example.com"] = [(20, "mx2.example.com"), (10, "mx1.example.com")]
        fake_dns.a["mx1.example.com"] = ["192.0.2.10"]
        fake_dns.a["mx2.example.com"] = ["192.0.2.20"]
        fake_http.responses[geo_url("192.0.2.10")] = httpx.Response(200, json=GEO)

        result = asyncio.run(resolve_mx_with_geo("example.com", settings=settings, cache=cache))
        assert result.found is True
        assert [r.exchange for r in result.records] == ["mx1.example.com", "mx2.example.com"]
        first = result.records[0]
        assert first.addresses == ["192.0.2.10"]
        assert first.geo[0].country == "Netherlands"
        assert first.geo[0].country_code == "NL"
        assert first.geo[0].longitude == 4.89
        # geolocation failure leaves only the address
        assert result.records[1].geo[0].ip == "192.0.2.20"
        assert result.records[1].geo[0].country is None
        assert result.issues == []

    def test_host_limit(self, fake_dns, fake_http, settings, cache):
        fake_dns.mx["example.com"] = [(30, "c.example.com"), (10, "a.example.com"), (20, "b.example.com")]
        result = asyncio.run(resolve_mx_with_geo("example.com", 2, settings, cache))
        assert [r.exchange for r in result.records] == ["a.example.com", "b.example.com"]

    def test_no_mx_is_one_error(self, fake_dns, fake_http, settings, cache):
        result = asyncio.run(resolve_mx_with_geo("example.com", settings=settings, cache=cache))
        assert result.found is False
        assert result.records == []
        assert [(i.severity, i.summary) for i in result.issues] == [("error", "No MX records found")]
        assert result.issues[0].detail == "Add MX records pointing to your mail server/provider."

    def test_lookup_failure(self, fake_dns, fake_http, settings, cache):
        fake_dns.mx["example.com"] = DnsLookupError("NXDOMAIN", "example.com")
        result = asyncio.run(resolve_mx_with_geo("example.com", settings=settings, cache=cache))
        assert result.found is False
        assert [i.summary for i in result.issues] == ["Failed to resolve MX"]

    def test_host_without_ipv4(self, fake_dns, fake_http, settings, cache):
        fake_dns.mx["example.com"] = [(10, "mx.example.com")]
        fake_dns.a["mx.example.com"] = DnsLookupError("NXDOMAIN", "mx.example.com")
        result = asyncio.run(resolve_mx_with_geo("example.com", settings=settings, cache=cache))
        assert result.records[0].addresses == []
        assert result.records[0].geo is None
        assert result.issues[0].severity == "warning"

    def test_cached_lookups_are_reused(self, fake_dns, fake_http, settings, cache):
        fake_dns.mx["example.com"] = [(10, "mx.example.com")]
        fake_dns.a["mx.example.com"] = ["192.0.2.10"]
        fake_http.responses[geo_url("192.0.2.10")] = httpx.Response(200, json=GEO)

        asyncio.run(resolve_mx_with_geo("example.com", settings=settings, cache=cache))
        asyncio.run(resolve_mx_with_geo("example.com", settings=settings, cache=cache))
        assert fake_dns.queries.count(("A", "mx.example.com")) == 1
        assert fake_http.calls == [geo_url("192.0.2.10")]
        assert cache.get("a:mx.example.com") == ["192.0.2.10"]
        assert cache.get("geo:192.0.2.10")["city"] == "Amsterdam"


class TestGeolocateIp:
    def test_error_payload(self, fake_http, settings):
        fake_http.responses[geo_url("10.0.0.1")] = httpx.Response(
            200, json={"ip": "10.0.0.1", "error": True, "reason": "Reserved IP Address"})
        assert asyncio.run(blacklists.geolocate_ip("10.0.0.1", settings)) == {}

    def test_transport_error(self, fake_http, settings):
        fake_http.responses[geo_url("192.0.2.1")] = httpx.ReadTimeout("slow")
        assert asyncio.run(blacklists.geolocate_ip("192.0.2.1", settings)) == {}


def mx(*addresses):
    return MxRecordInfo(exchange="mx.example.com", priority=10, addresses=list(addresses))


class TestResolveBlacklists:
    def test_reverse_ip(self):
        assert reverse_ip("192.0.2.10") == "10.2.0.192"

    def test_clean(self, fake_dns, settings, cache):
        result = asyncio.run(resolve_blacklists("example.com", [mx("192.0.2.10")], settings, cache))
        assert [e.list for e in result.domain] == settings.domain_dnsbl_zones
        assert all(not e.listed and e.message == "Not listed" for e in result.domain)
        assert list(result.ips) == ["192.0.2.10"]
        assert len(result.ips["192.0.2.10"]) == len(settings.ip_dnsbl_zones)
        assert result.issues == []

    def test_listed_ip_and_domain(self, fake_dns, settings, cache):
        fake_dns.a["10.2.0.192.zen.spamhaus.org"] = ["127.0.0.2"]
        fake_dns.a["example.com.dbl.spamhaus.org"] = ["127.0.1.2"]
        result = asyncio.run(resolve_blacklists("example.com", [mx("192.0.2.10")], settings, cache))

        zen = next(e for e in result.ips["192.0.2.10"] if e.list == "zen.spamhaus.org")
        assert zen.listed is True
        assert zen.type == "ip"
        assert zen.response_code == "127.0.0.2"
        assert zen.message == "Listed (127.0.0.2)"
        assert [(i.severity, i.summary) for i in result.issues] == [
            ("error", "Domain example.com is listed on 1 blacklist(s)"),
            ("warning", "IP 192.0.2.10 is listed on 1 blacklist(s)"),
        ]

    def test_lookup_errors_mean_not_listed(self, fake_dns, settings, cache):
        fake_dns.a["10.2.0.192.zen.spamhaus.org"] = DnsLookupError("TIMEOUT", "x")
        result = asyncio.run(resolve_blacklists("example.com", [mx("192.0.2.10")], settings, cache))
        assert not any(e.listed for e in result.ips["192.0.2.10"])

    def test_duplicate_ips_checked_once(self, fake_dns, settings, cache):
        records = [mx("192.0.2.10"), mx("192.0.2.10", "192.0.2.11")]
        result = asyncio.run(resolve_blacklists("example.com", records, settings, cache))
        assert list(result.ips) == ["192.0.2.10", "192.0.2.11"]
        queried = [name for kind, name in fake_dns.queries if name.startswith("10.2.0.192.")]
        assert len(queried) == len(settings.ip_dnsbl_zones)

    def test_results_are_cached(self, fake_dns, settings, cache):
        asyncio.run(resolve_blacklists("example.com", [mx("192.0.2.10")], settings, cache))
        first = len(fake_dns.queries)
        asyncio.run(resolve_blacklists("example.com", [mx("192.0.2.10")], settings, cache))
        assert len(fake_dns.queries) == first
        assert cache.get("rbl:domain:example.com.dbl.spamhaus.org") == (False, None)
