"""MX resolution with geolocation, and DNS blacklist (DNSBL) checks.

DNSBL queries follow the usual convention: ``<domain>.<zone>`` for domain
lists and ``<reversed-octets>.<zone>`` for IP lists. Any A answer counts as a
listing; NXDOMAIN, SERVFAIL and timeouts count as not listed.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from . import dns_utils, http_utils
from .cache import TtlCache, default_cache
from .config import Settings, get_settings
from .dns_utils import DnsLookupError
from .models import BlacklistResults, DnsblListing, GeoLocation, MxRecordInfo, MxSummary, issue

logger = logging.getLogger(__name__)


def _to_float(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None and value != "" else None
    except (TypeError, ValueError):
        return None


async def geolocate_ip(ip: str, settings: Optional[Settings] = None) -> Dict[str, Any]:
    """Look ``ip`` up in the geolocation service; any failure gives an empty dict."""
    settings = settings or get_settings()
    url = settings.geo_url.format(ip=ip)
    try:
        response = await dns_utils.retry_operation(
            lambda: http_utils.http_get(url, settings.fetch_timeout, settings),
            retries=settings.geo_retries,
            base_delay=settings.geo_retry_delay,
            retry_on=(httpx.HTTPError,),
        )
    except httpx.HTTPError as e:
        logger.warning("Geolocation failed for %s: %s", ip, http_utils.describe_http_error(url, e))
        return {}
    if not response.is_success:
        return {}
    try:
        data = response.json()
    except ValueError:
        return {}
    if not isinstance(data, dict) or data.get("error"):
        return {}

    asn = data.get("asn")
    return {
        "country": data.get("country_name"),
        "country_code": data.get("country"),
        "region": data.get("region"),
        "city": data.get("city"),
        "org": data.get("org") or data.get("org_name") or data.get("asn_org"),
        "asn": str(asn) if asn else None,
        "latitude": _to_float(data.get("latitude")),
        "longitude": _to_float(data.get("longitude")),
    }


async def resolve_mx_with_geo(domain: str, mx_host_limit: Optional[int] = None,
                              settings: Optional[Settings] = None,
                              cache: Optional[TtlCache] = None) -> MxSummary:
    """Resolve MX hosts (lowest priority first), their IPv4 addresses and geolocation."""
    settings = settings or get_settings()
    cache = cache if cache is not None else default_cache
    issues = []
    try:
        answers = await dns_utils.query_mx(domain, settings)
    except DnsLookupError as e:
        return MxSummary(found=False, issues=[issue("error", "Failed to resolve MX", str(e))])

    if any(exchange == "." for _, exchange in answers):
        issues.append(issue("info", "Domain publishes a null MX", "RFC 7505: the domain accepts no mail."))
    answers = sorted((a for a in answers if a[1] != "."), key=lambda a: a[0])
    if mx_host_limit is not None:
        answers = answers[:mx_host_limit]

    async def locate(ip: str) -> GeoLocation:
        key = f"geo:{ip}"
        geo = cache.get(key)
        if geo is None:
            geo = await geolocate_ip(ip, settings)
            cache.set(key, geo, settings.geo_ttl)
        return GeoLocation(ip=ip, **geo)

    records: List[MxRecordInfo] = []
    for priority, exchange in answers:
        item = MxRecordInfo(exchange=exchange, priority=priority)
        key = f"a:{exchange}"
        addresses = cache.get(key)
        if addresses is None:
            addresses = await dns_utils.query_a_safe(exchange, settings)
            cache.set(key, addresses, settings.a_record_ttl)
        item.addresses = list(addresses)
        if addresses:
            item.geo = await dns_utils.map_limit(addresses, settings.concurrency, locate)
        else:
            issues.append(issue("warning", f"MX host {exchange} has no IPv4 address"))
        records.append(item)

    if not records:
        issues.append(issue("error", "No MX records found",
                            "Add MX records pointing to your mail server/provider."))
    return MxSummary(found=bool(records), records=records, issues=issues)


def reverse_ip(ip: str) -> str:
    """``192.0.2.10`` -> ``10.2.0.192``"""
    return ".".join(reversed(ip.split(".")))


async def dnsbl_lookup(host: str, settings: Optional[Settings] = None) -> Tuple[bool, Optional[str]]:
    """Return ``(listed, response_code)`` for one DNSBL query name."""
    settings = settings or get_settings()
    try:
        addresses = await dns_utils.query_a(host, settings, retries=0)
    except DnsLookupError:
        return False, None
    if addresses:
        return True, addresses[0]
    return False, None


def _listing(zone: str, kind: str, listed: bool, code: Optional[str]) -> DnsblListing:
    if listed:
        message = f"Listed ({code})" if code else "Listed"
    else:
        message = "Not listed"
    return DnsblListing(list=zone, type=kind, listed=listed, response_code=code, message=message)


async def _cached_lookup(host: str, kind: str, settings: Settings, cache: TtlCache) -> Tuple[bool, Optional[str]]:
    key = f"rbl:{kind}:{host}"
    hit = cache.get(key)
    if hit is None:
        hit = await dnsbl_lookup(host, settings)
        cache.set(key, hit, settings.dnsbl_ttl)
    return hit


async def resolve_blacklists(domain: str, mx_records: List[MxRecordInfo],
                             settings: Optional[Settings] = None,
                             cache: Optional[TtlCache] = None) -> BlacklistResults:
    """Check the domain against the domain lists and every MX IPv4 against the IP lists."""
    settings = settings or get_settings()
    cache = cache if cache is not None else default_cache

    async def check_domain(zone: str) -> DnsblListing:
        listed, code = await _cached_lookup(f"{domain}.{zone}", "domain", settings, cache)
        return _listing(zone, "domain", listed, code)

    domain_results = await dns_utils.map_limit(settings.domain_dnsbl_zones, settings.concurrency,
                                               check_domain)

    unique_ips: List[str] = []
    for mx in mx_records:
        for ip in mx.addresses or []:
            if ip not in unique_ips:
                unique_ips.append(ip)

    async def check_ip(ip: str) -> List[DnsblListing]:
        reversed_ip = reverse_ip(ip)

        async def check_zone(zone: str) -> DnsblListing:
            listed, code = await _cached_lookup(f"{reversed_ip}.{zone}", "ip", settings, cache)
            return _listing(zone, "ip", listed, code)

        return await dns_utils.map_limit(settings.ip_dnsbl_zones, settings.concurrency, check_zone)

    ip_results = await dns_utils.map_limit(unique_ips, settings.concurrency, check_ip)
    ips = dict(zip(unique_ips, ip_results))

    issues = []
    listed_zones = [entry.list for entry in domain_results if entry.listed]
    if listed_zones:
        issues.append(issue("error", f"Domain {domain} is listed on {len(listed_zones)} blacklist(s)",
                            ", ".join(listed_zones)))
    for ip, listings in ips.items():
        listed_zones = [entry.list for entry in listings if entry.listed]
        if listed_zones:
            issues.append(issue("warning", f"IP {ip} is listed on {len(listed_zones)} blacklist(s)",
                                ", ".join(listed_zones)))
    return BlacklistResults(domain=domain_results, ips=ips, issues=issues)
