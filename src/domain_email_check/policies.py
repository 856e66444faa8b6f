"""Lookups of the DNS-published email authentication policies.

Every resolver returns a result model and never raises for DNS or HTTP
trouble: failures are turned into ``DnsIssue`` entries on the result.
"""

import logging
import re
from typing import List, Optional

import httpx

from . import dns_utils, http_utils
from .config import Settings, get_settings
from .dns_utils import DnsLookupError
from .models import (BimiResult, DkimDiscoveryResult, DkimResult, DkimSelectorRecord, DmarcResult,
                     MtastsResult, SpfResult, TlsRptResult, issue)

logger = logging.getLogger(__name__)

MIN_DKIM_KEY_BITS = 1024


def _first_with_tag(txts: List[str], version_tag: str) -> Optional[str]:
    pattern = re.compile(rf"^{re.escape(version_tag)}", re.I)
    return next((t for t in txts if pattern.match(t)), None)


async def resolve_spf(domain: str, settings: Optional[Settings] = None) -> SpfResult:
    settings = settings or get_settings()
    try:
        txts = await dns_utils.query_txt(domain, settings)
    except DnsLookupError as e:
        return SpfResult(found=False, issues=[issue("error", "Failed to resolve SPF", str(e))])

    spfs = [t for t in txts if t.lower().startswith("v=spf1")]
    if not spfs:
        return SpfResult(found=False, issues=[
            issue("error", "No SPF record found",
                  f'Publish a TXT record at {domain} with "v=spf1 ..."'),
        ])

    result = dns_utils.parse_spf(spfs[0])
    if len(spfs) > 1:
        # RFC 7208 4.5: more than one record is a permerror
        result.issues.append(issue("error", "Multiple SPF records found",
                                   f"{len(spfs)} TXT records start with v=spf1; merge them."))
    return result


async def resolve_dmarc(domain: str, settings: Optional[Settings] = None) -> DmarcResult:
    settings = settings or get_settings()
    name = f"_dmarc.{domain}"
    try:
        txts = await dns_utils.query_txt(name, settings)
    except DnsLookupError as e:
        return DmarcResult(found=False, issues=[issue("error", "Failed to resolve DMARC", str(e))])

    record = _first_with_tag(txts, "v=dmarc1")
    if record is None:
        return DmarcResult(found=False, issues=[
            issue("error", "No DMARC record found",
                  f'Publish a TXT record at {name} with "v=DMARC1; p=..."'),
        ])
    return dns_utils.parse_dmarc(record)


async def resolve_dkim(domain: str, selector: Optional[str] = None,
                       settings: Optional[Settings] = None) -> DkimResult:
    """Check one DKIM selector. Without a selector nothing is queried."""
    settings = settings or get_settings()
    if not selector:
        return DkimResult(checked=False, found=False, issues=[
            issue("info", "DKIM selector not provided",
                  "Provide a selector to check DKIM (e.g., selector1)."),
        ])

    name = f"{selector}._domainkey.{domain}"
    try:
        txts = await dns_utils.query_txt(name, settings)
    except DnsLookupError as e:
        return DkimResult(checked=True, selector=selector, found=False,
                          issues=[issue("error", "Failed to resolve DKIM", str(e))])

    record = _first_with_tag(txts, "v=dkim1;") or (txts[0] if txts else None)
    if record is None:
        return DkimResult(checked=True, selector=selector, found=False,
                          issues=[issue("error", "No DKIM record found", f"Expected TXT record at {name}")])

    key_type, key_bits = dns_utils.parse_dkim_key(record)
    issues = []
    if not dns_utils.parse_tag_list(record).get("p"):
        issues.append(issue("warning", "DKIM key is revoked (empty p=)",
                            f"Selector {selector} publishes no public key."))
    elif key_bits is not None and key_bits < MIN_DKIM_KEY_BITS:
        issues.append(issue("warning", "DKIM key looks weak",
                            f"Estimated ~{key_bits} bits; use a 2048-bit RSA key."))
    return DkimResult(checked=True, selector=selector, found=True, record=record,
                      key_type=key_type, key_length_bits=key_bits, issues=issues)


async def _check_bimi_logo(logo_url: str, settings: Settings, issues: list) -> Optional[bool]:
    try:
        response = await http_utils.http_get(logo_url, settings.bimi_logo_timeout, settings)
    except httpx.HTTPError as e:
        issues.append(issue("warning", "Unable to fetch BIMI logo URL",
                            http_utils.describe_http_error(logo_url, e)))
        return None
    if not response.is_success:
        issues.append(issue("warning", "Unable to fetch BIMI logo URL", str(response.status_code)))
        return None
    if "image/svg" in response.headers.get("content-type", ""):
        return True
    return "<svg" in response.text.lower()


async def resolve_bimi(domain: str, selector: str = "default",
                       settings: Optional[Settings] = None) -> BimiResult:
    settings = settings or get_settings()
    name = f"{selector}._bimi.{domain}"
    try:
        txts = await dns_utils.query_txt(name, settings)
    except DnsLookupError as e:
        return BimiResult(found=False, selector=selector,
                          issues=[issue("error", "Failed to resolve BIMI", str(e))])

    record = _first_with_tag(txts, "v=bimi1;") or (txts[0] if txts else None)
    if record is None:
        return BimiResult(found=False, selector=selector,
                          issues=[issue("error", "No BIMI record found", f"Expected TXT at {name}")])

    tags = dns_utils.parse_tag_list(record)
    logo_url = tags.get("l") or None
    authority = tags.get("a") or None
    issues: list = []
    valid_svg = None
    if logo_url and re.match(r"^https?://", logo_url, re.I):
        valid_svg = await _check_bimi_logo(logo_url, settings, issues)
        if valid_svg is False:
            issues.append(issue("warning", "BIMI logo is not an SVG image", logo_url))
    elif logo_url:
        issues.append(issue("warning", "BIMI logo URL is not http(s)", logo_url))

    return BimiResult(found=True, selector=selector, record=record, logo_url=logo_url,
                      authority=authority, valid_svg=valid_svg, issues=issues)


async def resolve_mtasts(domain: str, settings: Optional[Settings] = None) -> MtastsResult:
    """
    Check the ``_mta-sts`` TXT record and the HTTPS policy file independently.

    Both are optional, so a missing piece is a warning.
    """
    settings = settings or get_settings()
    result = MtastsResult()
    txt_name = f"_mta-sts.{domain}"
    try:
        txts = await dns_utils.query_txt(txt_name, settings)
    except DnsLookupError as e:
        if e.code == "NXDOMAIN":
            txts = []
        else:
            txts = None
            result.issues.append(issue("error", "Failed to resolve MTA-STS TXT", str(e)))
    if txts is not None:
        record = _first_with_tag(txts, "v=stsv1;")
        if record:
            result.found_txt = True
            result.id = dns_utils.parse_tag_list(record).get("id") or None
        else:
            result.issues.append(issue("warning", "No MTA-STS TXT found", f"Expected TXT at {txt_name}"))

    url = f"https://mta-sts.{domain}/.well-known/mta-sts.txt"
    try:
        response = await dns_utils.retry_operation(
            lambda: http_utils.http_get(url, settings.fetch_timeout, settings),
            retries=settings.fetch_retries,
            base_delay=settings.fetch_retry_delay,
            retry_on=(httpx.TransportError,),
        )
    except httpx.HTTPError as e:
        result.issues.append(issue("warning", "Error fetching MTA-STS policy",
                                   http_utils.describe_http_error(url, e)))
        return result

    if not response.is_success:
        result.issues.append(issue("warning", "Failed to fetch MTA-STS policy", str(response.status_code)))
        return result

    policy = dns_utils.parse_mtasts_policy(response.text)
    result.found_policy = True
    result.policy = policy
    if policy.version != "STSv1":
        result.issues.append(issue("warning", "MTA-STS policy version is not STSv1", policy.version))
    if policy.mode not in ("enforce", "testing", "none"):
        result.issues.append(issue("warning", "MTA-STS policy mode is missing or invalid", policy.mode))
    elif policy.mode == "testing":
        result.issues.append(issue("info", "MTA-STS policy is in testing mode",
                                   "Switch to mode: enforce once TLS reports are clean."))
    if not policy.mx:
        result.issues.append(issue("warning", "MTA-STS policy lists no mx patterns"))
    if policy.max_age is None:
        result.issues.append(issue("warning", "MTA-STS policy max_age is missing or invalid"))
    return result


async def resolve_tlsrpt(domain: str, settings: Optional[Settings] = None) -> TlsRptResult:
    settings = settings or get_settings()
    name = f"_smtp._tls.{domain}"
    try:
        txts = await dns_utils.query_txt(name, settings)
    except DnsLookupError as e:
        if e.code != "NXDOMAIN":
            return TlsRptResult(found=False, issues=[issue("error", "Failed to resolve TLS-RPT", str(e))])
        txts = []

    record = _first_with_tag(txts, "v=tlsrptv1;")
    if record is None:
        return TlsRptResult(found=False,
                            issues=[issue("warning", "No TLS-RPT record found", f"Expected TXT at {name}")])

    rua = dns_utils.split_uri_list(dns_utils.parse_tag_list(record).get("rua"))
    issues = []
    if not rua:
        issues.append(issue("warning", "TLS-RPT record has no rua", "Add rua=mailto:... to receive reports."))
    return TlsRptResult(found=True, record=record, rua=rua, issues=issues)


async def discover_dkim_selectors(domain: str, settings: Optional[Settings] = None) -> DkimDiscoveryResult:
    """Probe a shortlist of common selectors; misses are expected and not reported."""
    settings = settings or get_settings()
    selectors = list(settings.discovery_selectors)

    async def probe(selector: str) -> Optional[DkimSelectorRecord]:
        try:
            txts = await dns_utils.query_txt(f"{selector}._domainkey.{domain}", settings)
        except DnsLookupError:
            return None
        record = _first_with_tag(txts, "v=dkim1;") or (txts[0] if txts else None)
        return DkimSelectorRecord(selector=selector, record=record) if record else None

    hits = await dns_utils.map_limit(selectors, settings.concurrency, probe)
    found = [h for h in hits if h is not None]
    logger.debug("DKIM discovery for %s: %d/%d selectors found", domain, len(found), len(selectors))
    return DkimDiscoveryResult(selectors_tried=selectors, found=found)
