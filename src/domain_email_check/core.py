import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Dict, List, Optional, TypeVar

from . import blacklists, policies, simulation, smtp_probe
from .cache import TtlCache, default_cache
from .config import Settings, get_settings
from .models import (AnalysisMeta, BlacklistResults, DmarcResult, DomainAnalysis, ReputationSummary,
                     SpfResult, StopAfter)
from .smtp_probe import StarttlsRunOptions

logger = logging.getLogger(__name__)

T = TypeVar("T")


def reputation_level(score: int, settings: Optional[Settings] = None) -> str:
    settings = settings or get_settings()
    if score >= settings.good_threshold:
        return "good"
    if score >= settings.fair_threshold:
        return "fair"
    return "poor"


def compute_reputation(spf: SpfResult, dmarc: DmarcResult, blacklist_results: BlacklistResults,
                       settings: Optional[Settings] = None) -> ReputationSummary:
    """Heuristic 0-100 reputation score from SPF, DMARC and blacklist hits."""
    settings = settings or get_settings()
    score = 100
    notes: List[str] = []

    if any(entry.listed for entries in blacklist_results.ips.values() for entry in entries):
        score -= settings.penalty_ip_listed
        notes.append("One or more MX IPs appear on DNSBLs")
    if any(entry.listed for entry in blacklist_results.domain):
        score -= settings.penalty_domain_listed
        notes.append("Domain appears on domain blacklist")
    if not spf.found or not spf.valid_syntax:
        score -= settings.penalty_spf
        notes.append("SPF missing or invalid")
    if not dmarc.found:
        score -= settings.penalty_dmarc_missing
        notes.append("DMARC missing")
    elif dmarc.policy == "none":
        score -= settings.penalty_dmarc_none
        notes.append("DMARC enforcement not enabled (p=none)")
    elif dmarc.policy == "quarantine":
        score -= settings.penalty_dmarc_quarantine
        notes.append("DMARC partially enforced (p=quarantine)")

    score = max(0, min(100, score))
    return ReputationSummary(score=score, level=reputation_level(score, settings), notes=notes)


def _address_domain(value: str) -> str:
    """``Alice <alice@Example.com>`` / ``alice@example.com`` / ``example.com`` -> ``example.com``"""
    value = value.strip().strip("<>").lower()
    if "@" in value:
        value = value.rsplit("@", 1)[1]
    return value.rstrip(">").strip()


async def generate_report(domain: str,
                          dkim_selector: Optional[str] = None,
                          header_from: Optional[str] = None,
                          envelope_from: Optional[str] = None,
                          quick_test: bool = False,
                          compel_tls: bool = False,
                          direct_tls: bool = False,
                          ports: Optional[List[int]] = None,
                          stop_after: Optional[StopAfter] = None,
                          mx_host_limit: Optional[int] = None,
                          settings: Optional[Settings] = None,
                          cache: Optional[TtlCache] = None) -> DomainAnalysis:
    """Run every check for ``domain`` and assemble the report."""
    settings = settings or get_settings()
    cache = cache if cache is not None else default_cache
    domain = domain.strip().lower()
    dkim_selector = (dkim_selector or "").strip().lower() or None
    header_from = _address_domain(header_from or domain)
    envelope_from = _address_domain(envelope_from or domain)
    timings: Dict[str, int] = {}

    async def timed(name: str, aw: Awaitable[T]) -> T:
        started = time.monotonic()
        try:
            return await aw
        finally:
            timings[name] = int((time.monotonic() - started) * 1000)

    logger.info("Analyzing %s", domain)
    mx, spf, dmarc, dkim, bimi, mtasts, tlsrpt, dkim_discovery = await asyncio.gather(
        timed("mx", blacklists.resolve_mx_with_geo(domain, mx_host_limit, settings, cache)),
        timed("spf", policies.resolve_spf(domain, settings)),
        timed("dmarc", policies.resolve_dmarc(domain, settings)),
        timed("dkim", policies.resolve_dkim(domain, dkim_selector, settings)),
        timed("bimi", policies.resolve_bimi(domain, settings=settings)),
        timed("mta-sts", policies.resolve_mtasts(domain, settings)),
        timed("tls-rpt", policies.resolve_tlsrpt(domain, settings)),
        timed("dkim-discovery", policies.discover_dkim_selectors(domain, settings)),
    )

    blacklist_results = await timed("blacklists",
                                    blacklists.resolve_blacklists(domain, mx.records, settings, cache))
    reputation = compute_reputation(spf, dmarc, blacklist_results, settings)
    simulations = simulation.simulate_dmarc(domain, spf, header_from, envelope_from)
    run_options = StarttlsRunOptions(
        quick_test=quick_test,
        compel_tls=compel_tls,
        direct_tls=direct_tls,
        ports=list(ports) if ports else [25],
        stop_after=stop_after,
    )
    starttls = await timed("starttls", smtp_probe.check_starttls(mx.records, mtasts, run_options, settings))

    return DomainAnalysis(
        domain=domain,
        mx=mx,
        spf=spf,
        dmarc=dmarc,
        dkim=dkim,
        bimi=bimi,
        mtasts=mtasts,
        tlsrpt=tlsrpt,
        dkim_discovery=dkim_discovery,
        blacklists=blacklist_results,
        reputation=reputation,
        simulations=simulations,
        starttls=starttls,
        meta=AnalysisMeta(
            query_timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            api_version=settings.api_version,
            timings=timings,
        ),
    )


def _issue_lines(issues, indent="    ") -> List[str]:
    return [f"{indent}! {i.severity}: {i.summary}" + (f" ({i.detail})" if i.detail else "")
            for i in issues]


def human_report(result: DomainAnalysis) -> str:
    lines = []
    d = result
    lines.append(f"Email security report for: {d.domain}")
    lines.append(f"Checked at (UTC): {d.meta.query_timestamp}")
    lines.append("-" * 60)

    lines.append("MX:")
    if not d.mx.records:
        lines.append("  - No MX records.")
    for mx in d.mx.records:
        lines.append(f"  - {mx.priority:>3} {mx.exchange} {', '.join(mx.addresses or [])}")
    lines.extend(_issue_lines(d.mx.issues))
    lines.append("")

    lines.append("SPF:")
    if d.spf.found:
        lines.append(f"  - Record: {d.spf.record}")
        lines.append(f"  - Valid syntax: {d.spf.valid_syntax}; 'all' mechanism: {d.spf.all_mechanism}")
    lines.extend(_issue_lines(d.spf.issues))
    lines.append("")

    lines.append("DMARC:")
    if d.dmarc.found:
        lines.append(f"  - Record: {d.dmarc.record}")
        lines.append(f"  - Policy: {d.dmarc.policy}; pct: {d.dmarc.pct if d.dmarc.pct is not None else 100}")
        if d.dmarc.rua:
            lines.append(f"  - Aggregate reports: {', '.join(d.dmarc.rua)}")
    lines.extend(_issue_lines(d.dmarc.issues))
    lines.append("")

    lines.append("DKIM:")
    if d.dkim.found:
        lines.append(f"  - Selector {d.dkim.selector}: {d.dkim.key_type}"
                     + (f", ~{d.dkim.key_length_bits} bits" if d.dkim.key_length_bits else ""))
    lines.extend(_issue_lines(d.dkim.issues))
    for hit in d.dkim_discovery.found:
        lines.append(f"  - Discovered selector: {hit.selector} ({hit.record[:60]})")
    lines.append("")

    lines.append("BIMI / MTA-STS / TLS-RPT:")
    lines.append(f"  - BIMI: {'found' if d.bimi.found else 'not found'}"
                 + (f", logo {d.bimi.logo_url}" if d.bimi.logo_url else ""))
    lines.extend(_issue_lines(d.bimi.issues))
    mode = d.mtasts.policy.mode if d.mtasts.policy else None
    lines.append(f"  - MTA-STS: TXT {'found' if d.mtasts.found_txt else 'missing'}, "
                 f"policy {'found (mode ' + str(mode) + ')' if d.mtasts.found_policy else 'missing'}")
    lines.extend(_issue_lines(d.mtasts.issues))
    lines.append(f"  - TLS-RPT: {', '.join(d.tlsrpt.rua) if d.tlsrpt.rua else 'not found'}")
    lines.append("")

    lines.append("Blacklists:")
    listed = [e.list for e in d.blacklists.domain if e.listed]
    lines.append(f"  - Domain: {'listed on ' + ', '.join(listed) if listed else 'clean'}")
    for ip, entries in d.blacklists.ips.items():
        listed = [e.list for e in entries if e.listed]
        lines.append(f"  - {ip}: {'listed on ' + ', '.join(listed) if listed else 'clean'}")
    lines.append("")

    lines.append("STARTTLS:")
    if not d.starttls.checks:
        lines.append("  - No hosts probed.")
    for check in d.starttls.checks:
        lines.append(f"  - {check.host} ({check.answer or 'no address'}): score {check.score}/100, "
                     f"TLS {check.tls_protocol or '-'} {check.cipher or ''}".rstrip())
        lines.extend(_issue_lines(check.issues))
    lines.append("")

    lines.append("Summary & score:")
    lines.append(f"  - Reputation (0-100): {d.reputation.score} ({d.reputation.level})")
    for note in d.reputation.notes:
        lines.append(f"    - {note}")
    lines.append("-" * 60)
    total_ms = sum(d.meta.timings.values())
    lines.append(f"Stage timings: {', '.join(f'{k}={v}ms' for k, v in d.meta.timings.items())} "
                 f"(sum {total_ms}ms)")
    return "\n".join(lines)
