import asyncio
import base64
import binascii
import logging
import math
import re
from functools import lru_cache
from typing import (Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, Type,
                    TypeVar)

import dns.asyncresolver
import dns.exception
import dns.resolver

from .config import Settings, get_settings
from .models import DmarcAlignment, DmarcResult, MtastsPolicy, SpfResult, issue

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

# ---------- Configuration ----------
SPF_MAX_INCLUDES = 10
DKIM_KEY_LENGTH_FACTOR = 0.73
FALLBACK_NAMESERVERS = ["8.8.8.8", "8.8.4.4", "1.1.1.1"]
# -----------------------------------


class DnsLookupError(Exception):
    """A DNS query failed (as opposed to answering with no records)."""

    def __init__(self, code: str, name: str):
        self.code = code
        self.name = name
        super().__init__(f"{code} for {name}")


class TransientDnsError(DnsLookupError):
    """SERVFAIL or timeout; worth retrying."""


@lru_cache(maxsize=8)
def create_resolver(nameservers: Tuple[str, ...] = (), timeout: float = 3.0
                    ) -> dns.asyncresolver.Resolver:
    """
    Build an async resolver, falling back to public DNS when the system has none.

    Resolvers are cached per (nameservers, timeout) pair.
    """
    try:
        resolver = dns.asyncresolver.Resolver()
        if not resolver.nameservers:
            raise dns.resolver.NoResolverConfiguration("no nameservers")
    except (dns.resolver.NoResolverConfiguration, OSError):
        resolver = dns.asyncresolver.Resolver(configure=False)
        logger.debug("System DNS not available, using public DNS servers")

    if nameservers:
        resolver.nameservers = list(nameservers)
    elif not resolver.nameservers:
        resolver.nameservers = FALLBACK_NAMESERVERS
    resolver.timeout = timeout
    resolver.lifetime = timeout
    return resolver


async def with_timeout(aw: Awaitable[T], seconds: float) -> T:
    """Race ``aw`` against a timer; raises ``asyncio.TimeoutError`` when the timer wins."""
    return await asyncio.wait_for(aw, timeout=seconds)


async def retry_operation(op: Callable[[], Awaitable[T]], retries: int = 2,
                          base_delay: float = 0.2,
                          retry_on: Tuple[Type[BaseException], ...] = (Exception,)) -> T:
    """
    Await ``op()`` up to ``retries + 1`` times with exponential backoff.

    The delay before attempt ``n + 1`` is ``base_delay * 2 ** n``. The last
    exception is re-raised once the retries are used up.
    """
    attempt = 0
    while True:
        try:
            return await op()
        except retry_on as e:
            if attempt >= retries:
                raise
            delay = base_delay * (2 ** attempt)
            logger.debug("attempt %d failed (%s), retrying in %.2fs", attempt + 1, e, delay)
            await asyncio.sleep(delay)
            attempt += 1


async def map_limit(items: Iterable[T], limit: int, fn: Callable[[T], Awaitable[R]]) -> List[R]:
    """
    Apply ``fn`` to every item with at most ``limit`` calls in flight.

    A fixed set of workers pulls the next index from a shared counter; results
    keep the input order.
    """
    pending = list(items)
    results: List[Any] = [None] * len(pending)
    next_index = 0

    async def worker():
        nonlocal next_index
        while next_index < len(pending):
            current = next_index
            next_index += 1
            results[current] = await fn(pending[current])

    workers = [worker() for _ in range(min(max(limit, 1), len(pending)))]
    await asyncio.gather(*workers)
    return results


async def _resolve(name: str, rdtype: str, settings: Settings, retries: Optional[int] = None):
    resolver = create_resolver(tuple(settings.nameservers or ()), settings.dns_timeout)

    async def attempt():
        try:
            return await with_timeout(resolver.resolve(name, rdtype), settings.dns_timeout)
        except (dns.resolver.NoAnswer, dns.resolver.NoMetaqueries):
            return None
        except dns.resolver.NXDOMAIN as e:
            raise DnsLookupError("NXDOMAIN", name) from e
        except dns.resolver.NoNameservers as e:
            raise TransientDnsError("SERVFAIL", name) from e
        except (dns.exception.Timeout, asyncio.TimeoutError) as e:
            raise TransientDnsError("TIMEOUT", name) from e
        except dns.exception.DNSException as e:
            raise DnsLookupError(type(e).__name__.upper(), name) from e

    if retries is None:
        retries = settings.dns_retries
    return await retry_operation(attempt, retries=retries, base_delay=settings.dns_retry_delay,
                                 retry_on=(TransientDnsError,))


async def query_txt(name: str, settings: Optional[Settings] = None) -> List[str]:
    """Return the TXT strings at ``name`` (chunks joined), or an empty list when there are none."""
    settings = settings or get_settings()
    answers = await _resolve(name, "TXT", settings)
    if answers is None:
        return []
    txts: List[str] = []
    for r in answers:
        # r.strings holds the 255-byte chunks of one record
        txt = b"".join(r.strings).decode("utf-8", errors="replace")
        txts.append(txt.strip())
    return txts


async def query_mx(name: str, settings: Optional[Settings] = None) -> List[Tuple[int, str]]:
    """Return ``(priority, exchange)`` pairs in answer order."""
    settings = settings or get_settings()
    answers = await _resolve(name, "MX", settings)
    if answers is None:
        return []
    return [(r.preference, str(r.exchange).rstrip(".") or ".") for r in answers]


async def query_a(name: str, settings: Optional[Settings] = None,
                  retries: Optional[int] = None) -> List[str]:
    settings = settings or get_settings()
    answers = await _resolve(name, "A", settings, retries=retries)
    if answers is None:
        return []
    return [r.address for r in answers]


async def query_a_safe(name: str, settings: Optional[Settings] = None) -> List[str]:
    """Like ``query_a`` but an unresolvable name yields no addresses."""
    try:
        return await query_a(name, settings)
    except DnsLookupError as e:
        logger.debug("A lookup failed: %s", e)
        return []


# ---------- Record parsers ----------

SPF_SYNTAX_RE = re.compile(
    r"^v=spf1(\s+[-+~?]?(a|mx|ip4:\S+|ip6:\S+|include:\S+|exists:\S+|ptr|all|redirect=\S+))*\s*$",
    re.I,
)
SPF_ALL_RE = re.compile(r"^[-+~?]?all$", re.I)
SPF_INCLUDE_RE = re.compile(r"^[-+~?]?include:", re.I)


def parse_tag_list(record: str) -> Dict[str, str]:
    """Parse ``k=v; k2=v2`` tag lists (DMARC, DKIM, BIMI, MTA-STS, TLS-RPT). Keys are lower-cased."""
    tags: Dict[str, str] = {}
    for part in record.split(";"):
        part = part.strip()
        if not part:
            continue
        key, _, value = part.partition("=")
        tags[key.strip().lower()] = value.strip()
    return tags


def split_uri_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def parse_spf(record: str) -> SpfResult:
    """Validate an SPF record that has already been picked out of the TXT set."""
    issues = []
    normalized = re.sub(r"\s+", " ", record.strip())
    valid_syntax = bool(SPF_SYNTAX_RE.match(normalized))
    if not valid_syntax:
        issues.append(issue("error", "SPF syntax looks invalid",
                            "Check for stray characters or malformed mechanisms."))

    tokens = normalized.split(" ")[1:]
    mechanisms = [t for t in tokens if not t.lower().startswith("redirect=")]
    all_mechanism = next((t for t in tokens if SPF_ALL_RE.match(t)), None)

    if all_mechanism is None:
        issues.append(issue("warning", "No all mechanism at the end",
                            "Add ~all or -all at the end to define default behavior."))
    elif all_mechanism.lower() in ("all", "+all"):
        issues.append(issue("error", "SPF ends with +all (permits anything)",
                            "Use ~all (softfail) or -all (fail) to restrict senders."))

    include_count = sum(1 for m in mechanisms if SPF_INCLUDE_RE.match(m))
    if include_count > SPF_MAX_INCLUDES:
        issues.append(issue("warning", "Too many include mechanisms",
                            f"{include_count} includes; SPF has a {SPF_MAX_INCLUDES}-DNS-lookup "
                            "limit, consider flattening."))

    return SpfResult(found=True, record=record, valid_syntax=valid_syntax,
                     mechanisms=mechanisms, all_mechanism=all_mechanism, issues=issues)


def parse_dmarc(record: str) -> DmarcResult:
    """Parse a DMARC record into policy, reporting and alignment fields."""
    issues = []
    valid_syntax = bool(re.match(r"^v=dmarc1;", record, re.I))
    if not valid_syntax:
        issues.append(issue("error", "DMARC syntax looks invalid",
                            'Record must start with "v=DMARC1;"'))

    tags = parse_tag_list(record)
    policy = tags.get("p", "").lower()
    if policy not in ("none", "quarantine", "reject"):
        policy = None
        issues.append(issue("warning", "No valid policy (p) found",
                            "Set p=quarantine or p=reject for protection."))

    subdomain_policy = tags.get("sp", "").lower()
    if subdomain_policy not in ("none", "quarantine", "reject"):
        subdomain_policy = None

    pct = None
    if tags.get("pct"):
        try:
            value = float(tags["pct"])
        except ValueError:
            value = math.nan
        if math.isnan(value):
            issues.append(issue("warning", "DMARC pct is not a number", tags["pct"]))
        else:
            # clamp before int() so "1e999" becomes 100
            pct = int(round(min(100.0, max(0.0, value))))

    adkim = tags.get("adkim", "r").lower()
    aspf = tags.get("aspf", "r").lower()
    alignment = DmarcAlignment(adkim=adkim if adkim in ("r", "s") else "r",
                               aspf=aspf if aspf in ("r", "s") else "r")

    if policy == "none":
        issues.append(issue("warning", "DMARC policy is none",
                            "Consider p=quarantine or p=reject to enforce protection."))

    return DmarcResult(
        found=True,
        record=record,
        valid_syntax=valid_syntax,
        policy=policy,
        subdomain_policy=subdomain_policy,
        pct=pct,
        rua=split_uri_list(tags.get("rua")) or None,
        ruf=split_uri_list(tags.get("ruf")) or None,
        alignment=alignment,
        issues=issues,
    )


def parse_dkim_key(record: str) -> Tuple[str, Optional[int]]:
    """
    Return ``(key_type, key_length_bits)`` for a DKIM record.

    The RSA key length is an estimate: decoded bytes of ``p=`` times 8, scaled
    by an empirical 0.73 to discount the SubjectPublicKeyInfo wrapping. It is
    not read from the ASN.1 structure.
    """
    tags = parse_tag_list(record)
    k = tags.get("k", "").lower()
    key_type = k if k in ("rsa", "ed25519") else "unknown"

    pub = re.sub(r"\s+", "", tags.get("p", ""))
    if not pub or key_type != "rsa":
        return key_type, None
    try:
        raw = base64.b64decode(pub + "=" * (-len(pub) % 4))
    except (binascii.Error, ValueError):
        return key_type, None
    return key_type, int(len(raw) * 8 * DKIM_KEY_LENGTH_FACTOR + 0.5)


def parse_mtasts_policy(text: str) -> MtastsPolicy:
    """Parse the ``key: value`` lines of an MTA-STS policy file."""
    lines = [line.strip() for line in re.split(r"\r?\n", text)]
    lines = [line for line in lines if line and not line.startswith("#")]
    values: Dict[str, str] = {}
    mx: List[str] = []
    for line in lines:
        key, _, value = line.partition(":")
        key = key.strip().lower()
        if not key:
            continue
        if key == "mx":
            mx.append(value.strip())
        else:
            values[key] = value.strip()

    max_age = values.get("max_age")
    return MtastsPolicy(
        version=values.get("version") or None,
        mode=values.get("mode") or None,
        max_age=int(max_age) if max_age and re.fullmatch(r"[0-9]+", max_age) else None,
        mx=mx,
        raw=text,
    )
