"""Runtime configuration for the domain email checks.

All tunables live on one ``Settings`` object which can be overridden through
environment variables prefixed with ``DOMAIN_EMAIL_CHECK_`` (for example
``DOMAIN_EMAIL_CHECK_DNS_TIMEOUT=5``).
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

API_VERSION = "1.2.0"

# ---------- Defaults ----------
DISCOVERY_DKIM_SELECTORS = [
    "default", "selector1", "selector2", "k1", "s1", "google", "mail", "mx", "smtp"
]
DOMAIN_DNSBL_ZONES = [
    "dbl.spamhaus.org",        # Spamhaus Domain Block List
    "multi.surbl.org",         # SURBL multi
    "uribl.com",               # URIBL
]
IP_DNSBL_ZONES = [
    "zen.spamhaus.org",        # SBL + XBL + PBL combined
    "sbl.spamhaus.org",
    "xbl.spamhaus.org",
    "pbl.spamhaus.org",
    "b.barracudacentral.org",
    "bl.spamcop.net",
    "dnsbl.sorbs.net",
    "bl.spamrats.com",
    "ips.backscatterer.org",
    "bl.blocklist.de",
    "dnsbl-1.uceprotect.net",  # level 1 only, levels 2/3 list whole networks
]
# -------------------------------


class Settings(BaseSettings):
    """Timeouts, cache TTLs, blacklist zones and scoring policy."""

    model_config = SettingsConfigDict(env_prefix="DOMAIN_EMAIL_CHECK_", extra="ignore")

    api_version: str = API_VERSION
    nameservers: Optional[List[str]] = Field(
        default=None, description="Custom nameservers, system resolver when unset"
    )

    # timeouts (seconds)
    dns_timeout: float = 3.0
    fetch_timeout: float = 5.0
    bimi_logo_timeout: float = 5.0
    smtp_timeout: float = 4.0
    mail_from_grace: float = Field(
        default=3.0, description="Extra wait for the MAIL FROM reply on top of smtp_timeout"
    )

    # retries
    dns_retries: int = 2
    dns_retry_delay: float = 0.2
    fetch_retries: int = 2
    fetch_retry_delay: float = 0.3
    geo_retries: int = 1
    geo_retry_delay: float = 0.25

    # cache TTLs (seconds)
    a_record_ttl: float = 600.0
    geo_ttl: float = 3600.0
    dnsbl_ttl: float = 600.0

    concurrency: int = Field(default=5, description="Parallelism cap for fan-out lookups")

    discovery_selectors: List[str] = Field(
        default_factory=lambda: DISCOVERY_DKIM_SELECTORS.copy()
    )
    domain_dnsbl_zones: List[str] = Field(default_factory=lambda: DOMAIN_DNSBL_ZONES.copy())
    ip_dnsbl_zones: List[str] = Field(default_factory=lambda: IP_DNSBL_ZONES.copy())

    geo_url: str = "https://ipapi.co/{ip}/json/"
    user_agent: str = "domain-email-check/1.2 (+mail posture probe)"

    # SMTP probe
    probe_hostname: str = "probe.domain-email-check"
    max_probe_hosts: int = Field(default=3, description="MX hosts probed in full mode")

    # reputation policy
    good_threshold: int = 80
    fair_threshold: int = 60
    penalty_ip_listed: int = 40
    penalty_domain_listed: int = 30
    penalty_spf: int = 10
    penalty_dmarc_missing: int = 15
    penalty_dmarc_none: int = 8
    penalty_dmarc_quarantine: int = 2


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()
