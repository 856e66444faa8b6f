from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Severity = Literal["info", "warning", "error"]
Policy = Literal["none", "quarantine", "reject"]
AlignmentMode = Literal["r", "s"]
Port = Annotated[int, Field(ge=1, le=65535)]


class ReportModel(BaseModel):
    """Base for everything that ends up in the JSON report (camelCase keys)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class DnsIssue(ReportModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    severity: Severity
    summary: str
    detail: Optional[str] = None


def issue(severity: Severity, summary: str, detail: Optional[str] = None) -> DnsIssue:
    return DnsIssue(severity=severity, summary=summary, detail=detail)


class GeoLocation(ReportModel):
    ip: str
    country: Optional[str] = None
    country_code: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    org: Optional[str] = None
    asn: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class MxRecordInfo(ReportModel):
    exchange: str
    priority: int
    addresses: Optional[List[str]] = None
    geo: Optional[List[GeoLocation]] = None


class MxSummary(ReportModel):
    found: bool
    records: List[MxRecordInfo] = Field(default_factory=list)
    issues: List[DnsIssue] = Field(default_factory=list)


class SpfResult(ReportModel):
    found: bool
    record: Optional[str] = None
    valid_syntax: bool = False
    mechanisms: Optional[List[str]] = None
    all_mechanism: Optional[str] = None
    issues: List[DnsIssue] = Field(default_factory=list)


class DmarcAlignment(ReportModel):
    adkim: AlignmentMode = "r"
    aspf: AlignmentMode = "r"


class DmarcResult(ReportModel):
    found: bool
    record: Optional[str] = None
    valid_syntax: bool = False
    policy: Optional[Policy] = None
    subdomain_policy: Optional[Policy] = None
    pct: Optional[int] = None
    rua: Optional[List[str]] = None
    ruf: Optional[List[str]] = None
    alignment: Optional[DmarcAlignment] = None
    issues: List[DnsIssue] = Field(default_factory=list)


class DkimResult(ReportModel):
    checked: bool
    selector: Optional[str] = None
    found: bool = False
    record: Optional[str] = None
    key_type: Optional[Literal["rsa", "ed25519", "unknown"]] = None
    key_length_bits: Optional[int] = None
    issues: List[DnsIssue] = Field(default_factory=list)


class BimiResult(ReportModel):
    found: bool
    selector: str = "default"
    record: Optional[str] = None
    logo_url: Optional[str] = None
    authority: Optional[str] = None
    valid_svg: Optional[bool] = None
    issues: List[DnsIssue] = Field(default_factory=list)


class MtastsPolicy(ReportModel):
    version: Optional[str] = None
    mode: Optional[str] = None
    max_age: Optional[int] = None
    mx: List[str] = Field(default_factory=list)
    raw: Optional[str] = None


class MtastsResult(ReportModel):
    found_txt: bool = False
    id: Optional[str] = None
    found_policy: bool = False
    policy: Optional[MtastsPolicy] = None
    issues: List[DnsIssue] = Field(default_factory=list)


class TlsRptResult(ReportModel):
    found: bool
    record: Optional[str] = None
    rua: Optional[List[str]] = None
    issues: List[DnsIssue] = Field(default_factory=list)


class DkimSelectorRecord(ReportModel):
    selector: str
    record: str


class DkimDiscoveryResult(ReportModel):
    selectors_tried: List[str] = Field(default_factory=list)
    found: List[DkimSelectorRecord] = Field(default_factory=list)
    issues: List[DnsIssue] = Field(default_factory=list)


class DnsblListing(ReportModel):
    list: str
    type: Literal["ip", "domain"]
    listed: bool
    response_code: Optional[str] = None
    message: str = ""


class BlacklistResults(ReportModel):
    domain: List[DnsblListing] = Field(default_factory=list)
    ips: Dict[str, List[DnsblListing]] = Field(default_factory=dict)
    issues: List[DnsIssue] = Field(default_factory=list)


class ReputationSummary(ReportModel):
    score: int = Field(ge=0, le=100)
    level: Literal["good", "fair", "poor"]
    notes: List[str] = Field(default_factory=list)


class DmarcSimulationInput(ReportModel):
    header_from: str
    envelope_from: str
    assumed_dkim_domain: Optional[str] = None


class DmarcScenarioOutcome(ReportModel):
    policy: Policy
    adkim: AlignmentMode
    aspf: AlignmentMode
    aligned_pass: bool
    pass_by: Literal["dkim", "spf", "none"]
    disposition: Policy
    notes: List[str] = Field(default_factory=list)


class SimulationResults(ReportModel):
    input: DmarcSimulationInput
    scenarios: List[DmarcScenarioOutcome] = Field(default_factory=list)


class StarttlsTimings(ReportModel):
    connect_ms: Optional[int] = None
    helo_ms: Optional[int] = None
    starttls_offer_ms: Optional[int] = None
    tls_handshake_ms: Optional[int] = None
    mail_from_ms: Optional[int] = None


class StarttlsCheck(ReportModel):
    host: str
    ip: Optional[str] = None
    mx_pref: Optional[int] = None
    answer: Optional[str] = None
    connect_ok: bool = False
    helo_ok: bool = False
    starttls_supported: bool = False
    tls_established: bool = False
    tls_protocol: Optional[str] = None
    cipher: Optional[str] = None
    cert_subject_cn: Optional[str] = Field(default=None, alias="certSubjectCN")
    cert_authorized: bool = False
    cert_valid_from: Optional[str] = None
    cert_valid_to: Optional[str] = None
    secure_ok: bool = False
    mail_from_ok: bool = False
    mtasts_ok: Optional[bool] = None
    dane_ok: Optional[Union[bool, Literal["not tested"]]] = None
    timings: StarttlsTimings = Field(default_factory=StarttlsTimings)
    transcript: List[str] = Field(default_factory=list)
    score: Optional[int] = None
    issues: List[DnsIssue] = Field(default_factory=list)


class StarttlsSummary(ReportModel):
    checks: List[StarttlsCheck] = Field(default_factory=list)
    issues: List[DnsIssue] = Field(default_factory=list)


class AnalysisMeta(ReportModel):
    query_timestamp: str
    api_version: str
    timings: Dict[str, int] = Field(default_factory=dict)


class DomainAnalysis(ReportModel):
    domain: str
    mx: MxSummary
    spf: SpfResult
    dmarc: DmarcResult
    dkim: DkimResult
    bimi: BimiResult
    mtasts: MtastsResult
    tlsrpt: TlsRptResult
    dkim_discovery: DkimDiscoveryResult
    blacklists: BlacklistResults
    reputation: ReputationSummary
    simulations: SimulationResults
    starttls: StarttlsSummary
    meta: AnalysisMeta


class StopAfter(str, Enum):
    """Points at which a caller may cut the SMTP probe short."""

    ANSWER = "ANSWER"
    CONNECT = "CONNECT"
    EHLO1 = "EHLO1"
    STARTTLS = "STARTTLS"
    EHLO2 = "EHLO2"
    MAILFROM = "MAILFROM"
    RCPTTO = "RCPTTO"
    DATA = "DATA"


class DomainRequest(BaseModel):
    """Body of the full analysis endpoint."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True
    )

    domain: str = Field(min_length=1, pattern=r"(?i)^[a-z0-9.-]+\.[a-z]{2,}$")
    dkim_selector: Optional[str] = None
    header_from: Optional[str] = None
    envelope_from: Optional[str] = None
    quick_test: bool = False
    compel_tls: bool = False
    direct_tls: bool = False
    ports: Optional[List[Port]] = Field(default=None, max_length=3)
    stop_after: Optional[StopAfter] = None
    mx_host_limit: Optional[int] = Field(default=None, ge=1, le=10)

    def port_list(self) -> List[int]:
        return list(self.ports) if self.ports else [25]
