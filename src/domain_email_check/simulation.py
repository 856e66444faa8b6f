"""What would DMARC do? Enumerate policy x adkim x aspf for a From pair."""

from typing import List

from .models import DmarcScenarioOutcome, DmarcSimulationInput, SimulationResults, SpfResult

POLICIES = ("none", "quarantine", "reject")
ALIGNMENT_MODES = ("r", "s")


def get_org_domain(name: str) -> str:
    """
    Organizational domain by the last-two-labels heuristic.

    No public suffix list is consulted, so both ``a.b.example.co.uk`` and
    ``example.co.uk`` map to ``co.uk``; names of one or two labels are
    returned unchanged.
    """
    parts = [p for p in name.split(".") if p]
    if len(parts) <= 2:
        return name
    return ".".join(parts[-2:])


def is_aligned(auth_domain: str, from_domain: str, mode: str) -> bool:
    if mode == "s":
        return auth_domain == from_domain
    return get_org_domain(auth_domain) == get_org_domain(from_domain)


def simulate_dmarc(domain: str, spf: SpfResult, header_from: str, envelope_from: str) -> SimulationResults:
    """
    Compute the disposition for all 12 policy/alignment combinations.

    The DKIM signature is assumed valid and signed by ``domain``; SPF is
    assumed to pass whenever the domain publishes a record.
    """
    scenarios: List[DmarcScenarioOutcome] = []
    for policy in POLICIES:
        for adkim in ALIGNMENT_MODES:
            for aspf in ALIGNMENT_MODES:
                dkim_aligned = is_aligned(domain, header_from, adkim)
                spf_aligned = spf.found and is_aligned(envelope_from, header_from, aspf)
                aligned_pass = dkim_aligned or spf_aligned

                if dkim_aligned:
                    pass_by = "dkim"
                    notes = [f"DKIM domain ({domain}) aligned with header From ({header_from}) "
                             f"under {adkim.upper()} alignment"]
                elif spf_aligned:
                    pass_by = "spf"
                    notes = [f"SPF envelope From ({envelope_from}) aligned with header From "
                             f"({header_from}) under {aspf.upper()} alignment"]
                else:
                    pass_by = "none"
                    notes = ["Neither DKIM nor SPF aligned with header From"]

                scenarios.append(DmarcScenarioOutcome(
                    policy=policy,
                    adkim=adkim,
                    aspf=aspf,
                    aligned_pass=aligned_pass,
                    pass_by=pass_by,
                    disposition="none" if aligned_pass else policy,
                    notes=notes,
                ))

    return SimulationResults(
        input=DmarcSimulationInput(header_from=header_from, envelope_from=envelope_from,
                                   assumed_dkim_domain=domain),
        scenarios=scenarios,
    )
