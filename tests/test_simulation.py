"""Tests for the DMARC disposition simulation."""

from domain_email_check.models import SpfResult
from domain_email_check.simulation import get_org_domain, is_aligned, simulate_dmarc

SPF_FOUND = SpfResult(found=True, record="v=spf1 -all", valid_syntax=True)
SPF_MISSING = SpfResult(found=False)


class TestOrgDomain:
    def test_last_two_labels(self):
        assert get_org_domain("mail.example.com") == "example.com"
        assert get_org_domain("a.b.example.co.uk") == "co.uk"

    def test_short_names_unchanged(self):
        assert get_org_domain("example.co.uk") == "co.uk"
        assert get_org_domain("example.com") == "example.com"
        assert get_org_domain("localhost") == "localhost"


class TestIsAligned:
    def test_relaxed(self):
        assert is_aligned("mail.example.com", "example.com", "r") is True
        assert is_aligned("example.net", "example.com", "r") is False

    def test_strict(self):
        assert is_aligned("example.com", "example.com", "s") is True
        assert is_aligned("mail.example.com", "example.com", "s") is False


class TestSimulateDmarc:
    def test_twelve_distinct_scenarios(self):
        result = simulate_dmarc("example.com", SPF_FOUND, "example.com", "example.com")
        triples = [(s.policy, s.adkim, s.aspf) for s in result.scenarios]
        assert len(triples) == 12
        assert len(set(triples)) == 12
        assert triples[0] == ("none", "r", "r")
        assert triples[-1] == ("reject", "s", "s")

    def test_dkim_aligned_always_passes(self):
        result = simulate_dmarc("example.com", SPF_MISSING, "example.com", "other.net")
        assert all(s.aligned_pass and s.pass_by == "dkim" for s in result.scenarios)
        assert all(s.disposition == "none" for s in result.scenarios)
        assert result.input.assumed_dkim_domain == "example.com"

    def test_subdomain_header_from(self):
        """A subdomain From only aligns under relaxed modes."""
        result = simulate_dmarc("example.com", SPF_FOUND, "news.example.com", "bounce.example.com")
        by_modes = {(s.policy, s.adkim, s.aspf): s for s in result.scenarios}

        assert by_modes[("reject", "r", "s")].pass_by == "dkim"
        assert by_modes[("reject", "s", "r")].pass_by == "spf"
        failed = by_modes[("reject", "s", "s")]
        assert failed.aligned_pass is False
        assert failed.pass_by == "none"
        assert failed.disposition == "reject"
        assert failed.notes == ["Neither DKIM nor SPF aligned with header From"]
        assert by_modes[("quarantine", "s", "s")].disposition == "quarantine"
        assert by_modes[("none", "s", "s")].disposition == "none"

    def test_spf_missing_never_aligns(self):
        result = simulate_dmarc("example.com", SPF_MISSING, "other.net", "other.net")
        assert not any(s.pass_by == "spf" for s in result.scenarios)
        assert [s.disposition for s in result.scenarios] == (
            ["none"] * 4 + ["quarantine"] * 4 + ["reject"] * 4)

    def test_notes_name_the_alignment_mode(self):
        result = simulate_dmarc("example.com", SPF_FOUND, "example.com", "example.com")
        assert result.scenarios[0].notes == [
            "DKIM domain (example.com) aligned with header From (example.com) under R alignment"]
