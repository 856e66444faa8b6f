"""Command-line entry point tests."""

import json

import pytest

from domain_email_check import cli
from domain_email_check.cache import default_cache
from domain_email_check.models import StopAfter


@pytest.fixture(autouse=True)
def fresh_cache():
    default_cache.clear()


class TestMain:
    def test_quiet_prints_json(self, fake_dns, fake_http, capsys):
        cli.main(["example.com", "--quiet"])
        data = json.loads(capsys.readouterr().out)
        assert data["domain"] == "example.com"
        assert len(data["simulations"]["scenarios"]) == 12

    def test_human_report(self, fake_dns, fake_http, capsys):
        cli.main(["example.com"])
        out = capsys.readouterr().out
        assert out.startswith("Email security report for: example.com")

    def test_json_out(self, fake_dns, fake_http, tmp_path, capsys):
        target = tmp_path / "report.json"
        cli.main(["example.com", "--json-out", str(target)])
        assert f"Wrote JSON report to {target}" in capsys.readouterr().out
        assert json.loads(target.read_text(encoding="utf-8"))["domain"] == "example.com"

    def test_options_are_forwarded(self, monkeypatch):
        seen = {}

        async def recorder(domain, **kwargs):
            seen["domain"] = domain
            seen.update(kwargs)
            raise RuntimeError("stop")

        monkeypatch.setattr(cli, "generate_report", recorder)
        with pytest.raises(SystemExit):
            cli.main(["example.com", "--selector", "s1", "--quick", "--port", "25", "--port", "587",
                      "--stop-after", "EHLO1", "--mx-limit", "2", "--direct-tls"])
        assert seen["domain"] == "example.com"
        assert seen["dkim_selector"] == "s1"
        assert seen["quick_test"] is True
        assert seen["direct_tls"] is True
        assert seen["ports"] == [25, 587]
        assert seen["stop_after"] is StopAfter.EHLO1
        assert seen["mx_host_limit"] == 2

    def test_fatal_error_exits_2(self, monkeypatch, capsys):
        async def broken(*args, **kwargs):
            raise RuntimeError("no network")

        monkeypatch.setattr(cli, "generate_report", broken)
        with pytest.raises(SystemExit) as exc:
            cli.main(["example.com"])
        assert exc.value.code == 2
        assert "Fatal error: no network" in capsys.readouterr().err

    @pytest.mark.parametrize("argv", [
        ["example.com", "--port", "25", "--port", "465", "--port", "587", "--port", "2525"],
        ["example.com", "--port", "70000"],
        ["example.com", "--mx-limit", "11"],
        ["example.com", "--stop-after", "RSET"],
    ])
    def test_bad_arguments(self, argv):
        with pytest.raises(SystemExit) as exc:
            cli.main(argv)
        assert exc.value.code == 2
