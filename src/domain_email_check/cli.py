import argparse
import asyncio
import json
import logging
import sys

from .core import generate_report, human_report
from .log import setup_logger
from .models import StopAfter


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Domain email security check (SPF/DMARC/DKIM/BIMI/MTA-STS/TLS-RPT, DNSBL, STARTTLS)")
    parser.add_argument("domain", help="domain to check (e.g. example.com)")
    parser.add_argument("--selector", help="DKIM selector to check")
    parser.add_argument("--header-from", help="header From domain for the DMARC simulation")
    parser.add_argument("--envelope-from", help="envelope From domain for the DMARC simulation")
    parser.add_argument("--quick", action="store_true", help="Probe only the preferred MX, stop after EHLO over TLS")
    parser.add_argument("--compel-tls", action="store_true", help="Send STARTTLS even when it is not advertised")
    parser.add_argument("--direct-tls", action="store_true", help="Use implicit TLS on port 465")
    parser.add_argument("--port", type=int, action="append", dest="ports",
                        help="SMTP port to probe (repeatable, up to 3; default 25)")
    parser.add_argument("--stop-after", choices=[s.value for s in StopAfter],
                        help="Stop the SMTP probe after this stage")
    parser.add_argument("--mx-limit", type=int, help="Only keep the N preferred MX hosts (1-10)")
    parser.add_argument("--json-out", help="Write JSON report to this file")
    parser.add_argument("--quiet", action="store_true", help="Only output JSON")
    parser.add_argument("--verbose", action="store_true", help="Log progress to stderr")
    parser.add_argument("--debug", action="store_true", help="Log every lookup to stderr")
    args = parser.parse_args(argv)

    if args.ports and len(args.ports) > 3:
        parser.error("at most 3 ports")
    if args.ports and not all(1 <= p <= 65535 for p in args.ports):
        parser.error("--port must be between 1 and 65535")
    if args.mx_limit is not None and not 1 <= args.mx_limit <= 10:
        parser.error("--mx-limit must be between 1 and 10")

    level = logging.DEBUG if args.debug else logging.INFO if args.verbose else logging.WARNING
    setup_logger(level=level)

    try:
        result = asyncio.run(generate_report(
            args.domain.strip(),
            dkim_selector=args.selector,
            header_from=args.header_from,
            envelope_from=args.envelope_from,
            quick_test=args.quick,
            compel_tls=args.compel_tls,
            direct_tls=args.direct_tls,
            ports=args.ports,
            stop_after=StopAfter(args.stop_after) if args.stop_after else None,
            mx_host_limit=args.mx_limit,
        ))
    except Exception as e:
        print(f"Fatal error: {e}", file=sys.stderr)
        sys.exit(2)

    data = result.to_dict()
    if args.json_out:
        with open(args.json_out, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        if not args.quiet:
            print(f"Wrote JSON report to {args.json_out}")

    if not args.quiet:
        print(human_report(result))
    else:
        print(json.dumps(data))


def serve(argv=None):
    """Run the HTTP API with uvicorn."""
    import uvicorn

    parser = argparse.ArgumentParser(description="Serve the domain email check API")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--debug", action="store_true")
    args = parser.parse_args(argv)

    setup_logger(level=logging.DEBUG if args.debug else logging.INFO)
    uvicorn.run("domain_email_check.api:app", host=args.host, port=args.port)


if __name__ == "__main__":
    main()
