#!/usr/bin/env python3
"""
domain_email_check.py

Entry point for running the domain email security check from a checkout.
It resolves the mail policies of a domain, checks its MX hosts against DNS
blacklists and probes them for STARTTLS, then prints a report.

Usage:
    python domain_email_check.py example.com --selector selector1 --quick
"""

from domain_email_check.cli import main

if __name__ == "__main__":
    main()
