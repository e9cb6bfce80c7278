#!/usr/bin/env python3
"""
Trigger the daily aggregation endpoint.

Usage:
    python scripts/run_aggregate_daily.py              # aggregate yesterday (UTC)
    python scripts/run_aggregate_daily.py 2026-02-12   # aggregate a specific date

Cron (03:00 UTC):
    0 3 * * * cd /path/to/tap-identity && python scripts/run_aggregate_daily.py

Reads INTERNAL_JOB_SECRET and APP_URL through the application settings
(.env or environment). Exits 1 on any failure.
"""

import json
import sys
from pathlib import Path
from typing import Optional

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import httpx

from tapidentity.config import settings
from tapidentity.dates import DATE_PATTERN, yesterday_utc

AGGREGATE_PATH = "/api/internal/reporting/aggregate-daily"


def resolve_target_date(arg: Optional[str]) -> str:
    """Use ``arg`` when it looks like YYYY-MM-DD, else yesterday (UTC)."""
    if arg and DATE_PATTERN.match(arg):
        return arg
    return yesterday_utc().isoformat()


def run(
    target_date: str,
    base_url: Optional[str] = None,
    secret: Optional[str] = None,
    transport: Optional[httpx.BaseTransport] = None,
) -> int:
    """
    POST the aggregation request and print the result.

    Returns:
        Process exit code (0 on success, 1 on failure)
    """
    secret = secret if secret is not None else settings.internal_job_secret
    if not secret:
        print("INTERNAL_JOB_SECRET is not set", file=sys.stderr)
        return 1

    url = (base_url or settings.app_url).rstrip("/") + AGGREGATE_PATH
    print(f"Running daily aggregation for {target_date}")
    print(f"   URL: {url}")

    try:
        with httpx.Client(timeout=300.0, transport=transport) as client:
            response = client.post(
                url,
                headers={"x-internal-secret": secret},
                json={"date": target_date},
            )
    except httpx.HTTPError as e:
        print(f"Network error calling aggregation endpoint: {e}", file=sys.stderr)
        return 1

    try:
        data = response.json()
    except ValueError:
        data = {"body": response.text}

    if response.status_code >= 400:
        print(f"Aggregation failed (HTTP {response.status_code}):", file=sys.stderr)
        print(json.dumps(data, indent=2), file=sys.stderr)
        return 1

    print("Aggregation complete:")
    print(json.dumps(data, indent=2))
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    import argparse

    parser = argparse.ArgumentParser(description="Run the daily reporting aggregation")
    parser.add_argument(
        "date",
        nargs="?",
        default=None,
        help="UTC date to aggregate, YYYY-MM-DD (default: yesterday)",
    )
    parser.add_argument(
        "--url",
        default=None,
        help="Base URL of the service (default: settings.app_url)",
    )

    args = parser.parse_args(argv)
    return run(resolve_target_date(args.date), base_url=args.url)


if __name__ == "__main__":
    sys.exit(main())
