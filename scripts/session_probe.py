#!/usr/bin/env python3
"""Drive the session controller against the configured identity provider.

Boots a controller the way a page load would, signs in, prints the
resulting session snapshot and any notices, then signs out.

Usage:
    # Using environment variables:
    PROBE_EMAIL=user@example.com PROBE_PASSWORD=secret python scripts/session_probe.py

    # Or with command line args:
    python scripts/session_probe.py --email user@example.com --password secret

    # Classify an arrival URL without signing in:
    python scripts/session_probe.py --arrival-url "https://app/#access_token=x&type=recovery" --boot-only

Environment Variables:
    PROBE_EMAIL: Email to sign in with
    PROBE_PASSWORD: Password to sign in with
    IDENTITY_URL: Identity provider base URL
    IDENTITY_API_KEY: Public API key for the identity provider
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _describe(snapshot) -> dict:
    return {
        "state": snapshot.state.value,
        "user_id": snapshot.user_id,
        "role": snapshot.role,
        "is_ready": snapshot.is_ready,
    }


async def probe(
    email: str | None,
    password: str | None,
    arrival_url: str | None = None,
    boot_only: bool = False,
    ready_timeout: float = 10.0,
) -> dict:
    """Boot a controller, optionally sign in and out, and report what happened."""
    # Import here to avoid loading config before env vars are set
    from authgate.service.runtime import get_runtime

    runtime = get_runtime(arrival_url=arrival_url)
    controller = await runtime.start()
    report: dict = {"recovery_intent": controller.recovery_intent.active}
    try:
        booted = await controller.wait_ready(ready_timeout)
        report["boot"] = _describe(booted)
        if boot_only:
            return report

        if booted.state.value != "unauthenticated":
            await controller.logout(reason="probe_reset")

        signed_in = await controller.login(email, password)
        report["login"] = _describe(signed_in)
        report["notices"] = [notice.message for notice in controller.notices]

        signed_out = await controller.logout(reason="probe_done")
        report["logout"] = _describe(signed_out)
        return report
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Probe the session controller end to end",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("PROBE_EMAIL"),
        help="Email to sign in with (or set PROBE_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("PROBE_PASSWORD"),
        help="Password to sign in with (or set PROBE_PASSWORD env var)",
    )
    parser.add_argument("--arrival-url", default=None, help="URL the page was opened with")
    parser.add_argument(
        "--boot-only",
        action="store_true",
        help="Only boot the controller and print the first settled state",
    )
    parser.add_argument("--timeout", type=float, default=10.0, help="Readiness timeout in seconds")

    args = parser.parse_args()

    if not args.boot_only and (not args.email or not args.password):
        print("Error: --email/--password (or PROBE_EMAIL/PROBE_PASSWORD) required")
        sys.exit(1)

    from authgate.service.errors import AuthGateError

    try:
        result = asyncio.run(
            probe(args.email, args.password, args.arrival_url, args.boot_only, args.timeout)
        )
    except AuthGateError as e:
        print(f"Error ({e.error_code}): {e.message}")
        sys.exit(1)
    except asyncio.TimeoutError:
        print("Error: controller did not become ready in time")
        sys.exit(1)

    print(f"Recovery intent: {result['recovery_intent']}")
    for step in ("boot", "login", "logout"):
        if step in result:
            print(f"  {step:>6}: {result[step]}")
    for message in result.get("notices", []):
        print(f"  notice: {message}")


if __name__ == "__main__":
    main()
