#!/usr/bin/env python3
"""Delete your own Bluesky posts that link to a given domain."""

from __future__ import annotations

import argparse
import json
import os
import sys

from bsky_api import DEFAULT_SERVICE, AuthSession, BskyClient, CallLimiter, XrpcError
from sweep import ConfigurationError, ScanFailure, SweepConfig, SweepReport, SweepStatus, run_sweep


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Delete your own Bluesky posts that link to a target domain."
    )
    p.add_argument("--domain", help="Target domain, matched as a substring of link URIs (required).")
    p.add_argument("--batch-size", type=int, default=200, help="Deletes per applyWrites call (default: 200).")
    p.add_argument(
        "--max-deletes-per-hour",
        type=int,
        default=5000,
        help="Server hourly delete quota (default: 5000).",
    )
    p.add_argument(
        "--safety-margin",
        type=int,
        default=100,
        help="Start pausing this many deletes before the hourly quota (default: 100).",
    )
    p.add_argument(
        "--batch-delay-ms",
        type=int,
        default=5000,
        help="Milliseconds to wait between batches (default: 5000).",
    )
    p.add_argument("--quiet", action="store_true", help="Do not print per-record diagnostics.")
    p.add_argument(
        "--rate-limit-wait",
        type=float,
        default=60.0,
        help="Fallback wait seconds when 429 has no ratelimit-reset header (default: 60).",
    )
    p.add_argument(
        "--rate-limit-retries",
        type=int,
        default=0,
        help="Max 429 retries per batch (0 = unlimited, default).",
    )
    p.add_argument("--dry-run", action="store_true", help="Scan and list matches only, do not delete.")

    p.add_argument("--service", help=f"PDS / entryway URL (default: {DEFAULT_SERVICE}).")
    p.add_argument("--identifier", help="Handle or email to log in with.")
    p.add_argument("--app-password", help="App password to log in with.")
    p.add_argument("--auth-file", default="auth.json", help="Path to auth file (default: auth.json).")
    p.add_argument("--timeout", type=float, default=20.0, help="HTTP timeout seconds.")
    return p.parse_args(argv)


def read_auth_file(path: str) -> dict[str, str]:
    if not os.path.exists(path):
        return {}
    with open(path, encoding="utf-8") as fp:
        data = json.load(fp)
    if not isinstance(data, dict):
        return {}
    return {k: str(v) for k, v in data.items() if v is not None}


def load_config(args: argparse.Namespace) -> SweepConfig:
    domain = args.domain or os.getenv("BSKYSWEEP_DOMAIN") or ""
    config = SweepConfig(
        target_domain=domain.strip(),
        batch_size=args.batch_size,
        max_deletes_per_hour=args.max_deletes_per_hour,
        safety_margin=args.safety_margin,
        inter_batch_delay_ms=args.batch_delay_ms,
        verbose=not args.quiet,
        rate_limit_wait=args.rate_limit_wait,
        rate_limit_retries=args.rate_limit_retries,
        dry_run=args.dry_run,
    )
    config.validate()
    return config


def load_session(args: argparse.Namespace, client: BskyClient | None = None) -> BskyClient:
    file_values = read_auth_file(args.auth_file)

    service = args.service or os.getenv("BSKYSWEEP_SERVICE") or file_values.get("service") or DEFAULT_SERVICE
    if client is None:
        client = BskyClient(service, timeout=args.timeout)

    identifier = args.identifier or os.getenv("BSKYSWEEP_IDENTIFIER") or file_values.get("identifier", "")
    password = args.app_password or os.getenv("BSKYSWEEP_APP_PASSWORD") or file_values.get("app_password", "")

    if identifier and password:
        client.login(identifier.strip(), password.strip())
        return client

    access = file_values.get("access_jwt", "")
    did = file_values.get("did", "")
    if access and did:
        client.resume(
            AuthSession(
                did=did,
                handle=file_values.get("handle") or did,
                access_jwt=access,
                refresh_jwt=file_values.get("refresh_jwt") or None,
            )
        )
        return client

    raise ValueError(
        "Missing credentials. Set --identifier/--app-password, BSKYSWEEP_IDENTIFIER/BSKYSWEEP_APP_PASSWORD, "
        "or run get_bsky_session.py to create auth.json."
    )


def print_summary(report: SweepReport) -> None:
    print("")
    print("========== SUMMARY ==========")
    print(f"domain     : {report.target_domain}")
    print(f"status     : {report.status.value}")
    print(f"matched    : {report.intents_total}")
    print(f"batches    : {len(report.outcomes)}/{report.units_total}")
    print(f"deleted    : {report.deleted}")
    print(f"abandoned  : {report.abandoned}")
    failed = report.failed_outcome
    if failed is not None:
        print(f"failed     : batch #{failed.unit.number} ({failed.reason})")


def exit_code(report: SweepReport) -> int:
    if report.status is SweepStatus.ABORTED:
        return 1
    if report.status is SweepStatus.INTERRUPTED:
        return 130
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    try:
        config = load_config(args)
    except ConfigurationError as exc:
        print(f"[ERROR] Invalid configuration: {exc}", file=sys.stderr)
        return 2

    try:
        client = load_session(args)
    except (ValueError, XrpcError) as exc:
        print(f"[ERROR] Failed to log in: {exc}", file=sys.stderr)
        return 2

    auth = client.auth
    if auth is None:
        print("[ERROR] No session after login", file=sys.stderr)
        return 2
    print(f"[INFO] Logged in as {auth.handle} ({auth.did})")
    print(f"[INFO] Target domain: {config.target_domain}")
    print(f"[INFO] Mode: {'DRY-RUN' if config.dry_run else 'DELETE'}")

    try:
        report = run_sweep(client, auth.did, config, limiter=CallLimiter(max_concurrent=3, calls_per_second=5))
    except ScanFailure as exc:
        print(f"[ERROR] Scan aborted, nothing was deleted: {exc}", file=sys.stderr)
        return 2

    print_summary(report)
    print("Done")
    return exit_code(report)


if __name__ == "__main__":
    raise SystemExit(main())
