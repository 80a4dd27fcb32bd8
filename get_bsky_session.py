#!/usr/bin/env python3
"""Log in to Bluesky with an app password and save the session tokens to auth.json."""

from __future__ import annotations

import argparse
import getpass
import json
import os
import sys
from datetime import datetime, timezone
from typing import Any

from bsky_api import DEFAULT_SERVICE, AuthSession, BskyClient, XrpcError


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Create a Bluesky session and save auth.json.")
    p.add_argument("--identifier", required=True, help="Handle or email")
    p.add_argument(
        "--app-password",
        default="",
        help="App password (prompted when omitted; never use your main password)",
    )
    p.add_argument("--service", default=DEFAULT_SERVICE, help=f"PDS / entryway URL (default: {DEFAULT_SERVICE})")
    p.add_argument("--auth-file", default="auth.json", help="Output auth file path")
    p.add_argument("--timeout", type=float, default=20.0, help="HTTP timeout seconds")
    return p.parse_args(argv)


def save_auth(auth_file: str, service: str, session: AuthSession) -> None:
    current: dict[str, Any] = {}
    if os.path.exists(auth_file):
        try:
            with open(auth_file, encoding="utf-8") as fp:
                loaded = json.load(fp)
            if isinstance(loaded, dict):
                current = loaded
        except (OSError, ValueError):
            current = {}

    out = dict(current)
    out["service"] = service
    out["did"] = session.did
    out["handle"] = session.handle
    out["access_jwt"] = session.access_jwt
    if session.refresh_jwt:
        out["refresh_jwt"] = session.refresh_jwt
    # Only tokens are persisted.
    out.pop("app_password", None)
    out["obtained_at"] = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

    with open(auth_file, "w", encoding="utf-8") as fp:
        json.dump(out, fp, ensure_ascii=False, indent=2)
        fp.write("\n")


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    password = args.app_password or getpass.getpass("App password: ")
    if not password:
        print("[ERROR] app password is empty", file=sys.stderr)
        return 2

    client = BskyClient(args.service, timeout=args.timeout)
    try:
        session = client.login(args.identifier.strip(), password.strip())
    except XrpcError as exc:
        print(f"[ERROR] Login failed: {exc}", file=sys.stderr)
        return 2

    try:
        save_auth(args.auth_file, client.service, session)
    except OSError as exc:
        print(f"[ERROR] Failed saving auth file: {exc}", file=sys.stderr)
        return 2

    print(f"[INFO] Logged in as {session.handle} ({session.did})")
    print(f"[INFO] Saved session to {args.auth_file}")
    if not session.refresh_jwt:
        print("[WARN] refreshJwt missing. The saved session cannot be refreshed once it expires.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
