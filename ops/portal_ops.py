from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Any
import urllib.request
import urllib.error


DEFAULT_BASE_URL = os.getenv("PORTAL_SYNC_BASE_URL", "http://localhost:8000")
DEFAULT_ADMIN_KEY = os.getenv("INTERNAL_ADMIN_KEY", "")

DEFAULT_TIMEOUT_SECONDS = 60


def http_post(url: str, payload: dict[str, Any], admin_key: str) -> dict[str, Any]:
    data = json.dumps(payload).encode("utf-8")
    req = urllib.request.Request(
        url=url,
        data=data,
        method="POST",
        headers={
            "Content-Type": "application/json",
            "X-Internal-Admin-Key": admin_key,
        },
    )
    try:
        with urllib.request.urlopen(req, timeout=DEFAULT_TIMEOUT_SECONDS) as resp:
            raw = resp.read().decode("utf-8")
            return json.loads(raw) if raw else {}
    except urllib.error.HTTPError as e:
        body = e.read().decode("utf-8", errors="replace")
        print(f"HTTP {e.code} {e.reason} for {url}", file=sys.stderr)
        if body:
            print(body, file=sys.stderr)
        return {"error": {"status": e.code, "reason": e.reason, "body": body}}
    except urllib.error.URLError as e:
        print(f"Network error for {url}: {e}", file=sys.stderr)
        return {"error": {"reason": str(e)}}


def _cmd_drain(args: argparse.Namespace) -> dict[str, Any]:
    return http_post(f"{args.base_url}/v1/portal-jobs/drain", {"batch_size": args.batch_size}, args.admin_key)


def _cmd_enqueue(args: argparse.Namespace) -> dict[str, Any]:
    payload = {"portal_id": args.portal_id, "listing_id": args.listing_id, "action": args.action}
    return http_post(f"{args.base_url}/v1/portal-jobs", payload, args.admin_key)


def _cmd_rotate_token(args: argparse.Namespace) -> dict[str, Any]:
    return http_post(f"{args.base_url}/v1/portals/{args.portal_id}/feed-token:rotate", {}, args.admin_key)


def _cmd_test(args: argparse.Namespace) -> dict[str, Any]:
    return http_post(f"{args.base_url}/v1/portals/{args.portal_id}/test", {}, args.admin_key)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Portal sync operator commands.")
    p.add_argument("--base-url", default=DEFAULT_BASE_URL)
    p.add_argument("--admin-key", default=DEFAULT_ADMIN_KEY)
    sub = p.add_subparsers(dest="command", required=True)

    d = sub.add_parser("drain", help="process due portal jobs now")
    d.add_argument("--batch-size", type=int, default=10)
    d.set_defaults(func=_cmd_drain)

    e = sub.add_parser("enqueue", help="queue a publish/update/pause/remove job")
    e.add_argument("--portal-id", required=True)
    e.add_argument("--listing-id", required=True)
    e.add_argument("--action", choices=["publish", "update", "pause", "remove"], required=True)
    e.set_defaults(func=_cmd_enqueue)

    r = sub.add_parser("rotate-token", help="issue a new feed token (old feed URL stops working)")
    r.add_argument("--portal-id", required=True)
    r.add_argument("--yes", action="store_true", help="required (safety)")
    r.set_defaults(func=_cmd_rotate_token)

    t = sub.add_parser("test", help="run the portal connectivity test")
    t.add_argument("--portal-id", required=True)
    t.set_defaults(func=_cmd_test)
    return p


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    args.base_url = args.base_url.rstrip("/")

    if not args.admin_key:
        print("Missing INTERNAL_ADMIN_KEY (env) or --admin-key", file=sys.stderr)
        return 2

    if args.command == "rotate-token" and not args.yes:
        print("Refusing to rotate without --yes (safety).", file=sys.stderr)
        return 2

    res = args.func(args)
    print(json.dumps(res, indent=2, ensure_ascii=False))
    return 1 if "error" in res else 0


if __name__ == "__main__":
    raise SystemExit(main())
