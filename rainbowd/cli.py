from __future__ import annotations

import argparse
import json
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="rainbowd control CLI")
    p.add_argument("--api", default="http://localhost:7001", help="Control API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("apps", help="List managed apps")

    s_status = sub.add_parser("status", help="Show an app's active port and backends")
    s_status.add_argument("app")

    s_redeploy = sub.add_parser("redeploy", help="Launch a new backend and cut over to it")
    s_redeploy.add_argument("app")

    s_ev = sub.add_parser("events", help="Show recent events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--app", default=None, help="Only events for this app")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")

    try:
        if args.cmd == "apps":
            r = requests.get(f"{base}/", timeout=10)
        elif args.cmd == "status":
            r = requests.get(f"{base}/{args.app}", timeout=10)
        elif args.cmd == "redeploy":
            # Returns as soon as the deploy is started; the cutover happens later.
            r = requests.post(f"{base}/{args.app}/redeploy", timeout=30)
        elif args.cmd == "events":
            params = {"limit": args.limit}
            if args.app:
                params["app"] = args.app
            r = requests.get(f"{base}/events", params=params, timeout=10)
        else:
            return 2
    except requests.RequestException as e:
        print(f"Couldn't reach {base}: {e}", file=sys.stderr)
        return 1

    _print(r.json())
    return 0 if r.ok else 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
