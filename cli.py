from __future__ import annotations

import argparse
import json
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _watch(base: str) -> int:
    """Follow the topology stream and print one JSON line per event."""
    with requests.get(f"{base}/api/v1/groups/connect", stream=True, timeout=(10, None)) as r:
        if not r.ok:
            print(f"HTTP {r.status_code}: {r.text}", file=sys.stderr)
            return 1
        event = None
        for line in r.iter_lines(decode_unicode=True):
            if not line or line.startswith(":"):
                continue
            if line.startswith("event:"):
                event = line[len("event:"):].strip()
            elif line.startswith("data:"):
                payload = json.loads(line[len("data:"):].strip())
                print(json.dumps({"event": event, **payload}, ensure_ascii=False), flush=True)
                event = None
    return 0


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Game Server Reconciler CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("groups", help="List server groups")

    s_group = sub.add_parser("group", help="Show one server group")
    s_group.add_argument("name")

    sub.add_parser("proxies", help="List proxies")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--group", default=None, help="Only events for this group/proxy")

    s_rs = sub.add_parser("resync", help="Queue a reconcile for one resource")
    s_rs.add_argument("kind", choices=["group", "proxy"])
    s_rs.add_argument("name")

    sub.add_parser("watch", help="Follow live topology updates")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")

    if args.cmd == "groups":
        _print(requests.get(f"{base}/api/v1/groups", timeout=10).json())
        return 0

    if args.cmd == "group":
        r = requests.get(f"{base}/api/v1/groups/{args.name}", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "proxies":
        _print(requests.get(f"{base}/api/v1/proxies", timeout=10).json())
        return 0

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.group:
            params["group"] = args.group
        _print(requests.get(f"{base}/events", params=params, timeout=10).json())
        return 0

    if args.cmd == "resync":
        r = requests.post(f"{base}/api/v1/reconcile/{args.kind}/{args.name}", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "watch":
        try:
            return _watch(base)
        except KeyboardInterrupt:
            return 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
