from __future__ import annotations

import argparse
import json
import os

import httpx


def main() -> None:
    p = argparse.ArgumentParser(description="Trigger a manual source backfill and aggregation on a running API")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    p.add_argument("--key", default=os.getenv("ADMIN_SECRET_KEY", ""), help="Admin shared secret")
    p.add_argument("--source", action="append", choices=["unifi_access", "ezradius"], help="Source(s) to sync")
    p.add_argument("--days", type=int, default=30, help="Lookback window in days")
    p.add_argument("--aggregate-days", type=int, default=0, help="Also recompute this many past days")
    args = p.parse_args()

    headers = {"x-admin-key": args.key}
    sources = args.source or ["unifi_access", "ezradius"]

    with httpx.Client(timeout=600.0) as client:
        for source in sources:
            r = client.post(f"{args.api}/v1/admin/sync/{source}", params={"days": args.days}, headers=headers)
            print(f"{source}: HTTP {r.status_code}")
            print(json.dumps(r.json(), indent=2))

        if args.aggregate_days > 0:
            r = client.post(f"{args.api}/v1/admin/aggregate", params={"days": args.aggregate_days}, headers=headers)
            r.raise_for_status()
            print(json.dumps(r.json(), indent=2))


if __name__ == "__main__":
    main()
