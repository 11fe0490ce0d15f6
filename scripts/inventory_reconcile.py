"""Fetch and print stock reconciliation reports; exits 1 when any is unbalanced."""

import argparse
import json
import sys

import httpx


def main() -> None:
    """CLI entrypoint for reconciliation checks."""

    parser = argparse.ArgumentParser(description="Replay stock movements and compare them with stored counts.")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("product_ids", nargs="+")
    args = parser.parse_args()

    reports = []
    with httpx.Client(base_url=args.base_url, timeout=10.0) as client:
        for product_id in args.product_ids:
            resp = client.get(f"/inventory/{product_id}/reconciliation")
            resp.raise_for_status()
            reports.append(resp.json())
    print(json.dumps(reports, indent=2))
    if not all(report["balanced"] for report in reports):
        sys.exit(1)


if __name__ == "__main__":
    main()
