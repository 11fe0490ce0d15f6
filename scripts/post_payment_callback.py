"""Post a gateway-style payment callback, optionally several times at once.

Useful for duplicate-delivery testing: every copy carries the same `val_id`,
so exactly one should come back `processed`.
"""

import argparse
import asyncio
import json
from collections import Counter

import httpx


async def deliver(base_url: str, form: dict, copies: int) -> list[dict]:
    """Send `copies` identical callbacks concurrently."""

    async with httpx.AsyncClient(base_url=base_url, timeout=30.0) as client:
        responses = await asyncio.gather(
            *(client.post("/payments/callback", data=form) for _ in range(copies))
        )
    return [{"status_code": resp.status_code, "body": resp.json()} for resp in responses]


def main() -> None:
    """Parse CLI args and deliver the callback."""

    parser = argparse.ArgumentParser(description="Post a payment callback to the fulfillment service.")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--tran-id", required=True, help="Order id the payment was initiated for")
    parser.add_argument("--val-id", default=None)
    parser.add_argument("--amount", required=True)
    parser.add_argument("--status", default="VALID", choices=["VALID", "FAILED", "CANCELLED"])
    parser.add_argument("--bank-tran-id", default=None)
    parser.add_argument("--copies", type=int, default=1)
    args = parser.parse_args()

    form = {"tran_id": args.tran_id, "amount": args.amount, "status": args.status}
    if args.val_id:
        form["val_id"] = args.val_id
    if args.bank_tran_id:
        form["bank_tran_id"] = args.bank_tran_id

    results = asyncio.run(deliver(args.base_url, form, args.copies))
    print(json.dumps(results, indent=2))
    print(dict(Counter(result["body"].get("status", "error") for result in results)))


if __name__ == "__main__":
    main()
