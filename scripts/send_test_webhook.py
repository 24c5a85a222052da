"""Post a signed payout webhook to a running payout service.

Useful for exercising webhook handling (including replays and early
deliveries) without the real gateway.
"""

import argparse
import hashlib
import hmac
import json

import httpx


def main() -> None:
    """Build, sign and send one `payout.*` webhook."""

    parser = argparse.ArgumentParser(description="Send a signed payout webhook.")
    parser.add_argument("--api-url", default="http://localhost:8000")
    parser.add_argument("--secret", required=True, help="Webhook secret shared with the service")
    parser.add_argument("--payout-id", required=True, help="Gateway payout id")
    parser.add_argument("--event", default="payout.processed", choices=["payout.processed", "payout.failed"])
    parser.add_argument("--utr", default=None)
    parser.add_argument("--failure-reason", default=None)
    parser.add_argument("--repeat", type=int, default=1, help="Send the same body N times")
    args = parser.parse_args()

    entity = {"id": args.payout_id, "status": args.event.split(".", 1)[1]}
    if args.utr:
        entity["utr"] = args.utr
    if args.failure_reason:
        entity["failure_reason"] = args.failure_reason
    raw = json.dumps({"event": args.event, "payload": {"payout": {"entity": entity}}}).encode("utf-8")
    signature = hmac.new(args.secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()

    for _ in range(args.repeat):
        resp = httpx.post(
            f"{args.api_url}/payouts/webhook",
            content=raw,
            headers={"Content-Type": "application/json", "X-Razorpay-Signature": signature},
            timeout=10.0,
        )
        print(resp.status_code, resp.text)


if __name__ == "__main__":
    main()
