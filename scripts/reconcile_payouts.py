"""Ask the payout service to reconcile payouts stuck in processing."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for reconciliation runs."""

    parser = argparse.ArgumentParser(description="Poll the gateway for stale processing payouts.")
    parser.add_argument("--api-url", default="http://localhost:8000")
    parser.add_argument("--api-key", required=True)
    parser.add_argument("--older-than-seconds", type=int, default=None)
    args = parser.parse_args()

    params = {}
    if args.older_than_seconds is not None:
        params["older_than_seconds"] = args.older_than_seconds
    resp = httpx.post(
        f"{args.api_url}/payouts/reconcile",
        params=params,
        headers={"X-API-Key": args.api_key},
        timeout=120.0,
    )
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
