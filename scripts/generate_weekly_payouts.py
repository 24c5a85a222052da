"""Generate (and optionally process) weekly payouts for a list of professionals.

Meant to be run from cron once the week has closed: without `--week-start` it
settles the week that contains the same day one week ago, e.g. a Sunday run on
2026-10-18 settles 2026-10-11..2026-10-17. Already generated weeks come back
as `200` and are reported as existing, so re-running is safe.
"""

import argparse
import json
from datetime import date, timedelta
from pathlib import Path

import httpx


def closed_week_anchor(today: date | None = None) -> date:
    """A day inside the most recently closed week."""

    return (today or date.today()) - timedelta(days=7)


def main() -> None:
    """CLI entrypoint for the weekly settlement run."""

    parser = argparse.ArgumentParser(description="Generate weekly payout ledgers through the admin API.")
    parser.add_argument("--api-url", default="http://localhost:8000")
    parser.add_argument("--api-key", required=True)
    parser.add_argument(
        "--week-start",
        type=date.fromisoformat,
        default=None,
        help="Any date inside the week (YYYY-MM-DD); defaults to the week that just closed",
    )
    parser.add_argument("--professional", action="append", default=[], help="Professional id (repeatable)")
    parser.add_argument("--file", dest="ids_file", default=None, help="File with one professional id per line")
    parser.add_argument("--process", action="store_true", help="Submit newly generated payouts to the gateway")
    args = parser.parse_args()

    professional_ids = list(args.professional)
    if args.ids_file:
        professional_ids += [line.strip() for line in Path(args.ids_file).read_text().splitlines() if line.strip()]
    if not professional_ids:
        raise SystemExit("Provide at least one --professional or --file")

    body = {"week_start": (args.week_start or closed_week_anchor()).isoformat()}
    results = {"created": [], "existing": [], "skipped": {}, "processed": {}}
    with httpx.Client(base_url=args.api_url, headers={"X-API-Key": args.api_key}, timeout=30.0) as client:
        for professional_id in professional_ids:
            resp = client.post(f"/payouts/generate/{professional_id}", json=body)
            if resp.status_code not in (200, 201):
                results["skipped"][professional_id] = resp.json().get("code", resp.status_code)
                continue
            ledger = resp.json()["ledger"]
            if resp.status_code == 200:
                results["existing"].append(ledger["ledger_id"])
                continue
            results["created"].append(ledger["ledger_id"])
            if args.process:
                processed = client.post(f"/payouts/{ledger['ledger_id']}/process", json={})
                results["processed"][ledger["ledger_id"]] = processed.json().get("status") or processed.json().get(
                    "code"
                )

    print(json.dumps(results, indent=2))


if __name__ == "__main__":
    main()
