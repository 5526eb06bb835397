"""Example client that forwards a page view to the tracker and reads back stats."""
from __future__ import annotations

import argparse
import os
from datetime import date

import requests


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Send a sample page view")
    parser.add_argument(
        "--api-url",
        default=os.environ.get("VISITOR_TRACKER_API_URL", "http://127.0.0.1:8000"),
        help="Tracker API base URL (default: %(default)s or VISITOR_TRACKER_API_URL)",
    )
    parser.add_argument(
        "--token",
        default=os.environ.get("VISITOR_TRACKER_ADMIN_TOKEN"),
        help="Admin bearer token (VISITOR_TRACKER_ADMIN_TOKEN)",
    )
    parser.add_argument("--url", default="https://www.example.org/pricing", help="Page URL to record")
    args = parser.parse_args()
    if not args.token:
        parser.error("An admin JWT must be supplied via --token or VISITOR_TRACKER_ADMIN_TOKEN")
    return args


def main() -> None:
    args = parse_args()
    headers = {"Authorization": f"Bearer {args.token}"}
    payload = {
        "event": "view",
        "url": args.url,
        "user_agent": "send_event.py",
        "headers": {"X-Forwarded-For": "203.0.113.7, 10.0.0.1"},
        "account": {"id": 42, "email": "reader@example.org", "roles": ["subscriber"]},
    }
    response = requests.post(f"{args.api_url}/events", headers=headers, json=payload, timeout=10)
    response.raise_for_status()
    print("Ingest result:", response.json())

    params = {"from": date.today().isoformat(), "guests": 1}
    stats = requests.get(f"{args.api_url}/stats", headers=headers, params=params, timeout=10)
    stats.raise_for_status()
    print("Stats:", stats.json())


if __name__ == "__main__":
    main()
