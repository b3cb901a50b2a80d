"""Example client that posts a page view to the analytics API and reads the day's stats."""
from __future__ import annotations

import argparse
import os
import time
from datetime import datetime, timezone

import requests


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Send a sample page view event")
    parser.add_argument(
        "--api-url",
        default=os.environ.get("ANALYTICS_API_URL", "http://127.0.0.1:8000"),
        help="Analytics API base URL (default: %(default)s or ANALYTICS_API_URL)",
    )
    parser.add_argument("--site-id", default="site_abc123", help="Site identifier (default: %(default)s)")
    parser.add_argument("--path", default="/products/shoes", help="Page path (default: %(default)s)")
    parser.add_argument(
        "--wait",
        type=float,
        default=1.0,
        help="Seconds to wait for the worker before reading stats (default: %(default)s)",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    timestamp = datetime.now(timezone.utc)
    payload = {
        "siteId": args.site_id,
        "eventType": "page_view",
        "path": args.path,
        "timestamp": timestamp.isoformat(),
    }

    with requests.Session() as session:
        response = session.post(f"{args.api_url}/event", json=payload, timeout=10)
        response.raise_for_status()
        print("Event accepted:", response.json())

        time.sleep(args.wait)

        stats = session.get(
            f"{args.api_url}/stats",
            params={"siteId": args.site_id, "date": timestamp.date().isoformat()},
            timeout=10,
        )
        stats.raise_for_status()
        print("Stats:", stats.json())


if __name__ == "__main__":
    main()
