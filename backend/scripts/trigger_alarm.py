#!/usr/bin/env python3
"""Send one production alarm to a running API, the way a controller does.

Usage:
  python backend/scripts/trigger_alarm.py T1.2-M01
  python backend/scripts/trigger_alarm.py T1.2-M01 --count 3 --sequence 1042
  python backend/scripts/trigger_alarm.py N1-M01 --lane 2 --event-time 1970-01-01T00:00:05Z
"""

from __future__ import annotations

import argparse
import json
from typing import Any

import httpx


def build_payload(args: argparse.Namespace) -> dict[str, Any]:
    payload: dict[str, Any] = {"machine_id": args.machine_id, "pulse_count": args.count}
    if args.sequence:
        payload["device_sequence"] = args.sequence
    if args.lane is not None:
        payload["lane_id"] = args.lane
    if args.event_time:
        payload["event_time"] = args.event_time
    return payload


def response_body(response: httpx.Response) -> Any:
    """Decoded JSON body, or the raw text when a proxy answers with HTML."""
    try:
        return response.json()
    except ValueError:
        return response.text


def main() -> int:
    parser = argparse.ArgumentParser(description="Post a production alarm to /alarm")
    parser.add_argument("machine_id", help="Machine identifier, e.g. T1.2-M01")
    parser.add_argument("--count", type=int, default=1, help="Raw pulse count")
    parser.add_argument("--sequence", default=None, help="Device sequence number")
    parser.add_argument("--lane", type=int, default=None, help="Explicit lane attribution")
    parser.add_argument("--event-time", default=None, help="Device clock timestamp (ISO 8601)")
    parser.add_argument("--base-url", default="http://localhost:8000", help="API base URL")
    parser.add_argument("--timeout", type=float, default=10.0, help="Request timeout in seconds")
    args = parser.parse_args()

    try:
        response = httpx.post(f"{args.base_url.rstrip('/')}/alarm", json=build_payload(args), timeout=args.timeout)
    except httpx.HTTPError as exc:
        print(json.dumps({"status": "failed", "error": str(exc)}))
        return 1

    print(json.dumps({"status_code": response.status_code, "body": response_body(response)}, indent=2))
    return 0 if response.is_success else 1


if __name__ == "__main__":
    raise SystemExit(main())
