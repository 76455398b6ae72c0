#!/usr/bin/env python3
"""Validate runtime configuration for pre-production/production deploys.

Examples:
  python backend/scripts/validate_runtime_config.py
  python backend/scripts/validate_runtime_config.py --require-redis --pretty
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Any

# Add backend/ to path when run as a script.
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import Settings, collect_guardrail_failures, is_local_env


def _validate_settings(*, require_redis: bool) -> tuple[list[str], dict[str, Any]]:
    # Built directly so guardrail failures are reported instead of raised.
    settings = Settings()
    failures = collect_guardrail_failures(settings)

    if settings.reconcile_mode == "deferred" and not settings.redis_url.strip():
        failures.append("REDIS_URL is required when RECONCILE_MODE=deferred")
    if require_redis and not settings.redis_url.strip():
        failures.append("REDIS_URL is required when --require-redis is set")

    summary = {
        "status": "success" if not failures else "failed",
        "app_env": settings.app_env,
        "local_env": is_local_env(settings.app_env),
        "reconcile_mode": settings.reconcile_mode,
        "require_redis": bool(require_redis),
        "failures": failures,
    }
    return failures, summary


def main() -> int:
    parser = argparse.ArgumentParser(description="Validate deployment runtime config")
    parser.add_argument(
        "--require-redis",
        action="store_true",
        help="Require a Celery broker URL for this deploy target",
    )
    parser.add_argument("--pretty", action="store_true", help="Pretty-print JSON output")
    args = parser.parse_args()

    try:
        failures, summary = _validate_settings(require_redis=bool(args.require_redis))
    except Exception as exc:  # noqa: BLE001
        summary = {
            "status": "failed",
            "error": str(exc),
            "require_redis": bool(args.require_redis),
        }
        failures = [str(exc)]

    if args.pretty:
        print(json.dumps(summary, indent=2, sort_keys=True))
    else:
        print(json.dumps(summary))

    return 0 if not failures else 1


if __name__ == "__main__":
    raise SystemExit(main())
