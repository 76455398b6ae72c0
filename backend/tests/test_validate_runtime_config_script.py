from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path


def _parse_json_output(stdout: str) -> dict:
    lines = [line.strip() for line in stdout.splitlines() if line.strip()]
    return json.loads(lines[-1])


def _run(extra_env: dict[str, str], *args: str) -> subprocess.CompletedProcess:
    repo_root = Path(__file__).resolve().parents[2]
    script_path = repo_root / "backend" / "scripts" / "validate_runtime_config.py"
    env = os.environ.copy()
    env.update(extra_env)
    return subprocess.run(
        [sys.executable, str(script_path), *args],
        cwd=str(repo_root),
        env=env,
        capture_output=True,
        text=True,
        check=False,
    )


def test_validate_runtime_config_fails_for_sqlite_in_production():
    completed = _run(
        {
            "APP_ENV": "production",
            "DEBUG": "false",
            "DATABASE_URL": "sqlite+aiosqlite:///prod.db",
        }
    )
    assert completed.returncode == 1
    payload = _parse_json_output(completed.stdout)
    assert payload["status"] == "failed"
    assert any("DATABASE_URL" in message for message in payload["failures"])


def test_validate_runtime_config_passes_for_postgres_in_production():
    completed = _run(
        {
            "APP_ENV": "production",
            "DEBUG": "false",
            "DATABASE_URL": "postgresql+asyncpg://floorledger:secret@db:5432/floorledger",
            "RECONCILE_MODE": "deferred",
            "REDIS_URL": "redis://redis:6379/0",
        },
        "--require-redis",
    )
    assert completed.returncode == 0
    payload = _parse_json_output(completed.stdout)
    assert payload["status"] == "success"
    assert payload["reconcile_mode"] == "deferred"
    assert payload["failures"] == []
