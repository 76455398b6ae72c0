#!/usr/bin/env python3
"""Seed the demo factory floor: machines, lane layout and active SKUs.

Usage:
  python backend/scripts/seed_machines.py
  python backend/scripts/seed_machines.py --pretty

Safe to re-run: existing machines are left alone and assignments are
overwritten with the demo SKUs.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Add backend/ to import path when run as a script.
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import get_settings
from db.models import Machine
from db.session import Base
from production.config_store import ActiveConfigurationStore

# (machine_id, factory_id, name, expected_cycle_seconds, {lane_id: sku})
DEMO_MACHINES = [
    ("T1.1-M03", "T1", "Stretch Film (T1.1)", 300, {1: "SF-500-23"}),
    ("T1.2-M01", "T1", "2M Double Layer (T1.2)", 240, {1: "2M-DL-A", 2: "2M-DL-B"}),
    ("T1.3-M02", "T1", "1M Single Layer (T1.3)", 300, {}),
    ("N1-M01", "N1", "1M Double Layer (N1)", 240, {1: "1M-DL-A", 2: "1M-DL-B"}),
    ("N2-M02", "N2", "1M Single Layer (N2)", 300, {1: "1M-SL-01"}),
]


async def seed_machines(database_url: str) -> dict[str, Any]:
    engine = create_async_engine(database_url)
    created: list[str] = []
    assigned: list[str] = []
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        async with session_factory() as db:
            for machine_id, factory_id, name, cycle, lanes in DEMO_MACHINES:
                if await db.get(Machine, machine_id) is None:
                    db.add(
                        Machine(
                            machine_id=machine_id,
                            factory_id=factory_id,
                            name=name,
                            lane_count=max(1, len(lanes)),
                            expected_cycle_seconds=cycle,
                        )
                    )
                    await db.commit()
                    created.append(machine_id)

            store = ActiveConfigurationStore(db)
            for machine_id, _factory_id, _name, _cycle, lanes in DEMO_MACHINES:
                for lane_id, sku in lanes.items():
                    await store.set_active(machine_id, lane_id, sku)
                    assigned.append(f"{machine_id}/{lane_id}={sku}")
    finally:
        await engine.dispose()

    return {"status": "success", "machines_created": created, "assignments": assigned}


def main() -> int:
    parser = argparse.ArgumentParser(description="Seed demo machines and lane assignments")
    parser.add_argument("--database-url", default=None, help="Override DATABASE_URL")
    parser.add_argument("--pretty", action="store_true", help="Pretty-print JSON output")
    args = parser.parse_args()

    result = asyncio.run(seed_machines(args.database_url or get_settings().database_url))
    if args.pretty:
        print(json.dumps(result, indent=2, sort_keys=True))
    else:
        print(json.dumps(result))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
