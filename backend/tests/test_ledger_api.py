"""
Read-side API Tests — production logs, ledger balances and anomalies.
"""

from datetime import timedelta

import pytest
from httpx import AsyncClient

from db.models import ProductionLog, utcnow


@pytest.mark.asyncio
class TestProductionLogsAPI:
    async def test_logs_filter_by_machine_and_clock(self, client: AsyncClient, seeded_db):
        await client.post("/alarm", json={"machine_id": "T1.2-M01", "pulse_count": 2})
        await client.post("/alarm", json={"machine_id": "T1.1-M03", "event_time": "1970-01-01T00:00:00Z"})

        response = await client.get("/api/v1/production/logs", params={"machine_id": "T1.2-M01"})
        assert response.status_code == 200
        assert sorted(row["product_sku"] for row in response.json()) == ["SKU-A", "SKU-B"]

        corrected = await client.get("/api/v1/production/logs", params={"clock_corrected": "true"})
        assert [row["machine_id"] for row in corrected.json()] == ["T1.1-M03"]


@pytest.mark.asyncio
class TestLedgerAPI:
    async def test_balances_after_ingest(self, client: AsyncClient, seeded_db):
        await client.post("/alarm", json={"machine_id": "T1.2-M01", "pulse_count": 5, "device_sequence": "1"})
        await client.post("/alarm", json={"machine_id": "T1.2-M01", "pulse_count": 5, "device_sequence": "1"})

        response = await client.get("/api/v1/ledger/balances")
        assert response.status_code == 200
        assert response.json() == [
            {"sku": "SKU-A", "on_hand": 3, "entries": 1},
            {"sku": "SKU-B", "on_hand": 2, "entries": 1},
        ]

    async def test_entries_by_ref_doc(self, client: AsyncClient, seeded_db):
        alarm = await client.post("/alarm", json={"machine_id": "T1.3-M02"})
        log_id = alarm.json()["lanes"][0]["log_id"]

        response = await client.get("/api/v1/ledger/entries", params={"ref_doc": log_id})
        entries = response.json()
        assert len(entries) == 1
        assert entries[0]["sku"] == "UNKNOWN"
        assert entries[0]["needs_review"] is True

    async def test_manual_reconcile_sweeps_orphans(self, client: AsyncClient, seeded_db):
        now = utcnow()
        seeded_db.add(
            ProductionLog(
                machine_id="T1.1-M03",
                lane_id=1,
                product_sku="SKU-C",
                count=4,
                pulse_count=4,
                event_time=now,
                received_time=now,
                dedup_key="orphan",
            )
        )
        await seeded_db.commit()

        response = await client.post("/api/v1/ledger/reconcile")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "success"
        assert data["created"] == 1

        balances = await client.get("/api/v1/ledger/balances", params={"sku": "SKU-C"})
        assert balances.json() == [{"sku": "SKU-C", "on_hand": 4, "entries": 1}]


@pytest.mark.asyncio
class TestAnomaliesAPI:
    async def test_scan_and_list(self, client: AsyncClient, seeded_db):
        start = utcnow() - timedelta(hours=2)
        for i, offset in enumerate([0, 300, 2700, 2701, 2702]):
            at = start + timedelta(seconds=offset)
            seeded_db.add(
                ProductionLog(
                    machine_id="T1.1-M03",
                    lane_id=1,
                    product_sku="SKU-C",
                    count=1,
                    pulse_count=1,
                    event_time=at,
                    received_time=at,
                    dedup_key=f"scan-{i}",
                )
            )
        await seeded_db.commit()

        scan = await client.post("/api/v1/anomalies/scan", json={"machine_id": "T1.1-M03", "lookback_hours": 6})
        assert scan.status_code == 200
        assert [a["kind"] for a in scan.json()["anomalies"]] == ["BufferedBurst"]

        listed = await client.get("/api/v1/anomalies", params={"kind": "BufferedBurst"})
        assert len(listed.json()) == 1
        assert listed.json()[0]["detail"]["burst_events"] == 3

    async def test_scan_all_machines(self, client: AsyncClient, seeded_db):
        response = await client.post("/api/v1/anomalies/scan", json={})
        assert response.status_code == 200
        assert response.json()["machines_scanned"] == 0

    async def test_unknown_kind_is_400(self, client: AsyncClient, test_db):
        response = await client.get("/api/v1/anomalies", params={"kind": "Jam"})
        assert response.status_code == 400
