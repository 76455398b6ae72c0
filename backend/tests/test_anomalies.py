"""
Tests for the production anomaly detector (gap, burst and clock scans).
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from db.models import ProductionAnomaly, ProductionLog
from production.anomalies import (
    BUFFERED_BURST,
    CLOCK_INVALID,
    MISSED_CYCLE,
    detect_anomalies,
    scan_all_machines,
    scan_machine,
)

T0 = datetime(2026, 3, 2, 8, 0, 0)


def _entry(offset_seconds, *, machine_id="T1.1-M03", lane_id=1, key=None, count=1, **extra) -> ProductionLog:
    at = T0 + timedelta(seconds=offset_seconds)
    return ProductionLog(
        machine_id=machine_id,
        lane_id=lane_id,
        product_sku=extra.pop("sku", "SKU-C"),
        count=count,
        pulse_count=count,
        event_time=at,
        received_time=at,
        dedup_key=key or f"{machine_id}-{offset_seconds}",
        clock_corrected=extra.pop("clock_corrected", False),
        device_time=extra.pop("device_time", None),
    )


class TestDetectAnomalies:
    def test_regular_cadence_is_clean(self):
        entries = [_entry(300 * i) for i in range(6)]
        assert detect_anomalies(entries, expected_cycle_seconds=300) == []

    def test_long_gap_without_burst_is_missed_cycle(self):
        entries = [_entry(0), _entry(300), _entry(1500), _entry(1800)]
        findings = detect_anomalies(entries, expected_cycle_seconds=300)

        assert [f.kind for f in findings] == [MISSED_CYCLE]
        finding = findings[0]
        assert finding.window_start == T0 + timedelta(seconds=300)
        assert finding.window_end == T0 + timedelta(seconds=1500)
        assert finding.detail["gap_seconds"] == 1200.0
        assert finding.detail["missed_cycles"] == 3

    def test_gap_followed_by_tight_cluster_is_buffered_burst(self):
        # Connectivity drops for 30 minutes, then four buffered pulses land within 3 seconds.
        entries = [_entry(0), _entry(300), _entry(2100), _entry(2101), _entry(2102), _entry(2103)]
        findings = detect_anomalies(entries, expected_cycle_seconds=300)

        assert [f.kind for f in findings] == [BUFFERED_BURST]
        detail = findings[0].detail
        assert detail["burst_events"] == 4
        assert detail["burst_units"] == 4
        assert detail["gap_seconds"] == 1800.0
        assert findings[0].window_end == T0 + timedelta(seconds=2100)

    def test_five_signals_in_two_seconds_after_forty_minute_gap(self):
        entries = [_entry(0)] + [_entry(2400 + 0.4 * i) for i in range(5)]
        findings = detect_anomalies(entries, expected_cycle_seconds=300)

        assert len(findings) == 1
        assert findings[0].kind == BUFFERED_BURST
        assert findings[0].window_start == T0
        assert findings[0].detail["burst_events"] == 5

    def test_short_cluster_below_threshold_stays_missed_cycle(self):
        entries = [_entry(0), _entry(1200), _entry(1201)]
        findings = detect_anomalies(entries, expected_cycle_seconds=300, burst_min_events=3)
        assert [f.kind for f in findings] == [MISSED_CYCLE]

    def test_dual_lane_rows_collapse_into_one_event(self):
        entries = []
        for i in range(5):
            entries.append(_entry(240 * i, machine_id="T1.2-M01", lane_id=1, key=f"sig-{i}", sku="SKU-A"))
            entries.append(_entry(240 * i, machine_id="T1.2-M01", lane_id=2, key=f"sig-{i}", sku="SKU-B"))
        assert detect_anomalies(entries, expected_cycle_seconds=240) == []

    def test_clock_corrected_rows_are_reported(self):
        entries = [
            _entry(0),
            _entry(300, clock_corrected=True, device_time=datetime(1970, 1, 1, 0, 0, 5)),
        ]
        findings = detect_anomalies(entries, expected_cycle_seconds=300)

        assert [f.kind for f in findings] == [CLOCK_INVALID]
        assert findings[0].detail["device_time"] == "1970-01-01T00:00:05"

    def test_per_machine_expected_cycle(self):
        entries = [_entry(0, machine_id="A"), _entry(600, machine_id="A"), _entry(0, machine_id="B"), _entry(600, machine_id="B")]
        findings = detect_anomalies(entries, expected_cycle_seconds={"A": 300, "B": 600})
        assert [(f.machine_id, f.kind) for f in findings] == [("A", MISSED_CYCLE)]

    def test_empty_input(self):
        assert detect_anomalies([], expected_cycle_seconds=300) == []


@pytest.mark.asyncio
class TestScanMachine:
    async def test_scan_persists_and_replaces_findings(self, seeded_db, settings):
        seeded_db.add_all([_entry(0), _entry(300), _entry(1500), _entry(1800)])
        await seeded_db.commit()

        since = T0 - timedelta(hours=1)
        first = await scan_machine(seeded_db, "T1.1-M03", since, settings=settings)
        second = await scan_machine(seeded_db, "T1.1-M03", since, settings=settings)

        assert [f.kind for f in first] == [MISSED_CYCLE]
        assert len(second) == 1
        stored = (await seeded_db.execute(select(ProductionAnomaly))).scalars().all()
        assert len(stored) == 1
        assert stored[0].detail["missed_cycles"] == 3

    async def test_scan_uses_machine_expected_cycle(self, seeded_db, settings):
        # T1.1-M03 runs a 300 s cycle; a 400 s gap is inside 1.6x tolerance.
        seeded_db.add_all([_entry(0), _entry(400), _entry(800)])
        await seeded_db.commit()

        findings = await scan_machine(seeded_db, "T1.1-M03", T0 - timedelta(hours=1), persist=False, settings=settings)
        assert findings == []

    async def test_scan_all_machines_summarizes_by_kind(self, seeded_db, settings):
        seeded_db.add_all(
            [
                _entry(0),
                _entry(1200),
                _entry(0, machine_id="T1.2-M01", lane_id=1, sku="SKU-A"),
                _entry(100, machine_id="T1.2-M01", lane_id=1, sku="SKU-A", clock_corrected=True),
            ]
        )
        await seeded_db.commit()

        summary = await scan_all_machines(seeded_db, T0 - timedelta(hours=1), settings=settings)
        assert summary["machines_scanned"] == 2
        assert summary["by_kind"] == {MISSED_CYCLE: 1, BUFFERED_BURST: 0, CLOCK_INVALID: 1}
