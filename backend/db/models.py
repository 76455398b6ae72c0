"""
FloorLedger Database Models

Tables:
  1. machines                 - Registered production machines (lane layout)
  2. machine_active_products  - Point-in-time SKU assignment per machine lane
  3. production_logs          - Per-lane production counts (append-only)
  4. stock_ledger             - Signed inventory movements (append-only)
  5. production_anomalies     - Advisory detector output (recomputable)
  6. iot_device_configs       - Controller MAC → machine/lane binding
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    types,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID as PG_UUID


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how every DateTime column is stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


JSONType = JSON().with_variant(JSONB(), "postgresql")

from db.session import Base

# ─── 1. Machines ───────────────────────────────────────────────────────────


class Machine(Base):
    __tablename__ = "machines"

    machine_id = Column(String(50), primary_key=True)  # e.g. "T1.2-M01"
    factory_id = Column(String(50), nullable=False)
    name = Column(String(255))
    lane_count = Column(Integer, nullable=False, default=1)
    expected_cycle_seconds = Column(Integer)  # falls back to settings default
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_machines_factory", "factory_id"),
        CheckConstraint("lane_count >= 1", name="ck_machine_lane_count_positive"),
        CheckConstraint("status IN ('active', 'inactive', 'maintenance')", name="ck_machine_status"),
    )


# ─── 2. Active Product Assignments ─────────────────────────────────────────


class ActiveProductAssignment(Base):
    """What each lane is producing *now*. Overwritten on retool, never historized."""

    __tablename__ = "machine_active_products"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    machine_id = Column(String(50), nullable=False)
    lane_id = Column(Integer, nullable=False, default=0)
    product_sku = Column(String(100), nullable=False)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("machine_id", "lane_id", name="uq_active_product_lane"),
        CheckConstraint("lane_id >= 0", name="ck_active_product_lane_id"),
    )


# ─── 3. Production Logs ────────────────────────────────────────────────────


class ProductionLog(Base):
    """One lane's share of one ingested signal. Immutable once written."""

    __tablename__ = "production_logs"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    machine_id = Column(String(50), nullable=False)  # no FK: unknown machines still log
    lane_id = Column(Integer, nullable=False, default=0)
    product_sku = Column(String(100), nullable=False)
    count = Column(Integer, nullable=False)
    pulse_count = Column(Integer, nullable=False)  # raw signal count before splitting
    event_time = Column(DateTime, nullable=False)
    received_time = Column(DateTime, nullable=False, default=utcnow)
    device_time = Column(DateTime)  # raw device clock, kept even when rejected
    clock_corrected = Column(Boolean, nullable=False, default=False)
    dedup_key = Column(String(64), nullable=False)
    device_sequence = Column(String(100))

    __table_args__ = (
        UniqueConstraint("dedup_key", "lane_id", name="uq_production_log_dedup_lane"),
        Index("ix_production_logs_machine_time", "machine_id", "event_time"),
        Index("ix_production_logs_sku", "product_sku"),
        CheckConstraint("count >= 1", name="ck_production_log_count_positive"),
    )


# ─── 4. Stock Ledger ───────────────────────────────────────────────────────


class StockLedgerEntry(Base):
    __tablename__ = "stock_ledger"

    txn_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    sku = Column(String(100), nullable=False)
    change_qty = Column(Integer, nullable=False)
    event_type = Column(String(30), nullable=False, default="Production")
    ref_doc = Column(GUID(), ForeignKey("production_logs.id"), nullable=False)
    lane_id = Column(Integer, nullable=False, default=0)
    needs_review = Column(Boolean, nullable=False, default=False)  # posted against the sentinel SKU
    timestamp = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("ref_doc", "lane_id", name="uq_stock_ledger_ref_lane"),
        Index("ix_stock_ledger_sku", "sku"),
        CheckConstraint("event_type IN ('Production')", name="ck_stock_ledger_event_type"),
    )


# ─── 5. Production Anomalies ───────────────────────────────────────────────


class ProductionAnomaly(Base):
    __tablename__ = "production_anomalies"

    anomaly_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    machine_id = Column(String(50), nullable=False)
    kind = Column(String(30), nullable=False)
    window_start = Column(DateTime, nullable=False)
    window_end = Column(DateTime, nullable=False)
    detail = Column(JSONType)
    detected_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_production_anomalies_machine_window", "machine_id", "window_start"),
        CheckConstraint(
            "kind IN ('MissedCycle', 'BufferedBurst', 'ClockInvalid')",
            name="ck_production_anomaly_kind",
        ),
    )


# ─── 6. IoT Device Configs ─────────────────────────────────────────────────


class IoTDeviceConfig(Base):
    __tablename__ = "iot_device_configs"

    device_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    mac_address = Column(String(32), nullable=False, unique=True)
    machine_id = Column(String(50))  # NULL until an operator assigns the device
    lane_id = Column(Integer)
    count_per_signal = Column(Integer, nullable=False, default=1)
    debounce_ms = Column(Integer, nullable=False, default=240000)
    firmware_version = Column(String(50))
    notes = Column(Text)
    last_heartbeat = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_iot_device_configs_machine", "machine_id"),
        CheckConstraint("count_per_signal >= 1", name="ck_iot_device_count_per_signal"),
    )
