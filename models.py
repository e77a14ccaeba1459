"""SQLAlchemy models for the Thermal Ingest database"""
from datetime import datetime

from sqlalchemy import Column, String, DateTime, Float, Integer, JSON, Text

from database import Base


class Device(Base):
    """Registered field units and their shared signing secrets"""
    __tablename__ = "devices"

    id = Column(String(255), primary_key=True)
    secret = Column(String(255), nullable=False)
    name = Column(String(255), nullable=True)
    camera_url = Column(String(500), nullable=True)
    camera_host = Column(String(255), nullable=True)
    config = Column(JSON, nullable=True)
    last_seen = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class Reading(Base):
    """One environmental + thermal summary sample"""
    __tablename__ = "readings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    device_id = Column(String(255), nullable=False, index=True)
    ts = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    temp_c = Column(Float, nullable=True)
    humidity_rh = Column(Float, nullable=True)
    pressure_hpa = Column(Float, nullable=True)
    gas_res_ohm = Column(Float, nullable=True)
    iaq = Column(Float, nullable=True)
    t_min_c = Column(Float, nullable=True)
    t_max_c = Column(Float, nullable=True)
    t_avg_c = Column(Float, nullable=True)

    trigger_flags = Column(JSON, nullable=True)


class Alert(Base):
    """Alerts derived from readings or raised directly by a device"""
    __tablename__ = "alerts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    device_id = Column(String(255), nullable=False, index=True)
    ts = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    kind = Column(String(32), nullable=False)  # AlertKind value
    severity = Column(String(8), nullable=False)  # AlertSeverity value
    message = Column(Text, nullable=False)
    reading_id = Column(Integer, nullable=True)


class Snapshot(Base):
    """Append-only archival captures"""
    __tablename__ = "snapshots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    device_id = Column(String(255), nullable=False, index=True)
    ts = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    reading_id = Column(Integer, nullable=True)
    alert_id = Column(Integer, nullable=True)
    object_path = Column(String(500), unique=True, nullable=False)  # MinIO object path
