"""Reading payload mapping and persistence"""
import json
import logging
import math
from typing import Any, Optional

from sqlalchemy.orm import Session

from models import Reading

logger = logging.getLogger(__name__)

# Device JSON field -> readings column
READING_FIELD_MAP = {
    "tempC": "temp_c",
    "humidity": "humidity_rh",
    "pressure": "pressure_hpa",
    "gasRes": "gas_res_ohm",
    "iaq": "iaq",
    "tMin": "t_min_c",
    "tMax": "t_max_c",
    "tAvg": "t_avg_c",
}


def parse_reading_payload(text: Optional[str]) -> Optional[dict]:
    """Decode a reading part; malformed or non-object JSON counts as absent."""
    if not text:
        return None
    try:
        parsed = json.loads(text)
    except ValueError as e:
        logger.error(f"Reading JSON parse failed ({len(text)}B): {e}")
        return None
    if not isinstance(parsed, dict):
        logger.error(f"Reading JSON is not an object: {type(parsed).__name__}")
        return None
    return parsed


def _numeric_or_none(field: str, value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        logger.debug(f"Dropping non-numeric reading field {field}={value!r}")
        return None
    value = float(value)
    return value if math.isfinite(value) else None


def reading_columns(payload: dict) -> dict:
    """Column values for a readings row, each numeric or None."""
    columns = {
        column: _numeric_or_none(field, payload.get(field))
        for field, column in READING_FIELD_MAP.items()
    }
    flags = payload.get("triggerFlags")
    columns["trigger_flags"] = flags if isinstance(flags, list) else None
    return columns


def insert_reading(db: Session, device_id: str, payload: dict) -> int:
    reading = Reading(device_id=device_id, **reading_columns(payload))
    db.add(reading)
    db.commit()
    db.refresh(reading)
    return reading.id
