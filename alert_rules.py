"""
Alert derivation from snapshot reading payloads.

Devices report why a snapshot was taken as free-form flags ("fever",
"airQualityElevated", "no signal", ...). Flags are normalized to kebab case and
matched against an ordered keyword table; the first matching rule decides the
alert kind. Each kind yields at most one alert per reading.
"""
import enum
import logging
import math
import re
from dataclasses import dataclass
from typing import Optional, Union

logger = logging.getLogger(__name__)


class AlertKind(str, enum.Enum):
    TEMP_FEVER = "TEMP_FEVER"
    AIR_QUALITY = "AIR_QUALITY"
    DEVICE_OFFLINE = "DEVICE_OFFLINE"


class AlertSeverity(str, enum.Enum):
    INFO = "INFO"
    WARN = "WARN"
    CRIT = "CRIT"


@dataclass(frozen=True)
class AlertDraft:
    kind: Union[AlertKind, str]
    severity: AlertSeverity
    message: str


# First match wins, by substring: "gas-fever" is a TEMP_FEVER flag.
FLAG_RULES = (
    (AlertKind.TEMP_FEVER, ("fever", "temp-fever", "temperature")),
    (AlertKind.AIR_QUALITY, ("air-quality", "airquality", "iaq", "gas")),
    (AlertKind.DEVICE_OFFLINE, ("offline", "disconnected", "no-signal")),
)

FLAG_LIST_FIELDS = ("triggerFlags", "flags")

# Boolean convenience fields and the flag each one stands for
BOOLEAN_FLAG_FIELDS = (
    ("feverDetected", "fever-detected"),
    ("feverDetectedAtTrigger", "fever-detected"),
    ("feverObserved", "fever-detected"),
    ("airQualityElevated", "air-quality-elevated"),
    ("deviceOffline", "device-offline"),
)

GENERIC_TRIGGER_REASONS = frozenset({"", "unknown", "none", "trigger", "snapshot"})

_CAMEL_BOUNDARY = re.compile(r"([a-z])([A-Z])")
_INVALID_CHARS = re.compile(r"[^a-zA-Z0-9_-]")
_REPEATED_SEPARATORS = re.compile(r"-{2,}")


def normalize_flag(raw: str) -> str:
    flag = str(raw).strip()
    flag = _CAMEL_BOUNDARY.sub(r"\1-\2", flag)
    flag = _INVALID_CHARS.sub("-", flag)
    flag = _REPEATED_SEPARATORS.sub("-", flag).strip("-")
    return flag.lower()


def classify_flag(flag: str) -> Optional[AlertKind]:
    for kind, keywords in FLAG_RULES:
        if any(keyword in flag for keyword in keywords):
            return kind
    return None


def collect_flags(payload: dict) -> list[str]:
    """Raw flags in source order: flag lists, boolean fields, then trigger reason."""
    flags: list[str] = []
    for field in FLAG_LIST_FIELDS:
        value = payload.get(field)
        if isinstance(value, list):
            flags.extend(v for v in value if isinstance(v, str) and v.strip())
        elif isinstance(value, str) and value.strip():
            flags.append(value)

    for field, flag in BOOLEAN_FLAG_FIELDS:
        if payload.get(field) is True:
            flags.append(flag)

    if not flags:
        reason = payload.get("triggerReason")
        if isinstance(reason, str) and reason.strip():
            flags.append(reason)
    return flags


def _number(payload: dict, key: str) -> Optional[float]:
    value = payload.get(key)
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def humanize_reason(reason: str) -> str:
    text = _CAMEL_BOUNDARY.sub(r"\1 \2", reason.strip())
    text = re.sub(r"[_-]+", " ", text)
    return re.sub(r"\s+", " ", text).strip()


def _fever_message(payload: dict) -> str:
    t_max = _number(payload, "tMax")
    threshold = _number(payload, "feverThresholdC")
    delta = _number(payload, "feverDelta")
    if delta is None and t_max is not None and threshold is not None:
        delta = t_max - threshold

    details = []
    if t_max is not None:
        details.append(f"max {t_max:.1f}°C")
    if threshold is not None:
        details.append(f"threshold {threshold:.1f}°C")
    if delta is not None:
        details.append(f"delta {delta:+.2f}°C")
    if not details:
        return "Fever detected"
    return f"Fever detected ({', '.join(details)})"


def _air_quality_message(payload: dict) -> str:
    iaq = _number(payload, "iaq")
    gas_ratio = _number(payload, "gasRatio")

    details = []
    if iaq is not None:
        details.append(f"IAQ {math.floor(iaq + 0.5)}")
    if gas_ratio is not None:
        details.append(f"gas ratio {gas_ratio:.2f}")
    if not details:
        return "Air quality elevated"
    return f"Air quality elevated ({', '.join(details)})"


def _offline_message(payload: dict) -> str:
    reason = payload.get("triggerReason")
    if isinstance(reason, str) and reason.strip().lower() not in GENERIC_TRIGGER_REASONS:
        return f"Device offline: {humanize_reason(reason)}"
    return "Device offline"


def build_draft(kind: Union[AlertKind, str], payload: dict) -> AlertDraft:
    if kind == AlertKind.TEMP_FEVER:
        return AlertDraft(AlertKind.TEMP_FEVER, AlertSeverity.CRIT, _fever_message(payload))
    if kind == AlertKind.AIR_QUALITY:
        return AlertDraft(AlertKind.AIR_QUALITY, AlertSeverity.WARN, _air_quality_message(payload))
    if kind == AlertKind.DEVICE_OFFLINE:
        return AlertDraft(AlertKind.DEVICE_OFFLINE, AlertSeverity.WARN, _offline_message(payload))
    return AlertDraft(kind, AlertSeverity.WARN, "Alert triggered")


def derive_alerts(payload: Optional[dict]) -> list[AlertDraft]:
    """Alert drafts for a reading payload, one per kind, in first-seen order."""
    if not isinstance(payload, dict):
        return []

    kinds: list[AlertKind] = []
    unknown: set[str] = set()
    for raw in collect_flags(payload):
        flag = normalize_flag(raw)
        kind = classify_flag(flag)
        if kind is None:
            unknown.add(flag or raw)
        elif kind not in kinds:
            kinds.append(kind)

    if unknown:
        logger.info(f"Ignoring unrecognized alert flags: {sorted(unknown)}")

    return [build_draft(kind, payload) for kind in kinds]
