"""
HMAC-SHA256 request authentication for device ingestion endpoints.

Every device request carries three headers:
- X-Device-Id: the device's id in the devices table
- X-Timestamp: epoch milliseconds at signing time
- X-Signature: hex(HMAC-SHA256(secret, canonical string))

The canonical string is METHOD, URL path, hex SHA-256 of the raw body and the
timestamp header, joined with single newlines.
"""
import hashlib
import hmac
import logging
import math
import time
from dataclasses import dataclass
from typing import Optional, Union

from fastapi import Request
from sqlalchemy.orm import Session

from config import settings
from dependencies import IngestStores
from models import Device

logger = logging.getLogger(__name__)

DEVICE_ID_HEADER = "X-Device-Id"
TIMESTAMP_HEADER = "X-Timestamp"
SIGNATURE_HEADER = "X-Signature"


@dataclass(frozen=True)
class DeviceCredential:
    device_id: str
    shared_secret: str


@dataclass
class AuthSuccess:
    device_id: str
    secret: str
    stores: IngestStores
    ok: bool = True


@dataclass
class AuthFailure:
    status: int
    message: str
    ok: bool = False


AuthResult = Union[AuthSuccess, AuthFailure]


def body_hash(body: bytes) -> str:
    return hashlib.sha256(body).hexdigest()


def canonical_string(method: str, path: str, body_sha256: str, timestamp: str) -> str:
    return f"{method}\n{path}\n{body_sha256}\n{timestamp}"


def compute_signature(secret: str, canonical: str) -> str:
    return hmac.new(secret.encode(), canonical.encode(), hashlib.sha256).hexdigest()


def sign_request(secret: str, method: str, path: str, body: bytes, timestamp: str) -> str:
    """Signature a device would send for this request."""
    return compute_signature(secret, canonical_string(method, path, body_hash(body), timestamp))


def lookup_credential(db: Session, device_id: str) -> Optional[DeviceCredential]:
    device = db.query(Device).filter(Device.id == device_id).first()
    if device is None:
        return None
    return DeviceCredential(device_id=device.id, shared_secret=device.secret)


def _parse_timestamp(raw: str) -> float:
    try:
        return float(raw)
    except ValueError:
        return math.nan


async def verify_request(
    request: Request,
    stores: IngestStores,
    now_ms: Optional[float] = None,
    max_skew_ms: Optional[int] = None,
) -> AuthResult:
    """Check the signature headers of ``request`` against the device's secret.

    The body is read through ``request.body()``, which Starlette caches, so the
    caller can still parse the form afterwards.
    """
    device_id = request.headers.get(DEVICE_ID_HEADER, "")
    timestamp = request.headers.get(TIMESTAMP_HEADER, "")
    signature = request.headers.get(SIGNATURE_HEADER, "")
    if not device_id or not timestamp or not signature:
        return AuthFailure(401, "missing auth headers")

    if now_ms is None:
        now_ms = time.time() * 1000
    if max_skew_ms is None:
        max_skew_ms = settings.CLOCK_SKEW_MS
    skew = abs(now_ms - _parse_timestamp(timestamp))
    if not math.isfinite(skew) or skew > max_skew_ms:
        logger.warning(f"Auth rejected for {device_id}: clock skew {skew}ms")
        return AuthFailure(401, "clock skew too large")

    try:
        credential = lookup_credential(stores.db, device_id)
    except Exception as e:
        logger.error(f"Device lookup failed for {device_id}: {e}")
        stores.db.rollback()
        credential = None
    if credential is None:
        return AuthFailure(401, "device not found")

    body = await request.body()
    expected = compute_signature(
        credential.shared_secret,
        canonical_string(request.method, request.url.path, body_hash(body), timestamp),
    )
    if not hmac.compare_digest(expected.encode(), signature.encode()):
        logger.warning(f"Bad signature from device {device_id} ({len(body)}B body)")
        return AuthFailure(401, "bad signature")

    return AuthSuccess(
        device_id=credential.device_id,
        secret=credential.shared_secret,
        stores=stores,
    )
