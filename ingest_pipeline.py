"""
Multipart device ingestion shared by the live-cache and snapshot endpoints.

Per request, in order:
1. authenticate the signed request
2. parse the multipart parts: cam (file), thermal (JSON text), reading (JSON text)
3. insert the reading (never fatal)
4. upload the thermal JSON (fatal on failure)
5. upload the camera frame, composited with the thermal overlay when
   configured (fatal on failure; a failed overlay falls back to the raw frame)
6. archival only: insert the snapshot row
7. touch the device's last_seen (best effort)
8. archival only: derive, store and publish alerts, then link the first alert
   back onto the snapshot row
"""
import asyncio
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from fastapi import Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from sqlalchemy.orm import Session
from starlette.datastructures import UploadFile

from alert_rules import derive_alerts
from alert_service import raise_alerts
from config import settings
from dependencies import IngestStores
from device_auth import AuthResult, AuthSuccess, verify_request
from models import Device, Snapshot
from overlay import DEFAULT_ALPHA, ThermalGrid, compose
from readings import insert_reading, parse_reading_payload
from storage import BlobStoreError

logger = logging.getLogger(__name__)

Verifier = Callable[[Request, IngestStores], Awaitable[AuthResult]]


def device_key(device_id: str) -> str:
    return device_id


def snapshot_key(device_id: str, now: Optional[datetime] = None) -> str:
    """``<device>/<UTC stamp>-<random suffix>``, unique per capture."""
    now = now or datetime.now(timezone.utc)
    stamp = now.strftime("%Y-%m-%dT%H-%M-%S-") + f"{now.microsecond // 1000:03d}Z"
    return f"{device_id}/{stamp}-{uuid.uuid4().hex[:8]}"


@dataclass(frozen=True)
class IngestConfig:
    """Persistence policy for one ingestion endpoint.

    ``object_key`` maps the device id to the key the path functions receive:
    the device id itself for the live cache, a per-capture key for snapshots.
    """
    name: str
    require_cam: bool = False
    require_thermal: bool = True
    persist_cam_frame: bool = True
    persist_thermal: bool = True
    cam_bucket: str = "frames-live"
    thermal_bucket: str = "frames-live"
    object_key: Callable[[str], str] = device_key
    cam_path: Callable[[str], str] = field(default=lambda key: f"{key}/current.jpg")
    thermal_path: Callable[[str], str] = field(default=lambda key: f"{key}/current.json")
    overwrite: bool = True
    frame_error: str = "frame_upload_failed"
    archival: bool = False
    compose_overlay: bool = False
    overlay_alpha: float = DEFAULT_ALPHA

    @property
    def missing_error(self) -> str:
        if self.require_cam and self.require_thermal:
            return "missing_cam_or_thermal"
        if self.require_cam:
            return "missing_cam"
        return "missing_thermal"


def live_frame_config() -> IngestConfig:
    return IngestConfig(
        name="ingest-live-frame",
        require_cam=True,
        require_thermal=True,
        cam_bucket=settings.LIVE_BUCKET,
        thermal_bucket=settings.LIVE_BUCKET,
        frame_error="upload_failed",
    )


def live_thermal_config() -> IngestConfig:
    return IngestConfig(
        name="ingest-live-thermal",
        require_thermal=True,
        persist_cam_frame=False,
        cam_bucket=settings.LIVE_BUCKET,
        thermal_bucket=settings.LIVE_BUCKET,
    )


def snapshot_config() -> IngestConfig:
    return IngestConfig(
        name="ingest-snapshot",
        require_cam=True,
        require_thermal=False,
        cam_bucket=settings.SNAPSHOT_BUCKET,
        thermal_bucket=settings.SNAPSHOT_BUCKET,
        object_key=snapshot_key,
        cam_path=lambda key: f"{key}.jpg",
        thermal_path=lambda key: f"{key}.json",
        overwrite=False,
        frame_error="upload_failed",
        archival=True,
        compose_overlay=settings.SNAPSHOT_OVERLAY_ENABLED,
        overlay_alpha=settings.OVERLAY_ALPHA,
    )


def touch_device(db: Session, device_id: str, **fields) -> None:
    fields.setdefault("last_seen", datetime.utcnow())
    db.query(Device).filter(Device.id == device_id).update(fields)
    db.commit()


async def _read_text(entry) -> Optional[str]:
    if entry is None:
        return None
    if isinstance(entry, str):
        return entry
    return (await entry.read()).decode("utf-8", errors="replace")


def _with_extension(path: str, mime_type: str) -> str:
    if mime_type == "image/png":
        return os.path.splitext(path)[0] + ".png"
    return path


class IngestPipeline:
    def __init__(
        self,
        config: IngestConfig,
        verify: Verifier = verify_request,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.verify = verify
        self.clock = clock

    async def handle(self, request: Request, stores: IngestStores) -> Response:
        started = self.clock()
        try:
            auth = await self.verify(request, stores)
            if not auth.ok:
                return PlainTextResponse(auth.message, status_code=auth.status)
            return await self._ingest(request, auth, started)
        except Exception as e:
            logger.error(f"{self.config.name} fatal: {e}", exc_info=True)
            return JSONResponse({"error": "server_error", "details": str(e)}, status_code=500)

    async def _ingest(self, request: Request, auth: AuthSuccess, started: float) -> Response:
        cfg = self.config
        device_id = auth.device_id
        db = auth.stores.db
        blobs = auth.stores.blobs

        form = await request.form()
        cam_entry = form.get("cam")
        cam = cam_entry if isinstance(cam_entry, UploadFile) else None
        thermal_text = await _read_text(form.get("thermal"))
        reading_text = await _read_text(form.get("reading"))

        if (cfg.require_cam and cam is None) or (cfg.require_thermal and not thermal_text):
            return JSONResponse({"error": cfg.missing_error}, status_code=400)

        cam_bytes = await cam.read() if cam is not None else None
        logger.info(
            f"{cfg.name}: dev={device_id} cam={len(cam_bytes or b'')}B "
            f"thermal={len((thermal_text or '').encode())}B "
            f"reading={len((reading_text or '').encode())}B"
        )

        reading = parse_reading_payload(reading_text)
        reading_id = self._store_reading(db, device_id, reading)

        warnings = []
        key = cfg.object_key(device_id)

        if thermal_text and cfg.persist_thermal:
            thermal_path = cfg.thermal_path(key)
            try:
                await asyncio.to_thread(
                    blobs.upload,
                    cfg.thermal_bucket,
                    thermal_path,
                    thermal_text.encode(),
                    "application/json",
                    cfg.overwrite,
                )
            except BlobStoreError as e:
                logger.error(f"{cfg.name}: thermal upload failed for {device_id}: {e}")
                return JSONResponse(
                    {"error": "thermal_upload_failed", "details": str(e)}, status_code=500
                )

        frame_path = None
        content_type = None
        if cam_bytes is not None and cfg.persist_cam_frame:
            frame_bytes = cam_bytes
            content_type = cam.content_type or "image/jpeg"
            if cfg.compose_overlay and thermal_text:
                try:
                    grid = ThermalGrid.from_json(thermal_text)
                    frame = await asyncio.to_thread(compose, cam_bytes, grid, cfg.overlay_alpha)
                    frame_bytes, content_type = frame.data, frame.mime_type
                except Exception as e:
                    logger.warning(
                        f"{cfg.name}: overlay failed for {device_id} "
                        f"({len(cam_bytes)}B frame), storing raw frame: {e}"
                    )
                    warnings.append(f"overlay_failed: {e}")

            frame_path = _with_extension(cfg.cam_path(key), content_type)
            try:
                await asyncio.to_thread(
                    blobs.upload,
                    cfg.cam_bucket,
                    frame_path,
                    frame_bytes,
                    content_type,
                    cfg.overwrite,
                )
            except BlobStoreError as e:
                logger.error(
                    f"{cfg.name}: frame upload failed for {device_id} ({len(frame_bytes)}B): {e}"
                )
                return JSONResponse({"error": cfg.frame_error, "details": str(e)}, status_code=500)

        snapshot_id = None
        if cfg.archival and frame_path is not None:
            snapshot_id = self._store_snapshot(db, device_id, frame_path, reading_id)

        try:
            touch_device(db, device_id)
        except Exception as e:
            logger.warning(f"{cfg.name}: last_seen update failed for {device_id}: {e}")
            db.rollback()

        alert_ids = []
        if cfg.archival:
            drafts = derive_alerts(reading)
            if drafts:
                alert_ids = await raise_alerts(
                    db, auth.stores.broker, device_id, drafts, reading_id
                )
            if alert_ids and snapshot_id is not None:
                self._link_snapshot_alert(db, snapshot_id, alert_ids[0])

        body = {
            "ok": True,
            "readingId": reading_id,
            "elapsed_ms": int((self.clock() - started) * 1000),
        }
        if cfg.archival:
            body.update(
                snapshotId=snapshot_id,
                overlay_path=frame_path,
                contentType=content_type,
                alertIds=alert_ids,
            )
        if warnings:
            body["warnings"] = warnings
        return JSONResponse(body, status_code=200)

    def _store_reading(self, db: Session, device_id: str, reading: Optional[dict]) -> Optional[int]:
        if reading is None:
            return None
        try:
            return insert_reading(db, device_id, reading)
        except Exception as e:
            logger.error(f"{self.config.name}: reading insert failed for {device_id}: {e}")
            db.rollback()
            return None

    def _store_snapshot(
        self, db: Session, device_id: str, object_path: str, reading_id: Optional[int]
    ) -> Optional[int]:
        try:
            snapshot = Snapshot(device_id=device_id, object_path=object_path, reading_id=reading_id)
            db.add(snapshot)
            db.commit()
            db.refresh(snapshot)
            return snapshot.id
        except Exception as e:
            logger.error(f"{self.config.name}: snapshot insert failed for {device_id}: {e}")
            db.rollback()
            return None

    def _link_snapshot_alert(self, db: Session, snapshot_id: int, alert_id: int) -> None:
        try:
            db.query(Snapshot).filter(Snapshot.id == snapshot_id).update({"alert_id": alert_id})
            db.commit()
        except Exception as e:
            logger.error(f"{self.config.name}: linking alert {alert_id} to snapshot {snapshot_id} failed: {e}")
            db.rollback()
