"""
Thermal Ingest API Server
FastAPI backend for signed device telemetry: readings, live camera/thermal
frames, archival snapshots and the alerts derived from them.
"""
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional, Union

from fastapi import FastAPI, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from alert_rules import AlertDraft, AlertKind, AlertSeverity
from alert_service import create_alert, publish_alert
from config import settings
from database import Base, engine
from dependencies import IngestStores, get_blob_store, get_stores
from device_auth import AuthSuccess, verify_request
from ingest_pipeline import (
    IngestPipeline, live_frame_config, live_thermal_config, snapshot_config, touch_device,
)
from models import Device
from overlay import ThermalGrid, compose
from readings import insert_reading
from storage import BlobStore, BlobStoreError, ensure_bucket_exists, get_minio_client

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

NO_STORE = {"Cache-Control": "no-store, max-age=0"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables and buckets on startup"""
    Base.metadata.create_all(bind=engine)
    minio_client = get_minio_client()
    for bucket in {settings.LIVE_BUCKET, settings.SNAPSHOT_BUCKET}:
        ensure_bucket_exists(minio_client, bucket)
    logger.info("Thermal Ingest API Server started successfully")
    yield


app = FastAPI(
    title="Thermal Ingest API",
    description="Signed telemetry ingestion for camera + thermal field devices",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

live_frame_pipeline = IngestPipeline(live_frame_config())
live_thermal_pipeline = IngestPipeline(live_thermal_config())
snapshot_pipeline = IngestPipeline(snapshot_config())


def _error(status: int, code: str, details: Optional[str] = None) -> JSONResponse:
    body = {"error": code}
    if details is not None:
        body["details"] = details
    return JSONResponse(body, status_code=status)


async def _authenticate(request: Request, stores: IngestStores) -> Union[AuthSuccess, Response]:
    auth = await verify_request(request, stores)
    if not auth.ok:
        return PlainTextResponse(auth.message, status_code=auth.status)
    return auth


async def _json_object(request: Request) -> Optional[dict]:
    try:
        body = json.loads(await request.body())
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


@app.get("/")
async def root():
    """Health check endpoint"""
    return {
        "service": "Thermal Ingest API",
        "version": "1.0.0",
        "status": "operational"
    }


@app.get("/health")
async def health_check():
    """Detailed health check"""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
    }


@app.post("/ingest-live-frame")
async def ingest_live_frame(request: Request, stores: IngestStores = Depends(get_stores)):
    """Overwrite the device's current camera frame and thermal grid."""
    return await live_frame_pipeline.handle(request, stores)


@app.post("/ingest-live-thermal")
async def ingest_live_thermal(request: Request, stores: IngestStores = Depends(get_stores)):
    """Refresh only the current thermal grid; camera frames are ignored."""
    return await live_thermal_pipeline.handle(request, stores)


@app.post("/ingest-snapshot")
async def ingest_snapshot(request: Request, stores: IngestStores = Depends(get_stores)):
    """Archive one capture and raise any alerts its reading implies."""
    return await snapshot_pipeline.handle(request, stores)


@app.post("/ingest-readings")
async def ingest_readings(request: Request, stores: IngestStores = Depends(get_stores)):
    auth = await _authenticate(request, stores)
    if isinstance(auth, Response):
        return auth

    body = await _json_object(request)
    if body is None:
        return _error(400, "invalid_json")

    try:
        reading_id = insert_reading(stores.db, auth.device_id, body)
    except Exception as e:
        logger.error(f"Reading insert failed for {auth.device_id}: {e}")
        stores.db.rollback()
        return _error(500, "reading_insert_failed", str(e))
    return {"id": reading_id}


@app.post("/alerts-create")
async def alerts_create(request: Request, stores: IngestStores = Depends(get_stores)):
    """Store an alert raised by the device itself and push it to listeners."""
    auth = await _authenticate(request, stores)
    if isinstance(auth, Response):
        return auth

    body = await _json_object(request)
    if body is None:
        return _error(400, "invalid_json")
    try:
        kind = AlertKind(body.get("kind"))
        severity = AlertSeverity(body.get("severity"))
    except ValueError as e:
        return _error(400, "invalid_alert", str(e))
    message = body.get("message")
    if not isinstance(message, str) or not message:
        return _error(400, "invalid_alert", "message is required")
    reading_id = body.get("reading_id")
    if not isinstance(reading_id, int) or isinstance(reading_id, bool):
        reading_id = None

    try:
        alert_id = create_alert(
            stores.db, auth.device_id, AlertDraft(kind, severity, message), reading_id
        )
    except Exception as e:
        logger.error(f"Alert insert failed for {auth.device_id}: {e}")
        stores.db.rollback()
        return _error(500, "alert_insert_failed", str(e))

    try:
        await publish_alert(stores.broker, auth.device_id, alert_id)
    except Exception as e:
        logger.error(f"Realtime publish failed for alert {alert_id} on {auth.device_id}: {e}")
    return {"id": alert_id}


@app.post("/camera-heartbeat")
async def camera_heartbeat(request: Request, stores: IngestStores = Depends(get_stores)):
    """Record the camera's LAN address, e.g. {"ip": "192.168.1.23"}."""
    auth = await _authenticate(request, stores)
    if isinstance(auth, Response):
        return auth

    body = await _json_object(request)
    ip = body.get("ip") if body else None
    if not isinstance(ip, str) or not ip.strip():
        return _error(400, "missing_ip")
    ip = ip.strip()

    try:
        touch_device(
            stores.db,
            auth.device_id,
            camera_url=f"http://{ip}/capture?res=VGA",
            camera_host=ip,
        )
    except Exception as e:
        logger.error(f"Heartbeat update failed for {auth.device_id}: {e}")
        stores.db.rollback()
        return _error(500, "device_update_failed", str(e))
    return {"ok": True}


@app.get("/config")
async def device_config(request: Request, stores: IngestStores = Depends(get_stores)):
    auth = await _authenticate(request, stores)
    if isinstance(auth, Response):
        return auth

    device = stores.db.query(Device).filter(Device.id == auth.device_id).first()
    if device is None:
        return _error(404, "device_not_found")
    return {
        "camera_url": device.camera_url,
        "camera_host": device.camera_host,
        "config": device.config,
    }


@app.get("/live-current")
async def live_current(
    device: Optional[str] = None,
    overlay: bool = False,
    alpha: Optional[float] = None,
    blobs: BlobStore = Depends(get_blob_store),
):
    """Latest cached frame for a device, optionally with the thermal overlay."""
    if not device:
        return _error(400, "device_required")

    cfg = live_frame_pipeline.config
    try:
        frame = await asyncio.to_thread(blobs.download, cfg.cam_bucket, cfg.cam_path(device))
    except BlobStoreError as e:
        logger.info(f"No live frame for {device}: {e}")
        return _error(404, "no_frame")

    media_type = "image/jpeg"
    if overlay:
        try:
            thermal = await asyncio.to_thread(
                blobs.download, cfg.thermal_bucket, cfg.thermal_path(device)
            )
            grid = ThermalGrid.from_json(thermal.decode("utf-8"))
            composite = await asyncio.to_thread(
                compose, frame, grid, settings.OVERLAY_ALPHA if alpha is None else alpha
            )
            frame, media_type = composite.data, composite.mime_type
        except Exception as e:
            logger.warning(f"Overlay for {device} unavailable, serving plain frame: {e}")

    return Response(content=frame, media_type=media_type, headers=NO_STORE)
