"""Tests for the JSON device endpoints and the live frame viewer."""
import os
import sys
from unittest.mock import MagicMock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from models import Alert, Device, Reading
from overlay import ThermalGrid, compose
from tests.conftest import post_signed_json, signed_headers, thermal_json


def test_root(client):
    resp = client.get("/")
    assert resp.status_code == 200
    assert resp.json()["status"] == "operational"


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"


class TestIngestReadings:

    def test_reading_stored(self, client, registered_device, db_session):
        resp = post_signed_json(client, "/ingest-readings", {
            "tempC": 21.0, "humidity": 45.5, "gasRes": 51000, "triggerFlags": ["manual"],
        })

        assert resp.status_code == 200
        row = db_session.query(Reading).filter(Reading.id == resp.json()["id"]).one()
        assert row.device_id == registered_device
        assert row.temp_c == 21.0
        assert row.humidity_rh == 45.5
        assert row.gas_res_ohm == 51000.0
        assert row.trigger_flags == ["manual"]

    def test_invalid_json(self, client, registered_device):
        body = b"{nope"
        headers = signed_headers("POST", "/ingest-readings", body)
        resp = client.post("/ingest-readings", content=body, headers=headers)

        assert resp.status_code == 400
        assert resp.json() == {"error": "invalid_json"}

    def test_array_body_rejected(self, client, registered_device):
        resp = post_signed_json(client, "/ingest-readings", [1, 2, 3])
        assert resp.status_code == 400

    def test_unsigned(self, client, registered_device, db_session):
        resp = client.post("/ingest-readings", json={"tempC": 21.0})
        assert resp.status_code == 401
        assert db_session.query(Reading).count() == 0

    def test_insert_failure(self, client, registered_device):
        with patch("main.insert_reading", side_effect=RuntimeError("disk full")):
            resp = post_signed_json(client, "/ingest-readings", {"tempC": 21.0})

        assert resp.status_code == 500
        assert resp.json() == {"error": "reading_insert_failed", "details": "disk full"}


class TestAlertsCreate:

    def test_alert_stored_and_published(self, client, registered_device, db_session,
                                        fake_broker):
        resp = post_signed_json(client, "/alerts-create", {
            "kind": "AIR_QUALITY", "severity": "WARN", "message": "IAQ above 200",
        })

        assert resp.status_code == 200
        alert_id = resp.json()["id"]
        alert = db_session.query(Alert).filter(Alert.id == alert_id).one()
        assert (alert.kind, alert.severity, alert.message) == ("AIR_QUALITY", "WARN", "IAQ above 200")
        assert alert.reading_id is None
        assert fake_broker.sent == [(
            "realtime:device:test-device-001",
            {"type": "broadcast", "event": "alert", "payload": {"id": alert_id}},
        )]

    def test_reading_link(self, client, registered_device, db_session):
        resp = post_signed_json(client, "/alerts-create", {
            "kind": "TEMP_FEVER", "severity": "CRIT", "message": "hot", "reading_id": 12,
        })
        alert = db_session.query(Alert).filter(Alert.id == resp.json()["id"]).one()
        assert alert.reading_id == 12

    def test_unknown_kind(self, client, registered_device, db_session):
        resp = post_signed_json(client, "/alerts-create", {
            "kind": "SMOKE", "severity": "WARN", "message": "smoke",
        })
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_alert"
        assert db_session.query(Alert).count() == 0

    def test_missing_message(self, client, registered_device):
        resp = post_signed_json(client, "/alerts-create", {"kind": "TEMP_FEVER", "severity": "CRIT"})
        assert resp.status_code == 400
        assert resp.json() == {"error": "invalid_alert", "details": "message is required"}

    def test_publish_failure_still_returns_id(self, client, registered_device, fake_broker):
        fake_broker.join_status = "CHANNEL_ERROR"
        resp = post_signed_json(client, "/alerts-create", {
            "kind": "DEVICE_OFFLINE", "severity": "INFO", "message": "rebooting",
        })
        assert resp.status_code == 200
        assert isinstance(resp.json()["id"], int)


class TestCameraHeartbeat:

    def test_camera_address_recorded(self, client, registered_device, db_session):
        resp = post_signed_json(client, "/camera-heartbeat", {"ip": " 192.168.1.23 "})

        assert resp.status_code == 200
        assert resp.json() == {"ok": True}
        db_session.expire_all()
        device = db_session.query(Device).filter(Device.id == registered_device).one()
        assert device.camera_host == "192.168.1.23"
        assert device.camera_url == "http://192.168.1.23/capture?res=VGA"
        assert device.last_seen is not None

    def test_missing_ip(self, client, registered_device):
        resp = post_signed_json(client, "/camera-heartbeat", {"addr": "192.168.1.23"})
        assert resp.status_code == 400
        assert resp.json() == {"error": "missing_ip"}

    def test_update_failure(self, client, registered_device):
        with patch("main.touch_device", side_effect=RuntimeError("locked")):
            resp = post_signed_json(client, "/camera-heartbeat", {"ip": "10.0.0.2"})
        assert resp.status_code == 500
        assert resp.json()["error"] == "device_update_failed"


class TestDeviceConfig:

    def test_config_returned(self, client, registered_device, db_session):
        device = db_session.query(Device).filter(Device.id == registered_device).one()
        device.camera_url = "http://10.0.0.5/capture?res=VGA"
        device.camera_host = "10.0.0.5"
        device.config = {"snapshotIntervalSec": 300}
        db_session.commit()

        resp = client.get("/config", headers=signed_headers("GET", "/config"))

        assert resp.status_code == 200
        assert resp.json() == {
            "camera_url": "http://10.0.0.5/capture?res=VGA",
            "camera_host": "10.0.0.5",
            "config": {"snapshotIntervalSec": 300},
        }

    def test_unsigned(self, client, registered_device):
        resp = client.get("/config")
        assert resp.status_code == 401


class TestLiveCurrent:

    def _serve(self, mock_minio, objects):
        def get_object(bucket, path):
            if (bucket, path) not in objects:
                raise OSError(f"NoSuchKey: {path}")
            response = MagicMock()
            response.read.return_value = objects[(bucket, path)]
            return response

        mock_minio.get_object.side_effect = get_object

    def test_current_frame(self, client, mock_minio, camera_jpeg):
        self._serve(mock_minio, {("frames-live", "dev-1/current.jpg"): camera_jpeg})

        resp = client.get("/live-current", params={"device": "dev-1"})

        assert resp.status_code == 200
        assert resp.content == camera_jpeg
        assert resp.headers["content-type"] == "image/jpeg"
        assert resp.headers["cache-control"] == "no-store, max-age=0"

    def test_device_required(self, client):
        resp = client.get("/live-current")
        assert resp.status_code == 400

    def test_no_frame(self, client, mock_minio):
        self._serve(mock_minio, {})
        resp = client.get("/live-current", params={"device": "dev-1"})
        assert resp.status_code == 404
        assert resp.json() == {"error": "no_frame"}

    def test_overlay(self, client, mock_minio, camera_jpeg):
        thermal = thermal_json()
        self._serve(mock_minio, {
            ("frames-live", "dev-1/current.jpg"): camera_jpeg,
            ("frames-live", "dev-1/current.json"): thermal.encode(),
        })

        resp = client.get("/live-current", params={"device": "dev-1", "overlay": "1", "alpha": "0.5"})

        assert resp.status_code == 200
        expected = compose(camera_jpeg, ThermalGrid.from_json(thermal), 0.5)
        assert resp.content == expected.data
        assert resp.headers["cache-control"] == "no-store, max-age=0"

    def test_overlay_without_thermal_serves_plain_frame(self, client, mock_minio, camera_jpeg):
        self._serve(mock_minio, {("frames-live", "dev-1/current.jpg"): camera_jpeg})

        resp = client.get("/live-current", params={"device": "dev-1", "overlay": "true"})

        assert resp.status_code == 200
        assert resp.content == camera_jpeg
