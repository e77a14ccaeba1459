"""Test fixtures for the Thermal Ingest API tests."""
import json
import os
import sys
import time
from datetime import datetime
from io import BytesIO
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from PIL import Image
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Add parent dir to path so imports work
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL", "sqlite://")
os.environ.setdefault("DATABASE_URL", TEST_DATABASE_URL)

from database import Base, get_db
from dependencies import get_blob_store, get_broker
from device_auth import sign_request
from models import Device
from realtime import SEND_OK, SUBSCRIBED, RealtimeBroker, RealtimeChannel
from storage import BlobStore

DEVICE_ID = "test-device-001"
DEVICE_SECRET = "test-secret-001"
BOUNDARY = "thermal-ingest-test-boundary"


@pytest.fixture(scope="session")
def db_engine():
    """Create a test database engine."""
    if TEST_DATABASE_URL.startswith("sqlite"):
        engine = create_engine(
            TEST_DATABASE_URL,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_engine(TEST_DATABASE_URL, pool_pre_ping=True)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="session")
def TestingSessionLocal(db_engine):
    """Shared session factory for the test database."""
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(autouse=True)
def clean_tables(db_engine):
    """Empty all tables between tests for isolation."""
    yield
    with db_engine.connect() as conn:
        conn.execute(text("DELETE FROM snapshots"))
        conn.execute(text("DELETE FROM alerts"))
        conn.execute(text("DELETE FROM readings"))
        conn.execute(text("DELETE FROM devices"))
        conn.commit()


@pytest.fixture
def db_session(TestingSessionLocal):
    """Create a test database session."""
    session = TestingSessionLocal()
    yield session
    session.close()


class FakeChannel(RealtimeChannel):
    """In-memory channel; join status and send result come from the broker."""

    def __init__(self, broker, topic):
        self.broker = broker
        self.topic = topic
        self.sent = []
        self.unsubscribed = 0

    def subscribe(self, callback):
        if self.broker.join_status is not None:
            callback(self.broker.join_status, self.broker.join_error)

    async def send(self, message):
        self.sent.append(message)
        self.broker.sent.append((self.topic, message))
        if isinstance(self.broker.send_result, Exception):
            raise self.broker.send_result
        return self.broker.send_result

    async def unsubscribe(self):
        self.unsubscribed += 1
        if self.broker.fail_cleanup:
            raise RuntimeError("unsubscribe failed")


class FakeBroker(RealtimeBroker):
    """Records every channel, message and removal."""

    def __init__(self, join_status=SUBSCRIBED, send_result=SEND_OK, join_error=None,
                 fail_cleanup=False):
        self.join_status = join_status
        self.join_error = join_error
        self.send_result = send_result
        self.fail_cleanup = fail_cleanup
        self.channels = []
        self.removed = []
        self.sent = []

    def channel(self, topic):
        ch = FakeChannel(self, topic)
        self.channels.append(ch)
        return ch

    async def remove_channel(self, channel):
        self.removed.append(channel)
        if self.fail_cleanup:
            raise RuntimeError("remove failed")


@pytest.fixture
def fake_broker():
    return FakeBroker()


@pytest.fixture
def mock_minio():
    """Mock MinIO client that records calls."""
    mock_client = MagicMock()
    mock_client.put_object = MagicMock(return_value=None)
    mock_client.bucket_exists = MagicMock(return_value=True)
    mock_client.list_objects = MagicMock(return_value=[])
    return mock_client


@pytest.fixture
def app(TestingSessionLocal, mock_minio, fake_broker):
    """Create a FastAPI test app with overridden dependencies."""

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    from main import app as fastapi_app

    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[get_blob_store] = lambda: BlobStore(mock_minio)
    fastapi_app.dependency_overrides[get_broker] = lambda: fake_broker
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    """Create a test HTTP client."""
    return TestClient(app)


@pytest.fixture
def registered_device(db_session):
    """Insert a registered test device."""
    device = Device(
        id=DEVICE_ID,
        secret=DEVICE_SECRET,
        name="Test unit",
        created_at=datetime.utcnow(),
    )
    db_session.add(device)
    db_session.commit()
    return device.id


@pytest.fixture
def camera_jpeg():
    """A small solid-colour JPEG frame."""
    buf = BytesIO()
    Image.new("RGB", (32, 24), (40, 80, 120)).save(buf, "JPEG", quality=90)
    return buf.getvalue()


def thermal_json(width=4, height=4, values=None):
    """Thermal grid JSON in the device's {"w", "h", "data"} shape."""
    if values is None:
        values = [20.0 + i for i in range(width * height)]
    return json.dumps({"w": width, "h": height, "data": values})


def encode_multipart(parts, boundary=BOUNDARY):
    """Encode form parts into exact body bytes so the signature covers them.

    A part value is either text or a ``(filename, bytes, content_type)`` tuple.
    """
    body = b""
    for name, value in parts.items():
        if isinstance(value, tuple):
            filename, data, content_type = value
            header = (
                f'Content-Disposition: form-data; name="{name}"; filename="{filename}"\r\n'
                f"Content-Type: {content_type}\r\n\r\n"
            )
        else:
            data = value.encode() if isinstance(value, str) else value
            header = f'Content-Disposition: form-data; name="{name}"\r\n\r\n'
        body += f"--{boundary}\r\n".encode() + header.encode() + data + b"\r\n"
    body += f"--{boundary}--\r\n".encode()
    return body, f"multipart/form-data; boundary={boundary}"


def signed_headers(method, path, body=b"", device_id=DEVICE_ID, secret=DEVICE_SECRET,
                   timestamp=None):
    """Auth headers a device would attach to this request."""
    if timestamp is None:
        timestamp = str(int(time.time() * 1000))
    return {
        "X-Device-Id": device_id,
        "X-Timestamp": timestamp,
        "X-Signature": sign_request(secret, method, path, body, timestamp),
    }


def post_signed_form(client, path, parts, **sign_kwargs):
    """POST a signed multipart form."""
    body, content_type = encode_multipart(parts)
    headers = signed_headers("POST", path, body, **sign_kwargs)
    headers["Content-Type"] = content_type
    return client.post(path, content=body, headers=headers)


def post_signed_json(client, path, payload, **sign_kwargs):
    """POST a signed JSON body."""
    body = json.dumps(payload).encode()
    headers = signed_headers("POST", path, body, **sign_kwargs)
    headers["Content-Type"] = "application/json"
    return client.post(path, content=body, headers=headers)
