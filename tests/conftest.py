"""
Pytest Configuration File

This module provides fixtures and in-memory collaborators for all tests.
"""

import hashlib
from datetime import datetime, timedelta, timezone

import fakeredis
import pytest

from config import Settings, TransferLimits
from main import TransferServices
from models.errors import QRGenerationFailed, StorageFailure
from models.upload_models import StoredObject

START = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Clock that only moves when a test advances it"""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeStorage:
    def __init__(self):
        self.objects = {}
        self.deleted = []
        self.fail = False
        self.store_calls = 0

    async def store(self, data, metadata):
        self.store_calls += 1
        if self.fail:
            raise StorageFailure("bucket unavailable")
        ref = f"sessions/{metadata['session_token']}/{self.store_calls}_{metadata['file_name']}"
        self.objects[ref] = data
        return StoredObject(storage_ref=ref, actual_size=len(data), checksum=hashlib.sha256(data).hexdigest())

    async def delete(self, storage_ref):
        self.objects.pop(storage_ref, None)
        self.deleted.append(storage_ref)

    def presigned_url(self, storage_ref, filename=None):
        return f"https://bucket.example/{storage_ref}?signed=1"


class FakeQR:
    def __init__(self):
        self.fail = False
        self.rendered = []

    def render_data_url(self, data):
        if self.fail:
            raise QRGenerationFailed("encoder broke")
        self.rendered.append(data)
        return "data:image/png;base64,AAAA"


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def limits():
    return TransferLimits(
        max_file_size_bytes=1000,
        max_session_bytes=1000,
        default_ttl_minutes=30,
        max_ttl_minutes=60,
        recommended_chunk_size=256,
        max_chunk_size_bytes=512,
        upload_inactivity_timeout_seconds=120,
        subscriber_queue_size=8,
    )


@pytest.fixture
def settings(limits):
    return Settings(
        limits=limits,
        client_url="http://receiver.test/",
        cleanup_interval_seconds=3600,
        rate_limit_storage_uri="memory://",
    )


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def qr():
    return FakeQR()


@pytest.fixture
def services(settings, redis_client, storage, qr, clock):
    return TransferServices(settings, redis_client, storage, qr, clock=clock)


@pytest.fixture
def store(services):
    return services.store


@pytest.fixture
def tracker(services):
    return services.tracker


@pytest.fixture
def hub(services):
    return services.hub


@pytest.fixture
def coordinator(services):
    return services.coordinator
