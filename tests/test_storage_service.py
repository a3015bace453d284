"""
Test S3 Storage Service

Exercises the S3 adapter against botocore's Stubber so no network is used.
"""

import hashlib

import boto3
import pytest
from botocore.config import Config
from botocore.stub import ANY, Stubber

from models.errors import StorageFailure
from services.storage_service import S3StorageService, sanitize_filename


@pytest.fixture
def s3_client():
    return boto3.client(
        "s3",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
        config=Config(signature_version="s3v4"),
    )


@pytest.fixture
def service(s3_client):
    return S3StorageService(s3_client, "transfer-bucket", prefix="sessions")


def test_sanitize_filename():
    assert sanitize_filename("my report (final).pdf") == "my_report_final_.pdf"
    assert sanitize_filename("ünï.txt") == "_n_.txt"
    assert sanitize_filename("") == "file"
    assert len(sanitize_filename("a" * 400)) == 255


@pytest.mark.asyncio
async def test_store_puts_object_and_reports_checksum(s3_client, service):
    data = b"hello world"
    with Stubber(s3_client) as stubber:
        stubber.add_response(
            "put_object",
            {"ETag": '"abc"'},
            {
                "Bucket": "transfer-bucket",
                "Key": ANY,
                "Body": data,
                "ContentType": "text/plain",
                "Metadata": ANY,
            },
        )
        stored = await service.store(data, {
            "session_token": "tok",
            "file_name": "notes v2.txt",
            "mime_type": "text/plain",
        })
        stubber.assert_no_pending_responses()

    assert stored.storage_ref.startswith("sessions/tok/")
    assert stored.storage_ref.endswith("_notes_v2.txt")
    assert stored.actual_size == len(data)
    assert stored.checksum == hashlib.sha256(data).hexdigest()


@pytest.mark.asyncio
async def test_store_maps_client_errors(s3_client, service):
    with Stubber(s3_client) as stubber:
        stubber.add_client_error("put_object", service_error_code="SlowDown", http_status_code=503)
        with pytest.raises(StorageFailure):
            await service.store(b"x", {"session_token": "tok", "file_name": "a.txt"})


@pytest.mark.asyncio
async def test_delete(s3_client, service):
    with Stubber(s3_client) as stubber:
        stubber.add_response("delete_object", {}, {"Bucket": "transfer-bucket", "Key": "sessions/tok/a"})
        await service.delete("sessions/tok/a")
        stubber.assert_no_pending_responses()

        stubber.add_client_error("delete_object", service_error_code="AccessDenied", http_status_code=403)
        with pytest.raises(StorageFailure):
            await service.delete("sessions/tok/a")


def test_presigned_url(service):
    url = service.presigned_url("sessions/tok/abc_a.txt", "a.txt")

    assert "transfer-bucket" in url
    assert "sessions/tok/abc_a.txt" in url
    assert "X-Amz-Signature" in url
