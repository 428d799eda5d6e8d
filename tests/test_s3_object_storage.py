"""Tests for S3ObjectStorage with mocked boto3."""

from __future__ import annotations

import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from billing.object_storage import (
    LocalObjectStorage,
    ObjectStorageConfig,
    S3ObjectStorage,
    create_object_storage_from_env,
    parse_storage_uri,
)


@pytest.fixture
def mock_boto3():
    """Mock boto3 module for S3ObjectStorage tests."""
    mock_boto3_module = MagicMock()
    mock_client = MagicMock()
    mock_boto3_module.session.Session.return_value.client.return_value = mock_client

    with patch.dict(sys.modules, {"boto3": mock_boto3_module}):
        yield mock_boto3_module, mock_client


def _config(**overrides) -> ObjectStorageConfig:
    values = {
        "backend": "s3",
        "bucket": "reports-bucket",
        "root": "/tmp",
        "prefix": "",
        "endpoint": "http://localhost:9000",
        "region": "us-east-1",
        "access_key": "key",
        "secret_key": "secret",
        "force_path_style": True,
        "url_expiry_s": 3600,
    }
    values.update(overrides)
    return ObjectStorageConfig(**values)


def test_s3_put_object_uploads_under_category(mock_boto3):
    _module, mock_client = mock_boto3
    storage = S3ObjectStorage(config=_config(prefix="exports"))

    uri = storage.put_object(
        category="sales_tax/wa",
        filename="wa sales 2024-02.csv",
        content_bytes=b"a,b\n",
        content_type="text/csv",
    )

    assert uri == "object://s3/reports-bucket/exports/sales_tax/wa/wa_sales_2024-02.csv"
    mock_client.put_object.assert_called_once_with(
        Bucket="reports-bucket",
        Key="exports/sales_tax/wa/wa_sales_2024-02.csv",
        Body=b"a,b\n",
        ContentType="text/csv",
    )


def test_s3_download_url_is_presigned(mock_boto3):
    _module, mock_client = mock_boto3
    storage = S3ObjectStorage(config=_config())
    mock_client.generate_presigned_url.return_value = "https://reports-bucket.s3.amazonaws.com/key?signature=abc"

    url = storage.download_url(storage_uri="object://s3/reports-bucket/sales_tax/wa/report.csv")

    assert url == "https://reports-bucket.s3.amazonaws.com/key?signature=abc"
    mock_client.generate_presigned_url.assert_called_once_with(
        "get_object",
        Params={"Bucket": "reports-bucket", "Key": "sales_tax/wa/report.csv"},
        ExpiresIn=3600,
    )


def test_local_storage_round_trip(tmp_path: Path):
    storage = LocalObjectStorage(config=_config(backend="local", root=str(tmp_path)))

    uri = storage.put_object(category="sales_tax/ca", filename="report.csv", content_bytes=b"x")

    assert storage.get_object(storage_uri=uri) == b"x"
    assert storage.download_url(storage_uri=uri).startswith("file://")
    with pytest.raises(ValueError, match="backend mismatch"):
        storage.get_object(storage_uri="object://s3/reports-bucket/sales_tax/ca/report.csv")


def test_storage_uri_and_factory_validation(tmp_path: Path):
    assert parse_storage_uri("object://local/b/k/v.csv") == {"backend": "local", "bucket": "b", "key": "k/v.csv"}
    with pytest.raises(ValueError):
        parse_storage_uri("s3://b/k")
    with pytest.raises(RuntimeError, match="unsupported object storage backend"):
        create_object_storage_from_env({"BILLING_OBJECT_STORAGE_BACKEND": "gcs"})
    local = create_object_storage_from_env({"OBJECT_STORAGE_ROOT": str(tmp_path)})
    assert isinstance(local, LocalObjectStorage)
