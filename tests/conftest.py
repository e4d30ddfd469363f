"""Pytest configuration and fixtures for tierstore tests.

Provides temporary disk roots, an in-memory fake of the S3 client calls the
object store backend makes, and environment cleanup so TIERSTORE_* settings
from the host never leak into tests.
"""

from __future__ import annotations

import hashlib
import itertools
import os
import uuid
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from botocore.exceptions import ClientError

from tierstore.backends.disk import DiskBackend
from tierstore.backends.memory import MemoryBackend
from tierstore.backends.object_store import ObjectStoreBackend
from tierstore.config import DiskBackendConfig, ObjectStoreConfig
from tierstore.observability.tracing import reset_tracing

TEST_BUCKET = "tierstore-test-bucket"


def client_error(code: str, status: int, operation: str) -> ClientError:
    """Build a botocore ClientError shaped like a real S3 error response."""
    return ClientError(
        {
            "Error": {"Code": code, "Message": f"{code} error"},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation,
    )


class FakeBody:
    """Streaming body stand-in with read() and close()."""

    def __init__(self, data: bytes) -> None:
        self._data = data
        self.closed = False

    def read(self) -> bytes:
        return self._data

    def close(self) -> None:
        self.closed = True


class FakeS3Client:
    """In-memory fake of the boto3 S3 client methods used by the backend.

    Objects are kept per (bucket, key) as a list of versions, oldest first.
    With versioning disabled every write replaces the single "null" version.
    Set ``failures[operation_name]`` to an exception to make that call fail.
    """

    def __init__(self, *, versioning: bool = True, page_size: int = 1000) -> None:
        self.versioning = versioning
        self.page_size = page_size
        self.objects: dict[tuple[str, str], list[dict[str, Any]]] = {}
        self.failures: dict[str, Exception] = {}
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.bodies: list[FakeBody] = []
        self._ticks = itertools.count(1)
        self._epoch = datetime(2026, 1, 1, tzinfo=UTC)

    def _record(self, operation: str, kwargs: dict[str, Any]) -> None:
        self.calls.append((operation, kwargs))
        failure = self.failures.get(operation)
        if failure is not None:
            raise failure

    def _now(self) -> datetime:
        return self._epoch + timedelta(seconds=next(self._ticks))

    def _find(
        self, bucket: str, key: str, version_id: str | None, operation: str
    ) -> dict[str, Any]:
        versions = self.objects.get((bucket, key))
        if not versions:
            if operation == "HeadObject":
                raise client_error("404", 404, operation)
            raise client_error("NoSuchKey", 404, operation)
        if version_id is None:
            return versions[-1]
        for version in versions:
            if version["VersionId"] == version_id:
                return version
        raise client_error("NoSuchVersion", 404, operation)

    def put_object(self, **kwargs: Any) -> dict[str, Any]:
        self._record("put_object", kwargs)
        body = kwargs["Body"]
        version = {
            "VersionId": uuid.uuid4().hex if self.versioning else "null",
            "Body": bytes(body),
            "ContentType": kwargs.get("ContentType", "binary/octet-stream"),
            "Metadata": dict(kwargs.get("Metadata", {})),
            "LastModified": self._now(),
            "ETag": f'"{hashlib.md5(body, usedforsecurity=False).hexdigest()}"',
            "StorageClass": kwargs.get("StorageClass", "STANDARD"),
        }
        key = (kwargs["Bucket"], kwargs["Key"])
        if self.versioning:
            self.objects.setdefault(key, []).append(version)
        else:
            self.objects[key] = [version]
        response = {"ETag": version["ETag"]}
        if self.versioning:
            response["VersionId"] = version["VersionId"]
        return response

    def get_object(self, **kwargs: Any) -> dict[str, Any]:
        self._record("get_object", kwargs)
        version = self._find(kwargs["Bucket"], kwargs["Key"], kwargs.get("VersionId"), "GetObject")
        body = FakeBody(version["Body"])
        self.bodies.append(body)
        return {
            "Body": body,
            "ContentLength": len(version["Body"]),
            "ContentType": version["ContentType"],
            "ETag": version["ETag"],
            "VersionId": version["VersionId"],
            "Metadata": version["Metadata"],
        }

    def head_object(self, **kwargs: Any) -> dict[str, Any]:
        self._record("head_object", kwargs)
        version = self._find(
            kwargs["Bucket"], kwargs["Key"], kwargs.get("VersionId"), "HeadObject"
        )
        return {
            "ContentLength": len(version["Body"]),
            "ContentType": version["ContentType"],
            "ETag": version["ETag"],
            "LastModified": version["LastModified"],
            "Metadata": version["Metadata"],
            "StorageClass": version["StorageClass"],
            "VersionId": version["VersionId"],
        }

    def delete_object(self, **kwargs: Any) -> dict[str, Any]:
        self._record("delete_object", kwargs)
        self.objects.pop((kwargs["Bucket"], kwargs["Key"]), None)
        return {}

    def copy_object(self, **kwargs: Any) -> dict[str, Any]:
        self._record("copy_object", kwargs)
        source = kwargs["CopySource"]
        version = self._find(source["Bucket"], source["Key"], None, "CopyObject")
        response = self.put_object(
            Bucket=kwargs["Bucket"],
            Key=kwargs["Key"],
            Body=version["Body"],
            ContentType=kwargs.get("ContentType", version["ContentType"]),
            Metadata=kwargs.get("Metadata", version["Metadata"]),
        )
        return {
            "CopyObjectResult": {"ETag": response["ETag"]},
            "VersionId": response.get("VersionId"),
        }

    def list_object_versions(self, **kwargs: Any) -> dict[str, Any]:
        self._record("list_object_versions", kwargs)
        bucket = kwargs["Bucket"]
        prefix = kwargs.get("Prefix", "")
        entries: list[dict[str, Any]] = []
        for (b, key), versions in sorted(self.objects.items()):
            if b != bucket or not key.startswith(prefix):
                continue
            for index, version in reversed(list(enumerate(versions))):
                entries.append(
                    {
                        "Key": key,
                        "VersionId": version["VersionId"],
                        "IsLatest": index == len(versions) - 1,
                        "LastModified": version["LastModified"],
                        "Size": len(version["Body"]),
                        "ETag": version["ETag"],
                        "StorageClass": version["StorageClass"],
                    }
                )

        start = 0
        if kwargs.get("KeyMarker") is not None:
            marker = (kwargs["KeyMarker"], kwargs.get("VersionIdMarker"))
            for i, entry in enumerate(entries):
                if (entry["Key"], entry["VersionId"]) == marker:
                    start = i + 1
                    break

        page = entries[start : start + self.page_size]
        truncated = start + self.page_size < len(entries)
        response: dict[str, Any] = {"IsTruncated": truncated}
        if page:
            response["Versions"] = page
        if truncated:
            response["NextKeyMarker"] = page[-1]["Key"]
            response["NextVersionIdMarker"] = page[-1]["VersionId"]
        return response

    def get_bucket_versioning(self, **kwargs: Any) -> dict[str, Any]:
        self._record("get_bucket_versioning", kwargs)
        return {"Status": "Enabled"} if self.versioning else {}

    def generate_presigned_url(self, **kwargs: Any) -> str:
        self._record("generate_presigned_url", kwargs)
        params = kwargs["Params"]
        return (
            f"https://{params['Bucket']}.s3.example/{params['Key']}"
            f"?op={kwargs['ClientMethod']}&expires={kwargs['ExpiresIn']}"
        )

    def calls_to(self, operation: str) -> list[dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == operation]


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def clean_tierstore_env(monkeypatch: pytest.MonkeyPatch) -> Any:
    """Remove TIERSTORE_* variables and reset tracing around each test."""
    for key in list(os.environ):
        if key.startswith("TIERSTORE_"):
            monkeypatch.delenv(key)
    reset_tracing()
    yield
    reset_tracing()


@pytest.fixture
def disk_root(tmp_path: Path) -> Path:
    """Return a fresh root directory for the disk backend."""
    root = tmp_path / "storage"
    root.mkdir()
    return root


@pytest.fixture
def disk_backend(disk_root: Path) -> DiskBackend:
    return DiskBackend(DiskBackendConfig(root_dir=disk_root))


@pytest.fixture
def memory_backend() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture
def fake_s3() -> FakeS3Client:
    return FakeS3Client()


@pytest.fixture
def object_store_config() -> ObjectStoreConfig:
    return ObjectStoreConfig(bucket=TEST_BUCKET, key_prefix="docs")


@pytest.fixture
def object_store_backend(
    object_store_config: ObjectStoreConfig, fake_s3: FakeS3Client
) -> ObjectStoreBackend:
    return ObjectStoreBackend(object_store_config, client=fake_s3)
