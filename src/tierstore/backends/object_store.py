"""S3-compatible object store backend.

Stores each locator under ``(bucket, key)`` where ``key`` joins the key prefix
and the locator id. Versioning relies on the bucket's native object
versioning; buckets without it return an empty version history.

Every request is bounded by the client's connect/read timeouts and a fixed
number of standard-mode retry attempts. Timeouts, connection failures and
any non-404, non-403 error surface as TransientStorageError with the
original exception attached.
"""

from __future__ import annotations

import logging
import mimetypes
from datetime import datetime
from typing import Any, Final
from urllib.parse import quote, unquote

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from tierstore.backends.base import (
    Options,
    PresignedUrlProvider,
    StorageBackend,
    generate_version_id,
)
from tierstore.config import ObjectStoreConfig, StorageOptions
from tierstore.errors import (
    ContentTooLargeError,
    InvalidVersionError,
    NotFoundError,
    PermissionDeniedError,
    StorageError,
    TransientStorageError,
    UnsupportedOperationError,
    VersionNotFoundError,
)
from tierstore.models import StoredObject, VersionRecord, utc_now
from tierstore.tracing import traced_storage_operation

logger = logging.getLogger(__name__)

MAX_SINGLE_PUT_BYTES: Final[int] = 5 * 1024**3
MAX_PRESIGN_EXPIRES_SECONDS: Final[int] = 7 * 24 * 3600
DEFAULT_CONTENT_TYPE: Final[str] = "application/octet-stream"

META_LOCATOR_ID: Final[str] = "locator-id"
META_STORED_AT: Final[str] = "stored-at"
META_BACKEND: Final[str] = "storage-backend"
META_COMMIT_MESSAGE: Final[str] = "commit-message"
META_VERSION_CREATED_AT: Final[str] = "version-created-at"

_PRESIGN_METHODS: Final[dict[str, str]] = {"get": "get_object", "put": "put_object"}
_NOT_FOUND_CODES = frozenset({"404", "NoSuchKey", "NotFound"})
_PERMISSION_CODES = frozenset({"403", "AccessDenied", "Forbidden"})

mimetypes.add_type("text/markdown", ".md")


def infer_content_type(locator_id: str) -> str:
    """Infer a MIME type from the locator's extension."""
    content_type, _ = mimetypes.guess_type(locator_id, strict=False)
    return content_type or DEFAULT_CONTENT_TYPE


def _strip_etag(etag: Any) -> str | None:
    if not isinstance(etag, str):
        return None
    return etag.strip('"')


def _build_client(config: ObjectStoreConfig) -> Any:
    session = boto3.session.Session(region_name=config.region_name)
    return session.client(
        "s3",
        region_name=config.region_name,
        endpoint_url=config.endpoint_url,
        config=BotoConfig(
            connect_timeout=config.connect_timeout,
            read_timeout=config.read_timeout,
            retries={"total_max_attempts": config.max_attempts, "mode": "standard"},
            signature_version="s3v4",
        ),
    )


class ObjectStoreBackend(StorageBackend, PresignedUrlProvider):
    """Object store backend over an S3-compatible bucket."""

    def __init__(self, config: ObjectStoreConfig, *, client: Any | None = None) -> None:
        """Initialize the backend.

        Args:
            config: Bucket, prefix, endpoint and timeout configuration.
            client: Pre-built boto3 S3 client. Built from config when None.
        """
        self._config = config
        self._client = client if client is not None else _build_client(config)
        logger.debug(
            "ObjectStoreBackend initialized: bucket=%s prefix=%s",
            config.bucket,
            config.key_prefix,
        )

    @property
    def backend_name(self) -> str:
        return "object_store"

    @property
    def client(self) -> Any:
        return self._client

    def _resolve(self, locator_id: str, options: StorageOptions) -> tuple[str, str]:
        bucket = options.bucket or self._config.bucket
        prefix = self._config.key_prefix if options.key_prefix is None else options.key_prefix
        prefix = prefix.strip("/")
        key = f"{prefix}/{locator_id}" if prefix else locator_id
        return bucket, key

    def _translate(
        self,
        error: Exception,
        *,
        action: str,
        locator_id: str,
        version_id: str | None = None,
    ) -> StorageError:
        """Map a client error onto the storage error taxonomy."""
        if isinstance(error, ClientError):
            code = str(error.response.get("Error", {}).get("Code", ""))
            status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")

            if code == "NoSuchBucket":
                return TransientStorageError(
                    f"Failed to {action}: bucket does not exist",
                    locator_id=locator_id,
                    backend=self.backend_name,
                    cause=error,
                )
            if version_id is not None:
                if code == "NoSuchVersion" or status == 404 or code in _NOT_FOUND_CODES:
                    return VersionNotFoundError(
                        locator_id=locator_id, backend=self.backend_name, version_id=version_id
                    )
                if code == "InvalidArgument":
                    return InvalidVersionError(
                        locator_id=locator_id, backend=self.backend_name, version_id=version_id
                    )
            if status == 404 or code in _NOT_FOUND_CODES:
                return NotFoundError(locator_id=locator_id, backend=self.backend_name)
            if status == 403 or code in _PERMISSION_CODES:
                return PermissionDeniedError(
                    f"Permission denied while trying to {action}",
                    locator_id=locator_id,
                    backend=self.backend_name,
                    cause=error,
                )
            if code == "EntityTooLarge":
                return ContentTooLargeError(
                    f"Failed to {action}: entity too large",
                    locator_id=locator_id,
                    backend=self.backend_name,
                )

        return TransientStorageError(
            f"Failed to {action}: {error}",
            locator_id=locator_id,
            backend=self.backend_name,
            cause=error,
        )

    def _object_metadata(self, locator_id: str, **extra: str) -> dict[str, str]:
        metadata = {
            META_LOCATOR_ID: quote(locator_id, safe=""),
            META_STORED_AT: utc_now().isoformat(),
            META_BACKEND: self.backend_name,
        }
        metadata.update(extra)
        return metadata

    def _put(
        self,
        locator_id: str,
        content: bytes,
        options: StorageOptions,
        metadata: dict[str, str],
        action: str,
    ) -> tuple[str, str, dict[str, Any], str]:
        if len(content) > MAX_SINGLE_PUT_BYTES:
            raise ContentTooLargeError(
                f"Content of {len(content)} bytes exceeds single upload limit",
                locator_id=locator_id,
                backend=self.backend_name,
                size_bytes=len(content),
                limit_bytes=MAX_SINGLE_PUT_BYTES,
            )

        bucket, key = self._resolve(locator_id, options)
        content_type = options.content_type or infer_content_type(locator_id)
        kwargs: dict[str, Any] = {
            "Bucket": bucket,
            "Key": key,
            "Body": content,
            "ContentType": content_type,
            "Metadata": metadata,
        }
        storage_class = options.storage_class or self._config.storage_class
        if storage_class:
            kwargs["StorageClass"] = storage_class

        logger.debug(
            "Writing to object store: locator=%s bucket=%s key=%s size=%d",
            locator_id,
            bucket,
            key,
            len(content),
        )
        try:
            response = self._client.put_object(**kwargs)
        except (ClientError, BotoCoreError) as e:
            logger.error("Object store %s failed: locator=%s error=%s", action, locator_id, e)
            raise self._translate(e, action=action, locator_id=locator_id) from e
        return bucket, key, response, content_type

    @traced_storage_operation("write")
    def write(self, locator_id: str, content: bytes, *, opts: Options = None) -> StoredObject:
        options = StorageOptions.coerce(opts)
        bucket, key, response, content_type = self._put(
            locator_id,
            content,
            options,
            self._object_metadata(locator_id),
            action="write object",
        )
        return StoredObject(
            locator_id=locator_id,
            size=len(content),
            stored_at=utc_now(),
            backend=self.backend_name,
            version_id=response.get("VersionId"),
            etag=_strip_etag(response.get("ETag")),
            content_type=content_type,
            backend_fields={"bucket": bucket, "key": key},
        )

    @traced_storage_operation("read")
    def read(self, locator_id: str, *, opts: Options = None) -> bytes:
        bucket, key = self._resolve(locator_id, StorageOptions.coerce(opts))
        logger.debug("Reading from object store: bucket=%s key=%s", bucket, key)
        try:
            response = self._client.get_object(Bucket=bucket, Key=key)
            body = response["Body"]
            try:
                return body.read()
            finally:
                body.close()
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, action="read object", locator_id=locator_id) from e

    @traced_storage_operation("delete")
    def delete(self, locator_id: str, *, opts: Options = None) -> None:
        bucket, key = self._resolve(locator_id, StorageOptions.coerce(opts))
        logger.debug("Deleting from object store: bucket=%s key=%s", bucket, key)
        try:
            self._client.delete_object(Bucket=bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            error = self._translate(e, action="delete object", locator_id=locator_id)
            if isinstance(error, NotFoundError):
                return
            raise error from e

    def exists(self, locator_id: str, *, opts: Options = None) -> bool:
        try:
            bucket, key = self._resolve(locator_id, StorageOptions.coerce(opts))
            self._client.head_object(Bucket=bucket, Key=key)
        except (ClientError, BotoCoreError, StorageError):
            return False
        return True

    def _head(self, locator_id: str, bucket: str, key: str) -> dict[str, Any]:
        try:
            return self._client.head_object(Bucket=bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, action="stat object", locator_id=locator_id) from e

    @traced_storage_operation("stat")
    def stat(self, locator_id: str, *, opts: Options = None) -> StoredObject:
        bucket, key = self._resolve(locator_id, StorageOptions.coerce(opts))
        response = self._head(locator_id, bucket, key)
        last_modified = response.get("LastModified")
        return StoredObject(
            locator_id=locator_id,
            size=int(response.get("ContentLength", 0)),
            stored_at=last_modified if isinstance(last_modified, datetime) else utc_now(),
            backend=self.backend_name,
            version_id=response.get("VersionId"),
            etag=_strip_etag(response.get("ETag")),
            content_type=response.get("ContentType"),
            backend_fields={
                "bucket": bucket,
                "key": key,
                "storage_class": response.get("StorageClass"),
            },
        )

    @traced_storage_operation("create_version")
    def create_version(
        self,
        locator_id: str,
        content: bytes,
        commit_message: str,
        *,
        opts: Options = None,
    ) -> tuple[str, VersionRecord]:
        options = StorageOptions.coerce(opts)
        created_at = utc_now()
        metadata = self._object_metadata(
            locator_id,
            **{
                META_COMMIT_MESSAGE: quote(commit_message, safe=""),
                META_VERSION_CREATED_AT: created_at.isoformat(),
            },
        )
        bucket, key, response, _ = self._put(
            locator_id, content, options, metadata, action="create version"
        )

        version_id = response.get("VersionId")
        if not version_id or version_id == "null":
            version_id = generate_version_id()
            logger.warning(
                "Bucket %s has no native versioning; version %s of %s is not retrievable",
                bucket,
                version_id,
                locator_id,
            )

        record = VersionRecord(
            version_id=version_id,
            locator_id=locator_id,
            created_at=created_at,
            size=len(content),
            commit_message=commit_message,
            backend=self.backend_name,
            etag=_strip_etag(response.get("ETag")),
            is_latest=True,
            storage_class=options.storage_class or self._config.storage_class,
        )
        return version_id, record

    def _commit_message(self, bucket: str, key: str, version_id: str) -> str | None:
        try:
            response = self._client.head_object(Bucket=bucket, Key=key, VersionId=version_id)
        except (ClientError, BotoCoreError) as e:
            logger.debug("Could not fetch metadata for version %s: %s", version_id, e)
            return None
        raw = response.get("Metadata", {}).get(META_COMMIT_MESSAGE)
        return unquote(raw) if raw is not None else None

    @traced_storage_operation("list_versions")
    def list_versions(self, locator_id: str, *, opts: Options = None) -> list[VersionRecord]:
        bucket, key = self._resolve(locator_id, StorageOptions.coerce(opts))
        params: dict[str, Any] = {"Bucket": bucket, "Prefix": key}
        raw_versions: list[dict[str, Any]] = []

        try:
            while True:
                response = self._client.list_object_versions(**params)
                raw_versions.extend(response.get("Versions", []))
                if not response.get("IsTruncated"):
                    break
                params["KeyMarker"] = response.get("NextKeyMarker")
                params["VersionIdMarker"] = response.get("NextVersionIdMarker")
        except (ClientError, BotoCoreError) as e:
            logger.error("Failed to list versions: locator=%s error=%s", locator_id, e)
            raise self._translate(e, action="list versions", locator_id=locator_id) from e

        records: list[VersionRecord] = []
        for raw in raw_versions:
            version_id = raw.get("VersionId")
            if raw.get("Key") != key or not version_id or version_id == "null":
                continue
            last_modified = raw.get("LastModified")
            commit_message = (
                self._commit_message(bucket, key, version_id)
                if self._config.resolve_commit_messages
                else None
            )
            records.append(
                VersionRecord(
                    version_id=version_id,
                    locator_id=locator_id,
                    created_at=last_modified if isinstance(last_modified, datetime) else utc_now(),
                    size=int(raw.get("Size", 0)),
                    commit_message=commit_message,
                    backend=self.backend_name,
                    etag=_strip_etag(raw.get("ETag")),
                    is_latest=bool(raw.get("IsLatest", False)),
                    storage_class=raw.get("StorageClass"),
                )
            )

        records.sort(key=lambda r: (r.created_at, bool(r.is_latest)), reverse=True)
        return records

    @traced_storage_operation("get_version")
    def get_version(self, locator_id: str, version_id: str, *, opts: Options = None) -> bytes:
        if not version_id or version_id == "null":
            raise InvalidVersionError(
                locator_id=locator_id, backend=self.backend_name, version_id=version_id
            )
        bucket, key = self._resolve(locator_id, StorageOptions.coerce(opts))
        try:
            response = self._client.get_object(Bucket=bucket, Key=key, VersionId=version_id)
            body = response["Body"]
            try:
                return body.read()
            finally:
                body.close()
        except (ClientError, BotoCoreError) as e:
            raise self._translate(
                e, action="get version", locator_id=locator_id, version_id=version_id
            ) from e

    @traced_storage_operation("copy")
    def copy(
        self, source_locator_id: str, dest_locator_id: str, *, opts: Options = None
    ) -> StoredObject:
        options = StorageOptions.coerce(opts)
        bucket, source_key = self._resolve(source_locator_id, options)
        _, dest_key = self._resolve(dest_locator_id, options)
        source = self._head(source_locator_id, bucket, source_key)
        content_type = source.get("ContentType") or infer_content_type(dest_locator_id)

        try:
            response = self._client.copy_object(
                Bucket=bucket,
                Key=dest_key,
                CopySource={"Bucket": bucket, "Key": source_key},
                MetadataDirective="REPLACE",
                Metadata=self._object_metadata(dest_locator_id),
                ContentType=content_type,
            )
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, action="copy object", locator_id=dest_locator_id) from e

        result = response.get("CopyObjectResult", {})
        return StoredObject(
            locator_id=dest_locator_id,
            size=int(source.get("ContentLength", 0)),
            stored_at=utc_now(),
            backend=self.backend_name,
            version_id=response.get("VersionId"),
            etag=_strip_etag(result.get("ETag")),
            content_type=content_type,
            backend_fields={"bucket": bucket, "key": dest_key, "source_key": source_key},
        )

    def generate_presigned_url(
        self,
        locator_id: str,
        method: str = "get",
        expires_in: int = 3600,
        *,
        opts: Options = None,
    ) -> str:
        client_method = _PRESIGN_METHODS.get(method.lower())
        if client_method is None:
            raise UnsupportedOperationError(
                f"Unsupported presigned URL method: {method}",
                locator_id=locator_id,
                backend=self.backend_name,
            )
        if not 1 <= expires_in <= MAX_PRESIGN_EXPIRES_SECONDS:
            raise ValueError(
                f"expires_in must be between 1 and {MAX_PRESIGN_EXPIRES_SECONDS}, "
                f"got {expires_in}"
            )

        bucket, key = self._resolve(locator_id, StorageOptions.coerce(opts))
        try:
            return self._client.generate_presigned_url(
                ClientMethod=client_method,
                Params={"Bucket": bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(
                "Failed to generate presigned URL: locator=%s method=%s error=%s",
                locator_id,
                method,
                e,
            )
            raise self._translate(e, action="generate presigned URL", locator_id=locator_id) from e

    def get_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "backend": self.backend_name,
            "bucket": self._config.bucket,
            "key_prefix": self._config.key_prefix,
        }
        try:
            response = self._client.get_bucket_versioning(Bucket=self._config.bucket)
            stats["versioning"] = response.get("Status", "Disabled")
        except (ClientError, BotoCoreError) as e:
            logger.warning("Failed to fetch bucket versioning status: %s", e)
            stats["error"] = str(e)
        return stats
