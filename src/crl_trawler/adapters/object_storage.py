"""
S3 object storage backend — boto3.

Adapter layer — implements the StorageBackend port for any S3-compatible
store (AWS S3, MinIO, IBM COS, Ceph RGW). The boto3 client is injected, so
tests pass a client wired to botocore's Stubber and production builds one
with create_s3_client().

Error mapping:
  - NoSuchKey / 404              → NOT_FOUND (normal: first observation)
  - any other ClientError        → BACKEND_UNAVAILABLE_ERROR
  - BotoCoreError (DNS, TLS, …)  → BACKEND_UNAVAILABLE_ERROR
  - put_object failure           → WRITE_ERROR
"""

from __future__ import annotations

from contextlib import closing
from typing import TYPE_CHECKING, Any

import boto3
import structlog
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from crl_trawler.domain.failures import ErrorCode
from crl_trawler.domain.result import Result

if TYPE_CHECKING:
    from crl_trawler.config import ObjectStorageSettings

log = structlog.get_logger()

CRL_CONTENT_TYPE = "application/pkix-crl"

_NOT_FOUND_CODES = frozenset({"NoSuchKey", "404", "NotFound"})


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def create_s3_client(settings: ObjectStorageSettings, timeout: float = 60) -> Any:
    """
    Build a boto3 S3 client from settings.

    Static credentials are optional; when absent boto3 falls back to its
    default chain (environment, instance profile, web identity).
    """
    secret = settings.secret_access_key.get_secret_value() if settings.secret_access_key else None
    return boto3.client(
        "s3",
        endpoint_url=settings.endpoint_url,
        region_name=settings.region,
        aws_access_key_id=settings.access_key_id,
        aws_secret_access_key=secret,
        use_ssl=settings.use_ssl,
        config=BotoConfig(
            connect_timeout=timeout,
            read_timeout=timeout,
            retries={"max_attempts": 3, "mode": "standard"},
            s3={"addressing_style": "path" if settings.path_style else "auto"},
        ),
    )


class S3ObjectStorage:
    """Store CRLs as `<prefix><name>.crl` objects in one bucket."""

    name = "s3"

    def __init__(self, client: Any, bucket: str, prefix: str = "") -> None:
        self._client = client
        self._bucket = bucket
        self._prefix = prefix

    @property
    def bucket(self) -> str:
        return self._bucket

    def key_for(self, source_name: str) -> str:
        return f"{self._prefix}{source_name}.crl"

    def read(self, key: str) -> Result[bytes]:
        try:
            response = self._client.get_object(Bucket=self._bucket, Key=key)
            with closing(response["Body"]) as body:
                return Result.success(body.read())
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                return Result.failure(
                    ErrorCode.NOT_FOUND, f"No object s3://{self._bucket}/{key}"
                )
            return Result.failure(
                ErrorCode.BACKEND_UNAVAILABLE_ERROR,
                f"Could not read s3://{self._bucket}/{key}",
                e,
            )
        except BotoCoreError as e:
            return Result.failure(
                ErrorCode.BACKEND_UNAVAILABLE_ERROR,
                f"Object store unreachable reading s3://{self._bucket}/{key}",
                e,
            )

    def exists(self, key: str) -> Result[bool]:
        try:
            self._client.head_object(Bucket=self._bucket, Key=key)
            return Result.success(True)
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                return Result.success(False)
            return Result.failure(
                ErrorCode.BACKEND_UNAVAILABLE_ERROR,
                f"Could not stat s3://{self._bucket}/{key}",
                e,
            )
        except BotoCoreError as e:
            return Result.failure(
                ErrorCode.BACKEND_UNAVAILABLE_ERROR,
                f"Object store unreachable checking s3://{self._bucket}/{key}",
                e,
            )

    def write(self, key: str, data: bytes) -> Result[str]:
        return Result.from_computation(
            lambda: self._do_write(key, data),
            ErrorCode.WRITE_ERROR,
            f"Could not write s3://{self._bucket}/{key}",
        )

    def _do_write(self, key: str, data: bytes) -> str:
        self._client.put_object(
            Bucket=self._bucket,
            Key=key,
            Body=data,
            ContentType=CRL_CONTENT_TYPE,
        )
        location = f"s3://{self._bucket}/{key}"
        log.info("storage.s3.written", location=location, size_bytes=len(data))
        return location
