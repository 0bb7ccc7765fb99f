from __future__ import annotations

import logging
from functools import lru_cache, partial
from typing import Any
from urllib.parse import quote, unquote, urlparse

import anyio
import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from mediaflow.core.config import Settings, settings

logger = logging.getLogger(__name__)

IMMUTABLE_CACHE_CONTROL = "public, max-age=31536000, immutable"


class ObjectStoreError(Exception):
    def __init__(self, message: str, *, key: str | None = None, code: str | None = None) -> None:
        super().__init__(message)
        self.key = key
        self.code = code


def _error_code(exc: Exception) -> str | None:
    if isinstance(exc, ClientError):
        return str(exc.response.get("Error", {}).get("Code") or "") or None
    return None


class ObjectStore:
    """
    Thin async facade over an S3-compatible bucket (AWS S3 or MinIO).

    boto3 is blocking, so every network call is pushed to a worker thread; the client
    carries connect/read timeouts so one hung object cannot stall a whole batch.
    """

    def __init__(self, config: Settings | None = None, *, client: Any | None = None) -> None:
        self.config = config or settings
        self._client = client

    @property
    def bucket(self) -> str:
        return self.config.s3_bucket_name

    @property
    def acceleration_enabled(self) -> bool:
        return bool(self.config.s3_use_acceleration) and not bool(self.config.use_minio)

    def _endpoint(self) -> str | None:
        endpoint = (self.config.s3_endpoint or "").strip()
        if endpoint:
            return endpoint.rstrip("/")
        if self.config.use_minio:
            return "http://localhost:9000"
        return None

    @property
    def client(self) -> Any:
        if self._client is None:
            endpoint = self._endpoint()
            s3_options: dict[str, Any] = {}
            if endpoint:
                s3_options["addressing_style"] = "path"
            elif self.acceleration_enabled:
                s3_options["use_accelerate_endpoint"] = True
            boto_config = Config(
                region_name=self.config.s3_region,
                connect_timeout=self.config.s3_connect_timeout_seconds,
                read_timeout=self.config.s3_read_timeout_seconds,
                retries={"max_attempts": max(1, int(self.config.s3_max_attempts)), "mode": "standard"},
                s3=s3_options or None,
            )
            self._client = boto3.client(
                "s3",
                endpoint_url=endpoint,
                aws_access_key_id=self.config.s3_access_key_id,
                aws_secret_access_key=self.config.s3_secret_access_key,
                config=boto_config,
            )
        return self._client

    def _cdn_base(self) -> str | None:
        cdn = (self.config.cdn_domain or "").strip().rstrip("/")
        if not cdn or cdn.upper() == "NONE":
            return None
        return cdn if cdn.startswith(("http://", "https://")) else f"https://{cdn}"

    def public_url(self, key: str) -> str:
        clean_key = quote(str(key or "").lstrip("/"), safe="/-_.~")
        cdn = self._cdn_base()
        if cdn:
            return f"{cdn}/{clean_key}"
        endpoint = self._endpoint()
        if endpoint:
            return f"{endpoint}/{self.bucket}/{clean_key}"
        return f"https://{self.bucket}.s3.{self.config.s3_region}.amazonaws.com/{clean_key}"

    def key_from_url(self, url: str | None) -> str | None:
        """Invert `public_url`; returns None for URLs this bucket could not have produced."""
        try:
            parsed = urlparse(str(url or "").strip())
        except ValueError:
            return None
        if not parsed.scheme or not parsed.netloc:
            return None
        path = unquote(parsed.path or "").lstrip("/")
        if not path:
            return None

        cdn = self._cdn_base()
        if cdn:
            cdn_parsed = urlparse(cdn)
            if parsed.netloc == cdn_parsed.netloc:
                prefix = cdn_parsed.path.strip("/")
                if prefix:
                    if not path.startswith(f"{prefix}/"):
                        return None
                    path = path[len(prefix) + 1 :]
                return path or None

        if parsed.netloc.startswith(f"{self.bucket}.s3"):
            return path

        bucket_prefix = f"{self.bucket}/"
        if path.startswith(bucket_prefix):
            return path[len(bucket_prefix) :] or None
        return None

    async def _call(self, operation: str, key: str, fn, /, **kwargs: Any) -> Any:
        try:
            return await anyio.to_thread.run_sync(partial(fn, **kwargs))
        except (BotoCoreError, ClientError) as exc:
            raise ObjectStoreError(f"{operation} failed for {key}: {exc}", key=key, code=_error_code(exc)) from exc

    async def put_object(
        self,
        key: str,
        body: bytes,
        *,
        content_type: str | None = None,
        metadata: dict[str, str] | None = None,
        tagging: str | None = None,
        cache_control: str | None = None,
    ) -> None:
        params: dict[str, Any] = {"Bucket": self.bucket, "Key": key, "Body": body}
        if content_type:
            params["ContentType"] = content_type
        if metadata:
            params["Metadata"] = metadata
        if tagging:
            params["Tagging"] = tagging
        if cache_control:
            params["CacheControl"] = cache_control
        await self._call("put_object", key, self.client.put_object, **params)

    async def get_object(self, key: str) -> bytes:
        def _read() -> bytes:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            body = response["Body"]
            try:
                return body.read()
            finally:
                body.close()

        return await self._call("get_object", key, _read)

    async def delete_object(self, key: str) -> None:
        await self._call("delete_object", key, self.client.delete_object, Bucket=self.bucket, Key=key)

    async def presigned_put(
        self,
        key: str,
        *,
        content_type: str,
        expires_in: int,
        content_length: int | None = None,
    ) -> str:
        params: dict[str, Any] = {"Bucket": self.bucket, "Key": key, "ContentType": content_type}
        if content_length:
            params["ContentLength"] = int(content_length)
        return await self._call(
            "presigned_put",
            key,
            self.client.generate_presigned_url,
            ClientMethod="put_object",
            Params=params,
            ExpiresIn=int(expires_in),
        )


@lru_cache
def get_object_store() -> ObjectStore:
    return ObjectStore(settings)
