from __future__ import annotations

import asyncio
from dataclasses import dataclass

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError


def parse_s3_uri(uri: str) -> tuple[str, str]:
    if not uri.startswith("s3://"):
        raise ValueError(f"Not an s3:// URI: {uri}")
    rest = uri.removeprefix("s3://")
    if "/" not in rest:
        raise ValueError(f"Invalid s3:// URI (missing key): {uri}")
    bucket, key = rest.split("/", 1)
    if not bucket or not key:
        raise ValueError(f"Invalid s3:// URI: {uri}")
    return bucket, key


def upload_key(*, document_id: str, content_hash: str, filename: str) -> str:
    # Per-document key: a late dedup loser can delete its copy without touching the winner.
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else "bin"
    return f"documents/{document_id}/{content_hash[:16]}.{ext}"


@dataclass(frozen=True)
class S3Config:
    endpoint: str
    bucket: str
    access_key: str
    secret_key: str
    region: str = "us-east-1"
    timeout_s: float = 30.0


class S3ObjectStore:
    """
    Uploaded-file storage on S3/MinIO. boto3 is blocking, so every call runs in a worker
    thread.
    """

    def __init__(self, cfg: S3Config):
        self._cfg = cfg
        self._client = boto3.client(
            "s3",
            endpoint_url=cfg.endpoint,
            aws_access_key_id=cfg.access_key,
            aws_secret_access_key=cfg.secret_key,
            region_name=cfg.region,
            config=Config(
                s3={"addressing_style": "path"},
                connect_timeout=cfg.timeout_s,
                read_timeout=cfg.timeout_s,
            ),
        )

    @property
    def bucket(self) -> str:
        return self._cfg.bucket

    def _key_for(self, ref: str) -> str:
        bucket, key = parse_s3_uri(ref)
        if bucket != self._cfg.bucket:
            raise ValueError(f"Bucket mismatch for URI: {ref}")
        return key

    def _put_sync(self, key: str, data: bytes, content_type: str | None) -> str:
        extra: dict = {}
        if content_type:
            extra["ContentType"] = content_type
        self._client.put_object(Bucket=self._cfg.bucket, Key=key, Body=data, **extra)
        return f"s3://{self._cfg.bucket}/{key}"

    def _get_sync(self, key: str) -> bytes:
        obj = self._client.get_object(Bucket=self._cfg.bucket, Key=key)
        return obj["Body"].read()

    def _delete_sync(self, key: str) -> None:
        try:
            self._client.delete_object(Bucket=self._cfg.bucket, Key=key)
        except ClientError as e:
            # Some S3-compatible gateways return NoSuchKey instead of a silent success.
            code = (e.response or {}).get("Error", {}).get("Code")
            if code in {"NoSuchKey", "NotFound"}:
                return
            raise

    async def put(self, key: str, data: bytes, *, content_type: str | None = None) -> str:
        return await asyncio.to_thread(self._put_sync, key, data, content_type)

    async def get(self, ref: str) -> bytes:
        return await asyncio.to_thread(self._get_sync, self._key_for(ref))

    async def delete(self, ref: str) -> None:
        await asyncio.to_thread(self._delete_sync, self._key_for(ref))

    async def access_url(self, ref: str, *, expires_s: int = 3600) -> str:
        """
        Time-limited GET URL for the stored object.
        """
        key = self._key_for(ref)
        return await asyncio.to_thread(
            self._client.generate_presigned_url,
            "get_object",
            Params={"Bucket": self._cfg.bucket, "Key": key},
            ExpiresIn=expires_s,
        )
