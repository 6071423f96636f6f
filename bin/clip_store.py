#!/usr/bin/env python3
"""
Common Voice Bundler Clip Store

Thin wrapper around a boto3 S3 client for the buckets the bundler talks to:
- the clip bucket, read through presigned GET URLs so clip bytes can be
  streamed with aiohttp
- the release bucket, written with streaming multipart uploads and
  public-read visibility
"""

from __future__ import annotations

import json
from typing import Any, BinaryIO, Callable, Optional

import boto3
from boto3.s3.transfer import TransferConfig
from botocore.config import Config as BotoConfig


PUBLIC_READ = "public-read"

# Archives are produced while uploading, so the size is unknown up front.
# 16 MiB parts keep a single 10,000-part upload good for ~160 GiB.
UPLOAD_TRANSFER = TransferConfig(
    multipart_threshold=16 * 1024 * 1024,
    multipart_chunksize=16 * 1024 * 1024,
    max_concurrency=4,
)


class ClipStore:
    """S3 bucket handle used for clip reads and release uploads."""

    def __init__(self, bucket: str, region: Optional[str] = None, client: Any = None):
        self.bucket = bucket
        self.region = region
        if client is None:
            client = boto3.client(
                "s3",
                region_name=region,
                config=BotoConfig(signature_version="s3v4", retries={"max_attempts": 3}),
            )
        self._client = client

    def presigned_url(self, key: str, expires_sec: int = 3600) -> str:
        """Signed GET URL for `key`. Signing is local; no request is made."""
        return self._client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_sec,
        )

    def upload_stream(
        self,
        fileobj: BinaryIO,
        key: str,
        callback: Optional[Callable[[int], None]] = None,
    ) -> None:
        """Upload from a readable stream; `callback` receives byte increments."""
        self._client.upload_fileobj(
            fileobj,
            self.bucket,
            key,
            ExtraArgs={"ACL": PUBLIC_READ},
            Callback=callback,
            Config=UPLOAD_TRANSFER,
        )

    def object_size(self, key: str) -> int:
        response = self._client.head_object(Bucket=self.bucket, Key=key)
        return int(response["ContentLength"])

    def put_json(self, key: str, payload: dict[str, Any]) -> str:
        body = json.dumps(payload).encode("utf-8")
        self._client.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=body,
            ACL=PUBLIC_READ,
            ContentType="application/json",
        )
        return f"s3://{self.bucket}/{key}"
