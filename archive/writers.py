"""
Archive writers: durable destinations for compressed record batches.

A writer stores one immutable object per batch under a key built by the
archive sink. Both writers do blocking I/O and run it in the default
executor so the event loop is never blocked.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from functools import partial
from pathlib import Path
from typing import Any, Dict, Optional

import boto3

logger = logging.getLogger(__name__)

BATCH_CONTENT_TYPE = "application/x-ndjson"
BATCH_CONTENT_ENCODING = "gzip"


class ArchiveWriter(ABC):
    name = "archive"

    @abstractmethod
    async def write_batch(self, key: str, body: bytes) -> None:
        """Store ``body`` under ``key``; raise on any failure."""

    async def health_check(self) -> Dict[str, Any]:
        return {"status": "healthy", "backend": self.name}


class FilesystemArchiveWriter(ArchiveWriter):
    """Writes each batch to ``{directory}/{key}``, creating folders as needed."""

    name = "filesystem"

    def __init__(self, directory: str):
        self.directory = Path(directory)

    def _write(self, key: str, body: bytes) -> Path:
        path = self.directory / key
        path.parent.mkdir(parents=True, exist_ok=True)
        # Write then rename so a reader never sees a partial batch
        tmp_path = path.with_name(path.name + ".tmp")
        tmp_path.write_bytes(body)
        tmp_path.replace(path)
        return path

    async def write_batch(self, key: str, body: bytes) -> None:
        loop = asyncio.get_running_loop()
        path = await loop.run_in_executor(None, self._write, key, body)
        logger.debug(
            "Archive batch written",
            extra={"extra_data": {"path": str(path), "bytes": len(body)}}
        )


class S3ArchiveWriter(ArchiveWriter):
    """
    Writes each batch as an S3 object.

    Args:
        bucket: Destination bucket
        client: Optional pre-built boto3 S3 client
        endpoint_url: Optional endpoint for S3-compatible stores
    """

    name = "s3"

    def __init__(
        self,
        bucket: str,
        client: Optional[Any] = None,
        endpoint_url: Optional[str] = None,
    ):
        self.bucket = bucket
        self.s3_client = client or boto3.client("s3", endpoint_url=endpoint_url)

    async def write_batch(self, key: str, body: bytes) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, partial(
            self.s3_client.put_object,
            Bucket=self.bucket,
            Key=key,
            Body=body,
            ContentType=BATCH_CONTENT_TYPE,
            ContentEncoding=BATCH_CONTENT_ENCODING,
        ))
        logger.debug(
            "Archive batch uploaded",
            extra={"extra_data": {"bucket": self.bucket, "key": key, "bytes": len(body)}}
        )
