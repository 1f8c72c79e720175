"""
Netyora Chat - Blob Store
Stores attachment bytes in S3-compatible object storage (MinIO/S3)

The object key doubles as the attachment `publicId`:
    chat/{chat_id}/{folder}/{uuid}{ext}
"""

import asyncio
import io
import os
import uuid
from typing import Any, AsyncIterator, Dict, Optional

import boto3
import httpx
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from PIL import Image, UnidentifiedImageError

from core.config import settings
from core.errors import UpstreamError
from core.logging import get_logger

logger = get_logger("netyora.chat.blob_store")


class BlobDownload:
    """An open upstream response, streamed to the caller chunk by chunk"""

    def __init__(self, client: httpx.AsyncClient, response: httpx.Response):
        self.client = client
        self.response = response

    @property
    def content_length(self) -> Optional[str]:
        return self.response.headers.get("content-length")

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self.response.aiter_bytes():
                yield chunk
        finally:
            await self.aclose()

    async def aclose(self):
        await self.response.aclose()
        await self.client.aclose()


class BlobStore:
    """
    Upload, fetch and destroy attachment blobs.

    boto3 is synchronous, calls run in a worker thread so every blob
    operation is a suspension point for the event loop.
    """

    DOWNLOAD_TIMEOUT = 10.0

    def __init__(self):
        access_key, secret_key = settings.blob_credentials
        self.s3_client = boto3.client(
            's3',
            endpoint_url=settings.S3_ENDPOINT,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            config=Config(signature_version='s3v4'),
            region_name=settings.S3_REGION,
        )
        self.bucket = settings.S3_BUCKET
        self.base_url = f"{settings.S3_ENDPOINT.rstrip('/')}/{settings.S3_BUCKET}"

    def _object_key(self, chat_id: str, folder: str, file_name: str) -> str:
        file_ext = os.path.splitext(file_name or "")[1].lower()
        return f"chat/{chat_id}/{folder}/{uuid.uuid4()}{file_ext}"

    def _public_url(self, key: str) -> str:
        return f"{self.base_url}/{key}"

    @staticmethod
    def _image_size(content: bytes) -> Optional[tuple]:
        try:
            with Image.open(io.BytesIO(content)) as image:
                return image.size
        except (UnidentifiedImageError, OSError):
            return None

    async def upload(
        self,
        content: bytes,
        file_name: str,
        content_type: str,
        chat_id: str,
        folder: str = "files",
    ) -> Dict[str, Any]:
        """
        Upload bytes and describe the stored object.

        Returns:
            Dict with url, publicId, bytes, width, height, format

        Raises:
            UpstreamError: the object store rejected the upload
        """
        key = self._object_key(chat_id, folder, file_name)

        try:
            await asyncio.to_thread(
                self.s3_client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=content,
                ContentType=content_type,
                ACL='public-read',
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Blob upload failed: {e}", action="blob_upload_failed", chat_id=chat_id)
            raise UpstreamError("Failed to upload file", service="blob_store") from e

        result = {
            "url": self._public_url(key),
            "publicId": key,
            "bytes": len(content),
            "width": None,
            "height": None,
            "format": os.path.splitext(file_name or "")[1].lstrip(".").lower() or None,
        }

        if content_type.startswith("image/"):
            size = self._image_size(content)
            if size:
                result["width"], result["height"] = size

        logger.info(
            f"Uploaded blob {key}",
            action="blob_uploaded",
            chat_id=chat_id,
            size=len(content),
        )
        return result

    async def destroy(self, public_id: str) -> None:
        """
        Delete a blob by publicId.

        Raises:
            UpstreamError: the delete did not go through, caller retries later
        """
        try:
            await asyncio.to_thread(
                self.s3_client.delete_object,
                Bucket=self.bucket,
                Key=public_id,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Blob delete failed for {public_id}: {e}", action="blob_destroy_failed")
            raise UpstreamError("Failed to delete file", service="blob_store") from e

        logger.info(f"Destroyed blob {public_id}", action="blob_destroyed")

    async def open_download(self, url: str) -> BlobDownload:
        """
        Open a streaming GET against the blob url.

        Raises:
            UpstreamError: connection failed or the store answered with an error
        """
        client = httpx.AsyncClient(timeout=self.DOWNLOAD_TIMEOUT, follow_redirects=True)
        try:
            response = await client.send(client.build_request("GET", url), stream=True)
        except httpx.HTTPError as e:
            await client.aclose()
            raise UpstreamError("Blob download failed", service="blob_store") from e

        if response.status_code >= 400:
            await response.aclose()
            await client.aclose()
            raise UpstreamError(
                f"Blob download failed with status {response.status_code}",
                service="blob_store",
            )
        return BlobDownload(client, response)


# Singleton instance
blob_store = BlobStore()
