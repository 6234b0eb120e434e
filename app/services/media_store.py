"""Azure Blob Storage media store for call recordings."""

import logging
import time
from dataclasses import dataclass

import httpx
from azure.core.exceptions import AzureError
from azure.storage.blob import ContentSettings
from azure.storage.blob.aio import BlobServiceClient

from app.core.config import settings
from app.core.errors import RetryableError, PermanentError, is_retryable_http_error

logger = logging.getLogger(__name__)


@dataclass
class PersistedMedia:
    url: str
    durable: bool


class MediaStore:
    """Fetch recordings from the telephony provider and persist them durably.

    When no connection string is configured the store is disabled and the
    provider's own (non-durable, possibly expiring) URL is handed back.
    """

    def __init__(
        self,
        connection_string: str,
        container: str = "call-recordings",
        public_url: str = "",
        download_auth: tuple[str, str] | None = None,
        download_timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.connection_string = connection_string
        self.container = container
        self.public_url = public_url.rstrip("/")
        self.download_auth = download_auth
        self.download_timeout = download_timeout
        self._client = http_client
        self._owns_client = http_client is None

        if not self.enabled:
            logger.warning("Azure Blob connection string not configured - recordings keep provider URLs")

    @classmethod
    def from_settings(cls) -> "MediaStore":
        auth = None
        if settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN:
            auth = (settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)
        return cls(
            settings.AZURE_BLOB_CONNECTION_STRING,
            container=settings.MEDIA_CONTAINER,
            public_url=settings.MEDIA_PUBLIC_URL,
            download_auth=auth,
            download_timeout=settings.MEDIA_DOWNLOAD_TIMEOUT_SECONDS,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.connection_string)

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def blob_name(canonical_name: str) -> str:
        return f"recordings/{int(time.time() * 1000)}-{canonical_name}"

    async def persist(self, audio_bytes: bytes, canonical_name: str) -> str:
        """Upload audio and return its durable, publicly readable URL."""
        if not self.enabled:
            raise PermanentError("Media store not configured")

        blob = self.blob_name(canonical_name)
        try:
            url = await self._upload(blob, audio_bytes)
        except AzureError as e:
            raise RetryableError(f"Failed to upload recording {blob}: {e}") from e

        if self.public_url:
            url = f"{self.public_url}/{blob}"
        logger.info("Recording uploaded: %s", url)
        return url

    async def fetch_and_persist(self, recording_url: str, canonical_name: str) -> PersistedMedia:
        """Download the provider recording and persist it.

        Returns the provider URL (``durable=False``) when the store is
        disabled. Raises RetryableError / PermanentError when configured
        but the download or upload fails.
        """
        if not self.enabled:
            return PersistedMedia(url=recording_url, durable=False)

        audio_bytes = await self.fetch(recording_url)
        url = await self.persist(audio_bytes, canonical_name)
        return PersistedMedia(url=url, durable=True)

    async def fetch(self, recording_url: str) -> bytes:
        try:
            resp = await self.client.get(
                recording_url,
                auth=self.download_auth,
                timeout=self.download_timeout,
                follow_redirects=True,
            )
            resp.raise_for_status()
        except httpx.HTTPError as e:
            if is_retryable_http_error(e):
                raise RetryableError(f"Recording download failed: {e}") from e
            raise PermanentError(f"Recording download rejected: {e}") from e

        if not resp.content:
            raise RetryableError(f"Recording download returned no audio: {recording_url}")
        return resp.content

    async def _upload(self, blob: str, data: bytes) -> str:
        async with BlobServiceClient.from_connection_string(self.connection_string) as blob_service:
            blob_client = blob_service.get_blob_client(container=self.container, blob=blob)
            await blob_client.upload_blob(
                data,
                overwrite=True,
                content_settings=ContentSettings(content_type="audio/wav"),
            )
            return blob_client.url
