# /redpen/services/remote_image_store.py

"""
Client for the remote object store that holds uploaded submission images.

Images live in a Supabase Storage bucket under `submissions/<id>.webp` and are
fetched through the Storage REST API with the service key.
"""

import logging
from typing import Optional

import httpx
from fastapi import Request

from redpen.core.config import Settings, get_settings
from .grading_helpers.errors import ImageUnavailable

logger = logging.getLogger(__name__)


class RemoteImageStore:
    def __init__(self, settings: Optional[Settings] = None, client: Optional[httpx.AsyncClient] = None, timeout: float = 30.0):
        self.settings = settings or get_settings()
        self.timeout = timeout
        self._client = client

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.supabase_url and self.settings.supabase_service_key)

    def object_path(self, submission_id: str) -> str:
        return f"submissions/{submission_id}.webp"

    def object_url(self, submission_id: str) -> str:
        base = self.settings.supabase_url.rstrip("/")
        return f"{base}/storage/v1/object/{self.settings.supabase_image_bucket}/{self.object_path(submission_id)}"

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def download_image(self, submission_id: str) -> bytes:
        """
        Downloads the stored image of a submission.

        Raises:
            ImageUnavailable: when storage is not configured, the object does
            not exist, or the request fails.
        """
        if not self.is_configured:
            raise ImageUnavailable("Remote image storage is not configured.", submission_id=submission_id)

        headers = {
            "Authorization": f"Bearer {self.settings.supabase_service_key}",
            "apikey": self.settings.supabase_service_key,
        }
        client = await self._get_client()
        try:
            response = await client.get(self.object_url(submission_id), headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning("Remote image download for %s failed with HTTP %s.", submission_id, exc.response.status_code)
            raise ImageUnavailable(
                f"Remote image for submission {submission_id} could not be downloaded (HTTP {exc.response.status_code}).",
                submission_id=submission_id,
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("Remote image download for %s failed: %s", submission_id, exc)
            raise ImageUnavailable(
                f"Remote image for submission {submission_id} could not be downloaded: {exc}",
                submission_id=submission_id,
            ) from exc

        if not response.content:
            raise ImageUnavailable(f"Remote image for submission {submission_id} is empty.", submission_id=submission_id)
        return response.content


def get_remote_image_store(request: Request) -> RemoteImageStore:
    """The store created in the application lifespan, shared by all requests."""
    return request.app.state.remote_image_store
