"""HeyGen API client for photo avatars and talking-photo video rendering.

Provides:
- Asset upload (images and audio) to upload.heygen.com
- Photo-avatar group creation, looks and motion enablement
- Video generation and status lookup

Usage:
    from avatarpipe.services.heygen_client import get_heygen_client

    client = get_heygen_client()
    asset = await client.upload_asset(image_bytes, "image/png")
    group = await client.create_avatar_group("My Avatar", asset["image_key"])
"""

import logging
from typing import Any, Optional

import httpx

from avatarpipe.config import settings
from avatarpipe.errors import ConfigurationError, TransientNetworkError
from avatarpipe.services.http import check_response, transport_errors

logger = logging.getLogger(__name__)

PROVIDER = "heygen"


class HeyGenClient:
    """Async client for the HeyGen v1/v2 REST API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.heygen.com",
        upload_url: str = "https://upload.heygen.com",
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.upload_url = upload_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers={"X-Api-Key": self.api_key},
                follow_redirects=True,
                timeout=httpx.Timeout(self.timeout, connect=30.0),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def _get(self, path: str, params: Optional[dict] = None) -> dict[str, Any]:
        async with transport_errors(PROVIDER):
            response = await self.client.get(f"{self.base_url}{path}", params=params)
        logger.debug(f"GET {self.base_url}{path}: HTTP {response.status_code}")
        return check_response(response, PROVIDER)

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        logger.info(f"POST {self.base_url}{path}")
        async with transport_errors(PROVIDER):
            response = await self.client.post(f"{self.base_url}{path}", json=body)
        logger.info(f"  response: HTTP {response.status_code}")
        return check_response(response, PROVIDER)

    # -- assets --------------------------------------------------------------

    async def upload_asset(self, content: bytes, content_type: str) -> dict[str, Any]:
        """Upload raw image or audio bytes.

        Returns:
            The asset dict (``id``, ``image_key`` for images, ``url``)
        """
        logger.info(f"POST {self.upload_url}/v1/asset content_type={content_type} size={len(content)} bytes")
        async with transport_errors(PROVIDER):
            response = await self.client.post(
                f"{self.upload_url}/v1/asset",
                content=content,
                headers={"Content-Type": content_type},
            )
        logger.info(f"  upload response: HTTP {response.status_code}")
        data = check_response(response, PROVIDER)
        asset = data.get("data") or data
        if not asset.get("id"):
            raise TransientNetworkError("HeyGen upload response carried no asset id", provider=PROVIDER)
        return asset

    # -- photo avatars -------------------------------------------------------

    async def create_avatar_group(self, name: str, image_key: str) -> dict[str, Any]:
        data = await self._post(
            "/v2/photo_avatar/avatar_group/create",
            {"name": name, "image_key": image_key},
        )
        group = data.get("data") or {}
        logger.info(f"  avatar group: {group.get('id')}")
        return group

    async def add_looks(self, group_id: str, image_keys: list[str], name: str = "New Look") -> dict[str, Any]:
        data = await self._post(
            "/v2/photo_avatar/avatar_group/add",
            {"group_id": group_id, "image_keys": image_keys, "name": name},
        )
        return data.get("data") or data

    async def list_group_avatars(self, group_id: str) -> list[dict[str, Any]]:
        data = await self._get(f"/v2/avatar_group/{group_id}/avatars")
        inner = data.get("data") or {}
        return inner.get("avatar_list") or data.get("avatar_list") or []

    async def add_motion(self, avatar_id: str, motion_type: str = "expressive") -> str:
        """Request motion for a photo avatar; returns the motion avatar id."""
        data = await self._post(
            "/v2/photo_avatar/add_motion",
            {"id": avatar_id, "motion_type": motion_type},
        )
        motion_id = (data.get("data") or {}).get("id")
        if not motion_id:
            raise TransientNetworkError("HeyGen add_motion response carried no id", provider=PROVIDER)
        return motion_id

    async def photo_avatar_details(self, avatar_id: str) -> dict[str, Any]:
        data = await self._get(f"/v2/photo_avatar/{avatar_id}")
        return data.get("data") or {}

    # -- video ---------------------------------------------------------------

    async def generate_video(self, request_body: dict[str, Any]) -> str:
        """Submit a video render; returns the video id."""
        data = await self._post("/v2/video/generate", request_body)
        video_id = (data.get("data") or {}).get("video_id") or data.get("video_id")
        if not video_id:
            raise TransientNetworkError("HeyGen generate response carried no video_id", provider=PROVIDER)
        return video_id

    async def video_status(self, video_id: str) -> dict[str, Any]:
        """Return the raw status dict (``status``, ``video_url``, ``thumbnail_url``, ``duration``)."""
        data = await self._get("/v1/video_status.get", params={"video_id": video_id})
        if data.get("code") == 100 and data.get("data"):
            return data["data"]
        if data.get("data"):
            return data["data"]
        if data.get("status"):
            return data
        raise TransientNetworkError("Invalid response structure from HeyGen status API", provider=PROVIDER)


# Module-level client, created on first use
_client: Optional[HeyGenClient] = None


def get_heygen_client() -> HeyGenClient:
    """Return the shared HeyGen client, building it from settings."""
    global _client
    if _client is None:
        if not settings.providers.heygen_api_key:
            raise ConfigurationError("HeyGen API key not configured (providers.heygen_api_key)")
        _client = HeyGenClient(
            api_key=settings.providers.heygen_api_key,
            base_url=settings.providers.heygen_base_url,
            upload_url=settings.providers.heygen_upload_url,
            timeout=settings.providers.request_timeout,
        )
    return _client


async def close_heygen_client() -> None:
    """Close the shared HeyGenClient (for app shutdown)."""
    global _client
    if _client is not None:
        await _client.close()
        _client = None
