"""HeyGen provider adapters for the orchestrator.

Wraps HeyGenClient in the ProviderClient contract so the dispatcher,
poller and quorum waiter only deal with: submit → check_status → cancel.

  HeyGenAssetProvider   image/audio upload, completes synchronously
  HeyGenMotionProvider  add_motion, polled through photo-avatar details
  HeyGenVideoProvider   talking-photo render, polled through video status
"""

import asyncio
import logging
import mimetypes
from pathlib import Path
from typing import Any, Optional

import httpx

from avatarpipe.config import settings
from avatarpipe.errors import ErrorKind, ProviderRejection, TransientNetworkError
from avatarpipe.schemas.tasks import TaskError, TaskKind, TaskResult, TaskStatus
from avatarpipe.services.base import ProviderClient, StatusReport, SubmitResult
from avatarpipe.services.heygen_client import HeyGenClient

logger = logging.getLogger(__name__)

# Status normalization sets
_COMPLETED_STATUSES = frozenset({"completed", "success", "done"})
_FAILED_STATUSES = frozenset({"failed", "error", "moderation_rejected", "rejected"})

_IMAGE_TYPES = frozenset({"image/jpeg", "image/png"})
_MAX_IMAGE_BYTES = 10 * 1024 * 1024
_MAX_AUDIO_BYTES = 50 * 1024 * 1024


def _failure_message(data: dict[str, Any], fallback: str) -> str:
    error = data.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or error.get("detail") or error.get("code") or fallback)
    if error:
        return str(error)
    return str(data.get("message") or fallback)


async def read_source(source: str) -> bytes:
    """Load asset bytes from a local path or a URL."""
    if source.startswith(("http://", "https://")):
        async with httpx.AsyncClient(follow_redirects=True, timeout=60.0) as client:
            try:
                response = await client.get(source)
            except httpx.TransportError as e:
                raise TransientNetworkError(f"Fetching {source} failed: {e}") from e
        if response.status_code >= 400:
            raise ProviderRejection(
                f"Fetching {source} failed: HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response.content

    path = Path(source)
    if not path.exists():
        raise ProviderRejection(f"Asset file not found: {source}")
    return await asyncio.to_thread(path.read_bytes)


class HeyGenAssetProvider(ProviderClient):
    """Uploads an image or audio file; the upload response is terminal.

    Payload keys: ``source`` (path or URL), optional ``content_type``.
    """

    def __init__(self, client: HeyGenClient, kind: TaskKind = TaskKind.IMAGE, name: Optional[str] = None):
        self.client = client
        self.kind = kind
        self.name = name or f"heygen_{kind.value}_asset"

    async def submit(self, payload: dict[str, Any]) -> SubmitResult:
        source = payload["source"]
        content_type = payload.get("content_type") or mimetypes.guess_type(source)[0]
        if self.kind == TaskKind.IMAGE:
            content_type = content_type or "image/jpeg"
            if content_type not in _IMAGE_TYPES:
                raise ProviderRejection(
                    f"Invalid file type: {content_type}. Only JPEG and PNG images are supported.",
                    provider=self.name,
                )
            limit = _MAX_IMAGE_BYTES
        else:
            content_type = content_type or "audio/mpeg"
            limit = _MAX_AUDIO_BYTES

        content = await read_source(source)
        if len(content) > limit:
            raise ProviderRejection(
                f"File too large: {len(content) / 1024 / 1024:.2f}MB. "
                f"Maximum allowed: {limit // 1024 // 1024}MB.",
                provider=self.name,
            )

        asset = await self.client.upload_asset(content, content_type)
        logger.info(f"Uploaded {source} as HeyGen asset {asset['id']}")
        result = TaskResult(
            url=asset.get("url"),
            extra={
                "asset_id": asset["id"],
                "image_key": asset.get("image_key"),
                "file_type": asset.get("file_type"),
            },
        )
        return SubmitResult(
            provider_task_id=asset["id"],
            report=StatusReport(status=TaskStatus.COMPLETED, result=result),
        )

    async def check_status(self, provider_task_id: str) -> StatusReport:
        # Uploads are complete once accepted
        return StatusReport(status=TaskStatus.COMPLETED)


class HeyGenMotionProvider(ProviderClient):
    """Enables motion on a photo avatar. Payload key: ``avatar_id``."""

    kind = TaskKind.MOTION
    name = "heygen_motion"

    def __init__(self, client: HeyGenClient, motion_type: str = "expressive"):
        self.client = client
        self.motion_type = motion_type

    async def submit(self, payload: dict[str, Any]) -> SubmitResult:
        motion_id = await self.client.add_motion(payload["avatar_id"], self.motion_type)
        return SubmitResult(provider_task_id=motion_id)

    async def check_status(self, provider_task_id: str) -> StatusReport:
        details = await self.client.photo_avatar_details(provider_task_id)
        raw_status = str(details.get("status") or "unknown").lower()

        if raw_status in _COMPLETED_STATUSES:
            logger.info(f"HeyGen motion {provider_task_id}: raw_status={raw_status!r} → completed")
            return StatusReport(
                status=TaskStatus.COMPLETED,
                result=TaskResult(
                    url=details.get("motion_preview_url"),
                    thumbnail_url=details.get("image_url"),
                    extra={"avatar_id": provider_task_id, "is_motion": details.get("is_motion")},
                ),
            )
        if raw_status in _FAILED_STATUSES:
            message = _failure_message(details, f"Motion {raw_status}")
            logger.warning(f"HeyGen motion {provider_task_id}: raw_status={raw_status!r} → failed ({message})")
            return StatusReport(
                status=TaskStatus.FAILED,
                error=TaskError(kind=ErrorKind.PROVIDER_REJECTION, message=message),
            )
        logger.debug(f"HeyGen motion {provider_task_id}: raw_status={raw_status!r} → processing")
        partial = None
        if details.get("image_url"):
            partial = TaskResult(thumbnail_url=details["image_url"])
        return StatusReport(status=TaskStatus.PROCESSING, result=partial)


class HeyGenVideoProvider(ProviderClient):
    """Renders a talking-photo video.

    Payload keys: ``talking_photo_id``, ``title``, and either
    ``audio_asset_id`` or ``voice_id`` + ``text``; optional ``speed``,
    ``width``, ``height``.
    """

    kind = TaskKind.VIDEO
    name = "heygen_video"

    def __init__(self, client: HeyGenClient):
        self.client = client

    @staticmethod
    def build_request(payload: dict[str, Any]) -> dict[str, Any]:
        if payload.get("audio_asset_id"):
            voice = {"type": "audio", "audio_asset_id": payload["audio_asset_id"]}
        else:
            voice = {
                "type": "text",
                "voice_id": payload["voice_id"],
                "input_text": payload["text"],
                "speed": payload.get("speed", 1.0),
            }
        return {
            "title": payload.get("title") or "Avatar Video",
            "video_inputs": [
                {
                    "character": {
                        "type": "talking_photo",
                        "talking_photo_id": payload["talking_photo_id"],
                        "scale": 1.0,
                        "offset": {"x": 0.0, "y": 0.0},
                        "talking_style": "stable",
                        "expression": "default",
                    },
                    "voice": voice,
                    "background": {"type": "color", "value": "#f6f6fc"},
                }
            ],
            "dimension": {
                "width": payload.get("width", settings.pipeline.video_width),
                "height": payload.get("height", settings.pipeline.video_height),
            },
        }

    async def submit(self, payload: dict[str, Any]) -> SubmitResult:
        video_id = await self.client.generate_video(self.build_request(payload))
        return SubmitResult(provider_task_id=video_id)

    async def check_status(self, provider_task_id: str) -> StatusReport:
        data = await self.client.video_status(provider_task_id)
        raw_status = str(data.get("status") or "unknown").lower()
        partial = TaskResult(
            thumbnail_url=data.get("thumbnail_url") or data.get("thumbnailUrl"),
            duration=data.get("duration"),
            extra={"gif_url": data["gif_url"]} if data.get("gif_url") else {},
        )

        if raw_status in _COMPLETED_STATUSES:
            video_url = data.get("video_url") or data.get("videoUrl")
            if not video_url:
                raise TransientNetworkError(
                    f"HeyGen video {provider_task_id} completed without a video_url", provider=self.name
                )
            logger.info(f"HeyGen video {provider_task_id}: raw_status={raw_status!r} → completed")
            return StatusReport(
                status=TaskStatus.COMPLETED,
                result=partial.model_copy(update={"url": video_url}),
            )
        if raw_status in _FAILED_STATUSES:
            message = _failure_message(data, f"Video {raw_status}")
            logger.warning(f"HeyGen video {provider_task_id}: raw_status={raw_status!r} → failed ({message})")
            return StatusReport(
                status=TaskStatus.FAILED,
                result=partial,
                error=TaskError(kind=ErrorKind.PROVIDER_REJECTION, message=message),
            )
        logger.debug(f"HeyGen video {provider_task_id}: raw_status={raw_status!r} → processing")
        return StatusReport(status=TaskStatus.PROCESSING, result=partial)

