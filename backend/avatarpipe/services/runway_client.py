"""Runway text-to-image generation for avatar photos.

Each generation is one ``/v1/text_to_image`` task polled through
``/v1/tasks/{id}``. Runway fetches reference images itself, so only http(s)
URLs and inline ``data:image/`` URIs are forwarded.
"""

import logging
import random
from typing import Any, Optional, Sequence

import httpx

from avatarpipe.config import settings
from avatarpipe.errors import ConfigurationError, ErrorKind, TransientNetworkError
from avatarpipe.schemas.tasks import TaskError, TaskKind, TaskResult, TaskStatus
from avatarpipe.services.base import ProviderClient, StatusReport, SubmitResult
from avatarpipe.services.http import check_response, transport_errors

logger = logging.getLogger(__name__)

PROVIDER = "runway"
IMAGE_MODEL = "gen4_image"
MAX_SEED = 4294967295

# Output pixel size Runway expects for each aspect ratio
RUNWAY_RATIOS = {
    "16:9": "1920:1080",
    "9:16": "1080:1920",
    "1:1": "1024:1024",
    "4:3": "1024:768",
    "3:4": "768:1024",
    "21:9": "2560:1080",
    "3:2": "1512:1008",
    "2:3": "1008:1512",
}
DEFAULT_RATIO = "1080:1920"

_COMPLETED_STATUSES = frozenset({"succeeded"})
_FAILED_STATUSES = frozenset({"failed"})
_CANCELLED_STATUSES = frozenset({"cancelled", "canceled"})


def runway_ratio(aspect_ratio: str) -> str:
    """Map "16:9"-style ratios to Runway's "W:H" sizes; sizes pass through."""
    if aspect_ratio in RUNWAY_RATIOS:
        return RUNWAY_RATIOS[aspect_ratio]
    if aspect_ratio in RUNWAY_RATIOS.values():
        return aspect_ratio
    return DEFAULT_RATIO


def reference_entries(refs: Sequence[str]) -> list[dict[str, str]]:
    """Tag usable reference images ref1, ref2, ... and drop the rest."""
    entries = []
    for ref in refs:
        ref = (ref or "").strip()
        if not ref.lower().startswith(("http://", "https://", "data:image/")):
            logger.warning(f"Skipping reference image {ref[:50]!r}: not a URL or data URI")
            continue
        entries.append({"uri": ref, "tag": f"ref{len(entries) + 1}"})
    return entries


class RunwayClient:
    """Async client for Runway generation tasks."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.dev.runwayml.com",
        api_version: str = "2024-11-06",
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.api_version = api_version
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "X-Runway-Version": self.api_version,
                },
                timeout=httpx.Timeout(self.timeout, connect=30.0),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def create_image_task(
        self,
        prompt: str,
        ratio: str = DEFAULT_RATIO,
        seed: Optional[int] = None,
        reference_images: Sequence[str] = (),
    ) -> str:
        """Submit one text-to-image generation; returns the Runway task id."""
        body: dict[str, Any] = {
            "promptText": prompt,
            "ratio": ratio,
            "model": IMAGE_MODEL,
            "seed": random.randint(0, MAX_SEED) if seed is None else seed,
        }
        refs = reference_entries(reference_images)
        if refs:
            body["referenceImages"] = refs

        logger.info(f"POST {self.base_url}/v1/text_to_image ratio={ratio} refs={len(refs)}")
        async with transport_errors(PROVIDER):
            response = await self.client.post(f"{self.base_url}/v1/text_to_image", json=body)
        data = check_response(response, PROVIDER)
        if not data.get("id"):
            raise TransientNetworkError("Runway create response carried no task id", provider=PROVIDER)
        return data["id"]

    async def get_task(self, task_id: str) -> dict[str, Any]:
        async with transport_errors(PROVIDER):
            response = await self.client.get(f"{self.base_url}/v1/tasks/{task_id}")
        logger.debug(f"GET task {task_id}: HTTP {response.status_code}")
        return check_response(response, PROVIDER)

    async def cancel_task(self, task_id: str) -> None:
        async with transport_errors(PROVIDER):
            response = await self.client.delete(f"{self.base_url}/v1/tasks/{task_id}")
        if response.status_code >= 400:
            logger.warning(f"Runway cancel for {task_id} returned HTTP {response.status_code}")
            return
        logger.info(f"Runway task {task_id} cancelled")


class RunwayImageProvider(ProviderClient):
    """Avatar photo generation as a polled image task.

    Payload keys: ``prompt``; optional ``aspect_ratio``, ``seed``,
    ``reference_images``.
    """

    kind = TaskKind.IMAGE
    name = "runway_image"

    def __init__(self, client: RunwayClient):
        self.client = client

    async def submit(self, payload: dict[str, Any]) -> SubmitResult:
        task_id = await self.client.create_image_task(
            payload.get("prompt", ""),
            ratio=runway_ratio(payload.get("aspect_ratio", "16:9")),
            seed=payload.get("seed"),
            reference_images=payload.get("reference_images") or (),
        )
        return SubmitResult(provider_task_id=task_id)

    async def check_status(self, provider_task_id: str) -> StatusReport:
        data = await self.client.get_task(provider_task_id)
        raw_status = str(data.get("status") or "pending").lower()

        if raw_status in _COMPLETED_STATUSES:
            outputs = data.get("output") or []
            if not outputs:
                raise TransientNetworkError(
                    f"Runway task {provider_task_id} succeeded without output", provider=self.name
                )
            logger.info(f"Runway task {provider_task_id}: raw_status={raw_status!r} → completed")
            return StatusReport(
                status=TaskStatus.COMPLETED,
                result=TaskResult(url=outputs[0], extra={"outputs": list(outputs)}),
            )
        if raw_status in _FAILED_STATUSES:
            failure = data.get("failure")
            if isinstance(failure, dict):
                message = str(failure.get("reason") or "Task failed")
            else:
                message = str(failure or "Task failed")
            logger.warning(f"Runway task {provider_task_id}: raw_status={raw_status!r} → failed ({message})")
            return StatusReport(
                status=TaskStatus.FAILED,
                error=TaskError(kind=ErrorKind.PROVIDER_REJECTION, message=message),
            )
        if raw_status in _CANCELLED_STATUSES:
            return StatusReport(
                status=TaskStatus.CANCELLED,
                error=TaskError(kind=ErrorKind.CANCELLED, message="Cancelled by provider"),
            )
        logger.debug(f"Runway task {provider_task_id}: raw_status={raw_status!r} → processing")
        return StatusReport(status=TaskStatus.PROCESSING)

    async def cancel(self, provider_task_id: str) -> None:
        await self.client.cancel_task(provider_task_id)


def build_runway_client() -> RunwayClient:
    if not settings.providers.runway_api_key:
        raise ConfigurationError("Runway API key not configured (providers.runway_api_key)")
    return RunwayClient(
        api_key=settings.providers.runway_api_key,
        base_url=settings.providers.runway_base_url,
        api_version=settings.providers.runway_api_version,
        timeout=settings.providers.request_timeout,
    )
