"""Seedance image-to-video generation through the VolcEngine Ark API.

Submits ``contents/generations/tasks`` jobs and polls them by id. Ark
fetches the source image itself, so ``image_url`` must be public; the
dispatcher relocates it before submit.
"""

import logging
from typing import Any, Optional

import httpx

from avatarpipe.config import settings
from avatarpipe.errors import ConfigurationError, ErrorKind, TransientNetworkError
from avatarpipe.schemas.tasks import TaskError, TaskKind, TaskResult, TaskStatus
from avatarpipe.services.base import ProviderClient, StatusReport, SubmitResult
from avatarpipe.services.http import check_response, transport_errors

logger = logging.getLogger(__name__)

PROVIDER = "seedance"
I2V_MODEL = "doubao-seedance-1-0-lite-i2v-250428"
T2V_MODEL = "doubao-seedance-1-0-lite-t2v-250428"

_COMPLETED_STATUSES = frozenset({"succeeded"})
_FAILED_STATUSES = frozenset({"failed", "expired"})
_CANCELLED_STATUSES = frozenset({"cancelled", "canceled"})


def build_prompt(prompt: str, duration: int = 5, ratio: str = "adaptive", seed: int = -1) -> str:
    """Append Ark generation flags to the text prompt."""
    text = (
        f"{prompt} --resolution 720p --duration {duration} --ratio {ratio} "
        f"--watermark true --camerafixed false"
    )
    if seed != -1:
        text += f" --seed {seed}"
    return text


class SeedanceClient:
    """Async client for Ark content generation tasks."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://ark.cn-beijing.volces.com/api/v3",
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=httpx.Timeout(self.timeout, connect=30.0),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def create_task(
        self,
        prompt: str,
        image_url: Optional[str] = None,
        duration: int = 5,
        aspect_ratio: str = "16:9",
        seed: int = -1,
    ) -> str:
        """Submit a generation task; returns the Ark task id.

        With an image the i2v model is used and the ratio is forced to
        ``adaptive``; without one the t2v model takes ``aspect_ratio``.
        """
        if image_url:
            model = I2V_MODEL
            content: list[dict[str, Any]] = [
                {"type": "text", "text": build_prompt(prompt, duration, "adaptive", seed)},
                {"type": "image_url", "image_url": {"url": image_url}},
            ]
        else:
            model = T2V_MODEL
            content = [{"type": "text", "text": build_prompt(prompt, duration, aspect_ratio, seed)}]

        logger.info(f"POST {self.base_url}/contents/generations/tasks model={model}")
        async with transport_errors(PROVIDER):
            response = await self.client.post(
                f"{self.base_url}/contents/generations/tasks",
                json={"model": model, "content": content},
            )
        data = check_response(response, PROVIDER)
        if not data.get("id"):
            raise TransientNetworkError("Ark create response carried no task id", provider=PROVIDER)
        return data["id"]

    async def get_task(self, task_id: str) -> dict[str, Any]:
        async with transport_errors(PROVIDER):
            response = await self.client.get(f"{self.base_url}/contents/generations/tasks/{task_id}")
        logger.debug(f"GET task {task_id}: HTTP {response.status_code}")
        return check_response(response, PROVIDER)

    async def delete_task(self, task_id: str) -> None:
        async with transport_errors(PROVIDER):
            response = await self.client.delete(f"{self.base_url}/contents/generations/tasks/{task_id}")
        if response.status_code >= 400:
            logger.warning(f"Ark cancel for {task_id} returned HTTP {response.status_code}")
            return
        logger.info(f"Ark task {task_id} cancelled")


class SeedanceVideoProvider(ProviderClient):
    """Image-to-video generation as a polled video task.

    Payload keys: ``prompt``, ``image_url``; optional ``duration``,
    ``aspect_ratio``, ``seed``.
    """

    kind = TaskKind.VIDEO
    name = "seedance_i2v"
    relocatable_inputs = ("image_url",)

    def __init__(self, client: SeedanceClient):
        self.client = client

    async def submit(self, payload: dict[str, Any]) -> SubmitResult:
        task_id = await self.client.create_task(
            payload.get("prompt", ""),
            image_url=payload.get("image_url"),
            duration=payload.get("duration", 5),
            aspect_ratio=payload.get("aspect_ratio", "16:9"),
            seed=payload.get("seed", -1),
        )
        return SubmitResult(provider_task_id=task_id)

    async def check_status(self, provider_task_id: str) -> StatusReport:
        data = await self.client.get_task(provider_task_id)
        raw_status = str(data.get("status") or "unknown").lower()

        if raw_status in _COMPLETED_STATUSES:
            video_url = (data.get("content") or {}).get("video_url")
            if not video_url:
                raise TransientNetworkError(
                    f"Ark task {provider_task_id} succeeded without a video_url", provider=self.name
                )
            logger.info(f"Ark task {provider_task_id}: raw_status={raw_status!r} → completed")
            return StatusReport(
                status=TaskStatus.COMPLETED,
                result=TaskResult(url=video_url, extra={"seed": data.get("seed")}),
            )
        if raw_status in _FAILED_STATUSES:
            error = data.get("error") or {}
            message = str(error.get("message") or f"Generation {raw_status}") if isinstance(error, dict) else str(error)
            logger.warning(f"Ark task {provider_task_id}: raw_status={raw_status!r} → failed ({message})")
            return StatusReport(
                status=TaskStatus.FAILED,
                error=TaskError(kind=ErrorKind.PROVIDER_REJECTION, message=message),
            )
        if raw_status in _CANCELLED_STATUSES:
            return StatusReport(
                status=TaskStatus.CANCELLED,
                error=TaskError(kind=ErrorKind.CANCELLED, message="Cancelled by provider"),
            )
        logger.debug(f"Ark task {provider_task_id}: raw_status={raw_status!r} → processing")
        return StatusReport(status=TaskStatus.PROCESSING)

    async def cancel(self, provider_task_id: str) -> None:
        await self.client.delete_task(provider_task_id)


def build_seedance_client() -> SeedanceClient:
    if not settings.providers.ark_api_key:
        raise ConfigurationError("Ark API key not configured (providers.ark_api_key)")
    return SeedanceClient(
        api_key=settings.providers.ark_api_key,
        base_url=settings.providers.ark_base_url,
        timeout=settings.providers.request_timeout,
    )
