"""VolcEngine speech synthesis and voice selection.

Voice selection maps an explicit voice type, or a style keyword, onto the
synthesis voice catalog. Synthesis submits the text, queries for the audio
when it is not returned inline, and falls back through a list of known
working voices when the chosen one is rejected.
"""

import asyncio
import base64
import logging
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import httpx

from avatarpipe.config import settings
from avatarpipe.errors import ConfigurationError, ProviderRejection, TransientNetworkError
from avatarpipe.schemas.tasks import TaskKind, TaskResult, TaskStatus
from avatarpipe.services.base import ProviderClient, StatusReport, SubmitResult
from avatarpipe.services.http import check_response, transport_errors

logger = logging.getLogger(__name__)

PROVIDER = "volcengine_tts"
SUCCESS_CODE = 3000

# Style keyword -> voice type
VOICE_CATALOG: dict[str, str] = {
    "narrator": "zh_male_jieshuonansheng_mars_bigtts",
    "magnetic": "zh_male_jieshuonansheng_mars_bigtts",
    "sunny": "zh_male_yangguangqingnian_emo_v2_mars_bigtts",
    "youthful": "zh_male_yangguangqingnian_emo_v2_mars_bigtts",
    "beijing": "zh_male_beijingxiaoye_emo_v2_mars_bigtts",
    "gentle": "zh_female_roumeinvyou_emo_v2_mars_bigtts",
    "soft": "zh_female_wenroushunv_mars_bigtts",
    "charming": "zh_female_meilinvyou_emo_v2_mars_bigtts",
    "cheerful": "zh_female_shuangkuaisisi_emo_v2_mars_bigtts",
    "sweet": "zh_female_tianxinxiaomei_emo_v2_mars_bigtts",
    "cool": "zh_female_gaolengyujie_emo_v2_mars_bigtts",
    "boss": "zh_male_aojiaobazong_emo_v2_mars_bigtts",
    "elegant": "zh_male_ruyayichen_emo_v2_mars_bigtts",
    "warm": "zh_female_kefunvsheng_mars_bigtts",
    "educational": "zh_female_yingyujiaoyu_mars_bigtts",
    "intellectual": "zh_female_zhixingnvsheng_mars_bigtts",
    "advertising": "zh_male_chunhui_mars_bigtts",
    "storyteller": "zh_female_shaoergushi_mars_bigtts",
    "suspense": "zh_male_changtianyi_mars_bigtts",
    "english male": "en_male_adam_mars_bigtts",
    "english female": "en_female_sarah_mars_bigtts",
}

# Voices known to synthesize reliably, tried in order after the chosen one
FALLBACK_VOICES: tuple[str, ...] = (
    "zh_male_jieshuonansheng_mars_bigtts",
    "zh_male_yangguangqingnian_emo_v2_mars_bigtts",
    "zh_male_beijingxiaoye_emo_v2_mars_bigtts",
    "zh_female_roumeinvyou_emo_v2_mars_bigtts",
    "zh_female_wenroushunv_mars_bigtts",
)


@dataclass
class VoiceChoice:
    voice_type: str
    reasoning: str
    fallback_used: bool = False


def select_voice(voice_id: Optional[str] = None, style: Optional[str] = None) -> VoiceChoice:
    """Resolve the synthesis voice for a run.

    An explicit ``voice_id`` wins; otherwise ``style`` is matched against
    the catalog (exact key, then substring in either direction); otherwise
    the configured default voice is used.
    """
    if voice_id:
        return VoiceChoice(voice_type=voice_id, reasoning="Explicit voice requested")

    if style:
        key = style.strip().lower()
        if key in VOICE_CATALOG:
            return VoiceChoice(voice_type=VOICE_CATALOG[key], reasoning=f"Matched style {key!r}")
        for name, voice_type in VOICE_CATALOG.items():
            if name in key or key in name:
                return VoiceChoice(voice_type=voice_type, reasoning=f"Closest style match {name!r}")
        logger.info(f"No voice matches style {style!r}, using default")

    return VoiceChoice(
        voice_type=settings.pipeline.default_voice_id,
        reasoning="Default voice",
        fallback_used=bool(style),
    )


class VolcengineTTSClient:
    """Async client for the VolcEngine openspeech TTS endpoint."""

    def __init__(
        self,
        app_id: str,
        access_token: str,
        cluster: str = "volcano_tts",
        base_url: str = "https://openspeech.bytedance.com",
        timeout: float = 120.0,
        query_attempts: int = 20,
        query_interval: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.app_id = app_id
        self.access_token = access_token
        self.cluster = cluster
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.query_attempts = query_attempts
        self.query_interval = query_interval
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers={"Authorization": f"Bearer;{self.access_token}"},
                timeout=httpx.Timeout(self.timeout, connect=30.0),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    def _payload(self, reqid: str, text: str, voice_type: str, operation: str, speed: float, volume: float) -> dict:
        payload: dict[str, Any] = {
            "app": {"appid": self.app_id, "token": self.access_token, "cluster": self.cluster},
            "user": {"uid": f"user_{int(time.time() * 1000):x}"},
            "audio": {"voice_type": voice_type, "encoding": "mp3"},
            "request": {"reqid": reqid, "text": text, "operation": operation},
        }
        if operation == "submit":
            payload["audio"].update({"speed_ratio": speed, "volume_ratio": volume})
            payload["request"].update({"with_frontend": 1, "frontend_type": "unitTson"})
        return payload

    async def _call(self, payload: dict) -> dict[str, Any]:
        async with transport_errors(PROVIDER):
            response = await self.client.post(f"{self.base_url}/api/v1/tts", json=payload)
        logger.debug(f"POST {self.base_url}/api/v1/tts: HTTP {response.status_code}")
        return check_response(response, PROVIDER)

    async def synthesize_once(
        self, text: str, voice_type: str, speed: float = 1.0, volume: float = 1.0
    ) -> tuple[bytes, Optional[float], str]:
        """Synthesize with a single voice.

        Returns:
            (mp3_bytes, duration_seconds, reqid)

        Raises:
            ProviderRejection: The voice or text was refused
            TransientNetworkError: Network failure or query timeout
        """
        reqid = f"req_{uuid.uuid4().hex[:16]}"
        result = await self._call(self._payload(reqid, text, voice_type, "submit", speed, volume))

        if not result.get("data"):
            code = result.get("code")
            if code is not None and code != SUCCESS_CODE:
                raise ProviderRejection(
                    str(result.get("message") or f"TTS error code {code}"), provider=PROVIDER
                )
            result = await self._query(reqid, text, voice_type)

        audio = base64.b64decode(result["data"])
        duration_ms = (result.get("addition") or {}).get("duration")
        duration = float(duration_ms) / 1000 if duration_ms else None
        return audio, duration, reqid

    async def _query(self, reqid: str, text: str, voice_type: str) -> dict[str, Any]:
        for attempt in range(self.query_attempts):
            await asyncio.sleep(self.query_interval)
            try:
                result = await self._call(self._payload(reqid, text, voice_type, "query", 1.0, 1.0))
            except TransientNetworkError as e:
                logger.warning(f"TTS query {reqid} attempt {attempt + 1} failed: {e}")
                continue
            if result.get("data"):
                return result
            logger.debug(f"TTS query {reqid}: {result.get('message')}")
        raise TransientNetworkError("Query timeout - TTS generation took too long", provider=PROVIDER)

    async def synthesize(
        self, text: str, voice_type: str, speed: float = 1.0, volume: float = 1.0
    ) -> tuple[bytes, Optional[float], str, str]:
        """Synthesize, retrying rejected voices with the fallback list.

        Returns:
            (mp3_bytes, duration_seconds, reqid, voice_type_used)
        """
        voices = [voice_type, *(v for v in FALLBACK_VOICES if v != voice_type)]
        last_error: Optional[ProviderRejection] = None
        for voice in voices:
            try:
                audio, duration, reqid = await self.synthesize_once(text, voice, speed, volume)
                if voice != voice_type:
                    logger.warning(f"Voice {voice_type} rejected, synthesized with fallback {voice}")
                return audio, duration, reqid, voice
            except ProviderRejection as e:
                logger.warning(f"TTS voice {voice} rejected: {e.message}")
                last_error = e
        raise ProviderRejection(
            f"All voices failed: {last_error.message if last_error else 'unknown error'}",
            provider=PROVIDER,
        )


class VolcengineTTSProvider(ProviderClient):
    """Speech synthesis as a synchronously-completing audio task.

    Payload keys: ``text``, ``voice_type``, ``output_path``; optional
    ``speed`` and ``volume``.
    """

    kind = TaskKind.AUDIO
    name = PROVIDER

    def __init__(self, client: VolcengineTTSClient):
        self.client = client

    async def submit(self, payload: dict[str, Any]) -> SubmitResult:
        audio, duration, reqid, voice_used = await self.client.synthesize(
            payload["text"],
            payload["voice_type"],
            speed=payload.get("speed", 1.0),
            volume=payload.get("volume", 1.0),
        )
        output_path = Path(payload["output_path"])
        await asyncio.to_thread(output_path.write_bytes, audio)
        logger.info(f"Synthesized {len(audio)} bytes of speech to {output_path}")

        result = TaskResult(
            url=str(output_path),
            local_path=str(output_path),
            duration=duration,
            extra={
                "voice_type": voice_used,
                "fallback_used": voice_used != payload["voice_type"],
                "reqid": reqid,
            },
        )
        return SubmitResult(
            provider_task_id=reqid,
            report=StatusReport(status=TaskStatus.COMPLETED, result=result),
        )

    async def check_status(self, provider_task_id: str) -> StatusReport:
        # Synthesis completes inside submit
        return StatusReport(status=TaskStatus.COMPLETED)


def build_tts_client() -> VolcengineTTSClient:
    if not settings.providers.tts_app_id or not settings.providers.tts_access_token:
        raise ConfigurationError("TTS service not configured - missing credentials")
    return VolcengineTTSClient(
        app_id=settings.providers.tts_app_id,
        access_token=settings.providers.tts_access_token,
        cluster=settings.providers.tts_cluster,
        base_url=settings.providers.tts_base_url,
        timeout=settings.providers.request_timeout,
    )
