"""Provider registry.

Routes a TaskRecord to the ProviderClient that serves it: the client named
by ``task.provider`` when set, otherwise the default client for the task's
kind. build_registry() wires the configured providers from settings.
"""

import logging
from typing import Iterable, Optional

from avatarpipe.errors import ConfigurationError
from avatarpipe.schemas.tasks import TaskKind, TaskRecord
from avatarpipe.services.base import ProviderClient

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Name- and kind-indexed set of provider clients."""

    def __init__(self, providers: Iterable[ProviderClient] = ()):
        self._by_name: dict[str, ProviderClient] = {}
        self._defaults: dict[TaskKind, ProviderClient] = {}
        for provider in providers:
            self.register(provider)

    def register(self, provider: ProviderClient, *, default: Optional[bool] = None) -> None:
        """Add a client; the first client of a kind becomes its default."""
        self._by_name[provider.name] = provider
        if default or (default is None and provider.kind not in self._defaults):
            self._defaults[provider.kind] = provider
        logger.debug(f"Registered provider {provider.name} for {provider.kind.value} tasks")

    def get(self, name: str) -> ProviderClient:
        provider = self._by_name.get(name)
        if provider is None:
            raise ConfigurationError(f"No provider named {name!r} is configured")
        return provider

    def for_kind(self, kind: TaskKind) -> ProviderClient:
        provider = self._defaults.get(kind)
        if provider is None:
            raise ConfigurationError(f"No provider registered for {kind.value} tasks")
        return provider

    def for_task(self, task: TaskRecord) -> ProviderClient:
        if task.provider:
            return self.get(task.provider)
        return self.for_kind(task.kind)

    def __contains__(self, name: str) -> bool:
        return name in self._by_name

    def __iter__(self):
        return iter(self._by_name.values())

    async def aclose(self) -> None:
        """Close the HTTP clients behind registered providers (shared ones once)."""
        closed: set[int] = set()
        for provider in self._by_name.values():
            client = getattr(provider, "client", None)
            if client is None or id(client) in closed or not hasattr(client, "close"):
                continue
            closed.add(id(client))
            try:
                await client.close()
            except Exception as e:
                logger.warning(f"Closing {provider.name} client failed: {e}")


def build_registry(settings_obj=None) -> ProviderRegistry:
    """Register every provider whose credentials are configured.

    Routing by kind:
    - image  → heygen_image_asset (default), runway_image
    - audio  → volcengine_tts (default), heygen_audio_asset
    - motion → heygen_motion
    - video  → heygen_video (default), seedance_i2v

    Providers with missing credentials are skipped; validate_configuration()
    decides whether that is fatal for a given entry point.
    """
    if settings_obj is None:
        from avatarpipe.config import settings as settings_obj

    providers = settings_obj.providers
    registry = ProviderRegistry()

    if providers.tts_app_id and providers.tts_access_token:
        from avatarpipe.services.volcengine_tts import VolcengineTTSProvider, build_tts_client

        registry.register(VolcengineTTSProvider(build_tts_client()), default=True)

    if providers.heygen_api_key:
        from avatarpipe.services.heygen_adapter import (
            HeyGenAssetProvider,
            HeyGenMotionProvider,
            HeyGenVideoProvider,
        )
        from avatarpipe.services.heygen_client import get_heygen_client

        client = get_heygen_client()
        registry.register(HeyGenAssetProvider(client, TaskKind.IMAGE))
        registry.register(HeyGenAssetProvider(client, TaskKind.AUDIO), default=False)
        registry.register(HeyGenMotionProvider(client))
        registry.register(HeyGenVideoProvider(client), default=True)

    if providers.ark_api_key:
        from avatarpipe.services.seedance_client import SeedanceVideoProvider, build_seedance_client

        registry.register(SeedanceVideoProvider(build_seedance_client()), default=False)

    if providers.runway_api_key:
        from avatarpipe.services.runway_client import RunwayImageProvider, build_runway_client

        registry.register(RunwayImageProvider(build_runway_client()), default=False)

    logger.debug(f"Provider registry: {', '.join(p.name for p in registry) or '(empty)'}")
    return registry
