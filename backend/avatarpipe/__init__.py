"""Avatar Pipeline - orchestration core for multi-stage avatar video generation.

This module provides startup validation so entry points fail fast, before
any task is created, when provider credentials are missing.
Call validate_configuration() during application startup.
"""

import logging
from typing import Iterable

__version__ = "0.1.0"

logger = logging.getLogger(__name__)

# Provider group -> settings fields it needs
REQUIRED_CREDENTIALS: dict[str, tuple[str, ...]] = {
    "heygen": ("heygen_api_key",),
    "tts": ("tts_app_id", "tts_access_token"),
    "seedance": ("ark_api_key",),
    "runway": ("runway_api_key",),
}


def validate_configuration(require: Iterable[str] = ("heygen", "tts")) -> None:
    """Validate that credentials for the required provider groups are configured.

    Args:
        require: Provider groups the caller is about to use
            ("heygen", "tts", "seedance", "runway")

    Raises:
        ConfigurationError: Naming every missing setting
    """
    from avatarpipe.config import settings
    from avatarpipe.errors import ConfigurationError

    missing = []
    for group in require:
        for field_name in REQUIRED_CREDENTIALS.get(group, ()):
            if not getattr(settings.providers, field_name):
                missing.append(f"providers.{field_name}")
    if missing:
        raise ConfigurationError(
            "Missing provider configuration: " + ", ".join(missing) + "\n"
            "Set them in config.yaml or as AVATARPIPE_PROVIDERS__<FIELD> environment variables"
        )
    logger.info(f"Provider configuration validated for: {', '.join(require) or '(none)'}")
