"""Collaborator interfaces and provider client implementations."""

from avatarpipe.services.base import (
    AssetRelocator,
    PassthroughRelocator,
    ProviderClient,
    StatusReport,
    SubmitResult,
)
from avatarpipe.services.registry import ProviderRegistry, build_registry

__all__ = [
    "AssetRelocator",
    "PassthroughRelocator",
    "ProviderClient",
    "ProviderRegistry",
    "StatusReport",
    "SubmitResult",
    "build_registry",
]
