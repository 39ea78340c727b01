from __future__ import annotations

from registry_prune.base import ImageRecord, ImageRef, RegistryClient
from registry_prune.errors import ConfigurationError
from registry_prune.settings import Settings

from .harbor import HarborClient
from .scaleway import ScalewayClient

__all__ = [
    "ImageRecord",
    "ImageRef",
    "RegistryClient",
    "HarborClient",
    "ScalewayClient",
    "init_registry",
]


def init_registry(settings: Settings) -> tuple[RegistryClient, str]:
    registry_type = settings.registry_type.lower()
    registries: dict[str, type[RegistryClient]] = {
        "scaleway": ScalewayClient,
        "harbor": HarborClient,
    }
    if registry_type not in registries:
        raise ConfigurationError(
            f"REGISTRY_TYPE must be one of {list(registries.keys())}, got '{registry_type}'"
        )
    registry = registries[registry_type].from_settings(settings)
    if isinstance(registry, ScalewayClient):
        location = registry.region
    elif isinstance(registry, HarborClient):
        location = registry.harbor_url
    else:
        location = None
    info = f"{registry_type.upper()}: {location}"
    return registry, info
