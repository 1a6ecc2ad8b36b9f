from __future__ import annotations

import logging
from typing import Any, Mapping, Union

from trailguard.errors import ProviderError
from trailguard.schemas import PROVIDER_CONFIG_ADAPTER, AppwriteProviderConfig
from trailguard.services.providers.appwrite import AppwriteProvider
from trailguard.services.providers.base import CleanupProvider
from trailguard.services.providers.sql import create_sql_provider

LOGGER = logging.getLogger("trailguard.providers")

AVAILABLE_PROVIDERS = ["appwrite", "postgres", "mysql", "sqlite"]


def parse_provider_config(raw: Union[Mapping[str, Any], Any]) -> Any:
    if isinstance(raw, Mapping):
        try:
            return PROVIDER_CONFIG_ADAPTER.validate_python(dict(raw))
        except ValueError as exc:
            raise ProviderError(f"Invalid provider configuration: {exc}") from exc
    return raw


def create_provider(config: Union[Mapping[str, Any], Any]) -> CleanupProvider:
    parsed = parse_provider_config(config)
    provider_type = getattr(parsed, "type", None)
    if provider_type not in AVAILABLE_PROVIDERS:
        raise ProviderError(f"Unknown provider: {provider_type}. Available: {', '.join(AVAILABLE_PROVIDERS)}")
    LOGGER.debug("Creating %s cleanup provider", provider_type)
    if isinstance(parsed, AppwriteProviderConfig):
        return AppwriteProvider(parsed)
    return create_sql_provider(parsed)

