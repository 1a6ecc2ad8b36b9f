from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from pydantic import ValidationError
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from trailguard.constants import (
    ENV_APPWRITE_API_KEY,
    ENV_MYSQL_URL,
    ENV_POSTGRES_URL,
    FAILED_CLEANUP_DIR,
)
from trailguard.errors import ProviderError
from trailguard.schemas import PROVIDER_CONFIG_ADAPTER, CleanupConfig, CleanupResult, FailedCleanupRecord
from trailguard.services.cleanup import execute_cleanup
from trailguard.services.handlers import load_cleanup_handlers
from trailguard.services.ledger import TrackedResource, utcnow

LOGGER = logging.getLogger("trailguard.persistence")

CREDENTIAL_ENV = {
    "appwrite": ("api_key", ENV_APPWRITE_API_KEY),
    "postgres": ("url", ENV_POSTGRES_URL),
    "mysql": ("url", ENV_MYSQL_URL),
}


class FailedCleanupStore:
    """One JSON record per session listing the resources a cleanup could not delete."""

    def __init__(self, root: Optional[Path] = None) -> None:
        self.root = Path(root or Path.cwd())
        self.directory = self.root / FAILED_CLEANUP_DIR

    def path_for(self, session_id: str) -> Path:
        return self.directory / f"{session_id}.json"

    def save(self, record: FailedCleanupRecord) -> Optional[Path]:
        path = self.path_for(record.session_id)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(".json.tmp")
            tmp_path.write_text(json.dumps(record.model_dump(), indent=2), encoding="utf-8")
            tmp_path.replace(path)
        except OSError as exc:
            LOGGER.warning("Could not save failed cleanup for session %s: %s", record.session_id, exc)
            return None
        LOGGER.info("Saved failed cleanup to %s", path)
        return path

    def load(self, session_id: str) -> Optional[FailedCleanupRecord]:
        path = self.path_for(session_id)
        if not path.exists():
            return None
        return FailedCleanupRecord.model_validate(json.loads(path.read_text(encoding="utf-8")))

    def list(self) -> List[FailedCleanupRecord]:
        if not self.directory.is_dir():
            return []
        records: List[FailedCleanupRecord] = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                records.append(FailedCleanupRecord.model_validate(json.loads(path.read_text(encoding="utf-8"))))
            except (OSError, json.JSONDecodeError, ValidationError) as exc:
                LOGGER.warning("Skipping unreadable failed cleanup record %s: %s", path, exc)
        return records

    def remove(self, session_id: str) -> None:
        path = self.path_for(session_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        LOGGER.info("Removed failed cleanup file: %s", path.name)


def provider_config_with_credentials(
    identity: Mapping[str, Any],
    *,
    cleanup_config: Optional[CleanupConfig] = None,
    env: Optional[Mapping[str, str]] = None,
) -> Any:
    """Rebuild a provider config from a stored identity plus freshly loaded secrets."""
    env = os.environ if env is None else env
    provider_type = identity.get("type")
    if not provider_type:
        raise ProviderError("Failed cleanup record has no provider type")
    data: Dict[str, Any] = dict(identity)

    configured = cleanup_config.provider if cleanup_config is not None else None
    if configured is not None and configured.type == provider_type:
        for name in configured.SECRET_FIELDS:
            data[name] = getattr(configured, name)
    elif provider_type in CREDENTIAL_ENV:
        field_name, env_name = CREDENTIAL_ENV[provider_type]
        secret = env.get(env_name)
        if not secret:
            raise ProviderError(f"Set {env_name} to retry {provider_type} cleanups")
        data[field_name] = secret

    if provider_type in {"postgres", "mysql"} and identity.get("database"):
        try:
            database = make_url(data["url"]).database
        except ArgumentError as exc:
            raise ProviderError(f"Invalid {provider_type} connection URL: {exc}") from exc
        if database != identity["database"]:
            raise ProviderError(
                f"Credentials point at database '{database}' but the record was created against '{identity['database']}'"
            )
    return PROVIDER_CONFIG_ADAPTER.validate_python(data)


def retry_failed_cleanup(
    record: FailedCleanupRecord,
    *,
    store: FailedCleanupStore,
    cleanup_config: Optional[CleanupConfig] = None,
    env: Optional[Mapping[str, str]] = None,
) -> CleanupResult:
    provider_config = None
    if record.provider_config:
        provider_config = provider_config_with_credentials(record.provider_config, cleanup_config=cleanup_config, env=env)
    if cleanup_config is not None:
        config = cleanup_config.model_copy(update={"provider": provider_config})
    else:
        config = CleanupConfig(provider=provider_config)

    loaded = load_cleanup_handlers(config, store.root)
    try:
        resources = [TrackedResource.from_dict(item) for item in record.resources]
        result = execute_cleanup(
            resources,
            loaded.registry,
            loaded.type_mappings,
            session_id=record.session_id,
            parallel=config.parallel,
            retries=config.retries,
            provider=loaded.provider,
            persist=False,
        )
    finally:
        if loaded.provider is not None:
            loaded.provider.close()

    if result.success:
        store.remove(record.session_id)
        return result

    remaining = set(result.failed)
    store.save(
        record.model_copy(
            update={
                "timestamp": utcnow(),
                "resources": [resource.to_dict() for resource in resources if resource.label in remaining],
                "errors": list(result.errors),
            }
        )
    )
    return result


def _label(payload: Mapping[str, Any]) -> str:
    return f"{payload.get('type')}:{payload.get('id')}"


def retry_failed_cleanups(
    root: Optional[Path] = None,
    *,
    cleanup_config: Optional[CleanupConfig] = None,
    env: Optional[Mapping[str, str]] = None,
) -> Dict[str, CleanupResult]:
    """Retry every persisted failed cleanup and report the outcome per session."""
    store = FailedCleanupStore(root)
    outcomes: Dict[str, CleanupResult] = {}
    records = store.list()
    if not records:
        LOGGER.info("No failed cleanups to retry")
        return outcomes

    for record in records:
        LOGGER.info("Retrying cleanup for session %s (%d resource(s))", record.session_id, len(record.resources))
        try:
            outcomes[record.session_id] = retry_failed_cleanup(
                record, store=store, cleanup_config=cleanup_config, env=env
            )
        except (ProviderError, ArgumentError, ValidationError, ValueError) as exc:
            LOGGER.error("Could not retry cleanup for session %s: %s", record.session_id, exc)
            outcomes[record.session_id] = CleanupResult(
                success=False,
                failed=[_label(item) for item in record.resources],
                errors=[str(exc)],
            )
    return outcomes
