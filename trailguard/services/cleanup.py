from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Any, Dict, Optional, Sequence, Tuple

from trailguard.schemas import CleanupResult, FailedCleanupRecord, UntrackedScanResult
from trailguard.services.handlers import HandlerRegistry, resolve_handler
from trailguard.services.ledger import TrackedResource, utcnow
from trailguard.services.providers.base import CleanupHandler, CleanupProvider

if TYPE_CHECKING:
    from trailguard.services.persistence import FailedCleanupStore

LOGGER = logging.getLogger("trailguard.cleanup")

MAX_PARALLEL_DELETES = 8


def _delete_with_retries(handler: CleanupHandler, resource: TrackedResource, retries: int) -> Optional[str]:
    """Run ``handler`` up to ``1 + retries`` times; returns the last error or None."""
    last_error: Optional[str] = None
    for attempt in range(retries + 1):
        try:
            handler(resource)
            return None
        except Exception as exc:
            last_error = str(exc) or type(exc).__name__
            LOGGER.debug("Attempt %d to delete %s failed: %s", attempt + 1, resource.label, last_error)
    return last_error


def _clean_one(
    resource: TrackedResource,
    registry: HandlerRegistry,
    type_mappings: Dict[str, str],
    retries: int,
) -> Tuple[TrackedResource, Optional[str]]:
    handler = resolve_handler(resource, registry, type_mappings)
    if handler is None:
        LOGGER.warning("No cleanup handler for resource type '%s' (%s)", resource.type, resource.label)
        return resource, f"unmapped type '{resource.type}'"
    return resource, _delete_with_retries(handler, resource, retries)


def execute_cleanup(
    resources: Sequence[TrackedResource],
    registry: HandlerRegistry,
    type_mappings: Dict[str, str],
    *,
    session_id: str,
    parallel: bool = False,
    retries: int = 3,
    provider: Optional[CleanupProvider] = None,
    provider_identity: Optional[Dict[str, Any]] = None,
    scan_untracked: bool = False,
    test_start_time: Optional[str] = None,
    user_id: Optional[str] = None,
    failed_store: Optional["FailedCleanupStore"] = None,
    persist: bool = True,
) -> CleanupResult:
    """Delete every pending resource and report what could not be removed.

    Resources already marked deleted are skipped. The run succeeds exactly when no
    resource is left in the failed list; otherwise the leftovers are persisted so a
    later retry can finish the job.
    """
    pending = [resource for resource in resources if not resource.deleted]
    result = CleanupResult(success=True)
    LOGGER.info("Cleaning up %d resource(s) for session %s", len(pending), session_id)

    try:
        if parallel and len(pending) > 1:
            with ThreadPoolExecutor(max_workers=min(MAX_PARALLEL_DELETES, len(pending))) as pool:
                outcomes = list(
                    pool.map(lambda item: _clean_one(item, registry, type_mappings, retries), pending)
                )
        else:
            outcomes = [_clean_one(item, registry, type_mappings, retries) for item in pending]
        for resource, error in outcomes:
            if error is None:
                result.deleted.append(resource.label)
            else:
                result.failed.append(resource.label)
                result.errors.append(f"{resource.label}: {error}")
    except Exception as exc:
        LOGGER.exception("Cleanup failed for session %s", session_id)
        result.deleted = []
        result.failed = [resource.label for resource in pending]
        result.errors = [str(exc)]

    result.success = not result.failed

    if scan_untracked and provider is not None and provider.supports_untracked and test_start_time:
        skip_user = bool(user_id) and f"user:{user_id}" in result.deleted
        try:
            result.untracked = provider.cleanup_untracked(
                test_start_time=test_start_time,
                user_id=user_id,
                session_id=session_id,
                skip_user=skip_user,
            )
        except Exception as exc:
            LOGGER.error("Untracked resource scan failed: %s", exc)
            result.untracked = UntrackedScanResult(success=False, failed=["scan:error"])

    saved_to = None
    if result.failed and persist and failed_store is not None:
        failed_labels = set(result.failed)
        record = FailedCleanupRecord(
            session_id=session_id,
            timestamp=utcnow(),
            resources=[resource.to_dict() for resource in pending if resource.label in failed_labels],
            provider_config=dict(provider_identity or {}),
            errors=list(result.errors),
        )
        saved_to = failed_store.save(record)

    _log_summary(result, len(pending), saved_to)
    return result


def _log_summary(result: CleanupResult, total: int, saved_to: Any) -> None:
    LOGGER.info("Cleanup: deleted %d of %d resource(s)", len(result.deleted), total)
    if not result.failed:
        return
    LOGGER.warning("Not cleaned up (%d): %s", len(result.failed), ", ".join(result.failed))
    for error in result.errors:
        LOGGER.warning("  %s", error)
    if saved_to is not None:
        LOGGER.warning("Saved to %s; run retry_failed_cleanups() to try again", saved_to)
