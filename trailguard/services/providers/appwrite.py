from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterator, List, Optional

import httpx

from trailguard.constants import BOOKKEEPING_PREFIX
from trailguard.errors import ProviderError
from trailguard.schemas import AppwriteProviderConfig, UntrackedScanResult
from trailguard.services.ledger import TrackedResource
from trailguard.services.providers.base import CleanupHandler, CleanupProvider

LOGGER = logging.getLogger("trailguard.providers.appwrite")

PAGE_SIZE = 100


def _query(method: str, attribute: Optional[str] = None, values: Optional[List[Any]] = None) -> str:
    payload: Dict[str, Any] = {"method": method}
    if attribute is not None:
        payload["attribute"] = attribute
    if values is not None:
        payload["values"] = values
    return json.dumps(payload)


def _require(resource: TrackedResource, *names: str) -> List[str]:
    values = [resource.get(name) for name in names]
    if not all(values):
        raise ProviderError(f"Missing {' or '.join(names)} for {resource.type} {resource.id}")
    return [str(value) for value in values]


class AppwriteProvider(CleanupProvider):
    """Delete Appwrite rows, files, teams, memberships and users through the REST API."""

    name = "appwrite"
    TYPE_MAPPINGS = {
        "row": "appwrite.delete_row",
        "file": "appwrite.delete_file",
        "team": "appwrite.delete_team",
        "user": "appwrite.delete_user",
        "membership": "appwrite.delete_membership",
    }

    def __init__(self, config: AppwriteProviderConfig, transport: Optional[httpx.BaseTransport] = None) -> None:
        if not config.api_key:
            raise ProviderError("Appwrite provider requires an API key")
        self.config = config
        self._client = httpx.Client(
            base_url=config.endpoint.rstrip("/"),
            headers={
                "X-Appwrite-Project": config.project_id,
                "X-Appwrite-Key": config.api_key,
                "Content-Type": "application/json",
            },
            timeout=30.0,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def _delete(self, path: str) -> None:
        response = self._client.delete(path)
        response.raise_for_status()

    def _get(self, path: str, queries: Optional[List[str]] = None) -> Dict[str, Any]:
        params = [("queries[]", query) for query in queries or []]
        response = self._client.get(path, params=params)
        response.raise_for_status()
        return response.json()

    # Handlers ---------------------------------------------------------------------------
    def delete_row(self, resource: TrackedResource) -> None:
        database_id, table_id = _require(resource, "databaseId", "tableId")
        self._delete(f"/tablesdb/{database_id}/tables/{table_id}/rows/{resource.id}")

    def delete_file(self, resource: TrackedResource) -> None:
        (bucket_id,) = _require(resource, "bucketId")
        self._delete(f"/storage/buckets/{bucket_id}/files/{resource.id}")

    def delete_team(self, resource: TrackedResource) -> None:
        self._delete(f"/teams/{resource.id}")

    def delete_user(self, resource: TrackedResource) -> None:
        self._delete(f"/users/{resource.id}")

    def delete_membership(self, resource: TrackedResource) -> None:
        (team_id,) = _require(resource, "teamId")
        self._delete(f"/teams/{team_id}/memberships/{resource.id}")

    def methods(self) -> Dict[str, CleanupHandler]:
        return {
            "delete_row": self.delete_row,
            "delete_file": self.delete_file,
            "delete_team": self.delete_team,
            "delete_user": self.delete_user,
            "delete_membership": self.delete_membership,
        }

    # Sweep ------------------------------------------------------------------------------
    def _paginate(self, path: str, key: str, since: str) -> Iterator[Dict[str, Any]]:
        cursor: Optional[str] = None
        while True:
            queries = [
                _query("greaterThanEqual", "$createdAt", [since]),
                _query("limit", values=[PAGE_SIZE]),
            ]
            if cursor:
                queries.append(_query("cursorAfter", values=[cursor]))
            items = self._get(path, queries).get(key) or []
            yield from items
            if len(items) < PAGE_SIZE:
                return
            cursor = items[-1]["$id"]

    def cleanup_untracked(
        self,
        *,
        test_start_time: str,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        skip_user: bool = False,
    ) -> UntrackedScanResult:
        result = UntrackedScanResult()
        LOGGER.info(
            "Scanning for untracked resources (session %s, since %s, user %s)",
            session_id or "unknown",
            test_start_time,
            user_id or "none",
        )
        try:
            self._sweep_tables(result, test_start_time, user_id)
            self._sweep_buckets(result, test_start_time, user_id)
        except httpx.HTTPError as exc:
            LOGGER.error("Untracked scan aborted: %s", exc)
            result.failed.append("scan:error")

        if user_id and not skip_user:
            try:
                self._delete(f"/users/{user_id}")
                result.deleted.append(f"user:{user_id}")
            except httpx.HTTPError as exc:
                LOGGER.warning("Failed to delete user %s: %s", user_id, exc)
                result.failed.append(f"user:{user_id}")

        result.success = not result.failed
        LOGGER.info(
            "Untracked scan complete. Scanned: %d, Deleted: %d, Failed: %d",
            result.scanned,
            len(result.deleted),
            len(result.failed),
        )
        return result

    def _sweep_tables(self, result: UntrackedScanResult, since: str, user_id: Optional[str]) -> None:
        for database in self._get("/tablesdb").get("databases") or []:
            database_id = database["$id"]
            for table in self._get(f"/tablesdb/{database_id}/tables").get("tables") or []:
                table_id = table["$id"]
                if str(table.get("name", "")).startswith(BOOKKEEPING_PREFIX):
                    LOGGER.debug("Skipping bookkeeping table %s", table.get("name"))
                    continue
                result.scanned += 1
                path = f"/tablesdb/{database_id}/tables/{table_id}/rows"
                try:
                    for row in self._paginate(path, "rows", since):
                        if not user_id or user_id not in json.dumps(row):
                            continue
                        label = f"row:{database_id}/{table_id}/{row['$id']}"
                        try:
                            self._delete(f"{path}/{row['$id']}")
                            result.deleted.append(label)
                        except httpx.HTTPError as exc:
                            LOGGER.warning("Failed to delete %s: %s", label, exc)
                            result.failed.append(label)
                except httpx.HTTPError as exc:
                    LOGGER.warning("Error scanning table %s: %s", table.get("name", table_id), exc)
                    result.failed.append(f"table:{database_id}/{table_id}")

    def _sweep_buckets(self, result: UntrackedScanResult, since: str, user_id: Optional[str]) -> None:
        for bucket in self._get("/storage/buckets").get("buckets") or []:
            bucket_id = bucket["$id"]
            result.scanned += 1
            path = f"/storage/buckets/{bucket_id}/files"
            try:
                for item in self._paginate(path, "files", since):
                    owned = user_id and (item.get("$createdBy") == user_id or user_id in str(item.get("name", "")))
                    if not owned:
                        continue
                    label = f"file:{bucket_id}/{item['$id']}"
                    try:
                        self._delete(f"{path}/{item['$id']}")
                        result.deleted.append(label)
                    except httpx.HTTPError as exc:
                        LOGGER.warning("Failed to delete %s: %s", label, exc)
                        result.failed.append(label)
            except httpx.HTTPError as exc:
                LOGGER.warning("Error scanning bucket %s: %s", bucket.get("name", bucket_id), exc)
                result.failed.append(f"bucket:{bucket_id}")
