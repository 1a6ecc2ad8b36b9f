from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Pattern, Tuple, Union
from urllib.parse import urlparse

from playwright.sync_api import Error as PlaywrightError

from trailguard.services.ledger import ExecutionContext

LOGGER = logging.getLogger("trailguard.network_observer")

_CREATE = "create"
_UPDATE = "update"
_DELETE = "delete"


@dataclass(frozen=True)
class EndpointRule:
    action: str
    methods: Tuple[str, ...]
    pattern: Pattern[str]
    resource_type: str
    metadata: Callable[["re.Match[str]"], Dict[str, str]]


def _no_metadata(match: "re.Match[str]") -> Dict[str, str]:
    return {}


def _row_metadata(match: "re.Match[str]") -> Dict[str, str]:
    return {"databaseId": match.group("database"), "tableId": match.group("table")}


def _file_metadata(match: "re.Match[str]") -> Dict[str, str]:
    return {"bucketId": match.group("bucket")}


def _membership_metadata(match: "re.Match[str]") -> Dict[str, str]:
    return {"teamId": match.group("team")}


_ROWS = r"/v1/tablesdb/(?P<database>[^/]+)/tables/(?P<table>[^/]+)/rows"
_DOCUMENTS = r"/v1/databases/(?P<database>[^/]+)/collections/(?P<table>[^/]+)/documents"
_FILES = r"/v1/storage/buckets/(?P<bucket>[^/]+)/files"
_TEAMS = r"/v1/teams"
_MEMBERSHIPS = r"/v1/teams/(?P<team>[^/]+)/memberships"
_ID = r"/(?P<id>[^/]+)"


def _rule(action: str, methods: Tuple[str, ...], path: str, resource_type: str, metadata=_no_metadata) -> EndpointRule:
    return EndpointRule(action, methods, re.compile(path + r"/?$"), resource_type, metadata)


APPWRITE_RULES: List[EndpointRule] = [
    _rule(_CREATE, ("POST",), r"/v1/account", "user"),
    _rule(_CREATE, ("POST",), _ROWS, "row", _row_metadata),
    _rule(_CREATE, ("POST",), _DOCUMENTS, "row", _row_metadata),
    _rule(_CREATE, ("POST",), _FILES, "file", _file_metadata),
    _rule(_CREATE, ("POST",), _TEAMS, "team"),
    _rule(_CREATE, ("POST",), _MEMBERSHIPS, "membership", _membership_metadata),
    _rule(_UPDATE, ("PATCH", "PUT"), _ROWS + _ID, "row", _row_metadata),
    _rule(_UPDATE, ("PATCH", "PUT"), _DOCUMENTS + _ID, "row", _row_metadata),
    _rule(_UPDATE, ("PUT",), _FILES + _ID, "file", _file_metadata),
    _rule(_UPDATE, ("PUT",), _TEAMS + _ID, "team"),
    _rule(_DELETE, ("DELETE",), _ROWS + _ID, "row", _row_metadata),
    _rule(_DELETE, ("DELETE",), _DOCUMENTS + _ID, "row", _row_metadata),
    _rule(_DELETE, ("DELETE",), _FILES + _ID, "file", _file_metadata),
    _rule(_DELETE, ("DELETE",), _MEMBERSHIPS + _ID, "membership", _membership_metadata),
    _rule(_DELETE, ("DELETE",), _TEAMS + _ID, "team"),
]

PROVIDER_RULES: Dict[str, List[EndpointRule]] = {"appwrite": APPWRITE_RULES}


def _parse_body(body: Union[str, bytes, Dict[str, Any], None]) -> Optional[Dict[str, Any]]:
    if isinstance(body, dict):
        return body
    if body is None:
        return None
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError, TypeError):
        return None
    return payload if isinstance(payload, dict) else None


class NetworkObserver:
    """Ledger backend resources by watching the browser's API responses."""

    def __init__(self, context: ExecutionContext, provider: str = "appwrite") -> None:
        if provider not in PROVIDER_RULES:
            raise ValueError(f"No network rules for provider '{provider}'")
        self.context = context
        self.provider = provider
        self._rules = PROVIDER_RULES[provider]

    def match(self, method: str, url: str) -> Optional[Tuple[EndpointRule, "re.Match[str]"]]:
        path = urlparse(url).path
        method = method.upper()
        for rule in self._rules:
            if method not in rule.methods:
                continue
            found = rule.pattern.search(path)
            if found:
                return rule, found
        return None

    def handle_response(
        self,
        method: str,
        url: str,
        status: int,
        body: Union[str, bytes, Dict[str, Any], None] = None,
    ) -> bool:
        """Apply one response to the ledger; returns True when the ledger changed."""
        if status < 200 or status >= 300:
            return False
        matched = self.match(method, url)
        if matched is None:
            return False
        rule, found = matched
        metadata = rule.metadata(found)
        ledger = self.context.ledger

        if rule.action == _DELETE:
            changed = ledger.mark_deleted(rule.resource_type, found.group("id"))
            if changed:
                LOGGER.debug("Marked %s:%s deleted", rule.resource_type, found.group("id"))
            return changed

        payload = _parse_body(body)
        if payload is None:
            return False

        if rule.action == _CREATE:
            resource_id = payload.get("$id")
            if not resource_id:
                return False
            if rule.resource_type == "user":
                self.context.set_identity(str(resource_id), payload.get("email"))
            added = ledger.record(rule.resource_type, str(resource_id), **metadata)
            if added:
                LOGGER.debug("Tracked %s:%s from %s", rule.resource_type, resource_id, url)
            return added

        resource_id = found.group("id")
        if ledger.find(rule.resource_type, resource_id) is not None:
            return False
        user_id = self.context.user_id
        if not user_id or user_id not in json.dumps(payload):
            return False
        LOGGER.debug("Tracked updated %s:%s owned by %s", rule.resource_type, resource_id, user_id)
        return ledger.record(rule.resource_type, resource_id, **metadata)

    def _on_response(self, response: Any) -> None:
        method = response.request.method
        if self.match(method, response.url) is None:
            return
        body: Optional[str] = None
        if method.upper() != "DELETE":
            try:
                body = response.text()
            except PlaywrightError as exc:
                LOGGER.debug("Could not read response body for %s: %s", response.url, exc)
                return
        self.handle_response(method, response.url, response.status, body)

    def install(self, page: Any) -> None:
        page.on("response", self._on_response)
