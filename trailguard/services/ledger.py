from __future__ import annotations

import logging
import re
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

LOGGER = logging.getLogger("trailguard.ledger")

_RESERVED_KEYS = {"type", "id", "createdAt", "deleted", "sessionId"}
_PLACEHOLDER = re.compile(r"\{\{(\w+)(?::([^}]+))?\}\}")


def utcnow() -> str:
    """Return timezone-aware ISO timestamp."""
    return datetime.now(tz=timezone.utc).isoformat()


@dataclass
class TrackedResource:
    type: str
    id: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=utcnow)
    deleted: bool = False

    @property
    def key(self) -> Tuple[str, str]:
        return (self.type, self.id)

    @property
    def label(self) -> str:
        return f"{self.type}:{self.id}"

    def get(self, name: str, default: Any = None) -> Any:
        return self.metadata.get(name, default)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self.metadata)
        payload.update(
            {
                "type": self.type,
                "id": self.id,
                "createdAt": self.created_at,
            }
        )
        if self.deleted:
            payload["deleted"] = True
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "TrackedResource":
        resource_type = payload.get("type")
        resource_id = payload.get("id")
        if not resource_type or resource_id in (None, ""):
            raise ValueError("Tracked resource requires 'type' and 'id'")
        metadata = {str(k): v for k, v in payload.items() if k not in _RESERVED_KEYS}
        return cls(
            type=str(resource_type),
            id=str(resource_id),
            metadata=metadata,
            created_at=str(payload.get("createdAt") or utcnow()),
            deleted=bool(payload.get("deleted", False)),
        )


class ResourceLedger:
    """Ordered list of resources observed or reported during one run."""

    def __init__(self, resources: Optional[Iterable[TrackedResource]] = None) -> None:
        self._lock = threading.Lock()
        self._resources: List[TrackedResource] = []
        for resource in resources or []:
            self.add(resource)

    def __iter__(self) -> Iterator[TrackedResource]:
        return iter(self.snapshot())

    def __len__(self) -> int:
        return len(self._resources)

    def snapshot(self) -> List[TrackedResource]:
        with self._lock:
            return list(self._resources)

    def find(self, resource_type: str, resource_id: str) -> Optional[TrackedResource]:
        with self._lock:
            for resource in self._resources:
                if resource.type == resource_type and resource.id == resource_id:
                    return resource
        return None

    def add(self, resource: TrackedResource) -> bool:
        """Append ``resource`` unless its (type, id) is already present.

        Metadata reported later fills keys the first report did not carry.
        """
        with self._lock:
            for existing in self._resources:
                if existing.key == resource.key:
                    for name, value in resource.metadata.items():
                        existing.metadata.setdefault(name, value)
                    existing.deleted = existing.deleted or resource.deleted
                    return False
            self._resources.append(resource)
            return True

    def record(self, resource_type: str, resource_id: str, **metadata: Any) -> bool:
        return self.add(TrackedResource(type=resource_type, id=str(resource_id), metadata=metadata))

    def merge(self, payloads: Iterable[Mapping[str, Any]]) -> int:
        added = 0
        for payload in payloads:
            try:
                resource = TrackedResource.from_dict(payload)
            except ValueError as exc:
                LOGGER.warning("Ignoring malformed tracked resource %r: %s", payload, exc)
                continue
            if self.add(resource):
                added += 1
        return added

    def mark_deleted(self, resource_type: str, resource_id: str) -> bool:
        resource = self.find(resource_type, resource_id)
        if resource is None:
            return False
        resource.deleted = True
        return True

    def pending(self) -> List[TrackedResource]:
        return [resource for resource in self.snapshot() if not resource.deleted]


@dataclass
class ExecutionContext:
    """State shared by every workflow node and viewport pass of one pipeline run."""

    variables: Dict[str, str] = field(default_factory=dict)
    ledger: ResourceLedger = field(default_factory=ResourceLedger)
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    last_email: Optional[Dict[str, Any]] = None

    def set_identity(self, user_id: Optional[str], user_email: Optional[str] = None) -> None:
        if user_id:
            self.user_id = user_id
        if user_email:
            self.user_email = user_email

    def apply_variables(self, overrides: Mapping[str, str]) -> None:
        for name, value in overrides.items():
            self.variables[name] = interpolate_variables(value, self.variables)


def interpolate_variables(value: str, variables: Mapping[str, str]) -> str:
    def _replace(match: "re.Match[str]") -> str:
        name = match.group(1)
        if name == "uuid":
            return uuid.uuid4().hex[:8]
        if name in variables:
            return str(variables[name])
        return match.group(0)

    return _PLACEHOLDER.sub(_replace, value)
