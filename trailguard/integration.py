"""Helpers for applications under test to report the resources they create.

The tracking channels are configured through environment variables set when the
application server is spawned; outside a test run every call is a no-op.
"""
from __future__ import annotations

from typing import Any, Mapping, Optional, Union

from trailguard.services.tracking import report_resource


def track(
    resource: Union[str, Mapping[str, Any]],
    resource_id: Optional[str] = None,
    **metadata: Any,
) -> None:
    """Report a created resource, e.g. ``track("row", row_id, databaseId=db, tableId="posts")``."""
    if isinstance(resource, Mapping):
        payload = dict(resource)
        payload.update(metadata)
    else:
        if resource_id is None:
            raise ValueError("track() requires a resource id")
        payload = dict(metadata)
        payload.update({"type": resource, "id": str(resource_id)})
    report_resource(payload)
