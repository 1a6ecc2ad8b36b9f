from __future__ import annotations

import json
from typing import Any, Dict

from fastapi import APIRouter, HTTPException, Request

from trailguard.services.tracking import TrackingStore

router = APIRouter(tags=["tracking"])


def _store(request: Request) -> TrackingStore:
    return request.app.state.store


@router.post("/track")
async def track_resource(request: Request) -> Dict[str, Any]:
    raw = await request.body()
    try:
        payload = json.loads(raw or b"")
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="Invalid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON")

    session_id = payload.get("sessionId")
    resource_type = payload.get("type")
    resource_id = payload.get("id")
    if not session_id or not resource_type or resource_id in (None, ""):
        raise HTTPException(status_code=400, detail="Missing required fields: sessionId, type, id")

    _store(request).add(str(session_id), payload)
    return {"success": True}


@router.get("/resources/{session_id}")
async def list_resources(session_id: str, request: Request) -> Dict[str, Any]:
    return {"resources": _store(request).get_resources(session_id)}
