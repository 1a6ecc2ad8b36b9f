from __future__ import annotations

from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from trailguard.routes import tracking
from trailguard.services.tracking import TrackingStore


def create_app(store: Optional[TrackingStore] = None) -> FastAPI:
    """Build the tracking API bound to ``store`` (a fresh store when omitted)."""
    app = FastAPI(title="Trailguard Resource Tracking")
    app.state.store = store or TrackingStore()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )
    app.include_router(tracking.router)
    return app
