from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter
from pydantic import BaseModel

from ...services.telemetry_sink import list_recent_events

router = APIRouter(prefix="/telemetry", tags=["telemetry"])


class TelemetryEventOut(BaseModel):
    name: str
    properties: Dict[str, Any]
    actor: Optional[str] = None


class TelemetryRecentResponse(BaseModel):
    events: List[TelemetryEventOut]


@router.get("/events/recent", response_model=TelemetryRecentResponse)
async def recent_events(limit: int = 25) -> TelemetryRecentResponse:
    events = [
        TelemetryEventOut(name=e.name, properties=e.properties, actor=e.actor)
        for e in list_recent_events(limit)
    ]
    return TelemetryRecentResponse(events=events)
