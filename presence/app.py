"""
Geo Presence - reference attendance store (FastAPI).

The external store the station and holder devices talk to: records at most
one attendance per (credential, holder), pushes ``credential_redeemed``
envelopes to observers, and accepts escalated notifications.

Run with:
    uvicorn presence.app:app --host 0.0.0.0 --port 8001
"""

import asyncio
import json
import logging
import time
import traceback
from collections import deque
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, StreamingResponse

from presence import __version__, config
from presence.api.schemas import (
    HealthResponse, NotificationIn, RedemptionRequest, RedemptionResponse,
)
from presence.context import boundary_from_config
from presence.core.logging import configure_logging
from presence.core.utils import to_iso, utc_now
from presence.domain.enums import PushEventType
from presence.domain.models import AttendanceRecord, GeofenceBoundary, PushEvent
from presence.metrics import metrics_snapshot
from presence.redemption.store import InMemoryAttendanceStore
from presence.websocket import ConnectionManager, EventHub

configure_logging()
logger = logging.getLogger(__name__)

# Keep-alive line on idle event streams so proxies do not cut them.
_STREAM_KEEPALIVE_SECONDS = 15.0
_NOTIFICATION_BACKLOG = 200


def create_app(
    store: Optional[InMemoryAttendanceStore] = None,
    boundary: Optional[GeofenceBoundary] = None,
) -> FastAPI:
    boundary = boundary or boundary_from_config()
    store = store or InMemoryAttendanceStore(boundary)
    manager = ConnectionManager()
    hub = EventHub(manager)
    notifications: deque = deque(maxlen=_NOTIFICATION_BACKLOG)

    def _on_record(record: AttendanceRecord, request: RedemptionRequest) -> None:
        event = PushEvent(
            type=PushEventType.CREDENTIAL_REDEEMED,
            payload={
                "credentialId": record.credential_id,
                "holderIdentity": record.holder_identity,
                "distanceMeters": round(record.observed_distance_meters, 1),
                "recordedAt": to_iso(record.recorded_at),
                "boundaryTag": request.credential.get("boundaryTag"),
            },
        )
        hub.publish(event.to_envelope())

    store.subscribe(_on_record)

    # -----------------------------------------------------------------------
    # Lifespan (startup / shutdown)
    # -----------------------------------------------------------------------

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if config.RUN_MODE != "api":
            logger.warning(
                "presence.app started with RUN_MODE=%s. API mode is expected for this process.",
                config.RUN_MODE,
            )
        app.state.started_at = time.monotonic()
        logger.info("Attendance store ready for %s (%.0fm)", boundary.name, boundary.radius_meters)
        yield

    app = FastAPI(
        title="Geo Presence Store",
        version=__version__,
        description="Reference attendance store with push events",
        lifespan=lifespan,
    )
    app.state.store = store
    app.state.hub = hub
    app.state.manager = manager
    app.state.notifications = notifications
    app.state.started_at = time.monotonic()

    # -----------------------------------------------------------------------
    # Global exception handler -- unhandled errors as structured JSON
    # -----------------------------------------------------------------------

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        tb = traceback.format_exc()
        logger.error(
            "Unhandled exception on %s %s: %s\n%s",
            request.method, request.url.path, exc, tb,
        )
        return JSONResponse(
            status_code=500,
            content={
                "detail": str(exc),
                "type": type(exc).__name__,
                "path": request.url.path,
            },
        )

    # -----------------------------------------------------------------------
    # Health
    # -----------------------------------------------------------------------

    @app.get("/api/health", response_model=HealthResponse)
    async def health():
        snap = metrics_snapshot()
        return HealthResponse(
            status="ok",
            version=__version__,
            records=len(store.records),
            event_subscribers=hub.subscriber_count + manager.client_count,
            redemptions_recorded=snap["redemptions_recorded"],
            redemptions_conflicted=snap["redemptions_conflicted"],
            errors_last_hour=snap["errors_last_hour"],
            uptime_seconds=round(time.monotonic() - app.state.started_at, 1),
        )

    # -----------------------------------------------------------------------
    # Attendance
    # -----------------------------------------------------------------------

    @app.post("/api/attendance/redeem", response_model=RedemptionResponse)
    async def redeem(body: RedemptionRequest):
        if not body.credential_id:
            raise HTTPException(status_code=422, detail="credential.id is required")
        resp = await store.record(body)
        out = RedemptionResponse(
            success=resp.success,
            recorded_at=resp.recorded_at,
            conflict=resp.conflict,
            distance_meters=resp.distance_meters,
        )
        if resp.conflict:
            return JSONResponse(status_code=409, content=out.model_dump(by_alias=True, mode="json"))
        return out

    @app.get("/api/attendance")
    async def list_attendance():
        return [r.to_dict() for r in store.records]

    # -----------------------------------------------------------------------
    # Notifications (escalation target)
    # -----------------------------------------------------------------------

    @app.post("/api/notifications", status_code=201)
    async def receive_notification(body: NotificationIn):
        # Stored, not re-broadcast: the sender already has it in its feed.
        notifications.appendleft(body.model_dump(by_alias=True, mode="json"))
        logger.info("Escalated notification %s [%s/%s]", body.id, body.category, body.priority)
        return {"status": "ok", "id": body.id}

    @app.get("/api/notifications")
    async def list_notifications(limit: int = 50):
        return list(notifications)[: max(0, limit)]

    # -----------------------------------------------------------------------
    # Push events
    # -----------------------------------------------------------------------

    @app.post("/api/events", status_code=202)
    async def publish_event(envelope: dict):
        """Publish an operator envelope (system alerts, sign-ins)."""
        event = PushEvent.from_envelope(envelope)
        if event is None:
            raise HTTPException(status_code=400, detail=f"unknown event type {envelope.get('type')!r}")
        delivered = hub.publish(event.to_envelope())
        return {"status": "accepted", "delivered": delivered}

    @app.get("/api/events")
    async def stream_events():
        queue = hub.subscribe()

        async def _lines():
            try:
                while True:
                    try:
                        envelope = await asyncio.wait_for(queue.get(), timeout=_STREAM_KEEPALIVE_SECONDS)
                    except asyncio.TimeoutError:
                        yield "\n"
                        continue
                    yield json.dumps(envelope) + "\n"
            finally:
                hub.unsubscribe(queue)

        return StreamingResponse(_lines(), media_type="application/x-ndjson")

    @app.websocket("/ws")
    async def websocket_events(websocket: WebSocket):
        await manager.connect(websocket)
        try:
            while True:
                await websocket.receive_text()
                await websocket.send_text(json.dumps({"type": "ack", "timestamp": to_iso(utc_now())}))
        except WebSocketDisconnect:
            await manager.disconnect(websocket)
        except Exception:
            await manager.disconnect(websocket)

    return app


app = create_app()


# ---------------------------------------------------------------------------
# Development entry-point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run("presence.app:app", host="0.0.0.0", port=config.PORT)
