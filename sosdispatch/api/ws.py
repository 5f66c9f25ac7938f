"""WebSocket endpoints with JWT auth."""

from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from sosdispatch.core.security import Principal, principal_from_token
from sosdispatch.core.ws_manager import ws_manager
from sosdispatch.services.dispatch_service import DispatchService, alert_payload
from sosdispatch.services.fanout import Subscription

logger = logging.getLogger(__name__)

router = APIRouter()


async def _authenticate_ws(websocket: WebSocket) -> Principal | None:
    """Validate ?token=<jwt>; closes the socket and returns None when it is missing or bad."""
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=4001, reason="Missing token")
        return None
    principal = principal_from_token(token)
    if principal is None:
        await websocket.close(code=4003, reason="Invalid or expired token")
        return None
    return principal


async def _keepalive(websocket: WebSocket) -> None:
    while True:
        data = await websocket.receive_text()
        # Echo pong for heartbeat
        if data == "ping":
            await websocket.send_text('{"event":"pong"}')


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    User channel. Client connects with ?token=<jwt>.
    Server pushes alert.created, alert.claimed, alert.status_changed,
    alert.cancelled and alert.escalated for the user and their topics.
    """
    principal = await _authenticate_ws(websocket)
    if principal is None:
        return

    dispatch: DispatchService = websocket.app.state.dispatch
    db = dispatch.session_factory()
    try:
        topics = dispatch.topics_for(principal, dispatch.get_responder(db, principal.principal_id))
    finally:
        db.close()

    await ws_manager.connect(websocket, principal.principal_id, topics)
    try:
        await _keepalive(websocket)
    except WebSocketDisconnect:
        pass
    finally:
        ws_manager.disconnect(websocket, principal.principal_id)


async def _forward(websocket: WebSocket, sub: Subscription, after_version: int) -> None:
    async for event in sub.events():
        if event.alert_version <= after_version:
            continue
        await websocket.send_text(json.dumps(event.to_message(), default=str))


@router.websocket("/ws/alerts/{alert_id}")
async def alert_stream(websocket: WebSocket, alert_id: str):
    """
    Live view of one alert. The first message is a snapshot
    ({"event": "alert.snapshot", ...}); lifecycle events follow in version order.
    """
    principal = await _authenticate_ws(websocket)
    if principal is None:
        return

    dispatch: DispatchService = websocket.app.state.dispatch
    # Subscribe before reading the snapshot so no event falls between the two
    sub = dispatch.subscribe_alert(alert_id, principal.principal_id)
    try:
        db = dispatch.session_factory()
        try:
            alert = dispatch.store.get(db, alert_id)
            snapshot = alert_payload(alert) if alert is not None else None
            visible = alert is not None and dispatch.can_view(alert, principal)
        finally:
            db.close()
        if snapshot is None:
            await websocket.close(code=4004, reason="Alert not found")
            return
        if not visible:
            await websocket.close(code=4003, reason="Not allowed to view this alert")
            return

        await websocket.accept()
        await websocket.send_text(
            json.dumps(
                {"event": "alert.snapshot", "alert_id": alert_id, "alert_version": snapshot["version"], "data": snapshot},
                default=str,
            )
        )
        tasks = [
            asyncio.create_task(_forward(websocket, sub, snapshot["version"])),
            asyncio.create_task(_keepalive(websocket)),
        ]
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.warning("Alert stream %s for %s ended: %s", alert_id, principal.principal_id, exc)
    finally:
        dispatch.unsubscribe_alert(sub)
