"""
PEAK CRM — WebSocket Manager
==============================
Manages WebSocket connections for live dashboard push updates.

Usage:
    from dashboard.api.websocket import ws_manager, websocket_endpoint

    # From a router or service:
    await ws_manager.broadcast({"event": "opportunity_stage_changed", "data": {...}})

    # In FastAPI:
    app.add_api_websocket_route("/ws/dashboard", websocket_endpoint)
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect

from dashboard.api.middleware import lookup_user
from scripts.lib.logger import setup_logger

logger = setup_logger("websocket")


class WebSocketManager:
    """Manages active WebSocket connections and broadcasts events."""

    def __init__(self):
        self._connections: Set[WebSocket] = set()
        self._organizations: Dict[WebSocket, Optional[str]] = {}

    async def connect(self, websocket: WebSocket, organization_id: Optional[str] = None):
        """Accept and register a new WebSocket connection."""
        await websocket.accept()
        self._connections.add(websocket)
        self._organizations[websocket] = organization_id
        logger.info(
            "WebSocket connected. Active connections: %d", len(self._connections)
        )

    def disconnect(self, websocket: WebSocket):
        """Remove a disconnected WebSocket."""
        self._connections.discard(websocket)
        self._organizations.pop(websocket, None)
        logger.info(
            "WebSocket disconnected. Active connections: %d", len(self._connections)
        )

    @staticmethod
    def _payload(message: Dict[str, Any]) -> str:
        return json.dumps(
            {**message, "timestamp": datetime.now(timezone.utc).isoformat()},
            default=str,
        )

    async def broadcast(self, message: Dict[str, Any], organization_id: Optional[str] = None):
        """
        Send a message to connected clients, or only to one organization's
        clients when `organization_id` is given.
        """
        if not self._connections:
            return

        payload = self._payload(message)
        disconnected = set()
        for ws in list(self._connections):
            if organization_id and self._organizations.get(ws) != organization_id:
                continue
            try:
                await ws.send_text(payload)
            except Exception:
                disconnected.add(ws)

        for ws in disconnected:
            self.disconnect(ws)

    async def send_to(self, websocket: WebSocket, message: Dict[str, Any]):
        """Send a message to a specific connection."""
        try:
            await websocket.send_text(self._payload(message))
        except Exception:
            self.disconnect(websocket)

    @property
    def connection_count(self) -> int:
        return len(self._connections)


# Singleton manager
ws_manager = WebSocketManager()


async def websocket_endpoint(websocket: WebSocket):
    """
    WebSocket endpoint for dashboard live updates.

    Clients connect to ws://host/ws/dashboard?token=<jwt> and receive:
    - opportunity_stage_changed: after a PEAK stage move
    - meddpicc_score_updated: after MEDDPICC answers are saved
    - lead_converted: after a lead becomes an opportunity
    """
    token = websocket.query_params.get("token")
    user = lookup_user(token) if token else None
    if not user:
        await websocket.close(code=1008)
        return

    await ws_manager.connect(websocket, user["organization_id"])
    await ws_manager.send_to(websocket, {
        "event": "connected",
        "data": {"message": "Connected to PEAK CRM live feed", "user_id": user["id"]},
    })

    try:
        while True:
            data = await websocket.receive_text()
            try:
                msg = json.loads(data)
                if msg.get("type") == "ping":
                    await ws_manager.send_to(websocket, {"event": "pong", "data": {}})
            except json.JSONDecodeError:
                logger.debug("Ignoring non-JSON WebSocket message")
    except WebSocketDisconnect:
        ws_manager.disconnect(websocket)
    except Exception as e:
        logger.warning("WebSocket closed with error: %s", e)
        ws_manager.disconnect(websocket)
