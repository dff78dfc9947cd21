"""WebSocket endpoint for real-time strategy triggers.

Clients receive every trigger by default. Sending
``{"type": "subscribe", "assets": ["BTC", "ETH"]}`` narrows the stream to
those assets; ``{"type": "unsubscribe"}`` restores the full stream.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import orjson
from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from core.models.strategy import StrategyTrigger

logger = logging.getLogger(__name__)

IDLE_PING_SECONDS = 60.0


def _orjson_dumps(obj: Any) -> str:
    return orjson.dumps(obj, default=str).decode("utf-8")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class WebSocketMessage(BaseModel):
    """Frame sent to clients."""

    type: str  # "strategy_trigger", "subscribed", "pong", "error"
    data: dict[str, Any]
    timestamp: datetime

    def to_json(self) -> str:
        return _orjson_dumps(self.model_dump())


def _frame(msg_type: str, data: Optional[dict] = None) -> str:
    return WebSocketMessage(type=msg_type, data=data or {}, timestamp=_now()).to_json()


class ConnectionManager:
    """Track trigger subscribers and fan triggers out to them.

    Each client maps to its asset filter; ``None`` means every asset.
    """

    def __init__(self):
        self._clients: dict[WebSocket, Optional[frozenset[str]]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._clients[websocket] = None
        logger.info(f"WebSocket connected. Total connections: {len(self._clients)}")

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            self._clients.pop(websocket, None)
        logger.info(f"WebSocket disconnected. Total connections: {len(self._clients)}")

    async def subscribe(self, websocket: WebSocket, assets: Optional[list[str]]) -> list[str]:
        """Set a client's asset filter; an empty or missing list clears it."""
        selected = frozenset(a.upper() for a in assets) if assets else None
        async with self._lock:
            if websocket in self._clients:
                self._clients[websocket] = selected
        return sorted(selected) if selected else []

    def wants(self, websocket: WebSocket, asset: Optional[str]) -> bool:
        selected = self._clients.get(websocket)
        return selected is None or asset is None or asset.upper() in selected

    async def broadcast(self, message: WebSocketMessage, asset: Optional[str] = None) -> int:
        """Send a frame to every client subscribed to ``asset``.

        Clients whose send fails are dropped. Returns the number of clients
        the frame reached.
        """
        if not self._clients:
            return 0

        text = message.to_json()
        sent = 0
        dead = []

        async with self._lock:
            for websocket in list(self._clients):
                if not self.wants(websocket, asset):
                    continue
                try:
                    await websocket.send_text(text)
                    sent += 1
                except Exception as e:
                    logger.warning(f"Dropping WebSocket client after failed send: {e}")
                    dead.append(websocket)

            for websocket in dead:
                self._clients.pop(websocket, None)

        return sent

    async def send_trigger(self, trigger: StrategyTrigger) -> None:
        """Trigger channel consumer: push one trigger to its subscribers."""
        message = WebSocketMessage(type="strategy_trigger", data=trigger.to_dict(), timestamp=_now())
        sent = await self.broadcast(message, asset=trigger.asset)
        logger.debug(f"Trigger {trigger.strategy_id} sent to {sent} client(s)")

    @property
    def connection_count(self) -> int:
        return len(self._clients)


manager = ConnectionManager()


async def websocket_endpoint(websocket: WebSocket):
    """
    Stream strategy triggers to one client.

    Server frames: ``connected``, ``strategy_trigger``, ``subscribed``,
    ``pong``, ``error``, and ``ping`` after 60s of client silence. Every
    frame is ``{"type", "data", "timestamp"}``.
    """
    await manager.connect(websocket)

    try:
        await websocket.send_text(_frame("connected", {"message": "Connected to market-signal engine"}))

        while True:
            try:
                data = await asyncio.wait_for(websocket.receive_text(), timeout=IDLE_PING_SECONDS)
            except asyncio.TimeoutError:
                await websocket.send_text(_frame("ping"))
                continue

            try:
                message = orjson.loads(data)
            except orjson.JSONDecodeError:
                await websocket.send_text(_frame("error", {"message": "Invalid JSON"}))
                continue
            await handle_client_message(websocket, message)

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
    finally:
        await manager.disconnect(websocket)


async def handle_client_message(websocket: WebSocket, message: Any) -> None:
    msg_type = message.get("type", "") if isinstance(message, dict) else ""

    if msg_type == "ping":
        await websocket.send_text(_frame("pong"))
    elif msg_type in ("subscribe", "unsubscribe"):
        assets = message.get("assets") if msg_type == "subscribe" else None
        if assets is not None and not (isinstance(assets, list) and all(isinstance(a, str) for a in assets)):
            await websocket.send_text(_frame("error", {"message": "assets must be a list of strings"}))
            return
        selected = await manager.subscribe(websocket, assets)
        await websocket.send_text(_frame("subscribed", {"assets": selected}))
    else:
        await websocket.send_text(_frame("error", {"message": f"Unknown message type: {msg_type}"}))
