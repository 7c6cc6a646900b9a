"""Live event stream over WebSocket, with catch-up replay and keepalive."""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Iterable

from fastapi import APIRouter, Depends
from starlette.websockets import WebSocket, WebSocketDisconnect

from netplane.api.deps import get_event_bus
from netplane.events.bus import EventBus

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])

PING_INTERVAL_SECONDS = 30
MAX_MISSED_PONGS = 3

# Raised by Starlette when sending on a socket that is already closed
_SEND_ERRORS = (WebSocketDisconnect, RuntimeError, OSError)


def _event_frame(event: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": "event",
        "seq": event["seq"],
        "event_type": event["event_type"],
        "payload": event["payload"],
    }


def parse_event_types(raw: str | None) -> frozenset[str] | None:
    """``"a,b"`` -> ``{"a", "b"}``; a missing or blank value means every type."""
    if not raw:
        return None
    types = frozenset(t.strip() for t in raw.split(",") if t.strip())
    return types or None


class WebSocketClient:
    """One connected stream consumer and the event types it asked for."""

    def __init__(self, ws: Any, event_types: Iterable[str] | None = None) -> None:
        self.ws = ws
        self.event_types = frozenset(event_types) if event_types is not None else None
        self.last_pong: float = time.time()
        self.missed_pongs: int = 0

    def wants(self, event_type: str) -> bool:
        return self.event_types is None or event_type in self.event_types

    async def send_event(self, event: dict[str, Any]) -> bool:
        """Forward *event* if the client wants it. False means the socket is gone."""
        if not self.wants(event["event_type"]):
            return True
        try:
            await self.ws.send_json(_event_frame(event))
        except _SEND_ERRORS:
            return False
        return True


_connected_clients: set[WebSocketClient] = set()


async def broadcast_event(event: dict[str, Any]) -> None:
    """Bus subscriber that fans each event out to the connected clients."""
    gone = [
        client
        for client in list(_connected_clients)
        if not await client.send_event(event)
    ]
    for client in gone:
        _connected_clients.discard(client)
    if gone:
        logger.debug("Dropped %d closed event stream client(s)", len(gone))


async def replay_events(
    ws: Any,
    event_bus: EventBus,
    since_seq: int,
    event_types: Iterable[str] | None = None,
) -> int:
    """Send stored events after *since_seq*, then a ``replay_complete`` frame.

    Returns the last sequence number sent, or *since_seq* when nothing was
    stored (always the case for a memory-only bus).
    """
    last_seq = since_seq
    for event in await event_bus.replay(since_seq, event_types=event_types):
        await ws.send_json(_event_frame(event))
        last_seq = event["seq"]
    await ws.send_json({"type": "replay_complete", "last_seq": last_seq})
    return last_seq


async def _keepalive_loop(client: WebSocketClient) -> None:
    while True:
        await asyncio.sleep(PING_INTERVAL_SECONDS)
        try:
            await client.ws.send_json({"type": "ping"})
        except _SEND_ERRORS:
            return
        client.missed_pongs += 1
        if client.missed_pongs >= MAX_MISSED_PONGS:
            logger.info("Closing event stream after %d missed pongs", client.missed_pongs)
            await client.ws.close()
            return


@router.websocket("/ws/events")
async def ws_events(ws: WebSocket, event_bus: EventBus = Depends(get_event_bus)):
    """Stream control-plane events.

    Query parameters: ``since_seq`` replays stored events first, ``types``
    (comma separated) limits the stream to those event types.

    Client messages:
    - ``{"type": "replay", "since_seq": N}`` replays again
    - ``{"type": "subscribe", "event_types": [...]}`` changes the filter
      (an empty list restores every type)
    - ``{"type": "pong"}`` answers the server's ping; three missed pings
      close the socket
    """
    await ws.accept()

    client = WebSocketClient(ws, parse_event_types(ws.query_params.get("types")))
    since = ws.query_params.get("since_seq")
    if since is not None and since.isdigit():
        await replay_events(ws, event_bus, int(since), client.event_types)

    _connected_clients.add(client)
    keepalive_task = asyncio.create_task(_keepalive_loop(client))

    try:
        while True:
            try:
                raw = await ws.receive_json()
            except WebSocketDisconnect:
                break

            msg_type = raw.get("type") if isinstance(raw, dict) else None

            if msg_type == "replay":
                try:
                    since_seq = int(raw.get("since_seq", 0))
                except (TypeError, ValueError):
                    await ws.send_json({"type": "error", "detail": "since_seq must be an integer"})
                    continue
                await replay_events(ws, event_bus, since_seq, client.event_types)

            elif msg_type == "subscribe":
                types = raw.get("event_types") or []
                client.event_types = frozenset(str(t) for t in types) or None
                await ws.send_json({
                    "type": "subscribed",
                    "event_types": sorted(client.event_types or ()),
                })

            elif msg_type == "pong":
                client.missed_pongs = 0
                client.last_pong = time.time()

    finally:
        keepalive_task.cancel()
        _connected_clients.discard(client)
