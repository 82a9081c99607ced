"""Helpers for long-lived WebSocket subscriptions."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Optional

from fastapi import WebSocket, WebSocketDisconnect, status
from starlette.websockets import WebSocketState

logger = logging.getLogger(__name__)

Relocator = Callable[[float, float], bool]


async def _push(websocket: WebSocket, updates: AsyncIterator[Any], render: Callable[[Any], dict]) -> None:
    async for update in updates:
        await websocket.send_json(render(update))


async def _listen(websocket: WebSocket, relocate: Optional[Relocator]) -> None:
    while True:
        message = await websocket.receive_json()
        if relocate is None:
            continue
        try:
            relocate(float(message["lat"]), float(message["lng"]))
        except (KeyError, TypeError, ValueError) as exc:
            await websocket.send_json({"error": f"Invalid relocation message: {exc}"})


async def _close(websocket: WebSocket, code: int) -> None:
    if websocket.application_state is WebSocketState.CONNECTED and websocket.client_state is WebSocketState.CONNECTED:
        await websocket.close(code=code)


async def serve_subscription(
    websocket: WebSocket,
    updates: AsyncIterator[Any],
    render: Callable[[Any], dict],
    *,
    on_close: Callable[[], None],
    relocate: Optional[Relocator] = None,
) -> None:
    """Stream ``updates`` to an accepted socket until either side stops.

    Incoming ``{"lat": .., "lng": ..}`` messages are passed to ``relocate``.
    The subscription is always released through ``on_close``.
    """

    push = asyncio.create_task(_push(websocket, updates, render))
    listen = asyncio.create_task(_listen(websocket, relocate))
    try:
        done, _ = await asyncio.wait({push, listen}, return_when=asyncio.FIRST_COMPLETED)
        code = status.WS_1000_NORMAL_CLOSURE
        for task in done:
            error = task.exception()
            if error is not None and not isinstance(error, WebSocketDisconnect):
                logger.error("Subscription stream failed: %s", error)
                code = status.WS_1011_INTERNAL_ERROR
        await _close(websocket, code)
    finally:
        on_close()
        for task in (push, listen):
            task.cancel()
        await asyncio.gather(push, listen, return_exceptions=True)
