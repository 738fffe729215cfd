"""
事件订阅 WebSocket (Event Subscription WebSocket)

WebSocket端点：/api/v1/ws/events

连接建立后先推送一帧完整快照（connections / nodes / vms / alerts 及其 seq），
随后推送 seq 更大的每一条事件。客户端可随时发送 {"request": "<kind>"} 获取某一类的当前快照。
订阅者处理过慢导致队列溢出时会收到 {"type": "lagged"} 并被断开，需要重连获取新快照。

Frames sent by the server:
    {"type": "snapshot", "seq": ..., "connections": [...], "nodes": [...], "vms": [...], "alerts": [...]}
    {"type": "event", "seq": ..., "kind": ..., "action": ..., "endpoint_id": ..., "key": ..., "data": {...}}
    {"type": "response", "kind": ..., "data": [...]}
    {"type": "error", "message": ...}
    {"type": "lagged"}
"""
import asyncio
import contextlib
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from pvehub.core.exceptions import ValidationError
from pvehub.services.broadcaster import Subscription

logger = logging.getLogger(__name__)

router = APIRouter()


async def _forward_events(websocket: WebSocket, sub: Subscription) -> None:
    async for event in sub:
        await websocket.send_json({"type": "event", **event.model_dump(mode="json")})
    if sub.lagged:
        await websocket.send_json({"type": "lagged"})
        await websocket.close(code=1013)


@router.websocket("/api/v1/ws/events")
async def events_ws(websocket: WebSocket):
    manager = websocket.app.state.manager
    await websocket.accept()
    sub = manager.subscribe()
    logger.info("Event subscriber connected (seq=%d)", sub.snapshot["seq"])

    await websocket.send_json({"type": "snapshot", **sub.snapshot})
    forwarder = asyncio.create_task(_forward_events(websocket, sub))
    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                await websocket.send_json({"type": "error", "message": "Invalid JSON frame"})
                continue
            kind = message.get("request") if isinstance(message, dict) else None
            try:
                data = manager.request(kind)
            except ValidationError as e:
                await websocket.send_json({"type": "error", "message": e.message, "detail": e.detail})
                continue
            await websocket.send_json({"type": "response", "kind": kind, "data": data})
    except WebSocketDisconnect:
        logger.info("Event subscriber disconnected")
    except RuntimeError as e:
        # 转发任务因 lagged 已关闭连接
        logger.debug("Event websocket closed: %s", e)
    finally:
        forwarder.cancel()
        with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
            await forwarder
        sub.close()
