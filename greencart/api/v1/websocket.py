from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone

from fastapi import APIRouter
from starlette.websockets import WebSocket, WebSocketDisconnect

from greencart.core.simulation.broadcast import ChannelBroadcaster, Subscription
from greencart.utils.security import decode_token


router = APIRouter()


@router.websocket("/ws/simulations")
async def ws_simulations(websocket: WebSocket):
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=1008)
        return

    payload = decode_token(token, expected_type="access")
    if not payload or not payload.get("sub"):
        await websocket.close(code=1008)
        return

    broadcaster: ChannelBroadcaster = websocket.app.state.simulation_broadcaster
    user_id = str(payload["sub"])

    await websocket.accept()
    await websocket.send_json({"type": "hello", "user_id": user_id, "ts": datetime.now(timezone.utc).isoformat()})

    # One subscription and one writer task per joined run.
    joined: dict[str, tuple[Subscription, asyncio.Task]] = {}

    async def _writer(queue: asyncio.Queue):
        while True:
            msg = await queue.get()
            await websocket.send_json(msg)

    async def _leave(run_id: str) -> None:
        entry = joined.pop(run_id, None)
        if entry is None:
            return
        sub, task = entry
        broadcaster.leave(run_id, sub)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    try:
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
                continue

            try:
                obj = json.loads(data)
            except ValueError:
                await websocket.send_json({"type": "error", "error": "invalid_json"})
                continue
            if not isinstance(obj, dict):
                await websocket.send_json({"type": "error", "error": "unknown_message"})
                continue

            msg_type = obj.get("type")
            run_id = obj.get("run_id")
            if msg_type in ("join", "leave") and (not isinstance(run_id, str) or not run_id):
                await websocket.send_json({"type": "error", "error": "invalid_run_id"})
                continue

            if msg_type == "join":
                if run_id not in joined:
                    sub = broadcaster.join(run_id)
                    joined[run_id] = (sub, asyncio.create_task(_writer(sub.queue)))
                await websocket.send_json({"type": "joined", "run_id": run_id})
                continue

            if msg_type == "leave":
                await _leave(run_id)
                await websocket.send_json({"type": "left", "run_id": run_id})
                continue

            await websocket.send_json({"type": "error", "error": "unknown_message"})

    except WebSocketDisconnect:
        pass
    finally:
        for run_id in list(joined):
            await _leave(run_id)
