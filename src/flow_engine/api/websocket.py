"""
WebSocket endpoint for following a flow run from the builder.

A subscriber first gets the run's current position, then every status and
node update the runner emits. The stream ends when the run reaches a
terminal status.
"""

import logging
import json
import asyncio
from typing import Any, Dict, Set
from fastapi import WebSocket, WebSocketDisconnect

from ..core.errors import RunNotFoundError
from ..models.run import RunState, RunStatus
from .routes import get_service

logger = logging.getLogger(__name__)

# Close codes sent to subscribers
CLOSE_RUN_FINISHED = 1000
CLOSE_RUN_NOT_FOUND = 4404

SNAPSHOT_FIELDS = {
    "flow_id",
    "flow_version",
    "status",
    "current_node_id",
    "awaiting_variable",
    "resume_at",
    "execution_path",
    "error",
}


def run_snapshot(state: RunState) -> Dict[str, Any]:
    """Where a run stands, in the shape sent to a new subscriber."""
    return {
        "type": "snapshot",
        "run_id": state.run_id,
        **state.model_dump(mode="json", include=SNAPSHOT_FIELDS),
    }


def _is_terminal(data: Dict[str, Any]) -> bool:
    try:
        return RunStatus(data.get("status")).is_terminal
    except ValueError:
        return False


class ConnectionManager:
    """Subscribers per run. Finished runs have their subscribers closed."""

    def __init__(self):
        self.subscribers: Dict[str, Set[WebSocket]] = {}
        self._lock = asyncio.Lock()

    async def subscribe(self, websocket: WebSocket, run_id: str):
        await websocket.accept()
        async with self._lock:
            self.subscribers.setdefault(run_id, set()).add(websocket)
        logger.info(f"Subscriber attached to run {run_id}")

    async def unsubscribe(self, websocket: WebSocket, run_id: str):
        async with self._lock:
            sockets = self.subscribers.get(run_id)
            if sockets is not None:
                sockets.discard(websocket)
                if not sockets:
                    del self.subscribers[run_id]

    async def publish(self, run_id: str, message: Dict[str, Any]):
        """Send a message to every subscriber of a run, dropping dead sockets."""
        async with self._lock:
            sockets = list(self.subscribers.get(run_id, ()))
        if not sockets:
            return

        payload = json.dumps(message, default=str)
        dead = []
        for websocket in sockets:
            try:
                await websocket.send_text(payload)
            except Exception as e:
                logger.warning(f"Dropping subscriber of run {run_id}: {e}")
                dead.append(websocket)

        for websocket in dead:
            await self.unsubscribe(websocket, run_id)

    async def finish(self, run_id: str, code: int = CLOSE_RUN_FINISHED):
        """Close and forget every subscriber of a run."""
        async with self._lock:
            sockets = self.subscribers.pop(run_id, set())
        for websocket in sockets:
            try:
                await websocket.close(code=code)
            except Exception as e:
                logger.debug(f"Subscriber of run {run_id} already gone: {e}")
        if sockets:
            logger.info(f"Closed {len(sockets)} subscriber(s) of finished run {run_id}")


# Global connection manager
manager = ConnectionManager()


async def websocket_endpoint(websocket: WebSocket, run_id: str):
    """
    Follow one run.

    Connect to /ws/runs/{run_id}. Messages:
    - connected: subscription accepted
    - snapshot: current status, node, awaited variable and due time
    - status / node_complete / error: runner updates as they happen

    The socket is closed with 1000 once the run is completed, failed or
    cancelled, and with 4404 for an unknown run. Send "ping" to get "pong".
    """
    await manager.subscribe(websocket, run_id)

    try:
        await websocket.send_json({
            "type": "connected",
            "run_id": run_id,
            "message": "Following run"
        })

        service = get_service()
        if service is not None:
            try:
                state = await service.get_run(run_id)
            except RunNotFoundError as e:
                await websocket.send_json({"type": "error", "run_id": run_id, "error": str(e)})
                await websocket.close(code=CLOSE_RUN_NOT_FOUND)
                return

            await websocket.send_json(run_snapshot(state))
            if state.status.is_terminal:
                await websocket.close(code=CLOSE_RUN_FINISHED)
                return

        while True:
            try:
                data = await asyncio.wait_for(websocket.receive_text(), timeout=30.0)
                if data == "ping":
                    await websocket.send_text("pong")
            except asyncio.TimeoutError:
                try:
                    await websocket.send_json({"type": "keepalive"})
                except Exception:
                    break

    except WebSocketDisconnect:
        logger.info(f"Subscriber left run {run_id}")
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
    finally:
        await manager.unsubscribe(websocket, run_id)


async def send_run_update(run_id: str, update_type: str, data: dict):
    """
    Runner listener: forward an update to the run's subscribers and end
    their streams when the run finishes.
    """
    await manager.publish(run_id, {
        "type": update_type,
        "run_id": run_id,
        **data
    })
    if _is_terminal(data):
        await manager.finish(run_id)
