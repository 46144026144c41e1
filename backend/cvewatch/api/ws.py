import asyncio
from contextlib import suppress
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
import json
import structlog

router = APIRouter()
logger = structlog.get_logger()


@router.websocket("/jobs/{job_id}")
async def job_websocket(websocket: WebSocket, job_id: int):
    """Push a job's log events over a websocket; same events as the SSE stream."""
    broker = websocket.app.state.broker
    await websocket.accept()
    queue = broker.subscribe(job_id)
    logger.info("WebSocket connected", job_id=job_id)

    async def forward():
        while True:
            message = await queue.get()
            await websocket.send_json(message)

    forwarder = asyncio.create_task(forward())
    try:
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "detail": "Invalid JSON"})
                continue
            if message.get("type") == "ping":
                await websocket.send_json({"type": "pong"})
    except WebSocketDisconnect:
        logger.info("WebSocket disconnected", job_id=job_id)
    except Exception as e:
        logger.error("WebSocket error", error=str(e), job_id=job_id)
    finally:
        forwarder.cancel()
        try:
            with suppress(asyncio.CancelledError):
                await forwarder
        except Exception as e:
            logger.warning("WebSocket forwarding failed", job_id=job_id, error=str(e))
        broker.unsubscribe(job_id, queue)
