"""Overlay push server: websocket subscriptions plus the queue worker"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from kubi_pipeline.fanout import PushFanout
from kubi_pipeline.queue_worker import NotificationQueueWorker

logger = logging.getLogger(__name__)


def create_app(fanout: PushFanout, worker: Optional[NotificationQueueWorker] = None) -> FastAPI:
    """
    Build the overlay app.

    Overlays connect to /subscribe/{recipient_id} and only receive pushes.
    When a worker is given it runs for the lifetime of the app.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        task = None
        if worker is not None:
            task = asyncio.create_task(worker.run_forever(), name="queue-worker")
        try:
            yield
        finally:
            if worker is not None:
                worker.stop()
            try:
                if task is not None:
                    await task
            finally:
                await fanout.clear()

    app = FastAPI(title="Kubi Overlay Push", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health():
        return {"status": "ok", "connections": await fanout.connection_count()}

    @app.websocket("/subscribe/{recipient_id}")
    async def subscribe(websocket: WebSocket, recipient_id: str):
        await websocket.accept()
        await fanout.register(recipient_id, websocket)
        try:
            await websocket.send_json({"type": "connected", "recipientId": recipient_id})
            while True:
                text = await websocket.receive_text()
                if text.strip().lower() == "ping":
                    await websocket.send_text("pong")
        except WebSocketDisconnect:
            pass
        finally:
            await fanout.unregister(recipient_id, websocket)

    return app
