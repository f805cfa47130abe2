import asyncio
import uuid
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, Optional
import psutil
import uvicorn
from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from chartfeed.config import settings
from chartfeed.core.errors import ChartFeedError, DuplicateSubscriberError, ReconciliationFetchError
from chartfeed.core.logger import logger
from chartfeed.core.models import Bar
from chartfeed.connectors.providers import build_adapter
from chartfeed.datafeed import Datafeed


def default_datafeed() -> Datafeed:
    return Datafeed(build_adapter(settings), settings)


class ChartClient:
    """
    Outbound side of one chart websocket.

    Bar callbacks only enqueue, a dedicated sender task does the socket
    writes, so a slow client never holds up the provider's tick loop.
    When the queue is full new bars are dropped for this client.
    """

    def __init__(self, name: str, send: Callable[[Dict[str, Any]], Awaitable[None]], maxsize: int = 256):
        self.name = name
        self.send = send
        self.queue: asyncio.Queue = asyncio.Queue(maxsize)
        self.dropped = 0
        self._task: Optional[asyncio.Task] = None

    def start(self):
        self._task = asyncio.create_task(self._sender())

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def bar_callback(self, client_id: str) -> Callable[[Bar], None]:
        def push(bar: Bar):
            self.offer({"id": client_id, "bar": bar.model_dump()})
        return push

    def offer(self, message: Dict[str, Any]) -> bool:
        try:
            self.queue.put_nowait(message)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 100 == 0:
                logger.warning(f"Chart client {self.name} is slow, {self.dropped} bar(s) dropped")
            return False

    async def reply(self, message: Dict[str, Any]):
        """Queue a control reply. Waits for room instead of dropping."""
        if self._task is None or self._task.done():
            return
        await self.queue.put(message)

    async def _sender(self):
        while True:
            message = await self.queue.get()
            try:
                await self.send(message)
            except Exception as e:
                logger.warning(f"Chart client {self.name} send failed: {e}")
                return


def create_app(datafeed_factory: Optional[Callable[[], Datafeed]] = None) -> FastAPI:
    factory = datafeed_factory or default_datafeed

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.setLevel(settings.LOG_LEVEL.upper())
        logger.info(f"{settings.APP_NAME} v{settings.APP_VERSION} starting", extra={"provider": settings.PROVIDER})

        datafeed = factory()
        app.state.datafeed = datafeed
        await datafeed.start()

        yield

        logger.info("Shutdown Initiated...")
        await datafeed.stop()
        logger.info(f"{settings.APP_NAME} Shutdown Complete")

    app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION, lifespan=lifespan)

    @app.exception_handler(ChartFeedError)
    async def chartfeed_error_handler(request: Request, exc: ChartFeedError):
        status = 502 if isinstance(exc, ReconciliationFetchError) else 400
        return JSONResponse(status_code=status, content={"s": "error", "errmsg": exc.message, **exc.to_dict()})

    @app.get("/config")
    async def config(request: Request):
        return request.app.state.datafeed.on_ready()

    @app.get("/symbols")
    async def symbols(request: Request, symbol: str):
        return request.app.state.datafeed.resolve_symbol(symbol)

    @app.get("/history")
    async def history(
        request: Request,
        symbol: str,
        resolution: str,
        from_ts: int = Query(alias="from"),
        to_ts: int = Query(alias="to"),
        first_data_request: bool = Query(default=False, alias="firstDataRequest"),
    ):
        bars = await request.app.state.datafeed.get_bars(symbol, resolution, from_ts, to_ts, first_data_request)
        if not bars:
            return {"s": "no_data"}
        return {
            "s": "ok",
            "t": [b.time // 1000 for b in bars],
            "o": [b.open for b in bars],
            "h": [b.high for b in bars],
            "l": [b.low for b in bars],
            "c": [b.close for b in bars],
            "v": [b.volume for b in bars],
        }

    @app.get("/health")
    async def health(request: Request):
        datafeed: Datafeed = request.app.state.datafeed
        return {
            "status": "ok",
            "version": settings.APP_VERSION,
            "provider": datafeed.adapter.name,
            "connection": datafeed.connection.state.value,
            "channels": len(datafeed.registry),
            "pending_reconciliations": datafeed.aggregator.pending,
            "reconcile_cache": datafeed.gateway.cache_size,
            "memory_percent": psutil.virtual_memory().percent,
        }

    @app.websocket("/stream")
    async def stream(websocket: WebSocket):
        """
        Chart clients send {"action": "subscribe", "id", "symbol", "resolution"}
        or {"action": "unsubscribe", "id"} and receive {"id", "bar"} pushes.
        """
        await websocket.accept()
        datafeed: Datafeed = websocket.app.state.datafeed
        client = ChartClient(uuid.uuid4().hex[:8], websocket.send_json, settings.STREAM_CLIENT_QUEUE)
        client.start()
        active = set()

        try:
            while True:
                msg = await websocket.receive_json()
                action = msg.get("action") if isinstance(msg, dict) else None
                client_id = str(msg.get("id", "")) if isinstance(msg, dict) else ""
                subscriber_id = f"{client.name}:{client_id}"

                if action == "subscribe":
                    if subscriber_id in active:
                        await client.reply({"id": client_id, "error": DuplicateSubscriberError(
                            f"Subscription id {client_id!r} is already in use", {"id": client_id},
                        ).to_dict()})
                        continue
                    try:
                        await datafeed.subscribe_bars(
                            msg.get("symbol", ""), msg.get("resolution", settings.DEFAULT_RESOLUTION),
                            client.bar_callback(client_id), subscriber_id,
                        )
                    except ChartFeedError as e:
                        await client.reply({"id": client_id, "error": e.to_dict()})
                        continue
                    active.add(subscriber_id)
                    await client.reply({"id": client_id, "status": "subscribed"})

                elif action == "unsubscribe":
                    await datafeed.unsubscribe_bars(subscriber_id)
                    active.discard(subscriber_id)
                    await client.reply({"id": client_id, "status": "unsubscribed"})

                else:
                    await client.reply({"id": client_id, "error": {"message": f"Unknown action {action!r}"}})

        except WebSocketDisconnect:
            logger.info(f"Chart client {client.name} disconnected")
        finally:
            for subscriber_id in active:
                await datafeed.unsubscribe_bars(subscriber_id)
            await client.stop()

    return app


app = create_app()


def main():
    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_level=settings.LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
