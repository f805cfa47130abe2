import asyncio
import json
from enum import Enum
from typing import Callable, List, Optional, Sequence
import websockets
from websockets.exceptions import ConnectionClosed
from chartfeed.core.errors import DecodeError, FeedConnectionError
from chartfeed.core.logger import logger
from chartfeed.core.models import AuthResult, Heartbeat, RateLimitWarning, Tick, Unrecognized
from chartfeed.connectors.base import ProviderAdapter
from chartfeed.config import settings


class ConnectionState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"


class StreamConnection:
    """
    One persistent streaming connection to a provider.

    The desired symbol set is never buffered here: every time the socket
    (re)opens it is re-read from `symbols_provider` and sent in full.
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        symbols_provider: Callable[[], Sequence[str]],
        reconnect_delay: Optional[float] = None,
        max_reconnect_delay: Optional[float] = None,
        max_attempts: Optional[int] = None,
        heartbeat_timeout: Optional[float] = None,
        connector=None,
    ):
        self.adapter = adapter
        self.symbols_provider = symbols_provider
        self.base_delay = settings.RECONNECT_DELAY if reconnect_delay is None else reconnect_delay
        self.max_delay = settings.RECONNECT_MAX_DELAY if max_reconnect_delay is None else max_reconnect_delay
        self.max_attempts = settings.RECONNECT_MAX_ATTEMPTS if max_attempts is None else max_attempts
        self.heartbeat_timeout = settings.HEARTBEAT_TIMEOUT if heartbeat_timeout is None else heartbeat_timeout
        self._connect = connector or websockets.connect

        self.state = ConnectionState.DISCONNECTED
        self.running = False
        self.failures = 0
        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self._reconnect_delay = self.base_delay
        self.listeners: List[Callable] = []

    def add_listener(self, callback):
        """Register a callback for decoded ticks"""
        self.listeners.append(callback)

    @property
    def connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED and self._ws is not None

    def _set_state(self, state: ConnectionState):
        if state != self.state:
            logger.info(f"{self.adapter.name} stream {self.state.value} -> {state.value}",
                        extra={"provider": self.adapter.name, "state": state.value})
            self.state = state

    async def start(self):
        """Start the connection task"""
        if self.running:
            return

        self.running = True
        logger.info(f"Starting {self.adapter.name} stream", extra={"provider": self.adapter.name})
        self._task = asyncio.create_task(self._connect_loop())

    async def stop(self):
        if not self.running:
            return

        logger.info(f"Stopping {self.adapter.name} stream...", extra={"provider": self.adapter.name})
        self.running = False
        if self._ws:
            await self._ws.close()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._set_state(ConnectionState.DISCONNECTED)

    # --- Upstream control ---

    async def add_symbol(self, key: str):
        frames = self.adapter.build_subscribe_frames(self.symbols_provider(), added=[key])
        await self._send_frames(frames)

    async def remove_symbol(self, key: str):
        frames = self.adapter.build_subscribe_frames(self.symbols_provider(), removed=[key])
        await self._send_frames(frames)

    async def resubscribe(self):
        desired = list(self.symbols_provider())
        frames = self.adapter.build_subscribe_frames(desired, added=desired)
        if frames:
            logger.info(f"Resubscribe on connect: {desired}", extra={"provider": self.adapter.name})
        await self._send_frames(frames)

    async def _send_frames(self, frames):
        if not frames:
            return
        if not self.connected:
            logger.warning(f"{self.adapter.name} stream not connected; subscriptions will be sent on connect",
                           extra={"provider": self.adapter.name})
            return
        for frame in frames:
            try:
                await self._ws.send(json.dumps(frame))
                logger.debug(f"Sent control frame: {frame}", extra={"provider": self.adapter.name})
            except ConnectionClosed as e:
                # Reconnect path re-sends the full set
                logger.warning(f"Send failed, connection closed: {e}", extra={"provider": self.adapter.name})
                return

    # --- Connection loop ---

    async def _connect_loop(self):
        """Main connection and reconnection loop"""
        while self.running:
            try:
                self._set_state(ConnectionState.CONNECTING)
                url = self.adapter.stream_url()
                if not url:
                    raise FeedConnectionError(f"No stream URL configured for {self.adapter.name}")

                logger.info(f"Connecting to {self.adapter.name} stream...", extra={"provider": self.adapter.name})
                async with self._connect(url, additional_headers=self.adapter.connect_headers()) as ws:
                    self._ws = ws
                    self._set_state(ConnectionState.CONNECTED)
                    self.failures = 0
                    self._reconnect_delay = self.base_delay # Reset backoff

                    await self.resubscribe()
                    await self._read_loop(ws)

            except (OSError, ConnectionClosed, FeedConnectionError, Exception) as e:
                if not self.running:
                    break
                logger.warning(f"{self.adapter.name} connection lost: {e}", extra={"provider": self.adapter.name})
            finally:
                self._ws = None
                self._set_state(ConnectionState.DISCONNECTED)

            if not self.running:
                break

            self.failures += 1
            if self.max_attempts and self.failures > self.max_attempts:
                logger.error(f"{self.adapter.name} stream gave up after {self.max_attempts} reconnect attempts",
                             extra={"provider": self.adapter.name})
                self.running = False
                break

            logger.info(f"Reconnecting in {self._reconnect_delay}s...", extra={"provider": self.adapter.name})
            await asyncio.sleep(self._reconnect_delay)
            self._reconnect_delay = min(self._reconnect_delay * 2, self.max_delay) # Backoff

    async def _read_loop(self, ws):
        """Read messages until the socket closes or goes silent"""
        while self.running:
            try:
                msg_raw = await asyncio.wait_for(ws.recv(), timeout=self.heartbeat_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"{self.adapter.name} heartbeat timeout. Reconnecting...",
                               extra={"provider": self.adapter.name})
                await ws.close()
                return
            await self._handle_message(msg_raw)

    async def _handle_message(self, msg_raw):
        """Decode one frame and route it"""
        try:
            event = self.adapter.decode_message(msg_raw)
        except DecodeError as e:
            logger.warning(f"Dropping malformed {self.adapter.name} message: {e}",
                           extra={"provider": self.adapter.name})
            return
        except Exception as e:
            logger.error(f"Error parsing {self.adapter.name} message: {e}", exc_info=True,
                         extra={"provider": self.adapter.name})
            return

        if isinstance(event, Tick):
            await self._dispatch(event)
        elif isinstance(event, Heartbeat):
            logger.debug(f"{self.adapter.name} heartbeat", extra={"provider": self.adapter.name})
        elif isinstance(event, RateLimitWarning):
            logger.warning(f"{self.adapter.name} rate limit warning: {event.message}",
                           extra={"provider": self.adapter.name})
        elif isinstance(event, AuthResult):
            if event.success:
                logger.info(f"{self.adapter.name} auth success", extra={"provider": self.adapter.name})
            else:
                logger.error(f"{self.adapter.name} auth failed: {event.message}",
                             extra={"provider": self.adapter.name})
        elif isinstance(event, Unrecognized):
            logger.debug(f"Unhandled {self.adapter.name} message: {event.raw}",
                         extra={"provider": self.adapter.name})

    async def _dispatch(self, tick: Tick):
        for listener in self.listeners:
            try:
                result = listener(tick)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Listener error: {e}", exc_info=True, extra={"provider": self.adapter.name})
