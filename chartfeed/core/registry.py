import asyncio
from typing import Any, Callable, Dict, List, Optional, Protocol
from chartfeed.core.errors import DuplicateSubscriberError
from chartfeed.core.logger import logger
from chartfeed.core.models import Bar
from chartfeed.core.symbols import ParsedSymbol

BarCallback = Callable[[Bar], Any]


class UpstreamSubscriber(Protocol):
    """Whatever carries add/remove requests to the provider (the stream connection)"""

    async def add_symbol(self, key: str) -> None: ...

    async def remove_symbol(self, key: str) -> None: ...


class Handler:
    def __init__(self, handler_id: str, callback: BarCallback):
        self.handler_id = handler_id
        self.callback = callback


class Channel:
    """Aggregation unit for one symbol, shared by all of its handlers"""

    def __init__(self, key: str, symbol: ParsedSymbol, resolution: str, live_bar: Optional[Bar] = None):
        self.key = key
        self.symbol = symbol
        self.resolution = resolution
        self.live_bar = live_bar
        self.handlers: List[Handler] = []
        self.reset_callbacks: Dict[str, Callable] = {}
        self.last_reconciled_bucket: Optional[int] = None

    @property
    def full_name(self) -> str:
        return self.symbol.full_name

    def handler_ids(self) -> List[str]:
        return [h.handler_id for h in self.handlers]


class SubscriptionRegistry:
    def __init__(self, upstream: Optional[UpstreamSubscriber] = None):
        self.upstream = upstream
        self._channels: Dict[str, Channel] = {}

    def bind_upstream(self, upstream: UpstreamSubscriber):
        self.upstream = upstream

    def __len__(self) -> int:
        return len(self._channels)

    def __contains__(self, key: str) -> bool:
        return key in self._channels

    def get(self, key: str) -> Optional[Channel]:
        return self._channels.get(key)

    def channel_keys(self) -> List[str]:
        return list(self._channels)

    def channels(self) -> List[Channel]:
        return list(self._channels.values())

    def find_handler(self, handler_id: str) -> Optional[Channel]:
        for channel in self._channels.values():
            if handler_id in channel.handler_ids():
                return channel
        return None

    async def subscribe(
        self,
        key: str,
        symbol: ParsedSymbol,
        resolution: str,
        handler_id: str,
        callback: BarCallback,
        on_reset_cache: Optional[Callable] = None,
        last_bar: Optional[Bar] = None,
    ) -> Channel:
        """
        Attach a handler to the channel for `key`, creating it (and the upstream subscription) if needed.
        A handler id may be attached to one channel at a time.
        """
        existing = self.find_handler(handler_id)
        if existing is not None:
            raise DuplicateSubscriberError(
                f"Handler {handler_id} is already subscribed to {existing.key}",
                {"handler_id": handler_id, "channel": existing.key},
            )

        handler = Handler(handler_id, callback)

        channel = self._channels.get(key)
        if channel:
            if channel.resolution != resolution:
                logger.warning(
                    f"Channel {key} already streams resolution {channel.resolution}; "
                    f"handler {handler_id} asked for {resolution}",
                    extra={"channel": key, "handler_id": handler_id},
                )
            channel.handlers.append(handler)
            if on_reset_cache:
                channel.reset_callbacks[handler_id] = on_reset_cache
            logger.info(f"Handler {handler_id} joined channel {key} ({len(channel.handlers)} handlers)",
                        extra={"channel": key, "handler_id": handler_id})
            return channel

        channel = Channel(key, symbol, resolution, live_bar=last_bar)
        channel.handlers.append(handler)
        if on_reset_cache:
            channel.reset_callbacks[handler_id] = on_reset_cache
        self._channels[key] = channel
        logger.info(f"Subscribe to streaming. Channel: {key}", extra={"channel": key, "handler_id": handler_id})

        if self.upstream:
            await self.upstream.add_symbol(key)
        return channel

    async def unsubscribe(self, handler_id: str) -> Optional[str]:
        """Detach a handler. Returns the channel key when the channel was torn down."""
        channel = self.find_handler(handler_id)
        if channel is None:
            logger.debug(f"Unsubscribe for unknown handler {handler_id} ignored")
            return None

        channel.handlers = [h for h in channel.handlers if h.handler_id != handler_id]
        channel.reset_callbacks.pop(handler_id, None)

        if channel.handlers:
            return None

        del self._channels[channel.key]
        logger.info(f"Unsubscribe from streaming. Channel: {channel.key}", extra={"channel": channel.key})
        if self.upstream:
            await self.upstream.remove_symbol(channel.key)
        return channel.key

    async def notify(self, channel: Channel, bar: Bar):
        """Send a copy of `bar` to every handler currently on the channel, in subscription order"""
        for handler in list(channel.handlers):
            try:
                result = handler.callback(bar.model_copy())
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Handler {handler.handler_id} error: {e}",
                             extra={"channel": channel.key, "handler_id": handler.handler_id})
