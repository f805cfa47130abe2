import asyncio
from typing import Optional, Set
from chartfeed.core.logger import logger
from chartfeed.core.models import Bar, Tick
from chartfeed.core.registry import Channel, SubscriptionRegistry
from chartfeed.core.resolution import TICK_STREAM_DEFAULT_SECONDS, bucket_range, bucket_start_ms


class BarAggregator:
    """
    Turns the tick stream of each channel into a live bar.

    Ticks for one provider arrive through a single read loop, so a channel
    is never updated concurrently. On bucket rollover the closed bucket is
    handed to the reconciliation gateway as a detached task; the new live
    bar is published without waiting for it, and reconciled bars may reach
    handlers before or after later live updates.
    """

    def __init__(self, registry: SubscriptionRegistry, gateway=None,
                 default_seconds: int = TICK_STREAM_DEFAULT_SECONDS):
        self.registry = registry
        self.gateway = gateway
        self.default_seconds = default_seconds
        self._pending: Set[asyncio.Task] = set()

    async def on_tick(self, tick: Tick) -> Optional[Bar]:
        """Apply a tick to its channel. Returns the live bar, or None if the tick was dropped."""
        channel = self.registry.get(tick.symbol)
        if channel is None:
            return None

        bucket = bucket_start_ms(tick.timestamp, channel.resolution, self.default_seconds)
        live = channel.live_bar

        if live is None:
            channel.live_bar = Bar.from_tick(tick, bucket)
            logger.debug(f"First bar for {channel.key} at {bucket}", extra={"channel": channel.key})

        elif bucket == live.time:
            live.apply(tick.price, tick.volume)

        elif bucket < live.time:
            logger.debug(
                f"Late tick for {channel.key} (bucket {bucket} < live {live.time}) ignored",
                extra={"channel": channel.key},
            )
            return None

        else:
            self._roll_over(channel, live)
            channel.live_bar = Bar.from_tick(tick, bucket)
            logger.debug(f"New bar for {channel.key} at {bucket}", extra={"channel": channel.key})

        await self.registry.notify(channel, channel.live_bar)
        return channel.live_bar

    def _roll_over(self, channel: Channel, closed: Bar):
        if self.gateway is None:
            return
        start, end = bucket_range(closed.time // 1000, channel.resolution, self.default_seconds)
        logger.info(
            f"New period for {channel.key}, reconciling [{start}, {end}]",
            extra={"channel": channel.key, "resolution": channel.resolution},
        )
        task = asyncio.create_task(
            self.gateway.reconcile(channel.full_name, channel.resolution, start, end, channel)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self):
        """Wait for in-flight reconciliation tasks"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
