import asyncio
import time
from typing import Callable, Dict, List, Optional, Tuple
import httpx
from chartfeed.core.errors import ReconciliationFetchError
from chartfeed.core.logger import logger
from chartfeed.core.models import Bar
from chartfeed.core.registry import Channel, SubscriptionRegistry

CacheKey = Tuple[str, str, int, int]


class ReconciliationGateway:
    """
    Replaces tick-built bars of closed buckets with the provider's own bars.

    Requests are de-duplicated per (symbol, resolution, start, end) within a
    cooldown. Results are pushed to the channel's handlers as updates to the
    closed timestamp; the channel's live bar and the chart's cache are left
    alone so live updates keep flowing.
    """

    def __init__(self, history_client, registry: SubscriptionRegistry,
                 cooldown: float = 5.0, cache_ttl: float = 60.0, sweep_interval: float = 30.0,
                 clock: Callable[[], float] = time.time):
        self.history = history_client
        self.registry = registry
        self.cooldown = cooldown
        self.cache_ttl = cache_ttl
        self.sweep_interval = sweep_interval
        self.clock = clock
        self._requests: Dict[CacheKey, float] = {}
        self.is_running = False
        self._task: Optional[asyncio.Task] = None

    # --- Dedup cache ---

    @staticmethod
    def cache_key(symbol: str, resolution: str, bucket_start: int, bucket_end: int) -> CacheKey:
        return (symbol, resolution, int(bucket_start), int(bucket_end))

    def _claim(self, key: CacheKey) -> bool:
        """Record a request for `key` unless one was made within the cooldown"""
        now = self.clock()
        last = self._requests.get(key)
        if last is not None and now - last < self.cooldown:
            return False
        self._requests[key] = now
        return True

    def purge_expired(self) -> int:
        now = self.clock()
        expired = [k for k, ts in self._requests.items() if now - ts > self.cache_ttl]
        for k in expired:
            del self._requests[k]
        return len(expired)

    @property
    def cache_size(self) -> int:
        return len(self._requests)

    # --- Reconcile ---

    async def reconcile(self, symbol: str, resolution: str, bucket_start: int, bucket_end: int,
                        channel: Channel) -> int:
        """Fetch authoritative bars for [bucket_start, bucket_end] (seconds) and publish them. Returns bars sent."""
        key = self.cache_key(symbol, resolution, bucket_start, bucket_end)
        if not self._claim(key):
            logger.debug(f"Skipping duplicate period request: {key}", extra={"channel": channel.key})
            return 0

        try:
            bars = await self.history.fetch_bars(channel.symbol, resolution, bucket_start, bucket_end)
        except (ReconciliationFetchError, httpx.HTTPError) as e:
            logger.warning(f"Reconciliation fetch failed for {symbol} {resolution} [{bucket_start}, {bucket_end}]: {e}",
                           extra={"channel": channel.key, "resolution": resolution})
            return 0
        except Exception as e:
            logger.error(f"Reconciliation error for {symbol}: {e}", exc_info=True,
                         extra={"channel": channel.key})
            return 0

        in_range = self._select(bars, bucket_start, bucket_end)
        if not in_range:
            logger.info(f"No historical bars for {symbol} {resolution} [{bucket_start}, {bucket_end}]",
                        extra={"channel": channel.key})
            return 0

        for bar in in_range:
            await self.registry.notify(channel, bar)

        channel.last_reconciled_bucket = in_range[-1].time
        logger.info(f"Reconciled {len(in_range)} bar(s) for {symbol} at {in_range[-1].time}",
                    extra={"channel": channel.key, "resolution": resolution})
        return len(in_range)

    @staticmethod
    def _select(bars: List[Bar], bucket_start: int, bucket_end: int) -> List[Bar]:
        start_ms, end_ms = bucket_start * 1000, bucket_end * 1000
        return sorted((b for b in bars or [] if start_ms <= b.time <= end_ms), key=lambda b: b.time)

    # --- Periodic sweep ---

    async def start(self):
        if self.is_running:
            return
        self.is_running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("Reconciliation cache sweeper started")

    async def stop(self):
        self.is_running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _sweep_loop(self):
        while self.is_running:
            await asyncio.sleep(self.sweep_interval)
            removed = self.purge_expired()
            if removed:
                logger.debug(f"Purged {removed} reconciliation cache entries")
