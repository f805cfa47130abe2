from typing import Any, Callable, Dict, List, Optional, Tuple, Union
import httpx
from chartfeed.config import Settings, settings as default_settings
from chartfeed.core.aggregator import BarAggregator
from chartfeed.core.errors import ReconciliationFetchError, UnsupportedResolutionError
from chartfeed.core.logger import logger
from chartfeed.core.models import Bar
from chartfeed.core.reconciliation import ReconciliationGateway
from chartfeed.core.registry import BarCallback, Channel, SubscriptionRegistry
from chartfeed.core.resolution import SUPPORTED_RESOLUTIONS, is_supported, normalize_resolution
from chartfeed.core.symbols import ParsedSymbol, require_symbol
from chartfeed.connectors.base import ProviderAdapter
from chartfeed.connectors.stream import StreamConnection

SymbolInfo = Union[str, Dict[str, Any]]

SYMBOL_TYPES = [
    {"name": "forex", "value": "forex"},
    {"name": "crypto", "value": "crypto"},
]


def symbol_name(symbol_info: SymbolInfo) -> str:
    if isinstance(symbol_info, dict):
        return symbol_info.get("full_name") or symbol_info.get("ticker") or symbol_info.get("name") or ""
    return str(symbol_info)


def check_resolution(resolution: str) -> str:
    if not is_supported(resolution):
        raise UnsupportedResolutionError(
            f"Unsupported resolution {resolution!r}",
            {"resolution": resolution, "supported": SUPPORTED_RESOLUTIONS},
        )
    return normalize_resolution(resolution)


class Datafeed:
    """
    Charting library datafeed backed by one provider.

    Owns the subscription registry, bar aggregator, reconciliation gateway
    and streaming connection for that provider.
    """

    def __init__(self, adapter: ProviderAdapter, config: Optional[Settings] = None, connector=None):
        self.adapter = adapter
        self.config = config or default_settings

        self.registry = SubscriptionRegistry()
        self.gateway = ReconciliationGateway(
            adapter.history,
            self.registry,
            cooldown=self.config.RECONCILE_COOLDOWN,
            cache_ttl=self.config.RECONCILE_CACHE_TTL,
            sweep_interval=self.config.RECONCILE_SWEEP_INTERVAL,
        )
        self.aggregator = BarAggregator(self.registry, self.gateway)
        self.connection = StreamConnection(
            adapter,
            self.registry.channel_keys,
            reconnect_delay=self.config.RECONNECT_DELAY,
            max_reconnect_delay=self.config.RECONNECT_MAX_DELAY,
            max_attempts=self.config.RECONNECT_MAX_ATTEMPTS,
            heartbeat_timeout=self.config.HEARTBEAT_TIMEOUT,
            connector=connector,
        )
        self.registry.bind_upstream(self.connection)
        self.connection.add_listener(self.aggregator.on_tick)

        # Last history bar per (full name, resolution), seeds the live bar on subscribe
        self._last_bars: Dict[Tuple[str, str], Bar] = {}

    async def start(self):
        for problem in self.config.validate_provider():
            logger.warning(f"Config: {problem}", extra={"provider": self.adapter.name})
        await self.gateway.start()
        await self.connection.start()

    async def stop(self):
        await self.connection.stop()
        await self.gateway.stop()
        await self.aggregator.drain()
        await self.adapter.close()

    # --- Datafeed contract ---

    def on_ready(self) -> Dict[str, Any]:
        return {
            "supported_resolutions": SUPPORTED_RESOLUTIONS,
            "exchanges": self.adapter.exchanges,
            "symbols_types": SYMBOL_TYPES,
            "supports_marks": False,
            "supports_time": True,
        }

    def _parse(self, symbol_info: SymbolInfo) -> Tuple[ParsedSymbol, str]:
        parsed = require_symbol(symbol_name(symbol_info))
        return parsed, self.adapter.channel_key(parsed)

    def resolve_symbol(self, name: str) -> Dict[str, Any]:
        parsed, _ = self._parse(name)
        return {
            "ticker": parsed.full_name,
            "name": parsed.pair,
            "full_name": parsed.full_name,
            "description": f"{parsed.pair} on {parsed.exchange}",
            "type": self.adapter.symbol_type,
            "session": "24x7",
            "timezone": "Etc/UTC",
            "exchange": parsed.exchange,
            "listed_exchange": parsed.exchange,
            "minmov": 1,
            "pricescale": self.adapter.price_scale(parsed),
            "has_intraday": True,
            "has_weekly_and_monthly": True,
            "supported_resolutions": SUPPORTED_RESOLUTIONS,
            "volume_precision": 2,
            "data_status": "streaming",
        }

    async def get_bars(self, symbol_info: SymbolInfo, resolution: str, from_ts: int, to_ts: int,
                       first_data_request: bool = False) -> List[Bar]:
        """History for [from_ts, to_ts) in epoch seconds"""
        res = check_resolution(resolution)
        parsed, _ = self._parse(symbol_info)
        try:
            bars = await self.adapter.history.fetch_bars(parsed, res, int(from_ts), int(to_ts))
        except httpx.HTTPError as e:
            raise ReconciliationFetchError(f"History request failed: {e}", {"symbol": parsed.full_name})

        bars = [b for b in bars if from_ts * 1000 <= b.time < to_ts * 1000]
        if first_data_request and bars:
            self._last_bars[(parsed.full_name, res)] = bars[-1]
        logger.info(f"get_bars {parsed.full_name} {res}: {len(bars)} bars", extra={"resolution": res})
        return bars

    async def subscribe_bars(self, symbol_info: SymbolInfo, resolution: str, on_tick: BarCallback,
                             subscriber_id: str, on_reset_cache: Optional[Callable] = None) -> Channel:
        res = check_resolution(resolution)
        parsed, key = self._parse(symbol_info)
        last_bar = self._last_bars.get((parsed.full_name, res))
        return await self.registry.subscribe(
            key, parsed, res, subscriber_id, on_tick,
            on_reset_cache=on_reset_cache,
            last_bar=last_bar.model_copy() if last_bar else None,
        )

    async def unsubscribe_bars(self, subscriber_id: str):
        await self.registry.unsubscribe(subscriber_id)
