import json
import math
from typing import Any, Dict, List, Optional, Sequence
import httpx
from chartfeed.config import settings
from chartfeed.core.errors import DecodeError, ReconciliationFetchError, UnknownSymbolError
from chartfeed.core.logger import logger
from chartfeed.core.models import AuthResult, Bar, Heartbeat, RateLimitWarning, StreamEvent, Tick, Unrecognized
from chartfeed.core.resolution import normalize_resolution, to_bucket_seconds
from chartfeed.core.symbols import DEFAULT_EXCHANGE, ParsedSymbol
from chartfeed.connectors.base import HistoricalBarsClient, ProviderAdapter

# Streamer v2 message TYPEs
TYPE_TRADE = 2
TYPE_WELCOME = 20
TYPE_UNAUTHORIZED = 401
TYPE_RATE_LIMIT = 429
TYPE_HEARTBEAT = 999

# resolution -> (endpoint, aggregate)
HISTORY_ENDPOINTS = {
    "1": ("histominute", 1),
    "5": ("histominute", 5),
    "15": ("histominute", 15),
    "30": ("histominute", 30),
    "60": ("histohour", 1),
    "240": ("histohour", 4),
    "1D": ("histoday", 1),
    "1W": ("histoday", 7),
    "1M": ("histoday", 30),
}

MAX_LIMIT = 2000


class CryptoCompareREST(HistoricalBarsClient):
    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None,
                 timeout: Optional[float] = None):
        self.base_url = (base_url or settings.CRYPTOCOMPARE_BASE_URL).rstrip("/")
        self.api_key = settings.CRYPTOCOMPARE_API_KEY if api_key is None else api_key
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=settings.HTTP_TIMEOUT if timeout is None else timeout,
        )

    async def _request(self, endpoint: str, params: Dict[str, Any]) -> Dict[str, Any]:
        if self.api_key:
            params["api_key"] = self.api_key
        else:
            logger.warning("CRYPTOCOMPARE_API_KEY not configured. API calls may be rate limited.")

        try:
            response = await self.client.get(endpoint, params=params)
            if response.status_code >= 400:
                logger.error(f"CryptoCompare API Error {response.status_code}: {response.text}")
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            logger.error(f"CryptoCompare request error: {e}")
            raise
        except ValueError as e:
            raise ReconciliationFetchError(f"CryptoCompare returned invalid JSON: {e}")

        if data.get("Response") == "Error":
            raise ReconciliationFetchError(
                f"CryptoCompare error: {data.get('Message', 'Unknown error')}",
                {"endpoint": endpoint},
            )
        return data

    async def fetch_bars(self, symbol: ParsedSymbol, resolution: str, from_ts: int, to_ts: int) -> List[Bar]:
        res = normalize_resolution(resolution)
        endpoint, aggregate = HISTORY_ENDPOINTS.get(res, HISTORY_ENDPOINTS["1"])
        width = to_bucket_seconds(res)
        limit = max(1, min(MAX_LIMIT, math.ceil((to_ts - from_ts + 1) / width)))

        params = {
            "fsym": symbol.base,
            "tsym": symbol.quote,
            "toTs": int(to_ts),
            "limit": limit,
            "aggregate": aggregate,
        }
        if symbol.exchange and symbol.exchange != DEFAULT_EXCHANGE:
            params["e"] = symbol.exchange

        data = await self._request(f"/data/v2/{endpoint}", params)
        return parse_history(data, from_ts, to_ts)

    async def close(self):
        await self.client.aclose()


def parse_history(data: Dict[str, Any], from_ts: int, to_ts: int) -> List[Bar]:
    """Convert a histo* response into bars within [from_ts, to_ts]"""
    rows = data.get("Data") or []
    if isinstance(rows, dict):
        rows = rows.get("Data") or []

    bars = []
    for candle in rows:
        try:
            t = int(candle["time"])
            if not (from_ts <= t <= to_ts):
                continue
            bars.append(Bar(
                time=t * 1000,
                open=float(candle["open"]),
                high=float(candle["high"]),
                low=float(candle["low"]),
                close=float(candle["close"]),
                volume=float(candle.get("volumefrom") or 0.0),
            ))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Skipping malformed CryptoCompare candle {candle}: {e}")
    bars.sort(key=lambda b: b.time)
    return bars


class CryptoCompareAdapter(ProviderAdapter):
    name = "cryptocompare"
    symbol_type = "crypto"
    exchanges = [
        {"value": "Bitfinex", "name": "Bitfinex", "desc": "Bitfinex"},
        {"value": "Kraken", "name": "Kraken", "desc": "Kraken bitcoin exchange"},
        {"value": "Coinbase", "name": "Coinbase", "desc": "Coinbase"},
    ]

    def __init__(self, history: Optional[HistoricalBarsClient] = None, ws_url: Optional[str] = None,
                 api_key: Optional[str] = None):
        super().__init__(history or CryptoCompareREST())
        self.ws_url = ws_url or settings.CRYPTOCOMPARE_WS_URL
        self.api_key = settings.CRYPTOCOMPARE_API_KEY if api_key is None else api_key

    def stream_url(self) -> str:
        if not self.ws_url:
            return ""
        if self.api_key:
            return f"{self.ws_url}?api_key={self.api_key}"
        return self.ws_url

    def channel_key(self, symbol: ParsedSymbol) -> str:
        if symbol.exchange == DEFAULT_EXCHANGE:
            raise UnknownSymbolError(
                f"{symbol.full_name} has no crypto exchange; use EXCHANGE:BASE/QUOTE",
                {"symbol": symbol.full_name},
            )
        return f"{TYPE_TRADE}~{symbol.exchange}~{symbol.base}~{symbol.quote}"

    def decode_message(self, raw: Any) -> StreamEvent:
        try:
            data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
        except ValueError as e:
            raise DecodeError(f"Invalid JSON: {e}")
        if not isinstance(data, dict):
            raise DecodeError(f"Unexpected frame: {raw!r}")

        try:
            event_type = int(data.get("TYPE"))
        except (TypeError, ValueError):
            return Unrecognized(feed=self.name, raw=data)

        if event_type == TYPE_HEARTBEAT:
            return Heartbeat(feed=self.name)
        if event_type == TYPE_RATE_LIMIT:
            return RateLimitWarning(feed=self.name, message=str(data.get("MESSAGE", "")))
        if event_type == TYPE_WELCOME:
            return AuthResult(feed=self.name, success=True, message=str(data.get("MESSAGE", "")))
        if event_type == TYPE_UNAUTHORIZED:
            return AuthResult(feed=self.name, success=False, message=str(data.get("MESSAGE", "")))
        if event_type != TYPE_TRADE:
            return Unrecognized(feed=self.name, raw=data)

        exchange = data.get("MARKET")
        from_symbol = data.get("FROMSYMBOL")
        to_symbol = data.get("TOSYMBOL")
        price_raw = data.get("PRICE")
        time_raw = data.get("LASTUPDATE")
        if not (exchange and from_symbol and to_symbol) or price_raw is None or time_raw is None:
            # Partial updates without a trade price
            return Unrecognized(feed=self.name, raw=data)

        try:
            price = float(price_raw)
            trade_time = int(time_raw)
            volume = float(data.get("LASTVOLUME") or 0.0)
        except (TypeError, ValueError) as e:
            raise DecodeError(f"Bad trade fields: {e}")
        if math.isnan(price):
            raise DecodeError("Trade price is NaN")

        return Tick(
            symbol=f"{TYPE_TRADE}~{exchange}~{from_symbol}~{to_symbol}",
            price=price,
            volume=volume,
            timestamp=trade_time * 1000,
            feed=self.name,
        )

    def build_subscribe_frames(self, desired: Sequence[str], added: Sequence[str] = (),
                               removed: Sequence[str] = ()) -> List[Dict[str, Any]]:
        frames = []
        if added:
            frames.append({"action": "SubAdd", "subs": list(added)})
        if removed:
            frames.append({"action": "SubRemove", "subs": list(removed)})
        return frames

    def price_scale(self, symbol: ParsedSymbol) -> int:
        if symbol.quote in ("USD", "USDT", "USDC", "EUR", "GBP"):
            return 100
        return 100000000
