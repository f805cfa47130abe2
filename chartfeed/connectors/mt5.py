import json
import math
from typing import Any, Dict, List, Optional, Sequence
import httpx
from chartfeed.config import settings
from chartfeed.core.errors import DecodeError, ReconciliationFetchError, UnknownSymbolError
from chartfeed.core.logger import logger
from chartfeed.core.models import AuthResult, Bar, Heartbeat, StreamEvent, Tick, Unrecognized
from chartfeed.core.resample import resample_bars
from chartfeed.core.symbols import DEFAULT_EXCHANGE, ParsedSymbol
from chartfeed.connectors.base import HistoricalBarsClient, ProviderAdapter

PRICE_SOURCES = ("bid", "mid", "ask")
TICK_EVENTS = ("mt5_events_tick", "tick")
HEARTBEAT_EVENTS = ("heartbeat", "ping", "pong")


def bearer(api_key: str) -> str:
    if not api_key:
        return ""
    return api_key if api_key.startswith("Bearer ") else f"Bearer {api_key}"


class MT5REST(HistoricalBarsClient):
    """Broker gateway REST API. Only M1 history is served; wider bars are resampled locally."""

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None,
                 timeout: Optional[float] = None, account_suffix: Optional[str] = None):
        self.base_url = (base_url or settings.MT5_BASE_URL).rstrip("/")
        self.api_key = settings.MT5_API_KEY if api_key is None else api_key
        self.account_suffix = settings.MT5_ACCOUNT_SUFFIX if account_suffix is None else account_suffix
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=settings.HTTP_TIMEOUT if timeout is None else timeout,
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = bearer(self.api_key)
        else:
            logger.warning("MT5_API_KEY not configured")
        return headers

    async def _request(self, endpoint: str, params: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self.client.get(endpoint, params=params, headers=self._headers())
            if response.status_code >= 400:
                logger.error(f"MT5 API Error {response.status_code}: {response.text}")
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            logger.error(f"MT5 request error: {e}")
            raise
        except ValueError as e:
            raise ReconciliationFetchError(f"MT5 returned invalid JSON: {e}")

        if not isinstance(data, dict) or data.get("status") != 0:
            message = data.get("message") if isinstance(data, dict) else None
            raise ReconciliationFetchError(f"MT5 API Error: {message or 'Unknown error'}", {"endpoint": endpoint})
        return data

    async def fetch_m1(self, symbol: ParsedSymbol, from_ts: int, to_ts: int) -> List[Bar]:
        data = await self._request("/forex/m1-history", {
            "symbol": symbol.broker_symbol(self.account_suffix),
            "from": int(from_ts),
            "to": int(to_ts),
            "data": "dohlc",
        })
        return parse_dohlc(data)

    async def fetch_bars(self, symbol: ParsedSymbol, resolution: str, from_ts: int, to_ts: int) -> List[Bar]:
        m1 = [b for b in await self.fetch_m1(symbol, from_ts, to_ts) if from_ts * 1000 <= b.time <= to_ts * 1000]
        return resample_bars(m1, resolution)

    async def close(self):
        await self.client.aclose()


def parse_dohlc(response: Dict[str, Any]) -> List[Bar]:
    """Rows of ``[timestamp, open, high, low, close]`` (seconds) into bars"""
    answer = (response.get("result") or {}).get("answer")
    if answer is None:
        raise ReconciliationFetchError("Invalid MT5 API response structure")
    if not isinstance(answer, list):
        raise ReconciliationFetchError("MT5 data must be an array")

    bars = []
    for candle in answer:
        if not isinstance(candle, (list, tuple)) or len(candle) < 5:
            logger.warning(f"Skipping invalid MT5 candle: {candle}")
            continue
        timestamp, o, h, l, c = candle[:5]
        try:
            bars.append(Bar(time=int(timestamp) * 1000, open=float(o), high=float(h), low=float(l), close=float(c)))
        except (TypeError, ValueError) as e:
            logger.warning(f"Skipping invalid MT5 candle {candle}: {e}")
    bars.sort(key=lambda b: b.time)
    return bars


class MT5Adapter(ProviderAdapter):
    """
    Broker forex feed. Frames are JSON envelopes ``{"event": ..., "data": ...}``;
    ticks carry Bid/Ask quotes and the representative price follows
    `price_source` (bid by default, like the terminal's charts).
    """

    name = "mt5"
    symbol_type = "forex"
    exchanges = [{"value": "MT5", "name": "MetaTrader 5", "desc": "MT5 Trading Platform"}]

    def __init__(self, history: Optional[HistoricalBarsClient] = None, ws_url: Optional[str] = None,
                 api_key: Optional[str] = None, price_source: Optional[str] = None,
                 account_suffix: Optional[str] = None):
        super().__init__(history or MT5REST())
        self.ws_url = settings.MT5_WS_URL if ws_url is None else ws_url
        self.api_key = settings.MT5_API_KEY if api_key is None else api_key
        self.price_source = (price_source or settings.MT5_PRICE_SOURCE).lower()
        if self.price_source not in PRICE_SOURCES:
            raise ValueError(f"price_source must be one of {PRICE_SOURCES}, got {self.price_source!r}")
        self.account_suffix = settings.MT5_ACCOUNT_SUFFIX if account_suffix is None else account_suffix

    def stream_url(self) -> str:
        return self.ws_url

    def connect_headers(self) -> Dict[str, str]:
        if not self.api_key:
            return {}
        return {"Authorization": bearer(self.api_key)}

    def channel_key(self, symbol: ParsedSymbol) -> str:
        if symbol.exchange != DEFAULT_EXCHANGE:
            raise UnknownSymbolError(f"{symbol.full_name} is not an MT5 symbol", {"symbol": symbol.full_name})
        return symbol.broker_symbol(self.account_suffix)

    def representative_price(self, bid: float, ask: float) -> float:
        if self.price_source == "ask":
            return ask
        if self.price_source == "mid":
            return (bid + ask) / 2
        return bid

    def decode_message(self, raw: Any) -> StreamEvent:
        try:
            frame = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
        except ValueError as e:
            raise DecodeError(f"Invalid JSON: {e}")
        if not isinstance(frame, dict):
            raise DecodeError(f"Unexpected frame: {raw!r}")

        event = frame.get("event")
        data = frame.get("data")

        if event in HEARTBEAT_EVENTS:
            return Heartbeat(feed=self.name)

        if event == "auth":
            payload = data if isinstance(data, dict) else {}
            return AuthResult(
                feed=self.name,
                success=payload.get("status") == "success",
                message=str(payload.get("message") or ""),
            )

        if event in TICK_EVENTS and isinstance(data, dict):
            # Either {"Payload": {"Type": "Tick", "Data": {...}}} or {"Type": "Tick", "Data": {...}}
            payload = data.get("Payload") if isinstance(data.get("Payload"), dict) else data
            if payload.get("Type") == "Tick" and payload.get("Data") is not None:
                return self._decode_tick(payload["Data"])

        return Unrecognized(feed=self.name, raw=frame)

    def _decode_tick(self, tick: Any) -> Tick:
        if not isinstance(tick, dict):
            raise DecodeError(f"Invalid tick: {tick!r}")

        symbol = tick.get("Symbol")
        ask = tick.get("Ask")
        bid = tick.get("Bid")
        seconds = tick.get("Datetime")
        millis = tick.get("Datetime_Msc")
        volume = tick.get("Volume")

        if not symbol or not _is_number(ask) or not _is_number(bid) or not (_is_number(seconds) or _is_number(millis)):
            raise DecodeError(f"Invalid tick: {tick!r}")

        ts_ms = int(millis) if _is_number(millis) else int(seconds) * 1000
        return Tick(
            symbol=symbol,
            price=self.representative_price(float(bid), float(ask)),
            volume=float(volume) if _is_number(volume) else 0.0,
            timestamp=ts_ms,
            bid=float(bid),
            ask=float(ask),
            feed=self.name,
        )

    def build_subscribe_frames(self, desired: Sequence[str], added: Sequence[str] = (),
                               removed: Sequence[str] = ()) -> List[Dict[str, Any]]:
        # The gateway takes the complete list every time
        if not added and not removed:
            return []
        return [{"event": "subscribe_symbol", "data": list(desired)}]

    def price_scale(self, symbol: ParsedSymbol) -> int:
        if "JPY" in (symbol.base, symbol.quote):
            return 1000
        return 100000


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and not math.isnan(value)
