import pytest
import json
import httpx
from unittest.mock import AsyncMock, MagicMock
from chartfeed.config import Settings
from chartfeed.connectors.cryptocompare import CryptoCompareAdapter
from chartfeed.core.errors import (
    ReconciliationFetchError, SymbolParseError, UnknownSymbolError, UnsupportedResolutionError,
)
from chartfeed.core.models import Bar
from chartfeed.core.symbols import parse_full_symbol
from chartfeed.datafeed import Datafeed, check_resolution, symbol_name

T0 = 1_699_999_980  # minute aligned
KEY = "2~Bitfinex~BTC~USDT"

def trade(price, ts, volume=1.0):
    return json.dumps({
        "TYPE": "2", "MARKET": "Bitfinex", "FROMSYMBOL": "BTC", "TOSYMBOL": "USDT",
        "PRICE": price, "LASTVOLUME": volume, "LASTUPDATE": ts,
    })

@pytest.fixture
def history():
    client = MagicMock()
    client.fetch_bars = AsyncMock(return_value=[])
    client.close = AsyncMock()
    return client

@pytest.fixture
def datafeed(history):
    cfg = Settings(PROVIDER="cryptocompare", CRYPTOCOMPARE_API_KEY="k", RECONCILE_COOLDOWN=5)
    adapter = CryptoCompareAdapter(history, ws_url="wss://stream.test/v2", api_key="k")
    return Datafeed(adapter, cfg)

def test_helpers():
    assert symbol_name("Bitfinex:BTC/USDT") == "Bitfinex:BTC/USDT"
    assert symbol_name({"full_name": "Kraken:ETH/USD", "name": "ETH/USD"}) == "Kraken:ETH/USD"
    assert symbol_name({"ticker": "Kraken:ETH/USD"}) == "Kraken:ETH/USD"
    assert check_resolution("d") == "1D"
    with pytest.raises(UnsupportedResolutionError):
        check_resolution("7")

def test_on_ready(datafeed):
    cfg = datafeed.on_ready()
    assert cfg["supported_resolutions"] == ["1", "5", "15", "30", "60", "240", "1D", "1W", "1M"]
    assert cfg["exchanges"][0]["value"] == "Bitfinex"
    assert cfg["supports_time"]

def test_resolve_symbol(datafeed):
    info = datafeed.resolve_symbol("Bitfinex:BTC/USDT")
    assert info["ticker"] == "Bitfinex:BTC/USDT"
    assert info["name"] == "BTC/USDT"
    assert info["exchange"] == "Bitfinex"
    assert info["type"] == "crypto"
    assert info["pricescale"] == 100

    with pytest.raises(SymbolParseError):
        datafeed.resolve_symbol("not a symbol!")
    with pytest.raises(UnknownSymbolError):
        datafeed.resolve_symbol("EURUSD.s")

@pytest.mark.asyncio
async def test_get_bars_filters_and_seeds_live_bar(datafeed, history):
    history.fetch_bars.return_value = [
        Bar(time=0, open=1, high=1, low=1, close=1),
        Bar(time=60_000, open=2, high=3, low=2, close=3, volume=4),
        Bar(time=120_000, open=3, high=3, low=3, close=3),
    ]

    bars = await datafeed.get_bars("Bitfinex:BTC/USDT", "1", 0, 120, first_data_request=True)

    assert [b.time for b in bars] == [0, 60_000]
    history.fetch_bars.assert_awaited_once_with(parse_full_symbol("Bitfinex:BTC/USDT"), "1", 0, 120)

    channel = await datafeed.subscribe_bars("Bitfinex:BTC/USDT", "1", MagicMock(), "chart-1")
    assert channel.live_bar == bars[-1]
    assert channel.live_bar is not bars[-1]

@pytest.mark.asyncio
async def test_get_bars_errors(datafeed, history):
    with pytest.raises(UnsupportedResolutionError):
        await datafeed.get_bars("Bitfinex:BTC/USDT", "7", 0, 60)

    history.fetch_bars.side_effect = httpx.ReadTimeout("slow")
    with pytest.raises(ReconciliationFetchError):
        await datafeed.get_bars("Bitfinex:BTC/USDT", "1", 0, 60)

@pytest.mark.asyncio
async def test_subscribe_rejects_foreign_symbol(datafeed):
    with pytest.raises(UnknownSymbolError):
        await datafeed.subscribe_bars("EURUSD.s", "1", MagicMock(), "chart-1")
    assert len(datafeed.registry) == 0

@pytest.mark.asyncio
async def test_stream_to_handlers_with_reconciliation(datafeed, history):
    history.fetch_bars.return_value = [Bar(time=T0 * 1000, open=100, high=111, low=99, close=109, volume=5)]
    chart_a, chart_b = [], []
    await datafeed.subscribe_bars("Bitfinex:BTC/USDT", "1", chart_a.append, "a")
    await datafeed.subscribe_bars({"full_name": "Bitfinex:BTC/USDT"}, "1", chart_b.append, "b")
    assert datafeed.registry.channel_keys() == [KEY]

    conn = datafeed.connection
    await conn._handle_message(trade(100, T0 + 5))
    await conn._handle_message(trade(110, T0 + 30))
    await conn._handle_message(trade(105, T0 + 65))
    await datafeed.aggregator.drain()

    history.fetch_bars.assert_awaited_once_with(parse_full_symbol("Bitfinex:BTC/USDT"), "1", T0, T0 + 59)

    live = [b for b in chart_a if b.time == (T0 + 60) * 1000]
    assert live[0].open == 105

    reconciled = [b for b in chart_a if b.close == 109]
    assert len(reconciled) == 1
    assert reconciled[0].time == T0 * 1000
    assert len(chart_b) == len(chart_a)

    # Live bar is not replaced by the reconciled one
    channel = datafeed.registry.get(KEY)
    assert channel.live_bar.time == (T0 + 60) * 1000
    assert channel.last_reconciled_bucket == T0 * 1000

@pytest.mark.asyncio
async def test_unsubscribe_tears_down(datafeed):
    await datafeed.subscribe_bars("Bitfinex:BTC/USDT", "1", MagicMock(), "a")
    await datafeed.unsubscribe_bars("a")
    await datafeed.unsubscribe_bars("a")
    assert len(datafeed.registry) == 0

@pytest.mark.asyncio
async def test_start_stop(datafeed, history):
    datafeed.connection.start = AsyncMock()
    datafeed.connection.stop = AsyncMock()

    await datafeed.start()
    assert datafeed.gateway.is_running
    datafeed.connection.start.assert_awaited_once()

    await datafeed.stop()
    assert not datafeed.gateway.is_running
    datafeed.connection.stop.assert_awaited_once()
    history.close.assert_awaited_once()
