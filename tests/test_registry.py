import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from chartfeed.core.errors import DuplicateSubscriberError
from chartfeed.core.models import Bar
from chartfeed.core.registry import SubscriptionRegistry
from chartfeed.core.symbols import parse_full_symbol

KEY = "2~Bitfinex~BTC~USDT"
SYMBOL = parse_full_symbol("Bitfinex:BTC/USDT")

def make_registry():
    upstream = MagicMock()
    upstream.add_symbol = AsyncMock()
    upstream.remove_symbol = AsyncMock()
    return SubscriptionRegistry(upstream), upstream

@pytest.mark.asyncio
async def test_one_upstream_subscription_per_channel():
    registry, upstream = make_registry()

    c1 = await registry.subscribe(KEY, SYMBOL, "1", "a", MagicMock())
    c2 = await registry.subscribe(KEY, SYMBOL, "1", "b", MagicMock())

    assert c1 is c2
    assert c1.handler_ids() == ["a", "b"]
    assert len(registry) == 1
    assert KEY in registry
    upstream.add_symbol.assert_awaited_once_with(KEY)

@pytest.mark.asyncio
async def test_last_unsubscribe_tears_down():
    registry, upstream = make_registry()
    await registry.subscribe(KEY, SYMBOL, "1", "a", MagicMock())
    await registry.subscribe(KEY, SYMBOL, "1", "b", MagicMock())

    assert await registry.unsubscribe("a") is None
    upstream.remove_symbol.assert_not_called()
    assert registry.get(KEY).handler_ids() == ["b"]

    assert await registry.unsubscribe("b") == KEY
    upstream.remove_symbol.assert_awaited_once_with(KEY)
    assert len(registry) == 0
    assert registry.channel_keys() == []

@pytest.mark.asyncio
async def test_unknown_unsubscribe_is_noop():
    registry, upstream = make_registry()
    await registry.subscribe(KEY, SYMBOL, "1", "a", MagicMock())

    assert await registry.unsubscribe("ghost") is None
    assert registry.get(KEY).handler_ids() == ["a"]
    upstream.remove_symbol.assert_not_called()

@pytest.mark.asyncio
async def test_resubscribe_after_teardown():
    registry, upstream = make_registry()
    await registry.subscribe(KEY, SYMBOL, "1", "a", MagicMock())
    await registry.unsubscribe("a")
    await registry.subscribe(KEY, SYMBOL, "1", "a", MagicMock())

    assert upstream.add_symbol.await_count == 2
    assert registry.get(KEY).live_bar is None

@pytest.mark.asyncio
async def test_resolution_mismatch_joins_with_warning():
    registry, upstream = make_registry()
    await registry.subscribe(KEY, SYMBOL, "1", "a", MagicMock())

    with patch("chartfeed.core.registry.logger") as mock_logger:
        channel = await registry.subscribe(KEY, SYMBOL, "60", "b", MagicMock())

    assert channel.resolution == "1"
    assert channel.handler_ids() == ["a", "b"]
    mock_logger.warning.assert_called_once()

@pytest.mark.asyncio
async def test_notify_fans_out_in_order():
    registry, _ = make_registry()
    calls = []

    async def async_handler(bar):
        calls.append(("async", bar.close))

    await registry.subscribe(KEY, SYMBOL, "1", "a", lambda bar: calls.append(("sync", bar.close)))
    channel = await registry.subscribe(KEY, SYMBOL, "1", "b", async_handler)

    await registry.notify(channel, Bar(time=0, open=1, high=2, low=1, close=2))

    assert calls == [("sync", 2), ("async", 2)]

@pytest.mark.asyncio
async def test_failing_handler_does_not_block_others():
    registry, _ = make_registry()
    good = MagicMock()

    def bad(bar):
        raise RuntimeError("chart gone")

    await registry.subscribe(KEY, SYMBOL, "1", "bad", bad)
    channel = await registry.subscribe(KEY, SYMBOL, "1", "good", good)

    with patch("chartfeed.core.registry.logger") as mock_logger:
        await registry.notify(channel, Bar(time=0, open=1, high=1, low=1, close=1))

    good.assert_called_once()
    mock_logger.error.assert_called_once()

@pytest.mark.asyncio
async def test_reset_callbacks_tracked():
    registry, _ = make_registry()
    reset = MagicMock()
    channel = await registry.subscribe(KEY, SYMBOL, "1", "a", MagicMock(), on_reset_cache=reset)

    assert channel.reset_callbacks == {"a": reset}
    assert registry.find_handler("a") is channel

    await registry.subscribe(KEY, SYMBOL, "1", "b", MagicMock())
    await registry.unsubscribe("a")
    assert channel.reset_callbacks == {}
    reset.assert_not_called()

@pytest.mark.asyncio
async def test_reused_handler_id_on_other_channel_rejected():
    registry, upstream = make_registry()
    await registry.subscribe(KEY, SYMBOL, "1", "c:1", MagicMock())

    with pytest.raises(DuplicateSubscriberError) as exc:
        await registry.subscribe("2~Kraken~ETH~USD", parse_full_symbol("Kraken:ETH/USD"), "1", "c:1", MagicMock())
    assert exc.value.details["channel"] == KEY
    assert registry.channel_keys() == [KEY]
    upstream.add_symbol.assert_awaited_once_with(KEY)

    await registry.unsubscribe("c:1")
    assert registry.channel_keys() == []
    upstream.remove_symbol.assert_awaited_once_with(KEY)

@pytest.mark.asyncio
async def test_reused_handler_id_on_same_channel_delivers_once():
    registry, _ = make_registry()
    handler = MagicMock()
    channel = await registry.subscribe(KEY, SYMBOL, "1", "c:1", handler)

    with pytest.raises(DuplicateSubscriberError):
        await registry.subscribe(KEY, SYMBOL, "1", "c:1", handler)

    await registry.notify(channel, Bar(time=0, open=1, high=1, low=1, close=1))
    assert handler.call_count == 1
    assert channel.handler_ids() == ["c:1"]
