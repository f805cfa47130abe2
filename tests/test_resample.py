import pytest
from chartfeed.core.models import Bar
from chartfeed.core.resample import bars_to_frame, resample_bars

def minute_bars(start, closes, volume=1.0):
    return [
        Bar(time=(start + i * 60) * 1000, open=c, high=c + 1, low=c - 1, close=c, volume=volume)
        for i, c in enumerate(closes)
    ]

def test_frame_index_is_utc():
    df = bars_to_frame(minute_bars(0, [10, 11]))
    assert str(df.index.tz) == "UTC"
    assert list(df.columns) == ["open", "high", "low", "close", "volume"]
    assert df["close"].iloc[-1] == 11

def test_minute_resolution_passthrough():
    bars = list(reversed(minute_bars(0, [1, 2, 3])))
    out = resample_bars(bars, "1")
    assert [b.time for b in out] == [0, 60_000, 120_000]

def test_fold_into_hour_buckets():
    # 90 minutes starting half an hour into an epoch-aligned hour
    start = 1_700_002_800 - 1800
    closes = list(range(100, 190))
    out = resample_bars(minute_bars(start, closes), "60")

    assert [b.time for b in out] == [1_699_999_200_000, 1_700_002_800_000]
    first, second = out
    assert first.open == 100
    assert first.close == 129
    assert first.high == 130
    assert first.low == 99
    assert first.volume == 30
    assert second.open == 130
    assert second.close == 189
    assert second.volume == 60

def test_gaps_are_dropped():
    bars = minute_bars(0, [1, 2]) + minute_bars(900, [5])
    out = resample_bars(bars, "5")
    assert [b.time for b in out] == [0, 900_000]

def test_empty():
    assert resample_bars([], "60") == []
