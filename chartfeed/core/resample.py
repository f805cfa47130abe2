from typing import List
import pandas as pd
from chartfeed.core.models import Bar
from chartfeed.core.resolution import to_bucket_seconds

def bars_to_frame(bars: List[Bar]) -> pd.DataFrame:
    df = pd.DataFrame(
        [b.model_dump() for b in bars],
        columns=["time", "open", "high", "low", "close", "volume"],
    )
    df.index = pd.to_datetime(df.pop("time"), unit="ms", utc=True)
    df.index.name = "time"
    return df.sort_index()

def resample_bars(bars: List[Bar], resolution: str) -> List[Bar]:
    """
    Fold finer bars (broker M1 history) into `resolution` buckets.
    Buckets are anchored at the Unix epoch, matching the live aggregator.
    """
    if not bars:
        return []
    seconds = to_bucket_seconds(resolution)
    if seconds <= 60:
        return sorted(bars, key=lambda b: b.time)

    df = bars_to_frame(bars)
    out = df.resample(f"{seconds}s", origin="epoch", label="left", closed="left").agg({
        "open": "first",
        "high": "max",
        "low": "min",
        "close": "last",
        "volume": "sum",
    }).dropna(subset=["open"])

    return [
        Bar(
            time=int(row.Index.timestamp()) * 1000,
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=float(row.volume),
        )
        for row in out.itertuples()
    ]
