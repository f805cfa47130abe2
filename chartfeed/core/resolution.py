"""Bar width tokens and bucket alignment."""
from typing import Dict, Tuple

# "1M" is a 30-day approximation, buckets are not calendar months.
RESOLUTION_SECONDS: Dict[str, int] = {
    "1": 60,
    "5": 300,
    "15": 900,
    "30": 1800,
    "60": 3600,
    "240": 14400,
    "1D": 86400,
    "1W": 604800,
    "1M": 2592000,
}

SUPPORTED_RESOLUTIONS = list(RESOLUTION_SECONDS)

_ALIASES = {"D": "1D", "W": "1W", "M": "1M"}

# Fallback width for tick-stream call sites (aggregation, reconciliation ranges)
TICK_STREAM_DEFAULT_SECONDS = 60


def normalize_resolution(resolution: str) -> str:
    """Expand the bare D/W/M aliases (any case). Other tokens are case sensitive: "1m" is not "1M"."""
    token = str(resolution).strip()
    return _ALIASES.get(token.upper(), token)


def is_supported(resolution: str) -> bool:
    return normalize_resolution(resolution) in RESOLUTION_SECONDS


def to_bucket_seconds(resolution: str, default: int = TICK_STREAM_DEFAULT_SECONDS) -> int:
    return RESOLUTION_SECONDS.get(normalize_resolution(resolution), default)


def bucket_start(epoch_seconds: int, resolution: str, default: int = TICK_STREAM_DEFAULT_SECONDS) -> int:
    width = to_bucket_seconds(resolution, default)
    return (int(epoch_seconds) // width) * width


def bucket_start_ms(epoch_ms: int, resolution: str, default: int = TICK_STREAM_DEFAULT_SECONDS) -> int:
    return bucket_start(int(epoch_ms) // 1000, resolution, default) * 1000


def bucket_range(start_seconds: int, resolution: str, default: int = TICK_STREAM_DEFAULT_SECONDS) -> Tuple[int, int]:
    """Inclusive [start, end] second range of the bucket beginning at start_seconds"""
    width = to_bucket_seconds(resolution, default)
    return start_seconds, start_seconds + width - 1
