from pydantic import BaseModel, Field, field_validator, model_validator
from datetime import datetime, timezone
from typing import Any, Optional, Union

# Epoch values below this are treated as seconds, above as milliseconds
_MS_THRESHOLD = 100_000_000_000

def to_epoch_ms(value: Any) -> int:
    """Convert a datetime, epoch seconds or epoch milliseconds into epoch ms"""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    if isinstance(value, bool):
        raise ValueError("timestamp must be numeric or datetime")
    if isinstance(value, str):
        value = float(value)
    if isinstance(value, (int, float)):
        if abs(value) < _MS_THRESHOLD:
            return int(value * 1000)
        return int(value)
    raise ValueError(f"Unsupported timestamp: {value!r}")

def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)

class Tick(BaseModel):
    """One normalized market update (trade or quote)"""
    symbol: str  # provider channel key
    price: float
    volume: float = 0.0
    timestamp: int = Field(default_factory=now_ms)  # epoch ms
    bid: Optional[float] = None
    ask: Optional[float] = None
    feed: str = "cryptocompare"

    @field_validator("timestamp", mode="before")
    @classmethod
    def normalize_timestamp(cls, v):
        return to_epoch_ms(v)

    @field_validator("volume", mode="before")
    @classmethod
    def default_volume(cls, v):
        return 0.0 if v is None else v

class Bar(BaseModel):
    """OHLCV bar; `time` is the bucket start in epoch ms"""
    time: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    @model_validator(mode="after")
    def check_range(self):
        if not (self.low <= self.open <= self.high and self.low <= self.close <= self.high):
            raise ValueError(
                f"Inconsistent bar at {self.time}: O={self.open} H={self.high} L={self.low} C={self.close}"
            )
        return self

    @classmethod
    def from_tick(cls, tick: Tick, bucket_ms: int) -> "Bar":
        return cls(
            time=bucket_ms,
            open=tick.price,
            high=tick.price,
            low=tick.price,
            close=tick.price,
            volume=tick.volume,
        )

    def apply(self, price: float, volume: float = 0.0):
        """Fold a same-bucket trade into the bar. Open is never touched."""
        self.high = max(self.high, price)
        self.low = min(self.low, price)
        self.close = price
        self.volume += volume

# --- Inbound stream events ---

class Heartbeat(BaseModel):
    feed: str

class RateLimitWarning(BaseModel):
    feed: str
    message: str = ""

class AuthResult(BaseModel):
    feed: str
    success: bool
    message: str = ""

class Unrecognized(BaseModel):
    feed: str
    raw: Any = None

StreamEvent = Union[Tick, Heartbeat, RateLimitWarning, AuthResult, Unrecognized]
