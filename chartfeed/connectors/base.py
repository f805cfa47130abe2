from abc import ABC, abstractmethod
from typing import Any, Dict, List, Sequence
from chartfeed.core.models import Bar, StreamEvent
from chartfeed.core.symbols import ParsedSymbol


class HistoricalBarsClient(ABC):
    @abstractmethod
    async def fetch_bars(self, symbol: ParsedSymbol, resolution: str, from_ts: int, to_ts: int) -> List[Bar]:
        """Bars whose start falls in [from_ts, to_ts] (epoch seconds), oldest first"""

    async def close(self):
        pass


class ProviderAdapter(ABC):
    """Everything provider specific: wire decoding, control frames, auth and history"""

    name: str = "provider"
    exchanges: List[Dict[str, str]] = []
    symbol_type: str = "crypto"

    def __init__(self, history: HistoricalBarsClient):
        self.history = history

    @abstractmethod
    def stream_url(self) -> str:
        pass

    def connect_headers(self) -> Dict[str, str]:
        return {}

    @abstractmethod
    def channel_key(self, symbol: ParsedSymbol) -> str:
        """Upstream channel identifier. Raises UnknownSymbolError if the provider cannot stream it."""

    @abstractmethod
    def decode_message(self, raw: Any) -> StreamEvent:
        """Normalize one inbound frame. Raises DecodeError on malformed input."""

    @abstractmethod
    def build_subscribe_frames(self, desired: Sequence[str], added: Sequence[str] = (),
                               removed: Sequence[str] = ()) -> List[Dict[str, Any]]:
        """
        Control frames that move the server to the `desired` key set.
        `added`/`removed` are the keys that changed since the last call.
        """

    def price_scale(self, symbol: ParsedSymbol) -> int:
        return 100

    async def close(self):
        await self.history.close()
