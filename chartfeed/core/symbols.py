"""
Canonical symbol identifiers.

Chart-side names look like ``Bitfinex:BTC/USDT`` or ``MT5:EUR/USD.s``.
The broker also hands out concatenated names (``EURUSD.s``, ``EURUSD``)
which are split into a 3-letter base and quote.
"""
import re
from typing import NamedTuple, Optional
from pydantic import BaseModel, ConfigDict

from chartfeed.core.errors import SymbolParseError

DEFAULT_EXCHANGE = "MT5"

_PAIR = re.compile(r"^(\w+):(\w+)/([A-Za-z0-9]+)(?:\.(\w+))?$")
_EXCHANGE_CONCAT = re.compile(r"^(\w+):([A-Za-z]{3})([A-Za-z]{3})(?:\.(\w+))?$")
_CONCAT = re.compile(r"^([A-Za-z]{3})([A-Za-z]{3})(?:\.(\w+))?$")


class SymbolName(NamedTuple):
    short: str
    full: str


class ParsedSymbol(BaseModel):
    model_config = ConfigDict(frozen=True)

    exchange: str
    base: str
    quote: str
    account_type: Optional[str] = None

    @property
    def quote_symbol(self) -> str:
        """Quote with its account suffix, e.g. ``USD.s``"""
        if self.account_type:
            return f"{self.quote}.{self.account_type}"
        return self.quote

    @property
    def pair(self) -> str:
        return f"{self.base}/{self.quote}"

    @property
    def full_name(self) -> str:
        return generate_symbol(self.exchange, self.base, self.quote_symbol).full

    def broker_symbol(self, default_suffix: Optional[str] = None) -> str:
        """Concatenated broker name, e.g. ``EURUSD.s``"""
        suffix = self.account_type or default_suffix
        if suffix:
            return f"{self.base}{self.quote}.{suffix}"
        return f"{self.base}{self.quote}"


def parse_full_symbol(full_symbol: str) -> Optional[ParsedSymbol]:
    """Split an identifier into its parts, or None if the shape is unknown"""
    if not isinstance(full_symbol, str):
        return None
    text = full_symbol.strip()

    match = _PAIR.match(text)
    if match:
        exchange, base, quote, account = match.groups()
        return ParsedSymbol(exchange=exchange, base=base, quote=quote, account_type=account)

    match = _EXCHANGE_CONCAT.match(text)
    if match:
        exchange, base, quote, account = match.groups()
        return ParsedSymbol(exchange=exchange, base=base.upper(), quote=quote.upper(), account_type=account)

    match = _CONCAT.match(text)
    if match:
        base, quote, account = match.groups()
        return ParsedSymbol(exchange=DEFAULT_EXCHANGE, base=base.upper(), quote=quote.upper(), account_type=account)

    return None


def require_symbol(full_symbol: str) -> ParsedSymbol:
    parsed = parse_full_symbol(full_symbol)
    if parsed is None:
        raise SymbolParseError(f"Invalid symbol format: {full_symbol!r}", {"symbol": full_symbol})
    return parsed


def generate_symbol(exchange: str, base: str, quote: str) -> SymbolName:
    short = f"{base}/{quote}"
    return SymbolName(short=short, full=f"{exchange}:{short}")
