"""
Error taxonomy for the bar streaming core.

Parse/lookup failures are raised to the immediate caller. Connection,
decode and reconciliation failures are raised inside I/O code paths and
recovered (logged) by the connection loop or the reconciliation gateway.
"""
from typing import Any, Dict, Optional


class ChartFeedError(Exception):
    """Base exception carrying a machine readable code and details"""

    code = "chartfeed_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.code,
            "message": self.message,
            "details": self.details,
        }


class SymbolParseError(ChartFeedError):
    """Identifier does not match any known symbol shape"""
    code = "symbol_parse_error"


class UnknownSymbolError(ChartFeedError):
    """Symbol parsed but the active provider cannot stream it"""
    code = "unknown_symbol"


class UnsupportedResolutionError(ChartFeedError):
    code = "unsupported_resolution"


class FeedConnectionError(ChartFeedError, ConnectionError):
    """Transient streaming connection failure, always followed by a reconnect"""
    code = "connection_error"


class DecodeError(ChartFeedError):
    """Malformed inbound frame"""
    code = "decode_error"


class ReconciliationFetchError(ChartFeedError):
    """Historical bars request failed or the provider reported an error"""
    code = "reconciliation_fetch_error"


class DuplicateSubscriberError(ChartFeedError):
    """Handler id is already attached to a channel"""
    code = "duplicate_subscriber"
