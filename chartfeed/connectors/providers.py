from typing import Dict, List, Type
from chartfeed.config import Settings
from chartfeed.connectors.base import ProviderAdapter
from chartfeed.connectors.cryptocompare import CryptoCompareAdapter, CryptoCompareREST
from chartfeed.connectors.mt5 import MT5Adapter, MT5REST

PROVIDERS: Dict[str, Type[ProviderAdapter]] = {
    "cryptocompare": CryptoCompareAdapter,
    "mt5": MT5Adapter,
}


def get_provider(name: str) -> Type[ProviderAdapter]:
    provider = PROVIDERS.get((name or "").lower())
    if provider is None:
        raise ValueError(f"Provider '{name}' not found. Available providers: {', '.join(PROVIDERS)}")
    return provider


def available_providers() -> List[str]:
    return list(PROVIDERS)


def is_provider_available(name: str) -> bool:
    return (name or "").lower() in PROVIDERS


def build_adapter(settings: Settings) -> ProviderAdapter:
    """Create the configured provider variant together with its history client"""
    provider = get_provider(settings.PROVIDER)
    if provider is CryptoCompareAdapter:
        history = CryptoCompareREST(
            base_url=settings.CRYPTOCOMPARE_BASE_URL,
            api_key=settings.CRYPTOCOMPARE_API_KEY,
            timeout=settings.HTTP_TIMEOUT,
        )
        return CryptoCompareAdapter(history, ws_url=settings.CRYPTOCOMPARE_WS_URL,
                                    api_key=settings.CRYPTOCOMPARE_API_KEY)
    history = MT5REST(
        base_url=settings.MT5_BASE_URL,
        api_key=settings.MT5_API_KEY,
        timeout=settings.HTTP_TIMEOUT,
        account_suffix=settings.MT5_ACCOUNT_SUFFIX,
    )
    return MT5Adapter(history, ws_url=settings.MT5_WS_URL, api_key=settings.MT5_API_KEY,
                      price_source=settings.MT5_PRICE_SOURCE, account_suffix=settings.MT5_ACCOUNT_SUFFIX)
