from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    APP_NAME: str = "ChartFeed"
    APP_VERSION: str = "0.1.0"
    LOG_LEVEL: str = "INFO"
    PROVIDER: str = Field(default="mt5", description="Market data provider: cryptocompare, mt5")
    HOST: str = "127.0.0.1"
    PORT: int = 8000

    # CryptoCompare
    CRYPTOCOMPARE_API_KEY: str = Field(default="", description="CryptoCompare API Key")
    CRYPTOCOMPARE_BASE_URL: str = "https://min-api.cryptocompare.com"
    CRYPTOCOMPARE_WS_URL: str = "wss://streamer.cryptocompare.com/v2"

    # MT5 broker gateway
    MT5_API_KEY: str = Field(default="", description="Bearer token for the MT5 gateway")
    MT5_BASE_URL: str = "http://localhost:3000"
    MT5_WS_URL: str = ""
    MT5_PRICE_SOURCE: str = Field(default="bid", description="Quote price used for bars: bid, mid, ask")
    MT5_ACCOUNT_SUFFIX: str = Field(default="s", description="Account type suffix appended to bare MT5 symbols")

    # Streaming connection
    RECONNECT_DELAY: float = 1.0
    RECONNECT_MAX_DELAY: float = 60.0
    RECONNECT_MAX_ATTEMPTS: int = Field(default=0, description="Consecutive failures before giving up, 0 = forever")
    HEARTBEAT_TIMEOUT: float = 60.0
    HTTP_TIMEOUT: float = 10.0

    # Reconciliation
    RECONCILE_COOLDOWN: float = 5.0
    RECONCILE_CACHE_TTL: float = 60.0
    RECONCILE_SWEEP_INTERVAL: float = 30.0

    # Chart defaults
    DEFAULT_SYMBOL: str = "EURUSD.s"
    DEFAULT_RESOLUTION: str = "1"

    # Chart websocket clients
    STREAM_CLIENT_QUEUE: int = Field(default=256, description="Outbound messages buffered per chart client before bars are dropped")

    @field_validator("PROVIDER", "MT5_PRICE_SOURCE", mode="before")
    @classmethod
    def lower_case(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    def validate_provider(self) -> List[str]:
        """Return the configuration problems of the active provider (empty when usable)"""
        errors = []
        if self.PROVIDER == "cryptocompare":
            if not self.CRYPTOCOMPARE_API_KEY:
                errors.append("CRYPTOCOMPARE_API_KEY is not configured")
            if not self.CRYPTOCOMPARE_BASE_URL:
                errors.append("CRYPTOCOMPARE_BASE_URL is not configured")
            if not self.CRYPTOCOMPARE_WS_URL:
                errors.append("CRYPTOCOMPARE_WS_URL is not configured")
        elif self.PROVIDER == "mt5":
            if not self.MT5_API_KEY:
                errors.append("MT5_API_KEY (Bearer token) is not configured")
            if not self.MT5_BASE_URL:
                errors.append("MT5_BASE_URL is not configured")
            if not self.MT5_WS_URL:
                errors.append("MT5_WS_URL is not configured")
            if self.MT5_PRICE_SOURCE not in ("bid", "mid", "ask"):
                errors.append(f"MT5_PRICE_SOURCE must be bid, mid or ask (got {self.MT5_PRICE_SOURCE})")
        else:
            errors.append(f"Unknown PROVIDER '{self.PROVIDER}'")
        return errors

settings = Settings()
