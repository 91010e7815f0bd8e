from pydantic_settings import BaseSettings
from typing import Optional

class Settings(BaseSettings):
    # Courtier (transport HTTP via le proxy de signature)
    BROKER_BASE_URL: str = "http://localhost:3000"
    BROKER_ACCESS_TOKEN: str = ""
    BROKER_DEVICE_ID: str = ""
    BROKER_TRADE_TOKEN: Optional[str] = None
    BROKER_ACCOUNT_ID: str = ""
    TRADING_MODE: str = "PAPER"

    # Instrument suivi
    SYMBOL: str = "SPY"
    TICKER_ID: str = "913243251"

    # Moteur de sortie
    SLIPPAGE_RATIO: float = 0.05
    TICK_SIZE: float = 0.01
    AUTO_EXIT_INTERVAL_MS: int = 50
    ORDER_UPDATE_TIMEOUT_MS: int = 500
    EVENT_STREAM_URL: Optional[str] = "ws://localhost:3001/webull-events"
    EMERGENCY_FLATTEN_ON_DISCONNECT: bool = False
    CORRECTION_TIMEOUT_S: float = 2.0

    # Bougies / persistance
    STORAGE_PATH: str = "data/autoexit_store.json"
    CANDLE_SNAPSHOT_INTERVAL_S: int = 300
    POLL_INTERVAL_MS: int = 250

    # Divers
    LOG_LEVEL: str = "INFO"
    API_URL: str = "http://localhost:8000"
    API_ENABLED: bool = False
    API_HOST: str = "127.0.0.1"
    API_PORT: int = 8000

    class Config:
        env_file = ".env"
        extra = "ignore"

def load_config() -> Settings:
    """Charge la configuration depuis l'environnement et le fichier .env."""
    return Settings()
