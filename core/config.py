from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    # Market data (Binance spot, by failover priority)
    BINANCE_ENDPOINTS: List[str] = [
        "https://api.binance.com",
        "https://api1.binance.com",
        "https://api2.binance.com",
        "https://api3.binance.com",
    ]
    BINANCE_WS_URL: str = "wss://stream.binance.com:9443/stream"
    WEIGHT_LIMIT: int = 1200
    WEIGHT_WINDOW_S: float = 60.0
    REQUEST_TIMEOUT_S: float = 8.0

    SYMBOLS: List[str] = ["BTC/USDT", "ETH/USDT", "SOL/USDT"]
    TIMEFRAME: str = "1h"
    STRATEGY_ID: str = "bullish-candle"
    TRADING_MODE: str = "Paper"
    HISTORY_LIMIT: int = 500

    # Risk defaults (see engine.config.RiskSettings)
    TOTAL_CAPITAL: float = 10_000.0
    RISK_PER_TRADE_PCT: float = 1.0
    MAX_CONCURRENT_RISK_PCT: float = 5.0
    MAX_OPEN_POSITIONS: int = 5
    COMMISSION_PCT: float = 0.1
    SLIPPAGE_PCT: float = 0.05
    USE_FEE_DISCOUNT: bool = True
    SIZING_MODE: str = "percentRisk"
    FIXED_AMOUNT: float = 100.0
    TRAILING_STOP_PCT: float = 0.0
    EXIT_PRIORITY: str = "stop-first"
    CONFIRM_TRADES: bool = False

    # Optional settings with defaults
    DB_URL: Optional[str] = None
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        extra = "ignore"
