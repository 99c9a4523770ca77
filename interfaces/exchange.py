from __future__ import annotations
from typing import Callable, Optional, Protocol, TYPE_CHECKING
from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from engine.models import Candle

ProgressCallback = Callable[[int, int], None]  # (candles fetched, oldest open time)


class Kline(BaseModel):
    """`k` object of a Binance kline stream event (prices arrive as strings)."""
    t: int; o: float; h: float; l: float; c: float; v: float
    x: bool = False
    i: str = ""


class KlineEvent(BaseModel):
    s: str
    k: Kline


class Ticker24h(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    symbol: str
    last_price: float = Field(alias="lastPrice")
    price_change_percent: float = Field(0.0, alias="priceChangePercent")
    quote_volume: float = Field(0.0, alias="quoteVolume")


class MarketDataSource(Protocol):
    async def fetch_candles(self, pair: str, timeframe: str, limit: int = 1000,
                            end_time: Optional[int] = None) -> list[Candle]: ...
    async def fetch_all_candles(self, pair: str, timeframe: str, period: str = "3m",
                                on_progress: Optional[ProgressCallback] = None) -> list[Candle]: ...
