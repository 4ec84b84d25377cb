"""Hermes: the default analysis plugin.

Scores the direction of consecutive closing prices and compares the current
price with an exponential moving average of the series. The trade mode decides
how the two are read:

    trend  position   CONTRARIAN   TREND_FOLLOWING
    down   above      GO_LONG      SHORT_SELL
    down   below      SHORT_SELL   GO_LONG
    up     above      SHORT_SELL   GO_LONG
    up     below      GO_LONG      SHORT_SELL

A flat trend, or a price sitting exactly on the average, yields WAIT.
"""
from datetime import timedelta
from decimal import Decimal
from typing import List, Sequence, Tuple

from ..models import Signal, TradeMode
from ..signals import SignalSource

# SimpleEWMA over a 30 sample age: alpha = 2 / (age + 1)
EMA_AGE = 30

_SIGNALS = {
    (-1, "above", TradeMode.CONTRARIAN): Signal.GO_LONG,
    (-1, "above", TradeMode.TREND_FOLLOWING): Signal.SHORT_SELL,
    (-1, "below", TradeMode.CONTRARIAN): Signal.SHORT_SELL,
    (-1, "below", TradeMode.TREND_FOLLOWING): Signal.GO_LONG,
    (1, "above", TradeMode.CONTRARIAN): Signal.SHORT_SELL,
    (1, "above", TradeMode.TREND_FOLLOWING): Signal.GO_LONG,
    (1, "below", TradeMode.CONTRARIAN): Signal.GO_LONG,
    (1, "below", TradeMode.TREND_FOLLOWING): Signal.SHORT_SELL,
}


def ema(prices: Sequence[Decimal], age: int = EMA_AGE) -> Decimal:
    """Exponential moving average seeded with the first value."""
    alpha = Decimal(2) / Decimal(age + 1)
    value = Decimal("0")
    for price in prices:
        if value == 0:
            value = price
        else:
            value = price * alpha + value * (1 - alpha)
    return value


def trend_score(prices: Sequence[Decimal]) -> int:
    """+1 for every step where the price rose, -1 where it fell."""
    score = 0
    for current, following in zip(prices, prices[1:]):
        if current > following:
            score -= 1
        elif current < following:
            score += 1
    return score


class Hermes(SignalSource):
    description = (
        "Combines the direction of recent price moves with the position of the "
        "current price relative to its moving average."
    )

    def __init__(
        self,
        num_prices: int = 25,
        price_interval: timedelta = timedelta(hours=1),
        trade_mode: TradeMode = TradeMode.CONTRARIAN,
    ):
        self.num_prices = num_prices
        self.price_interval = price_interval
        self.trade_mode = TradeMode(trade_mode)
        self.prices: List[Decimal] = []
        self.moving_average = Decimal("0")
        self.score = 0
        self.position = "stable"

    def price_dimensions(self) -> Tuple[int, timedelta]:
        return self.num_prices, self.price_interval

    def analyze(self, prices: Sequence[Decimal]) -> None:
        if len(prices) < 2:
            raise ValueError(f"need at least two prices to analyze, got {len(prices)}")
        self.prices = list(prices)
        current = self.prices[0]
        # the score reads the series oldest to newest
        self.score = trend_score(list(reversed(self.prices)))
        self.moving_average = ema(list(reversed(self.prices)))
        if current > self.moving_average:
            self.position = "above"
        elif current < self.moving_average:
            self.position = "below"
        else:
            self.position = "stable"

    def emit(self) -> Signal:
        if self.score == 0 or self.position == "stable":
            return Signal.WAIT
        direction = 1 if self.score > 0 else -1
        return _SIGNALS[(direction, self.position, self.trade_mode)]
