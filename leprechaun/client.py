"""Asset client: one traded pair bound to an exchange gateway.

The client holds a reference to a gateway rather than extending a vendor SDK,
so the lifecycle manager never depends on a specific exchange. Every gateway
call is bracketed by cancellation checks, except that an order placement is
never followed by one: once an order exists on the exchange its id must reach
the caller so it can be recorded.
"""
from datetime import timedelta
from decimal import ROUND_DOWN, Decimal
from typing import List, Optional

from .cancellation import CancellationToken
from .exchange import ExchangeGateway, FeeInfo, MarketOrderRequest, OrderDetails
from .logging_setup import logger
from .models import OrderSide
from .stats import ASSET_NAMES

# Luno only trades whole units of these assets
WHOLE_UNIT_ASSETS = frozenset(["XRP"])
MIN_ORDER_VOLUME = {"XRP": Decimal("1")}
DEFAULT_MIN_ORDER_VOLUME = Decimal("0.0005")
VOLUME_STEP = Decimal("0.000001")
COUNTER_STEP = Decimal("0.01")


class AssetClient:
    def __init__(
        self,
        gateway: ExchangeGateway,
        asset: str,
        currency: str,
        cancel: Optional[CancellationToken] = None,
    ):
        self.gateway = gateway
        self.asset = asset
        self.currency = currency
        self.pair = f"{asset}{currency}"
        self.name = ASSET_NAMES.get(asset, asset)
        self.cancel = cancel or CancellationToken()
        self.account_id: Optional[str] = None
        self.fiat_account_id: Optional[str] = None
        self.asset_balance = Decimal("0")
        self.fiat_balance = Decimal("0")
        self.spread = Decimal("0")
        self.min_order_volume = MIN_ORDER_VOLUME.get(asset, DEFAULT_MIN_ORDER_VOLUME)
        self.whole_units = asset in WHOLE_UNIT_ASSETS

    def __repr__(self) -> str:
        return f"<AssetClient {self.name} account={self.account_id}>"

    def _call(self, fn, *args, check_after: bool = True):
        self.cancel.check()
        result = fn(*args)
        if check_after:
            self.cancel.check()
        return result

    def refresh_balances(self) -> None:
        """Fetch account ids and balances for the asset and the fiat currency."""
        for bal in self._call(self.gateway.balances, [self.asset, self.currency]):
            if bal.asset == self.asset:
                self.account_id = bal.account_id
                self.asset_balance = bal.available
            elif bal.asset == self.currency:
                self.fiat_account_id = bal.account_id
                self.fiat_balance = bal.available

    def current_price(self) -> Decimal:
        """Ask price; also refreshes the bid-ask spread."""
        ticker = self._call(self.gateway.ticker, self.pair)
        self.spread = ticker.spread
        return ticker.ask

    def previous_prices(self, count: int, interval: timedelta) -> List[Decimal]:
        return self._call(self.gateway.previous_prices, self.pair, count, interval)

    def fee_info(self) -> FeeInfo:
        return self._call(self.gateway.fee_info, self.pair)

    def check_order(self, order_id: str) -> OrderDetails:
        return self._call(self.gateway.check_order, order_id)

    def recent_orders(self) -> List[OrderDetails]:
        return self._call(self.gateway.list_orders, self.pair)

    def has_sufficient_balance(self, amount: Decimal) -> bool:
        """True if the fiat balance covers ``amount``. Balances are refreshed when unknown."""
        if self.fiat_balance <= 0:
            self.refresh_balances()
        return self.fiat_balance >= amount

    def volume_for(self, amount: Decimal, price: Decimal) -> Decimal:
        """Asset volume that ``amount`` of fiat buys at ``price``."""
        volume = amount / price
        if self.whole_units:
            return volume.to_integral_value(rounding=ROUND_DOWN)
        return volume.quantize(VOLUME_STEP, rounding=ROUND_DOWN)

    def bid(self, price: Decimal, volume: Decimal) -> str:
        """Market buy of ``volume`` at roughly ``price``; returns the exchange order id."""
        cost = (price * volume).quantize(COUNTER_STEP, rounding=ROUND_DOWN)
        logger.info(f"Placing bid for {self.currency} {cost} worth of {self.asset} (~{volume} {self.asset})")
        request = MarketOrderRequest(
            pair=self.pair,
            side=OrderSide.BUY,
            counter_volume=cost,
            base_account_id=self.account_id,
            counter_account_id=self.fiat_account_id,
        )
        return self._call(self.gateway.place_market_order, request, check_after=False)

    def ask(self, volume: Decimal) -> str:
        """Market sell of ``volume``; returns the exchange order id."""
        logger.info(f"Placing ask for {volume} {self.asset}")
        request = MarketOrderRequest(
            pair=self.pair,
            side=OrderSide.SELL,
            base_volume=volume,
            base_account_id=self.account_id,
            counter_account_id=self.fiat_account_id,
        )
        return self._call(self.gateway.place_market_order, request, check_after=False)
