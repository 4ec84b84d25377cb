"""
Exchange gateway contract.

The lifecycle manager only ever talks to an exchange through ``ExchangeGateway``.
Concrete gateways (see ``luno_adapter.LunoAdapter``) are responsible for request
pacing, transport timeouts and for classifying failures into the error types
defined here:

- TransientError: network blips, timeouts, 5xx responses. Retry later.
- RateLimitError: the exchange kept rejecting requests with 429. Retry later.
- AuthorizationError: invalid or revoked API credentials. Fatal to the session.
- MalformedRequestError: the exchange rejected the request itself. Programming error.
- InsufficientFundsError: business condition, the account cannot cover the order.

All price/volume values use Decimal.
"""

from abc import ABC, abstractmethod
from datetime import timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import OrderSide


class ExchangeError(Exception):
    """Base class for gateway failures."""

    retryable = False


class TransientError(ExchangeError):
    """Network or server side failure that may succeed on retry."""

    retryable = True


class RateLimitError(TransientError):
    """Raised when rate limit is hit and backoff is exhausted."""


class AuthorizationError(ExchangeError):
    """API key missing, not found or revoked."""


class MalformedRequestError(ExchangeError):
    """The exchange rejected the request as invalid."""


class InsufficientFundsError(ExchangeError):
    """The account balance cannot cover the order."""


class OrderState:
    PENDING = "PENDING"
    COMPLETE = "COMPLETE"
    AWAITING = "AWAITING"


class Ticker(BaseModel):
    model_config = ConfigDict(frozen=True)

    pair: str
    ask: Decimal
    bid: Decimal

    @property
    def spread(self) -> Decimal:
        return self.ask - self.bid


class FeeInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    maker_fee: Decimal = Decimal("0")
    taker_fee: Decimal = Decimal("0")
    thirty_day_volume: Decimal = Decimal("0")


class Balance(BaseModel):
    model_config = ConfigDict(frozen=True)

    account_id: str
    asset: str
    balance: Decimal = Decimal("0")
    reserved: Decimal = Decimal("0")

    @property
    def available(self) -> Decimal:
        return self.balance - self.reserved


class OrderDetails(BaseModel):
    """Settlement view of an order as reported by the exchange."""

    model_config = ConfigDict(frozen=True)

    order_id: str
    pair: str = ""
    side: Optional[OrderSide] = None
    state: str = OrderState.PENDING
    base: Decimal = Decimal("0")
    counter: Decimal = Decimal("0")
    fee_base: Decimal = Decimal("0")
    fee_counter: Decimal = Decimal("0")
    completed_timestamp: Optional[str] = None
    creation_timestamp: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return self.state == OrderState.COMPLETE


class MarketOrderRequest(BaseModel):
    """A market order. BUY orders are sized by counter volume, SELL orders by base volume."""

    model_config = ConfigDict(frozen=True)

    pair: str
    side: OrderSide
    base_volume: Optional[Decimal] = Field(default=None, gt=0)
    counter_volume: Optional[Decimal] = Field(default=None, gt=0)
    base_account_id: Optional[str] = None
    counter_account_id: Optional[str] = None


class ExchangeGateway(ABC):
    """Abstract exchange gateway. Each call may block."""

    @abstractmethod
    def ticker(self, pair: str) -> Ticker:
        pass

    def current_price(self, pair: str) -> Decimal:
        """Ask price for ``pair``."""
        return self.ticker(pair).ask

    @abstractmethod
    def previous_prices(self, pair: str, count: int, interval: timedelta) -> List[Decimal]:
        """Closing prices of ``count`` periods ``interval`` apart, most recent first.

        The first element is the current price.
        """
        pass

    @abstractmethod
    def fee_info(self, pair: str) -> FeeInfo:
        pass

    @abstractmethod
    def place_market_order(self, request: MarketOrderRequest) -> str:
        """Place a market order and return the exchange order id."""
        pass

    @abstractmethod
    def check_order(self, order_id: str) -> OrderDetails:
        pass

    @abstractmethod
    def balances(self, assets: Iterable[str]) -> List[Balance]:
        pass

    @abstractmethod
    def list_orders(self, pair: str) -> List[OrderDetails]:
        """Orders recently placed on ``pair`` by this account."""
        pass


class InMemoryExchange(ExchangeGateway):
    """A gateway double used by tests: records calls and lets tests drive prices and failures.

    Market orders settle immediately at the current ask. ``fail_next`` queues
    exceptions that the next calls to the named operation raise, in order.
    """

    def __init__(
        self,
        prices: Optional[Dict[str, Decimal]] = None,
        *,
        balances: Optional[Dict[str, Decimal]] = None,
        taker_fee: Decimal = Decimal("0.01"),
        history: Optional[Dict[str, List[Decimal]]] = None,
    ):
        self.prices: Dict[str, Decimal] = dict(prices or {})
        self.balance_by_asset: Dict[str, Decimal] = dict(balances or {})
        self.taker_fee = taker_fee
        self.history: Dict[str, List[Decimal]] = dict(history or {})
        self.orders: Dict[str, OrderDetails] = {}
        self.calls: List[str] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.next_id = 1

    def fail_next(self, operation: str, *errors: Exception) -> None:
        self.failures.setdefault(operation, []).extend(errors)

    def _record(self, operation: str) -> None:
        self.calls.append(operation)
        queued = self.failures.get(operation)
        if queued:
            raise queued.pop(0)

    def _gen_id(self) -> str:
        oid = f"BX{self.next_id:06d}"
        self.next_id += 1
        return oid

    def ticker(self, pair: str) -> Ticker:
        self._record("ticker")
        if pair not in self.prices:
            raise MalformedRequestError(f"unknown pair {pair}")
        price = self.prices[pair]
        return Ticker(pair=pair, ask=price, bid=price)

    def previous_prices(self, pair: str, count: int, interval: timedelta) -> List[Decimal]:
        self._record("previous_prices")
        series = self.history.get(pair)
        if series is None:
            series = [self.prices[pair]] * (count + 1)
        return list(series)

    def fee_info(self, pair: str) -> FeeInfo:
        self._record("fee_info")
        return FeeInfo(taker_fee=self.taker_fee, maker_fee=Decimal("0"))

    def place_market_order(self, request: MarketOrderRequest) -> str:
        self._record("place_market_order")
        price = self.prices[request.pair]
        if request.side == OrderSide.BUY:
            counter = request.counter_volume or (request.base_volume or Decimal("0")) * price
            base = counter / price
        else:
            base = request.base_volume or Decimal("0")
            counter = base * price
        oid = self._gen_id()
        self.orders[oid] = OrderDetails(
            order_id=oid,
            pair=request.pair,
            side=request.side,
            state=OrderState.COMPLETE,
            base=base,
            counter=counter,
        )
        return oid

    def check_order(self, order_id: str) -> OrderDetails:
        self._record("check_order")
        if order_id not in self.orders:
            raise MalformedRequestError(f"order {order_id} not found")
        return self.orders[order_id]

    def balances(self, assets: Iterable[str]) -> List[Balance]:
        self._record("balances")
        return [
            Balance(account_id=f"acc-{asset}", asset=asset, balance=self.balance_by_asset.get(asset, Decimal("0")))
            for asset in assets
        ]

    def list_orders(self, pair: str) -> List[OrderDetails]:
        self._record("list_orders")
        return [o for o in self.orders.values() if o.pair == pair]
