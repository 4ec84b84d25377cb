"""
Position records and trade enums.

A ``PositionRecord`` is created when the opening leg of a trade is placed on
the exchange and lives in the ledger until its closing leg executes:

- LONG: asset bought now, sold once price rises to the trigger price
- SHORT: asset sold now, bought back once price falls to the trigger price

The trigger price is fixed at creation time from the opening price and the
configured profit margin. It is never recomputed afterwards.

Examples:
    >>> from decimal import Decimal
    >>> rec = PositionRecord.open(
    ...     record_id="BXMC2CJ7HNB88U4",
    ...     asset="XBT",
    ...     counter_currency="NGN",
    ...     order_type=OrderType.LONG,
    ...     price=Decimal("5000000"),
    ...     volume=Decimal("0.0202"),
    ...     profit_margin=Decimal("0.03"),
    ... )
    >>> rec.trigger_price
    Decimal('5150000.00')
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal, getcontext
from enum import Enum
from typing import Any, Dict, Optional

getcontext().prec = 28

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

# status of a record whose closing order is about to be, or may have been, placed
CLOSING = "CLOSING"


class OrderType(str, Enum):
    """Direction of a two-legged trade."""

    LONG = "LONG_TRADE"
    SHORT = "SHORT_TRADE"


class Signal(str, Enum):
    """Action recommended by a signal source."""

    WAIT = "WAIT"
    GO_LONG = "GO_LONG"
    SHORT_SELL = "SHORT_SELL"


class TradeMode(str, Enum):
    """How a price trend is interpreted by the analysis plugin.

    CONTRARIAN expects a trend to reverse; TREND_FOLLOWING expects it to continue.
    """

    CONTRARIAN = "contrarian"
    TREND_FOLLOWING = "trend_following"


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


def trigger_price_for(order_type: OrderType, price: Decimal, profit_margin: Decimal) -> Decimal:
    """Price at which the closing leg of a trade opened at ``price`` becomes profitable."""
    if order_type == OrderType.LONG:
        return price + price * profit_margin
    return price - price * profit_margin


def now_timestamp() -> str:
    return datetime.now().strftime(TIME_FORMAT)


@dataclass(frozen=True)
class PositionRecord:
    """A pending position, keyed by the exchange id of its opening order.

    Attributes:
        id: Exchange order id of the opening leg
        asset: Traded asset code, e.g. "XBT"
        counter_currency: Fiat side of the pair, e.g. "NGN"
        order_type: LONG or SHORT
        price: Market price at which the opening order was placed
        volume: Asset volume of the opening order
        cost: price * volume (or the settled counter amount when known)
        timestamp: Client-side time of placement
        trigger_price: Closing price threshold, fixed at creation
        close_id: Exchange id of the closing order, once placed
        closed: True once a closing order has been placed
        status: Exchange order state of the most recent leg, or CLOSING while
            a closing order is in flight
        asset_fee: Fee charged in the asset, filled in after settlement
        counter_fee: Fee charged in the counter currency, filled in after settlement

    Invariants:
        - order_type and trigger_price never change (the dataclass is frozen
          and ``with_settlement``/``with_close`` copy them verbatim)
    """

    id: str
    asset: str
    counter_currency: str
    order_type: OrderType
    price: Decimal
    volume: Decimal
    cost: Decimal
    timestamp: str
    trigger_price: Decimal
    close_id: str = ""
    closed: bool = False
    status: str = ""
    asset_fee: Decimal = field(default=Decimal("0"))
    counter_fee: Decimal = field(default=Decimal("0"))

    @classmethod
    def open(
        cls,
        *,
        record_id: str,
        asset: str,
        counter_currency: str,
        order_type: OrderType,
        price: Decimal,
        volume: Decimal,
        profit_margin: Decimal,
        timestamp: Optional[str] = None,
    ) -> "PositionRecord":
        if not record_id:
            raise ValueError("a position record needs the exchange order id of its opening leg")
        return cls(
            id=record_id,
            asset=asset,
            counter_currency=counter_currency,
            order_type=OrderType(order_type),
            price=price,
            volume=volume,
            cost=price * volume,
            timestamp=timestamp or now_timestamp(),
            trigger_price=trigger_price_for(OrderType(order_type), price, profit_margin),
        )

    @property
    def pair(self) -> str:
        return f"{self.asset}{self.counter_currency}"

    @property
    def closing(self) -> bool:
        """A closing order was requested but its id never reached the ledger."""
        return not self.closed and self.status == CLOSING

    @property
    def close_started(self) -> bool:
        """Closed or closing; sweeps must leave such records alone."""
        return self.closed or self.closing

    def is_viable(self, current_price: Decimal) -> bool:
        """True if ``current_price`` has crossed the trigger in the profitable direction."""
        if self.order_type == OrderType.LONG:
            return current_price >= self.trigger_price
        return current_price <= self.trigger_price

    def with_settlement(
        self,
        *,
        price: Decimal,
        volume: Decimal,
        cost: Decimal,
        timestamp: str,
        status: str,
        asset_fee: Decimal,
        counter_fee: Decimal,
    ) -> "PositionRecord":
        return replace(
            self,
            price=price,
            volume=volume,
            cost=cost,
            timestamp=timestamp,
            status=status,
            asset_fee=asset_fee,
            counter_fee=counter_fee,
        )

    def with_close(self, close_id: str, status: str = "") -> "PositionRecord":
        return replace(self, close_id=close_id, closed=True, status=status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "asset": self.asset,
            "counter_currency": self.counter_currency,
            "order_type": self.order_type.value,
            "price": str(self.price),
            "volume": str(self.volume),
            "cost": str(self.cost),
            "timestamp": self.timestamp,
            "trigger_price": str(self.trigger_price),
            "close_id": self.close_id,
            "closed": self.closed,
            "status": self.status,
            "asset_fee": str(self.asset_fee),
            "counter_fee": str(self.counter_fee),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PositionRecord":
        return cls(
            id=d["id"],
            asset=d["asset"],
            counter_currency=d.get("counter_currency") or "",
            order_type=OrderType(d["order_type"]),
            price=Decimal(str(d["price"])),
            volume=Decimal(str(d["volume"])),
            cost=Decimal(str(d["cost"])),
            timestamp=d.get("timestamp") or "",
            trigger_price=Decimal(str(d["trigger_price"])),
            close_id=d.get("close_id") or "",
            closed=bool(d.get("closed")),
            status=d.get("status") or "",
            asset_fee=Decimal(str(d.get("asset_fee") or "0")),
            counter_fee=Decimal(str(d.get("counter_fee") or "0")),
        )

    def __str__(self) -> str:
        return (
            f"{self.order_type.value} {self.id} | {self.volume} {self.asset} @ {self.price} "
            f"(cost {self.cost} {self.counter_currency}, trigger {self.trigger_price})"
        )
