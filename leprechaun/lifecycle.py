"""
Trade lifecycle manager.

Drives one asset through a round:

1. ``prepare_round``: fee info, current price, balances, minimum order size
   check, fee-adjusted purchase unit and the signal from the analysis plugin.
2. ``execute_round``: open at most one position for the signal, then sweep
   pending LONG and SHORT records and close the ones whose trigger price has
   been crossed.

Ledger invariants maintained here:
- a record is only persisted once the exchange has returned an order id
- a record is marked CLOSING before its closing order is sent, and marked
  closed with the closing order id as soon as the exchange returns it; sweeps
  never close a record in either state, so a failure between close and delete
  is repaired (``reconcile``, or the next sweep for CLOSING records) instead of
  closing twice
- a record is only deleted after its closing order was placed
- order type and trigger price are fixed when the record is built

Transient exchange failures on reads are retried a bounded number of times and
then abandon the asset's round (``RoundAbandoned``). Authorization and
malformed-request failures propagate to the session.
"""

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Callable, List, Optional, Set, TypeVar, Union

from .cancellation import Cancelled
from .client import AssetClient
from .config import TradeConfig
from .exchange import (
    AuthorizationError,
    ExchangeError,
    FeeInfo,
    MalformedRequestError,
    OrderDetails,
    OrderState,
    RateLimitError,
    TransientError,
)
from .ledger import LedgerError, open_ledger
from .logging_setup import logger
from .models import OrderSide, OrderType, PositionRecord, Signal, now_timestamp
from .signals import SignalSource
from .stats import ProfitEntry, StatsStore

T = TypeVar("T")

PRICE_STEP = Decimal("0.01")
# BUY closes are sized in counter currency and settle near, not at, the record volume
CLOSE_VOLUME_TOLERANCE = Decimal("0.02")


class RoundAbandoned(Exception):
    """The round for one asset could not complete; the session moves on."""


class SessionListener:
    """Receives session events. Every hook is optional; the defaults do nothing."""

    def on_purchase(self, asset: str, order_id: str, volume: Decimal, price: Decimal) -> None:
        pass

    def on_sale(self, asset: str, order_id: str, volume: Decimal, price: Decimal) -> None:
        pass

    def on_error(self, error: Exception) -> None:
        pass

    def on_stopped(self) -> None:
        pass


@dataclass
class RoundPlan:
    """Everything ``execute_round`` needs, gathered by ``prepare_round``."""
    asset: str
    price: Decimal
    fee: FeeInfo
    adjusted_unit: Decimal
    signal: Signal = Signal.WAIT
    too_small: bool = False


@dataclass
class RoundOutcome:
    asset: str
    signal: Signal
    opened: Optional[PositionRecord] = None
    closed: List[str] = field(default_factory=list)


class TradeLifecycleManager:
    """Opens and closes positions for one asset per call.

    Args:
        trade: Trading parameters (purchase unit, margin, retries)
        ledger_path: SQLite ledger location
        stats: Store for per-asset totals and trade history
        signal_source: Analysis plugin consulted by ``prepare_round``
        ledger_password: Enables the encrypted ledger when set
        listener: Receives purchase/sale notifications
        retry_delay: Seconds to wait between retries of a failed read
    """

    def __init__(
        self,
        trade: TradeConfig,
        ledger_path: Union[str, Path],
        *,
        stats: StatsStore,
        signal_source: SignalSource,
        ledger_password: Optional[str] = None,
        listener: Optional[SessionListener] = None,
        retry_delay: float = 0.0,
    ):
        self.trade = trade
        self.ledger_path = Path(ledger_path)
        self.stats = stats
        self.signal_source = signal_source
        self.ledger_password = ledger_password
        self.listener = listener or SessionListener()
        self.retry_delay = retry_delay

    def _ledger(self):
        return open_ledger(self.ledger_path, password=self.ledger_password)

    def _with_retries(self, client: AssetClient, what: str, fn: Callable[..., T], *args) -> T:
        attempts = max(1, self.trade.price_retries)
        for attempt in range(1, attempts + 1):
            try:
                return fn(*args)
            except TransientError as e:
                logger.warning(f"{client.name}: {what} failed (attempt {attempt}/{attempts}): {e}")
                if attempt == attempts:
                    raise RoundAbandoned(f"{client.name}: {what} failed after {attempts} attempts") from e
                if self.retry_delay:
                    client.cancel.sleep(self.retry_delay)

    # --- Round preparation ---
    def prepare_round(self, client: AssetClient) -> RoundPlan:
        fee = self._with_retries(client, "fee info retrieval", client.fee_info)
        price = self._with_retries(client, "price retrieval", client.current_price)
        self._with_retries(client, "balance refresh", client.refresh_balances)
        logger.info(f"{client.name}: current price {client.currency} {price}, taker fee {fee.taker_fee}")

        unit = self.trade.purchase_unit
        if unit < client.min_order_volume * price:
            logger.warning(
                f"{client.name}: purchase unit {client.currency} {unit} is below the minimum order of "
                f"{client.min_order_volume} {client.asset} at the current price; skipping"
            )
            return RoundPlan(client.asset, price, fee, unit, too_small=True)

        adjusted = unit + unit * fee.taker_fee
        count, interval = self.signal_source.price_dimensions()
        prices = self._with_retries(client, "price history retrieval", client.previous_prices, count, interval)
        try:
            self.signal_source.analyze(prices)
        except ValueError as e:
            raise RoundAbandoned(f"{client.name}: price history could not be analyzed: {e}") from e
        signal = self.signal_source.emit()
        logger.info(f"{client.name}: signal {signal.value}")
        return RoundPlan(client.asset, price, fee, adjusted, signal=signal)

    def run_round(self, client: AssetClient) -> Optional[RoundOutcome]:
        """Prepare and execute a round; None when the purchase unit is too small for the asset."""
        plan = self.prepare_round(client)
        if plan.too_small:
            return None
        return self.execute_round(client, plan.signal, price=plan.price, adjusted_unit=plan.adjusted_unit)

    # --- Round execution ---
    def execute_round(
        self,
        client: AssetClient,
        signal: Signal,
        *,
        price: Optional[Decimal] = None,
        adjusted_unit: Optional[Decimal] = None,
    ) -> RoundOutcome:
        """Open at most one position for ``signal``, then close every viable pending record."""
        outcome = RoundOutcome(client.asset, signal)
        if signal != Signal.WAIT:
            if price is None:
                price = self._with_retries(client, "price retrieval", client.current_price)
            if adjusted_unit is None:
                fee = self._with_retries(client, "fee info retrieval", client.fee_info)
                adjusted_unit = self.trade.purchase_unit + self.trade.purchase_unit * fee.taker_fee
            outcome.opened = self._open(client, signal, price, adjusted_unit)

        client.cancel.check()
        outcome.closed.extend(self.complete_long_trades(client))
        client.cancel.check()
        outcome.closed.extend(self.complete_short_trades(client))
        return outcome

    def _open(self, client: AssetClient, signal: Signal, price: Decimal, adjusted_unit: Decimal) -> Optional[PositionRecord]:
        if signal == Signal.GO_LONG:
            order_type = OrderType.LONG
            if not client.has_sufficient_balance(adjusted_unit):
                logger.info(
                    f"{client.name}: balance of {client.currency} {client.fiat_balance} is insufficient "
                    f"for a {client.currency} {adjusted_unit} purchase; skipping"
                )
                return None
        else:
            order_type = OrderType.SHORT

        volume = client.volume_for(adjusted_unit, price)
        if volume < client.min_order_volume:
            logger.info(f"{client.name}: order volume {volume} is below the exchange minimum; skipping")
            return None

        try:
            if order_type == OrderType.LONG:
                order_id = client.bid(price, volume)
            else:
                order_id = client.ask(volume)
        except AuthorizationError:
            raise
        except ExchangeError as e:
            logger.error(f"{client.name}: {order_type.value} order failed, nothing recorded: {e}")
            return None

        rec = PositionRecord.open(
            record_id=order_id,
            asset=client.asset,
            counter_currency=client.currency,
            order_type=order_type,
            price=price,
            volume=volume,
            profit_margin=self.trade.profit_margin,
        )
        try:
            with self._ledger() as ledger:
                ledger.add_record(rec)
        except LedgerError:
            logger.critical(f"{client.name}: order {order_id} was placed but could not be recorded: {rec}")
            raise
        logger.info(f"{client.name}: opened {rec}")

        if order_type == OrderType.LONG:
            self.listener.on_purchase(client.asset, order_id, volume, price)
        else:
            self.listener.on_sale(client.asset, order_id, volume, price)
        return self._refresh_settlement(client, rec)

    def _refresh_settlement(self, client: AssetClient, rec: PositionRecord) -> PositionRecord:
        """Replace locally computed values with the exchange's settlement, when it is already known."""
        try:
            details = client.check_order(rec.id)
        except AuthorizationError:
            raise
        except ExchangeError as e:
            logger.warning(f"{client.name}: could not fetch details of order {rec.id}: {e}")
            return rec
        if not details.is_complete or details.base <= 0:
            return rec
        settled = rec.with_settlement(
            price=(details.counter / details.base).quantize(PRICE_STEP, rounding=ROUND_HALF_UP),
            volume=details.base,
            cost=details.counter,
            timestamp=details.completed_timestamp or rec.timestamp,
            status=details.state,
            asset_fee=details.fee_base,
            counter_fee=details.fee_counter,
        )
        with self._ledger() as ledger:
            ledger.update_settlement(settled)
        return settled

    # --- Sweeps ---
    def complete_long_trades(self, client: AssetClient) -> List[str]:
        return self.sweep(client, OrderType.LONG)

    def complete_short_trades(self, client: AssetClient) -> List[str]:
        return self.sweep(client, OrderType.SHORT)

    def _records(self, client: AssetClient, order_type: OrderType) -> List[PositionRecord]:
        with self._ledger() as ledger:
            return ledger.records_by_type(client.asset, order_type)

    def sweep(self, client: AssetClient, order_type: OrderType) -> List[str]:
        """Close every pending ``order_type`` record that is viable at the current price.

        Records left in the closing state by an earlier pass are settled first.
        Returns the ids of the records that were closed and removed.
        """
        records = self._records(client, order_type)
        closing = [r for r in records if r.closing]
        closed = self._resolve_closing(client, closing)
        if closing:
            records = self._records(client, order_type)

        pending = [r for r in records if not r.close_started]
        if not pending:
            return closed
        price = self._with_retries(client, "price retrieval", client.current_price)
        viable = [r for r in pending if r.is_viable(price)]
        logger.debug(f"{client.name}: {len(viable)}/{len(pending)} {order_type.value} records viable at {price}")

        for rec in viable:
            client.cancel.check()
            if self._close(client, rec, price):
                closed.append(rec.id)
        return closed

    def _release(self, rec: PositionRecord) -> None:
        with self._ledger() as ledger:
            ledger.clear_closing(rec.id)

    def _close(self, client: AssetClient, rec: PositionRecord, price: Decimal) -> bool:
        with self._ledger() as ledger:
            ledger.mark_closing(rec.id)
        try:
            if rec.order_type == OrderType.LONG:
                close_id = client.ask(rec.volume)
            else:
                close_id = client.bid(price, rec.volume)
        except (Cancelled, AuthorizationError):
            self._release(rec)
            raise
        except TransientError as e:
            if isinstance(e, RateLimitError):
                self._release(rec)
            # otherwise the order may have gone through; the next sweep looks for it
            logger.error(f"{client.name}: closing order for {rec.id} failed, will retry next round: {e}")
            return False
        except ExchangeError as e:
            self._release(rec)
            logger.error(f"{client.name}: closing order for {rec.id} failed, will retry next round: {e}")
            return False

        self._finish_close(client, rec, close_id, price, OrderState.PENDING)
        return True

    def _finish_close(self, client: AssetClient, rec: PositionRecord, close_id: str, price: Decimal, status: str) -> None:
        with self._ledger() as ledger:
            ledger.mark_closed(rec.id, close_id, status)

        if rec.order_type == OrderType.LONG:
            entry = ProfitEntry.build(
                client.asset, rec.id, now_timestamp(),
                purchase_price=rec.price, purchase_volume=rec.volume,
                sale_price=price, sale_volume=rec.volume,
            )
        else:
            entry = ProfitEntry.build(
                client.asset, rec.id, now_timestamp(),
                purchase_price=price, purchase_volume=rec.volume,
                sale_price=rec.price, sale_volume=rec.volume,
            )
        try:
            if rec.order_type == OrderType.LONG:
                self.stats.record_sale(entry)
            else:
                self.stats.record_purchase(entry)
        except (OSError, ValueError) as e:
            logger.error(f"{client.name}: could not update stats for {rec.id}: {e}")

        with self._ledger() as ledger:
            ledger.delete_record(rec.id)
        logger.info(f"{client.name}: closed {rec.order_type.value} {rec.id} with {close_id}, profit {entry.profit}")

        if rec.order_type == OrderType.LONG:
            self.listener.on_sale(client.asset, close_id, rec.volume, price)
        else:
            self.listener.on_purchase(client.asset, close_id, rec.volume, price)

    def _resolve_closing(self, client: AssetClient, closing: List[PositionRecord]) -> List[str]:
        """Settle records whose closing order may exist on the exchange without its id in the ledger.

        A matching exchange order finishes the close; no match releases the record
        so it can be closed again. Nothing changes while the exchange cannot be asked.
        Returns the ids of the records that were finished.
        """
        if not closing:
            return []
        try:
            orders = client.recent_orders()
        except AuthorizationError:
            raise
        except ExchangeError as e:
            logger.warning(f"{client.name}: could not list recent orders to settle {len(closing)} closing record(s): {e}")
            return []

        with self._ledger() as ledger:
            everything = ledger.all_records()
        claimed = {r.id for r in everything} | {r.close_id for r in everything if r.close_id}

        finished = []
        for rec in closing:
            match = find_close_order(rec, orders, claimed)
            if match is None:
                self._release(rec)
                logger.info(f"{client.name}: no closing order found for {rec.id}; it will be closed when viable")
                continue
            claimed.add(match.order_id)
            price = (match.counter / match.base).quantize(PRICE_STEP, rounding=ROUND_HALF_UP)
            logger.warning(f"{client.name}: closing order {match.order_id} of {rec.id} was never recorded; finishing it")
            self._finish_close(client, rec, match.order_id, price, match.state)
            finished.append(rec.id)
        return finished

    # --- Startup repair ---
    def reconcile(self, client: AssetClient) -> List[str]:
        """Finish records interrupted between placing their closing order and deleting them.

        Returns the ids of the removed records.
        """
        with self._ledger() as ledger:
            mine = [r for r in ledger.all_records() if r.asset == client.asset]
        orphaned = [r for r in mine if r.closed]
        removed = self._remove_confirmed(client, orphaned) if orphaned else []
        removed.extend(self._resolve_closing(client, [r for r in mine if r.closing]))
        return removed

    def _remove_confirmed(self, client: AssetClient, orphaned: List[PositionRecord]) -> List[str]:
        try:
            known = {o.order_id for o in client.recent_orders()}
        except AuthorizationError:
            raise
        except ExchangeError as e:
            logger.warning(f"{client.name}: could not list recent orders, checking one by one: {e}")
            known = set()

        removed = []
        for rec in orphaned:
            if rec.close_id not in known:
                try:
                    client.check_order(rec.close_id)
                except (TransientError, MalformedRequestError) as e:
                    logger.warning(f"{client.name}: closing order {rec.close_id} of {rec.id} not confirmed: {e}")
                    continue
            with self._ledger() as ledger:
                ledger.delete_record(rec.id)
            logger.info(f"{client.name}: reconciled {rec.id}, closed by {rec.close_id}")
            removed.append(rec.id)
        return removed


def find_close_order(
    rec: PositionRecord, orders: List[OrderDetails], claimed: Set[str]
) -> Optional[OrderDetails]:
    """Earliest unclaimed order that looks like the closing leg of ``rec``.

    The closing leg trades the opposite side of the pair for about the record's
    volume and was created no earlier than the record.
    """
    side = OrderSide.SELL if rec.order_type == OrderType.LONG else OrderSide.BUY
    candidates = [
        o for o in orders
        if o.side == side
        and o.order_id not in claimed
        and o.base > 0
        and abs(o.base - rec.volume) <= rec.volume * CLOSE_VOLUME_TOLERANCE
        and not (o.creation_timestamp and rec.timestamp and o.creation_timestamp < rec.timestamp)
    ]
    return min(candidates, key=lambda o: o.creation_timestamp or "", default=None)
