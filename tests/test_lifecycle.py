from decimal import Decimal

import pytest

from leprechaun.exchange import (
    AuthorizationError,
    InsufficientFundsError,
    MalformedRequestError,
    OrderDetails,
    RateLimitError,
    TransientError,
)
from leprechaun.ledger import Ledger, LedgerError, open_ledger
from leprechaun.lifecycle import RoundAbandoned, find_close_order
from leprechaun.models import OrderSide, OrderType, Signal

PRICE = Decimal("5000000")
UNIT = Decimal("101000")


def _records(ledger_path):
    with open_ledger(ledger_path) as ledger:
        return ledger.all_records()


def _orders(exchange):
    return list(exchange.orders.values())


# --- Round preparation ---

def test_prepare_round_adjusts_unit_for_taker_fee(make_manager, client, exchange):
    manager = make_manager(Signal.GO_LONG)
    plan = manager.prepare_round(client)

    assert plan.price == PRICE
    assert plan.fee.taker_fee == Decimal("0.01")
    assert plan.adjusted_unit == UNIT
    assert plan.signal == Signal.GO_LONG
    assert not plan.too_small
    assert exchange.calls[:3] == ["fee_info", "ticker", "balances"]
    # the plugin saw the price history
    assert manager.signal_source.seen


def test_prepare_round_flags_purchase_unit_below_minimum(make_manager, client, exchange):
    manager = make_manager(Signal.GO_LONG, purchase_unit=Decimal("1000"))
    plan = manager.prepare_round(client)

    assert plan.too_small
    assert "previous_prices" not in exchange.calls
    assert manager.run_round(client) is None


def test_transient_failures_are_retried(make_manager, client, exchange):
    exchange.fail_next("ticker", TransientError("timeout"), TransientError("timeout"))
    plan = make_manager().prepare_round(client)
    assert plan.price == PRICE
    assert exchange.calls.count("ticker") == 3


def test_round_abandoned_after_three_failures(make_manager, client, exchange):
    exchange.fail_next("ticker", *[TransientError("timeout")] * 3)
    with pytest.raises(RoundAbandoned):
        make_manager().prepare_round(client)


def test_history_failures_abandon_round(make_manager, client, exchange):
    exchange.fail_next("previous_prices", *[TransientError("timeout")] * 3)
    with pytest.raises(RoundAbandoned):
        make_manager().prepare_round(client)


def test_authorization_failure_propagates(make_manager, client, exchange):
    exchange.fail_next("fee_info", AuthorizationError("ErrAPIKeyRevoked"))
    with pytest.raises(AuthorizationError):
        make_manager().prepare_round(client)
    assert exchange.calls == ["fee_info"]


# --- Opening ---

def test_go_long_opens_one_record(make_manager, client, exchange, ledger_path, listener):
    manager = make_manager()
    outcome = manager.execute_round(client, Signal.GO_LONG, price=PRICE, adjusted_unit=UNIT)

    rec = outcome.opened
    assert rec is not None
    assert rec.order_type == OrderType.LONG
    assert rec.volume == Decimal("0.0202")
    assert rec.trigger_price == Decimal("5150000")
    assert rec.status == "COMPLETE"

    records = _records(ledger_path)
    assert [r.id for r in records] == [rec.id]
    assert records[0].trigger_price == Decimal("5150000")

    orders = _orders(exchange)
    assert len(orders) == 1
    assert orders[0].side == OrderSide.BUY
    assert orders[0].counter == UNIT
    assert listener.events == [("purchase", "XBT", rec.id, Decimal("0.0202"), PRICE)]


def test_at_most_one_record_per_round(make_manager, client, exchange, ledger_path):
    manager = make_manager()
    manager.execute_round(client, Signal.SHORT_SELL, price=PRICE, adjusted_unit=UNIT)
    assert len(_records(ledger_path)) == 1
    assert exchange.calls.count("place_market_order") == 1


def test_wait_opens_nothing(make_manager, client, exchange, ledger_path):
    outcome = make_manager().execute_round(client, Signal.WAIT)
    assert outcome.opened is None
    assert _records(ledger_path) == []
    assert "place_market_order" not in exchange.calls


def test_insufficient_balance_skips_long(make_manager, exchange, client, ledger_path):
    exchange.balance_by_asset["NGN"] = Decimal("50000")
    outcome = make_manager().execute_round(client, Signal.GO_LONG, price=PRICE, adjusted_unit=UNIT)

    assert outcome.opened is None
    assert _records(ledger_path) == []
    assert "place_market_order" not in exchange.calls


def test_short_sell_skips_balance_check(make_manager, exchange, client, ledger_path):
    exchange.balance_by_asset["NGN"] = Decimal("0")
    outcome = make_manager().execute_round(client, Signal.SHORT_SELL, price=PRICE, adjusted_unit=UNIT)

    assert outcome.opened.order_type == OrderType.SHORT
    assert outcome.opened.trigger_price == Decimal("4850000")
    assert "balances" not in exchange.calls


def test_whole_unit_asset_volume_is_floored(make_manager, exchange, xrp_client, ledger_path):
    outcome = make_manager().execute_round(
        xrp_client, Signal.SHORT_SELL, price=Decimal("30000"), adjusted_unit=UNIT
    )

    assert outcome.opened.volume == Decimal("3")
    assert _orders(exchange)[0].base == Decimal("3")


def test_failed_opening_persists_nothing(make_manager, exchange, client, ledger_path):
    exchange.fail_next("place_market_order", InsufficientFundsError("ErrInsufficientBalance"))
    outcome = make_manager().execute_round(client, Signal.SHORT_SELL, price=PRICE, adjusted_unit=UNIT)

    assert outcome.opened is None
    assert _records(ledger_path) == []


def test_settlement_refresh_failure_keeps_local_values(make_manager, exchange, client, ledger_path):
    exchange.fail_next("check_order", TransientError("timeout"))
    outcome = make_manager().execute_round(client, Signal.GO_LONG, price=PRICE, adjusted_unit=UNIT)

    assert outcome.opened.status == ""
    assert _records(ledger_path)[0].cost == PRICE * Decimal("0.0202")


def test_execute_round_fetches_price_and_fee_when_not_given(make_manager, client, ledger_path):
    outcome = make_manager().execute_round(client, Signal.GO_LONG)
    assert outcome.opened.volume == Decimal("0.0202")


# --- Sweeps ---

def _open_long(manager, client):
    return manager.execute_round(client, Signal.GO_LONG, price=PRICE, adjusted_unit=UNIT).opened


def test_sweep_closes_viable_long_and_records_sale(make_manager, exchange, client, ledger_path, stats):
    manager = make_manager()
    rec = _open_long(manager, client)

    exchange.prices["XBTNGN"] = Decimal("5200000")
    closed = manager.complete_long_trades(client)

    assert closed == [rec.id]
    assert _records(ledger_path) == []
    close_order = _orders(exchange)[-1]
    assert close_order.side == OrderSide.SELL
    assert close_order.base == Decimal("0.0202")

    sales = stats.get_sales()
    assert [s.order_id for s in sales] == [rec.id]
    assert sales[0].profit == Decimal("4040")
    assert stats.get_stats("XBT").trades == 1


def test_sweep_leaves_records_below_trigger(make_manager, exchange, client, ledger_path):
    manager = make_manager()
    _open_long(manager, client)

    exchange.prices["XBTNGN"] = Decimal("5149999")
    assert manager.complete_long_trades(client) == []
    assert len(_records(ledger_path)) == 1


def test_sweep_is_idempotent(make_manager, exchange, client, ledger_path):
    manager = make_manager()
    _open_long(manager, client)
    exchange.prices["XBTNGN"] = Decimal("5200000")

    manager.complete_long_trades(client)
    placed = exchange.calls.count("place_market_order")
    assert manager.complete_long_trades(client) == []
    assert exchange.calls.count("place_market_order") == placed


def test_failed_close_keeps_record_for_next_round(make_manager, exchange, client, ledger_path):
    manager = make_manager()
    rec = _open_long(manager, client)
    exchange.prices["XBTNGN"] = Decimal("5200000")

    exchange.fail_next("place_market_order", TransientError("timeout"))
    assert manager.complete_long_trades(client) == []
    remaining = _records(ledger_path)
    assert [r.id for r in remaining] == [rec.id]
    assert not remaining[0].closed
    # a timed out order may still exist; the next sweep looks for it first
    assert remaining[0].closing

    assert manager.complete_long_trades(client) == [rec.id]
    assert _records(ledger_path) == []


def test_sweep_closes_viable_short_and_records_purchase(make_manager, exchange, client, ledger_path, stats, listener):
    manager = make_manager()
    rec = manager.execute_round(client, Signal.SHORT_SELL, price=PRICE, adjusted_unit=UNIT).opened

    exchange.prices["XBTNGN"] = Decimal("4800000")
    outcome = manager.execute_round(client, Signal.WAIT)

    assert outcome.closed == [rec.id]
    assert _orders(exchange)[-1].side == OrderSide.BUY
    purchases = stats.get_purchases()
    assert purchases[0].sale_price == rec.price
    assert purchases[0].purchase_price == Decimal("4800000")
    assert purchases[0].profit == Decimal("4040")
    assert [e[0] for e in listener.events] == ["sale", "purchase"]


def test_stats_failure_does_not_block_delete(make_manager, exchange, client, ledger_path, stats, monkeypatch):
    manager = make_manager()
    _open_long(manager, client)
    exchange.prices["XBTNGN"] = Decimal("5200000")

    def broken(entry):
        raise OSError("disk full")

    monkeypatch.setattr(stats, "record_sale", broken)
    assert len(manager.complete_long_trades(client)) == 1
    assert _records(ledger_path) == []


def test_crash_before_delete_never_closes_twice(make_manager, exchange, client, ledger_path, monkeypatch):
    manager = make_manager()
    rec = _open_long(manager, client)
    exchange.prices["XBTNGN"] = Decimal("5200000")

    def broken(self, record_id):
        raise LedgerError("disk I/O error")

    monkeypatch.setattr(Ledger, "delete_record", broken)
    with pytest.raises(LedgerError):
        manager.complete_long_trades(client)
    monkeypatch.undo()

    pending = _records(ledger_path)
    assert pending[0].closed
    close_id = pending[0].close_id
    assert close_id in exchange.orders

    placed = exchange.calls.count("place_market_order")
    assert manager.complete_long_trades(client) == []
    assert exchange.calls.count("place_market_order") == placed

    assert manager.reconcile(client) == [rec.id]
    assert _records(ledger_path) == []


# --- Reconciliation ---

def test_reconcile_keeps_records_with_unknown_close(make_manager, exchange, client, ledger_path):
    manager = make_manager()
    rec = _open_long(manager, client)
    with open_ledger(ledger_path) as ledger:
        ledger.mark_closed(rec.id, "BX-UNKNOWN", "PENDING")

    assert manager.reconcile(client) == []
    assert [r.id for r in _records(ledger_path)] == [rec.id]


def test_reconcile_falls_back_to_order_lookup(make_manager, exchange, client, ledger_path):
    manager = make_manager()
    rec = _open_long(manager, client)
    close_id = client.ask(rec.volume)
    with open_ledger(ledger_path) as ledger:
        ledger.mark_closed(rec.id, close_id, "PENDING")

    exchange.fail_next("list_orders", TransientError("timeout"))
    assert manager.reconcile(client) == [rec.id]
    assert "check_order" in exchange.calls


def test_reconcile_ignores_open_records(make_manager, exchange, client, ledger_path):
    manager = make_manager()
    _open_long(manager, client)
    exchange.calls.clear()

    assert manager.reconcile(client) == []
    assert exchange.calls == []


def test_malformed_close_lookup_is_not_fatal(make_manager, exchange, client, ledger_path):
    manager = make_manager()
    rec = _open_long(manager, client)
    with open_ledger(ledger_path) as ledger:
        ledger.mark_closed(rec.id, "BX-GONE", "PENDING")
    exchange.fail_next("check_order", MalformedRequestError("not found"))

    assert manager.reconcile(client) == []


# --- Interrupted closes ---

def _sells(exchange):
    return [o for o in _orders(exchange) if o.side == OrderSide.SELL]


def test_unrecorded_close_is_never_placed_twice(make_manager, exchange, client, ledger_path, stats, monkeypatch):
    manager = make_manager()
    rec = _open_long(manager, client)
    exchange.prices["XBTNGN"] = Decimal("5200000")

    def broken(self, record_id, close_id, status=""):
        raise LedgerError("database is locked")

    monkeypatch.setattr(Ledger, "mark_closed", broken)
    with pytest.raises(LedgerError):
        manager.complete_long_trades(client)
    monkeypatch.undo()

    assert len(_sells(exchange)) == 1
    assert _records(ledger_path)[0].closing

    assert manager.complete_long_trades(client) == [rec.id]
    assert len(_sells(exchange)) == 1
    assert _records(ledger_path) == []
    assert [s.order_id for s in stats.get_sales()] == [rec.id]
    assert stats.get_sales()[0].sale_price == Decimal("5200000.00")


def test_close_with_lost_response_is_found_on_next_sweep(make_manager, exchange, client, ledger_path, monkeypatch):
    manager = make_manager()
    rec = _open_long(manager, client)
    exchange.prices["XBTNGN"] = Decimal("5200000")
    place = exchange.place_market_order

    def lost_response(request):
        place(request)
        raise TransientError("read timed out")

    monkeypatch.setattr(exchange, "place_market_order", lost_response)
    assert manager.complete_long_trades(client) == []
    monkeypatch.undo()

    assert manager.complete_long_trades(client) == [rec.id]
    assert len(_sells(exchange)) == 1


@pytest.mark.parametrize(
    "error",
    [InsufficientFundsError("ErrInsufficientBalance"), RateLimitError("slow down"), MalformedRequestError("bad volume")],
)
def test_rejected_close_releases_record(make_manager, exchange, client, ledger_path, error):
    manager = make_manager()
    rec = _open_long(manager, client)
    exchange.prices["XBTNGN"] = Decimal("5200000")
    exchange.fail_next("place_market_order", error)

    assert manager.complete_long_trades(client) == []
    remaining = _records(ledger_path)
    assert [r.id for r in remaining] == [rec.id]
    assert not remaining[0].close_started


def test_authorization_failure_on_close_releases_record(make_manager, exchange, client, ledger_path):
    manager = make_manager()
    _open_long(manager, client)
    exchange.prices["XBTNGN"] = Decimal("5200000")
    exchange.fail_next("place_market_order", AuthorizationError("ErrAPIKeyRevoked"))

    with pytest.raises(AuthorizationError):
        manager.complete_long_trades(client)
    assert not _records(ledger_path)[0].close_started


def test_closing_record_waits_while_orders_cannot_be_listed(make_manager, exchange, client, ledger_path):
    manager = make_manager()
    rec = _open_long(manager, client)
    with open_ledger(ledger_path) as ledger:
        ledger.mark_closing(rec.id)
    exchange.prices["XBTNGN"] = Decimal("5200000")
    exchange.fail_next("list_orders", TransientError("timeout"))
    placed = exchange.calls.count("place_market_order")

    assert manager.complete_long_trades(client) == []
    assert _records(ledger_path)[0].closing
    assert exchange.calls.count("place_market_order") == placed


def test_reconcile_finishes_closing_record(make_manager, exchange, client, ledger_path, listener):
    manager = make_manager()
    rec = _open_long(manager, client)
    with open_ledger(ledger_path) as ledger:
        ledger.mark_closing(rec.id)
    close_id = client.ask(rec.volume)

    assert manager.reconcile(client) == [rec.id]
    assert _records(ledger_path) == []
    assert listener.events[-1][:3] == ("sale", "XBT", close_id)


def test_reconcile_releases_closing_record_without_order(make_manager, exchange, client, ledger_path):
    manager = make_manager()
    rec = _open_long(manager, client)
    with open_ledger(ledger_path) as ledger:
        ledger.mark_closing(rec.id)

    assert manager.reconcile(client) == []
    remaining = _records(ledger_path)
    assert [r.id for r in remaining] == [rec.id]
    assert not remaining[0].close_started


def _order(order_id, side, base, created=None):
    return OrderDetails(
        order_id=order_id, pair="XBTNGN", side=side, state="COMPLETE",
        base=Decimal(base), counter=Decimal(base) * PRICE, creation_timestamp=created,
    )


def test_find_close_order_matches_side_volume_and_time(make_manager, client):
    rec = _open_long(make_manager(), client)
    rec = rec.with_settlement(
        price=rec.price, volume=rec.volume, cost=rec.cost, timestamp="2024-01-01 10:00:00",
        status=rec.status, asset_fee=rec.asset_fee, counter_fee=rec.counter_fee,
    )
    orders = [
        _order("BUY1", OrderSide.BUY, "0.0202", "2024-01-01 11:00:00"),
        _order("EARLY", OrderSide.SELL, "0.0202", "2024-01-01 09:00:00"),
        _order("BIG", OrderSide.SELL, "0.5", "2024-01-01 11:00:00"),
        _order("TAKEN", OrderSide.SELL, "0.0202", "2024-01-01 10:30:00"),
        _order("LATER", OrderSide.SELL, "0.0202", "2024-01-01 12:00:00"),
        _order("CLOSE", OrderSide.SELL, "0.0202", "2024-01-01 11:00:00"),
    ]
    assert find_close_order(rec, orders, {"TAKEN"}).order_id == "CLOSE"
    assert find_close_order(rec, orders, {"TAKEN", "CLOSE", "LATER"}) is None


# --- Repeated rounds ---

def test_one_record_per_successful_round(make_manager, exchange, client, ledger_path):
    manager = make_manager(Signal.GO_LONG)
    for round_no in range(5):
        if round_no == 2:
            exchange.fail_next("place_market_order", InsufficientFundsError("ErrInsufficientBalance"))
        manager.run_round(client)

    records = _records(ledger_path)
    assert len(records) == 4
    assert len({r.id for r in records}) == 4
    assert exchange.calls.count("place_market_order") == 5
