from datetime import timedelta
from decimal import Decimal
from pathlib import Path

import pytest

from leprechaun.client import AssetClient
from leprechaun.config import TradeConfig
from leprechaun.exchange import InMemoryExchange
from leprechaun.lifecycle import SessionListener, TradeLifecycleManager
from leprechaun.models import Signal
from leprechaun.signals import SignalSource
from leprechaun.stats import StatsStore


class FixedSignal(SignalSource):
    """Signal source that always emits the same signal."""

    def __init__(self, signal: Signal = Signal.WAIT, count: int = 3):
        self.signal = signal
        self.count = count
        self.seen = []

    def price_dimensions(self):
        return self.count, timedelta(hours=1)

    def analyze(self, prices):
        self.seen = list(prices)

    def emit(self):
        return self.signal


class RecordingListener(SessionListener):
    def __init__(self):
        self.events = []

    def on_purchase(self, asset, order_id, volume, price):
        self.events.append(("purchase", asset, order_id, volume, price))

    def on_sale(self, asset, order_id, volume, price):
        self.events.append(("sale", asset, order_id, volume, price))

    def on_error(self, error):
        self.events.append(("error", error))

    def on_stopped(self):
        self.events.append(("stopped",))


@pytest.fixture
def exchange():
    return InMemoryExchange(
        {"XBTNGN": Decimal("5000000"), "XRPNGN": Decimal("30000")},
        balances={"NGN": Decimal("1000000"), "XBT": Decimal("0.5"), "XRP": Decimal("100")},
        taker_fee=Decimal("0.01"),
    )


@pytest.fixture
def client(exchange):
    return AssetClient(exchange, "XBT", "NGN")


@pytest.fixture
def xrp_client(exchange):
    return AssetClient(exchange, "XRP", "NGN")


@pytest.fixture
def ledger_path(tmp_path: Path) -> Path:
    return tmp_path / "leprechaun.ledger"


@pytest.fixture
def stats(tmp_path: Path) -> StatsStore:
    return StatsStore(tmp_path / "data")


@pytest.fixture
def listener():
    return RecordingListener()


@pytest.fixture
def make_manager(ledger_path, stats, listener):
    def factory(signal: Signal = Signal.WAIT, **trade):
        trade.setdefault("purchase_unit", Decimal("100000"))
        trade.setdefault("profit_margin", Decimal("0.03"))
        return TradeLifecycleManager(
            TradeConfig(**trade),
            ledger_path,
            stats=stats,
            signal_source=FixedSignal(signal),
            listener=listener,
        )

    return factory
