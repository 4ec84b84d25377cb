"""Paper trading demo: a few rounds against the in-memory exchange.

Shows:
1. Building a configuration in code
2. Driving a session with a scripted price path
3. Positions opening, then closing once the trigger price is crossed
4. Reading the resulting stats
"""
import sys
import tempfile
from decimal import Decimal
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from leprechaun.client import AssetClient
from leprechaun.config import BotConfig
from leprechaun.exchange import InMemoryExchange
from leprechaun.logging_setup import logger, setup_logging
from leprechaun.models import Signal
from leprechaun.session import SessionContext


def main():
    setup_logging(log_file=None, level="INFO", enable_console=True)
    logger.info("=== Leprechaun paper session ===")

    workdir = Path(tempfile.mkdtemp(prefix="leprechaun-"))
    config = BotConfig.from_dict(
        {
            "trade": {"assets": ["XBT"], "purchase_unit": "100000", "profit_margin": "0.03"},
            "persistence": {"data_dir": str(workdir), "ledger_db": str(workdir / "paper.ledger")},
        }
    )
    exchange = InMemoryExchange(
        {"XBTNGN": Decimal("5000000")},
        balances={"NGN": Decimal("1000000"), "XBT": Decimal("0")},
    )
    context = SessionContext(config, lambda: exchange)
    manager = context.lifecycle_manager()
    client = AssetClient(exchange, "XBT", "NGN", context.cancel)
    client.refresh_balances()

    # buy the dip, then let the price run past the trigger
    path = [
        (Decimal("5000000"), Signal.GO_LONG),
        (Decimal("5100000"), Signal.WAIT),
        (Decimal("5160000"), Signal.WAIT),
    ]
    for price, signal in path:
        exchange.prices["XBTNGN"] = price
        outcome = manager.execute_round(client, signal)
        logger.info(f"price={price} signal={signal.value} opened={outcome.opened} closed={outcome.closed}")

    stats = context.stats.get_stats("XBT")
    logger.info(f"Trades: {stats.trades}, profit: NGN {stats.profit}")
    logger.info(f"State kept in {workdir}")


if __name__ == "__main__":
    main()
