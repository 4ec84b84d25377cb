"""
Trading session controller.

The controller owns one ``SessionContext`` (configuration, cancellation token,
plugin registry, stats store, gateway factory) and moves through

    INITIALIZING -> CONNECTED -> ROUND_RUNNING <-> SNOOZING -> STOPPED

Initialization connects to the exchange and loads account balances. Credential
failures stop the session at once; network failures are retried a few times a
short while apart, then after a long backoff, until the session is cancelled
(or immediately stopped when ``exit_on_init_failed`` is set).

Each round walks the configured assets sequentially. A round that fails for one
asset is logged and skipped. Authorization and malformed-request errors, a
purchase unit too small for every asset, or repeated ledger failures end the
session. However the session ends, the token is marked stopped and the listener's
``on_stopped`` is called.
"""

import random
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from .cancellation import CancellationToken, Cancelled
from .client import AssetClient
from .config import BotConfig
from .exchange import AuthorizationError, ExchangeGateway, MalformedRequestError, TransientError
from .ledger import LedgerError
from .lifecycle import RoundAbandoned, SessionListener, TradeLifecycleManager
from .logging_setup import logger
from .luno_adapter import LunoAdapter
from .plugins import build_registry
from .rate_limit_policy import RateLimitManager, RateLimitQuota
from .secrets import load_credentials
from .signals import PluginRegistry
from .stats import StatsStore

MAX_LEDGER_FAILURES = 3


class InvalidPurchaseUnit(Exception):
    """The purchase unit is below the minimum order size of every configured asset."""


class InitializationFailed(Exception):
    """The exchange could not be reached and the session is configured to give up."""


class SessionState(str, Enum):
    INITIALIZING = "INITIALIZING"
    CONNECTED = "CONNECTED"
    ROUND_RUNNING = "ROUND_RUNNING"
    SNOOZING = "SNOOZING"
    STOPPED = "STOPPED"


def luno_gateway_factory(
    config: BotConfig,
    credentials_path: Optional[str] = None,
    cancel: Optional[CancellationToken] = None,
) -> Callable[[], ExchangeGateway]:
    """Build a factory that connects a ``LunoAdapter`` with credentials from env or file.

    With ``cancel``, the adapter's pacing and rate-limit backoff waits end as
    soon as the session is cancelled.
    """

    def factory() -> ExchangeGateway:
        try:
            credentials = load_credentials(credentials_path)
        except ValueError as e:
            raise AuthorizationError(str(e)) from e
        ex = config.exchange
        quotas = {
            "/api/1/marketorder": RateLimitQuota(config.rate_limit.orders_per_second, 1),
            "default": RateLimitQuota(config.rate_limit.default_per_second, 1),
        }
        return LunoAdapter.from_credentials(
            credentials,
            base_url=ex.base_url,
            timeout=ex.timeout,
            max_retries=ex.max_retries,
            max_backoff_seconds=ex.max_backoff_seconds,
            request_delay=ex.request_delay,
            history_request_delay=ex.history_request_delay,
            rate_limits=RateLimitManager({**RateLimitManager.DEFAULT_QUOTAS, **quotas}),
            sleep=cancel.sleep if cancel is not None else None,
        )

    return factory


@dataclass
class SessionContext:
    """Everything one trading session needs, passed explicitly instead of kept in globals."""
    config: BotConfig
    gateway_factory: Callable[[], ExchangeGateway]
    cancel: CancellationToken = field(default_factory=CancellationToken)
    registry: Optional[PluginRegistry] = None
    stats: Optional[StatsStore] = None
    listener: SessionListener = field(default_factory=SessionListener)

    def __post_init__(self):
        trade = self.config.trade
        persistence = self.config.persistence
        if self.registry is None:
            self.registry = build_registry(trade.trading_mode, default_name=trade.analysis_plugin)
        if self.stats is None:
            self.stats = StatsStore(persistence.data_dir, persistence.max_history_records)

    def lifecycle_manager(self) -> TradeLifecycleManager:
        persistence = self.config.persistence
        return TradeLifecycleManager(
            self.config.trade,
            persistence.ledger_db,
            stats=self.stats,
            signal_source=self.registry.select(self.config.trade.analysis_plugin),
            ledger_password=persistence.encryption_password,
            listener=self.listener,
        )


class SessionController:
    """Runs trading rounds until cancelled or a fatal error occurs.

    Args:
        context: Session configuration and collaborators
        connect_retry_delay: Seconds between the short initialization retries
        connect_backoff: Seconds to wait once the short retries are used up
        snooze_unit: Seconds per configured snooze minute
    """

    def __init__(
        self,
        context: SessionContext,
        *,
        connect_retry_delay: float = 10.0,
        connect_backoff: float = 300.0,
        snooze_unit: float = 60.0,
    ):
        self.context = context
        self.cancel = context.cancel
        self.connect_retry_delay = connect_retry_delay
        self.connect_backoff = connect_backoff
        self.snooze_unit = snooze_unit
        self.manager = context.lifecycle_manager()
        self.state = SessionState.STOPPED
        self.error: Optional[Exception] = None
        self.rounds = 0
        self._ledger_failures = 0
        self._thread: Optional[threading.Thread] = None

    def _set_state(self, state: SessionState) -> None:
        if state != self.state:
            logger.debug(f"Session state {self.state.value} -> {state.value}")
        self.state = state

    # --- Lifecycle ---
    def start(self) -> threading.Thread:
        """Run the session on a background thread."""
        self._thread = threading.Thread(target=self.run, name="leprechaun-session", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: Optional[float] = None) -> bool:
        """Request cancellation and wait for the session to stop."""
        self.cancel.cancel()
        return self.cancel.wait_stopped(timeout)

    def run(self) -> None:
        """Run until cancelled or a fatal error ends the session."""
        try:
            self._set_state(SessionState.INITIALIZING)
            clients = self.initialize()
            self._set_state(SessionState.CONNECTED)
            self.reconcile(clients)
            while True:
                self.cancel.check()
                self._set_state(SessionState.ROUND_RUNNING)
                self.run_round(clients)
                self._set_state(SessionState.SNOOZING)
                self.snooze()
        except Cancelled:
            logger.info("Trading session cancelled")
        except (AuthorizationError, MalformedRequestError, InitializationFailed, InvalidPurchaseUnit, LedgerError) as e:
            self.error = e
            logger.error(f"Trading session stopped: {e}")
            self.context.listener.on_error(e)
        finally:
            self._set_state(SessionState.STOPPED)
            self.cancel.mark_stopped()
            self.context.listener.on_stopped()

    def initialize(self) -> List[AssetClient]:
        """Connect to the exchange and load account details for every asset."""
        trade = self.context.config.trade
        currency = self.context.config.exchange.currency
        attempt = 0
        while True:
            self.cancel.check()
            try:
                gateway = self.context.gateway_factory()
                clients = [AssetClient(gateway, asset, currency, self.cancel) for asset in trade.assets]
                for client in clients:
                    client.refresh_balances()
                    logger.info(f"{client.name}: account {client.account_id}, {client.asset_balance} {client.asset} available")
                logger.info(f"Connected; trading {', '.join(trade.assets)} against {currency}")
                return clients
            except TransientError as e:
                if trade.exit_on_init_failed:
                    raise InitializationFailed(f"Could not connect to the exchange: {e}") from e
                attempt += 1
                if attempt < trade.connect_retries:
                    logger.warning(f"Initialization failed ({e}); retrying in {self.connect_retry_delay:.0f}s")
                    self.cancel.sleep(self.connect_retry_delay)
                else:
                    logger.warning(f"Initialization failed {attempt} times; backing off {self.connect_backoff:.0f}s")
                    attempt = 0
                    self.cancel.sleep(self.connect_backoff)

    def reconcile(self, clients: List[AssetClient]) -> None:
        for client in clients:
            try:
                removed = self.manager.reconcile(client)
            except TransientError as e:
                logger.warning(f"{client.name}: reconciliation skipped: {e}")
                continue
            if removed:
                logger.warning(f"{client.name}: removed {len(removed)} record(s) closed before the last shutdown")

    def run_round(self, clients: List[AssetClient]) -> None:
        """One pass over every asset."""
        self.rounds += 1
        logger.info(f"Round {self.rounds} started")
        too_small = 0
        for client in clients:
            self.cancel.check()
            try:
                if self.manager.run_round(client) is None:
                    too_small += 1
                self._ledger_failures = 0
            except (RoundAbandoned, TransientError) as e:
                logger.warning(f"{client.name}: round skipped: {e}")
                self.context.listener.on_error(e)
            except LedgerError as e:
                self._ledger_failures += 1
                logger.error(f"{client.name}: ledger failure ({self._ledger_failures}/{MAX_LEDGER_FAILURES}): {e}")
                self.context.listener.on_error(e)
                if self._ledger_failures >= MAX_LEDGER_FAILURES:
                    raise
        if clients and too_small == len(clients):
            raise InvalidPurchaseUnit(
                f"Purchase unit {self.context.config.trade.purchase_unit} is too small for every configured asset"
            )

    def snooze(self) -> None:
        trade = self.context.config.trade
        minutes = random.choice(trade.snooze_times) if trade.random_snooze else trade.snooze_period
        logger.info(f"Snoozing for {minutes} minute(s)")
        self.cancel.sleep(minutes * self.snooze_unit)
