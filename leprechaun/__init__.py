"""
Leprechaun: an automated spot trading bot for the Luno exchange.

Each round the bot asks an analysis plugin for a signal per configured asset,
opens at most one LONG or SHORT position accordingly, and closes every pending
position whose trigger price has been crossed. Pending positions live in a
SQLite ledger so they survive restarts.

Core Modules:
    lifecycle: Opens, sweeps and reconciles positions (the trade lifecycle)
    session: Session controller, initialization retries, snoozing
    ledger: Durable position records with versioned migrations
    stats: Per-asset totals and recent trade history
    exchange: Gateway contract, error types and an in-memory double
    luno_adapter: Luno REST gateway
    client: Asset client binding one pair to a gateway
    signals: Signal source interface and plugin registry
    plugins.hermes: Default trend/moving-average plugin
    config: Configuration loading and validation
    secrets: Credential management

Example:
    >>> from leprechaun.config import BotConfig
    >>> from leprechaun.session import SessionContext, SessionController, luno_gateway_factory
    >>>
    >>> config = BotConfig.from_yaml("config.yaml")
    >>> context = SessionContext(config, luno_gateway_factory(config))
    >>> SessionController(context).run()
"""

__version__ = "0.1.0"
__all__ = [
    "cancellation",
    "client",
    "config",
    "exchange",
    "ledger",
    "lifecycle",
    "luno_adapter",
    "models",
    "plugins",
    "secrets",
    "session",
    "signals",
    "stats",
]
