"""Configuration loader for the trading bot.

Supports YAML format with environment variable interpolation.
"""
import os
from dataclasses import dataclass, field, fields
from decimal import Decimal
from pathlib import Path
from typing import List, Optional

import yaml

from .models import TradeMode

SUPPORTED_ASSETS = ("XBT", "ETH", "XRP", "LTC", "BCH")


@dataclass
class ExchangeConfig:
    """Luno exchange settings."""
    base_url: str = "https://api.luno.com"
    currency: str = "NGN"
    timeout: int = 10
    max_retries: int = 3
    max_backoff_seconds: float = 60.0
    request_delay: float = 0.6  # seconds between calls
    history_request_delay: float = 0.7


@dataclass
class TradeConfig:
    """Trading parameters.

    ``purchase_unit`` is the fiat amount spent (or raised, for shorts) per
    opening order; ``profit_margin`` is a fraction, 0.03 meaning 3%.
    """
    assets: List[str] = field(default_factory=lambda: ["XBT"])
    purchase_unit: Decimal = Decimal("100000")
    profit_margin: Decimal = Decimal("0.03")
    trading_mode: TradeMode = TradeMode.CONTRARIAN
    analysis_plugin: str = "hermes"
    snooze_period: int = 10  # minutes
    random_snooze: bool = False
    snooze_times: List[int] = field(default_factory=lambda: [5, 10, 15, 20, 30])
    exit_on_init_failed: bool = False
    connect_retries: int = 3
    price_retries: int = 3

    def __post_init__(self):
        self.purchase_unit = Decimal(str(self.purchase_unit))
        self.profit_margin = Decimal(str(self.profit_margin))
        self.trading_mode = TradeMode(self.trading_mode)
        self.assets = [a.upper() for a in self.assets]
        unknown = [a for a in self.assets if a not in SUPPORTED_ASSETS]
        if unknown:
            raise ValueError(f"Unsupported asset(s): {', '.join(unknown)}")
        if self.purchase_unit <= 0:
            raise ValueError("purchase_unit must be positive")
        if not Decimal("0") < self.profit_margin < Decimal("1"):
            raise ValueError("profit_margin must be a fraction between 0 and 1")
        if self.random_snooze and not self.snooze_times:
            raise ValueError("random_snooze needs at least one entry in snooze_times")


@dataclass
class RateLimitConfig:
    """Rate-limit policy settings."""
    orders_per_second: int = 5
    default_per_second: int = 5


@dataclass
class PersistenceConfig:
    """Ledger, stats and log locations."""
    data_dir: str = "data"
    ledger_db: str = "data/leprechaun.ledger"
    encryption_password: Optional[str] = None
    max_history_records: int = 100
    log_file: str = "leprechaun.log"
    log_level: str = "INFO"
    verbose: bool = True

    def __post_init__(self):
        self.max_history_records = int(self.max_history_records)
        if self.max_history_records < 1:
            raise ValueError("max_history_records must be at least 1")


@dataclass
class BotConfig:
    """Complete bot configuration."""
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    trade: TradeConfig = field(default_factory=TradeConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)

    @classmethod
    def from_yaml(cls, config_path: str) -> "BotConfig":
        """Load configuration from YAML file with env var interpolation.

        Example YAML:
            exchange:
              currency: NGN
            trade:
              assets: [XBT, ETH]
              purchase_unit: 100000
              profit_margin: 0.03
              trading_mode: contrarian
            persistence:
              ledger_db: "${LEPRECHAUN_HOME}/leprechaun.ledger"
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with config_file.open("r") as f:
            raw = f.read()

        for key, value in os.environ.items():
            raw = raw.replace(f"${{{key}}}", value)

        data = yaml.safe_load(raw) or {}
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict) -> "BotConfig":
        return cls(
            exchange=ExchangeConfig(**data.get("exchange", {})),
            trade=TradeConfig(**data.get("trade", {})),
            rate_limit=RateLimitConfig(**data.get("rate_limit", {})),
            persistence=PersistenceConfig(**data.get("persistence", {})),
        )

    def to_dict(self) -> dict:
        def section(obj):
            out = {}
            for f in fields(obj):
                value = getattr(obj, f.name)
                if isinstance(value, Decimal):
                    value = str(value)
                elif isinstance(value, TradeMode):
                    value = value.value
                elif isinstance(value, list):
                    value = list(value)
                out[f.name] = value
            return out

        return {
            "exchange": section(self.exchange),
            "trade": section(self.trade),
            "rate_limit": section(self.rate_limit),
            "persistence": section(self.persistence),
        }

    def to_yaml(self, output_path: str) -> None:
        output_file = Path(output_path)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        with output_file.open("w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)
