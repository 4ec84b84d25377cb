from decimal import Decimal
from pathlib import Path

import pytest

from leprechaun.config import BotConfig, PersistenceConfig, TradeConfig
from leprechaun.models import TradeMode


def test_defaults():
    config = BotConfig()
    assert config.exchange.currency == "NGN"
    assert config.exchange.request_delay == 0.6
    assert config.trade.assets == ["XBT"]
    assert config.trade.profit_margin == Decimal("0.03")
    assert config.trade.trading_mode == TradeMode.CONTRARIAN
    assert config.persistence.max_history_records == 100


def test_from_yaml_with_env_interpolation(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("LEPRECHAUN_HOME", str(tmp_path))
    config_file = tmp_path / "config.yaml"
    config_file.write_text(
        """
trade:
  assets: [xbt, ETH]
  purchase_unit: 250000
  profit_margin: 0.05
  trading_mode: trend_following
  random_snooze: true
persistence:
  ledger_db: "${LEPRECHAUN_HOME}/leprechaun.ledger"
"""
    )

    config = BotConfig.from_yaml(str(config_file))

    assert config.trade.assets == ["XBT", "ETH"]
    assert config.trade.purchase_unit == Decimal("250000")
    assert config.trade.profit_margin == Decimal("0.05")
    assert config.trade.trading_mode == TradeMode.TREND_FOLLOWING
    assert config.persistence.ledger_db == f"{tmp_path}/leprechaun.ledger"
    # untouched sections keep their defaults
    assert config.exchange.base_url == "https://api.luno.com"


def test_missing_file():
    with pytest.raises(FileNotFoundError):
        BotConfig.from_yaml("/nonexistent/config.yaml")


@pytest.mark.parametrize(
    "overrides",
    [
        {"assets": ["DOGE"]},
        {"purchase_unit": "0"},
        {"profit_margin": "0"},
        {"profit_margin": "1.5"},
        {"random_snooze": True, "snooze_times": []},
        {"trading_mode": "sideways"},
    ],
)
def test_invalid_trade_settings(overrides):
    with pytest.raises(ValueError):
        TradeConfig(**overrides)


def test_yaml_round_trip(tmp_path: Path):
    original = BotConfig.from_dict({"trade": {"assets": ["XRP"], "purchase_unit": "50000"}})
    path = tmp_path / "out" / "config.yaml"
    original.to_yaml(str(path))

    loaded = BotConfig.from_yaml(str(path))
    assert loaded == original


@pytest.mark.parametrize("limit", [0, -5])
def test_history_limit_must_be_positive(limit):
    with pytest.raises(ValueError, match="max_history_records"):
        PersistenceConfig(max_history_records=limit)


def test_history_limit_from_yaml_is_an_int(tmp_path: Path):
    path = tmp_path / "config.yaml"
    path.write_text("persistence:\n  max_history_records: '25'\n")
    assert BotConfig.from_yaml(str(path)).persistence.max_history_records == 25
