"""Bundled analysis plugins."""
from typing import Optional

from ..models import TradeMode
from ..signals import PluginRegistry
from .hermes import Hermes


def build_registry(trade_mode: TradeMode = TradeMode.CONTRARIAN, default_name: Optional[str] = None) -> PluginRegistry:
    """Registry holding every bundled plugin, configured for ``trade_mode``."""
    registry = PluginRegistry(default_name=default_name)
    registry.register("hermes", Hermes(trade_mode=trade_mode))
    return registry


__all__ = ["Hermes", "build_registry"]
