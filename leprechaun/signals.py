"""
Signal sources and the analysis plugin registry.

A signal source is consulted once per asset per round:

    count, interval = source.price_dimensions()
    source.analyze(client.previous_prices(count, interval))
    signal = source.emit()

Plugins register under a unique, case-insensitive name. The registry's default
is the plugin named by configuration when that name is registered, otherwise
the first plugin that was registered.
"""

from abc import ABC, abstractmethod
from datetime import timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from .logging_setup import logger
from .models import Signal


class SignalSource(ABC):
    """Pluggable technical analysis pipeline."""

    description: str = ""

    @abstractmethod
    def price_dimensions(self) -> Tuple[int, timedelta]:
        """Number of past prices to retrieve and the interval between them."""

    @abstractmethod
    def analyze(self, prices: Sequence[Decimal]) -> None:
        """Digest historical prices, most recent first. Raise ``ValueError`` on unusable data."""

    @abstractmethod
    def emit(self) -> Signal:
        """Signal derived from the last ``analyze`` call."""


class PluginRegistry:
    def __init__(self, default_name: Optional[str] = None):
        self._plugins: Dict[str, SignalSource] = {}
        self._order: List[str] = []
        self.default_name = default_name.lower() if default_name else None

    def register(self, name: str, plugin: SignalSource) -> None:
        """Make ``plugin`` available under ``name``; names must be unique."""
        key = name.lower()
        if key in self._plugins:
            raise ValueError(f"An analysis plugin named '{key}' is already registered")
        if not isinstance(plugin, SignalSource):
            raise TypeError(f"{plugin!r} does not implement SignalSource")
        self._plugins[key] = plugin
        self._order.append(key)
        logger.debug(f"Analysis plugin registered | name={key}")

    def names(self) -> List[str]:
        return list(self._order)

    def get(self, name: str) -> SignalSource:
        try:
            return self._plugins[name.lower()]
        except KeyError:
            raise KeyError(f"No analysis plugin named '{name}'") from None

    @property
    def default(self) -> SignalSource:
        if not self._order:
            raise LookupError("No analysis plugins have been registered")
        if self.default_name and self.default_name in self._plugins:
            return self._plugins[self.default_name]
        return self._plugins[self._order[0]]

    def select(self, name: Optional[str]) -> SignalSource:
        """Plugin called ``name`` if registered, else the default."""
        if name and name.lower() in self._plugins:
            return self._plugins[name.lower()]
        if name:
            logger.warning(f"Analysis plugin '{name}' is not registered; using the default")
        return self.default
