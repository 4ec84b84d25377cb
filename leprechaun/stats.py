"""Per-asset trading statistics and recent trade history.

Stats live next to the ledger as plain JSON files in the data directory:

- ``<asset name>-stats.json``: all-time running totals for one asset
- ``sales.json``: the most recent completed long trades
- ``purchases.json``: the most recent completed short trades (repurchases)

Totals only ever grow by accumulation. Updates are read-modify-write and are not
transactional with the ledger: a stats write that fails after a position was
closed is logged by the caller and the close still stands.
"""
import json
from dataclasses import asdict, dataclass, fields
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Union

ASSET_NAMES = {
    "XBT": "Bitcoin",
    "ETH": "Ethereum",
    "XRP": "Ripple Coin",
    "LTC": "Litecoin",
    "BCH": "Bitcoin Cash",
}

_DECIMAL_FIELDS = (
    "purchase_price", "purchase_volume", "purchase_cost",
    "sale_price", "sale_volume", "sale_cost", "profit",
)


@dataclass
class ProfitEntry:
    """Profit made from completing one trade.

    For a long trade the purchase is the opening leg and the sale closes it; for a
    short trade the sale opens and the (re)purchase closes. Profit is always
    ``sale_cost - purchase_cost``.
    """
    asset: str
    order_id: str
    timestamp: str
    purchase_price: Decimal = Decimal("0")
    purchase_volume: Decimal = Decimal("0")
    purchase_cost: Decimal = Decimal("0")
    sale_price: Decimal = Decimal("0")
    sale_volume: Decimal = Decimal("0")
    sale_cost: Decimal = Decimal("0")
    profit: Decimal = Decimal("0")

    @classmethod
    def build(
        cls,
        asset: str,
        order_id: str,
        timestamp: str,
        *,
        purchase_price: Decimal,
        purchase_volume: Decimal,
        sale_price: Decimal,
        sale_volume: Decimal,
    ) -> "ProfitEntry":
        purchase_cost = purchase_price * purchase_volume
        sale_cost = sale_price * sale_volume
        return cls(
            asset=asset,
            order_id=order_id,
            timestamp=timestamp,
            purchase_price=purchase_price,
            purchase_volume=purchase_volume,
            purchase_cost=purchase_cost,
            sale_price=sale_price,
            sale_volume=sale_volume,
            sale_cost=sale_cost,
            profit=sale_cost - purchase_cost,
        )

    def to_dict(self) -> Dict[str, str]:
        d = asdict(self)
        for k in _DECIMAL_FIELDS:
            d[k] = str(d[k])
        return d

    @classmethod
    def from_dict(cls, d: Dict) -> "ProfitEntry":
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in d.items() if k in known}
        for k in _DECIMAL_FIELDS:
            if k in kwargs:
                kwargs[k] = Decimal(str(kwargs[k]))
        return cls(**kwargs)


@dataclass
class AssetStats:
    """All-time totals for one asset."""
    asset: str
    purchase_volume: Decimal = Decimal("0")
    purchase_cost: Decimal = Decimal("0")
    sale_volume: Decimal = Decimal("0")
    sale_cost: Decimal = Decimal("0")
    profit: Decimal = Decimal("0")
    trades: int = 0

    def accumulate(self, entry: ProfitEntry) -> None:
        self.purchase_volume += entry.purchase_volume
        self.purchase_cost += entry.purchase_cost
        self.sale_volume += entry.sale_volume
        self.sale_cost += entry.sale_cost
        self.profit += entry.profit
        self.trades += 1

    def to_dict(self) -> Dict:
        d = asdict(self)
        for k in ("purchase_volume", "purchase_cost", "sale_volume", "sale_cost", "profit"):
            d[k] = str(d[k])
        return d

    @classmethod
    def from_dict(cls, d: Dict) -> "AssetStats":
        return cls(
            asset=d["asset"],
            purchase_volume=Decimal(str(d.get("purchase_volume", "0"))),
            purchase_cost=Decimal(str(d.get("purchase_cost", "0"))),
            sale_volume=Decimal(str(d.get("sale_volume", "0"))),
            sale_cost=Decimal(str(d.get("sale_cost", "0"))),
            profit=Decimal(str(d.get("profit", "0"))),
            trades=int(d.get("trades", 0)),
        )


class StatsStore:
    """JSON-file backed stats and bounded trade history."""

    def __init__(self, data_dir: Union[str, Path], max_records: int = 100):
        if max_records < 1:
            raise ValueError(f"max_records must be at least 1, got {max_records}")
        self.data_dir = Path(data_dir)
        self.max_records = max_records

    def _stats_path(self, asset: str) -> Path:
        name = ASSET_NAMES.get(asset, asset).lower().replace(" ", "-")
        return self.data_dir / f"{name}-stats.json"

    def _read_json(self, path: Path, default):
        if not path.exists():
            return default
        with path.open("r", encoding="utf-8") as f:
            raw = f.read()
        return json.loads(raw) if raw.strip() else default

    def _write_json(self, path: Path, payload) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
        tmp.replace(path)

    def _append_history(self, filename: str, entry: ProfitEntry) -> None:
        path = self.data_dir / filename
        history = self._read_json(path, [])
        history.append(entry.to_dict())
        # FIFO: keep only the newest max_records entries
        history = history[-self.max_records:]
        self._write_json(path, history)

    def _accumulate(self, entry: ProfitEntry) -> AssetStats:
        path = self._stats_path(entry.asset)
        stats = AssetStats.from_dict(self._read_json(path, {"asset": entry.asset}))
        stats.accumulate(entry)
        self._write_json(path, stats.to_dict())
        return stats

    def record_sale(self, entry: ProfitEntry) -> AssetStats:
        """Account for a completed long trade."""
        stats = self._accumulate(entry)
        self._append_history("sales.json", entry)
        return stats

    def record_purchase(self, entry: ProfitEntry) -> AssetStats:
        """Account for a completed short trade."""
        stats = self._accumulate(entry)
        self._append_history("purchases.json", entry)
        return stats

    def get_stats(self, asset: str) -> AssetStats:
        return AssetStats.from_dict(self._read_json(self._stats_path(asset), {"asset": asset}))

    def get_sales(self) -> List[ProfitEntry]:
        return [ProfitEntry.from_dict(d) for d in self._read_json(self.data_dir / "sales.json", [])]

    def get_purchases(self) -> List[ProfitEntry]:
        return [ProfitEntry.from_dict(d) for d in self._read_json(self.data_dir / "purchases.json", [])]
