"""SQLite-backed ledger of pending position records.

The ledger is opened for one logical operation and closed right after it:

    with open_ledger(path) as ledger:
        ledger.add_record(rec)

``open_ledger`` guarantees the handle is released on every exit path. Records
are keyed by the exchange id of their opening order; a record leaves the ledger
only once its closing order has been placed on the exchange.

All writes run inside ``BEGIN IMMEDIATE`` transactions. Money values are stored
as TEXT so Decimals round-trip exactly.
"""
import sqlite3
from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path
from typing import Iterator, List, Optional, Union

from .db_migrations import apply_migrations
from .logging_setup import logger
from .models import CLOSING, OrderType, PositionRecord

_COLUMNS = (
    "asset, cost, id, price, close_id, closed, status, timestamp, volume, type, "
    "trigger_price, counter_currency, asset_fee, counter_fee"
)


class LedgerError(Exception):
    """The ledger could not be read or written."""


class DuplicateRecordError(LedgerError):
    """A record with the same opening order id is already in the ledger."""


def _connect(path: Path, password: Optional[str], timeout: int):
    """Open the database; returns the connection and the DB-API module whose errors it raises."""
    if not password:
        try:
            return sqlite3.connect(str(path), timeout=timeout), sqlite3
        except sqlite3.Error as e:
            raise LedgerError(f"Could not open ledger at {path}: {e}") from e
    try:
        from sqlcipher3 import dbapi2 as sqlcipher  # type: ignore
    except ImportError:
        raise LedgerError(
            "An encryption password is configured but sqlcipher3 is not installed. "
            "Install with: pip install sqlcipher3-binary"
        )
    try:
        conn = sqlcipher.connect(str(path), timeout=timeout)
    except sqlcipher.Error as e:
        raise LedgerError(f"Could not open encrypted ledger at {path}: {e}") from e
    escaped = password.replace("'", "''")
    try:
        conn.execute(f"PRAGMA key = '{escaped}'")
        conn.execute("SELECT name FROM sqlite_master LIMIT 1")
    except sqlcipher.Error as e:
        conn.close()
        raise LedgerError(f"Failed to open encrypted ledger (wrong password?): {e}") from e
    return conn, sqlcipher


def _row_to_record(row) -> PositionRecord:
    (asset, cost, rec_id, price, close_id, closed, status, timestamp, volume, order_type,
     trigger_price, counter_currency, asset_fee, counter_fee) = row
    return PositionRecord(
        id=rec_id,
        asset=asset,
        counter_currency=counter_currency,
        order_type=OrderType(order_type),
        price=Decimal(price),
        volume=Decimal(volume),
        cost=Decimal(cost),
        timestamp=timestamp or "",
        trigger_price=Decimal(trigger_price),
        close_id=close_id,
        closed=bool(closed),
        status=status,
        asset_fee=Decimal(asset_fee),
        counter_fee=Decimal(counter_fee),
    )


class Ledger:
    """Durable CRUD over position records. Not safe for concurrent writers."""

    def __init__(self, path: Union[str, Path], *, password: Optional[str] = None, timeout: int = 30):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.conn, self._db = _connect(self.path, password, timeout)
        try:
            apply_migrations(self.conn)
        except Exception as e:
            self.conn.close()
            if isinstance(e, self._db.Error):
                raise LedgerError(f"Could not open ledger at {self.path}: {e}") from e
            raise
        self._closed = False

    def __enter__(self) -> "Ledger":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @contextmanager
    def _transaction(self):
        cur = self.conn.cursor()
        try:
            cur.execute("BEGIN IMMEDIATE")
            yield cur
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise

    def _write(self, what: str, sql: str, params: tuple) -> int:
        """Run one statement in its own transaction; returns the number of rows it touched."""
        try:
            with self._transaction() as cur:
                cur.execute(sql, params)
                return cur.rowcount
        except self._db.Error as e:
            raise LedgerError(f"Could not {what}: {e}") from e

    def _select(self, where: str = "", params: tuple = ()) -> List[PositionRecord]:
        sql = f"SELECT {_COLUMNS} FROM records"
        if where:
            sql += f" WHERE {where}"
        try:
            cur = self.conn.cursor()
            cur.execute(sql, params)
            return [_row_to_record(row) for row in cur.fetchall()]
        except self._db.Error as e:
            raise LedgerError(f"Ledger query failed: {e}") from e

    # --- Writes ---
    def add_record(self, rec: PositionRecord) -> None:
        """Insert ``rec``. A second insert with the same id is a programming error."""
        try:
            with self._transaction() as cur:
                cur.execute(
                    f"INSERT INTO records({_COLUMNS}) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        rec.asset, str(rec.cost), rec.id, str(rec.price), rec.close_id,
                        int(rec.closed), rec.status, rec.timestamp, str(rec.volume),
                        rec.order_type.value, str(rec.trigger_price), rec.counter_currency,
                        str(rec.asset_fee), str(rec.counter_fee),
                    ),
                )
        except self._db.IntegrityError as e:
            raise DuplicateRecordError(f"Record {rec.id} is already in the ledger") from e
        except self._db.Error as e:
            raise LedgerError(f"Could not add record {rec.id}: {e}") from e
        logger.debug(f"Ledger insert | {rec}")

    def delete_record(self, record_id: str) -> bool:
        """Remove a record. Deleting an unknown id is not an error; returns whether a row went away."""
        removed = self._write(f"delete record {record_id}", "DELETE FROM records WHERE id = ?", (record_id,)) > 0
        logger.debug(f"Ledger delete | id={record_id} removed={removed}")
        return removed

    def update_settlement(self, rec: PositionRecord) -> None:
        """Store settled cost/volume/price and fees reported by the exchange for ``rec``."""
        self._write(
            f"update record {rec.id}",
            "UPDATE records SET cost = ?, price = ?, volume = ?, timestamp = ?, status = ?, "
            "asset_fee = ?, counter_fee = ? WHERE id = ?",
            (
                str(rec.cost), str(rec.price), str(rec.volume), rec.timestamp, rec.status,
                str(rec.asset_fee), str(rec.counter_fee), rec.id,
            ),
        )

    def mark_closing(self, record_id: str) -> None:
        """Note that a closing order for ``record_id`` is about to be placed."""
        self._write(
            f"mark record {record_id} closing",
            "UPDATE records SET status = ? WHERE id = ? AND closed = 0",
            (CLOSING, record_id),
        )

    def clear_closing(self, record_id: str, status: str = "") -> None:
        """Undo ``mark_closing`` once it is known that no closing order exists."""
        self._write(
            f"clear closing mark of record {record_id}",
            "UPDATE records SET status = ? WHERE id = ? AND closed = 0 AND status = ?",
            (status, record_id, CLOSING),
        )

    def mark_closed(self, record_id: str, close_id: str, status: str = "") -> None:
        """Note that the closing order ``close_id`` was placed for ``record_id``."""
        self._write(
            f"mark record {record_id} closed",
            "UPDATE records SET close_id = ?, closed = 1, status = ? WHERE id = ?",
            (close_id, status, record_id),
        )

    # --- Reads ---
    def record_by_id(self, record_id: str) -> Optional[PositionRecord]:
        rows = self._select("id = ?", (record_id,))
        return rows[0] if rows else None

    def records_by_type(self, asset: str, order_type: OrderType) -> List[PositionRecord]:
        """Pending records of ``order_type`` for ``asset``, in no particular order."""
        return self._select("asset = ? AND type = ?", (asset, OrderType(order_type).value))

    def viable_records(self, asset: str, order_type: OrderType, price: Decimal) -> List[PositionRecord]:
        """Records with no closing order underway whose trigger price has been crossed by ``price``."""
        # trigger prices are TEXT; compare as Decimals rather than in SQL
        return [
            rec for rec in self.records_by_type(asset, order_type)
            if not rec.close_started and rec.is_viable(price)
        ]

    def all_records(self) -> List[PositionRecord]:
        return self._select()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.conn.close()


@contextmanager
def open_ledger(path: Union[str, Path], *, password: Optional[str] = None) -> Iterator[Ledger]:
    """Open the ledger for one logical operation and always release it."""
    ledger = Ledger(path, password=password)
    try:
        yield ledger
    finally:
        ledger.close()
