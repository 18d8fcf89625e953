"""
SQLite persistence for the store, workflows and positions.

Every public mutation runs in a single transaction, so after a crash a record is
either fully written or absent. Workflow, position and close-position rows are
append-only; after creation only status, claims, fills, profits and completion
are updated.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Iterator

from market.models import Side
from state.models import (
    ClosePosition,
    ClosingFlowRecord,
    FlowStatus,
    OpeningFlowRecord,
    Position,
    TradingStore,
)

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS store (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    buying_amount_to_spend_per_order REAL,
    selling_quantity_to_sell_per_order REAL,
    buying_profit REAL,
    selling_profit REAL,
    buying_fx_rate REAL,
    selling_fx_rate REAL,
    crypto_warning REAL,
    fiat_warning REAL,
    crypto_stop REAL,
    fiat_stop REAL,
    hold INTEGER NOT NULL DEFAULT 0,
    maker_crypto REAL NOT NULL DEFAULT 0,
    maker_fiat REAL NOT NULL DEFAULT 0,
    taker_crypto REAL NOT NULL DEFAULT 0,
    taker_fiat REAL NOT NULL DEFAULT 0,
    last_warning REAL
);

CREATE TABLE IF NOT EXISTS opening_flows (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    side TEXT NOT NULL,
    price REAL NOT NULL,
    value_to_use REAL NOT NULL,
    suggested_closing_price REAL NOT NULL,
    status TEXT NOT NULL,
    order_id TEXT NOT NULL,
    created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_opening_flows_order ON opening_flows (side, order_id);

CREATE TABLE IF NOT EXISTS closing_flows (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    side TEXT NOT NULL,
    desired_price REAL NOT NULL,
    quantity REAL NOT NULL,
    amount REAL NOT NULL,
    crypto_profit REAL,
    fiat_profit REAL,
    fx_rate REAL,
    done INTEGER NOT NULL DEFAULT 0,
    created_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS positions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    side TEXT NOT NULL,
    trade_id TEXT NOT NULL UNIQUE,
    price REAL NOT NULL,
    amount REAL NOT NULL,
    quantity REAL NOT NULL,
    opening_flow_id INTEGER NOT NULL REFERENCES opening_flows (id),
    closing_flow_id INTEGER REFERENCES closing_flows (id),
    created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_positions_open ON positions (side, closing_flow_id);

CREATE TABLE IF NOT EXISTS close_positions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    closing_flow_id INTEGER NOT NULL REFERENCES closing_flows (id),
    order_id TEXT NOT NULL,
    amount REAL,
    quantity REAL,
    created_at REAL NOT NULL
);
"""

DEFAULT_DB_PATH = Path("bot.db")


class PositionAlreadyClaimed(Exception):
    """Raised when a closing workflow tries to claim a position another one owns."""
    pass


class TradingRepository:
    """
    Single-writer SQLite repository. The robot loop is the only writer.

    Usage:
        repo = TradingRepository("bot.db")
        store = repo.load_store()
        flow = repo.add_opening_flow(record)
    """

    def __init__(self, db_path: str | Path = DEFAULT_DB_PATH) -> None:
        self._db_path = str(db_path)
        self._conn: sqlite3.Connection | None = None
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self._db_path)
            self._conn.row_factory = sqlite3.Row
            if self._db_path != ":memory:":
                self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=5000")
            self._conn.execute("PRAGMA foreign_keys=ON")
        return self._conn

    def _init_db(self) -> None:
        conn = self._get_conn()
        conn.executescript(_SCHEMA)
        conn.execute("INSERT OR IGNORE INTO store (id) VALUES (1)")
        conn.commit()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # -- Store ---------------------------------------------------------------

    def load_store(self) -> TradingStore:
        row = self._get_conn().execute("SELECT * FROM store WHERE id = 1").fetchone()
        values = {name: row[name] for name in TradingStore.field_names()}
        values["hold"] = bool(values["hold"])
        return TradingStore(**values)

    def save_store(self, store: TradingStore) -> None:
        names = TradingStore.field_names()
        assignments = ", ".join(f"{name} = ?" for name in names)
        values = [getattr(store, name) for name in names]
        values[names.index("hold")] = int(store.hold)
        with self._transaction() as conn:
            conn.execute(f"UPDATE store SET {assignments} WHERE id = 1", values)

    # -- Opening flows -------------------------------------------------------

    def add_opening_flow(self, flow: OpeningFlowRecord) -> OpeningFlowRecord:
        with self._transaction() as conn:
            cur = conn.execute(
                "INSERT INTO opening_flows "
                "(side, price, value_to_use, suggested_closing_price, status, order_id, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    flow.side.value, flow.price, flow.value_to_use, flow.suggested_closing_price,
                    flow.status.value, flow.order_id, flow.created_at,
                ),
            )
        return replace(flow, id=cur.lastrowid)

    def set_opening_status(self, flow: OpeningFlowRecord, status: FlowStatus) -> OpeningFlowRecord:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE opening_flows SET status = ? WHERE id = ?",
                (status.value, flow.id),
            )
        return replace(flow, status=status)

    def get_opening_flow(self, flow_id: int) -> OpeningFlowRecord | None:
        row = self._get_conn().execute(
            "SELECT * FROM opening_flows WHERE id = ?", (flow_id,)
        ).fetchone()
        return _opening_from_row(row) if row else None

    def active_opening_flows(self, side: Side | None = None) -> list[OpeningFlowRecord]:
        return self._opening_query("status != ?", [FlowStatus.FINALISED.value], side)

    def old_active_opening_flows(self, side: Side, threshold: float) -> list[OpeningFlowRecord]:
        """Active flows created before threshold."""
        return self._opening_query(
            "status != ? AND created_at < ?", [FlowStatus.FINALISED.value, threshold], side
        )

    def recent_opening_flows(self, side: Side, threshold: float) -> list[OpeningFlowRecord]:
        """Flows of any status created after threshold."""
        return self._opening_query("created_at > ?", [threshold], side)

    def find_opening_flow_by_order(self, side: Side, order_id: str) -> OpeningFlowRecord | None:
        flows = self._opening_query("order_id = ?", [order_id], side)
        return flows[0] if flows else None

    def has_active_opening_flows(self) -> bool:
        return bool(self.active_opening_flows())

    def _opening_query(self, where: str, params: list, side: Side | None) -> list[OpeningFlowRecord]:
        if side is not None:
            where += " AND side = ?"
            params = params + [side.value]
        rows = self._get_conn().execute(
            f"SELECT * FROM opening_flows WHERE {where} ORDER BY id", params
        ).fetchall()
        return [_opening_from_row(r) for r in rows]

    # -- Positions -----------------------------------------------------------

    def add_position(self, position: Position) -> Position:
        with self._transaction() as conn:
            cur = conn.execute(
                "INSERT INTO positions "
                "(side, trade_id, price, amount, quantity, opening_flow_id, closing_flow_id, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    position.side.value, position.trade_id, position.price, position.amount,
                    position.quantity, position.opening_flow_id, position.closing_flow_id,
                    position.created_at,
                ),
            )
        return replace(position, id=cur.lastrowid)

    def position_exists(self, trade_id: str) -> bool:
        row = self._get_conn().execute(
            "SELECT 1 FROM positions WHERE trade_id = ?", (trade_id,)
        ).fetchone()
        return row is not None

    def latest_position(self, side: Side) -> Position | None:
        row = self._get_conn().execute(
            "SELECT * FROM positions WHERE side = ? ORDER BY created_at DESC, id DESC LIMIT 1",
            (side.value,),
        ).fetchone()
        return _position_from_row(row) if row else None

    def unclaimed_positions(self, side: Side | None = None) -> list[Position]:
        if side is None:
            rows = self._get_conn().execute(
                "SELECT * FROM positions WHERE closing_flow_id IS NULL ORDER BY id"
            ).fetchall()
        else:
            rows = self._get_conn().execute(
                "SELECT * FROM positions WHERE closing_flow_id IS NULL AND side = ? ORDER BY id",
                (side.value,),
            ).fetchall()
        return [_position_from_row(r) for r in rows]

    def has_unclaimed_positions(self) -> bool:
        return bool(self.unclaimed_positions())

    def positions_for_closing(self, closing_flow_id: int) -> list[Position]:
        rows = self._get_conn().execute(
            "SELECT * FROM positions WHERE closing_flow_id = ? ORDER BY id", (closing_flow_id,)
        ).fetchall()
        return [_position_from_row(r) for r in rows]

    def positions_for_opening(self, opening_flow_id: int) -> list[Position]:
        rows = self._get_conn().execute(
            "SELECT * FROM positions WHERE opening_flow_id = ? ORDER BY id", (opening_flow_id,)
        ).fetchall()
        return [_position_from_row(r) for r in rows]

    # -- Closing flows -------------------------------------------------------

    def create_closing_flow(
        self,
        flow: ClosingFlowRecord,
        positions: list[Position],
        order_id: str,
    ) -> tuple[ClosingFlowRecord, ClosePosition]:
        """
        Persist a closing flow, claim its positions and record its first taker order
        in one transaction. Raises PositionAlreadyClaimed (nothing written) if any
        position was claimed meanwhile.
        """
        with self._transaction() as conn:
            cur = conn.execute(
                "INSERT INTO closing_flows (side, desired_price, quantity, amount, done, created_at) "
                "VALUES (?, ?, ?, ?, 0, ?)",
                (flow.side.value, flow.desired_price, flow.quantity, flow.amount, flow.created_at),
            )
            flow_id = cur.lastrowid
            for position in positions:
                claimed = conn.execute(
                    "UPDATE positions SET closing_flow_id = ? WHERE id = ? AND closing_flow_id IS NULL",
                    (flow_id, position.id),
                )
                if claimed.rowcount != 1:
                    raise PositionAlreadyClaimed(
                        f"Position {position.id} (trade {position.trade_id}) is already claimed"
                    )
            cur = conn.execute(
                "INSERT INTO close_positions (closing_flow_id, order_id, created_at) VALUES (?, ?, ?)",
                (flow_id, order_id, flow.created_at),
            )
            close_position = ClosePosition(
                id=cur.lastrowid,
                closing_flow_id=flow_id,
                order_id=order_id,
                created_at=flow.created_at,
            )
        return replace(flow, id=flow_id), close_position

    def get_closing_flow(self, flow_id: int) -> ClosingFlowRecord | None:
        row = self._get_conn().execute(
            "SELECT * FROM closing_flows WHERE id = ?", (flow_id,)
        ).fetchone()
        return _closing_from_row(row) if row else None

    def active_closing_flows(self, side: Side | None = None) -> list[ClosingFlowRecord]:
        if side is None:
            rows = self._get_conn().execute(
                "SELECT * FROM closing_flows WHERE done = 0 ORDER BY id"
            ).fetchall()
        else:
            rows = self._get_conn().execute(
                "SELECT * FROM closing_flows WHERE done = 0 AND side = ? ORDER BY id",
                (side.value,),
            ).fetchall()
        return [_closing_from_row(r) for r in rows]

    def has_active_closing_flows(self) -> bool:
        return bool(self.active_closing_flows())

    def finish_closing_flow(
        self,
        flow: ClosingFlowRecord,
        crypto_profit: float,
        fiat_profit: float,
        fx_rate: float,
    ) -> ClosingFlowRecord:
        """Book profits and mark done. done never goes back to false."""
        with self._transaction() as conn:
            conn.execute(
                "UPDATE closing_flows SET crypto_profit = ?, fiat_profit = ?, fx_rate = ?, done = 1 "
                "WHERE id = ?",
                (crypto_profit, fiat_profit, fx_rate, flow.id),
            )
        return replace(
            flow, crypto_profit=crypto_profit, fiat_profit=fiat_profit, fx_rate=fx_rate, done=True
        )

    # -- Close positions -----------------------------------------------------

    def add_close_position(self, close_position: ClosePosition) -> ClosePosition:
        with self._transaction() as conn:
            cur = conn.execute(
                "INSERT INTO close_positions (closing_flow_id, order_id, created_at) VALUES (?, ?, ?)",
                (close_position.closing_flow_id, close_position.order_id, close_position.created_at),
            )
        return replace(close_position, id=cur.lastrowid)

    def close_positions(self, closing_flow_id: int) -> list[ClosePosition]:
        rows = self._get_conn().execute(
            "SELECT * FROM close_positions WHERE closing_flow_id = ? ORDER BY id",
            (closing_flow_id,),
        ).fetchall()
        return [_close_position_from_row(r) for r in rows]

    def latest_close_position(self, closing_flow_id: int) -> ClosePosition | None:
        row = self._get_conn().execute(
            "SELECT * FROM close_positions WHERE closing_flow_id = ? ORDER BY id DESC LIMIT 1",
            (closing_flow_id,),
        ).fetchone()
        return _close_position_from_row(row) if row else None

    def update_close_position_fill(
        self,
        close_position: ClosePosition,
        amount: float,
        quantity: float,
    ) -> ClosePosition:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE close_positions SET amount = ?, quantity = ? WHERE id = ?",
                (amount, quantity, close_position.id),
            )
        return replace(close_position, amount=amount, quantity=quantity)


def _opening_from_row(row: sqlite3.Row) -> OpeningFlowRecord:
    return OpeningFlowRecord(
        id=row["id"],
        side=Side(row["side"]),
        price=row["price"],
        value_to_use=row["value_to_use"],
        suggested_closing_price=row["suggested_closing_price"],
        status=FlowStatus(row["status"]),
        order_id=row["order_id"],
        created_at=row["created_at"],
    )


def _position_from_row(row: sqlite3.Row) -> Position:
    return Position(
        id=row["id"],
        side=Side(row["side"]),
        trade_id=row["trade_id"],
        price=row["price"],
        amount=row["amount"],
        quantity=row["quantity"],
        opening_flow_id=row["opening_flow_id"],
        closing_flow_id=row["closing_flow_id"],
        created_at=row["created_at"],
    )


def _closing_from_row(row: sqlite3.Row) -> ClosingFlowRecord:
    return ClosingFlowRecord(
        id=row["id"],
        side=Side(row["side"]),
        desired_price=row["desired_price"],
        quantity=row["quantity"],
        amount=row["amount"],
        created_at=row["created_at"],
        crypto_profit=row["crypto_profit"],
        fiat_profit=row["fiat_profit"],
        fx_rate=row["fx_rate"],
        done=bool(row["done"]),
    )


def _close_position_from_row(row: sqlite3.Row) -> ClosePosition:
    return ClosePosition(
        id=row["id"],
        closing_flow_id=row["closing_flow_id"],
        order_id=row["order_id"],
        created_at=row["created_at"],
        amount=row["amount"],
        quantity=row["quantity"],
    )
