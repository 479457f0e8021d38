from __future__ import annotations

import contextlib
import datetime as dt
import json
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence

from engine.time_machine import utc_now as engine_utc_now
from persistence.db import connect_db, immediate_transaction, run_migrations

_POSITION_FIELDS = {
    "status",
    "remaining_qty",
    "avg_price",
    "total_exit_qty",
    "realized_pnl",
    "unrealized_pnl",
    "current_price",
    "auto_exit_time",
    "reconciliation_type",
    "closed_at",
}
_SCHEDULED_EXIT_FIELDS = {
    "user_id",
    "symbol",
    "exit_time",
    "scheduled_for_date",
    "attempts",
    "last_attempt_at",
    "last_error",
    "execution_method",
    "execution_details",
    "process_id",
    "scheduler_version",
}
_ORDER_STATE_FIELDS = {
    "execution_id",
    "position_id",
    "purpose",
    "broker_order_id",
    "placement_status",
    "confirmation_status",
    "executed_qty",
    "executed_price",
    "pending_qty",
    "attempts",
    "total_wait_ms",
    "final_status",
    "error",
    "failure_code",
    "manual_review",
    "raw_payload",
    "context",
}
_JSON_COLUMNS = {"execution_details", "raw_payload", "context", "details", "payload"}


def _iso(value: Any) -> Any:
    if isinstance(value, (dt.datetime, dt.date)):
        return value.isoformat()
    return value


def _placeholders(values: Sequence[Any]) -> str:
    return ",".join("?" for _ in values)


class SQLiteStore:
    """SQLite persistence for positions, scheduled exits and order confirmation trails."""

    def __init__(self, path: str | Path, run_id: str, process_id: Optional[str] = None):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = connect_db(self.path)
        self._lock = threading.RLock()
        self._tx_depth = 0
        self.run_id = run_id
        self.process_id = process_id
        run_migrations(self._conn)
        self._ensure_run()

    def _ensure_run(self) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT OR IGNORE INTO runs(run_id, process_id, started_at) VALUES (?, ?, ?)",
                (self.run_id, self.process_id, self._ts()),
            )

    # ----------------------------------------------------------------- helpers
    def _ts(self, ts: Optional[dt.datetime] = None) -> str:
        return (ts or engine_utc_now()).astimezone(dt.timezone.utc).isoformat()

    def _json(self, payload: Optional[Any]) -> Optional[str]:
        if payload is None:
            return None
        return json.dumps(payload, separators=(",", ":"), default=str)

    def _row(self, row: Any) -> Optional[Dict[str, Any]]:
        if row is None:
            return None
        data = dict(row)
        for key in _JSON_COLUMNS & data.keys():
            raw = data[key]
            data[key] = json.loads(raw) if raw else None
        return data

    def _encode(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        encoded: Dict[str, Any] = {}
        for key, value in fields.items():
            if key in _JSON_COLUMNS:
                encoded[key] = self._json(value)
            elif isinstance(value, bool):
                encoded[key] = int(value)
            else:
                encoded[key] = _iso(value)
        return encoded

    @contextlib.contextmanager
    def atomic(self) -> Iterator["SQLiteStore"]:
        """Group several store calls into one immediate transaction (re-entrant)."""

        with self._lock:
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield self
                finally:
                    self._tx_depth -= 1
                return
            self._tx_depth = 1
            try:
                with immediate_transaction(self._conn):
                    yield self
            finally:
                self._tx_depth = 0

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # --------------------------------------------------------------- positions
    def insert_position(self, row: Mapping[str, Any]) -> bool:
        data = self._encode(row)
        stamp = self._ts()
        data.setdefault("created_at", stamp)
        data["updated_at"] = stamp
        columns = list(data.keys())
        with self._lock:
            cur = self._conn.execute(
                f"INSERT OR IGNORE INTO positions({','.join(columns)}) VALUES ({_placeholders(columns)})",
                [data[c] for c in columns],
            )
            return cur.rowcount == 1

    def get_position(self, position_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM positions WHERE position_id=?", (position_id,)).fetchone()
            if row is None:
                return None
            data = dict(row)
            data["exits"] = self._exits_for(position_id)
        return data

    def _exits_for(self, position_id: str) -> List[Dict[str, Any]]:
        cur = self._conn.execute(
            "SELECT seq, quantity, price, exit_time, order_id, reason, pnl FROM position_exits WHERE position_id=? ORDER BY seq",
            (position_id,),
        )
        return [dict(r) for r in cur.fetchall()]

    def list_positions(
        self,
        *,
        statuses: Optional[Iterable[str]] = None,
        user_id: Optional[str] = None,
        bot_id: Optional[str] = None,
        intraday: Optional[bool] = None,
    ) -> List[Dict[str, Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if statuses is not None:
            status_list = list(statuses)
            clauses.append(f"status IN ({_placeholders(status_list)})")
            params.extend(status_list)
        if user_id is not None:
            clauses.append("user_id=?")
            params.append(user_id)
        if bot_id is not None:
            clauses.append("bot_id=?")
            params.append(bot_id)
        if intraday is not None:
            clauses.append("is_intraday=?")
            params.append(int(intraday))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            rows = self._conn.execute(f"SELECT * FROM positions {where} ORDER BY entry_time, position_id", params).fetchall()
            positions = []
            for row in rows:
                data = dict(row)
                data["exits"] = self._exits_for(data["position_id"])
                positions.append(data)
        return positions

    def update_position(
        self,
        position_id: str,
        fields: Mapping[str, Any],
        *,
        expected_version: Optional[int] = None,
        allowed_statuses: Optional[Iterable[str]] = None,
    ) -> bool:
        """Conditional single-statement update; returns False when the guard did not match."""

        unknown = set(fields) - _POSITION_FIELDS
        if unknown:
            raise ValueError(f"Unknown position fields: {sorted(unknown)}")
        data = self._encode(fields)
        assignments = [f"{key}=?" for key in data]
        params: List[Any] = list(data.values())
        assignments.extend(["version=version+1", "updated_at=?"])
        params.append(self._ts())
        clauses = ["position_id=?"]
        params.append(position_id)
        if expected_version is not None:
            clauses.append("version=?")
            params.append(expected_version)
        if allowed_statuses is not None:
            status_list = list(allowed_statuses)
            clauses.append(f"status IN ({_placeholders(status_list)})")
            params.extend(status_list)
        with self._lock:
            cur = self._conn.execute(
                f"UPDATE positions SET {', '.join(assignments)} WHERE {' AND '.join(clauses)}",
                params,
            )
            return cur.rowcount == 1

    def apply_position_exit(
        self,
        position_id: str,
        *,
        expected_version: int,
        fields: Mapping[str, Any],
        exit_row: Mapping[str, Any],
    ) -> bool:
        """Append one exit record and the derived position fields atomically."""

        with self.atomic():
            if not self.update_position(position_id, fields, expected_version=expected_version):
                return False
            seq_row = self._conn.execute(
                "SELECT COALESCE(MAX(seq), 0) + 1 FROM position_exits WHERE position_id=?",
                (position_id,),
            ).fetchone()
            exit_data = self._encode(exit_row)
            self._conn.execute(
                """
                INSERT INTO position_exits(position_id, seq, quantity, price, exit_time, order_id, reason, pnl)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    position_id,
                    int(seq_row[0]),
                    exit_data["quantity"],
                    exit_data["price"],
                    exit_data["exit_time"],
                    exit_data.get("order_id"),
                    exit_data["reason"],
                    exit_data["pnl"],
                ),
            )
        return True

    def purge_closed_positions(self, closed_before: dt.datetime) -> int:
        with self._lock:
            cur = self._conn.execute(
                "DELETE FROM positions WHERE status='CLOSED' AND closed_at IS NOT NULL AND closed_at < ?",
                (closed_before.astimezone(dt.timezone.utc).isoformat(),),
            )
            return cur.rowcount

    # --------------------------------------------------------- scheduled exits
    def get_scheduled_exit(self, position_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM scheduled_exits WHERE position_id=?", (position_id,)).fetchone()
        return self._row(row)

    def list_scheduled_exits(self, statuses: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        with self._lock:
            if statuses is None:
                rows = self._conn.execute("SELECT * FROM scheduled_exits ORDER BY scheduled_for_date, exit_time").fetchall()
            else:
                status_list = list(statuses)
                rows = self._conn.execute(
                    f"SELECT * FROM scheduled_exits WHERE status IN ({_placeholders(status_list)}) ORDER BY scheduled_for_date, exit_time",
                    status_list,
                ).fetchall()
        return [self._row(row) for row in rows]  # type: ignore[misc]

    def insert_scheduled_exit(self, row: Mapping[str, Any]) -> None:
        data = self._encode(row)
        stamp = self._ts()
        data.setdefault("created_at", stamp)
        data["updated_at"] = stamp
        columns = list(data.keys())
        with self._lock:
            self._conn.execute(
                f"INSERT INTO scheduled_exits({','.join(columns)}) VALUES ({_placeholders(columns)})",
                [data[c] for c in columns],
            )

    def transition_scheduled_exit(
        self,
        position_id: str,
        *,
        to_status: str,
        from_statuses: Optional[Iterable[str]] = None,
        fields: Optional[Mapping[str, Any]] = None,
        increment_attempts: bool = False,
    ) -> bool:
        """Move a scheduled exit to ``to_status`` only if it is currently in ``from_statuses``."""

        fields = dict(fields or {})
        unknown = set(fields) - _SCHEDULED_EXIT_FIELDS
        if unknown:
            raise ValueError(f"Unknown scheduled exit fields: {sorted(unknown)}")
        data = self._encode(fields)
        assignments = ["status=?"] + [f"{key}=?" for key in data] + ["updated_at=?"]
        params: List[Any] = [to_status, *data.values(), self._ts()]
        if increment_attempts:
            assignments.append("attempts=attempts+1")
        clauses = ["position_id=?"]
        params.append(position_id)
        if from_statuses is not None:
            status_list = list(from_statuses)
            clauses.append(f"status IN ({_placeholders(status_list)})")
            params.extend(status_list)
        with self._lock:
            cur = self._conn.execute(
                f"UPDATE scheduled_exits SET {', '.join(assignments)} WHERE {' AND '.join(clauses)}",
                params,
            )
            return cur.rowcount == 1

    def append_exit_audit(
        self,
        position_id: str,
        action: str,
        *,
        process_id: Optional[str] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT INTO scheduled_exit_audit(position_id, ts, action, process_id, details) VALUES (?, ?, ?, ?, ?)",
                (position_id, self._ts(), action, process_id or self.process_id, self._json(dict(details or {}))),
            )

    def list_exit_audit(self, position_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT ts, action, process_id, details FROM scheduled_exit_audit WHERE position_id=? ORDER BY id",
                (position_id,),
            ).fetchall()
        return [self._row(row) for row in rows]  # type: ignore[misc]

    # ------------------------------------------------------------ order states
    def insert_order_state(self, row: Mapping[str, Any]) -> None:
        data = self._encode(row)
        stamp = self._ts()
        data.setdefault("created_at", stamp)
        data["updated_at"] = stamp
        columns = list(data.keys())
        with self._lock:
            self._conn.execute(
                f"INSERT INTO order_states({','.join(columns)}) VALUES ({_placeholders(columns)})",
                [data[c] for c in columns],
            )

    def update_order_state(
        self,
        order_state_id: str,
        fields: Mapping[str, Any],
        *,
        only_if_confirmation: Optional[Iterable[str]] = None,
    ) -> bool:
        unknown = set(fields) - _ORDER_STATE_FIELDS
        if unknown:
            raise ValueError(f"Unknown order state fields: {sorted(unknown)}")
        data = self._encode(fields)
        assignments = [f"{key}=?" for key in data] + ["updated_at=?"]
        params: List[Any] = [*data.values(), self._ts(), order_state_id]
        where = "id=?"
        if only_if_confirmation is not None:
            status_list = list(only_if_confirmation)
            where += f" AND confirmation_status IN ({_placeholders(status_list)})"
            params.extend(status_list)
        with self._lock:
            cur = self._conn.execute(f"UPDATE order_states SET {', '.join(assignments)} WHERE {where}", params)
            return cur.rowcount == 1

    def get_order_state(self, order_state_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM order_states WHERE id=?", (order_state_id,)).fetchone()
        return self._row(row)

    def list_pending_order_states(self, *, limit: Optional[int] = None, include_manual_review: bool = False) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM order_states WHERE confirmation_status='PENDING' AND placement_status='PLACED'"
        if not include_manual_review:
            sql += " AND manual_review=0"
        sql += " ORDER BY created_at, rowid"
        params: List[Any] = []
        if limit:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [self._row(row) for row in rows]  # type: ignore[misc]

    def append_order_history(self, order_state_id: str, action: str, details: Optional[Mapping[str, Any]] = None) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT INTO order_state_history(order_state_id, ts, action, details) VALUES (?, ?, ?, ?)",
                (order_state_id, self._ts(), action, self._json(dict(details or {}))),
            )

    def list_order_history(self, order_state_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT ts, action, details FROM order_state_history WHERE order_state_id=? ORDER BY id",
                (order_state_id,),
            ).fetchall()
        return [self._row(row) for row in rows]  # type: ignore[misc]

    # ------------------------------------------------------------- validations
    def record_validation(
        self,
        position_id: str,
        *,
        exists: bool,
        broker_qty: int,
        broker_price: Optional[float],
        broker_pnl: Optional[float],
        error: Optional[str],
        ts: Optional[dt.datetime] = None,
    ) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO position_validations(position_id, ts, exists_at_broker, broker_qty, broker_price, broker_pnl, error)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (position_id, self._ts(ts), int(exists), int(broker_qty), broker_price, broker_pnl, error),
            )

    def list_validations(self, position_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM position_validations WHERE position_id=? ORDER BY id",
                (position_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    # ---------------------------------------------------------- reconciliation
    def record_reconciliation(
        self,
        *,
        position_id: str,
        action: str,
        broker_status: str,
        previous_status: Optional[str],
        new_status: Optional[str],
        ledger_qty: Optional[int],
        broker_qty: Optional[int],
        reason: Optional[str],
        dry_run: bool,
    ) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO reconciliations(run_id, position_id, ts, action, broker_status, previous_status, new_status, ledger_qty, broker_qty, reason, dry_run)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    self.run_id,
                    position_id,
                    self._ts(),
                    action,
                    broker_status,
                    previous_status,
                    new_status,
                    ledger_qty,
                    broker_qty,
                    reason,
                    int(dry_run),
                ),
            )

    def list_reconciliations(self, position_id: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            if position_id:
                rows = self._conn.execute("SELECT * FROM reconciliations WHERE position_id=? ORDER BY id", (position_id,)).fetchall()
            else:
                rows = self._conn.execute("SELECT * FROM reconciliations ORDER BY id").fetchall()
        return [dict(row) for row in rows]


__all__ = ["SQLiteStore"]
