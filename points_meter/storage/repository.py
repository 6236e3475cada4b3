"""
Repository pattern for data access.

Handles the price catalog, exchange-rate history, billing settings and the
append-only billing event ledger. Money is stored as TEXT so Decimal values
round-trip exactly.
"""

import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import structlog

from points_meter.core.pricing import (
    PriceOrigin,
    PriceRecord,
    ServiceKind,
    normalize_model_name,
)
from .db import DEFAULT_DB_PATH, get_connection
from .models import BillingEvent, BillingStatus, ExchangeRate, PriceChange

logger = structlog.get_logger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_utc_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


def _optional_decimal(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create all tables if they don't exist.

    ``billing_events``, ``price_changes`` and ``balance_credits`` are
    append-only: no UPDATE or DELETE is ever issued against them. Price
    records are never deleted, only deactivated.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS price_records (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                model_key TEXT NOT NULL UNIQUE,
                model_name TEXT NOT NULL,
                input_unit_price TEXT NOT NULL,
                output_unit_price TEXT NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                origin TEXT NOT NULL,
                service_kind TEXT NOT NULL,
                fixed_fee TEXT,
                created_by TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS price_changes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                model_name TEXT NOT NULL,
                change_type TEXT NOT NULL,
                old_value TEXT,
                new_value TEXT NOT NULL,
                changed_by TEXT NOT NULL,
                reason TEXT,
                timestamp TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS exchange_rates (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                points_per_currency_unit TEXT NOT NULL,
                effective_at TEXT NOT NULL,
                set_by TEXT
            );

            CREATE TABLE IF NOT EXISTS billing_settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS accounts (
                user_id TEXT PRIMARY KEY,
                balance INTEGER NOT NULL CHECK (balance >= 0),
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS balance_credits (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                points INTEGER NOT NULL,
                description TEXT,
                created_by TEXT NOT NULL,
                timestamp TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS billing_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                event_id TEXT NOT NULL UNIQUE,
                user_id TEXT NOT NULL,
                model_name TEXT NOT NULL,
                input_units INTEGER NOT NULL,
                output_units INTEGER NOT NULL,
                total_units INTEGER NOT NULL,
                input_cost TEXT NOT NULL,
                output_cost TEXT NOT NULL,
                total_cost TEXT NOT NULL,
                points_deducted INTEGER NOT NULL,
                exchange_rate_snapshot TEXT NOT NULL,
                profit_margin_percent INTEGER NOT NULL,
                status TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                cost_source TEXT,
                units_estimated INTEGER NOT NULL DEFAULT 0,
                minimum_applied INTEGER NOT NULL DEFAULT 0,
                failure_reason TEXT,
                request_id TEXT,
                conversation_id TEXT,
                message_id TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_billing_events_user_time
                ON billing_events (user_id, timestamp);
            CREATE INDEX IF NOT EXISTS idx_billing_events_model
                ON billing_events (model_name);
        """)
        conn.commit()
    finally:
        conn.close()


# Price catalog

_PRICE_COLUMNS = """
    model_name, input_unit_price, output_unit_price, is_active,
    origin, service_kind, fixed_fee
"""


def _row_to_record(row: Tuple) -> PriceRecord:
    return PriceRecord(
        model_name=row[0],
        input_unit_price=Decimal(row[1]),
        output_unit_price=Decimal(row[2]),
        is_active=bool(row[3]),
        origin=PriceOrigin(row[4]),
        service_kind=ServiceKind(row[5]),
        fixed_fee=_optional_decimal(row[6]),
    )


def _insert_price_change(conn: sqlite3.Connection, change: PriceChange) -> None:
    conn.execute("""
        INSERT INTO price_changes
        (model_name, change_type, old_value, new_value, changed_by, reason, timestamp)
        VALUES (?, ?, ?, ?, ?, ?, ?)
    """, (
        change.model_name,
        change.change_type,
        change.old_value,
        change.new_value,
        change.changed_by,
        change.reason,
        _to_utc_iso(change.timestamp),
    ))


class PriceCatalog:
    """Queryable store of per-model price records.

    Reads return an immutable snapshot that is replaced wholesale after each
    write through this instance, so readers never take a lock. Call
    ``refresh()`` to pick up writes made by other processes.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the catalog with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._snapshot: Optional[Tuple[PriceRecord, ...]] = None
        self._write_lock = threading.Lock()

    def records(self) -> Tuple[PriceRecord, ...]:
        """Current records in catalog order (oldest first)."""
        snapshot = self._snapshot
        if snapshot is None:
            snapshot = self.refresh()
        return snapshot

    def refresh(self) -> Tuple[PriceRecord, ...]:
        """Reload the snapshot from the database."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"SELECT {_PRICE_COLUMNS} FROM price_records ORDER BY id ASC"
            )
            snapshot = tuple(_row_to_record(row) for row in cursor.fetchall())
        finally:
            conn.close()
        self._snapshot = snapshot
        return snapshot

    def get(self, model_name: str) -> Optional[PriceRecord]:
        """Exact, case-insensitive lookup including inactive records."""
        key = normalize_model_name(model_name)
        for record in self.records():
            if record.key == key:
                return record
        return None

    def ensure_auto_derived(self, record: PriceRecord) -> bool:
        """Create an auto-derived record unless one exists for the model.

        Idempotent under concurrent first sight of the same model: the
        insert is keyed by the lower-cased model name and ignored on
        conflict.

        Args:
            record: Record to create; its origin is forced to AUTO_DERIVED

        Returns:
            True if a record was created, False if one already existed
        """
        now = _now()
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                INSERT OR IGNORE INTO price_records
                (model_key, model_name, input_unit_price, output_unit_price,
                 is_active, origin, service_kind, fixed_fee, created_by,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, 1, ?, ?, ?, ?, ?, ?)
            """, (
                record.key,
                record.model_name,
                str(record.input_unit_price),
                str(record.output_unit_price),
                PriceOrigin.AUTO_DERIVED.value,
                record.service_kind.value,
                str(record.fixed_fee) if record.fixed_fee is not None else None,
                "system-auto",
                now,
                now,
            ))
            created = cursor.rowcount == 1
            conn.commit()
        finally:
            conn.close()

        if created:
            logger.info(
                "price_record_auto_created",
                model=record.model_name,
                input_price=str(record.input_unit_price),
                output_price=str(record.output_unit_price),
            )
            self.refresh()
        return created

    def set_operator_price(
        self,
        model_name: str,
        input_unit_price: Decimal,
        output_unit_price: Decimal,
        changed_by: str = "operator",
        reason: Optional[str] = None,
        service_kind: ServiceKind = ServiceKind.TOKEN_METERED,
        fixed_fee: Optional[Decimal] = None,
    ) -> PriceRecord:
        """Create or edit an operator-set record.

        An existing auto-derived record for the same model is promoted to
        operator-set. Every changed field is written to the price change log.

        Returns:
            The stored record
        """
        # Validates the values before anything is written
        candidate = PriceRecord(
            model_name=model_name.strip(),
            input_unit_price=Decimal(input_unit_price),
            output_unit_price=Decimal(output_unit_price),
            service_kind=service_kind,
            fixed_fee=Decimal(fixed_fee) if fixed_fee is not None else None,
        )
        now = datetime.now(timezone.utc)

        with self._write_lock:
            conn = get_connection(self.db_path)
            try:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    f"SELECT {_PRICE_COLUMNS} FROM price_records WHERE model_key = ?",
                    (candidate.key,),
                ).fetchone()
                changes = []
                if row is None:
                    conn.execute("""
                        INSERT INTO price_records
                        (model_key, model_name, input_unit_price, output_unit_price,
                         is_active, origin, service_kind, fixed_fee, created_by,
                         created_at, updated_at)
                        VALUES (?, ?, ?, ?, 1, ?, ?, ?, ?, ?, ?)
                    """, (
                        candidate.key,
                        candidate.model_name,
                        str(candidate.input_unit_price),
                        str(candidate.output_unit_price),
                        PriceOrigin.OPERATOR_SET.value,
                        candidate.service_kind.value,
                        str(candidate.fixed_fee) if candidate.fixed_fee is not None else None,
                        changed_by,
                        now.isoformat(),
                        now.isoformat(),
                    ))
                    changes.append(("created", None, f"{candidate.input_unit_price}/{candidate.output_unit_price}"))
                else:
                    existing = _row_to_record(row)
                    conn.execute("""
                        UPDATE price_records
                        SET input_unit_price = ?, output_unit_price = ?, origin = ?,
                            service_kind = ?, fixed_fee = ?, updated_at = ?
                        WHERE model_key = ?
                    """, (
                        str(candidate.input_unit_price),
                        str(candidate.output_unit_price),
                        PriceOrigin.OPERATOR_SET.value,
                        candidate.service_kind.value,
                        str(candidate.fixed_fee) if candidate.fixed_fee is not None else None,
                        now.isoformat(),
                        candidate.key,
                    ))
                    if existing.input_unit_price != candidate.input_unit_price:
                        changes.append(("input_price", str(existing.input_unit_price), str(candidate.input_unit_price)))
                    if existing.output_unit_price != candidate.output_unit_price:
                        changes.append(("output_price", str(existing.output_unit_price), str(candidate.output_unit_price)))
                    if existing.fixed_fee != candidate.fixed_fee:
                        changes.append(("fixed_fee", str(existing.fixed_fee), str(candidate.fixed_fee)))
                    if existing.origin != PriceOrigin.OPERATOR_SET:
                        changes.append(("origin", existing.origin.value, PriceOrigin.OPERATOR_SET.value))

                for change_type, old_value, new_value in changes:
                    _insert_price_change(conn, PriceChange(
                        model_name=candidate.model_name,
                        change_type=change_type,
                        old_value=old_value,
                        new_value=new_value,
                        changed_by=changed_by,
                        timestamp=now,
                        reason=reason,
                    ))
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()
            self.refresh()

        logger.info("operator_price_set", model=candidate.model_name, changed_by=changed_by)
        return self.get(candidate.model_name)

    def set_active(
        self,
        model_name: str,
        active: bool,
        changed_by: str = "operator",
        reason: Optional[str] = None,
    ) -> PriceRecord:
        """Activate or deactivate a record. Records are never deleted.

        Raises:
            ValueError: If no record exists for the model
        """
        key = normalize_model_name(model_name)
        now = datetime.now(timezone.utc)

        with self._write_lock:
            conn = get_connection(self.db_path)
            try:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    f"SELECT {_PRICE_COLUMNS} FROM price_records WHERE model_key = ?",
                    (key,),
                ).fetchone()
                if row is None:
                    raise ValueError(f"Unknown model: {model_name}")
                existing = _row_to_record(row)
                if existing.is_active != active:
                    conn.execute(
                        "UPDATE price_records SET is_active = ?, updated_at = ? WHERE model_key = ?",
                        (int(active), now.isoformat(), key),
                    )
                    _insert_price_change(conn, PriceChange(
                        model_name=existing.model_name,
                        change_type="status",
                        old_value=str(existing.is_active),
                        new_value=str(active),
                        changed_by=changed_by,
                        timestamp=now,
                        reason=reason,
                    ))
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()
            self.refresh()

        return self.get(model_name)

    def list_changes(self, model_name: Optional[str] = None, limit: int = 100) -> List[PriceChange]:
        """Price change log, newest first."""
        conn = get_connection(self.db_path)
        try:
            query = """
                SELECT model_name, change_type, old_value, new_value,
                       changed_by, timestamp, reason
                FROM price_changes
            """
            params: List[Any] = []
            if model_name:
                query += " WHERE lower(model_name) = ?"
                params.append(normalize_model_name(model_name))
            query += " ORDER BY id DESC LIMIT ?"
            params.append(limit)
            return [
                PriceChange(
                    model_name=row[0],
                    change_type=row[1],
                    old_value=row[2],
                    new_value=row[3],
                    changed_by=row[4],
                    timestamp=datetime.fromisoformat(row[5]),
                    reason=row[6],
                )
                for row in conn.execute(query, params).fetchall()
            ]
        finally:
            conn.close()


# Exchange rates and settings

def insert_exchange_rate(rate: ExchangeRate, db_path: str = DEFAULT_DB_PATH) -> None:
    """Append an exchange rate to the history. Earlier rates are kept."""
    conn = get_connection(db_path)
    try:
        conn.execute("""
            INSERT INTO exchange_rates (points_per_currency_unit, effective_at, set_by)
            VALUES (?, ?, ?)
        """, (
            str(rate.points_per_currency_unit),
            _to_utc_iso(rate.effective_at),
            rate.set_by,
        ))
        conn.commit()
    finally:
        conn.close()


def fetch_exchange_rate_history(limit: int = 100, db_path: str = DEFAULT_DB_PATH) -> List[ExchangeRate]:
    """Exchange rates, newest first."""
    conn = get_connection(db_path)
    try:
        cursor = conn.execute("""
            SELECT points_per_currency_unit, effective_at, set_by
            FROM exchange_rates
            ORDER BY effective_at DESC, id DESC
            LIMIT ?
        """, (limit,))
        return [
            ExchangeRate(
                points_per_currency_unit=Decimal(row[0]),
                effective_at=datetime.fromisoformat(row[1]),
                set_by=row[2],
            )
            for row in cursor.fetchall()
        ]
    finally:
        conn.close()


def fetch_current_exchange_rate(
    at: Optional[datetime] = None,
    db_path: str = DEFAULT_DB_PATH,
) -> Optional[ExchangeRate]:
    """The rate in force at ``at`` (default: now), or None if none is set."""
    cutoff = _to_utc_iso(at or datetime.now(timezone.utc))
    conn = get_connection(db_path)
    try:
        row = conn.execute("""
            SELECT points_per_currency_unit, effective_at, set_by
            FROM exchange_rates
            WHERE effective_at <= ?
            ORDER BY effective_at DESC, id DESC
            LIMIT 1
        """, (cutoff,)).fetchone()
    finally:
        conn.close()
    if row is None:
        return None
    return ExchangeRate(
        points_per_currency_unit=Decimal(row[0]),
        effective_at=datetime.fromisoformat(row[1]),
        set_by=row[2],
    )


def get_setting(key: str, db_path: str = DEFAULT_DB_PATH) -> Optional[str]:
    conn = get_connection(db_path)
    try:
        row = conn.execute(
            "SELECT value FROM billing_settings WHERE key = ?", (key,)
        ).fetchone()
        return row[0] if row else None
    finally:
        conn.close()


def put_setting(key: str, value: str, db_path: str = DEFAULT_DB_PATH) -> None:
    conn = get_connection(db_path)
    try:
        conn.execute("""
            INSERT INTO billing_settings (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """, (key, value, _now()))
        conn.commit()
    finally:
        conn.close()


# Billing events

_EVENT_COLUMNS = """
    event_id, user_id, model_name, input_units, output_units, total_units,
    input_cost, output_cost, total_cost, points_deducted,
    exchange_rate_snapshot, profit_margin_percent, status, timestamp,
    cost_source, units_estimated, minimum_applied, failure_reason,
    request_id, conversation_id, message_id
"""


def _row_to_event(row: Tuple) -> BillingEvent:
    return BillingEvent(
        event_id=row[0],
        user_id=row[1],
        model_name=row[2],
        input_units=row[3],
        output_units=row[4],
        total_units=row[5],
        input_cost=Decimal(row[6]),
        output_cost=Decimal(row[7]),
        total_cost=Decimal(row[8]),
        points_deducted=row[9],
        exchange_rate_snapshot=Decimal(row[10]),
        profit_margin_percent=row[11],
        status=BillingStatus(row[12]),
        timestamp=datetime.fromisoformat(row[13]),
        cost_source=row[14],
        units_estimated=bool(row[15]),
        minimum_applied=bool(row[16]),
        failure_reason=row[17],
        request_id=row[18],
        conversation_id=row[19],
        message_id=row[20],
    )


def insert_billing_event(conn: sqlite3.Connection, event: BillingEvent) -> None:
    """Insert a billing event using the caller's connection and transaction.

    The caller commits, so a debit and its event land together.
    """
    conn.execute(f"""
        INSERT INTO billing_events ({_EVENT_COLUMNS})
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (
        event.event_id,
        event.user_id,
        event.model_name,
        event.input_units,
        event.output_units,
        event.total_units,
        str(event.input_cost),
        str(event.output_cost),
        str(event.total_cost),
        event.points_deducted,
        str(event.exchange_rate_snapshot),
        event.profit_margin_percent,
        event.status.value,
        _to_utc_iso(event.timestamp),
        event.cost_source,
        int(event.units_estimated),
        int(event.minimum_applied),
        event.failure_reason,
        event.request_id,
        event.conversation_id,
        event.message_id,
    ))


class BillingEventRepository:
    """Read access to the billing audit trail."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def fetch_events(
        self,
        user_id: Optional[str] = None,
        model: Optional[str] = None,
        status: Optional[BillingStatus] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[BillingEvent]:
        """Fetch billing events with optional filtering.

        Args:
            user_id: Optional filter for a specific user
            model: Optional filter for a model (case-insensitive)
            status: Optional filter for completed or failed attempts
            since: Optional inclusive lower time bound
            until: Optional exclusive upper time bound
            limit: Maximum number of events to return

        Returns:
            List of billing events ordered by timestamp (newest first)
        """
        conn = get_connection(self.db_path)
        try:
            query = f"SELECT {_EVENT_COLUMNS} FROM billing_events"
            params: List[Any] = []
            conditions = []

            if user_id:
                conditions.append("user_id = ?")
                params.append(user_id)
            if model:
                conditions.append("lower(model_name) = ?")
                params.append(normalize_model_name(model))
            if status is not None:
                conditions.append("status = ?")
                params.append(status.value)
            if since is not None:
                conditions.append("timestamp >= ?")
                params.append(_to_utc_iso(since))
            if until is not None:
                conditions.append("timestamp < ?")
                params.append(_to_utc_iso(until))

            if conditions:
                query += " WHERE " + " AND ".join(conditions)

            query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
            params.append(limit)

            return [_row_to_event(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def get_event(self, event_id: str) -> Optional[BillingEvent]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {_EVENT_COLUMNS} FROM billing_events WHERE event_id = ?",
                (event_id,),
            ).fetchone()
            return _row_to_event(row) if row else None
        finally:
            conn.close()

    def usage_summary(
        self,
        user_id: Optional[str] = None,
        model: Optional[str] = None,
        days: int = 30,
    ) -> Dict[str, Any]:
        """Usage statistics for the specified time period.

        Args:
            user_id: Optional filter for a specific user
            model: Optional filter for a model
            days: Number of days to include

        Returns:
            Dictionary with attempt counts, points, cost and units
        """
        conn = get_connection(self.db_path)
        try:
            cutoff = _to_utc_iso(datetime.now(timezone.utc) - timedelta(days=days))
            query = """
                SELECT status, points_deducted, total_cost, total_units
                FROM billing_events
                WHERE timestamp >= ?
            """
            params: List[Any] = [cutoff]
            if user_id:
                query += " AND user_id = ?"
                params.append(user_id)
            if model:
                query += " AND lower(model_name) = ?"
                params.append(normalize_model_name(model))

            summary = {
                "completed": 0,
                "failed": 0,
                "points_deducted": 0,
                "total_cost": Decimal("0"),
                "total_units": 0,
            }
            for status, points, total_cost, total_units in conn.execute(query, params).fetchall():
                if status == BillingStatus.COMPLETED.value:
                    summary["completed"] += 1
                    summary["points_deducted"] += points
                    summary["total_cost"] += Decimal(total_cost)
                    summary["total_units"] += total_units
                else:
                    summary["failed"] += 1
            return summary
        finally:
            conn.close()
