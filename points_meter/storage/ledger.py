"""
Balance ledger.

Deducts points atomically per user and writes exactly one billing event per
charge attempt. The debit and its event share one SQLite transaction, so a
failed write never leaves a debit behind.
"""

import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

import structlog

from points_meter.core.errors import (
    BillingError,
    InsufficientBalance,
    InvalidCharge,
    PersistenceError,
)
from points_meter.core.notifications import BalanceChanged, BalanceNotifier
from points_meter.core.outcome import BestEffort
from .db import DEFAULT_DB_PATH, get_connection
from .models import BillingEvent, BillingStatus, ChargeMetadata
from .repository import insert_billing_event

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ChargeResult:
    """Successful charge."""
    new_balance: int
    event: BillingEvent
    side_effects: List[BestEffort] = field(default_factory=list)


class BalanceCache:
    """Cached balance view for read-heavy consumers.

    Refreshed by the ledger after each commit. A stale cache is tolerated;
    the ledger itself always reads the database.
    """

    def __init__(self, loader: Callable[[str], int]):
        self._loader = loader
        self._balances: Dict[str, int] = {}

    def get(self, user_id: str) -> int:
        if user_id not in self._balances:
            self.refresh(user_id)
        return self._balances[user_id]

    def refresh(self, user_id: str) -> int:
        balance = self._loader(user_id)
        self._balances[user_id] = balance
        return balance


class _UserLocks:
    """One lock per user, created on first use."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def get(self, user_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[user_id] = lock
            return lock


class LedgerRecorder:
    """Atomic per-user balance deduction with an audit record per attempt.

    Charges for the same user are serialized by an in-process lock and by
    SQLite's write lock (``BEGIN IMMEDIATE``), so concurrent charges never
    both spend the same balance. Charges for different users only contend
    for the brief SQLite write.
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        notifier: Optional[BalanceNotifier] = None,
        balance_cache: Optional[BalanceCache] = None,
    ):
        self.db_path = db_path
        self.notifier = notifier or BalanceNotifier()
        self.balance_cache = balance_cache
        self._locks = _UserLocks()

    def get_balance(self, user_id: str) -> int:
        """Current balance; unknown users have a balance of 0."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT balance FROM accounts WHERE user_id = ?", (user_id,)
            ).fetchone()
            return row[0] if row else 0
        finally:
            conn.close()

    def charge(self, user_id: str, points: int, metadata: ChargeMetadata) -> ChargeResult:
        """Deduct ``points`` from a user and record the billing event.

        Args:
            user_id: User to charge
            points: Points to deduct, must be > 0
            metadata: Charge details for the billing event

        Returns:
            ChargeResult with the new balance and the persisted event

        Raises:
            InvalidCharge: If ``points`` is not positive
            InsufficientBalance: If the balance does not cover ``points``
            PersistenceError: If the ledger write failed (nothing deducted)
        """
        if points <= 0:
            error = InvalidCharge(f"Charge must be positive, got {points} points")
            self.record_failure(user_id, metadata, error)
            raise error

        failure: Optional[BillingError] = None
        event: Optional[BillingEvent] = None
        old_balance = 0
        new_balance = 0

        with self._locks.get(user_id):
            conn = get_connection(self.db_path)
            try:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    "SELECT balance FROM accounts WHERE user_id = ?", (user_id,)
                ).fetchone()
                old_balance = row[0] if row else 0

                if old_balance < points:
                    conn.rollback()
                    failure = InsufficientBalance(user_id, old_balance, points)
                else:
                    new_balance = old_balance - points
                    conn.execute(
                        "UPDATE accounts SET balance = ?, updated_at = ? WHERE user_id = ?",
                        (new_balance, datetime.now(timezone.utc).isoformat(), user_id),
                    )
                    event = metadata.to_event(user_id, points, BillingStatus.COMPLETED)
                    insert_billing_event(conn, event)
                    conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                failure = PersistenceError(f"Ledger write failed for {user_id}: {e}")
            finally:
                conn.close()

        if failure is not None:
            self.record_failure(user_id, metadata, failure)
            raise failure

        logger.info(
            "charge_completed",
            user_id=user_id,
            model=metadata.model_name,
            points=points,
            new_balance=new_balance,
            event_id=event.event_id,
        )
        side_effects = self._after_commit(BalanceChanged(
            user_id=user_id,
            new_balance=new_balance,
            delta=-points,
            event_id=event.event_id,
        ))
        return ChargeResult(new_balance=new_balance, event=event, side_effects=side_effects)

    def record_failure(
        self,
        user_id: str,
        metadata: ChargeMetadata,
        error: BillingError,
    ) -> Optional[BillingEvent]:
        """Write a FAILED billing event for an attempt that charged nothing.

        Returns:
            The persisted event, or None if even the failure record could
            not be written (logged as an error)
        """
        event = metadata.to_event(
            user_id,
            points_deducted=0,
            status=BillingStatus.FAILED,
            failure_reason=f"{error.reason}: {error}",
        )
        conn = get_connection(self.db_path)
        try:
            insert_billing_event(conn, event)
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.error(
                "failure_record_not_written",
                user_id=user_id,
                model=metadata.model_name,
                reason=error.reason,
                error=str(e),
            )
            return None
        finally:
            conn.close()

        logger.warning(
            "charge_failed",
            user_id=user_id,
            model=metadata.model_name,
            reason=error.reason,
            event_id=event.event_id,
        )
        return event

    def credit(
        self,
        user_id: str,
        points: int,
        description: str = "",
        created_by: str = "operator",
    ) -> int:
        """Add points to a user's balance, opening the account if needed.

        Returns:
            New balance

        Raises:
            ValueError: If ``points`` is not positive
            PersistenceError: If the write failed
        """
        if points <= 0:
            raise ValueError("points must be > 0")

        now = datetime.now(timezone.utc).isoformat()
        with self._locks.get(user_id):
            conn = get_connection(self.db_path)
            try:
                conn.execute("BEGIN IMMEDIATE")
                conn.execute("""
                    INSERT INTO accounts (user_id, balance, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(user_id) DO UPDATE
                    SET balance = balance + excluded.balance, updated_at = excluded.updated_at
                """, (user_id, points, now))
                conn.execute("""
                    INSERT INTO balance_credits (user_id, points, description, created_by, timestamp)
                    VALUES (?, ?, ?, ?, ?)
                """, (user_id, points, description, created_by, now))
                new_balance = conn.execute(
                    "SELECT balance FROM accounts WHERE user_id = ?", (user_id,)
                ).fetchone()[0]
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise PersistenceError(f"Credit failed for {user_id}: {e}")
            finally:
                conn.close()

        logger.info("balance_credited", user_id=user_id, points=points, new_balance=new_balance)
        self._after_commit(BalanceChanged(user_id=user_id, new_balance=new_balance, delta=points))
        return new_balance

    def _after_commit(self, change: BalanceChanged) -> List[BestEffort]:
        side_effects = self.notifier.publish(change)
        if self.balance_cache is not None:
            side_effects.append(
                BestEffort.attempt("refresh_balance_cache", self.balance_cache.refresh, change.user_id)
            )
        return side_effects
