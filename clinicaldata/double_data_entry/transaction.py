"""
Transaction management for double data-entry operations.

Every state-mutating operation runs inside one scoped transaction:

- the per-key locks for the affected form instance (and discrepancy) are
  held for the whole block;
- one SQLAlchemy session backs the three stores handed to the caller;
- commit on success, rollback on any exception, session closed on every
  exit path;
- SQLAlchemy errors surface as StorageError with the cause chained.

Each transaction is recorded as a TransactionLog entry for monitoring.
Failed operations are not retried.
"""

import logging
import threading
import uuid
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Generator, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinicaldata.db.base import Database
from clinicaldata.double_data_entry.locking import KeyedLockRegistry
from clinicaldata.double_data_entry.metrics import (
    inc_errors,
    inc_transactions,
)
from clinicaldata.double_data_entry.repository import (
    SqlAlchemyAuditSink,
    SqlAlchemyDiscrepancyStore,
    SqlAlchemyFormInstanceStore,
)
from clinicaldata.exceptions import ClinicalDataException, LockTimeoutError, StorageError

logger = logging.getLogger(__name__)


class TransactionState(Enum):
    """Transaction states for tracking."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


@dataclass
class TransactionLog:
    """Transaction log entry."""
    transaction_id: str
    name: str
    start_time: datetime
    end_time: Optional[datetime] = None
    state: TransactionState = TransactionState.PENDING
    lock_keys: List[str] = field(default_factory=list)
    readonly: bool = False
    error: Optional[str] = None
    rollback_reason: Optional[str] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds()


@dataclass
class UnitOfWork:
    """Stores bound to one session for the duration of a transaction."""
    transaction_id: str
    session: Session
    forms: SqlAlchemyFormInstanceStore
    discrepancies: SqlAlchemyDiscrepancyStore
    audit: SqlAlchemyAuditSink


def _now() -> datetime:
    return datetime.now(timezone.utc)


class TransactionManager:
    """
    Runs units of work with automatic rollback, per-key locking and logging.

    Features:
    - Commit on success, rollback on any error
    - Per-form-instance mutual exclusion (process locks + row locks)
    - Bounded transaction history and monitoring metrics
    """

    def __init__(
        self,
        database: Database,
        lock_registry: Optional[KeyedLockRegistry] = None,
        lock_timeout: Optional[float] = 30.0,
        strict_snapshot_parsing: bool = False,
        max_history: int = 1000,
    ):
        """
        Initialize transaction manager.

        Args:
            database: Database providing sessions
            lock_registry: Shared lock registry (a private one if omitted)
            lock_timeout: Seconds to wait for each lock
            strict_snapshot_parsing: Passed to the form instance store
            max_history: Number of transaction logs retained
        """
        self.database = database
        self.lock_registry = lock_registry or KeyedLockRegistry()
        self.lock_timeout = lock_timeout
        self.strict_snapshot_parsing = strict_snapshot_parsing
        self.max_history = max_history
        self.transaction_logs: "OrderedDict[str, TransactionLog]" = OrderedDict()
        self._active_transactions: Dict[str, str] = {}
        self._logs_lock = threading.Lock()

    def _register(self, log_entry: TransactionLog) -> None:
        with self._logs_lock:
            self.transaction_logs[log_entry.transaction_id] = log_entry
            while len(self.transaction_logs) > self.max_history:
                self.transaction_logs.popitem(last=False)

    def _finish(self, log_entry: TransactionLog) -> None:
        log_entry.end_time = log_entry.end_time or _now()
        with self._logs_lock:
            self._active_transactions.pop(log_entry.transaction_id, None)
        inc_transactions(log_entry.state.value)

    @contextmanager
    def transaction(
        self,
        name: Optional[str] = None,
        lock_keys: Iterable[str] = (),
        readonly: bool = False,
    ) -> Generator[UnitOfWork, None, None]:
        """
        Transaction context manager with automatic rollback.

        Args:
            name: Transaction name for logging
            lock_keys: Keys locked (in sorted order) for the whole transaction
            readonly: Roll back instead of committing on success

        Yields:
            UnitOfWork bound to a fresh session

        Example:
            with manager.transaction("finalize", [form_instance_key(fid)]) as uow:
                form = uow.forms.get_form_instance(fid, for_update=True)
        """
        transaction_id = str(uuid.uuid4())
        transaction_name = name or f"transaction_{transaction_id[:8]}"
        keys = list(lock_keys)

        log_entry = TransactionLog(
            transaction_id=transaction_id,
            name=transaction_name,
            start_time=_now(),
            lock_keys=keys,
            readonly=readonly,
        )
        self._register(log_entry)

        try:
            with self.lock_registry.acquire(keys, timeout=self.lock_timeout):
                session = self.database.new_session()
                uow = UnitOfWork(
                    transaction_id=transaction_id,
                    session=session,
                    forms=SqlAlchemyFormInstanceStore(
                        session,
                        strict_snapshot_parsing=self.strict_snapshot_parsing,
                    ),
                    discrepancies=SqlAlchemyDiscrepancyStore(session),
                    audit=SqlAlchemyAuditSink(session),
                )
                log_entry.state = TransactionState.IN_PROGRESS
                with self._logs_lock:
                    self._active_transactions[transaction_id] = transaction_name
                logger.debug("Started transaction: %s (ID: %s)", transaction_name, transaction_id)

                try:
                    yield uow
                    if readonly:
                        session.rollback()
                    else:
                        session.commit()
                    log_entry.state = TransactionState.COMMITTED
                    log_entry.end_time = _now()
                    logger.debug(
                        "Committed transaction: %s (Duration: %.3fs)",
                        transaction_name, log_entry.duration_seconds,
                    )
                except Exception as exc:
                    try:
                        session.rollback()
                        log_entry.state = TransactionState.ROLLED_BACK
                    except SQLAlchemyError as rollback_error:
                        logger.error("Error during rollback of %s: %s", transaction_name, rollback_error)
                        log_entry.state = TransactionState.FAILED
                    log_entry.rollback_reason = str(exc)
                    log_entry.error = type(exc).__name__

                    if isinstance(exc, ClinicalDataException):
                        logger.info("Rolled back transaction: %s - %s", transaction_name, exc)
                        raise
                    logger.error("Rolled back transaction: %s - %s", transaction_name, exc)
                    inc_errors("storage")
                    if isinstance(exc, SQLAlchemyError):
                        raise StorageError(
                            f"Transaction '{transaction_name}' failed: {exc}",
                            operation=transaction_name,
                            cause=exc,
                        ) from exc
                    raise
                finally:
                    session.close()
        except LockTimeoutError as exc:
            log_entry.state = TransactionState.FAILED
            log_entry.error = type(exc).__name__
            inc_errors("lock_timeout")
            raise
        finally:
            self._finish(log_entry)

    def get_transaction_log(self, transaction_id: str) -> Optional[TransactionLog]:
        """Get transaction log by ID."""
        with self._logs_lock:
            return self.transaction_logs.get(transaction_id)

    def get_transaction_history(
        self,
        state: Optional[TransactionState] = None,
        name: Optional[str] = None,
    ) -> List[TransactionLog]:
        """
        Get transaction history with filters, newest first.

        Args:
            state: Filter by transaction state
            name: Filter by transaction name

        Returns:
            List of matching transaction logs
        """
        with self._logs_lock:
            logs = list(self.transaction_logs.values())

        if state:
            logs = [entry for entry in logs if entry.state == state]
        if name:
            logs = [entry for entry in logs if entry.name == name]

        return list(reversed(logs))

    def get_metrics(self) -> Dict[str, Any]:
        """
        Get transaction metrics for monitoring.

        Returns:
            Dictionary with transaction metrics
        """
        with self._logs_lock:
            logs = list(self.transaction_logs.values())
            active = len(self._active_transactions)

        if not logs:
            return {
                "total_transactions": 0,
                "committed": 0,
                "rolled_back": 0,
                "failed": 0,
                "average_duration": 0,
                "active_transactions": active,
            }

        durations = [
            entry.duration_seconds
            for entry in logs
            if entry.state == TransactionState.COMMITTED and entry.end_time
        ]

        return {
            "total_transactions": len(logs),
            "committed": len([e for e in logs if e.state == TransactionState.COMMITTED]),
            "rolled_back": len([e for e in logs if e.state == TransactionState.ROLLED_BACK]),
            "failed": len([e for e in logs if e.state == TransactionState.FAILED]),
            "average_duration": sum(durations) / len(durations) if durations else 0,
            "max_duration": max(durations) if durations else 0,
            "min_duration": min(durations) if durations else 0,
            "active_transactions": active,
        }
