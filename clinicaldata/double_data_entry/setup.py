# -*- coding: utf-8 -*-
"""
Double Data-Entry Service Setup

Provides the ``DoubleDataEntryService`` facade which wires together the
double data-entry engines (entry authorization gate, comparison engine,
discrepancy manager, lifecycle controller, dashboard aggregator, audit
trail, provenance tracker) over one injected ``Database`` and exposes
every operation behind a simple API suitable for delegation from any
transport layer.

Usage:
    >>> from clinicaldata.double_data_entry.setup import DoubleDataEntryService
    >>> from clinicaldata.double_data_entry.config import DoubleDataEntryConfig
    >>> service = DoubleDataEntryService(DoubleDataEntryConfig(database_url="sqlite://"))
    >>> service.startup()
    >>> service.mark_first_entry_complete("ecrf-001", "user-1")

Author: Clinical Data Platform Team
Date: October 2026
Status: Production Ready
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from clinicaldata.db.base import Database
from clinicaldata.double_data_entry.audit_trail import AuditTrail
from clinicaldata.double_data_entry.comparison_engine import ComparisonEngine
from clinicaldata.double_data_entry.config import DoubleDataEntryConfig, get_config
from clinicaldata.double_data_entry.dashboard import DashboardAggregator
from clinicaldata.double_data_entry.discrepancy_manager import DiscrepancyManager
from clinicaldata.double_data_entry.entry_gate import EntryAuthorizationGate
from clinicaldata.double_data_entry.lifecycle_controller import LifecycleController
from clinicaldata.double_data_entry.locking import KeyedLockRegistry
from clinicaldata.double_data_entry.models import (
    AuditRecord,
    AuthorizationDecision,
    ComparisonResult,
    ComparisonStatus,
    DashboardView,
    DDEStatusView,
    DiscrepancyRecord,
    EntryPhaseStatus,
    EntryStatus,
    FieldEntry,
    FormInstance,
    FormInstanceSummary,
    ResolutionStrategy,
    SecondEntryOutcome,
)
from clinicaldata.double_data_entry.provenance import ProvenanceTracker
from clinicaldata.double_data_entry.transaction import TransactionManager
from clinicaldata.exceptions import NotFoundError

logger = logging.getLogger(__name__)

__all__ = ["DoubleDataEntryService"]


def _utcnow() -> datetime:
    """Return current UTC datetime with microseconds zeroed."""
    return datetime.now(timezone.utc).replace(microsecond=0)


class DoubleDataEntryService:
    """Facade over the double data-entry engines.

    Attributes:
        config: Service configuration.
        database: Database holding form instances, discrepancies and audit.
        transactions: TransactionManager shared by every engine.
        gate: EntryAuthorizationGate instance.
        discrepancy_manager: DiscrepancyManager instance.
        comparison_engine: ComparisonEngine instance.
        lifecycle: LifecycleController instance.
        dashboard: DashboardAggregator instance.
        audit_trail: AuditTrail instance.
    """

    def __init__(
        self,
        config: Optional[DoubleDataEntryConfig] = None,
        database: Optional[Database] = None,
        clock: Callable[[], datetime] = _utcnow,
        name_resolver: Optional[Callable[[str], Optional[str]]] = None,
    ) -> None:
        """Initialize DoubleDataEntryService.

        Args:
            config: Configuration; the process configuration from
                ``get_config()`` when omitted.
            database: Database to use; built from ``config.database_url``
                when omitted.
            clock: Source of all timestamps.
            name_resolver: Maps user ids to display names for refusal
                messages.
        """
        self.config = config or get_config()
        self.database = database or Database(
            self.config.database_url,
            pool_size=self.config.pool_size,
            echo=self.config.echo_sql,
        )
        self.clock = clock

        self.transactions = TransactionManager(
            self.database,
            lock_registry=KeyedLockRegistry(),
            lock_timeout=self.config.lock_timeout_seconds,
            strict_snapshot_parsing=self.config.strict_snapshot_parsing,
        )
        self.provenance = (
            ProvenanceTracker(self.config.genesis_hash)
            if self.config.enable_provenance else None
        )
        self.audit_trail = AuditTrail(self.provenance, clock=clock)
        self.gate = EntryAuthorizationGate(name_resolver=name_resolver)
        self.discrepancy_manager = DiscrepancyManager(self.audit_trail, clock=clock)
        self.comparison_engine = ComparisonEngine(self.discrepancy_manager)
        self.lifecycle = LifecycleController(
            self.transactions,
            self.gate,
            self.comparison_engine,
            self.discrepancy_manager,
            self.audit_trail,
            clock=clock,
        )
        self.dashboard = DashboardAggregator(
            self.transactions,
            default_limit=self.config.dashboard_limit,
            clock=clock,
        )

        self._stats: Dict[str, int] = {
            "first_entries_completed": 0,
            "second_entries_submitted": 0,
            "auto_reconciled": 0,
            "finalized": 0,
            "resolutions": 0,
            "comparisons_performed": 0,
            "discrepancies_created": 0,
        }
        self._stats_lock = threading.Lock()
        self._started = False
        logger.info("DoubleDataEntryService created")

    def _bump(self, key: str, amount: int = 1) -> None:
        with self._stats_lock:
            self._stats[key] += amount

    def _record_comparison(self, result: ComparisonResult) -> None:
        self._bump("comparisons_performed")
        self._bump("discrepancies_created", len(result.created_discrepancy_ids))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def startup(self) -> None:
        """Apply the log level and create missing tables."""
        logging.getLogger("clinicaldata").setLevel(self.config.log_level.upper())
        self.database.init_db()
        self._started = True
        logger.info("DoubleDataEntryService started")

    def shutdown(self) -> None:
        """Release database connections."""
        self.database.dispose()
        self._started = False
        logger.info("DoubleDataEntryService shutdown")

    # ------------------------------------------------------------------
    # Health & Statistics
    # ------------------------------------------------------------------

    def health_check(self) -> Dict[str, Any]:
        """Return service health status.

        Returns:
            Dictionary with service status, database reachability and
            transaction counters.
        """
        database_ok = True
        error: Optional[str] = None
        try:
            self.database.ping()
        except Exception as exc:
            database_ok = False
            error = str(exc)
            logger.error("Health check database ping failed: %s", exc)

        if not self._started:
            status = "starting"
        elif database_ok:
            status = "healthy"
        else:
            status = "unhealthy"

        result = {
            "status": status,
            "service": "double_data_entry",
            "database": database_ok,
            "provenance": self.provenance is not None,
            "transactions": self.transactions.get_metrics(),
            "timestamp": self.clock().isoformat(),
        }
        if error:
            result["error"] = error
        return result

    def get_stats(self) -> Dict[str, Any]:
        """Return service statistics.

        Returns:
            Dictionary with counts of committed operations, audit records
            emitted and the current status distribution.
        """
        with self._stats_lock:
            stats = dict(self._stats)
        return {
            **stats,
            "discrepancies_resolved": stats["resolutions"],
            "audit_records_emitted": self.audit_trail.emitted_count,
            "status_counts": {
                status.value: count
                for status, count in self.dashboard.status_counts().items()
            },
            "timestamp": self.clock().isoformat(),
        }

    # ------------------------------------------------------------------
    # Form instances (loading and lookup)
    # ------------------------------------------------------------------

    def create_form_instance(
        self,
        form_instance_id: Optional[str] = None,
        double_entry_required: bool = True,
        site_id: Optional[str] = None,
        subject_label: Optional[str] = None,
        form_name: Optional[str] = None,
        event_name: Optional[str] = None,
        fields: Optional[Mapping[str, Optional[str]]] = None,
    ) -> Tuple[FormInstance, List[FieldEntry]]:
        """Create a form instance with its first-entry field values.

        Args:
            fields: Item name to first-entry value, in display order.

        Returns:
            Tuple of (form instance, field entries).
        """
        with self.transactions.transaction("create_form_instance") as uow:
            form = uow.forms.create_form_instance(
                form_instance_id=form_instance_id,
                double_entry_required=double_entry_required,
                site_id=site_id,
                subject_label=subject_label,
                form_name=form_name,
                event_name=event_name,
            )
            entries = [
                uow.forms.add_field_value(form.form_instance_id, item_name, value, ordinal=i)
                for i, (item_name, value) in enumerate((fields or {}).items())
            ]
        return form, entries

    def get_form_instance(self, form_instance_id: str) -> FormInstance:
        with self.transactions.transaction("get_form_instance", readonly=True) as uow:
            form = uow.forms.get_form_instance(form_instance_id)
        if form is None:
            raise NotFoundError(
                f"Form instance not found: {form_instance_id}",
                entity_type="form_instance",
                entity_id=form_instance_id,
            )
        return form

    def get_field_values(self, form_instance_id: str) -> List[FieldEntry]:
        with self.transactions.transaction("get_field_values", readonly=True) as uow:
            return uow.forms.get_field_values(form_instance_id)

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def authorize(self, form_instance_id: str, user_id: str) -> AuthorizationDecision:
        """Ask the entry gate whether ``user_id`` may enter data now."""
        form = self.get_form_instance(form_instance_id)
        return self.gate.authorize(form, user_id, form.double_entry_required)

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    def begin_first_entry(self, form_instance_id: str, user_id: str) -> FormInstance:
        return self.lifecycle.begin_first_entry(form_instance_id, user_id)

    def mark_first_entry_complete(self, form_instance_id: str, user_id: str) -> FormInstance:
        form = self.lifecycle.mark_first_entry_complete(form_instance_id, user_id)
        self._bump("first_entries_completed")
        return form

    def submit_second_entry(
        self,
        form_instance_id: str,
        user_id: str,
        entries: Mapping[str, Any],
    ) -> SecondEntryOutcome:
        outcome = self.lifecycle.submit_second_entry(form_instance_id, user_id, entries)
        self._bump("second_entries_submitted")
        self._record_comparison(outcome.comparison)
        if outcome.status == EntryStatus.RECONCILED:
            self._bump("auto_reconciled")
        return outcome

    def finalize(self, form_instance_id: str, user_id: str) -> FormInstance:
        form = self.lifecycle.finalize(form_instance_id, user_id)
        self._bump("finalized")
        return form

    # ------------------------------------------------------------------
    # Comparison & discrepancies
    # ------------------------------------------------------------------

    def compare(self, form_instance_id: str) -> ComparisonResult:
        """Re-run the comparison; creates records for new mismatches only."""
        result = self.lifecycle.compare(form_instance_id)
        self._record_comparison(result)
        return result

    def get_comparison(self, form_instance_id: str) -> ComparisonResult:
        """Side-effect free comparison view with discrepancy linkage."""
        with self.transactions.transaction("get_comparison", readonly=True) as uow:
            return self.comparison_engine.compare(
                uow.forms, uow.discrepancies, form_instance_id,
                create_discrepancies=False,
            )

    def resolve(
        self,
        discrepancy_id: str,
        strategy: Union[str, ResolutionStrategy],
        resolver_id: str,
        new_value: Any = None,
        notes: Optional[str] = None,
    ) -> DiscrepancyRecord:
        record = self.lifecycle.resolve(
            discrepancy_id, strategy, resolver_id, new_value=new_value, notes=notes,
        )
        self._bump("resolutions")
        return record

    def count_open(self, form_instance_id: str) -> int:
        with self.transactions.transaction("count_open", readonly=True) as uow:
            return self.discrepancy_manager.count_open(uow.discrepancies, form_instance_id)

    def list_discrepancies(self, form_instance_id: str) -> List[DiscrepancyRecord]:
        with self.transactions.transaction("list_discrepancies", readonly=True) as uow:
            return self.discrepancy_manager.list_for_form_instance(
                uow.discrepancies, form_instance_id,
            )

    def get_discrepancy(self, discrepancy_id: str) -> DiscrepancyRecord:
        with self.transactions.transaction("get_discrepancy", readonly=True) as uow:
            record = uow.discrepancies.get_discrepancy(discrepancy_id)
        if record is None:
            raise NotFoundError(
                f"Discrepancy not found: {discrepancy_id}",
                entity_type="discrepancy",
                entity_id=discrepancy_id,
            )
        return record

    # ------------------------------------------------------------------
    # Status view
    # ------------------------------------------------------------------

    def get_status(self, form_instance_id: str) -> DDEStatusView:
        """Per-form progress summary for both entry passes and the comparison."""
        with self.transactions.transaction("get_status", readonly=True) as uow:
            form = uow.forms.get_form_instance(form_instance_id)
            if form is None:
                raise NotFoundError(
                    f"Form instance not found: {form_instance_id}",
                    entity_type="form_instance",
                    entity_id=form_instance_id,
                )
            total_items = len(uow.forms.get_field_values(form_instance_id))
            open_count = uow.discrepancies.count_open_for_form_instance(form_instance_id)
            resolved_count = uow.discrepancies.count_resolved_for_form_instance(form_instance_id)

        if form.status.rank >= EntryStatus.FIRST_ENTRY_COMPLETE.rank:
            first_status = EntryPhaseStatus.COMPLETE
        elif form.status == EntryStatus.FIRST_ENTRY_IN_PROGRESS:
            first_status = EntryPhaseStatus.IN_PROGRESS
        else:
            first_status = EntryPhaseStatus.PENDING

        if form.has_second_entry:
            second_status = EntryPhaseStatus.COMPLETE
        else:
            second_status = EntryPhaseStatus.PENDING

        if not form.has_second_entry:
            comparison_status = ComparisonStatus.PENDING
        elif open_count > 0:
            comparison_status = ComparisonStatus.DISCREPANCIES
        elif resolved_count > 0:
            comparison_status = ComparisonStatus.RESOLVED
        else:
            comparison_status = ComparisonStatus.MATCHED

        return DDEStatusView(
            form_instance_id=form.form_instance_id,
            status=form.status,
            double_entry_required=form.double_entry_required,
            first_entry_status=first_status,
            second_entry_status=second_status,
            comparison_status=comparison_status,
            first_entrant_id=form.first_entrant_id,
            first_entry_at=form.first_entry_at,
            second_entrant_id=form.second_entrant_id,
            second_entry_at=form.second_entry_at,
            total_items=total_items,
            open_discrepancies=open_count,
            resolved_discrepancies=resolved_count,
            dde_complete=form.status == EntryStatus.RECONCILED,
        )

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def get_audit_trail(self, form_instance_id: str) -> List[AuditRecord]:
        with self.transactions.transaction("get_audit_trail", readonly=True) as uow:
            return uow.audit.list_for_form_instance(form_instance_id)

    def verify_audit_trail(self, form_instance_id: str) -> bool:
        """Recompute the provenance chain of a form instance's audit records."""
        with self.transactions.transaction("verify_audit_trail", readonly=True) as uow:
            valid, _ = self.audit_trail.verify(uow.audit, form_instance_id)
        return valid

    # ------------------------------------------------------------------
    # Dashboard
    # ------------------------------------------------------------------

    def pending_second_entry(
        self, site_id: Optional[str] = None, limit: Optional[int] = None,
    ) -> List[FormInstanceSummary]:
        return self.dashboard.pending_second_entry(site_id=site_id, limit=limit)

    def pending_resolution(
        self, site_id: Optional[str] = None, limit: Optional[int] = None,
    ) -> List[FormInstanceSummary]:
        return self.dashboard.pending_resolution(site_id=site_id, limit=limit)

    def status_counts(self, site_id: Optional[str] = None) -> Dict[EntryStatus, int]:
        return self.dashboard.status_counts(site_id=site_id)

    def get_dashboard(self, site_id: Optional[str] = None) -> DashboardView:
        return self.dashboard.get_dashboard(site_id=site_id)
