# -*- coding: utf-8 -*-
"""
Lifecycle Controller - Double Data-Entry Reconciliation Engine

The only component that changes the completion status of a form instance.
Drives the five-state lifecycle:

    NOT_STARTED -> FIRST_ENTRY_IN_PROGRESS -> FIRST_ENTRY_COMPLETE
        -> SECOND_ENTRY_IN_PROGRESS -> RECONCILED

Every operation runs as one scoped transaction under the per-form-instance
lock, so "load state, decide, mutate" is atomic with respect to any other
operation on the same instance: status update, audit emission and any
discrepancy records either all persist or none do. Every transition
emits exactly one audit record.

Operations:
    - begin_first_entry
    - mark_first_entry_complete
    - submit_second_entry (authorizes, stores the snapshot, compares, and
      reconciles automatically when every field matches)
    - finalize (requires zero open discrepancies)
    - compare (standalone re-comparison)
    - resolve (discrepancy resolution under the instance lock)

Example:
    >>> controller.mark_first_entry_complete("ecrf-001", "user-1")
    >>> outcome = controller.submit_second_entry("ecrf-001", "user-2", {"f1": "120"})
    >>> outcome.status
    <EntryStatus.RECONCILED: 'reconciled'>

Author: Clinical Data Platform Team
Date: October 2026
Status: Production Ready
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional, Union

from clinicaldata.double_data_entry.audit_trail import AuditTrail
from clinicaldata.double_data_entry.comparison_engine import ComparisonEngine
from clinicaldata.double_data_entry.discrepancy_manager import DiscrepancyManager
from clinicaldata.double_data_entry.entry_gate import EntryAuthorizationGate
from clinicaldata.double_data_entry.locking import discrepancy_key, form_instance_key
from clinicaldata.double_data_entry.metrics import inc_transitions, observe_duration
from clinicaldata.double_data_entry.models import (
    ComparisonResult,
    DiscrepancyRecord,
    EntryStatus,
    EntryType,
    FormInstance,
    ResolutionStrategy,
    SecondEntryOutcome,
)
from clinicaldata.double_data_entry.transaction import TransactionManager, UnitOfWork
from clinicaldata.exceptions import (
    InvalidStateError,
    NotFoundError,
    PreconditionFailed,
    ValidationError,
)

logger = logging.getLogger(__name__)

__all__ = ["LifecycleController", "ALLOWED_TRANSITIONS"]


def _utcnow() -> datetime:
    """Return current UTC datetime with microseconds zeroed."""
    return datetime.now(timezone.utc).replace(microsecond=0)


ALLOWED_TRANSITIONS: Dict[EntryStatus, FrozenSet[EntryStatus]] = {
    EntryStatus.NOT_STARTED: frozenset({
        EntryStatus.FIRST_ENTRY_IN_PROGRESS,
        EntryStatus.FIRST_ENTRY_COMPLETE,
    }),
    EntryStatus.FIRST_ENTRY_IN_PROGRESS: frozenset({
        EntryStatus.FIRST_ENTRY_COMPLETE,
    }),
    EntryStatus.FIRST_ENTRY_COMPLETE: frozenset({
        EntryStatus.SECOND_ENTRY_IN_PROGRESS,
    }),
    EntryStatus.SECOND_ENTRY_IN_PROGRESS: frozenset({
        EntryStatus.RECONCILED,
    }),
    EntryStatus.RECONCILED: frozenset(),
}


def _require_user(user_id: Optional[str], field_name: str = "user_id") -> None:
    if not user_id or not str(user_id).strip():
        raise ValidationError(
            f"{field_name} is required",
            invalid_fields={field_name: "required"},
        )


class LifecycleController:
    """Runs lifecycle transitions as atomic, per-instance serialized units.

    Attributes:
        transactions: Provides locked units of work.
        gate: Entry authorization rules.
        comparison_engine: Compares first and second entry.
        discrepancy_manager: Counts and resolves discrepancies.
        audit_trail: Emits transition audit records.
        clock: Source of transition timestamps.
    """

    def __init__(
        self,
        transactions: TransactionManager,
        gate: EntryAuthorizationGate,
        comparison_engine: ComparisonEngine,
        discrepancy_manager: DiscrepancyManager,
        audit_trail: AuditTrail,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.transactions = transactions
        self.gate = gate
        self.comparison_engine = comparison_engine
        self.discrepancy_manager = discrepancy_manager
        self.audit_trail = audit_trail
        self.clock = clock
        logger.info("LifecycleController initialized")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _load(uow: UnitOfWork, form_instance_id: str) -> FormInstance:
        form = uow.forms.get_form_instance(form_instance_id, for_update=True)
        if form is None:
            raise NotFoundError(
                f"Form instance not found: {form_instance_id}",
                entity_type="form_instance",
                entity_id=form_instance_id,
            )
        return form

    def _transition(
        self,
        uow: UnitOfWork,
        form: FormInstance,
        to_status: EntryStatus,
        user_id: str,
        event_label: str,
        reason: Optional[str] = None,
    ) -> FormInstance:
        """Apply one legal status change, persist it and audit it."""
        from_status = form.status
        if to_status not in ALLOWED_TRANSITIONS[from_status]:
            raise InvalidStateError(
                f"Illegal transition {from_status.value} -> {to_status.value} "
                f"for form instance {form.form_instance_id}",
                current_state=from_status.value,
                operation=event_label,
            )

        form.status = to_status
        saved = uow.forms.save_form_instance(form, user_id)
        self.audit_trail.record_transition(
            uow.audit, form, user_id, from_status, to_status, event_label, reason,
        )
        inc_transitions(from_status.value, to_status.value)
        logger.info(
            "Form instance %s: %s -> %s by %s",
            form.form_instance_id, from_status.value, to_status.value, user_id,
        )
        return saved

    @staticmethod
    def _require_state(
        form: FormInstance, allowed: FrozenSet[EntryStatus], operation: str,
    ) -> None:
        if form.status not in allowed:
            expected = ", ".join(sorted(s.value for s in allowed))
            raise InvalidStateError(
                f"Cannot {operation} form instance {form.form_instance_id} "
                f"from {form.status.value} (expected {expected})",
                current_state=form.status.value,
                operation=operation,
            )

    # ------------------------------------------------------------------
    # First entry
    # ------------------------------------------------------------------

    def begin_first_entry(self, form_instance_id: str, user_id: str) -> FormInstance:
        """Move a form instance from NOT_STARTED to FIRST_ENTRY_IN_PROGRESS.

        Raises:
            NotFoundError: Unknown form instance.
            InvalidStateError: Not in NOT_STARTED.
        """
        _require_user(user_id)
        with self.transactions.transaction(
            "begin_first_entry", [form_instance_key(form_instance_id)],
        ) as uow:
            form = self._load(uow, form_instance_id)
            self._require_state(
                form, frozenset({EntryStatus.NOT_STARTED}), "begin first entry on",
            )
            return self._transition(
                uow, form, EntryStatus.FIRST_ENTRY_IN_PROGRESS, user_id,
                AuditTrail.FIRST_ENTRY_STARTED, "First entry started",
            )

    def mark_first_entry_complete(self, form_instance_id: str, user_id: str) -> FormInstance:
        """Record the first entry as complete and its entrant.

        Raises:
            NotFoundError: Unknown form instance.
            InvalidStateError: First entry already complete.
        """
        _require_user(user_id)
        start = time.monotonic()
        with self.transactions.transaction(
            "mark_first_entry_complete", [form_instance_key(form_instance_id)],
        ) as uow:
            form = self._load(uow, form_instance_id)
            self._require_state(
                form,
                frozenset({EntryStatus.NOT_STARTED, EntryStatus.FIRST_ENTRY_IN_PROGRESS}),
                "mark first entry complete on",
            )
            form.first_entrant_id = user_id
            form.first_entry_at = self.clock()
            saved = self._transition(
                uow, form, EntryStatus.FIRST_ENTRY_COMPLETE, user_id,
                AuditTrail.FIRST_ENTRY_COMPLETE, "First entry marked complete",
            )
        observe_duration("mark_first_entry_complete", time.monotonic() - start)
        return saved

    # ------------------------------------------------------------------
    # Second entry
    # ------------------------------------------------------------------

    @staticmethod
    def _coerce_entries(entries: Mapping[str, Any]) -> Dict[str, Optional[str]]:
        if not isinstance(entries, Mapping):
            raise ValidationError(
                "entries must be a mapping of field id to value",
                invalid_fields={"entries": "not a mapping"},
            )
        return {
            str(field_id): None if value is None else str(value)
            for field_id, value in entries.items()
        }

    def submit_second_entry(
        self,
        form_instance_id: str,
        user_id: str,
        entries: Mapping[str, Any],
    ) -> SecondEntryOutcome:
        """Store an independent second entry and compare it with the first.

        Authorization, snapshot storage, comparison, discrepancy creation
        and the resulting transitions run under one lock and one
        transaction.

        Args:
            form_instance_id: Form instance.
            user_id: Second entrant.
            entries: Second-entry values keyed by field id.

        Returns:
            SecondEntryOutcome with the final status and the comparison.

        Raises:
            ValidationError: Bad arguments or unknown field ids.
            NotFoundError: Unknown form instance.
            AuthorizationDenied: Gate refusal (NotRequired, AlreadyComplete,
                SameEntrant); nothing is written.
            InvalidStateError: First entry not complete.
        """
        _require_user(user_id)
        snapshot = self._coerce_entries(entries)
        start = time.monotonic()

        with self.transactions.transaction(
            "submit_second_entry", [form_instance_key(form_instance_id)],
        ) as uow:
            form = self._load(uow, form_instance_id)

            decision = self.gate.authorize(form, user_id, form.double_entry_required)
            if not decision.allowed:
                raise self.gate.to_exception(decision, form_instance_id)
            if decision.entry_type != EntryType.SECOND:
                raise InvalidStateError(
                    f"Second entry not possible for form instance {form_instance_id}: "
                    f"first entry is not complete",
                    current_state=form.status.value,
                    operation="submit_second_entry",
                )
            self._require_state(
                form, frozenset({EntryStatus.FIRST_ENTRY_COMPLETE}),
                "submit second entry on",
            )

            known = {f.field_id for f in uow.forms.get_field_values(form_instance_id)}
            unknown = sorted(set(snapshot) - known)
            if unknown:
                raise ValidationError(
                    f"Unknown field ids for form instance {form_instance_id}: {unknown}",
                    invalid_fields={field_id: "unknown" for field_id in unknown},
                )

            form.second_entrant_id = user_id
            form.second_entry_at = self.clock()
            form.second_entry_snapshot = snapshot
            form = self._transition(
                uow, form, EntryStatus.SECOND_ENTRY_IN_PROGRESS, user_id,
                AuditTrail.SECOND_ENTRY_SUBMITTED,
                f"Second entry submitted with {len(snapshot)} values",
            )

            comparison = self.comparison_engine.compare(
                uow.forms, uow.discrepancies, form_instance_id, form_instance=form,
            )

            if comparison.mismatched == 0:
                form.completed_at = self.clock()
                form = self._transition(
                    uow, form, EntryStatus.RECONCILED, user_id,
                    AuditTrail.RECONCILED,
                    f"All {comparison.total} fields matched",
                )

            outcome = SecondEntryOutcome(
                form_instance_id=form_instance_id,
                status=form.status,
                comparison=comparison,
            )

        observe_duration("submit_second_entry", time.monotonic() - start)
        logger.info(
            "Second entry for %s by %s: %d/%d matched, status=%s",
            form_instance_id, user_id, comparison.matched, comparison.total,
            outcome.status.value,
        )
        return outcome

    # ------------------------------------------------------------------
    # Finalize
    # ------------------------------------------------------------------

    def finalize(self, form_instance_id: str, user_id: str) -> FormInstance:
        """Close a form instance whose discrepancies are all resolved.

        Raises:
            NotFoundError: Unknown form instance.
            InvalidStateError: Not in SECOND_ENTRY_IN_PROGRESS.
            PreconditionFailed: Open discrepancies remain.
        """
        _require_user(user_id)
        with self.transactions.transaction(
            "finalize", [form_instance_key(form_instance_id)],
        ) as uow:
            form = self._load(uow, form_instance_id)
            self._require_state(
                form, frozenset({EntryStatus.SECOND_ENTRY_IN_PROGRESS}), "finalize",
            )

            open_count = self.discrepancy_manager.count_open(uow.discrepancies, form_instance_id)
            if open_count > 0:
                raise PreconditionFailed(
                    f"Cannot finalize: {open_count} unresolved discrepancies remain",
                    open_count=open_count,
                    context={"form_instance_id": form_instance_id},
                )

            form.completed_at = self.clock()
            return self._transition(
                uow, form, EntryStatus.RECONCILED, user_id,
                AuditTrail.FINALIZED, "All discrepancies resolved",
            )

    # ------------------------------------------------------------------
    # Comparison and resolution
    # ------------------------------------------------------------------

    def compare(self, form_instance_id: str) -> ComparisonResult:
        """Re-run the comparison, creating records for new mismatches only."""
        with self.transactions.transaction(
            "compare", [form_instance_key(form_instance_id)],
        ) as uow:
            return self.comparison_engine.compare(
                uow.forms, uow.discrepancies, form_instance_id,
            )

    def resolve(
        self,
        discrepancy_id: str,
        strategy: Union[str, ResolutionStrategy],
        resolver_id: str,
        new_value: Any = None,
        notes: Optional[str] = None,
    ) -> DiscrepancyRecord:
        """Resolve a discrepancy under its form instance and record locks.

        Raises:
            ValidationError: Invalid arguments (checked before any lookup).
            NotFoundError: Unknown discrepancy.
            InvalidStateError: Already resolved.
        """
        self.discrepancy_manager.validate_resolution(strategy, resolver_id, new_value)

        with self.transactions.transaction("locate_discrepancy", readonly=True) as uow:
            located = uow.discrepancies.get_discrepancy(discrepancy_id)
        if located is None:
            raise NotFoundError(
                f"Discrepancy not found: {discrepancy_id}",
                entity_type="discrepancy",
                entity_id=discrepancy_id,
            )

        with self.transactions.transaction(
            "resolve",
            [form_instance_key(located.form_instance_id), discrepancy_key(discrepancy_id)],
        ) as uow:
            return self.discrepancy_manager.resolve(
                uow.forms, uow.discrepancies, uow.audit,
                discrepancy_id, strategy, resolver_id,
                new_value=new_value, notes=notes,
            )
