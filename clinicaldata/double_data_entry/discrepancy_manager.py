# -*- coding: utf-8 -*-
"""
Discrepancy Manager - Double Data-Entry Reconciliation Engine

Creates discrepancy records for mismatching fields and resolves them with
one of four strategies:

- first_correct: the first-entry value captured at detection wins
- second_correct: the second-entry value captured at detection wins
- new_value: a corrected value supplied by the resolver
- adjudicated: a value decided by a third party, supplied by the resolver

A resolution writes the chosen value onto the field through the form
instance store and emits exactly one audit record. All input validation
happens before the first write, so a refused resolution leaves no trace.
Each discrepancy moves from open to resolved exactly once.

Example:
    >>> manager = DiscrepancyManager(audit_trail)
    >>> record = manager.resolve(
    ...     uow.forms, uow.discrepancies, uow.audit,
    ...     discrepancy_id, "second_correct", resolver_id="user-2",
    ... )
    >>> assert record.status == DiscrepancyStatus.RESOLVED

Author: Clinical Data Platform Team
Date: October 2026
Status: Production Ready
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Union

from clinicaldata.double_data_entry.audit_trail import AuditTrail
from clinicaldata.double_data_entry.metrics import inc_discrepancies, inc_resolutions, observe_duration
from clinicaldata.double_data_entry.models import (
    DiscrepancyRecord,
    DiscrepancyStatus,
    ResolutionStrategy,
)
from clinicaldata.double_data_entry.stores import AuditSink, DiscrepancyStore, FormInstanceStore
from clinicaldata.exceptions import InvalidStateError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

__all__ = ["DiscrepancyManager"]


def _utcnow() -> datetime:
    """Return current UTC datetime with microseconds zeroed."""
    return datetime.now(timezone.utc).replace(microsecond=0)


class DiscrepancyManager:
    """Creates, counts and resolves discrepancy records.

    Attributes:
        audit_trail: Emits the resolution audit record.
        clock: Source of detection and resolution timestamps.
    """

    def __init__(
        self,
        audit_trail: AuditTrail,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.audit_trail = audit_trail
        self.clock = clock
        self._total_created = 0
        self._total_resolved = 0
        self._count_lock = threading.Lock()
        logger.info("DiscrepancyManager initialized")

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create(
        self,
        store: DiscrepancyStore,
        form_instance_id: str,
        field_id: str,
        first_value: Optional[str],
        second_value: Optional[str],
        item_name: Optional[str] = None,
    ) -> DiscrepancyRecord:
        """Record an open discrepancy with the values seen at detection."""
        record = DiscrepancyRecord(
            form_instance_id=form_instance_id,
            field_id=field_id,
            item_name=item_name,
            first_value=first_value,
            second_value=second_value,
            status=DiscrepancyStatus.OPEN,
            created_at=self.clock(),
        )
        store.create_discrepancy(record)
        with self._count_lock:
            self._total_created += 1
        inc_discrepancies(1)
        logger.info(
            "Discrepancy %s created: form_instance=%s field=%s",
            record.discrepancy_id, form_instance_id, item_name or field_id,
        )
        return record

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def count_open(self, store: DiscrepancyStore, form_instance_id: str) -> int:
        """Number of open discrepancies for a form instance."""
        return store.count_open_for_form_instance(form_instance_id)

    def list_for_form_instance(
        self, store: DiscrepancyStore, form_instance_id: str,
    ) -> List[DiscrepancyRecord]:
        return store.list_for_form_instance(form_instance_id)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    @staticmethod
    def validate_resolution(
        strategy: Union[str, ResolutionStrategy],
        resolver_id: Optional[str],
        new_value: Any = None,
    ) -> ResolutionStrategy:
        """Check resolve() arguments without touching any store.

        Returns:
            The parsed strategy.

        Raises:
            ValidationError: Unknown strategy, missing resolver, or a
                value-bearing strategy without a value.
        """
        try:
            parsed = ResolutionStrategy(strategy)
        except ValueError:
            valid = [s.value for s in ResolutionStrategy]
            raise ValidationError(
                f"Unknown resolution strategy '{strategy}'. Must be one of: {valid}",
                invalid_fields={"strategy": "unknown"},
            )

        if not resolver_id or not str(resolver_id).strip():
            raise ValidationError(
                "resolver_id is required",
                invalid_fields={"resolver_id": "required"},
            )

        if parsed.requires_value and new_value is None:
            raise ValidationError(
                f"new_value is required for strategy '{parsed.value}'",
                invalid_fields={"new_value": "required"},
            )
        return parsed

    def resolve(
        self,
        forms: FormInstanceStore,
        discrepancies: DiscrepancyStore,
        audit_sink: AuditSink,
        discrepancy_id: str,
        strategy: Union[str, ResolutionStrategy],
        resolver_id: str,
        new_value: Any = None,
        notes: Optional[str] = None,
    ) -> DiscrepancyRecord:
        """Resolve one open discrepancy.

        Args:
            forms: Form instance store (field value write).
            discrepancies: Discrepancy store.
            audit_sink: Audit sink for the resolution record.
            discrepancy_id: Discrepancy to resolve.
            strategy: Resolution strategy.
            resolver_id: Resolving user.
            new_value: Value for new_value / adjudicated strategies.
            notes: Free-text notes; also used as the audit reason.

        Returns:
            The resolved DiscrepancyRecord.

        Raises:
            ValidationError: Invalid arguments (nothing written).
            NotFoundError: Unknown discrepancy.
            InvalidStateError: Discrepancy already resolved.
        """
        start_ns = time.perf_counter_ns()
        parsed = self.validate_resolution(strategy, resolver_id, new_value)

        record = discrepancies.get_discrepancy(discrepancy_id, for_update=True)
        if record is None:
            raise NotFoundError(
                f"Discrepancy not found: {discrepancy_id}",
                entity_type="discrepancy",
                entity_id=discrepancy_id,
            )
        if record.status == DiscrepancyStatus.RESOLVED:
            raise InvalidStateError(
                f"Discrepancy {discrepancy_id} is already resolved",
                current_state=record.status.value,
                operation="resolve",
            )

        field = forms.get_field_value(record.field_id)
        if field is None:
            raise NotFoundError(
                f"Field value not found: {record.field_id}",
                entity_type="field_entry",
                entity_id=record.field_id,
            )

        resolved_value = self._dispatch_strategy(record, parsed, new_value)

        record.status = DiscrepancyStatus.RESOLVED
        record.strategy = parsed
        record.resolved_value = resolved_value
        record.resolved_by = resolver_id
        record.resolved_at = self.clock()
        record.notes = notes

        discrepancies.update_discrepancy(record)
        forms.set_field_value(record.field_id, resolved_value, resolver_id)
        self.audit_trail.record_resolution(
            audit_sink, record, resolver_id, old_value=field.value,
        )

        with self._count_lock:
            self._total_resolved += 1
        inc_resolutions(parsed.value)
        elapsed_ms = (time.perf_counter_ns() - start_ns) / 1_000_000
        observe_duration("resolve", elapsed_ms / 1000.0)

        logger.info(
            "Resolution complete: discrepancy=%s field=%s strategy=%s "
            "resolver=%s time_ms=%.1f",
            discrepancy_id, record.item_name or record.field_id,
            parsed.value, resolver_id, elapsed_ms,
        )
        return record

    def _dispatch_strategy(
        self,
        record: DiscrepancyRecord,
        strategy: ResolutionStrategy,
        new_value: Any,
    ) -> Optional[str]:
        """Pick the value a strategy writes onto the field."""
        if strategy == ResolutionStrategy.FIRST_CORRECT:
            return record.first_value
        if strategy == ResolutionStrategy.SECOND_CORRECT:
            return "" if record.second_value is None else record.second_value
        return str(new_value)

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    @property
    def created_count(self) -> int:
        """Records created, including ones whose transaction rolled back."""
        return self._total_created

    @property
    def resolved_count(self) -> int:
        return self._total_resolved
