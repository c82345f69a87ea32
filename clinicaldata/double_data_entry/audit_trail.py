# -*- coding: utf-8 -*-
"""
Audit Trail - Double Data-Entry Reconciliation Engine

Builds and emits the append-only audit records required for every
lifecycle transition and every discrepancy resolution. Each record gets a
SHA-256 chain hash continuing the form instance's existing chain (see
``provenance``). Emission is mandatory: any sink failure raises
``AuditError`` so that the surrounding transaction rolls back.

Event labels:
    - DDE First Entry Started
    - DDE First Entry Complete
    - DDE Second Entry Submitted
    - DDE Reconciled (second entry matched on every field)
    - DDE Resolution
    - DDE Finalized

Example:
    >>> trail = AuditTrail(ProvenanceTracker())
    >>> record = trail.record_transition(
    ...     uow.audit, form, "user-1",
    ...     EntryStatus.FIRST_ENTRY_IN_PROGRESS, EntryStatus.FIRST_ENTRY_COMPLETE,
    ...     AuditTrail.FIRST_ENTRY_COMPLETE, "First entry marked complete",
    ... )

Author: Clinical Data Platform Team
Date: October 2026
Status: Production Ready
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from clinicaldata.double_data_entry.models import (
    AuditRecord,
    DiscrepancyRecord,
    EntryStatus,
    FormInstance,
)
from clinicaldata.double_data_entry.provenance import ProvenanceTracker
from clinicaldata.double_data_entry.stores import AuditSink
from clinicaldata.double_data_entry.metrics import inc_errors
from clinicaldata.exceptions import AuditError, ClinicalDataException

logger = logging.getLogger(__name__)

__all__ = ["AuditTrail"]


def _utcnow() -> datetime:
    """Return current UTC datetime with microseconds zeroed."""
    return datetime.now(timezone.utc).replace(microsecond=0)


class AuditTrail:
    """Emits chain-hashed audit records through an AuditSink.

    Attributes:
        provenance: Tracker used for chain hashing (None disables hashing).
        clock: Source of record timestamps.
    """

    ENTITY_FORM_INSTANCE = "form_instance"
    ENTITY_FIELD_ENTRY = "field_entry"

    FIRST_ENTRY_STARTED = "DDE First Entry Started"
    FIRST_ENTRY_COMPLETE = "DDE First Entry Complete"
    SECOND_ENTRY_SUBMITTED = "DDE Second Entry Submitted"
    RECONCILED = "DDE Reconciled"
    RESOLUTION = "DDE Resolution"
    FINALIZED = "DDE Finalized"

    def __init__(
        self,
        provenance: Optional[ProvenanceTracker] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.provenance = provenance
        self.clock = clock
        self._emitted = 0
        logger.info(
            "AuditTrail initialized (provenance=%s)",
            "enabled" if provenance is not None else "disabled",
        )

    # ------------------------------------------------------------------
    # Core emission
    # ------------------------------------------------------------------

    def emit(
        self,
        sink: AuditSink,
        user_id: str,
        entity_type: str,
        entity_id: str,
        entity_name: str,
        old_value: Optional[str] = None,
        new_value: Optional[str] = None,
        reason: Optional[str] = None,
        form_instance_id: Optional[str] = None,
    ) -> AuditRecord:
        """Build, hash and append one audit record.

        Raises:
            AuditError: If the sink cannot persist the record.
        """
        record = AuditRecord(
            user_id=user_id,
            entity_type=entity_type,
            entity_id=entity_id,
            entity_name=entity_name,
            old_value=old_value,
            new_value=new_value,
            reason=reason,
            form_instance_id=form_instance_id,
            timestamp=self.clock(),
        )

        try:
            if self.provenance is not None:
                previous = self._last_hash(sink, form_instance_id)
                record.provenance_hash = self.provenance.hash_record(record, previous)
            sink.append(record)
        except AuditError:
            inc_errors("audit")
            raise
        except ClinicalDataException:
            raise
        except Exception as exc:
            inc_errors("audit")
            raise AuditError(
                f"Failed to append audit record '{entity_name}': {exc}",
                operation="append",
                cause=exc,
                context={"entity_id": entity_id},
            ) from exc

        self._emitted += 1
        logger.debug(
            "Audit record emitted: %s entity=%s/%s user=%s hash=%s",
            entity_name, entity_type, entity_id, user_id,
            record.provenance_hash[:16],
        )
        return record

    def _last_hash(self, sink: AuditSink, form_instance_id: Optional[str]) -> Optional[str]:
        if form_instance_id is None:
            return None
        existing = sink.list_for_form_instance(form_instance_id)
        return existing[-1].provenance_hash if existing else None

    # ------------------------------------------------------------------
    # Typed helpers
    # ------------------------------------------------------------------

    def record_transition(
        self,
        sink: AuditSink,
        form_instance: FormInstance,
        user_id: str,
        from_status: EntryStatus,
        to_status: EntryStatus,
        event_label: str,
        reason: Optional[str] = None,
    ) -> AuditRecord:
        """Audit a lifecycle transition of a form instance."""
        return self.emit(
            sink,
            user_id=user_id,
            entity_type=self.ENTITY_FORM_INSTANCE,
            entity_id=form_instance.form_instance_id,
            entity_name=event_label,
            old_value=from_status.value,
            new_value=to_status.value,
            reason=reason,
            form_instance_id=form_instance.form_instance_id,
        )

    def record_resolution(
        self,
        sink: AuditSink,
        discrepancy: DiscrepancyRecord,
        user_id: str,
        old_value: Optional[str],
    ) -> AuditRecord:
        """Audit the field value change made by a discrepancy resolution."""
        reason = discrepancy.notes or f"DDE resolved as {discrepancy.strategy.value}"
        return self.emit(
            sink,
            user_id=user_id,
            entity_type=self.ENTITY_FIELD_ENTRY,
            entity_id=discrepancy.field_id,
            entity_name=self.RESOLUTION,
            old_value=old_value,
            new_value=discrepancy.resolved_value,
            reason=reason,
            form_instance_id=discrepancy.form_instance_id,
        )

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify(
        self, sink: AuditSink, form_instance_id: str,
    ) -> Tuple[bool, List[AuditRecord]]:
        """Recompute the provenance chain of one form instance.

        Returns:
            Tuple of (is_valid, records oldest first). Always valid when
            provenance is disabled.
        """
        records = sink.list_for_form_instance(form_instance_id)
        if self.provenance is None:
            return True, records
        valid, _ = self.provenance.verify_chain(records)
        return valid, records

    @property
    def emitted_count(self) -> int:
        """Number of records emitted by this instance (including rolled back)."""
        return self._emitted
