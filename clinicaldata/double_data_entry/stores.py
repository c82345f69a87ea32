# -*- coding: utf-8 -*-
"""
Collaborator interfaces consumed by the double data-entry engine.

The engine never builds queries. It talks to three narrow, named
interfaces that a storage adapter implements for one unit of work:

- FormInstanceStore: form instances, field values and ownership
- DiscrepancyStore: discrepancy records and their resolution status
- AuditSink: append-only audit log (failures are fatal to the operation)

``clinicaldata.double_data_entry.repository`` provides the SQLAlchemy
implementations.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Protocol, runtime_checkable

from clinicaldata.double_data_entry.models import (
    AuditRecord,
    DiscrepancyRecord,
    EntryStatus,
    FieldEntry,
    FormInstance,
)


# ==============================================================================
# Form Instance Store
# ==============================================================================

@runtime_checkable
class FormInstanceStore(Protocol):
    """Form instances and their field values."""

    def get_form_instance(
        self, form_instance_id: str, for_update: bool = False,
    ) -> Optional[FormInstance]:
        """Load a form instance, optionally locking its row."""
        ...

    def get_field_values(self, form_instance_id: str) -> List[FieldEntry]:
        """Field values of the instance in display order."""
        ...

    def get_field_value(self, field_id: str) -> Optional[FieldEntry]:
        ...

    def is_double_entry_required(self, form_instance_id: str) -> bool:
        ...

    def set_field_value(
        self, field_id: str, value: Optional[str], acting_user_id: str,
    ) -> FieldEntry:
        """Overwrite one field value and return the updated entry."""
        ...

    def save_form_instance(
        self, form_instance: FormInstance, acting_user_id: str,
    ) -> FormInstance:
        """Persist status, entrant and timestamp fields.

        The second-entry snapshot is written only by the save that first
        records the second entrant; later saves leave the stored text alone.
        """
        ...

    def list_form_instances(
        self,
        statuses: Iterable[EntryStatus],
        site_id: Optional[str] = None,
        double_entry_only: bool = False,
        open_discrepancies_only: bool = False,
        order_by: str = "first_entry_at",
        limit: Optional[int] = None,
    ) -> List[FormInstance]:
        """Instances in any of ``statuses``, oldest ``order_by`` first."""
        ...

    def count_by_status(
        self, site_id: Optional[str] = None, double_entry_only: bool = False,
    ) -> Dict[EntryStatus, int]:
        ...


# ==============================================================================
# Discrepancy Store
# ==============================================================================

@runtime_checkable
class DiscrepancyStore(Protocol):
    """Discrepancy records linked to form instance fields."""

    def create_discrepancy(self, record: DiscrepancyRecord) -> str:
        """Insert a new record and return its id."""
        ...

    def get_discrepancy(
        self, discrepancy_id: str, for_update: bool = False,
    ) -> Optional[DiscrepancyRecord]:
        ...

    def get_for_field(
        self, form_instance_id: str, field_id: str,
    ) -> Optional[DiscrepancyRecord]:
        """The discrepancy recorded for one field, open or resolved."""
        ...

    def update_discrepancy(self, record: DiscrepancyRecord) -> DiscrepancyRecord:
        ...

    def count_open_for_form_instance(self, form_instance_id: str) -> int:
        ...

    def count_resolved_for_form_instance(self, form_instance_id: str) -> int:
        ...

    def list_for_form_instance(self, form_instance_id: str) -> List[DiscrepancyRecord]:
        ...


# ==============================================================================
# Audit Sink
# ==============================================================================

@runtime_checkable
class AuditSink(Protocol):
    """Append-only audit log."""

    def append(self, record: AuditRecord) -> str:
        """Persist one record and return its id; raise on failure."""
        ...

    def list_for_form_instance(self, form_instance_id: str) -> List[AuditRecord]:
        ...


__all__ = [
    "FormInstanceStore",
    "DiscrepancyStore",
    "AuditSink",
]
