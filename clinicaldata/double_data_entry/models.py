# -*- coding: utf-8 -*-
"""
Double Data-Entry Data Models

Pydantic v2 data models for the double data-entry reconciliation engine.
Defines enumerations, entity models, and result/view models for
independent two-person transcription of one case report form (CRF)
instance, field-level comparison, discrepancy resolution, and the
five-state completion lifecycle.

Enumerations (6):
    - EntryStatus, EntryType, ResolutionStrategy, DiscrepancyStatus,
      EntryPhaseStatus, ComparisonStatus

Entity models (4):
    - FormInstance, FieldEntry, DiscrepancyRecord, AuditRecord

Result and view models (7):
    - FieldVerdict, ComparisonResult, AuthorizationDecision,
      SecondEntryOutcome, FormInstanceSummary, DashboardStats,
      DashboardView, DDEStatusView

Author: Clinical Data Platform Team
Date: October 2026
Status: Production Ready
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


# =============================================================================
# Enumerations
# =============================================================================


class EntryStatus(str, Enum):
    """Completion lifecycle of a form instance under double data entry.

    NOT_STARTED: No data has been entered.
    FIRST_ENTRY_IN_PROGRESS: The first entrant is transcribing.
    FIRST_ENTRY_COMPLETE: First entry done; awaiting an independent second entry.
    SECOND_ENTRY_IN_PROGRESS: Second entry submitted; discrepancies may be open.
    RECONCILED: Both entries agree or every discrepancy is resolved. Terminal.
    """

    NOT_STARTED = "not_started"
    FIRST_ENTRY_IN_PROGRESS = "first_entry_in_progress"
    FIRST_ENTRY_COMPLETE = "first_entry_complete"
    SECOND_ENTRY_IN_PROGRESS = "second_entry_in_progress"
    RECONCILED = "reconciled"

    @property
    def rank(self) -> int:
        """Position along the lifecycle (0 = not started)."""
        return _STATUS_ORDER.index(self)


_STATUS_ORDER: List[EntryStatus] = [
    EntryStatus.NOT_STARTED,
    EntryStatus.FIRST_ENTRY_IN_PROGRESS,
    EntryStatus.FIRST_ENTRY_COMPLETE,
    EntryStatus.SECOND_ENTRY_IN_PROGRESS,
    EntryStatus.RECONCILED,
]


class EntryType(str, Enum):
    """Which of the two independent entries a user is authorized for."""

    FIRST = "first"
    SECOND = "second"


class ResolutionStrategy(str, Enum):
    """Strategy for resolving a detected discrepancy.

    FIRST_CORRECT: The first entry value captured at detection is correct.
    SECOND_CORRECT: The second entry value captured at detection is correct.
    NEW_VALUE: Neither entry is correct; a corrected value is supplied.
    ADJUDICATED: A third party decided the value; it is supplied.
    """

    FIRST_CORRECT = "first_correct"
    SECOND_CORRECT = "second_correct"
    NEW_VALUE = "new_value"
    ADJUDICATED = "adjudicated"

    @property
    def requires_value(self) -> bool:
        return self in (ResolutionStrategy.NEW_VALUE, ResolutionStrategy.ADJUDICATED)


class DiscrepancyStatus(str, Enum):
    """Resolution status of a discrepancy; moves open -> resolved once."""

    OPEN = "open"
    RESOLVED = "resolved"


class EntryPhaseStatus(str, Enum):
    """Progress of one entry pass as shown in the status view."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"


class ComparisonStatus(str, Enum):
    """Comparison outcome as shown in the status view."""

    PENDING = "pending"
    MATCHED = "matched"
    DISCREPANCIES = "discrepancies"
    RESOLVED = "resolved"


# =============================================================================
# Entity Models
# =============================================================================


class FormInstance(BaseModel):
    """One case report form instance subject to (optional) double entry.

    Attributes:
        form_instance_id: Unique identifier of the form instance.
        status: Current completion lifecycle status.
        double_entry_required: Whether the form definition requires
            independent double entry.
        site_id: Identifier of the study site.
        subject_label: Study subject label.
        form_name: CRF name.
        event_name: Study event name.
        first_entrant_id: User who completed the first entry.
        first_entry_at: When the first entry was marked complete.
        second_entrant_id: User who submitted the second entry.
        second_entry_at: When the second entry was submitted.
        second_entry_snapshot: Second-entry values keyed by field id.
        completed_at: When the instance reached RECONCILED.
        updated_at: Last modification time.
    """

    form_instance_id: str = Field(
        ..., description="Unique identifier of the form instance",
    )
    status: EntryStatus = Field(
        default=EntryStatus.NOT_STARTED,
        description="Current completion lifecycle status",
    )
    double_entry_required: bool = Field(
        default=False,
        description="Whether the form requires independent double entry",
    )
    site_id: Optional[str] = Field(None, description="Study site identifier")
    subject_label: Optional[str] = Field(None, description="Study subject label")
    form_name: Optional[str] = Field(None, description="CRF name")
    event_name: Optional[str] = Field(None, description="Study event name")
    first_entrant_id: Optional[str] = Field(
        None, description="User who completed the first entry",
    )
    first_entry_at: Optional[datetime] = Field(
        None, description="When the first entry was marked complete",
    )
    second_entrant_id: Optional[str] = Field(
        None, description="User who submitted the second entry",
    )
    second_entry_at: Optional[datetime] = Field(
        None, description="When the second entry was submitted",
    )
    second_entry_snapshot: Dict[str, Optional[str]] = Field(
        default_factory=dict,
        description="Second-entry values keyed by field id",
    )
    completed_at: Optional[datetime] = Field(
        None, description="When the instance reached RECONCILED",
    )
    updated_at: Optional[datetime] = Field(
        None, description="Last modification time",
    )

    model_config = {"extra": "forbid"}

    @field_validator("form_instance_id")
    @classmethod
    def validate_form_instance_id(cls, v: str) -> str:
        """Validate form_instance_id is non-empty."""
        if not v or not v.strip():
            raise ValueError("form_instance_id must be non-empty")
        return v

    @property
    def has_second_entry(self) -> bool:
        return self.second_entrant_id is not None


class FieldEntry(BaseModel):
    """One field value of a form instance (the first-entry value)."""

    field_id: str = Field(..., description="Unique identifier of the field value")
    form_instance_id: str = Field(..., description="Owning form instance")
    item_name: str = Field(..., description="CRF item name")
    value: Optional[str] = Field(None, description="Current stored value")
    ordinal: int = Field(default=0, description="Display order within the form")

    model_config = {"extra": "forbid"}

    @field_validator("field_id")
    @classmethod
    def validate_field_id(cls, v: str) -> str:
        """Validate field_id is non-empty."""
        if not v or not v.strip():
            raise ValueError("field_id must be non-empty")
        return v


class DiscrepancyRecord(BaseModel):
    """A disagreement between first and second entry of one field.

    The first and second values are captured when the discrepancy is
    detected; later edits to the field do not change them.

    Attributes:
        discrepancy_id: Unique identifier for this discrepancy.
        form_instance_id: Owning form instance.
        field_id: Field whose entries disagree.
        item_name: CRF item name of the field (informational).
        first_value: First-entry value at detection time.
        second_value: Second-entry value at detection time.
        status: open or resolved.
        strategy: Resolution strategy applied.
        resolved_value: Value written to the field on resolution.
        resolved_by: User who resolved the discrepancy.
        resolved_at: When the discrepancy was resolved.
        notes: Free-text resolution notes.
        created_at: When the discrepancy was detected.
    """

    discrepancy_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique identifier for this discrepancy",
    )
    form_instance_id: str = Field(..., description="Owning form instance")
    field_id: str = Field(..., description="Field whose entries disagree")
    item_name: Optional[str] = Field(None, description="CRF item name")
    first_value: Optional[str] = Field(
        None, description="First-entry value at detection time",
    )
    second_value: Optional[str] = Field(
        None, description="Second-entry value at detection time",
    )
    status: DiscrepancyStatus = Field(
        default=DiscrepancyStatus.OPEN,
        description="Resolution status",
    )
    strategy: Optional[ResolutionStrategy] = Field(
        None, description="Resolution strategy applied",
    )
    resolved_value: Optional[str] = Field(
        None, description="Value written to the field on resolution",
    )
    resolved_by: Optional[str] = Field(None, description="Resolving user")
    resolved_at: Optional[datetime] = Field(None, description="Resolution time")
    notes: Optional[str] = Field(None, description="Resolution notes")
    created_at: Optional[datetime] = Field(None, description="Detection time")

    model_config = {"extra": "forbid"}

    @field_validator("form_instance_id")
    @classmethod
    def validate_form_instance_id(cls, v: str) -> str:
        """Validate form_instance_id is non-empty."""
        if not v or not v.strip():
            raise ValueError("form_instance_id must be non-empty")
        return v

    @field_validator("field_id")
    @classmethod
    def validate_field_id(cls, v: str) -> str:
        """Validate field_id is non-empty."""
        if not v or not v.strip():
            raise ValueError("field_id must be non-empty")
        return v

    @property
    def is_open(self) -> bool:
        return self.status == DiscrepancyStatus.OPEN


class AuditRecord(BaseModel):
    """Append-only who/what/when/old/new/why record.

    Attributes:
        audit_id: Unique identifier of the audit record.
        user_id: Acting user.
        entity_type: Kind of entity affected (form_instance, field_entry).
        entity_id: Identifier of the affected entity.
        entity_name: Event label, e.g. "DDE Finalized".
        old_value: Value before the change.
        new_value: Value after the change.
        reason: Why the change was made.
        form_instance_id: Owning form instance.
        timestamp: When the change happened.
        provenance_hash: SHA-256 chain hash linking this record to the
            previous one.
    """

    audit_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique identifier of the audit record",
    )
    user_id: str = Field(..., description="Acting user")
    entity_type: str = Field(..., description="Kind of entity affected")
    entity_id: str = Field(..., description="Identifier of the affected entity")
    entity_name: str = Field(..., description="Event label")
    old_value: Optional[str] = Field(None, description="Value before the change")
    new_value: Optional[str] = Field(None, description="Value after the change")
    reason: Optional[str] = Field(None, description="Why the change was made")
    form_instance_id: Optional[str] = Field(None, description="Owning form instance")
    timestamp: Optional[datetime] = Field(None, description="When the change happened")
    provenance_hash: str = Field(
        default="",
        description="SHA-256 provenance chain hash for audit trail",
    )

    model_config = {"extra": "forbid"}

    @field_validator("user_id")
    @classmethod
    def validate_user_id(cls, v: str) -> str:
        """Validate user_id is non-empty."""
        if not v or not v.strip():
            raise ValueError("user_id must be non-empty")
        return v


# =============================================================================
# Result and View Models
# =============================================================================


class FieldVerdict(BaseModel):
    """Comparison verdict for one field."""

    field_id: str = Field(..., description="Compared field")
    item_name: str = Field(default="", description="CRF item name")
    first_value: Optional[str] = Field(None, description="First-entry value")
    second_value: Optional[str] = Field(None, description="Second-entry value")
    matches: bool = Field(..., description="Normalized values are equal")
    discrepancy_id: Optional[str] = Field(
        None, description="Linked discrepancy, if any",
    )
    resolution_status: Optional[DiscrepancyStatus] = Field(
        None, description="Status of the linked discrepancy",
    )

    model_config = {"extra": "forbid"}


class ComparisonResult(BaseModel):
    """Field-by-field comparison of first and second entry.

    Attributes:
        form_instance_id: Compared form instance.
        verdicts: One verdict per first-entry field.
        total: Number of fields compared.
        matched: Number of matching fields.
        mismatched: Number of mismatching fields.
        resolved: Mismatching fields whose discrepancy is resolved.
        created_discrepancy_ids: Discrepancies created by this comparison.
        processing_time_ms: Wall time of the comparison.
        provenance_hash: SHA-256 hash of the comparison result.
    """

    form_instance_id: str = Field(..., description="Compared form instance")
    verdicts: List[FieldVerdict] = Field(
        default_factory=list, description="One verdict per first-entry field",
    )
    total: int = Field(default=0, ge=0, description="Fields compared")
    matched: int = Field(default=0, ge=0, description="Matching fields")
    mismatched: int = Field(default=0, ge=0, description="Mismatching fields")
    resolved: int = Field(
        default=0, ge=0,
        description="Mismatching fields whose discrepancy is resolved",
    )
    created_discrepancy_ids: List[str] = Field(
        default_factory=list,
        description="Discrepancies created by this comparison",
    )
    processing_time_ms: float = Field(
        default=0.0, ge=0.0, description="Wall time of the comparison",
    )
    provenance_hash: str = Field(
        default="", description="SHA-256 hash of the comparison result",
    )

    model_config = {"extra": "forbid"}

    @property
    def discrepancies(self) -> List[FieldVerdict]:
        return [v for v in self.verdicts if not v.matches]


class AuthorizationDecision(BaseModel):
    """Result of the entry authorization gate."""

    allowed: bool = Field(..., description="Whether the user may enter data")
    entry_type: Optional[EntryType] = Field(
        None, description="Entry pass the user is authorized for",
    )
    reason: Optional[str] = Field(None, description="Human-readable refusal reason")
    reason_code: Optional[str] = Field(
        None,
        description="not_required, already_complete or same_entrant",
    )

    model_config = {"extra": "forbid"}


class SecondEntryOutcome(BaseModel):
    """Result of submitting a second entry."""

    form_instance_id: str = Field(..., description="Form instance")
    status: EntryStatus = Field(..., description="Status after submission")
    comparison: ComparisonResult = Field(..., description="Synchronous comparison")

    model_config = {"extra": "forbid"}


class FormInstanceSummary(BaseModel):
    """Dashboard row for a form instance waiting on someone."""

    form_instance_id: str = Field(..., description="Form instance")
    status: EntryStatus = Field(..., description="Current status")
    site_id: Optional[str] = Field(None, description="Study site")
    subject_label: Optional[str] = Field(None, description="Study subject label")
    form_name: Optional[str] = Field(None, description="CRF name")
    event_name: Optional[str] = Field(None, description="Study event name")
    first_entrant_id: Optional[str] = Field(None, description="First entrant")
    second_entrant_id: Optional[str] = Field(None, description="Second entrant")
    waiting_since: Optional[datetime] = Field(
        None, description="Start of the current wait",
    )
    wait_seconds: float = Field(default=0.0, ge=0.0, description="Seconds waiting")
    days_waiting: int = Field(default=0, ge=0, description="Whole days waiting")
    open_discrepancies: int = Field(default=0, ge=0, description="Open discrepancies")

    model_config = {"extra": "forbid"}


class DashboardStats(BaseModel):
    """Headline counts over double-entry form instances."""

    total: int = Field(default=0, ge=0, description="Double-entry form instances")
    pending: int = Field(default=0, ge=0, description="Awaiting second entry")
    discrepancies: int = Field(default=0, ge=0, description="Awaiting resolution")
    complete: int = Field(default=0, ge=0, description="Reconciled")

    model_config = {"extra": "forbid"}


class DashboardView(BaseModel):
    """Combined dashboard payload."""

    pending_second_entry: List[FormInstanceSummary] = Field(default_factory=list)
    pending_resolution: List[FormInstanceSummary] = Field(default_factory=list)
    stats: DashboardStats = Field(default_factory=DashboardStats)
    generated_at: Optional[datetime] = Field(None, description="Snapshot time")

    model_config = {"extra": "forbid"}


class DDEStatusView(BaseModel):
    """Per-form-instance progress summary."""

    form_instance_id: str = Field(..., description="Form instance")
    status: EntryStatus = Field(..., description="Lifecycle status")
    double_entry_required: bool = Field(..., description="Double entry required")
    first_entry_status: EntryPhaseStatus = Field(..., description="First pass progress")
    second_entry_status: EntryPhaseStatus = Field(..., description="Second pass progress")
    comparison_status: ComparisonStatus = Field(..., description="Comparison outcome")
    first_entrant_id: Optional[str] = Field(None, description="First entrant")
    first_entry_at: Optional[datetime] = Field(None, description="First entry time")
    second_entrant_id: Optional[str] = Field(None, description="Second entrant")
    second_entry_at: Optional[datetime] = Field(None, description="Second entry time")
    total_items: int = Field(default=0, ge=0, description="Fields on the form")
    open_discrepancies: int = Field(default=0, ge=0, description="Open discrepancies")
    resolved_discrepancies: int = Field(
        default=0, ge=0, description="Resolved discrepancies",
    )
    dde_complete: bool = Field(default=False, description="Reconciled")

    model_config = {"extra": "forbid"}


__all__ = [
    "EntryStatus",
    "EntryType",
    "ResolutionStrategy",
    "DiscrepancyStatus",
    "EntryPhaseStatus",
    "ComparisonStatus",
    "FormInstance",
    "FieldEntry",
    "DiscrepancyRecord",
    "AuditRecord",
    "FieldVerdict",
    "ComparisonResult",
    "AuthorizationDecision",
    "SecondEntryOutcome",
    "FormInstanceSummary",
    "DashboardStats",
    "DashboardView",
    "DDEStatusView",
]
