"""
Database models for double data entry

Supports:
- Form instances (event CRFs) with the shared completion status code
- Field values (item data) owned by the form instance store
- DDE discrepancy records
- Append-only audit log
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from clinicaldata.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


class FormInstanceRow(Base):
    """One CRF instance for one subject at one event"""

    __tablename__ = "event_crf"

    id = Column(String(36), primary_key=True)
    site_id = Column(String(64), nullable=True, index=True)
    subject_label = Column(String(255), nullable=True)
    form_name = Column(String(255), nullable=True)
    event_name = Column(String(255), nullable=True)

    # Shared completion status code (1..5)
    completion_status_id = Column(Integer, nullable=False, default=1)
    double_entry_required = Column(Boolean, nullable=False, default=False)

    # First entry
    owner_id = Column(String(64), nullable=True)
    date_first_entry_complete = Column(DateTime(timezone=True), nullable=True)

    # Second entry
    validator_id = Column(String(64), nullable=True)
    date_validate = Column(DateTime(timezone=True), nullable=True)
    second_entry_snapshot = Column(Text, nullable=True)  # JSON object

    date_completed = Column(DateTime(timezone=True), nullable=True)
    date_created = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    date_updated = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    update_id = Column(String(64), nullable=True)

    __table_args__ = (
        Index("idx_event_crf_status_site", "completion_status_id", "site_id"),
    )

    def __repr__(self):
        return f"<FormInstanceRow(id={self.id}, status={self.completion_status_id})>"


class FieldEntryRow(Base):
    """One field value within a form instance"""

    __tablename__ = "item_data"

    id = Column(String(36), primary_key=True)
    event_crf_id = Column(String(36), ForeignKey("event_crf.id"), nullable=False, index=True)
    item_name = Column(String(255), nullable=False)
    ordinal = Column(Integer, nullable=False, default=0)
    value = Column(Text, nullable=True)
    date_updated = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    update_id = Column(String(64), nullable=True)

    def __repr__(self):
        return f"<FieldEntryRow(id={self.id}, item_name={self.item_name})>"


class DiscrepancyRow(Base):
    """DDE discrepancy detected between first and second entry of one field"""

    __tablename__ = "dde_discrepancy"

    id = Column(String(36), primary_key=True)
    event_crf_id = Column(String(36), ForeignKey("event_crf.id"), nullable=False, index=True)
    item_data_id = Column(String(36), ForeignKey("item_data.id"), nullable=False)
    item_name = Column(String(255), nullable=True)
    first_value = Column(Text, nullable=True)
    second_value = Column(Text, nullable=True)

    status = Column(String(16), nullable=False, default="open")
    resolution_strategy = Column(String(32), nullable=True)
    resolved_value = Column(Text, nullable=True)
    resolved_by = Column(String(64), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    notes = Column(Text, nullable=True)

    date_created = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("event_crf_id", "item_data_id", name="uq_dde_discrepancy_field"),
        Index("idx_dde_discrepancy_status", "event_crf_id", "status"),
    )

    def __repr__(self):
        return f"<DiscrepancyRow(id={self.id}, status={self.status})>"


class AuditLogRow(Base):
    """Append-only audit record"""

    __tablename__ = "audit_log_event"

    id = Column(String(36), primary_key=True)
    sequence = Column(Integer, nullable=False, index=True)
    user_id = Column(String(64), nullable=False)
    entity_type = Column(String(64), nullable=False)
    entity_id = Column(String(36), nullable=False)
    entity_name = Column(String(255), nullable=False)
    old_value = Column(Text, nullable=True)
    new_value = Column(Text, nullable=True)
    reason = Column(Text, nullable=True)
    event_crf_id = Column(String(36), nullable=True, index=True)
    provenance_hash = Column(String(64), nullable=True)
    audit_date = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
    )

    def __repr__(self):
        return f"<AuditLogRow(id={self.id}, entity_name={self.entity_name})>"
