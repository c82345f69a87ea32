# -*- coding: utf-8 -*-
"""
SQLAlchemy storage adapters for the double data-entry engine.

Implements the FormInstanceStore, DiscrepancyStore and AuditSink
interfaces over the ``event_crf``, ``item_data``, ``dde_discrepancy`` and
``audit_log_event`` tables for one session (one unit of work). This is
the only place that knows about:

- the shared integer completion status code (1..5) and its translation to
  the dedicated EntryStatus enum;
- the JSON text encoding of the second-entry snapshot, including the
  legacy ``[{"itemId": ..., "value": ...}]`` list form;
- naive datetimes returned by SQLite, which are read back as UTC.

Example:
    >>> with database.session_scope() as session:
    ...     forms = SqlAlchemyFormInstanceStore(session)
    ...     form = forms.get_form_instance("ecrf-001")

Author: Clinical Data Platform Team
Date: October 2026
Status: Production Ready
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import exists, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinicaldata.db.models_dde import (
    AuditLogRow,
    DiscrepancyRow,
    FieldEntryRow,
    FormInstanceRow,
)
from clinicaldata.double_data_entry.models import (
    AuditRecord,
    DiscrepancyRecord,
    DiscrepancyStatus,
    EntryStatus,
    FieldEntry,
    FormInstance,
    ResolutionStrategy,
)
from clinicaldata.exceptions import AuditError, NotFoundError, StorageError

logger = logging.getLogger(__name__)

__all__ = [
    "STATUS_TO_CODE",
    "CODE_TO_STATUS",
    "status_from_code",
    "status_to_code",
    "decode_snapshot",
    "encode_snapshot",
    "SqlAlchemyFormInstanceStore",
    "SqlAlchemyDiscrepancyStore",
    "SqlAlchemyAuditSink",
]


# ---------------------------------------------------------------------------
# Completion status code translation
# ---------------------------------------------------------------------------

STATUS_TO_CODE: Dict[EntryStatus, int] = {
    EntryStatus.NOT_STARTED: 1,
    EntryStatus.FIRST_ENTRY_IN_PROGRESS: 2,
    EntryStatus.FIRST_ENTRY_COMPLETE: 3,
    EntryStatus.SECOND_ENTRY_IN_PROGRESS: 4,
    EntryStatus.RECONCILED: 5,
}

CODE_TO_STATUS: Dict[int, EntryStatus] = {
    code: status for status, code in STATUS_TO_CODE.items()
}

_ORDER_COLUMNS = {
    "first_entry_at": FormInstanceRow.date_first_entry_complete,
    "second_entry_at": FormInstanceRow.date_validate,
    "created_at": FormInstanceRow.date_created,
}


def status_from_code(code: Optional[int]) -> EntryStatus:
    """Translate the shared completion status code to EntryStatus.

    Raises:
        StorageError: If the code is outside 1..5.
    """
    try:
        return CODE_TO_STATUS[int(code)]
    except (KeyError, TypeError, ValueError):
        raise StorageError(
            f"Unknown completion status code: {code!r}",
            operation="status_from_code",
        )


def status_to_code(status: EntryStatus) -> int:
    return STATUS_TO_CODE[EntryStatus(status)]


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


# ---------------------------------------------------------------------------
# Second-entry snapshot codec
# ---------------------------------------------------------------------------


def _snapshot_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def decode_snapshot(
    raw: Optional[str],
    strict: bool = False,
    form_instance_id: Optional[str] = None,
) -> Dict[str, Optional[str]]:
    """Decode a stored second-entry snapshot into ``{field_id: value}``.

    Accepts the object form ``{"<field_id>": value}`` and the legacy list
    form ``[{"itemId": ..., "value": ...}]`` (``field_id`` and
    ``item_data_id`` keys are also recognized). Anything else is
    unparseable: it is logged and read as an empty snapshot, or raises
    ``StorageError`` when ``strict`` is True.

    Args:
        raw: Stored JSON text.
        strict: Raise instead of returning an empty snapshot.
        form_instance_id: Owning instance, for log context.

    Returns:
        Snapshot mapping field id to entered value.
    """
    if raw is None or not str(raw).strip():
        return {}

    problem: Optional[str] = None
    snapshot: Dict[str, Optional[str]] = {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError) as exc:
        parsed = None
        problem = f"invalid JSON ({exc})"

    if problem is None:
        if isinstance(parsed, dict):
            snapshot = {
                str(key): _snapshot_value(value) for key, value in parsed.items()
            }
        elif isinstance(parsed, list):
            for item in parsed:
                if not isinstance(item, dict):
                    problem = "list entry is not an object"
                    break
                key = item.get("field_id", item.get("itemId", item.get("item_data_id")))
                if key is None:
                    problem = "list entry has no field identifier"
                    break
                snapshot[str(key)] = _snapshot_value(item.get("value"))
        else:
            problem = f"unexpected JSON type {type(parsed).__name__}"

    if problem is not None:
        if strict:
            raise StorageError(
                f"Unparseable second-entry snapshot: {problem}",
                operation="decode_snapshot",
                context={"form_instance_id": form_instance_id},
            )
        logger.warning(
            "Unparseable second-entry snapshot for form instance %s (%s); "
            "treating as empty",
            form_instance_id, problem,
        )
        return {}

    return snapshot


def encode_snapshot(snapshot: Optional[Dict[str, Optional[str]]]) -> Optional[str]:
    """Encode a snapshot mapping as JSON text (None when absent)."""
    if snapshot is None:
        return None
    return json.dumps(
        {str(k): _snapshot_value(v) for k, v in snapshot.items()},
        sort_keys=True,
    )


# ---------------------------------------------------------------------------
# Form Instance Store
# ---------------------------------------------------------------------------


class SqlAlchemyFormInstanceStore:
    """FormInstanceStore over ``event_crf`` and ``item_data``."""

    def __init__(self, session: Session, strict_snapshot_parsing: bool = False) -> None:
        self.session = session
        self.strict_snapshot_parsing = strict_snapshot_parsing

    # -- Mapping ------------------------------------------------------------

    def _to_model(self, row: FormInstanceRow) -> FormInstance:
        return FormInstance(
            form_instance_id=row.id,
            status=status_from_code(row.completion_status_id),
            double_entry_required=bool(row.double_entry_required),
            site_id=row.site_id,
            subject_label=row.subject_label,
            form_name=row.form_name,
            event_name=row.event_name,
            first_entrant_id=row.owner_id,
            first_entry_at=_as_utc(row.date_first_entry_complete),
            second_entrant_id=row.validator_id,
            second_entry_at=_as_utc(row.date_validate),
            second_entry_snapshot=decode_snapshot(
                row.second_entry_snapshot,
                strict=self.strict_snapshot_parsing,
                form_instance_id=row.id,
            ),
            completed_at=_as_utc(row.date_completed),
            updated_at=_as_utc(row.date_updated),
        )

    @staticmethod
    def _field_to_model(row: FieldEntryRow) -> FieldEntry:
        return FieldEntry(
            field_id=row.id,
            form_instance_id=row.event_crf_id,
            item_name=row.item_name,
            value=row.value,
            ordinal=row.ordinal or 0,
        )

    def _load_row(self, form_instance_id: str, for_update: bool = False) -> Optional[FormInstanceRow]:
        stmt = select(FormInstanceRow).where(FormInstanceRow.id == form_instance_id)
        if for_update:
            # Row lock on PostgreSQL; SQLite ignores FOR UPDATE
            stmt = stmt.with_for_update()
        return self.session.execute(stmt).scalar_one_or_none()

    # -- Reads --------------------------------------------------------------

    def get_form_instance(
        self, form_instance_id: str, for_update: bool = False,
    ) -> Optional[FormInstance]:
        row = self._load_row(form_instance_id, for_update=for_update)
        if row is None:
            return None
        return self._to_model(row)

    def get_field_values(self, form_instance_id: str) -> List[FieldEntry]:
        stmt = (
            select(FieldEntryRow)
            .where(FieldEntryRow.event_crf_id == form_instance_id)
            .order_by(FieldEntryRow.ordinal, FieldEntryRow.item_name)
        )
        return [self._field_to_model(row) for row in self.session.execute(stmt).scalars()]

    def get_field_value(self, field_id: str) -> Optional[FieldEntry]:
        row = self.session.get(FieldEntryRow, field_id)
        return self._field_to_model(row) if row is not None else None

    def is_double_entry_required(self, form_instance_id: str) -> bool:
        row = self._load_row(form_instance_id)
        if row is None:
            raise NotFoundError(
                f"Form instance not found: {form_instance_id}",
                entity_type="form_instance",
                entity_id=form_instance_id,
            )
        return bool(row.double_entry_required)

    def list_form_instances(
        self,
        statuses: Iterable[EntryStatus],
        site_id: Optional[str] = None,
        double_entry_only: bool = False,
        open_discrepancies_only: bool = False,
        order_by: str = "first_entry_at",
        limit: Optional[int] = None,
    ) -> List[FormInstance]:
        codes = [status_to_code(s) for s in statuses]
        stmt = select(FormInstanceRow).where(
            FormInstanceRow.completion_status_id.in_(codes)
        )
        if site_id is not None:
            stmt = stmt.where(FormInstanceRow.site_id == site_id)
        if double_entry_only:
            stmt = stmt.where(FormInstanceRow.double_entry_required.is_(True))
        if open_discrepancies_only:
            stmt = stmt.where(
                exists().where(
                    DiscrepancyRow.event_crf_id == FormInstanceRow.id,
                    DiscrepancyRow.status == DiscrepancyStatus.OPEN.value,
                )
            )

        try:
            order_column = _ORDER_COLUMNS[order_by]
        except KeyError:
            raise ValueError(f"Unsupported order_by: {order_by}")
        stmt = stmt.order_by(order_column.asc(), FormInstanceRow.id.asc())
        if limit is not None:
            stmt = stmt.limit(limit)

        return [self._to_model(row) for row in self.session.execute(stmt).scalars()]

    def count_by_status(
        self, site_id: Optional[str] = None, double_entry_only: bool = False,
    ) -> Dict[EntryStatus, int]:
        stmt = select(
            FormInstanceRow.completion_status_id, func.count(FormInstanceRow.id),
        ).group_by(FormInstanceRow.completion_status_id)
        if site_id is not None:
            stmt = stmt.where(FormInstanceRow.site_id == site_id)
        if double_entry_only:
            stmt = stmt.where(FormInstanceRow.double_entry_required.is_(True))

        counts = {status: 0 for status in EntryStatus}
        for code, count in self.session.execute(stmt):
            counts[status_from_code(code)] = int(count)
        return counts

    # -- Writes -------------------------------------------------------------

    def set_field_value(
        self, field_id: str, value: Optional[str], acting_user_id: str,
    ) -> FieldEntry:
        row = self.session.get(FieldEntryRow, field_id)
        if row is None:
            raise NotFoundError(
                f"Field value not found: {field_id}",
                entity_type="field_entry",
                entity_id=field_id,
            )
        row.value = value
        row.update_id = acting_user_id
        row.date_updated = _utcnow()
        self.session.flush()
        return self._field_to_model(row)

    def save_form_instance(
        self, form_instance: FormInstance, acting_user_id: str,
    ) -> FormInstance:
        row = self._load_row(form_instance.form_instance_id)
        if row is None:
            raise NotFoundError(
                f"Form instance not found: {form_instance.form_instance_id}",
                entity_type="form_instance",
                entity_id=form_instance.form_instance_id,
            )
        # The stored snapshot is written once, when the second entrant is set.
        if row.validator_id is None and form_instance.second_entrant_id is not None:
            row.second_entry_snapshot = encode_snapshot(form_instance.second_entry_snapshot)
        row.completion_status_id = status_to_code(form_instance.status)
        row.owner_id = form_instance.first_entrant_id
        row.date_first_entry_complete = form_instance.first_entry_at
        row.validator_id = form_instance.second_entrant_id
        row.date_validate = form_instance.second_entry_at
        row.date_completed = form_instance.completed_at
        row.date_updated = _utcnow()
        row.update_id = acting_user_id
        self.session.flush()
        return self._to_model(row)

    # -- Seeding ------------------------------------------------------------

    def create_form_instance(
        self,
        form_instance_id: Optional[str] = None,
        double_entry_required: bool = True,
        site_id: Optional[str] = None,
        subject_label: Optional[str] = None,
        form_name: Optional[str] = None,
        event_name: Optional[str] = None,
        status: EntryStatus = EntryStatus.NOT_STARTED,
    ) -> FormInstance:
        """Insert a new form instance row (used by loaders and tests)."""
        row = FormInstanceRow(
            id=form_instance_id or str(uuid.uuid4()),
            double_entry_required=double_entry_required,
            site_id=site_id,
            subject_label=subject_label,
            form_name=form_name,
            event_name=event_name,
            completion_status_id=status_to_code(status),
            date_created=_utcnow(),
        )
        self.session.add(row)
        self.session.flush()
        return self._to_model(row)

    def add_field_value(
        self,
        form_instance_id: str,
        item_name: str,
        value: Optional[str] = None,
        field_id: Optional[str] = None,
        ordinal: Optional[int] = None,
    ) -> FieldEntry:
        """Insert one field value for an existing form instance."""
        if ordinal is None:
            ordinal = self.session.execute(
                select(func.count(FieldEntryRow.id)).where(
                    FieldEntryRow.event_crf_id == form_instance_id
                )
            ).scalar_one()
        row = FieldEntryRow(
            id=field_id or str(uuid.uuid4()),
            event_crf_id=form_instance_id,
            item_name=item_name,
            value=value,
            ordinal=ordinal,
        )
        self.session.add(row)
        self.session.flush()
        return self._field_to_model(row)


# ---------------------------------------------------------------------------
# Discrepancy Store
# ---------------------------------------------------------------------------


class SqlAlchemyDiscrepancyStore:
    """DiscrepancyStore over ``dde_discrepancy``."""

    def __init__(self, session: Session) -> None:
        self.session = session

    @staticmethod
    def _to_model(row: DiscrepancyRow) -> DiscrepancyRecord:
        return DiscrepancyRecord(
            discrepancy_id=row.id,
            form_instance_id=row.event_crf_id,
            field_id=row.item_data_id,
            item_name=row.item_name,
            first_value=row.first_value,
            second_value=row.second_value,
            status=DiscrepancyStatus(row.status),
            strategy=ResolutionStrategy(row.resolution_strategy) if row.resolution_strategy else None,
            resolved_value=row.resolved_value,
            resolved_by=row.resolved_by,
            resolved_at=_as_utc(row.resolved_at),
            notes=row.notes,
            created_at=_as_utc(row.date_created),
        )

    def create_discrepancy(self, record: DiscrepancyRecord) -> str:
        row = DiscrepancyRow(
            id=record.discrepancy_id,
            event_crf_id=record.form_instance_id,
            item_data_id=record.field_id,
            item_name=record.item_name,
            first_value=record.first_value,
            second_value=record.second_value,
            status=record.status.value,
            date_created=record.created_at or _utcnow(),
        )
        self.session.add(row)
        self.session.flush()
        return row.id

    def get_discrepancy(
        self, discrepancy_id: str, for_update: bool = False,
    ) -> Optional[DiscrepancyRecord]:
        stmt = select(DiscrepancyRow).where(DiscrepancyRow.id == discrepancy_id)
        if for_update:
            stmt = stmt.with_for_update()
        row = self.session.execute(stmt).scalar_one_or_none()
        return self._to_model(row) if row is not None else None

    def get_for_field(
        self, form_instance_id: str, field_id: str,
    ) -> Optional[DiscrepancyRecord]:
        stmt = select(DiscrepancyRow).where(
            DiscrepancyRow.event_crf_id == form_instance_id,
            DiscrepancyRow.item_data_id == field_id,
        )
        row = self.session.execute(stmt).scalar_one_or_none()
        return self._to_model(row) if row is not None else None

    def update_discrepancy(self, record: DiscrepancyRecord) -> DiscrepancyRecord:
        row = self.session.get(DiscrepancyRow, record.discrepancy_id)
        if row is None:
            raise NotFoundError(
                f"Discrepancy not found: {record.discrepancy_id}",
                entity_type="discrepancy",
                entity_id=record.discrepancy_id,
            )
        row.status = record.status.value
        row.resolution_strategy = record.strategy.value if record.strategy else None
        row.resolved_value = record.resolved_value
        row.resolved_by = record.resolved_by
        row.resolved_at = record.resolved_at
        row.notes = record.notes
        self.session.flush()
        return self._to_model(row)

    def _count(self, form_instance_id: str, status: DiscrepancyStatus) -> int:
        stmt = select(func.count(DiscrepancyRow.id)).where(
            DiscrepancyRow.event_crf_id == form_instance_id,
            DiscrepancyRow.status == status.value,
        )
        return int(self.session.execute(stmt).scalar_one())

    def count_open_for_form_instance(self, form_instance_id: str) -> int:
        return self._count(form_instance_id, DiscrepancyStatus.OPEN)

    def count_resolved_for_form_instance(self, form_instance_id: str) -> int:
        return self._count(form_instance_id, DiscrepancyStatus.RESOLVED)

    def list_for_form_instance(self, form_instance_id: str) -> List[DiscrepancyRecord]:
        stmt = (
            select(DiscrepancyRow)
            .where(DiscrepancyRow.event_crf_id == form_instance_id)
            .order_by(DiscrepancyRow.date_created, DiscrepancyRow.id)
        )
        return [self._to_model(row) for row in self.session.execute(stmt).scalars()]


# ---------------------------------------------------------------------------
# Audit Sink
# ---------------------------------------------------------------------------


class SqlAlchemyAuditSink:
    """AuditSink over ``audit_log_event``.

    Records are flushed immediately so that a failing insert aborts the
    operation that emitted it.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def append(self, record: AuditRecord) -> str:
        try:
            sequence = self.session.execute(
                select(func.coalesce(func.max(AuditLogRow.sequence), 0))
            ).scalar_one() + 1
        except SQLAlchemyError as exc:
            raise AuditError(
                "Failed to allocate audit sequence",
                operation="append",
                cause=exc,
            ) from exc
        row = AuditLogRow(
            id=record.audit_id,
            sequence=sequence,
            user_id=record.user_id,
            entity_type=record.entity_type,
            entity_id=record.entity_id,
            entity_name=record.entity_name,
            old_value=record.old_value,
            new_value=record.new_value,
            reason=record.reason,
            event_crf_id=record.form_instance_id,
            provenance_hash=record.provenance_hash or None,
            audit_date=record.timestamp or _utcnow(),
        )
        try:
            self.session.add(row)
            self.session.flush()
        except SQLAlchemyError as exc:
            raise AuditError(
                f"Failed to append audit record '{record.entity_name}'",
                operation="append",
                cause=exc,
                context={"entity_id": record.entity_id},
            ) from exc
        return row.id

    def list_for_form_instance(self, form_instance_id: str) -> List[AuditRecord]:
        stmt = (
            select(AuditLogRow)
            .where(AuditLogRow.event_crf_id == form_instance_id)
            .order_by(AuditLogRow.sequence)
        )
        return [
            AuditRecord(
                audit_id=row.id,
                user_id=row.user_id,
                entity_type=row.entity_type,
                entity_id=row.entity_id,
                entity_name=row.entity_name,
                old_value=row.old_value,
                new_value=row.new_value,
                reason=row.reason,
                form_instance_id=row.event_crf_id,
                timestamp=_as_utc(row.audit_date),
                provenance_hash=row.provenance_hash or "",
            )
            for row in self.session.execute(stmt).scalars()
        ]
