# -*- coding: utf-8 -*-
"""
Comparison Engine - Double Data-Entry Reconciliation Engine

Field-by-field comparison of the first entry (the stored field values of a
form instance) against the second-entry snapshot. Both sides are
normalized with ``normalize_value`` before comparison; a field missing
from the snapshot compares as the empty string.

For every mismatching field that has no discrepancy record yet, a new open
discrepancy is created through the DiscrepancyManager with the values seen
at detection time. A field that already has a record (open or resolved)
is linked to it instead, so repeated comparisons never duplicate
discrepancies. Comparisons of a reconciled form instance are read-only.

Example:
    >>> engine = ComparisonEngine(discrepancy_manager)
    >>> result = engine.compare(uow.forms, uow.discrepancies, "ecrf-001")
    >>> print(result.total, result.matched, result.mismatched)

Author: Clinical Data Platform Team
Date: October 2026
Status: Production Ready
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from typing import Any, Dict, List, Optional

from clinicaldata.double_data_entry.discrepancy_manager import DiscrepancyManager
from clinicaldata.double_data_entry.metrics import inc_comparisons, observe_duration
from clinicaldata.double_data_entry.models import (
    ComparisonResult,
    DiscrepancyStatus,
    EntryStatus,
    FieldVerdict,
    FormInstance,
)
from clinicaldata.double_data_entry.normalization import values_match
from clinicaldata.double_data_entry.stores import DiscrepancyStore, FormInstanceStore
from clinicaldata.exceptions import InvalidStateError, NotFoundError

logger = logging.getLogger(__name__)

__all__ = ["ComparisonEngine"]


class ComparisonEngine:
    """Compares first and second entry of a form instance.

    Attributes:
        discrepancy_manager: Creates discrepancy records for mismatches.
    """

    def __init__(self, discrepancy_manager: DiscrepancyManager) -> None:
        self.discrepancy_manager = discrepancy_manager
        self._comparison_count: int = 0
        self._count_lock = threading.Lock()
        logger.info("ComparisonEngine initialized")

    def compare(
        self,
        forms: FormInstanceStore,
        discrepancies: DiscrepancyStore,
        form_instance_id: str,
        create_discrepancies: bool = True,
        form_instance: Optional[FormInstance] = None,
    ) -> ComparisonResult:
        """Compare every first-entry field with the second-entry snapshot.

        Args:
            forms: Form instance store.
            discrepancies: Discrepancy store.
            form_instance_id: Form instance to compare.
            create_discrepancies: Create records for new mismatches. False
                gives a side-effect free view.
            form_instance: Already loaded instance (skips the reload).

        Returns:
            ComparisonResult with one verdict per first-entry field.

        Raises:
            NotFoundError: Unknown form instance.
            InvalidStateError: No second entry has been submitted.
        """
        start_time = time.monotonic()

        form = form_instance or forms.get_form_instance(form_instance_id)
        if form is None:
            raise NotFoundError(
                f"Form instance not found: {form_instance_id}",
                entity_type="form_instance",
                entity_id=form_instance_id,
            )
        if not form.has_second_entry:
            raise InvalidStateError(
                f"Form instance {form_instance_id} has no second entry to compare",
                current_state=form.status.value,
                operation="compare",
            )

        writable = create_discrepancies and form.status != EntryStatus.RECONCILED
        snapshot = form.second_entry_snapshot

        verdicts: List[FieldVerdict] = []
        created: List[str] = []
        for field in forms.get_field_values(form_instance_id):
            second_value = snapshot.get(field.field_id)
            if second_value is None:
                second_value = ""
            matches = values_match(field.value, second_value)

            existing = discrepancies.get_for_field(form_instance_id, field.field_id)
            if not matches and existing is None and writable:
                existing = self.discrepancy_manager.create(
                    discrepancies,
                    form_instance_id=form_instance_id,
                    field_id=field.field_id,
                    first_value=field.value,
                    second_value=second_value,
                    item_name=field.item_name,
                )
                created.append(existing.discrepancy_id)

            verdicts.append(FieldVerdict(
                field_id=field.field_id,
                item_name=field.item_name,
                first_value=field.value,
                second_value=second_value,
                matches=matches,
                discrepancy_id=existing.discrepancy_id if existing else None,
                resolution_status=existing.status if existing else None,
            ))

        matched = sum(1 for v in verdicts if v.matches)
        resolved = sum(
            1 for v in verdicts if v.resolution_status == DiscrepancyStatus.RESOLVED
        )
        elapsed = time.monotonic() - start_time

        result = ComparisonResult(
            form_instance_id=form_instance_id,
            verdicts=verdicts,
            total=len(verdicts),
            matched=matched,
            mismatched=len(verdicts) - matched,
            resolved=resolved,
            created_discrepancy_ids=created,
            processing_time_ms=round(elapsed * 1000.0, 3),
        )
        result.provenance_hash = self._compute_provenance(
            form_instance_id,
            snapshot,
            [(v.field_id, v.first_value, v.matches) for v in verdicts],
        )

        with self._count_lock:
            self._comparison_count += 1
        inc_comparisons("mismatched" if result.mismatched else "matched")
        observe_duration("compare", elapsed)

        logger.info(
            "Comparison complete: form_instance=%s total=%d matched=%d "
            "mismatched=%d created=%d time_ms=%.1f",
            form_instance_id, result.total, result.matched,
            result.mismatched, len(created), result.processing_time_ms,
        )
        return result

    def _compute_provenance(
        self,
        form_instance_id: str,
        snapshot: Dict[str, Optional[str]],
        verdicts: Any,
    ) -> str:
        """SHA-256 over the compared inputs and per-field verdicts."""
        payload = {
            "operation": "compare",
            "form_instance_id": form_instance_id,
            "snapshot": snapshot,
            "verdicts": verdicts,
        }
        serialized = json.dumps(payload, sort_keys=True, default=str)
        return hashlib.sha256(serialized.encode("utf-8")).hexdigest()

    @property
    def comparison_count(self) -> int:
        """Comparisons run, including ones whose transaction rolled back."""
        return self._comparison_count
