# -*- coding: utf-8 -*-
"""
Dashboard Aggregator - Double Data-Entry Reconciliation Engine

Read-only work queues and counts for data managers:

- pending_second_entry: double-entry forms whose first entry is complete,
  oldest first entry first
- pending_resolution: forms with a submitted second entry and open
  discrepancies, oldest second entry first
- status_counts: number of form instances per lifecycle status
- get_dashboard: both queues plus headline stats

Every row carries how long it has been waiting. Lists are capped at the
configured dashboard limit. The pending gauges are refreshed on every
queue query without a site filter.

Example:
    >>> dashboard = DashboardAggregator(transactions, default_limit=50)
    >>> queue = dashboard.pending_second_entry(site_id="site-01")
    >>> [row.days_waiting for row in queue]
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from clinicaldata.double_data_entry.metrics import (
    set_pending_resolution,
    set_pending_second_entry,
)
from clinicaldata.double_data_entry.models import (
    DashboardStats,
    DashboardView,
    EntryStatus,
    FormInstance,
    FormInstanceSummary,
)
from clinicaldata.double_data_entry.stores import DiscrepancyStore
from clinicaldata.double_data_entry.transaction import TransactionManager

logger = logging.getLogger(__name__)

__all__ = ["DashboardAggregator"]

_SECONDS_PER_DAY = 86400


def _utcnow() -> datetime:
    """Return current UTC datetime with microseconds zeroed."""
    return datetime.now(timezone.utc).replace(microsecond=0)


class DashboardAggregator:
    """Read-only queues and counts over form instances.

    Attributes:
        transactions: Provides read-only units of work.
        default_limit: Maximum rows per queue when no limit is given.
        clock: Reference time for waiting durations.
    """

    def __init__(
        self,
        transactions: TransactionManager,
        default_limit: int = 50,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.transactions = transactions
        self.default_limit = default_limit
        self.clock = clock

    def _resolve_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.default_limit
        if limit < 0:
            raise ValueError(f"limit must be >= 0, got {limit}")
        return limit

    def _summarize(
        self,
        form: FormInstance,
        waiting_since: Optional[datetime],
        now: datetime,
        discrepancies: Optional[DiscrepancyStore] = None,
    ) -> FormInstanceSummary:
        wait_seconds = 0.0
        if waiting_since is not None:
            wait_seconds = max((now - waiting_since).total_seconds(), 0.0)
        open_count = 0
        if discrepancies is not None:
            open_count = discrepancies.count_open_for_form_instance(form.form_instance_id)
        return FormInstanceSummary(
            form_instance_id=form.form_instance_id,
            status=form.status,
            site_id=form.site_id,
            subject_label=form.subject_label,
            form_name=form.form_name,
            event_name=form.event_name,
            first_entrant_id=form.first_entrant_id,
            second_entrant_id=form.second_entrant_id,
            waiting_since=waiting_since,
            wait_seconds=wait_seconds,
            days_waiting=int(wait_seconds // _SECONDS_PER_DAY),
            open_discrepancies=open_count,
        )

    def pending_second_entry(
        self, site_id: Optional[str] = None, limit: Optional[int] = None,
    ) -> List[FormInstanceSummary]:
        """Double-entry forms awaiting an independent second entry."""
        row_limit = self._resolve_limit(limit)
        now = self.clock()
        with self.transactions.transaction("pending_second_entry", readonly=True) as uow:
            forms = uow.forms.list_form_instances(
                [EntryStatus.FIRST_ENTRY_COMPLETE],
                site_id=site_id,
                double_entry_only=True,
                order_by="first_entry_at",
                limit=row_limit,
            )
            rows = [self._summarize(f, f.first_entry_at, now) for f in forms]
            if site_id is None:
                counts = uow.forms.count_by_status(double_entry_only=True)
                set_pending_second_entry(counts[EntryStatus.FIRST_ENTRY_COMPLETE])
        logger.debug("pending_second_entry: %d rows (site=%s)", len(rows), site_id)
        return rows

    def pending_resolution(
        self, site_id: Optional[str] = None, limit: Optional[int] = None,
    ) -> List[FormInstanceSummary]:
        """Forms with open discrepancies awaiting resolution."""
        row_limit = self._resolve_limit(limit)
        now = self.clock()
        with self.transactions.transaction("pending_resolution", readonly=True) as uow:
            forms = uow.forms.list_form_instances(
                [EntryStatus.SECOND_ENTRY_IN_PROGRESS],
                site_id=site_id,
                open_discrepancies_only=True,
                order_by="second_entry_at",
                limit=row_limit,
            )
            rows = [
                self._summarize(f, f.second_entry_at, now, uow.discrepancies)
                for f in forms
            ]
            if site_id is None and len(rows) < row_limit:
                set_pending_resolution(len(rows))
        logger.debug("pending_resolution: %d rows (site=%s)", len(rows), site_id)
        return rows

    def status_counts(
        self, site_id: Optional[str] = None, double_entry_only: bool = False,
    ) -> Dict[EntryStatus, int]:
        """Number of form instances per lifecycle status (every status present)."""
        with self.transactions.transaction("status_counts", readonly=True) as uow:
            return uow.forms.count_by_status(
                site_id=site_id, double_entry_only=double_entry_only,
            )

    def get_dashboard(self, site_id: Optional[str] = None) -> DashboardView:
        """Both queues plus headline stats over double-entry forms."""
        counts = self.status_counts(site_id=site_id, double_entry_only=True)
        stats = DashboardStats(
            total=sum(counts.values()),
            pending=counts[EntryStatus.FIRST_ENTRY_COMPLETE],
            discrepancies=counts[EntryStatus.SECOND_ENTRY_IN_PROGRESS],
            complete=counts[EntryStatus.RECONCILED],
        )
        return DashboardView(
            pending_second_entry=self.pending_second_entry(site_id=site_id),
            pending_resolution=self.pending_resolution(site_id=site_id),
            stats=stats,
            generated_at=self.clock(),
        )
