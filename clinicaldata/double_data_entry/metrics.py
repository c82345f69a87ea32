# -*- coding: utf-8 -*-
"""
Prometheus Metrics - Double Data-Entry Reconciliation Engine

10 Prometheus metrics for double data-entry monitoring.

Metrics:
    1.  cd_dde_transitions_total (Counter, labels: from_status, to_status)
    2.  cd_dde_comparisons_total (Counter, labels: result)
    3.  cd_dde_discrepancies_detected_total (Counter)
    4.  cd_dde_resolutions_total (Counter, labels: strategy)
    5.  cd_dde_authorization_denials_total (Counter, labels: reason)
    6.  cd_dde_processing_errors_total (Counter, labels: error_type)
    7.  cd_dde_transactions_total (Counter, labels: state)
    8.  cd_dde_operation_duration_seconds (Histogram, labels: operation)
    9.  cd_dde_pending_second_entry (Gauge)
    10. cd_dde_pending_resolution (Gauge)

Author: Clinical Data Platform Team
Date: October 2026
Status: Production Ready
"""

from __future__ import annotations

import logging

from prometheus_client import Counter, Gauge, Histogram

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Metric definitions
# ---------------------------------------------------------------------------

# 1. Lifecycle transitions
dde_transitions_total = Counter(
    "cd_dde_transitions_total",
    "Total double data-entry lifecycle transitions",
    labelnames=["from_status", "to_status"],
)

# 2. Form-level comparisons by result
dde_comparisons_total = Counter(
    "cd_dde_comparisons_total",
    "Total first/second entry comparisons performed",
    labelnames=["result"],
)

# 3. Discrepancies created
dde_discrepancies_detected_total = Counter(
    "cd_dde_discrepancies_detected_total",
    "Total discrepancies detected between first and second entry",
)

# 4. Resolutions by strategy
dde_resolutions_total = Counter(
    "cd_dde_resolutions_total",
    "Total discrepancy resolutions applied",
    labelnames=["strategy"],
)

# 5. Entry authorization refusals
dde_authorization_denials_total = Counter(
    "cd_dde_authorization_denials_total",
    "Total entry authorization refusals",
    labelnames=["reason"],
)

# 6. Processing errors by error type
dde_processing_errors_total = Counter(
    "cd_dde_processing_errors_total",
    "Total processing errors encountered",
    labelnames=["error_type"],
)

# 7. Transactions by final state
dde_transactions_total = Counter(
    "cd_dde_transactions_total",
    "Total unit-of-work transactions by final state",
    labelnames=["state"],
)

# 8. Operation duration
dde_operation_duration_seconds = Histogram(
    "cd_dde_operation_duration_seconds",
    "Double data-entry operation duration in seconds",
    labelnames=["operation"],
    buckets=(
        0.001, 0.005, 0.01, 0.05, 0.1,
        0.5, 1.0, 5.0, 10.0,
    ),
)

# 9. Forms waiting for a second entry
dde_pending_second_entry = Gauge(
    "cd_dde_pending_second_entry",
    "Number of form instances awaiting second entry",
)

# 10. Forms waiting for discrepancy resolution
dde_pending_resolution = Gauge(
    "cd_dde_pending_resolution",
    "Number of form instances with open discrepancies",
)


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------


def inc_transitions(from_status: str, to_status: str) -> None:
    """Record a lifecycle transition.

    Args:
        from_status: Status before the transition.
        to_status: Status after the transition.
    """
    dde_transitions_total.labels(from_status=from_status, to_status=to_status).inc()


def inc_comparisons(result: str) -> None:
    """Record a comparison.

    Args:
        result: ``matched`` or ``mismatched``.
    """
    dde_comparisons_total.labels(result=result).inc()


def inc_discrepancies(count: int = 1) -> None:
    """Record created discrepancies.

    Args:
        count: Number of discrepancies created.
    """
    if count > 0:
        dde_discrepancies_detected_total.inc(count)


def inc_resolutions(strategy: str) -> None:
    """Record a discrepancy resolution.

    Args:
        strategy: Resolution strategy applied.
    """
    dde_resolutions_total.labels(strategy=strategy).inc()


def inc_authorization_denials(reason: str) -> None:
    """Record an entry authorization refusal.

    Args:
        reason: not_required, already_complete or same_entrant.
    """
    dde_authorization_denials_total.labels(reason=reason).inc()


def inc_errors(error_type: str) -> None:
    """Record a processing error event.

    Args:
        error_type: Error classification (storage, audit, lock_timeout,
            validation, unknown).
    """
    dde_processing_errors_total.labels(error_type=error_type).inc()


def inc_transactions(state: str) -> None:
    """Record a finished transaction.

    Args:
        state: committed, rolled_back or failed.
    """
    dde_transactions_total.labels(state=state).inc()


def observe_duration(operation: str, duration: float) -> None:
    """Record the duration of one operation.

    Args:
        operation: Operation name.
        duration: Duration in seconds.
    """
    dde_operation_duration_seconds.labels(operation=operation).observe(duration)


def set_pending_second_entry(count: int) -> None:
    """Set the pending second entry gauge."""
    dde_pending_second_entry.set(count)


def set_pending_resolution(count: int) -> None:
    """Set the pending resolution gauge."""
    dde_pending_resolution.set(count)


__all__ = [
    # Metric objects
    "dde_transitions_total",
    "dde_comparisons_total",
    "dde_discrepancies_detected_total",
    "dde_resolutions_total",
    "dde_authorization_denials_total",
    "dde_processing_errors_total",
    "dde_transactions_total",
    "dde_operation_duration_seconds",
    "dde_pending_second_entry",
    "dde_pending_resolution",
    # Helper functions
    "inc_transitions",
    "inc_comparisons",
    "inc_discrepancies",
    "inc_resolutions",
    "inc_authorization_denials",
    "inc_errors",
    "inc_transactions",
    "observe_duration",
    "set_pending_second_entry",
    "set_pending_resolution",
]
