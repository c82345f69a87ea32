# -*- coding: utf-8 -*-
"""
CD-DDE: Double Data-Entry Reconciliation Engine
===============================================

Independent two-person transcription of clinical case report forms. It
supports:

- Entry authorization: decides whether a user may enter data on a form
  instance and whether it counts as the first or the second entry; a
  second entrant must differ from the first
- Field-by-field comparison of the first entry against the second-entry
  snapshot with whitespace- and case-insensitive matching
- Discrepancy records for every mismatching field, resolved exactly once
  with first_correct, second_correct, new_value or adjudicated
- Five-state completion lifecycle with per-form-instance serialization,
  atomic transitions and automatic reconciliation when both entries agree
- Work-queue dashboard (pending second entry, pending resolution, status
  counts) with waiting durations
- Append-only audit trail with a SHA-256 provenance chain per form instance
- Prometheus metrics for observability

Key Components:
    - config: DoubleDataEntryConfig with CD_DDE_ env prefix
    - entry_gate: Entry authorization rules
    - comparison_engine: Field-level comparison
    - discrepancy_manager: Discrepancy creation and resolution
    - lifecycle_controller: Status transitions
    - dashboard: Work queues and counts
    - audit_trail / provenance: Chain-hashed audit records
    - repository: SQLAlchemy stores
    - transaction / locking: Scoped units of work under keyed locks
    - metrics: Prometheus metrics
    - setup: Service facade

Example:
    >>> from clinicaldata.double_data_entry import DoubleDataEntryService
    >>> service = DoubleDataEntryService()
    >>> service.startup()
    >>> service.mark_first_entry_complete("ecrf-001", "user-1")
    >>> outcome = service.submit_second_entry("ecrf-001", "user-2", {"f1": "120"})
    >>> print(outcome.status)

Author: Clinical Data Platform Team
Date: October 2026
Status: Production Ready
"""

SERVICE_ID = "CD-DDE-001"
SERVICE_NAME = "Double Data-Entry Reconciliation Engine"
SERVICE_VERSION = "1.0.0"

__version__ = SERVICE_VERSION

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
from clinicaldata.double_data_entry.config import (
    DoubleDataEntryConfig,
    get_config,
    reset_config,
    set_config,
)

# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------
from clinicaldata.double_data_entry.models import (
    AuditRecord,
    AuthorizationDecision,
    ComparisonResult,
    ComparisonStatus,
    DashboardStats,
    DashboardView,
    DDEStatusView,
    DiscrepancyRecord,
    DiscrepancyStatus,
    EntryPhaseStatus,
    EntryStatus,
    EntryType,
    FieldEntry,
    FieldVerdict,
    FormInstance,
    FormInstanceSummary,
    ResolutionStrategy,
    SecondEntryOutcome,
)

# ---------------------------------------------------------------------------
# Engines
# ---------------------------------------------------------------------------
from clinicaldata.double_data_entry.normalization import normalize_value, values_match
from clinicaldata.double_data_entry.provenance import ProvenanceTracker
from clinicaldata.double_data_entry.audit_trail import AuditTrail
from clinicaldata.double_data_entry.entry_gate import EntryAuthorizationGate
from clinicaldata.double_data_entry.discrepancy_manager import DiscrepancyManager
from clinicaldata.double_data_entry.comparison_engine import ComparisonEngine
from clinicaldata.double_data_entry.locking import KeyedLockRegistry
from clinicaldata.double_data_entry.transaction import TransactionManager, UnitOfWork
from clinicaldata.double_data_entry.lifecycle_controller import LifecycleController
from clinicaldata.double_data_entry.dashboard import DashboardAggregator

# ---------------------------------------------------------------------------
# Service facade
# ---------------------------------------------------------------------------
from clinicaldata.double_data_entry.setup import DoubleDataEntryService

__all__ = [
    # Metadata
    "SERVICE_ID",
    "SERVICE_NAME",
    "SERVICE_VERSION",
    # Configuration
    "DoubleDataEntryConfig",
    "get_config",
    "set_config",
    "reset_config",
    # Models
    "AuditRecord",
    "AuthorizationDecision",
    "ComparisonResult",
    "ComparisonStatus",
    "DashboardStats",
    "DashboardView",
    "DDEStatusView",
    "DiscrepancyRecord",
    "DiscrepancyStatus",
    "EntryPhaseStatus",
    "EntryStatus",
    "EntryType",
    "FieldEntry",
    "FieldVerdict",
    "FormInstance",
    "FormInstanceSummary",
    "ResolutionStrategy",
    "SecondEntryOutcome",
    # Engines
    "normalize_value",
    "values_match",
    "ProvenanceTracker",
    "AuditTrail",
    "EntryAuthorizationGate",
    "DiscrepancyManager",
    "ComparisonEngine",
    "KeyedLockRegistry",
    "TransactionManager",
    "UnitOfWork",
    "LifecycleController",
    "DashboardAggregator",
    # Service
    "DoubleDataEntryService",
]
