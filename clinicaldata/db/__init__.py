"""
Database layer for the clinical data engines

Provides:
- SQLAlchemy declarative Base and Database (engine + sessions)
- ORM models for form instances, field values, discrepancies and audit
"""

from clinicaldata.db.base import Base, Database, build_engine
from clinicaldata.db.models_dde import (
    AuditLogRow,
    DiscrepancyRow,
    FieldEntryRow,
    FormInstanceRow,
)

__all__ = [
    "Base",
    "Database",
    "build_engine",
    "FormInstanceRow",
    "FieldEntryRow",
    "DiscrepancyRow",
    "AuditLogRow",
]
