# -*- coding: utf-8 -*-
"""Pytest configuration and shared fixtures for the double data-entry tests."""

from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple

import pytest

from clinicaldata.db.base import Database
from clinicaldata.double_data_entry.audit_trail import AuditTrail
from clinicaldata.double_data_entry.comparison_engine import ComparisonEngine
from clinicaldata.double_data_entry.config import DoubleDataEntryConfig, reset_config
from clinicaldata.double_data_entry.discrepancy_manager import DiscrepancyManager
from clinicaldata.double_data_entry.provenance import ProvenanceTracker
from clinicaldata.double_data_entry.repository import SqlAlchemyFormInstanceStore
from clinicaldata.double_data_entry.setup import DoubleDataEntryService
from clinicaldata.double_data_entry.transaction import TransactionManager


class FrozenClock:
    """Deterministic clock; advances only when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 10, 1, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def _reset_config_singleton():
    """Keep the process configuration singleton isolated per test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def config():
    return DoubleDataEntryConfig(
        database_url="sqlite://",
        lock_timeout_seconds=5.0,
        dashboard_limit=50,
    )


@pytest.fixture
def database():
    db = Database("sqlite://")
    db.init_db()
    yield db
    db.dispose()


@pytest.fixture
def service(config, database, clock):
    svc = DoubleDataEntryService(config, database=database, clock=clock)
    svc.startup()
    yield svc
    svc.shutdown()


@pytest.fixture
def transactions(database):
    return TransactionManager(database, lock_timeout=5.0)


@pytest.fixture
def audit_trail(clock):
    return AuditTrail(ProvenanceTracker(), clock=clock)


@pytest.fixture
def discrepancy_manager(audit_trail, clock):
    return DiscrepancyManager(audit_trail, clock=clock)


@pytest.fixture
def comparison_engine(discrepancy_manager):
    return ComparisonEngine(discrepancy_manager)


@pytest.fixture
def seed_form(database):
    """Factory inserting a form instance with first-entry values.

    Returns ``(form_instance_id, {item_name: field_id})``.
    """
    counter = {"n": 0}

    def _seed(
        values: Dict[str, Optional[str]],
        form_instance_id: Optional[str] = None,
        double_entry_required: bool = True,
        site_id: Optional[str] = "site-01",
    ) -> Tuple[str, Dict[str, str]]:
        counter["n"] += 1
        form_id = form_instance_id or f"ecrf-{counter['n']:03d}"
        field_ids: Dict[str, str] = {}
        with database.session_scope() as session:
            store = SqlAlchemyFormInstanceStore(session)
            store.create_form_instance(
                form_instance_id=form_id,
                double_entry_required=double_entry_required,
                site_id=site_id,
                subject_label=f"SUBJ-{counter['n']:03d}",
                form_name="Vital Signs",
                event_name="Baseline",
            )
            for item_name, value in values.items():
                entry = store.add_field_value(
                    form_id, item_name, value, field_id=f"{form_id}-{item_name}",
                )
                field_ids[item_name] = entry.field_id
        return form_id, field_ids

    return _seed
