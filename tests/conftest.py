"""
Shared fixtures for the MVR Exchange test suite.

Every test gets its own in-memory SQLite database, an in-memory audit sink
and a fixed clock so that window and freshness boundaries are exact.
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from audit.emitter import AuditDispatcher, AuditEventEmitter, InMemoryAuditSink
from config_manager import ConfigManager, IngestionConfig
from database.connection import create_test_provider
from database.record_store import RecordStore
from security_logger import reset_security_logger


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


START = datetime(2024, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


def make_mvr_payload(drivers_license_number: str = "D1234567", **overrides) -> Dict[str, Any]:
    """A complete MVR payload with one item of each child kind."""
    payload = {
        "drivers_license_number": drivers_license_number,
        "full_legal_name": "Sample Jane Sample Doe",
        "birthdate": "1985-04-12",
        "weight": "140",
        "sex": "F",
        "height": "5'6\"",
        "hair_color": "Brown",
        "eye_color": "Green",
        "medical_information": "None",
        "address": "100 Sample Street",
        "city": "Sample City",
        "issued_state_code": "TX",
        "zip": 75001,
        "phone_number": 5551234567,
        "email": "jane.doe@example.com",
        "claim_number": "CLM-0001",
        "order_id": "ORD-0001",
        "order_date": "2024-06-01",
        "report_date": "2024-06-02",
        "reference_number": "REF-0001",
        "system_use": "Insurance Review",
        "mvr_type": "Standard",
        "state_code": "TX",
        "purpose": "Rate Determination",
        "time_frame": "3 Years",
        "is_certified": True,
        "total_points": 3,
        "license_class": "Class C",
        "issue_date": "2019-03-01",
        "expiration_date": "2027-03-01",
        "status": "Valid",
        "restrictions": "None",
        "violations": [{
            "violation_date": "2023-05-10",
            "conviction_date": "2023-06-20",
            "location": "Sample City, TX",
            "points_assessed": 3,
            "violation_code": "22349A",
            "description": "Speeding 1-15 mph over limit",
        }],
        "withdrawals": [{
            "effective_date": "2022-01-15",
            "eligibility_date": "2022-07-15",
            "action_type": "Suspension",
            "reason": "Failure to Pay Fines",
        }],
        "accidents": [{
            "accident_date": "2021-11-02",
            "location": "Sample Road, TX",
            "acd_code": "A23",
            "description": "Side-swipe collision",
        }],
        "crimes": [],
    }
    payload.update(overrides)
    return payload


def make_ingestion_body(payload: Dict[str, Any] = None, **overrides) -> Dict[str, Any]:
    body = {
        "company_id": "ACME-INS",
        "permissible_purpose": "UNDERWRITING",
        "price_paid": 12.5,
        "redisclosure_authorization": True,
        "storage_limitations": 365,
        "mvr": payload if payload is not None else make_mvr_payload(),
    }
    body.update(overrides)
    return body


@pytest.fixture
def clock():
    return FixedClock(START)


@pytest.fixture
def provider():
    provider = create_test_provider()
    yield provider
    provider.close()


@pytest.fixture
def audit_sink():
    return InMemoryAuditSink()


@pytest.fixture
def dispatcher(audit_sink, clock):
    dispatcher = AuditDispatcher(
        AuditEventEmitter(audit_sink, function_name="test-suite", clock=clock),
        max_workers=1,
        timeout_seconds=5.0
    )
    yield dispatcher
    dispatcher.close()


@pytest.fixture
def ingestion_config():
    return IngestionConfig()


@pytest.fixture
def store(provider, dispatcher, ingestion_config, clock):
    return RecordStore(provider, dispatcher, ingestion_config, clock)


@pytest.fixture
def config(tmp_path):
    """Configuration with defaults and an in-memory audit sink."""
    ConfigManager.reset_instance()
    config = ConfigManager(str(tmp_path / "missing.yaml"))
    config.audit.sink = "memory"
    yield config
    ConfigManager.reset_instance()


@pytest.fixture(autouse=True)
def _fresh_security_logger():
    reset_security_logger()
    yield
    reset_security_logger()
