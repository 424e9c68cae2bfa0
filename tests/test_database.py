"""
Unit tests for database models, repositories and monitoring.

Uses an in-memory SQLite database with SAVEPOINT support.
"""

import pytest
from datetime import date, datetime, timezone

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy.exc import IntegrityError

from conftest import make_mvr_payload
from database.connection import DatabaseSettings
from database.models import (
    MVRRecord,
    PermissiblePurpose,
    Subject,
    TrafficViolation,
    optional_str,
    parse_iso_date,
)
from database.monitoring import (
    check_health,
    configure_monitoring,
    get_db_metrics,
    get_pool_stats,
    get_slow_query_report,
    query_timer,
    reset_metrics,
    timed_query,
)
from database.repositories import DuplicateEntityError, MVRRepository, SubjectRepository

UPLOADED = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


def create_record(session, payload, company_id="ACME-INS", uploaded_at=UPLOADED):
    return MVRRepository(session).create_record(
        payload,
        company_id=company_id,
        permissible_purpose=PermissiblePurpose.UNDERWRITING,
        price_paid=10.0,
        redisclosure_authorization=True,
        storage_limitations=365,
        uploaded_at=uploaded_at,
        today=UPLOADED.date()
    )


# ============================================
# HELPERS
# ============================================

class TestHelpers:
    """Tests for payload coercion helpers."""

    def test_parse_iso_date(self):
        assert parse_iso_date("2024-06-01") == date(2024, 6, 1)
        assert parse_iso_date("2024-06-01T10:30:00Z") == date(2024, 6, 1)
        assert parse_iso_date(datetime(2024, 6, 1, 8, 0)) == date(2024, 6, 1)
        assert parse_iso_date("") is None
        assert parse_iso_date(None) is None

    def test_parse_iso_date_invalid(self):
        with pytest.raises(ValueError):
            parse_iso_date("06/01/2024")

    def test_optional_str(self):
        assert optional_str(75001) == "75001"
        assert optional_str("") is None
        assert optional_str(None) is None


# ============================================
# REPOSITORIES
# ============================================

class TestSubjectRepository:
    """Tests for SubjectRepository."""

    def test_create_and_lookup(self, provider):
        with provider.session_scope() as session:
            payload = make_mvr_payload()
            record = create_record(session, payload)
            subject = SubjectRepository(session).create(payload, record)
            subject_id = subject.id

        with provider.session_scope() as session:
            subject = SubjectRepository(session).get_by_license("D1234567", for_update=True)
            assert subject.id == subject_id
            assert subject.current_record.company_id == "ACME-INS"
            assert SubjectRepository(session).get_by_id(subject_id) is subject

    def test_duplicate_license(self, provider):
        payload = make_mvr_payload()
        with provider.session_scope() as session:
            SubjectRepository(session).create(payload, create_record(session, payload))

        with pytest.raises(DuplicateEntityError):
            with provider.session_scope() as session:
                SubjectRepository(session).create(payload, create_record(session, payload))

    def test_point_to_record(self, provider):
        payload = make_mvr_payload()
        with provider.session_scope() as session:
            subjects = SubjectRepository(session)
            subject = subjects.create(payload, create_record(session, payload))
            newer = create_record(session, payload, uploaded_at=datetime(2024, 8, 1, tzinfo=timezone.utc))

            subjects.point_to_record(subject, newer)

            assert subject.current_mvr_id == newer.id
            assert subject.current_record is newer


class TestMVRRepository:
    """Tests for MVRRepository."""

    def test_create_record_defaults(self, provider):
        payload = make_mvr_payload()
        del payload["order_date"]
        del payload["report_date"]

        with provider.session_scope() as session:
            record = create_record(session, payload)
            assert record.order_date == UPLOADED.date()
            assert record.effective_report_date == UPLOADED.date()
            assert record.redisclosure_authorization is True

    def test_children_ordered_newest_first(self, provider):
        payload = make_mvr_payload()
        with provider.session_scope() as session:
            repo = MVRRepository(session)
            record = create_record(session, payload)
            repo.add_violations(record, [
                {"violation_date": "2021-01-01"},
                {"violation_date": "2023-01-01"},
                {"violation_date": "2022-01-01"},
            ])
            record_id = record.id

        with provider.session_scope() as session:
            record = MVRRepository(session).get_by_id(record_id)
            assert [v.violation_date.year for v in record.violations] == [2023, 2022, 2021]

    def test_child_requires_date(self, provider):
        with pytest.raises(IntegrityError):
            with provider.session_scope() as session:
                record = create_record(session, make_mvr_payload())
                MVRRepository(session).add_accidents(record, [{"location": "Nowhere"}])

        with provider.session_scope() as session:
            assert session.query(MVRRecord).count() == 0

    def test_transaction_sets_seller(self, provider):
        with provider.session_scope() as session:
            repo = MVRRepository(session)
            record = create_record(session, make_mvr_payload())
            repo.add_transaction(record, seller_company_id="SELLER-CO", buyer_company_id="BUYER-CO")
            session.refresh(record)

            assert record.seller_company_id == "SELLER-CO"
            assert record.transaction.buyer_company_id == "BUYER-CO"

    def test_records_are_append_only(self, provider):
        """A later record for the same license does not replace the earlier row"""
        payload = make_mvr_payload()
        with provider.session_scope() as session:
            first = create_record(session, payload)
            second = create_record(session, payload, company_id="OTHER-CO",
                                   uploaded_at=datetime(2024, 9, 1, tzinfo=timezone.utc))
            expected = {first.id: "ACME-INS", second.id: "OTHER-CO"}

        with provider.session_scope() as session:
            records = session.query(MVRRecord).filter_by(drivers_license_number="D1234567").all()
            assert {record.id: record.company_id for record in records} == expected

    def test_savepoint_isolates_failure(self, provider):
        """A failed nested transaction leaves earlier work in the outer one intact"""
        with provider.session_scope() as session:
            kept = create_record(session, make_mvr_payload("D0000001"))
            with pytest.raises(IntegrityError):
                with session.begin_nested():
                    session.add(TrafficViolation(mvr_id=kept.id, violation_date=None))
                    session.flush()

        with provider.session_scope() as session:
            assert session.query(MVRRecord).count() == 1
            assert session.query(TrafficViolation).count() == 0
            assert session.query(Subject).count() == 0


# ============================================
# MONITORING
# ============================================

class TestMonitoring:
    """Tests for operation timing and health checks."""

    def setup_method(self):
        reset_metrics()

    def test_query_timer_records_success_and_error(self):
        with query_timer("unit_op"):
            pass
        with pytest.raises(RuntimeError):
            with query_timer("unit_op"):
                raise RuntimeError("boom")

        stats = get_db_metrics("unit_op")
        assert stats["count"] == 2
        assert stats["errors"] == 1

    def test_timed_query_decorator(self):
        @timed_query("decorated_op")
        def work(value):
            return value * 2

        assert work(21) == 42
        assert get_db_metrics("decorated_op")["count"] == 1

    def test_slow_query_report(self):
        configure_monitoring(slow_query_threshold_ms=-1.0, enable_prometheus=False)
        try:
            with query_timer("slow_op"):
                pass
            with query_timer("other_op"):
                pass

            report = get_slow_query_report()
            assert {entry["operation"] for entry in report} == {"slow_op", "other_op"}
            assert all(entry["slow_queries"] == 1 for entry in report)
        finally:
            configure_monitoring()

    def test_store_operations_are_timed(self, store):
        from database.record_store import IngestionRequest
        from conftest import make_ingestion_body

        store.ingest(IngestionRequest.from_body(make_ingestion_body()))

        assert get_db_metrics("ingest")["count"] == 1

    def test_pool_stats_static_pool(self, provider):
        assert get_pool_stats(provider.engine) == {"size": 0, "checked_out": 0, "overflow": 0}

    def test_check_health(self, provider):
        status = check_health(provider.engine, provider.session_factory)

        assert status.healthy is True
        assert status.to_dict()["error"] is None
        assert provider.health_check() is True


class TestDatabaseSettings:
    """Tests for environment-driven settings."""

    def test_database_url_wins(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite:///tmp.db")
        assert DatabaseSettings.from_env().get_url() == "sqlite:///tmp.db"

    def test_components(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.setenv("DB_HOST", "db.internal")
        monkeypatch.setenv("DB_NAME", "mvr")
        url = DatabaseSettings.from_env().get_url()
        assert url.startswith("postgresql")
        assert "db.internal" in url
        assert url.endswith("/mvr")
