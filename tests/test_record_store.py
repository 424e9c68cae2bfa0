"""
Record Store Tests

Covers single and batch ingestion (dedup window, cascade atomicity,
conflict retry), retrieval (freshness, not-found branches, consent) and the
audit events each workflow hands to the dispatcher.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from audit.events import BatchSummaryEvent, FailureEvent, ReadEvent, WriteEvent
from conftest import make_ingestion_body, make_mvr_payload
from database.models import MVRRecord, Subject, Transaction, UpsertOutcome
from database.record_store import (
    BatchIngestionError,
    BatchIngestionRequest,
    IngestionRequest,
    PersistenceError,
    RecordStore,
    RetrievalRequest,
)
from database.repositories import DuplicateEntityError, EntityNotFoundError, MVRRepository, SubjectRepository
from validation import InputValidationError


def ingest(store, payload=None, **overrides):
    return store.ingest(IngestionRequest.from_body(make_ingestion_body(payload, **overrides)))


def retrieval(drivers_license_number="D1234567", **overrides):
    body = {
        "drivers_license_number": drivers_license_number,
        "company_id": "BUYER-CO",
        "permissible_purpose": "EMPLOYMENT",
        "days": 30,
        "consent": True,
        "user_id": "analyst-7",
    }
    body.update(overrides)
    return RetrievalRequest.from_body(body)


def count_rows(provider, model):
    with provider.session_scope() as session:
        return session.query(model).count()


# ============================================
# SINGLE INGESTION
# ============================================

class TestIngest:
    """Tests for RecordStore.ingest"""

    def test_first_submission_creates_subject_and_record(self, store, provider, audit_sink):
        """First ingestion for a license is NEW and points the subject at the record"""
        result = ingest(store)

        assert result.outcome == UpsertOutcome.NEW
        assert result.message == "New subject and MVR created successfully"
        assert result.created is True

        with provider.session_scope() as session:
            subject = SubjectRepository(session).get_by_license("D1234567")
            assert subject is not None
            assert subject.current_mvr_id == result.mvr_id
            assert subject.zip == "75001"
            assert subject.phone_number == "5551234567"

        events = audit_sink.events()
        assert len(events) == 1
        assert isinstance(events[0], WriteEvent)
        assert events[0].operation == "CREATE"
        assert events[0].affected_records_count == 1
        assert events[0].creator.company_id == "ACME-INS"
        assert events[0].creator.permissible_purpose == "UNDERWRITING"

    def test_license_number_is_trimmed(self, store, provider):
        """Surrounding whitespace is removed before lookup and storage"""
        result = ingest(store, make_mvr_payload("  D7654321  "))

        assert result.drivers_license_number == "D7654321"
        with provider.session_scope() as session:
            assert SubjectRepository(session).get_by_license("D7654321") is not None

    def test_resubmission_within_window_is_skipped(self, store, provider, audit_sink, clock):
        """A second submission within 30 days stores nothing"""
        first = ingest(store)
        clock.advance(days=10)
        audit_sink.clear()

        second = ingest(store, make_mvr_payload(total_points=9))

        assert second.outcome == UpsertOutcome.SKIPPED
        assert second.message == "MVR uploaded less than 30 days ago"
        assert second.mvr_id == first.mvr_id
        assert count_rows(provider, MVRRecord) == 1

        events = audit_sink.events()
        assert len(events) == 1
        assert events[0].operation == "DUPLICATE_ATTEMPT"
        assert events[0].affected_records_count == 0
        assert events[0].outcome == "SKIPPED"

    def test_window_boundary_is_inclusive(self, store, clock):
        """A record exactly 30 days old still suppresses"""
        ingest(store)
        clock.advance(days=30)

        assert ingest(store).outcome == UpsertOutcome.SKIPPED

    def test_resubmission_after_window_updates(self, store, provider, audit_sink, clock):
        """After the window a new record is stored and becomes current"""
        first = ingest(store)
        clock.advance(days=30, seconds=1)
        audit_sink.clear()

        second = ingest(store, make_mvr_payload(total_points=7))

        assert second.outcome == UpsertOutcome.UPDATED
        assert second.message == "Subject MVR updated successfully"
        assert second.subject_id == first.subject_id
        assert second.mvr_id != first.mvr_id

        with provider.session_scope() as session:
            subject = SubjectRepository(session).get_by_license("D1234567")
            assert subject.current_mvr_id == second.mvr_id
            history = session.query(MVRRecord).filter_by(drivers_license_number="D1234567").order_by(MVRRecord.id)
            assert [record.id for record in history] == [first.mvr_id, second.mvr_id]

        assert [event.operation for event in audit_sink.events()] == ["UPDATE"]

    def test_custom_window(self, provider, dispatcher, ingestion_config, clock):
        """The window length comes from the ingestion config"""
        ingestion_config.dedup_window_days = 5
        store = RecordStore(provider, dispatcher, ingestion_config, clock)
        ingest(store)
        clock.advance(days=6)

        assert ingest(store).outcome == UpsertOutcome.UPDATED

    def test_defaults_applied(self, store, provider):
        """Missing dates, certification, points and retention take defaults"""
        payload = make_mvr_payload()
        for name in ("order_date", "report_date", "is_certified", "total_points"):
            del payload[name]

        result = ingest(store, payload, storage_limitations=None)

        with provider.session_scope() as session:
            record = MVRRepository(session).get_by_id(result.mvr_id)
            assert record.order_date.isoformat() == "2024-06-15"
            assert record.report_date.isoformat() == "2024-06-15"
            assert record.is_certified is False
            assert record.total_points == 0
            assert record.storage_limitations == 1825

    def test_negative_storage_limitation_uses_default(self, store, provider):
        result = ingest(store, storage_limitations=-1)

        with provider.session_scope() as session:
            assert MVRRepository(session).get_by_id(result.mvr_id).storage_limitations == 1825

    def test_no_license_fields_means_no_license_info(self, store, provider):
        """License details are only stored when at least one is given"""
        payload = make_mvr_payload()
        for name in ("license_class", "issue_date", "expiration_date", "status", "restrictions"):
            del payload[name]

        result = ingest(store, payload)

        with provider.session_scope() as session:
            assert MVRRepository(session).get_by_id(result.mvr_id).license_info is None

    def test_children_are_stored(self, store, provider):
        result = ingest(store)

        with provider.session_scope() as session:
            record = MVRRepository(session).get_by_id(result.mvr_id)
            assert len(record.violations) == 1
            assert len(record.withdrawals) == 1
            assert len(record.accidents) == 1
            assert record.crimes == []
            assert record.license_info.license_class == "Class C"

    def test_transaction_recorded(self, store, provider):
        """A transaction block links the record to seller and buyer"""
        payload = make_mvr_payload(transaction={"seller_id": "SELLER-CO", "buyer_id": 42})

        result = ingest(store, payload)

        with provider.session_scope() as session:
            record = MVRRepository(session).get_by_id(result.mvr_id)
            assert record.transaction.seller_company_id == "SELLER-CO"
            assert record.transaction.buyer_company_id == "42"
            assert record.transaction.state_code == "TX"
            assert record.seller_company_id == "SELLER-CO"

    def test_no_transaction_block(self, store, provider):
        """Without a transaction block the uploader is the seller"""
        result = ingest(store)

        assert count_rows(provider, Transaction) == 0
        with provider.session_scope() as session:
            assert MVRRepository(session).get_by_id(result.mvr_id).seller_company_id == "ACME-INS"


# ============================================
# ATOMICITY AND FAILURES
# ============================================

class TestIngestFailures:
    """Failed ingestions store nothing and emit a FAILURE event"""

    def test_child_failure_rolls_back_everything(self, store, provider, audit_sink):
        """A violation without its date aborts the whole ingestion"""
        payload = make_mvr_payload(violations=[{"location": "Nowhere", "points_assessed": 2}])

        with pytest.raises(PersistenceError):
            ingest(store, payload)

        assert count_rows(provider, Subject) == 0
        assert count_rows(provider, MVRRecord) == 0

        events = audit_sink.events()
        assert len(events) == 1
        assert isinstance(events[0], FailureEvent)
        assert events[0].operation == "ADD_MVR"
        assert events[0].operation_category == "WRITE"
        assert events[0].success is False
        assert events[0].drivers_license_number == "D1234567"

    @pytest.mark.parametrize("overrides", [
        {"violations": ["not-an-object"]},
        {"crimes": [None]},
        {"accidents": {"location": "Nowhere"}},
    ])
    def test_malformed_child_entries_fail(self, store, provider, audit_sink, overrides):
        with pytest.raises(PersistenceError):
            ingest(store, make_mvr_payload(**overrides))

        assert count_rows(provider, MVRRecord) == 0
        assert [event.kind for event in audit_sink.events()] == ["FAILURE"]

    def test_invalid_date_fails(self, store, provider):
        with pytest.raises(PersistenceError):
            ingest(store, make_mvr_payload(order_date="2024-13-45"))

        assert count_rows(provider, MVRRecord) == 0

    def test_failure_on_update_keeps_previous_record_current(self, store, provider, clock):
        """A failed re-ingestion leaves the earlier record current"""
        first = ingest(store)
        clock.advance(days=45)

        with pytest.raises(PersistenceError):
            ingest(store, make_mvr_payload(accidents=[{"location": "Nowhere"}]))

        with provider.session_scope() as session:
            subject = SubjectRepository(session).get_by_license("D1234567")
            assert subject.current_mvr_id == first.mvr_id
        assert count_rows(provider, MVRRecord) == 1

    def test_lost_first_insert_race_is_retried(self, store, monkeypatch):
        """A duplicate-subject conflict retries the unit of work once"""
        original = SubjectRepository.create
        calls = []

        def flaky_create(self, payload, record):
            calls.append(payload["drivers_license_number"])
            if len(calls) == 1:
                raise DuplicateEntityError("Subject already exists")
            return original(self, payload, record)

        monkeypatch.setattr(SubjectRepository, "create", flaky_create)

        result = ingest(store)

        assert result.outcome == UpsertOutcome.NEW
        assert len(calls) == 2

    def test_persistent_conflict_fails(self, store, provider, monkeypatch):
        def always_conflicts(self, payload, record):
            raise DuplicateEntityError("Subject already exists")

        monkeypatch.setattr(SubjectRepository, "create", always_conflicts)

        with pytest.raises(PersistenceError):
            ingest(store)
        assert count_rows(provider, MVRRecord) == 0

    def test_audit_failure_does_not_change_result(self, provider, clock):
        """A broken sink is logged and the ingestion still succeeds"""
        from audit.emitter import AuditDispatcher, AuditEventEmitter, AuditSink

        class BrokenSink(AuditSink):
            def write(self, line):
                raise OSError("disk full")

        dispatcher = AuditDispatcher(AuditEventEmitter(BrokenSink(), clock=clock), max_workers=1)
        try:
            store = RecordStore(provider, dispatcher, clock=clock)
            result = ingest(store)
        finally:
            dispatcher.close()

        assert result.outcome == UpsertOutcome.NEW
        assert count_rows(provider, MVRRecord) == 1

    def test_store_without_dispatcher(self, provider, clock):
        store = RecordStore(provider, clock=clock)

        assert ingest(store).outcome == UpsertOutcome.NEW


# ============================================
# BATCH INGESTION
# ============================================

class TestIngestBatch:
    """Tests for RecordStore.ingest_batch"""

    def batch(self, payloads):
        return BatchIngestionRequest(
            company_id="ACME-INS",
            permissible_purpose="INSURANCE",
            payloads=payloads,
            storage_limitations=365
        )

    def test_batch_commits_all(self, store, provider, audit_sink):
        payloads = [make_mvr_payload("D0000001"), make_mvr_payload("D0000002")]

        result = store.ingest_batch(self.batch(payloads))

        assert result.committed is True
        assert result.summary() == {
            "total": 2,
            "successful": 2,
            "new_records": 2,
            "updated_records": 0,
            "skipped_records": 0,
            "failed_records": 0,
        }
        assert count_rows(provider, Subject) == 2

        events = audit_sink.events()
        assert [event.kind for event in events] == ["WRITE", "WRITE", "BATCH_SUMMARY"]
        assert events[-1].success is True
        assert events[-1].total_records == 2

    def test_same_license_twice_in_batch(self, store, provider):
        """The second payload for a license is suppressed by the first"""
        payloads = [make_mvr_payload("D0000001"), make_mvr_payload("D0000001")]

        result = store.ingest_batch(self.batch(payloads))

        assert [item.outcome for item in result.items] == [UpsertOutcome.NEW, UpsertOutcome.SKIPPED]
        assert count_rows(provider, MVRRecord) == 1

    def test_any_failure_rolls_back_batch(self, store, provider, audit_sink):
        """One bad element leaves nothing stored and reports every index"""
        payloads = [
            make_mvr_payload("D0000001"),
            make_mvr_payload("D0000002", crimes=[{"offense_code": "316.193"}]),
            make_mvr_payload("D0000003"),
        ]

        with pytest.raises(BatchIngestionError) as exc_info:
            store.ingest_batch(self.batch(payloads))

        result = exc_info.value.result
        assert result.committed is False
        assert [item.outcome for item in result.items] == [
            UpsertOutcome.NEW, UpsertOutcome.FAILED, UpsertOutcome.NEW
        ]
        assert result.items[1].message.startswith("Error processing MVR at index 1")
        assert count_rows(provider, Subject) == 0
        assert count_rows(provider, MVRRecord) == 0

        events = audit_sink.events()
        assert len(events) == 1
        assert isinstance(events[0], BatchSummaryEvent)
        assert events[0].success is False
        assert events[0].failed_records == 1

    def test_malformed_child_entry_reports_index(self, store, provider, audit_sink):
        payloads = [make_mvr_payload("D0000001"), make_mvr_payload("D0000002", crimes=[None])]

        with pytest.raises(BatchIngestionError) as exc_info:
            store.ingest_batch(self.batch(payloads))

        result = exc_info.value.result
        assert [item.outcome for item in result.items] == [UpsertOutcome.NEW, UpsertOutcome.FAILED]
        assert result.items[1].message.startswith("Error processing MVR at index 1")
        assert count_rows(provider, MVRRecord) == 0
        assert [event.kind for event in audit_sink.events()] == ["BATCH_SUMMARY"]

    def test_batch_result_dict(self, store):
        result = store.ingest_batch(self.batch([make_mvr_payload("D0000009")]))

        data = result.to_dict()
        assert data["committed"] is True
        assert data["results"][0]["index"] == 0
        assert data["results"][0]["outcome"] == "NEW"


# ============================================
# RETRIEVAL
# ============================================

class TestRetrieve:
    """Tests for RecordStore.retrieve"""

    def test_returns_current_aggregate(self, store, audit_sink):
        ingest(store, make_mvr_payload(violations=[
            {"violation_date": "2022-01-01", "points_assessed": 1},
            {"violation_date": "2023-09-01", "points_assessed": 2},
        ]))
        audit_sink.clear()

        aggregate = store.retrieve(retrieval())

        data = aggregate.to_dict()
        assert data["subject"]["drivers_license_number"] == "D1234567"
        assert data["mvr"]["report_date"] == "2024-06-02"
        assert data["mvr"]["permissible_purpose"] == "UNDERWRITING"
        assert data["license_info"]["status"] == "Valid"
        assert [v["violation_date"] for v in data["violations"]] == ["2023-09-01", "2022-01-01"]
        assert data["seller_company_id"] == "ACME-INS"
        assert data["transaction"] is None

    def test_read_event_carries_accessor_and_seller(self, store, audit_sink):
        ingest(store, make_mvr_payload(transaction={"seller_id": "SELLER-CO"}))
        audit_sink.clear()

        store.retrieve(retrieval())

        events = audit_sink.events()
        assert len(events) == 1
        event = events[0]
        assert isinstance(event, ReadEvent)
        assert event.operation == "GET_MVR"
        assert event.accessor.company_id == "BUYER-CO"
        assert event.accessor.user_id == "analyst-7"
        assert event.accessor.permissible_purpose == "EMPLOYMENT"
        assert event.seller.company_id == "SELLER-CO"
        assert event.days_requested == 30

    def test_unknown_license(self, store, audit_sink):
        with pytest.raises(EntityNotFoundError, match="No subject found with this driver's license number"):
            store.retrieve(retrieval("D9999999"))

        events = audit_sink.events()
        assert len(events) == 1
        assert isinstance(events[0], FailureEvent)
        assert events[0].operation == "GET_MVR"
        assert events[0].operation_category == "READ"

    def test_freshness_boundary_is_inclusive(self, store):
        """Report dated 2024-06-02 is 13 days old on 2024-06-15"""
        ingest(store)

        assert store.retrieve(retrieval(days=13)).mvr["id"] is not None
        with pytest.raises(EntityNotFoundError, match="No MVR found within the last 12 days"):
            store.retrieve(retrieval(days=12))

    def test_window_beyond_calendar_admits_any_record(self, store, audit_sink):
        """A window reaching past the earliest date is treated as unbounded"""
        ingest(store, make_mvr_payload(report_date="1990-01-01"))
        audit_sink.clear()

        aggregate = store.retrieve(retrieval(days=1_000_000))

        assert aggregate.mvr["report_date"] == "1990-01-01"
        assert [event.kind for event in audit_sink.events()] == ["READ"]

    def test_missing_report_date_defaults_to_upload_day(self, store):
        payload = make_mvr_payload(order_date="2024-06-10", report_date=None)
        ingest(store, payload)

        # report_date defaults to the upload date when missing
        assert store.retrieve(retrieval(days=0)).mvr["report_date"] == "2024-06-15"

    def test_consent_required(self, store):
        ingest(store)

        with pytest.raises(InputValidationError, match="Consent is required and must be true"):
            store.retrieve(retrieval(consent=False))

    def test_retrieval_after_update_returns_newest(self, store, clock):
        ingest(store, make_mvr_payload(total_points=1))
        clock.advance(days=31)
        latest = ingest(store, make_mvr_payload(total_points=8, report_date="2024-07-15"))

        aggregate = store.retrieve(retrieval())

        assert aggregate.mvr["id"] == latest.mvr_id
        assert aggregate.mvr["total_points"] == 8
