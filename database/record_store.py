"""
Record Store Service for the MVR Exchange

This module owns the transactional MVR workflows:
- Single ingestion (upsert) with 30-day duplicate suppression
- All-or-nothing batch ingestion with per-record diagnostics
- Retrieval of the current record aggregate with a freshness filter

Every workflow runs in one unit of work. Audit events are built after the
transaction has committed and handed to the audit dispatcher; a failure
there is logged and never changes the committed result.

Concurrency:
    The subject row is locked (SELECT ... FOR UPDATE) while deciding whether
    a submission is a duplicate, so concurrent ingestions for one license
    serialize. Two first-time ingestions for the same license race on the
    unique license constraint; the loser's unit of work is retried once and
    then sees the winner's record.

Usage:
    store = RecordStore(provider, dispatcher)
    result = store.ingest(IngestionRequest.from_body(body))
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from tenacity import Retrying, stop_after_attempt, retry_if_exception_type, before_sleep_log

from config_manager import IngestionConfig
from database.connection import DatabaseSessionProvider
from database.models import MVRRecord, PermissiblePurpose, Subject, UpsertOutcome
from database.monitoring import timed_query
from database.repositories import (
    DuplicateEntityError,
    EntityNotFoundError,
    MVRRepository,
    RepositoryError,
    SubjectRepository,
)
from audit.emitter import AuditDispatcher
from audit.events import AuditEventBase, AuditOperation, OperationCategory
from log_utils import mask_license_number
from validation import FieldError, InputValidationError

logger = logging.getLogger(__name__)

MESSAGES = {
    UpsertOutcome.NEW: "New subject and MVR created successfully",
    UpsertOutcome.UPDATED: "Subject MVR updated successfully",
    UpsertOutcome.SKIPPED: "MVR uploaded less than 30 days ago",
}

_OPERATIONS = {
    UpsertOutcome.NEW: AuditOperation.CREATE,
    UpsertOutcome.UPDATED: AuditOperation.UPDATE,
    UpsertOutcome.SKIPPED: AuditOperation.DUPLICATE_ATTEMPT,
}

# Errors that abort one ingestion and roll it back
_INGESTION_ERRORS = (SQLAlchemyError, RepositoryError, ValueError, KeyError, TypeError, AttributeError)


class PersistenceError(Exception):
    """Raised when a workflow failed and its transaction was rolled back."""
    pass


class BatchIngestionError(PersistenceError):
    """Raised when any batch element failed; carries every element's outcome."""

    def __init__(self, result: 'BatchResult'):
        self.result = result
        failures = [item.message for item in result.items if item.outcome == UpsertOutcome.FAILED]
        super().__init__("; ".join(failures) or "Batch ingestion failed")


# ============================================
# REQUESTS AND RESULTS
# ============================================

@dataclass
class IngestionRequest:
    """A validated single-record ingestion."""
    company_id: str
    permissible_purpose: str
    mvr: Dict[str, Any]
    price_paid: float = 0.0
    redisclosure_authorization: bool = True
    storage_limitations: Optional[int] = None

    @classmethod
    def from_body(cls, body: Dict[str, Any]) -> 'IngestionRequest':
        return cls(
            company_id=body["company_id"],
            permissible_purpose=body["permissible_purpose"],
            mvr=body["mvr"],
            price_paid=body.get("price_paid", 0.0),
            redisclosure_authorization=body.get("redisclosure_authorization", True),
            storage_limitations=body.get("storage_limitations")
        )

    @property
    def drivers_license_number(self) -> Optional[str]:
        value = self.mvr.get("drivers_license_number") if isinstance(self.mvr, dict) else None
        return value.strip() if isinstance(value, str) else value


@dataclass
class IngestionResult:
    """Outcome of one ingestion."""
    outcome: UpsertOutcome
    message: str
    drivers_license_number: Optional[str]
    mvr_id: Optional[int] = None
    subject_id: Optional[int] = None

    @property
    def created(self) -> bool:
        return self.outcome in (UpsertOutcome.NEW, UpsertOutcome.UPDATED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "message": self.message,
            "drivers_license_number": self.drivers_license_number,
            "mvr_id": self.mvr_id,
            "subject_id": self.subject_id,
        }


@dataclass
class BatchIngestionRequest:
    """A validated batch ingestion."""
    company_id: str
    permissible_purpose: str
    payloads: List[Dict[str, Any]]
    price_paid: float = 0.0
    redisclosure_authorization: bool = True
    storage_limitations: Optional[int] = None

    @classmethod
    def from_body(cls, body: Dict[str, Any]) -> 'BatchIngestionRequest':
        return cls(
            company_id=body["company_id"],
            permissible_purpose=body["permissible_purpose"],
            payloads=body["batch_mvrs"],
            price_paid=body.get("price_paid", 0.0),
            redisclosure_authorization=body.get("redisclosure_authorization", True),
            storage_limitations=body.get("storage_limitations")
        )

    def element(self, index: int) -> IngestionRequest:
        return IngestionRequest(
            company_id=self.company_id,
            permissible_purpose=self.permissible_purpose,
            mvr=self.payloads[index],
            price_paid=self.price_paid,
            redisclosure_authorization=self.redisclosure_authorization,
            storage_limitations=self.storage_limitations
        )


@dataclass
class BatchResult:
    """Per-element outcomes of a batch, in input order."""
    items: List[IngestionResult] = field(default_factory=list)
    committed: bool = False

    def _count(self, outcome: UpsertOutcome) -> int:
        return sum(1 for item in self.items if item.outcome == outcome)

    @property
    def total(self) -> int:
        return len(self.items)

    @property
    def new_records(self) -> int:
        return self._count(UpsertOutcome.NEW)

    @property
    def updated_records(self) -> int:
        return self._count(UpsertOutcome.UPDATED)

    @property
    def skipped_records(self) -> int:
        return self._count(UpsertOutcome.SKIPPED)

    @property
    def failed_records(self) -> int:
        return self._count(UpsertOutcome.FAILED)

    def summary(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "successful": self.total - self.failed_records,
            "new_records": self.new_records,
            "updated_records": self.updated_records,
            "skipped_records": self.skipped_records,
            "failed_records": self.failed_records,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "committed": self.committed,
            "summary": self.summary(),
            "results": [
                {"index": index, **item.to_dict()} for index, item in enumerate(self.items)
            ],
        }


@dataclass
class RetrievalRequest:
    """A validated retrieval."""
    drivers_license_number: str
    company_id: str
    permissible_purpose: str
    days: int
    consent: bool
    user_id: Optional[str] = None

    @classmethod
    def from_body(cls, body: Dict[str, Any]) -> 'RetrievalRequest':
        return cls(
            drivers_license_number=body["drivers_license_number"].strip(),
            company_id=body["company_id"],
            permissible_purpose=body["permissible_purpose"],
            days=int(body["days"]),
            consent=body["consent"],
            user_id=body.get("user_id")
        )


@dataclass
class MVRAggregate:
    """Everything returned for one retrieval."""
    subject: Dict[str, Any]
    mvr: Dict[str, Any]
    license_info: Optional[Dict[str, Any]]
    violations: List[Dict[str, Any]]
    withdrawals: List[Dict[str, Any]]
    accidents: List[Dict[str, Any]]
    crimes: List[Dict[str, Any]]
    transaction: Optional[Dict[str, Any]]
    seller_company_id: str

    @classmethod
    def from_models(cls, subject: Subject, record: MVRRecord) -> 'MVRAggregate':
        transaction = record.transaction
        return cls(
            subject=_columns(subject, (
                "id", "drivers_license_number", "full_legal_name", "birthdate", "weight",
                "sex", "height", "hair_color", "eye_color", "medical_information",
                "address", "city", "issued_state_code", "zip", "phone_number", "email"
            )),
            mvr=_columns(record, (
                "id", "claim_number", "order_id", "order_date", "report_date",
                "reference_number", "system_use", "mvr_type", "state_code", "purpose",
                "time_frame", "is_certified", "total_points", "date_uploaded", "company_id",
                "permissible_purpose", "price_paid", "redisclosure_authorization",
                "storage_limitations"
            )),
            license_info=_columns(record.license_info, (
                "license_class", "issue_date", "expiration_date", "status", "restrictions"
            )) if record.license_info is not None else None,
            violations=[_columns(v, (
                "violation_date", "conviction_date", "location", "points_assessed",
                "violation_code", "description"
            )) for v in record.violations],
            withdrawals=[_columns(w, (
                "effective_date", "eligibility_date", "action_type", "reason"
            )) for w in record.withdrawals],
            accidents=[_columns(a, (
                "accident_date", "location", "acd_code", "description"
            )) for a in record.accidents],
            crimes=[_columns(c, (
                "crime_date", "conviction_date", "offense_code", "description"
            )) for c in record.crimes],
            transaction={
                "seller_id": transaction.seller_company_id,
                "buyer_id": transaction.buyer_company_id,
                "transaction_state": transaction.state_code,
            } if transaction is not None else None,
            seller_company_id=record.seller_company_id
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject": self.subject,
            "mvr": self.mvr,
            "license_info": self.license_info,
            "violations": self.violations,
            "withdrawals": self.withdrawals,
            "accidents": self.accidents,
            "crimes": self.crimes,
            "transaction": self.transaction,
            "seller_company_id": self.seller_company_id,
        }


# ============================================
# RECORD STORE
# ============================================

class RecordStore:
    """
    Transactional MVR ingestion and retrieval.

    Args:
        provider: Database session provider (one unit of work per call)
        dispatcher: Audit dispatcher; no audit events are produced when None
        config: Ingestion rules (window, defaults, retry)
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        provider: DatabaseSessionProvider,
        dispatcher: Optional[AuditDispatcher] = None,
        config: Optional[IngestionConfig] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.provider = provider
        self.dispatcher = dispatcher
        self.config = config or IngestionConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ----------------------------------------
    # Ingestion
    # ----------------------------------------

    @timed_query("ingest")
    def ingest(self, request: IngestionRequest) -> IngestionResult:
        """
        Upsert one MVR.

        Args:
            request: Validated ingestion request

        Returns:
            IngestionResult tagged NEW, UPDATED or SKIPPED

        Raises:
            PersistenceError: If the transaction failed and was rolled back
        """
        license_number = request.drivers_license_number
        try:
            result = self._ingest_with_retry(request)
        except _INGESTION_ERRORS as e:
            logger.error(
                "Ingestion failed: company=%s license=%s type=%s message=%s",
                request.company_id, mask_license_number(license_number), type(e).__name__, e
            )
            self._publish(lambda emitter: [emitter.failure_event(
                AuditOperation.ADD_MVR,
                OperationCategory.WRITE,
                request.company_id,
                str(e),
                drivers_license_number=license_number
            )])
            raise PersistenceError(f"Failed to store MVR: {e}") from e

        logger.info(
            "Ingestion %s: company=%s license=%s mvr_id=%s",
            result.outcome.value, request.company_id, mask_license_number(license_number), result.mvr_id
        )
        self._publish_write_events(request.company_id, [result])
        return result

    def _ingest_with_retry(self, request: IngestionRequest) -> IngestionResult:
        retrying = Retrying(
            stop=stop_after_attempt(max(1, self.config.conflict_retry_attempts)),
            retry=retry_if_exception_type(DuplicateEntityError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True
        )
        for attempt in retrying:
            with attempt:
                with self.provider.get_unit_of_work() as uow:
                    result = self._upsert(uow.session, request)
                    uow.commit()
        return result

    @timed_query("ingest_batch")
    def ingest_batch(self, request: BatchIngestionRequest) -> BatchResult:
        """
        Upsert a batch of MVRs in one transaction.

        Each element runs in its own savepoint so that every element gets an
        outcome. If any element failed the whole batch is rolled back.

        Args:
            request: Validated batch request

        Returns:
            BatchResult with one outcome per element, committed

        Raises:
            BatchIngestionError: If any element failed (carries the outcomes)
            PersistenceError: If the batch transaction itself failed
        """
        result = BatchResult()
        try:
            with self.provider.get_unit_of_work() as uow:
                for index in range(len(request.payloads)):
                    result.items.append(self._upsert_batch_element(uow.session, request, index))

                if result.failed_records:
                    uow.rollback()
                else:
                    uow.commit()
                    result.committed = True
        except SQLAlchemyError as e:
            logger.error("Batch ingestion failed: company=%s type=%s message=%s",
                         request.company_id, type(e).__name__, e)
            self._publish_batch_summary(request.company_id, result)
            raise PersistenceError(f"Failed to store MVR batch: {e}") from e

        logger.info(
            "Batch ingestion %s: company=%s total=%d new=%d updated=%d skipped=%d failed=%d",
            "committed" if result.committed else "rolled back",
            request.company_id, result.total, result.new_records,
            result.updated_records, result.skipped_records, result.failed_records
        )

        if result.committed:
            self._publish_write_events(request.company_id, result.items, summary=result)
            return result

        self._publish_batch_summary(request.company_id, result)
        raise BatchIngestionError(result)

    def _upsert_batch_element(self, session: Session, request: BatchIngestionRequest, index: int) -> IngestionResult:
        element = request.element(index)
        try:
            with session.begin_nested():
                return self._upsert(session, element)
        except _INGESTION_ERRORS as e:
            logger.warning("Batch element %d failed: type=%s message=%s", index, type(e).__name__, e)
            return IngestionResult(
                outcome=UpsertOutcome.FAILED,
                message=f"Error processing MVR at index {index}: {e}",
                drivers_license_number=element.drivers_license_number
            )

    def _upsert(self, session: Session, request: IngestionRequest) -> IngestionResult:
        """Decide and apply one ingestion inside the caller's transaction."""
        now = self._clock()
        payload = dict(request.mvr)
        payload["drivers_license_number"] = request.drivers_license_number
        license_number = payload["drivers_license_number"]

        subjects = SubjectRepository(session)
        records = MVRRepository(session)

        subject = subjects.get_by_license(license_number, for_update=True)
        current = subject.current_record if subject is not None else None
        if current is not None and self.is_within_dedup_window(current.date_uploaded, now):
            return IngestionResult(
                outcome=UpsertOutcome.SKIPPED,
                message=MESSAGES[UpsertOutcome.SKIPPED],
                drivers_license_number=license_number,
                mvr_id=current.id,
                subject_id=subject.id
            )

        record = records.create_record(
            payload,
            company_id=request.company_id,
            permissible_purpose=PermissiblePurpose(request.permissible_purpose),
            price_paid=request.price_paid or 0.0,
            redisclosure_authorization=bool(request.redisclosure_authorization),
            storage_limitations=self._storage_limitations(request.storage_limitations),
            uploaded_at=now,
            today=now.date()
        )

        if subject is None:
            subject = subjects.create(payload, record)
            outcome = UpsertOutcome.NEW
        else:
            subjects.point_to_record(subject, record)
            outcome = UpsertOutcome.UPDATED

        records.add_license_info(record, payload)
        records.add_violations(record, payload.get("violations"))
        records.add_withdrawals(record, payload.get("withdrawals"))
        records.add_accidents(record, payload.get("accidents"))
        records.add_crimes(record, payload.get("crimes"))

        transaction = payload.get("transaction")
        if isinstance(transaction, dict):
            records.add_transaction(
                record,
                seller_company_id=str(transaction.get("seller_id") or request.company_id),
                buyer_company_id=_optional_id(transaction.get("buyer_id")),
                state_code=payload["state_code"]
            )

        return IngestionResult(
            outcome=outcome,
            message=MESSAGES[outcome],
            drivers_license_number=license_number,
            mvr_id=record.id,
            subject_id=subject.id
        )

    def is_within_dedup_window(self, uploaded_at: datetime, now: datetime) -> bool:
        """True when a record uploaded at ``uploaded_at`` suppresses a new submission.

        The boundary is inclusive: a record exactly ``dedup_window_days`` old
        still suppresses.
        """
        return now - _as_utc(uploaded_at) <= timedelta(days=self.config.dedup_window_days)

    def _storage_limitations(self, value: Optional[Any]) -> int:
        if value is None or value < 0:
            return self.config.default_storage_limitation_days
        return int(value)

    # ----------------------------------------
    # Retrieval
    # ----------------------------------------

    @timed_query("retrieve")
    def retrieve(self, request: RetrievalRequest) -> MVRAggregate:
        """
        Assemble the current record for a license.

        Args:
            request: Validated retrieval request

        Returns:
            MVRAggregate for the subject's current record

        Raises:
            InputValidationError: If consent was not given
            EntityNotFoundError: If there is no subject, no current record,
                or the record is older than the requested window
            PersistenceError: If the read failed
        """
        if request.consent is not True:
            raise InputValidationError([FieldError("consent", "Consent is required and must be true")])

        read_event = None
        try:
            with self.provider.session_scope() as session:
                subject = SubjectRepository(session).get_by_license(request.drivers_license_number)
                if subject is None:
                    raise EntityNotFoundError("No subject found with this driver's license number")

                record = subject.current_record
                if record is None:
                    raise EntityNotFoundError("Subject found but no current MVR record associated")

                if not self.is_fresh(record, request.days):
                    raise EntityNotFoundError(f"No MVR found within the last {request.days} days")

                aggregate = MVRAggregate.from_models(subject, record)
                if self.dispatcher is not None:
                    read_event = self.dispatcher.emitter.read_event(
                        subject,
                        record,
                        company_id=request.company_id,
                        permissible_purpose=request.permissible_purpose,
                        days=request.days,
                        user_id=request.user_id
                    )
        except EntityNotFoundError as e:
            logger.info("Retrieval not found: company=%s license=%s reason=%s",
                        request.company_id, mask_license_number(request.drivers_license_number), e)
            self._publish_read_failure(request, str(e))
            raise
        except SQLAlchemyError as e:
            logger.error("Retrieval failed: company=%s type=%s message=%s",
                         request.company_id, type(e).__name__, e)
            self._publish_read_failure(request, str(e))
            raise PersistenceError(f"Failed to read MVR: {e}") from e

        if read_event is not None:
            self.dispatcher.publish([read_event])
        return aggregate

    def is_fresh(self, record: MVRRecord, days: int) -> bool:
        """True when the record's report date lies within the last ``days`` days (inclusive)."""
        today = self._clock().date()
        # A window reaching past date.min admits every record
        cutoff = today - timedelta(days=min(days, (today - date.min).days))
        return record.effective_report_date >= cutoff

    # ----------------------------------------
    # Audit hand-off
    # ----------------------------------------

    def _publish(self, build: Callable) -> None:
        if self.dispatcher is None:
            return
        self.dispatcher.publish(build(self.dispatcher.emitter))

    def _publish_read_failure(self, request: RetrievalRequest, message: str) -> None:
        self._publish(lambda emitter: [emitter.failure_event(
            AuditOperation.GET_MVR,
            OperationCategory.READ,
            request.company_id,
            message,
            drivers_license_number=request.drivers_license_number
        )])

    def _publish_batch_summary(self, company_id: str, result: BatchResult) -> None:
        self._publish(lambda emitter: [emitter.batch_summary_event(
            company_id,
            total=result.total,
            new=result.new_records,
            updated=result.updated_records,
            skipped=result.skipped_records,
            failed=result.failed_records
        )])

    def _publish_write_events(
        self,
        company_id: str,
        results: List[IngestionResult],
        summary: Optional[BatchResult] = None
    ) -> None:
        """Re-read committed rows and emit one WRITE event per result."""
        if self.dispatcher is None:
            return

        emitter = self.dispatcher.emitter
        events: List[AuditEventBase] = []
        for result, (subject, record) in zip(results, self._audit_snapshots(results)):
            if subject is None or record is None:
                continue
            events.append(emitter.write_event(
                _OPERATIONS[result.outcome], subject, record, company_id, result.outcome.value
            ))
        if summary is not None:
            events.append(emitter.batch_summary_event(
                company_id,
                total=summary.total,
                new=summary.new_records,
                updated=summary.updated_records,
                skipped=summary.skipped_records,
                failed=summary.failed_records
            ))
        self.dispatcher.publish(events)

    def _audit_snapshots(self, results: List[IngestionResult]) -> List[Tuple[Optional[Subject], Optional[MVRRecord]]]:
        """Read subjects and records after commit, outside the write transaction."""
        try:
            with self.provider.session_scope() as session:
                records = MVRRepository(session)
                subjects = SubjectRepository(session)
                return [
                    (subjects.get_by_id(result.subject_id), records.get_by_id(result.mvr_id))
                    for result in results
                ]
        except SQLAlchemyError as e:
            logger.error("Audit snapshot read failed: type=%s message=%s", type(e).__name__, e)
            return [(None, None)] * len(results)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; stored values are always UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _optional_id(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _columns(obj: Any, names: Tuple[str, ...]) -> Dict[str, Any]:
    row = {}
    for name in names:
        value = getattr(obj, name)
        if isinstance(value, (date, datetime)):
            value = value.isoformat()
        elif isinstance(value, PermissiblePurpose):
            value = value.value
        row[name] = value
    return row
