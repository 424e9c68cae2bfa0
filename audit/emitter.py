"""
Audit Event Emission

Builds typed audit events from record store results and hands them to an
append-only sink as NDJSON lines.

Delivery is best-effort: ``AuditEmissionError`` is raised by ``emit`` but is
always caught, logged and counted by ``emit_safely`` and ``AuditDispatcher``.
A failed emission never changes the outcome of the business operation.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from audit.events import (
    AccessorContext,
    AuditEventBase,
    AuditOperation,
    BatchSummaryEvent,
    CreatorContext,
    FailureEvent,
    OperationCategory,
    ReadEvent,
    SellerContext,
    WriteEvent,
    parse_event,
)
from database.models import MVRRecord, Subject
from database.monitoring import record_audit_emission

logger = logging.getLogger(__name__)


class AuditEmissionError(Exception):
    """Raised when an audit event could not be written to the sink."""
    pass


# ============================================
# SINKS
# ============================================

class AuditSink:
    """Append-only destination for serialized audit events."""

    def write(self, line: str) -> None:
        raise NotImplementedError


class InMemoryAuditSink(AuditSink):
    """Keeps emitted lines in memory. Used by tests and local runs."""

    def __init__(self):
        self.lines: List[str] = []
        self._lock = threading.Lock()

    def write(self, line: str) -> None:
        with self._lock:
            self.lines.append(line)

    def events(self) -> List[AuditEventBase]:
        with self._lock:
            return [parse_event(line) for line in self.lines]

    def clear(self) -> None:
        with self._lock:
            self.lines.clear()


class FileAuditSink(AuditSink):
    """Appends one JSON object per line to a file."""

    def __init__(self, path: str):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def write(self, line: str) -> None:
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")


# ============================================
# EMITTER
# ============================================

class AuditEventEmitter:
    """
    Builds and emits audit events.

    Args:
        sink: Destination for serialized events
        function_name: Producer name stamped on every event
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        sink: AuditSink,
        function_name: str = "mvr-exchange",
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.sink = sink
        self.function_name = function_name
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def emit(self, event: AuditEventBase) -> None:
        """
        Write one event to the sink.

        Raises:
            AuditEmissionError: If serialization or the sink write fails
        """
        try:
            self.sink.write(event.to_json())
        except Exception as e:
            record_audit_emission(event.kind, delivered=False)
            raise AuditEmissionError(f"Failed to emit {event.kind} audit event: {e}") from e
        record_audit_emission(event.kind, delivered=True)

    def emit_safely(self, event: AuditEventBase) -> bool:
        """
        Emit an event, logging instead of raising on failure.

        Returns:
            True if the event reached the sink
        """
        try:
            self.emit(event)
            return True
        except AuditEmissionError as e:
            logger.error(
                "Audit emission failed: kind=%s operation=%s error=%s",
                event.kind, event.operation, e
            )
            return False

    # ----------------------------------------
    # Builders
    # ----------------------------------------

    def write_event(
        self,
        operation: AuditOperation,
        subject: Subject,
        record: MVRRecord,
        company_id: str,
        outcome: str
    ) -> WriteEvent:
        """Event for an accepted ingestion or a suppressed duplicate."""
        return WriteEvent(
            timestamp=self._clock(),
            operation=operation.value,
            operation_category=OperationCategory.WRITE,
            success=True,
            affected_records_count=0 if operation == AuditOperation.DUPLICATE_ATTEMPT else 1,
            company_id=company_id,
            company_partition=company_id,
            function_name=self.function_name,
            drivers_license_number=subject.drivers_license_number,
            creator=CreatorContext(
                company_id=company_id,
                permissible_purpose=_enum_value(record.permissible_purpose)
            ),
            outcome=outcome,
            mvr_id=record.id,
            subject_id=subject.id,
            full_legal_name=subject.full_legal_name,
            issued_state_code=subject.issued_state_code,
            order_id=record.order_id,
            order_date=_iso(record.order_date),
            report_date=_iso(record.report_date),
            state_code=record.state_code,
            mvr_type=record.mvr_type,
            is_certified=record.is_certified,
            total_points=record.total_points,
            price_paid=record.price_paid,
            storage_limitations=record.storage_limitations
        )

    def read_event(
        self,
        subject: Subject,
        record: MVRRecord,
        company_id: str,
        permissible_purpose: str,
        days: Optional[int] = None,
        user_id: Optional[str] = None
    ) -> ReadEvent:
        """Event for a successful retrieval, carrying accessor and seller."""
        now = self._clock()
        transaction = record.transaction
        seller = SellerContext(
            company_id=record.seller_company_id,
            seller_id=transaction.seller_company_id if transaction else None,
            buyer_id=transaction.buyer_company_id if transaction else None,
            transaction_state=transaction.state_code if transaction else None
        )
        return ReadEvent(
            timestamp=now,
            operation=AuditOperation.GET_MVR.value,
            operation_category=OperationCategory.READ,
            success=True,
            affected_records_count=1,
            company_id=company_id,
            company_partition=company_id,
            user_id=user_id,
            function_name=self.function_name,
            drivers_license_number=subject.drivers_license_number,
            accessor=AccessorContext(
                company_id=company_id,
                user_id=user_id,
                permissible_purpose=permissible_purpose,
                access_timestamp=now
            ),
            seller=seller,
            mvr_id=record.id,
            subject_id=subject.id,
            days_requested=days
        )

    def batch_summary_event(
        self,
        company_id: str,
        total: int,
        new: int,
        updated: int,
        skipped: int,
        failed: int
    ) -> BatchSummaryEvent:
        return BatchSummaryEvent(
            timestamp=self._clock(),
            operation=AuditOperation.BATCH_ADD.value,
            operation_category=OperationCategory.WRITE,
            success=failed == 0,
            affected_records_count=(new + updated) if failed == 0 else 0,
            company_id=company_id,
            company_partition=company_id,
            function_name=self.function_name,
            total_records=total,
            new_records=new,
            updated_records=updated,
            skipped_records=skipped,
            failed_records=failed
        )

    def failure_event(
        self,
        operation: AuditOperation,
        category: OperationCategory,
        company_id: Optional[str],
        error_message: str,
        drivers_license_number: Optional[str] = None
    ) -> FailureEvent:
        """Event for a failed ingestion or retrieval. Carries no record detail."""
        return FailureEvent(
            timestamp=self._clock(),
            operation=operation.value,
            operation_category=category,
            success=False,
            affected_records_count=0,
            company_id=company_id,
            company_partition=company_id,
            function_name=self.function_name,
            drivers_license_number=drivers_license_number,
            error_message=error_message
        )


# ============================================
# BACKGROUND DISPATCH
# ============================================

class AuditDispatcher:
    """
    Emits events on a worker pool with a bounded wait.

    ``publish`` waits up to ``timeout_seconds`` for the submitted events so
    that audit output normally lands before the caller replies. Events still
    pending after the timeout finish in the background; their failures are
    logged when they complete.

    Args:
        emitter: Emitter used by the workers
        max_workers: Worker threads
        timeout_seconds: Maximum time publish() waits
    """

    def __init__(self, emitter: AuditEventEmitter, max_workers: int = 2, timeout_seconds: float = 2.0):
        self.emitter = emitter
        self.timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="audit")

    def publish(self, events: Iterable[AuditEventBase]) -> int:
        """
        Emit events, waiting a bounded time for delivery.

        Never raises.

        Returns:
            Number of events confirmed delivered within the timeout
        """
        futures: List[Future] = []
        for event in events:
            try:
                futures.append(self._executor.submit(self.emitter.emit_safely, event))
            except RuntimeError as e:
                # Executor already shut down
                logger.error("Audit dispatcher unavailable: operation=%s error=%s", event.operation, e)
        if not futures:
            return 0

        done, pending = wait(futures, timeout=self.timeout_seconds)
        if pending:
            logger.warning(
                "Audit emission still pending after %.1fs: %d event(s) continue in background",
                self.timeout_seconds, len(pending)
            )
        return sum(1 for future in done if future.result())

    def close(self) -> None:
        """Wait for in-flight events and stop the workers."""
        self._executor.shutdown(wait=True)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _enum_value(value) -> Optional[str]:
    return getattr(value, "value", value)
