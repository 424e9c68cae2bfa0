"""
Repository Pattern for MVR Exchange Database Operations

Provides clean data access layer with proper typing and error handling.
Repositories flush but never commit; transaction boundaries belong to the
caller's unit of work.
"""

import logging
from typing import List, Optional, Dict, Any
from datetime import date, datetime

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError

from database.models import (
    Subject,
    MVRRecord,
    LicenseInfo,
    TrafficViolation,
    Withdrawal,
    AccidentReport,
    TrafficCrime,
    Transaction,
    PermissiblePurpose,
    parse_iso_date,
    optional_str
)

logger = logging.getLogger(__name__)

LICENSE_INFO_FIELDS = ("license_class", "issue_date", "expiration_date", "status", "restrictions")


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class EntityNotFoundError(RepositoryError):
    """Raised when a subject or record is not found."""
    pass


class DuplicateEntityError(RepositoryError):
    """Raised when attempting to create a duplicate subject."""
    pass


# ============================================
# SUBJECT REPOSITORY
# ============================================

class SubjectRepository:
    """Repository for subject operations."""

    def __init__(self, session: Session):
        self.session = session

    def get_by_license(self, drivers_license_number: str, for_update: bool = False) -> Optional[Subject]:
        """
        Get subject by driver's license number.

        Args:
            drivers_license_number: License number identifying the subject
            for_update: Lock the row until the transaction ends

        Returns:
            Subject or None
        """
        query = select(Subject).where(Subject.drivers_license_number == drivers_license_number)
        if for_update:
            query = query.with_for_update(of=Subject)

        result = self.session.execute(query)
        return result.unique().scalar_one_or_none()

    def get_by_id(self, subject_id: int) -> Optional[Subject]:
        return self.session.get(Subject, subject_id)

    def create(self, payload: Dict[str, Any], record: MVRRecord) -> Subject:
        """
        Create a subject pointing at its first record.

        Args:
            payload: MVR payload carrying the subject fields
            record: The record the subject starts out pointing at

        Returns:
            Created Subject

        Raises:
            DuplicateEntityError: If a subject with the same license already exists
        """
        subject = Subject(
            drivers_license_number=payload["drivers_license_number"],
            full_legal_name=payload["full_legal_name"],
            birthdate=str(payload["birthdate"]),
            weight=str(payload["weight"]),
            sex=payload["sex"],
            height=str(payload["height"]),
            hair_color=payload["hair_color"],
            eye_color=payload["eye_color"],
            medical_information=payload.get("medical_information") or None,
            address=payload.get("address") or None,
            city=payload.get("city") or None,
            issued_state_code=payload["issued_state_code"],
            zip=optional_str(payload.get("zip")),
            phone_number=optional_str(payload.get("phone_number")),
            email=payload.get("email") or None,
            current_mvr_id=record.id
        )

        try:
            self.session.add(subject)
            self.session.flush()
        except IntegrityError as e:
            raise DuplicateEntityError(
                f"Subject already exists for license {payload['drivers_license_number']}: {e.orig}"
            )

        logger.debug(f"Created subject: {subject.id} (current record {record.id})")
        return subject

    def point_to_record(self, subject: Subject, record: MVRRecord) -> Subject:
        """Repoint the subject's current record."""
        subject.current_mvr_id = record.id
        subject.current_record = record
        self.session.flush()
        return subject


# ============================================
# MVR REPOSITORY
# ============================================

class MVRRepository:
    """Repository for MVR records and their dependent rows."""

    def __init__(self, session: Session):
        self.session = session

    def get_by_id(self, mvr_id: int) -> Optional[MVRRecord]:
        return self.session.get(MVRRecord, mvr_id)

    def create_record(
        self,
        payload: Dict[str, Any],
        company_id: str,
        permissible_purpose: PermissiblePurpose,
        price_paid: float,
        redisclosure_authorization: bool,
        storage_limitations: int,
        uploaded_at: datetime,
        today: date
    ) -> MVRRecord:
        """
        Insert a new MVR record.

        Missing order/report dates default to today; certification defaults to
        false and total points to 0.

        Args:
            payload: MVR payload
            company_id: Supplying company
            permissible_purpose: Purpose declared by the supplying company
            price_paid: Price the supplier paid for the report
            redisclosure_authorization: Supplier may redisclose the report
            storage_limitations: Retention period in days
            uploaded_at: Upload timestamp
            today: Date used for defaults

        Returns:
            Created MVRRecord

        Raises:
            ValueError: If a date field is not a valid ISO date
        """
        record = MVRRecord(
            drivers_license_number=payload["drivers_license_number"],
            claim_number=optional_str(payload.get("claim_number")),
            order_id=optional_str(payload.get("order_id")),
            order_date=parse_iso_date(payload.get("order_date")) or today,
            report_date=parse_iso_date(payload.get("report_date")) or today,
            reference_number=optional_str(payload.get("reference_number")),
            system_use=optional_str(payload.get("system_use")),
            mvr_type=optional_str(payload.get("mvr_type")),
            state_code=payload["state_code"],
            purpose=optional_str(payload.get("purpose")),
            time_frame=optional_str(payload.get("time_frame")),
            is_certified=bool(payload.get("is_certified") or False),
            total_points=int(payload.get("total_points") or 0),
            date_uploaded=uploaded_at,
            company_id=company_id,
            permissible_purpose=permissible_purpose,
            price_paid=float(price_paid),
            redisclosure_authorization=redisclosure_authorization,
            storage_limitations=storage_limitations
        )

        self.session.add(record)
        self.session.flush()

        logger.debug(f"Created MVR record: {record.id} (company {company_id})")
        return record

    def add_license_info(self, record: MVRRecord, payload: Dict[str, Any]) -> Optional[LicenseInfo]:
        """
        Attach license details if the payload carries any of them.

        Returns:
            Created LicenseInfo, or None when no license field is present
        """
        if not any(payload.get(name) for name in LICENSE_INFO_FIELDS):
            return None

        info = LicenseInfo(
            mvr_id=record.id,
            license_class=optional_str(payload.get("license_class")),
            issue_date=parse_iso_date(payload.get("issue_date")),
            expiration_date=parse_iso_date(payload.get("expiration_date")),
            status=optional_str(payload.get("status")),
            restrictions=optional_str(payload.get("restrictions"))
        )
        self.session.add(info)
        self.session.flush()
        return info

    def add_violations(self, record: MVRRecord, violations: List[Dict[str, Any]]) -> int:
        for item in violations or []:
            self.session.add(TrafficViolation(
                mvr_id=record.id,
                violation_date=parse_iso_date(item.get("violation_date")),
                conviction_date=parse_iso_date(item.get("conviction_date")),
                location=optional_str(item.get("location")),
                points_assessed=int(item.get("points_assessed") or 0),
                violation_code=optional_str(item.get("violation_code")),
                description=optional_str(item.get("description"))
            ))
        self.session.flush()
        return len(violations or [])

    def add_withdrawals(self, record: MVRRecord, withdrawals: List[Dict[str, Any]]) -> int:
        for item in withdrawals or []:
            self.session.add(Withdrawal(
                mvr_id=record.id,
                effective_date=parse_iso_date(item.get("effective_date")),
                eligibility_date=parse_iso_date(item.get("eligibility_date")),
                action_type=optional_str(item.get("action_type")),
                reason=optional_str(item.get("reason"))
            ))
        self.session.flush()
        return len(withdrawals or [])

    def add_accidents(self, record: MVRRecord, accidents: List[Dict[str, Any]]) -> int:
        for item in accidents or []:
            self.session.add(AccidentReport(
                mvr_id=record.id,
                accident_date=parse_iso_date(item.get("accident_date")),
                location=optional_str(item.get("location")),
                acd_code=optional_str(item.get("acd_code")),
                description=optional_str(item.get("description"))
            ))
        self.session.flush()
        return len(accidents or [])

    def add_crimes(self, record: MVRRecord, crimes: List[Dict[str, Any]]) -> int:
        for item in crimes or []:
            self.session.add(TrafficCrime(
                mvr_id=record.id,
                crime_date=parse_iso_date(item.get("crime_date")),
                conviction_date=parse_iso_date(item.get("conviction_date")),
                offense_code=optional_str(item.get("offense_code")),
                description=optional_str(item.get("description"))
            ))
        self.session.flush()
        return len(crimes or [])

    def add_transaction(
        self,
        record: MVRRecord,
        seller_company_id: str,
        buyer_company_id: Optional[str] = None,
        state_code: Optional[str] = None
    ) -> Transaction:
        """
        Link a record to its seller and buyer.

        Args:
            record: The record sold
            seller_company_id: Company supplying the record
            buyer_company_id: Company buying the record
            state_code: State the transaction took place in

        Returns:
            Created Transaction
        """
        transaction = Transaction(
            mvr_id=record.id,
            seller_company_id=seller_company_id,
            buyer_company_id=buyer_company_id,
            state_code=state_code
        )
        self.session.add(transaction)
        self.session.flush()
        return transaction

