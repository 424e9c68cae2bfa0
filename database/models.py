"""
SQLAlchemy ORM Models for the MVR Exchange

This module defines the record store schema:
- One subject row per driver's license number, pointing at its current record
- Append-only MVR records (superseded records are retained)
- Dependent rows cascaded from each record (license info, violations,
  withdrawals, accidents, crimes, seller/buyer transaction)
- Portable column types so the same schema runs on PostgreSQL and SQLite

Tables:
1. subjects - Individuals identified by driver's license number
2. mvr_records - One row per accepted MVR ingestion
3. drivers_license_info - License class/status details (zero or one per record)
4. traffic_violations - Moving violations attached to a record
5. withdrawals - Suspensions and revocations attached to a record
6. accident_reports - Accidents attached to a record
7. traffic_crimes - Traffic crimes attached to a record
8. transactions - Seller/buyer linkage of a record (zero or one per record)
"""

from datetime import date, datetime
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    String, Integer, Float, Boolean, Date, DateTime, Text,
    ForeignKey, Index, UniqueConstraint, Enum, desc
)
from sqlalchemy.orm import relationship, declarative_base, Mapped, mapped_column
from sqlalchemy.sql import func

# Base class for all models
Base = declarative_base()


# ============================================
# ENUMS
# ============================================

class PermissiblePurpose(str, PyEnum):
    """Legally permissible purpose for obtaining an MVR"""
    EMPLOYMENT = "EMPLOYMENT"
    INSURANCE = "INSURANCE"
    LEGAL = "LEGAL"
    GOVERNMENT = "GOVERNMENT"
    UNDERWRITING = "UNDERWRITING"
    FRAUD = "FRAUD"


class UpsertOutcome(str, PyEnum):
    """Outcome of a single ingestion"""
    NEW = "NEW"
    UPDATED = "UPDATED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


# ============================================
# MIXIN CLASSES
# ============================================

class TimestampMixin:
    """Mixin for created_at and updated_at timestamps"""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False
    )


# ============================================
# SUBJECT
# ============================================

class Subject(Base, TimestampMixin):
    """
    Individual identified by driver's license number.

    Created on the first accepted ingestion and never deleted. Every
    accepted re-ingestion repoints ``current_mvr_id`` at the new record.
    """
    __tablename__ = "subjects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    drivers_license_number: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        unique=True
    )

    # Identity and physical description
    full_legal_name: Mapped[str] = mapped_column(String(255), nullable=False)
    birthdate: Mapped[str] = mapped_column(String(20), nullable=False)
    weight: Mapped[str] = mapped_column(String(20), nullable=False)
    sex: Mapped[str] = mapped_column(String(20), nullable=False)
    height: Mapped[str] = mapped_column(String(20), nullable=False)
    hair_color: Mapped[str] = mapped_column(String(50), nullable=False)
    eye_color: Mapped[str] = mapped_column(String(50), nullable=False)
    medical_information: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Contact
    address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    issued_state_code: Mapped[str] = mapped_column(String(10), nullable=False)
    zip: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    phone_number: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    current_mvr_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("mvr_records.id"),
        nullable=True
    )

    current_record: Mapped[Optional["MVRRecord"]] = relationship(
        "MVRRecord",
        foreign_keys=[current_mvr_id],
        lazy="joined"
    )

    def __repr__(self) -> str:
        return f"<Subject(id={self.id}, license='{self.drivers_license_number}')>"


# ============================================
# MVR RECORDS
# ============================================

class MVRRecord(Base, TimestampMixin):
    """
    One accepted MVR submission.

    Records are immutable once written. A newer submission for the same
    license creates a new row; the older row stays for history.
    """
    __tablename__ = "mvr_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Denormalized so superseded records stay reachable per license
    drivers_license_number: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    # Report details
    claim_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    order_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    order_date: Mapped[date] = mapped_column(Date, nullable=False)
    report_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    reference_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    system_use: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    mvr_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    state_code: Mapped[str] = mapped_column(String(10), nullable=False)
    purpose: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    time_frame: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    is_certified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    total_points: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    date_uploaded: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True
    )

    # Commercial and compliance metadata of the supplying company
    company_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    permissible_purpose: Mapped[PermissiblePurpose] = mapped_column(
        Enum(PermissiblePurpose),
        nullable=False
    )
    price_paid: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    redisclosure_authorization: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Retention period in days
    storage_limitations: Mapped[int] = mapped_column(Integer, nullable=False, default=1825)

    # Relationships
    license_info: Mapped[Optional["LicenseInfo"]] = relationship(
        "LicenseInfo",
        back_populates="record",
        uselist=False,
        cascade="all, delete-orphan",
        lazy="selectin"
    )
    violations: Mapped[List["TrafficViolation"]] = relationship(
        "TrafficViolation",
        back_populates="record",
        cascade="all, delete-orphan",
        order_by=lambda: (desc(TrafficViolation.violation_date), TrafficViolation.id),
        lazy="selectin"
    )
    withdrawals: Mapped[List["Withdrawal"]] = relationship(
        "Withdrawal",
        back_populates="record",
        cascade="all, delete-orphan",
        order_by=lambda: (desc(Withdrawal.effective_date), Withdrawal.id),
        lazy="selectin"
    )
    accidents: Mapped[List["AccidentReport"]] = relationship(
        "AccidentReport",
        back_populates="record",
        cascade="all, delete-orphan",
        order_by=lambda: (desc(AccidentReport.accident_date), AccidentReport.id),
        lazy="selectin"
    )
    crimes: Mapped[List["TrafficCrime"]] = relationship(
        "TrafficCrime",
        back_populates="record",
        cascade="all, delete-orphan",
        order_by=lambda: (desc(TrafficCrime.crime_date), TrafficCrime.id),
        lazy="selectin"
    )
    transaction: Mapped[Optional["Transaction"]] = relationship(
        "Transaction",
        back_populates="record",
        uselist=False,
        cascade="all, delete-orphan",
        lazy="selectin"
    )

    __table_args__ = (
        Index('ix_mvr_license_uploaded', 'drivers_license_number', 'date_uploaded'),
    )

    @property
    def seller_company_id(self) -> str:
        """Company that supplied this record."""
        if self.transaction is not None and self.transaction.seller_company_id:
            return self.transaction.seller_company_id
        return self.company_id

    @property
    def effective_report_date(self) -> date:
        return self.report_date or self.order_date

    def __repr__(self) -> str:
        return f"<MVRRecord(id={self.id}, license='{self.drivers_license_number}', company='{self.company_id}')>"


class LicenseInfo(Base):
    """License class, validity and restrictions for one record"""
    __tablename__ = "drivers_license_info"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    mvr_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("mvr_records.id", ondelete="CASCADE"),
        nullable=False,
        unique=True
    )

    license_class: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    issue_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    expiration_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    restrictions: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    record: Mapped["MVRRecord"] = relationship("MVRRecord", back_populates="license_info")

    def __repr__(self) -> str:
        return f"<LicenseInfo(mvr_id={self.mvr_id}, class='{self.license_class}')>"


class TrafficViolation(Base):
    """Moving violation listed on a record"""
    __tablename__ = "traffic_violations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    mvr_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("mvr_records.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    violation_date: Mapped[date] = mapped_column(Date, nullable=False)
    conviction_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    location: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    points_assessed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    violation_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    record: Mapped["MVRRecord"] = relationship("MVRRecord", back_populates="violations")

    def __repr__(self) -> str:
        return f"<TrafficViolation(mvr_id={self.mvr_id}, code='{self.violation_code}', date={self.violation_date})>"


class Withdrawal(Base):
    """Suspension, revocation or cancellation listed on a record"""
    __tablename__ = "withdrawals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    mvr_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("mvr_records.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    effective_date: Mapped[date] = mapped_column(Date, nullable=False)
    eligibility_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    action_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    record: Mapped["MVRRecord"] = relationship("MVRRecord", back_populates="withdrawals")

    def __repr__(self) -> str:
        return f"<Withdrawal(mvr_id={self.mvr_id}, type='{self.action_type}', date={self.effective_date})>"


class AccidentReport(Base):
    """Accident listed on a record"""
    __tablename__ = "accident_reports"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    mvr_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("mvr_records.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    accident_date: Mapped[date] = mapped_column(Date, nullable=False)
    location: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    acd_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    record: Mapped["MVRRecord"] = relationship("MVRRecord", back_populates="accidents")

    def __repr__(self) -> str:
        return f"<AccidentReport(mvr_id={self.mvr_id}, date={self.accident_date})>"


class TrafficCrime(Base):
    """Traffic crime listed on a record"""
    __tablename__ = "traffic_crimes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    mvr_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("mvr_records.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    crime_date: Mapped[date] = mapped_column(Date, nullable=False)
    conviction_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    offense_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    record: Mapped["MVRRecord"] = relationship("MVRRecord", back_populates="crimes")

    def __repr__(self) -> str:
        return f"<TrafficCrime(mvr_id={self.mvr_id}, code='{self.offense_code}', date={self.crime_date})>"


class Transaction(Base, TimestampMixin):
    """
    Seller/buyer linkage for one record.

    The seller is the company credited as supplier when another company
    retrieves the record.
    """
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    mvr_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("mvr_records.id", ondelete="CASCADE"),
        nullable=False
    )

    seller_company_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    buyer_company_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    state_code: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)

    record: Mapped["MVRRecord"] = relationship("MVRRecord", back_populates="transaction")

    __table_args__ = (
        UniqueConstraint('mvr_id', name='uq_transaction_mvr'),
    )

    def __repr__(self) -> str:
        return f"<Transaction(mvr_id={self.mvr_id}, seller='{self.seller_company_id}', buyer='{self.buyer_company_id}')>"


# ============================================
# HELPER FUNCTIONS
# ============================================

def parse_iso_date(value) -> Optional[date]:
    """
    Parse a date given as ``YYYY-MM-DD`` (optionally followed by a time part).

    Args:
        value: A date, datetime, ISO string or None

    Returns:
        The parsed date, or None when value is None/empty

    Raises:
        ValueError: If the string is not a valid ISO date
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip()[:10])


def optional_str(value) -> Optional[str]:
    """Coerce a loosely typed payload value (e.g. a numeric zip code) to str."""
    if value is None or value == "":
        return None
    return str(value)
