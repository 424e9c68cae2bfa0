"""
Typed audit event envelopes.

Every audit fact is one of four kinds, discriminated by the ``kind`` field:

- WRITE: an accepted (or suppressed duplicate) ingestion
- READ: a successful retrieval, carrying accessor and seller context
- BATCH_SUMMARY: counts for one batch ingestion
- FAILURE: any failed ingestion or retrieval

Events are serialized as one JSON object per line. Pipeline stages add the
partition and enrichment fields declared on the base model.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


# ============================================
# ENUMS
# ============================================

class OperationCategory(str, Enum):
    READ = "READ"
    WRITE = "WRITE"
    DELETE = "DELETE"


class AuditOperation(str, Enum):
    """Operation tags emitted by the record store"""
    ADD_MVR = "ADD_MVR"
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DUPLICATE_ATTEMPT = "DUPLICATE_ATTEMPT"
    BATCH_ADD = "BATCH_ADD"
    GET_MVR = "GET_MVR"


# Action recorded on the copy of a READ event delivered to the seller
MIRROR_ACTION = "MVR-RETRIEVED"

_VERB_CATEGORIES = {
    "GET": OperationCategory.READ,
    "FETCH": OperationCategory.READ,
    "READ": OperationCategory.READ,
    "ADD": OperationCategory.WRITE,
    "CREATE": OperationCategory.WRITE,
    "UPDATE": OperationCategory.WRITE,
    "MODIFY": OperationCategory.WRITE,
    "BATCH": OperationCategory.WRITE,
    "DUPLICATE": OperationCategory.WRITE,
    "DELETE": OperationCategory.DELETE,
    "REMOVE": OperationCategory.DELETE,
}


def categorize_operation(operation: str) -> OperationCategory:
    """
    Classify an operation name by its leading verb.

    ``GET_MVR`` is a READ, ``BATCH_ADD`` a WRITE, ``REMOVE_RECORD`` a DELETE.
    Unknown verbs are treated as READ.
    """
    verb = operation.upper().replace("-", "_").split("_", 1)[0]
    return _VERB_CATEGORIES.get(verb, OperationCategory.READ)


# ============================================
# CONTEXT BLOCKS
# ============================================

class CreatorContext(BaseModel):
    """Company that produced a WRITE."""
    company_id: str
    permissible_purpose: Optional[str] = None


class AccessorContext(BaseModel):
    """Company that performed a READ."""
    company_id: Optional[str] = None
    user_id: Optional[str] = None
    permissible_purpose: Optional[str] = None
    access_timestamp: datetime


class SellerContext(BaseModel):
    """Company that supplied the record read."""
    company_id: Optional[str] = None
    seller_id: Optional[str] = None
    buyer_id: Optional[str] = None
    transaction_state: Optional[str] = None


# ============================================
# ENVELOPES
# ============================================

class AuditEventBase(BaseModel):
    """Fields shared by every audit event."""
    model_config = ConfigDict(use_enum_values=True)

    timestamp: datetime
    operation: str
    operation_category: Optional[OperationCategory] = None
    success: bool = True
    affected_records_count: int = 0
    company_id: Optional[str] = None
    company_partition: Optional[str] = None
    user_id: Optional[str] = None
    function_name: Optional[str] = None
    drivers_license_number: Optional[str] = None
    data_sensitivity: str = "HIGH"

    # Added by the audit pipeline
    date: Optional[str] = None
    hour: Optional[str] = None
    year: Optional[str] = None
    month: Optional[str] = None
    day: Optional[str] = None
    action: Optional[str] = None
    drivers_id: Optional[str] = None
    drivers_license_masked: Optional[str] = None
    risk_score: Optional[int] = None
    compliance_flags: Optional[List[str]] = None
    pgaudit_formatted: Optional[str] = None
    s3_partition: Optional[str] = None
    subject_partition: Optional[str] = None
    raw_log: Optional[str] = None

    def to_json(self) -> str:
        return self.model_dump_json(exclude_none=True)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class WriteEvent(AuditEventBase):
    kind: Literal["WRITE"] = "WRITE"
    creator: CreatorContext
    outcome: Optional[str] = None
    mvr_id: Optional[int] = None
    subject_id: Optional[int] = None
    full_legal_name: Optional[str] = None
    issued_state_code: Optional[str] = None
    order_id: Optional[str] = None
    order_date: Optional[str] = None
    report_date: Optional[str] = None
    state_code: Optional[str] = None
    mvr_type: Optional[str] = None
    is_certified: Optional[bool] = None
    total_points: Optional[int] = None
    price_paid: Optional[float] = None
    storage_limitations: Optional[int] = None


class ReadEvent(AuditEventBase):
    kind: Literal["READ"] = "READ"
    accessor: AccessorContext
    seller: Optional[SellerContext] = None
    mvr_id: Optional[int] = None
    subject_id: Optional[int] = None
    days_requested: Optional[int] = None

    # Set only on the copy delivered to the seller
    mirroring_target: Optional[str] = None
    target_company_id: Optional[str] = None
    retrieved_by_company_id: Optional[str] = None


class BatchSummaryEvent(AuditEventBase):
    kind: Literal["BATCH_SUMMARY"] = "BATCH_SUMMARY"
    total_records: int
    new_records: int = 0
    updated_records: int = 0
    skipped_records: int = 0
    failed_records: int = 0


class FailureEvent(AuditEventBase):
    kind: Literal["FAILURE"] = "FAILURE"
    success: bool = False
    error_message: str


AuditEvent = Annotated[
    Union[WriteEvent, ReadEvent, BatchSummaryEvent, FailureEvent],
    Field(discriminator="kind")
]

_event_adapter = TypeAdapter(AuditEvent)


def parse_event(data: Union[bytes, str, Dict[str, Any]]) -> AuditEventBase:
    """
    Parse one serialized event into its typed envelope.

    Raises:
        pydantic.ValidationError: If the payload is not a valid event
    """
    if isinstance(data, dict):
        return _event_adapter.validate_python(data)
    return _event_adapter.validate_json(data)
