"""
Stage 1: company-centric partitioning and enrichment.

Each event is keyed to ``company=<id>/action=<op>/year=<yyyy>/month=<mm>/day=<dd>``
(UTC) and enriched with date parts, a masked license number, a risk score,
compliance flags and a pgaudit-style line.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from audit.events import AuditEventBase, OperationCategory, categorize_operation
from log_utils import mask_license_number

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r'[^A-Za-z0-9_-]')

DEFAULT_MAX_LENGTH = 50


class PipelineRecordError(ValueError):
    """Raised when a record cannot be processed by a pipeline stage."""
    pass


def sanitize_partition_value(value: Optional[str], max_length: int = DEFAULT_MAX_LENGTH) -> str:
    """Make a value safe for use as a partition path segment.

    Characters outside ``[A-Za-z0-9_-]`` become ``_`` and the result is
    truncated. Empty input yields ``unknown``.
    """
    if value is None:
        return "unknown"
    sanitized = _UNSAFE_CHARS.sub("_", str(value))[:max_length]
    return sanitized or "unknown"


def date_parts(timestamp: datetime) -> Dict[str, str]:
    """UTC date components of a timestamp. Naive timestamps are taken as UTC."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    utc = timestamp.astimezone(timezone.utc)
    return {
        "date": utc.strftime("%Y-%m-%d"),
        "hour": utc.strftime("%H"),
        "year": utc.strftime("%Y"),
        "month": utc.strftime("%m"),
        "day": utc.strftime("%d"),
    }


def company_partition_path(company: str, action: str, parts: Dict[str, str]) -> str:
    return f"company={company}/action={action}/year={parts['year']}/month={parts['month']}/day={parts['day']}"


def parse_partition_path(path: str) -> Dict[str, str]:
    """Split ``a=1/b=2`` into ``{"a": "1", "b": "2"}``."""
    keys = {}
    for segment in path.split("/"):
        name, sep, value = segment.partition("=")
        if not sep:
            raise PipelineRecordError(f"Malformed partition segment: {segment!r}")
        keys[name] = value
    return keys


def calculate_risk_score(event: AuditEventBase, category: str) -> int:
    score = 0
    if not event.success:
        score += 30
    if event.data_sensitivity == "HIGH":
        score += 40
    if category == OperationCategory.DELETE.value:
        score += 20
    if event.drivers_license_number:
        score += 10
    return min(score, 100)


def identify_compliance_flags(event: AuditEventBase, category: str) -> List[str]:
    flags = []
    if not event.user_id:
        flags.append("NO_USER_ID")
    if event.data_sensitivity == "HIGH" and not event.success:
        flags.append("FAILED_HIGH_SENSITIVITY")
    if category == OperationCategory.DELETE.value and not event.success:
        flags.append("FAILED_DELETE")
    return flags


def format_pgaudit(event: AuditEventBase, drivers_id: str, parts: Dict[str, str]) -> str:
    """Render the event as a comma-separated pgaudit SESSION line."""
    error_message = getattr(event, "error_message", None)
    fields = [
        "AUDIT:",
        "SESSION",
        event.timestamp.isoformat(),
        event.user_id or "system",
        "application",
        "127.0.0.1",
        "table",
        "mvr_records",
        f"{event.operation} operation",
        f"SUCCESS:{str(event.success).lower()}",
        drivers_id,
        event.operation,
        parts["year"],
        parts["month"],
        parts["day"],
        f"ERROR:{error_message}" if error_message else "",
    ]
    return ",".join(field for field in fields if field)


class AuditPartitioner:
    """
    Stage 1 of the audit pipeline.

    Args:
        company_id_max_length: Maximum length of the company partition value
    """

    name = "partition"

    def __init__(self, company_id_max_length: int = DEFAULT_MAX_LENGTH):
        self.company_id_max_length = company_id_max_length

    def __call__(self, event: AuditEventBase) -> List[Tuple[AuditEventBase, Dict[str, str]]]:
        if not event.operation or not event.operation.strip():
            raise PipelineRecordError("Event has no operation")

        raw_log = event.to_json()
        parts = date_parts(event.timestamp)
        company = sanitize_partition_value(
            event.company_id or event.user_id or "unknown", self.company_id_max_length
        )
        action = sanitize_partition_value(event.operation)
        drivers_id = sanitize_partition_value(event.drivers_license_number)
        category = OperationCategory(
            event.operation_category or categorize_operation(event.operation)
        ).value
        partition = company_partition_path(company, action, parts)

        enriched = event.model_copy(update={
            "company_partition": company,
            "operation_category": category,
            "action": action,
            "drivers_id": drivers_id,
            "drivers_license_masked": mask_license_number(event.drivers_license_number),
            "risk_score": calculate_risk_score(event, category),
            "compliance_flags": identify_compliance_flags(event, category),
            "pgaudit_formatted": format_pgaudit(event, drivers_id, parts),
            "s3_partition": partition,
            "raw_log": raw_log,
            **parts,
        })
        logger.debug("Partitioned %s event for company=%s action=%s", category, company, action)
        return [(enriched, parse_partition_path(partition))]
