"""
Stage 2: subject-centric re-keying.

Adds ``drivers_id=<id>/year=<yyyy>/month=<mm>/day=<dd>/action=<op>/company=<id>``
so that every access to one subject's record can be listed from a single
prefix. The company-centric partition is kept.
"""

import logging
from typing import Dict, List, Tuple

from audit.events import AuditEventBase
from audit.partitioner import PipelineRecordError, date_parts, parse_partition_path

logger = logging.getLogger(__name__)


def subject_partition_path(drivers_id: str, action: str, company: str, parts: Dict[str, str]) -> str:
    return (
        f"drivers_id={drivers_id}/year={parts['year']}/month={parts['month']}/day={parts['day']}"
        f"/action={action}/company={company}"
    )


class SubjectRouter:
    """Stage 2 of the audit pipeline. Requires stage 1 output."""

    name = "subject"

    def __call__(self, event: AuditEventBase) -> List[Tuple[AuditEventBase, Dict[str, str]]]:
        if not event.s3_partition:
            raise PipelineRecordError("Missing s3_partition in processed record")

        company_keys = parse_partition_path(event.s3_partition)
        partition = subject_partition_path(
            event.drivers_id or "unknown",
            event.action or company_keys.get("action", "unknown"),
            event.company_partition or company_keys.get("company", "unknown"),
            date_parts(event.timestamp)
        )
        routed = event.model_copy(update={"subject_partition": partition})
        return [(routed, parse_partition_path(partition))]
