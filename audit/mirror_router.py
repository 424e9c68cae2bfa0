"""
Stage 3: seller mirroring.

When one company retrieves a record supplied by another, the seller gets its
own copy of the READ event under its company partition with action
``MVR-RETRIEVED``. Every event is passed through unchanged; only a READ with a
distinct known seller produces the extra copy.
"""

import logging
from enum import Enum
from typing import Dict, List, Optional, Tuple

from audit.events import MIRROR_ACTION, AuditEventBase, OperationCategory, ReadEvent
from audit.partitioner import (
    DEFAULT_MAX_LENGTH,
    company_partition_path,
    date_parts,
    parse_partition_path,
    sanitize_partition_value,
)

logger = logging.getLogger(__name__)


class MirrorDecision(str, Enum):
    NOT_A_READ = "NOT_A_READ"
    NO_SELLER = "NO_SELLER"
    SAME_COMPANY = "SAME_COMPANY"
    MIRROR = "MIRROR"


def decide_mirroring(event: AuditEventBase) -> MirrorDecision:
    """Classify an event for mirroring."""
    if event.operation_category != OperationCategory.READ.value:
        return MirrorDecision.NOT_A_READ
    if not isinstance(event, ReadEvent) or event.mirroring_target:
        return MirrorDecision.NO_SELLER

    seller = event.seller.company_id if event.seller else None
    if not seller:
        return MirrorDecision.NO_SELLER
    if seller == event.accessor.company_id:
        return MirrorDecision.SAME_COMPANY
    return MirrorDecision.MIRROR


def _current_partition(event: AuditEventBase) -> Optional[str]:
    return event.subject_partition or event.s3_partition


class MirrorRouter:
    """
    Stage 3 of the audit pipeline.

    Args:
        company_id_max_length: Maximum length of the seller partition value
    """

    name = "mirror"

    def __init__(self, company_id_max_length: int = DEFAULT_MAX_LENGTH):
        self.company_id_max_length = company_id_max_length

    def __call__(self, event: AuditEventBase) -> List[Tuple[AuditEventBase, Dict[str, str]]]:
        partition = _current_partition(event)
        outputs = [(event, parse_partition_path(partition) if partition else {})]

        decision = decide_mirroring(event)
        if decision != MirrorDecision.MIRROR:
            logger.debug("No mirror for %s event: %s", event.operation, decision.value)
            return outputs

        outputs.append(self.mirror(event))
        return outputs

    def mirror(self, event: ReadEvent) -> Tuple[ReadEvent, Dict[str, str]]:
        """Build the seller's copy of a READ event."""
        seller = event.seller.company_id
        accessor = event.accessor.company_id or "unknown"
        seller_partition = company_partition_path(
            sanitize_partition_value(seller, self.company_id_max_length),
            MIRROR_ACTION,
            date_parts(event.timestamp)
        )
        copy = event.model_copy(update={
            "mirroring_target": "seller",
            "target_company_id": seller,
            "retrieved_by_company_id": accessor,
            "company_partition": sanitize_partition_value(seller, self.company_id_max_length),
            "action": MIRROR_ACTION,
            "s3_partition": seller_partition,
            "subject_partition": None,
        })
        logger.info("Mirroring READ to seller=%s retrieved_by=%s", seller, accessor)
        return copy, parse_partition_path(seller_partition)
