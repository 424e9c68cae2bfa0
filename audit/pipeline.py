"""
Audit Pipeline Runner

Chains the three audit stages over batches of serialized events:

    AuditPartitioner -> SubjectRouter -> MirrorRouter

Every input record yields at least one result tagged with its record id.
A record that fails a stage is reported as ProcessingFailed with its
original data and goes no further; other records in the batch are
unaffected.

Transport:
    Batches use the shape ``{"records": [{"recordId": ..., "data": <base64>}]}``.
    ``decode_batch`` and ``encode_results`` convert to and from it.

Usage:
    pipeline = AuditPipeline()
    output = pipeline.process(decode_batch(payload))
    store.write(output.delivered)
"""

import base64
import binascii
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from audit.events import AuditEventBase, parse_event
from audit.mirror_router import MirrorRouter
from audit.partitioner import DEFAULT_MAX_LENGTH, AuditPartitioner, PipelineRecordError
from audit.subject_router import SubjectRouter
from database.monitoring import record_pipeline_result

logger = logging.getLogger(__name__)

Stage = Callable[[AuditEventBase], List[Tuple[AuditEventBase, Dict[str, str]]]]

# Errors that fail a single record
_RECORD_ERRORS = (ValidationError, PipelineRecordError, ValueError, TypeError, KeyError)


class RecordStatus(str, Enum):
    OK = "Ok"
    DROPPED = "Dropped"
    PROCESSING_FAILED = "ProcessingFailed"


@dataclass
class PipelineRecord:
    """One serialized event entering a stage."""
    record_id: str
    data: bytes


@dataclass
class TransformResult:
    """One serialized event leaving a stage."""
    record_id: str
    status: RecordStatus
    data: bytes
    partition_keys: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == RecordStatus.OK

    def event(self) -> AuditEventBase:
        return parse_event(self.data)

    def to_record(self) -> PipelineRecord:
        return PipelineRecord(record_id=self.record_id, data=self.data)


@dataclass
class PipelineOutput:
    """Final results of a pipeline run."""
    delivered: List[TransformResult] = field(default_factory=list)
    dropped: List[TransformResult] = field(default_factory=list)
    failed: List[TransformResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "delivered": len(self.delivered),
            "dropped": len(self.dropped),
            "failed": len(self.failed),
            "failed_record_ids": [result.record_id for result in self.failed],
        }


def _stage_name(stage: Stage) -> str:
    return getattr(stage, "name", getattr(stage, "__name__", "stage"))


def apply_stage(stage: Stage, record: PipelineRecord) -> List[TransformResult]:
    """Run one stage on one record, converting any record error into a failed result."""
    name = _stage_name(stage)
    try:
        outputs = stage(parse_event(record.data))
    except _RECORD_ERRORS as e:
        logger.warning("Stage %s failed record %s: %s", name, record.record_id, e)
        record_pipeline_result(name, RecordStatus.PROCESSING_FAILED.value)
        return [TransformResult(
            record_id=record.record_id,
            status=RecordStatus.PROCESSING_FAILED,
            data=record.data,
            error=str(e)
        )]

    if not outputs:
        record_pipeline_result(name, RecordStatus.DROPPED.value)
        return [TransformResult(record_id=record.record_id, status=RecordStatus.DROPPED, data=record.data)]

    record_pipeline_result(name, RecordStatus.OK.value)
    return [
        TransformResult(
            record_id=record.record_id,
            status=RecordStatus.OK,
            data=event.to_json().encode("utf-8"),
            partition_keys=keys
        )
        for event, keys in outputs
    ]


def run_stage(stage: Stage, records: List[PipelineRecord], max_workers: int = 1) -> List[TransformResult]:
    """
    Apply a stage to every record.

    Args:
        stage: Stage callable
        records: Input records
        max_workers: Worker threads (1 runs inline)

    Returns:
        Results grouped by input record, in input order
    """
    if max_workers <= 1 or len(records) <= 1:
        grouped = [apply_stage(stage, record) for record in records]
    else:
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="audit-stage") as executor:
            grouped = list(executor.map(lambda record: apply_stage(stage, record), records))
    return [result for results in grouped for result in results]


class AuditPipeline:
    """
    Runs partitioning, subject routing and mirroring in sequence.

    Args:
        stages: Stages to run (defaults to the three audit stages)
        company_id_max_length: Company partition length for the default stages
        max_workers: Worker threads per stage
    """

    def __init__(
        self,
        stages: Optional[List[Stage]] = None,
        company_id_max_length: int = DEFAULT_MAX_LENGTH,
        max_workers: int = 1
    ):
        self.stages = stages or [
            AuditPartitioner(company_id_max_length),
            SubjectRouter(),
            MirrorRouter(company_id_max_length),
        ]
        self.max_workers = max_workers

    def process(self, records: List[PipelineRecord]) -> PipelineOutput:
        output = PipelineOutput()
        pending = list(records)

        for stage in self.stages:
            results = run_stage(stage, pending, self.max_workers)
            pending = []
            for result in results:
                if result.status == RecordStatus.OK:
                    pending.append(result.to_record())
                elif result.status == RecordStatus.DROPPED:
                    output.dropped.append(result)
                else:
                    output.failed.append(result)
            if not pending:
                break

        # Partition keys of the last stage travel with the delivered records
        if pending:
            output.delivered = [
                result for result in results if result.status == RecordStatus.OK
            ]

        logger.info(
            "Audit pipeline processed %d input record(s): delivered=%d dropped=%d failed=%d",
            len(records), len(output.delivered), len(output.dropped), len(output.failed)
        )
        return output


# ============================================
# TRANSPORT
# ============================================

def decode_batch(payload: Dict[str, Any]) -> List[PipelineRecord]:
    """
    Decode a ``{"records": [...]}`` batch.

    Records with undecodable base64 data are kept with empty data so that
    they fail in the first stage under their own record id.

    Raises:
        ValueError: If the batch itself is malformed
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("records"), list):
        raise ValueError("Batch must be an object with a 'records' array")

    records = []
    for index, item in enumerate(payload["records"]):
        if not isinstance(item, dict) or "recordId" not in item:
            raise ValueError(f"Batch record at index {index} has no recordId")
        try:
            data = base64.b64decode(item.get("data") or "", validate=True)
        except (binascii.Error, ValueError) as e:
            logger.warning("Record %s has undecodable data: %s", item["recordId"], e)
            data = b""
        records.append(PipelineRecord(record_id=str(item["recordId"]), data=data))
    return records


def encode_results(results: List[TransformResult]) -> Dict[str, Any]:
    """Encode results into the ``{"records": [...]}`` batch shape."""
    records = []
    for result in results:
        data = result.data
        if result.ok:
            data = data.rstrip(b"\n") + b"\n"
        entry = {
            "recordId": result.record_id,
            "result": result.status.value,
            "data": base64.b64encode(data).decode("ascii"),
        }
        if result.partition_keys:
            entry["metadata"] = {"partitionKeys": dict(result.partition_keys)}
        records.append(entry)
    return {"records": records}
