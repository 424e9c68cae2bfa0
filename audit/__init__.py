"""
Audit module for the MVR Exchange

Event envelopes, emission and the three-stage partitioning pipeline.
"""

from audit.events import (
    AuditEventBase,
    AuditOperation,
    BatchSummaryEvent,
    FailureEvent,
    OperationCategory,
    ReadEvent,
    WriteEvent,
    categorize_operation,
    parse_event,
)
from audit.emitter import (
    AuditDispatcher,
    AuditEmissionError,
    AuditEventEmitter,
    AuditSink,
    FileAuditSink,
    InMemoryAuditSink,
)
from audit.partitioner import AuditPartitioner, PipelineRecordError
from audit.subject_router import SubjectRouter
from audit.mirror_router import MirrorDecision, MirrorRouter, decide_mirroring
from audit.pipeline import (
    AuditPipeline,
    PipelineOutput,
    PipelineRecord,
    RecordStatus,
    TransformResult,
    decode_batch,
    encode_results,
    run_stage,
)
from audit.storage import PartitionedAuditStore, PipelineAuditSink

__all__ = [
    # Events
    "AuditEventBase",
    "AuditOperation",
    "BatchSummaryEvent",
    "FailureEvent",
    "OperationCategory",
    "ReadEvent",
    "WriteEvent",
    "categorize_operation",
    "parse_event",
    # Emission
    "AuditDispatcher",
    "AuditEmissionError",
    "AuditEventEmitter",
    "AuditSink",
    "FileAuditSink",
    "InMemoryAuditSink",
    # Pipeline
    "AuditPartitioner",
    "SubjectRouter",
    "MirrorDecision",
    "MirrorRouter",
    "decide_mirroring",
    "AuditPipeline",
    "PipelineOutput",
    "PipelineRecord",
    "PipelineRecordError",
    "RecordStatus",
    "TransformResult",
    "decode_batch",
    "encode_results",
    "run_stage",
    # Storage
    "PartitionedAuditStore",
    "PipelineAuditSink",
]
