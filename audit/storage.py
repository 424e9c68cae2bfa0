"""
Partitioned audit storage.

Delivered pipeline records are appended as NDJSON to
``<root>/<partition>/events.ndjson``, once for each partition an event
carries (company-centric and, when present, subject-centric).
"""

import json
import logging
import threading
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List

from audit.emitter import AuditSink
from audit.partitioner import PipelineRecordError
from audit.pipeline import AuditPipeline, PipelineRecord, TransformResult

logger = logging.getLogger(__name__)

EVENTS_FILENAME = "events.ndjson"


class PartitionedAuditStore:
    """
    Append-only NDJSON files laid out by partition path.

    Args:
        root: Base directory for all partitions
    """

    def __init__(self, root: str):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _partition_file(self, partition: str) -> Path:
        path = (self.root / partition / EVENTS_FILENAME).resolve()
        if self.root not in path.parents:
            raise ValueError(f"Partition escapes storage root: {partition!r}")
        return path

    def write(self, results: Iterable[TransformResult]) -> int:
        """
        Append delivered results to their partitions.

        Returns:
            Number of lines written
        """
        written = 0
        for result in results:
            if not result.ok:
                continue
            event = result.event()
            line = event.to_json()
            for partition in (event.s3_partition, event.subject_partition):
                if not partition:
                    continue
                path = self._partition_file(partition)
                with self._lock:
                    path.parent.mkdir(parents=True, exist_ok=True)
                    with open(path, "a", encoding="utf-8") as f:
                        f.write(line + "\n")
                written += 1
        logger.debug("Stored %d audit line(s) under %s", written, self.root)
        return written

    def read(self, partition: str) -> List[Dict[str, Any]]:
        """Events stored under one partition, in write order."""
        path = self._partition_file(partition)
        if not path.exists():
            return []
        with open(path, "r", encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]

    def partitions(self) -> List[str]:
        """Every partition path holding events, sorted."""
        return sorted(
            path.parent.relative_to(self.root).as_posix()
            for path in self.root.rglob(EVENTS_FILENAME)
        )


class PipelineAuditSink(AuditSink):
    """
    Audit sink that runs each emitted event through the pipeline and stores
    the delivered records.

    Raises PipelineRecordError from ``write`` when the event failed a stage;
    the emitter reports that as an emission failure.
    """

    def __init__(self, pipeline: AuditPipeline, store: PartitionedAuditStore):
        self.pipeline = pipeline
        self.store = store

    def write(self, line: str) -> None:
        record = PipelineRecord(record_id=uuid.uuid4().hex, data=line.encode("utf-8"))
        output = self.pipeline.process([record])
        if output.failed:
            raise PipelineRecordError("; ".join(r.error or "processing failed" for r in output.failed))
        self.store.write(output.delivered)
