"""
Job schemas - the descriptor the scheduler polls for.

A JobDescriptor is the small record placed at `pending/<jobId>.json`.
The executor reads it, orders it by priority, and rewrites it only to
record retries.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterable

from discburn.errors import ParseError
from discburn.utils import parse_timestamp, utcnow


class Priority(str, Enum):
    """Job priority. Lower rank is served first."""
    URGENT = "urgent"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]

    @classmethod
    def parse(cls, value: Any) -> "Priority":
        """Parse a priority; a missing value means normal."""
        if value is None or value == "":
            return cls.NORMAL
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ParseError(f"Unknown priority: {value!r}")


_PRIORITY_RANK = {
    Priority.URGENT: 0,
    Priority.HIGH: 1,
    Priority.NORMAL: 2,
    Priority.LOW: 3,
}


class JobStatus(str, Enum):
    """Lifecycle states of a burn job."""
    CREATED = "created"
    PENDING = "pending"
    QUEUED = "queued"
    DOWNLOADING = "downloading"
    BURNING = "burning"
    VERIFYING = "verifying"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class JobDescriptor:
    """
    A burn job awaiting (or undergoing) execution.

    Attributes:
        job_id: Opaque job identifier
        priority: Scheduling priority
        files: Ordered file references to burn
        created: When the job was submitted
        status: Current status as last written to the pending set
        retry_count: Number of failed attempts so far
    """
    job_id: str
    priority: Priority = Priority.NORMAL
    files: list[str] = field(default_factory=list)
    created: datetime = field(default_factory=utcnow)
    status: JobStatus = JobStatus.PENDING
    retry_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "job_id": self.job_id,
            "priority": self.priority.value,
            "files": list(self.files),
            "file_count": len(self.files),
            "created": self.created.isoformat(),
            "status": self.status.value,
            "retry_count": self.retry_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobDescriptor":
        """Deserialize from dictionary, raising ParseError on bad input."""
        if not isinstance(data, dict):
            raise ParseError(f"Job descriptor must be an object, got {type(data).__name__}")
        job_id = data.get("job_id") or data.get("jobId")
        if not job_id or not isinstance(job_id, str):
            raise ParseError("Job descriptor is missing job_id")
        files = data.get("files", [])
        if not isinstance(files, list) or not all(isinstance(f, str) for f in files):
            raise ParseError(f"Job {job_id}: files must be a list of strings")
        try:
            created = parse_timestamp(data["created"]) if data.get("created") else utcnow()
            status = JobStatus(data.get("status", JobStatus.PENDING.value))
            retry_count = int(data.get("retry_count", data.get("retryCount", 0)))
        except (TypeError, ValueError) as e:
            raise ParseError(f"Job {job_id}: {e}")
        return cls(
            job_id=job_id,
            priority=Priority.parse(data.get("priority")),
            files=files,
            created=created,
            status=status,
            retry_count=retry_count,
        )

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), indent=2).encode("utf-8")

    @classmethod
    def from_json(cls, raw: bytes) -> "JobDescriptor":
        try:
            data = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ParseError(f"Job descriptor is not valid JSON: {e}")
        return cls.from_dict(data)


def sort_by_priority(descriptors: Iterable[JobDescriptor]) -> list[JobDescriptor]:
    """
    Order descriptors urgent-first.

    The sort is stable: equal-priority jobs keep the order the store
    returned them in.
    """
    return sorted(descriptors, key=lambda d: d.priority.rank)
