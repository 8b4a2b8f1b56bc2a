"""
Administrative audit log.

Platform-level record of who did what (submissions, cancels, completions,
retries), kept in the store at `admin/audit.json` and bounded to the most
recent entries. Per-job history lives in the manifest instead.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from discburn.errors import ParseError
from discburn.store import BlobStore, JobPaths
from discburn.utils import generate_ulid, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

MAX_AUDIT_ENTRIES = 500

LEVELS = ("info", "warn", "error", "admin")


@dataclass(frozen=True)
class AdminAuditEntry:
    """
    One administrative action.

    Attributes:
        id: Unique entry id
        timestamp: When it happened
        level: info | warn | error | admin
        category: Area of the platform (job, signal, executor, config)
        action: Upper-case action name, e.g. JOB_SUBMITTED
        actor: Agent identity
        target: Usually a job id
        details: Free-form context
        result: success | failure
    """
    id: str
    timestamp: datetime
    level: str
    category: str
    action: str
    actor: str
    target: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)
    result: str = "success"

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "level": self.level,
            "category": self.category,
            "action": self.action,
            "actor": self.actor,
            "details": self.details,
            "result": self.result,
        }
        if self.target is not None:
            result["target"] = self.target
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AdminAuditEntry":
        return cls(
            id=data["id"],
            timestamp=parse_timestamp(data["timestamp"]),
            level=data.get("level", "info"),
            category=data.get("category", "general"),
            action=data["action"],
            actor=data.get("actor", "system"),
            target=data.get("target"),
            details=data.get("details") or {},
            result=data.get("result", "success"),
        )


class AuditLog:
    """Append-and-trim audit log stored as a single blob."""

    def __init__(self, store: BlobStore, max_entries: int = MAX_AUDIT_ENTRIES):
        self.store = store
        self.max_entries = max_entries

    def _load_raw(self) -> list[dict[str, Any]]:
        try:
            data = self.store.get_json(JobPaths.AUDIT_LOG)
        except ParseError as e:
            logger.warning(f"Audit log is corrupt, starting a new one: {e}")
            return []
        if not isinstance(data, dict) or not isinstance(data.get("entries"), list):
            return []
        return data["entries"]

    def log(
        self,
        action: str,
        actor: str,
        category: str = "job",
        level: str = "info",
        target: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        result: str = "success",
    ) -> AdminAuditEntry:
        """Append an entry and persist the trimmed log."""
        if level not in LEVELS:
            raise ValueError(f"Unknown audit level: {level}")
        entry = AdminAuditEntry(
            id=f"audit-{generate_ulid()}",
            timestamp=utcnow(),
            level=level,
            category=category,
            action=action,
            actor=actor,
            target=target,
            details=details or {},
            result=result,
        )
        entries = self._load_raw()
        entries.append(entry.to_dict())
        self.store.put_json(JobPaths.AUDIT_LOG, {"entries": entries[-self.max_entries:]})
        return entry

    def entries(self, limit: int = 50) -> list[AdminAuditEntry]:
        """The most recent `limit` entries, oldest first."""
        if limit <= 0:
            return []
        parsed = []
        for raw in self._load_raw()[-limit:]:
            try:
                parsed.append(AdminAuditEntry.from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed audit entry: {e!r}")
        return parsed
