"""
Manifest schema - the authoritative record of a burn job.

A Manifest is a superset of the JobDescriptor: it adds the target device,
destinations, disc settings, the lifecycle history and an audit log.
It lives at `jobs/<jobId>/manifest.json`.

Invariants (enforced by discburn.manifest, checked again on load):
- lifecycle.current_state equals the `to` of the last transition record
- the transition history is append-only
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Union

from discburn.errors import ParseError
from discburn.utils import parse_timestamp, utcnow

from .job import JobDescriptor, JobStatus, Priority

MANIFEST_VERSION = "2.0.0"
MANIFEST_SCHEMA = "discburn-manifest-v2"


@dataclass(frozen=True)
class StateTransition:
    """
    One entry of the lifecycle history.

    Attributes:
        from_state: Previous state (None only for the very first record)
        to_state: New state
        timestamp: When the transition happened
        actor: Who requested it (executor id, initiator id, "system")
        reason: Optional free-text reason
    """
    from_state: Optional[JobStatus]
    to_state: JobStatus
    timestamp: datetime
    actor: str = "system"
    reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "from": self.from_state.value if self.from_state else None,
            "to": self.to_state.value,
            "timestamp": self.timestamp.isoformat(),
            "actor": self.actor,
        }
        if self.reason is not None:
            result["reason"] = self.reason
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StateTransition":
        return cls(
            from_state=JobStatus(data["from"]) if data.get("from") else None,
            to_state=JobStatus(data["to"]),
            timestamp=parse_timestamp(data["timestamp"]),
            actor=data.get("actor", "system"),
            reason=data.get("reason"),
        )


@dataclass(frozen=True)
class AuditEntry:
    """A timestamped administrative action recorded on the manifest."""
    timestamp: datetime
    action: str
    actor: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "action": self.action,
            "actor": self.actor,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuditEntry":
        return cls(
            timestamp=parse_timestamp(data["timestamp"]),
            action=data["action"],
            actor=data.get("actor", "system"),
            details=data.get("details") or {},
        )


@dataclass
class TargetDevice:
    name: str = "HP DVD557s"
    type: str = "dvd"
    model: Optional[str] = "HP DVD557s"
    connection: Optional[str] = "usb"

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "model": self.model,
            "connection": self.connection,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TargetDevice":
        return cls(
            name=data.get("name", "HP DVD557s"),
            type=data.get("type", "dvd"),
            model=data.get("model"),
            connection=data.get("connection"),
        )


@dataclass
class DiscSettings:
    type: str = "DVD-R"
    speed: Union[str, int] = "auto"
    verify: bool = True
    finalize: bool = True
    label: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "speed": self.speed,
            "verify": self.verify,
            "finalize": self.finalize,
            "label": self.label,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DiscSettings":
        return cls(
            type=data.get("type", "DVD-R"),
            speed=data.get("speed", "auto"),
            verify=data.get("verify", True),
            finalize=data.get("finalize", True),
            label=data.get("label"),
        )


@dataclass
class PayloadFile:
    path: str
    size: Optional[int] = None
    checksum: Optional[str] = None
    include: bool = True

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"path": self.path, "include": self.include}
        if self.size is not None:
            result["size"] = self.size
        if self.checksum is not None:
            result["checksum"] = self.checksum
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PayloadFile":
        return cls(
            path=data["path"],
            size=data.get("size"),
            checksum=data.get("checksum"),
            include=data.get("include", True),
        )


@dataclass
class Manifest:
    """
    Full record of one burn job.

    Only discburn.manifest.transition() should change `current_state`,
    `status` or `states`.
    """
    job_id: str
    created: datetime = field(default_factory=utcnow)
    updated: datetime = field(default_factory=utcnow)
    status: JobStatus = JobStatus.CREATED
    priority: Priority = Priority.NORMAL
    source_platform: str = "discburn-cli"
    source_workspace: Optional[str] = None
    device: TargetDevice = field(default_factory=TargetDevice)
    destinations: list[str] = field(default_factory=list)
    disc_settings: DiscSettings = field(default_factory=DiscSettings)
    files: list[PayloadFile] = field(default_factory=list)
    total_size: int = 0
    checksum: Optional[str] = None
    states: list[StateTransition] = field(default_factory=list)
    current_state: JobStatus = JobStatus.CREATED
    retry_count: int = 0
    max_retries: int = 3
    notifications: dict[str, Any] = field(default_factory=lambda: {
        "on_state_change": True,
        "on_complete": True,
        "on_error": True,
    })
    created_by: Optional[str] = None
    executor_id: Optional[str] = None
    audit_log: list[AuditEntry] = field(default_factory=list)
    version: str = MANIFEST_VERSION

    @property
    def file_paths(self) -> list[str]:
        """Paths of files included in the burn, in order."""
        return [f.path for f in self.files if f.include]

    def to_descriptor(self) -> JobDescriptor:
        """The pending-set view of this manifest."""
        return JobDescriptor(
            job_id=self.job_id,
            priority=self.priority,
            files=self.file_paths,
            created=self.created,
            status=self.current_state,
            retry_count=self.retry_count,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "version": self.version,
            "schema": MANIFEST_SCHEMA,
            "job": {
                "id": self.job_id,
                "created": self.created.isoformat(),
                "updated": self.updated.isoformat(),
                "status": self.status.value,
                "priority": self.priority.value,
                "source": {
                    "platform": self.source_platform,
                    "workspace": self.source_workspace,
                },
            },
            "target": {
                "device": self.device.to_dict(),
                "destinations": list(self.destinations),
                "disc_settings": self.disc_settings.to_dict(),
            },
            "payload": {
                "total_files": len(self.files),
                "total_size": self.total_size,
                "checksum": self.checksum,
                "files": [f.to_dict() for f in self.files],
            },
            "lifecycle": {
                "states": [s.to_dict() for s in self.states],
                "current_state": self.current_state.value,
                "retry_count": self.retry_count,
                "max_retries": self.max_retries,
            },
            "notifications": dict(self.notifications),
            "admin": {
                "created_by": self.created_by,
                "executor_id": self.executor_id,
                "audit_log": [e.to_dict() for e in self.audit_log],
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Manifest":
        """Deserialize from dictionary, raising ParseError on bad input."""
        try:
            if data.get("schema") != MANIFEST_SCHEMA:
                raise ParseError(f"Unsupported manifest schema: {data.get('schema')!r}")
            job = data["job"]
            target = data.get("target", {})
            payload = data.get("payload", {})
            lifecycle = data["lifecycle"]
            admin = data.get("admin", {})
            manifest = cls(
                job_id=job["id"],
                created=parse_timestamp(job["created"]),
                updated=parse_timestamp(job["updated"]),
                status=JobStatus(job["status"]),
                priority=Priority.parse(job.get("priority")),
                source_platform=job.get("source", {}).get("platform", "discburn-cli"),
                source_workspace=job.get("source", {}).get("workspace"),
                device=TargetDevice.from_dict(target.get("device", {})),
                destinations=list(target.get("destinations", [])),
                disc_settings=DiscSettings.from_dict(target.get("disc_settings", {})),
                files=[PayloadFile.from_dict(f) for f in payload.get("files", [])],
                total_size=payload.get("total_size", 0) or 0,
                checksum=payload.get("checksum"),
                states=[StateTransition.from_dict(s) for s in lifecycle.get("states", [])],
                current_state=JobStatus(lifecycle["current_state"]),
                retry_count=int(lifecycle.get("retry_count", 0)),
                max_retries=int(lifecycle.get("max_retries", 3)),
                notifications=data.get("notifications", {}),
                created_by=admin.get("created_by"),
                executor_id=admin.get("executor_id"),
                audit_log=[AuditEntry.from_dict(e) for e in admin.get("audit_log", [])],
                version=data.get("version", MANIFEST_VERSION),
            )
        except ParseError:
            raise
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ParseError(f"Malformed manifest: {e!r}")

        if manifest.states and manifest.states[-1].to_state != manifest.current_state:
            raise ParseError(
                f"Manifest {manifest.job_id}: current_state {manifest.current_state.value} "
                f"does not match last transition {manifest.states[-1].to_state.value}"
            )
        return manifest

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), indent=2).encode("utf-8")

    @classmethod
    def from_json(cls, raw: bytes) -> "Manifest":
        try:
            data = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ParseError(f"Manifest is not valid JSON: {e}")
        if not isinstance(data, dict):
            raise ParseError("Manifest must be a JSON object")
        return cls.from_dict(data)
