"""
Manifest state machine.

Owns the legal lifecycle of a burn job:

    created     -> pending, cancelled
    pending     -> queued, cancelled
    queued      -> downloading, cancelled
    downloading -> burning, failed, cancelled
    burning     -> verifying, failed, cancelled
    verifying   -> complete, failed
    complete    -> (terminal)
    failed      -> pending      (retry)
    cancelled   -> pending      (resubmission)

Functions here only touch the Manifest object. Persisting it is the
caller's job, so everything is testable without a store.
"""

import hashlib
from typing import Any, Optional, Sequence

from discburn.errors import InvalidTransition
from discburn.schemas import (
    AuditEntry,
    DiscSettings,
    JobDescriptor,
    JobStatus,
    Manifest,
    PayloadFile,
    Priority,
    StateTransition,
    TargetDevice,
)
from discburn.utils import utcnow


VALID_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.CREATED: frozenset({JobStatus.PENDING, JobStatus.CANCELLED}),
    JobStatus.PENDING: frozenset({JobStatus.QUEUED, JobStatus.CANCELLED}),
    JobStatus.QUEUED: frozenset({JobStatus.DOWNLOADING, JobStatus.CANCELLED}),
    JobStatus.DOWNLOADING: frozenset({JobStatus.BURNING, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.BURNING: frozenset({JobStatus.VERIFYING, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.VERIFYING: frozenset({JobStatus.COMPLETE, JobStatus.FAILED}),
    JobStatus.COMPLETE: frozenset(),
    JobStatus.FAILED: frozenset({JobStatus.PENDING}),
    JobStatus.CANCELLED: frozenset({JobStatus.PENDING}),
}

# States with no outgoing edge.
TERMINAL_STATES = frozenset(s for s, allowed in VALID_TRANSITIONS.items() if not allowed)

DEFAULT_DESTINATIONS = ("OneDrive", "SovereignCapsule")


def is_valid_transition(from_state: JobStatus, to_state: JobStatus) -> bool:
    """Check whether `from_state -> to_state` is in the transition table."""
    return to_state in VALID_TRANSITIONS.get(from_state, frozenset())


def transition(
    manifest: Manifest,
    new_state: JobStatus,
    actor: str = "system",
    reason: Optional[str] = None,
) -> Manifest:
    """
    Move a manifest to `new_state`.

    Appends exactly one transition record and one STATE_TRANSITION audit
    entry, updates current_state, the job status mirror and `updated`.

    Args:
        manifest: Manifest to mutate
        new_state: Requested state
        actor: Identity requesting the change
        reason: Optional free-text reason

    Returns:
        The same manifest, for chaining

    Raises:
        InvalidTransition: If the table forbids the change. The manifest is
            left untouched.
    """
    previous = manifest.current_state
    try:
        new_state = JobStatus(new_state)
    except ValueError:
        raise InvalidTransition(previous.value, str(new_state)) from None

    if not is_valid_transition(previous, new_state):
        raise InvalidTransition(previous.value, new_state.value)

    now = utcnow()
    record = StateTransition(
        from_state=previous,
        to_state=new_state,
        timestamp=now,
        actor=actor,
        reason=reason,
    )
    entry = AuditEntry(
        timestamp=now,
        action="STATE_TRANSITION",
        actor=actor,
        details={"from": previous.value, "to": new_state.value, "reason": reason},
    )

    manifest.states.append(record)
    manifest.current_state = new_state
    manifest.status = new_state
    manifest.updated = now
    manifest.audit_log.append(entry)
    return manifest


def record_action(
    manifest: Manifest,
    action: str,
    actor: str = "system",
    details: Optional[dict[str, Any]] = None,
) -> AuditEntry:
    """Append an audit entry that is not a state change."""
    now = utcnow()
    entry = AuditEntry(timestamp=now, action=action, actor=actor, details=details or {})
    manifest.audit_log.append(entry)
    manifest.updated = now
    return entry


def calculate_payload_checksum(files: Sequence[str]) -> str:
    """Order-independent checksum of the file list."""
    content = "\n".join(sorted(files))
    return f"sha256:{hashlib.sha256(content.encode('utf-8')).hexdigest()}"


def _disc_label(job_id: str) -> str:
    # burn-01J8Z... -> DiscBurn_01J8Z...(10 chars)
    parts = job_id.split("-", 1)
    stem = parts[1][:10] if len(parts) > 1 and parts[1] else "backup"
    return f"DiscBurn_{stem}"


def create_manifest(
    job_id: str,
    files: Sequence[str],
    priority: Priority | str = Priority.NORMAL,
    device: Optional[str] = None,
    destinations: Optional[Sequence[str]] = None,
    disc_settings: Optional[DiscSettings] = None,
    created_by: Optional[str] = None,
    max_retries: int = 3,
    workspace: Optional[str] = None,
) -> Manifest:
    """
    Build a new manifest in the `created` state.

    The history starts with a single `None -> created` record by "system"
    and the audit log with a JOB_CREATED entry.
    """
    now = utcnow()
    settings = disc_settings or DiscSettings()
    if settings.label is None:
        settings.label = _disc_label(job_id)

    target = TargetDevice(name=device) if device else TargetDevice()

    return Manifest(
        job_id=job_id,
        created=now,
        updated=now,
        status=JobStatus.CREATED,
        priority=Priority.parse(priority),
        source_platform=created_by or "discburn-cli",
        source_workspace=workspace,
        device=target,
        destinations=list(destinations) if destinations is not None else list(DEFAULT_DESTINATIONS),
        disc_settings=settings,
        files=[PayloadFile(path=f) for f in files],
        checksum=calculate_payload_checksum(files),
        states=[StateTransition(
            from_state=None,
            to_state=JobStatus.CREATED,
            timestamp=now,
            actor="system",
            reason="Job initialized",
        )],
        current_state=JobStatus.CREATED,
        retry_count=0,
        max_retries=max_retries,
        created_by=created_by,
        audit_log=[AuditEntry(
            timestamp=now,
            action="JOB_CREATED",
            actor="system",
            details={"file_count": len(files)},
        )],
    )


def rebuild_manifest(
    descriptor: JobDescriptor,
    actor: str = "system",
    device: Optional[str] = None,
    max_retries: int = 3,
    reason: str = "manifest missing",
    preserved_as: Optional[str] = None,
) -> Manifest:
    """
    Recreate a lost or unreadable manifest from its pending descriptor.

    The result is in `created` with the descriptor's retry count and a
    MANIFEST_REBUILT audit entry explaining why. `preserved_as` names the
    copy of the unreadable original, if one was kept.
    """
    manifest = create_manifest(
        descriptor.job_id,
        descriptor.files,
        priority=descriptor.priority,
        device=device,
        max_retries=max_retries,
    )
    manifest.created = descriptor.created
    manifest.retry_count = descriptor.retry_count
    details = {"reason": reason}
    if preserved_as:
        details["preserved_as"] = preserved_as
    record_action(manifest, "MANIFEST_REBUILT", actor, details)
    return manifest
