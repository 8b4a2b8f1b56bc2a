"""
Initiator-side job commands.

Everything a user (or the CLI) does to the job queue goes through
JobCommands: it writes manifests and descriptors into the shared store,
sends command signals to the executor and reads back status.
"""

import logging
import time
from typing import Any, Callable, Optional, Sequence

from discburn.audit import AdminAuditEntry, AuditLog
from discburn.config import DiscburnConfig
from discburn.errors import InvalidTransition, JobNotFoundError, ParseError
from discburn.gateway import SignalGateway
from discburn.manifest import create_manifest, is_valid_transition, rebuild_manifest, transition
from discburn.schemas import (
    CommandPayload,
    JobDescriptor,
    JobStatus,
    Manifest,
    SignalEnvelope,
    SignalType,
    StatusPayload,
    sort_by_priority,
)
from discburn.signals import initiator_channel, write_cancel_marker
from discburn.store import BlobStore, JobPaths, set_aside_manifest
from discburn.utils import generate_job_id, utcnow

logger = logging.getLogger(__name__)


class JobCommands:
    """
    Command surface used by the initiator.

    Args:
        store: Shared blob store
        config: Settings (identities, retry budget, security policy)
        gateway: Policy for signals coming back from the executor
        clock: Time source in seconds
    """

    def __init__(
        self,
        store: BlobStore,
        config: Optional[DiscburnConfig] = None,
        gateway: Optional[SignalGateway] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.config = config or DiscburnConfig()
        self.gateway = gateway or SignalGateway(self.config.security, clock=clock)
        self.channel = initiator_channel(
            store,
            self.gateway,
            source=self.config.initiator_id,
            buffer_size=self.config.signal_buffer_size,
            signing_key=self.config.security.signing_key,
            clock=clock,
        )
        self.audit = AuditLog(store)

    @property
    def actor(self) -> str:
        return self.config.initiator_id

    def _load_manifest(self, job_id: str) -> Manifest:
        preserved = None
        raw = self.store.get(JobPaths.manifest(job_id))
        if raw is not None:
            try:
                return Manifest.from_json(raw)
            except ParseError as e:
                problem = f"manifest unreadable: {e}"
                preserved = set_aside_manifest(self.store, job_id, raw)
        else:
            problem = "manifest missing"

        descriptor_raw = self.store.get(JobPaths.pending(job_id))
        if descriptor_raw is None:
            raise JobNotFoundError(job_id)
        descriptor = JobDescriptor.from_json(descriptor_raw)
        logger.warning(f"Rebuilding manifest for {job_id}: {problem}")
        return rebuild_manifest(
            descriptor,
            actor=self.actor,
            device=self.config.device_name,
            max_retries=self.config.max_retries,
            reason=problem,
            preserved_as=preserved,
        )

    def _write_status(self, manifest: Manifest, progress: int = 0) -> None:
        self.store.put_json(JobPaths.status(manifest.job_id), StatusPayload(
            job_id=manifest.job_id,
            status=manifest.current_state.value,
            progress=progress,
            updated=utcnow().isoformat(),
            device=manifest.device.name,
            retry_count=manifest.retry_count,
            source=self.actor,
        ).to_dict())

    def submit_job(
        self,
        files: Sequence[str],
        priority: str = "normal",
        device: Optional[str] = None,
        destinations: Optional[Sequence[str]] = None,
    ) -> str:
        """
        Create a job and hand it to the executor.

        Returns:
            The new job id

        Raises:
            ValueError: If `files` is empty
            ParseError: If `priority` is not a known priority
        """
        files = [f for f in files if f]
        if not files:
            raise ValueError("A burn job needs at least one file")

        job_id = generate_job_id()
        manifest = create_manifest(
            job_id,
            files,
            priority=priority,
            device=device or self.config.device_name,
            destinations=destinations,
            created_by=self.actor,
            max_retries=self.config.max_retries,
        )
        transition(manifest, JobStatus.PENDING, actor=self.actor, reason="submitted")

        self.store.put(JobPaths.manifest(job_id), manifest.to_json())
        self.store.put(JobPaths.pending(job_id), manifest.to_descriptor().to_json())
        self._write_status(manifest)
        self.audit.log("JOB_SUBMITTED", self.actor, target=job_id, details={
            "priority": manifest.priority.value,
            "file_count": len(files),
        })
        logger.info(f"Submitted {job_id} ({manifest.priority.value}, {len(files)} files)")
        return job_id

    def cancel_job(self, job_id: str) -> bool:
        """
        Cancel a job.

        Jobs the executor has not picked up yet are cancelled on the spot.
        Active jobs get a cancel command signal plus a marker; the executor
        honours it once staging ends or at its next burn phase.

        Returns:
            True if the job was cancelled immediately, False if the request
            was sent to the executor

        Raises:
            JobNotFoundError: If the job does not exist
            InvalidTransition: If the job can no longer be cancelled
        """
        manifest = self._load_manifest(job_id)
        state = manifest.current_state

        if state in (JobStatus.CREATED, JobStatus.PENDING):
            transition(manifest, JobStatus.CANCELLED, actor=self.actor, reason="cancelled before pickup")
            self.store.put(JobPaths.manifest(job_id), manifest.to_json())
            self.store.delete(JobPaths.pending(job_id))
            self._write_status(manifest)
            self.audit.log("JOB_CANCELLED", self.actor, target=job_id, details={"state": state.value})
            logger.info(f"Cancelled {job_id} before pickup")
            return True

        if not is_valid_transition(state, JobStatus.CANCELLED):
            raise InvalidTransition(state.value, JobStatus.CANCELLED.value)

        envelope = self.channel.send(SignalType.COMMAND, CommandPayload(
            action="cancel",
            job_id=job_id,
            source=self.actor,
            target=self.config.executor_id,
        ).to_dict())
        write_cancel_marker(self.store, job_id, envelope)
        self.audit.log("CANCEL_REQUESTED", self.actor, target=job_id, details={"state": state.value})
        logger.info(f"Cancel requested for {job_id} ({state.value})")
        return False

    def get_job_status(self, job_id: str) -> Optional[dict[str, Any]]:
        """Latest known status of a job, or None if it is unknown."""
        for path in (JobPaths.status(job_id), JobPaths.completed(job_id)):
            try:
                record = self.store.get_json(path)
            except ParseError as e:
                logger.warning(f"Ignoring unreadable {path}: {e}")
                continue
            if isinstance(record, dict):
                return record

        try:
            manifest = self._load_manifest(job_id)
        except (JobNotFoundError, ParseError):
            return None
        return {
            "job_id": job_id,
            "status": manifest.current_state.value,
            "progress": 100 if manifest.current_state == JobStatus.COMPLETE else 0,
            "retry_count": manifest.retry_count,
            "updated": manifest.updated.isoformat(),
        }

    def list_pending(self) -> list[JobDescriptor]:
        """Descriptors in the pending set, in the order the executor runs them."""
        descriptors = []
        for entry in self.store.list(JobPaths.PENDING_PREFIX):
            raw = self.store.get(entry.name)
            if raw is None:
                continue
            try:
                descriptors.append(JobDescriptor.from_json(raw))
            except ParseError as e:
                logger.warning(f"Skipping unreadable descriptor {entry.name}: {e}")
        return sort_by_priority(descriptors)

    def get_audit_log(self, limit: int = 50) -> list[AdminAuditEntry]:
        return self.audit.entries(limit)

    def resubmit_job(self, job_id: str) -> JobDescriptor:
        """
        Put a failed or cancelled job back in the pending set.

        The retry count goes up by one. A job that already exhausted its
        retry budget is revived with the count reset to zero.

        Raises:
            JobNotFoundError: If the job does not exist
            InvalidTransition: If the job is not failed or cancelled
        """
        manifest = self._load_manifest(job_id)
        state = manifest.current_state
        if state not in (JobStatus.FAILED, JobStatus.CANCELLED):
            raise InvalidTransition(state.value, JobStatus.PENDING.value)

        exhausted = manifest.retry_count > self.config.max_retries
        transition(manifest, JobStatus.PENDING, actor=self.actor, reason=f"resubmitted from {state.value}")
        if exhausted:
            manifest.retry_count = 0
            self.audit.log("JOB_REVIVED", self.actor, level="admin", target=job_id)
        else:
            manifest.retry_count += 1

        descriptor = manifest.to_descriptor()
        self.store.put(JobPaths.manifest(job_id), manifest.to_json())
        self.store.put(JobPaths.pending(job_id), descriptor.to_json())
        # Stale artifacts from the previous attempt.
        self.store.delete(JobPaths.completed(job_id))
        self.store.delete(JobPaths.cancel_marker(job_id))
        self._write_status(manifest)
        self.audit.log("JOB_RESUBMITTED", self.actor, target=job_id, details={
            "from": state.value,
            "retry_count": manifest.retry_count,
        })
        logger.info(f"Resubmitted {job_id} (retry_count={manifest.retry_count})")
        return descriptor

    def poll_signals(self) -> list[SignalEnvelope]:
        """New signals from the executor that pass the gateway."""
        return self.channel.receive()
