"""
BurnExecutor - priority scheduler driving burn jobs through their lifecycle.

The executor is the only agent with access to the burner, so it runs one
job at a time from a single sequential polling loop:

1. List `pending/` in the store and parse every descriptor
   (unparseable descriptors are logged and skipped)
2. Keep descriptors in `pending` status; archive the ones that exhausted
   their retry budget
3. Stable-sort by priority (urgent, high, normal, low)
4. Drive the first job:
       pending -> queued -> downloading -> burning -> verifying -> complete
   persisting the manifest and a status snapshot and emitting an outbound
   status signal after every change
5. After staging and between burn phases, check for validated cancels.
   A manifest that is already cancelled is cleaned up, never burned
6. On success write completed/<id>.json and archive/<date>/<id>.json and
   remove the descriptor

Any exception while processing a job becomes a `failed` transition plus a
retry-count increment; it never stops the loop. Store outages while polling
skip the tick.

Stopping is cooperative: stop() clears the running flag, which is checked at
the top of every loop iteration. A stop seen between burn phases is logged
and the active job drains to a stable state first.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from discburn.audit import AuditLog
from discburn.config import DiscburnConfig
from discburn.device import BurnDevice, SimulatedBurnDevice
from discburn.errors import JobNotFoundError, MaxRetriesExceeded, ParseError, SecurityRejected, StoreUnavailable
from discburn.gateway import SignalGateway
from discburn.manifest import is_valid_transition, rebuild_manifest, record_action, transition
from discburn.schemas import (
    AckPayload,
    CommandPayload,
    JobDescriptor,
    JobStatus,
    Manifest,
    SignalType,
    StatusPayload,
    sort_by_priority,
)
from discburn.signals import executor_channel, read_cancel_marker
from discburn.store import BlobStore, JobPaths, set_aside_manifest
from discburn.utils import utcnow

logger = logging.getLogger(__name__)


NEXT_STATE = {
    JobStatus.PENDING: JobStatus.QUEUED,
    JobStatus.QUEUED: JobStatus.DOWNLOADING,
    JobStatus.DOWNLOADING: JobStatus.BURNING,
    JobStatus.BURNING: JobStatus.VERIFYING,
    JobStatus.VERIFYING: JobStatus.COMPLETE,
}

PHASE_PROGRESS = {
    JobStatus.PENDING: 0,
    JobStatus.QUEUED: 0,
    JobStatus.DOWNLOADING: 5,
    JobStatus.BURNING: 10,
    JobStatus.VERIFYING: 95,
    JobStatus.COMPLETE: 100,
}

BURN_PHASES = tuple(range(20, 100, 10))

# States that do device work; a manifest found in one of these was
# interrupted mid-phase and resumes it.
WORK_STATES = frozenset({JobStatus.DOWNLOADING, JobStatus.BURNING, JobStatus.VERIFYING})

# Slice length for the poll-interval wait, so stop() is honoured promptly.
_WAIT_SLICE = 0.5


@dataclass(frozen=True)
class JobOutcome:
    """Result of one processing attempt."""
    job_id: str
    status: JobStatus
    retry_count: int = 0
    error: Optional[str] = None
    exhausted: bool = False


@dataclass
class ExecutorState:
    """Snapshot of the executor for status displays."""
    running: bool
    current_job: Optional[str]
    completed_jobs: list[str] = field(default_factory=list)
    failed_jobs: list[str] = field(default_factory=list)
    cancelled_jobs: list[str] = field(default_factory=list)


class BurnExecutor:
    """
    Polling executor for one burner.

    Args:
        store: Shared blob store
        device: Burner driver (simulated by default)
        gateway: Policy for inbound signals (built from config by default)
        config: Executor settings
        audit: Administrative audit log (in the same store by default)
        clock: Time source in seconds
        sleep: Blocking wait, injectable for tests
    """

    def __init__(
        self,
        store: BlobStore,
        device: Optional[BurnDevice] = None,
        gateway: Optional[SignalGateway] = None,
        config: Optional[DiscburnConfig] = None,
        audit: Optional[AuditLog] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or DiscburnConfig()
        self.store = store
        self.device = device or SimulatedBurnDevice(self.config.device_name)
        self.gateway = gateway or SignalGateway(self.config.security, clock=clock)
        self.channel = executor_channel(
            store,
            self.gateway,
            source=self.config.executor_id,
            buffer_size=self.config.signal_buffer_size,
            signing_key=self.config.security.signing_key,
            clock=clock,
        )
        self.audit = audit or AuditLog(store)
        self._clock = clock
        self._sleep = sleep

        self._running = False
        self._current_job: Optional[str] = None
        self._picked_up_at: Optional[float] = None
        self._pending_cancels: set[str] = set()
        self._stop_requested = False
        self.completed_jobs: list[str] = []
        self.failed_jobs: list[str] = []
        self.cancelled_jobs: list[str] = []

    @property
    def actor(self) -> str:
        return self.config.executor_id

    @property
    def running(self) -> bool:
        return self._running

    def state(self) -> ExecutorState:
        return ExecutorState(
            running=self._running,
            current_job=self._current_job,
            completed_jobs=list(self.completed_jobs),
            failed_jobs=list(self.failed_jobs),
            cancelled_jobs=list(self.cancelled_jobs),
        )

    # =========================================================================
    # LOOP
    # =========================================================================

    def run(self, max_ticks: Optional[int] = None) -> int:
        """
        Poll until stop() is called (or `max_ticks` ticks have run).

        Returns:
            Number of ticks executed
        """
        self._running = True
        self._stop_requested = False
        logger.info(
            f"Executor {self.actor} started - polling every {self.config.poll_interval}s",
            extra={"event": "executor_started"},
        )
        ticks = 0
        try:
            while self._running:
                self.tick()
                ticks += 1
                if max_ticks is not None and ticks >= max_ticks:
                    break
                self._wait(self.config.poll_interval)
        finally:
            self._running = False
            logger.info(f"Executor {self.actor} stopped after {ticks} ticks", extra={"event": "executor_stopped"})
        return ticks

    def stop(self) -> None:
        """Request a graceful stop; an active job drains first."""
        self._running = False
        self._stop_requested = True

    def _wait(self, seconds: float) -> None:
        remaining = seconds
        while remaining > 0 and self._running:
            step = min(_WAIT_SLICE, remaining)
            self._sleep(step)
            remaining -= step

    def tick(self) -> Optional[JobOutcome]:
        """
        One polling pass: pick the highest-priority pending job and run it.

        Returns:
            The outcome of the processed job, or None if nothing ran
        """
        try:
            candidates = self._poll_pending()
        except StoreUnavailable as e:
            logger.warning(f"Store unavailable, skipping tick: {e}", extra={"event": "tick_skipped"})
            return None

        if not candidates:
            return None
        return self.process_job(candidates[0])

    def run_job(self, job_id: str) -> JobOutcome:
        """
        Burn one named job now, regardless of queue order.

        Raises:
            JobNotFoundError: If there is no pending descriptor for `job_id`
            ParseError: If the descriptor cannot be read
        """
        raw = self.store.get(JobPaths.pending(job_id))
        if raw is None:
            raise JobNotFoundError(job_id)
        return self.process_job(JobDescriptor.from_json(raw))

    def _poll_pending(self) -> list[JobDescriptor]:
        descriptors = []
        for entry in self.store.list(JobPaths.PENDING_PREFIX):
            if not entry.name.endswith(".json"):
                continue
            raw = self.store.get(entry.name)
            if raw is None:
                # Listing lags behind deletes.
                continue
            try:
                descriptor = JobDescriptor.from_json(raw)
            except ParseError as e:
                logger.warning(f"Skipping unreadable descriptor {entry.name}: {e}", extra={"event": "descriptor_skipped"})
                continue

            if descriptor.status != JobStatus.PENDING:
                logger.debug(f"Skipping {descriptor.job_id}: status {descriptor.status.value}")
                continue
            if descriptor.retry_count > self.config.max_retries:
                self._retire_exhausted(descriptor)
                continue
            descriptors.append(descriptor)
        return sort_by_priority(descriptors)

    # =========================================================================
    # JOB PROCESSING
    # =========================================================================

    def process_job(self, job: JobDescriptor) -> JobOutcome:
        """Drive one job as far as it will go; never raises."""
        self._current_job = job.job_id
        self._picked_up_at = self._clock()
        logger.info(
            f"Processing job: {job.job_id} ({job.priority.value}, attempt {job.retry_count + 1})",
            extra={"event": "job_started", "job_id": job.job_id},
        )
        manifest: Optional[Manifest] = None
        try:
            manifest = self._load_manifest(job)
            status = self._drive(job, manifest)
            return JobOutcome(job.job_id, status, manifest.retry_count)
        except Exception as e:
            return self._handle_failure(job, manifest, e)
        finally:
            self._current_job = None

    def _load_manifest(self, job: JobDescriptor) -> Manifest:
        path = JobPaths.manifest(job.job_id)
        problem = "manifest missing"
        preserved = None
        raw = self.store.get(path)
        if raw is not None:
            try:
                manifest = Manifest.from_json(raw)
                manifest.retry_count = max(manifest.retry_count, job.retry_count)
                return manifest
            except ParseError as e:
                problem = f"manifest unreadable: {e}"
                preserved = set_aside_manifest(self.store, job.job_id, raw)

        logger.warning(f"Rebuilding manifest for {job.job_id}: {problem}", extra={"job_id": job.job_id})
        return rebuild_manifest(
            job,
            actor=self.actor,
            device=self.device.name,
            max_retries=self.config.max_retries,
            reason=problem,
            preserved_as=preserved,
        )

    def _drive(self, job: JobDescriptor, manifest: Manifest) -> JobStatus:
        manifest.executor_id = self.actor
        state = manifest.current_state

        if state == JobStatus.CANCELLED:
            self._clear_cancelled(job)
            return JobStatus.CANCELLED
        if state == JobStatus.CREATED:
            self._advance(job, manifest, JobStatus.PENDING, reason="handed to executor")
        elif state == JobStatus.FAILED:
            self._advance(job, manifest, JobStatus.PENDING, reason="resubmitted from failed")
        elif state in WORK_STATES:
            logger.info(f"Resuming {job.job_id} in {state.value}", extra={"job_id": job.job_id})
            if not self._run_phase(job, manifest):
                return JobStatus.CANCELLED

        while manifest.current_state != JobStatus.COMPLETE:
            self._advance(job, manifest, NEXT_STATE[manifest.current_state])
            if not self._run_phase(job, manifest):
                return JobStatus.CANCELLED

        self._finish(job, manifest)
        return JobStatus.COMPLETE

    def _run_phase(self, job: JobDescriptor, manifest: Manifest) -> bool:
        """Do the device work of the current state. False if cancelled."""
        state = manifest.current_state
        if state == JobStatus.DOWNLOADING:
            self.device.stage(job)
            if self._cancel_requested(job):
                self._cancel(job, manifest, PHASE_PROGRESS[state])
                return False
        elif state == JobStatus.BURNING:
            return self._burn(job, manifest)
        elif state == JobStatus.VERIFYING:
            self.device.verify(job)
            self._sleep(self.config.verify_delay)
        return True

    def _burn(self, job: JobDescriptor, manifest: Manifest) -> bool:
        draining = False
        for progress in BURN_PHASES:
            if self._stop_requested and not draining:
                logger.info(f"Stop requested; draining active job {job.job_id}", extra={"job_id": job.job_id})
                draining = True
            self._sleep(self.config.phase_delay)
            self.device.write_phase(job, progress)
            self._report(job, manifest, progress)

            if self._cancel_requested(job):
                self._cancel(job, manifest, progress)
                return False
        return True

    def _advance(
        self,
        job: JobDescriptor,
        manifest: Manifest,
        target: JobStatus,
        reason: Optional[str] = None,
        progress: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        transition(manifest, target, actor=self.actor, reason=reason)
        self.store.put(JobPaths.manifest(job.job_id), manifest.to_json())
        self._report(job, manifest, PHASE_PROGRESS.get(target, 0) if progress is None else progress, error)

    def _report(
        self,
        job: JobDescriptor,
        manifest: Manifest,
        progress: int,
        error: Optional[str] = None,
    ) -> None:
        """Write the status snapshot and emit the matching status signal."""
        snapshot = StatusPayload(
            job_id=job.job_id,
            status=manifest.current_state.value,
            progress=progress,
            error=error,
            updated=utcnow().isoformat(),
            device=self.device.name,
            retry_count=manifest.retry_count,
            source=self.actor,
        ).to_dict()
        self.store.put_json(JobPaths.status(job.job_id), snapshot)
        self.channel.send(SignalType.STATUS, snapshot)

    # =========================================================================
    # CANCELLATION
    # =========================================================================

    def _cancel_requested(self, job: JobDescriptor) -> bool:
        for envelope in self.channel.receive():
            if envelope.type != SignalType.COMMAND:
                continue
            try:
                command = envelope.typed_payload()
            except ParseError as e:
                logger.warning(f"Ignoring malformed command signal: {e}")
                continue
            if command.action == "cancel" and command.job_id:
                # Cancels for jobs not yet active are kept until they run.
                self._pending_cancels.add(command.job_id)

        if job.job_id in self._pending_cancels:
            return True
        return self._cancel_marker_valid(job)

    def _cancel_marker_valid(self, job: JobDescriptor) -> bool:
        marker_path = JobPaths.cancel_marker(job.job_id)
        try:
            envelope = read_cancel_marker(self.store, job.job_id)
            if envelope is None:
                return False
            # Markers outlive the replay window; they only need to be
            # younger than this pickup.
            self.channel.accept(envelope, since=self._picked_up_at)
            command = envelope.typed_payload()
        except (ParseError, SecurityRejected) as e:
            logger.warning(f"Discarding cancel marker for {job.job_id}: {e}", extra={"job_id": job.job_id})
            self.store.delete(marker_path)
            self.audit.log(
                "CANCEL_MARKER_REJECTED", self.actor, category="signal", level="warn",
                target=job.job_id, details={"error": str(e)}, result="failure",
            )
            return False

        return (
            isinstance(command, CommandPayload)
            and command.action == "cancel"
            and command.job_id == job.job_id
        )

    def _cancel(self, job: JobDescriptor, manifest: Manifest, progress: int) -> None:
        logger.info(f"Cancelling job {job.job_id} at {progress}%", extra={"event": "job_cancelled", "job_id": job.job_id})
        self._advance(job, manifest, JobStatus.CANCELLED, reason="cancel signal received", progress=progress)
        self.channel.send(SignalType.ACK, AckPayload(
            action="cancel",
            job_id=job.job_id,
            detail=f"cancelled at {progress}%",
            source=self.actor,
        ).to_dict())
        self.store.delete(JobPaths.pending(job.job_id))
        self.store.delete(JobPaths.cancel_marker(job.job_id))
        self._pending_cancels.discard(job.job_id)
        self.cancelled_jobs.append(job.job_id)
        self.audit.log("JOB_CANCELLED", self.actor, target=job.job_id, details={"progress": progress})

    def _clear_cancelled(self, job: JobDescriptor) -> None:
        """Drop the leftovers of a job that was already cancelled."""
        logger.info(
            f"Skipping {job.job_id}: already cancelled, removing leftover descriptor",
            extra={"event": "job_skipped", "job_id": job.job_id},
        )
        self.store.delete(JobPaths.pending(job.job_id))
        self.store.delete(JobPaths.cancel_marker(job.job_id))
        self._pending_cancels.discard(job.job_id)

    # =========================================================================
    # COMPLETION / FAILURE
    # =========================================================================

    def _write_completion(
        self,
        job: JobDescriptor,
        manifest: Manifest,
        status: JobStatus,
        error: Optional[str] = None,
    ) -> None:
        now = utcnow()
        record = {
            "job_id": job.job_id,
            "status": status.value,
            "completed_at": now.isoformat(),
            "priority": job.priority.value,
            "file_count": len(job.files),
            "retry_count": manifest.retry_count,
            "device": self.device.name,
            "executor_id": self.actor,
            "error": error,
        }
        self.store.put_json(JobPaths.completed(job.job_id), record)
        self.store.put_json(JobPaths.archive(job.job_id, now), record)

    def _finish(self, job: JobDescriptor, manifest: Manifest) -> None:
        self._write_completion(job, manifest, JobStatus.COMPLETE)
        self.store.delete(JobPaths.pending(job.job_id))
        self.store.delete(JobPaths.cancel_marker(job.job_id))
        self._pending_cancels.discard(job.job_id)
        self.completed_jobs.append(job.job_id)
        self.audit.log("JOB_COMPLETED", self.actor, target=job.job_id, details={"retry_count": manifest.retry_count})
        logger.info(f"Job complete: {job.job_id}", extra={"event": "job_completed", "job_id": job.job_id})

    def _mark_failed(self, manifest: Manifest, reason: str) -> None:
        if is_valid_transition(manifest.current_state, JobStatus.FAILED):
            transition(manifest, JobStatus.FAILED, actor=self.actor, reason=reason)
        else:
            record_action(manifest, "PROCESSING_ERROR", self.actor, {
                "state": manifest.current_state.value,
                "error": reason,
            })

    def _retire(self, job: JobDescriptor, manifest: Manifest, reason: str) -> None:
        """Archive a job as permanently failed and drop it from the pending set."""
        self.store.put(JobPaths.manifest(job.job_id), manifest.to_json())
        self._write_completion(job, manifest, JobStatus.FAILED, error=reason)
        self.store.delete(JobPaths.pending(job.job_id))
        self.audit.log(
            "MAX_RETRIES_EXCEEDED", self.actor, level="error", target=job.job_id,
            details={"retry_count": manifest.retry_count, "error": reason}, result="failure",
        )

    def _retire_exhausted(self, job: JobDescriptor) -> None:
        exceeded = MaxRetriesExceeded(job.job_id, job.retry_count, self.config.max_retries)
        logger.error(str(exceeded), extra={"event": "job_retired", "job_id": job.job_id})
        manifest = self._load_manifest(job)
        self._mark_failed(manifest, str(exceeded))
        self._retire(job, manifest, str(exceeded))

    def _handle_failure(
        self,
        job: JobDescriptor,
        manifest: Optional[Manifest],
        error: Exception,
    ) -> JobOutcome:
        reason = f"{type(error).__name__}: {error}"
        logger.error(
            f"Job failed: {job.job_id} - {reason}",
            exc_info=True,
            extra={"event": "job_failed", "job_id": job.job_id},
        )
        if manifest is not None and manifest.current_state == JobStatus.CANCELLED:
            # Cancelled in memory; cleanup is retried when the job resurfaces.
            return JobOutcome(job.job_id, JobStatus.CANCELLED, manifest.retry_count, reason)

        try:
            if manifest is None:
                manifest = self._load_manifest(job)
            self._mark_failed(manifest, reason)
            job.retry_count += 1
            manifest.retry_count = job.retry_count
            self.failed_jobs.append(job.job_id)

            if job.retry_count > self.config.max_retries:
                exceeded = MaxRetriesExceeded(job.job_id, job.retry_count, self.config.max_retries)
                logger.error(str(exceeded), extra={"event": "job_retired", "job_id": job.job_id})
                self._retire(job, manifest, reason)
                self._report(job, manifest, 0, error=reason)
                return JobOutcome(job.job_id, JobStatus.FAILED, job.retry_count, reason, exhausted=True)

            # Status never runs ahead of the stored manifest.
            self.store.put(JobPaths.manifest(job.job_id), manifest.to_json())
            self._report(job, manifest, 0, error=reason)

            retried = False
            if manifest.current_state == JobStatus.FAILED:
                if self.config.auto_retry:
                    transition(
                        manifest, JobStatus.PENDING, actor=self.actor,
                        reason=f"retry {job.retry_count}/{self.config.max_retries}",
                    )
                    job.status = JobStatus.PENDING
                    retried = True
                else:
                    job.status = JobStatus.FAILED
            else:
                # Failed before any state with a failed edge; resume later.
                job.status = JobStatus.PENDING

            self.store.put(JobPaths.manifest(job.job_id), manifest.to_json())
            self.store.put(JobPaths.pending(job.job_id), job.to_json())
            if retried:
                self._report(job, manifest, 0, error=reason)
            self.audit.log(
                "JOB_FAILED", self.actor, level="error", target=job.job_id,
                details={"error": reason, "retry_count": job.retry_count, "requeued": job.status == JobStatus.PENDING},
                result="failure",
            )
            return JobOutcome(job.job_id, job.status, job.retry_count, reason)
        except StoreUnavailable as store_error:
            logger.error(
                f"Could not record failure of {job.job_id}: {store_error}",
                extra={"event": "failure_unrecorded", "job_id": job.job_id},
            )
            return JobOutcome(job.job_id, JobStatus.FAILED, job.retry_count, reason)
