"""
Burn device drivers.

The physical burn is opaque to discburn: the executor only tells the
driver which phase it is in and lets exceptions propagate. Any exception
raised by a driver fails the current attempt of the job.
"""

import logging
from abc import ABC, abstractmethod

from discburn.schemas import JobDescriptor

logger = logging.getLogger(__name__)


class BurnDevice(ABC):
    """Interface to the device attached to the executor."""

    name: str = "device"

    @abstractmethod
    def stage(self, job: JobDescriptor) -> None:
        """Fetch and stage the job's files (downloading phase)."""
        pass

    @abstractmethod
    def write_phase(self, job: JobDescriptor, progress: int) -> None:
        """Advance the burn to `progress` percent."""
        pass

    @abstractmethod
    def verify(self, job: JobDescriptor) -> None:
        """Verify the written disc."""
        pass


class SimulatedBurnDevice(BurnDevice):
    """
    Driver that burns nothing.

    Records every call so tests and dry runs can inspect what the executor
    asked of the device.
    """

    def __init__(self, name: str = "HP DVD557s"):
        self.name = name
        self.calls: list[tuple[str, str, int]] = []

    def stage(self, job: JobDescriptor) -> None:
        logger.info(f"[{self.name}] staging {len(job.files)} files for {job.job_id}")
        self.calls.append(("stage", job.job_id, 0))

    def write_phase(self, job: JobDescriptor, progress: int) -> None:
        logger.debug(f"[{self.name}] {job.job_id} burn progress {progress}%")
        self.calls.append(("write", job.job_id, progress))

    def verify(self, job: JobDescriptor) -> None:
        logger.info(f"[{self.name}] verifying disc for {job.job_id}")
        self.calls.append(("verify", job.job_id, 100))
