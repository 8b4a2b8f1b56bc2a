import pytest

from discburn.commands import JobCommands
from discburn.config import DiscburnConfig
from discburn.device import SimulatedBurnDevice
from discburn.errors import StoreUnavailable
from discburn.executor import BurnExecutor
from discburn.store import InMemoryBlobStore


class FakeClock:
    """Manually advanced time source (epoch seconds)."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FlakyDevice(SimulatedBurnDevice):
    """Raises on the first `failures` burn phases, then behaves."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures

    def write_phase(self, job, progress):
        if self.failures > 0:
            self.failures -= 1
            raise RuntimeError("laser power fault")
        super().write_phase(job, progress)


class FlakyStore(InMemoryBlobStore):
    """In-memory store that can be switched off."""

    def __init__(self):
        super().__init__()
        self.down = False

    def _check(self, path):
        if self.down:
            raise StoreUnavailable("store offline", path=path)

    def list(self, prefix):
        self._check(prefix)
        return super().list(prefix)

    def get(self, path):
        self._check(path)
        return super().get(path)

    def put(self, path, data):
        self._check(path)
        super().put(path, data)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryBlobStore()


@pytest.fixture
def config():
    return DiscburnConfig(poll_interval=1.0, phase_delay=0.0, verify_delay=0.0)


@pytest.fixture
def device():
    return SimulatedBurnDevice()


@pytest.fixture
def commands(store, config, clock):
    return JobCommands(store, config, clock=clock)


@pytest.fixture
def make_executor(store, config, clock):
    def _make(device=None, target_store=None, **overrides):
        cfg = DiscburnConfig(**{**config.to_dict(), **overrides}) if overrides else config
        return BurnExecutor(
            target_store or store,
            device=device or SimulatedBurnDevice(),
            config=cfg,
            clock=clock,
            sleep=lambda seconds: None,
        )
    return _make


@pytest.fixture
def executor(make_executor, device):
    return make_executor(device=device)
