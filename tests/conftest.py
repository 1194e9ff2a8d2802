import pytest

from config.soc_config import SOCSystemConfig
from state_store import MemoryStateStore


class FakeClock:
    """Epoch-millisecond clock advanced by hand"""

    def __init__(self, now_ms: float = 1_700_000_000_000):
        self.now_ms = now_ms

    def __call__(self) -> float:
        return self.now_ms

    def advance(self, ms: float):
        self.now_ms += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStateStore()


@pytest.fixture
def keys():
    return SOCSystemConfig().keys
