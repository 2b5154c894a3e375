"""
Test Configuration
==================

Pytest fixtures, fakes and test configuration for VitalsStream.
"""

import asyncio
from typing import Dict, List, Optional

import numpy as np
import pytest


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


# =============================================================================
# Helpers
# =============================================================================

def make_frame(index: int, fps: float = 30.0, timestamp: Optional[float] = None):
    """Build a small frame with a timestamp derived from its index."""
    from vitals_stream.stream.frame import Frame

    image = np.full((8, 8, 3), index % 256, dtype=np.uint8)
    return Frame(
        index=index,
        timestamp=index / fps if timestamp is None else timestamp,
        image=image,
        fps=fps,
    )


async def settle(rounds: int = 10) -> None:
    """Let queued tasks and events run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeFrameSource:
    """
    Frame source driven by the test.

    Frames and resets are pushed explicitly with emit_frames() / reset().
    """

    def __init__(self, fail_init: Optional[Exception] = None) -> None:
        self.fail_init = fail_init
        self.init_calls = 0
        self.start_calls = 0
        self.stop_calls = 0
        self.reset_calls = 0
        self._emit = None
        self._running = False
        self._next_index = 0

    @property
    def dropped_frames(self) -> int:
        return 0

    async def init(self) -> None:
        self.init_calls += 1
        if self.fail_init is not None:
            raise self.fail_init

    async def start(self, emit) -> None:
        self.start_calls += 1
        self._emit = emit
        self._running = True
        self._next_index = 0

    def is_processing(self) -> bool:
        return self._running

    async def stop(self) -> None:
        self.stop_calls += 1
        self._running = False

    async def on_stream_reset(self) -> None:
        self.reset_calls += 1

    async def emit_frames(self, count: int) -> None:
        from vitals_stream.sources.base import FrameArrived

        for _ in range(count):
            await self._emit(FrameArrived(make_frame(self._next_index)))
            self._next_index += 1

    async def reset(self, reason: str = "camera_disconnected") -> None:
        from vitals_stream.sources.base import StreamReset

        await self._emit(StreamReset(reason))

    async def fail(self, error: Exception) -> None:
        from vitals_stream.sources.base import SourceFailed

        await self._emit(SourceFailed(error))


class GatedEstimationClient:
    """
    Estimation client whose responses are released by the test.

    Every send() waits on a per-(session, window) gate; release() answers
    it with a result, fail() with an error. Ungated windows never answer.
    """

    def __init__(self, auto: bool = False) -> None:
        self.auto = auto
        self.sent: List[tuple] = []
        self._gates: Dict[tuple, asyncio.Future] = {}

    def _gate(self, key: tuple) -> asyncio.Future:
        if key not in self._gates:
            self._gates[key] = asyncio.get_running_loop().create_future()
        return self._gates[key]

    async def send(self, window):
        from vitals_stream.estimation.base import MockEstimationClient

        key = (window.session_id, window.window_id)
        self.sent.append(key)
        if self.auto:
            return await MockEstimationClient().send(window)

        outcome = await self._gate(key)
        if isinstance(outcome, Exception):
            raise outcome
        return await MockEstimationClient().send(window)

    def release(self, window_id: int, session_id: int = 1) -> None:
        gate = self._gate((session_id, window_id))
        if not gate.done():
            gate.set_result(None)

    def fail(self, window_id: int, error: Exception, session_id: int = 1) -> None:
        gate = self._gate((session_id, window_id))
        if not gate.done():
            gate.set_result(error)


# =============================================================================
# Shared Fixtures
# =============================================================================

@pytest.fixture
def frames():
    """Ten frames at 30 fps."""
    return [make_frame(i) for i in range(10)]


@pytest.fixture
def fake_source():
    return FakeFrameSource()


@pytest.fixture
def gated_client():
    return GatedEstimationClient()
