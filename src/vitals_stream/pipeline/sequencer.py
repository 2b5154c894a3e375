"""
Result Sequencer
================

Releases per-window results strictly in window-id order.

Responses arrive in any order. A result is held until every lower window id
of the session has been released, then released together with any
contiguous successors.

Design Rules:
    - Every sealed window is registered with expect() before dispatch
    - Each window id is released exactly once
    - Results for unknown or already released windows are discarded (stale)
"""

import logging
from typing import Dict, List, Optional

from vitals_stream.models.estimation import EstimationResult, ResultStatus
from vitals_stream.stream.window import Window


logger = logging.getLogger(__name__)


class ResultSequencer:
    """
    Reorders window results for one session.

    Attributes:
        session_id: Session the sequencer belongs to
        watermark: Highest window id released so far (0 = none)
        discarded: Results dropped because their window was already released
    """

    def __init__(self, session_id: int = 0) -> None:
        self.session_id = session_id
        self.watermark: int = 0
        self.discarded: int = 0

        # Expected windows that have not been released yet
        self._windows: Dict[int, Window] = {}
        # Results that arrived ahead of the watermark
        self._ready: Dict[int, EstimationResult] = {}

    @property
    def in_flight(self) -> int:
        """Windows still waiting for a response."""
        return len(self._windows) - len(self._ready)

    @property
    def pending(self) -> int:
        """Results held back until a lower window id resolves."""
        return len(self._ready)

    @property
    def idle(self) -> bool:
        return not self._windows

    def expect(self, window: Window) -> None:
        """
        Register a sealed window.

        Raises:
            ValueError: If the id was already registered or released
        """
        if window.window_id <= self.watermark or window.window_id in self._windows:
            raise ValueError(f"window {window.window_id} already registered")
        self._windows[window.window_id] = window

    def outstanding(self) -> List[int]:
        """Ids of registered windows without a result, ascending."""
        return sorted(wid for wid in self._windows if wid not in self._ready)

    def is_outstanding(self, window_id: int) -> bool:
        return window_id in self._windows and window_id not in self._ready

    def resolve(self, result: EstimationResult) -> List[EstimationResult]:
        """
        Record a result and release everything that is now in order.

        Args:
            result: Result (or placeholder) for a registered window

        Returns:
            Results released by this call, ascending window id
        """
        window_id = result.window_id
        if not self.is_outstanding(window_id):
            self.discarded += 1
            logger.debug(
                f"Discarding result for window {window_id} "
                f"(session {self.session_id}, watermark {self.watermark})"
            )
            return []

        self._ready[window_id] = result
        return self._release()

    def resolve_placeholder(
        self,
        window_id: int,
        status: ResultStatus,
        error: Optional[str] = None,
    ) -> List[EstimationResult]:
        """
        Resolve a window with an empty TIMEOUT or FAILED result.

        Returns:
            Results released by this call (empty if the window was not outstanding)
        """
        if not self.is_outstanding(window_id):
            return []
        window = self._windows[window_id]
        placeholder = EstimationResult(
            window_id=window.window_id,
            session_id=window.session_id,
            status=status,
            start_timestamp=window.start_timestamp,
            end_timestamp=window.end_timestamp,
            frame_count=window.frame_count,
            error=error,
        )
        return self.resolve(placeholder)

    def _release(self) -> List[EstimationResult]:
        released: List[EstimationResult] = []
        while self.watermark + 1 in self._ready:
            next_id = self.watermark + 1
            released.append(self._ready.pop(next_id))
            del self._windows[next_id]
            self.watermark = next_id
        return released
