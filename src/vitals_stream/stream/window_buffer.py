"""
Window Buffer
=============

Accumulates frames into fixed-length or fixed-duration windows.

This module provides the WindowBuffer class, which sits between the frame
source and the estimation dispatcher:
    - Appends frames in arrival order to the open window
    - Seals the window once its length or duration threshold is reached
    - Seeds the next window with the trailing `overlap` share of frames
    - Hands sealed windows to a dispatch callback

Boundary rule (frame mode):
    With window length L, carry-over C = min(floor(overlap * L), L - 1) and
    stride S = L - C, pushing N >= 1 frames and flushing yields
    max(1, ceil((N - C) / S)) windows. For overlap 0 this is ceil(N / L).

Design Rules:
    - Carry-over frames keep their original timestamp and index
    - Window ids increase by one per sealed window and are never reused
    - A window holding only carry-over frames is never dispatched
    - Does NOT encode, copy or modify frames
"""

import logging
import math
from typing import Callable, List, Optional

from vitals_stream.stream.frame import Frame
from vitals_stream.stream.window import SealReason, Window


logger = logging.getLogger(__name__)


WindowCallback = Callable[[Window], None]


class WindowBuffer:
    """
    Seals frames into analysis windows.

    Exactly one of `window_length` (frames) or `window_duration` (seconds)
    must be given.

    Attributes:
        window_length: Frames per window (frame mode)
        window_duration: Seconds per window (duration mode)
        overlap: Fraction of a sealed window reused to seed the next [0, 1)
        session_id: Stamped onto every sealed window

    Example:
        buffer = WindowBuffer(window_length=5, overlap=0.4, on_window=dispatch)

        for frame in frames:
            buffer.push(frame)

        buffer.flush()
    """

    def __init__(
        self,
        window_length: Optional[int] = None,
        window_duration: Optional[float] = None,
        overlap: float = 0.0,
        on_window: Optional[WindowCallback] = None,
        session_id: int = 0,
    ) -> None:
        """
        Initialize window buffer.

        Args:
            window_length: Frames per window. Must be >= 1.
            window_duration: Seconds per window. Must be > 0.
            overlap: Carry-over fraction, 0 <= overlap < 1.
            on_window: Called with every sealed window.
            session_id: Session identifier for sealed windows.
        """
        if (window_length is None) == (window_duration is None):
            raise ValueError("exactly one of window_length or window_duration is required")
        if window_length is not None and window_length < 1:
            raise ValueError("window_length must be >= 1")
        if window_duration is not None and window_duration <= 0:
            raise ValueError("window_duration must be > 0")
        if not 0.0 <= overlap < 1.0:
            raise ValueError("overlap must satisfy 0 <= overlap < 1")

        self.window_length = window_length
        self.window_duration = window_duration
        self.overlap = overlap
        self.session_id = session_id
        self._on_window = on_window

        self._open: List[Frame] = []
        # Leading frames of _open that were already part of a sealed window
        self._carried: int = 0
        self._next_window_id: int = 1

        self._frames_pushed: int = 0
        self._windows_sealed: int = 0
        self._out_of_order: int = 0

    @property
    def carry_count(self) -> int:
        """Frames carried into the next window (frame mode)."""
        if self.window_length is None:
            return 0
        return min(math.floor(self.overlap * self.window_length), self.window_length - 1)

    @property
    def size(self) -> int:
        """Frames currently in the open window, carry-over included."""
        return len(self._open)

    @property
    def fresh_count(self) -> int:
        """Frames in the open window that no sealed window contains yet."""
        return len(self._open) - self._carried

    @property
    def next_window_id(self) -> int:
        return self._next_window_id

    def push(self, frame: Frame) -> List[Window]:
        """
        Append a frame, sealing windows whose threshold is reached.

        Args:
            frame: Next frame in arrival order

        Returns:
            Windows sealed by this push (usually zero or one).
        """
        self._frames_pushed += 1

        if self._open and frame.timestamp < self._open[-1].timestamp:
            self._out_of_order += 1
            logger.warning(
                f"Frame timestamp went backwards: got {frame.timestamp:.3f}, "
                f"previous was {self._open[-1].timestamp:.3f}"
            )

        sealed: List[Window] = []

        if self.window_duration is not None:
            sealed.extend(self._seal_expired(frame.timestamp))
            self._open.append(frame)
        else:
            self._open.append(frame)
            if len(self._open) >= self.window_length:
                sealed.append(self._seal(SealReason.FULL, carry=self.carry_count))

        return sealed

    def flush(self) -> Optional[Window]:
        """
        Seal the open window regardless of threshold.

        Returns:
            The sealed window, or None if the open window holds no fresh frames.
        """
        if self.fresh_count <= 0:
            if self._open:
                logger.debug(
                    f"Discarding {len(self._open)} carry-over frames on flush"
                )
            self._open = []
            self._carried = 0
            return None

        return self._seal(SealReason.FLUSH, carry=0)

    def clear(self) -> int:
        """
        Discard the open window without dispatching it.

        Returns:
            Number of frames discarded.
        """
        cleared = len(self._open)
        self._open = []
        self._carried = 0
        return cleared

    def _seal_expired(self, timestamp: float) -> List[Window]:
        """Seal duration-mode windows that the incoming timestamp closes."""
        sealed: List[Window] = []
        while self._open and timestamp - self._open[0].timestamp >= self.window_duration:
            if self.fresh_count <= 0:
                # Only carry-over left; already dispatched
                self._open = []
                self._carried = 0
                break
            cutoff = self._open[0].timestamp + (1.0 - self.overlap) * self.window_duration
            carry = sum(1 for f in self._open if f.timestamp >= cutoff)
            sealed.append(self._seal(SealReason.FULL, carry=carry))
        return sealed

    def _seal(self, reason: SealReason, carry: int) -> Window:
        window = Window(
            window_id=self._next_window_id,
            session_id=self.session_id,
            frames=tuple(self._open),
            sealed_by=reason,
        )
        self._next_window_id += 1
        self._windows_sealed += 1

        self._open = self._open[len(self._open) - carry:] if carry > 0 else []
        self._carried = len(self._open)

        logger.debug(f"Sealed {window!r}, carrying {self._carried} frames")

        if self._on_window is not None:
            self._on_window(window)
        return window

    def metrics(self) -> dict:
        """
        Get buffer metrics for observability.

        Returns:
            Dict with open size, frames pushed, windows sealed, out-of-order count
        """
        return {
            "size": self.size,
            "frames_pushed": self._frames_pushed,
            "windows_sealed": self._windows_sealed,
            "out_of_order": self._out_of_order,
            "next_window_id": self._next_window_id,
        }
