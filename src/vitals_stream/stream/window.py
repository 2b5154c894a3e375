"""
Window Data Model
=================

A sealed, ordered batch of frames dispatched as one estimation request.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Tuple

from vitals_stream.stream.frame import Frame


class SealReason(str, Enum):
    """Why a window was sealed."""

    FULL = "full"
    FLUSH = "flush"


@dataclass(frozen=True, slots=True)
class Window:
    """
    Immutable window of frames.

    Attributes:
        window_id: Monotonically increasing id within a session (starts at 1)
        session_id: Session that produced the window
        frames: Frames in capture order
        sealed_by: Threshold reached (FULL) or forced flush (FLUSH)
    """

    window_id: int
    session_id: int
    frames: Tuple[Frame, ...]
    sealed_by: SealReason = SealReason.FULL

    def __post_init__(self) -> None:
        if not self.frames:
            raise ValueError("a window must contain at least one frame")

    @property
    def frame_count(self) -> int:
        return len(self.frames)

    @property
    def start_timestamp(self) -> float:
        """Timestamp of the first frame."""
        return self.frames[0].timestamp

    @property
    def end_timestamp(self) -> float:
        """Timestamp of the last frame."""
        return self.frames[-1].timestamp

    @property
    def timestamps(self) -> List[float]:
        return [frame.timestamp for frame in self.frames]

    @property
    def indices(self) -> List[int]:
        return [frame.index for frame in self.frames]

    def __repr__(self) -> str:
        return (
            f"Window(id={self.window_id}, session={self.session_id}, "
            f"frames={self.frame_count}, "
            f"t=[{self.start_timestamp:.3f}, {self.end_timestamp:.3f}], "
            f"sealed_by={self.sealed_by.value})"
        )
