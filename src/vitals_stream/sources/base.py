"""
Frame Source Contract
=====================

Capability set every frame source satisfies, plus the events a source emits
to its owner.

Contract:
    init()          prepare the media resource (raises ResourceUnavailable)
    start(emit)     begin producing frames in the background
    is_processing() liveness
    stop()          release the media resource
    on_stream_reset() optional, re-arm the source after an interruption

Design Rules:
    - StreamProcessor depends only on this Protocol, never on a concrete source
    - Concrete sources are independent types, not subclasses
    - Interruptions are reported with StreamReset, never by silently stopping
"""

from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol, Union, runtime_checkable

from vitals_stream.errors import VitalsStreamError
from vitals_stream.stream.frame import Frame


@dataclass(frozen=True, slots=True)
class FrameArrived:
    """A captured frame."""

    frame: Frame


@dataclass(frozen=True, slots=True)
class StreamReset:
    """
    The underlying stream was interrupted, restarted or ended.

    Attributes:
        reason: e.g. "camera_disconnected", "end_of_stream", "connection_lost"
    """

    reason: str


@dataclass(frozen=True, slots=True)
class SourceFailed:
    """The source hit an unrecoverable error while running."""

    error: VitalsStreamError


SourceEvent = Union[FrameArrived, StreamReset, SourceFailed]
FrameSink = Callable[[SourceEvent], Awaitable[None]]


@runtime_checkable
class FrameSource(Protocol):
    """
    Protocol for frame sources.

    Implemented by:
        - CameraFrameSource
        - VideoFileFrameSource
        - WebSocketFrameSource
    """

    @property
    def dropped_frames(self) -> int:
        """Frames skipped because they could not be decoded."""
        ...

    async def init(self) -> None:
        """Prepare the underlying resource. Raises ResourceUnavailable."""
        ...

    async def start(self, emit: FrameSink) -> None:
        """Begin producing frames into `emit`; returns once started."""
        ...

    def is_processing(self) -> bool:
        ...

    async def stop(self) -> None:
        """Stop producing and release the resource. Safe to call twice."""
        ...


class SourceMetrics:
    """Metrics shared by the concrete sources."""

    __slots__ = (
        "frames_emitted",
        "dropped_frames",
        "resets",
        "reconnect_count",
        "validation_warnings",
    )

    def __init__(self) -> None:
        self.frames_emitted: int = 0
        self.dropped_frames: int = 0
        self.resets: int = 0
        self.reconnect_count: int = 0
        self.validation_warnings: int = 0

    def to_dict(self) -> dict:
        """Export metrics as dict."""
        return {
            "frames_emitted": self.frames_emitted,
            "dropped_frames": self.dropped_frames,
            "resets": self.resets,
            "reconnect_count": self.reconnect_count,
            "validation_warnings": self.validation_warnings,
        }
