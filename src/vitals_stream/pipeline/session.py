"""
Stream Session
==============

Per-session pipeline state owned by the StreamProcessor event task.

A session lasts from start() (or a restart after a stream reset) to the
next reset or stop. Window ids restart at 1 with every session.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict

from vitals_stream.pipeline.sequencer import ResultSequencer
from vitals_stream.stream.window_buffer import WindowBuffer


class PipelineState(str, Enum):
    """
    StreamProcessor lifecycle state.

    Idle -> Initializing -> Running -> Stopping -> Idle, plus Failed.
    """

    IDLE = "idle"
    INITIALIZING = "initializing"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


@dataclass
class StreamSession:
    """
    State of one capture session.

    Attributes:
        session_id: Stamped onto windows and results of this session
        buffer: Window buffer for this session's frames
        sequencer: Orders this session's results
        tasks: Dispatch tasks by window id
        consecutive_failures: Failed or timed-out windows in a row
        started_at: Wall-clock start time
    """

    session_id: int
    buffer: WindowBuffer
    sequencer: ResultSequencer
    tasks: Dict[int, asyncio.Task] = field(default_factory=dict)
    consecutive_failures: int = 0
    frames_received: int = 0
    started_at: float = field(default_factory=time.time)

    @property
    def drained(self) -> bool:
        """No window is waiting for a result or for release."""
        return self.sequencer.idle

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "frames_received": self.frames_received,
            "next_window_id": self.buffer.next_window_id,
            "watermark": self.sequencer.watermark,
            "in_flight": self.sequencer.in_flight,
            "pending": self.sequencer.pending,
            "consecutive_failures": self.consecutive_failures,
            "uptime_seconds": round(time.time() - self.started_at, 3),
        }
