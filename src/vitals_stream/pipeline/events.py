"""
Pipeline Events
===============

Messages posted to the StreamProcessor event task.

Every message travels as `(session_id, event)`; the event task drops
messages whose session id is no longer current. Source events
(FrameArrived, StreamReset, SourceFailed) live in vitals_stream.sources.base.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Optional, Union

from vitals_stream.errors import VitalsStreamError
from vitals_stream.models.estimation import EstimationResult
from vitals_stream.sources.base import FrameArrived, SourceFailed, StreamReset


@dataclass(frozen=True, slots=True)
class WindowResolved:
    """The backend returned an estimate for a window."""

    result: EstimationResult


@dataclass(frozen=True, slots=True)
class WindowFailed:
    """A window exhausted its resubmissions."""

    window_id: int
    error: VitalsStreamError


@dataclass(frozen=True, slots=True)
class WindowTimedOut:
    """A window's result timeout expired."""

    window_id: int


@dataclass(frozen=True, slots=True)
class FlushRequested:
    """Seal the open window; `done` is set once it has been dispatched."""

    done: Optional[asyncio.Future] = field(default=None, compare=False)


@dataclass(frozen=True, slots=True)
class ForceTimeout:
    """Resolve every outstanding window to a timeout placeholder."""

    done: Optional[asyncio.Future] = field(default=None, compare=False)


PipelineEvent = Union[
    FrameArrived,
    StreamReset,
    SourceFailed,
    WindowResolved,
    WindowFailed,
    WindowTimedOut,
    FlushRequested,
    ForceTimeout,
]
