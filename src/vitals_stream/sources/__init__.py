"""
Sources Module
==============

Frame sources feeding the pipeline.

Every source satisfies the FrameSource capability set; StreamProcessor
never depends on a concrete type.

Components:
    - FrameSource: Protocol (init, start, is_processing, stop, on_stream_reset?)
    - CameraFrameSource: Local camera via OpenCV
    - VideoFileFrameSource: Video file via OpenCV
    - WebSocketFrameSource: Remote JPEG frame stream
    - FrameArrived / StreamReset / SourceFailed: events emitted to the owner
"""

from vitals_stream.sources.base import (
    FrameArrived,
    FrameSink,
    FrameSource,
    SourceEvent,
    SourceFailed,
    SourceMetrics,
    StreamReset,
)
from vitals_stream.sources.camera import CameraFrameSource
from vitals_stream.sources.video_file import VideoFileFrameSource
from vitals_stream.sources.websocket import WebSocketFrameSource

__all__ = [
    "FrameArrived",
    "FrameSink",
    "FrameSource",
    "SourceEvent",
    "SourceFailed",
    "SourceMetrics",
    "StreamReset",
    "CameraFrameSource",
    "VideoFileFrameSource",
    "WebSocketFrameSource",
]
