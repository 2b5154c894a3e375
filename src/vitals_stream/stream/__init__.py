"""
Stream Module
=============

Frame and window data models plus the window sealing stage.

This module provides the buffering layer for vitals_stream:
    - Frame: Immutable decoded frame (internal representation)
    - Window: Sealed, ordered batch of frames
    - WindowBuffer: Seals frames into fixed-length/duration windows with overlap

Example:
    from vitals_stream.stream import WindowBuffer

    buffer = WindowBuffer(window_length=150, overlap=0.2, on_window=dispatch)
    for frame in frames:
        buffer.push(frame)
    buffer.flush()
"""

from vitals_stream.stream.frame import Frame
from vitals_stream.stream.window import SealReason, Window
from vitals_stream.stream.window_buffer import WindowBuffer


__all__ = [
    "Frame",
    "SealReason",
    "Window",
    "WindowBuffer",
]
