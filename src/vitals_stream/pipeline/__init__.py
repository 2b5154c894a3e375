"""
Pipeline Module
===============

Owns the lifecycle of one frame source and its estimation stream.

Components:
    - StreamProcessor: State machine, event task and dispatch
    - ResultSequencer: In-order release of per-window results
    - ResultChannel: Async output channel (drop-oldest when bounded)
    - StreamSession / PipelineState: Per-session state and lifecycle enum
"""

from vitals_stream.pipeline.channel import ResultChannel
from vitals_stream.pipeline.processor import ProcessorMetrics, StreamProcessor
from vitals_stream.pipeline.sequencer import ResultSequencer
from vitals_stream.pipeline.session import PipelineState, StreamSession

__all__ = [
    "ResultChannel",
    "ProcessorMetrics",
    "StreamProcessor",
    "ResultSequencer",
    "PipelineState",
    "StreamSession",
]
