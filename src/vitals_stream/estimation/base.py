"""
Estimation Client
=================

Clean estimation abstraction.

This module provides the EstimationClient protocol and MockEstimationClient
implementation, which produces vitals WITHOUT any network access.

Design Rules:
    - Takes a sealed Window, returns an EstimationResult
    - One attempt per call; resubmission is the caller's policy
    - Mock provides deterministic, stable output for development and tests
"""

import asyncio
import logging
import math
from typing import Protocol

from vitals_stream.models.estimation import EstimationResult, VitalSeries
from vitals_stream.stream.window import Window


logger = logging.getLogger(__name__)


class EstimationClient(Protocol):
    """
    Protocol for estimation backends.

    All implementations must provide an async `send` method that takes a
    sealed Window and returns an EstimationResult, raising TransportError or
    BackendError on failure.

    Implemented by:
        - MockEstimationClient (development, tests)
        - RestEstimationClient (production)
    """

    async def send(self, window: Window) -> EstimationResult:
        """
        Estimate vitals for a window.

        Args:
            window: Sealed window (read-only)

        Returns:
            EstimationResult correlated by window id
        """
        ...


class MockEstimationClient:
    """
    Deterministic mock estimation backend.

    Generates stable vitals from the window id and frame timestamps:
        - Heart rate around `base_heart_rate` with slow sinusoidal drift
        - Respiratory rate around `base_respiratory_rate`
        - PPG waveform sampled at every frame timestamp

    Attributes:
        base_heart_rate: Mean heart rate in bpm
        base_respiratory_rate: Mean respiratory rate in breaths/min
        latency_seconds: Simulated round-trip time
    """

    def __init__(
        self,
        base_heart_rate: float = 72.0,
        base_respiratory_rate: float = 15.0,
        latency_seconds: float = 0.0,
        drift_period: int = 20,
    ) -> None:
        """
        Initialize mock estimation client.

        Args:
            base_heart_rate: Mean simulated heart rate (bpm)
            base_respiratory_rate: Mean simulated respiratory rate
            latency_seconds: Delay before each response
            drift_period: Windows for one complete drift cycle
        """
        self.base_heart_rate = base_heart_rate
        self.base_respiratory_rate = base_respiratory_rate
        self.latency_seconds = latency_seconds
        self.drift_period = max(1, drift_period)
        self.requests_served: int = 0

        logger.info(
            f"MockEstimationClient initialized: hr={base_heart_rate}bpm, "
            f"rr={base_respiratory_rate}/min, latency={latency_seconds}s"
        )

    async def send(self, window: Window) -> EstimationResult:
        """
        Generate a deterministic estimate for a window.

        Args:
            window: Sealed window

        Returns:
            EstimationResult with heart_rate, respiratory_rate and ppg_waveform
        """
        if self.latency_seconds > 0:
            await asyncio.sleep(self.latency_seconds)

        phase = (2 * math.pi * window.window_id) / self.drift_period
        heart_rate = round(self.base_heart_rate + 4.0 * math.sin(phase), 1)
        respiratory_rate = round(self.base_respiratory_rate + 1.5 * math.cos(phase), 1)

        timestamps = window.timestamps
        beat_hz = heart_rate / 60.0
        ppg = [math.sin(2 * math.pi * beat_hz * t) for t in timestamps]

        self.requests_served += 1

        return EstimationResult(
            window_id=window.window_id,
            session_id=window.session_id,
            start_timestamp=window.start_timestamp,
            end_timestamp=window.end_timestamp,
            frame_count=window.frame_count,
            vitals={
                "heart_rate": VitalSeries(
                    values=[heart_rate],
                    timestamps=[window.end_timestamp],
                    unit="bpm",
                    confidence=[1.0],
                ),
                "respiratory_rate": VitalSeries(
                    values=[respiratory_rate],
                    timestamps=[window.end_timestamp],
                    unit="breaths/min",
                    confidence=[1.0],
                ),
                "ppg_waveform": VitalSeries(
                    values=ppg,
                    timestamps=timestamps,
                    unit="unitless",
                    confidence=[1.0] * len(ppg),
                ),
            },
            model_used="mock",
        )
