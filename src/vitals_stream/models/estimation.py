"""
Estimation Wire Models
======================

Pydantic models for the estimation backend request and the results emitted
to consumers.

Request Contract (to the estimation backend):
    {
        "window_id": 12,
        "session_id": 1,
        "start_timestamp": 41.2,
        "frame_count": 150,
        "timestamps": [41.2, 41.233, ...],
        "frames": ["<base64 JPEG>", ...],
        "origin": "vitals-stream",
        "model": null
    }

Response Contract (from the estimation backend):
    {
        "vital_signs": {
            "heart_rate": {"value": 72.1, "unit": "bpm", "confidence": 0.93},
            "ppg_waveform": {"data": [...], "unit": "unitless", "confidence": [...]}
        },
        "model_used": "vitallens-2.0",
        "message": "..."
    }
"""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class EstimationRequest(BaseModel):
    """
    A sealed window serialized for the backend.

    Attributes:
        window_id: Window identifier within the session
        session_id: Session that produced the window
        start_timestamp: Timestamp of the first frame
        frame_count: Number of frames in the window
        timestamps: Per-frame capture timestamps
        frames: Base64-encoded JPEG payloads, one per frame
        origin: Client identifier
        model: Requested model name, if any
    """

    window_id: int = Field(..., ge=1)
    session_id: int = Field(..., ge=0)
    start_timestamp: float
    frame_count: int = Field(..., ge=1)
    timestamps: List[float]
    frames: List[str]
    origin: str = "vitals-stream"
    model: Optional[str] = None


class ResultStatus(str, Enum):
    """
    Outcome for a window.

    Attributes:
        OK: Backend returned an estimate
        TIMEOUT: No response within the result timeout (placeholder)
        FAILED: Backend or transport failure after resubmission (placeholder)
    """

    OK = "ok"
    TIMEOUT = "timeout"
    FAILED = "failed"


class VitalSeries(BaseModel):
    """Timed value series for one vital-sign channel."""

    values: List[float] = Field(default_factory=list)
    timestamps: List[float] = Field(default_factory=list)
    unit: Optional[str] = None
    confidence: List[float] = Field(default_factory=list)
    note: Optional[str] = None

    @property
    def latest(self) -> Optional[float]:
        return self.values[-1] if self.values else None


class EstimationResult(BaseModel):
    """
    Result for one window, correlated by window id.

    Placeholders (TIMEOUT/FAILED) carry no vitals but keep the
    window's time span so consumers can render the gap.
    """

    window_id: int = Field(..., ge=1)
    session_id: int = Field(..., ge=0)
    status: ResultStatus = ResultStatus.OK
    start_timestamp: float
    end_timestamp: float
    frame_count: int = Field(..., ge=1)
    vitals: Dict[str, VitalSeries] = Field(default_factory=dict)
    model_used: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_placeholder(self) -> bool:
        return self.status != ResultStatus.OK
