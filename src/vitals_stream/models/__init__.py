"""
Data Models
===========

Pydantic models for the estimation wire format and emitted results.

Models:
    - EstimationRequest: Sealed window serialized for the backend
    - EstimationResult: Window result (estimate or placeholder)
    - VitalSeries: Timed values for one vital-sign channel
    - ResultStatus: OK, TIMEOUT or FAILED
"""

from vitals_stream.models.estimation import (
    EstimationRequest,
    EstimationResult,
    ResultStatus,
    VitalSeries,
)

__all__ = [
    "EstimationRequest",
    "EstimationResult",
    "ResultStatus",
    "VitalSeries",
]
