"""
Estimation Module
=================

Request/response wrappers around the remote vital-signs estimation service.

The pipeline treats estimation as a pluggable black box: it hands over a
sealed Window and receives an EstimationResult or an error.

Components:
    - EstimationClient: Protocol for estimation backends
    - MockEstimationClient: Deterministic mock for development and tests
    - RestEstimationClient: HTTP backend client (production)
"""

from vitals_stream.estimation.base import EstimationClient, MockEstimationClient
from vitals_stream.estimation.rest_client import (
    RestEstimationClient,
    build_request,
    parse_vitals_response,
)

__all__ = [
    "EstimationClient",
    "MockEstimationClient",
    "RestEstimationClient",
    "build_request",
    "parse_vitals_response",
]
