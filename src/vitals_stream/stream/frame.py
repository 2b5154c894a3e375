"""
Frame Data Model
=================

Internal frame representation for the acquisition pipeline.

Design Rules:
    - This is the ONLY frame format passed between sources and windows
    - Frames are immutable once captured
    - Pushing a frame into a window transfers the same object (no copy)
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np


@dataclass(frozen=True, slots=True)
class Frame:
    """
    One decoded image sample.

    Attributes:
        index: Source-relative sequence index
        timestamp: Monotonic capture timestamp in seconds
        image: Decoded BGR image, shape (H, W, 3), dtype uint8
        fps: Declared source FPS, if known
    """

    index: int
    timestamp: float
    image: np.ndarray
    fps: Optional[float] = None

    def __post_init__(self) -> None:
        # Shared between overlapping windows, so keep the pixels read-only
        self.image.flags.writeable = False

    def __repr__(self) -> str:
        """Compact repr that doesn't dump the pixels."""
        return (
            f"Frame(index={self.index}, "
            f"timestamp={self.timestamp:.3f}, "
            f"shape={self.image.shape})"
        )
