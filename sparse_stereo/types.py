from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Protocol, List, Any
import numpy as np


# -----------------------------
# Core sensor samples
# -----------------------------

@dataclass(frozen=True)
class StereoSample:
    t_ns: int
    left: np.ndarray   # HxW (uint8) or HxWx3, raw (distorted, unrectified)
    right: np.ndarray  # HxW (uint8) or HxWx3
    exposure_ns: Optional[int] = None


# -----------------------------
# Per-keypoint status
# -----------------------------

class KeypointStatus(IntEnum):
    VALID = 0
    NO_LEFT_RECTIFICATION = 1
    NO_RIGHT_CORRESPONDENCE = 2
    NO_VALID_DEPTH = 3


def downgrade(current: KeypointStatus, new: KeypointStatus) -> KeypointStatus:
    """A status can only move away from VALID, never back."""
    if current != KeypointStatus.VALID:
        return current
    return new


# -----------------------------
# Fatal errors (calibration / logic defects)
# -----------------------------

class StereoGeometryError(RuntimeError):
    pass


class RectificationError(StereoGeometryError):
    pass


class DegenerateRayError(StereoGeometryError):
    pass


class ConsistencyError(StereoGeometryError):
    pass


# -----------------------------
# Detector interface (CPU or accelerator backed)
# -----------------------------

class IFeatureDetector(Protocol):
    """Returns cv2.KeyPoint-like objects (with .pt and .response)."""
    def detect(self, image: Any, mask: Optional[np.ndarray] = None) -> List[Any]: ...
