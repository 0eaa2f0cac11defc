from __future__ import annotations
from dataclasses import dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Optional, Any, Dict
import json


class ExecutionStrategy(Enum):
    SERIAL = "serial"
    PARALLEL = "parallel"
    AUTO = "auto"        # parallel when more than one cpu is available


class BaselineCheck(Enum):
    WARN = "warn"
    FAIL = "fail"


@dataclass(frozen=True)
class StereoMatchingParams:
    # template / stripe geometry (pixels, odd)
    templ_cols: int = 101
    templ_rows: int = 11
    stripe_extra_rows: int = 0       # p/m stripe_extra_rows/2 rows to absorb rectification error

    # valid depth range (meters)
    min_point_dist: float = 0.1
    max_point_dist: float = 15.0

    tolerance_template_matching: float = 0.15   # max normalized SQDIFF for a valid match
    nominal_baseline: float = 0.11
    subpixel_refinement: bool = False

    rectification_alpha: float = 0.0            # cv2.stereoRectify free scaling
    baseline_check: BaselineCheck = BaselineCheck.WARN
    baseline_tolerance: float = 0.1             # relative, +/-10 %

    execution: ExecutionStrategy = ExecutionStrategy.SERIAL
    num_workers: Optional[int] = None

    rectification_tolerance_px: float = 2.0     # map round-trip check for left keypoints
    epipolar_tolerance_px: float = 3.0          # |yL - yR| allowed for VALID pairs

    # detection
    max_keypoints: int = 300
    fast_threshold: int = 20
    detector_backend: str = "auto"              # "auto" | "cpu" | "cuda"

    def __post_init__(self):
        # allow plain strings coming from JSON
        if not isinstance(self.baseline_check, BaselineCheck):
            object.__setattr__(self, "baseline_check", BaselineCheck(self.baseline_check))
        if not isinstance(self.execution, ExecutionStrategy):
            object.__setattr__(self, "execution", ExecutionStrategy(self.execution))

        if self.templ_cols <= 0 or self.templ_cols % 2 != 1:
            raise ValueError(f"templ_cols must be a positive odd number, got {self.templ_cols}")
        if self.templ_rows <= 0 or self.templ_rows % 2 != 1:
            raise ValueError(f"templ_rows must be a positive odd number, got {self.templ_rows}")
        if self.stripe_extra_rows < 0 or self.stripe_extra_rows % 2 != 0:
            # keeps stripe_rows = templ_rows + stripe_extra_rows odd
            raise ValueError("stripe_extra_rows must be a non-negative even number")
        if self.min_point_dist <= 0:
            raise ValueError("min_point_dist must be positive")
        if self.max_point_dist <= self.min_point_dist:
            raise ValueError("max_point_dist must be larger than min_point_dist")
        if self.tolerance_template_matching <= 0:
            raise ValueError("tolerance_template_matching must be positive")
        if self.nominal_baseline <= 0:
            raise ValueError("nominal_baseline must be positive")
        if self.num_workers is not None and self.num_workers < 1:
            raise ValueError("num_workers must be >= 1")
        if self.detector_backend not in ("auto", "cpu", "cuda"):
            raise ValueError(f"unknown detector_backend: {self.detector_backend}")

    @property
    def stripe_rows(self) -> int:
        return self.templ_rows + self.stripe_extra_rows

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "StereoMatchingParams":
        known = {f.name for f in fields(StereoMatchingParams)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown stereo matching parameters: {sorted(unknown)}")
        return StereoMatchingParams(**data)

    def to_dict(self) -> Dict[str, Any]:
        out = {}
        for f in fields(self):
            v = getattr(self, f.name)
            out[f.name] = v.value if isinstance(v, Enum) else v
        return out


def load_matching_params(path: str | Path) -> StereoMatchingParams:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Parameter file not found: {path}")
    with open(path, "r") as f:
        data = json.load(f)
    return StereoMatchingParams.from_dict(data)
