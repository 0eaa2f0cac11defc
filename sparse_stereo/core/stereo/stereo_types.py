# core data types for sparse stereo matching
from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Dict
import numpy as np

from sparse_stereo.types import KeypointStatus


@dataclass(frozen=True)
class KeypointStats:
    n_total: int
    n_valid: int
    n_no_left_rect: int
    n_no_right_rect: int
    n_no_depth: int

    @staticmethod
    def from_statuses(statuses: List[KeypointStatus]) -> "KeypointStats":
        counts: Dict[KeypointStatus, int] = {s: 0 for s in KeypointStatus}
        for s in statuses:
            counts[KeypointStatus(s)] += 1
        return KeypointStats(
            n_total=len(statuses),
            n_valid=counts[KeypointStatus.VALID],
            n_no_left_rect=counts[KeypointStatus.NO_LEFT_RECTIFICATION],
            n_no_right_rect=counts[KeypointStatus.NO_RIGHT_CORRESPONDENCE],
            n_no_depth=counts[KeypointStatus.NO_VALID_DEPTH],
        )

    def summary(self) -> str:
        if self.n_total == 0:
            return "no keypoints"
        return (
            f"valid={self.n_valid}/{self.n_total} ({100.0 * self.n_valid / self.n_total:.1f}%) "
            f"no_left_rect={self.n_no_left_rect} no_right_rect={self.n_no_right_rect} "
            f"no_depth={self.n_no_depth}"
        )


def _empty(n: int, d: int) -> np.ndarray:
    return np.zeros((n, d), dtype=np.float64)


@dataclass
class StereoObservations:
    """
    Per-keypoint results of sparse stereo matching. Every array is indexed by
    the left keypoint index and has the same length.
    """
    left_keypoints: np.ndarray                     # (N,2) raw left pixels
    versors: np.ndarray                            # (N,3) unit rays, unrectified left frame
    scores: np.ndarray                             # (N,) detector response
    left_keypoints_rectified: np.ndarray = None    # (N,2)
    right_keypoints_rectified: np.ndarray = None   # (N,2)
    right_keypoints: np.ndarray = None             # (N,2) raw right pixels
    statuses: List[KeypointStatus] = field(default_factory=list)
    depths: np.ndarray = None                      # (N,) z in rectified left frame, 0 if invalid
    points_3d: np.ndarray = None                   # (N,3) rectified left frame, 0 if invalid

    def __post_init__(self):
        n = self.left_keypoints.shape[0]
        if self.left_keypoints_rectified is None:
            self.left_keypoints_rectified = _empty(n, 2)
        if self.right_keypoints_rectified is None:
            self.right_keypoints_rectified = _empty(n, 2)
        if self.right_keypoints is None:
            self.right_keypoints = _empty(n, 2)
        if self.depths is None:
            self.depths = np.zeros(n, dtype=np.float64)
        if self.points_3d is None:
            self.points_3d = _empty(n, 3)

    def __len__(self) -> int:
        return int(self.left_keypoints.shape[0])

    def stats(self) -> KeypointStats:
        return KeypointStats.from_statuses(self.statuses)

    def valid_indices(self) -> np.ndarray:
        return np.array([i for i, s in enumerate(self.statuses) if s == KeypointStatus.VALID], dtype=int)

    def disparities(self) -> np.ndarray:
        return self.left_keypoints_rectified[:, 0] - self.right_keypoints_rectified[:, 0]
