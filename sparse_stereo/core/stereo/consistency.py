from __future__ import annotations
import logging
import numpy as np

from sparse_stereo.types import KeypointStatus, ConsistencyError
from .stereo_types import StereoObservations

logger = logging.getLogger(__name__)

DEPTH_TOL = 1e-4


def check_stereo_observations(obs: StereoObservations, epipolar_tol_px: float = 3.0) -> None:
    """
    Raises ConsistencyError on the first violated invariant. A violation
    means a logic or calibration bug, never bad image data.
    """
    n = obs.left_keypoints.shape[0]
    sizes = {
        "versors": obs.versors.shape[0],
        "scores": obs.scores.shape[0],
        "left_keypoints_rectified": obs.left_keypoints_rectified.shape[0],
        "right_keypoints_rectified": obs.right_keypoints_rectified.shape[0],
        "right_keypoints": obs.right_keypoints.shape[0],
        "statuses": len(obs.statuses),
        "depths": obs.depths.shape[0],
        "points_3d": obs.points_3d.shape[0],
    }
    for name, size in sizes.items():
        if size != n:
            raise ConsistencyError(f"check_stereo_observations: {name} has {size} entries, expected {n}")

    for i in range(n):
        st = obs.statuses[i]
        depth = obs.depths[i]
        if st == KeypointStatus.VALID:
            dy = abs(obs.right_keypoints_rectified[i, 1] - obs.left_keypoints_rectified[i, 1])
            if dy > epipolar_tol_px:
                raise ConsistencyError(
                    f"check_stereo_observations: rectified keypoints have different y "
                    f"({obs.right_keypoints_rectified[i, 1]} vs. {obs.left_keypoints_rectified[i, 1]})"
                )

        if abs(obs.points_3d[i, 2] - depth) > DEPTH_TOL:
            raise ConsistencyError(
                f"check_stereo_observations: point {i} has wrong depth "
                f"({obs.points_3d[i, 2]} vs. {depth})"
            )

        if st == KeypointStatus.VALID:
            if abs(obs.right_keypoints[i, 0]) + abs(obs.right_keypoints[i, 1]) == 0:
                raise ConsistencyError(f"check_stereo_observations: right keypoint {i} is zero")
            if depth <= 0:
                logger.error("valid point %d: left=%s right=%s left_rect=%s right_rect=%s depth=%s",
                             i, obs.left_keypoints[i], obs.right_keypoints[i],
                             obs.left_keypoints_rectified[i], obs.right_keypoints_rectified[i], depth)
                raise ConsistencyError(f"check_stereo_observations: nonpositive depth {depth} for valid point {i}")
        else:
            if depth > 0:
                raise ConsistencyError(f"check_stereo_observations: positive depth {depth} for invalid point {i}")
            if np.any(obs.points_3d[i] != 0):
                raise ConsistencyError(f"check_stereo_observations: nonzero 3D point for invalid point {i}")
