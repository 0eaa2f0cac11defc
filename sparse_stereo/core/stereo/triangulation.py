'''
Triangulation (rectified)
Depth from disparity, then 3D points from the left versors.
'''
from __future__ import annotations
from typing import List, Tuple
import numpy as np

from sparse_stereo.types import KeypointStatus, ConsistencyError, DegenerateRayError, downgrade

MIN_VERSOR_Z = 1e-3


def depth_from_disparity(uL: float, uR: float, fx: float, baseline_m: float,
                         min_dist: float, max_dist: float) -> float | None:
    """Returns depth (z in rectified left frame) or None when out of range / negative disparity."""
    d = uL - uR
    if d < 0:
        return None
    if d == 0:
        # point at infinity, beyond any max distance
        return None
    Z = fx * baseline_m / d
    if Z < min_dist or Z > max_dist:
        return None
    return Z


def depths_from_rectified_matches(
    left_statuses: List[KeypointStatus],
    left_pts: np.ndarray,
    right_statuses: List[KeypointStatus],
    right_pts: np.ndarray,
    fx: float,
    baseline_m: float,
    min_dist: float,
    max_dist: float,
) -> Tuple[List[KeypointStatus], np.ndarray]:
    """
    Returns the updated right statuses and depths (0 where invalid). A right
    point can never be more valid than its left point.
    """
    n = len(left_statuses)
    if n != len(right_statuses) or n != left_pts.shape[0] or n != right_pts.shape[0]:
        raise ConsistencyError("depths_from_rectified_matches: size mismatch")

    statuses = list(right_statuses)
    depths = np.zeros(n, dtype=np.float64)
    for i in range(n):
        if left_statuses[i] != KeypointStatus.VALID:
            statuses[i] = left_statuses[i]
            continue
        if statuses[i] != KeypointStatus.VALID:
            continue
        Z = depth_from_disparity(left_pts[i, 0], right_pts[i, 0], fx, baseline_m, min_dist, max_dist)
        if Z is None:
            statuses[i] = downgrade(statuses[i], KeypointStatus.NO_VALID_DEPTH)
        else:
            depths[i] = Z
    return statuses, depths


def points_from_versors(versors: np.ndarray, depths: np.ndarray,
                        statuses: List[KeypointStatus], R_rectify: np.ndarray) -> np.ndarray:
    """
    Rotate each (unrectified) left versor into the rectified left frame and
    scale it so that its z equals the depth. The rotated versor is not
    renormalized. Invalid points are set to zero.
    """
    versors = np.asarray(versors, dtype=np.float64).reshape(-1, 3)
    if versors.shape[0] != depths.shape[0] or len(statuses) != depths.shape[0]:
        raise ConsistencyError("points_from_versors: depths and versors sizes are wrong")

    pts = np.zeros((versors.shape[0], 3), dtype=np.float64)
    for i, st in enumerate(statuses):
        if st != KeypointStatus.VALID:
            continue
        v = R_rectify @ versors[i]
        if v[2] < MIN_VERSOR_Z:
            raise DegenerateRayError("points_from_versors: found point with nonpositive depth")
        # depth is the z component, not the range
        pts[i] = v * depths[i] / v[2]
    return pts


def triangulate_rectified(uL: float, vL: float, uR: float,
                          fx: float, fy: float, cx: float, cy: float,
                          baseline_m: float) -> np.ndarray | None:
    """Pinhole triangulation from rectified pixels alone."""
    d = uL - uR
    if d <= 1e-6:
        return None

    Z = fx * baseline_m / d
    X = (uL - cx) * Z / fx
    Y = (vL - cy) * Z / fy
    return np.array([X, Y, Z], dtype=np.float64)
