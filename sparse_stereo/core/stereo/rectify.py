from __future__ import annotations
from dataclasses import dataclass
import logging
import numpy as np
import cv2

from sparse_stereo.types import RectificationError
from .calib import CameraModel, StereoRig, make_pose
from .params import BaselineCheck, StereoMatchingParams

logger = logging.getLogger(__name__)

ROT_LOG_TOL = 1e-5      # rad, rectified relative rotation must be identity
TRAN_YZ_TOL = 1e-3      # m, rectified relative translation must be along x


def rotation_log_norm(R: np.ndarray) -> float:
    # angle of the axis-angle vector
    rvec, _ = cv2.Rodrigues(np.asarray(R, dtype=np.float64))
    return float(np.linalg.norm(rvec))


@dataclass
class StereoRectifier:
    left: CameraModel             # with R_rectify, P, maps
    right: CameraModel
    Q: np.ndarray
    T_B_camLrect: np.ndarray      # (4,4) rectified left camera -> body
    T_camLrect_camRrect: np.ndarray
    baseline_m: float

    @staticmethod
    def compute(
            left: CameraModel,
            right: CameraModel,
            T_cam0_cam1: np.ndarray,      # 4x4 transform from cam0 to cam1
            nominal_baseline: float,
            alpha: float = 0.0,
            baseline_check: BaselineCheck = BaselineCheck.WARN,
            baseline_tolerance: float = 0.1,
        ) -> "StereoRectifier":

        w, h = left.image_size
        R = T_cam0_cam1[:3, :3].astype(np.float64)
        t = T_cam0_cam1[:3, 3].astype(np.float64).reshape(3, 1)

        # stereoRectify gives rectification rotations and new projection matrices
        R1, R2, P1, P2, Q, _, _ = cv2.stereoRectify(
            left.K, left.D, right.K, right.D, (w, h), R, t,
            flags=cv2.CALIB_ZERO_DISPARITY,
            alpha=alpha
        )
        logger.debug("R_rectify left:\n%s\nR_rectify right:\n%s", R1, R2)

        # rectified camera poses in body frame: T_B_camrect = T_BS * [R_rectify^T | 0]
        T_B_camLrect = left.T_BS @ make_pose(R1.T)
        T_B_camRrect = right.T_BS @ make_pose(R2.T)
        T_LR = np.linalg.inv(T_B_camLrect) @ T_B_camRrect

        baseline_m = float(T_LR[0, 3])
        _check_rectified_geometry(T_LR, T_cam0_cam1)
        _check_baseline(baseline_m, nominal_baseline, baseline_check, baseline_tolerance)

        # Rectification maps (compute once)
        map1_x, map1_y = cv2.initUndistortRectifyMap(left.K, left.D, R1, P1, (w, h), cv2.CV_32FC1)
        map2_x, map2_y = cv2.initUndistortRectifyMap(right.K, right.D, R2, P2, (w, h), cv2.CV_32FC1)

        logger.debug("rectified fx=%.3f baseline=%.5f (P2 based: %.5f)",
                     P1[0, 0], baseline_m, abs(P2[0, 3]) / P1[0, 0])

        return StereoRectifier(
            left=left.with_rectification(R1, P1, map1_x, map1_y),
            right=right.with_rectification(R2, P2, map2_x, map2_y),
            Q=Q,
            T_B_camLrect=T_B_camLrect,
            T_camLrect_camRrect=T_LR,
            baseline_m=baseline_m,
        )

    def rectify_pair(self, img0: np.ndarray, img1: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        return remap_pair(self.left, self.right, img0, img1)


def remap_pair(left: CameraModel, right: CameraModel,
               img0: np.ndarray, img1: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    r0 = cv2.remap(img0, left.map_x, left.map_y, interpolation=cv2.INTER_LINEAR)
    r1 = cv2.remap(img1, right.map_x, right.map_y, interpolation=cv2.INTER_LINEAR)
    return r0, r1


def _check_rectified_geometry(T_LR: np.ndarray, T_cam0_cam1: np.ndarray) -> None:
    rot_err = rotation_log_norm(T_LR[:3, :3])
    if rot_err > ROT_LOG_TOL:
        raise RectificationError(
            f"camera poses do not seem to be rectified (rot): |log(R)|={rot_err:.3e}, "
            f"unrectified |log(R)|={rotation_log_norm(np.linalg.inv(T_cam0_cam1)[:3, :3]):.3e}"
        )
    ty, tz = float(T_LR[1, 3]), float(T_LR[2, 3])
    if abs(ty) > TRAN_YZ_TOL or abs(tz) > TRAN_YZ_TOL:
        raise RectificationError(
            f"camera poses do not seem to be rectified (tran): t={T_LR[:3, 3]}"
        )


def _check_baseline(baseline: float, nominal: float, severity: BaselineCheck, tol: float) -> None:
    if (1.0 - tol) * nominal <= baseline <= (1.0 + tol) * nominal:
        return
    msg = f"abnormal baseline: {baseline:.5f}, nominal baseline: {nominal:.5f} (+/-{tol:.0%})"
    if severity == BaselineCheck.FAIL:
        raise RectificationError(msg)
    logger.warning(msg)


def rectify_rig(rig: StereoRig, params: StereoMatchingParams) -> StereoRig:
    """Compute rectification once; no-op when the rig is already rectified."""
    if rig.is_rectified:
        return rig

    nominal = rig.nominal_baseline if rig.nominal_baseline is not None else params.nominal_baseline
    rect = StereoRectifier.compute(
        rig.left, rig.right, rig.T_cam0_cam1, nominal,
        alpha=params.rectification_alpha,
        baseline_check=params.baseline_check,
        baseline_tolerance=params.baseline_tolerance,
    )
    rig.left = rect.left
    rig.right = rect.right
    rig.T_B_camLrect = rect.T_B_camLrect
    rig.baseline = rect.baseline_m
    rig.is_rectified = True
    return rig
