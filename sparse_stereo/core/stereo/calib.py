'''
Camera calibration containers for a stereo rig.

Poses follow the EuRoC convention: T_BS maps points from the sensor (camera)
frame to the body frame. The rig relative pose T_cam0_cam1 maps points from
the left camera frame into the right camera frame (what cv2.stereoRectify
expects as R, t).
'''

from __future__ import annotations
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional, Tuple, Sequence
import json
import numpy as np


def K_from_intrinsics(fu: float, fv: float, cu: float, cv: float) -> np.ndarray:
    return np.array([[fu, 0.0, cu],
                     [0.0, fv, cv],
                     [0.0, 0.0, 1.0]], dtype=np.float64)


def D_from_radtan(coeffs: Sequence[float]) -> np.ndarray:
    # OpenCV wants (k1, k2, p1, p2[, k3]); pad the 4-term EuRoC model with k3 = 0
    d = [float(c) for c in coeffs]
    if len(d) == 4:
        d.append(0.0)
    if len(d) != 5:
        raise ValueError(f"expected 4 or 5 rad-tan coefficients, got {len(d)}")
    return np.array(d, dtype=np.float64)


def T_from_list(data_list: Sequence[float]) -> np.ndarray:
    T = np.array(data_list, dtype=np.float64)
    if T.size != 16:
        raise ValueError(f"pose needs 16 values, got {T.size}")
    return T.reshape(4, 4)


def T_cam0_cam1_from_T_BS(T_BS0: np.ndarray, T_BS1: np.ndarray) -> np.ndarray:
    # cam0 -> cam1
    return np.linalg.inv(T_BS1) @ T_BS0


def make_pose(R: np.ndarray, t: Optional[np.ndarray] = None) -> np.ndarray:
    T = np.eye(4, dtype=np.float64)
    T[:3, :3] = R
    if t is not None:
        T[:3, 3] = np.asarray(t, dtype=np.float64).reshape(3)
    return T


@dataclass(frozen=True, eq=False)
class CameraModel:
    K: np.ndarray                  # (3,3) raw intrinsics
    D: np.ndarray                  # (5,) rad-tan distortion
    image_size: Tuple[int, int]    # (w, h)
    T_BS: np.ndarray               # (4,4) camera -> body

    # filled in by rectification
    R_rectify: Optional[np.ndarray] = None   # (3,3) unrectified cam -> rectified cam
    P: Optional[np.ndarray] = None           # (3,4) rectified projection, extra column included
    map_x: Optional[np.ndarray] = None       # (h,w) float32, rectified px -> raw px (x)
    map_y: Optional[np.ndarray] = None       # (h,w) float32

    @property
    def fx(self) -> float:
        return float(self.K[0, 0])

    @property
    def width(self) -> int:
        return int(self.image_size[0])

    @property
    def height(self) -> int:
        return int(self.image_size[1])

    @property
    def is_rectified(self) -> bool:
        return self.R_rectify is not None and self.map_x is not None

    @property
    def K_rect(self) -> np.ndarray:
        """Rectified intrinsics: P without its last column."""
        if self.P is None:
            raise ValueError("camera has not been rectified yet")
        return self.P[:3, :3].copy()

    def with_rectification(self, R_rectify: np.ndarray, P: np.ndarray,
                           map_x: np.ndarray, map_y: np.ndarray) -> "CameraModel":
        return replace(self, R_rectify=R_rectify, P=P, map_x=map_x, map_y=map_y)

    def copy(self) -> "CameraModel":
        def cp(a):
            return None if a is None else a.copy()
        return CameraModel(
            K=self.K.copy(), D=self.D.copy(), image_size=tuple(self.image_size),
            T_BS=self.T_BS.copy(), R_rectify=cp(self.R_rectify), P=cp(self.P),
            map_x=cp(self.map_x), map_y=cp(self.map_y),
        )


@dataclass
class StereoRig:
    left: CameraModel
    right: CameraModel
    T_cam0_cam1: np.ndarray          # (4,4) left -> right, fixed at construction
    nominal_baseline: Optional[float] = None   # falls back to StereoMatchingParams.nominal_baseline

    # derived, set by rectification (or cloned from another rig)
    baseline: float = 0.0
    T_B_camLrect: Optional[np.ndarray] = None
    is_rectified: bool = False

    @staticmethod
    def from_body_poses(left: CameraModel, right: CameraModel,
                        nominal_baseline: Optional[float] = None) -> "StereoRig":
        T_01 = T_cam0_cam1_from_T_BS(left.T_BS, right.T_BS)
        if nominal_baseline is not None:
            nominal_baseline = float(nominal_baseline)
        return StereoRig(left=left, right=right, T_cam0_cam1=T_01,
                         nominal_baseline=nominal_baseline)

    @property
    def K_rect_left(self) -> np.ndarray:
        return self.left.K_rect

    @property
    def K_rect_right(self) -> np.ndarray:
        return self.right.K_rect

    @property
    def fx_rect(self) -> float:
        return float(self.left.P[0, 0])

    def same_calibration(self, other: "StereoRig") -> bool:
        """True when both rigs share intrinsics, distortion and poses."""
        pairs = [
            (self.left.K, other.left.K), (self.right.K, other.right.K),
            (self.left.D, other.left.D), (self.right.D, other.right.D),
            (self.left.T_BS, other.left.T_BS), (self.right.T_BS, other.right.T_BS),
            (self.T_cam0_cam1, other.T_cam0_cam1),
        ]
        if tuple(self.left.image_size) != tuple(other.left.image_size):
            return False
        if tuple(self.right.image_size) != tuple(other.right.image_size):
            return False
        return all(a.shape == b.shape and np.array_equal(a, b) for a, b in pairs)

    def clone_rectification_from(self, other: "StereoRig") -> None:
        if not other.is_rectified:
            raise ValueError("cannot clone rectification from an unrectified rig")
        src_l, src_r = other.left.copy(), other.right.copy()
        self.left = self.left.with_rectification(src_l.R_rectify, src_l.P, src_l.map_x, src_l.map_y)
        self.right = self.right.with_rectification(src_r.R_rectify, src_r.P, src_r.map_x, src_r.map_y)
        self.T_B_camLrect = other.T_B_camLrect.copy()
        self.baseline = other.baseline
        self.is_rectified = True


# -----------------------------
# JSON calibration
# -----------------------------

_CAMERA_FIELDS = ("intrinsics", "distortion_coefficients", "resolution", "T_BS")


def camera_from_dict(data: dict, name: str = "camera") -> CameraModel:
    for key in _CAMERA_FIELDS:
        if key not in data:
            raise ValueError(f"{name}: missing required field '{key}'")
    if len(data["intrinsics"]) != 4:
        raise ValueError(f"{name}: intrinsics must be [fu, fv, cu, cv]")
    if len(data["resolution"]) != 2:
        raise ValueError(f"{name}: resolution must be [width, height]")

    fu, fv, cu, cv = (float(v) for v in data["intrinsics"])
    w, h = (int(v) for v in data["resolution"])
    return CameraModel(
        K=K_from_intrinsics(fu, fv, cu, cv),
        D=D_from_radtan(data["distortion_coefficients"]),
        image_size=(w, h),
        T_BS=T_from_list(data["T_BS"]),
    )


def rig_from_dict(data: dict) -> StereoRig:
    for key in ("left", "right"):
        if key not in data:
            raise ValueError(f"Missing required field in calibration: {key}")
    left = camera_from_dict(data["left"], "left")
    right = camera_from_dict(data["right"], "right")
    if left.image_size != right.image_size:
        raise ValueError("left and right cameras must share the same resolution")
    return StereoRig.from_body_poses(left, right, data.get("nominal_baseline"))


def load_stereo_rig(path: str | Path) -> StereoRig:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Calibration file not found: {path}")
    with open(path, "r") as f:
        data = json.load(f)
    return rig_from_dict(data)
