# Sparse stereo matching for one synchronized stereo pair
from __future__ import annotations
from typing import Any, Optional
import logging
import numpy as np
import cv2

from sparse_stereo.types import ConsistencyError
from sparse_stereo.core.image_buffer import as_host
from sparse_stereo.core.features.detector import detect_best
from .calib import StereoRig
from .params import StereoMatchingParams
from .rectify import rectify_rig, remap_pair
from .keypoint_rectifier import calibrate_pixels, rectify_keypoints, unrectify_keypoints
from .stereo_match import CorrespondenceSearcher, MatchCache, MatchVerifier
from .triangulation import depths_from_rectified_matches, points_from_versors
from .stereo_types import StereoObservations
from .consistency import check_stereo_observations

logger = logging.getLogger(__name__)


def to_gray(img: Any) -> np.ndarray:
    img = as_host(img)
    if img.ndim == 3:
        return cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
    return img


class StereoFrame:
    def __init__(
        self,
        t_ns: int,
        left: np.ndarray,
        right: np.ndarray,
        rig: StereoRig,
        params: StereoMatchingParams = StereoMatchingParams(),
        verifier: Optional[MatchVerifier] = None,
    ):
        self.t_ns = t_ns
        self.left_img = to_gray(left)
        self.right_img = to_gray(right)
        self.rig = rig
        self.p = params
        self.searcher = CorrespondenceSearcher(params, verifier=verifier)

        self.left_keypoints = np.zeros((0, 2), dtype=np.float64)
        self.scores = np.zeros(0, dtype=np.float64)
        self.versors = np.zeros((0, 3), dtype=np.float64)

        self.left_img_rectified: Optional[np.ndarray] = None
        self.right_img_rectified: Optional[np.ndarray] = None
        self.observations: Optional[StereoObservations] = None

    # ---------- keypoints ----------

    def set_left_keypoints(self, pts: np.ndarray, scores: Optional[np.ndarray] = None,
                           versors: Optional[np.ndarray] = None) -> None:
        pts = np.asarray(pts, dtype=np.float64).reshape(-1, 2)
        n = pts.shape[0]
        scores = np.zeros(n) if scores is None else np.asarray(scores, dtype=np.float64).reshape(-1)
        versors = calibrate_pixels(pts, self.rig.left) if versors is None \
            else np.asarray(versors, dtype=np.float64).reshape(-1, 3)
        if scores.shape[0] != n or versors.shape[0] != n:
            raise ConsistencyError("set_left_keypoints: keypoints, scores and versors differ in length")
        self.left_keypoints = pts
        self.scores = scores
        self.versors = versors

    def detect_left_keypoints(self, detector, mask: Optional[np.ndarray] = None) -> int:
        kps = detect_best(detector, self.left_img, self.p.max_keypoints, mask=mask)
        pts = np.array([[kp.pt[0], kp.pt[1]] for kp in kps], dtype=np.float64).reshape(-1, 2)
        scores = np.array([kp.response for kp in kps], dtype=np.float64)
        self.set_left_keypoints(pts, scores)
        return len(kps)

    # ---------- rectification ----------

    @property
    def is_rectified(self) -> bool:
        return self.rig.is_rectified

    @property
    def baseline(self) -> float:
        return self.rig.baseline

    def compute_rectification_parameters(self) -> None:
        rectify_rig(self.rig, self.p)

    def clone_rectification_parameters(self, other: "StereoFrame") -> None:
        if other.rig is self.rig:
            return
        self.rig.clone_rectification_from(other.rig)
        logger.debug("cloned undistort-rectify maps and other rectification parameters")

    def get_rectified_images(self) -> tuple[np.ndarray, np.ndarray]:
        if not self.rig.is_rectified:
            self.compute_rectification_parameters()

        if self.left_img_rectified is None \
                or self.left_img_rectified.shape[:2] != self.left_img.shape[:2] \
                or self.right_img_rectified.shape[:2] != self.right_img.shape[:2]:
            self.left_img_rectified, self.right_img_rectified = remap_pair(
                self.rig.left, self.rig.right, self.left_img, self.right_img
            )
        return self.left_img_rectified, self.right_img_rectified

    # ---------- matching ----------

    def _match_cache(self, previous: Optional[StereoObservations]) -> Optional[MatchCache]:
        src = previous if previous is not None else self.observations
        if src is None:
            return None
        return MatchCache(src.left_keypoints_rectified, src.right_keypoints_rectified, list(src.statuses))

    def sparse_stereo_matching(self, previous: Optional[StereoObservations] = None) -> StereoObservations:
        """
        Rectify, match every left keypoint along its epipolar line, compute
        depth and 3D points (rectified left frame), then validate the result.
        `previous` lets a frame reuse right matches of another frame whose
        rectified left keypoints are identical.
        """
        left_r, right_r = self.get_rectified_images()
        rig = self.rig
        K_rect = rig.left.K_rect
        fx = float(K_rect[0, 0])

        left_st, left_rect = rectify_keypoints(
            self.left_keypoints, rig.left, K_rect, self.p.rectification_tolerance_px
        )
        right_st, right_rect = self.searcher.find_correspondences(
            left_r, right_r, left_st, left_rect, fx, rig.baseline, cache=self._match_cache(previous)
        )
        right_st, depths = depths_from_rectified_matches(
            left_st, left_rect, right_st, right_rect, fx, rig.baseline,
            self.p.min_point_dist, self.p.max_point_dist,
        )

        # right keypoints back in raw pixels (bookkeeping / visualization)
        right_raw = unrectify_keypoints(right_rect, right_st, rig.right.map_x, rig.right.map_y)

        if depths.shape[0] != self.versors.shape[0]:
            raise ConsistencyError("sparse_stereo_matching: depths and versors sizes are wrong")
        points_3d = points_from_versors(self.versors, depths, right_st, rig.left.R_rectify)

        obs = StereoObservations(
            left_keypoints=self.left_keypoints.copy(),
            versors=self.versors.copy(),
            scores=self.scores.copy(),
            left_keypoints_rectified=left_rect,
            right_keypoints_rectified=right_rect,
            right_keypoints=right_raw,
            statuses=right_st,
            depths=depths,
            points_3d=points_3d,
        )
        logger.info("sparse stereo t=%d: %s", self.t_ns, obs.stats().summary())

        check_stereo_observations(obs, self.p.epipolar_tolerance_px)
        self.observations = obs
        return obs

