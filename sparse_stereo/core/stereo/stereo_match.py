'''
Sparse stereo correspondence on rectified images.

For each left keypoint, a template around it is correlated (normalized SQDIFF)
against a stripe of the right image placed on the left-hand side of the
keypoint, since disparity = uL - uR >= 0. The stripe width is bounded by the
largest disparity allowed by the minimum point distance.
'''

from __future__ import annotations
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Optional, Protocol, Tuple
import logging
import os
import numpy as np
import cv2

from sparse_stereo.types import KeypointStatus, ConsistencyError
from .params import StereoMatchingParams, ExecutionStrategy

logger = logging.getLogger(__name__)

STRIPE_COLS_TOLERANCE = 4
SUBPIX_WIN = (10, 10)
SUBPIX_CRITERIA = (cv2.TERM_CRITERIA_EPS | cv2.TERM_CRITERIA_COUNT, 40, 0.001)
SUBPIX_MAX_SHIFT = 0.5   # px, refined point must stay inside the matched pixel

MatchResult = Tuple[KeypointStatus, np.ndarray, float]


class MatchVerifier(Protocol):
    """Optional second opinion on a VALID match (e.g. a right->left check)."""
    def verify(self, left_r: np.ndarray, right_r: np.ndarray,
               px_left: np.ndarray, px_right: np.ndarray) -> bool: ...


def stripe_size(fx: float, baseline: float, params: StereoMatchingParams,
                image_cols: int) -> Tuple[int, int]:
    # max disparity = fx * b / min depth
    stripe_cols = int(round(fx * baseline / params.min_point_dist)) + params.templ_cols + STRIPE_COLS_TOLERANCE
    if stripe_cols % 2 != 1:
        stripe_cols += 1
    if stripe_cols > image_cols:
        stripe_cols = image_cols
    return stripe_cols, params.stripe_rows


def refine_subpixel(image: np.ndarray, px: np.ndarray) -> np.ndarray:
    """
    cornerSubPix around an integer match. The match is a template centre, not
    necessarily a corner, so the iteration can drift towards a nearby corner;
    a result that leaves the matched pixel is dropped for the integer location.
    """
    corner = px.astype(np.float32).reshape(1, 1, 2)
    corner = cv2.cornerSubPix(image, corner, SUBPIX_WIN, (-1, -1), SUBPIX_CRITERIA)
    refined = corner.reshape(2).astype(np.float64)
    if np.all(np.abs(refined - px) <= SUBPIX_MAX_SHIFT):
        return refined
    return px


def find_matching_keypoint_rectified(
    left_r: np.ndarray,
    px_left: np.ndarray,
    right_r: np.ndarray,
    templ_cols: int,
    templ_rows: int,
    stripe_cols: int,
    stripe_rows: int,
    tol_corr: float,
    subpixel_refinement: bool = False,
) -> MatchResult:
    """
    Returns (status, right pixel, best score). Points whose template or stripe
    leaves the image vertically get NO_RIGHT_CORRESPONDENCE and score -1.
    """
    no_match = (KeypointStatus.NO_RIGHT_CORRESPONDENCE, np.zeros(2), -1.0)
    rows_l, cols_l = left_r.shape[:2]
    rows_r, cols_r = right_r.shape[:2]
    ux = int(round(px_left[0]))
    uy = int(round(px_left[1]))

    # ---- template in the left image ----
    templ_y = uy - (templ_rows - 1) // 2
    if templ_y < 0 or templ_y + templ_rows > rows_l - 1:
        return no_match

    # shift (never shrink) a template that falls off the image sideways
    offset_templ = 0
    templ_x = ux - (templ_cols - 1) // 2
    if templ_x < 0:
        offset_templ = templ_x
        templ_x = 0
    if templ_x + templ_cols > cols_l - 1:
        if offset_templ != 0:
            raise ConsistencyError("template exceeds the image on both sides")
        offset_templ = (templ_x + templ_cols) - (cols_l - 1)
        templ_x -= offset_templ
    templ = left_r[templ_y:templ_y + templ_rows, templ_x:templ_x + templ_cols]

    # ---- stripe in the right image ----
    stripe_y = uy - (stripe_rows - 1) // 2
    if stripe_y < 0 or stripe_y + stripe_rows > rows_r - 1:
        return no_match
    stripe_x = ux + (templ_cols - 1) // 2 - stripe_cols
    if stripe_x + stripe_cols > cols_r - 1:
        stripe_x -= (stripe_x + stripe_cols) - (cols_r - 1)
    if stripe_x < 0:
        stripe_x = 0
    stripe = right_r[stripe_y:stripe_y + stripe_rows, stripe_x:stripe_x + stripe_cols]

    result = cv2.matchTemplate(stripe, templ, cv2.TM_SQDIFF_NORMED)
    min_val, _, min_loc, _ = cv2.minMaxLoc(result)

    # from result coordinates back to the right image
    match_px = np.array([
        min_loc[0] + stripe_x + (templ_cols - 1) // 2 + offset_templ,
        min_loc[1] + stripe_y + (templ_rows - 1) // 2,
    ], dtype=np.float64)

    if subpixel_refinement:
        match_px = refine_subpixel(right_r, match_px)

    if min_val < tol_corr:
        return KeypointStatus.VALID, match_px, float(min_val)
    return KeypointStatus.NO_RIGHT_CORRESPONDENCE, match_px, float(min_val)


@dataclass
class MatchCache:
    """Right matches from an earlier pass, reused when the rectified left pixel is unchanged."""
    left_keypoints_rectified: np.ndarray
    right_keypoints_rectified: np.ndarray
    statuses: List[KeypointStatus]

    def lookup(self, i: int, px_left: np.ndarray) -> Optional[Tuple[KeypointStatus, np.ndarray]]:
        if i >= len(self.statuses) or i >= self.left_keypoints_rectified.shape[0] \
                or i >= self.right_keypoints_rectified.shape[0]:
            return None
        prev = self.left_keypoints_rectified[i]
        if prev[0] == px_left[0] and prev[1] == px_left[1]:
            return self.statuses[i], self.right_keypoints_rectified[i].copy()
        return None


class CorrespondenceSearcher:
    def __init__(self, params: StereoMatchingParams, verifier: Optional[MatchVerifier] = None):
        self.p = params
        self.verifier = verifier

    def _num_workers(self) -> int:
        if self.p.num_workers is not None:
            return self.p.num_workers
        return os.cpu_count() or 1

    def _use_parallel(self) -> bool:
        if self.p.execution == ExecutionStrategy.PARALLEL:
            return True
        if self.p.execution == ExecutionStrategy.AUTO:
            return self._num_workers() > 1
        return False

    def find_correspondences(
        self,
        left_r: np.ndarray,
        right_r: np.ndarray,
        left_statuses: List[KeypointStatus],
        left_pts_rect: np.ndarray,      # (N,2)
        fx: float,
        baseline: float,
        cache: Optional[MatchCache] = None,
    ) -> Tuple[List[KeypointStatus], np.ndarray]:
        """
        Returns right statuses (N,) and right rectified pixels (N,2); invalid
        left points are passed through with their status and pixel (0, 0).
        """
        left_pts_rect = np.asarray(left_pts_rect, dtype=np.float64).reshape(-1, 2)
        n = left_pts_rect.shape[0]
        if len(left_statuses) != n:
            raise ConsistencyError("find_correspondences: statuses and keypoints differ in length")

        stripe_cols, stripe_rows = stripe_size(fx, baseline, self.p, right_r.shape[1])

        statuses: List[KeypointStatus] = [KeypointStatus.VALID] * n
        pts_right = np.zeros((n, 2), dtype=np.float64)
        todo: List[int] = []
        n_cached = 0
        for i in range(n):
            if cache is not None:
                hit = cache.lookup(i, left_pts_rect[i])
                if hit is not None:
                    statuses[i], pts_right[i] = hit
                    n_cached += 1
                    continue
            if left_statuses[i] != KeypointStatus.VALID:
                statuses[i] = left_statuses[i]
                continue
            todo.append(i)

        def match_one(i: int) -> Tuple[KeypointStatus, np.ndarray]:
            st, px, _ = find_matching_keypoint_rectified(
                left_r, left_pts_rect[i], right_r,
                self.p.templ_cols, self.p.templ_rows, stripe_cols, stripe_rows,
                self.p.tolerance_template_matching, self.p.subpixel_refinement,
            )
            if st == KeypointStatus.VALID and self.verifier is not None:
                if not self.verifier.verify(left_r, right_r, left_pts_rect[i], px):
                    st = KeypointStatus.NO_RIGHT_CORRESPONDENCE
            return st, px

        if self._use_parallel() and len(todo) > 1:
            with ThreadPoolExecutor(max_workers=self._num_workers()) as ex:
                results = list(ex.map(match_one, todo))
        else:
            results = [match_one(i) for i in todo]

        # each slot is written exactly once
        for i, (st, px) in zip(todo, results):
            statuses[i] = st
            pts_right[i] = px

        if n_cached:
            logger.debug("find_correspondences: reused %d cached right keypoints", n_cached)
        return statuses, pts_right
