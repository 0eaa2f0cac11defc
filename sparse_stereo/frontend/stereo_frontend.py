# sparse_stereo/frontend/stereo_frontend.py
# Per-frame driver: detection on the left image + sparse stereo matching
from __future__ import annotations

from typing import Optional
import logging
import numpy as np

from sparse_stereo.types import StereoSample, StereoGeometryError, IFeatureDetector
from sparse_stereo.core.features.detector import create_feature_detector
from sparse_stereo.core.stereo.calib import StereoRig
from sparse_stereo.core.stereo.params import StereoMatchingParams
from sparse_stereo.core.stereo.stereo_frame import StereoFrame
from sparse_stereo.core.stereo.stereo_match import MatchVerifier

logger = logging.getLogger(__name__)


class SparseStereoFrontend:
    def __init__(
        self,
        rig: StereoRig,
        params: StereoMatchingParams = StereoMatchingParams(),
        detector: Optional[IFeatureDetector] = None,
        verifier: Optional[MatchVerifier] = None,
    ):
        self.rig = rig
        self.p = params
        self.detector = detector if detector is not None else \
            create_feature_detector(params.detector_backend, params.fast_threshold)
        self.verifier = verifier
        self.last_frame: Optional[StereoFrame] = None
        self.n_frames = 0

    def process(self, sample: StereoSample, mask: Optional[np.ndarray] = None) -> StereoFrame:
        # frames share the rig: rectification runs on the first frame only
        frame = StereoFrame(sample.t_ns, sample.left, sample.right, self.rig, self.p, self.verifier)

        n_detected = frame.detect_left_keypoints(self.detector, mask=mask)
        logger.debug("t=%d: detected %d left keypoints", sample.t_ns, n_detected)

        try:
            frame.sparse_stereo_matching()
        except StereoGeometryError:
            logger.error("t=%d: sparse stereo matching aborted", sample.t_ns)
            raise

        if self.n_frames == 0:
            logger.info("rectified fx=%.2f baseline=%.4f", self.rig.fx_rect, self.rig.baseline)
        self.last_frame = frame
        self.n_frames += 1
        return frame
