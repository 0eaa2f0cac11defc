"""
Unit tests for stereo rectification.
"""

import logging

import numpy as np
import pytest

from sparse_stereo.types import RectificationError
from sparse_stereo.core.stereo.calib import CameraModel, StereoRig, make_pose
from sparse_stereo.core.stereo.params import BaselineCheck, StereoMatchingParams
from sparse_stereo.core.stereo.rectify import (
    StereoRectifier,
    rectify_rig,
    rotation_log_norm,
)

from conftest import make_rig, WIDTH, HEIGHT, BASELINE


def _rot_z(deg):
    a = np.deg2rad(deg)
    return np.array([[np.cos(a), -np.sin(a), 0.0],
                     [np.sin(a), np.cos(a), 0.0],
                     [0.0, 0.0, 1.0]])


class TestRectifyRig:
    """Tests for rectify_rig on a well calibrated rig."""

    def test_parallel_rig(self, params):
        rig = rectify_rig(make_rig(), params)

        assert rig.is_rectified
        assert rig.baseline == pytest.approx(BASELINE, rel=1e-6)
        np.testing.assert_allclose(rig.left.R_rectify, np.eye(3), atol=1e-9)
        assert rig.left.map_x.shape == (HEIGHT, WIDTH)
        assert rig.left.map_x.dtype == np.float32
        assert rig.right.map_y.shape == (HEIGHT, WIDTH)
        np.testing.assert_allclose(rig.T_B_camLrect, np.eye(4), atol=1e-9)

    def test_rectified_intrinsics_shared(self, params):
        """Both rectified cameras share focal length and principal point."""
        rig = rectify_rig(make_rig(), params)
        np.testing.assert_allclose(rig.K_rect_left, rig.K_rect_right)
        assert rig.fx_rect == pytest.approx(rig.K_rect_left[0, 0])

    def test_second_call_is_noop(self, params):
        rig = rectify_rig(make_rig(), params)
        map_x = rig.left.map_x
        rectify_rig(rig, params)
        assert rig.left.map_x is map_x

    def test_rotated_rig_is_rectified(self, params):
        """A small relative rotation is removed by the rectifying rotations."""
        left = make_rig().left
        right = make_rig().right
        right = CameraModel(K=right.K, D=right.D, image_size=right.image_size,
                             T_BS=make_pose(_rot_z(1.0), [BASELINE, 0.0, 0.0]))
        rig = rectify_rig(StereoRig.from_body_poses(left, right, BASELINE), params)
        assert rig.baseline == pytest.approx(BASELINE, rel=1e-3)
        assert max(rotation_log_norm(rig.left.R_rectify),
                   rotation_log_norm(rig.right.R_rectify)) > 1e-4


class TestFatalGeometry:
    """Rigs whose body poses disagree with T_cam0_cam1 cannot be rectified."""

    def test_translation_off_axis(self, params):
        rig = make_rig()
        bad = StereoRig(left=rig.left, right=rig.right,
                        T_cam0_cam1=make_pose(np.eye(3), [-0.1, 0.05, 0.0]))
        with pytest.raises(RectificationError, match="tran"):
            rectify_rig(bad, params)

    def test_rotation_mismatch(self, params):
        rig = make_rig()
        bad = StereoRig(left=rig.left, right=rig.right,
                        T_cam0_cam1=make_pose(_rot_z(2.0), [-0.1, 0.0, 0.0]))
        with pytest.raises(RectificationError, match="rot"):
            rectify_rig(bad, params)

    def test_rig_untouched_after_failure(self, params):
        rig = make_rig()
        bad = StereoRig(left=rig.left, right=rig.right,
                        T_cam0_cam1=make_pose(np.eye(3), [-0.1, 0.05, 0.0]))
        with pytest.raises(RectificationError):
            rectify_rig(bad, params)
        assert not bad.is_rectified
        assert bad.left.map_x is None


class TestBaselineCheck:
    """The nominal baseline check is advisory unless configured otherwise."""

    def test_abnormal_baseline_warns(self, params, caplog):
        rig = make_rig(nominal_baseline=0.2)
        with caplog.at_level(logging.WARNING):
            rectify_rig(rig, params)
        assert rig.is_rectified
        assert "abnormal baseline" in caplog.text

    def test_abnormal_baseline_fails_when_strict(self):
        rig = make_rig(nominal_baseline=0.2)
        strict = StereoMatchingParams(baseline_check=BaselineCheck.FAIL)
        with pytest.raises(RectificationError, match="abnormal baseline"):
            rectify_rig(rig, strict)

    def test_nominal_falls_back_to_params(self, caplog):
        base = make_rig()
        rig = StereoRig.from_body_poses(base.left, base.right)
        assert rig.nominal_baseline is None
        with caplog.at_level(logging.WARNING):
            rectify_rig(rig, StereoMatchingParams(nominal_baseline=BASELINE))
        assert "abnormal baseline" not in caplog.text

    def test_within_tolerance(self, caplog):
        rig = make_rig(nominal_baseline=0.105)
        with caplog.at_level(logging.WARNING):
            rectify_rig(rig, StereoMatchingParams(baseline_check=BaselineCheck.FAIL))
        assert rig.is_rectified


class TestStereoRectifier:
    """Tests for the lower level StereoRectifier."""

    def test_rectify_pair_keeps_shape(self, blob_pair):
        rig = make_rig()
        rect = StereoRectifier.compute(rig.left, rig.right, rig.T_cam0_cam1, BASELINE)
        r0, r1 = rect.rectify_pair(*blob_pair)
        assert r0.shape == blob_pair[0].shape
        assert r1.dtype == np.uint8
        assert rect.T_camLrect_camRrect[0, 3] == pytest.approx(BASELINE)
        assert rect.Q.shape == (4, 4)
