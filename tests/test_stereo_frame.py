"""
End-to-end tests for sparse stereo matching on one frame.
"""

from dataclasses import replace
from types import SimpleNamespace

import cv2
import numpy as np
import pytest

from sparse_stereo.types import KeypointStatus, ConsistencyError
from sparse_stereo.core.stereo import stereo_match
from sparse_stereo.core.stereo.stereo_frame import StereoFrame

from conftest import make_rig, blob_image, interior_points, BLOB_CENTERS, DISPARITY, FX, BASELINE


EXPECTED_DEPTH = FX * BASELINE / DISPARITY


class _FixedDetector:
    def __init__(self, pts):
        self.pts = pts

    def detect(self, image, mask=None):
        return [SimpleNamespace(pt=(x, y), response=float(i + 1)) for i, (x, y) in enumerate(self.pts)]


@pytest.fixture
def frame(rig, params, blob_pair):
    left, right = blob_pair
    f = StereoFrame(1000, left, right, rig, params)
    f.set_left_keypoints(np.array(BLOB_CENTERS))
    return f


class TestSparseStereoMatching:
    """Tests for the full rectify / match / triangulate / check pipeline."""

    def test_all_blobs_matched(self, frame):
        obs = frame.sparse_stereo_matching()

        assert obs.statuses == [KeypointStatus.VALID] * len(BLOB_CENTERS)
        np.testing.assert_allclose(obs.depths, EXPECTED_DEPTH, rtol=0.1)
        np.testing.assert_allclose(obs.points_3d[:, 2], obs.depths, atol=1e-4)
        np.testing.assert_allclose(obs.disparities(), DISPARITY, atol=1.0)
        expected_right = np.array(BLOB_CENTERS) - [DISPARITY, 0.0]
        np.testing.assert_allclose(obs.right_keypoints, expected_right, atol=1.5)
        assert frame.observations is obs

    def test_points_follow_versors(self, frame):
        """Each 3D point lies on the ray of its (rectified) left versor."""
        obs = frame.sparse_stereo_matching()
        R = frame.rig.left.R_rectify
        for i in obs.valid_indices():
            v = R @ obs.versors[i]
            np.testing.assert_allclose(np.cross(obs.points_3d[i], v), 0.0, atol=1e-9)

    def test_mixed_statuses(self, rig, params):
        left = blob_image([(300.0, 100.0), (500.0, 440.0)])
        right = blob_image([(280.0, 100.0), (500.0, 440.0)])
        f = StereoFrame(0, left, right, rig, params)
        f.set_left_keypoints(np.array([[300.0, 100.0], [500.0, 440.0], [300.0, 2.0]]))

        obs = f.sparse_stereo_matching()

        assert obs.statuses == [
            KeypointStatus.VALID,
            KeypointStatus.NO_VALID_DEPTH,            # zero disparity
            KeypointStatus.NO_RIGHT_CORRESPONDENCE,   # template off the top edge
        ]
        np.testing.assert_array_equal(obs.depths[1:], 0.0)
        np.testing.assert_array_equal(obs.points_3d[1:], 0.0)
        np.testing.assert_array_equal(obs.right_keypoints[2], [0.0, 0.0])
        assert obs.stats().n_valid == 1

    def test_no_keypoints(self, rig, params, blob_pair):
        obs = StereoFrame(0, blob_pair[0], blob_pair[1], rig, params).sparse_stereo_matching()
        assert len(obs) == 0
        assert obs.stats().summary() == "no keypoints"

    def test_color_input(self, rig, params, blob_pair):
        left = cv2.cvtColor(blob_pair[0], cv2.COLOR_GRAY2BGR)
        right = cv2.cvtColor(blob_pair[1], cv2.COLOR_GRAY2BGR)
        f = StereoFrame(0, left, right, rig, params)
        assert f.left_img.ndim == 2
        f.set_left_keypoints(np.array(BLOB_CENTERS))
        assert f.sparse_stereo_matching().stats().n_valid == len(BLOB_CENTERS)


class TestMatchReuse:
    """Right matches are reused when the rectified left keypoint is unchanged."""

    def _spy(self, monkeypatch):
        calls = []
        real = stereo_match.find_matching_keypoint_rectified

        def spy(*args, **kwargs):
            calls.append(1)
            return real(*args, **kwargs)

        monkeypatch.setattr(stereo_match, "find_matching_keypoint_rectified", spy)
        return calls

    def test_rerun_uses_own_observations(self, frame, monkeypatch):
        first = frame.sparse_stereo_matching()
        calls = self._spy(monkeypatch)
        second = frame.sparse_stereo_matching()
        assert calls == []
        assert second.statuses == first.statuses
        np.testing.assert_array_equal(second.right_keypoints_rectified, first.right_keypoints_rectified)

    def test_previous_frame(self, frame, rig, params, blob_pair, monkeypatch):
        previous = frame.sparse_stereo_matching()
        other = StereoFrame(2000, blob_pair[0], blob_pair[1], rig, params)
        other.set_left_keypoints(np.array(BLOB_CENTERS[:2] + [(10.0, 240.0)]))
        calls = self._spy(monkeypatch)
        obs = other.sparse_stereo_matching(previous=previous)
        assert len(calls) == 1
        np.testing.assert_array_equal(obs.right_keypoints_rectified[:2], previous.right_keypoints_rectified[:2])


class TestKeypointsAndRectification:
    def test_keypoint_length_mismatch(self, frame):
        with pytest.raises(ConsistencyError):
            frame.set_left_keypoints(np.zeros((3, 2)), scores=np.zeros(2))

    def test_versors_from_calibration(self, frame):
        assert frame.versors.shape == (len(BLOB_CENTERS), 3)
        np.testing.assert_allclose(np.linalg.norm(frame.versors, axis=1), 1.0)

    def test_detect_left_keypoints(self, rig, params, blob_pair):
        f = StereoFrame(0, blob_pair[0], blob_pair[1], rig, params)
        assert f.detect_left_keypoints(_FixedDetector(BLOB_CENTERS)) == len(BLOB_CENTERS)
        # strongest response first
        np.testing.assert_allclose(f.left_keypoints[0], BLOB_CENTERS[-1])
        assert f.scores[0] == pytest.approx(len(BLOB_CENTERS))

    def test_rectified_images_are_lazy(self, frame):
        assert not frame.is_rectified
        left_r, right_r = frame.get_rectified_images()
        assert frame.is_rectified
        assert frame.baseline == pytest.approx(BASELINE)
        assert frame.get_rectified_images()[0] is left_r
        assert right_r.shape == frame.right_img.shape

    def test_clone_rectification(self, frame, params, blob_pair):
        frame.compute_rectification_parameters()
        other = StereoFrame(0, blob_pair[0], blob_pair[1], make_rig(), params)
        other.clone_rectification_parameters(frame)
        assert other.is_rectified
        assert other.baseline == frame.baseline
        np.testing.assert_array_equal(other.rig.left.map_x, frame.rig.left.map_x)


class TestSubpixelPipeline:
    """Subpixel refinement through the full pipeline keeps every invariant."""

    @pytest.mark.parametrize("pair", ["textured_pair", "blocky_pair"])
    def test_frame_with_refinement(self, pair, rig, params, request):
        left, right = request.getfixturevalue(pair)
        f = StereoFrame(0, left, right, rig, replace(params, subpixel_refinement=True))
        f.set_left_keypoints(interior_points(300))

        obs = f.sparse_stereo_matching()

        idx = obs.valid_indices()
        assert idx.size > 250
        dy = np.abs(obs.left_keypoints_rectified[idx, 1] - obs.right_keypoints_rectified[idx, 1])
        assert np.max(dy) <= params.epipolar_tolerance_px
        np.testing.assert_allclose(obs.disparities()[idx], DISPARITY, atol=1.0)
