"""
Shared fixtures: a synthetic, already-parallel stereo rig and blob images.
"""

import numpy as np
import pytest

from sparse_stereo.core.stereo.calib import CameraModel, StereoRig, K_from_intrinsics, make_pose
from sparse_stereo.core.stereo.params import StereoMatchingParams

WIDTH, HEIGHT = 640, 480
FX = 400.0
BASELINE = 0.1


def make_rig(baseline=BASELINE, fx=FX, nominal_baseline=None, dist=None):
    K = K_from_intrinsics(fx, fx, WIDTH / 2.0, HEIGHT / 2.0)
    D = np.zeros(5) if dist is None else np.asarray(dist, dtype=np.float64)
    left = CameraModel(K=K, D=D, image_size=(WIDTH, HEIGHT), T_BS=np.eye(4))
    right = CameraModel(K=K.copy(), D=D.copy(), image_size=(WIDTH, HEIGHT),
                        T_BS=make_pose(np.eye(3), [baseline, 0.0, 0.0]))
    return StereoRig.from_body_poses(left, right, nominal_baseline=nominal_baseline or baseline)


def blob_image(centers, shape=(HEIGHT, WIDTH), sigma=3.0, amp=200.0, bg=30.0):
    yy, xx = np.mgrid[0:shape[0], 0:shape[1]].astype(np.float64)
    img = np.full(shape, bg, dtype=np.float64)
    for x, y in centers:
        img += amp * np.exp(-((xx - x) ** 2 + (yy - y) ** 2) / (2.0 * sigma ** 2))
    return np.clip(np.round(img), 0, 255).astype(np.uint8)


# one blob per row band so that every stripe holds a single candidate
BLOB_CENTERS = [(300.0, 100.0), (350.0, 200.0), (420.0, 300.0), (250.0, 380.0)]
DISPARITY = 20


@pytest.fixture
def rig():
    return make_rig()


@pytest.fixture
def params():
    return StereoMatchingParams(
        templ_cols=21,
        templ_rows=11,
        stripe_extra_rows=0,
        min_point_dist=0.5,
        max_point_dist=50.0,
        tolerance_template_matching=0.15,
        nominal_baseline=BASELINE,
        detector_backend="cpu",
    )


@pytest.fixture
def blob_pair():
    left = blob_image(BLOB_CENTERS)
    right = blob_image([(x - DISPARITY, y) for x, y in BLOB_CENTERS])
    return left, right


@pytest.fixture
def textured_pair():
    """Smooth random texture, right = left shifted by DISPARITY columns."""
    import cv2
    rng = np.random.default_rng(0)
    noise = rng.integers(0, 256, size=(HEIGHT, WIDTH + DISPARITY)).astype(np.uint8)
    tex = cv2.GaussianBlur(noise, (5, 5), 1.5)
    left = np.ascontiguousarray(tex[:, :WIDTH])
    right = np.ascontiguousarray(tex[:, DISPARITY:])
    return left, right


@pytest.fixture
def blocky_pair():
    """Flat 8x8 patches of random grey, right = left shifted by DISPARITY columns."""
    rng = np.random.default_rng(2)
    cells = rng.integers(0, 256, size=(HEIGHT // 8, (WIDTH + DISPARITY) // 8 + 1)).astype(np.uint8)
    tex = np.repeat(np.repeat(cells, 8, axis=0), 8, axis=1)
    left = np.ascontiguousarray(tex[:, :WIDTH])
    right = np.ascontiguousarray(tex[:, DISPARITY:DISPARITY + WIDTH])
    return left, right


def interior_points(n, seed=1, margin_left=40, margin=12):
    """Keypoints whose true match lies inside the image and the search stripe."""
    rng = np.random.default_rng(seed)
    return np.column_stack([
        rng.uniform(margin_left, WIDTH - margin, n),
        rng.uniform(margin, HEIGHT - margin, n),
    ])
