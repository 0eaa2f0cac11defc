'''
Keypoint rectification (left camera) and the inverse map lookup (right camera).

Rectified pixels are computed geometrically (undistort -> rotate -> project)
and then checked against the precomputed undistort-rectify map, which is
what the rectified images are built from.
'''
from __future__ import annotations
from typing import List, Tuple
import numpy as np
import cv2

from sparse_stereo.types import KeypointStatus, DegenerateRayError
from .calib import CameraModel

MIN_RAY_Z = 1e-4


def calibrate_pixels(pts: np.ndarray, cam: CameraModel) -> np.ndarray:
    """
    pts: (N,2) raw pixels
    Returns (N,3) unit-norm rays (versors) in the unrectified camera frame.
    """
    pts = np.asarray(pts, dtype=np.float64).reshape(-1, 1, 2)
    if pts.shape[0] == 0:
        return np.zeros((0, 3), dtype=np.float64)
    xy = cv2.undistortPoints(pts, cam.K, cam.D).reshape(-1, 2)
    rays = np.hstack([xy, np.ones((xy.shape[0], 1))])
    return rays / np.linalg.norm(rays, axis=1, keepdims=True)


def calibrate_pixel(px, cam: CameraModel) -> np.ndarray:
    return calibrate_pixels(np.asarray(px, dtype=np.float64).reshape(1, 2), cam)[0]


def crop_to_size(px: np.ndarray, image_size: Tuple[int, int]) -> np.ndarray:
    w, h = image_size
    return np.array([min(max(px[0], 0.0), w - 1.0),
                     min(max(px[1], 0.0), h - 1.0)], dtype=np.float64)


def map_lookup(px, map_x: np.ndarray, map_y: np.ndarray) -> np.ndarray:
    h, w = map_x.shape[:2]
    r = min(max(int(round(px[1])), 0), h - 1)
    c = min(max(int(round(px[0])), 0), w - 1)
    return np.array([map_x[r, c], map_y[r, c]], dtype=np.float64)


def rectify_keypoint(px, cam: CameraModel, K_rect: np.ndarray,
                     tol_px: float = 2.0) -> Tuple[KeypointStatus, np.ndarray]:
    px = np.asarray(px, dtype=np.float64).reshape(2)

    # undistort to a ray, compensate for rectification, back to unit z
    ray = cam.R_rectify @ calibrate_pixel(px, cam)
    if abs(ray[2]) <= MIN_RAY_Z:
        raise DegenerateRayError(f"rectify_keypoint: ray with zero depth for pixel {px}")
    ray = ray / ray[2]

    fx, fy = K_rect[0, 0], K_rect[1, 1]
    cx, cy = K_rect[0, 2], K_rect[1, 2]
    px_rect = crop_to_size(np.array([fx * ray[0] + cx, fy * ray[1] + cy]), cam.image_size)

    # we must be able to go back to the original pixel through the map
    px_check = map_lookup(px_rect, cam.map_x, cam.map_y)
    if abs(px[0] - px_check[0]) > tol_px or abs(px[1] - px_check[1]) > tol_px:
        return KeypointStatus.NO_LEFT_RECTIFICATION, px_rect
    return KeypointStatus.VALID, px_rect


def rectify_keypoints(pts: np.ndarray, cam: CameraModel, K_rect: np.ndarray,
                      tol_px: float = 2.0) -> Tuple[List[KeypointStatus], np.ndarray]:
    """
    pts: (N,2) raw left pixels
    Returns statuses (N,) and rectified pixels (N,2).
    """
    pts = np.asarray(pts, dtype=np.float64).reshape(-1, 2)
    statuses: List[KeypointStatus] = []
    out = np.zeros_like(pts)
    for i, px in enumerate(pts):
        st, px_rect = rectify_keypoint(px, cam, K_rect, tol_px)
        statuses.append(st)
        out[i] = px_rect
    return statuses, out


def unrectify_keypoints(pts_rect: np.ndarray, statuses: List[KeypointStatus],
                        map_x: np.ndarray, map_y: np.ndarray) -> np.ndarray:
    """Rectified -> raw pixels via the map; invalid points become (0, 0)."""
    pts_rect = np.asarray(pts_rect, dtype=np.float64).reshape(-1, 2)
    if len(statuses) != pts_rect.shape[0]:
        raise ValueError("unrectify_keypoints: statuses and pixels differ in length")
    out = np.zeros_like(pts_rect)
    for i, (px, st) in enumerate(zip(pts_rect, statuses)):
        if st == KeypointStatus.VALID:
            out[i] = map_lookup(px, map_x, map_y)
    return out
