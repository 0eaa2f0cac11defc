# FAST corner detectors behind a common detect(image, mask) interface
from __future__ import annotations
from typing import Any, List, Optional
import logging
import numpy as np
import cv2

from sparse_stereo.core.image_buffer import HybridImage, as_host, as_hybrid, cuda_available

logger = logging.getLogger(__name__)


class FastFeatureDetector:
    """CPU FAST (cv2.FastFeatureDetector)."""
    def __init__(self, threshold: int = 20, nonmax_suppression: bool = True):
        self._fast = cv2.FastFeatureDetector_create(threshold=threshold, nonmaxSuppression=nonmax_suppression)

    def detect(self, image: Any, mask: Optional[np.ndarray] = None) -> List[cv2.KeyPoint]:
        return list(self._fast.detect(as_host(image), mask=mask))


class CudaFastFeatureDetector:
    """FAST on the GPU (cv2.cuda.FastFeatureDetector), async detect then convert."""
    def __init__(self, threshold: int = 20, nonmax_suppression: bool = True,
                 max_npoints: int = 5000):
        if not cuda_available():
            raise RuntimeError("CudaFastFeatureDetector: no CUDA device available")
        self._fast = cv2.cuda.FastFeatureDetector_create(
            threshold, nonmax_suppression, cv2.FastFeatureDetector_TYPE_9_16, max_npoints
        )

    def detect(self, image: Any, mask: Optional[np.ndarray] = None) -> List[cv2.KeyPoint]:
        gpu_image = as_hybrid(image).to_device()
        gpu_mask = HybridImage(mask).to_device() if mask is not None else None
        stream = cv2.cuda.Stream()
        gpu_kps = self._fast.detectAsync(gpu_image, mask=gpu_mask, stream=stream)
        stream.waitForCompletion()
        return list(self._fast.convert(gpu_kps))


def create_feature_detector(backend: str = "auto", threshold: int = 20):
    if backend == "cuda":
        return CudaFastFeatureDetector(threshold=threshold)
    if backend == "auto" and cuda_available():
        logger.info("create_feature_detector: using CUDA FAST")
        return CudaFastFeatureDetector(threshold=threshold)
    if backend not in ("auto", "cpu"):
        raise ValueError(f"unknown detector backend: {backend}")
    return FastFeatureDetector(threshold=threshold)


def detect_best(detector, image: Any, max_keypoints: int,
                mask: Optional[np.ndarray] = None) -> List[Any]:
    """Detect and keep the max_keypoints strongest responses."""
    kps = detector.detect(image, mask)
    if not kps:
        return []
    kps = sorted(kps, key=lambda k: k.response, reverse=True)
    return kps[:max_keypoints]
