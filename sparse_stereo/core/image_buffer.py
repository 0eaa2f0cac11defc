'''
Image with a host (numpy) buffer and an optional CUDA mirror.

The host buffer is authoritative after construction, set_host() and to_host().
to_device() uploads lazily and caches the mirror until the host changes;
set_device() hands authority to the device copy (e.g. after a GPU op wrote
into it), and the next to_host() downloads it.
'''
from __future__ import annotations
from typing import Any, Optional
import numpy as np
import cv2


def cuda_available() -> bool:
    try:
        return cv2.cuda.getCudaEnabledDeviceCount() > 0
    except (AttributeError, cv2.error):
        return False


class HybridImage:
    HOST = "host"
    DEVICE = "device"

    def __init__(self, host: np.ndarray):
        self._host = host
        self._device: Optional[Any] = None
        self._device_fresh = False
        self._authority = HybridImage.HOST

    @property
    def authority(self) -> str:
        return self._authority

    @property
    def has_device_copy(self) -> bool:
        return self._device is not None

    @property
    def shape(self):
        return self.to_host().shape

    def to_device(self) -> Any:
        if not self._device_fresh:
            if not cuda_available():
                raise RuntimeError("HybridImage.to_device: no CUDA device available")
            gpu = cv2.cuda_GpuMat()
            gpu.upload(self._host)
            self._device = gpu
            self._device_fresh = True
        return self._device

    def to_host(self) -> np.ndarray:
        if self._authority == HybridImage.DEVICE:
            self._host = self._device.download()
            self._authority = HybridImage.HOST
        return self._host

    def set_device(self, gpu_mat: Any) -> None:
        self._device = gpu_mat
        self._device_fresh = True
        self._authority = HybridImage.DEVICE

    def set_host(self, host: np.ndarray) -> None:
        self._host = host
        self._device_fresh = False
        self._authority = HybridImage.HOST


def as_host(image: Any) -> np.ndarray:
    return image.to_host() if isinstance(image, HybridImage) else image


def as_hybrid(image: Any) -> HybridImage:
    return image if isinstance(image, HybridImage) else HybridImage(image)
