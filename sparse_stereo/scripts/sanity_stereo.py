'''
runs sparse stereo matching on one stereo pair
prints baseline computed two ways
prints status counts, disparity and depth stats for the valid matches
compares versor-based 3D points against plain pinhole triangulation
'''
from __future__ import annotations
import argparse
import logging
from typing import Optional, Sequence
import numpy as np
import cv2

from sparse_stereo.types import StereoSample
from sparse_stereo.core.stereo.calib import load_stereo_rig
from sparse_stereo.core.stereo.params import StereoMatchingParams, load_matching_params
from sparse_stereo.core.stereo.triangulation import triangulate_rectified
from sparse_stereo.frontend.stereo_frontend import SparseStereoFrontend


def read_gray(path: str) -> np.ndarray:
    img = cv2.imread(path, cv2.IMREAD_GRAYSCALE)
    if img is None:
        raise FileNotFoundError(f"Failed to read image: {path}")
    return img


def main(argv: Optional[Sequence[str]] = None) -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("--calib", required=True, help="stereo calibration JSON")
    ap.add_argument("--left", required=True, help="raw left image")
    ap.add_argument("--right", required=True, help="raw right image")
    ap.add_argument("--params", default=None, help="optional stereo matching parameters JSON")
    ap.add_argument("--log-level", default="WARNING")
    args = ap.parse_args(argv)

    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.WARNING),
                        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    rig = load_stereo_rig(args.calib)
    params = load_matching_params(args.params) if args.params else StereoMatchingParams()

    t_01 = rig.T_cam0_cam1[:3, 3]
    print("T_cam0_cam1 translation:", t_01)
    print("baseline (norm):", float(np.linalg.norm(t_01)))

    frontend = SparseStereoFrontend(rig, params)
    frame = frontend.process(StereoSample(t_ns=0, left=read_gray(args.left), right=read_gray(args.right)))
    obs = frame.observations

    print("rectified fx:", rig.fx_rect)
    print("baseline (rectified):", rig.baseline)

    stats = obs.stats()
    print("keypoints:", stats.summary())
    idx = obs.valid_indices()
    if idx.size == 0:
        print("No valid stereo matches.")
        return 0

    disp = obs.disparities()[idx]
    vdiff = np.abs(obs.left_keypoints_rectified[idx, 1] - obs.right_keypoints_rectified[idx, 1])
    depth = obs.depths[idx]
    print("disp   median/95/max:", float(np.median(disp)), float(np.percentile(disp, 95)), float(disp.max()))
    print("v-diff mean/max:", float(vdiff.mean()), float(vdiff.max()))
    print("depth  median/min/max:", float(np.median(depth)), float(depth.min()), float(depth.max()))

    K = rig.K_rect_left
    errs = []
    for i in idx:
        uL, vL = obs.left_keypoints_rectified[i]
        uR = obs.right_keypoints_rectified[i, 0]
        X = triangulate_rectified(uL, vL, uR, K[0, 0], K[1, 1], K[0, 2], K[1, 2], rig.baseline)
        if X is not None:
            errs.append(float(np.linalg.norm(X - obs.points_3d[i])))
    if errs:
        print("pinhole vs versor 3D point diff median/max:", float(np.median(errs)), float(np.max(errs)))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
