#!/usr/bin/env python3
"""
Two-stage pose detection from the command line.
  1) YOLOv8 person detector (letterboxed 640x640 input)
  2) BlazePose landmark model (256x256 crop per person)
Output: JSON with one entry per person (bounding box, score, 33 keypoints).

Usage:
  posedet --image input.jpg \
    --det models/yolov8n_float32.tflite \
    --lmk models/pose_landmark_heavy.tflite \
    --out_json output_poses.json
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys

from posedet.config import LandmarkModelVariant, PipelineConfig, PoseMode
from posedet.errors import ImageDecodeError, PoseDetectionError
from posedet.imaging import load_image
from posedet.pipeline import PoseDetector
from posedet.types import CropMode


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Detect people and their 33 body landmarks")
    ap.add_argument("--image", required=True, help="Path to input image (JPEG/PNG)")
    ap.add_argument("--det", default=None, help="Path to the person detector .tflite")
    ap.add_argument("--lmk", default=None, help="Path to the landmark .tflite")
    ap.add_argument("--model_dir", default=None, help="Directory holding the default model files")
    ap.add_argument("--variant", choices=[v.value for v in LandmarkModelVariant], default=None)
    ap.add_argument("--out_json", default=None, help="Output JSON path")
    ap.add_argument("--delegate", default=None, help="Delegate .so name; omit for CPU")
    ap.add_argument("--mode", choices=[m.value for m in PoseMode], default=None)
    ap.add_argument("--crop_mode", choices=[m.value for m in CropMode], default=None)
    ap.add_argument("--conf", type=float, default=None)
    ap.add_argument("--iou", type=float, default=None)
    ap.add_argument("--max_det", type=int, default=None)
    ap.add_argument("--min_landmark_score", type=float, default=None)
    ap.add_argument("--pool_size", type=int, default=None)
    ap.add_argument("--threads", type=int, default=None)
    ap.add_argument("-v", "--verbose", action="store_true")
    return ap


def config_from_args(args: argparse.Namespace) -> PipelineConfig:
    return PipelineConfig.from_env().with_overrides(
        mode=PoseMode(args.mode) if args.mode else None,
        landmark_model=LandmarkModelVariant(args.variant) if args.variant else None,
        crop_mode=CropMode(args.crop_mode) if args.crop_mode else None,
        detector_conf=args.conf,
        detector_iou=args.iou,
        max_detections=args.max_det,
        min_landmark_score=args.min_landmark_score,
        pool_size=args.pool_size,
        num_threads=args.threads,
        delegate=args.delegate,
        model_dir=args.model_dir,
        detector_model=args.det,
        landmark_model_path=args.lmk,
    )


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(name)s: %(message)s",
    )

    try:
        config = config_from_args(args)
    except ValueError as e:
        print(f"[ERROR] Invalid configuration: {e}")
        return 2

    try:
        image = load_image(args.image)
    except FileNotFoundError:
        print(f"[ERROR] Image not found: {args.image}")
        return 1
    except ImageDecodeError as e:
        print(f"[ERROR] {e}")
        return 1

    try:
        with PoseDetector(config) as detector:
            poses = detector.detect(image)
    except PoseDetectionError as e:
        print(f"[ERROR] Pose detection failed: {e}")
        return 1
    except RuntimeError as e:
        # tflite-runtime missing or model failed to load
        print(f"[ERROR] {e}")
        return 1

    out_json = args.out_json or os.path.splitext(args.image)[0] + "_poses.json"
    with open(out_json, "w") as f:
        json.dump({"poses": [p.to_dict() for p in poses]}, f, indent=2)

    if not poses:
        print("No person detected.")
    else:
        print(f"Detected {len(poses)} person(s)")
    print(f"Saved: {out_json}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
