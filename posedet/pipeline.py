"""
Two-stage pose pipeline: YOLO person boxes -> per-person BlazePose landmarks.

Usage:
    detector = PoseDetector(PipelineConfig(model_dir="models"))
    detector.initialize()
    poses = detector.detect(image)
    detector.dispose()
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import List, Optional, Union

import numpy as np

from posedet.config import PipelineConfig, PoseMode
from posedet.detector import PersonDetector
from posedet.engine import tflite_factory
from posedet.errors import ImageDecodeError, InvalidStateError
from posedet.geometry import square_crop_region
from posedet.imaging import crop_box, decode_image, extract_aligned_square, letterbox_image, load_image, resize_square
from posedet.landmarks import LandmarkRunner
from posedet.types import (
    ChannelOrder,
    CropMode,
    CropTransform,
    Detection,
    Image,
    Landmark,
    Pose,
    PoseLandmarks,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PersonCrop:
    detection: Detection
    pixels: np.ndarray  # landmark-model sized RGB crop
    transform: CropTransform


class PoseDetector:
    """Person detection + landmark extraction with a pooled landmark stage."""

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        detector: Optional[PersonDetector] = None,
        landmark_runner: Optional[LandmarkRunner] = None,
    ):
        self.config = config or PipelineConfig()
        cfg = self.config
        self._detector = detector or PersonDetector(
            tflite_factory(cfg.detector_path, cfg.delegate, cfg.num_threads)
        )
        self._landmarks = landmark_runner or LandmarkRunner(
            tflite_factory(cfg.landmark_path, cfg.delegate, cfg.num_threads),
            pool_size=cfg.effective_pool_size,
        )
        self._initialized = False
        self._state_lock = threading.Lock()

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        with self._state_lock:
            if self._initialized:
                self._dispose_locked()
            if self.config.mode == PoseMode.BOXES_AND_LANDMARKS:
                self._landmarks.initialize()
            self._detector.initialize()
            self._initialized = True

    def dispose(self) -> None:
        with self._state_lock:
            self._dispose_locked()

    def _dispose_locked(self) -> None:
        self._detector.dispose()
        self._landmarks.dispose()
        self._initialized = False

    def __enter__(self):
        self.initialize()
        return self

    def __exit__(self, *exc):
        self.dispose()
        return False

    # ------------- Public API -------------
    def detect(self, image: Union[Image, np.ndarray], cancel: Optional[threading.Event] = None) -> List[Pose]:
        """Detect people and (unless in boxes mode) their 33 landmarks.

        Bare arrays are taken as RGB. Poses come back in detection order.
        """
        if not self._initialized:
            raise InvalidStateError("PoseDetector not initialized. Call initialize() first.")
        if not isinstance(image, Image):
            image = Image(np.asarray(image), ChannelOrder.RGB)

        cfg = self.config
        dets = self._detector.detect(
            image,
            conf_threshold=cfg.detector_conf,
            iou_threshold=cfg.detector_iou,
            max_detections=cfg.max_detections,
            person_only=True,
        )
        if cfg.mode == PoseMode.BOXES:
            return [self._box_only(d, image.width, image.height) for d in dets]

        crops = self.build_crops(image, dets)
        results = self._landmarks.run_batch([c.pixels for c in crops], cancel=cancel)
        return self.compose(crops, results, image.width, image.height)

    def detect_bytes(self, data: bytes) -> List[Pose]:
        """Decode then detect. Undecodable input yields [] like an image with nobody in it."""
        try:
            image = decode_image(data)
        except ImageDecodeError as e:
            logger.warning("Image decode failed, returning no poses: %s", e)
            return []
        return self.detect(image)

    def detect_path(self, path: str) -> List[Pose]:
        """Strict variant: missing or corrupt files raise instead of returning []."""
        return self.detect(load_image(path))

    # ------------- Stages -------------
    def build_crops(self, image: Image, dets: List[Detection]) -> List[PersonCrop]:
        img_rgb = image.to_rgb()
        size = self._landmarks.input_size
        crops: List[PersonCrop] = []
        for d in dets:
            bbox = d.bbox.clamp(image.width, image.height)
            if self.config.crop_mode == CropMode.LETTERBOX:
                region, x1, y1 = crop_box(img_rgb, bbox)
                letter, plan = letterbox_image(region, size, size)
                crops.append(PersonCrop(d, letter, CropTransform.letterbox(float(x1), float(y1), plan)))
                continue

            cx, cy, side = square_crop_region(bbox, self.config.crop_margin)
            square = extract_aligned_square(img_rgb, cx, cy, side)
            if square is None:
                logger.debug("Skipping detection with empty crop (side %.3f px): %s", side, d.bbox)
                continue
            pixels, origin_x, origin_y, side_px = square
            crops.append(
                PersonCrop(
                    d,
                    resize_square(pixels, size),
                    CropTransform.resize(origin_x, origin_y, float(side_px), float(side_px)),
                )
            )
        return crops

    def compose(
        self,
        crops: List[PersonCrop],
        results: List[Optional[PoseLandmarks]],
        image_width: int,
        image_height: int,
    ) -> List[Pose]:
        size = self._landmarks.input_size
        poses: List[Pose] = []
        for crop, lms in zip(crops, results):
            if lms is None:
                # Failed or cancelled crop: keep the box, without landmarks.
                poses.append(self._box_only(crop.detection, image_width, image_height))
                continue
            # A weak landmark pass rejects the whole detection, not just its landmarks.
            if lms.score < self.config.min_landmark_score:
                continue
            pts: List[Landmark] = []
            for lm in lms.landmarks:
                x, y = crop.transform.to_image(lm.x, lm.y, size)
                pts.append(
                    Landmark(
                        type=lm.type,
                        x=min(max(x, 0.0), float(image_width)),
                        y=min(max(y, 0.0), float(image_height)),
                        z=lm.z,
                        visibility=lm.visibility,
                    )
                )
            poses.append(
                Pose(
                    bounding_box=crop.detection.bbox,
                    score=crop.detection.score,
                    landmarks=pts,
                    image_width=image_width,
                    image_height=image_height,
                )
            )
        return poses

    @staticmethod
    def _box_only(d: Detection, image_width: int, image_height: int) -> Pose:
        return Pose(
            bounding_box=d.bbox,
            score=d.score,
            landmarks=[],
            image_width=image_width,
            image_height=image_height,
        )
