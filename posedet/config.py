from __future__ import annotations

import enum
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional

from posedet.types import CropMode


class PoseMode(str, enum.Enum):
    # Stage 1 only: bounding boxes.
    BOXES = "boxes"
    # Both stages: boxes + 33 landmarks per person.
    BOXES_AND_LANDMARKS = "boxes_and_landmarks"


class LandmarkModelVariant(str, enum.Enum):
    LITE = "lite"
    FULL = "full"
    HEAVY = "heavy"

    @property
    def filename(self) -> str:
        return f"pose_landmark_{self.value}.tflite"


DETECTOR_FILENAME = "yolov8n_float32.tflite"
MAX_POOL_SIZE = 10


@dataclass(frozen=True)
class PipelineConfig:
    mode: PoseMode = PoseMode.BOXES_AND_LANDMARKS
    landmark_model: LandmarkModelVariant = LandmarkModelVariant.HEAVY
    detector_conf: float = 0.5
    detector_iou: float = 0.45
    max_detections: int = 10
    min_landmark_score: float = 0.5
    pool_size: int = 1
    crop_mode: CropMode = CropMode.RESIZE
    crop_margin: float = 1.25
    # None lets the engine pick; >1 means the engine threads internally.
    num_threads: Optional[int] = None
    delegate: Optional[str] = None
    model_dir: str = "models"
    detector_model: Optional[str] = None
    landmark_model_path: Optional[str] = None

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if not 0.0 <= self.detector_conf <= 1.0:
            raise ValueError(f"detector_conf must be in [0,1], got {self.detector_conf}")
        if not 0.0 < self.detector_iou < 1.0:
            raise ValueError(f"detector_iou must be in (0,1), got {self.detector_iou}")
        if self.max_detections < 1:
            raise ValueError(f"max_detections must be >= 1, got {self.max_detections}")
        if not 0.0 <= self.min_landmark_score <= 1.0:
            raise ValueError(f"min_landmark_score must be in [0,1], got {self.min_landmark_score}")
        if not 1 <= self.pool_size <= MAX_POOL_SIZE:
            raise ValueError(f"pool_size must be in [1,{MAX_POOL_SIZE}], got {self.pool_size}")
        if self.crop_margin <= 0.0:
            raise ValueError(f"crop_margin must be > 0, got {self.crop_margin}")
        if self.num_threads is not None and not 0 <= self.num_threads <= 8:
            raise ValueError(f"num_threads must be in [0,8], got {self.num_threads}")

    @property
    def effective_pool_size(self) -> int:
        """Pool size after accounting for engine-internal threading."""
        if self.num_threads is not None and self.num_threads > 1:
            return 1
        return self.pool_size

    @property
    def detector_path(self) -> str:
        return self.detector_model or str(Path(self.model_dir) / DETECTOR_FILENAME)

    @property
    def landmark_path(self) -> str:
        return self.landmark_model_path or str(Path(self.model_dir) / self.landmark_model.filename)

    def with_overrides(self, **kwargs) -> "PipelineConfig":
        return replace(self, **{k: v for k, v in kwargs.items() if v is not None})

    @classmethod
    def from_env(cls, prefix: str = "POSEDET_") -> "PipelineConfig":
        """Build a config from POSEDET_* environment variables; unset ones keep defaults."""

        def _get(name: str) -> Optional[str]:
            v = os.getenv(prefix + name)
            return v if v not in (None, "") else None

        def _num(name: str, cast):
            v = _get(name)
            return cast(v) if v is not None else None

        return cls().with_overrides(
            mode=PoseMode(_get("MODE")) if _get("MODE") else None,
            landmark_model=LandmarkModelVariant(_get("LANDMARK_MODEL")) if _get("LANDMARK_MODEL") else None,
            detector_conf=_num("DETECTOR_CONF", float),
            detector_iou=_num("DETECTOR_IOU", float),
            max_detections=_num("MAX_DETECTIONS", int),
            min_landmark_score=_num("MIN_LANDMARK_SCORE", float),
            pool_size=_num("POOL_SIZE", int),
            crop_mode=CropMode(_get("CROP_MODE")) if _get("CROP_MODE") else None,
            num_threads=_num("NUM_THREADS", int),
            delegate=_get("DELEGATE"),
            model_dir=_get("MODEL_DIR"),
            detector_model=_get("DET_MODEL"),
            landmark_model_path=_get("LMK_MODEL"),
        )
