from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

# ------------------------------------------------------------
# Landmark topology
# ------------------------------------------------------------
LANDMARK_NAMES = [
    "nose",
    "left_eye_inner", "left_eye", "left_eye_outer",
    "right_eye_inner", "right_eye", "right_eye_outer",
    "left_ear", "right_ear",
    "mouth_left", "mouth_right",
    "left_shoulder", "right_shoulder",
    "left_elbow", "right_elbow",
    "left_wrist", "right_wrist",
    "left_pinky", "right_pinky",
    "left_index", "right_index",
    "left_thumb", "right_thumb",
    "left_hip", "right_hip",
    "left_knee", "right_knee",
    "left_ankle", "right_ankle",
    "left_heel", "right_heel",
    "left_foot_index", "right_foot_index",
]

NUM_LANDMARKS = len(LANDMARK_NAMES)


class LandmarkType(enum.IntEnum):
    """The 33 BlazePose body landmarks, in model output order."""

    NOSE = 0
    LEFT_EYE_INNER = 1
    LEFT_EYE = 2
    LEFT_EYE_OUTER = 3
    RIGHT_EYE_INNER = 4
    RIGHT_EYE = 5
    RIGHT_EYE_OUTER = 6
    LEFT_EAR = 7
    RIGHT_EAR = 8
    MOUTH_LEFT = 9
    MOUTH_RIGHT = 10
    LEFT_SHOULDER = 11
    RIGHT_SHOULDER = 12
    LEFT_ELBOW = 13
    RIGHT_ELBOW = 14
    LEFT_WRIST = 15
    RIGHT_WRIST = 16
    LEFT_PINKY = 17
    RIGHT_PINKY = 18
    LEFT_INDEX = 19
    RIGHT_INDEX = 20
    LEFT_THUMB = 21
    RIGHT_THUMB = 22
    LEFT_HIP = 23
    RIGHT_HIP = 24
    LEFT_KNEE = 25
    RIGHT_KNEE = 26
    LEFT_ANKLE = 27
    RIGHT_ANKLE = 28
    LEFT_HEEL = 29
    RIGHT_HEEL = 30
    LEFT_FOOT_INDEX = 31
    RIGHT_FOOT_INDEX = 32

    @property
    def label(self) -> str:
        return LANDMARK_NAMES[int(self)]


POSE_LANDMARK_CONNECTIONS: List[Tuple[LandmarkType, LandmarkType]] = [
    # Face
    (LandmarkType.LEFT_EYE, LandmarkType.NOSE),
    (LandmarkType.RIGHT_EYE, LandmarkType.NOSE),
    (LandmarkType.LEFT_EYE, LandmarkType.LEFT_EAR),
    (LandmarkType.RIGHT_EYE, LandmarkType.RIGHT_EAR),
    (LandmarkType.MOUTH_LEFT, LandmarkType.MOUTH_RIGHT),
    # Torso
    (LandmarkType.LEFT_SHOULDER, LandmarkType.RIGHT_SHOULDER),
    (LandmarkType.LEFT_SHOULDER, LandmarkType.LEFT_HIP),
    (LandmarkType.RIGHT_SHOULDER, LandmarkType.RIGHT_HIP),
    (LandmarkType.LEFT_HIP, LandmarkType.RIGHT_HIP),
    # Arms
    (LandmarkType.LEFT_SHOULDER, LandmarkType.LEFT_ELBOW),
    (LandmarkType.LEFT_ELBOW, LandmarkType.LEFT_WRIST),
    (LandmarkType.LEFT_WRIST, LandmarkType.LEFT_PINKY),
    (LandmarkType.LEFT_WRIST, LandmarkType.LEFT_INDEX),
    (LandmarkType.LEFT_WRIST, LandmarkType.LEFT_THUMB),
    (LandmarkType.RIGHT_SHOULDER, LandmarkType.RIGHT_ELBOW),
    (LandmarkType.RIGHT_ELBOW, LandmarkType.RIGHT_WRIST),
    (LandmarkType.RIGHT_WRIST, LandmarkType.RIGHT_PINKY),
    (LandmarkType.RIGHT_WRIST, LandmarkType.RIGHT_INDEX),
    (LandmarkType.RIGHT_WRIST, LandmarkType.RIGHT_THUMB),
    # Legs
    (LandmarkType.LEFT_HIP, LandmarkType.LEFT_KNEE),
    (LandmarkType.LEFT_KNEE, LandmarkType.LEFT_ANKLE),
    (LandmarkType.LEFT_ANKLE, LandmarkType.LEFT_HEEL),
    (LandmarkType.LEFT_ANKLE, LandmarkType.LEFT_FOOT_INDEX),
    (LandmarkType.RIGHT_HIP, LandmarkType.RIGHT_KNEE),
    (LandmarkType.RIGHT_KNEE, LandmarkType.RIGHT_ANKLE),
    (LandmarkType.RIGHT_ANKLE, LandmarkType.RIGHT_HEEL),
    (LandmarkType.RIGHT_ANKLE, LandmarkType.RIGHT_FOOT_INDEX),
]


# ------------------------------------------------------------
# Image
# ------------------------------------------------------------
class ChannelOrder(str, enum.Enum):
    RGB = "RGB"
    BGR = "BGR"


@dataclass(frozen=True)
class Image:
    """HxWx3 uint8 pixel buffer with an explicit channel order.

    The array is held by reference; the pipeline never writes into it.
    """

    pixels: np.ndarray
    channel_order: ChannelOrder = ChannelOrder.RGB

    def __post_init__(self):
        if self.pixels.ndim != 3 or self.pixels.shape[2] != 3:
            raise ValueError(f"Expected HxWx3 image, got shape {self.pixels.shape}")

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    def to_rgb(self) -> np.ndarray:
        if self.channel_order == ChannelOrder.RGB:
            return self.pixels
        return np.ascontiguousarray(self.pixels[:, :, ::-1])

    def to_bgr(self) -> np.ndarray:
        if self.channel_order == ChannelOrder.BGR:
            return self.pixels
        return np.ascontiguousarray(self.pixels[:, :, ::-1])


# ------------------------------------------------------------
# Boxes & detections
# ------------------------------------------------------------
@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned box in original image pixels."""

    left: float
    top: float
    right: float
    bottom: float

    @property
    def width(self) -> float:
        return self.right - self.left

    @property
    def height(self) -> float:
        return self.bottom - self.top

    @property
    def center(self) -> Tuple[float, float]:
        return (self.left + self.right) / 2.0, (self.top + self.bottom) / 2.0

    def as_xyxy(self) -> Tuple[float, float, float, float]:
        return self.left, self.top, self.right, self.bottom

    def clamp(self, width: float, height: float) -> "BoundingBox":
        return BoundingBox(
            left=min(max(self.left, 0.0), float(width)),
            top=min(max(self.top, 0.0), float(height)),
            right=min(max(self.right, 0.0), float(width)),
            bottom=min(max(self.bottom, 0.0), float(height)),
        )

    def to_dict(self) -> Dict[str, float]:
        return {"left": self.left, "top": self.top, "right": self.right, "bottom": self.bottom}


@dataclass(frozen=True)
class RawDetection:
    """Decoded candidate in model-input pixel space (xyxy)."""

    class_id: int
    score: float
    bbox_xyxy: Tuple[float, float, float, float]


@dataclass(frozen=True)
class Detection:
    class_id: int
    score: float
    bbox: BoundingBox


# ------------------------------------------------------------
# Coordinate transforms
# ------------------------------------------------------------
@dataclass(frozen=True)
class LetterboxTransform:
    ratio: float
    pad_left: int
    pad_top: int

    def __post_init__(self):
        if not self.ratio > 0:
            raise ValueError(f"Letterbox ratio must be > 0, got {self.ratio}")


class CropMode(str, enum.Enum):
    # Aligned square crop resized to the model input, no padding.
    RESIZE = "resize"
    # Box crop letterboxed into the model input.
    LETTERBOX = "letterbox"


@dataclass(frozen=True)
class CropTransform:
    """Maps landmark-model coordinates of one crop back to the source image."""

    mode: CropMode
    origin_x: float
    origin_y: float
    width: float = 0.0
    height: float = 0.0
    ratio: float = 1.0
    pad_left: int = 0
    pad_top: int = 0

    @classmethod
    def resize(cls, origin_x: float, origin_y: float, width: float, height: float) -> "CropTransform":
        return cls(CropMode.RESIZE, origin_x, origin_y, width=width, height=height)

    @classmethod
    def letterbox(cls, origin_x: float, origin_y: float, plan: LetterboxTransform) -> "CropTransform":
        return cls(
            CropMode.LETTERBOX, origin_x, origin_y,
            ratio=plan.ratio, pad_left=plan.pad_left, pad_top=plan.pad_top,
        )

    def to_image(self, x_norm: float, y_norm: float, input_size: int) -> Tuple[float, float]:
        """Normalized [0,1] crop coordinates -> source image pixels (unclamped)."""
        if self.mode == CropMode.RESIZE:
            return self.origin_x + x_norm * self.width, self.origin_y + y_norm * self.height
        xp = x_norm * input_size
        yp = y_norm * input_size
        return (
            self.origin_x + (xp - self.pad_left) / self.ratio,
            self.origin_y + (yp - self.pad_top) / self.ratio,
        )


# ------------------------------------------------------------
# Landmarks & poses
# ------------------------------------------------------------
@dataclass(frozen=True)
class Landmark:
    type: LandmarkType
    x: float
    y: float
    z: float  # depth relative to the hip midpoint, not absolute
    visibility: float

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.type.label,
            "x": self.x,
            "y": self.y,
            "z": self.z,
            "score": self.visibility,
        }


@dataclass(frozen=True)
class PoseLandmarks:
    """Landmark model output for one crop, x/y normalized to the crop."""

    landmarks: List[Landmark]
    score: float


@dataclass(frozen=True)
class Pose:
    bounding_box: BoundingBox
    score: float
    landmarks: List[Landmark] = field(default_factory=list)
    image_width: int = 0
    image_height: int = 0

    def __post_init__(self):
        if len(self.landmarks) not in (0, NUM_LANDMARKS):
            raise ValueError(
                f"Pose must carry 0 or {NUM_LANDMARKS} landmarks, got {len(self.landmarks)}"
            )
        for i, lm in enumerate(self.landmarks):
            if int(lm.type) != i:
                raise ValueError(f"Landmark {i} out of order: {lm.type.name}")

    @property
    def has_landmarks(self) -> bool:
        return bool(self.landmarks)

    def get_landmark(self, kind: LandmarkType) -> Optional[Landmark]:
        if not self.landmarks:
            return None
        return self.landmarks[int(kind)]

    def to_dict(self) -> Dict[str, object]:
        return {
            "bounding_box": self.bounding_box.to_dict(),
            "score": self.score,
            "image_width": self.image_width,
            "image_height": self.image_height,
            "keypoints": [lm.to_dict() for lm in self.landmarks],
        }
