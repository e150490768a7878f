"""
Two-stage on-device pose detection.

- YOLOv8 person detector: letterbox, decode, NMS, unletterbox
- BlazePose landmark model: 33 keypoints per person, pooled interpreters

```python
from posedet import PoseDetector, PipelineConfig

with PoseDetector(PipelineConfig(model_dir="models")) as detector:
    poses = detector.detect_path("people.jpg")
```
"""

__version__ = '0.1.0'

from .config import LandmarkModelVariant, PipelineConfig, PoseMode
from .detector import PersonDetector
from .engine import InferenceEngine, TFLiteEngine, tflite_factory
from .errors import (
    ImageDecodeError,
    InferenceError,
    InvalidStateError,
    MalformedModelOutputError,
    PoseDetectionError,
)
from .landmarks import LandmarkRunner, decode_landmarks
from .nms import non_max_suppression
from .pipeline import PoseDetector
from .types import (
    POSE_LANDMARK_CONNECTIONS,
    BoundingBox,
    ChannelOrder,
    CropMode,
    CropTransform,
    Detection,
    Image,
    Landmark,
    LandmarkType,
    LetterboxTransform,
    Pose,
    PoseLandmarks,
)

__all__ = [
    # Pipeline
    'PoseDetector',
    'PersonDetector',
    'LandmarkRunner',
    'PipelineConfig',
    'PoseMode',
    'LandmarkModelVariant',

    # Engine
    'InferenceEngine',
    'TFLiteEngine',
    'tflite_factory',

    # Algorithms
    'non_max_suppression',
    'decode_landmarks',

    # Types
    'BoundingBox',
    'ChannelOrder',
    'CropMode',
    'CropTransform',
    'Detection',
    'Image',
    'Landmark',
    'LandmarkType',
    'LetterboxTransform',
    'Pose',
    'PoseLandmarks',
    'POSE_LANDMARK_CONNECTIONS',

    # Errors
    'PoseDetectionError',
    'InvalidStateError',
    'MalformedModelOutputError',
    'InferenceError',
    'ImageDecodeError',
]
