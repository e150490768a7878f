from __future__ import annotations

import logging
import threading
from typing import List, Optional

from posedet.config import PipelineConfig
from posedet.errors import InvalidStateError
from posedet.pipeline import PoseDetector
from posedet.types import Pose

logger = logging.getLogger(__name__)


class InferenceService:
    """Process-wide holder that keeps the pose pipeline's interpreters in memory.

    Usage:
        InferenceService.initialize(PipelineConfig.from_env())
        poses = InferenceService.instance().infer_poses(image_path)
    """

    _instance: Optional["InferenceService"] = None
    _global_lock = threading.Lock()

    def __init__(self, config: PipelineConfig, detector: Optional[PoseDetector] = None):
        self.config = config
        self._detector = detector or PoseDetector(config)
        self._detector.initialize()

    @classmethod
    def initialize(cls, config: Optional[PipelineConfig] = None, detector: Optional[PoseDetector] = None):
        with cls._global_lock:
            if cls._instance is not None:
                cls._instance.close()
            cls._instance = InferenceService(config or PipelineConfig.from_env(), detector)
            logger.info("Inference service initialized (mode=%s)", cls._instance.config.mode.value)

    @classmethod
    def instance(cls) -> "InferenceService":
        if cls._instance is None:
            raise InvalidStateError("InferenceService not initialized")
        return cls._instance

    @classmethod
    def shutdown(cls):
        with cls._global_lock:
            if cls._instance is not None:
                cls._instance.close()
            cls._instance = None

    # ------------- Public API -------------
    def infer_poses(self, image_path: str) -> List[Pose]:
        """Poses for the image at image_path; [] if nobody was found.

        Missing files raise FileNotFoundError, corrupt ones ImageDecodeError.
        """
        return self._detector.detect_path(image_path)

    def close(self):
        self._detector.dispose()
