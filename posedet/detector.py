from __future__ import annotations

import logging
import threading
from typing import List, Optional

import numpy as np

from posedet import decoder
from posedet.engine import EngineFactory, InferenceEngine, allocate_outputs
from posedet.errors import InferenceError, InvalidStateError
from posedet.geometry import clamp_box, unletterbox_box, xywh_to_xyxy
from posedet.imaging import letterbox_image, to_input_tensor
from posedet.nms import non_max_suppression, stable_argsort_desc
from posedet.types import BoundingBox, Detection, Image, RawDetection

logger = logging.getLogger(__name__)

COCO_PERSON_CLASS_ID = 0

# Pre-NMS candidate budget: 100 candidates for a 640x640 image, scaled by area.
TOPK_BASE_PIXELS = 640 * 640
TOPK_BASE_CANDIDATES = 100
TOPK_MIN = 20
TOPK_MAX = 200


def dynamic_top_k(image_width: int, image_height: int) -> int:
    scale = (image_width * image_height) / TOPK_BASE_PIXELS
    k = int(np.floor(TOPK_BASE_CANDIDATES * scale + 0.5))
    return min(max(k, TOPK_MIN), TOPK_MAX)


class PersonDetector:
    """Stage 1: YOLO person detector.

    Usage:
        det = PersonDetector(tflite_factory("yolov8n_float32.tflite"))
        det.initialize()
        boxes = det.detect(image, conf_threshold=0.5)
    """

    def __init__(self, engine_factory: EngineFactory):
        self._factory = engine_factory
        self._engine: Optional[InferenceEngine] = None
        self._input_buffer: Optional[np.ndarray] = None
        self._outputs: List[np.ndarray] = []
        self._in_w = 0
        self._in_h = 0
        # One interpreter; serialize callers around it.
        self._infer_lock = threading.Lock()

    @property
    def is_initialized(self) -> bool:
        return self._engine is not None

    @property
    def input_size(self):
        return self._in_w, self._in_h

    def initialize(self) -> None:
        if self._engine is not None:
            self.dispose()
        engine = self._factory()
        in_shape = engine.input_shapes()[0]
        # NHWC
        self._in_h, self._in_w = int(in_shape[1]), int(in_shape[2])
        self._input_buffer = np.zeros((1, self._in_h, self._in_w, 3), dtype=np.float32)
        self._outputs = allocate_outputs(engine.output_shapes())
        self._engine = engine
        logger.info("Person detector ready (input %dx%d)", self._in_w, self._in_h)

    def dispose(self) -> None:
        if self._engine is not None:
            self._engine.close()
        self._engine = None
        self._input_buffer = None
        self._outputs = []

    # ------------- Inference -------------
    def _infer(self, letter_rgb: np.ndarray) -> List[np.ndarray]:
        to_input_tensor(letter_rgb, out=self._input_buffer)
        for buf in self._outputs:
            buf.fill(0.0)
        try:
            self._engine.run([self._input_buffer], self._outputs)
        except Exception as e:
            raise InferenceError(f"Person detector inference failed: {e}") from e
        return [buf.copy() for buf in self._outputs]

    def detect(
        self,
        image: Image,
        conf_threshold: float = 0.35,
        iou_threshold: float = 0.4,
        max_detections: int = 10,
        person_only: bool = True,
        top_k: Optional[int] = None,
    ) -> List[Detection]:
        if self._engine is None:
            raise InvalidStateError("PersonDetector not initialized. Call initialize() first.")

        img_rgb = image.to_rgb()
        letter, plan = letterbox_image(img_rgb, self._in_w, self._in_h)
        with self._infer_lock:
            outputs = self._infer(letter)

        candidates = self.postprocess(
            outputs,
            conf_threshold=conf_threshold,
            iou_threshold=iou_threshold,
            max_detections=max_detections,
            person_only=person_only,
            top_k=top_k if top_k is not None else dynamic_top_k(image.width, image.height),
        )

        dets: List[Detection] = []
        for c in candidates:
            x1, y1, x2, y2 = clamp_box(unletterbox_box(c.bbox_xyxy, plan), image.width, image.height)
            if x2 <= x1 or y2 <= y1:
                continue
            dets.append(Detection(class_id=c.class_id, score=c.score, bbox=BoundingBox(x1, y1, x2, y2)))
        return dets

    def postprocess(
        self,
        outputs: List[np.ndarray],
        conf_threshold: float,
        iou_threshold: float,
        max_detections: int,
        person_only: bool,
        top_k: int,
    ) -> List[RawDetection]:
        """Decode -> confidence filter -> top-K -> NMS -> class filter, in model-input space."""
        rows = decoder.decode_outputs(outputs)
        scores, class_ids, xywh = decoder.score_rows(rows)

        keep0 = np.nonzero(scores >= conf_threshold)[0]
        if keep0.size == 0:
            return []
        scores = scores[keep0]
        class_ids = class_ids[keep0]
        xywh = decoder.normalize_box_scale(xywh[keep0], self._in_w, self._in_h)
        boxes = xywh_to_xyxy(xywh)

        if top_k > 0 and len(scores) > top_k:
            order = stable_argsort_desc(scores)[:top_k]
            scores, class_ids, boxes = scores[order], class_ids[order], boxes[order]

        keep = non_max_suppression(boxes, scores, iou_threshold, max_outputs=max_detections)
        out: List[RawDetection] = []
        for i in keep:
            if person_only and int(class_ids[i]) != COCO_PERSON_CLASS_ID:
                continue
            out.append(
                RawDetection(
                    class_id=int(class_ids[i]),
                    score=float(scores[i]),
                    bbox_xyxy=tuple(float(v) for v in boxes[i]),
                )
            )
        logger.debug("Detector kept %d of %d candidates", len(out), len(keep0))
        return out
