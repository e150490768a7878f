from __future__ import annotations

from typing import List

import numpy as np

IOU_EPS = 1e-7


def stable_argsort_desc(scores: np.ndarray) -> np.ndarray:
    """Indices by descending score; ties keep their original order."""
    return np.argsort(-np.asarray(scores, dtype=np.float64), kind="stable")


def non_max_suppression(boxes_xyxy, scores, iou_threshold: float, max_outputs: int = 100) -> List[int]:
    """Greedy NMS. Returns kept indices into boxes_xyxy, highest score first."""
    boxes = np.asarray(boxes_xyxy, dtype=np.float64).reshape(-1, 4)
    if boxes.shape[0] == 0 or max_outputs <= 0:
        return []
    order = stable_argsort_desc(scores)
    areas = np.maximum(0.0, boxes[:, 2] - boxes[:, 0]) * np.maximum(0.0, boxes[:, 3] - boxes[:, 1])
    suppressed = np.zeros(len(order), dtype=bool)
    keep: List[int] = []
    for m in range(len(order)):
        if suppressed[m]:
            continue
        i = int(order[m])
        keep.append(i)
        if len(keep) >= max_outputs:
            break
        rest = order[m + 1:]
        if rest.size == 0:
            break
        xx1 = np.maximum(boxes[i, 0], boxes[rest, 0])
        yy1 = np.maximum(boxes[i, 1], boxes[rest, 1])
        xx2 = np.minimum(boxes[i, 2], boxes[rest, 2])
        yy2 = np.minimum(boxes[i, 3], boxes[rest, 3])
        inter = np.maximum(0.0, xx2 - xx1) * np.maximum(0.0, yy2 - yy1)
        ious = inter / (areas[i] + areas[rest] - inter + IOU_EPS)
        suppressed[m + 1:] |= ious > iou_threshold
    return keep
